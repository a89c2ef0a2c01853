"""Consent tracking and CAN-SPAM / TCPA checks for outgoing messages."""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime
from typing import Any, Iterable

import pandas as pd

from .store import ChurchStore


logger = logging.getLogger(__name__)

CONSENT_METHODS = ("web_form", "paper_form", "verbal", "imported", "sms_keyword")
UNSUBSCRIBE_REASONS = ("user_request", "sms_stop", "spam_complaint", "hard_bounce", "repeated_soft_bounce", "admin")

CONSENT_EXPORT_COLUMNS = [
    "Member ID",
    "Name",
    "Email",
    "Phone",
    "Email Opt-In",
    "SMS Opt-In",
    "Email Consent Date",
    "SMS Consent Date",
    "Consent Method",
]


def unsubscribe_link(base_url: str, channel: str, member_id: int) -> str:
    return f"{base_url.rstrip('/')}/unsubscribe/{channel}/{member_id}"


def validate_message_compliance(
    message_type: str,
    content: str,
    recipients: Iterable[Any],
    settings: Any | None,
) -> dict[str, Any]:
    """Check a message before sending; errors block it, warnings do not."""

    recipient_list = list(recipients)
    warnings: list[str] = []
    errors: list[str] = []
    lowered = content.lower()

    if message_type == "sms":
        if "stop" not in lowered and "unsubscribe" not in lowered and len(content) > 100:
            warnings.append("Consider including unsubscribe instructions for longer SMS messages")
        if len(content) > 1600:
            warnings.append("Message is very long and may be expensive to send")
        not_opted_in = [row for row in recipient_list if not row["sms_opt_in"]]
        if not_opted_in:
            errors.append(f"{len(not_opted_in)} recipients have not opted in to SMS communications")

    if message_type == "email":
        if "unsubscribe" not in lowered:
            errors.append("Email must include unsubscribe link for CAN-SPAM compliance")
        if settings is None or not settings["from_name"] or not settings["reply_to_email"]:
            errors.append("From name and reply-to address must be configured")
        opted_out = [row for row in recipient_list if not row["email_opt_in"]]
        if opted_out:
            warnings.append(f"{len(opted_out)} recipients have opted out of email communications")

    if not recipient_list:
        errors.append("No valid recipients selected")
    if not content.strip():
        errors.append("Message content cannot be empty")

    return {"is_compliant": not errors, "warnings": warnings, "errors": errors}


class ComplianceManager:
    def __init__(self, store: ChurchStore) -> None:
        self.store = store

    def record_consent(
        self,
        member_id: int,
        kind: str,
        method: str = "web_form",
        now: datetime | None = None,
    ) -> None:
        if kind not in {"email", "sms", "both"}:
            raise ValueError("Consent type must be email, sms, or both.")
        if method not in CONSENT_METHODS:
            raise ValueError("Consent method must be one of: " + ", ".join(CONSENT_METHODS) + ".")

        stamp = (now or datetime.now()).strftime("%Y-%m-%d %H:%M:%S")
        fields: dict[str, Any] = {"consent_method": method}
        if kind in {"email", "both"}:
            fields.update(email_opt_in=True, email_consent_date=stamp, email_unsubscribed_at=None)
        if kind in {"sms", "both"}:
            fields.update(sms_opt_in=True, sms_consent_date=stamp, sms_unsubscribed_at=None)
        self.store.update_preferences(member_id, **fields)
        logger.info("Recorded %s consent for member %s via %s", kind, member_id, method)

    def unsubscribe(
        self,
        member_id: int,
        channel: str,
        reason: str = "user_request",
        feedback: str | None = None,
        now: datetime | None = None,
    ) -> None:
        if channel not in {"email", "sms", "all"}:
            raise ValueError("Channel must be email, sms, or all.")

        stamp = (now or datetime.now()).strftime("%Y-%m-%d %H:%M:%S")
        fields: dict[str, Any] = {"unsubscribe_reason": reason}
        if feedback:
            fields["unsubscribe_feedback"] = feedback.strip()
        if channel in {"email", "all"}:
            fields.update(email_opt_in=False, email_unsubscribed_at=stamp)
        if channel in {"sms", "all"}:
            fields.update(sms_opt_in=False, sms_unsubscribed_at=stamp)
        self.store.update_preferences(member_id, **fields)
        logger.info("Member %s unsubscribed from %s (%s)", member_id, channel, reason)

    def handle_bounce(self, member_id: int, bounce_type: str, now: datetime | None = None) -> bool:
        """Count a bounce; returns True when the member was opted out of email."""

        if bounce_type not in {"hard", "soft"}:
            raise ValueError("Bounce type must be hard or soft.")

        preferences = self.store.get_preferences(member_id)
        if preferences is None:
            return False

        stamp = (now or datetime.now()).strftime("%Y-%m-%d %H:%M:%S")
        soft_count = int(preferences["soft_bounce_count"]) + (1 if bounce_type == "soft" else 0)
        opt_out = bounce_type == "hard" or soft_count >= 3

        fields: dict[str, Any] = {
            "email_bounce_count": int(preferences["email_bounce_count"]) + 1,
            "soft_bounce_count": soft_count,
            "last_bounce_at": stamp,
        }
        if opt_out and preferences["email_opt_in"]:
            fields.update(
                email_opt_in=False,
                email_unsubscribed_at=stamp,
                unsubscribe_reason="hard_bounce" if bounce_type == "hard" else "repeated_soft_bounce",
            )
        self.store.update_preferences(member_id, **fields)
        if opt_out:
            logger.warning("Member %s opted out of email after %s bounce", member_id, bounce_type)
        return opt_out

    def compliance_report(self, church_id: int) -> dict[str, Any]:
        preferences = self.store.list_preferences(church_id)
        total_members = self.store.church_stats(church_id)["total_members"]

        reasons = Counter(row["unsubscribe_reason"] for row in preferences if row["unsubscribe_reason"])
        total_bounces = sum(int(row["email_bounce_count"]) for row in preferences)
        bounce_rate = total_bounces / len(preferences) * 100 if preferences else 0.0

        unsubscribed = [
            {
                "member_id": row["member_id"],
                "member_name": f"{row['first_name']} {row['last_name']}",
                "email": row["email"] or "",
                "unsubscribed_at": row["email_unsubscribed_at"] or row["sms_unsubscribed_at"],
                "reason": row["unsubscribe_reason"] or "unknown",
            }
            for row in preferences
            if row["email_unsubscribed_at"] or row["sms_unsubscribed_at"]
        ]
        unsubscribed.sort(key=lambda item: item["unsubscribed_at"], reverse=True)

        return {
            "total_members": total_members,
            "email_opt_ins": sum(1 for row in preferences if row["email_opt_in"]),
            "email_opt_outs": sum(1 for row in preferences if not row["email_opt_in"]),
            "sms_opt_ins": sum(1 for row in preferences if row["sms_opt_in"]),
            "sms_opt_outs": sum(1 for row in preferences if not row["sms_opt_in"]),
            "unsubscribe_reasons": dict(reasons),
            "bounce_rate": round(bounce_rate, 2),
            "spam_complaints": reasons.get("spam_complaint", 0),
            "recent_unsubscribes": unsubscribed[:10],
        }

    def consent_records(self, church_id: int) -> pd.DataFrame:
        rows = self.store.list_preferences(church_id)
        frame = pd.DataFrame(
            [
                {
                    "Member ID": row["member_id"],
                    "Name": f"{row['first_name']} {row['last_name']}",
                    "Email": row["email"] or "",
                    "Phone": row["mobile_phone"] or "",
                    "Email Opt-In": "Yes" if row["email_opt_in"] else "No",
                    "SMS Opt-In": "Yes" if row["sms_opt_in"] else "No",
                    "Email Consent Date": row["email_consent_date"] or "",
                    "SMS Consent Date": row["sms_consent_date"] or "",
                    "Consent Method": row["consent_method"] or "imported",
                }
                for row in rows
            ],
            columns=CONSENT_EXPORT_COLUMNS,
        )
        return frame

    def consent_export_csv(self, church_id: int) -> str:
        return self.consent_records(church_id).to_csv(index=False)
