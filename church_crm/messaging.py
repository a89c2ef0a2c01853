"""Email/SMS composition, the two-way SMS inbox, and provider delivery events."""

from __future__ import annotations

import logging
import math
import re
from datetime import datetime, time, timedelta
from typing import Any, Iterable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .compliance import ComplianceManager, unsubscribe_link, validate_message_compliance
from .config import Settings
from .privacy import normalize_phone
from .providers import DeliveryResult, SendGridProvider, TwilioProvider
from .store import ChurchStore, json_field


logger = logging.getLogger(__name__)

MESSAGE_TYPES = ("email", "sms")
RECIPIENT_TYPES = ("all_members", "active_members", "visitors", "custom_selection", "individual")
STOP_KEYWORDS = ("STOP", "UNSUBSCRIBE", "QUIT", "END", "CANCEL")

SMS_SEGMENT_LENGTH = 160
SMS_UNICODE_SEGMENT_LENGTH = 70
SMS_SEGMENT_COST_CENTS = 0.75
AUTO_REPLY_INTERVAL = timedelta(hours=1)

_MERGE_FIELD = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")
_NON_LATIN1 = re.compile(r"[^\x00-\xff]")
_STOP_PATTERN = re.compile(r"\b(" + "|".join(STOP_KEYWORDS) + r")\b", re.IGNORECASE)


def extract_merge_fields(template: str) -> list[str]:
    seen: list[str] = []
    for match in _MERGE_FIELD.finditer(template or ""):
        if match.group(1) not in seen:
            seen.append(match.group(1))
    return seen


def render_merge_fields(template: str, data: dict[str, Any]) -> str:
    """Replace {{ field }} tokens case-insensitively; unknown tokens are removed."""
    lookup = {key.lower(): "" if value is None else str(value) for key, value in data.items()}
    return _MERGE_FIELD.sub(lambda match: lookup.get(match.group(1).lower(), ""), template or "")


def merge_data_for(member: Any, unsubscribe_url: str | None = None) -> dict[str, Any]:
    first_name = member["first_name"] or ""
    last_name = member["last_name"] or ""
    data = {
        "firstName": first_name,
        "lastName": last_name,
        "fullName": f"{first_name} {last_name}".strip(),
        "preferredName": member["preferred_name"] or first_name,
        "email": member["email"] or "",
    }
    if unsubscribe_url:
        data["unsubscribeLink"] = unsubscribe_url
    return data


def sms_segments(text: str) -> int:
    if not text:
        return 0
    length = SMS_UNICODE_SEGMENT_LENGTH if _NON_LATIN1.search(text) else SMS_SEGMENT_LENGTH
    return math.ceil(len(text) / length)


def estimate_sms_cost(text: str, recipient_count: int) -> int:
    return round(sms_segments(text) * recipient_count * SMS_SEGMENT_COST_CENTS)


def _minutes(value: str | time) -> int:
    if isinstance(value, time):
        return value.hour * 60 + value.minute
    hours, minutes = value.split(":", 1)
    return int(hours) * 60 + int(minutes)


def is_quiet_hours(current: str | time, start: str = "21:00", end: str = "08:00") -> bool:
    now_minutes = _minutes(current)
    start_minutes = _minutes(start)
    end_minutes = _minutes(end)
    if start_minutes > end_minutes:
        return now_minutes >= start_minutes or now_minutes < end_minutes
    return start_minutes <= now_minutes < end_minutes


def is_stop_message(body: str) -> bool:
    return bool(_STOP_PATTERN.search(body or ""))


def _church_now(store: ChurchStore, church_id: int) -> datetime:
    church = store.get_church(church_id)
    zone_name = church["timezone"] if church is not None else "America/New_York"
    try:
        return datetime.now(ZoneInfo(zone_name)).replace(tzinfo=None)
    except ZoneInfoNotFoundError:
        logger.warning("Unknown timezone %s for church %s", zone_name, church_id)
        return datetime.now()


def providers_for_church(
    store: ChurchStore,
    church_id: int,
    settings: Settings,
) -> tuple[SendGridProvider | None, TwilioProvider | None]:
    """Build delivery providers from church settings, falling back to environment keys."""
    row = store.get_communication_settings(church_id)

    email_key = (row["email_api_key"] if row is not None else None) or settings.sendgrid_api_key
    account_sid = (row["sms_account_sid"] if row is not None else None) or settings.twilio_account_sid
    auth_token = (row["sms_auth_token"] if row is not None else None) or settings.twilio_auth_token

    email_provider = SendGridProvider(email_key) if email_key else None
    sms_provider = TwilioProvider(account_sid, auth_token) if account_sid and auth_token else None
    return email_provider, sms_provider


class MessageDispatcher:
    def __init__(
        self,
        store: ChurchStore,
        email_provider: SendGridProvider | None = None,
        sms_provider: TwilioProvider | None = None,
        base_url: str = "http://localhost:8501",
    ) -> None:
        self.store = store
        self.email_provider = email_provider
        self.sms_provider = sms_provider
        self.base_url = base_url

    def _eligible(self, message_type: str, audience: Iterable[Any]) -> list[Any]:
        if message_type == "email":
            return [row for row in audience if row["email"] and not row["email_unsubscribed_at"]]
        return [row for row in audience if row["mobile_phone"] and not row["sms_unsubscribed_at"]]

    def send_message(
        self,
        church_id: int,
        message_type: str,
        content: str,
        recipient_type: str,
        subject: str | None = None,
        recipient_ids: list[int] | None = None,
        scheduled_for: datetime | None = None,
        sender: str | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        if message_type not in MESSAGE_TYPES:
            raise ValueError("Message type must be email or sms.")
        if not content or not content.strip():
            raise ValueError("Message content is required.")
        if recipient_type not in RECIPIENT_TYPES:
            raise ValueError("Recipient type is required.")
        if message_type == "email" and not (subject or "").strip():
            raise ValueError("Subject is required for email messages.")

        settings = self.store.get_communication_settings(church_id)
        recipients = self._eligible(
            message_type,
            self.store.messaging_audience(church_id, recipient_type, recipient_ids),
        )
        compliance = validate_message_compliance(message_type, content, recipients, settings)
        if compliance["errors"]:
            raise ValueError(" ".join(compliance["errors"]))

        moment = now or datetime.now()
        is_scheduled = scheduled_for is not None and scheduled_for > moment

        if not is_scheduled:
            if message_type == "email" and self.email_provider is None:
                raise ValueError("Email provider is not configured.")
            if message_type == "sms" and self.sms_provider is None:
                raise ValueError("SMS provider is not configured.")
            if message_type == "sms" and (settings is None or not settings["sms_phone_number"]):
                raise ValueError("SMS phone number is not configured.")

        message_id = self.store.add_message(
            church_id=church_id,
            message_type=message_type,
            subject=subject,
            content=content,
            recipient_type=recipient_type,
            recipient_ids=recipient_ids,
            status="scheduled" if is_scheduled else "sending",
            total_recipients=len(recipients),
            scheduled_for=scheduled_for,
            sent_by=sender,
        )

        delivered = 0
        failed = 0
        cost_cents = 0
        for member in recipients:
            link = unsubscribe_link(self.base_url, message_type, int(member["id"]))
            merge_data = merge_data_for(member, link)
            recipient_id = self.store.add_message_recipient(
                message_id=message_id,
                member_id=member["id"],
                email=member["email"] if message_type == "email" else None,
                phone=member["mobile_phone"] if message_type == "sms" else None,
                merge_data=merge_data,
            )
            if is_scheduled:
                continue

            result = self._deliver(message_type, member, subject, content, merge_data, settings, link)
            self.store.record_recipient_delivery(
                recipient_id,
                status=result.status,
                provider_message_id=result.message_id,
                error_message=result.error,
                cost_cents=result.cost_cents,
            )
            if result.ok:
                delivered += 1
                cost_cents += result.cost_cents
            else:
                failed += 1

        if is_scheduled:
            logger.info("Scheduled %s message %s for %s", message_type, message_id, scheduled_for)
            status = "scheduled"
        else:
            status = "sent" if delivered > 0 else "failed"
            self.store.finalize_message(message_id, status, delivered, failed, cost_cents)
            logger.info(
                "Sent %s message %s: %s delivered, %s failed",
                message_type,
                message_id,
                delivered,
                failed,
            )

        return {
            "message_id": message_id,
            "status": status,
            "total_recipients": len(recipients),
            "delivered": delivered,
            "failed": failed,
            "cost_cents": cost_cents,
            "warnings": compliance["warnings"],
        }

    def _deliver(
        self,
        message_type: str,
        member: Any,
        subject: str | None,
        content: str,
        merge_data: dict[str, Any],
        settings: Any,
        link: str,
    ) -> DeliveryResult:
        body = render_merge_fields(content, merge_data)
        if message_type == "email":
            if self.email_provider is None:
                raise ValueError("Email provider is not configured.")
            return self.email_provider.send_email(
                to_email=member["email"],
                subject=render_merge_fields(subject or "", merge_data),
                html=body,
                from_email=settings["from_email"] or settings["reply_to_email"],
                from_name=settings["from_name"],
                reply_to=settings["reply_to_email"],
                unsubscribe_link=link,
            )

        if self.sms_provider is None:
            raise ValueError("SMS provider is not configured.")
        return self.sms_provider.send_sms(
            to_phone=normalize_phone(member["mobile_phone"]) or member["mobile_phone"],
            body=body,
            from_phone=settings["sms_phone_number"],
        )


class SmsInbox:
    def __init__(
        self,
        store: ChurchStore,
        sms_provider: TwilioProvider | None = None,
        compliance: ComplianceManager | None = None,
    ) -> None:
        self.store = store
        self.sms_provider = sms_provider
        self.compliance = compliance or ComplianceManager(store)

    def handle_incoming(
        self,
        church_id: int,
        from_phone: str,
        to_phone: str,
        body: str,
        media_urls: list[str] | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        moment = now or _church_now(self.store, church_id)
        member = self.store.member_by_phone(church_id, from_phone)
        conversation = self.store.get_or_create_conversation(
            church_id=church_id,
            member_phone=from_phone,
            church_phone=to_phone,
            member_id=member["id"] if member is not None else None,
        )
        message_id = self.store.add_sms_message(
            conversation_id=int(conversation["id"]),
            direction="inbound",
            content=body,
            from_phone=from_phone,
            to_phone=to_phone,
            status="received",
            media_urls=media_urls,
            unread=True,
            moment=moment,
        )

        result: dict[str, Any] = {
            "conversation_id": conversation["id"],
            "message_id": message_id,
            "member_id": member["id"] if member is not None else None,
            "unsubscribed": False,
            "auto_replied": False,
        }

        if is_stop_message(body):
            if member is not None:
                self.compliance.unsubscribe(int(member["id"]), "sms", reason="sms_stop", now=moment)
            self.store.archive_conversations_for_phone(church_id, from_phone)
            logger.info("SMS opt-out from %s for church %s", from_phone, church_id)
            result["unsubscribed"] = True
            return result

        result["auto_replied"] = self._maybe_auto_reply(church_id, int(conversation["id"]), moment)
        return result

    def _maybe_auto_reply(self, church_id: int, conversation_id: int, moment: datetime) -> bool:
        settings = self.store.get_communication_settings(church_id)
        if settings is None or not settings["sms_auto_reply"] or not settings["enable_two_way_sms"]:
            return False
        if is_quiet_hours(moment.time(), settings["sms_quiet_hours_start"], settings["sms_quiet_hours_end"]):
            return False

        conversation = self.store.get_conversation(conversation_id)
        if conversation is None or not conversation["auto_reply_enabled"]:
            return False
        if conversation["last_auto_reply"]:
            last = datetime.strptime(conversation["last_auto_reply"], "%Y-%m-%d %H:%M:%S")
            if moment - last < AUTO_REPLY_INTERVAL:
                return False
        if self.sms_provider is None:
            logger.warning("Auto-reply skipped for church %s: no SMS provider", church_id)
            return False

        reply = settings["sms_auto_reply"]
        result = self.sms_provider.send_sms(
            to_phone=conversation["member_phone"],
            body=reply,
            from_phone=conversation["church_phone"],
        )
        if not result.ok:
            logger.warning("Auto-reply to %s failed: %s", conversation["member_phone"], result.error)
            return False

        self.store.add_sms_message(
            conversation_id=conversation_id,
            direction="outbound",
            content=reply,
            from_phone=conversation["church_phone"],
            to_phone=conversation["member_phone"],
            status="sent",
            is_auto_reply=True,
            provider_message_id=result.message_id,
            cost_cents=result.cost_cents,
            moment=moment,
        )
        return True

    def send_reply(self, conversation_id: int, body: str, sender: str | None = None) -> DeliveryResult:
        if not body or not body.strip():
            raise ValueError("Reply text is required.")
        conversation = self.store.get_conversation(conversation_id)
        if conversation is None:
            raise ValueError("Conversation not found.")
        if self.sms_provider is None:
            raise ValueError("SMS provider is not configured.")

        result = self.sms_provider.send_sms(
            to_phone=conversation["member_phone"],
            body=body.strip(),
            from_phone=conversation["church_phone"],
        )
        if result.ok:
            self.store.add_sms_message(
                conversation_id=conversation_id,
                direction="outbound",
                content=body.strip(),
                from_phone=conversation["church_phone"],
                to_phone=conversation["member_phone"],
                status="sent",
                provider_message_id=result.message_id,
                cost_cents=result.cost_cents,
                sent_by=sender,
            )
        else:
            logger.warning("Reply on conversation %s failed: %s", conversation_id, result.error)
        return result

    def mark_read(self, conversation_id: int) -> None:
        self.store.mark_conversation_read(conversation_id)


def _event_time(event: dict[str, Any]) -> str:
    stamp = event.get("timestamp")
    moment = datetime.fromtimestamp(int(stamp)) if stamp else datetime.now()
    return moment.strftime("%Y-%m-%d %H:%M:%S")


def process_sendgrid_events(
    store: ChurchStore,
    church_id: int,
    events: list[dict[str, Any]],
    compliance: ComplianceManager | None = None,
) -> int:
    """Apply SendGrid event webhook entries to recipient rows; returns how many matched."""

    manager = compliance or ComplianceManager(store)
    matched = 0
    touched_messages: set[int] = set()

    for event in events:
        event_type = str(event.get("event") or "unknown")
        webhook_id = store.log_webhook(
            church_id=church_id,
            provider="sendgrid",
            event_type=event_type,
            provider_event_id=event.get("sg_event_id"),
            raw_payload=event,
        )

        email = event.get("email")
        provider_id = str(event.get("sg_message_id") or "").split(".", 1)[0]
        recipient = store.find_recipient_by_provider_id(email, provider_id) if email and provider_id else None
        if recipient is None or recipient["church_id"] != church_id:
            store.mark_webhook_processed(webhook_id)
            continue

        stamp = _event_time(event)
        if event_type == "processed":
            store.update_recipient_event(recipient["id"], status="sent", sent_at=stamp)
        elif event_type == "delivered":
            store.update_recipient_event(recipient["id"], status="delivered", delivered_at=stamp)
        elif event_type == "open":
            store.update_recipient_event(recipient["id"], status="opened", opened_at=recipient["opened_at"] or stamp)
        elif event_type == "click":
            store.update_recipient_event(
                recipient["id"],
                status="clicked",
                first_clicked_at=recipient["first_clicked_at"] or stamp,
            )
        elif event_type == "bounce":
            store.update_recipient_event(
                recipient["id"],
                status="bounced",
                error_code=str(event.get("status") or "") or None,
                error_message=event.get("reason"),
            )
            if recipient["member_id"] is not None:
                bounce_type = "soft" if event.get("type") == "blocked" else "hard"
                manager.handle_bounce(int(recipient["member_id"]), bounce_type)
        elif event_type == "dropped":
            store.update_recipient_event(recipient["id"], status="failed", error_message=event.get("reason"))
        elif event_type == "spamreport" and recipient["member_id"] is not None:
            manager.unsubscribe(int(recipient["member_id"]), "email", reason="spam_complaint")
        elif event_type == "unsubscribe" and recipient["member_id"] is not None:
            manager.unsubscribe(int(recipient["member_id"]), "email", reason="user_request")

        store.mark_webhook_processed(webhook_id)
        touched_messages.add(int(recipient["message_id"]))
        matched += 1

    for message_id in touched_messages:
        store.refresh_message_engagement(message_id)
    logger.info("Processed %s SendGrid events for church %s (%s matched)", len(events), church_id, matched)
    return matched


def recipient_merge_preview(store: ChurchStore, message_id: int, limit: int = 5) -> list[dict[str, Any]]:
    message = store.get_message(message_id)
    if message is None:
        raise ValueError("Message was not found.")
    previews = []
    for row in store.list_message_recipients(message_id)[:limit]:
        data = json_field(row["merge_data"], {})
        previews.append(
            {
                "recipient": row["email"] or row["phone"],
                "subject": render_merge_fields(message["subject"] or "", data),
                "content": render_merge_fields(message["content"], data),
            }
        )
    return previews
