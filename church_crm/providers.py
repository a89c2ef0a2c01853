"""
Email and SMS delivery providers.

SendGrid v3 mail/send and Twilio Messages.json are called directly over HTTP.
Failures come back as DeliveryResult(status="failed") so a batch keeps going.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import requests


logger = logging.getLogger(__name__)

SENDGRID_SEND_URL = "https://api.sendgrid.com/v3/mail/send"
TWILIO_MESSAGES_URL = "https://api.twilio.com/2010-04-01/Accounts/{account_sid}/Messages.json"


@dataclass(frozen=True)
class DeliveryResult:
    status: str
    message_id: str | None = None
    error: str | None = None
    cost_cents: int = 0

    @property
    def ok(self) -> bool:
        return self.status in {"sent", "queued"}


class SendGridProvider:
    def __init__(self, api_key: str, timeout: int = 30, session: requests.Session | None = None) -> None:
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()

    def build_payload(
        self,
        to_email: str,
        subject: str,
        html: str,
        from_email: str,
        from_name: str | None = None,
        reply_to: str | None = None,
        text: str | None = None,
        unsubscribe_link: str | None = None,
    ) -> dict[str, Any]:
        content = [{"type": "text/html", "value": html}]
        if text:
            content.append({"type": "text/plain", "value": text})

        payload: dict[str, Any] = {
            "personalizations": [{"to": [{"email": to_email}], "subject": subject}],
            "from": {"email": from_email, "name": from_name or ""},
            "content": content,
            "tracking_settings": {
                "click_tracking": {"enable": True},
                "open_tracking": {"enable": True},
                "subscription_tracking": {
                    "enable": bool(unsubscribe_link),
                    "substitution_tag": "{{unsubscribe}}",
                },
            },
        }
        if reply_to:
            payload["reply_to"] = {"email": reply_to}
        return payload

    def send_email(self, **message: Any) -> DeliveryResult:
        payload = self.build_payload(**message)
        try:
            response = self.session.post(
                SENDGRID_SEND_URL,
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
        except requests.Timeout:
            return DeliveryResult(status="failed", error=f"Request timeout after {self.timeout}s")
        except requests.RequestException as exc:
            return DeliveryResult(status="failed", error=f"Request failed: {exc}")

        if not response.ok:
            logger.warning("SendGrid rejected message to %s: HTTP %s", message.get("to_email"), response.status_code)
            return DeliveryResult(status="failed", error=f"HTTP {response.status_code}: {response.text[:200]}")
        return DeliveryResult(status="sent", message_id=response.headers.get("x-message-id"))


class TwilioProvider:
    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        timeout: int = 30,
        session: requests.Session | None = None,
    ) -> None:
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.timeout = timeout
        self.session = session or requests.Session()

    def send_sms(
        self,
        to_phone: str,
        body: str,
        from_phone: str,
        media_urls: list[str] | None = None,
    ) -> DeliveryResult:
        form: list[tuple[str, str]] = [("To", to_phone), ("From", from_phone), ("Body", body)]
        for url in media_urls or []:
            form.append(("MediaUrl", url))

        try:
            response = self.session.post(
                TWILIO_MESSAGES_URL.format(account_sid=self.account_sid),
                data=form,
                auth=(self.account_sid, self.auth_token),
                timeout=self.timeout,
            )
        except requests.Timeout:
            return DeliveryResult(status="failed", error=f"Request timeout after {self.timeout}s")
        except requests.RequestException as exc:
            return DeliveryResult(status="failed", error=f"Request failed: {exc}")

        if not response.ok:
            logger.warning("Twilio rejected message to %s: HTTP %s", to_phone, response.status_code)
            return DeliveryResult(status="failed", error=f"HTTP {response.status_code}: {response.text[:200]}")

        body_json = response.json()
        price = body_json.get("price")
        cost_cents = int(round(abs(float(price)) * 100)) if price else 0
        return DeliveryResult(
            status="queued" if body_json.get("status") == "queued" else "sent",
            message_id=body_json.get("sid"),
            cost_cents=cost_cents,
        )


def dns_records(domain: str, subdomain: str = "mail") -> dict[str, Any]:
    """DNS records a church adds so SendGrid can send from its domain."""
    clean_domain = domain.strip().lower().rstrip(".")
    if not clean_domain or "." not in clean_domain:
        raise ValueError("Enter a valid domain such as yourchurch.org.")

    full_subdomain = f"{subdomain}.{clean_domain}"
    return {
        "subdomain": full_subdomain,
        "records": [
            {
                "type": "CNAME",
                "name": subdomain,
                "value": "sendgrid.net",
                "description": "Points your mail subdomain to SendGrid",
            },
            {
                "type": "SPF",
                "name": full_subdomain,
                "value": "v=spf1 include:sendgrid.net ~all",
                "description": "Authorizes SendGrid to send emails on your behalf",
            },
            {
                "type": "DKIM",
                "name": f"s1._domainkey.{full_subdomain}",
                "value": "s1.domainkey.sendgrid.net",
                "description": "DKIM authentication key 1",
            },
            {
                "type": "DKIM",
                "name": f"s2._domainkey.{full_subdomain}",
                "value": "s2.domainkey.sendgrid.net",
                "description": "DKIM authentication key 2",
            },
            {
                "type": "DMARC",
                "name": f"_dmarc.{full_subdomain}",
                "value": f"v=DMARC1; p=quarantine; rua=mailto:dmarc@{clean_domain}",
                "description": "DMARC policy for email authentication",
            },
        ],
        "instructions": [
            "Open your domain registrar's DNS management panel.",
            "Add each record using the Type, Name, and Value shown.",
            "Save your changes.",
            "DNS changes may take up to 24 hours to take effect.",
        ],
    }
