from __future__ import annotations

from typing import Any

import pytest
import requests

from church_crm.providers import (
    SENDGRID_SEND_URL,
    SendGridProvider,
    TwilioProvider,
    dns_records,
)


class FakeResponse:
    def __init__(self, status_code: int, payload: dict[str, Any] | None = None, headers: dict[str, str] | None = None) -> None:
        self.status_code = status_code
        self.ok = 200 <= status_code < 300
        self._payload = payload or {}
        self.headers = headers or {}
        self.text = str(self._payload)

    def json(self) -> dict[str, Any]:
        return self._payload


class FakeSession:
    def __init__(self, response: FakeResponse | None = None, error: Exception | None = None) -> None:
        self.response = response
        self.error = error
        self.calls: list[dict[str, Any]] = []

    def post(self, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append({"url": url, **kwargs})
        if self.error is not None:
            raise self.error
        assert self.response is not None
        return self.response


def test_sendgrid_payload_and_success() -> None:
    session = FakeSession(FakeResponse(202, headers={"x-message-id": "abc123"}))
    provider = SendGridProvider("SG.key", session=session)  # type: ignore[arg-type]

    result = provider.send_email(
        to_email="avery@example.org",
        subject="Welcome",
        html="<p>Hi</p>",
        from_email="hello@grace.example",
        from_name="Grace",
        reply_to="office@grace.example",
        unsubscribe_link="https://grace.example/unsubscribe/email/1",
    )

    assert result.ok
    assert result.message_id == "abc123"
    call = session.calls[0]
    assert call["url"] == SENDGRID_SEND_URL
    assert call["headers"]["Authorization"] == "Bearer SG.key"
    payload = call["json"]
    assert payload["personalizations"][0]["to"] == [{"email": "avery@example.org"}]
    assert payload["reply_to"] == {"email": "office@grace.example"}
    assert payload["tracking_settings"]["subscription_tracking"]["enable"] is True


def test_sendgrid_failures_become_failed_results() -> None:
    rejected = SendGridProvider("SG.key", session=FakeSession(FakeResponse(401, {"errors": ["bad key"]})))  # type: ignore[arg-type]
    result = rejected.send_email(to_email="a@example.org", subject="s", html="h", from_email="f@example.org")
    assert result.status == "failed"
    assert result.error.startswith("HTTP 401")

    timed_out = SendGridProvider("SG.key", timeout=5, session=FakeSession(error=requests.Timeout()))  # type: ignore[arg-type]
    result = timed_out.send_email(to_email="a@example.org", subject="s", html="h", from_email="f@example.org")
    assert result.error == "Request timeout after 5s"


def test_twilio_send_reports_sid_and_cost() -> None:
    session = FakeSession(FakeResponse(201, {"sid": "SM123", "status": "queued", "price": "-0.0079"}))
    provider = TwilioProvider("AC1", "token", session=session)  # type: ignore[arg-type]

    result = provider.send_sms("+14025550100", "Hello", "+14025559999", media_urls=["https://grace.example/flyer.png"])

    assert result.status == "queued"
    assert result.ok
    assert result.message_id == "SM123"
    assert result.cost_cents == 1
    call = session.calls[0]
    assert call["url"].endswith("/Accounts/AC1/Messages.json")
    assert call["auth"] == ("AC1", "token")
    assert ("MediaUrl", "https://grace.example/flyer.png") in call["data"]


def test_twilio_connection_error_is_reported() -> None:
    provider = TwilioProvider("AC1", "token", session=FakeSession(error=requests.ConnectionError("refused")))  # type: ignore[arg-type]

    result = provider.send_sms("+14025550100", "Hello", "+14025559999")

    assert result.ok is False
    assert result.error.startswith("Request failed")


def test_dns_records_for_sending_domain() -> None:
    records = dns_records("Grace.Example.")

    assert records["subdomain"] == "mail.grace.example"
    assert [record["type"] for record in records["records"]] == ["CNAME", "SPF", "DKIM", "DKIM", "DMARC"]
    assert records["records"][4]["value"].endswith("rua=mailto:dmarc@grace.example")

    with pytest.raises(ValueError):
        dns_records("localhost")
