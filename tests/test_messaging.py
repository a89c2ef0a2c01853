from __future__ import annotations

from datetime import datetime, time
from pathlib import Path
from typing import Any

import pytest

from church_crm.compliance import ComplianceManager
from church_crm.config import Settings
from church_crm.messaging import (
    MessageDispatcher,
    SmsInbox,
    estimate_sms_cost,
    extract_merge_fields,
    is_quiet_hours,
    is_stop_message,
    process_sendgrid_events,
    providers_for_church,
    recipient_merge_preview,
    render_merge_fields,
    sms_segments,
)
from church_crm.providers import DeliveryResult, SendGridProvider
from church_crm.store import ChurchStore


CHURCH_NUMBER = "+14025559999"


def _build_store(tmp_path) -> ChurchStore:  # type: ignore[no-untyped-def]
    db_path = tmp_path / "church_crm_test.db"
    store = ChurchStore(db_path)
    store.init_db()
    return store


class FakeEmailProvider:
    def __init__(self, failing: set[str] | None = None) -> None:
        self.failing = failing or set()
        self.sent: list[dict[str, Any]] = []

    def send_email(self, **message: Any) -> DeliveryResult:
        self.sent.append(message)
        if message["to_email"] in self.failing:
            return DeliveryResult(status="failed", error="HTTP 400: bad address")
        return DeliveryResult(status="sent", message_id=f"msg-{len(self.sent)}")


class FakeSmsProvider:
    def __init__(self, ok: bool = True) -> None:
        self.ok = ok
        self.sent: list[dict[str, Any]] = []

    def send_sms(self, to_phone: str, body: str, from_phone: str, media_urls: list[str] | None = None) -> DeliveryResult:
        self.sent.append({"to_phone": to_phone, "body": body, "from_phone": from_phone})
        if not self.ok:
            return DeliveryResult(status="failed", error="HTTP 500: carrier error")
        return DeliveryResult(status="queued", message_id=f"SM{len(self.sent)}", cost_cents=1)


def _seed_church(store: ChurchStore):  # type: ignore[no-untyped-def]
    church_id = store.add_church("Grace Community Church")
    store.save_communication_settings(
        church_id,
        from_name="Grace Community Church",
        from_email="hello@grace.example",
        reply_to_email="office@grace.example",
        sms_phone_number=CHURCH_NUMBER,
    )
    avery_id = store.add_member(church_id, "Avery", "Mills", email="avery@example.org", mobile_phone="402-555-0100")
    jordan_id = store.add_member(church_id, "Jordan", "Reyes", email="jordan@example.org")
    store.add_member(church_id, "Casey", "Lee")
    return church_id, avery_id, jordan_id


def test_merge_fields_render_case_insensitively() -> None:
    template = "Hi {{ FIRSTNAME }}, see you Sunday {{missing}}! {{firstName}}"

    assert extract_merge_fields(template) == ["FIRSTNAME", "missing", "firstName"]
    assert render_merge_fields(template, {"firstName": "Ruth", "lastName": None}) == "Hi Ruth, see you Sunday ! Ruth"


def test_sms_segments_and_cost() -> None:
    assert sms_segments("") == 0
    assert sms_segments("a" * 160) == 1
    assert sms_segments("a" * 161) == 2
    assert sms_segments("Praying for you 🙏" + "a" * 60) == 2
    assert estimate_sms_cost("a" * 161, 10) == 15


def test_quiet_hours_wrap_midnight() -> None:
    assert is_quiet_hours("22:30") is True
    assert is_quiet_hours(time(7, 59)) is True
    assert is_quiet_hours("08:00") is False
    assert is_quiet_hours("12:00", "09:00", "17:00") is True
    assert is_quiet_hours("18:00", "09:00", "17:00") is False


def test_stop_keywords_match_whole_words() -> None:
    assert is_stop_message("STOP")
    assert is_stop_message("please unsubscribe me")
    assert is_stop_message("Cancel.")
    assert not is_stop_message("Can't wait for the potluck")
    assert not is_stop_message("my stopwatch broke")


def test_email_dispatch_renders_and_counts_outcomes(tmp_path) -> None:  # type: ignore[no-untyped-def]
    store = _build_store(tmp_path)
    church_id, avery_id, _ = _seed_church(store)
    provider = FakeEmailProvider(failing={"jordan@example.org"})
    dispatcher = MessageDispatcher(store, email_provider=provider, base_url="https://grace.example/")

    result = dispatcher.send_message(
        church_id,
        "email",
        "<p>Hi {{firstName}}!</p><a href='{{unsubscribeLink}}'>Unsubscribe</a>",
        "all_members",
        subject="Welcome, {{firstName}}",
        sender="office@grace.example",
    )

    assert result["status"] == "sent"
    assert result["total_recipients"] == 2
    assert result["delivered"] == 1
    assert result["failed"] == 1

    first = provider.sent[0]
    assert first["to_email"] == "avery@example.org"
    assert first["subject"] == "Welcome, Avery"
    assert "Hi Avery!" in first["html"]
    assert f"https://grace.example/unsubscribe/email/{avery_id}" in first["html"]
    assert first["from_email"] == "hello@grace.example"
    assert first["reply_to"] == "office@grace.example"

    message = store.get_message(result["message_id"])
    assert message["status"] == "sent"
    assert message["delivered_count"] == 1
    assert message["failed_count"] == 1

    statuses = [row["status"] for row in store.list_message_recipients(result["message_id"])]
    assert statuses == ["sent", "failed"]

    previews = recipient_merge_preview(store, result["message_id"])
    assert previews[0]["subject"] == "Welcome, Avery"


def test_email_dispatch_rejects_noncompliant_or_unconfigured(tmp_path) -> None:  # type: ignore[no-untyped-def]
    store = _build_store(tmp_path)
    church_id, _, _ = _seed_church(store)

    dispatcher = MessageDispatcher(store, email_provider=FakeEmailProvider())
    with pytest.raises(ValueError, match="CAN-SPAM"):
        dispatcher.send_message(church_id, "email", "No footer here", "all_members", subject="Hello")
    with pytest.raises(ValueError, match="Subject"):
        dispatcher.send_message(church_id, "email", "Unsubscribe", "all_members")
    with pytest.raises(ValueError, match="Message type"):
        dispatcher.send_message(church_id, "fax", "Unsubscribe", "all_members")
    with pytest.raises(ValueError, match="No valid recipients"):
        dispatcher.send_message(church_id, "email", "Unsubscribe", "custom_selection", subject="Hi", recipient_ids=[])

    unconfigured = MessageDispatcher(store)
    with pytest.raises(ValueError, match="Email provider is not configured"):
        unconfigured.send_message(church_id, "email", "Unsubscribe", "all_members", subject="Hi")


def test_delivery_without_provider_raises_value_error(tmp_path) -> None:  # type: ignore[no-untyped-def]
    store = _build_store(tmp_path)
    church_id, avery_id, _ = _seed_church(store)
    member = store.get_member(avery_id)
    settings = store.get_communication_settings(church_id)
    dispatcher = MessageDispatcher(store)

    with pytest.raises(ValueError, match="Email provider is not configured"):
        dispatcher._deliver("email", member, "Hi", "Hello", {}, settings, "https://grace.example/unsubscribe/email/1")
    with pytest.raises(ValueError, match="SMS provider is not configured"):
        dispatcher._deliver("sms", member, None, "Hello", {}, settings, "https://grace.example/unsubscribe/sms/1")


def test_unsubscribed_members_are_skipped(tmp_path) -> None:  # type: ignore[no-untyped-def]
    store = _build_store(tmp_path)
    church_id, _, jordan_id = _seed_church(store)
    ComplianceManager(store).unsubscribe(jordan_id, "email")
    provider = FakeEmailProvider()

    result = MessageDispatcher(store, email_provider=provider).send_message(
        church_id, "email", "Hello! Unsubscribe anytime.", "all_members", subject="News"
    )

    assert result["total_recipients"] == 1
    assert [message["to_email"] for message in provider.sent] == ["avery@example.org"]


def test_sms_dispatch_requires_consent_then_sends(tmp_path) -> None:  # type: ignore[no-untyped-def]
    store = _build_store(tmp_path)
    church_id, avery_id, _ = _seed_church(store)
    provider = FakeSmsProvider()
    dispatcher = MessageDispatcher(store, sms_provider=provider)
    content = "Hi {{firstName}}, service starts at 10am. Reply STOP to opt out."

    with pytest.raises(ValueError, match="not opted in"):
        dispatcher.send_message(church_id, "sms", content, "individual", recipient_ids=[avery_id])

    ComplianceManager(store).record_consent(avery_id, "sms", method="paper_form")
    result = dispatcher.send_message(church_id, "sms", content, "individual", recipient_ids=[avery_id])

    assert result["status"] == "sent"
    assert result["cost_cents"] == 1
    assert provider.sent == [
        {
            "to_phone": "+14025550100",
            "body": "Hi Avery, service starts at 10am. Reply STOP to opt out.",
            "from_phone": CHURCH_NUMBER,
        }
    ]


def test_scheduled_message_stores_pending_recipients(tmp_path) -> None:  # type: ignore[no-untyped-def]
    store = _build_store(tmp_path)
    church_id, _, _ = _seed_church(store)
    dispatcher = MessageDispatcher(store)

    result = dispatcher.send_message(
        church_id,
        "email",
        "Easter schedule inside. Unsubscribe: {{unsubscribeLink}}",
        "active_members",
        subject="Easter",
        scheduled_for=datetime(2026, 4, 1, 9, 0),
        now=datetime(2026, 3, 20, 12, 0),
    )

    assert result["status"] == "scheduled"
    assert result["delivered"] == 0
    message = store.get_message(result["message_id"])
    assert message["status"] == "scheduled"
    assert message["scheduled_for"] == "2026-04-01 09:00:00"
    assert {row["status"] for row in store.list_message_recipients(result["message_id"])} == {"pending"}


def _enable_auto_reply(store: ChurchStore, church_id: int) -> None:
    store.save_communication_settings(
        church_id,
        enable_two_way_sms=True,
        sms_auto_reply="Thanks for texting Grace! A staff member will reply soon.",
    )


def test_inbound_sms_auto_reply_is_throttled(tmp_path) -> None:  # type: ignore[no-untyped-def]
    store = _build_store(tmp_path)
    church_id, avery_id, _ = _seed_church(store)
    _enable_auto_reply(store, church_id)
    provider = FakeSmsProvider()
    inbox = SmsInbox(store, sms_provider=provider)

    first = inbox.handle_incoming(church_id, "+14025550100", CHURCH_NUMBER, "Is there childcare?", now=datetime(2026, 3, 10, 10, 0))
    second = inbox.handle_incoming(church_id, "+14025550100", CHURCH_NUMBER, "Also parking?", now=datetime(2026, 3, 10, 10, 30))
    third = inbox.handle_incoming(church_id, "+14025550100", CHURCH_NUMBER, "Thanks", now=datetime(2026, 3, 10, 11, 5))

    assert first["member_id"] == avery_id
    assert [first["auto_replied"], second["auto_replied"], third["auto_replied"]] == [True, False, True]
    assert first["conversation_id"] == second["conversation_id"]

    messages = store.list_sms_messages(first["conversation_id"])
    assert [row["direction"] for row in messages] == ["inbound", "outbound", "inbound", "inbound", "outbound"]
    assert messages[1]["is_auto_reply"] == 1

    conversation = store.get_conversation(first["conversation_id"])
    assert conversation["unread_count"] == 3
    assert conversation["message_count"] == 5
    inbox.mark_read(first["conversation_id"])
    assert store.get_conversation(first["conversation_id"])["unread_count"] == 0


def test_no_auto_reply_during_quiet_hours(tmp_path) -> None:  # type: ignore[no-untyped-def]
    store = _build_store(tmp_path)
    church_id, _, _ = _seed_church(store)
    _enable_auto_reply(store, church_id)
    provider = FakeSmsProvider()
    inbox = SmsInbox(store, sms_provider=provider)

    result = inbox.handle_incoming(church_id, "+15550001234", CHURCH_NUMBER, "Hello?", now=datetime(2026, 3, 10, 22, 15))

    assert result["auto_replied"] is False
    assert result["member_id"] is None
    assert provider.sent == []


def test_stop_message_unsubscribes_and_archives(tmp_path) -> None:  # type: ignore[no-untyped-def]
    store = _build_store(tmp_path)
    church_id, avery_id, _ = _seed_church(store)
    _enable_auto_reply(store, church_id)
    ComplianceManager(store).record_consent(avery_id, "sms")
    provider = FakeSmsProvider()
    inbox = SmsInbox(store, sms_provider=provider)

    result = inbox.handle_incoming(church_id, "+14025550100", CHURCH_NUMBER, "stop", now=datetime(2026, 3, 10, 10, 0))

    assert result["unsubscribed"] is True
    assert result["auto_replied"] is False
    preferences = store.get_preferences(avery_id)
    assert preferences["sms_opt_in"] == 0
    assert preferences["unsubscribe_reason"] == "sms_stop"
    assert preferences["sms_unsubscribed_at"] == "2026-03-10 10:00:00"
    assert store.list_conversations(church_id) == []
    assert len(store.list_conversations(church_id, status="archived")) == 1
    assert provider.sent == []


def test_staff_reply_records_outbound_only_on_success(tmp_path) -> None:  # type: ignore[no-untyped-def]
    store = _build_store(tmp_path)
    church_id, _, _ = _seed_church(store)
    conversation = store.get_or_create_conversation(church_id, "+14025550100", CHURCH_NUMBER)

    with pytest.raises(ValueError, match="not configured"):
        SmsInbox(store).send_reply(conversation["id"], "Hello")

    failing = SmsInbox(store, sms_provider=FakeSmsProvider(ok=False))
    assert failing.send_reply(conversation["id"], "Hello").ok is False
    assert store.list_sms_messages(conversation["id"]) == []

    inbox = SmsInbox(store, sms_provider=FakeSmsProvider())
    with pytest.raises(ValueError):
        inbox.send_reply(conversation["id"], "   ")
    with pytest.raises(ValueError, match="Conversation not found"):
        inbox.send_reply(9999, "Hello")

    result = inbox.send_reply(conversation["id"], " See you Sunday! ", sender="pastor@grace.example")
    assert result.ok
    messages = store.list_sms_messages(conversation["id"])
    assert messages[0]["content"] == "See you Sunday!"
    assert messages[0]["sent_by"] == "pastor@grace.example"


def test_sendgrid_events_update_recipients_and_preferences(tmp_path) -> None:  # type: ignore[no-untyped-def]
    store = _build_store(tmp_path)
    church_id, avery_id, jordan_id = _seed_church(store)
    result = MessageDispatcher(store, email_provider=FakeEmailProvider()).send_message(
        church_id, "email", "News. Unsubscribe: {{unsubscribeLink}}", "all_members", subject="News"
    )
    other_church = store.add_church("Other Church")

    events = [
        {"event": "delivered", "email": "avery@example.org", "sg_message_id": "msg-1.filter01", "timestamp": 1773140400},
        {"event": "open", "email": "Avery@Example.org", "sg_message_id": "msg-1.filter01", "timestamp": 1773144000},
        {"event": "click", "email": "avery@example.org", "sg_message_id": "msg-1.filter01", "timestamp": 1773147600},
        {"event": "bounce", "type": "blocked", "status": "4.2.0", "reason": "Mailbox full",
         "email": "jordan@example.org", "sg_message_id": "msg-2.filter02"},
        {"event": "spamreport", "email": "jordan@example.org", "sg_message_id": "msg-2.filter02"},
        {"event": "delivered", "email": "nobody@example.org", "sg_message_id": "msg-99.filter"},
    ]

    assert process_sendgrid_events(store, church_id, events) == 5
    assert process_sendgrid_events(store, other_church, events[:1]) == 0

    recipients = {row["member_id"]: row for row in store.list_message_recipients(result["message_id"])}
    avery = recipients[avery_id]
    assert avery["status"] == "clicked"
    assert avery["opened_at"] is not None
    assert avery["first_clicked_at"] is not None
    jordan = recipients[jordan_id]
    assert jordan["status"] == "bounced"
    assert jordan["error_code"] == "4.2.0"

    message = store.get_message(result["message_id"])
    assert message["opened_count"] == 1
    assert message["clicked_count"] == 1
    assert message["failed_count"] == 1

    preferences = store.get_preferences(jordan_id)
    assert preferences["soft_bounce_count"] == 1
    assert preferences["email_opt_in"] == 0
    assert preferences["unsubscribe_reason"] == "spam_complaint"


def test_providers_for_church_prefers_stored_keys(tmp_path) -> None:  # type: ignore[no-untyped-def]
    store = _build_store(tmp_path)
    church_id, _, _ = _seed_church(store)
    settings = Settings(
        db_path=Path(tmp_path / "unused.db"),
        base_url="http://localhost:8501",
        log_level="INFO",
        stripe_secret_key=None,
        stripe_webhook_secret=None,
        sendgrid_api_key="SG.env",
        twilio_account_sid=None,
        twilio_auth_token=None,
    )

    email_provider, sms_provider = providers_for_church(store, church_id, settings)
    assert isinstance(email_provider, SendGridProvider)
    assert email_provider.api_key == "SG.env"
    assert sms_provider is None

    store.save_communication_settings(
        church_id, email_api_key="SG.church", sms_account_sid="AC123", sms_auth_token="secret"
    )
    email_provider, sms_provider = providers_for_church(store, church_id, settings)
    assert email_provider.api_key == "SG.church"
    assert sms_provider is not None
    assert sms_provider.account_sid == "AC123"
