from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any

import pytest
import stripe

from church_crm.payments import (
    StripeGateway,
    amount_to_minor_units,
    create_online_donation,
    handle_payment_webhook,
    minor_units_to_amount,
)
from church_crm.store import ChurchStore


def _build_store(tmp_path) -> ChurchStore:  # type: ignore[no-untyped-def]
    db_path = tmp_path / "church_crm_test.db"
    store = ChurchStore(db_path)
    store.init_db()
    return store


class FakeGateway(StripeGateway):
    def __init__(self, event: dict[str, Any] | None = None, fee_cents: int = 0) -> None:
        super().__init__(api_key="sk_test_fake", webhook_secret="whsec_fake")
        self.event = event
        self.fee_cents = fee_cents
        self.intents: list[dict[str, Any]] = []

    def create_payment_intent(self, **params: Any) -> dict[str, Any]:  # type: ignore[override]
        self.intents.append(params)
        intent_id = f"pi_test_{len(self.intents)}"
        return {"id": intent_id, "client_secret": f"{intent_id}_secret"}

    def construct_event(self, payload: bytes | str, signature: str) -> Any:
        if signature != "valid":
            raise ValueError("Invalid Stripe webhook signature.")
        return self.event

    def processor_fee_cents(self, payment_intent_id: str) -> int:
        return self.fee_cents


def test_minor_unit_conversion() -> None:
    assert amount_to_minor_units("25.005") == 2501
    assert amount_to_minor_units(10, "JPY") == 10
    assert minor_units_to_amount(1999) == Decimal("19.99")
    assert minor_units_to_amount(500, "krw") == Decimal(500)


def test_online_donation_creates_pending_record(tmp_path) -> None:  # type: ignore[no-untyped-def]
    store = _build_store(tmp_path)
    church_id = store.add_church("Grace Community Church")
    missions_id = store.list_categories(church_id)[2]["id"]
    gateway = FakeGateway()

    result = create_online_donation(
        store,
        gateway,
        church_id,
        missions_id,
        "50.00",
        donor_name="Avery Mills",
        donor_email="avery@example.org",
        today=date(2026, 3, 1),
    )

    assert result["payment_intent_id"] == "pi_test_1"
    assert result["client_secret"] == "pi_test_1_secret"
    intent = gateway.intents[0]
    assert intent["amount_cents"] == 5000
    assert intent["description"] == "Donation to Grace Community Church - Missions"
    assert intent["receipt_email"] == "avery@example.org"
    assert intent["metadata"]["is_anonymous"] == "false"

    donation = store.get_donation(result["donation_id"])
    assert donation["status"] == "pending"
    assert donation["processor_transaction_id"] == "pi_test_1"
    assert donation["net_amount_cents"] is None
    assert store.giving_stats(church_id, today=date(2026, 3, 2))["pending_count"] == 1


def test_anonymous_online_donation_hides_donor(tmp_path) -> None:  # type: ignore[no-untyped-def]
    store = _build_store(tmp_path)
    church_id = store.add_church("Grace Community Church")
    tithe_id = store.list_categories(church_id)[0]["id"]
    gateway = FakeGateway()

    result = create_online_donation(
        store, gateway, church_id, tithe_id, 20, donor_name="Quiet Giver", donor_email="q@example.org", is_anonymous=True
    )

    intent = gateway.intents[0]
    assert intent["metadata"]["donor_name"] == ""
    assert intent["receipt_email"] is None
    assert store.get_donation(result["donation_id"])["donor_email"] is None


def test_online_donation_validation(tmp_path) -> None:  # type: ignore[no-untyped-def]
    store = _build_store(tmp_path)
    church_id = store.add_church("Grace Community Church")
    other_church = store.add_church("Other Church")
    tithe_id = store.list_categories(church_id)[0]["id"]
    gateway = FakeGateway()

    with pytest.raises(ValueError, match="Minimum"):
        create_online_donation(store, gateway, church_id, tithe_id, "0.25")
    with pytest.raises(ValueError, match="number"):
        create_online_donation(store, gateway, church_id, tithe_id, "ten dollars")
    with pytest.raises(ValueError, match="category"):
        create_online_donation(store, gateway, other_church, tithe_id, "10")
    assert gateway.intents == []


def test_unconfigured_gateway_refuses_online_giving(tmp_path) -> None:  # type: ignore[no-untyped-def]
    store = _build_store(tmp_path)
    church_id = store.add_church("Grace Community Church")
    tithe_id = store.list_categories(church_id)[0]["id"]

    with pytest.raises(ValueError, match="not configured"):
        create_online_donation(store, StripeGateway(api_key=None), church_id, tithe_id, "10")


def test_real_gateway_passes_parameters_to_stripe(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    captured: dict[str, Any] = {}

    def fake_create(**params: Any) -> dict[str, Any]:
        captured.update(params)
        return {"id": "pi_live_1", "client_secret": "pi_live_1_secret"}

    monkeypatch.setattr(stripe.PaymentIntent, "create", fake_create)
    gateway = StripeGateway(api_key="sk_test_123")

    intent = gateway.create_payment_intent(
        amount_cents=2500,
        currency="USD",
        metadata={"church_id": "1"},
        description="Donation",
    )

    assert intent == {"id": "pi_live_1", "client_secret": "pi_live_1_secret"}
    assert captured["currency"] == "usd"
    assert captured["api_key"] == "sk_test_123"
    assert captured["automatic_payment_methods"] == {"enabled": True}
    assert "receipt_email" not in captured


def test_bad_signature_is_reported_as_value_error(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    def reject(payload: Any, signature: str, secret: str) -> Any:
        raise stripe.SignatureVerificationError("No signatures found", signature)

    monkeypatch.setattr(stripe.Webhook, "construct_event", reject)
    gateway = StripeGateway(api_key="sk_test_123", webhook_secret="whsec_123")

    with pytest.raises(ValueError, match="Invalid Stripe webhook signature"):
        gateway.construct_event(b"{}", "t=1,v1=bad")
    with pytest.raises(ValueError, match="not configured"):
        StripeGateway(api_key="sk_test_123").construct_event(b"{}", "t=1,v1=bad")


def _pending_donation(store: ChurchStore, gateway: FakeGateway) -> tuple[int, str]:
    church_id = store.add_church("Grace Community Church")
    tithe_id = store.list_categories(church_id)[0]["id"]
    result = create_online_donation(store, gateway, church_id, tithe_id, "100", donor_name="Avery Mills")
    return result["donation_id"], result["payment_intent_id"]


def test_succeeded_webhook_completes_donation_with_fee(tmp_path) -> None:  # type: ignore[no-untyped-def]
    store = _build_store(tmp_path)
    gateway = FakeGateway(fee_cents=320)
    donation_id, intent_id = _pending_donation(store, gateway)
    gateway.event = {
        "type": "payment_intent.succeeded",
        "data": {"object": {"id": intent_id, "customer": "cus_42"}},
    }

    result = handle_payment_webhook(store, gateway, b"{}", "valid")

    assert result == {"received": True, "event_type": "payment_intent.succeeded", "donation_updated": True}
    donation = store.get_donation(donation_id)
    assert donation["status"] == "completed"
    assert donation["processor_fee_cents"] == 320
    assert donation["net_amount_cents"] == 9680
    assert donation["processor_customer_id"] == "cus_42"


def test_failed_and_unknown_webhooks(tmp_path) -> None:  # type: ignore[no-untyped-def]
    store = _build_store(tmp_path)
    gateway = FakeGateway()
    donation_id, intent_id = _pending_donation(store, gateway)

    gateway.event = {"type": "payment_intent.payment_failed", "data": {"object": {"id": intent_id}}}
    assert handle_payment_webhook(store, gateway, b"{}", "valid")["donation_updated"] is True
    assert store.get_donation(donation_id)["status"] == "failed"

    gateway.event = {"type": "charge.refunded", "data": {"object": {"id": "ch_1"}}}
    assert handle_payment_webhook(store, gateway, b"{}", "valid")["donation_updated"] is False

    gateway.event = {"type": "payment_intent.succeeded", "data": {"object": {"id": "pi_unknown"}}}
    assert handle_payment_webhook(store, gateway, b"{}", "valid")["donation_updated"] is False

    with pytest.raises(ValueError):
        handle_payment_webhook(store, gateway, b"{}", "forged")
