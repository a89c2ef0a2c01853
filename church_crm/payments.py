"""Online giving through Stripe PaymentIntents and their webhooks."""

from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import stripe

from .store import ChurchStore


logger = logging.getLogger(__name__)

MINIMUM_ONLINE_AMOUNT = Decimal("0.50")

ZERO_DECIMAL_CURRENCIES = frozenset(
    {
        "bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga",
        "pyg", "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf",
    }
)


def amount_to_minor_units(amount: float | Decimal | str, currency: str = "usd") -> int:
    value = Decimal(str(amount))
    if currency.lower() in ZERO_DECIMAL_CURRENCIES:
        return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def minor_units_to_amount(units: int, currency: str = "usd") -> Decimal:
    if currency.lower() in ZERO_DECIMAL_CURRENCIES:
        return Decimal(units)
    return Decimal(units) / 100


class StripeGateway:
    """Thin wrapper so the Stripe calls can be swapped out in tests."""

    def __init__(self, api_key: str | None, webhook_secret: str | None = None) -> None:
        self.api_key = api_key
        self.webhook_secret = webhook_secret

    def create_payment_intent(
        self,
        amount_cents: int,
        currency: str,
        metadata: dict[str, str],
        description: str,
        receipt_email: str | None = None,
    ) -> dict[str, Any]:
        if not self.api_key:
            raise ValueError("Online giving is not configured (missing Stripe secret key).")
        params: dict[str, Any] = {
            "amount": amount_cents,
            "currency": currency.lower(),
            "metadata": metadata,
            "description": description,
            "automatic_payment_methods": {"enabled": True},
            "api_key": self.api_key,
        }
        if receipt_email:
            params["receipt_email"] = receipt_email
        intent = stripe.PaymentIntent.create(**params)
        return {"id": intent["id"], "client_secret": intent["client_secret"]}

    def construct_event(self, payload: bytes | str, signature: str) -> Any:
        if not self.webhook_secret:
            raise ValueError("Stripe webhook secret is not configured.")
        try:
            return stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as exc:
            raise ValueError("Invalid Stripe webhook signature.") from exc

    def processor_fee_cents(self, payment_intent_id: str) -> int:
        charges = stripe.Charge.list(payment_intent=payment_intent_id, limit=1, api_key=self.api_key)
        if not charges["data"]:
            return 0
        balance_transaction_id = charges["data"][0].get("balance_transaction")
        if not balance_transaction_id:
            return 0
        balance_transaction = stripe.BalanceTransaction.retrieve(balance_transaction_id, api_key=self.api_key)
        return int(balance_transaction.get("fee") or 0)


def create_online_donation(
    store: ChurchStore,
    gateway: StripeGateway,
    church_id: int,
    category_id: int,
    amount: float | Decimal | str,
    donor_name: str | None = None,
    donor_email: str | None = None,
    donor_phone: str | None = None,
    is_anonymous: bool = False,
    note: str | None = None,
    member_id: int | None = None,
    currency: str = "usd",
    today: date | None = None,
) -> dict[str, Any]:
    try:
        value = Decimal(str(amount))
    except ArithmeticError as exc:
        raise ValueError("Donation amount must be a number.") from exc
    if value < MINIMUM_ONLINE_AMOUNT:
        raise ValueError("Minimum donation amount is $0.50.")

    church = store.get_church(church_id)
    if church is None:
        raise ValueError("Church was not found.")
    category = store.get_category(category_id)
    if category is None or category["church_id"] != church_id or not category["is_active"]:
        raise ValueError("Donation category was not found.")

    amount_cents = amount_to_minor_units(value, currency)
    metadata = {
        "church_id": str(church_id),
        "category_id": str(category_id),
        "donor_name": "" if is_anonymous else (donor_name or ""),
        "donor_email": "" if is_anonymous else (donor_email or ""),
        "is_anonymous": "true" if is_anonymous else "false",
    }
    intent = gateway.create_payment_intent(
        amount_cents=amount_cents,
        currency=currency,
        metadata=metadata,
        description=f"Donation to {church['name']} - {category['name']}",
        receipt_email=None if is_anonymous else donor_email,
    )

    donation_id = store.insert_donation(
        church_id=church_id,
        category_id=category_id,
        amount_cents=amount_cents,
        payment_method="card",
        status="pending",
        donation_date=today or date.today(),
        donor_name=donor_name,
        donor_email=donor_email,
        donor_phone=donor_phone,
        member_id=member_id,
        is_anonymous=is_anonymous,
        note=note,
        processor="stripe",
        processor_transaction_id=intent["id"],
        currency=currency,
    )
    logger.info("Created pending donation %s with intent %s", donation_id, intent["id"])
    return {
        "donation_id": donation_id,
        "client_secret": intent["client_secret"],
        "payment_intent_id": intent["id"],
    }


def handle_payment_webhook(
    store: ChurchStore,
    gateway: StripeGateway,
    payload: bytes | str,
    signature: str,
) -> dict[str, Any]:
    event = gateway.construct_event(payload, signature)
    event_type = event["type"]
    intent = event["data"]["object"]

    if event_type == "payment_intent.succeeded":
        fee = gateway.processor_fee_cents(intent["id"])
        updated = store.update_donation_payment(
            payment_intent_id=intent["id"],
            status="completed",
            processor_fee_cents=fee,
            processor_customer_id=intent.get("customer"),
            processed_at=datetime.now(),
        )
        if not updated:
            logger.warning("No donation found for succeeded intent %s", intent["id"])
        else:
            logger.info("Donation for intent %s completed (fee %s)", intent["id"], fee)
        return {"received": True, "event_type": event_type, "donation_updated": updated}

    if event_type == "payment_intent.payment_failed":
        updated = store.update_donation_payment(payment_intent_id=intent["id"], status="failed")
        logger.info("Donation for intent %s failed", intent["id"])
        return {"received": True, "event_type": event_type, "donation_updated": updated}

    logger.info("Ignoring Stripe event %s", event_type)
    return {"received": True, "event_type": event_type, "donation_updated": False}
