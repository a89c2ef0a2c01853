"""Data and helpers for the church management app."""

from .store import (
    ChurchStore,
    cents_from_amount,
    format_currency,
    member_display_name,
    month_bounds,
)
from .compliance import ComplianceManager, validate_message_compliance
from .config import Settings, configure_logging, load_settings
from .errors import RateLimitExceeded, RecognitionError
from .forms import FormDefinition, save_form, submit_registration
from .messaging import MessageDispatcher, SmsInbox, process_sendgrid_events, providers_for_church
from .payments import StripeGateway, create_online_donation, handle_payment_webhook
from .recognition import ProgressiveRecognition

__all__ = [
    "ChurchStore",
    "ComplianceManager",
    "FormDefinition",
    "MessageDispatcher",
    "ProgressiveRecognition",
    "RateLimitExceeded",
    "RecognitionError",
    "Settings",
    "SmsInbox",
    "StripeGateway",
    "cents_from_amount",
    "configure_logging",
    "create_online_donation",
    "format_currency",
    "handle_payment_webhook",
    "load_settings",
    "member_display_name",
    "month_bounds",
    "process_sendgrid_events",
    "providers_for_church",
    "save_form",
    "submit_registration",
    "validate_message_compliance",
]
