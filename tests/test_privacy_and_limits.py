from __future__ import annotations

import sqlite3

import requests

from church_crm.errors import RecognitionError, categorize_error, fallback_result
from church_crm.privacy import (
    display_mask_email,
    display_mask_phone,
    email_variations,
    mask_email,
    mask_phone,
    normalize_phone,
    sanitize_recognition_input,
)
from church_crm.rate_limit import FixedWindowLimiter, client_identifier


def test_normalize_phone() -> None:
    assert normalize_phone("(402) 555-0100") == "+14025550100"
    assert normalize_phone("1-402-555-0100") == "+14025550100"
    assert normalize_phone("+44 20 7946 0958") == "+442079460958"
    assert normalize_phone("555-0100") is None
    assert normalize_phone(None) is None


def test_gmail_variations_cover_dots_and_plus_tags() -> None:
    variations = email_variations("Jane.Doe+church@gmail.com")

    assert "janedoe@gmail.com" in variations
    assert "jane.doe@googlemail.com" in variations
    assert "jane.doe+church@gmail.com" in variations
    assert email_variations("pastor@grace.example") == ["pastor@grace.example"]


def test_masking_for_submitters_and_admins() -> None:
    assert mask_email("avery.mills@example.org") == "a****s@example.org"
    assert mask_email("bob@example.org") == "***@example.org"
    assert mask_email("not-an-email") == ""
    assert mask_phone("+14025550100") == "(402) ***-0100"
    assert mask_phone("+442079460958") == "***-***-0958"

    assert display_mask_email("avery@example.org") == "av***@example.org"
    assert display_mask_phone("14025550100") == "+1 (402) ***-0100"
    assert display_mask_phone("4025550100") == "***-***-0100"


def test_sanitize_recognition_input() -> None:
    cleaned = sanitize_recognition_input(
        {"first_name": "  Ruth ", "email": " Ruth@Example.ORG ", "phone": "(402) 555-0100", "zip_code": "68102-1234", "city": ""}
    )

    assert cleaned["first_name"] == "Ruth"
    assert cleaned["email"] == "ruth@example.org"
    assert cleaned["phone"] == "4025550100"
    assert cleaned["zip_code"] == "681021234"
    assert cleaned["city"] is None
    assert cleaned["last_name"] is None


def test_fixed_window_limiter_resets_after_window() -> None:
    now = [0.0]
    limiter = FixedWindowLimiter(max_requests=2, window_seconds=10, clock=lambda: now[0])

    assert limiter.check("a").allowed
    assert limiter.check("a").remaining == 0
    blocked = limiter.check("a")
    assert blocked.allowed is False
    assert blocked.retry_after == 10
    assert limiter.check("b").allowed

    now[0] = 10.5
    assert limiter.check("a").allowed
    assert limiter.purge_expired() == 1
    now[0] = 30.0
    assert limiter.purge_expired() == 1


def test_client_identifier_uses_first_forwarded_ip() -> None:
    identifier = client_identifier("203.0.113.7, 10.0.0.1", "Mozilla/5.0")

    assert identifier.startswith("203.0.113.7:")
    assert len(identifier.split(":")[1]) == 8
    assert client_identifier(None) == "unknown:unknown"


def test_error_categories_and_fallback() -> None:
    assert categorize_error(sqlite3.OperationalError("locked")).code == "DATABASE_ERROR"
    assert categorize_error(requests.Timeout()).code == "RECOGNITION_TIMEOUT"
    assert categorize_error(requests.ConnectionError()).code == "NETWORK_ERROR"
    assert categorize_error(ValueError("Bad email")).user_message == "Please check your information and try again."

    response = requests.Response()
    response.status_code = 503
    assert categorize_error(requests.HTTPError(response=response)).code == "SERVER_ERROR"

    unknown = RecognitionError("SOMETHING_ELSE", "odd")
    assert unknown.code == "UNKNOWN_ERROR"
    assert fallback_result(unknown) == {
        "status": "no_match",
        "confidence": 0,
        "display_message": None,
        "masked_data": None,
        "requires_admin_review": False,
        "error_code": "UNKNOWN_ERROR",
    }
