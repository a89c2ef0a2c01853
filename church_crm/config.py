"""
Runtime configuration read from the environment.

Variables (a local .env file is loaded first when present):
  - CHURCH_CRM_DB_PATH (default: .data/church_crm.db)
  - CHURCH_CRM_BASE_URL (default: http://localhost:8501)
  - CHURCH_CRM_LOG_LEVEL (default: INFO)
  - STRIPE_SECRET_KEY, STRIPE_WEBHOOK_SECRET
  - SENDGRID_API_KEY
  - TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(frozen=True)
class Settings:
    db_path: Path
    base_url: str
    log_level: str
    stripe_secret_key: str | None
    stripe_webhook_secret: str | None
    sendgrid_api_key: str | None
    twilio_account_sid: str | None
    twilio_auth_token: str | None


def _env(name: str) -> str | None:
    value = os.environ.get(name, "").strip()
    return value or None


def load_settings(env_file: str | Path | None = None) -> Settings:
    load_dotenv(env_file)
    return Settings(
        db_path=Path(_env("CHURCH_CRM_DB_PATH") or ".data/church_crm.db").expanduser(),
        base_url=(_env("CHURCH_CRM_BASE_URL") or "http://localhost:8501").rstrip("/"),
        log_level=(_env("CHURCH_CRM_LOG_LEVEL") or "INFO").upper(),
        stripe_secret_key=_env("STRIPE_SECRET_KEY"),
        stripe_webhook_secret=_env("STRIPE_WEBHOOK_SECRET"),
        sendgrid_api_key=_env("SENDGRID_API_KEY"),
        twilio_account_sid=_env("TWILIO_ACCOUNT_SID"),
        twilio_auth_token=_env("TWILIO_AUTH_TOKEN"),
    )


def configure_logging(level: str = "INFO") -> None:
    """Install a single stream handler on the root logger."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    if not any(getattr(handler, "_church_crm", False) for handler in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._church_crm = True  # type: ignore[attr-defined]
        root.addHandler(handler)
