"""
Process configuration.

Everything is read from the environment once, at process start, and handed
to `create_app()`; nothing below reads `os.environ` after that.
"""
from __future__ import annotations
import os
from dataclasses import dataclass, field


def _env(name: str, default: str = "") -> str:
    return os.environ.get(name, default)


@dataclass(frozen=True)
class Settings:
    database_url: str
    session_secret: str = "dev-secret-change-me"
    base_url: str = "http://localhost:8000"
    currency: str = "usd"
    log_level: str = "INFO"

    # payment gateway: 'mock' | 'stripe'
    payment_gateway: str = "mock"
    mock_secret: str = "supersecret"
    mock_webhook_url: str = "http://localhost:8000/api/webhook"
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""

    # email provider (Resend HTTP API)
    email_api_key: str = ""
    email_api_url: str = "https://api.resend.com/emails"
    email_from: str = "Gala Tickets <tickets@example.org>"
    admin_email: str = "gala-admin@example.org"

    # webhook event de-dup store: 'sql' | 'redis'
    webhook_events_backend: str = "sql"
    redis_url: str = "redis://127.0.0.1:6379"

    db_pool: dict = field(default_factory=dict)

    @classmethod
    def from_env(cls) -> "Settings":
        database_url = _env("DATABASE_URL")
        if not database_url:
            raise RuntimeError("DATABASE_URL is not set")
        return cls(
            database_url=database_url,
            session_secret=_env("SESSION_SECRET", "dev-secret-change-me"),
            base_url=_env("BASE_URL", "http://localhost:8000").rstrip("/"),
            currency=_env("CURRENCY", "usd").lower(),
            log_level=_env("LOG_LEVEL", "INFO"),
            payment_gateway=_env("PAYMENT_GATEWAY", "mock").lower(),
            mock_secret=_env("MOCK_SECRET", "supersecret"),
            mock_webhook_url=_env(
                "MOCK_WEBHOOK_URL", "http://localhost:8000/api/webhook"
            ),
            stripe_secret_key=_env("STRIPE_SECRET_KEY"),
            stripe_webhook_secret=_env("STRIPE_WEBHOOK_SECRET"),
            email_api_key=_env("RESEND_API_KEY"),
            email_api_url=_env(
                "EMAIL_API_URL", "https://api.resend.com/emails"
            ),
            email_from=_env(
                "EMAIL_FROM", "Gala Tickets <tickets@example.org>"
            ),
            admin_email=_env("ADMIN_EMAIL", "gala-admin@example.org"),
            webhook_events_backend=_env(
                "WEBHOOK_EVENTS_BACKEND", "sql"
            ).lower(),
            redis_url=_env("REDIS_URL", "redis://127.0.0.1:6379"),
            db_pool={
                k: int(v) for k, v in (
                    ("pool_size", _env("DB_POOL_SIZE", "10")),
                    ("max_overflow", _env("DB_MAX_OVERFLOW", "10")),
                    ("pool_timeout", _env("DB_POOL_TIMEOUT", "30")),
                    ("gate_limit", _env("DB_GATE_LIMIT", "0")),
                )
            },
        )
