"""Process-wide configuration.

Settings is built exactly once at startup (FastAPI lifespan or reaper
main) and handed to every component constructor.
"""

import os
from dataclasses import dataclass, field
from typing import Optional

from payrecon_api.config.env import (
    get_cors_origins,
    get_database_url,
    get_float,
    get_int,
    get_payrecon_env,
    get_paystack_secret_key,
    get_supabase_publishable_key,
)

DEFAULT_PAYSTACK_BASE_URL = "https://api.paystack.co"
DEFAULT_FRONTEND_URL = "http://localhost:5173"


@dataclass(frozen=True)
class Settings:
    """Immutable runtime configuration."""

    env: str
    database_url: str
    paystack_secret_key: Optional[str]
    db_pool: str = "nullpool"
    paystack_base_url: str = DEFAULT_PAYSTACK_BASE_URL
    verify_max_attempts: int = 3
    verify_retry_delay_seconds: float = 2.0
    gateway_timeout_seconds: float = 30.0
    frontend_url: str = DEFAULT_FRONTEND_URL
    default_currency: str = "NGN"
    cors_allowed_origins: list[str] = field(default_factory=list)
    log_level: str = "INFO"
    json_logs: bool = True
    supabase_url: Optional[str] = None
    supabase_publishable_key: Optional[str] = None

    @property
    def is_production(self) -> bool:
        return self.env in {"prod", "production"}

    @property
    def supabase_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_publishable_key)

    @property
    def paystack_configured(self) -> bool:
        return bool(self.paystack_secret_key)

    @classmethod
    def from_env(cls) -> "Settings":
        """Build Settings from environment variables (fail-fast on bad values)."""
        return cls(
            env=get_payrecon_env(),
            database_url=get_database_url(),
            db_pool=os.getenv("PAYRECON_DB_POOL", "nullpool").lower(),
            paystack_secret_key=get_paystack_secret_key(),
            paystack_base_url=os.getenv("PAYSTACK_BASE_URL", DEFAULT_PAYSTACK_BASE_URL).rstrip("/"),
            verify_max_attempts=get_int("PAYSTACK_VERIFY_MAX_ATTEMPTS", 3),
            verify_retry_delay_seconds=get_float("PAYSTACK_VERIFY_RETRY_DELAY_SECONDS", 2.0),
            gateway_timeout_seconds=get_float("PAYSTACK_TIMEOUT_SECONDS", 30.0),
            frontend_url=os.getenv("FRONTEND_URL", DEFAULT_FRONTEND_URL),
            default_currency=os.getenv("PAYRECON_DEFAULT_CURRENCY", "NGN").upper(),
            cors_allowed_origins=get_cors_origins(),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            json_logs=os.getenv("PAYRECON_JSON_LOGS", "true").lower() != "false",
            supabase_url=os.getenv("SUPABASE_URL") or None,
            supabase_publishable_key=get_supabase_publishable_key(),
        )
