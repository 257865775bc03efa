"""
Configuration management via environment variables.
All configuration with sensible defaults.
"""

import os
from dataclasses import dataclass, field
from typing import Optional


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Config:
    """Journal service configuration from environment variables."""

    # Supabase
    supabase_url: str = field(default_factory=lambda: os.getenv("SUPABASE_URL", ""))
    supabase_anon_key: str = field(
        default_factory=lambda: os.getenv("SUPABASE_ANON_KEY", "")
    )
    supabase_service_role_key: str = field(
        default_factory=lambda: os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")
    )

    # Public app URL used for payment return/cancel links
    app_url: str = field(
        default_factory=lambda: os.getenv("APP_URL", "http://localhost:3000")
    )

    # Cron endpoints
    cron_secret: Optional[str] = field(
        default_factory=lambda: os.getenv("CRON_SECRET") or None
    )

    # PayPal
    paypal_client_id: str = field(
        default_factory=lambda: os.getenv("PAYPAL_CLIENT_ID", "")
    )
    paypal_client_secret: str = field(
        default_factory=lambda: os.getenv("PAYPAL_CLIENT_SECRET", "")
    )
    paypal_env: str = field(default_factory=lambda: os.getenv("PAYPAL_ENV", "sandbox"))
    paypal_webhook_id: Optional[str] = field(
        default_factory=lambda: os.getenv("PAYPAL_WEBHOOK_ID") or None
    )

    # Cashfree
    cashfree_app_id: str = field(
        default_factory=lambda: os.getenv("CASHFREE_APP_ID", "")
    )
    cashfree_secret_key: str = field(
        default_factory=lambda: os.getenv("CASHFREE_SECRET_KEY", "")
    )
    cashfree_env: str = field(
        default_factory=lambda: os.getenv("CASHFREE_ENV", "sandbox")
    )

    # NOWPayments
    nowpayments_api_key: str = field(
        default_factory=lambda: os.getenv("NOWPAYMENTS_API_KEY", "")
    )
    nowpayments_ipn_secret: str = field(
        default_factory=lambda: os.getenv("NOWPAYMENTS_IPN_SECRET", "")
    )

    # Brevo transactional email
    brevo_api_key: str = field(default_factory=lambda: os.getenv("BREVO_API_KEY", ""))
    brevo_sender_email: str = field(
        default_factory=lambda: os.getenv("BREVO_SENDER_EMAIL", "noreply@tradelens.app")
    )
    brevo_sender_name: str = field(
        default_factory=lambda: os.getenv("BREVO_SENDER_NAME", "TradeLens")
    )

    # Email queue
    email_batch_size: int = field(
        default_factory=lambda: int(os.getenv("EMAIL_BATCH_SIZE", "50"))
    )
    email_max_retries: int = field(
        default_factory=lambda: int(os.getenv("EMAIL_MAX_RETRIES", "3"))
    )
    email_worker_enabled: bool = field(
        default_factory=lambda: _env_bool("EMAIL_WORKER_ENABLED")
    )
    email_worker_interval_sec: int = field(
        default_factory=lambda: int(os.getenv("EMAIL_WORKER_INTERVAL_SEC", "60"))
    )

    # Rate limits (requests per window, per user)
    payment_rate_limit: int = field(
        default_factory=lambda: int(os.getenv("PAYMENT_RATE_LIMIT", "10"))
    )
    community_rate_limit: int = field(
        default_factory=lambda: int(os.getenv("COMMUNITY_RATE_LIMIT", "100"))
    )
    rate_limit_window_sec: int = field(
        default_factory=lambda: int(os.getenv("RATE_LIMIT_WINDOW_SEC", "3600"))
    )

    # Outbound HTTP
    http_timeout_sec: float = field(
        default_factory=lambda: float(os.getenv("HTTP_TIMEOUT_SEC", "10"))
    )

    @property
    def paypal_base_url(self) -> str:
        if self.paypal_env == "production":
            return "https://api-m.paypal.com"
        return "https://api-m.sandbox.paypal.com"

    @property
    def cashfree_base_url(self) -> str:
        if self.cashfree_env == "production":
            return "https://api.cashfree.com/pg"
        return "https://sandbox.cashfree.com/pg"

    def validate(self) -> None:
        """Validate configuration."""
        if self.email_batch_size <= 0:
            raise ValueError("Email batch size must be positive")
        if self.email_max_retries <= 0:
            raise ValueError("Email max retries must be positive")
        if self.email_worker_interval_sec <= 0:
            raise ValueError("Email worker interval must be positive")
        if self.payment_rate_limit <= 0 or self.community_rate_limit <= 0:
            raise ValueError("Rate limits must be positive")
        if self.rate_limit_window_sec <= 0:
            raise ValueError("Rate limit window must be positive")
        if self.paypal_env not in ("sandbox", "production"):
            raise ValueError("PAYPAL_ENV must be sandbox or production")
        if self.cashfree_env not in ("sandbox", "production"):
            raise ValueError("CASHFREE_ENV must be sandbox or production")


# Global config instance
_config: Config | None = None


def get_config() -> Config:
    """Get or create global config instance."""
    global _config
    if _config is None:
        _config = Config()
        _config.validate()
    return _config


def reset_config() -> None:
    """Reset config for testing."""
    global _config
    _config = None
