from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple

from errors import ConfigurationError

DEFAULT_PLUNK_API_URL = "https://api.useplunk.com/v1/send"
DEFAULT_VIPPS_BASE_URL = "https://apitest.vipps.no"
DEFAULT_SITE_URL = "https://bjørkvang.no"
DEFAULT_ALLOWED_ORIGINS = (
    "https://xn--bjrkvang-64a.no",
    "https://bjorkvang.no",
    "http://localhost:5500",
    "http://127.0.0.1:5500",
)
VIPPS_MODES = {"mock", "live", "disabled"}


def env_first(*names: str, default: str = "") -> str:
    for name in names:
        value = (os.environ.get(name) or "").strip()
        if value:
            return value
    return default


def app_env() -> str:
    return env_first("APP_ENV", "ENV", "PYTHON_ENV", default="development").lower()


def is_production() -> bool:
    return app_env() in {"production", "prod"}


def board_email() -> str:
    return env_first("BOARD_TO_ADDRESS", "DEFAULT_TO_ADDRESS")


def from_address() -> str:
    return env_first("DEFAULT_FROM_ADDRESS")


def admin_password() -> str:
    return env_first("ADMIN_PASSWORD")


def action_link_secret() -> str:
    return env_first("ACTION_LINK_SECRET", "ADMIN_SESSION_SECRET")


def plunk_api_token() -> str:
    return env_first("PLUNK_API_TOKEN")


def plunk_api_url() -> str:
    return env_first("PLUNK_API_URL", default=DEFAULT_PLUNK_API_URL)


def public_base_url() -> str:
    return env_first("PUBLIC_FUNCTION_BASE_URL").rstrip("/")


def site_url() -> str:
    return env_first("PUBLIC_SITE_URL", default=DEFAULT_SITE_URL).rstrip("/")


def allowed_origins() -> Tuple[str, ...]:
    raw = env_first("ALLOWED_ORIGINS")
    if not raw:
        return DEFAULT_ALLOWED_ORIGINS
    return tuple(origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip())


def vipps_mode() -> str:
    default = "disabled" if is_production() else "mock"
    return env_first("VIPPS_MODE", default=default).lower()


def vipps_base_url() -> str:
    return env_first("VIPPS_BASE_URL", default=DEFAULT_VIPPS_BASE_URL).rstrip("/")


def vipps_client_id() -> str:
    return env_first("VIPPS_CLIENT_ID")


def vipps_client_secret() -> str:
    return env_first("VIPPS_CLIENT_SECRET")


def vipps_subscription_key() -> str:
    return env_first("VIPPS_SUBSCRIPTION_KEY")


def vipps_merchant_serial_number() -> str:
    return env_first("VIPPS_MERCHANT_SERIAL_NUMBER")


def webhook_secret() -> str:
    return env_first("WEBHOOK_SECRET", "VIPPS_WEBHOOK_SECRET")


def log_level() -> str:
    return env_first("LOG_LEVEL", default="INFO").upper()


def port() -> int:
    raw = env_first("PORT", default="8000")
    try:
        return int(raw)
    except ValueError:
        return 8000


def db_path() -> Optional[Path]:
    configured = env_first("DATABASE_PATH")
    if not configured:
        return None
    return Path(configured).expanduser()


@dataclass(frozen=True)
class Settings:
    """Runtime configuration resolved once at process start."""

    environment: str = "development"
    board_email: str = ""
    from_address: str = ""
    admin_password: str = ""
    action_link_secret: str = ""
    plunk_api_token: str = ""
    plunk_api_url: str = DEFAULT_PLUNK_API_URL
    database_path: Optional[Path] = None
    public_base_url: str = ""
    site_url: str = DEFAULT_SITE_URL
    allowed_origins: Tuple[str, ...] = DEFAULT_ALLOWED_ORIGINS
    vipps_mode: str = "mock"
    vipps_base_url: str = DEFAULT_VIPPS_BASE_URL
    vipps_client_id: str = ""
    vipps_client_secret: str = ""
    vipps_subscription_key: str = ""
    vipps_merchant_serial_number: str = ""
    webhook_secret: str = ""
    port: int = 8000
    log_level: str = "INFO"
    service_name: str = field(default="bjorkvang-booking")

    @property
    def is_production(self) -> bool:
        return self.environment in {"production", "prod"}

    @property
    def link_secret(self) -> str:
        return self.action_link_secret or self.admin_password

    @property
    def email_configured(self) -> bool:
        return bool(self.plunk_api_token and self.from_address)

    def validate(self) -> "Settings":
        """Fail fast on configuration that cannot work in this environment.

        Production must carry every secret. Development tolerates missing
        email and storage settings; the service then falls back to the log
        email provider and the in-memory store.
        """
        if self.vipps_mode not in VIPPS_MODES:
            raise ConfigurationError(f"VIPPS_MODE must be one of: {', '.join(sorted(VIPPS_MODES))}")
        if self.vipps_mode == "live":
            missing_vipps = [
                name
                for name, value in (
                    ("VIPPS_CLIENT_ID", self.vipps_client_id),
                    ("VIPPS_CLIENT_SECRET", self.vipps_client_secret),
                    ("VIPPS_SUBSCRIPTION_KEY", self.vipps_subscription_key),
                    ("VIPPS_MERCHANT_SERIAL_NUMBER", self.vipps_merchant_serial_number),
                )
                if not value
            ]
            if missing_vipps:
                raise ConfigurationError(f"VIPPS_MODE=live requires {', '.join(missing_vipps)}")
        if not self.is_production:
            return self

        missing = [
            name
            for name, value in (
                ("ADMIN_PASSWORD", self.admin_password),
                ("BOARD_TO_ADDRESS", self.board_email),
                ("DEFAULT_FROM_ADDRESS", self.from_address),
                ("PLUNK_API_TOKEN", self.plunk_api_token),
                ("DATABASE_PATH", str(self.database_path or "")),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(f"{', '.join(missing)} required in production environments")
        if self.vipps_mode == "mock":
            raise ConfigurationError("VIPPS_MODE=mock is not allowed in production environments")
        return self


def load_settings() -> Settings:
    """Build and validate settings from the process environment."""
    return Settings(
        environment=app_env(),
        board_email=board_email(),
        from_address=from_address(),
        admin_password=admin_password(),
        action_link_secret=action_link_secret(),
        plunk_api_token=plunk_api_token(),
        plunk_api_url=plunk_api_url(),
        database_path=db_path(),
        public_base_url=public_base_url(),
        site_url=site_url(),
        allowed_origins=allowed_origins(),
        vipps_mode=vipps_mode(),
        vipps_base_url=vipps_base_url(),
        vipps_client_id=vipps_client_id(),
        vipps_client_secret=vipps_client_secret(),
        vipps_subscription_key=vipps_subscription_key(),
        vipps_merchant_serial_number=vipps_merchant_serial_number(),
        webhook_secret=webhook_secret(),
        port=port(),
        log_level=log_level(),
    ).validate()
