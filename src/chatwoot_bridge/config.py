"""Application configuration loaded via python-decouple with typed helpers."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Final

from decouple import Config as DecoupleConfig, RepositoryEmpty, RepositoryEnv

_DOTENV_PATH: Final[Path] = Path(".env")


def _load_decouple() -> DecoupleConfig:
    # RepositoryEnv requires the file to exist
    if _DOTENV_PATH.exists():
        return DecoupleConfig(RepositoryEnv(str(_DOTENV_PATH)))
    return DecoupleConfig(RepositoryEmpty())


_decouple_config: Final[DecoupleConfig] = _load_decouple()


@dataclass(slots=True, frozen=True)
class HttpSettings:
    """HTTP transport related settings."""

    host: str
    port: int
    bearer_token: str | None
    request_log_enabled: bool


@dataclass(slots=True, frozen=True)
class CorsSettings:
    """CORS configuration for the HTTP app."""

    enabled: bool
    origins: list[str]


@dataclass(slots=True, frozen=True)
class ChatwootSettings:
    """Support-desk API and webhook settings."""

    base_url: str
    api_key: str
    account_id: str
    inbox_id: str
    timeout_seconds: float
    page_cap: int
    webhook_token: str | None
    ignore_groups: bool

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.api_key)


@dataclass(slots=True, frozen=True)
class TelegramSettings:
    """Telethon user-client credentials."""

    api_id: int
    api_hash: str
    session: str
    connection_retries: int

    @property
    def configured(self) -> bool:
        return bool(self.api_id and self.api_hash)


@dataclass(slots=True, frozen=True)
class DatabaseSettings:
    """Failure ledger database connectivity settings."""

    url: str
    echo: bool


@dataclass(slots=True, frozen=True)
class ReplaySettings:
    """Automatic replay of failed inbound forwards."""

    enabled: bool
    interval_seconds: int
    max_attempts: int
    backoff_seconds: int
    lease_seconds: int = 300


@dataclass(slots=True, frozen=True)
class Settings:
    """Top-level application settings."""

    environment: str
    http: HttpSettings
    cors: CorsSettings
    chatwoot: ChatwootSettings
    telegram: TelegramSettings
    database: DatabaseSettings
    replay: ReplaySettings
    # Logging
    log_level: str
    log_json_enabled: bool
    log_rich_enabled: bool


def _bool(value: str, *, default: bool) -> bool:
    normalized = value.strip().lower()
    if normalized in {"1", "true", "t", "yes", "y"}:
        return True
    if normalized in {"0", "false", "f", "no", "n"}:
        return False
    return default


def _int(value: str, *, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _float(value: str, *, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _csv(name: str, default: str) -> list[str]:
    raw = _decouple_config(name, default=default)
    return [part.strip() for part in raw.split(",") if part.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached application settings."""
    environment = _decouple_config("APP_ENVIRONMENT", default="development")

    http_settings = HttpSettings(
        host=_decouple_config("HTTP_HOST", default="0.0.0.0"),
        port=_int(_decouple_config("HTTP_PORT", default="3000"), default=3000),
        bearer_token=_decouple_config("API_BEARER_TOKEN", default="") or None,
        request_log_enabled=_bool(_decouple_config("HTTP_REQUEST_LOG_ENABLED", default="false"), default=False),
    )

    cors_settings = CorsSettings(
        enabled=_bool(_decouple_config("HTTP_CORS_ENABLED", default="false"), default=False),
        origins=_csv("HTTP_CORS_ORIGINS", default=""),
    )

    chatwoot_settings = ChatwootSettings(
        base_url=_decouple_config("CHATWOOT_URL", default="").rstrip("/"),
        api_key=_decouple_config("CHATWOOT_API_KEY", default=""),
        account_id=_decouple_config("CHATWOOT_ACCOUNT_ID", default="1"),
        inbox_id=_decouple_config("CHATWOOT_INBOX_ID", default="1"),
        timeout_seconds=_float(_decouple_config("CHATWOOT_TIMEOUT_SECONDS", default="10"), default=10.0),
        page_cap=max(1, _int(_decouple_config("CHATWOOT_PAGE_CAP", default="5"), default=5)),
        webhook_token=_decouple_config("CHATWOOT_WEBHOOK_TOKEN", default="") or None,
        ignore_groups=_bool(_decouple_config("CHATWOOT_IGNORE_GROUP", default="false"), default=False),
    )

    telegram_settings = TelegramSettings(
        api_id=_int(_decouple_config("TG_API_ID", default="0"), default=0),
        api_hash=_decouple_config("TG_API_HASH", default=""),
        session=_decouple_config("TG_SESSION", default=""),
        connection_retries=_int(_decouple_config("TG_CONNECTION_RETRIES", default="5"), default=5),
    )

    database_settings = DatabaseSettings(
        url=_decouple_config("DATABASE_URL", default="sqlite+aiosqlite:///./data/failures.sqlite3"),
        echo=_bool(_decouple_config("DATABASE_ECHO", default="false"), default=False),
    )

    replay_settings = ReplaySettings(
        enabled=_bool(_decouple_config("REPLAY_ENABLED", default="false"), default=False),
        interval_seconds=_int(_decouple_config("REPLAY_INTERVAL_SECONDS", default="60"), default=60),
        max_attempts=_int(_decouple_config("REPLAY_MAX_ATTEMPTS", default="5"), default=5),
        backoff_seconds=_int(_decouple_config("REPLAY_BACKOFF_SECONDS", default="30"), default=30),
        lease_seconds=_int(_decouple_config("REPLAY_LEASE_SECONDS", default="300"), default=300),
    )

    return Settings(
        environment=environment,
        http=http_settings,
        cors=cors_settings,
        chatwoot=chatwoot_settings,
        telegram=telegram_settings,
        database=database_settings,
        replay=replay_settings,
        log_level=_decouple_config("LOG_LEVEL", default="INFO"),
        log_json_enabled=_bool(_decouple_config("LOG_JSON_ENABLED", default="false"), default=False),
        log_rich_enabled=_bool(_decouple_config("LOG_RICH_ENABLED", default="true"), default=True),
    )
