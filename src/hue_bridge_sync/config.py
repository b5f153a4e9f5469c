from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import os


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _bool(value: str | None, default: bool) -> bool:
    if value is None or not value.strip():
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _default_db_path() -> str:
    return os.path.join(os.getcwd(), ".data", "hue-bridge-sync.db")


@dataclass(frozen=True)
class AppConfig:
    port: int
    bridge_host: Optional[str]
    application_key: Optional[str]
    use_event_stream: bool
    auth_tokens: list[str]
    db_path: str
    hi_rez_hue: bool
    xy_parsing_mode: str
    command_event_mode: str
    stream_grace_seconds: float
    stream_backoff_base_seconds: float
    stream_backoff_max_seconds: float
    request_timeout_seconds: float
    poll_interval_seconds: int
    rediscovery_cooldown_seconds: float
    retry_max_attempts: int
    retry_base_delay_ms: int
    auto_register_devices: bool
    log_level: str

    @staticmethod
    def from_env() -> "AppConfig":
        xy_mode = os.getenv("HUE_XY_PARSING_MODE", "hs").strip().lower()
        if xy_mode not in {"hs", "ct"}:
            raise ValueError(f"HUE_XY_PARSING_MODE must be 'hs' or 'ct', got {xy_mode!r}")
        event_mode = os.getenv("COMMAND_EVENT_MODE", "confirmed").strip().lower()
        if event_mode not in {"confirmed", "optimistic"}:
            raise ValueError(f"COMMAND_EVENT_MODE must be 'confirmed' or 'optimistic', got {event_mode!r}")
        return AppConfig(
            port=int(os.getenv("PORT", "8000")),
            bridge_host=os.getenv("HUE_BRIDGE_HOST"),
            application_key=os.getenv("HUE_APPLICATION_KEY"),
            use_event_stream=_bool(os.getenv("HUE_USE_EVENT_STREAM"), True),
            auth_tokens=_split_csv(os.getenv("GATEWAY_AUTH_TOKENS")),
            db_path=os.getenv("DB_PATH") or _default_db_path(),
            hi_rez_hue=_bool(os.getenv("HUE_HI_REZ_HUE"), False),
            xy_parsing_mode=xy_mode,
            command_event_mode=event_mode,
            stream_grace_seconds=float(os.getenv("STREAM_GRACE_SECONDS", "8")),
            stream_backoff_base_seconds=float(os.getenv("STREAM_BACKOFF_BASE_SECONDS", "3")),
            stream_backoff_max_seconds=float(os.getenv("STREAM_BACKOFF_MAX_SECONDS", "900")),
            request_timeout_seconds=float(os.getenv("REQUEST_TIMEOUT_SECONDS", "15")),
            poll_interval_seconds=int(os.getenv("POLL_INTERVAL_SECONDS", "60")),
            rediscovery_cooldown_seconds=float(os.getenv("REDISCOVERY_COOLDOWN_SECONDS", "300")),
            retry_max_attempts=int(os.getenv("RETRY_MAX_ATTEMPTS", "3")),
            retry_base_delay_ms=int(os.getenv("RETRY_BASE_DELAY_MS", "200")),
            auto_register_devices=_bool(os.getenv("AUTO_REGISTER_DEVICES"), True),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
