"""Lightweight configuration helpers for the gateway service."""
from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from pathlib import Path


DEFAULT_BRIDGE_URL = "http://wabridge:9001"
DEFAULT_AUTH_DIR = "./auth"
DEFAULT_DOMAIN = "s.whatsapp.net"
DEFAULT_API_KEY = "whatsapp_gateway_default_key"
DEFAULT_JWT_SECRET = "whatsapp_jwt_secret"


def _coerce_int(value: str | None, default: int = 0) -> int:
    if value is None:
        return default
    try:
        return int(str(value).strip() or default)
    except ValueError:
        return default


def _coerce_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    cleaned = value.strip().lower()
    if not cleaned:
        return default
    return cleaned in {"1", "true", "yes", "on"}


def _normalize_bridge_url(raw: str | None) -> str:
    if not raw:
        return DEFAULT_BRIDGE_URL
    cleaned = raw.strip()
    if not cleaned:
        return DEFAULT_BRIDGE_URL
    return cleaned.rstrip("/") or DEFAULT_BRIDGE_URL


def _parse_duration(raw: str | None, *, default: float) -> float:
    if not raw:
        return default
    cleaned = raw.strip().lower()
    if not cleaned:
        return default
    if cleaned.endswith("s"):
        cleaned = cleaned[:-1]
    try:
        value = float(cleaned)
    except ValueError:
        return default
    return value if value >= 0 else default


def _resolve_auth_dir(raw: str | None) -> Path:
    candidate = Path(raw or DEFAULT_AUTH_DIR)
    try:
        candidate.mkdir(parents=True, exist_ok=True)
    except OSError:
        alt = Path(tempfile.gettempdir()) / "wagateway-auth"
        alt.mkdir(parents=True, exist_ok=True)
        return alt
    return candidate


@dataclass(frozen=True, slots=True)
class GatewayConfig:
    host: str
    port: int
    api_key: str
    jwt_secret: str
    environment: str
    auth_dir: Path
    bridge_url: str
    bridge_token: str | None
    bridge_timeout: float
    bridge_poll_wait: float
    reconnect_delay: float
    pairing_code_wait: float
    shutdown_timeout: float
    logout_on_shutdown: bool
    default_phone_number: str | None
    default_domain: str
    log_level: str

    @property
    def development(self) -> bool:
        return self.environment == "development"


def gateway_config() -> GatewayConfig:
    environment = (os.getenv("GATEWAY_ENV") or "production").strip().lower() or "production"
    default_phone = (os.getenv("DEFAULT_PHONE_NUMBER") or "").strip() or None
    domain = (os.getenv("DEFAULT_DOMAIN") or DEFAULT_DOMAIN).strip().lstrip("@") or DEFAULT_DOMAIN

    return GatewayConfig(
        host=(os.getenv("HOST") or "0.0.0.0").strip() or "0.0.0.0",
        port=_coerce_int(os.getenv("PORT"), 3000),
        api_key=(os.getenv("API_KEY") or DEFAULT_API_KEY).strip(),
        jwt_secret=(os.getenv("JWT_SECRET") or DEFAULT_JWT_SECRET).strip(),
        environment=environment,
        auth_dir=_resolve_auth_dir(os.getenv("AUTH_DIR")),
        bridge_url=_normalize_bridge_url(os.getenv("BRIDGE_URL")),
        bridge_token=(os.getenv("BRIDGE_TOKEN") or "").strip() or None,
        bridge_timeout=_parse_duration(os.getenv("BRIDGE_TIMEOUT"), default=15.0),
        bridge_poll_wait=_parse_duration(os.getenv("BRIDGE_POLL_WAIT"), default=25.0),
        reconnect_delay=_parse_duration(os.getenv("RECONNECT_DELAY"), default=5.0),
        pairing_code_wait=_parse_duration(os.getenv("PAIRING_CODE_WAIT"), default=2.0),
        shutdown_timeout=_parse_duration(os.getenv("SHUTDOWN_TIMEOUT"), default=10.0),
        logout_on_shutdown=_coerce_bool(os.getenv("LOGOUT_ON_SHUTDOWN"), True),
        default_phone_number=default_phone,
        default_domain=domain,
        log_level=(os.getenv("LOG_LEVEL") or "INFO").strip().upper() or "INFO",
    )


__all__ = [
    "GatewayConfig",
    "DEFAULT_BRIDGE_URL",
    "DEFAULT_DOMAIN",
    "gateway_config",
]
