from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from typing import Any, Mapping, Tuple

from .lifecycle import LifecycleConfig

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass(frozen=True)
class BridgeConfig:
    host: str = "127.0.0.1"
    port: int = 3000
    auth_dir: str = "./auth"
    db_path: str | None = None
    max_retries: int = 5
    retry_base_delay_s: float = 3.0
    retry_max_delay_s: float = 15.0
    unauthorized_restart_delay_s: float = 1.0
    contacts_flush_delays_s: Tuple[float, ...] = field(default=(2.0, 5.0))
    ws_heartbeat_s: float = 30.0
    max_msg_size: int = 1_048_576
    auto_start: bool = True
    session_client: str | None = None
    log_level: str = "INFO"

    def lifecycle(self) -> LifecycleConfig:
        return LifecycleConfig(
            max_retries=self.max_retries,
            retry_base_delay_s=self.retry_base_delay_s,
            retry_max_delay_s=self.retry_max_delay_s,
            unauthorized_restart_delay_s=self.unauthorized_restart_delay_s,
        )

    def with_overrides(self, **overrides: Any) -> "BridgeConfig":
        """Return a copy with every non-``None`` override applied."""

        return replace(self, **{key: value for key, value in overrides.items() if value is not None})


def _get(env: Mapping[str, str], name: str) -> str | None:
    raw = env.get(name)
    if raw is None or raw == "":
        return None
    return raw


def _parse_non_negative_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = _get(env, name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be non-negative")
    return parsed


def _parse_non_negative_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = _get(env, name)
    if raw is None:
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be non-negative")
    return parsed


def _parse_bool01(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = _get(env, name)
    if raw is None:
        return default
    if raw not in {"0", "1"}:
        raise ValueError(f"{name} must be 0 or 1")
    return raw == "1"


def _parse_log_level(env: Mapping[str, str], name: str, default: str) -> str:
    raw = _get(env, name)
    if raw is None:
        return default
    level = raw.upper()
    if level not in _LOG_LEVELS:
        raise ValueError(f"{name} must be one of {', '.join(sorted(_LOG_LEVELS))}")
    return level


def load_config_from_env(env: Mapping[str, str] | None = None) -> BridgeConfig:
    if env is None:
        env = os.environ
    defaults = BridgeConfig()
    port = _parse_non_negative_int(env, "BRIDGE_PORT", defaults.port)
    if port > 65535:
        raise ValueError("BRIDGE_PORT must be at most 65535")
    return BridgeConfig(
        host=_get(env, "BRIDGE_HOST") or defaults.host,
        port=port,
        auth_dir=_get(env, "BRIDGE_AUTH_DIR") or defaults.auth_dir,
        db_path=_get(env, "BRIDGE_DB_PATH"),
        max_retries=_parse_non_negative_int(env, "BRIDGE_MAX_RETRIES", defaults.max_retries),
        retry_base_delay_s=_parse_non_negative_float(env, "BRIDGE_RETRY_BASE_DELAY_S", defaults.retry_base_delay_s),
        retry_max_delay_s=_parse_non_negative_float(env, "BRIDGE_RETRY_MAX_DELAY_S", defaults.retry_max_delay_s),
        ws_heartbeat_s=_parse_non_negative_float(env, "BRIDGE_WS_HEARTBEAT_S", defaults.ws_heartbeat_s),
        auto_start=_parse_bool01(env, "BRIDGE_AUTO_START", defaults.auto_start),
        session_client=_get(env, "BRIDGE_SESSION_CLIENT"),
        log_level=_parse_log_level(env, "BRIDGE_LOG_LEVEL", defaults.log_level),
    )
