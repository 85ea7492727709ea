"""
Sync client configuration.

Sources, lowest to highest precedence:
- dataclass defaults
- JSON file (CHANNELSYNC_CONFIG, default shared/config/channelsync.json)
- environment variables (a .env file is loaded first via python-dotenv)

A missing or malformed JSON file is not fatal: a warning is logged and the
defaults are used.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from dotenv import load_dotenv

from shared.logging.logger import get_logger

log = get_logger("shared.config.sync")

_CONFIG_PATH = Path(__file__).parent / "channelsync.json"

PRESENTERS = {"auto", "notify-send", "log"}


@dataclass
class ApiConfig:
    base_url: str = "http://localhost:3000"
    prefix: str = "/api"
    token: Optional[str] = None
    timeout_seconds: float = 10.0
    session_path: str = "/auth/session"


@dataclass
class FeedConfig:
    ready_timeout_seconds: float = 5.0
    max_failures: int = 5
    max_backoff_seconds: float = 30.0


@dataclass
class NotificationConfig:
    enabled: bool = True
    presenter: str = "auto"
    body_limit: int = 120


@dataclass
class SyncConfig:
    api: ApiConfig = field(default_factory=ApiConfig)
    feed: FeedConfig = field(default_factory=FeedConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)


# ------------------------------------------------------------
# Helpers
# ------------------------------------------------------------

def _load_json(path: Path) -> Dict[str, Any]:
    if not path.exists():
        log.debug(f"Config file not found at {path}; using defaults")
        return {}

    try:
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        log.warning(f"Failed to load config file {path} ({e}); using defaults")
        return {}

    if not isinstance(data, dict):
        log.warning(f"Config root in {path} is not an object; ignoring")
        return {}
    return data


def _as_float(value: Any, default: float, name: str) -> float:
    if value is None:
        return default
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        log.warning(f"{name} must be a number; defaulting to {default}")
        return default
    if parsed <= 0:
        log.warning(f"{name} must be positive; defaulting to {default}")
        return default
    return parsed


def _as_int(value: Any, default: int, name: str) -> int:
    if value is None:
        return default
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        log.warning(f"{name} must be an integer; defaulting to {default}")
        return default
    if parsed <= 0:
        log.warning(f"{name} must be positive; defaulting to {default}")
        return default
    return parsed


def _as_bool(value: Any, default: bool, name: str) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in {"1", "true", "yes", "on"}:
        return True
    if text in {"0", "false", "no", "off"}:
        return False
    log.warning(f"{name} must be boolean; defaulting to {default}")
    return default


def _section(raw: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = raw.get(name)
    return value if isinstance(value, dict) else {}


def _load_api(raw: Dict[str, Any], env: Mapping[str, str]) -> ApiConfig:
    defaults = ApiConfig()

    base_url = env.get("CHANNELSYNC_API_URL") or raw.get("base_url") or defaults.base_url
    prefix = env.get("CHANNELSYNC_API_PREFIX")
    if prefix is None:
        prefix = raw.get("prefix", defaults.prefix)
    token = env.get("CHANNELSYNC_API_TOKEN") or raw.get("token") or None
    session_path = raw.get("session_path") or defaults.session_path

    timeout = _as_float(
        env.get("CHANNELSYNC_TIMEOUT", raw.get("timeout_seconds")),
        defaults.timeout_seconds,
        "api.timeout_seconds",
    )

    prefix = str(prefix or "").rstrip("/")
    if prefix and not prefix.startswith("/"):
        prefix = "/" + prefix

    return ApiConfig(
        base_url=str(base_url).rstrip("/"),
        prefix=prefix,
        token=str(token) if token else None,
        timeout_seconds=timeout,
        session_path=str(session_path),
    )


def _load_feed(raw: Dict[str, Any], env: Mapping[str, str]) -> FeedConfig:
    defaults = FeedConfig()
    return FeedConfig(
        ready_timeout_seconds=_as_float(
            env.get("CHANNELSYNC_FEED_READY_TIMEOUT", raw.get("ready_timeout_seconds")),
            defaults.ready_timeout_seconds,
            "feed.ready_timeout_seconds",
        ),
        max_failures=_as_int(
            raw.get("max_failures"), defaults.max_failures, "feed.max_failures"
        ),
        max_backoff_seconds=_as_float(
            raw.get("max_backoff_seconds"),
            defaults.max_backoff_seconds,
            "feed.max_backoff_seconds",
        ),
    )


def _load_notifications(raw: Dict[str, Any], env: Mapping[str, str]) -> NotificationConfig:
    defaults = NotificationConfig()

    presenter = str(
        env.get("CHANNELSYNC_NOTIFIER") or raw.get("presenter") or defaults.presenter
    ).strip().lower()
    if presenter not in PRESENTERS:
        log.warning(f"Unknown notification presenter '{presenter}'; using 'auto'")
        presenter = defaults.presenter

    return NotificationConfig(
        enabled=_as_bool(
            env.get("CHANNELSYNC_NOTIFICATIONS", raw.get("enabled")),
            defaults.enabled,
            "notifications.enabled",
        ),
        presenter=presenter,
        body_limit=_as_int(
            raw.get("body_limit"), defaults.body_limit, "notifications.body_limit"
        ),
    )


# ------------------------------------------------------------
# Public API
# ------------------------------------------------------------

def load_sync_config(
    raw: Optional[Dict[str, Any]] = None,
    *,
    env: Optional[Mapping[str, str]] = None,
) -> SyncConfig:
    """
    Build the client configuration.

    raw and env exist for callers that already hold the documents (tests,
    embedding applications); by default the JSON file and os.environ are read.
    """
    if env is None:
        load_dotenv()
        env = os.environ

    if raw is None:
        path = Path(env.get("CHANNELSYNC_CONFIG") or _CONFIG_PATH)
        raw = _load_json(path)

    return SyncConfig(
        api=_load_api(_section(raw, "api"), env),
        feed=_load_feed(_section(raw, "feed"), env),
        notifications=_load_notifications(_section(raw, "notifications"), env),
    )


__all__ = [
    "ApiConfig",
    "FeedConfig",
    "NotificationConfig",
    "SyncConfig",
    "load_sync_config",
]
