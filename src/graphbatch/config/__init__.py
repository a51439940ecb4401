"""Engine constants and settings loading.

Constants are the defaults. ``EngineSettings.from_settings`` overlays the
``engine`` section of the YAML settings file, then environment overrides.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields
from typing import Any, Dict, Final, Optional

import yaml
from dotenv import load_dotenv

from ..utils import getenv_f, getenv_i
from .validate import load_schema, validate_settings

logger: Final = logging.getLogger(__name__)

DEFAULT_SETTINGS_PATH: Final[str] = "config/settings.yaml"
META_API_VERSION: Final[str] = os.getenv("META_API_VERSION", "v23.0") or "v23.0"
GRAPH_BASE_URL: Final[str] = "https://graph.facebook.com"

# Credential pool
PRIMARY_CREDENTIAL_ID: Final[str] = "main_app"
DEFAULT_HOURLY_QUOTA: Final[int] = 200
HOURLY_WINDOW_SEC: Final[int] = 3600
SHARED_LIMIT_WINDOW_SEC: Final[int] = 10
SHARED_LIMIT_MIN_CREDENTIALS: Final[int] = 2
USAGE_WARNING_PCT: Final[float] = 90.0

# Rotation
MAX_ROTATION_ATTEMPTS: Final[int] = 3

# Grouping
MAX_OPERATIONS_PER_GROUP: Final[int] = 50
PAIRS_PER_GROUP_LIGHT: Final[int] = 5
PAIRS_PER_GROUP_MEDIUM: Final[int] = 3
PAIRS_PER_GROUP_HEAVY: Final[int] = 2
GROUP_DELAY_LIGHT_SEC: Final[float] = 1.5
GROUP_DELAY_MEDIUM_SEC: Final[float] = 2.0
GROUP_DELAY_HEAVY_SEC: Final[float] = 2.5
HEAVY_MEDIA_THRESHOLD: Final[int] = 3
HEAVY_TEXT_THRESHOLD: Final[int] = 3

# Retry phases
TOTAL_FAILURE_RETRY_CAP: Final[int] = 10
ORPHAN_RETRY_DELAY_SEC: Final[float] = 1.0
PAIR_RETRY_DELAY_SEC: Final[float] = 1.5

# Verification
VERIFY_DELETE_DELAY_SEC: Final[float] = 0.2
DEFAULT_COPY_PATTERN: Final[str] = r"- Copy (\d+)$"
READ_PAGE_LIMIT: Final[int] = 200

# Reporting
FAILURE_DETAIL_LIMIT: Final[int] = 20

# Transport
REQUEST_TIMEOUT_SEC: Final[float] = 30.0
BATCH_TIMEOUT_SEC: Final[float] = 120.0


@dataclass(frozen=True)
class EngineSettings:
    api_version: str = META_API_VERSION
    max_attempts: int = MAX_ROTATION_ATTEMPTS
    pairs_per_group: Optional[int] = None
    group_delay_sec: Optional[float] = None
    retry_cap: int = TOTAL_FAILURE_RETRY_CAP
    orphan_retry_delay_sec: float = ORPHAN_RETRY_DELAY_SEC
    pair_retry_delay_sec: float = PAIR_RETRY_DELAY_SEC
    verify_delete_delay_sec: float = VERIFY_DELETE_DELAY_SEC
    copy_pattern: str = DEFAULT_COPY_PATTERN
    failure_detail_limit: int = FAILURE_DETAIL_LIMIT
    request_timeout: float = REQUEST_TIMEOUT_SEC
    batch_timeout: float = BATCH_TIMEOUT_SEC

    @classmethod
    def from_settings(cls, cfg: Optional[Dict[str, Any]] = None) -> "EngineSettings":
        section = dict((cfg or {}).get("engine") or {})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(section) - known)
        if unknown:
            logger.warning(f"Ignoring unknown engine settings: {', '.join(unknown)}")
        values = {k: v for k, v in section.items() if k in known}
        if "api_version" in (cfg or {}):
            values.setdefault("api_version", cfg["api_version"])

        values["max_attempts"] = getenv_i("GRAPHBATCH_MAX_ATTEMPTS", values.get("max_attempts", MAX_ROTATION_ATTEMPTS))
        values["retry_cap"] = getenv_i("GRAPHBATCH_RETRY_CAP", values.get("retry_cap", TOTAL_FAILURE_RETRY_CAP))
        values["request_timeout"] = getenv_f("GRAPHBATCH_REQUEST_TIMEOUT", values.get("request_timeout", REQUEST_TIMEOUT_SEC))
        values["batch_timeout"] = getenv_f("GRAPHBATCH_BATCH_TIMEOUT", values.get("batch_timeout", BATCH_TIMEOUT_SEC))
        if os.getenv("GRAPHBATCH_PAIRS_PER_GROUP"):
            values["pairs_per_group"] = getenv_i("GRAPHBATCH_PAIRS_PER_GROUP", PAIRS_PER_GROUP_LIGHT)
        if os.getenv("GRAPHBATCH_GROUP_DELAY_SEC"):
            values["group_delay_sec"] = getenv_f("GRAPHBATCH_GROUP_DELAY_SEC", GROUP_DELAY_LIGHT_SEC)
        if os.getenv("META_API_VERSION"):
            values["api_version"] = os.environ["META_API_VERSION"]
        return cls(**values)


def load_yaml(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.warning(f"Settings file not found: {path}; using defaults")
        return {}


def load_settings(path: Optional[str] = None) -> Dict[str, Any]:
    """Load ``.env`` and the YAML settings file, then validate the result."""
    load_dotenv(override=False)
    path = path or os.getenv("GRAPHBATCH_SETTINGS") or DEFAULT_SETTINGS_PATH
    cfg = load_yaml(path)
    validate_settings(cfg)
    logger.info(f"Loaded settings from {path} ({len(cfg.get('credentials') or [])} credentials)")
    return cfg


__all__ = [
    "EngineSettings",
    "load_settings",
    "load_yaml",
    "load_schema",
    "validate_settings",
]
