"""Extraction defaults (timeouts, headers, target element, env names).

Centralizes static defaults so extract.py has no embedded magic strings.
Callers can inject their own ExtractConfig to override any of them.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

# Headers
HDR_USER_AGENT = "User-Agent"
HDR_ACCEPT_ENCODING = "Accept-Encoding"
HDR_CONTENT_TYPE = "content-type"
HDR_CONTENT_DISPOSITION = "content-disposition"

# Request defaults
DEFAULT_USER_AGENT = "-"
DEFAULT_ACCEPT_ENCODING = "gzip"
DEFAULT_REQUEST_TIMEOUT = 20.0

# Sandbox defaults (milliseconds)
DEFAULT_SCRIPT_TIMEOUT_MS = 1000
DEFAULT_READ_TIMEOUT_MS = 1000
DEFAULT_BOOT_TIMEOUT_MS = 5000

# Page logic
DEFAULT_TARGET_ID = "dlbutton"
STRATEGY_ACCUMULATE = "accumulate"
STRATEGY_FIRST = "first"
STRATEGIES = (STRATEGY_ACCUMULATE, STRATEGY_FIRST)

# Environment overrides
ENV_SCRIPT_TIMEOUT_MS = "SHARELINK_SCRIPT_TIMEOUT_MS"
ENV_READ_TIMEOUT_MS = "SHARELINK_READ_TIMEOUT_MS"
ENV_BOOT_TIMEOUT_MS = "SHARELINK_BOOT_TIMEOUT_MS"
ENV_REQUEST_TIMEOUT = "SHARELINK_REQUEST_TIMEOUT"
ENV_USER_AGENT = "SHARELINK_USER_AGENT"
ENV_STRATEGY = "SHARELINK_STRATEGY"
ENV_MEMORY_LIMIT_MB = "SHARELINK_MEMORY_LIMIT_MB"


def _env_int(name: str, default: Optional[int] = None) -> Optional[int]:
    try:
        raw = os.getenv(name, "")
        return int(raw) if raw.strip() else default
    except (TypeError, ValueError):
        return default


def _env_float(name: str, default: float) -> float:
    try:
        raw = os.getenv(name, "")
        return float(raw) if raw.strip() else default
    except (TypeError, ValueError):
        return default


def _normalize_strategy(value: Optional[str]) -> str:
    strategy = (value or STRATEGY_ACCUMULATE).strip().lower()
    if strategy not in STRATEGIES:
        return STRATEGY_ACCUMULATE
    return strategy


@dataclass
class ExtractConfig:
    """Configuration parameters for a single share-link extraction."""

    script_timeout_ms: int = DEFAULT_SCRIPT_TIMEOUT_MS
    read_timeout_ms: int = DEFAULT_READ_TIMEOUT_MS
    boot_timeout_ms: int = DEFAULT_BOOT_TIMEOUT_MS
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    user_agent: str = DEFAULT_USER_AGENT
    accept_encoding: str = DEFAULT_ACCEPT_ENCODING
    target_id: str = DEFAULT_TARGET_ID
    # Substring a script must contain to be executed; falls back to target_id.
    marker: Optional[str] = None
    strategy: str = STRATEGY_ACCUMULATE
    memory_limit_mb: Optional[int] = None

    def __post_init__(self) -> None:
        self.strategy = _normalize_strategy(self.strategy)
        if self.script_timeout_ms <= 0:
            raise ValueError("script_timeout_ms must be positive")
        if self.read_timeout_ms <= 0:
            raise ValueError("read_timeout_ms must be positive")
        if self.boot_timeout_ms <= 0:
            raise ValueError("boot_timeout_ms must be positive")

    @property
    def script_marker(self) -> str:
        return self.marker or self.target_id

    @classmethod
    def from_env(cls, **overrides) -> "ExtractConfig":
        """Build a config from SHARELINK_* environment variables.

        Malformed values fall back to the defaults; keyword overrides win.
        """

        values = {
            "script_timeout_ms": _env_int(ENV_SCRIPT_TIMEOUT_MS, DEFAULT_SCRIPT_TIMEOUT_MS),
            "read_timeout_ms": _env_int(ENV_READ_TIMEOUT_MS, DEFAULT_READ_TIMEOUT_MS),
            "boot_timeout_ms": _env_int(ENV_BOOT_TIMEOUT_MS, DEFAULT_BOOT_TIMEOUT_MS),
            "request_timeout": _env_float(ENV_REQUEST_TIMEOUT, DEFAULT_REQUEST_TIMEOUT),
            "user_agent": os.getenv(ENV_USER_AGENT) or DEFAULT_USER_AGENT,
            "strategy": _normalize_strategy(os.getenv(ENV_STRATEGY)),
            "memory_limit_mb": _env_int(ENV_MEMORY_LIMIT_MB, None),
        }
        for key in ("script_timeout_ms", "read_timeout_ms", "boot_timeout_ms"):
            if values[key] is None or values[key] <= 0:
                values[key] = cls.__dataclass_fields__[key].default
        if values["memory_limit_mb"] is not None and values["memory_limit_mb"] <= 0:
            values["memory_limit_mb"] = None
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


DEFAULT_CONFIG = ExtractConfig()

__all__ = [
    "ExtractConfig",
    "DEFAULT_CONFIG",
    "STRATEGY_ACCUMULATE",
    "STRATEGY_FIRST",
    "STRATEGIES",
]
