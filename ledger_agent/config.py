"""Typed runtime configuration for ledger_agent."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, TypeVar

logger = logging.getLogger(__name__)

_T = TypeVar("_T")

_DATA_ROOT = Path.home() / ".ledger_agent"


def _env_value(name: str, default: _T, parse: Callable[[str], _T], *, positive: bool = False) -> _T:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = parse(raw.strip())
    except ValueError:
        logger.warning("Invalid %s=%r. Defaulting to %r.", name, raw, default)
        return default
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if value < 0 or (positive and value == 0):
            expected = "a positive" if positive else "a non-negative"
            logger.warning("Invalid %s=%r; expected %s number. Defaulting to %r.", name, raw, expected, default)
            return default
    return value


def _parse_bool(raw: str) -> bool:
    lowered = raw.lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    raise ValueError(raw)


@dataclass(frozen=True)
class AgentConfig:
    """Runtime policy/config resolved once and passed explicitly through calls."""

    internal_api_url: str = "http://localhost:3001"
    model: str = "gpt-4o"
    temperature: float = 0.7
    max_tokens: int = 1000
    max_rounds: int = 12
    tool_call_timeout_s: float = 30.0
    registry_timeout_s: float = 10.0
    external_api_timeout_s: float = 30.0
    page_size: int = 100
    max_pages: int = 50
    executor_timeout_s: float = 30.0
    dependency_timeout_s: float = 120.0
    dependency_poll_s: float = 1.0
    db_path: Path = field(default_factory=lambda: _DATA_ROOT / "ledger_agent.db")
    cache_dir: Path = field(default_factory=lambda: _DATA_ROOT / "cache")
    cache_enabled: bool = True
    scheduled_workers: int = 4

    @classmethod
    def from_env(cls) -> "AgentConfig":
        """Build typed config from environment variables."""
        defaults = cls()
        return cls(
            internal_api_url=os.environ.get("INTERNAL_API_URL", defaults.internal_api_url).rstrip("/"),
            model=os.environ.get("LEDGER_AGENT_MODEL", defaults.model),
            temperature=_env_value("LEDGER_AGENT_TEMPERATURE", defaults.temperature, float),
            max_tokens=_env_value("LEDGER_AGENT_MAX_TOKENS", defaults.max_tokens, int, positive=True),
            max_rounds=_env_value("LEDGER_AGENT_MAX_ROUNDS", defaults.max_rounds, int, positive=True),
            tool_call_timeout_s=_env_value("LEDGER_AGENT_TOOL_TIMEOUT", defaults.tool_call_timeout_s, float, positive=True),
            registry_timeout_s=_env_value("LEDGER_AGENT_REGISTRY_TIMEOUT", defaults.registry_timeout_s, float, positive=True),
            external_api_timeout_s=_env_value("LEDGER_AGENT_API_TIMEOUT", defaults.external_api_timeout_s, float, positive=True),
            page_size=_env_value("LEDGER_AGENT_PAGE_SIZE", defaults.page_size, int, positive=True),
            max_pages=_env_value("LEDGER_AGENT_MAX_PAGES", defaults.max_pages, int, positive=True),
            executor_timeout_s=_env_value("LEDGER_AGENT_EXECUTOR_TIMEOUT", defaults.executor_timeout_s, float, positive=True),
            dependency_timeout_s=_env_value("LEDGER_AGENT_DEPENDENCY_TIMEOUT", defaults.dependency_timeout_s, float, positive=True),
            dependency_poll_s=_env_value("LEDGER_AGENT_DEPENDENCY_POLL", defaults.dependency_poll_s, float, positive=True),
            db_path=Path(os.environ.get("LEDGER_AGENT_DB_PATH", str(defaults.db_path))).expanduser(),
            cache_dir=Path(os.environ.get("LEDGER_AGENT_CACHE_DIR", str(defaults.cache_dir))).expanduser(),
            cache_enabled=_env_value("LEDGER_AGENT_CACHE", defaults.cache_enabled, _parse_bool),
            scheduled_workers=_env_value("LEDGER_AGENT_WORKERS", defaults.scheduled_workers, int, positive=True),
        )
