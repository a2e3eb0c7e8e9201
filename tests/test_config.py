"""Tests for ledger_agent.config."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest

from ledger_agent.config import AgentConfig


class TestFromEnv:
    def test_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        for name in ("INTERNAL_API_URL", "LEDGER_AGENT_MODEL", "LEDGER_AGENT_MAX_ROUNDS", "LEDGER_AGENT_CACHE"):
            monkeypatch.delenv(name, raising=False)
        cfg = AgentConfig.from_env()
        assert cfg.internal_api_url == "http://localhost:3001"
        assert cfg.max_rounds == 12
        assert cfg.cache_enabled is True

    def test_overrides(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        monkeypatch.setenv("INTERNAL_API_URL", "http://tools.internal:8080/")
        monkeypatch.setenv("LEDGER_AGENT_MODEL", "gpt-4o-mini")
        monkeypatch.setenv("LEDGER_AGENT_TEMPERATURE", "0")
        monkeypatch.setenv("LEDGER_AGENT_PAGE_SIZE", "250")
        monkeypatch.setenv("LEDGER_AGENT_CACHE", "off")
        monkeypatch.setenv("LEDGER_AGENT_DB_PATH", str(tmp_path / "x.db"))
        cfg = AgentConfig.from_env()
        assert cfg.internal_api_url == "http://tools.internal:8080"
        assert cfg.model == "gpt-4o-mini"
        assert cfg.temperature == 0.0
        assert cfg.page_size == 250
        assert cfg.cache_enabled is False
        assert cfg.db_path == tmp_path / "x.db"

    @pytest.mark.parametrize(
        "name, raw, field, default",
        [
            ("LEDGER_AGENT_MAX_ROUNDS", "many", "max_rounds", 12),
            ("LEDGER_AGENT_PAGE_SIZE", "-5", "page_size", 100),
            ("LEDGER_AGENT_PAGE_SIZE", "0", "page_size", 100),
            ("LEDGER_AGENT_MAX_ROUNDS", "0", "max_rounds", 12),
            ("LEDGER_AGENT_MAX_PAGES", "0", "max_pages", 50),
            ("LEDGER_AGENT_WORKERS", "0", "scheduled_workers", 4),
            ("LEDGER_AGENT_DEPENDENCY_TIMEOUT", "0", "dependency_timeout_s", 120.0),
            ("LEDGER_AGENT_CACHE", "maybe", "cache_enabled", True),
        ],
    )
    def test_invalid_values_warn_and_default(
        self, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture,
        name: str, raw: str, field: str, default: object,
    ) -> None:
        monkeypatch.setenv(name, raw)
        with caplog.at_level(logging.WARNING, logger="ledger_agent.config"):
            cfg = AgentConfig.from_env()
        assert getattr(cfg, field) == default
        assert name in caplog.text

    def test_frozen(self) -> None:
        with pytest.raises(Exception):
            AgentConfig().model = "x"  # type: ignore[misc]
