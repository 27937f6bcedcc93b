"""Tests for settings and logging setup."""

import logging

import pytest

from promptdag.config import EngineSettings, OneLineFormatter, configure_logging


class TestEngineSettings:
    def test_defaults(self) -> None:
        settings = EngineSettings(_env_file=None)

        assert settings.cache_ttl_seconds == 300.0
        assert settings.circuit_breaker_threshold == 5
        assert settings.circuit_breaker_reset_seconds == 60.0
        assert settings.retry_count == 0
        assert settings.chars_per_unit == 4

    def test_environment_overrides(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("PROMPTDAG_RETRY_COUNT", "3")
        monkeypatch.setenv("PROMPTDAG_CACHE_ENABLED", "false")
        monkeypatch.setenv("PROMPTDAG_LLM_BASE_URL", "https://llm.test")

        settings = EngineSettings(_env_file=None)

        assert settings.retry_count == 3
        assert settings.cache_enabled is False
        assert settings.llm_base_url == "https://llm.test"

    def test_rejects_invalid_values(self) -> None:
        with pytest.raises(ValueError):
            EngineSettings(_env_file=None, max_outbound_calls=0)


class TestLogging:
    def test_one_line_formatter(self) -> None:
        formatter = OneLineFormatter("%(levelname)s %(message)s")
        record = logging.LogRecord("x", logging.INFO, __file__, 1, "multi\n  line\tmessage", None, None)

        assert formatter.format(record) == "INFO multi line message"

    def test_configure_logging_sets_level(self) -> None:
        root = logging.getLogger()
        previous = root.level
        try:
            configure_logging("DEBUG")
            assert root.level == logging.DEBUG
        finally:
            root.setLevel(previous)
