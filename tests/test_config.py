"""Tests for settings, logging configuration and retry helpers."""

import json
import logging
import os

import pytest

from deepflow.config import (
    ContextFilter,
    JSONFormatter,
    SanitizingFilter,
    Settings,
    TextFormatter,
    configure_logging,
    get_settings,
    log_context,
)
from deepflow.errors import ProviderError, RateLimitError
from deepflow.utils import RetryConfig, async_with_retry, is_retryable_error, retry_async_call
from deepflow.utils.validation import sanitize_log_message

OPENAI_STYLE_KEY = "sk-" + "a1B2c3D4e5F6g7H8i9J0k1L2"
ANTHROPIC_STYLE_KEY = "sk-ant-" + "api03-a1B2c3D4e5F6g7H8i9J0"


@pytest.fixture
def isolated_env(tmp_path, monkeypatch):
    """Run from an empty directory with no DEEPFLOW_ variables set."""
    monkeypatch.chdir(tmp_path)
    for key in list(os.environ):
        if key.startswith("DEEPFLOW_"):
            monkeypatch.delenv(key)
    return tmp_path


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


class TestSettings:
    """Settings defaults and their sources."""

    def test_defaults(self, isolated_env):
        settings = Settings()
        assert settings.log_level == "INFO"
        assert settings.log_format == "text"
        assert settings.database_url == "sqlite:///deepflow-state.db"
        assert settings.default_daily_limit_usd == 10.0
        assert settings.default_monthly_limit_usd == 100.0
        assert settings.default_warning_threshold == 0.8
        assert settings.step_max_retries == 0
        assert settings.max_parallel_steps == 4
        assert settings.default_max_tokens == 4000
        assert settings.provider_api_keys() == {}

    def test_env_vars_with_prefix(self, isolated_env, monkeypatch):
        monkeypatch.setenv("DEEPFLOW_LOG_LEVEL", "DEBUG")
        monkeypatch.setenv("DEEPFLOW_DEFAULT_DAILY_LIMIT_USD", "2.5")
        monkeypatch.setenv("DEEPFLOW_ANTHROPIC_API_KEY", "anthropic-test")
        settings = Settings()
        assert settings.log_level == "DEBUG"
        assert settings.default_daily_limit_usd == 2.5
        assert settings.provider_api_keys() == {"anthropic": "anthropic-test"}

    def test_yaml_overlay(self, isolated_env, monkeypatch):
        config = isolated_env / "custom.yaml"
        config.write_text("log_format: json\nmax_parallel_steps: 2\n")
        monkeypatch.setenv("DEEPFLOW_CONFIG_FILE", str(config))
        settings = Settings()
        assert settings.log_format == "json"
        assert settings.max_parallel_steps == 2

    def test_env_beats_yaml(self, isolated_env, monkeypatch):
        (isolated_env / "deepflow.yaml").write_text("max_parallel_steps: 2\n")
        monkeypatch.setenv("DEEPFLOW_MAX_PARALLEL_STEPS", "6")
        assert Settings().max_parallel_steps == 6

    def test_yaml_placeholder_falls_back_to_default(self, isolated_env):
        (isolated_env / "deepflow.yaml").write_text('openai_api_key: "${OPENAI_KEY}"\n')
        settings = Settings()
        assert settings.openai_api_key is None

    def test_missing_config_file_ignored(self, isolated_env, monkeypatch):
        monkeypatch.setenv("DEEPFLOW_CONFIG_FILE", str(isolated_env / "nope.yaml"))
        assert Settings().log_format == "text"

    def test_invalid_log_format(self, isolated_env):
        with pytest.raises(ValueError):
            Settings(log_format="xml")

    def test_log_format_case_insensitive(self, isolated_env):
        assert Settings(log_format="JSON").log_format == "json"

    def test_only_used_fields_declared(self, isolated_env):
        assert "app_name" not in Settings.model_fields
        assert not hasattr(Settings, "_yaml_path")

    def test_get_settings_cached(self, isolated_env):
        assert get_settings() is get_settings()


class TestSanitize:
    @pytest.mark.parametrize(
        "message",
        [
            f"Using key {OPENAI_STYLE_KEY}",
            f"Using key {ANTHROPIC_STYLE_KEY}",
            "GET /v1beta/models?key=abcdefghijklmnop1234",
            'headers {"authorization": "Bearer abc.def.ghi"}',
            "api_key=supersecretvalue",
        ],
    )
    def test_credentials_redacted(self, message):
        sanitized = sanitize_log_message(message)
        assert "REDACTED" in sanitized
        for secret in (OPENAI_STYLE_KEY, ANTHROPIC_STYLE_KEY, "abcdefghijklmnop1234", "abc.def"):
            assert secret not in sanitized

    def test_plain_message_unchanged(self):
        assert sanitize_log_message("Step research completed") == "Step research completed"

    def test_extra_patterns(self):
        assert sanitize_log_message("user=alice", [r"alice"]) == "user=[REDACTED]"


class TestLogging:
    """Formatters, filters and root logger setup."""

    def _record(self, msg, args=(), **extra):
        record = logging.LogRecord("deepflow.test", logging.INFO, __file__, 1, msg, args, None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_sanitizing_filter(self):
        record = self._record("Calling with %s", (OPENAI_STYLE_KEY,))
        assert SanitizingFilter().filter(record) is True
        assert OPENAI_STYLE_KEY not in record.getMessage()

    def test_json_formatter_includes_context(self):
        record = self._record("Step done", execution_id="e1", step_id="research", cost_usd=0.01)
        data = json.loads(JSONFormatter().format(record))
        assert data["message"] == "Step done"
        assert data["level"] == "INFO"
        assert data["logger"] == "deepflow.test"
        assert data["execution_id"] == "e1"
        assert data["step_id"] == "research"
        assert data["cost_usd"] == 0.01
        assert "user_id" not in data

    def test_configure_json_logging(self, restore_root_logger):
        configure_logging(level="DEBUG", format="json")
        root = restore_root_logger
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        handler = root.handlers[0]
        assert isinstance(handler.formatter, JSONFormatter)
        assert any(isinstance(f, SanitizingFilter) for f in handler.filters)
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_configure_text_logging_without_sanitizing(self, restore_root_logger):
        configure_logging(level="warning", format="text", sanitize_logs=False)
        handler = restore_root_logger.handlers[0]
        assert restore_root_logger.level == logging.WARNING
        assert isinstance(handler.formatter, TextFormatter)
        assert not any(isinstance(f, SanitizingFilter) for f in handler.filters)
        assert any(isinstance(f, ContextFilter) for f in handler.filters)

    def test_log_context_tags_records(self):
        with log_context(execution_id="e1"):
            with log_context(step_id="research"):
                record = self._record("inside")
                ContextFilter().filter(record)
        assert record.execution_id == "e1"
        assert record.step_id == "research"

        outside = self._record("outside")
        ContextFilter().filter(outside)
        assert not hasattr(outside, "execution_id")

    def test_explicit_extra_wins_over_context(self):
        with log_context(step_id="research"):
            record = self._record("x", step_id="analysis")
            ContextFilter().filter(record)
        assert record.step_id == "analysis"

    def test_text_formatter_appends_ids(self):
        record = self._record("Step done", execution_id="e1", step_id="research")
        line = TextFormatter().format(record)
        assert line.endswith("Step done [execution_id=e1 step_id=research]")
        assert TextFormatter().format(self._record("plain")).endswith("plain")


class TestRetry:
    """Backoff calculation and async retry helpers."""

    @pytest.fixture
    def sleeps(self, monkeypatch):
        delays = []

        async def fake_sleep(delay):
            delays.append(delay)

        monkeypatch.setattr("deepflow.utils.retry.asyncio.sleep", fake_sleep)
        return delays

    def test_calculate_delay(self):
        config = RetryConfig(base_delay=1.0, max_delay=30.0, jitter=False)
        assert [config.calculate_delay(n) for n in range(6)] == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0]

    def test_jitter_bounds(self):
        config = RetryConfig(base_delay=2.0, jitter=True)
        for _ in range(50):
            assert 1.5 <= config.calculate_delay(0) <= 2.5

    @pytest.mark.parametrize(
        "error,expected",
        [
            (ProviderError("x", retryable=True), True),
            (ProviderError("x", status_code=503), True),
            (ProviderError("x", status_code=400), False),
            (RateLimitError("x"), True),
            (ValueError("x"), False),
        ],
    )
    def test_is_retryable_error(self, error, expected):
        assert is_retryable_error(error) is expected

    @pytest.mark.asyncio
    async def test_retries_until_success(self, sleeps):
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise ProviderError("overloaded", status_code=503)
            return "ok"

        config = RetryConfig(max_retries=3, base_delay=1.0, jitter=False)
        assert await retry_async_call(flaky, config) == "ok"
        assert len(calls) == 3
        assert sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_gives_up_with_original_error(self, sleeps):
        error = ProviderError("overloaded", status_code=503)

        async def always_fails():
            raise error

        with pytest.raises(ProviderError) as exc_info:
            await retry_async_call(always_fails, RetryConfig(max_retries=2, jitter=False))
        assert exc_info.value is error
        assert len(sleeps) == 2

    @pytest.mark.asyncio
    async def test_zero_retries_calls_once(self, sleeps):
        calls = []

        async def fails():
            calls.append(1)
            raise ProviderError("overloaded", status_code=503)

        with pytest.raises(ProviderError):
            await retry_async_call(fails, RetryConfig())
        assert len(calls) == 1
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_should_retry_predicate(self, sleeps):
        calls = []

        async def fails():
            calls.append(1)
            raise ProviderError("overloaded", status_code=503)

        with pytest.raises(ProviderError):
            await retry_async_call(
                fails, RetryConfig(max_retries=5), should_retry=lambda exc: False
            )
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_retry_after_honoured(self, sleeps):
        calls = []

        async def limited():
            calls.append(1)
            if len(calls) == 1:
                raise RateLimitError("slow down", retry_after=5.0)
            return "ok"

        config = RetryConfig(max_retries=1, base_delay=0.5, max_delay=30.0, jitter=False)
        assert await retry_async_call(limited, config) == "ok"
        assert sleeps == [5.0]

    @pytest.mark.asyncio
    async def test_non_provider_errors_propagate(self, sleeps):
        async def broken():
            raise KeyError("bug")

        with pytest.raises(KeyError):
            await retry_async_call(broken, RetryConfig(max_retries=3))
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_decorator(self, sleeps):
        seen = []

        @async_with_retry(
            max_retries=2, base_delay=0.1, jitter=False, on_retry=lambda e, n: seen.append(n)
        )
        async def call(value):
            if len(seen) < 1:
                raise ProviderError("timeout", status_code=504)
            return value * 2

        assert await call(21) == 42
        assert seen == [0]
        assert call.__name__ == "call"
