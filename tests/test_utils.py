"""Tests for rate limiting, validation, retry, configuration and logging."""

import json
import logging
import stat
from pathlib import Path

import pytest

from marketchat.errors import GatewayError, TransientNetworkError, ValidationError
from marketchat.utils.config import Config
from marketchat.utils.logging import setup_logging
from marketchat.utils.ratelimit import RateLimiter
from marketchat.utils.retry import backoff_delay, retry_async
from marketchat.utils.validation import MessageContentValidator, sanitize_plain_text


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestRateLimiter:
    """Test the fixed-window limiter."""

    def test_allows_up_to_limit(self) -> None:
        """The limit-th call passes, the next one waits."""
        clock = FakeClock()
        limiter = RateLimiter(limit=3, window_seconds=60, clock=clock)

        assert [limiter.check("u:send")[0] for _ in range(3)] == [True, True, True]
        clock.now = 15
        assert limiter.check("u:send") == (False, 45)

    def test_window_expires(self) -> None:
        """A new window opens once the old one ends."""
        clock = FakeClock()
        limiter = RateLimiter(limit=1, window_seconds=60, clock=clock)
        assert limiter.check("k")[0]
        assert not limiter.check("k")[0]
        clock.now = 60
        assert limiter.check("k") == (True, 0)

    def test_keys_are_independent(self) -> None:
        """One user's sends do not count against another's."""
        limiter = RateLimiter(limit=1, window_seconds=60, clock=FakeClock())
        assert limiter.check("a")[0]
        assert limiter.check("b")[0]
        limiter.reset("a")
        assert limiter.check("a")[0]


class TestValidation:
    """Test the default message validator."""

    def test_sanitises(self) -> None:
        """Markup characters are stripped and whitespace trimmed."""
        assert sanitize_plain_text('  <b>"hi"</b> ') == "bhib"
        assert MessageContentValidator().validate_message("  Is it free?  ") == "Is it free?"

    @pytest.mark.parametrize(
        ("text", "notice"),
        [
            ("", "Message cannot be empty"),
            ("<>", "Message cannot be empty"),
            ("a" * 2001, "Message too long"),
            ("hi <SCRIPT>", "Message contains invalid content"),
        ],
    )
    def test_rejections(self, text: str, notice: str) -> None:
        """Each rule has its own message."""
        with pytest.raises(ValidationError, match=notice):
            MessageContentValidator().validate_message(text)

    def test_image_url_must_be_http(self) -> None:
        """Only http(s) image links are accepted."""
        validator = MessageContentValidator()
        assert validator.validate_message("pic", "https://img.example/1.jpg") == "pic"
        with pytest.raises(ValidationError):
            validator.validate_message("pic", "javascript:alert(1)")


class TestRetry:
    """Test the backoff policy."""

    def test_backoff_grows_and_caps(self) -> None:
        """Delays double per attempt, capped, with at most 10% jitter."""
        for attempt, base in [(0, 0.5), (1, 1.0), (2, 2.0), (6, 8.0)]:
            delay = backoff_delay(attempt, base_delay=0.5, max_delay=8.0)
            assert base <= delay <= base * 1.1

    @pytest.mark.asyncio
    async def test_retries_transient_then_succeeds(self, no_sleep: list[float]) -> None:
        """Transient failures are retried with growing delays."""
        outcomes = [TransientNetworkError("t1"), TransientNetworkError("t2"), "ok"]

        async def flaky() -> str:
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        assert await retry_async(flaky, attempts=3, base_delay=0.5) == "ok"
        assert len(no_sleep) == 2
        assert no_sleep[0] < no_sleep[1]

    @pytest.mark.asyncio
    async def test_exhaustion_reraises_last(self, no_sleep: list[float]) -> None:
        """The last transient error surfaces after the final attempt."""
        errors = [TransientNetworkError("first"), TransientNetworkError("last")]

        async def failing() -> None:
            raise errors.pop(0)

        with pytest.raises(TransientNetworkError, match="last"):
            await retry_async(failing, attempts=2)

    @pytest.mark.asyncio
    async def test_other_errors_not_retried(self, no_sleep: list[float]) -> None:
        """Non-transient errors propagate at once."""
        calls = 0

        async def broken() -> None:
            nonlocal calls
            calls += 1
            raise GatewayError("bad request", status=400)

        with pytest.raises(GatewayError):
            await retry_async(broken, attempts=5)
        assert calls == 1
        assert no_sleep == []


class TestConfig:
    """Test settings and the secrets fallback file."""

    def test_defaults(self, tmp_path: Path) -> None:
        """Unset tuning values come from the built-in defaults."""
        config = Config(config_dir=tmp_path, use_keyring=False)
        assert config.get("send_limit") == 10
        assert config.get("retry_attempts") == 3
        assert config.is_configured is False

    def test_persists_settings(self, tmp_path: Path) -> None:
        """Settings survive a reload."""
        config = Config(config_dir=tmp_path, use_keyring=False)
        config.gateway_url = "https://gateway.test/"
        config.set("send_limit", 5)

        reloaded = Config(config_dir=tmp_path, use_keyring=False)
        assert reloaded.gateway_url == "https://gateway.test"
        assert reloaded.realtime_url == "https://gateway.test"
        assert reloaded.get("send_limit") == 5

    def test_secrets_fallback_file(self, tmp_path: Path) -> None:
        """Without a keyring, secrets go to a private, encoded file."""
        config = Config(config_dir=tmp_path, use_keyring=False)
        config.gateway_url = "https://gateway.test"
        config.api_key = "anon-key"
        config.access_token = "token-1"

        secrets_file = tmp_path / "secrets.json"
        assert stat.S_IMODE(secrets_file.stat().st_mode) == 0o600
        assert "anon-key" not in secrets_file.read_text()

        reloaded = Config(config_dir=tmp_path, use_keyring=False)
        assert reloaded.api_key == "anon-key"
        assert reloaded.is_configured is True

        reloaded.sign_out()
        assert Config(config_dir=tmp_path, use_keyring=False).access_token is None

    def test_corrupt_config_ignored(self, tmp_path: Path) -> None:
        """A broken config file falls back to defaults."""
        (tmp_path / "config.json").write_text("{not json")
        config = Config(config_dir=tmp_path, use_keyring=False)
        assert config.gateway_url is None

    def test_env_override(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """MARKETCHAT_CONFIG_DIR moves the config directory."""
        monkeypatch.setenv("MARKETCHAT_CONFIG_DIR", str(tmp_path / "custom"))
        config = Config(use_keyring=False)
        config.set("log_level", "DEBUG")
        assert json.loads((tmp_path / "custom" / "config.json").read_text()) == {"log_level": "DEBUG"}


class TestLogging:
    def test_setup_is_idempotent(self) -> None:
        """Repeated setup installs a single handler."""
        logger = setup_logging("debug")
        count = len(logger.handlers)
        assert setup_logging("INFO") is logger
        assert len(logger.handlers) == count
        assert logger.level == logging.INFO
