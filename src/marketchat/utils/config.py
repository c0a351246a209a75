"""Configuration management for marketchat."""

from __future__ import annotations

import base64
import json
import os
from pathlib import Path
from typing import Any

APP_ID = "marketchat"

DEFAULTS: dict[str, Any] = {
    "retry_attempts": 3,
    "retry_base_delay": 0.5,
    "send_limit": 10,
    "send_window_seconds": 60,
    "name_cache_size": 256,
    "badge_debounce_ms": 50,
    "log_level": "INFO",
}


def default_config_dir() -> Path:
    """Config directory, overridable with MARKETCHAT_CONFIG_DIR."""
    override = os.environ.get("MARKETCHAT_CONFIG_DIR")
    if override:
        return Path(override)
    return Path.home() / ".config" / APP_ID


def _keyring_available() -> bool:
    """Check if a working keyring backend is available."""
    try:
        import keyring
        from keyring.backends.fail import Keyring as FailKeyring

        backend = keyring.get_keyring()
        return not isinstance(backend, FailKeyring)
    except Exception:
        return False


class Config:
    """Manages gateway settings with secure credential storage."""

    def __init__(self, config_dir: Path | None = None, use_keyring: bool | None = None) -> None:
        self.config_dir = config_dir or default_config_dir()
        self.config_file = self.config_dir / "config.json"
        self.secrets_file = self.config_dir / "secrets.json"  # Fallback when keyring unavailable
        self._config: dict[str, Any] = {}
        self._secrets: dict[str, str] = {}
        self._use_keyring = _keyring_available() if use_keyring is None else use_keyring
        self._load()

    def _load(self) -> None:
        """Load configuration from disk."""
        self.config_dir.mkdir(parents=True, exist_ok=True)

        if self.config_file.exists():
            try:
                self._config = json.loads(self.config_file.read_text())
            except json.JSONDecodeError:
                self._config = {}
        else:
            self._config = {}

        if not self._use_keyring and self.secrets_file.exists():
            try:
                self._secrets = json.loads(self.secrets_file.read_text())
            except json.JSONDecodeError:
                self._secrets = {}

    def _save(self) -> None:
        """Save configuration to disk."""
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.config_file.write_text(json.dumps(self._config, indent=2))

    def _save_secrets(self) -> None:
        """Save secrets to fallback file (when keyring unavailable)."""
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.secrets_file.write_text(json.dumps(self._secrets, indent=2))
        os.chmod(self.secrets_file, 0o600)

    def _get_secret(self, name: str) -> str | None:
        if self._use_keyring:
            import keyring

            return keyring.get_password(APP_ID, name)
        encoded = self._secrets.get(name)
        if encoded:
            try:
                return base64.b64decode(encoded).decode("utf-8")
            except (ValueError, UnicodeDecodeError):
                return None
        return None

    def _set_secret(self, name: str, value: str) -> None:
        if self._use_keyring:
            import keyring

            keyring.set_password(APP_ID, name, value)
        else:
            # Obfuscated only; prefer a real keyring backend
            self._secrets[name] = base64.b64encode(value.encode("utf-8")).decode("ascii")
            self._save_secrets()

    def _delete_secret(self, name: str) -> None:
        if self._use_keyring:
            import keyring

            try:
                keyring.delete_password(APP_ID, name)
            except keyring.errors.PasswordDeleteError:
                pass
        else:
            self._secrets.pop(name, None)
            self._save_secrets()

    @property
    def gateway_url(self) -> str | None:
        """Get the persistence gateway URL."""
        return self._config.get("gateway_url")

    @gateway_url.setter
    def gateway_url(self, value: str) -> None:
        self._config["gateway_url"] = value.rstrip("/")
        self._save()

    @property
    def realtime_url(self) -> str | None:
        """Get the realtime endpoint, defaulting to the gateway URL."""
        return self._config.get("realtime_url") or self.gateway_url

    @realtime_url.setter
    def realtime_url(self, value: str) -> None:
        self._config["realtime_url"] = value.rstrip("/")
        self._save()

    @property
    def api_key(self) -> str | None:
        """Get the gateway API key from secure storage."""
        return self._get_secret("api_key")

    @api_key.setter
    def api_key(self, value: str) -> None:
        self._set_secret("api_key", value)

    @property
    def access_token(self) -> str | None:
        """Get the signed-in user's access token from secure storage."""
        return self._get_secret("access_token")

    @access_token.setter
    def access_token(self, value: str) -> None:
        self._set_secret("access_token", value)

    def sign_out(self) -> None:
        """Forget the stored access token."""
        self._delete_secret("access_token")

    @property
    def is_configured(self) -> bool:
        """Check if the gateway location and key are known."""
        return bool(self.gateway_url and self.api_key)

    @property
    def using_secure_storage(self) -> bool:
        return self._use_keyring

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value, falling back to the built-in defaults."""
        if key in self._config:
            return self._config[key]
        if default is not None:
            return default
        return DEFAULTS.get(key)

    def set(self, key: str, value: Any) -> None:
        """Set a configuration value."""
        self._config[key] = value
        self._save()
