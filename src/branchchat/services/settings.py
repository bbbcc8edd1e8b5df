"""Settings dataclass and JSON persistence with an encrypted API key."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping

from cryptography.fernet import Fernet, InvalidToken

from ..ai.client import ClientSettings

__all__ = [
    "SecretVault",
    "Settings",
    "SettingsStore",
    "coerce_setting",
    "parse_assignments",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".branchchat"
_DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_SETTINGS_VERSION = 1
_API_KEY_FIELD = "api_key_ciphertext"
_ENV_PREFIX = "BRANCHCHAT_"
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}
_BOOL_FIELDS = frozenset({"debug_logging", "debug_event_logging"})
_INT_FIELDS = frozenset({"max_retries", "max_context_tokens", "fallback_message_count", "max_tokens"})
_FLOAT_FIELDS = frozenset(
    {"temperature", "request_timeout", "retry_min_seconds", "retry_max_seconds", "chunk_flush_interval"}
)
_OPTIONAL_FIELDS = frozenset({"organization", "temperature", "reasoning_effort", "max_tokens"})
_MAPPING_FIELDS = frozenset({"default_headers", "metadata"})
_REASONING_EFFORTS = frozenset({"low", "medium", "high"})


@dataclass(slots=True)
class Settings:
    """User-configurable settings persisted between sessions."""

    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4o-mini"
    organization: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    request_timeout: float = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    reasoning_effort: str | None = None
    max_context_tokens: int = 8000
    fallback_message_count: int = 8
    chunk_flush_interval: float = 0.016
    default_headers: dict[str, str] = field(default_factory=dict)
    metadata: dict[str, str] = field(default_factory=dict)
    debug_logging: bool = False
    debug_event_logging: bool = False

    def client_settings(self) -> ClientSettings:
        """Derive the backend client configuration."""

        return ClientSettings(
            base_url=self.base_url,
            api_key=self.api_key,
            model=self.model,
            organization=self.organization,
            request_timeout=self.request_timeout,
            max_retries=self.max_retries,
            retry_min_seconds=self.retry_min_seconds,
            retry_max_seconds=self.retry_max_seconds,
            temperature=self.temperature,
            reasoning_effort=self.reasoning_effort,
            max_tokens=self.max_tokens,
            default_headers=dict(self.default_headers) or None,
            metadata=dict(self.metadata) or None,
            debug_logging=self.debug_logging,
        )

    def redacted(self) -> Dict[str, Any]:
        data = asdict(self)
        data["api_key"] = redact_secret(self.api_key)
        return data


class SecretVault:
    """Fernet encryption for secrets stored in the settings file.

    The key lives beside the settings file and is created on first use.
    """

    prefix = "fernet"

    def __init__(self, *, key_path: Path | None = None) -> None:
        self._key_path = key_path or (_SETTINGS_DIR / "settings.key")
        self._fernet: Fernet | None = None

    def encrypt(self, secret: str) -> str:
        if not secret:
            return ""
        token = self._get_fernet().encrypt(secret.encode("utf-8")).decode("ascii")
        return f"{self.prefix}:{token}"

    def decrypt(self, token: str | None) -> str:
        if not token:
            return ""
        prefix, _, payload = token.partition(":")
        if prefix != self.prefix or not payload:
            raise ValueError(f"Unsupported secret token prefix {prefix!r}")
        try:
            return self._get_fernet().decrypt(payload.encode("ascii")).decode("utf-8")
        except InvalidToken as exc:
            raise ValueError("Invalid Fernet token") from exc

    def _get_fernet(self) -> Fernet:
        if self._fernet is None:
            self._fernet = Fernet(self._load_or_create_key())
        return self._fernet

    def _load_or_create_key(self) -> bytes:
        path = self._key_path
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists():
            return path.read_bytes().strip()
        key = Fernet.generate_key()
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_bytes(key)
        if os.name != "nt":  # pragma: no cover - depends on OS
            os.chmod(tmp_path, 0o600)
        tmp_path.replace(path)
        return key


class SettingsStore:
    """Persistence adapter for :class:`Settings`.

    Precedence when loading: file, then explicit overrides (CLI), then
    ``BRANCHCHAT_*`` environment variables.
    """

    def __init__(self, path: Path | None = None, *, vault: SecretVault | None = None) -> None:
        self._path = Path(path) if path else _DEFAULT_SETTINGS_PATH
        self._vault = vault or SecretVault(key_path=self._path.with_suffix(".key"))

    @property
    def path(self) -> Path:
        return self._path

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        payload = self._read_payload()
        settings = Settings()
        if payload:
            api_key, legacy = self._decrypt_api_key(payload.pop(_API_KEY_FIELD, None), payload.pop("api_key", None))
            data = {key: value for key, value in payload.items() if key in _field_names() and key != "api_key"}
            try:
                settings = Settings(**data)
            except TypeError as exc:
                LOGGER.warning("Settings payload contained unexpected data: %s", exc)
            if api_key:
                settings = replace(settings, api_key=api_key)
            if legacy:
                try:
                    self.save(settings)
                except OSError as exc:  # pragma: no cover
                    LOGGER.warning("Failed to migrate plaintext API key: %s", exc)
        LOGGER.debug("Settings loaded from %s", self._path)

        if overrides:
            settings = self._apply_overrides(settings, overrides, source="CLI")
        return self._apply_env_overrides(settings)

    def save(self, settings: Settings) -> Path:
        """Persist settings to disk with an atomic replace."""

        data = asdict(settings)
        api_key = data.pop("api_key", "") or ""
        if api_key:
            data[_API_KEY_FIELD] = self._vault.encrypt(api_key)
        data["version"] = _SETTINGS_VERSION
        body = json.dumps(data, indent=2, sort_keys=True)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)
        LOGGER.debug("Settings saved to %s", self._path)
        return self._path

    def _read_payload(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}
        if not isinstance(payload, dict):
            LOGGER.warning("Settings file %s does not contain an object", self._path)
            return {}
        return payload

    def _decrypt_api_key(self, ciphertext: str | None, plaintext: str | None) -> tuple[str, bool]:
        if ciphertext:
            try:
                return self._vault.decrypt(ciphertext), False
            except ValueError as exc:
                LOGGER.warning("Unable to decrypt API key: %s", exc)
                return "", False
        if plaintext:
            LOGGER.info("Detected plaintext API key; migrating to encrypted storage.")
            return str(plaintext), True
        return "", False

    def _apply_overrides(self, settings: Settings, overrides: Mapping[str, Any], *, source: str) -> Settings:
        accepted: Dict[str, Any] = {}
        for key, value in overrides.items():
            if key not in _field_names():
                LOGGER.warning("Ignoring unknown %s setting %s", source, key)
                continue
            if value is None:
                continue
            try:
                accepted[key] = coerce_setting(key, value)
            except ValueError as exc:
                LOGGER.warning("Ignoring invalid %s setting %s=%r: %s", source, key, value, exc)
        if not accepted:
            return settings
        LOGGER.debug("Applying %s settings overrides: %s", source, sorted(accepted))
        return replace(settings, **accepted)

    def _apply_env_overrides(self, settings: Settings) -> Settings:
        overrides: Dict[str, Any] = {}
        for name in _field_names():
            if name in _MAPPING_FIELDS:
                continue
            value = os.environ.get(f"{_ENV_PREFIX}{name.upper()}")
            if value is not None:
                overrides[name] = value
        if not overrides:
            return settings
        return self._apply_overrides(settings, overrides, source="environment")


def coerce_setting(name: str, value: Any) -> Any:
    """Convert a raw override into the type expected by ``Settings.<name>``."""

    if not isinstance(value, str):
        return value
    text = value.strip()
    if name in _OPTIONAL_FIELDS and text.lower() in {"", "none", "null"}:
        return None
    if name in _BOOL_FIELDS:
        lowered = text.lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
        raise ValueError("expected a boolean")
    if name in _INT_FIELDS:
        return int(text, 10)
    if name in _FLOAT_FIELDS:
        return float(text)
    if name in _MAPPING_FIELDS:
        parsed = json.loads(text)
        if not isinstance(parsed, dict):
            raise ValueError("expected a JSON object")
        return {str(key): str(item) for key, item in parsed.items()}
    if name == "reasoning_effort":
        if text.lower() not in _REASONING_EFFORTS:
            raise ValueError(f"expected one of {sorted(_REASONING_EFFORTS)}")
        return text.lower()
    return text


def parse_assignments(items: list[str] | None) -> Dict[str, str]:
    """Parse ``key=value`` strings from the command line."""

    result: Dict[str, str] = {}
    for item in items or ():
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Expected key=value, got {item!r}")
        result[key.strip()] = value
    return result


def redact_secret(value: str) -> str:
    stripped = (value or "").strip()
    if not stripped:
        return ""
    if len(stripped) <= 4:
        return "*" * len(stripped)
    return f"{stripped[:2]}{'*' * (len(stripped) - 4)}{stripped[-2:]}"


def _field_names() -> frozenset[str]:
    return frozenset(item.name for item in fields(Settings))
