"""Settings dataclasses and persistence helpers."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping

from cryptography.fernet import Fernet, InvalidToken

from ..ai.client import ClientSettings
from ..ai.orchestration.runtime_config import ConsumerConfig, TranscoderConfig
from ..ai.services.context_optimizer import ContextCeilings

__all__ = [
    "ContextSettings",
    "SecretVault",
    "Settings",
    "SettingsStore",
    "StreamingSettings",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".docbare"
_DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_SETTINGS_VERSION = 1
_ENV_OVERRIDES: Mapping[str, str] = {
    "DOCBARE_API_KEY": "api_key",
    "DOCBARE_BASE_URL": "base_url",
    "DOCBARE_MODEL": "model",
    "DOCBARE_HOST": "host",
    "DOCBARE_ORGANIZATION": "organization",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "DOCBARE_DEBUG_LOGGING": "debug_logging",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "DOCBARE_REQUEST_TIMEOUT": "request_timeout",
    "DOCBARE_STREAM_TIMEOUT": "stream_timeout",
    "DOCBARE_CLIENT_TIMEOUT": "client_timeout",
    "DOCBARE_TEMPERATURE": "temperature",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "DOCBARE_PORT": "port",
}
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_API_KEY_FIELD = "api_key_ciphertext"


@dataclass(slots=True)
class StreamingSettings:
    """Knobs for the transcoder and the client-side consumer."""

    reasoning_flush_chars: int = 20
    reasoning_flush_markers: list[str] = field(default_factory=lambda: [".", "\n", "**"])
    max_record_buffer_bytes: int = 50_000
    loading_fallback_seconds: float = 8.0

    def transcoder_config(self) -> TranscoderConfig:
        return TranscoderConfig(
            flush_min_chars=int(self.reasoning_flush_chars),
            flush_markers=tuple(self.reasoning_flush_markers),
            max_record_buffer_bytes=int(self.max_record_buffer_bytes),
        )


@dataclass(slots=True)
class ContextSettings:
    """Token ceilings applied by the context optimizer."""

    max_total_tokens: int = 32_000
    max_system_prompt_tokens: int = 4_000
    max_memory_tokens: int = 8_000
    max_document_tokens: int = 12_000
    max_knowledge_base_tokens: int = 4_000
    max_query_tokens: int = 2_000
    knowledge_chunk_limit: int = 5

    def ceilings(self) -> ContextCeilings:
        return ContextCeilings.from_overrides(
            {item.name: getattr(self, item.name) for item in fields(ContextCeilings)}
        )


@dataclass(slots=True)
class Settings:
    """Service configuration persisted between runs."""

    base_url: str = "https://api.deepseek.com/v1"
    api_key: str = ""
    model: str = "deepseek-reasoner"
    temperature: float = 0.2
    organization: str | None = None
    request_timeout: float = 90.0
    stream_timeout: float | None = 300.0
    client_timeout: float | None = 300.0
    persist_retries: int = 3
    persist_retry_min_seconds: float = 0.5
    persist_retry_max_seconds: float = 4.0
    host: str = "127.0.0.1"
    port: int = 8000
    default_headers: dict[str, str] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    debug_logging: bool = False
    precise_token_counting: bool = True
    streaming: StreamingSettings = field(default_factory=StreamingSettings)
    context: ContextSettings = field(default_factory=ContextSettings)

    def client_settings(self) -> ClientSettings:
        return ClientSettings(
            base_url=self.base_url,
            api_key=self.api_key,
            model=self.model,
            organization=self.organization,
            request_timeout=self.request_timeout,
            temperature=self.temperature,
            default_headers=dict(self.default_headers) or None,
            metadata={str(k): str(v) for k, v in self.metadata.items()} or None,
            debug_logging=self.debug_logging,
        )

    def consumer_config(self) -> ConsumerConfig:
        return ConsumerConfig(
            loading_fallback_seconds=float(self.streaming.loading_fallback_seconds),
            read_timeout_seconds=self.client_timeout,
        )


class FernetSecretProvider:
    """Secret provider that uses a symmetric Fernet key stored on disk."""

    name = "fernet"

    def __init__(self, key_path: Path | None = None) -> None:
        self._key_path = key_path or (_SETTINGS_DIR / "settings.key")
        self._fernet: Fernet | None = None

    def encrypt(self, secret: str) -> str:
        return self._get_fernet().encrypt(secret.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> str:
        return self._get_fernet().decrypt(token.encode("ascii")).decode("utf-8")

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


class SecretVault:
    """Encrypts and decrypts the API key for settings persistence."""

    def __init__(self, *, key_path: Path | None = None) -> None:
        self._provider = FernetSecretProvider(key_path)

    @property
    def strategy(self) -> str:
        return self._provider.name

    def encrypt(self, secret: str) -> str:
        if not secret:
            return ""
        return f"{self._provider.name}:{self._provider.encrypt(secret)}"

    def decrypt(self, token: str | None) -> str:
        if not token:
            return ""
        prefix, _, payload = token.partition(":")
        if not payload:
            prefix, payload = self._provider.name, token
        if prefix != self._provider.name:
            raise ValueError(f"Unsupported secret backend: {prefix}")
        try:
            return self._provider.decrypt(payload)
        except InvalidToken as exc:
            raise ValueError("Invalid Fernet token") from exc


class SettingsStore:
    """Persistence adapter for :class:`Settings`."""

    def __init__(self, path: Path | None = None, *, vault: SecretVault | None = None) -> None:
        self._path = path or _DEFAULT_SETTINGS_PATH
        self._vault = vault or SecretVault(key_path=self._path.with_suffix(".key"))

    @property
    def path(self) -> Path:
        return self._path

    @property
    def vault(self) -> SecretVault:
        return self._vault

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Load settings from disk, then apply CLI and environment overrides."""

        payload = self._read_payload()
        settings = Settings()
        needs_migration = False
        if payload:
            api_key, needs_migration = self._decrypt_api_key(
                payload.pop(_API_KEY_FIELD, None), payload.pop("api_key", None)
            )
            data = _filter_fields(payload)
            data["streaming"] = _section(StreamingSettings, data.get("streaming"))
            data["context"] = _section(ContextSettings, data.get("context"))
            try:
                settings = Settings(**data)
            except TypeError as exc:
                LOGGER.warning("Settings payload contained unexpected data: %s", exc)
                settings = Settings()
            if api_key:
                settings = replace(settings, api_key=api_key)
            LOGGER.debug("Settings loaded from %s", self._path)

        version_mismatch = bool(payload) and payload.get("version") != _SETTINGS_VERSION
        if needs_migration or version_mismatch:
            try:
                self.save(settings)
            except OSError as exc:  # pragma: no cover - defensive guard
                LOGGER.warning("Failed to migrate settings payload: %s", exc)

        if overrides:
            settings = self._apply_overrides(settings, overrides, source="CLI")
        return self._apply_env_overrides(settings)

    def save(self, settings: Settings) -> Path:
        """Persist settings to disk with atomic file writes."""

        body = json.dumps(self._serialize(settings), indent=2, sort_keys=True)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)
        LOGGER.debug("Settings saved to %s", self._path)
        return self._path

    def _serialize(self, settings: Settings) -> Dict[str, Any]:
        data = asdict(settings)
        api_key = data.pop("api_key", "") or ""
        if api_key:
            try:
                data[_API_KEY_FIELD] = self._vault.encrypt(api_key)
            except Exception as exc:  # pragma: no cover - extremely rare
                LOGGER.warning("Failed to encrypt API key: %s", exc)
        data["version"] = _SETTINGS_VERSION
        data["secret_backend"] = self._vault.strategy
        return data

    def _read_payload(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            return json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}

    def _apply_overrides(
        self,
        settings: Settings,
        overrides: Mapping[str, Any],
        *,
        source: str = "runtime",
    ) -> Settings:
        allowed = {item.name for item in fields(Settings)}
        filtered: Dict[str, Any] = {}
        for key, value in overrides.items():
            if value is None:
                continue
            section, _, name = key.partition(".")
            if name and section in ("streaming", "context"):
                current = filtered.get(section) or getattr(settings, section)
                try:
                    filtered[section] = replace(current, **{name: _coerce_like(getattr(current, name), value)})
                except (AttributeError, TypeError, ValueError):
                    LOGGER.warning("Ignoring unknown %s override %s", source, key)
                continue
            if key not in allowed:
                continue
            filtered[key] = value
        metadata_override = filtered.get("metadata")
        if isinstance(metadata_override, Mapping):
            merged = dict(settings.metadata or {})
            merged.update(metadata_override)
            filtered["metadata"] = merged
        if filtered:
            LOGGER.debug("Applying %s settings overrides: %s", source, sorted(filtered))
            settings = replace(settings, **filtered)
        return settings

    def _apply_env_overrides(self, settings: Settings) -> Settings:
        overrides: Dict[str, Any] = {}
        for env_name, field_name in _ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value
        for env_name, field_name in _BOOL_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value.strip().lower() in _TRUE_VALUES
        for env_name, field_name in _INT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = int(value, 10)
            except ValueError:
                LOGGER.warning("Environment override %s=%s is not a valid integer", env_name, value)
        for env_name, field_name in _FLOAT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = float(value)
            except ValueError:
                LOGGER.warning("Environment override %s=%s is not a valid float", env_name, value)
        if overrides:
            settings = self._apply_overrides(settings, overrides, source="environment")
        return settings

    def _decrypt_api_key(self, ciphertext: str | None, legacy_plaintext: str | None) -> tuple[str, bool]:
        if ciphertext:
            try:
                return self._vault.decrypt(ciphertext), False
            except ValueError as exc:
                LOGGER.warning("Unable to decrypt API key: %s", exc)
                return "", False
        if legacy_plaintext:
            LOGGER.info("Detected plaintext API key; migrating to encrypted storage.")
            return legacy_plaintext, True
        return "", False


def _filter_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    allowed = {item.name for item in fields(Settings)} - {"api_key"}
    return {key: value for key, value in payload.items() if key in allowed}


def _section(cls: type, payload: Any) -> Any:
    if not isinstance(payload, Mapping):
        return cls()
    allowed = {item.name for item in fields(cls)}
    try:
        return cls(**{key: value for key, value in payload.items() if key in allowed})
    except TypeError:
        return cls()


def _coerce_like(current: Any, value: Any) -> Any:
    if isinstance(value, str):
        if isinstance(current, bool):
            return value.strip().lower() in _TRUE_VALUES
        if isinstance(current, int):
            return int(value, 10)
        if isinstance(current, float):
            return float(value)
        if isinstance(current, list):
            return [part for part in value.split(",") if part]
    return value


def redact_secret(value: str) -> str:
    stripped = (value or "").strip()
    if not stripped:
        return ""
    if len(stripped) <= 4:
        return "*" * len(stripped)
    return f"{stripped[:2]}{'*' * (len(stripped) - 4)}{stripped[-2:]}"
