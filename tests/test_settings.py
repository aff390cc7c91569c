"""Tests for the settings persistence layer."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from docbare.services.settings import (
    ContextSettings,
    SecretVault,
    Settings,
    SettingsStore,
    StreamingSettings,
    redact_secret,
)


def _store(tmp_path: Path) -> SettingsStore:
    return SettingsStore(tmp_path / "settings.json", vault=SecretVault(key_path=tmp_path / "key"))


def test_load_returns_defaults_when_file_missing(tmp_path: Path) -> None:
    assert _store(tmp_path).load() == Settings()


def test_save_and_load_roundtrip(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    original = Settings(
        base_url="https://example.com/v1",
        api_key="super-secret",
        model="deepseek-chat",
        organization="acme",
        stream_timeout=45.0,
        default_headers={"X-Test": "1"},
        metadata={"env": "dev"},
        streaming=StreamingSettings(reasoning_flush_chars=40, reasoning_flush_markers=["."]),
        context=ContextSettings(max_document_tokens=6_000, knowledge_chunk_limit=3),
    )

    SettingsStore(path).save(original)
    reloaded = SettingsStore(path).load()

    assert reloaded == original
    on_disk = json.loads(path.read_text(encoding="utf-8"))
    assert "api_key" not in on_disk
    assert on_disk["api_key_ciphertext"].startswith("fernet:")
    assert "super-secret" not in path.read_text(encoding="utf-8")


def test_load_legacy_plaintext_api_key_migrates(tmp_path: Path) -> None:
    target = tmp_path / "settings.json"
    target.write_text(
        json.dumps({"base_url": "https://old", "api_key": "plain-key", "model": "deepseek-chat"}),
        encoding="utf-8",
    )

    loaded = SettingsStore(target).load()

    assert loaded.api_key == "plain-key"
    assert loaded.base_url == "https://old"
    migrated = json.loads(target.read_text(encoding="utf-8"))
    assert "api_key" not in migrated
    assert migrated["version"] == 1


def test_invalid_json_falls_back_to_defaults(tmp_path: Path) -> None:
    target = tmp_path / "settings.json"
    target.write_text("{not json", encoding="utf-8")

    assert SettingsStore(target).load() == Settings()


def test_unknown_keys_and_bad_sections_are_ignored(tmp_path: Path) -> None:
    target = tmp_path / "settings.json"
    target.write_text(
        json.dumps({"version": 1, "model": "m", "theme": "dark", "streaming": "oops", "context": {"max_query_tokens": 10}}),
        encoding="utf-8",
    )

    loaded = SettingsStore(target).load()

    assert loaded.model == "m"
    assert loaded.streaming == StreamingSettings()
    assert loaded.context.max_query_tokens == 10


def test_env_overrides_take_precedence(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.save(Settings(base_url="https://local", api_key="abc"))
    monkeypatch.setenv("DOCBARE_BASE_URL", "https://env-base")
    monkeypatch.setenv("DOCBARE_API_KEY", "env-key")
    monkeypatch.setenv("DOCBARE_PORT", "9001")
    monkeypatch.setenv("DOCBARE_STREAM_TIMEOUT", "12.5")
    monkeypatch.setenv("DOCBARE_DEBUG_LOGGING", "yes")

    overridden = store.load(overrides={"base_url": "https://cli", "port": 7000})

    assert overridden.base_url == "https://env-base"
    assert overridden.api_key == "env-key"
    assert overridden.port == 9001
    assert overridden.stream_timeout == 12.5
    assert overridden.debug_logging is True


def test_invalid_numeric_env_override_is_ignored(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("DOCBARE_PORT", "not-a-port")

    assert _store(tmp_path).load().port == 8000


def test_dotted_section_overrides(tmp_path: Path) -> None:
    loaded = _store(tmp_path).load(
        overrides={
            "streaming.loading_fallback_seconds": "3",
            "streaming.reasoning_flush_markers": ".,!",
            "context.max_document_tokens": "100",
            "context.bogus": "1",
            "unknown": "x",
        }
    )

    assert loaded.streaming.loading_fallback_seconds == 3.0
    assert loaded.streaming.reasoning_flush_markers == [".", "!"]
    assert loaded.context.max_document_tokens == 100
    assert loaded.context.ceilings().max_document_tokens == 100


def test_derived_runtime_configs() -> None:
    settings = Settings(
        api_key="k",
        metadata={"tenant": 7},
        client_timeout=None,
        streaming=StreamingSettings(reasoning_flush_chars=5, loading_fallback_seconds=2.0),
    )

    client = settings.client_settings()
    transcoder = settings.streaming.transcoder_config()
    consumer = settings.consumer_config()

    assert client.model == "deepseek-reasoner"
    assert client.metadata == {"tenant": "7"}
    assert client.default_headers is None
    assert transcoder.flush_min_chars == 5
    assert transcoder.flush_markers == (".", "\n", "**")
    assert consumer.loading_fallback_seconds == 2.0
    assert consumer.read_timeout_seconds is None


def test_secret_vault_rejects_foreign_tokens(tmp_path: Path) -> None:
    vault = SecretVault(key_path=tmp_path / "key")
    token = vault.encrypt("secret")

    assert vault.decrypt(token) == "secret"
    assert vault.encrypt("") == ""
    with pytest.raises(ValueError):
        vault.decrypt("dpapi:abc")
    with pytest.raises(ValueError):
        vault.decrypt("fernet:not-a-token")


def test_undecryptable_key_loads_as_empty(tmp_path: Path) -> None:
    target = tmp_path / "settings.json"
    target.write_text(json.dumps({"version": 1, "api_key_ciphertext": "fernet:garbage"}), encoding="utf-8")

    assert SettingsStore(target).load().api_key == ""


@pytest.mark.parametrize(
    ("value", "expected"),
    [("", ""), ("abc", "***"), ("sk-123456", "sk*****56")],
)
def test_redact_secret(value: str, expected: str) -> None:
    assert redact_secret(value) == expected
