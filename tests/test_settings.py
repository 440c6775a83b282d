"""Tests for the settings persistence layer."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from streamchat.services.settings import SecretVault, Settings, SettingsStore, redact_secret


@pytest.fixture(autouse=True)
def _clear_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "STREAMCHAT_API_KEY",
        "STREAMCHAT_BASE_URL",
        "STREAMCHAT_MODEL",
        "STREAMCHAT_ORGANIZATION",
        "STREAMCHAT_SYSTEM_PROMPT",
        "STREAMCHAT_DEBUG_LOGGING",
        "STREAMCHAT_REQUEST_TIMEOUT",
        "STREAMCHAT_TEMPERATURE",
        "STREAMCHAT_MAX_IMAGE_BYTES",
    ):
        monkeypatch.delenv(name, raising=False)


def test_load_returns_defaults_when_file_missing(tmp_path: Path) -> None:
    store = SettingsStore(tmp_path / "settings.json", vault=SecretVault(key_path=tmp_path / "key"))

    settings = store.load()

    assert settings == Settings()
    assert settings.base_url == "http://localhost:11434/v1"


def test_save_and_load_roundtrip(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    original = Settings(
        base_url="https://example.com/v1",
        api_key="super-secret",
        model="llama3:8b",
        temperature=0.4,
        organization="acme",
        request_timeout=30.0,
        system_prompt="Be brief.",
        default_headers={"X-Test": "1"},
        metadata={"env": "dev"},
    )

    SettingsStore(path).save(original)
    reloaded = SettingsStore(path).load()

    assert reloaded == original


def test_api_key_is_encrypted_on_disk(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"

    SettingsStore(path).save(Settings(api_key="super-secret"))

    payload = json.loads(path.read_text(encoding="utf-8"))
    assert "api_key" not in payload
    assert payload["api_key_ciphertext"].startswith("fernet:")
    assert "super-secret" not in path.read_text(encoding="utf-8")
    assert payload["version"] == 1
    assert path.with_suffix(".key").exists()


def test_undecryptable_api_key_falls_back_to_default(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"model": "mistral", "api_key_ciphertext": "fernet:garbage"}), encoding="utf-8")

    loaded = SettingsStore(path).load()

    assert loaded.model == "mistral"
    assert loaded.api_key == "ollama"


def test_invalid_json_yields_defaults(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    path.write_text("{not json", encoding="utf-8")

    assert SettingsStore(path).load() == Settings()


def test_unknown_fields_are_ignored(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"model": "mistral", "theme": "dark", "version": 1}), encoding="utf-8")

    loaded = SettingsStore(path).load()

    assert loaded.model == "mistral"


def test_runtime_overrides_apply_before_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    SettingsStore(path).save(Settings(base_url="https://local", model="llama3:8b"))
    monkeypatch.setenv("STREAMCHAT_MODEL", "env-model")

    loaded = SettingsStore(path).load(overrides={"model": "cli-model", "temperature": 0.9, "bogus": 1})

    assert loaded.model == "env-model"
    assert loaded.temperature == 0.9
    assert loaded.base_url == "https://local"


def test_env_overrides_are_typed(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("STREAMCHAT_BASE_URL", "https://env-base")
    monkeypatch.setenv("STREAMCHAT_DEBUG_LOGGING", "yes")
    monkeypatch.setenv("STREAMCHAT_REQUEST_TIMEOUT", "15")
    monkeypatch.setenv("STREAMCHAT_MAX_IMAGE_BYTES", "1024")
    monkeypatch.setenv("STREAMCHAT_TEMPERATURE", "warm")

    loaded = SettingsStore(tmp_path / "settings.json").load()

    assert loaded.base_url == "https://env-base"
    assert loaded.debug_logging is True
    assert loaded.request_timeout == 15.0
    assert loaded.max_image_bytes == 1024
    assert loaded.temperature is None


def test_secret_vault_roundtrip_and_rejects_foreign_tokens(tmp_path: Path) -> None:
    vault = SecretVault(key_path=tmp_path / "vault.key")

    token = vault.encrypt("hunter2")

    assert vault.decrypt(token) == "hunter2"
    assert vault.encrypt("") == ""
    assert vault.decrypt("") == ""
    with pytest.raises(ValueError):
        vault.decrypt("dpapi:abc")
    with pytest.raises(ValueError):
        vault.decrypt("fernet:not-a-token")


@pytest.mark.parametrize(
    ("value", "expected"),
    [("", ""), ("abc", "***"), ("sk-123456", "sk*****56")],
)
def test_redact_secret(value: str, expected: str) -> None:
    assert redact_secret(value) == expected
