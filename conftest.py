"""
Unit test conftest: isolate TERMBRIDGE_* environment variables and any local
.env file so Settings() sees only what a test passes in.
"""
import os

import pytest


@pytest.fixture(autouse=True)
def _isolate_settings_env(monkeypatch):
    """Remove TERMBRIDGE_* env vars for every test and disable .env loading,
    so a developer's local overrides never leak into assertions."""
    for var in list(os.environ):
        if var.startswith("TERMBRIDGE_"):
            monkeypatch.delenv(var, raising=False)

    import termbridge.config.settings as settings_module
    from pydantic_settings import SettingsConfigDict
    patched_config = SettingsConfigDict(
        env_prefix="TERMBRIDGE_",
        env_file=None,
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )
    monkeypatch.setattr(settings_module.Settings, "model_config", patched_config)
    monkeypatch.setattr(settings_module, "_singleton", None)
