"""
tests/unit/test_config.py — Settings validation and loading

Covers:
  - defaults match the documented gateway/shell/session values
  - field validators reject bad ports, paths, intervals and prompt patterns
  - invalid log level is rejected, case is normalised
  - validate_all() raises ConfigError with a numbered list
  - TERMBRIDGE_CONFIG env var is respected by load_settings()
  - nested TERMBRIDGE_SECTION__KEY env vars override YAML defaults
"""

from __future__ import annotations

import os
import textwrap
from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError


def _make_settings(**overrides):
    from termbridge.config.settings import Settings
    return Settings(**overrides)


# ── Defaults ──────────────────────────────────────────────────────────────────

class TestDefaults:
    def test_gateway_defaults(self):
        s = _make_settings()
        assert s.gateway.host == "127.0.0.1"
        assert s.gateway.port == 3002
        assert s.gateway.path == "/ws"
        assert s.gateway.health_interval_seconds == 30.0
        assert s.gateway.ping_timeout_seconds == 10.0
        assert not s.gateway.tls_enabled

    def test_shell_and_session_defaults(self):
        s = _make_settings()
        assert s.shell.default_port == 22
        assert s.session.dedup_capacity == 1000
        assert s.normalizer.banner_marker == "Last login"

    def test_prompt_regex_compiles(self):
        s = _make_settings()
        assert s.normalizer.prompt_regex.match("└─# ")


# ── Field validators ──────────────────────────────────────────────────────────

class TestGatewayConfig:
    def test_invalid_port(self):
        from termbridge.config.settings import GatewayConfig
        with pytest.raises(ValidationError, match="gateway.port"):
            GatewayConfig(port=99999)

    def test_relative_path_rejected(self):
        from termbridge.config.settings import GatewayConfig
        with pytest.raises(ValidationError, match="gateway.path"):
            GatewayConfig(path="ws")

    def test_zero_interval_rejected(self):
        from termbridge.config.settings import GatewayConfig
        with pytest.raises(ValidationError):
            GatewayConfig(health_interval_seconds=0)

    def test_zero_ping_timeout_rejected(self):
        from termbridge.config.settings import GatewayConfig
        with pytest.raises(ValidationError, match="ping_timeout_seconds"):
            GatewayConfig(ping_timeout_seconds=0)

    def test_tls_enabled_needs_both(self):
        from termbridge.config.settings import GatewayConfig
        assert not GatewayConfig(tls_cert_path="c.pem").tls_enabled
        assert GatewayConfig(tls_cert_path="c.pem", tls_key_path="k.pem").tls_enabled


class TestOtherSections:
    def test_dict_sections_become_models(self):
        from termbridge.config.settings import GatewayConfig, SerialConfig, ShellConfig
        s = _make_settings(
            gateway={"port": 8080}, shell={"default_port": 2222},
            serial={"read_timeout_seconds": 0.5},
        )
        assert isinstance(s.gateway, GatewayConfig) and s.gateway.port == 8080
        assert isinstance(s.shell, ShellConfig) and s.shell.default_port == 2222
        assert isinstance(s.serial, SerialConfig) and s.serial.read_timeout_seconds == 0.5

    def test_bad_prompt_pattern(self):
        from termbridge.config.settings import NormalizerConfig
        with pytest.raises(ValidationError, match="prompt_pattern"):
            NormalizerConfig(prompt_pattern="([unclosed")

    def test_zero_dedup_capacity(self):
        from termbridge.config.settings import SessionConfig
        with pytest.raises(ValidationError):
            SessionConfig(dedup_capacity=0)

    def test_log_level_case_insensitive(self):
        from termbridge.config.settings import LoggingConfig
        assert LoggingConfig(level="debug").level == "DEBUG"

    def test_invalid_log_level(self):
        from termbridge.config.settings import LoggingConfig
        with pytest.raises(ValidationError):
            LoggingConfig(level="VERBOSE")


# ── validate_all ──────────────────────────────────────────────────────────────

class TestValidateAll:
    def test_defaults_pass(self):
        _make_settings().validate_all()

    def test_half_tls_pair(self):
        from termbridge.config.settings import ConfigError
        s = _make_settings(gateway={"tls_cert_path": "/nonexistent/cert.pem"})
        with pytest.raises(ConfigError) as exc_info:
            s.validate_all()
        msg = str(exc_info.value)
        assert "1." in msg
        assert "2." in msg  # the pair rule and the missing file

    def test_existing_tls_files_pass(self, tmp_path):
        cert = tmp_path / "cert.pem"
        key = tmp_path / "key.pem"
        cert.write_text("x")
        key.write_text("x")
        s = _make_settings(gateway={"tls_cert_path": str(cert), "tls_key_path": str(key)})
        s.validate_all()

    def test_sub_second_health_interval(self):
        from termbridge.config.settings import ConfigError
        s = _make_settings(gateway={"health_interval_seconds": 0.5})
        with pytest.raises(ConfigError, match="health_interval_seconds"):
            s.validate_all()


# ── Loading ───────────────────────────────────────────────────────────────────

class TestConfigPathResolution:
    def test_explicit_path_takes_priority(self, tmp_path):
        from termbridge.config.settings import _resolve_config_path
        cfg_file = tmp_path / "custom.yaml"
        with patch.dict(os.environ, {"TERMBRIDGE_CONFIG": str(tmp_path / "env.yaml")}):
            assert _resolve_config_path(str(cfg_file)) == cfg_file

    def test_env_var_used_when_no_explicit_path(self, tmp_path):
        from termbridge.config.settings import _resolve_config_path
        env_file = tmp_path / "env_config.yaml"
        with patch.dict(os.environ, {"TERMBRIDGE_CONFIG": str(env_file)}):
            assert _resolve_config_path(None) == env_file

    def test_default_path(self):
        from termbridge.config.settings import _resolve_config_path
        assert _resolve_config_path(None) == Path("config/config.yaml")

    def test_load_settings_from_file(self, tmp_path):
        from termbridge.config.settings import get_settings, load_settings
        cfg_file = tmp_path / "test_config.yaml"
        cfg_file.write_text(textwrap.dedent("""
            gateway:
              port: 8080
              max_connections: 5
            normalizer:
              banner_marker: "Welcome"
            unknown_section:
              ignored: true
        """))
        settings = load_settings(str(cfg_file))
        assert settings.gateway.port == 8080
        assert settings.gateway.max_connections == 5
        assert settings.normalizer.banner_marker == "Welcome"
        assert get_settings() is settings

    def test_missing_file_gives_defaults(self, tmp_path):
        from termbridge.config.settings import load_settings
        settings = load_settings(tmp_path / "absent.yaml")
        assert settings.gateway.port == 3002

    def test_env_override(self, tmp_path, monkeypatch):
        from termbridge.config.settings import load_settings
        monkeypatch.setenv("TERMBRIDGE_GATEWAY__PORT", "8443")
        settings = load_settings(tmp_path / "absent.yaml")
        assert settings.gateway.port == 8443
