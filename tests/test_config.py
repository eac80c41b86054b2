"""Tests for configuration loading and validation."""
import json

import pytest

from vpn_store import config


def _valid():
    return {
        "BOT_TOKEN": "123:abc",
        "USER_ID": [1, 2],
        "GROUP_ID": "-100",
        "DATA_QRIS": "000201",
        "MERCHANT_ID": "M1",
        "SERVER_KEY": "SK",
        "PORT": 8080,
    }


class TestValidateConfig:
    """Test configuration document validation."""

    def test_valid_document(self):
        """Test a complete document passes."""
        assert config.validate_config(_valid()) == (True, [])

    def test_missing_keys(self):
        """Test each missing required key is reported."""
        data = _valid()
        del data["BOT_TOKEN"]
        data["GROUP_ID"] = "  "
        valid, errors = config.validate_config(data)
        assert valid is False
        assert "BOT_TOKEN is required" in errors
        assert "GROUP_ID is required" in errors

    @pytest.mark.parametrize("user_id", [[], ["1"], True, "abc"])
    def test_bad_user_id(self, user_id):
        """Test USER_ID must be an int or a non-empty list of ints."""
        data = _valid()
        data["USER_ID"] = user_id
        assert config.validate_config(data)[0] is False

    def test_single_user_id(self):
        """Test a single admin id is accepted."""
        data = _valid()
        data["USER_ID"] = 5
        assert config.validate_config(data)[0] is True

    @pytest.mark.parametrize("port", [0, 65536, "80"])
    def test_bad_port(self, port):
        """Test PORT must be a valid number."""
        data = _valid()
        data["PORT"] = port
        assert config.validate_config(data)[0] is False

    def test_not_an_object(self):
        """Test non-object documents are rejected."""
        assert config.validate_config([1, 2])[0] is False


class TestLoadSettings:
    """Test settings assembly from environment and document."""

    @pytest.fixture(autouse=True)
    def env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("DOTENV_PATH", str(tmp_path / "missing.env"))
        monkeypatch.setenv("VARS_PATH", str(tmp_path / ".vars.json"))
        monkeypatch.setenv("DB_PATH", str(tmp_path / "bot.db"))
        monkeypatch.delenv("TELEGRAM_BOT_TOKEN", raising=False)
        monkeypatch.delenv("POLL_INTERVAL", raising=False)
        monkeypatch.delenv("WORKERS", raising=False)

    def test_setup_mode_without_document(self):
        """Test a missing document starts setup mode."""
        settings = config.load_settings()
        assert settings.setup_mode is True

    def test_setup_mode_with_invalid_document(self, tmp_path):
        """Test an invalid document starts setup mode."""
        (tmp_path / ".vars.json").write_text(json.dumps({"BOT_TOKEN": "x"}))
        assert config.load_settings().setup_mode is True

    def test_loads_document(self, tmp_path):
        """Test a valid document populates settings."""
        data = _valid()
        data["NAMA_STORE"] = "My Store"
        (tmp_path / ".vars.json").write_text(json.dumps(data))

        settings = config.load_settings()

        assert settings.setup_mode is False
        assert settings.admin_ids == [1, 2]
        assert settings.store_name == "My Store"
        assert settings.port == 8080
        assert settings.min_deposit == config.DEFAULT_MIN_DEPOSIT
        assert settings.database_path == str(tmp_path / "bot.db")

    def test_token_override(self, tmp_path, monkeypatch):
        """Test TELEGRAM_BOT_TOKEN wins over the document."""
        (tmp_path / ".vars.json").write_text(json.dumps(_valid()))
        monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "999:zzz")
        assert config.load_settings().bot_token == "999:zzz"

    def test_bad_poll_interval(self, monkeypatch):
        """Test a non-numeric poll interval is reported."""
        monkeypatch.setenv("POLL_INTERVAL", "fast")
        with pytest.raises(RuntimeError):
            config.load_settings()

    def test_workers(self, monkeypatch):
        """Test the worker pool size comes from WORKERS and must be positive."""
        assert config.load_settings().workers == 8
        monkeypatch.setenv("WORKERS", "3")
        assert config.load_settings().workers == 3
        monkeypatch.setenv("WORKERS", "0")
        with pytest.raises(RuntimeError):
            config.load_settings()

    def test_write_and_read_roundtrip(self, tmp_path):
        """Test the written document can be read back."""
        path = str(tmp_path / "nested" / "vars.json")
        config.write_config(path, _valid())
        assert config.read_config(path) == _valid()
        assert config.read_config(str(tmp_path / "absent.json")) is None
