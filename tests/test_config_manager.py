"""Tests for config manager module."""

import json
import os

import pytest

from agentshift.util.config_manager import (
    CONFIG_BASE_KEYS,
    DEFAULT_USAGE_THRESHOLDS,
    ConfigManager,
    get_env_float,
    validate_config_keys,
)


class TestConfigManager:
    """Test cases for ConfigManager."""

    def test_config_path_from_env(self, tmp_path, monkeypatch):
        path = tmp_path / "custom.conf"
        monkeypatch.setenv("AGENTSHIFT_CONFIG", str(path))
        assert ConfigManager().config_path == path

    def test_hash_and_verify_password(self):
        mgr = ConfigManager()
        hashed = mgr.hash_password("testpassword123")
        assert hashed != "testpassword123"
        assert mgr.verify_password("testpassword123", hashed) is True
        assert mgr.verify_password("wrongpassword", hashed) is False

    def test_missing_config_is_empty(self):
        assert ConfigManager().load_config() == {}

    def test_corrupt_config_is_empty(self):
        mgr = ConfigManager()
        mgr.config_path.write_text("{not json", encoding="utf-8")
        assert mgr.load_config() == {}

    def test_save_is_private_and_atomic(self):
        mgr = ConfigManager()
        mgr.save_config({"default_agent": "gemini"})
        assert json.loads(mgr.config_path.read_text(encoding="utf-8")) == {"default_agent": "gemini"}
        if os.name != "nt":
            assert (mgr.config_path.stat().st_mode & 0o777) == 0o600
        assert not list(mgr.config_path.parent.glob(".agentshift_config_*"))

    def test_save_rejects_unknown_keys(self):
        mgr = ConfigManager()
        with pytest.raises(ValueError, match="Unknown config keys"):
            mgr.save_config({"accounts": {}})
        assert not mgr.config_path.exists()

    def test_first_run_until_password_set(self):
        mgr = ConfigManager()
        assert mgr.is_first_run() is True
        mgr.initialize_main_password("main-password")
        assert mgr.is_first_run() is False
        assert mgr.check_main_password("main-password") is True
        assert mgr.check_main_password("nope") is False

    def test_credentials_round_trip_encrypted(self):
        mgr = ConfigManager()
        mgr.initialize_main_password("main-password")
        mgr.store_credential("gemini", "AIza-secret", "main-password")

        assert "AIza-secret" not in mgr.config_path.read_text(encoding="utf-8")
        assert mgr.get_credential("gemini", "main-password") == "AIza-secret"
        assert mgr.list_credential_agents() == ["gemini"]

    def test_wrong_password_cannot_decrypt(self):
        mgr = ConfigManager()
        mgr.initialize_main_password("main-password")
        mgr.store_credential("gemini", "AIza-secret", "main-password")
        assert mgr.get_credential("gemini", "other-password") is None

    def test_store_requires_correct_password(self):
        mgr = ConfigManager()
        mgr.initialize_main_password("main-password")
        with pytest.raises(ValueError):
            mgr.store_credential("gemini", "secret", "wrong")

    def test_delete_credential(self):
        mgr = ConfigManager()
        mgr.initialize_main_password("pw-123456")
        mgr.store_credential("openrouter", "sk-or", "pw-123456")
        mgr.delete_credential("openrouter")
        assert mgr.get_credential("openrouter", "pw-123456") is None

    def test_verify_main_password_without_setup_raises(self):
        with pytest.raises(ValueError):
            ConfigManager().verify_main_password()


class TestSettings:
    """Orchestration settings and their validation."""

    def test_defaults(self):
        mgr = ConfigManager()
        assert mgr.get_default_agent() is None
        assert mgr.get_max_concurrent_tasks() == 1
        assert mgr.get_max_task_duration_minutes() == 15
        assert mgr.get_gemini_rate_tier() == "FREE"
        assert mgr.get_usage_thresholds() == DEFAULT_USAGE_THRESHOLDS

    def test_custom_path_set_and_clear(self):
        mgr = ConfigManager()
        mgr.set_custom_path("claude-code", "/opt/claude")
        assert mgr.get_custom_path("claude-code") == "/opt/claude"
        mgr.set_custom_path("claude-code", None)
        assert mgr.get_custom_path("claude-code") is None

    def test_max_concurrent_tasks_validation(self):
        mgr = ConfigManager()
        with pytest.raises(ValueError):
            mgr.set_max_concurrent_tasks(0)
        mgr.set_max_concurrent_tasks(3)
        assert mgr.get_max_concurrent_tasks() == 3

    def test_max_duration_zero_means_unlimited(self):
        mgr = ConfigManager()
        mgr.set_max_task_duration_minutes(0)
        assert mgr.get_max_task_duration_minutes() == 0
        with pytest.raises(ValueError):
            mgr.set_max_task_duration_minutes(-1)

    def test_rate_tier_validation(self):
        mgr = ConfigManager()
        mgr.set_gemini_rate_tier("TIER_2")
        assert mgr.get_gemini_rate_tier() == "TIER_2"
        with pytest.raises(ValueError):
            mgr.set_gemini_rate_tier("PLATINUM")

    @pytest.mark.parametrize("warning,auto_stop", [(-1, 50), (50, 101), (90, 80)])
    def test_invalid_thresholds(self, warning, auto_stop):
        with pytest.raises(ValueError):
            ConfigManager().set_usage_thresholds(warning, auto_stop)

    def test_thresholds_saved(self):
        mgr = ConfigManager()
        mgr.set_usage_thresholds(70, 90)
        assert mgr.get_usage_thresholds() == {"warning": 70, "auto_stop": 90}


class TestValidateConfigKeys:
    def test_known_keys_pass(self):
        validate_config_keys({key: None for key in CONFIG_BASE_KEYS})

    def test_allow_extends_known_keys(self):
        validate_config_keys({"extra": 1}, allow=["extra"])

    def test_non_dict_rejected(self):
        with pytest.raises(ValueError):
            validate_config_keys([])


class TestGetEnvFloat:
    def test_reads_value(self, monkeypatch):
        monkeypatch.setenv("AGENTSHIFT_TEST_FLOAT", "2.5")
        assert get_env_float("AGENTSHIFT_TEST_FLOAT", 1.0) == 2.5

    def test_invalid_falls_back(self, monkeypatch):
        monkeypatch.setenv("AGENTSHIFT_TEST_FLOAT", "soon")
        assert get_env_float("AGENTSHIFT_TEST_FLOAT", 1.0) == 1.0

    def test_unset_falls_back(self):
        assert get_env_float("AGENTSHIFT_TEST_UNSET", 4.0) == 4.0
