import logging

import pytest

from kubestack import config
from kubestack.logging.setup import get_log_level_from_config


class TestEnvHelpers:
    @pytest.mark.parametrize(
        "value,expected", [("1", True), ("true", True), ("0", False), ("False", False), ("x", None)]
    )
    def test_parse_boolean_env(self, monkeypatch, value, expected):
        monkeypatch.setenv("KS_TEST_FLAG", value)

        assert config.parse_boolean_env("KS_TEST_FLAG") is expected

    def test_is_env_not_false(self, monkeypatch):
        monkeypatch.delenv("KS_TEST_FLAG", raising=False)
        assert config.is_env_not_false("KS_TEST_FLAG")

        monkeypatch.setenv("KS_TEST_FLAG", "0")
        assert not config.is_env_not_false("KS_TEST_FLAG")
        assert not config.is_env_true("KS_TEST_FLAG")

    def test_float_env(self, monkeypatch):
        monkeypatch.setenv("KS_TEST_TIMEOUT", "2.5")
        assert config.float_env("KS_TEST_TIMEOUT", 1) == 2.5

        monkeypatch.setenv("KS_TEST_TIMEOUT", "")
        assert config.float_env("KS_TEST_TIMEOUT", 1) == 1

    def test_invalid_numbers_fall_back_to_default(self, monkeypatch, caplog):
        monkeypatch.setenv("KS_TEST_RETRIES", "many")

        with caplog.at_level(logging.WARNING):
            assert config.int_env("KS_TEST_RETRIES", 5) == 5
        assert "KS_TEST_RETRIES" in caplog.text

    def test_eval_log_type(self, monkeypatch):
        monkeypatch.setenv("KS_LOG", "TRACE")
        assert config.eval_log_type("KS_LOG") == "trace"

        monkeypatch.setenv("KS_LOG", "verbose")
        assert config.eval_log_type("KS_LOG") is False


class TestLogLevel:
    def test_trace_maps_to_debug(self, monkeypatch):
        monkeypatch.setattr(config, "KS_LOG", "trace")

        assert get_log_level_from_config() == logging.DEBUG
        assert config.is_trace_logging_enabled()

    def test_warn(self, monkeypatch):
        monkeypatch.setattr(config, "KS_LOG", "warn")

        assert get_log_level_from_config() == logging.WARNING

    def test_debug_flag(self, monkeypatch):
        monkeypatch.setattr(config, "KS_LOG", False)
        monkeypatch.setattr(config, "DEBUG", True)

        assert get_log_level_from_config() == logging.DEBUG

        monkeypatch.setattr(config, "DEBUG", False)
        assert get_log_level_from_config() == logging.INFO


def test_collect_config_items():
    keys = [key for key, _ in config.collect_config_items()]

    assert "STACK_OPERATION_TIMEOUT" in keys
    assert "TRANSIENT_MAX_RETRIES" in keys
