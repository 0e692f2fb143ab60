import logging

import pytest

from galgo_mqtt.core.log_config import apply_log_level, level_from_config_or_env


@pytest.fixture(autouse=True)
def restore_root_level():
    root = logging.getLogger()
    before = root.level
    yield
    root.setLevel(before)


def test_default_is_info(monkeypatch):
    monkeypatch.delenv("GALGO_LOG_LEVEL", raising=False)
    assert level_from_config_or_env(None) == logging.INFO


def test_env_level(monkeypatch):
    monkeypatch.setenv("GALGO_LOG_LEVEL", "debug")
    assert level_from_config_or_env(None) == logging.DEBUG


def test_explicit_level_wins_over_env(monkeypatch):
    monkeypatch.setenv("GALGO_LOG_LEVEL", "DEBUG")
    assert level_from_config_or_env("WARNING") == logging.WARNING


def test_numeric_and_unknown_levels(monkeypatch):
    monkeypatch.delenv("GALGO_LOG_LEVEL", raising=False)
    assert level_from_config_or_env("15") == 15
    assert level_from_config_or_env("LOUD") == logging.INFO


def test_apply_sets_root_level():
    apply_log_level(logging.ERROR)
    assert logging.getLogger().level == logging.ERROR
