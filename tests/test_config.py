"""Tests for environment overrides in the config module."""

import importlib

import pytest

from gender_gap_tracker import config
from gender_gap_tracker.core.errors import ConfigurationError


@pytest.fixture
def reload_config(monkeypatch):
    yield lambda: importlib.reload(config)
    monkeypatch.undo()
    importlib.reload(config)


def test_env_override_applied(monkeypatch, reload_config):
    monkeypatch.setenv("GAP_TRACKER_DRIFT_TOLERANCE", " 0.03 ")
    monkeypatch.setenv("GAP_TRACKER_SEED", "7")
    module = reload_config()

    assert module.DRIFT_TOLERANCE == pytest.approx(0.03)
    assert module.DEFAULT_SEED == 7


def test_blank_env_uses_default(monkeypatch, reload_config):
    monkeypatch.setenv("GAP_TRACKER_LAST_WAVE_RATIO", "   ")
    assert reload_config().LAST_WAVE_ABSORB_RATIO == pytest.approx(1.5)


@pytest.mark.parametrize(
    "name, value",
    [("GAP_TRACKER_SEED", "forty-two"), ("GAP_TRACKER_MIN_EFFECTIVE_N", "thirty")],
)
def test_invalid_env_raises_on_import(monkeypatch, reload_config, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(ConfigurationError, match=name):
        reload_config()
