"""Tests for comm settings."""

import pytest

from kernelcomm import CommSettings
from kernelcomm.settings import load_settings


def test_defaults() -> None:
    """Defaults match the documented behavior."""
    settings: CommSettings = load_settings()
    assert settings.as_dict() == {
        "close_on_unknown_target": True,
        "close_on_factory_error": True,
        "warn_on_unknown_comm": False,
        "report_traceback_lines": 1,
    }


def test_overrides_are_applied() -> None:
    """Known keys override defaults."""
    settings: CommSettings = load_settings({"warn_on_unknown_comm": True, "report_traceback_lines": 0})
    assert settings.warn_on_unknown_comm is True
    assert settings.report_traceback_lines == 0
    assert settings.close_on_unknown_target is True


def test_unknown_keys_fail() -> None:
    """Misspelled settings are reported."""
    with pytest.raises(ValueError) as exc_info:
        load_settings({"close_on_unknown": False})
    assert "close_on_unknown" in str(exc_info.value)


@pytest.mark.parametrize(
    "overrides",
    [
        {"close_on_unknown_target": "yes"},
        {"warn_on_unknown_comm": 1},
        {"report_traceback_lines": "3"},
        {"report_traceback_lines": True},
    ],
)
def test_wrong_types_fail(overrides: dict[str, object]) -> None:
    """Values must have their documented types."""
    with pytest.raises(TypeError):
        load_settings(overrides)


def test_negative_traceback_lines_fail() -> None:
    """Traceback line counts cannot be negative."""
    with pytest.raises(ValueError):
        CommSettings(report_traceback_lines=-1)
