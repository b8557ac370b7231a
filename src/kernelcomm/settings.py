"""Explicit configuration record for the comm layer."""

from collections.abc import Mapping


class CommSettings:
    """Tunable behavior of a comm manager."""

    close_on_unknown_target: bool
    close_on_factory_error: bool
    warn_on_unknown_comm: bool
    report_traceback_lines: int

    def __init__(
        self,
        close_on_unknown_target: bool = True,
        close_on_factory_error: bool = True,
        warn_on_unknown_comm: bool = False,
        report_traceback_lines: int = 1,
    ) -> None:
        """Initialize settings.

        :param close_on_unknown_target: Reply with ``comm_close`` when an inbound
            open names an unregistered target.
        :param close_on_factory_error: Close a remotely opened comm whose target
            factory raised.
        :param warn_on_unknown_comm: Log discarded messages for unknown comm ids
            at warning level instead of debug.
        :param report_traceback_lines: Traceback lines kept in execution error
            reports; ``0`` keeps the full traceback.
        :raises TypeError: If a value has the wrong type.
        :raises ValueError: If ``report_traceback_lines`` is negative.
        """
        self.close_on_unknown_target = _validate_bool("close_on_unknown_target", close_on_unknown_target)
        self.close_on_factory_error = _validate_bool("close_on_factory_error", close_on_factory_error)
        self.warn_on_unknown_comm = _validate_bool("warn_on_unknown_comm", warn_on_unknown_comm)
        self.report_traceback_lines = _validate_line_count(report_traceback_lines)

    def as_dict(self) -> dict[str, object]:
        """Return settings as a plain mapping.

        :returns: Field name to value mapping.
        """
        return {
            "close_on_unknown_target": self.close_on_unknown_target,
            "close_on_factory_error": self.close_on_factory_error,
            "warn_on_unknown_comm": self.warn_on_unknown_comm,
            "report_traceback_lines": self.report_traceback_lines,
        }

    def __repr__(self) -> str:
        fields: str = ", ".join(f"{key}={value!r}" for key, value in self.as_dict().items())
        return f"CommSettings({fields})"


def _validate_bool(name: str, value: object) -> bool:
    """Validate a boolean setting.

    :param name: Setting name.
    :param value: Candidate value.
    :returns: Validated value.
    :raises TypeError: If ``value`` is not a bool.
    """
    if isinstance(value, bool) is False:
        raise TypeError(f"{name} must be a bool")
    return value


def _validate_line_count(value: object) -> int:
    """Validate the traceback line count.

    :param value: Candidate value.
    :returns: Validated count.
    :raises TypeError: If ``value`` is not an int.
    :raises ValueError: If ``value`` is negative.
    """
    if isinstance(value, bool) is True or isinstance(value, int) is False:
        raise TypeError("report_traceback_lines must be an int")
    if value < 0:
        raise ValueError("report_traceback_lines must be >= 0")
    return value


_FIELD_NAMES: frozenset[str] = frozenset(CommSettings().as_dict())


def load_settings(overrides: Mapping[str, object] | None = None) -> CommSettings:
    """Build settings from defaults plus explicit overrides.

    :param overrides: Optional mapping of field name to value.
    :returns: Validated settings.
    :raises ValueError: If an override names an unknown setting.
    """
    if overrides is None:
        return CommSettings()

    unknown: list[str] = sorted(key for key in overrides if key not in _FIELD_NAMES)
    if len(unknown) > 0:
        raise ValueError("Unknown comm settings: " + ", ".join(unknown))
    return CommSettings(**overrides)  # type: ignore[arg-type]
