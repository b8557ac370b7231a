"""Custom error types for kernelcomm."""

import traceback as traceback_module


class CommError(Exception):
    """Base class for all kernelcomm errors."""


class SerializationError(CommError):
    """Raised when a structured value cannot be encoded to the wire form."""


class MalformedWireDataError(CommError):
    """Raised for corrupt or unexpectedly shaped wire payloads."""


class TypeMismatchError(CommError, TypeError):
    """Raised when a buffer is not a binary byte sequence."""


class ChannelClosedError(CommError):
    """Raised when an operation is attempted on a closed comm."""

    comm_id: str

    def __init__(self, comm_id: str) -> None:
        """Initialize a closed-channel error.

        :param comm_id: Identifier of the closed comm.
        """
        self.comm_id = comm_id
        super().__init__(f"Comm {comm_id} is closed")


class UnknownTargetError(CommError, LookupError):
    """Raised when an open request names an unregistered target."""

    target_name: str

    def __init__(self, target_name: str) -> None:
        """Initialize an unknown-target error.

        :param target_name: Target name that failed to resolve.
        """
        self.target_name = target_name
        super().__init__(f"No comm target registered under {target_name!r}")


class ExecutionError(CommError):
    """Report of an exception raised inside runtime code.

    Instances are handed to an error sink rather than raised across the
    bridge boundary.
    """

    ename: str
    evalue: str
    traceback: list[str]

    def __init__(self, ename: str, evalue: str, traceback: list[str]) -> None:
        """Initialize an execution error report.

        :param ename: Exception type name.
        :param evalue: Exception message.
        :param traceback: Formatted traceback lines.
        """
        self.ename = ename
        self.evalue = evalue
        self.traceback = list(traceback)
        formatted: str = f"{ename}: {evalue}"
        super().__init__(formatted)

    @classmethod
    def from_exception(cls, exc: BaseException, max_lines: int = 1) -> "ExecutionError":
        """Build a report from a caught exception.

        :param exc: Exception raised by runtime code.
        :param max_lines: Maximum traceback lines to keep; ``0`` keeps all of them.
        :returns: Execution error report.
        """
        ename: str = type(exc).__name__
        evalue: str = str(exc)
        if max_lines == 1:
            return cls(ename, evalue, [f"{ename}: {evalue}"])

        lines: list[str] = []
        for chunk in traceback_module.format_exception(type(exc), exc, exc.__traceback__):
            lines.extend(chunk.rstrip("\n").split("\n"))
        if max_lines > 0:
            lines = lines[-max_lines:]
        return cls(ename, evalue, lines)

    def to_content(self) -> dict[str, object]:
        """Return the error-report payload.

        :returns: Dictionary with ``ename``, ``evalue`` and ``traceback``.
        """
        return {
            "ename": self.ename,
            "evalue": self.evalue,
            "traceback": list(self.traceback),
        }
