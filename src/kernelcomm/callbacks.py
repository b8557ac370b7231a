"""Bridge between host-side message events and runtime callbacks.

Every invocation of runtime code made through this module happens while
holding the ``RuntimeLock``. Exceptions escaping runtime code are turned
into ``ExecutionError`` reports and handed to an error sink; they never
propagate into the caller's dispatch loop.
"""

import logging
from collections.abc import Callable

from kernelcomm import buffers as buffer_codec
from kernelcomm import wire
from kernelcomm.errors import CommError
from kernelcomm.errors import ExecutionError
from kernelcomm.lock import RuntimeLock
from kernelcomm.message import Message
from kernelcomm.settings import CommSettings

log = logging.getLogger(__name__)

ErrorSink = Callable[[CommError], None]
MessageCallback = Callable[..., object]


class _NoContext:
    """Marker for callbacks registered without a captured context."""

    def __repr__(self) -> str:
        return "NO_CONTEXT"


NO_CONTEXT: _NoContext = _NoContext()


def log_error_report(report: CommError) -> None:
    """Default error sink: log the report.

    :param report: Execution error or comm-level error report.
    """
    if isinstance(report, ExecutionError) is True:
        log.error("Comm callback failed: %s: %s\n%s", report.ename, report.evalue, "\n".join(report.traceback))
        return
    log.error("Comm error: %s: %s", type(report).__name__, report)


def message_record(message: Message) -> dict[str, object]:
    """Flatten a message into the record passed to runtime callbacks.

    Headers are transport-assigned and copied as they are; metadata and
    content are decoded as wire data.

    :param message: Inbound message.
    :returns: Mapping with ``header``, ``parent_header``, ``metadata``,
        ``content`` and ``buffers`` keys.
    :raises MalformedWireDataError: If metadata or content is not valid wire data.
    :raises TypeMismatchError: If a buffer is not bytes-like.
    """
    return {
        "header": dict(message.header),
        "parent_header": dict(message.parent_header),
        "metadata": wire.decode_mapping(message.metadata, "metadata"),
        "content": wire.decode_mapping(message.content, "content"),
        "buffers": buffer_codec.decode(message.buffers),
    }


class BridgedCallback:
    """Runtime callback wrapped so that every call is guarded.

    The captured context, when present, is passed as a second argument so
    its ownership is visible where the callback is registered.
    """

    _bridge: "CallbackBridge"
    _callback: MessageCallback
    _context: object

    def __init__(self, bridge: "CallbackBridge", callback: MessageCallback, context: object = NO_CONTEXT) -> None:
        """Initialize a bridged callback.

        :param bridge: Owning bridge.
        :param callback: Runtime callable.
        :param context: Optional explicit context passed on every call.
        :raises TypeError: If ``callback`` is not callable.
        """
        if callable(callback) is False:
            raise TypeError("callback must be callable")
        self._bridge = bridge
        self._callback = callback
        self._context = context

    @property
    def callback(self) -> MessageCallback:
        """Return the wrapped runtime callable."""
        return self._callback

    @property
    def context(self) -> object:
        """Return the captured context, or ``NO_CONTEXT``."""
        return self._context

    def __call__(self, message: Message) -> bool:
        """Invoke the callback with the flattened message record.

        :param message: Inbound message.
        :returns: ``True`` when the callback completed without raising.
        """
        return self._bridge.invoke_with_message(self._callback, message, self._context)

    def __repr__(self) -> str:
        return f"BridgedCallback({self._callback!r})"


class CallbackBridge:
    """Guard and translate calls from host events into runtime code."""

    _lock: RuntimeLock
    _error_sink: ErrorSink
    _settings: CommSettings

    def __init__(
        self,
        lock: RuntimeLock,
        error_sink: ErrorSink | None = None,
        settings: CommSettings | None = None,
    ) -> None:
        """Initialize a bridge.

        :param lock: Lock guarding runtime access.
        :param error_sink: Receiver of execution error reports; logs when omitted.
        :param settings: Comm settings.
        """
        if error_sink is None:
            error_sink = log_error_report
        if settings is None:
            settings = CommSettings()
        self._lock = lock
        self._error_sink = error_sink
        self._settings = settings

    @property
    def lock(self) -> RuntimeLock:
        """Return the runtime lock."""
        return self._lock

    def wrap(self, callback: MessageCallback, context: object = NO_CONTEXT) -> BridgedCallback:
        """Wrap a runtime callback for message delivery.

        :param callback: Runtime callable taking the message record.
        :param context: Optional explicit context.
        :returns: Guarded callback.
        """
        if isinstance(callback, BridgedCallback) is True:
            if callback._bridge is self and context is NO_CONTEXT:
                return callback
            return BridgedCallback(self, callback.callback, context)
        return BridgedCallback(self, callback, context)

    def report(self, exc: BaseException) -> ExecutionError:
        """Convert an exception into a report and hand it to the error sink.

        :param exc: Exception raised by runtime code.
        :returns: The report that was emitted.
        """
        execution_error: ExecutionError
        if isinstance(exc, ExecutionError) is True:
            execution_error = exc  # type: ignore[assignment]
        else:
            execution_error = ExecutionError.from_exception(exc, self._settings.report_traceback_lines)
        self.report_error(execution_error)
        return execution_error

    def report_error(self, error: CommError) -> None:
        """Hand a comm-level error to the error sink as is.

        :param error: Error to report.
        """
        try:
            self._error_sink(error)
        except Exception:
            log.exception("Error sink failed while reporting %s", type(error).__name__)

    def call(self, func: Callable[..., object], *args: object) -> bool:
        """Call runtime code under the lock, reporting failures.

        :param func: Runtime callable.
        :param args: Positional arguments.
        :returns: ``True`` when ``func`` completed without raising.
        """
        with self._lock:
            try:
                func(*args)
            except Exception as exc:
                self.report(exc)
                return False
        return True

    def invoke_with_message(self, callback: MessageCallback, message: Message, context: object = NO_CONTEXT) -> bool:
        """Decode a message and invoke a callback with its record.

        Decoding happens under the lock as well, since it builds runtime objects.

        :param callback: Runtime callable.
        :param message: Inbound message.
        :param context: Optional explicit context.
        :returns: ``True`` when decoding and the callback both succeeded.
        """
        with self._lock:
            try:
                record: dict[str, object] = message_record(message)
                if context is NO_CONTEXT:
                    callback(record)
                else:
                    callback(record, context)
            except Exception as exc:
                self.report(exc)
                return False
        return True
