"""Comm channels and their runtime-facing handles."""

import logging
import weakref
from collections.abc import Iterable
from typing import TYPE_CHECKING
from typing import Literal

from kernelcomm import buffers as buffer_codec
from kernelcomm import wire
from kernelcomm.callbacks import NO_CONTEXT
from kernelcomm.callbacks import BridgedCallback
from kernelcomm.callbacks import MessageCallback
from kernelcomm.errors import ChannelClosedError
from kernelcomm.errors import CommError
from kernelcomm.lock import RuntimeLock
from kernelcomm.message import COMM_CLOSE
from kernelcomm.message import COMM_MSG
from kernelcomm.message import COMM_OPEN
from kernelcomm.message import Message

if TYPE_CHECKING:
    from kernelcomm.manager import CommManager

log = logging.getLogger(__name__)

CommState = Literal["open", "closed"]
Payload = tuple[dict[str, object], dict[str, object], list[bytes]]


def _encode_payload(
    metadata: object,
    data: object,
    buffers: Iterable[object] | None,
) -> Payload:
    """Encode one outbound payload before anything is sent.

    :param metadata: Structured metadata mapping or ``None``.
    :param data: Structured data mapping or ``None``.
    :param buffers: Byte buffers or ``None``.
    :returns: Tuple of ``(metadata, data, buffers)`` in wire form.
    """
    encoded_metadata: dict[str, object] = wire.encode_mapping(metadata, "metadata")
    encoded_data: dict[str, object] = wire.encode_mapping(data, "data")
    encoded_buffers: list[bytes] = buffer_codec.encode(buffers)
    return encoded_metadata, encoded_data, encoded_buffers


class CommChannel:
    """State machine of one open logical channel.

    A channel starts ``open`` and moves to ``closed`` exactly once. A close
    requested while an inbound message is being dispatched on the channel
    is applied after that dispatch returns. Callbacks live on the runtime
    handle, which the channel only references weakly.
    """

    _manager: "CommManager"
    _comm_id: str
    _target_name: str
    _state: CommState
    _close_requested: bool
    _pending_close: tuple[Message, bool] | None
    _dispatch_depth: int
    _handle_ref: "weakref.ReferenceType[Comm] | None"

    def __init__(self, manager: "CommManager", comm_id: str, target_name: str) -> None:
        """Initialize an open channel.

        :param manager: Owning manager.
        :param comm_id: Unique channel identifier.
        :param target_name: Target the channel belongs to.
        """
        self._manager = manager
        self._comm_id = comm_id
        self._target_name = target_name
        self._state = "open"
        self._close_requested = False
        self._pending_close = None
        self._dispatch_depth = 0
        self._handle_ref = None

    @property
    def comm_id(self) -> str:
        """Return the channel identifier."""
        return self._comm_id

    @property
    def target_name(self) -> str:
        """Return the target name."""
        return self._target_name

    @property
    def state(self) -> CommState:
        """Return the lifecycle state."""
        return self._state

    @property
    def is_closed(self) -> bool:
        """Report whether the channel is closed or closing.

        :returns: ``True`` once a close was requested.
        """
        return self._close_requested

    @property
    def handle(self) -> "Comm | None":
        """Return the live runtime handle, if any."""
        if self._handle_ref is None:
            return None
        return self._handle_ref()

    def attach_handle(self, handle: "Comm") -> None:
        """Remember the runtime handle bound to this channel.

        :param handle: Runtime handle.
        """
        self._handle_ref = weakref.ref(handle)

    @property
    def lock(self) -> RuntimeLock:
        """Return the runtime lock of the owning manager."""
        return self._manager.lock

    def bridge_callback(self, callback: MessageCallback | None, context: object = NO_CONTEXT) -> BridgedCallback | None:
        """Wrap a runtime callback for delivery on this channel.

        :param callback: Runtime callable taking a message record, or ``None``.
        :param context: Optional explicit context passed as a second argument.
        :returns: Guarded callback, or ``None`` when ``callback`` is ``None``.
        """
        if callback is None:
            return None
        return self._manager.bridge.wrap(callback, context)

    def open(
        self,
        metadata: object = None,
        data: object = None,
        buffers: Iterable[object] | None = None,
    ) -> None:
        """Emit the initial ``comm_open`` message.

        :param metadata: Structured metadata.
        :param data: Structured initial data.
        :param buffers: Byte buffers.
        :raises ChannelClosedError: If the channel is closed.
        :raises SerializationError: If ``metadata`` or ``data`` cannot be encoded.
        :raises TypeMismatchError: If a buffer is not bytes-like.
        """
        with self._manager.lock:
            if self._close_requested is True:
                raise ChannelClosedError(self._comm_id)
            encoded_metadata, encoded_data, encoded_buffers = _encode_payload(metadata, data, buffers)
            content: dict[str, object] = {
                "comm_id": self._comm_id,
                "target_name": self._target_name,
                "data": encoded_data,
            }
            self._manager.emit(COMM_OPEN, content, encoded_metadata, encoded_buffers)

    def send(
        self,
        metadata: object = None,
        data: object = None,
        buffers: Iterable[object] | None = None,
    ) -> None:
        """Emit one ``comm_msg`` message.

        :param metadata: Structured metadata.
        :param data: Structured data.
        :param buffers: Byte buffers.
        :raises ChannelClosedError: If the channel is closed.
        :raises SerializationError: If ``metadata`` or ``data`` cannot be encoded.
        :raises TypeMismatchError: If a buffer is not bytes-like.
        """
        with self._manager.lock:
            if self._close_requested is True:
                raise ChannelClosedError(self._comm_id)
            encoded_metadata, encoded_data, encoded_buffers = _encode_payload(metadata, data, buffers)
            content: dict[str, object] = {
                "comm_id": self._comm_id,
                "data": encoded_data,
            }
            self._manager.emit(COMM_MSG, content, encoded_metadata, encoded_buffers)

    def close(
        self,
        metadata: object = None,
        data: object = None,
        buffers: Iterable[object] | None = None,
    ) -> None:
        """Close the channel from the local side.

        Closing an already closed channel does nothing.

        :param metadata: Structured metadata for the ``comm_close`` message.
        :param data: Structured final data.
        :param buffers: Byte buffers.
        :raises SerializationError: If ``metadata`` or ``data`` cannot be encoded.
        :raises TypeMismatchError: If a buffer is not bytes-like.
        """
        with self._manager.lock:
            if self._close_requested is True:
                return
            encoded_metadata, encoded_data, encoded_buffers = _encode_payload(metadata, data, buffers)
            content: dict[str, object] = {
                "comm_id": self._comm_id,
                "data": encoded_data,
            }
            close_message: Message = Message(
                header={"msg_type": COMM_CLOSE},
                metadata=encoded_metadata,
                content=content,
                buffers=encoded_buffers,
            )
            self._request_close(close_message, notify_peer=True)

    def handle_remote_close(self, message: Message) -> None:
        """Apply a ``comm_close`` received from the peer.

        :param message: Inbound close message.
        """
        with self._manager.lock:
            if self._close_requested is True:
                return
            self._request_close(message, notify_peer=False)

    def dispatch(self, message: Message) -> bool:
        """Deliver one inbound ``comm_msg`` to the message callback.

        Messages for a channel without a live handle or without a message
        callback are discarded.

        :param message: Inbound message.
        :returns: ``True`` when a callback ran and completed without raising.
        """
        with self._manager.lock:
            if self._close_requested is True:
                log.debug("Discarding message for closing comm %s", self._comm_id)
                return False

            handle: Comm | None = self.handle
            if handle is None:
                log.debug("Discarding message for comm %s without a live handle", self._comm_id)
                return False

            callback: BridgedCallback | None = handle._message_callback
            if callback is None:
                log.debug("Discarding message for comm %s without a message callback", self._comm_id)
                return False

            self._dispatch_depth += 1
            try:
                succeeded: bool = callback(message)
            finally:
                self._dispatch_depth -= 1
                self._apply_pending_close()
            return succeeded

    def _request_close(self, message: Message, notify_peer: bool) -> None:
        """Mark the channel closing and apply the close now or after dispatch.

        :param message: Close message given to the close callback.
        :param notify_peer: Whether a ``comm_close`` must be sent to the peer.
        """
        self._close_requested = True
        self._pending_close = (message, notify_peer)
        self._apply_pending_close()

    def _apply_pending_close(self) -> None:
        """Complete a requested close once no dispatch is in flight."""
        if self._dispatch_depth > 0:
            return
        pending: tuple[Message, bool] | None = self._pending_close
        if pending is None:
            return
        self._pending_close = None

        message: Message
        notify_peer: bool
        message, notify_peer = pending
        self._state = "closed"
        close_callback: BridgedCallback | None = None
        handle: Comm | None = self.handle
        if handle is not None:
            close_callback = handle._close_callback
            handle._message_callback = None
            handle._close_callback = None
        self._manager.unregister_channel(self)
        log.debug("Comm %s (%s) closed", self._comm_id, self._target_name)

        try:
            if notify_peer is True:
                self._manager.emit(COMM_CLOSE, message.content, message.metadata, message.buffers)
        finally:
            if close_callback is not None:
                close_callback(message)

    def __repr__(self) -> str:
        return f"CommChannel(comm_id={self._comm_id!r}, target_name={self._target_name!r}, state={self._state!r})"


def _finalize_channel(channel: CommChannel) -> None:
    """Close a channel whose runtime handle was discarded.

    :param channel: Channel owned by the discarded handle.
    """
    try:
        channel.close()
    except (CommError, OSError) as exc:
        log.debug("Failed to close comm %s on release: %s", channel.comm_id, exc)


class Comm:
    """Runtime-facing handle of one comm.

    Handles are created by ``CommManager.new_comm`` or handed to a target
    factory; constructing one always means the channel is already open.
    Discarding the last reference to a handle closes its channel. The
    handle owns its callbacks, so a callback or context that refers back
    to the handle does not keep it alive; a close caused by discarding the
    handle therefore runs no close callback.
    """

    _channel: CommChannel
    _finalizer: weakref.finalize
    _message_callback: BridgedCallback | None
    _close_callback: BridgedCallback | None

    def __init__(self, channel: CommChannel) -> None:
        """Bind a handle to its channel.

        :param channel: Open channel.
        """
        self._channel = channel
        self._message_callback = None
        self._close_callback = None
        channel.attach_handle(self)
        finalizer: weakref.finalize = weakref.finalize(self, _finalize_channel, channel)
        finalizer.atexit = False
        self._finalizer = finalizer

    @property
    def comm_id(self) -> str:
        """Return the comm identifier."""
        return self._channel.comm_id

    @property
    def target_name(self) -> str:
        """Return the target name."""
        return self._channel.target_name

    @property
    def kernel(self) -> bool:
        """Report that this comm is backed by a live kernel."""
        return True

    @property
    def is_closed(self) -> bool:
        """Report whether the comm is closed or closing."""
        return self._channel.is_closed

    @property
    def state(self) -> CommState:
        """Return the lifecycle state."""
        return self._channel.state

    def id(self) -> str:
        """Return the comm identifier."""
        return self._channel.comm_id

    def open(self, data: object = None, metadata: object = None, buffers: Iterable[object] | None = None) -> None:
        """Re-emit ``comm_open`` for this comm.

        :param data: Structured initial data.
        :param metadata: Structured metadata.
        :param buffers: Byte buffers.
        """
        self._channel.open(metadata=metadata, data=data, buffers=buffers)

    def send(self, data: object = None, metadata: object = None, buffers: Iterable[object] | None = None) -> None:
        """Send one message to the peer.

        :param data: Structured data.
        :param metadata: Structured metadata.
        :param buffers: Byte buffers.
        :raises ChannelClosedError: If the comm is closed.
        """
        self._channel.send(metadata=metadata, data=data, buffers=buffers)

    def close(self, data: object = None, metadata: object = None, buffers: Iterable[object] | None = None) -> None:
        """Close the comm; repeated calls do nothing.

        :param data: Structured final data.
        :param metadata: Structured metadata.
        :param buffers: Byte buffers.
        """
        self._channel.close(metadata=metadata, data=data, buffers=buffers)

    def set_on_message(self, callback: MessageCallback | None, context: object = NO_CONTEXT) -> None:
        """Register the callback receiving inbound message records.

        :param callback: Callable taking the record, or ``None`` to clear.
        :param context: Optional explicit context passed as a second argument.
        """
        bridged: BridgedCallback | None = self._channel.bridge_callback(callback, context)
        with self._channel.lock:
            self._message_callback = bridged

    def set_on_close(self, callback: MessageCallback | None, context: object = NO_CONTEXT) -> None:
        """Register the callback run once when the comm closes.

        :param callback: Callable taking the close record, or ``None`` to clear.
        :param context: Optional explicit context passed as a second argument.
        """
        bridged: BridgedCallback | None = self._channel.bridge_callback(callback, context)
        with self._channel.lock:
            self._close_callback = bridged

    on_msg = set_on_message
    on_close = set_on_close

    def __repr__(self) -> str:
        return f"Comm(comm_id={self.comm_id!r}, target_name={self.target_name!r}, state={self.state!r})"
