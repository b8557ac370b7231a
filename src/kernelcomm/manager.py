"""Comm manager: routes inbound comm messages and creates local comms."""

import contextlib
import logging
from collections.abc import Iterable
from collections.abc import Iterator
from collections.abc import Mapping

from kernelcomm import buffers as buffer_codec
from kernelcomm import wire
from kernelcomm.callbacks import CallbackBridge
from kernelcomm.callbacks import ErrorSink
from kernelcomm.comm import Comm
from kernelcomm.comm import CommChannel
from kernelcomm.errors import CommError
from kernelcomm.errors import MalformedWireDataError
from kernelcomm.errors import UnknownTargetError
from kernelcomm.lock import RuntimeLock
from kernelcomm.message import COMM_CLOSE
from kernelcomm.message import COMM_MESSAGE_TYPES
from kernelcomm.message import COMM_MSG
from kernelcomm.message import COMM_OPEN
from kernelcomm.message import Message
from kernelcomm.message import coerce_message
from kernelcomm.message import new_id
from kernelcomm.registry import CommTargetRegistry
from kernelcomm.registry import TargetFactory
from kernelcomm.settings import CommSettings
from kernelcomm.transport import CommTransport

log = logging.getLogger(__name__)

InboundMessage = Message | Mapping[str, object]


class CommManager:
    """Own the open comms of one kernel session.

    Collaborators are passed in explicitly; nothing is patched into global
    modules. Every entry into runtime code happens under ``lock``.
    """

    _transport: CommTransport
    _registry: CommTargetRegistry
    _lock: RuntimeLock
    _bridge: CallbackBridge
    _settings: CommSettings
    _channels: dict[str, CommChannel]
    _peer_owned_handles: dict[str, Comm]
    _parent_header: dict[str, object]

    def __init__(
        self,
        transport: CommTransport,
        registry: CommTargetRegistry | None = None,
        lock: RuntimeLock | None = None,
        settings: CommSettings | None = None,
        error_sink: ErrorSink | None = None,
        bridge: CallbackBridge | None = None,
    ) -> None:
        """Initialize a manager.

        :param transport: Outbound transport.
        :param registry: Target registry; a private one is created when omitted.
        :param lock: Runtime lock; a new one is created when omitted.
        :param settings: Comm settings.
        :param error_sink: Receiver of error reports, used when ``bridge`` is omitted.
        :param bridge: Callback bridge; built from ``lock``, ``error_sink`` and
            ``settings`` when omitted.
        """
        if registry is None:
            registry = CommTargetRegistry()
        if settings is None:
            settings = CommSettings()
        if bridge is None:
            if lock is None:
                lock = RuntimeLock()
            bridge = CallbackBridge(lock, error_sink=error_sink, settings=settings)
        elif lock is not None and bridge.lock is not lock:
            raise ValueError("bridge must use the same RuntimeLock as the manager")
        self._transport = transport
        self._registry = registry
        self._lock = bridge.lock
        self._bridge = bridge
        self._settings = settings
        self._channels = {}
        self._peer_owned_handles = {}
        self._parent_header = {}

    @property
    def lock(self) -> RuntimeLock:
        """Return the runtime lock."""
        return self._lock

    @property
    def bridge(self) -> CallbackBridge:
        """Return the callback bridge."""
        return self._bridge

    @property
    def registry(self) -> CommTargetRegistry:
        """Return the target registry."""
        return self._registry

    @property
    def settings(self) -> CommSettings:
        """Return the comm settings."""
        return self._settings

    def register_target(self, target_name: str, factory: TargetFactory) -> None:
        """Register the factory run when the peer opens a comm on ``target_name``.

        :param target_name: Target name.
        :param factory: Callable invoked as ``factory(comm, message_record)``.
        """
        self._registry.register(target_name, factory)

    def unregister_target(self, target_name: str) -> bool:
        """Remove a target registration.

        :param target_name: Target name.
        :returns: ``True`` when an entry was removed.
        """
        return self._registry.unregister(target_name)

    @contextlib.contextmanager
    def parent(self, header: Mapping[str, object] | None) -> Iterator[None]:
        """Use ``header`` as the parent header of messages emitted inside the block.

        :param header: Header of the request being handled.
        :yields: Control to the block.
        """
        with self._lock:
            previous: dict[str, object] = self._parent_header
            self._parent_header = dict(header or {})
            try:
                yield
            finally:
                self._parent_header = previous

    def emit(
        self,
        msg_type: str,
        content: dict[str, object],
        metadata: dict[str, object],
        buffers: list[bytes],
    ) -> None:
        """Hand one already encoded message to the transport.

        :param msg_type: Message type.
        :param content: Wire-encoded content.
        :param metadata: Wire-encoded metadata.
        :param buffers: Wire buffers.
        """
        self._transport.send(msg_type, content, metadata, buffers, dict(self._parent_header))

    def new_comm(
        self,
        target_name: str,
        metadata: object = None,
        data: object = None,
        buffers: Iterable[object] | None = None,
        comm_id: str | None = None,
    ) -> Comm:
        """Open a comm from the runtime side.

        The ``comm_open`` message is sent before the handle is returned.

        :param target_name: Target known to the peer.
        :param metadata: Structured metadata for the open message.
        :param data: Structured initial data.
        :param buffers: Byte buffers.
        :param comm_id: Explicit identifier; a fresh one is generated when omitted.
        :returns: Open comm handle.
        :raises ValueError: If ``comm_id`` is already in use.
        :raises SerializationError: If ``metadata`` or ``data`` cannot be encoded.
        :raises TypeMismatchError: If a buffer is not bytes-like.
        """
        if isinstance(target_name, str) is False:
            raise TypeError("target_name must be a string")
        if comm_id is None:
            comm_id = new_id()
        elif isinstance(comm_id, str) is False:
            raise TypeError("comm_id must be a string")

        with self._lock:
            encoded_metadata: dict[str, object] = wire.encode_mapping(metadata, "metadata")
            encoded_data: dict[str, object] = wire.encode_mapping(data, "data")
            encoded_buffers: list[bytes] = buffer_codec.encode(buffers)
            if comm_id in self._channels:
                raise ValueError(f"comm_id {comm_id!r} is already in use")
            channel: CommChannel = CommChannel(self, comm_id, target_name)
            self._channels[comm_id] = channel
            content: dict[str, object] = {
                "comm_id": comm_id,
                "target_name": target_name,
                "data": encoded_data,
            }
            try:
                self.emit(COMM_OPEN, content, encoded_metadata, encoded_buffers)
            except BaseException:
                self._channels.pop(comm_id, None)
                raise
            handle: Comm = Comm(channel)
            log.debug("Opened comm %s on target %r", comm_id, target_name)
            return handle

    def unregister_channel(self, channel: CommChannel) -> None:
        """Forget a channel that has closed.

        :param channel: Closed channel.
        """
        with self._lock:
            current: CommChannel | None = self._channels.get(channel.comm_id)
            if current is channel:
                self._channels.pop(channel.comm_id, None)
            self._peer_owned_handles.pop(channel.comm_id, None)

    def get_comm(self, comm_id: str) -> Comm | None:
        """Return the live handle of an open comm.

        :param comm_id: Comm identifier.
        :returns: Comm handle, or ``None`` when unknown.
        """
        with self._lock:
            channel: CommChannel | None = self._channels.get(comm_id)
            if channel is None:
                return None
            return channel.handle

    def comms(self) -> dict[str, Comm]:
        """Return live handles of every open comm.

        :returns: Mapping of comm id to handle.
        """
        with self._lock:
            handles: dict[str, Comm] = {}
            for comm_id, channel in self._channels.items():
                handle: Comm | None = channel.handle
                if handle is not None:
                    handles[comm_id] = handle
            return handles

    def comm_info(self, target_name: str | None = None) -> dict[str, object]:
        """Build the ``comm_info_reply`` content.

        :param target_name: Optional target filter.
        :returns: Reply content listing open comms.
        """
        with self._lock:
            comms: dict[str, object] = {}
            for comm_id, channel in self._channels.items():
                if target_name is not None and channel.target_name != target_name:
                    continue
                comms[comm_id] = {"target_name": channel.target_name}
        return {"status": "ok", "comms": comms}

    def comm_open(self, message: InboundMessage) -> Comm | None:
        """Handle a ``comm_open`` sent by the peer.

        An unknown target is reported to the error sink and no comm is kept.

        :param message: Inbound open message.
        :returns: The opened comm, or ``None`` when the open failed.
        :raises MalformedWireDataError: If the message lacks ``comm_id`` or ``target_name``.
        """
        inbound: Message = coerce_message(message)
        comm_id: str = inbound.comm_id
        target_name_obj: object = inbound.content.get("target_name")
        if isinstance(target_name_obj, str) is False:
            raise MalformedWireDataError("content.target_name must be a string")
        target_name: str = target_name_obj

        with self.parent(inbound.header):
            if comm_id in self._channels:
                raise MalformedWireDataError(f"comm_open for already open comm {comm_id!r}")

            factory: TargetFactory | None = self._registry.resolve(target_name)
            if factory is None:
                log.error("No comm target %r for comm %s", target_name, comm_id)
                self._bridge.report_error(UnknownTargetError(target_name))
                if self._settings.close_on_unknown_target is True:
                    self.emit(COMM_CLOSE, {"comm_id": comm_id, "data": {}}, {}, [])
                return None

            channel: CommChannel = CommChannel(self, comm_id, target_name)
            self._channels[comm_id] = channel
            handle: Comm = Comm(channel)
            self._peer_owned_handles[comm_id] = handle
            log.debug("Peer opened comm %s on target %r", comm_id, target_name)

            try:
                succeeded: bool = self._registry.dispatch_open(target_name, handle, inbound, self._bridge)
            except UnknownTargetError as exc:
                self.unregister_channel(channel)
                self._bridge.report_error(exc)
                return None

            if succeeded is False and self._settings.close_on_factory_error is True:
                handle.close()
                return None
            if handle.is_closed is True:
                return None
            return handle

    def comm_msg(self, message: InboundMessage) -> bool:
        """Handle a ``comm_msg`` sent by the peer.

        Messages for unknown comms are discarded.

        :param message: Inbound message.
        :returns: ``True`` when a message callback ran and completed.
        """
        inbound: Message = coerce_message(message)
        comm_id: str = inbound.comm_id
        with self.parent(inbound.header):
            channel: CommChannel | None = self._channels.get(comm_id)
            if channel is None:
                self._log_unknown_comm(COMM_MSG, comm_id)
                return False
            return channel.dispatch(inbound)

    def comm_close(self, message: InboundMessage) -> bool:
        """Handle a ``comm_close`` sent by the peer.

        :param message: Inbound close message.
        :returns: ``True`` when a matching comm was found.
        """
        inbound: Message = coerce_message(message)
        comm_id: str = inbound.comm_id
        with self.parent(inbound.header):
            channel: CommChannel | None = self._channels.get(comm_id)
            if channel is None:
                self._log_unknown_comm(COMM_CLOSE, comm_id)
                return False
            channel.handle_remote_close(inbound)
            return True

    def handle_message(self, message: InboundMessage) -> bool:
        """Route one inbound comm message by type.

        Malformed messages are logged and reported. Transport failures while
        replying are logged. Neither raises into the caller's dispatch loop.

        :param message: Inbound message.
        :returns: ``True`` when the message was fully handled.
        """
        try:
            inbound: Message = coerce_message(message)
            msg_type: str = inbound.msg_type
            if msg_type not in COMM_MESSAGE_TYPES:
                raise MalformedWireDataError(f"Unsupported comm message type {msg_type!r}")
            if msg_type == COMM_OPEN:
                return self.comm_open(inbound) is not None
            if msg_type == COMM_MSG:
                return self.comm_msg(inbound)
            return self.comm_close(inbound)
        except CommError as exc:
            log.error("Dropping inbound comm message: %s", exc)
            self._bridge.report_error(exc)
            return False
        except OSError:
            log.exception("Transport failed while handling inbound comm message")
            return False

    def close_all(self) -> None:
        """Close every open comm, notifying the peer."""
        with self._lock:
            channels: list[CommChannel] = list(self._channels.values())
            for channel in channels:
                try:
                    channel.close()
                except (CommError, OSError) as exc:
                    log.warning("Failed to close comm %s: %s", channel.comm_id, exc)
                    self.unregister_channel(channel)

    def _log_unknown_comm(self, msg_type: str, comm_id: str) -> None:
        """Log a message addressed to an unknown comm.

        :param msg_type: Message type.
        :param comm_id: Unknown comm identifier.
        """
        if self._settings.warn_on_unknown_comm is True:
            log.warning("Discarding %s for unknown comm %s", msg_type, comm_id)
            return
        log.debug("Discarding %s for unknown comm %s", msg_type, comm_id)

    def __repr__(self) -> str:
        return f"CommManager(open_comms={len(self._channels)})"
