"""Outbound transport interface and an in-memory implementation."""

import datetime
import logging
import threading
from collections.abc import Callable
from typing import Protocol

from kernelcomm.message import Message
from kernelcomm.message import new_id

log = logging.getLogger(__name__)

PROTOCOL_VERSION: str = "5.3"


class CommTransport(Protocol):
    """Anything able to emit one comm message to the peer."""

    def send(
        self,
        msg_type: str,
        content: dict[str, object],
        metadata: dict[str, object],
        buffers: list[bytes],
        parent_header: dict[str, object],
    ) -> None:
        """Emit one message.

        :param msg_type: One of ``comm_open``, ``comm_msg`` or ``comm_close``.
        :param content: Wire-encoded content.
        :param metadata: Wire-encoded metadata.
        :param buffers: Raw byte buffers.
        :param parent_header: Header of the message being handled, or empty.
        """
        ...


class MemoryTransport:
    """Record outbound messages in memory.

    Each message receives a header the way a real session would stamp it.
    An optional listener sees every message after it is recorded.
    """

    session: str
    username: str
    _lock: threading.Lock
    _sent: list[Message]
    _listener: Callable[[Message], None] | None

    def __init__(
        self,
        session: str | None = None,
        username: str = "kernel",
        listener: Callable[[Message], None] | None = None,
    ) -> None:
        """Initialize an empty transport.

        :param session: Session identifier; a fresh one is generated when omitted.
        :param username: Username stamped into headers.
        :param listener: Optional callback receiving each sent message.
        """
        if session is None:
            session = new_id()
        self.session = session
        self.username = username
        self._lock = threading.Lock()
        self._sent = []
        self._listener = listener

    def make_header(self, msg_type: str) -> dict[str, object]:
        """Build a fresh message header.

        :param msg_type: Message type.
        :returns: Header dictionary.
        """
        now: datetime.datetime = datetime.datetime.now(datetime.timezone.utc)
        return {
            "msg_id": new_id(),
            "msg_type": msg_type,
            "session": self.session,
            "username": self.username,
            "date": now.isoformat(),
            "version": PROTOCOL_VERSION,
        }

    def send(
        self,
        msg_type: str,
        content: dict[str, object],
        metadata: dict[str, object],
        buffers: list[bytes],
        parent_header: dict[str, object],
    ) -> None:
        """Record one outbound message and notify the listener."""
        message: Message = Message(
            header=self.make_header(msg_type),
            parent_header=parent_header,
            metadata=metadata,
            content=content,
            buffers=buffers,
        )
        with self._lock:
            self._sent.append(message)
            listener: Callable[[Message], None] | None = self._listener
        log.debug("sent %s for comm %s", msg_type, content.get("comm_id"))
        if listener is not None:
            listener(message)

    @property
    def sent(self) -> list[Message]:
        """Return a snapshot of every message sent so far.

        :returns: Messages in send order.
        """
        with self._lock:
            return list(self._sent)

    def messages_of_type(self, msg_type: str) -> list[Message]:
        """Return sent messages of one type.

        :param msg_type: Message type to select.
        :returns: Matching messages in send order.
        """
        return [message for message in self.sent if message.msg_type == msg_type]

    def clear(self) -> list[Message]:
        """Drop and return every recorded message.

        :returns: Messages recorded before the call.
        """
        with self._lock:
            drained: list[Message] = self._sent
            self._sent = []
        return drained

    def inbound(
        self,
        msg_type: str,
        content: dict[str, object],
        metadata: dict[str, object] | None = None,
        buffers: list[bytes] | None = None,
        parent_header: dict[str, object] | None = None,
    ) -> Message:
        """Build a message as the peer would deliver it.

        :param msg_type: Message type.
        :param content: Message content.
        :param metadata: Optional metadata.
        :param buffers: Optional buffers.
        :param parent_header: Optional parent header.
        :returns: Inbound message with a fresh header.
        """
        return Message(
            header=self.make_header(msg_type),
            parent_header=parent_header,
            metadata=metadata,
            content=content,
            buffers=buffers,
        )
