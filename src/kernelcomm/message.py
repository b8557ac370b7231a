"""Message record exchanged over comm channels."""

import uuid
from collections.abc import Mapping

from kernelcomm import buffers as buffer_codec
from kernelcomm.errors import MalformedWireDataError

COMM_OPEN: str = "comm_open"
COMM_MSG: str = "comm_msg"
COMM_CLOSE: str = "comm_close"
COMM_MESSAGE_TYPES: frozenset[str] = frozenset({COMM_OPEN, COMM_MSG, COMM_CLOSE})


def new_id() -> str:
    """Return a fresh globally unique identifier.

    :returns: Random UUID4 string.
    """
    return str(uuid.uuid4())


def _require_mapping(raw: Mapping[str, object], key: str) -> dict[str, object]:
    """Extract an optional mapping field.

    :param raw: Raw message mapping.
    :param key: Field name.
    :returns: Shallow copy of the field, or an empty dict when missing.
    :raises MalformedWireDataError: If the field is present but not a mapping.
    """
    value: object = raw.get(key)
    if value is None:
        return {}
    if isinstance(value, Mapping) is False:
        raise MalformedWireDataError(f"{key} must be a mapping")
    return dict(value)


class Message:
    """One protocol message: provenance, payload and out-of-band buffers."""

    header: dict[str, object]
    parent_header: dict[str, object]
    metadata: dict[str, object]
    content: dict[str, object]
    buffers: list[bytes]

    def __init__(
        self,
        header: dict[str, object] | None = None,
        parent_header: dict[str, object] | None = None,
        metadata: dict[str, object] | None = None,
        content: dict[str, object] | None = None,
        buffers: list[bytes] | None = None,
    ) -> None:
        """Initialize a message.

        :param header: Transport-assigned header; must carry ``msg_type`` for dispatch.
        :param parent_header: Header of the causing message, or empty.
        :param metadata: Wire-encoded metadata.
        :param content: Wire-encoded content.
        :param buffers: Raw byte buffers.
        """
        self.header = dict(header or {})
        self.parent_header = dict(parent_header or {})
        self.metadata = dict(metadata or {})
        self.content = dict(content or {})
        self.buffers = list(buffers or [])

    @property
    def msg_type(self) -> str:
        """Return the message type from the header.

        :returns: Message type, or an empty string when absent.
        """
        msg_type: object = self.header.get("msg_type", "")
        if isinstance(msg_type, str) is False:
            raise MalformedWireDataError("header.msg_type must be a string")
        return msg_type

    @property
    def comm_id(self) -> str:
        """Return the comm identifier carried in the content.

        :returns: Comm identifier.
        :raises MalformedWireDataError: If ``content.comm_id`` is missing or not a string.
        """
        comm_id: object = self.content.get("comm_id")
        if isinstance(comm_id, str) is False:
            raise MalformedWireDataError("content.comm_id must be a string")
        return comm_id

    @classmethod
    def from_dict(cls, raw: Mapping[str, object]) -> "Message":
        """Build a message from its dictionary form.

        :param raw: Mapping with ``header``, ``parent_header``, ``metadata``,
            ``content`` and ``buffers`` keys; all are optional.
        :returns: Message record.
        :raises MalformedWireDataError: If a field has the wrong shape.
        :raises TypeMismatchError: If a buffer is not bytes-like.
        """
        if isinstance(raw, Mapping) is False:
            raise MalformedWireDataError("message must be a mapping")
        return cls(
            header=_require_mapping(raw, "header"),
            parent_header=_require_mapping(raw, "parent_header"),
            metadata=_require_mapping(raw, "metadata"),
            content=_require_mapping(raw, "content"),
            buffers=buffer_codec.decode(raw.get("buffers")),  # type: ignore[arg-type]
        )

    def to_dict(self) -> dict[str, object]:
        """Return the dictionary form of this message.

        :returns: Mapping following the wire message schema.
        """
        return {
            "header": dict(self.header),
            "parent_header": dict(self.parent_header),
            "metadata": dict(self.metadata),
            "content": dict(self.content),
            "buffers": list(self.buffers),
        }

    def __repr__(self) -> str:
        return f"Message(msg_type={self.header.get('msg_type')!r}, content={self.content!r}, buffers={len(self.buffers)})"


def coerce_message(message: "Message | Mapping[str, object]") -> Message:
    """Accept either a ``Message`` or its dictionary form.

    :param message: Message or mapping.
    :returns: Message record.
    """
    if isinstance(message, Message) is True:
        return message  # type: ignore[return-value]
    return Message.from_dict(message)  # type: ignore[arg-type]
