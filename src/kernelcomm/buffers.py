"""Binary buffer codec.

Buffers are opaque byte blobs carried beside a message. They are copied
byte for byte and never decoded as text.
"""

from collections.abc import Iterable

from kernelcomm.errors import TypeMismatchError

BufferLike = bytes | bytearray | memoryview


def _to_bytes(buffer: object, index: int) -> bytes:
    """Copy one buffer into an immutable ``bytes`` object.

    :param buffer: Candidate buffer.
    :param index: Position of the buffer in its sequence.
    :returns: Exact byte copy.
    :raises TypeMismatchError: If ``buffer`` is not a byte sequence.
    """
    if isinstance(buffer, bytes) is True:
        return bytes(buffer)
    if isinstance(buffer, bytearray) is True:
        return bytes(buffer)
    if isinstance(buffer, memoryview) is True:
        is_contiguous: bool = buffer.contiguous
        if is_contiguous is False:
            raise TypeMismatchError(f"Buffer {index} is a non-contiguous memoryview")
        return buffer.tobytes()
    type_name: str = type(buffer).__qualname__
    raise TypeMismatchError(f"Buffer {index} must be bytes-like, got {type_name}")


def _copy_buffers(buffers: Iterable[object] | None) -> list[bytes]:
    """Copy a buffer sequence preserving order.

    :param buffers: Buffer sequence or ``None``.
    :returns: List of ``bytes``.
    :raises TypeMismatchError: If the sequence itself or one element is invalid.
    """
    if buffers is None:
        return []
    if isinstance(buffers, (bytes, bytearray, memoryview, str)) is True:
        raise TypeMismatchError("buffers must be a sequence of byte buffers, not a single value")
    try:
        items: list[object] = list(buffers)
    except TypeError as exc:
        raise TypeMismatchError("buffers must be an iterable of byte buffers") from exc
    return [_to_bytes(item, index) for index, item in enumerate(items)]


def encode(buffers: Iterable[object] | None) -> list[bytes]:
    """Encode runtime buffers for the wire.

    :param buffers: Runtime byte sequences; ``None`` means no buffers.
    :returns: Wire buffers in the same order.
    :raises TypeMismatchError: If any element is not bytes-like.
    """
    return _copy_buffers(buffers)


def decode(buffers: Iterable[object] | None) -> list[bytes]:
    """Decode wire buffers into runtime ``bytes`` objects.

    :param buffers: Wire buffers as delivered by the transport.
    :returns: Runtime buffers in the same order.
    :raises TypeMismatchError: If any element is not bytes-like.
    """
    return _copy_buffers(buffers)
