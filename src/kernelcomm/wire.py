"""Structured-data wire codec.

Wire values are the JSON-compatible subset of Python values: ``dict`` with
``str`` keys, ``list``, ``str``, ``int``, finite ``float``, ``bool`` and
``None``. Encoding validates a runtime value and produces fresh containers;
decoding validates a wire value received from the transport.
"""

import json
import math

from kernelcomm.errors import MalformedWireDataError
from kernelcomm.errors import SerializationError

WireValue = dict[str, "WireValue"] | list["WireValue"] | str | int | float | bool | None
_SCALAR_TYPES: tuple[type, ...] = (str, int, bool, type(None))


def _child_path(path: str, key: object) -> str:
    """Build a readable location string for error messages.

    :param path: Parent location.
    :param key: Mapping key or sequence index.
    :returns: Child location.
    """
    if isinstance(key, int) is True:
        return f"{path}[{key}]"
    return f"{path}.{key}"


def _encode_value(value: object, path: str, active_ids: set[int]) -> WireValue:
    """Encode one runtime value.

    :param value: Runtime value.
    :param path: Location of ``value`` inside the top-level value.
    :param active_ids: Identities of containers on the current path.
    :returns: Wire value.
    :raises SerializationError: If ``value`` cannot be represented.
    """
    if isinstance(value, _SCALAR_TYPES) is True:
        return value  # type: ignore[return-value]

    if isinstance(value, float) is True:
        is_finite: bool = math.isfinite(value)
        if is_finite is False:
            raise SerializationError(f"Non-finite float {value!r} at {path}")
        return value

    if isinstance(value, (dict, list, tuple)) is False:
        type_name: str = type(value).__qualname__
        raise SerializationError(f"Unsupported value of type {type_name} at {path}")

    identity: int = id(value)
    if identity in active_ids:
        raise SerializationError(f"Reference cycle detected at {path}")
    active_ids.add(identity)
    try:
        if isinstance(value, dict) is True:
            encoded_dict: dict[str, WireValue] = {}
            for key, item in value.items():
                if isinstance(key, str) is False:
                    raise SerializationError(f"Mapping key {key!r} at {path} is not a string")
                encoded_dict[key] = _encode_value(item, _child_path(path, key), active_ids)
            return encoded_dict

        encoded_list: list[WireValue] = []
        for index, item in enumerate(value):
            encoded_list.append(_encode_value(item, _child_path(path, index), active_ids))
        return encoded_list
    finally:
        active_ids.discard(identity)


def encode(value: object) -> WireValue:
    """Encode a structured runtime value to its wire form.

    Tuples are encoded as lists. Shared sub-structures are copied; only
    true reference cycles are rejected.

    :param value: Runtime value.
    :returns: Wire value built from fresh containers.
    :raises SerializationError: For cycles, non-string keys, non-finite
        floats and unsupported object types.
    """
    return _encode_value(value, "$", set())


def _decode_value(value: object, path: str) -> object:
    """Decode one wire value.

    :param value: Wire value.
    :param path: Location of ``value`` inside the top-level value.
    :returns: Runtime value.
    :raises MalformedWireDataError: If ``value`` is not a wire value.
    """
    if isinstance(value, _SCALAR_TYPES) is True:
        return value

    if isinstance(value, float) is True:
        is_finite: bool = math.isfinite(value)
        if is_finite is False:
            raise MalformedWireDataError(f"Non-finite float in wire data at {path}")
        return value

    if isinstance(value, dict) is True:
        decoded_dict: dict[str, object] = {}
        for key, item in value.items():
            if isinstance(key, str) is False:
                raise MalformedWireDataError(f"Wire mapping key {key!r} at {path} is not a string")
            decoded_dict[key] = _decode_value(item, _child_path(path, key))
        return decoded_dict

    if isinstance(value, (list, tuple)) is True:
        return [_decode_value(item, _child_path(path, index)) for index, item in enumerate(value)]

    type_name: str = type(value).__qualname__
    raise MalformedWireDataError(f"Unexpected {type_name} in wire data at {path}")


def decode(wire_value: object) -> object:
    """Decode a wire value into fresh runtime containers.

    :param wire_value: Wire value received from the transport.
    :returns: Runtime value.
    :raises MalformedWireDataError: If ``wire_value`` has an invalid shape.
    """
    return _decode_value(wire_value, "$")


def decode_mapping(wire_value: object, field_name: str) -> dict[str, object]:
    """Decode a wire value that must be a mapping.

    ``None`` decodes to an empty mapping.

    :param wire_value: Wire value.
    :param field_name: Field name used in error messages.
    :returns: Decoded mapping.
    :raises MalformedWireDataError: If the value is not a mapping.
    """
    if wire_value is None:
        return {}
    if isinstance(wire_value, dict) is False:
        raise MalformedWireDataError(f"{field_name} must be a mapping")
    decoded: object = _decode_value(wire_value, field_name)
    return decoded  # type: ignore[return-value]


def encode_mapping(value: object, field_name: str) -> dict[str, WireValue]:
    """Encode a runtime value that must be a mapping.

    ``None`` encodes to an empty mapping.

    :param value: Runtime value.
    :param field_name: Field name used in error messages.
    :returns: Encoded mapping.
    :raises SerializationError: If the value is not an encodable mapping.
    """
    if value is None:
        return {}
    if isinstance(value, dict) is False:
        raise SerializationError(f"{field_name} must be a mapping, got {type(value).__qualname__}")
    encoded: WireValue = _encode_value(value, field_name, set())
    return encoded  # type: ignore[return-value]


def dumps(value: object) -> str:
    """Serialize a runtime value to wire text.

    :param value: Runtime value.
    :returns: JSON text.
    :raises SerializationError: If ``value`` cannot be encoded.
    """
    encoded: WireValue = encode(value)
    return json.dumps(encoded, allow_nan=False, separators=(",", ":"))


def _reject_constant(name: str) -> object:
    """Reject ``NaN``/``Infinity`` literals while parsing wire text.

    :param name: Literal name.
    :raises MalformedWireDataError: Always.
    """
    raise MalformedWireDataError(f"Non-finite literal {name} in wire text")


def loads(text: str | bytes | bytearray) -> object:
    """Parse wire text into a runtime value.

    :param text: JSON text, optionally UTF-8 encoded.
    :returns: Runtime value.
    :raises MalformedWireDataError: If the text is not valid wire data.
    """
    if isinstance(text, (bytes, bytearray)) is True:
        try:
            text = bytes(text).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedWireDataError("Wire text is not valid UTF-8") from exc
    if isinstance(text, str) is False:
        raise MalformedWireDataError(f"Wire text must be str or bytes, got {type(text).__qualname__}")

    try:
        parsed: object = json.loads(text, parse_constant=_reject_constant)
    except json.JSONDecodeError as exc:
        raise MalformedWireDataError(f"Malformed wire text: {exc.msg} at position {exc.pos}") from exc
    except RecursionError as exc:
        raise MalformedWireDataError("Wire text nests too deeply") from exc
    return decode(parsed)
