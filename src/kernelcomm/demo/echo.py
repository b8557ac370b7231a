"""Small comm targets used by the demo script and tests."""

from kernelcomm.comm import Comm

ECHO_TARGET: str = "echo"
INCREMENT_TARGET: str = "increment"


def _message_data(record: dict[str, object]) -> dict[str, object]:
    """Return ``content.data`` from a message record.

    :param record: Message record passed to comm callbacks.
    :returns: Data mapping, empty when absent.
    """
    content: object = record.get("content", {})
    if isinstance(content, dict) is False:
        return {}
    data: object = content.get("data", {})
    if isinstance(data, dict) is False:
        return {}
    return data


def _reply_increment(record: dict[str, object], comm: Comm) -> None:
    """Reply with ``n + 1`` for an inbound ``{"n": n}``.

    :param record: Inbound message record.
    :param comm: Comm to reply on, captured explicitly at registration.
    """
    data: dict[str, object] = _message_data(record)
    value: object = data.get("n", 0)
    if isinstance(value, int) is False or isinstance(value, bool) is True:
        raise TypeError("n must be an integer")
    comm.send(data={"n": value + 1})


def _reply_echo(record: dict[str, object], comm: Comm) -> None:
    """Send the inbound data and buffers back unchanged.

    :param record: Inbound message record.
    :param comm: Comm to reply on, captured explicitly at registration.
    """
    buffers: object = record.get("buffers", [])
    comm.send(data=_message_data(record), buffers=buffers)  # type: ignore[arg-type]


def increment_target(comm: Comm, record: dict[str, object]) -> None:
    """Target factory answering every ``{"n": n}`` with ``{"n": n + 1}``.

    :param comm: Newly opened comm.
    :param record: The ``comm_open`` message record.
    """
    _ = record
    comm.on_msg(_reply_increment, comm)


def echo_target(comm: Comm, record: dict[str, object]) -> None:
    """Target factory echoing the data and buffers of every message.

    :param comm: Newly opened comm.
    :param record: The ``comm_open`` message record.
    """
    _ = record
    comm.on_msg(_reply_echo, comm)
