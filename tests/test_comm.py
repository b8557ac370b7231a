"""Tests for comm lifecycle and callbacks."""

import gc
import threading
import time

import pytest

from kernelcomm import ChannelClosedError
from kernelcomm import CommError
from kernelcomm import CommManager
from kernelcomm import CommTargetRegistry
from kernelcomm import ExecutionError
from kernelcomm import MemoryTransport
from kernelcomm import SerializationError
from kernelcomm import TypeMismatchError
from kernelcomm.comm import Comm
from kernelcomm.message import COMM_CLOSE
from kernelcomm.message import COMM_MSG
from kernelcomm.message import COMM_OPEN

TARGET: str = "widgets"


def _make_manager() -> tuple[CommManager, MemoryTransport, list[CommError]]:
    """Create a manager with a private registry and a recording error sink.

    :returns: Tuple of ``(manager, transport, reports)``.
    """
    transport: MemoryTransport = MemoryTransport()
    reports: list[CommError] = []
    manager: CommManager = CommManager(transport, registry=CommTargetRegistry(), error_sink=reports.append)
    return manager, transport, reports


def _open_from_peer(manager: CommManager, transport: MemoryTransport, comm_id: str) -> Comm:
    """Open a comm from the peer side and return its handle.

    :param manager: Comm manager.
    :param transport: In-memory transport.
    :param comm_id: Comm identifier.
    :returns: Handle given to the target factory.
    """
    opened: list[Comm] = []
    manager.register_target(TARGET, lambda comm, record: opened.append(comm))
    manager.comm_open(transport.inbound(COMM_OPEN, {"comm_id": comm_id, "target_name": TARGET, "data": {}}))
    assert len(opened) == 1
    return opened[0]


def test_new_comm_is_open_and_announced() -> None:
    """Constructing a comm sends ``comm_open`` before the handle is usable."""
    manager, transport, _ = _make_manager()
    comm: Comm = manager.new_comm(TARGET, metadata={"version": "2"}, data={"value": 1}, buffers=[b"\x00"])

    assert comm.state == "open"
    assert comm.is_closed is False
    assert comm.kernel is True
    opens = transport.messages_of_type(COMM_OPEN)
    assert len(opens) == 1
    assert opens[0].content == {"comm_id": comm.comm_id, "target_name": TARGET, "data": {"value": 1}}
    assert opens[0].metadata == {"version": "2"}
    assert opens[0].buffers == [b"\x00"]


def test_new_comm_generates_unique_ids() -> None:
    """Fresh comms get distinct identifiers."""
    manager, _, _ = _make_manager()
    comms: list[Comm] = [manager.new_comm(TARGET) for _ in range(50)]
    identifiers: set[str] = {comm.comm_id for comm in comms}
    assert len(identifiers) == 50


def test_new_comm_uses_explicit_id() -> None:
    """An explicit identifier is honored."""
    manager, _, _ = _make_manager()
    comm: Comm = manager.new_comm(TARGET, comm_id="fixed-id")
    assert comm.comm_id == "fixed-id"
    assert comm.id() == "fixed-id"
    assert manager.get_comm("fixed-id") is comm


def test_close_twice_runs_close_callback_once() -> None:
    """Closing is idempotent and the close callback fires exactly once."""
    manager, transport, _ = _make_manager()
    comm: Comm = manager.new_comm(TARGET)
    records: list[dict[str, object]] = []
    comm.on_close(records.append)

    comm.close(data={"reason": "done"})
    comm.close()

    assert len(records) == 1
    assert records[0]["content"] == {"comm_id": comm.comm_id, "data": {"reason": "done"}}
    assert comm.state == "closed"
    assert len(transport.messages_of_type(COMM_CLOSE)) == 1
    assert manager.get_comm(comm.comm_id) is None


def test_send_after_close_fails_without_output() -> None:
    """A closed comm rejects sends and emits nothing."""
    manager, transport, _ = _make_manager()
    comm: Comm = manager.new_comm(TARGET)
    comm.close()
    sent_before: int = len(transport.sent)

    with pytest.raises(ChannelClosedError) as exc_info:
        comm.send(data={"late": True})

    assert exc_info.value.comm_id == comm.comm_id
    assert len(transport.sent) == sent_before
    assert transport.messages_of_type(COMM_MSG) == []


def test_open_after_close_fails() -> None:
    """A closed comm can never be reopened."""
    manager, _, _ = _make_manager()
    comm: Comm = manager.new_comm(TARGET)
    comm.close()
    with pytest.raises(ChannelClosedError):
        comm.open()


def test_send_encodes_data_metadata_and_buffers() -> None:
    """Outbound payloads pass through both codecs."""
    manager, transport, _ = _make_manager()
    comm: Comm = manager.new_comm(TARGET)
    comm.send(data={"values": (1, 2)}, metadata={"kind": "update"}, buffers=[bytearray(b"\x00\x01"), b""])

    message = transport.messages_of_type(COMM_MSG)[0]
    assert message.content == {"comm_id": comm.comm_id, "data": {"values": [1, 2]}}
    assert message.metadata == {"kind": "update"}
    assert message.buffers == [b"\x00\x01", b""]


def test_codec_errors_raise_to_caller_and_send_nothing() -> None:
    """Unencodable payloads fail synchronously and leave the comm open."""
    manager, transport, _ = _make_manager()
    comm: Comm = manager.new_comm(TARGET)
    sent_before: int = len(transport.sent)

    with pytest.raises(SerializationError):
        comm.send(data={"bad": float("nan")})
    with pytest.raises(TypeMismatchError):
        comm.send(buffers=["text is not binary"])
    with pytest.raises(SerializationError):
        comm.close(data={"bad": object()})

    assert len(transport.sent) == sent_before
    assert comm.state == "open"


def test_discarding_handle_closes_comm() -> None:
    """Dropping the last runtime reference closes the channel."""
    manager, transport, _ = _make_manager()
    comm: Comm = manager.new_comm(TARGET)
    comm_id: str = comm.comm_id
    del comm
    gc.collect()

    assert manager.get_comm(comm_id) is None
    closes = transport.messages_of_type(COMM_CLOSE)
    assert len(closes) == 1
    assert closes[0].content["comm_id"] == comm_id


def test_message_callback_receives_flattened_record() -> None:
    """Callbacks get header, parent header, metadata, content and buffers."""
    manager, transport, _ = _make_manager()
    comm: Comm = _open_from_peer(manager, transport, "c1")
    records: list[dict[str, object]] = []
    comm.on_msg(records.append)

    inbound = transport.inbound(
        COMM_MSG,
        {"comm_id": "c1", "data": {"x": 1}},
        metadata={"m": True},
        buffers=[b"\x00\x00"],
        parent_header={"msg_id": "parent"},
    )
    handled: bool = manager.comm_msg(inbound)

    assert handled is True
    assert len(records) == 1
    record: dict[str, object] = records[0]
    assert record["header"] == inbound.header
    assert record["parent_header"] == {"msg_id": "parent"}
    assert record["metadata"] == {"m": True}
    assert record["content"] == {"comm_id": "c1", "data": {"x": 1}}
    assert record["buffers"] == [b"\x00\x00"]


def test_callback_with_explicit_context() -> None:
    """A captured context is passed as the second argument."""
    manager, transport, _ = _make_manager()
    comm: Comm = _open_from_peer(manager, transport, "c1")
    seen: list[tuple[object, object]] = []
    context: dict[str, str] = {"owner": "test"}
    comm.on_msg(lambda record, ctx: seen.append((record["content"], ctx)), context)

    manager.comm_msg(transport.inbound(COMM_MSG, {"comm_id": "c1", "data": {}}))

    assert seen == [({"comm_id": "c1", "data": {}}, context)]


def test_message_without_callback_is_discarded() -> None:
    """Messages for a comm with no callback are dropped without error."""
    manager, transport, reports = _make_manager()
    _open_from_peer(manager, transport, "c1")

    handled: bool = manager.comm_msg(transport.inbound(COMM_MSG, {"comm_id": "c1", "data": {}}))

    assert handled is False
    assert reports == []


def test_replacing_and_clearing_message_callback() -> None:
    """Only the latest callback runs; ``None`` clears it."""
    manager, transport, _ = _make_manager()
    comm: Comm = _open_from_peer(manager, transport, "c1")
    first: list[object] = []
    second: list[object] = []
    comm.on_msg(first.append)
    comm.on_msg(second.append)
    manager.comm_msg(transport.inbound(COMM_MSG, {"comm_id": "c1", "data": {}}))
    comm.on_msg(None)
    manager.comm_msg(transport.inbound(COMM_MSG, {"comm_id": "c1", "data": {}}))

    assert len(first) == 0
    assert len(second) == 1


def test_remote_close_runs_callback_without_echoing_close() -> None:
    """A peer close fires the close callback and does not reply."""
    manager, transport, _ = _make_manager()
    comm: Comm = _open_from_peer(manager, transport, "c1")
    records: list[dict[str, object]] = []
    comm.on_close(records.append)

    manager.comm_close(transport.inbound(COMM_CLOSE, {"comm_id": "c1", "data": {"bye": 1}}))
    manager.comm_close(transport.inbound(COMM_CLOSE, {"comm_id": "c1", "data": {}}))
    comm.close()

    assert len(records) == 1
    assert records[0]["content"] == {"comm_id": "c1", "data": {"bye": 1}}
    assert transport.messages_of_type(COMM_CLOSE) == []
    assert comm.state == "closed"


def test_close_during_dispatch_is_deferred_until_callback_returns() -> None:
    """Closing from inside a message callback completes after the callback."""
    manager, transport, _ = _make_manager()
    comm: Comm = _open_from_peer(manager, transport, "c1")
    events: list[str] = []

    def on_message(record: dict[str, object]) -> None:
        comm.send(data={"step": "before-close"})
        comm.close()
        events.append(f"state-after-close-call={comm.state}")
        try:
            comm.send(data={"step": "after-close"})
        except ChannelClosedError:
            events.append("send-rejected")
        events.append("callback-done")

    comm.on_msg(on_message)
    comm.on_close(lambda record: events.append("close-callback"))

    manager.comm_msg(transport.inbound(COMM_MSG, {"comm_id": "c1", "data": {}}))

    assert events == ["state-after-close-call=open", "send-rejected", "callback-done", "close-callback"]
    assert [message.msg_type for message in transport.sent] == [COMM_MSG, COMM_CLOSE]
    assert comm.state == "closed"


def test_close_from_other_thread_waits_for_in_flight_dispatch() -> None:
    """A close racing with a dispatch is applied after the dispatch completes."""
    manager, transport, _ = _make_manager()
    comm: Comm = _open_from_peer(manager, transport, "c1")
    events: list[str] = []
    in_callback: threading.Event = threading.Event()

    def slow_callback(record: dict[str, object]) -> None:
        in_callback.set()
        time.sleep(0.05)
        events.append("callback-done")

    comm.on_msg(slow_callback)
    comm.on_close(lambda record: events.append("close-callback"))

    deliverer: threading.Thread = threading.Thread(
        target=manager.comm_msg,
        args=(transport.inbound(COMM_MSG, {"comm_id": "c1", "data": {}}),),
    )
    deliverer.start()
    in_callback.wait(timeout=5.0)
    comm.close()
    deliverer.join(timeout=5.0)

    assert events == ["callback-done", "close-callback"]


def test_callback_exception_becomes_execution_error_report() -> None:
    """Callback failures are reported and do not break later dispatch."""
    manager, transport, reports = _make_manager()
    comm: Comm = _open_from_peer(manager, transport, "c1")
    seen: list[object] = []

    def flaky(record: dict[str, object]) -> None:
        content: object = record["content"]
        assert isinstance(content, dict)
        if content["data"] == {"fail": True}:
            raise ValueError("bad payload")
        seen.append(content["data"])

    comm.on_msg(flaky)
    first: bool = manager.comm_msg(transport.inbound(COMM_MSG, {"comm_id": "c1", "data": {"fail": True}}))
    second: bool = manager.comm_msg(transport.inbound(COMM_MSG, {"comm_id": "c1", "data": {"ok": 1}}))

    assert first is False
    assert second is True
    assert seen == [{"ok": 1}]
    assert len(reports) == 1
    report: CommError = reports[0]
    assert isinstance(report, ExecutionError)
    assert report.ename == "ValueError"
    assert report.evalue == "bad payload"
    assert report.traceback == ["ValueError: bad payload"]
    assert report.to_content() == {
        "ename": "ValueError",
        "evalue": "bad payload",
        "traceback": ["ValueError: bad payload"],
    }


def test_close_callback_exception_is_reported() -> None:
    """A failing close callback is reported and the comm still closes."""
    manager, _, reports = _make_manager()
    comm: Comm = manager.new_comm(TARGET)

    def failing_close(record: dict[str, object]) -> None:
        raise RuntimeError("cleanup failed")

    comm.on_close(failing_close)
    comm.close()

    assert comm.state == "closed"
    assert len(reports) == 1
    assert isinstance(reports[0], ExecutionError)
    assert reports[0].ename == "RuntimeError"


def test_non_callable_callback_fails() -> None:
    """Registering something that cannot be called is a programming error."""
    manager, _, _ = _make_manager()
    comm: Comm = manager.new_comm(TARGET)
    with pytest.raises(TypeError):
        comm.on_msg("not callable")  # type: ignore[arg-type]


def _echo_to_comm(record: dict[str, object], comm: Comm) -> None:
    """Reply on the comm passed as context."""
    comm.send(data={"echo": True})


def test_handle_referenced_by_its_callbacks_still_closes_on_discard() -> None:
    """Callbacks holding the handle as context do not keep it alive."""
    manager, transport, reports = _make_manager()
    closes_seen: list[object] = []
    comm: Comm = manager.new_comm(TARGET)
    comm_id: str = comm.comm_id
    comm.on_msg(_echo_to_comm, comm)
    comm.on_close(lambda record, owner: closes_seen.append(owner), comm)

    del comm
    gc.collect()

    closes = transport.messages_of_type(COMM_CLOSE)
    assert len(closes) == 1
    assert closes[0].content["comm_id"] == comm_id
    assert manager.get_comm(comm_id) is None
    assert manager.comm_info()["comms"] == {}
    assert closes_seen == []
    assert reports == []


def test_peer_opened_handle_with_self_context_keeps_working() -> None:
    """Peer-opened comms stay reachable while their callbacks refer to them."""
    manager, transport, reports = _make_manager()
    manager.register_target(TARGET, lambda comm, record: comm.on_msg(_echo_to_comm, comm))
    manager.comm_open(transport.inbound(COMM_OPEN, {"comm_id": "c1", "target_name": TARGET, "data": {}}))
    gc.collect()

    handled: bool = manager.comm_msg(transport.inbound(COMM_MSG, {"comm_id": "c1", "data": {}}))

    assert handled is True
    assert reports == []
    assert transport.messages_of_type(COMM_MSG)[0].content["data"] == {"echo": True}
