"""Open comms against demo targets and show the messages they produce."""

import argparse
import sys
import threading

from kernelcomm import MemoryTransport
from kernelcomm import create_comm_manager
from kernelcomm import create_interpreter
from kernelcomm.demo import ECHO_TARGET
from kernelcomm.demo import INCREMENT_TARGET
from kernelcomm.demo import echo_target
from kernelcomm.demo import increment_target
from kernelcomm.message import COMM_MSG
from kernelcomm.registry import CommTargetRegistry

OPEN_FROM_RUNTIME_CELL: str = """
probe = Comm(target_name="frontend.probe", data={"hello": "world"})
probe.comm_id
"""


def _parse_args() -> argparse.Namespace:
    """Parse command line arguments.

    :returns: Parsed arguments.
    """
    parser = argparse.ArgumentParser(description="Exercise kernelcomm with in-memory transport.")
    parser.add_argument("--messages", type=int, default=5, help="Messages sent to the increment comm.")
    parser.add_argument("--threads", type=int, default=2, help="Threads delivering inbound messages.")
    return parser.parse_args()


def main() -> int:
    """Run the demo.

    :returns: Process exit code.
    """
    args: argparse.Namespace = _parse_args()
    message_count: int = args.messages
    thread_count: int = args.threads
    if message_count < 1:
        print("messages must be >= 1")
        return 2
    if thread_count < 1:
        print("threads must be >= 1")
        return 2

    transport: MemoryTransport = MemoryTransport()
    registry: CommTargetRegistry = CommTargetRegistry()
    manager = create_comm_manager(transport, registry=registry)
    manager.register_target(INCREMENT_TARGET, increment_target)
    manager.register_target(ECHO_TARGET, echo_target)

    print("kernelcomm demo")
    print(f"python={sys.version.split()[0]}")
    print(f"messages={message_count} threads={thread_count}")
    print("")

    print("Phase 1: peer opens comms")
    manager.handle_message(transport.inbound("comm_open", {"comm_id": "c1", "target_name": INCREMENT_TARGET, "data": {}}))
    manager.handle_message(transport.inbound("comm_open", {"comm_id": "c2", "target_name": ECHO_TARGET, "data": {}}))
    manager.handle_message(transport.inbound("comm_open", {"comm_id": "c3", "target_name": "missing", "data": {}}))
    print(f"  open_comms={sorted(manager.comms())}")
    print("")

    print("Phase 2: concurrent inbound messages")

    def deliver(worker_index: int) -> None:
        for index in range(message_count):
            n: int = worker_index * 1000 + index
            manager.handle_message(transport.inbound("comm_msg", {"comm_id": "c1", "data": {"n": n}}))

    threads: list[threading.Thread] = [
        threading.Thread(target=deliver, args=(worker_index,)) for worker_index in range(thread_count)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    manager.handle_message(
        transport.inbound("comm_msg", {"comm_id": "c2", "data": {"tag": "blob"}}, buffers=[b"\x00\x01\x02"])
    )
    replies = transport.messages_of_type(COMM_MSG)
    print(f"  replies={len(replies)} last={replies[-1].content} buffers={replies[-1].buffers}")
    print("")

    print("Phase 3: runtime code opens a comm")
    interpreter = create_interpreter(manager)
    reply: dict[str, object] = interpreter.execute(OPEN_FROM_RUNTIME_CELL)
    print(f"  status={reply['status']} result={reply.get('data')}")
    print("")

    manager.close_all()
    expected_replies: int = message_count * thread_count + 1
    demo_passes: bool = len(replies) == expected_replies and reply["status"] == "ok"
    if demo_passes is True:
        print("DEMO RESULT: PASS")
        return 0

    print("DEMO RESULT: FAIL")
    print(f"  replies={len(replies)} expected={expected_replies} status={reply['status']}")
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
