"""User-facing entrypoints for kernelcomm."""

from kernelcomm.callbacks import ErrorSink
from kernelcomm.interpreter import Interpreter
from kernelcomm.lock import RuntimeLock
from kernelcomm.manager import CommManager
from kernelcomm.registry import CommTargetRegistry
from kernelcomm.registry import TargetFactory
from kernelcomm.registry import default_target_registry
from kernelcomm.settings import CommSettings
from kernelcomm.transport import CommTransport


def create_comm_manager(
    transport: CommTransport,
    registry: CommTargetRegistry | None = None,
    settings: CommSettings | None = None,
    error_sink: ErrorSink | None = None,
    lock: RuntimeLock | None = None,
) -> CommManager:
    """Create a comm manager bound to one transport.

    :param transport: Outbound transport.
    :param registry: Target registry; the process-wide registry when omitted.
    :param settings: Comm settings.
    :param error_sink: Receiver of execution and comm error reports.
    :param lock: Runtime lock shared with other runtime entry points.
    :returns: New comm manager.
    """
    if registry is None:
        registry = default_target_registry()
    return CommManager(
        transport,
        registry=registry,
        lock=lock,
        settings=settings,
        error_sink=error_sink,
    )


def create_interpreter(manager: CommManager, namespace: dict[str, object] | None = None) -> Interpreter:
    """Create an execution driver wired to ``manager``.

    :param manager: Comm manager.
    :param namespace: Optional user namespace.
    :returns: Interpreter sharing the manager's runtime lock.
    """
    return Interpreter(manager, namespace=namespace)


def register_target(target_name: str, factory: TargetFactory) -> None:
    """Register a factory in the process-wide target registry.

    :param target_name: Target name.
    :param factory: Callable invoked as ``factory(comm, message_record)``.
    """
    default_target_registry().register(target_name, factory)


def unregister_target(target_name: str) -> bool:
    """Remove a factory from the process-wide target registry.

    :param target_name: Target name.
    :returns: ``True`` when an entry was removed.
    """
    return default_target_registry().unregister(target_name)
