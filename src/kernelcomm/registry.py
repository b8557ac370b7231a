"""Process-wide registry of comm target factories."""

import logging
import threading
from collections.abc import Callable
from typing import TYPE_CHECKING

from kernelcomm.errors import UnknownTargetError

if TYPE_CHECKING:
    from kernelcomm.callbacks import CallbackBridge
    from kernelcomm.comm import Comm
    from kernelcomm.message import Message

log = logging.getLogger(__name__)

TargetFactory = Callable[..., object]

_DEFAULT_REGISTRY_LOCK: threading.Lock = threading.Lock()
_DEFAULT_REGISTRY: "CommTargetRegistry | None" = None


def _validate_target_name(target_name: object) -> str:
    """Validate a target name.

    :param target_name: Candidate name.
    :returns: Validated name.
    :raises TypeError: If the name is not a string.
    :raises ValueError: If the name is empty.
    """
    if isinstance(target_name, str) is False:
        raise TypeError("target_name must be a string")
    if len(target_name) == 0:
        raise ValueError("target_name cannot be empty")
    return target_name


class CommTargetRegistry:
    """Map target names to factories invoked on inbound open requests.

    Registering a name again replaces its factory. All access is guarded
    so that lookups never observe a partially updated entry.
    """

    _lock: threading.Lock
    _factories: dict[str, TargetFactory]

    def __init__(self) -> None:
        """Initialize an empty registry."""
        self._lock = threading.Lock()
        self._factories = {}

    def register(self, target_name: str, factory: TargetFactory) -> None:
        """Register or replace the factory for ``target_name``.

        :param target_name: Target name.
        :param factory: Callable invoked as ``factory(comm, message_record)``.
        :raises TypeError: If ``factory`` is not callable.
        """
        validated_name: str = _validate_target_name(target_name)
        if callable(factory) is False:
            raise TypeError("factory must be callable")
        with self._lock:
            replaced: bool = validated_name in self._factories
            self._factories[validated_name] = factory
        if replaced is True:
            log.debug("Replaced comm target %r", validated_name)
        else:
            log.debug("Registered comm target %r", validated_name)

    def unregister(self, target_name: str) -> bool:
        """Remove the factory for ``target_name``.

        :param target_name: Target name.
        :returns: ``True`` when an entry was removed.
        """
        with self._lock:
            removed: TargetFactory | None = self._factories.pop(target_name, None)
        return removed is not None

    def resolve(self, target_name: str) -> TargetFactory | None:
        """Look up the factory for ``target_name``.

        :param target_name: Target name.
        :returns: Registered factory or ``None``.
        """
        with self._lock:
            return self._factories.get(target_name)

    def require(self, target_name: str) -> TargetFactory:
        """Look up the factory for ``target_name`` or fail.

        :param target_name: Target name.
        :returns: Registered factory.
        :raises UnknownTargetError: If no factory is registered.
        """
        factory: TargetFactory | None = self.resolve(target_name)
        if factory is None:
            raise UnknownTargetError(target_name)
        return factory

    def names(self) -> list[str]:
        """Return registered target names.

        :returns: Sorted names.
        """
        with self._lock:
            return sorted(self._factories)

    def __contains__(self, target_name: object) -> bool:
        with self._lock:
            return target_name in self._factories

    def dispatch_open(
        self,
        target_name: str,
        comm: "Comm",
        message: "Message",
        bridge: "CallbackBridge",
    ) -> bool:
        """Invoke the factory for a comm opened by the peer.

        :param target_name: Target named in the open request.
        :param comm: Newly opened comm handle.
        :param message: The ``comm_open`` message.
        :param bridge: Bridge guarding the factory call.
        :returns: ``True`` when the factory completed without raising.
        :raises UnknownTargetError: If ``target_name`` is not registered.
        """
        factory: TargetFactory = self.require(target_name)
        return bridge.invoke_with_message(lambda record: factory(comm, record), message)


def default_target_registry() -> CommTargetRegistry:
    """Return the process-wide registry, creating it on first use.

    :returns: Shared registry.
    """
    global _DEFAULT_REGISTRY
    with _DEFAULT_REGISTRY_LOCK:
        if _DEFAULT_REGISTRY is None:
            _DEFAULT_REGISTRY = CommTargetRegistry()
        return _DEFAULT_REGISTRY
