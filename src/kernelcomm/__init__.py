"""Public package API for kernelcomm."""

from kernelcomm.api import create_comm_manager
from kernelcomm.api import create_interpreter
from kernelcomm.api import register_target
from kernelcomm.api import unregister_target
from kernelcomm.callbacks import CallbackBridge
from kernelcomm.comm import Comm
from kernelcomm.errors import ChannelClosedError
from kernelcomm.errors import CommError
from kernelcomm.errors import ExecutionError
from kernelcomm.errors import MalformedWireDataError
from kernelcomm.errors import SerializationError
from kernelcomm.errors import TypeMismatchError
from kernelcomm.errors import UnknownTargetError
from kernelcomm.lock import RuntimeLock
from kernelcomm.manager import CommManager
from kernelcomm.message import Message
from kernelcomm.registry import CommTargetRegistry
from kernelcomm.settings import CommSettings
from kernelcomm.transport import MemoryTransport

__all__: list[str] = [
    "create_comm_manager",
    "create_interpreter",
    "register_target",
    "unregister_target",
    "CallbackBridge",
    "Comm",
    "CommManager",
    "CommSettings",
    "CommTargetRegistry",
    "MemoryTransport",
    "Message",
    "RuntimeLock",
    "ChannelClosedError",
    "CommError",
    "ExecutionError",
    "MalformedWireDataError",
    "SerializationError",
    "TypeMismatchError",
    "UnknownTargetError",
]
