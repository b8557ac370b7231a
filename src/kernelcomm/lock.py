"""Reentrant guard for single-threaded runtime access."""

import threading


class RuntimeLock:
    """Reentrant lock that serializes entry into runtime code.

    At most one thread holds the lock at a time; the holder may enter
    again any number of times.
    """

    _lock: threading.RLock
    _owner: int | None
    _depth: int

    def __init__(self) -> None:
        """Initialize an unheld lock."""
        self._lock = threading.RLock()
        self._owner = None
        self._depth = 0

    @property
    def depth(self) -> int:
        """Return the current reentrancy depth of the holder.

        :returns: ``0`` when the lock is free.
        """
        return self._depth

    @property
    def held(self) -> bool:
        """Report whether any thread holds the lock.

        :returns: ``True`` while held.
        """
        return self._owner is not None

    def owned(self) -> bool:
        """Report whether the calling thread holds the lock.

        :returns: ``True`` when the current thread is the holder.
        """
        return self._owner == threading.get_ident()

    def acquire(self, blocking: bool = True, timeout: float = -1) -> bool:
        """Acquire the lock.

        :param blocking: Whether to wait for the lock.
        :param timeout: Maximum wait in seconds; ``-1`` waits forever.
        :returns: ``True`` when the lock was acquired.
        """
        acquired: bool = self._lock.acquire(blocking, timeout)
        if acquired is True:
            self._owner = threading.get_ident()
            self._depth += 1
        return acquired

    def release(self) -> None:
        """Release one level of the lock.

        :raises RuntimeError: If the calling thread does not hold the lock.
        """
        if self.owned() is False:
            raise RuntimeError("RuntimeLock released by a thread that does not hold it")
        self._depth -= 1
        if self._depth == 0:
            self._owner = None
        self._lock.release()

    def __enter__(self) -> "RuntimeLock":
        self.acquire()
        return self

    def __exit__(self, exc_type: object, exc_value: object, exc_traceback: object) -> None:
        self.release()
