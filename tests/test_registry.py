"""Tests for the comm target registry."""

import threading

import pytest

from kernelcomm import CommTargetRegistry
from kernelcomm import UnknownTargetError
from kernelcomm import register_target
from kernelcomm import unregister_target
from kernelcomm.registry import TargetFactory
from kernelcomm.registry import default_target_registry


def _factory(comm: object, record: object) -> None:
    """Do nothing; stands in for a target factory."""


def test_register_resolve_and_unregister() -> None:
    """A registered factory resolves until it is removed."""
    registry: CommTargetRegistry = CommTargetRegistry()
    registry.register("widgets", _factory)

    assert registry.resolve("widgets") is _factory
    assert registry.require("widgets") is _factory
    assert "widgets" in registry
    assert registry.names() == ["widgets"]

    assert registry.unregister("widgets") is True
    assert registry.resolve("widgets") is None
    assert "widgets" not in registry
    assert registry.unregister("widgets") is False


def test_require_raises_for_unknown_target() -> None:
    """``require`` names the missing target."""
    registry: CommTargetRegistry = CommTargetRegistry()
    with pytest.raises(UnknownTargetError) as exc_info:
        registry.require("missing")
    assert exc_info.value.target_name == "missing"
    assert isinstance(exc_info.value, LookupError) is True


def test_names_are_sorted() -> None:
    """Registered names are listed in sorted order."""
    registry: CommTargetRegistry = CommTargetRegistry()
    for name in ["zeta", "alpha", "mid"]:
        registry.register(name, _factory)
    assert registry.names() == ["alpha", "mid", "zeta"]


@pytest.mark.parametrize(
    ("target_name", "factory", "error_type"),
    [
        ("", _factory, ValueError),
        (3, _factory, TypeError),
        ("widgets", "not callable", TypeError),
    ],
)
def test_invalid_registrations_are_rejected(target_name: object, factory: object, error_type: type[Exception]) -> None:
    """Names must be non-empty strings and factories callable."""
    registry: CommTargetRegistry = CommTargetRegistry()
    with pytest.raises(error_type):
        registry.register(target_name, factory)  # type: ignore[arg-type]
    assert registry.names() == []


def test_default_registry_is_shared() -> None:
    """Module-level registration goes to the process-wide registry."""
    register_target("kernelcomm-test-target", _factory)
    try:
        assert default_target_registry() is default_target_registry()
        assert default_target_registry().resolve("kernelcomm-test-target") is _factory
    finally:
        assert unregister_target("kernelcomm-test-target") is True


def test_concurrent_registration_and_lookup() -> None:
    """Lookups racing with registrations see either no entry or a whole one."""
    registry: CommTargetRegistry = CommTargetRegistry()
    factories: list[TargetFactory] = [lambda comm, record, index=index: index for index in range(200)]
    observed: list[object] = []
    errors: list[BaseException] = []
    start: threading.Event = threading.Event()

    def writer() -> None:
        start.wait()
        for index, factory in enumerate(factories):
            registry.register(f"target-{index % 10}", factory)

    def reader() -> None:
        start.wait()
        try:
            for index in range(2000):
                found: TargetFactory | None = registry.resolve(f"target-{index % 10}")
                if found is not None:
                    observed.append(found)
        except BaseException as exc:
            errors.append(exc)

    threads: list[threading.Thread] = [threading.Thread(target=writer)]
    threads.extend(threading.Thread(target=reader) for _ in range(4))
    for thread in threads:
        thread.start()
    start.set()
    for thread in threads:
        thread.join(timeout=10.0)

    assert errors == []
    assert all(found in factories for found in observed)
    assert registry.names() == [f"target-{index}" for index in range(10)]
