"""Generic service registry: single construction, invalidation, config pinning, DAG checks."""

from __future__ import annotations

import logging
import threading
import time
from collections import Counter
from typing import Any

import pytest

from messenger_runtime.runtime.dependencies import (
    BuildContext,
    ConfigurationOrderingViolation,
    RegistryConfiguration,
    RegistryError,
    ServiceRegistry,
    SlotBuildError,
)
from messenger_runtime.utils.concurrency import OnceSlot


class _Counting:
    """Builder factory recording how often each slot was constructed."""

    def __init__(self, *, delay: float = 0.0) -> None:
        self.delay = delay
        self.calls: Counter[str] = Counter()
        self._lock = threading.Lock()

    def builder(self, name: str) -> Any:
        def build(context: BuildContext) -> dict[str, Any]:
            with self._lock:
                self.calls[name] += 1
            if self.delay:
                time.sleep(self.delay)
            return {"slot": name, "deps": dict(context), "config": context.config}

        return build


def _chain_registry(counting: _Counting, **options: Any) -> ServiceRegistry:
    registry = ServiceRegistry(**options)
    registry.register("zk", counting.builder("zk"))
    registry.register("groups", counting.builder("groups"), depends_on=("zk",))
    registry.register("manager", counting.builder("manager"), depends_on=("groups",))
    registry.register("transport", counting.builder("transport"), reads_config=("allow_stories",))
    registry.register("sender", counting.builder("sender"), depends_on=("transport", "zk"))
    return registry


def test_dependencies_are_built_first_and_passed_to_the_builder() -> None:
    counting = _Counting()
    registry = _chain_registry(counting)

    manager = registry.get_or_create("manager")

    groups = registry.get_or_create("groups")
    assert manager["deps"] == {"groups": groups}
    assert groups["deps"]["zk"] is registry.get_or_create("zk")
    assert counting.calls == Counter({"zk": 1, "groups": 1, "manager": 1})
    assert not registry.is_built("transport")


def test_concurrent_first_access_constructs_each_slot_once() -> None:
    counting = _Counting(delay=0.02)
    registry = _chain_registry(counting)
    thread_count = 16
    barrier = threading.Barrier(thread_count)
    seen: list[object] = []
    errors: list[BaseException] = []
    lock = threading.Lock()

    def worker(index: int) -> None:
        try:
            barrier.wait(timeout=5.0)
            slot = "sender" if index % 2 else "manager"
            value = registry.get_or_create(slot)
            with lock:
                seen.append((slot, value))
        except BaseException as exc:  # noqa: BLE001
            with lock:
                errors.append(exc)

    threads = [
        threading.Thread(target=worker, args=(index,), daemon=True) for index in range(thread_count)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10.0)

    assert not errors
    assert counting.calls == Counter(
        {"zk": 1, "groups": 1, "manager": 1, "transport": 1, "sender": 1}
    )
    for slot in ("sender", "manager"):
        values = [value for name, value in seen if name == slot]
        assert len(values) == thread_count // 2
        assert all(value is values[0] for value in values)


def test_independent_slots_build_in_parallel() -> None:
    started = threading.Event()
    release = threading.Event()
    registry = ServiceRegistry()

    def slow(context: BuildContext) -> str:
        started.set()
        release.wait(timeout=5.0)
        return "slow"

    registry.register("slow", slow)
    registry.register("fast", lambda context: "fast")

    thread = threading.Thread(target=registry.get_or_create, args=("slow",), daemon=True)
    thread.start()
    assert started.wait(timeout=5.0)
    try:
        # Must not wait on the slow slot's lock.
        assert registry.get_or_create("fast") == "fast"
    finally:
        release.set()
        thread.join(timeout=5.0)
    assert registry.get_or_create("slow") == "slow"


def test_invalidate_clears_exactly_the_named_slots() -> None:
    counting = _Counting()
    registry = _chain_registry(counting)
    before = {name: registry.get_or_create(name) for name in ("manager", "sender")}
    zk = registry.get_or_create("zk")
    transport = registry.get_or_create("transport")

    cleared = registry.invalidate(["sender"])

    assert cleared == ("sender",)
    assert not registry.is_built("sender")
    assert registry.get_or_create("manager") is before["manager"]
    assert registry.get_or_create("zk") is zk

    rebuilt = registry.get_or_create("sender")
    assert rebuilt is not before["sender"]
    assert rebuilt["deps"]["transport"] is transport
    assert counting.calls["sender"] == 2
    assert counting.calls["transport"] == 1


def test_invalidate_of_unbuilt_slot_is_a_no_op_and_unknown_slot_is_rejected() -> None:
    registry = _chain_registry(_Counting())
    assert registry.invalidate(["sender"]) == ()
    with pytest.raises(RegistryError, match="unknown service slot"):
        registry.invalidate(["nope"])


def test_builder_failure_is_not_cached() -> None:
    attempts: list[int] = []

    def flaky(context: BuildContext) -> str:
        attempts.append(1)
        if len(attempts) < 3:
            raise ConnectionError("service unreachable")
        return "connected"

    registry = ServiceRegistry()
    registry.register("stable", lambda context: "stable")
    registry.register("flaky", flaky)

    for _ in range(2):
        with pytest.raises(SlotBuildError) as excinfo:
            registry.get_or_create("flaky")
        assert excinfo.value.slot == "flaky"
        assert isinstance(excinfo.value.__cause__, ConnectionError)
        assert not registry.is_built("flaky")

    assert registry.get_or_create("stable") == "stable"
    assert registry.get_or_create("flaky") == "connected"
    assert registry.snapshot()["flaky"]["build_count"] == 1


def test_failed_dependency_propagates_without_building_dependent() -> None:
    registry = ServiceRegistry()
    built: list[str] = []

    def broken(context: BuildContext) -> None:
        raise RuntimeError("no zk params")

    registry.register("zk", broken)
    registry.register("groups", lambda context: built.append("groups"), depends_on=("zk",))

    with pytest.raises(SlotBuildError) as excinfo:
        registry.get_or_create("groups")
    assert excinfo.value.slot == "zk"
    assert built == []


def test_builder_returning_none_is_cached() -> None:
    calls: list[int] = []
    registry = ServiceRegistry()
    registry.register("optional", lambda context: calls.append(1))

    assert registry.get_or_create("optional") is None
    assert registry.get_or_create("optional") is None
    assert calls == [1]


def test_configuration_is_pinned_when_slot_is_built(caplog: pytest.LogCaptureFixture) -> None:
    registry = _chain_registry(_Counting())
    transport = registry.get_or_create("transport")
    assert transport["config"].allow_stories is True

    with caplog.at_level(logging.ERROR, logger="messenger_runtime.runtime.dependencies"):
        registry.set_configuration(allow_stories=False)

    assert registry.get_or_create("transport") is transport
    assert transport["config"].allow_stories is True
    assert registry.configuration.allow_stories is False
    assert len(registry.violations) == 1
    assert registry.violations[0].slots == ("transport",)
    assert any("allow_stories" in record.getMessage() for record in caplog.records)

    registry.invalidate(["transport"])
    assert registry.get_or_create("transport")["config"].allow_stories is False


def test_configuration_change_before_first_build_is_not_a_violation() -> None:
    registry = _chain_registry(_Counting(), config_violation_policy="strict")
    registry.get_or_create("manager")

    registry.set_configuration(allow_stories=False)

    assert registry.violations == ()
    assert registry.get_or_create("transport")["config"].allow_stories is False


def test_strict_policy_rejects_late_configuration_change() -> None:
    registry = _chain_registry(_Counting(), config_violation_policy="strict")
    registry.get_or_create("transport")

    with pytest.raises(ConfigurationOrderingViolation) as excinfo:
        registry.set_configuration(allow_stories=False)

    assert excinfo.value.option == "allow_stories"
    assert registry.configuration == RegistryConfiguration(allow_stories=True)
    # Setting the value it already has is harmless.
    registry.set_configuration(allow_stories=True)


def test_unknown_configuration_option_is_rejected() -> None:
    registry = ServiceRegistry()
    with pytest.raises(RegistryError, match="unknown configuration options"):
        registry.set_configuration(allow_calls=True)
    with pytest.raises(RegistryError, match="unknown configuration options"):
        registry.register("x", lambda context: None, reads_config=("allow_calls",))
    with pytest.raises(ValueError):
        ServiceRegistry(config_violation_policy="lenient")  # type: ignore[arg-type]


def test_registration_rejects_unknown_duplicate_and_cyclic_dependencies() -> None:
    registry = ServiceRegistry()
    registry.register("a", lambda context: "a")

    with pytest.raises(RegistryError, match="unregistered"):
        registry.register("b", lambda context: "b", depends_on=("missing",))
    with pytest.raises(RegistryError, match="already registered"):
        registry.register("a", lambda context: "again")
    with pytest.raises(RegistryError, match="cycle"):
        registry.register("self", lambda context: None, depends_on=("self",))
    with pytest.raises(RegistryError, match="unknown service slot"):
        registry.get_or_create("missing")

    assert registry.slot_names() == ("a",)


def test_undeclared_dependency_lookup_fails_the_build() -> None:
    registry = ServiceRegistry()
    registry.register("a", lambda context: "a")
    registry.register("b", lambda context: context["a"])

    with pytest.raises(SlotBuildError) as excinfo:
        registry.get_or_create("b")
    assert "did not declare a dependency" in str(excinfo.value)


def test_construction_order_respects_dependencies() -> None:
    registry = _chain_registry(_Counting())
    order = registry.construction_order()

    assert set(order) == set(registry.slot_names())
    assert order.index("zk") < order.index("groups") < order.index("manager")
    assert order.index("transport") < order.index("sender")


def test_dependency_invalidated_mid_build_is_not_captured() -> None:
    registry = ServiceRegistry()
    transports = iter(("transport-1", "transport-2"))
    registry.register("transport", lambda context: next(transports))
    entered = threading.Event()
    proceed = threading.Event()
    sender_builds: list[str] = []

    def build_sender(context: BuildContext) -> str:
        transport = context["transport"]
        sender_builds.append(transport)
        if len(sender_builds) == 1:
            entered.set()
            proceed.wait(timeout=5.0)
        return f"sender-on-{transport}"

    registry.register("sender", build_sender, depends_on=("transport",))

    result: list[str] = []
    thread = threading.Thread(
        target=lambda: result.append(registry.get_or_create("sender")), daemon=True
    )
    thread.start()
    assert entered.wait(timeout=5.0)
    registry.invalidate(["transport"])
    proceed.set()
    thread.join(timeout=5.0)

    assert result == ["sender-on-transport-2"]
    assert sender_builds == ["transport-1", "transport-2"]
    assert registry.snapshot()["sender"]["build_count"] == 1


def test_rebuild_racing_invalidation_still_pins_configuration(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    registry = _chain_registry(_Counting())
    registry.get_or_create("transport")
    original_clear = OnceSlot.clear
    rebuilt: list[object] = []

    def clear_then_rebuild(self: OnceSlot[Any], *args: Any, **kwargs: Any) -> bool:
        dropped = original_clear(self, *args, **kwargs)
        # Another thread wins the slot lock as soon as clear releases it.
        if self.name == "transport" and dropped and not rebuilt:
            rebuilt.append(registry.get_or_create("transport"))
        return dropped

    monkeypatch.setattr(OnceSlot, "clear", clear_then_rebuild)

    assert registry.invalidate(["transport"]) == ("transport",)
    assert registry.is_built("transport")
    assert rebuilt

    registry.set_configuration(allow_stories=False)

    assert [v.slots for v in registry.violations] == [("transport",)]
