"""Tests for the critical-operation registry and the update gate."""

from __future__ import annotations

import asyncio

from wallet_broker.core.critical_ops import CriticalOperationRegistry
from wallet_broker.services.update import UpdateManager


# ─── registry ─────────────────────────────────────────────────────────


class TestCriticalOperationRegistry:
    def test_gate_tracks_set_membership(self):
        registry = CriticalOperationRegistry()
        assert not registry.has_critical_operations()
        registry.register("a")
        registry.register("b")
        assert registry.has_critical_operations()
        registry.unregister("a")
        assert registry.has_critical_operations()
        registry.unregister("b")
        assert not registry.has_critical_operations()

    def test_register_twice_unregister_once(self):
        registry = CriticalOperationRegistry()
        registry.register("a")
        registry.register("a")
        registry.unregister("a")
        assert not registry.has_critical_operations()

    def test_unregister_unknown_is_noop(self):
        registry = CriticalOperationRegistry()
        calls = []
        registry.add_idle_listener(lambda: calls.append(1))
        registry.unregister("ghost")
        assert calls == []

    def test_idle_listener_fires_when_set_empties(self):
        registry = CriticalOperationRegistry()
        calls = []
        registry.add_idle_listener(lambda: calls.append(1))
        registry.register("a")
        registry.register("b")
        registry.unregister("a")
        assert calls == []
        registry.unregister("b")
        assert calls == [1]

    def test_singleton(self):
        assert CriticalOperationRegistry.get() is CriticalOperationRegistry.get()

    async def test_wait_until_idle(self):
        registry = CriticalOperationRegistry()
        registry.register("a")
        waiter = asyncio.create_task(registry.wait_until_idle(timeout=1))
        await asyncio.sleep(0)
        registry.unregister("a")
        assert await waiter is True

    async def test_wait_until_idle_times_out(self):
        registry = CriticalOperationRegistry()
        registry.register("a")
        assert await registry.wait_until_idle(timeout=0.01) is False


# ─── update gate ──────────────────────────────────────────────────────


class TestUpdateManager:
    def test_applies_immediately_when_idle(self):
        registry = CriticalOperationRegistry()
        applied = []
        manager = UpdateManager(registry)
        assert manager.request_update(lambda: applied.append(1)) is True
        assert applied == [1]

    def test_defers_until_operations_finish(self):
        registry = CriticalOperationRegistry()
        applied = []
        manager = UpdateManager(registry)
        registry.register("compose-1")
        assert manager.request_update(lambda: applied.append(1)) is False
        assert manager.has_deferred_update
        assert applied == []
        registry.unregister("compose-1")
        assert applied == [1]
        assert not manager.has_deferred_update

    def test_cancel_deferred(self):
        registry = CriticalOperationRegistry()
        applied = []
        manager = UpdateManager(registry)
        registry.register("op")
        manager.request_update(lambda: applied.append(1))
        manager.cancel_deferred()
        registry.unregister("op")
        assert applied == []

    async def test_async_update_is_scheduled(self):
        registry = CriticalOperationRegistry()
        applied = []

        async def apply():
            applied.append(1)

        UpdateManager(registry).request_update(apply)
        await asyncio.sleep(0)
        assert applied == [1]
