"""Registry of in-flight sensitive operations.

While any operation is registered the extension must not apply a self-update.
The registry is a set, so registering an id twice is harmless and a single
unregister clears it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

logger = logging.getLogger("wallet_broker.critical_ops")

IdleListener = Callable[[], None]


class CriticalOperationRegistry:
    """Set of operation ids plus the ``has_critical_operations`` gate."""

    _instance: CriticalOperationRegistry | None = None

    def __init__(self) -> None:
        self._operations: set[str] = set()
        self._idle_listeners: list[IdleListener] = []
        self._idle_waiters: list[asyncio.Future[None]] = []

    @classmethod
    def get(cls) -> CriticalOperationRegistry:
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        cls._instance = None

    def register(self, operation_id: str) -> None:
        if operation_id not in self._operations:
            self._operations.add(operation_id)
            logger.debug(f"Critical operation registered: {operation_id}")

    def unregister(self, operation_id: str) -> None:
        if operation_id not in self._operations:
            return
        self._operations.discard(operation_id)
        logger.debug(f"Critical operation cleared: {operation_id}")
        if not self._operations:
            self._notify_idle()

    def has_critical_operations(self) -> bool:
        return bool(self._operations)

    def list_operations(self) -> list[str]:
        return sorted(self._operations)

    def __contains__(self, operation_id: str) -> bool:
        return operation_id in self._operations

    def __len__(self) -> int:
        return len(self._operations)

    # ------------------------------------------------------------------
    # Idle notification (consumed by the update manager)
    # ------------------------------------------------------------------

    def add_idle_listener(self, listener: IdleListener) -> None:
        self._idle_listeners.append(listener)

    def remove_idle_listener(self, listener: IdleListener) -> None:
        if listener in self._idle_listeners:
            self._idle_listeners.remove(listener)

    async def wait_until_idle(self, timeout: float | None = None) -> bool:
        """Wait for the set to drain. Returns False if *timeout* elapsed first."""
        if not self._operations:
            return True
        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._idle_waiters.append(fut)
        try:
            await asyncio.wait_for(fut, timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False
        finally:
            if fut in self._idle_waiters:
                self._idle_waiters.remove(fut)

    def _notify_idle(self) -> None:
        for fut in self._idle_waiters:
            if not fut.done():
                fut.set_result(None)
        self._idle_waiters.clear()
        for listener in list(self._idle_listeners):
            try:
                listener()
            except Exception as e:
                logger.error(f"Idle listener failed: {e}")
