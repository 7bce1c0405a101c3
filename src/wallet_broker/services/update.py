"""Self-update gate.

An update replaces the running broker, which would drop any signing or
compose flow the user is in the middle of. :class:`UpdateManager` applies an
update immediately when no critical operation is registered and otherwise
parks it until the registry drains.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Awaitable, Callable, Union

from wallet_broker.core.critical_ops import CriticalOperationRegistry

logger = logging.getLogger("wallet_broker.update")

ApplyUpdate = Callable[[], Union[None, Awaitable[None]]]


class UpdateManager:
    def __init__(self, registry: CriticalOperationRegistry | None = None) -> None:
        self.registry = registry or CriticalOperationRegistry.get()
        self._deferred: ApplyUpdate | None = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def has_deferred_update(self) -> bool:
        return self._deferred is not None

    def request_update(self, apply: ApplyUpdate) -> bool:
        """Apply now if idle. Returns False if the update was deferred.

        A later request replaces an earlier deferred one.
        """
        if not self.registry.has_critical_operations():
            self._run(apply)
            return True
        ops = self.registry.list_operations()
        logger.info(f"Deferring update until {len(ops)} critical operation(s) finish")
        if self._deferred is None:
            self.registry.add_idle_listener(self._on_idle)
        self._deferred = apply
        return False

    def cancel_deferred(self) -> None:
        if self._deferred is None:
            return
        self._deferred = None
        self.registry.remove_idle_listener(self._on_idle)

    def _on_idle(self) -> None:
        apply, self._deferred = self._deferred, None
        self.registry.remove_idle_listener(self._on_idle)
        if apply is not None:
            logger.info("Critical operations finished; applying deferred update")
            self._run(apply)

    def _run(self, apply: ApplyUpdate) -> None:
        result = apply()
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
