"""Broker - process-wide wiring of the request broker."""

from __future__ import annotations

import asyncio
import logging
import secrets
import webbrowser
from pathlib import Path

from wallet_broker.analytics import Analytics
from wallet_broker.config import BrokerConfig, default_config_path, load_config, save_config
from wallet_broker.core.approval_queue import ApprovalQueue
from wallet_broker.core.critical_ops import CriticalOperationRegistry
from wallet_broker.core.message_bus import MessageBus
from wallet_broker.core.pending import PendingRequests
from wallet_broker.core.rate_limiter import RateLimiters
from wallet_broker.core.ui_surface import LaunchSurface, NavigateOpenSurface, SurfaceStrategy, UISurface
from wallet_broker.security.replay import ReplayLedger
from wallet_broker.services.approval import ApprovalService
from wallet_broker.services.connection import ConnectionService
from wallet_broker.services.provider import ProviderService
from wallet_broker.services.update import UpdateManager
from wallet_broker.storage.database import Database, get_database
from wallet_broker.storage.handoff import HandoffStore
from wallet_broker.wallet.keychain import Keychain, KeystoreKeychain

logger = logging.getLogger("wallet_broker.broker")

CLEANUP_INTERVAL_SECONDS = 60.0


class Broker:
    """Owns every service of one broker process.

    Construct with :meth:`create`, which opens the database and loads
    persisted state, and tear down with :meth:`shutdown`.
    """

    def __init__(
        self,
        config: BrokerConfig,
        db: Database | None = None,
        keychain: Keychain | None = None,
        ui: UISurface | None = None,
    ) -> None:
        self.config = config
        self.db = db
        self.ui_token = config.server.ui_token or secrets.token_urlsafe(32)
        self.bus = MessageBus(timeout=config.timeouts.bus_seconds)
        self.analytics = Analytics(config.analytics)
        self.keychain = keychain or KeystoreKeychain(
            config.wallet_dir(),
            bus=self.bus,
            chain=config.network.chain,
            rpc_url=config.network.rpc_url,
        )
        self.limiters = RateLimiters.configure(config.rate_limits)
        self.critical_ops = CriticalOperationRegistry.get()
        self.updates = UpdateManager(self.critical_ops)
        self.ui = ui or UISurface(
            self._default_strategies(),
            strategy_timeout=config.timeouts.ui_strategy_seconds,
        )
        self.queue = ApprovalQueue()
        self.pending = PendingRequests(self.bus)
        self.approvals = ApprovalService(
            self.bus,
            self.ui,
            queue=self.queue,
            pending=self.pending,
            critical_ops=self.critical_ops,
            analytics=self.analytics,
            timeouts=config.timeouts,
            max_pending=config.security.max_pending_approvals,
        )
        self.connections = ConnectionService(
            self.bus,
            self.keychain,
            self.approvals,
            db=db,
            ttl_days=config.security.connection_ttl_days,
            unlock_timeout=config.timeouts.unlock_seconds,
        )
        self.replay = ReplayLedger(
            db,
            window_seconds=config.security.replay_window_seconds,
            stale_pending_seconds=config.security.stale_pending_seconds,
        )
        self.handoff = HandoffStore(db, max_age_seconds=config.security.handoff_max_age_seconds)
        self.provider = ProviderService(
            config,
            self.bus,
            self.keychain,
            self.connections,
            self.approvals,
            self.replay,
            self.handoff,
            limiters=self.limiters,
            analytics=self.analytics,
        )
        self._cleanup_task: asyncio.Task | None = None

    def _default_strategies(self) -> list[SurfaceStrategy]:
        strategies: list[SurfaceStrategy] = [NavigateOpenSurface(self.bus)]
        if self.config.server.open_browser:
            strategies.append(
                LaunchSurface(
                    webbrowser.open,
                    base_url=self.config.server.base_url(),
                    token=self.ui_token,
                )
            )
        return strategies

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @classmethod
    async def create(
        cls,
        config: BrokerConfig,
        keychain: Keychain | None = None,
        ui: UISurface | None = None,
    ) -> Broker:
        """Open the database, load persisted state and start background cleanup."""
        db = get_database(config.database_path())
        await db.connect()
        broker = cls(config, db=db, keychain=keychain, ui=ui)
        await broker.start()
        return broker

    @classmethod
    def init(cls, path: Path | None = None, name: str = "wallet-broker") -> BrokerConfig:
        """Write a default config file and create the data directory."""
        config_path = path or default_config_path()
        config = BrokerConfig(name=name)
        save_config(config, config_path)
        config.resolved_data_dir().mkdir(parents=True, exist_ok=True)
        return config

    async def start(self) -> None:
        grants = await self.connections.load()
        records = await self.replay.load()
        self.replay.evict_stale()
        await self.replay.flush()
        await self.handoff.prune()
        self.approvals.initialize()
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.info(
            f"Broker '{self.config.name}' started "
            f"({grants} connection(s), {records} replay record(s))"
        )

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(CLEANUP_INTERVAL_SECONDS)
            try:
                await self.run_cleanup()
            except Exception as e:
                logger.error(f"Periodic cleanup failed: {e}")

    async def run_cleanup(self) -> dict:
        """Prune old handoffs, stale replay entries, expired grants and elapsed rate windows."""
        handoffs = await self.handoff.prune()
        stale = self.replay.evict_stale()
        await self.replay.flush()
        expired = await self.connections.prune_expired()
        windows = self.limiters.prune()
        return {
            "handoff": handoffs,
            "replay": stale,
            "connections": expired,
            "rate_limits": windows,
        }

    async def shutdown(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
        self.provider.destroy()
        await self.replay.flush()
        await self.analytics.aclose()
        self.bus.clear()
        if self.db is not None:
            await self.db.close()
        logger.info(f"Broker '{self.config.name}' stopped")


# ---------------------------------------------------------------------------
# Process-wide accessor
# ---------------------------------------------------------------------------

_broker: Broker | None = None


def get_broker() -> Broker:
    if _broker is None:
        raise RuntimeError("Broker not initialized. Call init_broker() first.")
    return _broker


async def init_broker(
    config: BrokerConfig | None = None,
    keychain: Keychain | None = None,
    ui: UISurface | None = None,
) -> Broker:
    global _broker
    if _broker is not None:
        return _broker
    _broker = await Broker.create(
        config or load_config(default_config_path()), keychain=keychain, ui=ui
    )
    return _broker


async def shutdown_broker() -> None:
    global _broker
    if _broker is None:
        return
    broker, _broker = _broker, None
    await broker.shutdown()
    RateLimiters.reset_instance()
    CriticalOperationRegistry.reset_instance()
