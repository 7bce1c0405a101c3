"""Shared fixtures for the broker test-suite."""

from __future__ import annotations

import asyncio

import pytest

from wallet_broker.analytics import Analytics
from wallet_broker.config import BrokerConfig
from wallet_broker.core.critical_ops import CriticalOperationRegistry
from wallet_broker.core.message_bus import MessageBus
from wallet_broker.core.rate_limiter import RateLimiters
from wallet_broker.core.ui_surface import UISurface
from wallet_broker.security.replay import ReplayLedger
from wallet_broker.services.approval import ApprovalService
from wallet_broker.services.connection import ConnectionService
from wallet_broker.services.provider import ProviderService
from wallet_broker.storage.handoff import HandoffStore
from wallet_broker.wallet.chains import get_chain

ADDRESS = "0x9858EfFD232B4033E47d90003D41EC34EcaEda94"
ORIGIN = "https://dapp.example"


class FakeKeychain:
    """In-memory keychain: no keystore, no network."""

    def __init__(self, has_wallet: bool = True, unlocked: bool = True, address: str = ADDRESS):
        self.has_wallet = has_wallet
        self.unlocked = unlocked
        self.address = address
        self.broadcasts: list[str] = []
        self.fail_broadcast = False

    def has_wallets(self) -> bool:
        return self.has_wallet

    def is_unlocked(self) -> bool:
        return self.unlocked

    def get_active_address(self):
        return self.address if self.has_wallet else None

    def get_chain(self):
        return get_chain("ethereum")

    async def broadcast_transaction(self, signed_hex: str) -> dict:
        if self.fail_broadcast:
            raise ConnectionError("node unreachable")
        self.broadcasts.append(signed_hex)
        return {"txid": f"0xtx{len(self.broadcasts)}"}


class StubSurface:
    """UI strategy that always 'opens' and remembers where it was sent."""

    name = "stub"

    def __init__(self, opens: bool = True):
        self.opens = opens
        self.routes: list[tuple[str, str | None]] = []

    async def open(self, route, request_id):
        self.routes.append((route, request_id))
        return self.opens


class Harness:
    """The provider and its collaborators, wired without a database."""

    def __init__(self, config: BrokerConfig | None = None, keychain: FakeKeychain | None = None):
        self.config = config or BrokerConfig()
        self.bus = MessageBus(timeout=self.config.timeouts.bus_seconds)
        self.keychain = keychain or FakeKeychain()
        self.surface = StubSurface()
        self.ui = UISurface([self.surface], strategy_timeout=1.0)
        self.analytics = Analytics()
        self.critical_ops = CriticalOperationRegistry.get()
        self.limiters = RateLimiters.configure(self.config.rate_limits)
        self.approvals = ApprovalService(
            self.bus,
            self.ui,
            critical_ops=self.critical_ops,
            analytics=self.analytics,
            timeouts=self.config.timeouts,
            max_pending=self.config.security.max_pending_approvals,
        )
        self.connections = ConnectionService(
            self.bus,
            self.keychain,
            self.approvals,
            ttl_days=self.config.security.connection_ttl_days,
            unlock_timeout=self.config.timeouts.unlock_seconds,
        )
        self.replay = ReplayLedger()
        self.handoff = HandoffStore()
        self.provider = ProviderService(
            self.config,
            self.bus,
            self.keychain,
            self.connections,
            self.approvals,
            self.replay,
            self.handoff,
            limiters=self.limiters,
            analytics=self.analytics,
        )
        self.approvals.initialize()


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Yield to the loop until *predicate* holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture(autouse=True)
def reset_singletons():
    RateLimiters.reset_instance()
    CriticalOperationRegistry.reset_instance()
    yield
    RateLimiters.reset_instance()
    CriticalOperationRegistry.reset_instance()


@pytest.fixture
def harness():
    return Harness()


@pytest.fixture
def bus():
    return MessageBus(timeout=0.5)
