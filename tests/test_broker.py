"""Tests for broker wiring, startup and teardown."""

from __future__ import annotations

import asyncio

import pytest
from conftest import ADDRESS, FakeKeychain, StubSurface

from wallet_broker.config import BrokerConfig, LimitConfig, load_config
from wallet_broker.core.broker import Broker, get_broker, init_broker, shutdown_broker
from wallet_broker.core.rate_limiter import RateLimiters
from wallet_broker.core.ui_surface import LaunchSurface, NavigateOpenSurface, UISurface

ORIGIN = "https://dapp.example"


def _config(tmp_path) -> BrokerConfig:
    return BrokerConfig(name="test-broker", data_dir=str(tmp_path))


class TestBroker:
    async def test_state_survives_restart(self, tmp_path):
        config = _config(tmp_path)
        broker = await Broker.create(config, keychain=FakeKeychain(), ui=UISurface([StubSurface()]))
        await broker.connections.grant(ORIGIN, ADDRESS)
        await broker.provider.handle_request(ORIGIN, "wallet_broadcastTransaction", ["0xabc1"])
        await broker.shutdown()

        restarted = await Broker.create(config, keychain=FakeKeychain(), ui=UISurface([StubSurface()]))
        try:
            assert restarted.connections.has_permission(ORIGIN)
            assert restarted.replay.get_stats()["broadcasted"] == 1
        finally:
            await restarted.shutdown()

    async def test_run_cleanup(self, tmp_path):
        broker = await Broker.create(_config(tmp_path), keychain=FakeKeychain(), ui=UISurface([]))
        try:
            assert await broker.run_cleanup() == {
                "handoff": 0,
                "replay": 0,
                "connections": 0,
                "rate_limits": 0,
            }
        finally:
            await broker.shutdown()

    async def test_cleanup_drops_elapsed_rate_windows(self, tmp_path):
        config = _config(tmp_path)
        config.rate_limits.general = LimitConfig(max_requests=100, window_seconds=0.01)
        broker = await Broker.create(config, keychain=FakeKeychain(), ui=UISurface([]))
        try:
            for i in range(20):
                await broker.provider.handle_request(f"https://site{i}.example", "wallet_chainId")
            await asyncio.sleep(0.05)
            assert (await broker.run_cleanup())["rate_limits"] == 20
        finally:
            await broker.shutdown()

    def test_default_strategies(self, tmp_path):
        config = _config(tmp_path)
        broker = Broker(config, keychain=FakeKeychain())
        assert [type(s) for s in broker.ui.strategies] == [NavigateOpenSurface]

        config.server.open_browser = True
        broker = Broker(config, keychain=FakeKeychain())
        assert [type(s) for s in broker.ui.strategies] == [NavigateOpenSurface, LaunchSurface]
        assert broker.ui.strategies[1].token == broker.ui_token

    def test_ui_token(self, tmp_path):
        first = Broker(_config(tmp_path), keychain=FakeKeychain())
        second = Broker(_config(tmp_path), keychain=FakeKeychain())
        assert len(first.ui_token) >= 32
        assert first.ui_token != second.ui_token

        config = _config(tmp_path)
        config.server.ui_token = "fixed"
        assert Broker(config, keychain=FakeKeychain()).ui_token == "fixed"

    def test_rate_limits_come_from_config(self, tmp_path):
        config = _config(tmp_path)
        config.rate_limits.general.max_requests = 3
        broker = Broker(config, keychain=FakeKeychain())
        assert RateLimiters.get() is broker.limiters
        assert broker.limiters.general.max_requests == 3

    def test_init_writes_config(self, tmp_path):
        path = tmp_path / "config.yaml"
        config = Broker.init(path, name="mine")
        assert load_config(path).name == "mine"
        assert config.name == "mine"


class TestAccessor:
    async def test_lifecycle(self, tmp_path):
        with pytest.raises(RuntimeError):
            get_broker()
        broker = await init_broker(_config(tmp_path), keychain=FakeKeychain(), ui=UISurface([]))
        try:
            assert get_broker() is broker
            assert await init_broker() is broker
        finally:
            await shutdown_broker()
        with pytest.raises(RuntimeError):
            get_broker()
