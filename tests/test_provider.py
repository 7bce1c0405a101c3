"""End-to-end tests for ProviderService.handle_request."""

from __future__ import annotations

import asyncio

import pytest
from conftest import ADDRESS, ORIGIN, Harness, wait_until

from wallet_broker.config import BrokerConfig, LimitConfig
from wallet_broker.core.message_bus import PROVIDER_EVENT
from wallet_broker.errors import (
    RateLimitError,
    ReplayError,
    RequestTimeoutError,
    UnauthorizedError,
    UnsupportedMethodError,
    UserDeniedError,
    ValidationError,
)
from wallet_broker.services.provider import (
    COMPOSE_METHODS,
    CONNECTION,
    GENERAL,
    TRANSACTION,
    classify,
)


async def _connect(h: Harness, origin: str = ORIGIN) -> None:
    await h.connections.grant(origin, ADDRESS)


async def _next_request(h: Harness):
    await wait_until(lambda: h.approvals.get_approval_queue())
    return h.approvals.get_approval_queue()[0]


# ─── scenarios ────────────────────────────────────────────────────────


class TestScenarios:
    async def test_connect_then_accounts(self, harness):
        task = asyncio.create_task(harness.provider.handle_request(ORIGIN, "wallet_requestAccounts"))
        request = await _next_request(harness)
        harness.approvals.resolve_approval(request.id, True)
        assert await task == [ADDRESS]

        assert await harness.provider.handle_request(ORIGIN, "wallet_accounts") == [ADDRESS]
        assert await harness.provider.handle_request(ORIGIN, "wallet_requestAccounts") == [ADDRESS]
        assert harness.approvals.get_approval_queue() == []

    async def test_compose_cancel(self, harness):
        await _connect(harness)
        task = asyncio.create_task(
            harness.provider.handle_request(ORIGIN, "wallet_composeSend", [{"asset": "XCP", "quantity": 1}])
        )
        request = await _next_request(harness)
        await wait_until(lambda: harness.surface.routes)
        assert harness.critical_ops.has_critical_operations()
        assert harness.surface.routes[0][0] == f"/compose/send?id={request.id}"

        harness.bus.emit(f"compose-cancel-{request.id}", None)
        with pytest.raises(UserDeniedError):
            await task
        assert not harness.critical_ops.has_critical_operations()
        assert harness.approvals.get_approval_queue() == []
        assert len(harness.handoff) == 0

    async def test_eleventh_general_call_is_rate_limited(self):
        config = BrokerConfig()
        config.rate_limits.general = LimitConfig(max_requests=10, window_seconds=60)
        h = Harness(config=config)
        for _ in range(10):
            assert await h.provider.handle_request(ORIGIN, "wallet_isConnected") is False
        with pytest.raises(RateLimitError) as excinfo:
            await h.provider.handle_request(ORIGIN, "wallet_isConnected")
        assert excinfo.value.retry_after > 0
        assert excinfo.value.to_dict()["data"]["retry_after"] > 0

    async def test_broadcast_replay_rejected_without_network(self, harness):
        await _connect(harness)
        result = await harness.provider.handle_request(ORIGIN, "wallet_broadcastTransaction", ["0xdeadbeef"])
        assert result == {"txid": "0xtx1"}

        with pytest.raises(ReplayError):
            await harness.provider.handle_request(ORIGIN, "wallet_broadcastTransaction", ["0xDEADBEEF"])
        assert harness.keychain.broadcasts == ["0xdeadbeef"]

    async def test_approval_timeout_cleans_up(self):
        config = BrokerConfig()
        config.timeouts.approval_seconds = 0.05
        h = Harness(config=config)
        with pytest.raises(RequestTimeoutError):
            await h.provider.handle_request(ORIGIN, "wallet_requestAccounts")
        assert h.approvals.get_approval_queue() == []
        assert not h.critical_ops.has_critical_operations()
        assert not h.connections.has_permission(ORIGIN)


# ─── validation and dispatch ──────────────────────────────────────────


class TestDispatch:
    async def test_unknown_method(self, harness):
        with pytest.raises(UnsupportedMethodError) as excinfo:
            await harness.provider.handle_request(ORIGIN, "eth_mine")
        assert excinfo.value.code == 4200

    async def test_history_is_refused(self, harness):
        await _connect(harness)
        with pytest.raises(UnauthorizedError):
            await harness.provider.handle_request(ORIGIN, "wallet_getHistory")

    async def test_oversized_params(self):
        config = BrokerConfig()
        config.security.max_param_bytes = 64
        h = Harness(config=config)
        with pytest.raises(ValidationError):
            await h.provider.handle_request(ORIGIN, "wallet_accounts", ["x" * 100])

    async def test_oversized_metadata(self):
        config = BrokerConfig()
        config.security.max_param_bytes = 64
        h = Harness(config=config)
        with pytest.raises(ValidationError):
            await h.provider.handle_request(ORIGIN, "wallet_accounts", [], {"title": "x" * 100})
        assert h.provider.get_request_stats()["requests"]["failed"] == 1

    async def test_oversized_metadata_rejected_before_queueing(self):
        config = BrokerConfig()
        config.security.max_param_bytes = 128
        h = Harness(config=config)
        with pytest.raises(ValidationError):
            await h.provider.handle_request(ORIGIN, "wallet_requestAccounts", [], {"icon": "x" * 500})
        assert h.approvals.get_approval_queue() == []
        assert h.surface.routes == []

    async def test_assets_are_refused(self, harness):
        await _connect(harness)
        with pytest.raises(UnauthorizedError) as excinfo:
            await harness.provider.handle_request(ORIGIN, "wallet_getAssets")
        assert "API directly" in excinfo.value.message

    async def test_unserializable_params(self, harness):
        with pytest.raises(ValidationError):
            await harness.provider.handle_request(ORIGIN, "wallet_accounts", [object()])

    async def test_chain_queries(self, harness):
        assert await harness.provider.handle_request(ORIGIN, "wallet_chainId") == "0x1"
        assert await harness.provider.handle_request(ORIGIN, "wallet_getNetwork") == "mainnet"

    @pytest.mark.parametrize(
        "method",
        ["wallet_signMessage", "wallet_signTransaction", "wallet_signPsbt", "wallet_composeOrder",
         "wallet_broadcastTransaction"],
    )
    async def test_unconnected_origin_never_succeeds(self, harness, method):
        with pytest.raises(UnauthorizedError):
            await harness.provider.handle_request(ORIGIN, method, ["0xabcd"])
        assert harness.approvals.get_approval_queue() == []
        assert harness.keychain.broadcasts == []

    def test_classification(self):
        assert classify("wallet_requestAccounts") == CONNECTION
        assert classify("wallet_signMessage") == TRANSACTION
        assert classify("wallet_composeSend") == TRANSACTION
        assert classify("wallet_broadcastTransaction") == TRANSACTION
        assert classify("wallet_accounts") == GENERAL
        assert classify("something_else") == GENERAL

    def test_compose_method_names(self):
        assert COMPOSE_METHODS["wallet_composeSend"] == "send"
        assert COMPOSE_METHODS["wallet_composeMPMA"] == "mpma"
        assert COMPOSE_METHODS["wallet_composeBTCPay"] == "btcpay"
        assert COMPOSE_METHODS["wallet_composeFairminter"] == "fairminter"

    async def test_categories_do_not_starve_each_other(self):
        config = BrokerConfig()
        config.rate_limits.transaction = LimitConfig(max_requests=1)
        h = Harness(config=config)
        await _connect(h)
        await h.provider.handle_request(ORIGIN, "wallet_broadcastTransaction", ["0x01"])
        with pytest.raises(RateLimitError):
            await h.provider.handle_request(ORIGIN, "wallet_broadcastTransaction", ["0x02"])
        assert await h.provider.handle_request(ORIGIN, "wallet_isConnected") is True


# ─── sensitive operations ─────────────────────────────────────────────


class TestSigning:
    async def test_sign_message_completes(self, harness):
        await _connect(harness)
        task = asyncio.create_task(
            harness.provider.handle_request(ORIGIN, "wallet_signMessage", ["hello", ADDRESS])
        )
        request = await _next_request(harness)
        record = await harness.handoff.get(request.id)
        assert record.payload["params"] == ["hello", ADDRESS]
        assert request.id in harness.critical_ops

        harness.bus.emit(f"sign-message-complete-{request.id}", {"signature": "0xsig"})
        assert await task == {"signature": "0xsig"}
        assert not harness.critical_ops.has_critical_operations()
        assert await harness.handoff.get(request.id) is None

    async def test_sign_transaction_uses_sign_tx_events(self, harness):
        await _connect(harness)
        task = asyncio.create_task(harness.provider.handle_request(ORIGIN, "wallet_signTransaction", ["0x02f8"]))
        request = await _next_request(harness)
        harness.bus.emit(f"sign-tx-complete-{request.id}", {"signedTx": "0x02f8aa"})
        assert await task == {"signedTx": "0x02f8aa"}

    async def test_yes_no_resolution_cannot_finish_signing(self, harness):
        await _connect(harness)
        task = asyncio.create_task(harness.provider.handle_request(ORIGIN, "wallet_signMessage", ["hello"]))
        request = await _next_request(harness)

        assert not harness.approvals.resolve_approval(request.id, False)
        assert not harness.approvals.resolve_approval(request.id, True)
        harness.bus.emit("resolve-pending-request", {"requestId": request.id, "approved": True})
        await asyncio.sleep(0)
        assert not task.done()
        assert request.id in harness.critical_ops

        harness.bus.emit(f"sign-message-cancel-{request.id}", None)
        with pytest.raises(UserDeniedError):
            await task
        assert harness.approvals.get_approval_queue() == []

    async def test_yes_no_resolution_cannot_finish_compose(self, harness):
        await _connect(harness)
        task = asyncio.create_task(
            harness.provider.handle_request(ORIGIN, "wallet_composeSend", [{"asset": "XCP"}])
        )
        request = await _next_request(harness)
        assert not harness.approvals.resolve_approval(request.id, True)
        assert not task.done()

        harness.bus.emit(f"compose-complete-{request.id}", {"txid": "0xabc"})
        assert await task == {"txid": "0xabc"}

    async def test_dismissing_sensitive_request(self, harness):
        await _connect(harness)
        task = asyncio.create_task(harness.provider.handle_request(ORIGIN, "wallet_signPsbt", ["cHNidP8="]))
        request = await _next_request(harness)
        assert harness.provider.remove_approval_request(request.id)
        with pytest.raises(UserDeniedError):
            await task
        assert not harness.critical_ops.has_critical_operations()

    async def test_compose_timeout_clears_critical_operation(self):
        config = BrokerConfig()
        config.timeouts.compose_seconds = 0.05
        h = Harness(config=config)
        await _connect(h)
        with pytest.raises(RequestTimeoutError):
            await h.provider.handle_request(ORIGIN, "wallet_composeDispenser", [{"asset": "PEPE"}])
        assert not h.critical_ops.has_critical_operations()
        assert len(h.handoff) == 0

    async def test_compose_requires_object_params(self, harness):
        await _connect(harness)
        with pytest.raises(ValidationError):
            await harness.provider.handle_request(ORIGIN, "wallet_composeSend", ["not-an-object"])


# ─── broadcast ────────────────────────────────────────────────────────


class TestBroadcast:
    async def test_failed_broadcast_can_be_retried(self, harness):
        await _connect(harness)
        harness.keychain.fail_broadcast = True
        with pytest.raises(ConnectionError):
            await harness.provider.handle_request(ORIGIN, "wallet_broadcastTransaction", ["0xcafe"])
        assert harness.analytics.counts["provider_error"] == 1
        assert harness.replay.get_stats()["pending"] == 0

        harness.keychain.fail_broadcast = False
        assert await harness.provider.handle_request(ORIGIN, "wallet_broadcastTransaction", ["0xcafe"])

    async def test_replay_from_another_origin(self, harness):
        await _connect(harness)
        await _connect(harness, "https://other.example")
        await harness.provider.handle_request(ORIGIN, "wallet_broadcastTransaction", ["0xbead"])
        with pytest.raises(ReplayError):
            await harness.provider.handle_request("https://other.example", "wallet_broadcastTransaction", ["0xbead"])

    async def test_missing_hex(self, harness):
        await _connect(harness)
        with pytest.raises(ValidationError):
            await harness.provider.handle_request(ORIGIN, "wallet_broadcastTransaction", [])


# ─── management ───────────────────────────────────────────────────────


class TestManagement:
    async def test_disconnect_method(self, harness):
        await _connect(harness)
        events = []
        harness.bus.on(PROVIDER_EVENT, events.append)
        assert await harness.provider.handle_request(ORIGIN, "wallet_disconnect") is True
        assert not harness.provider.is_connected(ORIGIN)
        assert {e["event"] for e in events} == {"accountsChanged", "disconnect"}

    async def test_request_stats(self, harness):
        await harness.provider.handle_request(ORIGIN, "wallet_isConnected")
        with pytest.raises(UnsupportedMethodError):
            await harness.provider.handle_request(ORIGIN, "nope")
        stats = harness.provider.get_request_stats()
        assert stats["requests"] == {"total": 2, "succeeded": 1, "failed": 1}
        assert stats["approvals"]["pending"] == 0

    async def test_destroy_cancels_outstanding(self, harness):
        await _connect(harness)
        task = asyncio.create_task(harness.provider.handle_request(ORIGIN, "wallet_composeBurn", [{}]))
        await _next_request(harness)
        harness.provider.destroy()
        with pytest.raises(UserDeniedError):
            await task
        assert not harness.critical_ops.has_critical_operations()
