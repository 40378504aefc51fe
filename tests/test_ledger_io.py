"""
Tests for the ledger read path: event replay, typed contract reads,
mode history and the reconciliation service.
"""
import pytest
from unittest.mock import AsyncMock, MagicMock

from conftest import CROSS_CHAIN, ORACLE, USER, VAULT
from vaultsync.core.errors import RateLimitedError, TransientNetworkError
from vaultsync.core.event_bus import EventBus, EventType
from vaultsync.infra.retry import RetryPolicy
from vaultsync.ledger.abi import address_topic
from vaultsync.ledger.events import (
    DepositEvent,
    MoveEvent,
    deposit_schema,
    ledger_schemas,
    mode_changed_schema,
    move_schema,
    withdraw_schema,
)
from vaultsync.ledger.mode_history import ModeHistoryReader
from vaultsync.ledger.reconciliation_service import ReconciliationConfig, ReconciliationService
from vaultsync.ledger.replayer import EventLogReplayer, ReplayConfig, ReplayResult
from vaultsync.ledger.vault_reader import ContractAddresses, VaultReader, risk_profile_name

NO_WAIT = RetryPolicy(max_retries=3, base_delay_ms=0)
ADDRESSES = ContractAddresses(vault=VAULT, oracle=ORACLE, cross_chain=CROSS_CHAIN)


def mock_rpc(head=5000, logs=None):
    rpc = MagicMock()
    rpc.block_number = AsyncMock(return_value=head)
    rpc.get_logs = AsyncMock(side_effect=logs or (lambda *a, **k: []))
    rpc.read_value = AsyncMock()
    return rpc


class TestReplayer:
    @pytest.fixture
    def sleeps(self):
        recorded = []

        async def _sleep(seconds):
            recorded.append(seconds)

        _sleep.recorded = recorded
        return _sleep

    @pytest.mark.asyncio
    async def test_bounded_window_and_pauses(self, log_builder, sleeps):
        dep = deposit_schema(VAULT)
        mv = move_schema(CROSS_CHAIN)
        by_address = {
            VAULT: [log_builder(dep, {"user": USER, "amount": 100_000_000}, block=4500)],
            CROSS_CHAIN: [log_builder(mv, {"sourceChain": "Arc", "destChain": "Base",
                                           "amount": 40_000_000, "timestamp": 1}, block=4600)],
        }

        async def get_logs(address, topics, from_block, to_block):
            if topics[0] == withdraw_schema(VAULT).topic0:
                return []
            return by_address[address]

        rpc = mock_rpc(head=5000, logs=get_logs)
        replayer = EventLogReplayer(rpc, ledger_schemas(VAULT, CROSS_CHAIN), ReplayConfig(window_blocks=2000),
                                    retry=NO_WAIT, sleep=sleeps)
        result = await replayer.replay()

        assert (result.from_block, result.to_block) == (3000, 5000)
        assert rpc.get_logs.await_count == 3
        for call in rpc.get_logs.await_args_list:
            assert call.args[2:] == (3000, 5000)
        # one pause between consecutive queries
        assert sleeps.recorded == [0.5, 0.5]
        assert result.events == [
            DepositEvent(account=USER, amount=100.0, block_number=4500),
            MoveEvent(source_chain="Arc", dest_chain="Base", amount=40.0, block_number=4600, timestamp=1),
        ]
        assert result.dropped == 0

    @pytest.mark.asyncio
    async def test_window_clamped_at_genesis(self, sleeps):
        rpc = mock_rpc(head=150)
        replayer = EventLogReplayer(rpc, ledger_schemas(VAULT, CROSS_CHAIN), retry=NO_WAIT, sleep=sleeps)
        result = await replayer.replay()
        assert result.from_block == 0

    @pytest.mark.asyncio
    async def test_account_filter_on_indexed_user(self, sleeps):
        rpc = mock_rpc()
        replayer = EventLogReplayer(rpc, ledger_schemas(VAULT, CROSS_CHAIN), ReplayConfig(account=USER),
                                    retry=NO_WAIT, sleep=sleeps)
        await replayer.replay()
        topics = [call.args[1] for call in rpc.get_logs.await_args_list]
        assert topics[0][1] == address_topic(USER)
        assert topics[1][1] == address_topic(USER)
        # moves have no indexed address
        assert len(topics[2]) == 1

    @pytest.mark.asyncio
    async def test_malformed_entries_dropped(self, log_builder, sleeps, events_log):
        dep = deposit_schema(VAULT)
        good = log_builder(dep, {"user": USER, "amount": 1_000_000})
        bad = dict(good, data="0x01")

        async def get_logs(address, topics, from_block, to_block):
            return [bad, good] if topics[0] == dep.topic0 else []

        replayer = EventLogReplayer(mock_rpc(logs=get_logs), [dep], retry=NO_WAIT, sleep=sleeps,
                                    log_event=events_log)
        result = await replayer.replay()
        assert len(result.events) == 1
        assert result.dropped == 1
        assert "log_decode_failed" in events_log.names()
        assert events_log.names()[-1] == "replay_complete"

    @pytest.mark.asyncio
    async def test_rate_limited_query_retried(self, sleeps):
        calls = {"n": 0}

        async def get_logs(*args):
            calls["n"] += 1
            if calls["n"] == 1:
                raise RateLimitedError("429")
            return []

        retried = []
        replayer = EventLogReplayer(mock_rpc(logs=get_logs), [deposit_schema(VAULT)], retry=NO_WAIT,
                                    sleep=sleeps, on_retry=retried.append)
        result = await replayer.replay()
        assert result.events == []
        assert calls["n"] == 2
        assert len(retried) == 1


class TestVaultReader:
    @pytest.mark.asyncio
    async def test_unit_conversion(self):
        rpc = mock_rpc()
        values = {
            "totalDeposits()": 2_500_000,
            "getPrice()": 10**18,
            "chainPrices(string)": 998 * 10**15,
            "userRiskProfile(address)": 1,
            "getMode()": 2,
        }
        rpc.read_value = AsyncMock(side_effect=lambda addr, sig, args, returns: values[sig])
        reader = VaultReader(rpc, ADDRESSES, retry=NO_WAIT)

        assert await reader.total_deposits() == 2.5
        assert await reader.oracle_price() == 1.0
        assert await reader.chain_price("Base") == pytest.approx(0.998)
        assert await reader.risk_profile(USER) == 1
        assert await reader.mode() == 2
        assert risk_profile_name(1) == "Balanced"

    @pytest.mark.asyncio
    async def test_supported_chains_filters_empty(self):
        rpc = mock_rpc()
        rpc.read_value = AsyncMock(return_value=("Arc", "", "Base"))
        reader = VaultReader(rpc, ADDRESSES, retry=NO_WAIT)
        assert await reader.supported_chains() == ["Arc", "Base"]

    @pytest.mark.asyncio
    async def test_reads_target_right_contract(self):
        rpc = mock_rpc()
        rpc.read_value = AsyncMock(return_value="Arc")
        reader = VaultReader(rpc, ADDRESSES, retry=NO_WAIT)
        await reader.active_chain()
        assert rpc.read_value.await_args.args[:2] == (CROSS_CHAIN, "activeChain()")

    @pytest.mark.asyncio
    async def test_transient_failure_retried(self):
        rpc = mock_rpc()
        rpc.read_value = AsyncMock(side_effect=[TransientNetworkError("reset"), 1_000_000])
        reader = VaultReader(rpc, ADDRESSES, retry=NO_WAIT)
        assert await reader.total_deposits() == 1.0
        assert rpc.read_value.await_count == 2


class TestModeHistory:
    @pytest.mark.asyncio
    async def test_sorted_oldest_first(self, log_builder, events_log):
        schema = mode_changed_schema(VAULT)
        newer = log_builder(schema, {"newMode": 2, "price": 9 * 10**17, "timestamp": 20, "reason": "crash"}, block=90)
        older = log_builder(schema, {"newMode": 1, "price": 99 * 10**16, "timestamp": 10, "reason": "dip"}, block=80)
        bad = dict(older, data="0x")

        async def get_logs(*args):
            return [newer, bad, older]

        reader = ModeHistoryReader(mock_rpc(head=100, logs=get_logs), schema, retry=NO_WAIT, log_event=events_log)
        changes = await reader.fetch(lookback_blocks=50)
        assert [c.block_number for c in changes] == [80, 90]
        assert events_log.names() == ["log_decode_failed"]

        latest = await reader.latest()
        assert latest.new_mode == 2 and latest.reason == "crash"

    @pytest.mark.asyncio
    async def test_latest_none_when_empty(self):
        reader = ModeHistoryReader(mock_rpc(), mode_changed_schema(VAULT), retry=NO_WAIT)
        assert await reader.latest() is None


class TestReconciliationService:
    @pytest.fixture
    def reader(self):
        reader = MagicMock()
        reader.active_chain = AsyncMock(return_value="Arc")
        reader.total_deposits = AsyncMock(return_value=150.0)
        reader.supported_chains = AsyncMock(return_value=["Arc", "Ethereum"])
        return reader

    @pytest.fixture
    def replayer(self):
        replayer = MagicMock()
        replayer.replay = AsyncMock(return_value=ReplayResult(
            events=[
                DepositEvent(account=USER, amount=100.0, block_number=1),
                MoveEvent(source_chain="Arc", dest_chain="Ethereum", amount=40.0, block_number=2, timestamp=0),
            ],
            from_block=10,
            to_block=2010,
        ))
        return replayer

    @pytest.mark.asyncio
    async def test_publishes_snapshot(self, reader, replayer, events_log):
        bus = EventBus()
        metrics = MagicMock()
        service = ReconciliationService(reader, replayer, event_bus=bus, metrics=metrics, log_event=events_log)

        snap = await service.run_once()
        assert service.snapshot is snap
        assert snap.balance_of("Arc") == 110.0
        assert snap.balance_of("Ethereum") == 40.0
        assert snap.balance_of("Base") == 0.0
        assert (snap.from_block, snap.to_block) == (10, 2010)
        assert not snap.degraded
        metrics.record_snapshot.assert_called_once_with(snap)
        assert "balances_reconciled" in events_log.names()

        await bus.drain()
        (published,) = bus.get_history(EventType.BALANCES_RECONCILED)
        assert published.type is EventType.BALANCES_RECONCILED
        assert published.data["total"] == 150.0

    @pytest.mark.asyncio
    async def test_supported_chains_fallback(self, reader, replayer):
        reader.supported_chains = AsyncMock(side_effect=RuntimeError("boom"))
        service = ReconciliationService(reader, replayer, ReconciliationConfig(
            fallback_chains=("Arc", "Base"), include_zero=True,
        ))
        snap = await service.run_once()
        assert [cb.chain for cb in snap.balances] == ["Arc", "Base"]

    @pytest.mark.asyncio
    async def test_excluded_chains_filtered(self, reader, replayer):
        reader.supported_chains = AsyncMock(return_value=["Arc", "Ethereum", "Base"])
        service = ReconciliationService(reader, replayer, ReconciliationConfig(
            include_zero=True, excluded_chains=("Base",),
        ))
        snap = await service.run_once()
        assert "Base" not in [cb.chain for cb in snap.balances]

    @pytest.mark.asyncio
    async def test_degraded_when_replay_fails(self, reader, replayer):
        service = ReconciliationService(reader, replayer)
        await service.run_once()

        reader.total_deposits = AsyncMock(side_effect=RateLimitedError("429"))
        snap = await service.run_once()
        assert snap.degraded
        assert snap.total == 150.0
        assert [(cb.chain, cb.balance) for cb in snap.balances] == [("Arc", 150.0)]

    @pytest.mark.asyncio
    async def test_degraded_before_any_total(self, reader, replayer):
        replayer.replay = AsyncMock(side_effect=TransientNetworkError("down"))
        service = ReconciliationService(reader, replayer)
        snap = await service.run_once()
        assert snap.degraded
        assert snap.total == 150.0
        assert snap.balance_of("Arc") == 150.0

    @pytest.mark.asyncio
    async def test_active_chain_falls_back_to_last_known(self, reader, replayer):
        service = ReconciliationService(reader, replayer, ReconciliationConfig(fallback_chains=("Base",)))
        await service.run_once()
        reader.active_chain = AsyncMock(side_effect=TransientNetworkError("down"))
        snap = await service.run_once()
        assert snap.active_chain == "Arc"

    @pytest.mark.asyncio
    async def test_active_chain_first_fallback(self, reader, replayer):
        reader.active_chain = AsyncMock(return_value="")
        service = ReconciliationService(reader, replayer, ReconciliationConfig(fallback_chains=("Base", "Arc")))
        snap = await service.run_once()
        assert snap.active_chain == "Base"
