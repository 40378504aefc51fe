"""
Tests for the controller state machine and the corrective-action controllers.
"""
import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock

from conftest import CROSS_CHAIN, ORACLE, USER, VAULT
from vaultsync.config.chain_overrides import ChainOverride
from vaultsync.control.best_chain_controller import BestChainConfig, BestChainController
from vaultsync.control.controller_state import ControllerState, ControllerStateMachine
from vaultsync.control.oracle_sync_controller import OracleSyncController
from vaultsync.control.rebalance_controller import RebalanceConfig, RebalanceController
from vaultsync.core.errors import ActionRevertedError, ConfirmationTimeoutError, InvalidTransitionError
from vaultsync.core.event_bus import EventBus, EventType
from vaultsync.infra.tx_executor import Receipt
from vaultsync.ledger.vault_reader import ContractAddresses
from vaultsync.watchers.change_watcher import NotificationDeduper

ADDRESSES = ContractAddresses(vault=VAULT, oracle=ORACLE, cross_chain=CROSS_CHAIN)
ONE = 10**18


def receipt(tx="0x01"):
    return Receipt(tx_hash=tx, block_number=1, status=1, gas_used=21000)


def mock_executor():
    executor = MagicMock()
    executor.execute = AsyncMock(return_value=receipt())
    return executor


class TestControllerStateMachine:
    def test_happy_cycle(self, clock):
        sm = ControllerStateMachine("x", cooldown_sec=5, clock=clock)
        assert sm.try_begin()
        assert sm.state is ControllerState.DECIDING and sm.in_flight
        sm.transition(ControllerState.EXECUTING)
        sm.start_cooldown()
        assert sm.state is ControllerState.COOLDOWN
        assert not sm.try_begin()
        clock.advance(5)
        assert sm.state is ControllerState.IDLE
        assert [t.to_state for t in sm.history] == [
            ControllerState.DECIDING, ControllerState.EXECUTING, ControllerState.COOLDOWN, ControllerState.IDLE,
        ]

    def test_try_begin_is_exclusive(self, clock):
        sm = ControllerStateMachine("x", clock=clock)
        assert sm.try_begin()
        assert not sm.try_begin()

    def test_invalid_transitions(self, clock):
        sm = ControllerStateMachine("x", clock=clock)
        with pytest.raises(InvalidTransitionError):
            sm.transition(ControllerState.EXECUTING)
        with pytest.raises(InvalidTransitionError):
            sm.start_cooldown()
        assert not sm.can_transition(ControllerState.COOLDOWN)

    def test_reset_from_any_active_state(self, clock):
        sm = ControllerStateMachine("x", clock=clock)
        sm.reset()
        assert sm.is_idle
        sm.try_begin()
        sm.transition(ControllerState.EXECUTING)
        sm.reset("failed")
        assert sm.is_idle

    def test_state_change_callback(self, clock):
        seen = []
        sm = ControllerStateMachine("x", clock=clock, on_state_change=lambda n, a, b: seen.append((n, a, b)))
        sm.try_begin()
        sm.reset()
        assert seen == [
            ("x", ControllerState.IDLE, ControllerState.DECIDING),
            ("x", ControllerState.DECIDING, ControllerState.IDLE),
        ]


class TestRebalanceController:
    @pytest.fixture
    def reader(self):
        reader = MagicMock()
        reader.oracle_price = AsyncMock(return_value=1.00)
        reader.risk_profile = AsyncMock(return_value=1)
        reader.total_deposits = AsyncMock(return_value=500.0)
        reader.active_chain = AsyncMock(return_value="Arc")
        reader.chain_price = AsyncMock(return_value=1.02)
        return reader

    @pytest.fixture
    def controller(self, reader, clock):
        return RebalanceController(
            reader, mock_executor(), ADDRESSES, RebalanceConfig(user_address=USER, cooldown_sec=5), clock=clock
        )

    @pytest.mark.asyncio
    async def test_first_tick_initialises(self, controller):
        result = await controller.tick()
        assert result.reason == "initialised"
        controller.executor.execute.assert_not_awaited()
        assert controller.state is ControllerState.IDLE

    @pytest.mark.asyncio
    async def test_change_triggers_sync_then_rebalance(self, controller, reader):
        await controller.tick()
        reader.oracle_price = AsyncMock(return_value=0.98)
        result = await controller.tick()

        assert result.executed and result.sync_price == 1.02
        calls = controller.executor.execute.await_args_list
        assert calls[0].args == (ORACLE, "setPrice(uint256)", [1_020_000_000_000_000_000])
        assert calls[1].args == (VAULT, "rebalance()", [])
        assert calls[0].kwargs["timeout"] == 120.0
        assert controller.state is ControllerState.COOLDOWN
        assert controller.last_rebalanced == (0.98, 1)
        reader.risk_profile.assert_awaited_with(USER)

    @pytest.mark.asyncio
    async def test_identical_pair_after_rebalance_is_noop(self, controller, reader, clock):
        await controller.tick()
        reader.risk_profile = AsyncMock(return_value=2)
        assert (await controller.tick()).executed
        clock.advance(10)

        first = await controller.tick()
        second = await controller.tick()
        assert not first.executed and not second.executed
        assert controller.executor.execute.await_count == 2

    @pytest.mark.asyncio
    async def test_busy_during_cooldown(self, controller, reader):
        await controller.tick()
        reader.oracle_price = AsyncMock(return_value=0.97)
        await controller.tick()
        result = await controller.tick()
        assert result.reason == "busy:COOLDOWN"

    @pytest.mark.asyncio
    async def test_overlapping_ticks_never_both_execute(self, controller, reader):
        await controller.tick()
        reader.oracle_price = AsyncMock(return_value=0.95)
        release = asyncio.Event()

        async def slow_execute(*args, **kwargs):
            await release.wait()
            return receipt()

        controller.executor.execute = AsyncMock(side_effect=slow_execute)
        first = asyncio.create_task(controller.tick())
        await asyncio.sleep(0)
        second = await controller.tick()
        assert second.reason in ("busy:DECIDING", "busy:EXECUTING")
        release.set()
        assert (await first).executed
        assert controller.executor.execute.await_count == 2

    @pytest.mark.asyncio
    async def test_vault_empty_keeps_change_pending(self, controller, reader, clock):
        await controller.tick()
        reader.oracle_price = AsyncMock(return_value=0.99)
        reader.total_deposits = AsyncMock(return_value=0.0)
        assert (await controller.tick()).reason == "vault_empty"

        reader.total_deposits = AsyncMock(return_value=10.0)
        assert (await controller.tick()).executed

    @pytest.mark.asyncio
    async def test_failure_returns_to_idle_and_retries(self, controller, reader):
        bus = EventBus()
        controller.event_bus = bus
        await controller.tick()
        reader.oracle_price = AsyncMock(return_value=0.96)
        controller.executor.execute = AsyncMock(side_effect=[receipt(), ActionRevertedError("reverted")])

        with pytest.raises(ActionRevertedError):
            await controller.tick()
        assert controller.state is ControllerState.IDLE
        assert controller.last_rebalanced is None

        await bus.drain()
        assert len(bus.get_history(EventType.REBALANCE_FAILED)) == 1

        controller.executor.execute = AsyncMock(return_value=receipt("0x02"))
        result = await controller.tick()
        assert result.executed and result.tx_hash == "0x02"

    @pytest.mark.asyncio
    async def test_confirmation_timeout_is_a_failed_attempt(self, controller, reader):
        await controller.tick()
        reader.oracle_price = AsyncMock(return_value=0.9)
        controller.executor.execute = AsyncMock(side_effect=ConfirmationTimeoutError("slow"))
        with pytest.raises(ConfirmationTimeoutError):
            await controller.tick()
        assert controller.state is ControllerState.IDLE

    @pytest.mark.asyncio
    async def test_read_failure_resets(self, controller, reader):
        reader.oracle_price = AsyncMock(side_effect=RuntimeError("rpc"))
        with pytest.raises(RuntimeError):
            await controller.tick()
        assert controller.state is ControllerState.IDLE

    @pytest.mark.asyncio
    async def test_sync_price_fallbacks(self, reader, clock):
        reader.chain_price = AsyncMock(return_value=0.0)
        controller = RebalanceController(
            reader, mock_executor(), ADDRESSES,
            RebalanceConfig(user_address=USER, default_sync_price=1.0),
            overrides={"Arc": ChainOverride(default_sync_price=0.5)},
            clock=clock,
        )
        await controller.tick()
        reader.oracle_price = AsyncMock(return_value=0.9)
        assert (await controller.tick()).sync_price == 0.5

        reader.active_chain = AsyncMock(return_value="Base")
        reader.chain_price = AsyncMock(side_effect=RuntimeError("no price"))
        clock.advance(10)
        reader.oracle_price = AsyncMock(return_value=0.8)
        assert (await controller.tick()).sync_price == 1.0


class TestBestChainController:
    @pytest.fixture
    def reader(self):
        reader = MagicMock()
        reader.best_chain = AsyncMock(return_value="Arc")
        reader.active_chain = AsyncMock(return_value="Arc")
        return reader

    def make(self, reader, clock, executor=None, **cfg):
        return BestChainController(
            reader, executor, ADDRESSES, BestChainConfig(**cfg),
            deduper=NotificationDeduper(clock=clock), clock=clock,
        )

    @pytest.mark.asyncio
    async def test_first_poll_only_initialises(self, reader, clock):
        reader.best_chain = AsyncMock(return_value="Base")
        ctl = self.make(reader, clock, mock_executor())
        assert (await ctl.tick()).reason == "initialised"
        ctl.executor.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_notify_once_per_pair_without_executor(self, reader, clock):
        seen = []
        ctl = self.make(reader, clock)
        ctl.on_best_chain = lambda best, active: seen.append((best, active))
        await ctl.tick()
        reader.best_chain = AsyncMock(return_value="Base")
        r1 = await ctl.tick()
        r2 = await ctl.tick()
        assert r1.notified and r1.reason == "notify_only"
        assert not r2.notified
        assert seen == [("Base", "Arc")]

    @pytest.mark.asyncio
    async def test_renotifies_after_convergence(self, reader, clock):
        ctl = self.make(reader, clock)
        await ctl.tick()
        reader.best_chain = AsyncMock(return_value="Base")
        assert (await ctl.tick()).notified
        reader.active_chain = AsyncMock(return_value="Base")
        assert (await ctl.tick()).reason == "on_best_chain"
        reader.active_chain = AsyncMock(return_value="Arc")
        assert (await ctl.tick()).notified

    @pytest.mark.asyncio
    async def test_auto_switch_and_cooldown(self, reader, clock):
        bus = EventBus()
        ctl = self.make(reader, clock, mock_executor(), cooldown_sec=30)
        ctl.event_bus = bus
        await ctl.tick()
        reader.best_chain = AsyncMock(return_value="Base")
        result = await ctl.tick()
        assert result.switched
        ctl.executor.execute.assert_awaited_once_with(CROSS_CHAIN, "switchToBestChain()", [], timeout=120.0)
        assert ctl.state is ControllerState.COOLDOWN
        assert (await ctl.tick()).reason == "busy:COOLDOWN"

        await bus.drain()
        assert len(bus.get_history(EventType.BEST_CHAIN_CHANGED)) == 1
        assert len(bus.get_history(EventType.CHAIN_SWITCHED)) == 1

    @pytest.mark.asyncio
    async def test_auto_switch_disabled(self, reader, clock):
        ctl = self.make(reader, clock, mock_executor(), auto_switch=False)
        await ctl.tick()
        reader.best_chain = AsyncMock(return_value="Base")
        assert (await ctl.tick()).reason == "notify_only"
        ctl.executor.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_revert_suspends_auto_switch(self, reader, clock):
        ctl = self.make(reader, clock, mock_executor(), revert_backoff_sec=300)
        ctl.executor.execute = AsyncMock(side_effect=ActionRevertedError("no better chain"))
        await ctl.tick()
        reader.best_chain = AsyncMock(return_value="Base")
        with pytest.raises(ActionRevertedError):
            await ctl.tick()
        assert ctl.state is ControllerState.IDLE
        assert ctl.auto_switch_suspended

        assert (await ctl.tick()).reason == "notify_only"
        assert ctl.executor.execute.await_count == 1

        clock.advance(301)
        ctl.executor.execute = AsyncMock(return_value=receipt())
        assert (await ctl.tick()).switched

    @pytest.mark.asyncio
    async def test_timeout_retried_next_tick(self, reader, clock):
        ctl = self.make(reader, clock, mock_executor())
        ctl.executor.execute = AsyncMock(side_effect=[ConfirmationTimeoutError("slow"), receipt()])
        await ctl.tick()
        reader.best_chain = AsyncMock(return_value="Base")
        with pytest.raises(ConfirmationTimeoutError):
            await ctl.tick()
        assert not ctl.auto_switch_suspended
        assert (await ctl.tick()).switched


class TestOracleSyncController:
    @pytest.fixture
    def reader(self):
        reader = MagicMock()
        reader.active_chain = AsyncMock(return_value="Arc")
        reader.chain_price = AsyncMock(return_value=1.01)
        return reader

    @pytest.mark.asyncio
    async def test_syncs_once_per_active_chain(self, reader, clock):
        ctl = OracleSyncController(reader, mock_executor(), ADDRESSES, clock=clock)
        assert await ctl.tick() == 1.01
        ctl.executor.execute.assert_awaited_once_with(
            ORACLE, "setPrice(uint256)", [101 * ONE // 100], timeout=120.0
        )
        clock.advance(10)
        assert await ctl.tick() is None
        reader.active_chain = AsyncMock(return_value="Base")
        assert await ctl.tick() == 1.01
        assert ctl.last_synced_chain == "Base"

    @pytest.mark.asyncio
    async def test_zero_price_skipped(self, reader, clock):
        reader.chain_price = AsyncMock(return_value=0.0)
        ctl = OracleSyncController(reader, mock_executor(), ADDRESSES, clock=clock)
        assert await ctl.tick() is None
        ctl.executor.execute.assert_not_awaited()
        assert ctl.last_synced_chain is None

    @pytest.mark.asyncio
    async def test_failure_not_recorded(self, reader, clock):
        ctl = OracleSyncController(reader, mock_executor(), ADDRESSES, clock=clock)
        ctl.executor.execute = AsyncMock(side_effect=ActionRevertedError("bad price"))
        with pytest.raises(ActionRevertedError):
            await ctl.tick()
        assert ctl.last_synced_chain is None
        assert ctl.sm.state is ControllerState.IDLE
