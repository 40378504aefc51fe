"""
Tests for service wiring and loop supervision.
"""
import asyncio
import dataclasses
import os

import pytest
from unittest.mock import AsyncMock, MagicMock

from vaultsync.app import Supervisor, announce, build_service
from vaultsync.config.config import Settings
from vaultsync.core.event_bus import EventBus, EventType
from vaultsync.ledger.reconciler import ChainBalance
from vaultsync.ledger.reconciliation_service import BalanceSnapshot
from vaultsync.watchers.polling import PollingConfig, PollingLoop

TEST_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"


@pytest.fixture
def settings(monkeypatch, tmp_path):
    for key in list(os.environ):
        if key.startswith("VS_"):
            monkeypatch.delenv(key, raising=False)
    chains = tmp_path / "chains.yaml"
    chains.write_text("Optimism:\n  enabled: false\n")
    monkeypatch.setenv("VS_CHAIN_CONFIG", str(chains))
    monkeypatch.setenv("VS_LOG_FILE", "")
    return Settings.load()


@pytest.fixture
def rpc():
    rpc = MagicMock()
    rpc.close = AsyncMock()
    return rpc


def loop_names(service):
    return [loop.name for loop in service.supervisor.loops]


class TestBuildService:
    def test_read_only_without_key(self, settings, rpc):
        service = build_service(settings, rpc=rpc)
        assert service.executor is None
        assert service.rebalance is None and service.oracle_sync is None
        assert loop_names(service) == ["reconcile", "mode", "best_chain", "active_chain"]
        assert service.reconciliation.cfg.excluded_chains == ("Optimism",)

    def test_signing_enables_controllers(self, settings, rpc):
        cfg = dataclasses.replace(settings, private_key=TEST_KEY)
        executor = MagicMock()
        service = build_service(cfg, rpc=rpc, executor=executor)
        assert service.rebalance is not None and service.oracle_sync is not None
        assert service.best_chain.executor is executor
        assert loop_names(service) == ["reconcile", "mode", "best_chain", "active_chain", "rebalance", "oracle_sync"]

    def test_feature_flags(self, settings, rpc):
        cfg = dataclasses.replace(settings, private_key=TEST_KEY, auto_switch=False, oracle_sync=False)
        service = build_service(cfg, rpc=rpc, executor=MagicMock())
        assert service.best_chain.executor is None
        assert service.oracle_sync is None
        assert "oracle_sync" not in loop_names(service)

    def test_status_before_and_after_snapshot(self, settings, rpc):
        service = build_service(settings, rpc=rpc)
        status = service.status()
        assert status["balances"] == [] and status["total"] is None
        assert status["controllers"] == {"best_chain": "IDLE"}

        service.reconciliation._snapshot = BalanceSnapshot(
            balances=(ChainBalance("Arc", 75.0, 75.0), ChainBalance("Base", 25.0, 25.0)),
            total=100.0,
            active_chain="Arc",
        )
        status = service.status()
        assert status["total"] == 100.0
        assert status["balances"][1] == {"chain": "Base", "balance": 25.0, "percentage": 25.0}
        assert status["auto_switch_suspended"] is False

    @pytest.mark.asyncio
    async def test_active_chain_change_announced(self, settings, rpc):
        bus = EventBus()
        service = build_service(settings, rpc=rpc, event_bus=bus)
        service.reader.active_chain = AsyncMock(side_effect=["Base", "Arc"])
        service.active_chain_watcher.read_value = service.reader.active_chain
        await service.active_chain_watcher.poll_once()
        assert await service.active_chain_watcher.poll_once()
        await bus.drain()
        (event,) = bus.get_history(EventType.SIGNAL_CHANGED)
        assert event.data == {"signal": "active_chain", "previous": "Base", "current": "Arc"}


class TestSupervisor:
    @pytest.mark.asyncio
    async def test_start_and_stop_all(self):
        ticks = AsyncMock()
        loops = [
            PollingLoop(name, ticks, PollingConfig(interval_sec=0.01, initial_delay_sec=0))
            for name in ("a", "b")
        ]
        bus = EventBus()
        sup = Supervisor(loops, bus)
        await sup.start()
        assert [t.get_name() for t in sup.tasks] == ["vs:event_bus", "vs:a", "vs:b"]
        await asyncio.sleep(0.05)
        assert sup.running
        assert ticks.await_count >= 2

        await sup.stop()
        assert not sup.running
        assert all(t.done() for t in sup.tasks)
        assert not any(loop.running for loop in loops)

    @pytest.mark.asyncio
    async def test_run_cancelled_together(self):
        loop = PollingLoop("slow", AsyncMock(), PollingConfig(interval_sec=60, initial_delay_sec=0))
        sup = Supervisor([loop])
        task = asyncio.create_task(sup.run())
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert not sup.running

    @pytest.mark.asyncio
    async def test_service_close(self, settings, rpc):
        service = build_service(settings, rpc=rpc)
        await service.supervisor.start()
        await announce(service.event_bus, EventType.SERVICE_STARTED, read_only=True)
        await service.close()
        assert not service.supervisor.running
        rpc.close.assert_awaited_once()
        assert service.event_bus.get_history(EventType.SERVICE_STARTED)[0].source == "service"
