"""
Tests for the Supervisor lifecycle and health snapshot.
"""

import asyncio
import logging

from medsync.core.poller import PollerState
from medsync.core.rpc import HttpxRpcClient
from medsync.core.supervisor import Supervisor
from medsync.db import InMemoryProjectionStore
from medsync.errors import FatalError, FatalRpcError, TickBudgetExceeded

from conftest import FailingStore, inventory_log, tx, wait_until


async def cursor_at(store, block):
    return await store.read_cursor() == block


class TestLifecycle:
    """start() launches the poller, stop() drains it and closes handles."""

    async def test_start_and_stop(self, chain, store, config):
        chain.head = 5
        chain.add(inventory_log(3, 0))
        sup = Supervisor(config, chain, store)

        await sup.start()
        assert sup.running
        await wait_until(lambda: cursor_at(store, 5))
        await sup.stop()

        assert not sup.running
        assert not sup.failed
        assert sup.poller.state == PollerState.STOPPED
        assert chain.closed
        assert store.closed

    async def test_stop_twice(self, chain, store, config):
        sup = Supervisor(config, chain, store)
        await sup.start()
        await sup.stop()
        await sup.stop()

        assert not sup.running

    async def test_start_creates_cursor_from_start_block(self, chain, store, make_config):
        sup = Supervisor(make_config(start_block=50), chain, store)

        await sup.start()
        await sup.stop()

        state = await store.get_cursor()
        assert state.last_processed_block == 49

    async def test_start_keeps_existing_cursor(self, chain, store, make_config):
        await store.advance_cursor(300)
        sup = Supervisor(make_config(start_block=50), chain, store)

        await sup.start()
        await sup.stop()

        assert await store.read_cursor() == 300

    async def test_resume_logs_interrupted_window(self, chain, store, config, caplog):
        await store.ensure_cursor(100)
        await store.mark_window(101, 150)
        sup = Supervisor(config, chain, store)

        with caplog.at_level(logging.INFO, logger="medsync.core.supervisor"):
            await sup.start()
            await sup.stop()

        assert "Resuming after interrupted window" in caplog.text

    async def test_grace_exceeded_cancels(self, chain, store, make_config):
        chain.head = 5
        chain.logs_delay = 10
        sup = Supervisor(make_config(shutdown_grace_ms=50), chain, store)
        await sup.start()

        async def fetching():
            return sup.poller.state == PollerState.FETCHING

        await wait_until(fetching)
        await asyncio.wait_for(sup.stop(), 2)

        assert not sup.running
        assert chain.closed
        assert await store.read_cursor() == 0

    async def test_from_config_memory_store(self, config):
        sup = await Supervisor.from_config(config, store_driver="memory")

        assert isinstance(sup.rpc, HttpxRpcClient)
        assert isinstance(sup.store, InMemoryProjectionStore)
        assert sup.store.stream == config.stream
        await sup.stop()


class TestFailures:
    """Fatal errors stop the supervisor; repeated transient ones restart the poller."""

    async def test_fatal_error(self, chain, store, config):
        chain.fail_head.append(FatalRpcError("invalid params", code=-32602))
        sup = Supervisor(config, chain, store)

        await sup.start()
        await asyncio.wait_for(sup.wait(), 2)

        assert sup.failed
        assert isinstance(sup.fatal_error, FatalRpcError)
        assert isinstance(sup.fatal_error, FatalError)
        assert not sup.running
        health = sup.health()
        assert health["state"] == "failed"
        assert "invalid params" in health["last_error"]
        await sup.stop()

    async def test_repeated_transient_failures_restart_the_poller(self, chain, make_config):
        store = FailingStore({(tx(3000), 0)}, times=2)
        chain.head = 5
        chain.add(inventory_log(3, 0))
        sup = Supervisor(make_config(max_tick_failures=2), chain, store)

        await sup.start()
        await wait_until(lambda: cursor_at(store, 5))
        await sup.stop()

        assert sup.metrics.restarts == 1
        assert sup.poller.metrics.failed_ticks == 2
        assert not sup.failed
        assert sup.health()["last_error"] is None
        assert await store.get_inventory(1) is not None

    async def test_persistent_rpc_timeouts_become_fatal(self, chain, store, make_config):
        chain.head = 5
        chain.logs_delay = 10
        sup = Supervisor(make_config(tick_budget_ms=20), chain, store)

        await sup.start()
        await asyncio.wait_for(sup.wait(), 3)

        assert sup.failed
        assert isinstance(sup.fatal_error, FatalRpcError)
        assert isinstance(sup.fatal_error.__cause__, TickBudgetExceeded)
        assert sup.metrics.restarts == 1
        health = sup.health()
        assert health["running"] is False
        assert health["state"] == "failed"
        assert "6 consecutive ticks" in health["last_error"]
        assert await store.read_cursor() == 0
        await sup.stop()


class TestHealth:
    """health() reports cached values only."""

    async def test_snapshot(self, chain, store, config):
        chain.head = 8
        sup = Supervisor(config, chain, store)

        await sup.start()
        await wait_until(lambda: cursor_at(store, 8))
        health = sup.health()
        await sup.stop()

        assert set(health) == {"running", "state", "last_block", "head_block", "lag", "last_error"}
        assert health["running"] is True
        assert health["last_block"] == 8
        assert health["head_block"] == 8
        assert health["lag"] == 0
        assert health["last_error"] is None

    async def test_lag(self, chain, store, make_config):
        chain.head = 20
        sup = Supervisor(make_config(confirmations=5), chain, store)

        await sup.start()
        await wait_until(lambda: cursor_at(store, 15))
        await sup.stop()

        assert sup.health()["lag"] == 5
