"""
Tests for the Poller: window selection, state machine and failure handling.
"""

import asyncio
from dataclasses import replace

import pytest

from medsync.core.poller import Poller, PollerState
from medsync.core.writer import StopRequested
from medsync.errors import FatalRpcError, PersistenceError, TickBudgetExceeded, TransientRpcError

from conftest import (
    AllTopicsChain,
    FailingStore,
    FakeChain,
    history_log,
    inventory_log,
    staff_log,
    tx,
    unknown_log,
    wait_until,
)


@pytest.fixture
def poller(chain, store, config):
    return Poller(chain, store, config)


class TestWindowSelection:
    """The tick window is (cursor, min(safe_head, cursor + max_window)]."""

    async def test_cold_start_processes_everything(self, chain, store, poller):
        chain.head = 5
        chain.add(inventory_log(2, 0, index=1), history_log(3, 0, record_id=1), staff_log(5, 0))

        outcome = await poller.tick()

        assert chain.log_queries == [(1, 5)]
        assert outcome.fetched == 3
        assert outcome.applied == 3
        assert outcome.cursor == 5
        assert await store.read_cursor() == 5
        assert poller.state == PollerState.IDLE

    async def test_nothing_to_do(self, chain, store, poller):
        chain.head = 0

        assert await poller.tick() is None
        assert chain.log_queries == []
        assert poller.metrics.empty_ticks == 1

    async def test_caught_up(self, chain, store, poller):
        chain.head = 10
        await store.advance_cursor(10)

        assert await poller.tick() is None
        assert await store.read_cursor() == 10

    async def test_confirmations(self, chain, store, make_config):
        chain.head = 10
        poller = Poller(chain, store, make_config(confirmations=3))

        await poller.tick()

        assert chain.log_queries == [(1, 7)]
        assert await store.read_cursor() == 7

    async def test_head_within_confirmations_does_nothing(self, chain, store, make_config):
        chain.head = 2
        poller = Poller(chain, store, make_config(confirmations=3))

        assert await poller.tick() is None
        assert await store.read_cursor() == 0

    async def test_max_window(self, chain, store, make_config):
        chain.head = 20
        poller = Poller(chain, store, make_config(max_window_blocks=4))

        await poller.tick()
        await poller.tick()

        assert chain.log_queries == [(1, 4), (5, 8)]
        assert await store.read_cursor() == 8

    async def test_single_block_window(self, chain, store, poller):
        await store.advance_cursor(9)
        chain.head = 10
        chain.add(inventory_log(10, 0))

        outcome = await poller.tick()

        assert chain.log_queries == [(10, 10)]
        assert outcome.applied == 1
        assert await store.read_cursor() == 10

    async def test_node_narrowed_window(self, store, config):
        chain = FakeChain(head=100, max_window=10)
        poller = Poller(chain, store, config)

        outcome = await poller.tick()

        assert outcome.to_block == 10
        assert await store.read_cursor() == 10

    async def test_window_bounds_cleared_after_success(self, chain, store, poller):
        chain.head = 5
        await poller.tick()

        state = await store.get_cursor()
        assert not state.in_progress


class TestDecoding:
    """Bad and unknown logs never hold the cursor back."""

    async def test_malformed_log_is_skipped(self, chain, store, poller):
        chain.head = 5
        bad = replace(inventory_log(3, 0, index=9), data="0x")
        chain.add(inventory_log(2, 0, index=1), bad)

        outcome = await poller.tick()

        assert outcome.decode_failures == 1
        assert outcome.applied == 1
        assert poller.metrics.decode_failures == 1
        assert await store.get_inventory(9) is None
        assert await store.read_cursor() == 5

    async def test_unknown_logs_are_ignored(self, store, config):
        chain = AllTopicsChain(head=5)
        chain.add(unknown_log(2), inventory_log(3))
        poller = Poller(chain, store, config)

        outcome = await poller.tick()

        assert outcome.ignored == 1
        assert outcome.applied == 1
        assert poller.metrics.unknown_logs == 1


class TestFailures:
    """Errors leave the cursor where it was."""

    async def test_rpc_error_propagates_from_tick(self, chain, store, poller):
        chain.head = 5
        chain.fail_logs.append(TransientRpcError("connection reset"))

        with pytest.raises(TransientRpcError):
            await poller.tick()

        assert await store.read_cursor() == 0
        assert poller.metrics.failed_ticks == 1

    async def test_tick_budget(self, chain, store, make_config):
        chain.head = 5
        chain.logs_delay = 0.2
        poller = Poller(chain, store, make_config(tick_budget_ms=20))

        with pytest.raises(TickBudgetExceeded):
            await poller.tick()

        assert await store.read_cursor() == 0

    async def test_stop_before_decoding(self, chain, store, poller):
        chain.head = 5
        chain.add(inventory_log(2, 0))

        with pytest.raises(StopRequested):
            await poller.tick(should_stop=lambda: True)

        assert poller.state == PollerState.STOPPED
        assert await store.read_cursor() == 0
        assert await store.get_inventory(1) is None


class TestRun:
    """run() backs off on transient errors and stops on fatal ones."""

    async def test_transient_failure_then_recovery(self, chain, store, poller):
        chain.head = 5
        chain.add(inventory_log(3, 0))
        chain.fail_logs.extend([TransientRpcError("reset"), TransientRpcError("reset")])
        stop = asyncio.Event()

        task = asyncio.create_task(poller.run(stop))

        async def caught_up():
            return await store.read_cursor() == 5

        await wait_until(caught_up)
        stop.set()
        await asyncio.wait_for(task, 2)

        assert poller.state == PollerState.STOPPED
        assert poller.metrics.failed_ticks == 2
        assert poller.last_error is None
        assert len(await store.list_tx_records()) == 1

    async def test_fatal_failure(self, chain, poller):
        chain.head = 5
        chain.fail_head.append(FatalRpcError("invalid params", code=-32602))

        with pytest.raises(FatalRpcError):
            await asyncio.wait_for(poller.run(asyncio.Event()), 2)

        assert poller.state == PollerState.FAILED
        assert "invalid params" in poller.last_error

    async def test_repeated_rpc_failures_become_fatal(self, chain, store, make_config):
        chain.head = 5
        chain.fail_head.extend(TransientRpcError("connection reset") for _ in range(3))
        poller = Poller(chain, store, make_config(rpc_max_attempts=3))

        with pytest.raises(FatalRpcError) as exc:
            await asyncio.wait_for(poller.run(asyncio.Event()), 2)

        assert isinstance(exc.value.__cause__, TransientRpcError)
        assert poller.state == PollerState.FAILED
        assert poller.metrics.failed_ticks == 3
        assert "3 consecutive ticks" in poller.last_error

    async def test_budget_overruns_on_rpc_become_fatal(self, chain, store, make_config):
        chain.head = 5
        chain.logs_delay = 10
        poller = Poller(chain, store, make_config(tick_budget_ms=20, max_tick_failures=10))

        with pytest.raises(FatalRpcError) as exc:
            await asyncio.wait_for(poller.run(asyncio.Event()), 2)

        assert isinstance(exc.value.__cause__, TickBudgetExceeded)
        assert exc.value.__cause__.during_rpc
        assert poller.metrics.failed_ticks == 6
        assert await store.read_cursor() == 0

    async def test_success_resets_rpc_failure_count(self, chain, store, make_config):
        chain.head = 5
        chain.fail_head.extend([TransientRpcError("reset"), TransientRpcError("reset")])
        poller = Poller(chain, store, make_config(rpc_max_attempts=3))
        stop = asyncio.Event()
        task = asyncio.create_task(poller.run(stop))

        async def at(block):
            return await store.read_cursor() == block

        await wait_until(lambda: at(5))
        chain.head = 8
        chain.fail_head.extend([TransientRpcError("reset"), TransientRpcError("reset")])
        await wait_until(lambda: at(8))
        stop.set()
        await asyncio.wait_for(task, 2)

        assert poller.state == PollerState.STOPPED
        assert poller.metrics.failed_ticks == 4

    async def test_persistent_write_failures_propagate(self, chain, make_config):
        store = FailingStore({(tx(3000), 0)}, times=10)
        chain.head = 5
        chain.add(inventory_log(3, 0))
        poller = Poller(chain, store, make_config(max_tick_failures=2))

        with pytest.raises(PersistenceError):
            await asyncio.wait_for(poller.run(asyncio.Event()), 2)

        assert poller.state == PollerState.BACKOFF
        assert poller.metrics.failed_ticks == 2
        assert "simulated write failure" in poller.last_error
        assert await store.read_cursor() == 0

    async def test_keeps_following_head(self, chain, store, poller):
        chain.head = 5
        stop = asyncio.Event()
        task = asyncio.create_task(poller.run(stop))

        async def at(block):
            return await store.read_cursor() == block

        await wait_until(lambda: at(5))
        chain.head = 8
        chain.add(inventory_log(7, 0))
        await wait_until(lambda: at(8))
        stop.set()
        await asyncio.wait_for(task, 2)

        assert store.cursor_history == sorted(store.cursor_history)
        assert await store.get_inventory(1) is not None

    async def test_stop_before_start(self, poller):
        stop = asyncio.Event()
        stop.set()

        await poller.run(stop)

        assert poller.state == PollerState.STOPPED
