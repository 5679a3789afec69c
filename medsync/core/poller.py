"""
Poller

The synchronizer's control loop.

STATE MACHINE:
    IDLE -> FETCHING -> DECODING -> WRITING -> IDLE    (success)
    any  -> BACKOFF -> IDLE                            (transient failure)
    any  -> FAILED                                     (fatal failure)
    BACKOFF x max_tick_failures -> error propagates    (Supervisor restarts)
    any  -> STOPPED                                    (stop requested)

TICK:
    1. head = head_block(); safe_head = head - confirmations
    2. if safe_head <= cursor: nothing to do
    3. window = (cursor, min(safe_head, cursor + max_window_blocks)]
    4. fetch, decode, apply; the writer advances the cursor per block

Ticks are strictly serial. A stop request is honored between steps and
between block units, never in the middle of a write.
"""

import asyncio
import time
from enum import Enum
from typing import Callable, Optional
from uuid import uuid4

from ..config import SyncConfig
from ..errors import FatalRpcError, is_rpc_failure, is_transient
from ..observability import SyncMetrics, get_logger, tick_id_var, window_var
from ..db.cursor import CursorStore
from ..db.store import ProjectionStore
from .decoder import EventDecoder
from .rpc import RetryPolicy, RpcClient
from .window import Deadline, WindowOutcome, WindowProcessor
from .writer import ProjectionWriter, StopRequested

logger = get_logger(__name__)


class PollerState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    DECODING = "decoding"
    WRITING = "writing"
    BACKOFF = "backoff"
    FAILED = "failed"
    STOPPED = "stopped"


class Poller:
    """
    Fixed-cadence poller for one (rpc, contract) pair.

    Usage:
        poller = Poller(rpc, store, config)
        await poller.tick()              # one window
        await poller.run(stop_event)     # until stopped or fatal
    """

    def __init__(
        self,
        rpc: RpcClient,
        store: ProjectionStore,
        config: SyncConfig,
        *,
        decoder: Optional[EventDecoder] = None,
        metrics: Optional[SyncMetrics] = None,
    ):
        self.rpc = rpc
        self.store = store
        self.config = config
        self.metrics = metrics or SyncMetrics()
        self.cursor = CursorStore(store)
        self.writer = ProjectionWriter(store, self.metrics)
        self.processor = WindowProcessor(
            rpc,
            self.writer,
            config.checksum_address,
            decoder=decoder,
            metrics=self.metrics,
            cursor=self.cursor,
        )
        self._backoff = RetryPolicy.from_config(config)
        self._state = PollerState.IDLE
        self._consecutive_failures = 0
        self._rpc_failures = 0
        self.last_error: Optional[str] = None

    @property
    def state(self) -> PollerState:
        return self._state

    def _set_state(self, state) -> None:
        self._state = PollerState(state)

    async def tick(self, should_stop: Optional[Callable[[], bool]] = None) -> Optional[WindowOutcome]:
        """
        Run one tick.

        Returns:
            The window outcome, or None if there was nothing to do.

        Raises:
            Whatever the layers below raise; run() classifies it.
        """
        tick_token = tick_id_var.set(uuid4().hex)
        window_token = window_var.set("")
        started = time.monotonic()
        deadline = Deadline(self.config.tick_budget)
        try:
            self._set_state(PollerState.FETCHING)
            head = await deadline.bound(self.rpc.head_block(), "head_block")
            self.metrics.head_block = head
            safe_head = head - self.config.confirmations

            cursor = await self.cursor.read()
            self.metrics.last_block = cursor
            if safe_head <= cursor:
                logger.debug("No new blocks", head=head, safe_head=safe_head, cursor=cursor)
                self._set_state(PollerState.IDLE)
                self.metrics.record_tick(_elapsed_ms(started), empty=True)
                return None

            from_block = cursor + 1
            to_block = min(safe_head, cursor + self.config.max_window_blocks)
            window_var.set(f"{from_block}-{to_block}")

            outcome = await self.processor.process(
                from_block,
                to_block,
                deadline=deadline,
                should_stop=should_stop,
                on_stage=self._set_state,
            )
            self._set_state(PollerState.IDLE)
            self.metrics.record_tick(_elapsed_ms(started), empty=outcome.fetched == 0)
            return outcome
        except StopRequested:
            self._set_state(PollerState.STOPPED)
            raise
        except Exception:
            self.metrics.record_tick(_elapsed_ms(started), failed=True)
            raise
        finally:
            window_var.reset(window_token)
            tick_id_var.reset(tick_token)

    async def run(self, stop_event: asyncio.Event) -> None:
        """
        Tick at the configured cadence until stop_event is set.

        Transient failures back off and the next tick retries the same
        window. After max_tick_failures in a row the last error propagates
        so the Supervisor can restart the loop. Failures caused by the node
        count separately and become FatalRpcError after rpc_max_attempts;
        only a successful tick resets that count. Fatal failures leave the
        poller FAILED and propagate.
        """
        logger.info(
            "Poller started",
            contract=self.config.checksum_address,
            poll_interval_s=self.config.poll_interval,
            confirmations=self.config.confirmations,
        )
        self._set_state(PollerState.IDLE)
        while not stop_event.is_set():
            started = time.monotonic()
            try:
                await self.tick(should_stop=stop_event.is_set)
                self._consecutive_failures = 0
                self._rpc_failures = 0
                self.last_error = None
                wait = max(self.config.poll_interval - (time.monotonic() - started), 0.0)
            except StopRequested:
                break
            except Exception as e:
                self.last_error = f"{type(e).__name__}: {e}"
                if not is_transient(e):
                    self._set_state(PollerState.FAILED)
                    logger.error("Poller failed", error=self.last_error)
                    raise

                self._consecutive_failures += 1
                if is_rpc_failure(e):
                    self._rpc_failures += 1
                    if self._rpc_failures >= self.config.rpc_max_attempts:
                        self._set_state(PollerState.FAILED)
                        fatal = FatalRpcError(
                            f"RPC failed on {self._rpc_failures} consecutive ticks (last: {self.last_error})"
                        )
                        self.last_error = f"FatalRpcError: {fatal}"
                        logger.error("RPC retries exhausted", error=self.last_error)
                        raise fatal from e

                self._set_state(PollerState.BACKOFF)
                if self._consecutive_failures >= self.config.max_tick_failures:
                    logger.warning(
                        "Too many failed ticks, handing over to supervisor",
                        error=self.last_error,
                        failures=self._consecutive_failures,
                    )
                    self._consecutive_failures = 0
                    raise

                wait = self._backoff.delay(self._consecutive_failures - 1)
                logger.warning(
                    "Tick failed, backing off",
                    error=self.last_error,
                    failures=self._consecutive_failures,
                    wait_s=round(wait, 3),
                )

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=wait)
            except asyncio.TimeoutError:
                pass
            if self._state == PollerState.BACKOFF:
                self._set_state(PollerState.IDLE)

        self._set_state(PollerState.STOPPED)
        logger.info("Poller stopped", cursor=self.metrics.last_block)


def _elapsed_ms(started: float) -> float:
    return (time.monotonic() - started) * 1000
