"""
Window Processing

Fetch -> decode -> apply for one block window. Shared by the Poller (one
window per tick) and the Backfill Driver (many windows, no cadence).
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from ..errors import TickBudgetExceeded
from ..observability import SyncMetrics, get_logger
from ..db.cursor import CursorStore
from .decoder import EventDecoder
from .rpc import RpcClient
from .writer import ProjectionWriter, StopRequested

logger = get_logger(__name__)

T = TypeVar("T")


class Deadline:
    """Total time budget for a tick, checked at well-defined checkpoints."""

    def __init__(self, budget_s: Optional[float], clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self.budget_s = budget_s
        self._expires_at = None if budget_s is None else clock() + budget_s

    def remaining(self) -> Optional[float]:
        if self._expires_at is None:
            return None
        return max(self._expires_at - self._clock(), 0.0)

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def check(self, checkpoint: str) -> None:
        if self.expired:
            raise TickBudgetExceeded(f"Tick budget of {self.budget_s}s exceeded at {checkpoint}")

    async def bound(self, awaitable: Awaitable[T], checkpoint: str) -> T:
        """Await with the remaining budget as timeout. Only used for RPC calls."""
        remaining = self.remaining()
        if remaining is None:
            return await awaitable
        try:
            return await asyncio.wait_for(awaitable, timeout=remaining)
        except asyncio.TimeoutError:
            raise TickBudgetExceeded(
                f"Tick budget of {self.budget_s}s exceeded during {checkpoint}",
                during_rpc=True,
            ) from None


NO_DEADLINE = Deadline(None)


@dataclass
class WindowOutcome:
    """What one window did."""
    from_block: int
    to_block: int
    fetched: int = 0
    decoded: int = 0
    ignored: int = 0
    decode_failures: int = 0
    applied: int = 0
    duplicates: int = 0
    cursor: Optional[int] = None


class WindowProcessor:
    """
    Runs one window through the RPC adapter, the decoder and the writer.

    on_stage, when given, is called with "fetching", "decoding" and
    "writing" as the window moves through the pipeline.
    """

    def __init__(
        self,
        rpc: RpcClient,
        writer: ProjectionWriter,
        address: str,
        *,
        decoder: Optional[EventDecoder] = None,
        metrics: Optional[SyncMetrics] = None,
        cursor: Optional[CursorStore] = None,
    ):
        self.rpc = rpc
        self.writer = writer
        self.address = address
        self.decoder = decoder or EventDecoder()
        self.metrics = metrics or writer.metrics
        self.cursor = cursor

    async def process(
        self,
        from_block: int,
        to_block: int,
        *,
        deadline: Deadline = NO_DEADLINE,
        should_stop: Optional[Callable[[], bool]] = None,
        on_stage: Optional[Callable[[str], None]] = None,
    ) -> WindowOutcome:
        """
        Process [from_block, to_block]. The RPC adapter may narrow the upper
        bound; the outcome reports the range actually covered.

        Raises:
            StopRequested: should_stop() was True at a checkpoint
            TickBudgetExceeded: the deadline passed at a checkpoint
            RpcError / PersistenceError: from the layers below
        """
        def stage(name: str) -> None:
            if on_stage is not None:
                on_stage(name)

        def checkpoint(name: str) -> None:
            if should_stop is not None and should_stop():
                raise StopRequested(f"Stopped before {name}")
            deadline.check(name)

        stage("fetching")
        batch = await deadline.bound(
            self.rpc.logs(self.address, self.decoder.topic_filter(), from_block, to_block),
            "log fetch",
        )
        outcome = WindowOutcome(
            from_block=from_block,
            to_block=batch.to_block,
            fetched=len(batch.logs),
        )
        if self.cursor is not None:
            await self.cursor.begin_window(from_block, batch.to_block)
        checkpoint("decoding")

        stage("decoding")
        decoded = self.decoder.decode_batch(batch.logs)
        outcome.decoded = len(decoded.events)
        outcome.ignored = decoded.ignored
        outcome.decode_failures = len(decoded.failures)
        self.metrics.decode_failures += outcome.decode_failures
        self.metrics.unknown_logs += outcome.ignored
        checkpoint("writing")

        stage("writing")

        def interrupted() -> bool:
            if should_stop is not None and should_stop():
                return True
            return deadline.expired

        try:
            result = await self.writer.apply(
                decoded.events,
                batch.to_block,
                lower_block=from_block,
                should_stop=interrupted,
            )
        except StopRequested as e:
            if deadline.expired:
                raise TickBudgetExceeded(
                    f"Tick budget of {deadline.budget_s}s exceeded while writing"
                ) from e
            raise

        outcome.applied = result.applied
        outcome.duplicates = result.duplicates
        outcome.cursor = result.cursor
        if self.cursor is not None:
            await self.cursor.clear_window()

        logger.info(
            "Window processed",
            from_block=from_block,
            to_block=batch.to_block,
            fetched=outcome.fetched,
            applied=outcome.applied,
            duplicates=outcome.duplicates,
            ignored=outcome.ignored,
            decode_failures=outcome.decode_failures,
            cursor=outcome.cursor,
        )
        return outcome
