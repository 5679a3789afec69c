"""
Backfill Driver

One-shot scan from a caller-supplied block to the safe head, in bounded
windows, using the same fetch/decode/apply path as the Poller.

Backfill never regresses the cursor. Replaying blocks at or below the
cursor is safe: every event is deduplicated on (tx_hash, log_index), and
the writer only advances the cursor for units contiguous with it.
"""

from dataclasses import dataclass
from typing import Callable, Optional

from ..config import SyncConfig
from ..observability import SyncMetrics, get_logger, window_var
from ..db.cursor import CursorStore
from ..db.store import ProjectionStore
from .decoder import EventDecoder
from .rpc import RpcClient
from .window import WindowProcessor
from .writer import ProjectionWriter, StopRequested

logger = get_logger(__name__)


@dataclass
class BackfillResult:
    from_block: int
    to_block: int
    windows: int = 0
    fetched: int = 0
    applied: int = 0
    duplicates: int = 0
    decode_failures: int = 0
    cursor: Optional[int] = None
    interrupted: bool = False


class BackfillDriver:
    """
    Usage:
        driver = BackfillDriver(rpc, store, config)
        result = await driver.backfill(0)
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
        self.processor = WindowProcessor(
            rpc,
            ProjectionWriter(store, self.metrics),
            config.checksum_address,
            decoder=decoder,
            metrics=self.metrics,
        )

    async def backfill(
        self,
        from_block: int,
        to_block: Optional[int] = None,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> BackfillResult:
        """
        Scan [from_block, min(to_block, safe_head)].

        Returns:
            Totals for the run; `interrupted` is set when should_stop()
            ended it early.

        Raises:
            ValueError: from_block is negative
            RpcError / PersistenceError: from the layers below
        """
        if from_block < 0:
            raise ValueError(f"from_block must be >= 0, got {from_block}")

        await self.cursor.ensure(self.config.initial_cursor)

        head = await self.rpc.head_block()
        self.metrics.head_block = head
        end = head - self.config.confirmations
        if to_block is not None:
            end = min(end, to_block)

        result = BackfillResult(from_block=from_block, to_block=end)
        logger.info(
            "Backfill started",
            from_block=from_block,
            to_block=end,
            cursor=await self.cursor.read(),
        )

        start = from_block
        while start <= end:
            if should_stop is not None and should_stop():
                result.interrupted = True
                break

            window_end = min(end, start + self.config.max_window_blocks - 1)
            token = window_var.set(f"{start}-{window_end}")
            try:
                outcome = await self.processor.process(start, window_end, should_stop=should_stop)
            except StopRequested:
                result.interrupted = True
                break
            finally:
                window_var.reset(token)

            result.windows += 1
            result.fetched += outcome.fetched
            result.applied += outcome.applied
            result.duplicates += outcome.duplicates
            result.decode_failures += outcome.decode_failures
            start = outcome.to_block + 1

        result.cursor = await self.cursor.read()
        logger.info(
            "Backfill finished",
            windows=result.windows,
            applied=result.applied,
            duplicates=result.duplicates,
            cursor=result.cursor,
            interrupted=result.interrupted,
        )
        return result
