"""
Cursor Store

The processed-block cursor for one monitored contract. Backed by the
projection store so that the cursor can be advanced inside the same
transaction as the domain writes for a block (see ProjectionWriter).

Invariant: after a crash, the persisted cursor never exceeds the highest
block whose events were all committed.
"""

from typing import Optional

from ..errors import CursorRegressionError
from ..observability import get_logger
from ..schemas import CursorState
from .store import ProjectionStore

logger = get_logger(__name__)


class CursorStore:
    """Read and advance the cursor outside of a writer transaction."""

    def __init__(self, store: ProjectionStore):
        self._store = store

    @property
    def stream(self) -> str:
        return self._store.stream

    async def ensure(self, initial: int = 0) -> CursorState:
        """Create the cursor at `initial` on first start; existing cursors are untouched."""
        return await self._store.ensure_cursor(initial)

    async def read(self) -> int:
        return await self._store.read_cursor()

    async def state(self) -> Optional[CursorState]:
        return await self._store.get_cursor()

    async def advance(self, new_height: int) -> int:
        """
        Move the cursor to new_height.

        Raises:
            CursorRegressionError: new_height is below the current value
        """
        if new_height < 0:
            raise CursorRegressionError(0, new_height)
        height = await self._store.advance_cursor(new_height)
        logger.debug("Cursor advanced", stream=self.stream, block=height)
        return height

    async def begin_window(self, from_block: int, to_block: int) -> None:
        """Record the bounds of the window about to be processed."""
        await self._store.mark_window(from_block, to_block)

    async def clear_window(self) -> None:
        await self._store.mark_window(None, None)
