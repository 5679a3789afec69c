"""
Supervisor

Owns the lifecycle of one synchronizer instance (one rpc endpoint, one
contract). There is no process-wide singleton: callers build a Supervisor
and pass it to whatever needs it (CLI, health endpoint, tests).

USAGE:
    supervisor = await Supervisor.from_config(config)
    await supervisor.start()
    supervisor.install_signal_handlers()
    await supervisor.wait()
    await supervisor.stop()

RESTART POLICY:
    max_tick_failures transient errors in a row -> wait restart_delay, restart
    fatal error                                 -> stop, surface via health()
"""

import asyncio
import signal
from typing import Optional

from ..config import SyncConfig
from ..errors import is_transient
from ..observability import SyncMetrics, get_logger
from ..db.cursor import CursorStore
from ..db.store import ProjectionStore, open_store
from .decoder import EventDecoder
from .poller import Poller, PollerState
from .rpc import HttpxRpcClient, RpcClient

logger = get_logger(__name__)


class Supervisor:
    """Start, stop and watch a Poller."""

    def __init__(
        self,
        config: SyncConfig,
        rpc: RpcClient,
        store: ProjectionStore,
        *,
        metrics: Optional[SyncMetrics] = None,
        decoder: Optional[EventDecoder] = None,
    ):
        self.config = config
        self.rpc = rpc
        self.store = store
        self.metrics = metrics or SyncMetrics()
        self.cursor = CursorStore(store)
        self.poller = Poller(rpc, store, config, decoder=decoder, metrics=self.metrics)

        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._closed = False
        self.fatal_error: Optional[BaseException] = None
        self.last_error: Optional[str] = None

    @classmethod
    async def from_config(cls, config: SyncConfig, *, store_driver=None, db_config=None) -> "Supervisor":
        """Build the RPC adapter and projection store from configuration."""
        metrics = SyncMetrics()
        rpc = HttpxRpcClient.from_config(config, metrics=metrics)
        try:
            store = await open_store(config.stream, store_driver, db_config)
        except BaseException:
            await rpc.close()
            raise
        return cls(config, rpc, store, metrics=metrics)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Create the cursor if needed and launch the poller task."""
        if self.running:
            logger.warning("Supervisor already running")
            return

        state = await self.cursor.ensure(self.config.initial_cursor)
        self.metrics.last_block = state.last_processed_block
        if state.in_progress:
            logger.info(
                "Resuming after interrupted window",
                window_from=state.window_from,
                window_to=state.window_to,
                cursor=state.last_processed_block,
            )

        self.fatal_error = None
        self.last_error = None
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name="medsync-supervisor")
        logger.info(
            "Supervisor started",
            contract=self.config.checksum_address,
            cursor=state.last_processed_block,
        )

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.poller.run(self._stop_event)
                return
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = f"{type(e).__name__}: {e}"
                if not is_transient(e):
                    self.fatal_error = e
                    self.last_error = error
                    logger.error("Fatal error, supervisor stopping", error=error)
                    return

                self.metrics.restarts += 1
                logger.warning(
                    "Poller crashed, restarting",
                    error=error,
                    delay_s=self.config.restart_delay,
                )
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.config.restart_delay)
                except asyncio.TimeoutError:
                    pass

    def request_stop(self) -> None:
        """Ask the poller to exit at its next safe point. Safe from signal handlers."""
        if self._stop_event is not None and not self._stop_event.is_set():
            logger.info("Stop requested")
            self._stop_event.set()

    async def wait(self) -> None:
        """Wait until the poller task ends (stop requested or fatal error)."""
        if self._task is not None:
            await asyncio.shield(self._task)

    async def stop(self) -> None:
        """
        Graceful shutdown.

        Stop scheduling ticks, wait for the in-flight tick up to
        shutdown_grace, then close the RPC and persistence handles.
        """
        self.request_stop()
        if self._task is not None and not self._task.done():
            try:
                await asyncio.wait_for(asyncio.shield(self._task), timeout=self.config.shutdown_grace)
            except asyncio.TimeoutError:
                logger.warning(
                    "In-flight tick exceeded shutdown grace, cancelling",
                    grace_s=self.config.shutdown_grace,
                )
                self._task.cancel()
                try:
                    await self._task
                except asyncio.CancelledError:
                    pass

        if not self._closed:
            self._closed = True
            await self.rpc.close()
            await self.store.close()
            logger.info("Supervisor stopped", cursor=self.metrics.last_block)

    def install_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """Route SIGINT/SIGTERM to request_stop()."""
        loop = loop or asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except NotImplementedError:
                # Windows event loops do not support signal handlers
                signal.signal(sig, lambda *_: loop.call_soon_threadsafe(self.request_stop))

    def health(self) -> dict:
        """
        Cached health snapshot. Never touches the network.

        Returns:
            {running, state, last_block, head_block, lag, last_error}
        """
        last_error = self.last_error or self.poller.last_error
        return {
            "running": self.running,
            "state": self.poller.state.value,
            "last_block": self.metrics.last_block,
            "head_block": self.metrics.head_block,
            "lag": self.metrics.lag,
            "last_error": last_error,
        }

    @property
    def failed(self) -> bool:
        return self.fatal_error is not None or self.poller.state == PollerState.FAILED
