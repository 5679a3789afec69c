"""
Synchronizer Errors

Every failure the synchronizer can raise derives from SyncError.

Each class carries a `transient` flag:
- transient=True  -> the Poller backs off and the next tick retries the window
- transient=False -> the Poller stops and the Supervisor surfaces the error

Recovery policy (enforced by the callers, not here):
- TransientRpcError is retried with backoff inside the RPC adapter, and
  becomes FatalRpcError after rpc_max_attempts consecutive failed ticks
- DecodeError is logged and the log is skipped
- a duplicate (tx_hash, log_index) is not an error: the claim reports it
- everything else aborts the batch without advancing the cursor
"""

from typing import Optional


class SyncError(Exception):
    """Base exception for synchronizer errors."""
    transient = False


class FatalError(SyncError):
    """Unrecoverable failure propagated to the Supervisor."""
    pass


# ============================================================
# CONFIGURATION
# ============================================================

class ConfigError(SyncError):
    """Raised when configuration is invalid. Fatal at startup."""
    pass


class MissingConfigError(ConfigError):
    """Raised when a required configuration option is absent."""

    def __init__(self, option: str):
        self.option = option
        super().__init__(f"Missing required configuration: {option}")


# ============================================================
# RPC
# ============================================================

class RpcError(SyncError):
    """Base exception for chain RPC failures."""

    def __init__(self, message: str, *, code: Optional[int] = None, method: Optional[str] = None):
        self.code = code
        self.method = method
        super().__init__(message)


class TransientRpcError(RpcError):
    """Connection reset, rate limit, timeout. Retryable."""
    transient = True


class RateLimitedError(TransientRpcError):
    """HTTP 429. Carries the server-suggested wait, if any."""

    def __init__(self, message: str, *, retry_after: Optional[float] = None, method: Optional[str] = None):
        self.retry_after = retry_after
        super().__init__(message, code=429, method=method)


class FatalRpcError(RpcError, FatalError):
    """Bad address, malformed request, unknown method, or retries exhausted."""
    pass


# ============================================================
# DECODING
# ============================================================

class DecodeError(SyncError):
    """
    A single log could not be decoded.

    Never fatal: the log is skipped and the rest of the batch continues.
    """

    def __init__(self, tx_hash: str, log_index: int, reason: str):
        self.tx_hash = tx_hash
        self.log_index = log_index
        self.reason = reason
        super().__init__(f"Cannot decode log {tx_hash}:{log_index}: {reason}")


# ============================================================
# PERSISTENCE
# ============================================================

class PersistenceError(SyncError):
    """
    Any write failure. Duplicate keys never get here.

    Aborts the batch; the cursor is not advanced. The next tick retries.
    """
    transient = True


class CursorRegressionError(FatalError):
    """Raised when asked to move the cursor backwards."""

    def __init__(self, current: int, requested: int):
        self.current = current
        self.requested = requested
        super().__init__(
            f"Cursor cannot regress: current={current}, requested={requested}"
        )


# ============================================================
# SCHEDULING
# ============================================================

class TickBudgetExceeded(SyncError):
    """A tick ran past its total time budget and was abandoned at a checkpoint."""
    transient = True

    def __init__(self, message: str, *, during_rpc: bool = False):
        self.during_rpc = during_rpc
        super().__init__(message)


def is_transient(exc: BaseException) -> bool:
    """Classify any exception for restart decisions."""
    if isinstance(exc, SyncError):
        return exc.transient
    return False


def is_rpc_failure(exc: BaseException) -> bool:
    """True for transient failures caused by the node, including a budget overrun while awaiting it."""
    if isinstance(exc, TransientRpcError):
        return True
    return isinstance(exc, TickBudgetExceeded) and exc.during_rpc
