"""
Synchronizer Configuration

Environment Variables:
    MEDSYNC_RPC_URL: Chain JSON-RPC endpoint (required; RPC_URL accepted)
    MEDSYNC_CONTRACT_ADDRESS: Monitored contract (required; CONTRACT_ADDRESS accepted)
    MEDSYNC_START_BLOCK: First block to scan on a fresh cursor (default 0)
    MEDSYNC_POLL_INTERVAL_MS: Tick cadence (default 15000)
    MEDSYNC_MAX_WINDOW_BLOCKS: Max blocks per log query (default 2000)
    MEDSYNC_CONFIRMATIONS: Blocks to stay behind head (default 0)
    MEDSYNC_RPC_CALL_TIMEOUT_MS: Per-call RPC timeout (default 20000)
    MEDSYNC_RPC_MAX_ATTEMPTS: Attempts before a transient fault is fatal (default 6)
    MEDSYNC_BACKOFF_BASE_MS / MEDSYNC_BACKOFF_CAP_MS: Retry backoff (500 / 30000)
    MEDSYNC_TICK_BUDGET_MS: Total time per tick (default 2x poll interval)
    MEDSYNC_MAX_TICK_FAILURES: Failed ticks in a row before the Supervisor restarts the poller (default 5)
    MEDSYNC_RESTART_DELAY_MS: Supervisor wait before restarting (default 5000)
    MEDSYNC_SHUTDOWN_GRACE_MS: Wait for the in-flight tick on stop (default 30000)
    MEDSYNC_HEALTH_PORT: Serve the HTTP health endpoint in listen mode (optional)
"""

import os
from dataclasses import dataclass, fields, replace
from typing import Mapping, Optional
from urllib.parse import urlparse

from eth_utils import is_address, to_checksum_address

from .errors import ConfigError, MissingConfigError

ENV_PREFIX = "MEDSYNC_"

# Names used by the existing deployment scripts
_LEGACY_ENV = {
    "rpc_url": "RPC_URL",
    "contract_address": "CONTRACT_ADDRESS",
}


@dataclass(frozen=True)
class SyncConfig:
    """Configuration for one (rpc, contract) synchronizer."""
    rpc_url: str
    contract_address: str
    start_block: int = 0
    poll_interval_ms: int = 15000
    max_window_blocks: int = 2000
    confirmations: int = 0
    rpc_call_timeout_ms: int = 20000
    rpc_max_attempts: int = 6
    backoff_base_ms: int = 500
    backoff_cap_ms: int = 30000
    tick_budget_ms: Optional[int] = None
    max_tick_failures: int = 5
    restart_delay_ms: int = 5000
    shutdown_grace_ms: int = 30000
    health_port: Optional[int] = None

    def __post_init__(self):
        self.validate()

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "SyncConfig":
        """
        Load configuration from environment variables.

        Raises:
            MissingConfigError: rpc_url or contract_address is not set
            ConfigError: a value is present but malformed
        """
        env = os.environ if environ is None else environ
        values: dict = {}

        for f in fields(cls):
            raw = env.get(ENV_PREFIX + f.name.upper())
            if raw is None and f.name in _LEGACY_ENV:
                raw = env.get(_LEGACY_ENV[f.name])
            if raw is None or raw.strip() == "":
                continue
            values[f.name] = raw.strip()

        for required in ("rpc_url", "contract_address"):
            if required not in values:
                raise MissingConfigError(required)

        return cls._coerce(values)

    @classmethod
    def _coerce(cls, values: dict) -> "SyncConfig":
        coerced = {}
        for name, raw in values.items():
            if name in ("rpc_url", "contract_address"):
                coerced[name] = raw
                continue
            try:
                coerced[name] = int(raw)
            except (TypeError, ValueError):
                raise ConfigError(f"{name} must be an integer, got {raw!r}") from None
        return cls(**coerced)

    def with_overrides(self, **overrides) -> "SyncConfig":
        """Return a copy with non-None overrides applied (used by the CLI)."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **changes) if changes else self

    def validate(self) -> None:
        if not self.rpc_url:
            raise MissingConfigError("rpc_url")
        if not self.contract_address:
            raise MissingConfigError("contract_address")

        parsed = urlparse(self.rpc_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ConfigError(f"rpc_url must be an http(s) URL, got {self.rpc_url!r}")

        if not is_address(self.contract_address):
            raise ConfigError(f"contract_address is not a valid address: {self.contract_address!r}")

        for name in ("start_block", "confirmations"):
            if getattr(self, name) < 0:
                raise ConfigError(f"{name} must be >= 0")

        for name in (
            "poll_interval_ms",
            "max_window_blocks",
            "rpc_call_timeout_ms",
            "rpc_max_attempts",
            "max_tick_failures",
            "backoff_base_ms",
            "backoff_cap_ms",
        ):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be > 0")

        if self.backoff_cap_ms < self.backoff_base_ms:
            raise ConfigError("backoff_cap_ms must be >= backoff_base_ms")
        if self.tick_budget_ms is not None and self.tick_budget_ms <= 0:
            raise ConfigError("tick_budget_ms must be > 0")
        if self.health_port is not None and not (0 < self.health_port < 65536):
            raise ConfigError("health_port must be between 1 and 65535")

    # ------------------------------------------------------------------
    # Derived values (seconds, for asyncio)
    # ------------------------------------------------------------------

    @property
    def checksum_address(self) -> str:
        return to_checksum_address(self.contract_address)

    @property
    def stream(self) -> str:
        """Cursor key: one cursor per monitored contract."""
        return self.contract_address.lower()

    @property
    def poll_interval(self) -> float:
        return self.poll_interval_ms / 1000

    @property
    def rpc_call_timeout(self) -> float:
        return self.rpc_call_timeout_ms / 1000

    @property
    def tick_budget(self) -> float:
        budget_ms = self.tick_budget_ms if self.tick_budget_ms is not None else 2 * self.poll_interval_ms
        return budget_ms / 1000

    @property
    def restart_delay(self) -> float:
        return self.restart_delay_ms / 1000

    @property
    def shutdown_grace(self) -> float:
        return self.shutdown_grace_ms / 1000

    @property
    def initial_cursor(self) -> int:
        """Cursor value for a fresh stream so that start_block is the first block scanned."""
        return max(self.start_block - 1, 0)
