"""
Observability Module - Logging and Metrics

Provides:
- Structured JSON logging with tick/window context
- Metrics collection (ticks, applied events, duplicates, retries, latency)

Configuration:
- MEDSYNC_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
- MEDSYNC_LOG_FORMAT: json, text (default: json in production)
- MEDSYNC_PRODUCTION: Enable production mode

Usage:
    from medsync.observability import get_logger

    logger = get_logger(__name__)
    logger.info("Window applied", from_block=101, to_block=150, events=3)
"""

import json
import logging
import os
import sys
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# Context variables for tick tracking
tick_id_var: ContextVar[str] = ContextVar("tick_id", default="")
window_var: ContextVar[str] = ContextVar("window", default="")


# ============================================================
# CONFIGURATION
# ============================================================

def _is_production() -> bool:
    return os.environ.get("MEDSYNC_PRODUCTION", "").lower() in ("1", "true", "yes")


def _get_log_level() -> int:
    level_str = os.environ.get("MEDSYNC_LOG_LEVEL", "INFO").upper()
    levels = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }
    return levels.get(level_str, logging.INFO)


def _use_json_logging() -> bool:
    format_str = os.environ.get("MEDSYNC_LOG_FORMAT", "").lower()
    if format_str == "json":
        return True
    if format_str == "text":
        return False
    return _is_production()


# ============================================================
# STRUCTURED LOGGING
# ============================================================

_RESERVED_ATTRS = frozenset((
    "name", "msg", "args", "created", "levelname", "levelno",
    "pathname", "filename", "module", "lineno", "funcName",
    "exc_info", "exc_text", "stack_info", "message", "msecs",
    "relativeCreated", "thread", "threadName", "processName",
    "process", "taskName",
))


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Output format:
    {
        "timestamp": "2024-01-15T10:30:00.000Z",
        "level": "INFO",
        "logger": "medsync.core.poller",
        "message": "Window applied",
        "tick_id": "a1b2c3d4",
        "window": "101-150",
        ...extra fields...
    }
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        tick_id = tick_id_var.get()
        if tick_id:
            log_data["tick_id"] = tick_id

        window = window_var.get()
        if window:
            log_data["window"] = window

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or key.startswith("_"):
                continue
            try:
                json.dumps(value)
                log_data[key] = value
            except (TypeError, ValueError):
                log_data[key] = str(value)

        return json.dumps(log_data)


class TextFormatter(logging.Formatter):
    """Human-readable formatter for development."""

    def format(self, record: logging.LogRecord) -> str:
        prefix = ""
        tick_id = tick_id_var.get()
        if tick_id:
            prefix = f"[{tick_id[:8]}] "

        window = window_var.get()
        if window:
            prefix += f"({window}) "

        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        msg = f"{timestamp} {record.levelname:8} {prefix}{record.name}: {record.getMessage()}"

        extras = {
            k: v for k, v in record.__dict__.items()
            if k not in _RESERVED_ATTRS and not k.startswith("_")
        }
        if extras:
            msg += " " + " ".join(f"{k}={v}" for k, v in extras.items())

        if record.exc_info:
            msg += "\n" + self.formatException(record.exc_info)

        return msg


class ContextLogger(logging.LoggerAdapter):
    """
    Logger adapter that automatically includes context fields.

    Usage:
        logger = get_logger(__name__)
        logger.info("Cursor advanced", block=1200)
    """

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra = kwargs.get("extra", {})

        for key in list(kwargs.keys()):
            if key not in ("exc_info", "stack_info", "stacklevel", "extra"):
                extra[key] = kwargs.pop(key)

        kwargs["extra"] = extra
        return msg, kwargs


def get_logger(name: str) -> ContextLogger:
    """
    Get a structured logger for the given name.

    Args:
        name: Logger name (typically __name__)

    Returns:
        ContextLogger instance with structured output
    """
    logger = logging.getLogger(name)
    return ContextLogger(logger, {})


def setup_logging() -> None:
    """
    Configure logging for the process.

    Call this once at startup.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(_get_log_level())

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(_get_log_level())

    if _use_json_logging():
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(TextFormatter())

    root_logger.addHandler(handler)

    # Suppress noisy loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


# ============================================================
# METRICS
# ============================================================

@dataclass
class SyncMetrics:
    """
    Simple in-memory metrics collector.

    One instance per Supervisor; pass it down to the components it wires.
    """

    # Counters
    ticks: int = 0
    empty_ticks: int = 0
    failed_ticks: int = 0
    events_applied: int = 0
    duplicates_skipped: int = 0
    decode_failures: int = 0
    unknown_logs: int = 0
    rpc_retries: int = 0
    persistence_failures: int = 0
    restarts: int = 0

    # Gauges
    last_block: Optional[int] = None
    head_block: Optional[int] = None

    # Histograms (simplified as lists)
    tick_latencies_ms: list = field(default_factory=list)

    def record_tick(self, latency_ms: float, *, empty: bool = False, failed: bool = False) -> None:
        self.ticks += 1
        if empty:
            self.empty_ticks += 1
        if failed:
            self.failed_ticks += 1
        self.tick_latencies_ms.append(latency_ms)
        # Keep only last 1000 samples
        if len(self.tick_latencies_ms) > 1000:
            self.tick_latencies_ms = self.tick_latencies_ms[-1000:]

    @property
    def lag(self) -> Optional[int]:
        if self.last_block is None or self.head_block is None:
            return None
        return max(self.head_block - self.last_block, 0)

    def get_summary(self) -> Dict[str, Any]:
        """Get metrics summary."""
        def percentile(data: list, p: float) -> Optional[float]:
            if not data:
                return None
            sorted_data = sorted(data)
            idx = int(len(sorted_data) * p)
            return sorted_data[min(idx, len(sorted_data) - 1)]

        return {
            "ticks": self.ticks,
            "empty_ticks": self.empty_ticks,
            "failed_ticks": self.failed_ticks,
            "events_applied": self.events_applied,
            "duplicates_skipped": self.duplicates_skipped,
            "decode_failures": self.decode_failures,
            "unknown_logs": self.unknown_logs,
            "rpc_retries": self.rpc_retries,
            "persistence_failures": self.persistence_failures,
            "restarts": self.restarts,
            "last_block": self.last_block,
            "head_block": self.head_block,
            "lag": self.lag,
            "tick_latency_p50_ms": percentile(self.tick_latencies_ms, 0.5),
            "tick_latency_p95_ms": percentile(self.tick_latencies_ms, 0.95),
            "tick_latency_p99_ms": percentile(self.tick_latencies_ms, 0.99),
        }
