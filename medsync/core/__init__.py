# Synchronizer core
from .rpc import RpcClient, HttpxRpcClient, RetryPolicy
from .decoder import EventDecoder, DecodeResult, event_topic
from .writer import ProjectionWriter, ApplyResult, StopRequested
from .window import Deadline, WindowProcessor, WindowOutcome
from .poller import Poller, PollerState
from .backfill import BackfillDriver, BackfillResult
from .supervisor import Supervisor

__all__ = [
    "RpcClient",
    "HttpxRpcClient",
    "RetryPolicy",
    "EventDecoder",
    "DecodeResult",
    "event_topic",
    "ProjectionWriter",
    "ApplyResult",
    "StopRequested",
    "Deadline",
    "WindowProcessor",
    "WindowOutcome",
    "Poller",
    "PollerState",
    "BackfillDriver",
    "BackfillResult",
    "Supervisor",
]
