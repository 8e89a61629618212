"""Core primitives shared by the sync engine: results, retry, concurrency."""

from .async_utils import CancellationToken, gather_limited, run_sync
from .result import Result
from .retry import RetryPolicy

__all__ = [
    "CancellationToken",
    "Result",
    "RetryPolicy",
    "gather_limited",
    "run_sync",
]
