from taskgate.state.async_results import AsyncResultStore
from taskgate.state.files import StateError
from taskgate.state.review_log import ReviewLog
from taskgate.state.run_cache import CacheEntry, RunCache
from taskgate.state.signals import VALID_SIGNALS, Signal, SignalStore

__all__ = [
    "VALID_SIGNALS",
    "AsyncResultStore",
    "CacheEntry",
    "ReviewLog",
    "RunCache",
    "Signal",
    "SignalStore",
    "StateError",
]
