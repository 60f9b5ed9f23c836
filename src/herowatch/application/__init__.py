from .scheduler import DelayedTaskScheduler
from .retry_queue import RetryQueue, RetryWorker
from .reconciliation import CheckOutcome, ReconciliationEngine, RetryPolicy
from .reveal_engine import RevealEngine
from .death_engine import DeathEngine
from .backfill import HistoricalSync
from .bulk_reconcile import BulkReconciler, find_uniques

__all__ = [
    "DelayedTaskScheduler",
    "RetryQueue",
    "RetryWorker",
    "CheckOutcome",
    "ReconciliationEngine",
    "RetryPolicy",
    "RevealEngine",
    "DeathEngine",
    "HistoricalSync",
    "BulkReconciler",
    "find_uniques",
]
