"""Service layer: job admission, background execution and LLM helpers."""

from __future__ import annotations

from .admission import (  # noqa: F401
    Admitted,
    AdmissionGate,
    Rejected,
    job_limit_message,
)
from .counters import (  # noqa: F401
    CounterStore,
    DatabaseCounterStore,
    MemoryCounterStore,
    RedisCounterStore,
    StoreUnavailable,
    build_counter_store,
)
from .job_runner import Enqueued, JobExecutionFailed, JobRunner  # noqa: F401

__all__ = [
    "Admitted",
    "AdmissionGate",
    "CounterStore",
    "DatabaseCounterStore",
    "Enqueued",
    "JobExecutionFailed",
    "JobRunner",
    "MemoryCounterStore",
    "RedisCounterStore",
    "Rejected",
    "StoreUnavailable",
    "build_counter_store",
    "job_limit_message",
]
