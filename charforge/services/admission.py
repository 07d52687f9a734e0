"""Per-tenant admission control for background jobs.

:class:`AdmissionGate` turns a counter store and a configured limit into an
accept/reject decision. A successful decision is an :class:`Admitted` ticket
whose release runs exactly once, however the job ends; a failed decision is a
:class:`Rejected` value carrying everything a response needs to explain it.
Neither type knows anything about HTTP or templates.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Hashable, Union

from .counters import CounterStore

LOGGER = logging.getLogger(__name__)

JOB_LIMIT_ERROR_CODE = "job_limit_reached"
JOB_LIMIT_ERROR_TITLE = "Job limit reached"


def job_limit_message(limit: int) -> str:
    return f"You have reached the maximum number of concurrent jobs ({limit})"


def normalize_tenant_key(key: Hashable) -> str:
    if key is None:
        raise ValueError("A tenant key is required for job admission.")
    normalized = str(key).strip()
    if not normalized:
        raise ValueError("A tenant key is required for job admission.")
    return normalized


@dataclass(frozen=True)
class Rejected:
    key: str
    limit: int

    error_code = JOB_LIMIT_ERROR_CODE
    error = JOB_LIMIT_ERROR_TITLE
    status = 429

    @property
    def message(self) -> str:
        return job_limit_message(self.limit)

    def __bool__(self) -> bool:
        return False


class Admitted:
    """A granted admission slot.

    Call :meth:`release` when the job finishes, or use the ticket as a context
    manager. Releasing more than once is a no-op, so the runner can attach
    release to several exit paths without double counting.
    """

    def __init__(self, gate: "AdmissionGate", key: str) -> None:
        self._gate = gate
        self.key = key
        self._released = False
        self._lock = threading.Lock()

    @property
    def limit(self) -> int:
        return self._gate.limit

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> bool:
        """Return the slot to the gate; ``False`` when already released."""

        with self._lock:
            if self._released:
                return False
            self._gate.release(self.key)
            self._released = True
            return True

    def __enter__(self) -> "Admitted":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    def __bool__(self) -> bool:
        return True

    def __repr__(self) -> str:  # pragma: no cover - repr for debugging
        state = "released" if self._released else "held"
        return f"<Admitted {self.key} ({state})>"


AdmissionDecision = Union[Admitted, Rejected]


class AdmissionGate:
    def __init__(self, store: CounterStore, limit: int) -> None:
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 0:
            raise ValueError("The concurrent job limit must be a non-negative integer.")
        self.store = store
        self.limit = limit

    def try_admit(self, key: Hashable) -> AdmissionDecision:
        """Admit a new job for ``key`` if it is below the limit.

        :class:`~charforge.services.counters.StoreUnavailable` propagates so
        the caller can fail closed.
        """

        tenant = normalize_tenant_key(key)
        if self.store.increment_if_below(tenant, self.limit):
            LOGGER.debug("Admitted job for tenant %s (limit %s)", tenant, self.limit)
            return Admitted(self, tenant)

        LOGGER.debug("Rejected job for tenant %s: limit %s reached", tenant, self.limit)
        return Rejected(key=tenant, limit=self.limit)

    def release(self, key: Hashable) -> int:
        tenant = normalize_tenant_key(key)
        remaining = self.store.decrement(tenant)
        LOGGER.debug("Released job slot for tenant %s; %s still active", tenant, remaining)
        return remaining

    def active_count(self, key: Hashable) -> int:
        return self.store.count_for(normalize_tenant_key(key))

    def remaining(self, key: Hashable) -> int:
        return max(self.limit - self.active_count(key), 0)
