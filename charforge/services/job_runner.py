"""Background job execution behind the admission gate."""

from __future__ import annotations

import logging
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

from .admission import Admitted, AdmissionGate, Rejected
from .counters import StoreUnavailable

LOGGER = logging.getLogger(__name__)


class JobExecutionFailed(RuntimeError):
    """Raised from :meth:`Enqueued.result` when the admitted work raised."""

    def __init__(self, key: str, error: BaseException) -> None:
        super().__init__(f"Job for tenant {key} failed: {error}")
        self.key = key
        self.error = error


@dataclass
class Enqueued:
    key: str
    future: Future

    def result(self, timeout: Optional[float] = None) -> Any:
        return self.future.result(timeout=timeout)

    def cancel(self) -> bool:
        return self.future.cancel()

    def done(self) -> bool:
        return self.future.done()

    @property
    def cancelled(self) -> bool:
        return self.future.cancelled()

    def __bool__(self) -> bool:
        return True


EnqueueResult = Union[Enqueued, Rejected]


class JobRunner:
    """Runs admitted work on a thread pool and always hands the slot back.

    The slot is released from a ``finally`` block around the work and again
    from the future's done-callback; the ticket makes the second call a no-op.
    The callback is what releases jobs cancelled before they start.

    With ``eager=True`` work runs inline on the calling thread, which keeps
    tests and single-threaded tooling deterministic.
    """

    def __init__(
        self,
        gate: AdmissionGate,
        *,
        max_workers: int = 4,
        eager: bool = False,
        thread_name_prefix: str = "charforge-job",
    ) -> None:
        self.gate = gate
        self.eager = eager
        self._executor: Optional[ThreadPoolExecutor] = None
        if not eager:
            self._executor = ThreadPoolExecutor(
                max_workers=max(1, int(max_workers)),
                thread_name_prefix=thread_name_prefix,
            )

    def enqueue(self, key: Any, work: Callable[..., Any], *args: Any, **kwargs: Any) -> EnqueueResult:
        """Admit and schedule ``work`` for ``key``.

        Returns :class:`Rejected` immediately when the tenant is at its limit.
        :class:`~charforge.services.counters.StoreUnavailable` propagates and
        nothing is scheduled.
        """

        decision = self.gate.try_admit(key)
        if isinstance(decision, Rejected):
            return decision

        ticket = decision
        if self.eager:
            future: Future = Future()
            future.set_running_or_notify_cancel()
            try:
                future.set_result(self._run(ticket, work, args, kwargs))
            except JobExecutionFailed as exc:
                future.set_exception(exc)
            return Enqueued(key=ticket.key, future=future)

        try:
            future = self._executor.submit(self._run, ticket, work, args, kwargs)
        except BaseException:
            self._release(ticket)
            raise
        future.add_done_callback(lambda _: self._release(ticket))
        return Enqueued(key=ticket.key, future=future)

    def shutdown(self, wait: bool = True, *, cancel_pending: bool = False) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait, cancel_futures=cancel_pending)

    def _run(self, ticket: Admitted, work: Callable[..., Any], args: tuple, kwargs: dict) -> Any:
        try:
            return work(*args, **kwargs)
        except CancelledError:
            LOGGER.info("Job for tenant %s was cancelled while running", ticket.key)
            raise
        except Exception as exc:
            LOGGER.exception("Job for tenant %s failed", ticket.key)
            raise JobExecutionFailed(ticket.key, exc) from exc
        finally:
            self._release(ticket)

    @staticmethod
    def _release(ticket: Admitted) -> None:
        try:
            ticket.release()
        except StoreUnavailable:
            LOGGER.exception("Could not release job slot for tenant %s", ticket.key)
