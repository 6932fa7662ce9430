"""Correlation of out-of-band payments with jobs parked in WAITING_PAYMENT.

A parked job registers a future under its job id and under its normalized
payment reference (the expected payment reference, else the invoice number).
A payment resolves the first parked job it matches by explicit job id or by
reference. Payments that match nothing yet are buffered, bounded by
``pending_limit`` with the oldest evicted first, and claimed when a matching
job parks.
"""

import asyncio
import logging
from collections import OrderedDict
from enum import StrEnum

from services.reconciliation.stage import normalize_reference
from services.shared.schema import Payment

logger = logging.getLogger(__name__)


class CorrelationOutcome(StrEnum):
    CORRELATED = "correlated"
    BUFFERED = "buffered"
    DROPPED = "dropped"


def job_keys(job_id: str, reference: str | None) -> list[str]:
    keys = [f"job:{job_id}"]
    normalized = normalize_reference(reference)
    if normalized:
        keys.append(f"ref:{normalized}")
    return keys


def payment_keys(payment: Payment) -> list[str]:
    keys = []
    if payment.job_id:
        keys.append(f"job:{payment.job_id}")
    normalized = normalize_reference(payment.reference)
    if normalized:
        keys.append(f"ref:{normalized}")
    return keys


class PaymentCorrelator:
    """Matches payments to parked jobs. Not thread-safe; use from one event loop."""

    def __init__(self, pending_limit: int = 1000) -> None:
        self.pending_limit = pending_limit
        self._waiters: dict[str, asyncio.Future[Payment]] = {}
        self._owners: dict[str, str] = {}
        self._pending: OrderedDict[str, Payment] = OrderedDict()

    @property
    def parked_count(self) -> int:
        return len(self._waiters)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def park(self, job_id: str, reference: str | None) -> asyncio.Future[Payment]:
        """Register a job as waiting and return the future its payment resolves.

        The future is already resolved when a buffered payment matches.
        """
        future: asyncio.Future[Payment] = asyncio.get_running_loop().create_future()
        keys = job_keys(job_id, reference)

        buffered = self._claim(keys)
        if buffered is not None:
            logger.info(f"Job {job_id}: claimed buffered payment {buffered.payment_id}")
            future.set_result(buffered)
            return future

        self._waiters[job_id] = future
        for key in keys:
            owner = self._owners.setdefault(key, job_id)
            if owner != job_id:
                logger.warning(f"Job {job_id}: correlation key {key} already held by job {owner}")
        return future

    def offer(self, payment: Payment) -> CorrelationOutcome:
        """Resolve a parked job with ``payment`` or buffer it for later."""
        for key in payment_keys(payment):
            job_id = self._owners.get(key)
            future = self._waiters.get(job_id) if job_id else None
            if future is not None and not future.done():
                future.set_result(payment)
                self.release(job_id)
                logger.info(f"Payment {payment.payment_id} correlated to job {job_id}")
                return CorrelationOutcome.CORRELATED

        if self.pending_limit == 0:
            logger.warning(f"Payment {payment.payment_id} matched no job and was dropped")
            return CorrelationOutcome.DROPPED

        if len(self._pending) >= self.pending_limit:
            evicted, _ = self._pending.popitem(last=False)
            logger.warning(f"Pending payment buffer full; evicted payment {evicted}")
        self._pending[payment.payment_id] = payment
        logger.info(f"Payment {payment.payment_id} buffered ({len(self._pending)} pending)")
        return CorrelationOutcome.BUFFERED

    def release(self, job_id: str) -> None:
        """Unregister a job, cancelling its future if still unresolved."""
        future = self._waiters.pop(job_id, None)
        if future is not None and not future.done():
            future.cancel()
        for key in [k for k, owner in self._owners.items() if owner == job_id]:
            del self._owners[key]

    def _claim(self, keys: list[str]) -> Payment | None:
        wanted = set(keys)
        for payment_id, payment in self._pending.items():
            if wanted.intersection(payment_keys(payment)):
                del self._pending[payment_id]
                return payment
        return None
