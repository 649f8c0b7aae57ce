from __future__ import annotations

import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from invoice_sync.contexts.erp.domain.gateway import BusinessGatewayError, TransientGatewayError
from invoice_sync.contexts.invoicing.domain.queue import QUEUE_STATUS_FAILED, QUEUE_STATUS_REQUIRES_REVIEW
from invoice_sync.errors import UserActionError


ERROR_KIND_TRANSIENT = "transient"
ERROR_KIND_BUSINESS = "business"
ERROR_KIND_UNKNOWN = "unknown"


def classify_error(exc: BaseException) -> str:
    """Map a failure to transient, business or unknown by its type."""
    if isinstance(exc, (TransientGatewayError, TimeoutError, ConnectionError)):
        return ERROR_KIND_TRANSIENT
    if isinstance(exc, (BusinessGatewayError, UserActionError)):
        return ERROR_KIND_BUSINESS
    return ERROR_KIND_UNKNOWN


def is_retryable(kind: str) -> bool:
    return kind != ERROR_KIND_BUSINESS


@dataclass(frozen=True)
class RetryDecision:
    status: str
    retry_count: int
    error_kind: str
    next_eligible_at: datetime | None = None
    backoff_seconds: float | None = None

    @property
    def will_retry(self) -> bool:
        return self.status == QUEUE_STATUS_FAILED


@dataclass
class RetryPolicy:
    base_delay_seconds: float = 30.0
    jitter_ratio: float = 0.0
    uniform: Callable[[float, float], float] = field(default=random.uniform, repr=False)

    def backoff_seconds(self, retry_count: int) -> float:
        raw = float(self.base_delay_seconds) * (2 ** max(0, int(retry_count)))
        ratio = max(0.0, min(1.0, float(self.jitter_ratio or 0.0)))
        if ratio <= 0.0 or raw <= 0.0:
            return raw
        # Jitter only ever lengthens the delay.
        return raw + self.uniform(0.0, raw * ratio)

    def next_eligible_at(self, now: datetime, retry_count: int) -> datetime:
        return now + timedelta(seconds=self.backoff_seconds(retry_count))

    def decide(self, *, retry_count: int, max_retries: int, error: BaseException, now: datetime) -> RetryDecision:
        kind = classify_error(error)
        if is_retryable(kind) and retry_count + 1 < max_retries:
            backoff = self.backoff_seconds(retry_count)
            return RetryDecision(
                status=QUEUE_STATUS_FAILED,
                retry_count=retry_count + 1,
                error_kind=kind,
                next_eligible_at=now + timedelta(seconds=backoff),
                backoff_seconds=backoff,
            )
        return RetryDecision(status=QUEUE_STATUS_REQUIRES_REVIEW, retry_count=retry_count, error_kind=kind)
