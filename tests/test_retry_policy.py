from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone

from hypothesis import given, settings
from hypothesis import strategies as st

from invoice_sync.contexts.erp.domain.gateway import (
    DuplicateError,
    GatewayTimeout,
    InsufficientStockError,
    NetworkError,
    SessionExpired,
    ValidationError,
)
from invoice_sync.contexts.invoicing.domain.queue import QUEUE_STATUS_FAILED, QUEUE_STATUS_REQUIRES_REVIEW
from invoice_sync.contexts.invoicing.domain.retry import (
    ERROR_KIND_BUSINESS,
    ERROR_KIND_TRANSIENT,
    ERROR_KIND_UNKNOWN,
    RetryPolicy,
    classify_error,
    is_retryable,
)
from invoice_sync.errors import ReservationInvalidError


NOW = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)


class ClassifyErrorTest(unittest.TestCase):
    def test_transport_failures_are_transient(self) -> None:
        for exc in (NetworkError("down"), GatewayTimeout("slow"), SessionExpired("relogin"), TimeoutError(), ConnectionError()):
            self.assertEqual(classify_error(exc), ERROR_KIND_TRANSIENT, exc)

    def test_rejections_are_business(self) -> None:
        for exc in (
            ValidationError("bad"),
            DuplicateError("dup"),
            InsufficientStockError("short"),
            ReservationInvalidError(details="expired"),
        ):
            self.assertEqual(classify_error(exc), ERROR_KIND_BUSINESS, exc)

    def test_unrecognized_errors_are_unknown_and_retryable(self) -> None:
        kind = classify_error(KeyError("boom"))
        self.assertEqual(kind, ERROR_KIND_UNKNOWN)
        self.assertTrue(is_retryable(kind))
        self.assertFalse(is_retryable(ERROR_KIND_BUSINESS))


class RetryPolicyTest(unittest.TestCase):
    def test_backoff_doubles_per_retry(self) -> None:
        policy = RetryPolicy(base_delay_seconds=30)
        self.assertEqual([policy.backoff_seconds(k) for k in range(4)], [30.0, 60.0, 120.0, 240.0])

    def test_transient_failure_schedules_retry(self) -> None:
        policy = RetryPolicy(base_delay_seconds=30)
        decision = policy.decide(retry_count=1, max_retries=3, error=NetworkError("down"), now=NOW)
        self.assertTrue(decision.will_retry)
        self.assertEqual(decision.status, QUEUE_STATUS_FAILED)
        self.assertEqual(decision.retry_count, 2)
        self.assertEqual(decision.next_eligible_at, NOW + timedelta(seconds=60))

    def test_last_allowed_failure_goes_to_review(self) -> None:
        policy = RetryPolicy(base_delay_seconds=30)
        decision = policy.decide(retry_count=2, max_retries=3, error=NetworkError("down"), now=NOW)
        self.assertFalse(decision.will_retry)
        self.assertEqual(decision.status, QUEUE_STATUS_REQUIRES_REVIEW)
        self.assertEqual(decision.retry_count, 2)
        self.assertIsNone(decision.next_eligible_at)

    def test_business_failure_never_retries(self) -> None:
        policy = RetryPolicy(base_delay_seconds=30)
        decision = policy.decide(retry_count=0, max_retries=5, error=InsufficientStockError("short"), now=NOW)
        self.assertEqual(decision.status, QUEUE_STATUS_REQUIRES_REVIEW)
        self.assertEqual(decision.retry_count, 0)
        self.assertEqual(decision.error_kind, ERROR_KIND_BUSINESS)

    def test_jitter_only_lengthens_delay(self) -> None:
        policy = RetryPolicy(base_delay_seconds=10, jitter_ratio=0.5, uniform=lambda low, high: high)
        self.assertEqual(policy.backoff_seconds(1), 30.0)

    @settings(max_examples=200)
    @given(
        retry_count=st.integers(min_value=0, max_value=8),
        base=st.floats(min_value=0.5, max_value=300, allow_nan=False, allow_infinity=False),
        ratio=st.floats(min_value=0, max_value=1, allow_nan=False, allow_infinity=False),
    )
    def test_next_eligible_never_earlier_than_exponential_floor(self, retry_count: int, base: float, ratio: float) -> None:
        policy = RetryPolicy(base_delay_seconds=base, jitter_ratio=ratio)
        decision = policy.decide(
            retry_count=retry_count, max_retries=retry_count + 2, error=TimeoutError(), now=NOW
        )
        floor = NOW + timedelta(seconds=base * (2**retry_count))
        self.assertGreaterEqual(decision.next_eligible_at, floor)


if __name__ == "__main__":
    unittest.main()
