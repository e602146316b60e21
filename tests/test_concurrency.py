"""
Concurrency tests.

Admission checks may over-admit under a stale snapshot; these tests
assert that the persisted counter is still exact once every call has
finished.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from ai_cost_meter.core.metering import MeteringState
from ai_cost_meter.core.quota import QuotaCheckRequest
from ai_cost_meter.core.recorder import UsageRecorder, UsageTrackingOptions
from ai_cost_meter.core.service import MeteringService
from ai_cost_meter.storage.cache import CacheLayer
from ai_cost_meter.storage.models import PricingRecord, QuotaPeriod

from conftest import make_quota

OPTIONS = UsageTrackingOptions(
    user_id="user-1",
    organization_id="org-1",
    provider="openai",
    model="flat-rate",
)


def half_dollar_response():
    # 500 input tokens at $1 per 1K
    return {"usage": {"prompt_tokens": 500, "completion_tokens": 0}}


@pytest.fixture
def service(store, fake_redis):
    store.add_pricing(PricingRecord(
        provider="openai",
        model="flat-rate",
        effective_date=date(2020, 1, 1),
        input_cost_per_1k=Decimal("1"),
        output_cost_per_1k=Decimal("1"),
    ))
    return MeteringService.build(store, CacheLayer(fake_redis))


def monthly_usage(store) -> float:
    quotas = store.get_quotas("org-1", "openai", "flat-rate", datetime.now(timezone.utc))
    return quotas[0].current_usage


class TestConcurrentRecording:

    def test_two_borderline_calls_both_counted(self, service, store):
        """Both calls pass the same warm snapshot before either records; both increments land."""
        store.put_quota(make_quota(period=QuotaPeriod.MONTHLY, limit=100.0, usage=99.0))
        assert service.evaluator.check(QuotaCheckRequest("org-1", "openai", "flat-rate", 0.5)).allowed

        # Neither call finishes until both have been admitted
        barrier = threading.Barrier(2, timeout=5)

        def operation():
            barrier.wait()
            return half_dollar_response()

        with ThreadPoolExecutor(max_workers=2) as pool:
            results = list(pool.map(
                lambda _: service.middleware.wrap(OPTIONS, operation, estimated_cost=0.5),
                range(2),
            ))

        assert [r.quota_exceeded for r in results] == [False, False]
        assert all(r.state == MeteringState.RECORDED for r in results)
        assert monthly_usage(store) == 100.0
        assert len(store.fetch_usage_records("org-1", limit=10)) == 2

    def test_counter_exact_under_contention(self, store):
        """No increment is lost when many writers race."""
        store.put_quota(make_quota(period=QuotaPeriod.MONTHLY, limit=1000.0))
        recorder = UsageRecorder(store)

        with ThreadPoolExecutor(max_workers=10) as pool:
            outcomes = list(pool.map(lambda _: recorder.record(OPTIONS, 1, 1, 1.0), range(100)))

        assert all(outcome.ok for outcome in outcomes)
        assert monthly_usage(store) == 100.0
        assert len(store.fetch_usage_records("org-1", limit=1000)) == 100

    def test_over_admission_is_bounded_and_counted(self, service, store):
        """A burst may overshoot the limit, but the counter reflects every admitted call."""
        store.put_quota(make_quota(period=QuotaPeriod.MONTHLY, limit=5.0))

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(
                lambda _: service.middleware.wrap(OPTIONS, half_dollar_response, estimated_cost=0.5),
                range(20),
            ))

        admitted = [r for r in results if not r.quota_exceeded]
        assert len(admitted) >= 9
        assert monthly_usage(store) == pytest.approx(0.5 * len(admitted))
        assert len(store.fetch_usage_records("org-1", limit=1000)) == len(admitted)
