"""
Tests for hierarchical quota evaluation.
"""

import math
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest

from ai_cost_meter.core.errors import ValidationError
from ai_cost_meter.core.quota import (
    QuotaCheckRequest,
    QuotaEvaluator,
    check_order,
    decide,
    evaluate_quota,
)
from ai_cost_meter.storage.cache import CacheLayer, quota_check_key
from ai_cost_meter.storage.models import QuotaPeriod, UsageRecord
from ai_cost_meter.storage.repository import new_record_id

from conftest import make_quota


def request(cost: float, organization_id="org-1") -> QuotaCheckRequest:
    return QuotaCheckRequest(
        organization_id=organization_id,
        provider="openai",
        model="gpt-4",
        estimated_cost=cost,
        user_id="user-1",
    )


class TestQuotaCheckRequest:
    """Test request validation at construction."""

    @pytest.mark.parametrize("field", ["organization_id", "provider", "model"])
    def test_blank_identifier_rejected(self, field):
        values = dict(organization_id="org-1", provider="openai", model="gpt-4")
        values[field] = "  "
        with pytest.raises(ValidationError, match=field):
            QuotaCheckRequest(**values)

    def test_negative_cost_rejected(self):
        with pytest.raises(ValidationError, match="estimated_cost"):
            request(-0.01)

    def test_zero_cost_accepted(self):
        assert request(0.0).estimated_cost == 0.0


class TestEvaluateQuota:
    """Test the single-quota admission rule."""

    def test_under_limit_admits(self):
        status = evaluate_quota(make_quota(limit=10.0, usage=5.0), 1.0)
        assert status.allowed
        assert status.remaining == 5.0

    def test_reaching_limit_exactly_denies(self):
        """current + estimate == limit is a denial."""
        assert not evaluate_quota(make_quota(limit=10.0, usage=9.0), 1.0).allowed

    def test_cent_arithmetic_is_exact(self):
        status = evaluate_quota(make_quota(limit=1.0, usage=0.99), 0.02)
        assert not status.allowed
        assert status.remaining == 0.01

    def test_remaining_clamped_at_zero(self):
        """Usage can overshoot the limit after a borderline admission."""
        status = evaluate_quota(make_quota(limit=10.0, usage=10.4), 0.0)
        assert status.remaining == 0.0
        assert status.current == 10.4

    def test_zero_limit_denies_everything(self):
        assert not evaluate_quota(make_quota(limit=0.0), 0.0).allowed

    @pytest.mark.parametrize("usage,estimate", [(0.0, 10.0), (9.99, 0.01), (5.0, 7.5), (10.0, 0.0)])
    def test_any_overreach_denies(self, usage, estimate):
        assert not evaluate_quota(make_quota(limit=10.0, usage=usage), estimate).allowed


class TestDecide:
    """Test combining quotas into one decision."""

    def test_no_quotas_admits_unbounded(self):
        result = decide([], 1000.0)
        assert result.allowed
        assert result.limiting_quota is None
        assert result.all_quota_statuses == []
        assert result.remaining == math.inf

    def test_first_denier_in_check_order(self):
        """Daily is reported even when monthly is listed first."""
        quotas = [
            make_quota(period=QuotaPeriod.MONTHLY, limit=100.0, usage=50.0),
            make_quota(period=QuotaPeriod.DAILY, limit=10.0, usage=9.5),
        ]
        result = decide(quotas, 1.0)

        assert not result.allowed
        assert result.limiting_quota.quota_type == "daily"

    def test_order_beats_tightness(self):
        """A tighter later scope does not replace an earlier denier."""
        quotas = [
            make_quota(provider="openai", model="gpt-4", limit=1.0, usage=1.0),
            make_quota(period=QuotaPeriod.MONTHLY, limit=100.0, usage=99.9),
        ]
        result = decide(quotas, 0.5)

        assert result.limiting_quota.quota_type == "monthly"
        assert [s.quota_type for s in result.all_quota_statuses] == ["monthly", "model_daily"]

    def test_every_quota_evaluated(self):
        quotas = [
            make_quota(),
            make_quota(period=QuotaPeriod.MONTHLY),
            make_quota(provider="openai"),
            make_quota(provider="openai", period=QuotaPeriod.MONTHLY),
            make_quota(provider="openai", model="gpt-4"),
            make_quota(provider="openai", model="gpt-4", period=QuotaPeriod.MONTHLY),
        ]
        result = decide(list(reversed(quotas)), 1.0)

        assert result.allowed
        assert [s.quota_type for s in result.all_quota_statuses] == [
            "daily", "monthly", "provider_daily", "provider_monthly", "model_daily", "model_monthly",
        ]
        assert result.headline.quota_type == "daily"

    def test_check_order_key(self):
        assert check_order(make_quota()) < check_order(make_quota(provider="openai"))


class TestQuotaEvaluator:
    """Test admission checks over a real store."""

    def test_no_quotas_configured(self, store):
        result = QuotaEvaluator(store).check(request(50.0))
        assert result.allowed
        assert result.remaining == math.inf

    def test_scenario_daily_cent_overrun(self, store):
        store.put_quota(make_quota(limit=1.00, usage=0.99))

        result = QuotaEvaluator(store).check(request(0.02))

        assert not result.allowed
        assert result.limiting_quota.quota_type == "daily"
        assert result.limiting_quota.remaining == 0.01

    def test_daily_denies_before_monthly(self, store):
        store.put_quota(make_quota(period=QuotaPeriod.DAILY, limit=10.0, usage=9.5))
        store.put_quota(make_quota(period=QuotaPeriod.MONTHLY, limit=100.0, usage=50.0))

        result = QuotaEvaluator(store).check(request(1.0))

        assert not result.allowed
        assert result.limiting_quota.quota_type == "daily"

    def test_denial_writes_violation(self, store):
        store.put_quota(make_quota(limit=1.0, usage=0.99))
        QuotaEvaluator(store).check(request(0.02))

        violations = store.fetch_violations("org-1")
        assert len(violations) == 1
        assert violations[0].attempted_cost == 0.02
        assert violations[0].quota_limit == 1.0

    def test_admission_writes_no_violation(self, store):
        store.put_quota(make_quota(limit=10.0))
        assert QuotaEvaluator(store).check(request(1.0)).allowed
        assert store.fetch_violations("org-1") == []

    def test_violation_audit_failure_keeps_decision(self):
        store = Mock()
        store.get_quotas.return_value = [make_quota(limit=1.0, usage=1.0)]
        store.insert_violation.side_effect = RuntimeError("audit table locked")

        result = QuotaEvaluator(store).check(request(0.5))

        assert not result.allowed

    def test_store_failure_propagates(self):
        """Without quota state no decision can be made."""
        store = Mock()
        store.get_quotas.side_effect = RuntimeError("database unavailable")

        with pytest.raises(RuntimeError):
            QuotaEvaluator(store).check(request(0.5))

    def test_expired_quota_ignored(self, store):
        store.put_quota(make_quota(limit=1.0, usage=1.0,
                                   reset_at=datetime.now(timezone.utc) - timedelta(seconds=1)))
        assert QuotaEvaluator(store).check(request(0.5)).allowed


class TestCachedEvaluation:
    """Test quota snapshots served through the cache."""

    def test_snapshot_cached_with_ttl(self, store, fake_redis):
        store.put_quota(make_quota(limit=10.0))
        evaluator = QuotaEvaluator(store, CacheLayer(fake_redis), ttl=120)

        evaluator.check(request(1.0))

        key = quota_check_key("org-1", "openai", "gpt-4")
        assert key in fake_redis.data
        assert fake_redis.ttls[key] == 120

    def test_stale_snapshot_over_admits(self, store, fake_redis):
        """Spend recorded behind the cache's back is not seen until invalidation."""
        store.put_quota(make_quota(limit=10.0, usage=0.0))
        cache = CacheLayer(fake_redis)
        evaluator = QuotaEvaluator(store, cache)
        assert evaluator.check(request(1.0)).allowed

        store.log_usage(UsageRecord(
            record_id=new_record_id(),
            timestamp=datetime.now(timezone.utc),
            user_id="user-1",
            organization_id="org-1",
            provider="openai",
            model="gpt-4",
            input_tokens=0,
            output_tokens=0,
            cost_usd=9.5,
        ))

        assert evaluator.check(request(1.0)).allowed

        cache.invalidate_organization("org-1")
        assert not evaluator.check(request(1.0)).allowed

    def test_cached_snapshot_past_reset_is_dropped(self, store, fake_redis):
        now = datetime.now(timezone.utc)
        clock = Mock(return_value=now)
        store.put_quota(make_quota(limit=1.0, usage=1.0, reset_at=now + timedelta(seconds=30)))
        evaluator = QuotaEvaluator(store, CacheLayer(fake_redis), clock=clock)
        assert not evaluator.check(request(0.5)).allowed

        clock.return_value = now + timedelta(minutes=1)
        assert evaluator.check(request(0.5)).allowed

    def test_unreachable_cache_same_decision(self, store, fake_redis, broken_redis):
        """Cache outages never change the outcome."""
        store.put_quota(make_quota(limit=1.0, usage=0.99))
        store.put_quota(make_quota(period=QuotaPeriod.MONTHLY, limit=100.0))

        for cost in (0.001, 0.01, 0.02):
            healthy = QuotaEvaluator(store, CacheLayer(fake_redis)).check(request(cost))
            broken = QuotaEvaluator(store, CacheLayer(broken_redis)).check(request(cost))
            uncached = QuotaEvaluator(store).check(request(cost))
            assert healthy.allowed == broken.allowed == uncached.allowed
            assert healthy.limiting_quota == broken.limiting_quota == uncached.limiting_quota
