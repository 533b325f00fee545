from __future__ import annotations

from datetime import datetime, timezone

import pytest

from plugingate.domain.limits import UNLIMITED, PeriodType, QuotaDescriptor
from plugingate.services.usage import period_key_for


def test_unlimited_quota_never_reports_arithmetic_on_sentinel() -> None:
    quota = QuotaDescriptor(PeriodType.DAILY, limit=UNLIMITED, batch_ceiling=100)
    assert quota.is_unlimited
    assert quota.remaining(5000) == UNLIMITED
    assert quota.allows(10**9, requested=100)


def test_remaining_is_clamped_at_zero() -> None:
    quota = QuotaDescriptor(PeriodType.DAILY, limit=4)
    assert quota.remaining(3) == 1
    assert quota.remaining(7) == 0


def test_allows_counts_the_requested_batch() -> None:
    quota = QuotaDescriptor(PeriodType.DAILY, limit=4, batch_ceiling=5)
    assert quota.allows(2, requested=2)
    assert not quota.allows(3, requested=2)


@pytest.mark.parametrize("limit", [-2, -100])
def test_negative_limits_other_than_sentinel_are_rejected(limit: int) -> None:
    with pytest.raises(ValueError):
        QuotaDescriptor(PeriodType.DAILY, limit=limit)


def test_batch_ceiling_must_be_positive() -> None:
    with pytest.raises(ValueError):
        QuotaDescriptor(PeriodType.ONE_TIME, limit=10, batch_ceiling=0)


def test_quota_json_parsing_defaults_batch_ceiling() -> None:
    quota = QuotaDescriptor.from_json({"period_type": "one_time", "limit": 10})
    assert quota == QuotaDescriptor(PeriodType.ONE_TIME, limit=10, batch_ceiling=1)


@pytest.mark.parametrize(
    "payload",
    [None, {}, {"limit": 3}, {"period_type": "weekly", "limit": 3}],
)
def test_quota_json_parsing_rejects_bad_payloads(payload) -> None:
    with pytest.raises(ValueError):
        QuotaDescriptor.from_json(payload)


def test_period_keys_roll_at_utc_midnight() -> None:
    daily = QuotaDescriptor(PeriodType.DAILY, limit=4)
    before = datetime(2026, 3, 1, 23, 59, 59, tzinfo=timezone.utc)
    after = datetime(2026, 3, 2, 0, 0, 1, tzinfo=timezone.utc)
    assert period_key_for(daily, before) == "2026-03-01"
    assert period_key_for(daily, after) == "2026-03-02"


def test_one_time_quota_uses_lifetime_bucket() -> None:
    one_time = QuotaDescriptor(PeriodType.ONE_TIME, limit=10)
    first = datetime(2026, 1, 1, tzinfo=timezone.utc)
    later = datetime(2027, 6, 1, tzinfo=timezone.utc)
    assert period_key_for(one_time, first) == period_key_for(one_time, later) == "lifetime"
