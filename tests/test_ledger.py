from datetime import date

import pytest

from storyweaver.errors import InvalidRequest, QuotaFailure
from storyweaver.ledger import CreditLedger, UsageTracker
from storyweaver.models import CreditState, DailyLimits, DailyUsage


def test_debit_clamps_at_zero() -> None:
    ledger = CreditLedger(CreditState(balance=0.10))
    ledger.debit(0.04)
    assert ledger.balance == pytest.approx(0.06)

    ledger.debit(0.50)
    assert ledger.balance == 0.0


def test_debit_rejects_negative_amount() -> None:
    ledger = CreditLedger(CreditState(balance=1.0))
    with pytest.raises(InvalidRequest):
        ledger.debit(-1.0)
    assert ledger.balance == 1.0


def test_require_rejects_unaffordable_cost() -> None:
    ledger = CreditLedger(CreditState(balance=0.25))
    assert ledger.can_afford(0.25)
    ledger.require(0.25)
    with pytest.raises(QuotaFailure, match="Insufficient credit"):
        ledger.require(0.50)


def test_currency_display() -> None:
    ledger = CreditLedger(CreditState(balance=10.0), rates={"EUR": 0.9})
    ledger.set_currency("eur")

    assert ledger.state.currency == "EUR"
    assert ledger.balance == 10.0
    assert ledger.format(10.0) == "9.00 EUR"
    with pytest.raises(InvalidRequest, match="Unknown currency"):
        ledger.set_currency("XYZ")


def test_top_up_must_be_positive() -> None:
    ledger = CreditLedger()
    assert ledger.top_up(5.0).balance == 5.0
    with pytest.raises(InvalidRequest):
        ledger.top_up(0)


def test_usage_rolls_over_each_day() -> None:
    today = [date(2026, 3, 1)]
    tracker = UsageTracker(DailyUsage(images=4, videos=1, day="2026-03-01"), today=lambda: today[0])
    assert tracker.usage.images == 4

    today[0] = date(2026, 3, 2)

    assert tracker.usage == DailyUsage(day="2026-03-02")


def test_usage_limits_only_when_enabled() -> None:
    tracker = UsageTracker(today=lambda: date(2026, 3, 1))
    tracker.check("images", 100)

    tracker.set_limits(enabled=True, max_images=2, max_videos=1)
    tracker.record("images", 2)

    with pytest.raises(QuotaFailure, match="Daily image limit reached"):
        tracker.check("images")
    tracker.check("videos")
    tracker.record("videos")
    with pytest.raises(QuotaFailure, match="Daily video limit reached"):
        tracker.check("videos")


def test_usage_record_ignores_non_positive_amounts() -> None:
    tracker = UsageTracker(limits=DailyLimits(), today=lambda: date(2026, 3, 1))
    tracker.record("images", 0)
    assert tracker.usage.images == 0
