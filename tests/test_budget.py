"""Tests for the spend guard and usage ledger."""

import random
import threading
from datetime import UTC, datetime, timedelta

import pytest

from deepflow.budget import (
    SpendGuard,
    UsageLedger,
    UsageLimits,
    UsageLimitsUpdate,
    UsageStatus,
    evaluate_admission,
)
from deepflow.config import Settings
from deepflow.errors import ValidationError
from deepflow.state import SQLiteBackend


class FakeClock:
    """Settable UTC clock for period boundaries."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _limits(**kwargs):
    return UsageLimits(user_id="u1", **kwargs)


class TestEvaluateAdmission:
    """Tests for the pure admission decision."""

    def test_allowed_within_limits(self):
        admission = evaluate_admission(_limits(), 1.0, 5.0, 0.5)
        assert admission.allowed is True
        assert admission.warning is False
        assert admission.reason is None

    def test_denied_over_daily(self):
        admission = evaluate_admission(_limits(daily_limit_usd=10.0), 9.99, 9.99, 0.05)
        assert admission.allowed is False
        assert admission.reason == "Request would exceed daily limit ($10.00)"
        assert admission.suggestion == "Current usage: $9.9900, Request cost: $0.0500"

    def test_denied_over_monthly(self):
        admission = evaluate_admission(_limits(monthly_limit_usd=20.0), 1.0, 19.5, 1.0)
        assert admission.allowed is False
        assert "monthly limit ($20.00)" in admission.reason

    def test_exactly_at_limit_allowed(self):
        """Reaching the limit exactly is allowed; only exceeding it is denied."""
        admission = evaluate_admission(_limits(daily_limit_usd=10.0), 9.0, 9.0, 1.0)
        assert admission.allowed is True
        assert admission.warning is True

    def test_warning_threshold(self):
        admission = evaluate_admission(_limits(warning_threshold=0.8), 7.5, 7.5, 0.6)
        assert admission.allowed is True
        assert admission.warning is True
        assert admission.warning_message == "Warning: 81% of limit reached"

    def test_soft_limit_allows_overage(self):
        """Without hard stop, over-limit requests are admitted with a warning."""
        admission = evaluate_admission(_limits(hard_stop_enabled=False), 9.99, 9.99, 5.0)
        assert admission.allowed is True
        assert admission.warning is True

    def test_negative_cost_rejected(self):
        with pytest.raises(ValidationError):
            evaluate_admission(_limits(), 0.0, 0.0, -1.0)

    def test_decision_matches_projection(self):
        """Denied iff the projected daily or monthly total exceeds its limit."""
        rng = random.Random(2024)
        for _ in range(1000):
            limits = _limits(
                daily_limit_usd=round(rng.uniform(0, 20), 2),
                monthly_limit_usd=round(rng.uniform(0, 200), 2),
            )
            daily = round(rng.uniform(0, 25), 4)
            monthly = daily + round(rng.uniform(0, 200), 4)
            cost = round(rng.uniform(0, 5), 4)
            admission = evaluate_admission(limits, daily, monthly, cost)
            fits = (
                daily + cost <= limits.daily_limit_usd
                and monthly + cost <= limits.monthly_limit_usd
            )
            assert admission.allowed is fits


class TestUsageLedger:
    """Tests for records, totals and reservations."""

    def test_totals_sum_records(self, ledger):
        ledger.record("u1", 0.25, 100, 50, provider="openai", model="gpt-4o")
        ledger.record("u1", 0.5)
        ledger.record("u2", 3.0)
        assert ledger.totals("u1") == (pytest.approx(0.75), pytest.approx(0.75))

    def test_new_day_starts_from_zero(self, backend):
        clock = FakeClock(datetime(2026, 3, 31, 23, 0, tzinfo=UTC))
        ledger = UsageLedger(backend, clock=clock)
        ledger.record("u1", 2.0)
        clock.now = datetime(2026, 4, 1, 0, 30, tzinfo=UTC)
        ledger.record("u1", 1.0)
        assert ledger.totals("u1") == (pytest.approx(1.0), pytest.approx(1.0))

        clock.now = datetime(2026, 4, 2, 9, 0, tzinfo=UTC)
        daily, monthly = ledger.totals("u1")
        assert daily == 0.0
        assert monthly == pytest.approx(1.0)

    def test_reservation_counts_until_settled(self, ledger):
        admission = ledger.reserve_if(
            "u1", 2.0, lambda d, m: evaluate_admission(_limits(), d, m, 2.0)
        )
        assert admission.reservation_id
        assert ledger.totals("u1") == (pytest.approx(2.0), pytest.approx(2.0))
        assert ledger.totals("u1", include_reserved=False) == (0.0, 0.0)

        ledger.record("u1", 1.5, reservation_id=admission.reservation_id)
        assert ledger.totals("u1") == (pytest.approx(1.5), pytest.approx(1.5))

    def test_release(self, ledger):
        admission = ledger.reserve_if(
            "u1", 2.0, lambda d, m: evaluate_admission(_limits(), d, m, 2.0)
        )
        ledger.release("u1", admission.reservation_id)
        assert ledger.totals("u1") == (0.0, 0.0)

    def test_stale_reservations_expire(self, backend):
        clock = FakeClock(datetime(2026, 5, 10, 8, 0, tzinfo=UTC))
        ledger = UsageLedger(backend, clock=clock, reservation_ttl=timedelta(minutes=30))
        ledger.reserve_if("u1", 4.0, lambda d, m: evaluate_admission(_limits(), d, m, 4.0))
        clock.now += timedelta(hours=1)
        assert ledger.totals("u1") == (0.0, 0.0)

    def test_list_records(self, ledger):
        ledger.record("u1", 0.1, 10, 5, execution_id="e1", step_id="s1")
        records = ledger.list_records("u1")
        assert len(records) == 1
        assert records[0].total_tokens == 15
        assert records[0].execution_id == "e1"


class TestSpendGuard:
    """Tests for limits, admission and reporting."""

    def test_default_limits_created(self, guard):
        limits = guard.get_limits("new-user")
        assert limits.daily_limit_usd == 10.0
        assert limits.monthly_limit_usd == 100.0
        assert limits.warning_threshold == 0.8
        assert limits.hard_stop_enabled is True
        assert limits.auto_pause_workflows is True

    def test_settings_defaults(self, ledger):
        guard = SpendGuard(ledger, settings=Settings(default_daily_limit_usd=2.5))
        assert guard.get_limits("u1").daily_limit_usd == 2.5

    def test_update_limits_partial(self, guard):
        guard.update_limits("u1", UsageLimitsUpdate(daily_limit_usd=3.0))
        limits = guard.update_limits("u1", {"hard_stop_enabled": False})
        assert limits.daily_limit_usd == 3.0
        assert limits.hard_stop_enabled is False
        assert guard.get_limits("u1").daily_limit_usd == 3.0

    def test_update_limits_validates(self, guard):
        with pytest.raises(ValueError):
            guard.update_limits("u1", {"warning_threshold": 1.5})

    def test_reserve_holds_capacity(self, guard):
        guard.update_limits("u1", {"daily_limit_usd": 10.0})
        first = guard.reserve("u1", 6.0)
        second = guard.reserve("u1", 6.0)
        assert first.allowed is True
        assert second.allowed is False
        assert second.reservation_id is None

        guard.release("u1", first.reservation_id)
        assert guard.reserve("u1", 6.0).allowed is True

    def test_check_admission_reserves_nothing(self, guard):
        assert guard.check_admission("u1", 6.0).allowed is True
        assert guard.check_admission("u1", 6.0).allowed is True
        assert guard.ledger.totals("u1") == (0.0, 0.0)

    def test_admission_follows_recorded_spend(self, guard):
        """Sequential admissions agree with a running total model."""
        rng = random.Random(7)
        guard.update_limits("u1", {"daily_limit_usd": 5.0, "monthly_limit_usd": 50.0})
        spent = 0.0
        for _ in range(60):
            cost = round(rng.uniform(0.01, 0.5), 4)
            admission = guard.reserve("u1", cost)
            assert admission.allowed is (spent + cost <= 5.0 + 1e-9)
            if admission.allowed:
                guard.record_usage("u1", cost, reservation_id=admission.reservation_id)
                spent += cost
        assert guard.ledger.totals("u1")[0] == pytest.approx(spent)
        assert spent <= 5.0 + 1e-9

    def test_warning_callback_on_threshold_crossing(self, ledger):
        calls = []
        guard = SpendGuard(ledger, on_warning=lambda user, stats: calls.append((user, stats)))
        guard.update_limits("u1", {"daily_limit_usd": 1.0})
        guard.record_usage("u1", 0.5)
        assert calls == []
        guard.record_usage("u1", 0.35)
        assert len(calls) == 1
        assert calls[0][0] == "u1"
        assert calls[0][1].status == UsageStatus.WARNING.value
        guard.record_usage("u1", 0.01)
        assert len(calls) == 1

    def test_usage_stats(self, guard):
        guard.update_limits("u1", {"daily_limit_usd": 1.0, "monthly_limit_usd": 100.0})
        guard.record_usage("u1", 0.96, 300, 100)
        stats = guard.get_usage_stats("u1")
        assert stats.today.cost == pytest.approx(0.96)
        assert stats.today.requests == 1
        assert stats.today.tokens == 400
        assert stats.today.percentage == pytest.approx(96.0)
        assert stats.today.remaining == pytest.approx(0.04)
        assert stats.status == UsageStatus.LIMIT_REACHED.value

    def test_usage_stats_safe(self, guard):
        assert guard.get_usage_stats("u1").status == "safe"

    def test_predict_workflow_cost(self, guard):
        guard.update_limits("u1", {"daily_limit_usd": 1.0})
        guard.record_usage("u1", 0.9)
        prediction = guard.predict_workflow_cost("u1", 0.2, 5000)
        assert prediction.will_exceed_daily is True
        assert prediction.will_exceed_monthly is False
        assert prediction.estimated_tokens == 5000
        assert "daily" in prediction.recommendation

        assert guard.predict_workflow_cost("u2", 0.01).recommendation == (
            "Workflow cost is within limits"
        )

    def test_usage_breakdown(self, backend):
        clock = FakeClock(datetime(2026, 6, 10, 12, 0, tzinfo=UTC))
        guard = SpendGuard(UsageLedger(backend, clock=clock))
        for day, cost in ((1, 0.1), (2, 0.1), (9, 0.5), (10, 0.6)):
            clock.now = datetime(2026, 6, day, 12, 0, tzinfo=UTC)
            guard.record_usage("u1", cost, 10, 10, provider="openai", model="gpt-4o")
        guard.record_usage("u1", 0.2, provider="anthropic", model="claude-3-haiku-20240307")

        breakdown = guard.get_usage_breakdown("u1", days=30)
        assert [d.day for d in breakdown.daily] == [
            "2026-06-01",
            "2026-06-02",
            "2026-06-09",
            "2026-06-10",
        ]
        assert breakdown.total_cost == pytest.approx(1.5)
        assert breakdown.providers["openai"].requests == 4
        assert breakdown.models["claude-3-haiku-20240307"].cost == pytest.approx(0.2)
        assert breakdown.cost_trend == "up"


class TestConcurrentAdmission:
    """Concurrent reservations can never jointly exceed a limit."""

    def _race(self, guards, attempts, cost):
        barrier = threading.Barrier(attempts)
        results = []
        lock = threading.Lock()

        def attempt(index):
            guard = guards[index % len(guards)]
            barrier.wait()
            admission = guard.reserve("racer", cost)
            with lock:
                results.append(admission)

        threads = [threading.Thread(target=attempt, args=(i,)) for i in range(attempts)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        return results

    def test_threads_share_one_ledger(self, tmp_path):
        backend = SQLiteBackend(db_path=str(tmp_path / "usage.db"))
        guard = SpendGuard(UsageLedger(backend))
        guard.update_limits("racer", {"daily_limit_usd": 10.0})

        results = self._race([guard], attempts=8, cost=3.0)

        assert sum(r.allowed for r in results) == 3
        assert guard.ledger.totals("racer")[0] == pytest.approx(9.0)

    def test_separate_ledgers_on_one_database(self, tmp_path):
        """Two ledger instances (as two processes would) still serialize."""
        path = str(tmp_path / "usage.db")
        guards = [SpendGuard(UsageLedger(SQLiteBackend(db_path=path))) for _ in range(2)]
        guards[0].update_limits("racer", {"daily_limit_usd": 10.0})

        results = self._race(guards, attempts=6, cost=4.0)

        assert sum(r.allowed for r in results) == 2
        assert guards[1].ledger.totals("racer")[0] == pytest.approx(8.0)

    def test_memory_backend_threads(self, guard):
        guard.update_limits("racer", {"daily_limit_usd": 1.0})
        results = self._race([guard], attempts=10, cost=0.25)
        assert sum(r.allowed for r in results) == 4
