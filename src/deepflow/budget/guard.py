"""Spend guard: admission control against per-user limits."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import timedelta
from typing import TYPE_CHECKING

from deepflow.errors import ValidationError

from .ledger import UsageLedger
from .models import (
    DEFAULT_DAILY_LIMIT_USD,
    DEFAULT_MONTHLY_LIMIT_USD,
    DEFAULT_WARNING_THRESHOLD,
    Admission,
    BreakdownEntry,
    CostPrediction,
    DailyUsage,
    PeriodUsage,
    UsageBreakdown,
    UsageLimits,
    UsageLimitsUpdate,
    UsageRecord,
    UsageStats,
    UsageStatus,
)

if TYPE_CHECKING:
    from deepflow.config import Settings

logger = logging.getLogger(__name__)

WarningCallback = Callable[[str, UsageStats], None]

# Relative change between window halves that counts as a trend
_TREND_THRESHOLD = 0.10


def evaluate_admission(
    limits: UsageLimits, daily_usage: float, monthly_usage: float, estimated_cost: float
) -> Admission:
    """Decide admission from current totals; no I/O.

    With hard stop enabled a request is denied iff it would push the daily
    or monthly total above its limit. Without hard stop it is always allowed
    and only flagged once a warning threshold is crossed.
    """
    if estimated_cost < 0:
        raise ValidationError("Estimated cost must be non-negative")

    projected_daily = daily_usage + estimated_cost
    projected_monthly = monthly_usage + estimated_cost
    base = {
        "estimated_cost": estimated_cost,
        "daily_usage": daily_usage,
        "monthly_usage": monthly_usage,
    }

    if limits.hard_stop_enabled:
        if projected_daily > limits.daily_limit_usd:
            return Admission(
                allowed=False,
                reason=f"Request would exceed daily limit (${limits.daily_limit_usd:.2f})",
                suggestion=(
                    f"Current usage: ${daily_usage:.4f}, Request cost: ${estimated_cost:.4f}"
                ),
                **base,
            )
        if projected_monthly > limits.monthly_limit_usd:
            return Admission(
                allowed=False,
                reason=f"Request would exceed monthly limit (${limits.monthly_limit_usd:.2f})",
                suggestion=(
                    f"Current usage: ${monthly_usage:.4f}, Request cost: ${estimated_cost:.4f}"
                ),
                **base,
            )

    fraction = max(
        _fraction(projected_daily, limits.daily_limit_usd),
        _fraction(projected_monthly, limits.monthly_limit_usd),
    )
    if fraction >= limits.warning_threshold:
        return Admission(
            allowed=True,
            warning=True,
            warning_message=f"Warning: {fraction * 100:.0f}% of limit reached",
            **base,
        )
    return Admission(allowed=True, **base)


def _fraction(used: float, limit: float) -> float:
    if limit <= 0:
        return 1.0 if used > 0 else 0.0
    return used / limit


class SpendGuard:
    """Per-user admission control backed by a :class:`UsageLedger`.

    Args:
        ledger: Usage ledger holding records, reservations and limits
        settings: Source of the default limits for users without stored ones
        on_warning: Called with ``(user_id, stats)`` when recorded usage
            crosses the user's warning threshold
    """

    def __init__(
        self,
        ledger: UsageLedger,
        settings: Settings | None = None,
        on_warning: WarningCallback | None = None,
    ):
        self.ledger = ledger
        self._default_daily = (
            settings.default_daily_limit_usd if settings else DEFAULT_DAILY_LIMIT_USD
        )
        self._default_monthly = (
            settings.default_monthly_limit_usd if settings else DEFAULT_MONTHLY_LIMIT_USD
        )
        self._default_threshold = (
            settings.default_warning_threshold if settings else DEFAULT_WARNING_THRESHOLD
        )
        self._on_warning = on_warning

    # =========================================================================
    # Limits
    # =========================================================================

    def get_limits(self, user_id: str) -> UsageLimits:
        """Stored limits, created from the defaults on first use."""
        return self.ledger.ensure_limits(
            UsageLimits(
                user_id=user_id,
                daily_limit_usd=self._default_daily,
                monthly_limit_usd=self._default_monthly,
                warning_threshold=self._default_threshold,
            )
        )

    def update_limits(self, user_id: str, update: UsageLimitsUpdate | dict) -> UsageLimits:
        if isinstance(update, dict):
            update = UsageLimitsUpdate(**update)
        current = self.get_limits(user_id)
        changes = update.model_dump(exclude_none=True)
        limits = UsageLimits.model_validate(
            {**current.model_dump(), **changes, "updated_at": self.ledger.now()}
        )
        logger.info("Updated usage limits for user %s: %s", user_id, changes)
        return self.ledger.save_limits(limits)

    # =========================================================================
    # Admission
    # =========================================================================

    def check_admission(self, user_id: str, estimated_cost: float) -> Admission:
        """Read-only admission decision (nothing is reserved)."""
        limits = self.get_limits(user_id)
        daily, monthly = self.ledger.totals(user_id)
        return evaluate_admission(limits, daily, monthly, estimated_cost)

    def reserve(self, user_id: str, estimated_cost: float) -> Admission:
        """Admit and hold ``estimated_cost`` in one atomic step.

        Concurrent callers for the same user are serialized, so two requests
        that only fit the limit one at a time can never both be admitted.
        """
        limits = self.get_limits(user_id)
        admission = self.ledger.reserve_if(
            user_id,
            estimated_cost,
            lambda daily, monthly: evaluate_admission(limits, daily, monthly, estimated_cost),
        )
        if not admission.allowed:
            logger.info(
                "Admission denied for user %s: %s",
                user_id,
                admission.reason,
                extra={"user_id": user_id, "cost_usd": estimated_cost},
            )
        elif admission.warning:
            logger.warning("User %s: %s", user_id, admission.warning_message)
        return admission

    def release(self, user_id: str, reservation_id: str | None) -> None:
        if reservation_id:
            self.ledger.release(user_id, reservation_id)

    def record_usage(
        self,
        user_id: str,
        cost_usd: float,
        input_tokens: int = 0,
        output_tokens: int = 0,
        **kwargs,
    ) -> UsageRecord:
        """Append usage (settling ``reservation_id`` if given) and check thresholds."""
        limits = self.get_limits(user_id)
        before_daily, before_monthly = self.ledger.totals(user_id, include_reserved=False)
        record = self.ledger.record(user_id, cost_usd, input_tokens, output_tokens, **kwargs)
        after_daily, after_monthly = before_daily + cost_usd, before_monthly + cost_usd

        threshold = limits.warning_threshold
        crossed = (
            _fraction(before_daily, limits.daily_limit_usd) < threshold
            <= _fraction(after_daily, limits.daily_limit_usd)
        ) or (
            _fraction(before_monthly, limits.monthly_limit_usd) < threshold
            <= _fraction(after_monthly, limits.monthly_limit_usd)
        )
        if crossed and limits.notification_enabled:
            stats = self.get_usage_stats(user_id)
            logger.warning(
                "User %s crossed %.0f%% of their spend limit",
                user_id,
                threshold * 100,
                extra={"user_id": user_id},
            )
            if self._on_warning:
                self._on_warning(user_id, stats)
        return record

    # =========================================================================
    # Reporting
    # =========================================================================

    def get_usage_stats(self, user_id: str) -> UsageStats:
        limits = self.get_limits(user_id)
        today = _period_usage(self.ledger.period_stats(user_id, "day"), limits.daily_limit_usd)
        month = _period_usage(
            self.ledger.period_stats(user_id, "month"), limits.monthly_limit_usd
        )

        worst = max(today.percentage, month.percentage) / 100
        if worst >= 1:
            status = UsageStatus.EXCEEDED
        elif worst >= 0.95:
            status = UsageStatus.LIMIT_REACHED
        elif worst >= limits.warning_threshold:
            status = UsageStatus.WARNING
        else:
            status = UsageStatus.SAFE
        return UsageStats(user_id=user_id, today=today, this_month=month, status=status)

    def predict_workflow_cost(
        self, user_id: str, estimated_cost: float, estimated_tokens: int = 0
    ) -> CostPrediction:
        """Project a workflow's cost against the user's remaining budget."""
        limits = self.get_limits(user_id)
        daily, monthly = self.ledger.totals(user_id)
        will_exceed_daily = daily + estimated_cost > limits.daily_limit_usd
        will_exceed_monthly = monthly + estimated_cost > limits.monthly_limit_usd

        if will_exceed_daily or will_exceed_monthly:
            period = "daily" if will_exceed_daily else "monthly"
            recommendation = (
                f"Workflow would exceed the {period} limit; raise the limit or "
                "choose cheaper models"
            )
        elif daily + estimated_cost >= limits.daily_limit_usd * limits.warning_threshold:
            recommendation = "Workflow fits but brings daily usage near the limit"
        else:
            recommendation = "Workflow cost is within limits"

        return CostPrediction(
            estimated_tokens=estimated_tokens,
            estimated_cost=estimated_cost,
            will_exceed_daily=will_exceed_daily,
            will_exceed_monthly=will_exceed_monthly,
            recommendation=recommendation,
        )

    def get_usage_breakdown(self, user_id: str, days: int = 30) -> UsageBreakdown:
        """Per-day, per-provider and per-model usage for the trailing window."""
        start = (self.ledger.now() - timedelta(days=days - 1)).strftime("%Y-%m-%d")
        records = self.ledger.list_records(user_id, since_day=start)

        breakdown = UsageBreakdown(user_id=user_id, days=days)
        daily: dict[str, DailyUsage] = {}
        for record in records:
            day = record.created_at.strftime("%Y-%m-%d")
            entries = (
                daily.setdefault(day, DailyUsage(day=day)),
                breakdown.providers.setdefault(record.provider or "unknown", BreakdownEntry()),
                breakdown.models.setdefault(record.model or "unknown", BreakdownEntry()),
            )
            for entry in entries:
                entry.requests += 1
                entry.tokens += record.total_tokens
                entry.cost += record.cost_usd
            breakdown.total_cost += record.cost_usd

        breakdown.daily = sorted(daily.values(), key=lambda d: d.day)
        breakdown.cost_trend = _cost_trend(breakdown.daily)
        return breakdown


def _period_usage(stats: dict, limit: float) -> PeriodUsage:
    cost = float(stats["cost"])
    return PeriodUsage(
        cost=cost,
        requests=int(stats["requests"]),
        tokens=int(stats["tokens"]),
        limit=limit,
        percentage=_fraction(cost, limit) * 100,
        remaining=max(limit - cost, 0.0),
    )


def _cost_trend(daily: list[DailyUsage]) -> str:
    """Compare the later half of the window with the earlier half."""
    if len(daily) < 2:
        return "stable"
    middle = len(daily) // 2
    earlier = sum(d.cost for d in daily[:middle])
    later = sum(d.cost for d in daily[middle:])
    if earlier == 0:
        return "up" if later > 0 else "stable"
    change = (later - earlier) / earlier
    if change > _TREND_THRESHOLD:
        return "up"
    if change < -_TREND_THRESHOLD:
        return "down"
    return "stable"
