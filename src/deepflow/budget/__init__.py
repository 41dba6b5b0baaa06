"""Spend guard and usage ledger."""

from .guard import SpendGuard, evaluate_admission
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

__all__ = [
    "DEFAULT_DAILY_LIMIT_USD",
    "DEFAULT_MONTHLY_LIMIT_USD",
    "DEFAULT_WARNING_THRESHOLD",
    "Admission",
    "BreakdownEntry",
    "CostPrediction",
    "DailyUsage",
    "PeriodUsage",
    "SpendGuard",
    "UsageBreakdown",
    "UsageLedger",
    "UsageLimits",
    "UsageLimitsUpdate",
    "UsageRecord",
    "UsageStats",
    "UsageStatus",
    "evaluate_admission",
]
