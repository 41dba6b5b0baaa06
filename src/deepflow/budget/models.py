"""Pydantic models for spend limits and usage accounting."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

# Applied when a user has never stored limits; absence never means unlimited
DEFAULT_DAILY_LIMIT_USD = 10.0
DEFAULT_MONTHLY_LIMIT_USD = 100.0
DEFAULT_WARNING_THRESHOLD = 0.8


def _utcnow() -> datetime:
    return datetime.now(UTC)


class UsageStatus(str, Enum):
    """Spend status relative to the tighter of the daily/monthly limits."""

    SAFE = "safe"
    WARNING = "warning"
    LIMIT_REACHED = "limit_reached"
    EXCEEDED = "exceeded"


class UsageLimits(BaseModel):
    """Per-user spend ceilings."""

    user_id: str
    daily_limit_usd: float = Field(DEFAULT_DAILY_LIMIT_USD, ge=0)
    monthly_limit_usd: float = Field(DEFAULT_MONTHLY_LIMIT_USD, ge=0)
    warning_threshold: float = Field(
        DEFAULT_WARNING_THRESHOLD, gt=0, le=1, description="Fraction of a limit that warns"
    )
    hard_stop_enabled: bool = True
    auto_pause_workflows: bool = True
    notification_enabled: bool = True
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class UsageLimitsUpdate(BaseModel):
    """Partial update of a user's limits."""

    daily_limit_usd: float | None = Field(default=None, ge=0)
    monthly_limit_usd: float | None = Field(default=None, ge=0)
    warning_threshold: float | None = Field(default=None, gt=0, le=1)
    hard_stop_enabled: bool | None = None
    auto_pause_workflows: bool | None = None
    notification_enabled: bool | None = None


class UsageRecord(BaseModel):
    """One append-only usage entry (one step execution)."""

    id: str
    user_id: str
    cost_usd: float = Field(ge=0)
    input_tokens: int = Field(0, ge=0)
    output_tokens: int = Field(0, ge=0)
    provider: str | None = None
    model: str | None = None
    execution_id: str | None = None
    step_id: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class Admission(BaseModel):
    """Outcome of an admission check."""

    allowed: bool
    estimated_cost: float
    daily_usage: float = 0.0
    monthly_usage: float = 0.0
    reason: str | None = None
    suggestion: str | None = None
    warning: bool = False
    warning_message: str | None = None
    reservation_id: str | None = None


class PeriodUsage(BaseModel):
    """Spend within one period (today or this month)."""

    cost: float = 0.0
    requests: int = 0
    tokens: int = 0
    limit: float = 0.0
    percentage: float = 0.0
    remaining: float = 0.0


class UsageStats(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    user_id: str
    today: PeriodUsage
    this_month: PeriodUsage
    status: UsageStatus


class CostPrediction(BaseModel):
    """Projected effect of running a workflow."""

    estimated_tokens: int
    estimated_cost: float
    will_exceed_daily: bool
    will_exceed_monthly: bool
    recommendation: str


class BreakdownEntry(BaseModel):
    requests: int = 0
    tokens: int = 0
    cost: float = 0.0


class DailyUsage(BreakdownEntry):
    day: str


class UsageBreakdown(BaseModel):
    """Usage analytics over a trailing window of days."""

    user_id: str
    days: int
    total_cost: float = 0.0
    daily: list[DailyUsage] = Field(default_factory=list)
    providers: dict[str, BreakdownEntry] = Field(default_factory=dict)
    models: dict[str, BreakdownEntry] = Field(default_factory=dict)
    cost_trend: str = "stable"
