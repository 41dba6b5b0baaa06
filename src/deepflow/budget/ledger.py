"""Durable usage ledger.

Usage records are append-only. Daily and monthly totals are sums over the
records of the current UTC day and month plus any live reservations, so a new
period starts from zero without a rollover job.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import uuid
from collections.abc import Callable, Generator
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta

from deepflow.errors import PersistenceError
from deepflow.state.backends import DatabaseBackend

from .models import Admission, UsageLimits, UsageRecord

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

# Reservations left behind by a crashed process stop counting after this
DEFAULT_RESERVATION_TTL = timedelta(hours=1)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class UsageLedger:
    """SQL-backed usage records, reservations and per-user limits.

    Check-and-reserve and settle operations run under a per-user lock inside
    an immediate (write-locking) transaction, so concurrent admissions for the
    same user are strictly serialized even across processes.
    """

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS usage_limits (
            user_id TEXT PRIMARY KEY,
            daily_limit_usd REAL NOT NULL,
            monthly_limit_usd REAL NOT NULL,
            warning_threshold REAL NOT NULL,
            hard_stop_enabled INTEGER NOT NULL,
            auto_pause_workflows INTEGER NOT NULL,
            notification_enabled INTEGER NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS usage_records (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            execution_id TEXT,
            step_id TEXT,
            provider TEXT,
            model TEXT,
            input_tokens INTEGER NOT NULL DEFAULT 0,
            output_tokens INTEGER NOT NULL DEFAULT 0,
            cost_usd REAL NOT NULL DEFAULT 0,
            day TEXT NOT NULL,
            month TEXT NOT NULL,
            created_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_usage_records_user_day
        ON usage_records(user_id, day);

        CREATE INDEX IF NOT EXISTS idx_usage_records_user_month
        ON usage_records(user_id, month);

        CREATE TABLE IF NOT EXISTS usage_reservations (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            amount_usd REAL NOT NULL,
            day TEXT NOT NULL,
            month TEXT NOT NULL,
            created_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_usage_reservations_user
        ON usage_reservations(user_id);
    """

    def __init__(
        self,
        backend: DatabaseBackend,
        clock: Clock | None = None,
        reservation_ttl: timedelta = DEFAULT_RESERVATION_TTL,
    ):
        self.backend = backend
        self._clock = clock or _utcnow
        self._reservation_ttl = reservation_ttl
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self.backend.executescript(self.SCHEMA)

    # =========================================================================
    # Periods and locking
    # =========================================================================

    def now(self) -> datetime:
        return self._clock()

    def _periods(self) -> tuple[str, str, datetime]:
        now = self._clock()
        return now.strftime("%Y-%m-%d"), now.strftime("%Y-%m"), now

    def _user_lock(self, user_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(user_id, threading.Lock())

    @contextmanager
    def _serialized(self, user_id: str) -> Generator[None, None, None]:
        """Per-user lock plus a write-locking transaction."""
        with self._user_lock(user_id):
            try:
                with self.backend.transaction(immediate=True):
                    yield
            except sqlite3.Error as e:
                raise PersistenceError(f"Usage ledger write failed: {e}") from e

    # =========================================================================
    # Limits
    # =========================================================================

    def get_limits(self, user_id: str) -> UsageLimits | None:
        row = self.backend.fetchone("SELECT * FROM usage_limits WHERE user_id = ?", (user_id,))
        return _limits_from_row(row) if row else None

    def ensure_limits(self, defaults: UsageLimits) -> UsageLimits:
        """Return stored limits, creating them from ``defaults`` on first use."""
        existing = self.get_limits(defaults.user_id)
        if existing:
            return existing
        with self._serialized(defaults.user_id):
            self.backend.execute(
                """
                INSERT OR IGNORE INTO usage_limits (
                    user_id, daily_limit_usd, monthly_limit_usd, warning_threshold,
                    hard_stop_enabled, auto_pause_workflows, notification_enabled,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                _limits_params(defaults),
            )
        return self.get_limits(defaults.user_id) or defaults

    def save_limits(self, limits: UsageLimits) -> UsageLimits:
        """Insert or replace a user's limits."""
        with self._serialized(limits.user_id):
            self.backend.execute(
                """
                INSERT INTO usage_limits (
                    user_id, daily_limit_usd, monthly_limit_usd, warning_threshold,
                    hard_stop_enabled, auto_pause_workflows, notification_enabled,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    daily_limit_usd = excluded.daily_limit_usd,
                    monthly_limit_usd = excluded.monthly_limit_usd,
                    warning_threshold = excluded.warning_threshold,
                    hard_stop_enabled = excluded.hard_stop_enabled,
                    auto_pause_workflows = excluded.auto_pause_workflows,
                    notification_enabled = excluded.notification_enabled,
                    updated_at = excluded.updated_at
                """,
                _limits_params(limits),
            )
        return limits

    # =========================================================================
    # Totals
    # =========================================================================

    def totals(self, user_id: str, include_reserved: bool = True) -> tuple[float, float]:
        """Current (daily, monthly) spend in USD."""
        day, month, now = self._periods()
        daily = self._sum("usage_records", "cost_usd", user_id, "day", day)
        monthly = self._sum("usage_records", "cost_usd", user_id, "month", month)
        if include_reserved:
            cutoff = (now - self._reservation_ttl).isoformat()
            daily += self._sum("usage_reservations", "amount_usd", user_id, "day", day, cutoff)
            monthly += self._sum(
                "usage_reservations", "amount_usd", user_id, "month", month, cutoff
            )
        return daily, monthly

    def _sum(
        self,
        table: str,
        column: str,
        user_id: str,
        period_column: str,
        period: str,
        created_after: str | None = None,
    ) -> float:
        query = (
            f"SELECT COALESCE(SUM({column}), 0) AS total FROM {table} "
            f"WHERE user_id = ? AND {period_column} = ?"
        )
        params: tuple = (user_id, period)
        if created_after:
            query += " AND created_at >= ?"
            params += (created_after,)
        row = self.backend.fetchone(query, params)
        return float(row["total"]) if row else 0.0

    def period_stats(self, user_id: str, period_column: str) -> dict:
        """Cost, request count and tokens for the current day or month."""
        day, month, _ = self._periods()
        period = day if period_column == "day" else month
        row = self.backend.fetchone(
            f"""
            SELECT COALESCE(SUM(cost_usd), 0) AS cost,
                   COUNT(*) AS requests,
                   COALESCE(SUM(input_tokens + output_tokens), 0) AS tokens
            FROM usage_records
            WHERE user_id = ? AND {period_column} = ?
            """,
            (user_id, period),
        )
        return row or {"cost": 0.0, "requests": 0, "tokens": 0}

    # =========================================================================
    # Reservations and records
    # =========================================================================

    def reserve_if(
        self,
        user_id: str,
        amount: float,
        decide: Callable[[float, float], Admission],
    ) -> Admission:
        """Atomically evaluate ``decide(daily, monthly)`` and hold ``amount``.

        The totals read, the decision, and the reservation insert happen in
        one serialized section; an allowed admission carries the
        ``reservation_id`` that must later be settled or released.
        """
        with self._serialized(user_id):
            daily, monthly = self.totals(user_id)
            admission = decide(daily, monthly)
            if admission.allowed:
                day, month, now = self._periods()
                reservation_id = str(uuid.uuid4())
                self.backend.execute(
                    """
                    INSERT INTO usage_reservations (id, user_id, amount_usd, day, month, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (reservation_id, user_id, amount, day, month, now.isoformat()),
                )
                admission = admission.model_copy(update={"reservation_id": reservation_id})
        return admission

    def release(self, user_id: str, reservation_id: str) -> None:
        with self._serialized(user_id):
            self.backend.execute(
                "DELETE FROM usage_reservations WHERE id = ? AND user_id = ?",
                (reservation_id, user_id),
            )

    def record(
        self,
        user_id: str,
        cost_usd: float,
        input_tokens: int = 0,
        output_tokens: int = 0,
        *,
        provider: str | None = None,
        model: str | None = None,
        execution_id: str | None = None,
        step_id: str | None = None,
        reservation_id: str | None = None,
    ) -> UsageRecord:
        """Append a usage record, settling its reservation in the same transaction."""
        day, month, now = self._periods()
        record = UsageRecord(
            id=str(uuid.uuid4()),
            user_id=user_id,
            cost_usd=cost_usd,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            provider=provider,
            model=model,
            execution_id=execution_id,
            step_id=step_id,
            created_at=now,
        )
        with self._serialized(user_id):
            if reservation_id:
                self.backend.execute(
                    "DELETE FROM usage_reservations WHERE id = ? AND user_id = ?",
                    (reservation_id, user_id),
                )
            self.backend.execute(
                """
                INSERT INTO usage_records (
                    id, user_id, execution_id, step_id, provider, model,
                    input_tokens, output_tokens, cost_usd, day, month, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    user_id,
                    execution_id,
                    step_id,
                    provider,
                    model,
                    input_tokens,
                    output_tokens,
                    cost_usd,
                    day,
                    month,
                    now.isoformat(),
                ),
            )
        logger.debug(
            "Recorded $%.6f for user %s (%s/%s)",
            cost_usd,
            user_id,
            provider,
            model,
            extra={"user_id": user_id, "cost_usd": cost_usd},
        )
        return record

    def list_records(
        self, user_id: str, since_day: str | None = None, limit: int | None = None
    ) -> list[UsageRecord]:
        query = "SELECT * FROM usage_records WHERE user_id = ?"
        params: tuple = (user_id,)
        if since_day:
            query += " AND day >= ?"
            params += (since_day,)
        query += " ORDER BY created_at DESC"
        if limit:
            query += " LIMIT ?"
            params += (limit,)
        return [
            UsageRecord(
                id=row["id"],
                user_id=row["user_id"],
                cost_usd=row["cost_usd"],
                input_tokens=row["input_tokens"],
                output_tokens=row["output_tokens"],
                provider=row["provider"],
                model=row["model"],
                execution_id=row["execution_id"],
                step_id=row["step_id"],
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in self.backend.fetchall(query, params)
        ]


def _limits_params(limits: UsageLimits) -> tuple:
    return (
        limits.user_id,
        limits.daily_limit_usd,
        limits.monthly_limit_usd,
        limits.warning_threshold,
        int(limits.hard_stop_enabled),
        int(limits.auto_pause_workflows),
        int(limits.notification_enabled),
        limits.created_at.isoformat(),
        limits.updated_at.isoformat(),
    )


def _limits_from_row(row: dict) -> UsageLimits:
    return UsageLimits(
        user_id=row["user_id"],
        daily_limit_usd=row["daily_limit_usd"],
        monthly_limit_usd=row["monthly_limit_usd"],
        warning_threshold=row["warning_threshold"],
        hard_stop_enabled=bool(row["hard_stop_enabled"]),
        auto_pause_workflows=bool(row["auto_pause_workflows"]),
        notification_enabled=bool(row["notification_enabled"]),
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )
