"""
Repository pattern for data access.

Defines the store interface the metering engine depends on and the
SQLite reference implementation used by the CLI and tests.
"""

import json
import sqlite3
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional

from ai_cost_meter.core.errors import PersistenceError

from .db import DEFAULT_DB_PATH, get_connection
from .models import (
    PricingRecord,
    QuotaDefinition,
    QuotaPeriod,
    QuotaViolation,
    UsageRecord,
    UsageSummary,
    advance_reset,
    from_iso,
    to_iso,
    utcnow,
)


class MeteringStore(ABC):
    """Authoritative store behind the metering engine.

    Implementations must make ``log_usage`` atomic: the usage row and the
    quota counter increments either all land or none do, and concurrent
    increments are never lost.
    """

    @abstractmethod
    def latest_pricing(self, provider: str, model: str, as_of: date) -> Optional[PricingRecord]:
        """Most recent pricing with ``effective_date <= as_of``."""

    @abstractmethod
    def add_pricing(self, record: PricingRecord) -> None:
        """Append a pricing version."""

    @abstractmethod
    def get_quotas(
        self, organization_id: str, provider: str, model: str, as_of: datetime
    ) -> List[QuotaDefinition]:
        """Live quotas that apply to a call against provider/model."""

    @abstractmethod
    def put_quota(self, quota: QuotaDefinition) -> QuotaDefinition:
        """Create or replace the quota for a scope and period."""

    @abstractmethod
    def log_usage(self, record: UsageRecord) -> str:
        """Insert a usage record and increment matching quota counters atomically."""

    @abstractmethod
    def insert_violation(self, violation: QuotaViolation) -> None:
        """Append a quota violation audit row."""

    @abstractmethod
    def fetch_usage_records(self, organization_id: str, limit: int = 100) -> List[UsageRecord]:
        """Recent usage records, newest first."""

    @abstractmethod
    def fetch_violations(self, organization_id: str, limit: int = 100) -> List[QuotaViolation]:
        """Recent violations, newest first."""

    @abstractmethod
    def usage_summary(self, organization_id: str, start: datetime, end: datetime) -> UsageSummary:
        """Aggregate usage over a window."""

    @abstractmethod
    def reset_expired_quotas(self, now: Optional[datetime] = None) -> int:
        """Zero counters of quotas whose reset boundary has passed."""


class SQLiteMeteringStore(MeteringStore):
    """SQLite-backed metering store.

    Every operation opens its own connection, so one instance can be
    shared between threads. Counter increments run inside
    ``BEGIN IMMEDIATE`` transactions and use ``current_usage + ?`` so
    concurrent writers serialize on the database lock instead of
    overwriting each other.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the store with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    # -- pricing -----------------------------------------------------

    def latest_pricing(self, provider: str, model: str, as_of: date) -> Optional[PricingRecord]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("""
                SELECT provider, model, effective_date,
                       input_cost_per_1k_tokens, output_cost_per_1k_tokens
                FROM cost_estimates
                WHERE provider = ? AND model = ? AND effective_date <= ?
                ORDER BY effective_date DESC
                LIMIT 1
            """, (provider, model, as_of.isoformat())).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        return PricingRecord(
            provider=row[0],
            model=row[1],
            effective_date=date.fromisoformat(row[2]),
            input_cost_per_1k=Decimal(row[3]),
            output_cost_per_1k=Decimal(row[4]),
        )

    def add_pricing(self, record: PricingRecord) -> None:
        """Append a pricing version.

        Raises:
            ValueError: If a price already exists for that provider, model and date
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO cost_estimates
                (provider, model, effective_date,
                 input_cost_per_1k_tokens, output_cost_per_1k_tokens, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                record.provider,
                record.model,
                record.effective_date.isoformat(),
                str(record.input_cost_per_1k),
                str(record.output_cost_per_1k),
                to_iso(utcnow()),
            ))
            conn.commit()
        except sqlite3.IntegrityError:
            raise ValueError(
                f"Pricing for {record.provider}/{record.model} effective "
                f"{record.effective_date.isoformat()} already exists"
            ) from None
        finally:
            conn.close()

    # -- quotas ------------------------------------------------------

    def get_quotas(
        self, organization_id: str, provider: str, model: str, as_of: datetime
    ) -> List[QuotaDefinition]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT id, organization_id, period, provider, model,
                       quota_limit, current_usage, reset_at, last_reset_at
                FROM usage_quotas
                WHERE organization_id = ?
                  AND (provider IS NULL OR provider = ?)
                  AND (model IS NULL OR model = ?)
                  AND reset_at > ?
                ORDER BY id
            """, (organization_id, provider, model, to_iso(as_of)))
            return [self._row_to_quota(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def put_quota(self, quota: QuotaDefinition) -> QuotaDefinition:
        conn = get_connection(self.db_path)
        now = to_iso(utcnow())
        try:
            conn.execute("BEGIN IMMEDIATE")
            cursor = conn.execute("""
                UPDATE usage_quotas
                SET quota_limit = ?, current_usage = ?, reset_at = ?,
                    last_reset_at = ?, updated_at = ?
                WHERE organization_id = ? AND period = ?
                  AND provider IS ? AND model IS ?
            """, (
                quota.limit_amount,
                quota.current_usage,
                to_iso(quota.reset_at),
                to_iso(quota.last_reset_at) if quota.last_reset_at else None,
                now,
                quota.organization_id,
                quota.period.value,
                quota.provider,
                quota.model,
            ))
            if cursor.rowcount == 0:
                conn.execute("""
                    INSERT INTO usage_quotas
                    (organization_id, period, provider, model, quota_limit,
                     current_usage, reset_at, last_reset_at, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    quota.organization_id,
                    quota.period.value,
                    quota.provider,
                    quota.model,
                    quota.limit_amount,
                    quota.current_usage,
                    to_iso(quota.reset_at),
                    to_iso(quota.last_reset_at) if quota.last_reset_at else None,
                    now,
                    now,
                ))
            row = conn.execute("""
                SELECT id, organization_id, period, provider, model,
                       quota_limit, current_usage, reset_at, last_reset_at
                FROM usage_quotas
                WHERE organization_id = ? AND period = ?
                  AND provider IS ? AND model IS ?
            """, (
                quota.organization_id, quota.period.value, quota.provider, quota.model
            )).fetchone()
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
        return self._row_to_quota(row)

    def reset_expired_quotas(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            expired = conn.execute("""
                SELECT id, period, reset_at FROM usage_quotas WHERE reset_at <= ?
            """, (to_iso(now),)).fetchall()
            for quota_id, period, reset_at in expired:
                boundary = from_iso(reset_at)
                next_boundary = boundary
                while next_boundary <= now:
                    next_boundary = advance_reset(next_boundary, QuotaPeriod(period))
                conn.execute("""
                    UPDATE usage_quotas
                    SET current_usage = 0.0, last_reset_at = ?, reset_at = ?, updated_at = ?
                    WHERE id = ?
                """, (to_iso(boundary), to_iso(next_boundary), to_iso(now), quota_id))
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
        return len(expired)

    # -- usage -------------------------------------------------------

    def log_usage(self, record: UsageRecord) -> str:
        """Insert a usage record and increment matching quota counters.

        Both writes share one transaction. The counter update is a
        relative increment evaluated by the database, never a
        read-modify-write in Python.

        Raises:
            PersistenceError: If the transaction fails
        """
        try:
            conn = get_connection(self.db_path)
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open usage store: {e}") from e
        try:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute("""
                INSERT INTO api_usage_logs
                (id, user_id, organization_id, session_id, workflow_id,
                 provider, model, input_tokens, output_tokens, total_tokens,
                 cost_usd, request_data, response_data, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.record_id,
                record.user_id,
                record.organization_id,
                record.session_id,
                record.workflow_id,
                record.provider,
                record.model,
                record.input_tokens,
                record.output_tokens,
                record.total_tokens,
                record.cost_usd,
                json.dumps(record.request_data, default=str),
                json.dumps(record.response_data, default=str),
                to_iso(record.timestamp),
            ))
            conn.execute("""
                UPDATE usage_quotas
                SET current_usage = current_usage + ?, updated_at = ?
                WHERE organization_id = ?
                  AND (provider IS NULL OR provider = ?)
                  AND (model IS NULL OR model = ?)
                  AND reset_at > ?
            """, (
                record.cost_usd,
                to_iso(utcnow()),
                record.organization_id,
                record.provider,
                record.model,
                to_iso(record.timestamp),
            ))
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"Failed to log usage: {e}") from e
        finally:
            conn.close()
        return record.record_id

    def insert_violation(self, violation: QuotaViolation) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO quota_violations
                (user_id, organization_id, provider, model, quota_type,
                 attempted_cost, current_usage, quota_limit, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                violation.user_id,
                violation.organization_id,
                violation.provider,
                violation.model,
                violation.quota_type,
                violation.attempted_cost,
                violation.current_usage,
                violation.quota_limit,
                to_iso(violation.timestamp),
            ))
            conn.commit()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to log quota violation: {e}") from e
        finally:
            conn.close()

    def fetch_usage_records(self, organization_id: str, limit: int = 100) -> List[UsageRecord]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT id, created_at, user_id, organization_id, provider, model,
                       input_tokens, output_tokens, cost_usd, session_id,
                       workflow_id, request_data, response_data
                FROM api_usage_logs
                WHERE organization_id = ?
                ORDER BY created_at DESC
                LIMIT ?
            """, (organization_id, limit))
            records = []
            for row in cursor.fetchall():
                records.append(UsageRecord(
                    record_id=row[0],
                    timestamp=from_iso(row[1]),
                    user_id=row[2],
                    organization_id=row[3],
                    provider=row[4],
                    model=row[5],
                    input_tokens=row[6],
                    output_tokens=row[7],
                    cost_usd=row[8],
                    session_id=row[9],
                    workflow_id=row[10],
                    request_data=json.loads(row[11] or "{}"),
                    response_data=json.loads(row[12] or "{}"),
                ))
            return records
        finally:
            conn.close()

    def fetch_violations(self, organization_id: str, limit: int = 100) -> List[QuotaViolation]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT created_at, organization_id, provider, model, quota_type,
                       attempted_cost, current_usage, quota_limit, user_id
                FROM quota_violations
                WHERE organization_id = ?
                ORDER BY created_at DESC
                LIMIT ?
            """, (organization_id, limit))
            return [
                QuotaViolation(
                    timestamp=from_iso(row[0]),
                    organization_id=row[1],
                    provider=row[2],
                    model=row[3],
                    quota_type=row[4],
                    attempted_cost=row[5],
                    current_usage=row[6],
                    quota_limit=row[7],
                    user_id=row[8],
                )
                for row in cursor.fetchall()
            ]
        finally:
            conn.close()

    def usage_summary(self, organization_id: str, start: datetime, end: datetime) -> UsageSummary:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT provider, model, substr(created_at, 1, 10) AS day,
                       cost_usd, total_tokens
                FROM api_usage_logs
                WHERE organization_id = ? AND created_at BETWEEN ? AND ?
            """, (organization_id, to_iso(start), to_iso(end)))
            rows = cursor.fetchall()
        finally:
            conn.close()

        def bucket() -> Dict[str, float]:
            return {"cost": 0.0, "tokens": 0, "calls": 0}

        by_provider: Dict[str, Dict[str, float]] = defaultdict(bucket)
        by_model: Dict[str, Dict[str, float]] = defaultdict(bucket)
        by_day: Dict[str, Dict[str, float]] = defaultdict(bucket)
        total_cost = Decimal("0")
        total_tokens = 0
        for provider, model, day, cost, tokens in rows:
            total_cost += Decimal(str(cost))
            total_tokens += tokens
            for group in (by_provider[provider], by_model[model], by_day[day]):
                group["cost"] = float(Decimal(str(group["cost"])) + Decimal(str(cost)))
                group["tokens"] += tokens
                group["calls"] += 1

        return UsageSummary(
            organization_id=organization_id,
            start=start,
            end=end,
            total_cost=float(total_cost),
            total_tokens=total_tokens,
            total_calls=len(rows),
            by_provider=dict(by_provider),
            by_model=dict(by_model),
            by_day=dict(by_day),
        )

    @staticmethod
    def _row_to_quota(row: tuple) -> QuotaDefinition:
        return QuotaDefinition(
            quota_id=row[0],
            organization_id=row[1],
            period=QuotaPeriod(row[2]),
            provider=row[3],
            model=row[4],
            limit_amount=row[5],
            current_usage=row[6],
            reset_at=from_iso(row[7]),
            last_reset_at=from_iso(row[8]) if row[8] else None,
        )


def new_record_id() -> str:
    """Identifier for a usage record."""
    return str(uuid.uuid4())


def default_window(days: int = 30, now: Optional[datetime] = None) -> tuple:
    """``(start, end)`` covering the last ``days`` days."""
    end = now or utcnow()
    return end - timedelta(days=days), end


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the metering tables if they don't exist.

    ``api_usage_logs``, ``cost_estimates`` and ``quota_violations`` are
    append-only. ``usage_quotas`` rows are only changed by administrative
    writes, counter increments and period resets.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS cost_estimates (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                provider TEXT NOT NULL,
                model TEXT NOT NULL,
                effective_date TEXT NOT NULL,
                input_cost_per_1k_tokens TEXT NOT NULL,
                output_cost_per_1k_tokens TEXT NOT NULL,
                created_at TEXT NOT NULL,
                UNIQUE (provider, model, effective_date)
            );

            CREATE INDEX IF NOT EXISTS idx_cost_estimates_provider_model
                ON cost_estimates (provider, model, effective_date DESC);

            CREATE TABLE IF NOT EXISTS usage_quotas (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                organization_id TEXT NOT NULL,
                period TEXT NOT NULL CHECK (period IN ('daily', 'monthly')),
                provider TEXT,
                model TEXT,
                quota_limit REAL NOT NULL,
                current_usage REAL NOT NULL DEFAULT 0.0,
                reset_at TEXT NOT NULL,
                last_reset_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_usage_quotas_org
                ON usage_quotas (organization_id, reset_at);

            CREATE TABLE IF NOT EXISTS api_usage_logs (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                organization_id TEXT NOT NULL,
                session_id TEXT,
                workflow_id TEXT,
                provider TEXT NOT NULL,
                model TEXT NOT NULL,
                input_tokens INTEGER NOT NULL DEFAULT 0,
                output_tokens INTEGER NOT NULL DEFAULT 0,
                total_tokens INTEGER NOT NULL DEFAULT 0,
                cost_usd REAL NOT NULL DEFAULT 0.0,
                request_data TEXT NOT NULL DEFAULT '{}',
                response_data TEXT NOT NULL DEFAULT '{}',
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_api_usage_logs_org
                ON api_usage_logs (organization_id, created_at DESC);

            CREATE TABLE IF NOT EXISTS quota_violations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT,
                organization_id TEXT NOT NULL,
                provider TEXT NOT NULL,
                model TEXT NOT NULL,
                quota_type TEXT NOT NULL,
                attempted_cost REAL NOT NULL,
                current_usage REAL NOT NULL,
                quota_limit REAL NOT NULL,
                created_at TEXT NOT NULL
            );
        """)
        conn.commit()
    finally:
        conn.close()
