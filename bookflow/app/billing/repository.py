"""Persistence layer for subscription records."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence

import psycopg2
import psycopg2.extras
from psycopg2 import sql
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from ...app_context import get_conn
from .exceptions import ConditionalUpdateError, SubscriptionAlreadyExistsError, SubscriptionNotFoundError
from .models import (
    BillingInterval,
    PaymentMethodKind,
    PaymentToken,
    Subscription,
    SubscriptionStats,
    SubscriptionStatus,
)

logger = logging.getLogger(__name__)


class SubscriptionRepository(Protocol):
    """Persistence operations required by the billing engine."""

    def create(self, subscription: Subscription) -> Subscription:
        ...

    def get_by_id(self, subscription_id: str) -> Optional[Subscription]:
        ...

    def get_by_organization(self, organization_id: str) -> Optional[Subscription]:
        ...

    def update(
        self,
        subscription_id: str,
        fields: Mapping[str, Any],
        *,
        expected_attempts: Optional[int] = None,
        expected_status: Optional[SubscriptionStatus] = None,
    ) -> Subscription:
        ...

    def get_trials_expiring(
        self,
        days_from_now: int,
        *,
        require_payment_active: bool = True,
        now: Optional[datetime] = None,
    ) -> Sequence[Subscription]:
        ...

    def get_subscriptions_for_retry(
        self,
        max_attempts: int,
        *,
        now: Optional[datetime] = None,
    ) -> Sequence[Subscription]:
        ...

    def get_stats(self) -> SubscriptionStats:
        ...


SUBSCRIPTIONS_DDL = """
CREATE TABLE IF NOT EXISTS billing_subscriptions (
    id TEXT PRIMARY KEY,
    organization_id TEXT NOT NULL,
    customer_email TEXT NOT NULL,
    plan_id TEXT NOT NULL,
    plan_name TEXT NOT NULL,
    status TEXT NOT NULL,
    current_period_start BIGINT NOT NULL,
    current_period_end BIGINT NOT NULL,
    trial_start BIGINT,
    trial_end BIGINT,
    cancel_at_period_end BOOLEAN NOT NULL DEFAULT FALSE,
    canceled_at BIGINT,
    amount BIGINT NOT NULL,
    currency CHAR(3) NOT NULL,
    billing_interval TEXT NOT NULL,
    payment_method TEXT NOT NULL,
    last_payment_date BIGINT,
    next_billing_date BIGINT,
    payment_token_user_id TEXT,
    payment_token_username TEXT,
    inscription_token TEXT,
    inscription_date BIGINT,
    payment_active BOOLEAN NOT NULL DEFAULT FALSE,
    payment_attempts INTEGER NOT NULL DEFAULT 0,
    last_payment_attempt BIGINT,
    retry_payment_at BIGINT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS billing_subscriptions_status_idx ON billing_subscriptions (status);
CREATE INDEX IF NOT EXISTS billing_subscriptions_org_idx ON billing_subscriptions (organization_id, created_at DESC);
"""

_TOKEN_COLUMNS = (
    "payment_token_user_id",
    "payment_token_username",
    "inscription_token",
    "inscription_date",
    "payment_active",
)
_REQUIRED_TOKEN_COLUMNS = ("payment_token_user_id", "payment_token_username", "inscription_token")

_UPDATABLE_COLUMNS = frozenset(
    {
        "status",
        "plan_id",
        "plan_name",
        "current_period_start",
        "current_period_end",
        "trial_start",
        "trial_end",
        "cancel_at_period_end",
        "canceled_at",
        "amount",
        "currency",
        "billing_interval",
        "payment_method",
        "last_payment_date",
        "next_billing_date",
        "payment_attempts",
        "last_payment_attempt",
        "retry_payment_at",
        *_TOKEN_COLUMNS,
    }
)


@contextmanager
def managed_connection(conn: Optional[PgConnection] = None):
    """Context manager that manages transaction boundaries for optional connections."""

    if conn is not None:
        yield conn, False
        return

    connection = get_conn()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


def _token_columns(token: Optional[PaymentToken]) -> Dict[str, Any]:
    if token is None:
        return {column: None for column in _TOKEN_COLUMNS} | {"payment_active": False}
    return {
        "payment_token_user_id": token.user_id,
        "payment_token_username": token.username,
        "inscription_token": token.inscription_token,
        "inscription_date": token.inscription_date,
        "payment_active": token.active,
    }


def _to_columns(fields: Mapping[str, Any]) -> Dict[str, Any]:
    """Translate model field names and values into column assignments."""

    columns: Dict[str, Any] = {}
    for name, value in fields.items():
        if name == "payment_token":
            columns.update(_token_columns(value))
            continue
        column = "billing_interval" if name == "interval" else name
        if column not in _UPDATABLE_COLUMNS:
            raise ValueError(f"Field {name!r} cannot be updated")
        columns[column] = value.value if isinstance(value, Enum) else value
    return columns


def _row_to_token(row: Mapping[str, Any]) -> Optional[PaymentToken]:
    present = [column for column in _REQUIRED_TOKEN_COLUMNS if row.get(column)]
    if not present:
        return None
    if len(present) < len(_REQUIRED_TOKEN_COLUMNS):
        # Rows written by card onboarding can be half filled; treat them as unregistered.
        logger.warning(
            "Ignoring incomplete payment token on subscription %s",
            row.get("id"),
            extra={"missing_columns": sorted(set(_REQUIRED_TOKEN_COLUMNS) - set(present))},
        )
        return None
    return PaymentToken(
        user_id=row["payment_token_user_id"],
        username=row["payment_token_username"],
        inscription_token=row["inscription_token"],
        inscription_date=int(row.get("inscription_date") or 0),
        active=bool(row.get("payment_active")),
    )


def _row_to_subscription(row: Mapping[str, Any]) -> Subscription:
    token = _row_to_token(row)
    return Subscription(
        id=row["id"],
        organization_id=row["organization_id"],
        customer_email=row["customer_email"],
        plan_id=row["plan_id"],
        plan_name=row["plan_name"],
        status=SubscriptionStatus(row["status"]),
        current_period_start=int(row["current_period_start"]),
        current_period_end=int(row["current_period_end"]),
        trial_start=row.get("trial_start"),
        trial_end=row.get("trial_end"),
        cancel_at_period_end=bool(row.get("cancel_at_period_end")),
        canceled_at=row.get("canceled_at"),
        amount=int(row["amount"]),
        currency=row["currency"],
        interval=BillingInterval(row["billing_interval"]),
        payment_method=PaymentMethodKind(row["payment_method"]),
        last_payment_date=row.get("last_payment_date"),
        next_billing_date=row.get("next_billing_date"),
        payment_token=token,
        payment_attempts=int(row.get("payment_attempts") or 0),
        last_payment_attempt=row.get("last_payment_attempt"),
        retry_payment_at=row.get("retry_payment_at"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _epoch(now: Optional[datetime]) -> int:
    moment = now or datetime.now(timezone.utc)
    return int(moment.timestamp())


class PostgresSubscriptionRepository:
    """Concrete repository persisting subscriptions in PostgreSQL."""

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def _cursor(self) -> Iterable[PgCursor]:
        with managed_connection(self._conn) as (connection, managed):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
                if managed:
                    connection.commit()
            except Exception:
                if managed:
                    connection.rollback()
                raise
            finally:
                cursor.close()

    def ensure_schema(self) -> None:
        with self._cursor() as cursor:
            cursor.execute(SUBSCRIPTIONS_DDL)

    def create(self, subscription: Subscription) -> Subscription:
        """Insert a new subscription; the identity must not exist yet."""

        values: Dict[str, Any] = {
            "id": subscription.id,
            "organization_id": subscription.organization_id,
            "customer_email": subscription.customer_email,
            "plan_id": subscription.plan_id,
            "plan_name": subscription.plan_name,
            "status": subscription.status.value,
            "current_period_start": subscription.current_period_start,
            "current_period_end": subscription.current_period_end,
            "trial_start": subscription.trial_start,
            "trial_end": subscription.trial_end,
            "cancel_at_period_end": subscription.cancel_at_period_end,
            "canceled_at": subscription.canceled_at,
            "amount": subscription.amount,
            "currency": subscription.currency,
            "billing_interval": subscription.interval.value,
            "payment_method": subscription.payment_method.value,
            "last_payment_date": subscription.last_payment_date,
            "next_billing_date": subscription.next_billing_date,
            "payment_attempts": subscription.payment_attempts,
            "last_payment_attempt": subscription.last_payment_attempt,
            "retry_payment_at": subscription.retry_payment_at,
            "created_at": subscription.created_at,
            "updated_at": subscription.updated_at,
            **_token_columns(subscription.payment_token),
        }
        statement = sql.SQL(
            "INSERT INTO billing_subscriptions ({columns}) VALUES ({values}) "
            "ON CONFLICT (id) DO NOTHING RETURNING *"
        ).format(
            columns=sql.SQL(", ").join(sql.Identifier(name) for name in values),
            values=sql.SQL(", ").join(sql.Placeholder(name) for name in values),
        )
        with self._cursor() as cursor:
            cursor.execute(statement, values)
            row = cursor.fetchone()
            if not row:
                raise SubscriptionAlreadyExistsError(subscription.id)
            return _row_to_subscription(row)

    def get_by_id(self, subscription_id: str) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_subscriptions
                WHERE id = %s
                LIMIT 1
                """,
                (subscription_id,),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def get_by_organization(self, organization_id: str) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_subscriptions
                WHERE organization_id = %s
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (organization_id,),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def update(
        self,
        subscription_id: str,
        fields: Mapping[str, Any],
        *,
        expected_attempts: Optional[int] = None,
        expected_status: Optional[SubscriptionStatus] = None,
    ) -> Subscription:
        """Conditionally update a subscription.

        The write only applies while the record exists and, when given, while
        its status and attempt counter still hold the values read at query
        time.
        """

        columns = _to_columns(fields)
        if not columns:
            raise ValueError("No fields to update")

        assignments = [
            sql.SQL("{} = {}").format(sql.Identifier(name), sql.Placeholder(name)) for name in columns
        ]
        assignments.append(sql.SQL("updated_at = NOW()"))
        conditions = [sql.SQL("id = {}").format(sql.Placeholder("_id"))]
        params: Dict[str, Any] = {**columns, "_id": subscription_id}
        if expected_attempts is not None:
            conditions.append(sql.SQL("payment_attempts = {}").format(sql.Placeholder("_expected_attempts")))
            params["_expected_attempts"] = expected_attempts
        status_value = SubscriptionStatus(expected_status).value if expected_status is not None else None
        if status_value is not None:
            conditions.append(sql.SQL("status = {}").format(sql.Placeholder("_expected_status")))
            params["_expected_status"] = status_value

        statement = sql.SQL("UPDATE billing_subscriptions SET {assignments} WHERE {conditions} RETURNING *").format(
            assignments=sql.SQL(", ").join(assignments),
            conditions=sql.SQL(" AND ").join(conditions),
        )
        with self._cursor() as cursor:
            cursor.execute(statement, params)
            row = cursor.fetchone()
            if row:
                return _row_to_subscription(row)
            cursor.execute("SELECT 1 FROM billing_subscriptions WHERE id = %s", (subscription_id,))
            if cursor.fetchone() is None:
                raise SubscriptionNotFoundError(subscription_id)
            raise ConditionalUpdateError(subscription_id, expected_attempts, status_value)

    def get_trials_expiring(
        self,
        days_from_now: int,
        *,
        require_payment_active: bool = True,
        now: Optional[datetime] = None,
    ) -> List[Subscription]:
        """Return trialing subscriptions whose trial ends within ``days_from_now``.

        A horizon of zero selects trials that have already ended.
        """

        if days_from_now < 0:
            raise ValueError("days_from_now must be >= 0")

        current = _epoch(now)
        params: Dict[str, Any] = {"status": SubscriptionStatus.TRIALING.value, "now": current}
        if days_from_now == 0:
            window = "trial_end <= %(now)s"
        else:
            window = "trial_end > %(now)s AND trial_end <= %(target)s"
            params["target"] = current + int(timedelta(days=days_from_now).total_seconds())
        token_filter = " AND payment_active" if require_payment_active else ""

        with self._cursor() as cursor:
            cursor.execute(
                f"""
                SELECT *
                FROM billing_subscriptions
                WHERE status = %(status)s
                  AND trial_end IS NOT NULL
                  AND {window}{token_filter}
                """,
                params,
            )
            return [_row_to_subscription(row) for row in cursor.fetchall()]

    def get_subscriptions_for_retry(
        self,
        max_attempts: int,
        *,
        now: Optional[datetime] = None,
    ) -> List[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_subscriptions
                WHERE status = %(status)s
                  AND retry_payment_at IS NOT NULL
                  AND retry_payment_at <= %(now)s
                  AND payment_attempts < %(max_attempts)s
                """,
                {
                    "status": SubscriptionStatus.PAST_DUE.value,
                    "now": _epoch(now),
                    "max_attempts": max_attempts,
                },
            )
            return [_row_to_subscription(row) for row in cursor.fetchall()]

    def get_stats(self) -> SubscriptionStats:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT status, COUNT(*) AS count
                FROM billing_subscriptions
                GROUP BY status
                """
            )
            counts = {row["status"]: int(row["count"]) for row in cursor.fetchall()}
        return SubscriptionStats(
            total=sum(counts.values()),
            active=counts.get(SubscriptionStatus.ACTIVE.value, 0),
            trialing=counts.get(SubscriptionStatus.TRIALING.value, 0),
            canceled=counts.get(SubscriptionStatus.CANCELED.value, 0),
            past_due=counts.get(SubscriptionStatus.PAST_DUE.value, 0),
        )


__all__ = [
    "PostgresSubscriptionRepository",
    "SUBSCRIPTIONS_DDL",
    "SubscriptionRepository",
    "managed_connection",
]
