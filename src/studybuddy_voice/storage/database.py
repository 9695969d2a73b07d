"""
Relational store for subscriptions and upgrade requests.

This module provides:
- SQLAlchemy Core table definitions
- Engine construction per dialect (SQLite for tests and local runs,
  PostgreSQL in production)
- A transactional context manager that commits or rolls back
- Row readers returning pydantic models

All timestamps are written as timezone-aware UTC and read back as aware
UTC regardless of what the dialect returns.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Engine,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    create_engine,
    insert,
    select,
    text,
    update,
)
from sqlalchemy.engine import Connection
from sqlalchemy.pool import StaticPool

from ..models import Plan, Subscription, UpgradeRequest, UpgradeStatus

logger = logging.getLogger("studybuddy-voice.storage")

metadata = MetaData()

subscriptions = Table(
    "subscriptions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("student_id", String(64), nullable=False, unique=True),
    Column("plan", String(16), nullable=False, default=Plan.BASIC.value),
    Column("started_at", DateTime(timezone=True), nullable=True),
    Column("ends_at", DateTime(timezone=True), nullable=True),
    Column("characters_used", Integer, nullable=False, default=0),
    Column("characters_limit", Integer, nullable=False, default=150000),
    Column("active", Boolean, nullable=False, default=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

upgrade_requests = Table(
    "upgrade_requests",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("student_id", String(64), nullable=False, index=True),
    Column("requested_plan", String(16), nullable=False, default=Plan.PRO.value),
    Column("status", String(16), nullable=False, default=UpgradeStatus.PENDING.value),
    Column("requested_at", DateTime(timezone=True), nullable=False),
    Column("processed_at", DateTime(timezone=True), nullable=True),
    Column("processed_by", String(64), nullable=True),
    Column("rejection_reason", String(500), nullable=True),
    # At most one pending request per student
    Index(
        "uq_upgrade_requests_one_pending",
        "student_id",
        unique=True,
        postgresql_where=text("status = 'pending'"),
        sqlite_where=text("status = 'pending'"),
    ),
)


def utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime to aware UTC (naive values are taken as UTC)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_store_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine with pooling suited to the dialect.

    In-memory SQLite shares one connection across threads so every caller
    sees the same database; PostgreSQL gets a pre-pinged connection pool.
    """
    if database_url.startswith("sqlite"):
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite:///"):
            return create_engine(
                database_url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
                echo=echo,
            )
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": 30},
            echo=echo,
        )

    return create_engine(
        database_url,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,
        pool_recycle=3600,
        echo=echo,
    )


def _subscription_from_row(row: Any) -> Subscription:
    m = row._mapping
    return Subscription(
        student_id=m["student_id"],
        plan=Plan(m["plan"]),
        started_at=utc(m["started_at"]),
        ends_at=utc(m["ends_at"]),
        characters_used=m["characters_used"],
        characters_limit=m["characters_limit"],
        active=bool(m["active"]),
        created_at=utc(m["created_at"]),
        updated_at=utc(m["updated_at"]),
    )


def _request_from_row(row: Any) -> UpgradeRequest:
    m = row._mapping
    return UpgradeRequest(
        id=m["id"],
        student_id=m["student_id"],
        requested_plan=Plan(m["requested_plan"]),
        status=UpgradeStatus(m["status"]),
        requested_at=utc(m["requested_at"]),
        processed_at=utc(m["processed_at"]),
        processed_by=m["processed_by"],
        rejection_reason=m["rejection_reason"],
    )


class SubscriptionStore:
    """Thin data-access layer over the subscription tables.

    Methods that take a ``conn`` run inside the caller's transaction; open one
    with :meth:`transaction`.

    Usage:
        store = SubscriptionStore("sqlite:///:memory:")
        store.create_schema()
        with store.transaction() as conn:
            sub = store.ensure_subscription(conn, "student-1")
    """

    def __init__(
        self,
        database_url: Optional[str] = None,
        engine: Optional[Engine] = None,
        default_limit: int = 150000,
    ) -> None:
        if engine is None:
            if not database_url:
                raise ValueError("Either database_url or engine is required")
            engine = create_store_engine(database_url)
        self.engine = engine
        self.default_limit = default_limit

    def create_schema(self) -> None:
        metadata.create_all(self.engine)
        logger.info("Subscription schema ready on %s", self.engine.url.get_backend_name())

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """Yield a connection inside a transaction; commit on success, roll back on error."""
        with self.engine.connect() as conn:
            trans = conn.begin()
            try:
                yield conn
                trans.commit()
            except Exception:
                trans.rollback()
                raise

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def get_subscription(self, conn: Connection, student_id: str) -> Optional[Subscription]:
        row = conn.execute(
            select(subscriptions).where(subscriptions.c.student_id == student_id)
        ).first()
        return _subscription_from_row(row) if row is not None else None

    def ensure_subscription(
        self,
        conn: Connection,
        student_id: str,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """Return the student's subscription, creating a basic one if missing."""
        existing = self.get_subscription(conn, student_id)
        if existing is not None:
            return existing

        now = utc(now) or utcnow()
        conn.execute(
            insert(subscriptions).values(
                student_id=student_id,
                plan=Plan.BASIC.value,
                started_at=now,
                ends_at=None,
                characters_used=0,
                characters_limit=self.default_limit,
                active=True,
                created_at=now,
                updated_at=now,
            )
        )
        logger.info("Created basic subscription for student %s", student_id)
        return self.get_subscription(conn, student_id)

    def update_subscription(
        self,
        conn: Connection,
        student_id: str,
        now: Optional[datetime] = None,
        **values: Any,
    ) -> int:
        """Update columns of one subscription; returns the number of rows changed."""
        if "plan" in values and isinstance(values["plan"], Plan):
            values["plan"] = values["plan"].value
        for key in ("started_at", "ends_at"):
            if key in values:
                values[key] = utc(values[key])
        values["updated_at"] = utc(now) or utcnow()
        result = conn.execute(
            update(subscriptions)
            .where(subscriptions.c.student_id == student_id)
            .values(**values)
        )
        return result.rowcount

    def list_subscriptions(self, conn: Connection, plan: Optional[Plan] = None) -> list[Subscription]:
        stmt = select(subscriptions).order_by(subscriptions.c.id)
        if plan is not None:
            stmt = stmt.where(subscriptions.c.plan == plan.value)
        return [_subscription_from_row(row) for row in conn.execute(stmt)]

    # ------------------------------------------------------------------
    # Upgrade requests
    # ------------------------------------------------------------------

    def insert_request(
        self,
        conn: Connection,
        student_id: str,
        now: Optional[datetime] = None,
    ) -> UpgradeRequest:
        result = conn.execute(
            insert(upgrade_requests).values(
                student_id=student_id,
                requested_plan=Plan.PRO.value,
                status=UpgradeStatus.PENDING.value,
                requested_at=utc(now) or utcnow(),
            )
        )
        request_id = result.inserted_primary_key[0]
        return self.get_request(conn, request_id)

    def get_request(self, conn: Connection, request_id: int) -> Optional[UpgradeRequest]:
        row = conn.execute(
            select(upgrade_requests).where(upgrade_requests.c.id == request_id)
        ).first()
        return _request_from_row(row) if row is not None else None

    def pending_request(self, conn: Connection, student_id: str) -> Optional[UpgradeRequest]:
        row = conn.execute(
            select(upgrade_requests).where(
                upgrade_requests.c.student_id == student_id,
                upgrade_requests.c.status == UpgradeStatus.PENDING.value,
            )
        ).first()
        return _request_from_row(row) if row is not None else None

    def latest_request(self, conn: Connection, student_id: str) -> Optional[UpgradeRequest]:
        row = conn.execute(
            select(upgrade_requests)
            .where(upgrade_requests.c.student_id == student_id)
            .order_by(upgrade_requests.c.requested_at.desc(), upgrade_requests.c.id.desc())
            .limit(1)
        ).first()
        return _request_from_row(row) if row is not None else None

    def list_requests(
        self,
        conn: Connection,
        status: Optional[UpgradeStatus] = None,
    ) -> list[UpgradeRequest]:
        stmt = select(upgrade_requests).order_by(
            upgrade_requests.c.requested_at.desc(), upgrade_requests.c.id.desc()
        )
        if status is not None:
            stmt = stmt.where(upgrade_requests.c.status == status.value)
        return [_request_from_row(row) for row in conn.execute(stmt)]

    def update_request(self, conn: Connection, request_id: int, **values: Any) -> int:
        if "status" in values and isinstance(values["status"], UpgradeStatus):
            values["status"] = values["status"].value
        if "processed_at" in values:
            values["processed_at"] = utc(values["processed_at"])
        result = conn.execute(
            update(upgrade_requests)
            .where(upgrade_requests.c.id == request_id)
            .values(**values)
        )
        return result.rowcount

    def block_pending_requests(
        self,
        conn: Connection,
        student_id: str,
        processed_by: Optional[str],
        now: Optional[datetime] = None,
    ) -> int:
        result = conn.execute(
            update(upgrade_requests)
            .where(
                upgrade_requests.c.student_id == student_id,
                upgrade_requests.c.status == UpgradeStatus.PENDING.value,
            )
            .values(
                status=UpgradeStatus.BLOCKED.value,
                processed_at=utc(now) or utcnow(),
                processed_by=processed_by,
            )
        )
        return result.rowcount
