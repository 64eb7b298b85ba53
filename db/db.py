"""
Async DB helpers for the reminder engine.
Uses SQLAlchemy 2.0 + asyncpg driver – no raw SQL strings in app code.

Every status change goes through a conditional UPDATE on the current status
(compare-and-set) and appends a DeliveryLog row in the same transaction.
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Iterable, Sequence
from uuid import uuid4

from sqlalchemy import (
    JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text,
    UniqueConstraint, func, select, update,
)
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import (
    create_async_engine, async_sessionmaker, AsyncEngine, AsyncSession
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from app.errors import StoreConflictError
from app.types.reminder_contract import (
    CANCELLED, DELIVERED, CourtEventIn, PENDING, SENDING, SENT, UNDELIVERED, TemplateSpec,
    can_transition,
)

UTC = timezone.utc


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


def _new_id() -> str:
    return str(uuid4())


# ──────────────────────────────────────────────────────────────────────
# 1. Declarative metadata
# ──────────────────────────────────────────────────────────────────────
class Base(DeclarativeBase):
    pass


class UTCDateTime(TypeDecorator):
    """TIMESTAMPTZ that refuses naive datetimes and always hands back UTC."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is None or value.utcoffset() is None:
            raise ValueError("datetime values must be timezone-aware")
        value = value.astimezone(UTC)
        if dialect.name == "sqlite":
            # SQLite has no zone support; store UTC wall time
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


# ──────────────────────────────────────────────────────────────────────
# 2. Lazy engine / session factory
# ──────────────────────────────────────────────────────────────────────
_engine: AsyncEngine | None = None
_session_maker: async_sessionmaker[AsyncSession] | None = None


def _build_url() -> str:
    url = os.getenv("DATABASE_URL") or os.getenv("DATABASE_PUBLIC_URL")
    if not url:
        raise RuntimeError("DATABASE_URL not set")
    if url.startswith("postgres") and "+asyncpg" not in url:
        url = url.replace("postgres://", "postgresql+asyncpg://", 1).replace(
            "postgresql://", "postgresql+asyncpg://", 1
        )
    return url


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        url = _build_url()
        if url.startswith("sqlite"):
            _engine = create_async_engine(url)
        else:
            _engine = create_async_engine(url, pool_size=5, max_overflow=5)
    return _engine


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    global _session_maker
    if _session_maker is None:
        _session_maker = async_sessionmaker(get_engine(), expire_on_commit=False)
    async with _session_maker() as session:
        yield session


async def dispose_engine():
    global _engine, _session_maker
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_maker = None


# ──────────────────────────────────────────────────────────────────────
# 3. ORM models
# ──────────────────────────────────────────────────────────────────────

class CourtEvent(Base):
    __tablename__ = "court_events"

    id:                Mapped[str] = mapped_column(String(64), primary_key=True)
    recipient_address: Mapped[str]
    recipient_name:    Mapped[str | None]
    event_at:          Mapped[datetime] = mapped_column(UTCDateTime())
    location:          Mapped[str | None]
    case_number:       Mapped[str | None]
    court_id:          Mapped[str | None]
    timezone:          Mapped[str | None] = mapped_column(String(64))
    cancelled:         Mapped[bool] = mapped_column(Boolean, default=False)
    updated_at:        Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow)


class ReminderTemplate(Base):
    __tablename__ = "reminder_templates"

    id:              Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    name:            Mapped[str] = mapped_column(default="")
    message_pattern: Mapped[str] = mapped_column(Text)
    offset_days:     Mapped[int] = mapped_column(Integer)
    court_id:        Mapped[str | None]
    active:          Mapped[bool] = mapped_column(Boolean, default=True)
    created_at:      Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow)
    updated_at:      Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow)


class ReminderInstance(Base):
    __tablename__ = "reminder_instances"
    __table_args__ = (
        UniqueConstraint("event_id", "template_id", name="uq_reminder_instances_event_template"),
        Index("ix_reminder_instances_status_scheduled", "status", "scheduled_for"),
        Index("ix_reminder_instances_provider_message_id", "provider_message_id"),
    )

    id:                  Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    event_id:            Mapped[str] = mapped_column(ForeignKey("court_events.id"))
    template_id:         Mapped[str] = mapped_column(ForeignKey("reminder_templates.id"))
    recipient_address:   Mapped[str]
    rendered_body:       Mapped[str] = mapped_column(Text)
    event_at:            Mapped[datetime] = mapped_column(UTCDateTime())
    scheduled_for:       Mapped[datetime] = mapped_column(UTCDateTime())
    claimed_by:          Mapped[str | None]
    claimed_at:          Mapped[datetime | None] = mapped_column(UTCDateTime())
    status:              Mapped[str] = mapped_column(String(16), default=PENDING)
    provider_message_id: Mapped[str | None]
    attempt_count:       Mapped[int] = mapped_column(Integer, default=0)
    last_error:          Mapped[str | None] = mapped_column(Text)
    sent_at:             Mapped[datetime | None] = mapped_column(UTCDateTime())
    confirmed:           Mapped[bool] = mapped_column(Boolean, default=False)
    confirmed_at:        Mapped[datetime | None] = mapped_column(UTCDateTime())
    created_at:          Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow)
    updated_at:          Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow)


class DeliveryLog(Base):
    __tablename__ = "delivery_logs"

    id:            Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    instance_id:   Mapped[str] = mapped_column(ForeignKey("reminder_instances.id"), index=True)
    status:        Mapped[str] = mapped_column(String(16))
    timestamp:     Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow)
    error_message: Mapped[str | None] = mapped_column(Text)
    provider_raw:  Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)


# ──────────────────────────────────────────────────────────────────────
# 4. DDL helper (tests; production uses Alembic)
# ──────────────────────────────────────────────────────────────────────
async def create_all():
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def _dialect_insert():
    name = get_engine().dialect.name
    if name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise RuntimeError(f"unsupported database dialect: {name}")
    return insert


# ──────────────────────────────────────────────────────────────────────
# 5. Events & templates (read side of external collaborators)
# ──────────────────────────────────────────────────────────────────────

async def upsert_court_event(event: CourtEventIn) -> None:
    values = event.model_dump()
    values["updated_at"] = _utcnow()
    insert = _dialect_insert()
    stmt = insert(CourtEvent.__table__).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=["id"],
        set_={k: stmt.excluded[k] for k in values if k != "id"},
    )
    async with get_session() as s:
        await s.execute(stmt)
        await s.commit()


async def get_court_event(event_id: str) -> CourtEvent | None:
    async with get_session() as s:
        return await s.get(CourtEvent, event_id)


async def insert_template(
    message_pattern: str,
    offset_days: int,
    *,
    name: str = "",
    court_id: str | None = None,
    active: bool = True,
    template_id: str | None = None,
) -> str:
    tpl = ReminderTemplate(
        id=template_id or _new_id(),
        name=name,
        message_pattern=message_pattern,
        offset_days=offset_days,
        court_id=court_id,
        active=active,
    )
    async with get_session() as s:
        s.add(tpl)
        await s.commit()
    return tpl.id


async def list_active_templates() -> list[TemplateSpec]:
    async with get_session() as s:
        res = await s.execute(
            select(ReminderTemplate)
            .where(ReminderTemplate.active.is_(True))
            .order_by(ReminderTemplate.offset_days.desc(), ReminderTemplate.id)
        )
        return [TemplateSpec.model_validate(t) for t in res.scalars()]


# ──────────────────────────────────────────────────────────────────────
# 6. Reminder instances
# ──────────────────────────────────────────────────────────────────────

def _log(instance_id: str, status: str, at: datetime,
         error: str | None = None, raw: dict | None = None) -> DeliveryLog:
    return DeliveryLog(
        instance_id=instance_id,
        status=status,
        timestamp=at,
        error_message=error,
        provider_raw=raw,
    )


async def _transition(
    s: AsyncSession,
    instance_id: str,
    from_statuses: Iterable[str],
    to_status: str,
    *,
    at: datetime,
    values: dict[str, Any] | None = None,
    conditions: Sequence[Any] = (),
    error: str | None = None,
    raw: dict | None = None,
) -> bool:
    """Conditionally move one instance to *to_status*; True if this call won."""
    from_statuses = tuple(from_statuses)
    for current in from_statuses:
        if not can_transition(current, to_status):
            raise ValueError(f"illegal transition {current} -> {to_status}")

    changes = dict(values or {})
    changes.update(status=to_status, updated_at=at)
    if to_status != SENDING:
        changes.update(claimed_by=None, claimed_at=None)

    res = await s.execute(
        update(ReminderInstance)
        .where(
            ReminderInstance.id == instance_id,
            ReminderInstance.status.in_(from_statuses),
            *conditions,
        )
        .values(**changes)
        .returning(ReminderInstance.id)
        .execution_options(synchronize_session=False)
    )
    if res.scalar_one_or_none() is None:
        return False
    s.add(_log(instance_id, to_status, at, error, raw))
    return True


async def transition_instance(instance_id: str, from_statuses: Iterable[str], to_status: str, *,
                              at: datetime, values: dict[str, Any] | None = None,
                              error: str | None = None, raw: dict | None = None) -> bool:
    async with get_session() as s:
        won = await _transition(s, instance_id, from_statuses, to_status,
                                at=at, values=values, error=error, raw=raw)
        await s.commit()
        return won


async def get_instance(instance_id: str) -> ReminderInstance | None:
    async with get_session() as s:
        return await s.get(ReminderInstance, instance_id)


async def get_instance_by_provider_id(provider_message_id: str) -> ReminderInstance | None:
    async with get_session() as s:
        res = await s.execute(
            select(ReminderInstance)
            .where(ReminderInstance.provider_message_id == provider_message_id)
            .limit(1)
        )
        return res.scalar_one_or_none()


async def list_instances_for_event(event_id: str) -> list[ReminderInstance]:
    async with get_session() as s:
        res = await s.execute(
            select(ReminderInstance)
            .where(ReminderInstance.event_id == event_id)
            .order_by(ReminderInstance.scheduled_for, ReminderInstance.id)
        )
        return list(res.scalars())


async def insert_instances(rows: list[dict[str, Any]]) -> list[str]:
    """Insert new pending instances, ignoring (event, template) pairs that
    already exist. Returns the ids actually inserted."""
    if not rows:
        return []
    now = _utcnow()
    values = [
        {
            "id": _new_id(),
            "status": PENDING,
            "attempt_count": 0,
            "confirmed": False,
            "created_at": now,
            "updated_at": now,
            **row,
        }
        for row in rows
    ]
    insert = _dialect_insert()
    stmt = (
        insert(ReminderInstance.__table__)
        .values(values)
        .on_conflict_do_nothing(index_elements=["event_id", "template_id"])
        .returning(ReminderInstance.__table__.c.id)
    )
    async with get_session() as s:
        res = await s.execute(stmt)
        created = [row[0] for row in res.all()]
        await s.commit()
    return created


async def reschedule_pending(instance_id: str, *, scheduled_for: datetime,
                             rendered_body: str, event_at: datetime, at: datetime) -> bool:
    """Move a still-pending instance to a new fire time. Not a status change,
    so no log row."""
    async with get_session() as s:
        res = await s.execute(
            update(ReminderInstance)
            .where(ReminderInstance.id == instance_id, ReminderInstance.status == PENDING)
            .values(
                scheduled_for=scheduled_for,
                rendered_body=rendered_body,
                event_at=event_at,
                updated_at=at,
            )
            .returning(ReminderInstance.id)
            .execution_options(synchronize_session=False)
        )
        won = res.scalar_one_or_none() is not None
        await s.commit()
        return won


async def cancel_event_instances(event_id: str, at: datetime, reason: str = "event cancelled") -> list[str]:
    """Cancel every non-terminal instance of *event_id* except in-flight sends."""
    cancellable = (PENDING, SENT)
    async with get_session() as s:
        res = await s.execute(
            select(ReminderInstance.id)
            .where(
                ReminderInstance.event_id == event_id,
                ReminderInstance.status.in_(cancellable),
            )
            .order_by(ReminderInstance.id)
        )
        cancelled = []
        for instance_id in res.scalars().all():
            if await _transition(s, instance_id, cancellable, CANCELLED, at=at, error=reason):
                cancelled.append(instance_id)
        await s.commit()
    return cancelled


# 6.1 Claiming ---------------------------------------------------------
async def claim_due_instances(worker_token: str, now: datetime, limit: int) -> list[str]:
    """Atomically move up to *limit* due pending instances to ``sending``.

    The inner SELECT picks candidates (SKIP LOCKED on Postgres); the outer
    ``status = 'pending'`` predicate makes the UPDATE a compare-and-set, so a
    row that another worker claimed in the meantime is simply not returned.
    """
    due = (
        select(ReminderInstance.id)
        .join(CourtEvent, CourtEvent.id == ReminderInstance.event_id)
        .where(
            ReminderInstance.status == PENDING,
            ReminderInstance.scheduled_for <= now,
            CourtEvent.cancelled.is_(False),
        )
        .order_by(ReminderInstance.scheduled_for, ReminderInstance.id)
        .limit(limit)
        .with_for_update(skip_locked=True, of=ReminderInstance)
    )
    stmt = (
        update(ReminderInstance)
        .where(ReminderInstance.id.in_(due), ReminderInstance.status == PENDING)
        .values(status=SENDING, claimed_by=worker_token, claimed_at=now, updated_at=now)
        .returning(ReminderInstance.id, ReminderInstance.scheduled_for)
        .execution_options(synchronize_session=False)
    )
    try:
        async with get_session() as s:
            res = await s.execute(stmt)
            claimed = sorted(res.all(), key=lambda row: (row.scheduled_for, row.id))
            for row in claimed:
                s.add(_log(row.id, SENDING, now, raw={"claimed_by": worker_token}))
            await s.commit()
    except OperationalError as exc:
        raise StoreConflictError(str(exc)) from exc
    return [row.id for row in claimed]


def _event_cancelled():
    return (
        select(CourtEvent.id)
        .where(CourtEvent.id == ReminderInstance.event_id, CourtEvent.cancelled.is_(True))
        .exists()
    )


async def _leave_sending(
    s: AsyncSession,
    instance_id: str,
    to_status: str,
    *,
    at: datetime,
    values: dict[str, Any] | None,
    conditions: Sequence[Any],
    error: str | None,
    raw: dict | None,
) -> str | None:
    """End a claim; a requeue of an instance whose event was cancelled while
    it was in flight lands in ``cancelled`` instead. Returns the status the
    instance ended in, or None if the claim was lost."""
    if to_status != PENDING:
        won = await _transition(s, instance_id, (SENDING,), to_status, at=at, values=values,
                                conditions=conditions, error=error, raw=raw)
        return to_status if won else None

    cancel_values = {k: v for k, v in (values or {}).items() if k != "scheduled_for"}
    cancel_values["last_error"] = "event cancelled"
    if await _transition(s, instance_id, (SENDING,), CANCELLED, at=at, values=cancel_values,
                         conditions=(*conditions, _event_cancelled()),
                         error="event cancelled", raw=raw):
        return CANCELLED
    if await _transition(s, instance_id, (SENDING,), PENDING, at=at, values=values,
                         conditions=(*conditions, ~_event_cancelled()), error=error, raw=raw):
        return PENDING
    return None


async def settle_claim(instance_id: str, worker_token: str, to_status: str, *, at: datetime,
                       values: dict[str, Any] | None = None,
                       error: str | None = None, raw: dict | None = None) -> str | None:
    """Leave ``sending`` for *to_status*, only if *worker_token* still holds the
    claim. Returns the resulting status, None when the claim was lost."""
    async with get_session() as s:
        landed = await _leave_sending(
            s, instance_id, to_status,
            at=at, values=values, error=error, raw=raw,
            conditions=(ReminderInstance.claimed_by == worker_token,),
        )
        await s.commit()
        return landed


async def list_stale_claims(cutoff: datetime, limit: int = 500) -> list[ReminderInstance]:
    async with get_session() as s:
        res = await s.execute(
            select(ReminderInstance)
            .where(ReminderInstance.status == SENDING, ReminderInstance.claimed_at < cutoff)
            .order_by(ReminderInstance.claimed_at)
            .limit(limit)
        )
        return list(res.scalars())


async def release_stale_claim(instance: ReminderInstance, to_status: str, *, at: datetime,
                              error: str) -> str | None:
    """Forcibly end a claim observed as stale; guarded on the observed claim.
    Returns the resulting status, None when someone else settled it first."""
    async with get_session() as s:
        landed = await _leave_sending(
            s, instance.id, to_status,
            at=at,
            values={
                "attempt_count": ReminderInstance.attempt_count + 1,
                "last_error": error,
            },
            conditions=(
                ReminderInstance.claimed_by == instance.claimed_by,
                ReminderInstance.claimed_at == instance.claimed_at,
            ),
            error=error,
            raw={"claimed_by": instance.claimed_by},
        )
        await s.commit()
        return landed


# 6.2 Reconciliation ---------------------------------------------------
async def list_sent_for_reconcile(cutoff: datetime, limit: int) -> list[ReminderInstance]:
    async with get_session() as s:
        res = await s.execute(
            select(ReminderInstance)
            .where(
                ReminderInstance.status == SENT,
                ReminderInstance.provider_message_id.is_not(None),
                ReminderInstance.sent_at <= cutoff,
            )
            .order_by(ReminderInstance.sent_at, ReminderInstance.id)
            .limit(limit)
        )
        return list(res.scalars())


async def record_instance_error(instance_id: str, error: str, at: datetime) -> None:
    async with get_session() as s:
        await s.execute(
            update(ReminderInstance)
            .where(ReminderInstance.id == instance_id)
            .values(last_error=error, updated_at=at)
            .execution_options(synchronize_session=False)
        )
        await s.commit()


# 6.3 Confirmation -----------------------------------------------------
async def mark_confirmed(instance_id: str, received_at: datetime, raw: dict | None = None) -> bool:
    """Set the confirmation flag once; False when it was already set."""
    async with get_session() as s:
        res = await s.execute(
            update(ReminderInstance)
            .where(ReminderInstance.id == instance_id, ReminderInstance.confirmed.is_(False))
            .values(confirmed=True, confirmed_at=received_at, updated_at=_utcnow())
            .returning(ReminderInstance.status)
            .execution_options(synchronize_session=False)
        )
        status = res.scalar_one_or_none()
        if status is None:
            await s.rollback()
            return False
        s.add(_log(instance_id, status, received_at, raw={"confirmation": True, **(raw or {})}))
        await s.commit()
        return True


async def latest_unconfirmed_for_recipient(recipient_address: str) -> ReminderInstance | None:
    async with get_session() as s:
        res = await s.execute(
            select(ReminderInstance)
            .where(
                ReminderInstance.recipient_address == recipient_address,
                ReminderInstance.status.in_((SENT, DELIVERED, UNDELIVERED)),
                ReminderInstance.confirmed.is_(False),
            )
            .order_by(ReminderInstance.sent_at.desc(), ReminderInstance.id.desc())
            .limit(1)
        )
        return res.scalar_one_or_none()


# 6.4 Read helpers for the admin surface --------------------------------
async def list_delivery_logs(instance_id: str) -> list[DeliveryLog]:
    async with get_session() as s:
        res = await s.execute(
            select(DeliveryLog)
            .where(DeliveryLog.instance_id == instance_id)
            .order_by(DeliveryLog.id)
        )
        return list(res.scalars())


async def status_counts() -> dict[str, int]:
    async with get_session() as s:
        res = await s.execute(
            select(ReminderInstance.status, func.count())
            .group_by(ReminderInstance.status)
        )
        return {status: count for status, count in res.all()}
