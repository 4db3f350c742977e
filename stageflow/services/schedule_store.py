"""Schedule store - durable storage for scheduled executions.

Creation is insert-or-noop on the unique dedupe key. Every later mutation is
a conditional UPDATE guarded by the row's current status, so concurrent
workers and cancellations never double-apply a transition:

    pending -> in_progress          (claim)
    in_progress -> sent | failed    (complete)
    in_progress -> pending          (retry with backoff)
    pending -> canceled             (reconciliation)
    in_progress -> canceled         (source gone while claimed)
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from stageflow.core.config import settings
from stageflow.core.constants import LAST_ERROR_MAX_LENGTH
from stageflow.core.errors import DedupSkip
from stageflow.db.dialect import insert_for, is_postgres
from stageflow.db.enums import CancelReason, ExecutionSource, ExecutionStatus
from stageflow.db.models import ScheduledExecution
from stageflow.utils.time import utcnow

logger = logging.getLogger(__name__)


def automation_dedupe_key(entity_id: UUID, rule_id: UUID, step_id: UUID, occurrence_key: str) -> str:
    return f"automation:{entity_id}:{rule_id}:{step_id}:{occurrence_key}"


def drip_dedupe_key(entity_id: UUID, campaign_id: UUID, step_id: UUID, enrollment_id: UUID) -> str:
    return f"drip:{entity_id}:{campaign_id}:{step_id}:{enrollment_id}"


def insert_execution(db: Session, **values) -> ScheduledExecution:
    """
    Insert a pending execution unless its dedupe key already exists.

    Uses INSERT ... ON CONFLICT DO NOTHING so a concurrent duplicate never
    aborts the caller's transaction.

    Raises:
        DedupSkip: a row with the same dedupe_key already exists
    """
    values.setdefault("status", ExecutionStatus.PENDING.value)
    values.setdefault("max_attempts", settings.SEND_MAX_ATTEMPTS)
    insert = insert_for(db)
    stmt = (
        insert(ScheduledExecution)
        .values(**values)
        .on_conflict_do_nothing(index_elements=["dedupe_key"])
        .returning(ScheduledExecution.id)
    )
    execution_id = db.execute(stmt).scalar_one_or_none()
    if execution_id is None:
        raise DedupSkip(values["dedupe_key"])
    return db.get(ScheduledExecution, execution_id)


def get_execution(db: Session, execution_id: UUID, org_id: UUID | None = None) -> ScheduledExecution | None:
    """Get an execution by ID, optionally scoped to org."""
    query = db.query(ScheduledExecution).filter(ScheduledExecution.id == execution_id)
    if org_id:
        query = query.filter(ScheduledExecution.organization_id == org_id)
    return query.first()


def list_executions(
    db: Session,
    org_id: UUID,
    entity_id: UUID | None = None,
    status: ExecutionStatus | None = None,
    source_type: ExecutionSource | None = None,
    limit: int = 100,
    offset: int = 0,
) -> tuple[list[ScheduledExecution], int]:
    """List executions for an organization with optional filters."""
    query = db.query(ScheduledExecution).filter(ScheduledExecution.organization_id == org_id)
    if entity_id:
        query = query.filter(ScheduledExecution.entity_id == entity_id)
    if status:
        query = query.filter(ScheduledExecution.status == status.value)
    if source_type:
        query = query.filter(ScheduledExecution.source_type == source_type.value)
    total = query.count()
    items = (
        query.order_by(ScheduledExecution.due_at, ScheduledExecution.created_at)
        .offset(offset)
        .limit(limit)
        .all()
    )
    return items, total


def select_due_ids(db: Session, now: datetime, limit: int) -> list[UUID]:
    """
    IDs of pending executions due at or before now, oldest first.

    On PostgreSQL rows locked by another worker's selection are skipped.
    The claim itself is still the conditional update in claim_execution.
    """
    stmt = (
        select(ScheduledExecution.id)
        .where(
            ScheduledExecution.status == ExecutionStatus.PENDING.value,
            ScheduledExecution.due_at <= now,
        )
        .order_by(ScheduledExecution.due_at)
        .limit(limit)
    )
    if is_postgres(db):
        stmt = stmt.with_for_update(skip_locked=True)
    return list(db.execute(stmt).scalars().all())


def select_stale_ids(db: Session, now: datetime, stale_after_seconds: int) -> list[UUID]:
    """IDs of in_progress executions whose claim is older than the cutoff."""
    cutoff = now - timedelta(seconds=stale_after_seconds)
    stmt = select(ScheduledExecution.id).where(
        ScheduledExecution.status == ExecutionStatus.IN_PROGRESS.value,
        ScheduledExecution.claimed_at < cutoff,
    )
    return list(db.execute(stmt).scalars().all())


def claim_execution(db: Session, execution_id: UUID, now: datetime) -> bool:
    """
    Atomically move a pending execution to in_progress.

    Returns False when the row is no longer pending (claimed by another
    worker or canceled). Increments attempt_count on success.
    """
    result = db.execute(
        update(ScheduledExecution)
        .where(
            ScheduledExecution.id == execution_id,
            ScheduledExecution.status == ExecutionStatus.PENDING.value,
        )
        .values(
            status=ExecutionStatus.IN_PROGRESS.value,
            attempt_count=ScheduledExecution.attempt_count + 1,
            claimed_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def mark_sent(
    db: Session,
    execution_id: UUID,
    now: datetime,
    provider_message_id: str | None = None,
) -> bool:
    """in_progress -> sent."""
    result = db.execute(
        update(ScheduledExecution)
        .where(
            ScheduledExecution.id == execution_id,
            ScheduledExecution.status == ExecutionStatus.IN_PROGRESS.value,
        )
        .values(
            status=ExecutionStatus.SENT.value,
            sent_at=now,
            provider_message_id=provider_message_id,
            last_error=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def backoff_delay(attempt_count: int) -> timedelta:
    """Exponential backoff: base * 2^(attempt-1), capped."""
    exponent = max(attempt_count - 1, 0)
    seconds = settings.RETRY_BACKOFF_BASE_SECONDS * (2**exponent)
    return timedelta(seconds=min(seconds, settings.RETRY_BACKOFF_MAX_SECONDS))


def mark_failed_attempt(
    db: Session,
    execution: ScheduledExecution,
    error: str,
    now: datetime,
    retryable: bool,
    retry_at: datetime | None = None,
) -> str:
    """
    Record a failed send attempt.

    Retryable failures with attempts remaining go back to pending, due at
    retry_at or now plus backoff; everything else is terminal. Returns the
    new status.
    """
    error = error[:LAST_ERROR_MAX_LENGTH]
    if retryable and execution.attempt_count < execution.max_attempts:
        values = {
            "status": ExecutionStatus.PENDING.value,
            "due_at": retry_at or now + backoff_delay(execution.attempt_count),
            "claimed_at": None,
        }
    else:
        values = {"status": ExecutionStatus.FAILED.value}

    db.execute(
        update(ScheduledExecution)
        .where(
            ScheduledExecution.id == execution.id,
            ScheduledExecution.status == ExecutionStatus.IN_PROGRESS.value,
        )
        .values(last_error=error, updated_at=now, **values)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return values["status"]


def cancel_claimed(
    db: Session,
    execution_id: UUID,
    reason: CancelReason,
    now: datetime,
) -> bool:
    """in_progress -> canceled, for a claimed row whose source is no longer live."""
    result = db.execute(
        update(ScheduledExecution)
        .where(
            ScheduledExecution.id == execution_id,
            ScheduledExecution.status == ExecutionStatus.IN_PROGRESS.value,
        )
        .values(
            status=ExecutionStatus.CANCELED.value,
            canceled_at=now,
            cancel_reason=reason.value,
            claimed_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def cancel_pending(
    db: Session,
    *criteria,
    reason: CancelReason,
    now: datetime | None = None,
) -> int:
    """
    Cancel every pending execution matching criteria.

    Terminal and in-flight rows are untouched, so repeating a cancellation
    is a no-op. Returns the number of rows canceled. Does not commit.
    """
    now = now or utcnow()
    result = db.execute(
        update(ScheduledExecution)
        .where(ScheduledExecution.status == ExecutionStatus.PENDING.value, *criteria)
        .values(
            status=ExecutionStatus.CANCELED.value,
            canceled_at=now,
            cancel_reason=reason.value,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        logger.info("Canceled %s pending executions (%s)", result.rowcount, reason.value)
    return result.rowcount


def count_open_for_enrollment(db: Session, enrollment_id: UUID) -> int:
    """Pending or in-flight executions left for a drip enrollment."""
    return (
        db.query(ScheduledExecution)
        .filter(
            ScheduledExecution.enrollment_id == enrollment_id,
            ScheduledExecution.status.in_(
                [ExecutionStatus.PENDING.value, ExecutionStatus.IN_PROGRESS.value]
            ),
        )
        .count()
    )
