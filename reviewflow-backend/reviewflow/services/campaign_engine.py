"""Drives campaign executions: start, per-step dispatch with retries, stop and cancel.

The engine is invoked by an external trigger (``run_due_executions`` or the
``/campaigns/executions/run-due`` endpoint). All state lives in the database;
concurrent passes are serialized by the optimistic ``version`` claim.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Literal

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from reviewflow.core.config import settings
from reviewflow.core.errors import (
    AlreadyRunningError,
    DispatchError,
    InvalidRecipientError,
    NoDefaultSequenceError,
    NotFoundError,
    OptedOutError,
)
from reviewflow.core.observability import log_event
from reviewflow.core.time_utils import utcnow
from reviewflow.models.campaign import CampaignExecution, CampaignSequence, CampaignStep, CampaignStepExecution
from reviewflow.models.review_request import ReviewRequest
from reviewflow.services.campaign_scheduler import (
    advance,
    complete,
    has_dispatchable_steps,
    is_due,
    is_step_dispatchable,
    is_terminal,
    next_step,
    reschedule,
)
from reviewflow.services.delivery_status import apply_event
from reviewflow.services.review_request_dispatcher import deliver_step
from reviewflow.services.sequence_service import get_default_sequence

logger = logging.getLogger("reviewflow.campaigns")

StepOutcomeKind = Literal[
    "terminal",
    "stopped",
    "not_due",
    "claim_lost",
    "skipped",
    "dispatched",
    "completed",
    "retry",
    "failed",
]
REQUEST_COMPLETED_REASON = "Review request completed"
REQUEST_MISSING_REASON = "Review request no longer exists"


@dataclass(frozen=True)
class StepOutcome:
    outcome: StepOutcomeKind
    execution_id: str
    step_number: int | None = None
    detail: str | None = None


@dataclass(frozen=True)
class ExecutionRunSummary:
    processed: int
    dispatched: int
    completed: int
    skipped: int
    retried: int
    failed: int
    stopped: int
    not_due: int
    claim_lost: int
    errors: int


def _active_execution_for_request(db: Session, review_request_id: str) -> CampaignExecution | None:
    return db.execute(
        select(CampaignExecution).where(
            CampaignExecution.review_request_id == review_request_id,
            CampaignExecution.status == "active",
        )
    ).scalar_one_or_none()


def start_execution(
    db: Session,
    *,
    review_request: ReviewRequest,
    sequence: CampaignSequence,
    now: datetime | None = None,
) -> CampaignExecution:
    if sequence.business_id != review_request.business_id:
        raise NotFoundError("Campaign sequence not found")
    if _active_execution_for_request(db, review_request.id):
        raise AlreadyRunningError(f"Review request {review_request.id} already has an active campaign")

    when = now or utcnow()
    execution = CampaignExecution(
        id=str(uuid.uuid4()),
        business_id=review_request.business_id,
        review_request_id=review_request.id,
        sequence_id=sequence.id,
        current_step=0,
        status="active",
        started_at=when,
        version=0,
        active_key=review_request.id,
    )
    reschedule(execution, sequence)
    # Two concurrent starts both pass the check above; the unique active_key picks one.
    try:
        with db.begin_nested():
            db.add(execution)
            db.flush()
    except IntegrityError as exc:
        raise AlreadyRunningError(f"Review request {review_request.id} already has an active campaign") from exc

    if not has_dispatchable_steps(sequence):
        complete(execution, when)
        execution.stop_reason = "Sequence has no active steps"
        db.flush()

    log_event(
        logger,
        "campaign.execution_started",
        execution_id=execution.id,
        review_request_id=review_request.id,
        sequence_id=sequence.id,
        status=execution.status,
    )
    return execution


def start_default_execution(
    db: Session,
    *,
    review_request: ReviewRequest,
    org_id: str,
    now: datetime | None = None,
) -> CampaignExecution:
    sequence = get_default_sequence(db, business_id=org_id)
    if sequence is None:
        raise NoDefaultSequenceError(f"No default campaign sequence for business {org_id}")
    return start_execution(db, review_request=review_request, sequence=sequence, now=now)


def _skip_pending_steps(db: Session, execution: CampaignExecution, reason: str) -> None:
    db.execute(
        update(CampaignStepExecution)
        .where(
            CampaignStepExecution.execution_id == execution.id,
            CampaignStepExecution.status == "pending",
        )
        .values(status="skipped", last_error=reason[:500])
        .execution_options(synchronize_session="fetch")
    )


def _finish(db: Session, execution: CampaignExecution, *, status: str, reason: str, now: datetime) -> None:
    execution.status = status
    execution.completed_at = now
    execution.stop_reason = reason[:255]
    execution.active_key = None
    execution.next_fire_at = None
    db.flush()
    _skip_pending_steps(db, execution, reason)
    db.flush()
    log_event(
        logger,
        f"campaign.execution_{status}",
        execution_id=execution.id,
        review_request_id=execution.review_request_id,
        current_step=execution.current_step,
        reason=reason,
    )


def _claim(db: Session, execution: CampaignExecution) -> bool:
    db.flush()
    expected = execution.version
    result = db.execute(
        update(CampaignExecution)
        .where(
            CampaignExecution.id == execution.id,
            CampaignExecution.version == expected,
            CampaignExecution.status == "active",
        )
        .values(version=expected + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False
    set_committed_value(execution, "version", expected + 1)
    return True


def _step_execution_for(db: Session, execution: CampaignExecution, step: CampaignStep) -> CampaignStepExecution:
    existing = db.execute(
        select(CampaignStepExecution).where(
            CampaignStepExecution.execution_id == execution.id,
            CampaignStepExecution.step_id == step.id,
        )
    ).scalar_one_or_none()
    if existing:
        return existing

    step_execution = CampaignStepExecution(
        id=str(uuid.uuid4()),
        execution_id=execution.id,
        step_id=step.id,
        step_number=step.step_number,
        status="pending",
        attempt_count=0,
    )
    db.add(step_execution)
    db.flush()
    return step_execution


def _advanced_outcome(execution: CampaignExecution, kind: StepOutcomeKind, step: CampaignStep, detail: str | None = None) -> StepOutcome:
    if execution.status == "completed":
        return StepOutcome(outcome="completed", execution_id=execution.id, step_number=step.step_number, detail=detail)
    return StepOutcome(outcome=kind, execution_id=execution.id, step_number=step.step_number, detail=detail)


def execute_due_step(db: Session, execution: CampaignExecution, *, now: datetime | None = None) -> StepOutcome:
    when = now or utcnow()
    if is_terminal(execution):
        return StepOutcome(outcome="terminal", execution_id=execution.id)

    review_request = db.get(ReviewRequest, execution.review_request_id)
    if review_request is None:
        _finish(db, execution, status="stopped", reason=REQUEST_MISSING_REASON, now=when)
        return StepOutcome(outcome="stopped", execution_id=execution.id, detail=REQUEST_MISSING_REASON)
    if review_request.status == "completed":
        _finish(db, execution, status="stopped", reason=REQUEST_COMPLETED_REASON, now=when)
        return StepOutcome(outcome="stopped", execution_id=execution.id, detail=REQUEST_COMPLETED_REASON)

    sequence = db.get(CampaignSequence, execution.sequence_id)
    if sequence is None:
        _finish(db, execution, status="failed", reason="Campaign sequence no longer exists", now=when)
        return StepOutcome(outcome="failed", execution_id=execution.id, detail="sequence_missing")

    step = next_step(execution, sequence)
    if step is None:
        complete(execution, when)
        db.flush()
        return StepOutcome(outcome="completed", execution_id=execution.id)
    if not is_due(execution, sequence, when):
        # Delays edited after the step was scheduled.
        reschedule(execution, sequence)
        db.flush()
        return StepOutcome(outcome="not_due", execution_id=execution.id, step_number=step.step_number)

    if not _claim(db, execution):
        log_event(logger, "campaign.claim_lost", execution_id=execution.id, step_number=step.step_number)
        return StepOutcome(outcome="claim_lost", execution_id=execution.id, step_number=step.step_number)

    step_execution = _step_execution_for(db, execution, step)

    if not is_step_dispatchable(step, sequence):
        step_execution.status = "skipped"
        step_execution.last_error = "Step or sequence inactive"
        advance(execution, sequence, when)
        db.flush()
        return _advanced_outcome(execution, "skipped", step, "inactive")

    try:
        result = deliver_step(db, review_request=review_request, step=step, now=when)
    except (OptedOutError, InvalidRecipientError) as exc:
        step_execution.status = "skipped"
        step_execution.last_error = exc.message[:500]
        advance(execution, sequence, when)
        db.flush()
        log_event(
            logger,
            "campaign.step_skipped",
            execution_id=execution.id,
            step_number=step.step_number,
            reason=exc.code,
        )
        return _advanced_outcome(execution, "skipped", step, exc.code)
    except DispatchError as exc:
        step_execution.attempt_count += 1
        step_execution.last_error = exc.reason[:500]
        log_event(
            logger,
            "campaign.step_dispatch_failed",
            level=logging.WARNING,
            execution_id=execution.id,
            step_number=step.step_number,
            attempt=step_execution.attempt_count,
            error_code=exc.error_code,
            error=exc.reason,
        )
        if step_execution.attempt_count > settings.campaign_step_retry_limit:
            step_execution.status = "failed"
            _finish(
                db,
                execution,
                status="failed",
                reason=f"Step {step.step_number} failed after {step_execution.attempt_count} attempts: {exc.reason}",
                now=when,
            )
            return StepOutcome(
                outcome="failed",
                execution_id=execution.id,
                step_number=step.step_number,
                detail=exc.error_code,
            )
        # Behind executions that have been due longer.
        execution.next_fire_at = when
        db.flush()
        return StepOutcome(
            outcome="retry",
            execution_id=execution.id,
            step_number=step.step_number,
            detail=exc.error_code,
        )

    step_execution.status = "sent"
    step_execution.attempt_count += 1
    step_execution.last_error = None
    step_execution.provider_message_id = result.message_id
    step_execution.sent_at = when
    if result.status == "sent":
        apply_event(review_request, "processed", {"step_number": step.step_number}, when)
    advance(execution, sequence, when)
    db.flush()
    return _advanced_outcome(execution, "dispatched", step, result.provider)


def _locked_execution(db: Session, execution_id: str, business_id: str | None) -> CampaignExecution:
    stmt = select(CampaignExecution).where(CampaignExecution.id == execution_id)
    if business_id:
        stmt = stmt.where(CampaignExecution.business_id == business_id)
    execution = db.execute(stmt.with_for_update()).scalar_one_or_none()
    if execution is None:
        raise NotFoundError("Campaign execution not found")
    return execution


def stop_execution(
    db: Session,
    execution_id: str,
    *,
    reason: str,
    business_id: str | None = None,
    now: datetime | None = None,
) -> CampaignExecution:
    execution = _locked_execution(db, execution_id, business_id)
    if is_terminal(execution):
        return execution
    _finish(db, execution, status="stopped", reason=reason or "Stopped", now=now or utcnow())
    return execution


def cancel_execution(
    db: Session,
    execution_id: str,
    *,
    business_id: str | None = None,
    reason: str = "Cancelled by user",
    now: datetime | None = None,
) -> CampaignExecution:
    execution = _locked_execution(db, execution_id, business_id)
    if is_terminal(execution):
        return execution
    _finish(db, execution, status="cancelled", reason=reason, now=now or utcnow())
    return execution


def get_execution(db: Session, execution_id: str, *, business_id: str) -> CampaignExecution:
    execution = db.execute(
        select(CampaignExecution).where(
            CampaignExecution.id == execution_id,
            CampaignExecution.business_id == business_id,
        )
    ).scalar_one_or_none()
    if execution is None:
        raise NotFoundError("Campaign execution not found")
    return execution


def list_executions(
    db: Session,
    *,
    business_id: str,
    status: str | None = None,
    review_request_id: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[CampaignExecution], int]:
    filters = [CampaignExecution.business_id == business_id]
    if status:
        filters.append(CampaignExecution.status == status)
    if review_request_id:
        filters.append(CampaignExecution.review_request_id == review_request_id)

    total = int(db.execute(select(func.count(CampaignExecution.id)).where(*filters)).scalar_one())
    items = db.execute(
        select(CampaignExecution)
        .where(*filters)
        .order_by(CampaignExecution.created_at.desc(), CampaignExecution.id.desc())
        .offset(offset)
        .limit(limit)
    ).scalars().all()
    return list(items), total


def step_executions_for(db: Session, execution_id: str) -> list[CampaignStepExecution]:
    return list(
        db.execute(
            select(CampaignStepExecution)
            .where(CampaignStepExecution.execution_id == execution_id)
            .order_by(CampaignStepExecution.step_number.asc())
        ).scalars()
    )


def _defer_after_error(db: Session, execution_id: str, now: datetime) -> None:
    """Pushes an execution that raised behind the work due before the next pass."""
    retry_at = now + timedelta(seconds=settings.campaign_run_interval_seconds)
    try:
        db.execute(
            update(CampaignExecution)
            .where(CampaignExecution.id == execution_id, CampaignExecution.status == "active")
            .values(next_fire_at=retry_at)
            .execution_options(synchronize_session=False)
        )
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        log_event(
            logger,
            "campaign.defer_failed",
            level=logging.ERROR,
            execution_id=execution_id,
            error=str(exc),
        )


def run_due_executions(
    db: Session,
    *,
    now: datetime | None = None,
    limit: int | None = None,
    business_id: str | None = None,
) -> ExecutionRunSummary:
    """One scheduler pass; commits after each execution so failures stay isolated."""
    when = now or utcnow()
    stmt = select(CampaignExecution.id).where(
        CampaignExecution.status == "active",
        CampaignExecution.next_fire_at.is_not(None),
        CampaignExecution.next_fire_at <= when,
    )
    if business_id:
        stmt = stmt.where(CampaignExecution.business_id == business_id)
    execution_ids = db.execute(
        stmt.order_by(CampaignExecution.next_fire_at.asc(), CampaignExecution.id.asc())
        .limit(limit or settings.campaign_run_batch_size)
    ).scalars().all()

    counts: dict[str, int] = {
        "dispatched": 0,
        "completed": 0,
        "skipped": 0,
        "retry": 0,
        "failed": 0,
        "stopped": 0,
        "not_due": 0,
        "claim_lost": 0,
    }
    errors = 0
    for execution_id in execution_ids:
        try:
            execution = db.get(CampaignExecution, execution_id)
            if execution is None:
                continue
            outcome = execute_due_step(db, execution, now=when)
            db.commit()
        except Exception as exc:
            db.rollback()
            errors += 1
            log_event(
                logger,
                "campaign.execution_error",
                level=logging.ERROR,
                execution_id=execution_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            _defer_after_error(db, execution_id, when)
            continue
        if outcome.outcome in counts:
            counts[outcome.outcome] += 1

    summary = ExecutionRunSummary(
        processed=len(execution_ids),
        dispatched=counts["dispatched"],
        completed=counts["completed"],
        skipped=counts["skipped"],
        retried=counts["retry"],
        failed=counts["failed"],
        stopped=counts["stopped"],
        not_due=counts["not_due"],
        claim_lost=counts["claim_lost"],
        errors=errors,
    )
    log_event(logger, "campaign.run_due", **summary.__dict__)
    return summary
