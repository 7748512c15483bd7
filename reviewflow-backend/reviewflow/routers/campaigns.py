from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from reviewflow.core.api_docs import error_responses
from reviewflow.core.deps import get_db
from reviewflow.core.security_current import BusinessAccess, require_role
from reviewflow.models.campaign import CampaignExecution, CampaignSequence
from reviewflow.models.review_request import ReviewRequest
from reviewflow.schemas.campaign import (
    CampaignExecutionListOut,
    CampaignExecutionOut,
    CampaignExecutionStartDefaultIn,
    CampaignExecutionStartIn,
    CampaignExecutionStopIn,
    CampaignSequenceCreateIn,
    CampaignSequenceListOut,
    CampaignSequenceOut,
    CampaignSequenceUpdateIn,
    CampaignStepExecutionOut,
    CampaignStepIn,
    CampaignStepOut,
    ExecutionRunIn,
    ExecutionRunOut,
    ExecutionStatus,
)
from reviewflow.schemas.common import pagination_meta
from reviewflow.services.audit_service import log_audit_event
from reviewflow.services.campaign_engine import (
    cancel_execution,
    get_execution,
    list_executions,
    run_due_executions,
    start_default_execution,
    start_execution,
    step_executions_for,
    stop_execution,
)
from reviewflow.services.campaign_scheduler import ordered_steps
from reviewflow.services.sequence_service import (
    StepSpec,
    add_step,
    create_sequence,
    ensure_default_sequence,
    set_default_sequence,
)

router = APIRouter(prefix="/campaigns", tags=["campaigns"])


def _step_spec(item: CampaignStepIn) -> StepSpec:
    return StepSpec(
        step_number=item.step_number,
        delay_hours=item.delay_hours,
        message_type=item.message_type,
        subject_template=item.subject_template,
        body_template=item.body_template,
        is_active=item.is_active,
    )


def _sequence_out(sequence: CampaignSequence) -> CampaignSequenceOut:
    return CampaignSequenceOut(
        id=sequence.id,
        name=sequence.name,
        description=sequence.description,
        is_default=sequence.is_default,
        is_active=sequence.is_active,
        steps=[
            CampaignStepOut(
                id=step.id,
                step_number=step.step_number,
                delay_hours=step.delay_hours,
                message_type=step.message_type,
                subject_template=step.subject_template,
                body_template=step.body_template,
                is_active=step.is_active,
            )
            for step in ordered_steps(sequence)
        ],
        created_at=sequence.created_at,
        updated_at=sequence.updated_at,
    )


def _execution_out(db: Session, execution: CampaignExecution, *, include_steps: bool = False) -> CampaignExecutionOut:
    steps = []
    if include_steps:
        steps = [
            CampaignStepExecutionOut(
                id=item.id,
                step_id=item.step_id,
                step_number=item.step_number,
                status=item.status,
                attempt_count=item.attempt_count,
                last_error=item.last_error,
                provider_message_id=item.provider_message_id,
                sent_at=item.sent_at,
            )
            for item in step_executions_for(db, execution.id)
        ]
    return CampaignExecutionOut(
        id=execution.id,
        review_request_id=execution.review_request_id,
        sequence_id=execution.sequence_id,
        current_step=execution.current_step,
        status=execution.status,
        started_at=execution.started_at,
        last_step_fired_at=execution.last_step_fired_at,
        next_fire_at=execution.next_fire_at,
        completed_at=execution.completed_at,
        stop_reason=execution.stop_reason,
        steps=steps,
        created_at=execution.created_at,
    )


def _sequence_or_404(db: Session, *, business_id: str, sequence_id: str) -> CampaignSequence:
    sequence = db.execute(
        select(CampaignSequence).where(
            CampaignSequence.id == sequence_id,
            CampaignSequence.business_id == business_id,
        )
    ).scalar_one_or_none()
    if not sequence:
        raise HTTPException(status_code=404, detail="Campaign sequence not found")
    return sequence


def _review_request_or_404(db: Session, *, business_id: str, review_request_id: str) -> ReviewRequest:
    item = db.execute(
        select(ReviewRequest).where(
            ReviewRequest.id == review_request_id,
            ReviewRequest.business_id == business_id,
        )
    ).scalar_one_or_none()
    if not item:
        raise HTTPException(status_code=404, detail="Review request not found")
    return item


@router.post(
    "/sequences",
    response_model=CampaignSequenceOut,
    status_code=201,
    summary="Create campaign sequence",
    responses=error_responses(401, 403, 422, 500),
)
def create_campaign_sequence(
    payload: CampaignSequenceCreateIn,
    db: Session = Depends(get_db),
    access: BusinessAccess = Depends(require_role("admin")),
):
    sequence = create_sequence(
        db,
        business_id=access.business.id,
        name=payload.name.strip(),
        description=payload.description,
        steps=[_step_spec(item) for item in payload.steps],
        is_default=payload.is_default,
        is_active=payload.is_active,
        created_by_user_id=access.user.id,
    )
    log_audit_event(
        db,
        business_id=access.business.id,
        actor_user_id=access.user.id,
        action="campaign.sequence.create",
        target_type="campaign_sequence",
        target_id=sequence.id,
        metadata_json={"name": sequence.name, "steps": len(payload.steps), "is_default": sequence.is_default},
    )
    db.commit()
    db.refresh(sequence)
    return _sequence_out(sequence)


@router.post(
    "/sequences/seed-default",
    response_model=CampaignSequenceOut,
    summary="Seed the stock default sequence",
    description="Returns the current default sequence, creating the stock SMS + three email sequence when none exists.",
    responses=error_responses(401, 403, 500),
)
def seed_default_sequence(
    db: Session = Depends(get_db),
    access: BusinessAccess = Depends(require_role("admin")),
):
    sequence = ensure_default_sequence(db, business_id=access.business.id, created_by_user_id=access.user.id)
    db.commit()
    db.refresh(sequence)
    return _sequence_out(sequence)


@router.get(
    "/sequences",
    response_model=CampaignSequenceListOut,
    summary="List campaign sequences",
    responses=error_responses(401, 403, 422, 500),
)
def list_campaign_sequences(
    is_active: bool | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    access: BusinessAccess = Depends(require_role("staff")),
):
    filters = [CampaignSequence.business_id == access.business.id]
    if is_active is not None:
        filters.append(CampaignSequence.is_active.is_(is_active))

    total = int(db.execute(select(func.count(CampaignSequence.id)).where(*filters)).scalar_one())
    rows = db.execute(
        select(CampaignSequence)
        .where(*filters)
        .order_by(CampaignSequence.created_at.desc(), CampaignSequence.id.desc())
        .offset(offset)
        .limit(limit)
    ).scalars().all()
    items = [_sequence_out(row) for row in rows]
    return CampaignSequenceListOut(
        items=items,
        pagination=pagination_meta(total=total, limit=limit, offset=offset, count=len(items)),
    )


@router.get(
    "/sequences/{sequence_id}",
    response_model=CampaignSequenceOut,
    summary="Get campaign sequence",
    responses=error_responses(401, 403, 404, 500),
)
def get_campaign_sequence(
    sequence_id: str,
    db: Session = Depends(get_db),
    access: BusinessAccess = Depends(require_role("staff")),
):
    return _sequence_out(_sequence_or_404(db, business_id=access.business.id, sequence_id=sequence_id))


@router.patch(
    "/sequences/{sequence_id}",
    response_model=CampaignSequenceOut,
    summary="Update campaign sequence",
    description="Deactivating a sequence makes its remaining steps skip on the next pass.",
    responses=error_responses(401, 403, 404, 409, 422, 500),
)
def update_campaign_sequence(
    sequence_id: str,
    payload: CampaignSequenceUpdateIn,
    db: Session = Depends(get_db),
    access: BusinessAccess = Depends(require_role("admin")),
):
    sequence = _sequence_or_404(db, business_id=access.business.id, sequence_id=sequence_id)
    if payload.name is not None and payload.name.strip() != sequence.name:
        clash = db.execute(
            select(CampaignSequence.id).where(
                CampaignSequence.business_id == access.business.id,
                CampaignSequence.name == payload.name.strip(),
            )
        ).scalar_one_or_none()
        if clash:
            raise HTTPException(status_code=409, detail="A sequence with this name already exists")
        sequence.name = payload.name.strip()
    if payload.description is not None:
        sequence.description = payload.description
    if payload.is_active is not None:
        sequence.is_active = payload.is_active

    log_audit_event(
        db,
        business_id=access.business.id,
        actor_user_id=access.user.id,
        action="campaign.sequence.update",
        target_type="campaign_sequence",
        target_id=sequence.id,
        metadata_json=payload.model_dump(exclude_none=True),
    )
    db.commit()
    db.refresh(sequence)
    return _sequence_out(sequence)


@router.post(
    "/sequences/{sequence_id}/default",
    response_model=CampaignSequenceOut,
    summary="Make sequence the default",
    responses=error_responses(401, 403, 404, 500),
)
def make_default_sequence(
    sequence_id: str,
    db: Session = Depends(get_db),
    access: BusinessAccess = Depends(require_role("admin")),
):
    sequence = _sequence_or_404(db, business_id=access.business.id, sequence_id=sequence_id)
    set_default_sequence(db, sequence=sequence)
    log_audit_event(
        db,
        business_id=access.business.id,
        actor_user_id=access.user.id,
        action="campaign.sequence.set_default",
        target_type="campaign_sequence",
        target_id=sequence.id,
    )
    db.commit()
    db.refresh(sequence)
    return _sequence_out(sequence)


@router.post(
    "/sequences/{sequence_id}/steps",
    response_model=CampaignSequenceOut,
    status_code=201,
    summary="Add a step to a sequence",
    responses=error_responses(401, 403, 404, 422, 500),
)
def add_sequence_step(
    sequence_id: str,
    payload: CampaignStepIn,
    db: Session = Depends(get_db),
    access: BusinessAccess = Depends(require_role("admin")),
):
    sequence = _sequence_or_404(db, business_id=access.business.id, sequence_id=sequence_id)
    step = add_step(db, sequence=sequence, spec=_step_spec(payload))
    log_audit_event(
        db,
        business_id=access.business.id,
        actor_user_id=access.user.id,
        action="campaign.step.create",
        target_type="campaign_step",
        target_id=step.id,
        metadata_json={"sequence_id": sequence.id, "step_number": step.step_number},
    )
    db.commit()
    db.refresh(sequence)
    return _sequence_out(sequence)


@router.post(
    "/executions",
    response_model=CampaignExecutionOut,
    status_code=201,
    summary="Start a campaign for a review request",
    responses=error_responses(401, 403, 404, 409, 422, 500),
)
def start_campaign_execution(
    payload: CampaignExecutionStartIn,
    db: Session = Depends(get_db),
    access: BusinessAccess = Depends(require_role("staff")),
):
    review_request = _review_request_or_404(
        db, business_id=access.business.id, review_request_id=payload.review_request_id
    )
    sequence = _sequence_or_404(db, business_id=access.business.id, sequence_id=payload.sequence_id)
    execution = start_execution(db, review_request=review_request, sequence=sequence)
    log_audit_event(
        db,
        business_id=access.business.id,
        actor_user_id=access.user.id,
        action="campaign.execution.start",
        target_type="campaign_execution",
        target_id=execution.id,
        metadata_json={"review_request_id": review_request.id, "sequence_id": sequence.id},
    )
    db.commit()
    db.refresh(execution)
    return _execution_out(db, execution)


@router.post(
    "/executions/start-default",
    response_model=CampaignExecutionOut,
    status_code=201,
    summary="Start the default campaign for a review request",
    responses=error_responses(401, 403, 404, 409, 422, 500),
)
def start_default_campaign_execution(
    payload: CampaignExecutionStartDefaultIn,
    db: Session = Depends(get_db),
    access: BusinessAccess = Depends(require_role("staff")),
):
    review_request = _review_request_or_404(
        db, business_id=access.business.id, review_request_id=payload.review_request_id
    )
    execution = start_default_execution(db, review_request=review_request, org_id=access.business.id)
    log_audit_event(
        db,
        business_id=access.business.id,
        actor_user_id=access.user.id,
        action="campaign.execution.start",
        target_type="campaign_execution",
        target_id=execution.id,
        metadata_json={"review_request_id": review_request.id, "sequence_id": execution.sequence_id},
    )
    db.commit()
    db.refresh(execution)
    return _execution_out(db, execution)


@router.post(
    "/executions/run-due",
    response_model=ExecutionRunOut,
    summary="Run due campaign steps",
    description="Processes due steps of this business's active executions. Intended for a cron trigger.",
    responses=error_responses(401, 403, 422, 500),
)
def run_due_campaign_steps(
    payload: ExecutionRunIn | None = None,
    db: Session = Depends(get_db),
    access: BusinessAccess = Depends(require_role("admin")),
):
    summary = run_due_executions(
        db,
        limit=payload.limit if payload else None,
        business_id=access.business.id,
    )
    return ExecutionRunOut(**summary.__dict__)


@router.get(
    "/executions",
    response_model=CampaignExecutionListOut,
    summary="List campaign executions",
    responses=error_responses(401, 403, 422, 500),
)
def list_campaign_executions(
    status: ExecutionStatus | None = Query(default=None),
    review_request_id: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    access: BusinessAccess = Depends(require_role("staff")),
):
    rows, total = list_executions(
        db,
        business_id=access.business.id,
        status=status,
        review_request_id=review_request_id,
        limit=limit,
        offset=offset,
    )
    items = [_execution_out(db, row) for row in rows]
    return CampaignExecutionListOut(
        items=items,
        pagination=pagination_meta(total=total, limit=limit, offset=offset, count=len(items)),
        status=status,
    )


@router.get(
    "/executions/{execution_id}",
    response_model=CampaignExecutionOut,
    summary="Get campaign execution",
    responses=error_responses(401, 403, 404, 500),
)
def get_campaign_execution(
    execution_id: str,
    db: Session = Depends(get_db),
    access: BusinessAccess = Depends(require_role("staff")),
):
    execution = get_execution(db, execution_id, business_id=access.business.id)
    return _execution_out(db, execution, include_steps=True)


@router.post(
    "/executions/{execution_id}/stop",
    response_model=CampaignExecutionOut,
    summary="Stop campaign execution",
    description="No-op when the execution already finished.",
    responses=error_responses(401, 403, 404, 422, 500),
)
def stop_campaign_execution(
    execution_id: str,
    payload: CampaignExecutionStopIn | None = None,
    db: Session = Depends(get_db),
    access: BusinessAccess = Depends(require_role("staff")),
):
    reason = payload.reason if payload else "Stopped by user"
    execution = stop_execution(db, execution_id, reason=reason, business_id=access.business.id)
    log_audit_event(
        db,
        business_id=access.business.id,
        actor_user_id=access.user.id,
        action="campaign.execution.stop",
        target_type="campaign_execution",
        target_id=execution.id,
        metadata_json={"reason": reason, "status": execution.status},
    )
    db.commit()
    db.refresh(execution)
    return _execution_out(db, execution, include_steps=True)


@router.post(
    "/executions/{execution_id}/cancel",
    response_model=CampaignExecutionOut,
    summary="Cancel campaign execution",
    description="No-op when the execution already finished.",
    responses=error_responses(401, 403, 404, 500),
)
def cancel_campaign_execution(
    execution_id: str,
    db: Session = Depends(get_db),
    access: BusinessAccess = Depends(require_role("staff")),
):
    execution = cancel_execution(db, execution_id, business_id=access.business.id)
    log_audit_event(
        db,
        business_id=access.business.id,
        actor_user_id=access.user.id,
        action="campaign.execution.cancel",
        target_type="campaign_execution",
        target_id=execution.id,
        metadata_json={"status": execution.status},
    )
    db.commit()
    db.refresh(execution)
    return _execution_out(db, execution, include_steps=True)
