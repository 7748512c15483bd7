from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from reviewflow.core.api_docs import error_responses
from reviewflow.core.deps import get_db
from reviewflow.core.errors import DispatchError, NoDefaultSequenceError
from reviewflow.core.security_current import BusinessAccess, require_role
from reviewflow.models.customer import Customer
from reviewflow.models.review_request import ReviewRequest
from reviewflow.schemas.common import pagination_meta
from reviewflow.schemas.review_request import (
    ReviewRequestListOut,
    ReviewRequestOut,
    ReviewRequestSendIn,
    ReviewRequestStatus,
)
from reviewflow.services.audit_service import log_audit_event
from reviewflow.services.campaign_engine import start_execution
from reviewflow.services.review_request_dispatcher import MessageTemplate, dispatch
from reviewflow.services.sequence_service import get_default_sequence

router = APIRouter(prefix="/review-requests", tags=["review-requests"])


def _review_request_out(item: ReviewRequest, *, campaign_execution_id: str | None = None) -> ReviewRequestOut:
    return ReviewRequestOut(
        id=item.id,
        customer_id=item.customer_id,
        channel=item.channel,
        recipient=item.recipient,
        subject=item.subject,
        body=item.body,
        provider=item.provider,
        status=item.status,
        provider_message_id=item.provider_message_id,
        sent_at=item.sent_at,
        delivered_at=item.delivered_at,
        opened_at=item.opened_at,
        clicked_at=item.clicked_at,
        completed_at=item.completed_at,
        error_code=item.error_code,
        error_message=item.error_message,
        last_provider_event=item.last_provider_event,
        campaign_execution_id=campaign_execution_id,
        created_at=item.created_at,
        updated_at=item.updated_at,
    )


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
    "",
    response_model=ReviewRequestOut,
    status_code=201,
    summary="Send a review request",
    description=(
        "Sends one review request by email or SMS. Without a body the built-in template for the "
        "channel is used. A provider failure is recorded as a failed request and returns 502."
    ),
    responses=error_responses(401, 403, 404, 409, 422, 500, 502),
)
def send_review_request(
    payload: ReviewRequestSendIn,
    db: Session = Depends(get_db),
    access: BusinessAccess = Depends(require_role("staff")),
):
    customer = db.execute(
        select(Customer).where(
            Customer.id == payload.customer_id,
            Customer.business_id == access.business.id,
        )
    ).scalar_one_or_none()
    if not customer:
        raise HTTPException(status_code=404, detail="Customer not found")

    sequence = None
    if payload.start_default_campaign:
        sequence = get_default_sequence(db, business_id=access.business.id)
        if sequence is None:
            raise NoDefaultSequenceError("No default campaign sequence is configured")

    template = MessageTemplate(body=payload.body, subject=payload.subject) if payload.body else None
    try:
        review_request = dispatch(
            db,
            customer=customer,
            business=access.business,
            channel=payload.channel,
            template=template,
        )
    except DispatchError:
        # Keep the failed row for the history.
        db.commit()
        raise

    execution_id = None
    if sequence is not None:
        execution_id = start_execution(db, review_request=review_request, sequence=sequence).id

    log_audit_event(
        db,
        business_id=access.business.id,
        actor_user_id=access.user.id,
        action="review_request.send",
        target_type="review_request",
        target_id=review_request.id,
        metadata_json={
            "customer_id": customer.id,
            "channel": review_request.channel,
            "status": review_request.status,
            "campaign_execution_id": execution_id,
        },
    )
    db.commit()
    db.refresh(review_request)
    return _review_request_out(review_request, campaign_execution_id=execution_id)


@router.get(
    "",
    response_model=ReviewRequestListOut,
    summary="List review requests",
    responses=error_responses(401, 403, 422, 500),
)
def list_review_requests(
    status: ReviewRequestStatus | None = Query(default=None),
    customer_id: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    access: BusinessAccess = Depends(require_role("staff")),
):
    filters = [ReviewRequest.business_id == access.business.id]
    if status:
        filters.append(ReviewRequest.status == status)
    if customer_id:
        filters.append(ReviewRequest.customer_id == customer_id)

    total = int(db.execute(select(func.count(ReviewRequest.id)).where(*filters)).scalar_one())
    rows = db.execute(
        select(ReviewRequest)
        .where(*filters)
        .order_by(ReviewRequest.created_at.desc(), ReviewRequest.id.desc())
        .offset(offset)
        .limit(limit)
    ).scalars().all()
    items = [_review_request_out(row) for row in rows]
    return ReviewRequestListOut(
        items=items,
        pagination=pagination_meta(total=total, limit=limit, offset=offset, count=len(items)),
        status=status,
        customer_id=customer_id,
    )


@router.get(
    "/{review_request_id}",
    response_model=ReviewRequestOut,
    summary="Get review request",
    responses=error_responses(401, 403, 404, 500),
)
def get_review_request(
    review_request_id: str,
    db: Session = Depends(get_db),
    access: BusinessAccess = Depends(require_role("staff")),
):
    return _review_request_out(
        _review_request_or_404(db, business_id=access.business.id, review_request_id=review_request_id)
    )
