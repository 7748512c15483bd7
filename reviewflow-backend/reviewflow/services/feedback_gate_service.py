"""Public feedback gate: the page a review link lands on.

The customer rates their experience once; the rating gate decides whether they
are sent to a public review platform or to the private feedback form.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from reviewflow.core.errors import AlreadyUsedError, NotFoundError
from reviewflow.core.observability import log_event
from reviewflow.core.time_utils import utcnow
from reviewflow.models.business import Business
from reviewflow.models.customer import Customer
from reviewflow.models.feedback import FeedbackGateSubmission, PrivateFeedback
from reviewflow.models.review_request import ReviewRequest
from reviewflow.services.delivery_status import FAILURE_STATUSES, apply_event
from reviewflow.services.rating_gate import RatingGateDecision, decide, review_config_for_business, validate_rating
from reviewflow.services.template_renderer import private_feedback_url

logger = logging.getLogger("reviewflow.feedback")


@dataclass(frozen=True)
class GateInfo:
    customer_id: str
    customer_name: str
    business_name: str
    already_used: bool
    rating: int | None = None


@dataclass(frozen=True)
class RatingSubmission:
    submission: FeedbackGateSubmission
    decision: RatingGateDecision
    completed_request_ids: tuple[str, ...]


def _customer_and_business(db: Session, customer_id: str) -> tuple[Customer, Business]:
    customer = db.get(Customer, customer_id)
    if customer is None:
        raise NotFoundError("Customer not found")
    business = db.get(Business, customer.business_id)
    if business is None:
        raise NotFoundError("Business not found")
    return customer, business


def _submission_for(db: Session, customer_id: str) -> FeedbackGateSubmission | None:
    return db.execute(
        select(FeedbackGateSubmission).where(FeedbackGateSubmission.customer_id == customer_id)
    ).scalar_one_or_none()


def get_gate_info(db: Session, *, customer_id: str) -> GateInfo:
    customer, business = _customer_and_business(db, customer_id)
    existing = _submission_for(db, customer.id)
    return GateInfo(
        customer_id=customer.id,
        customer_name=customer.name,
        business_name=business.name,
        already_used=existing is not None,
        rating=existing.rating if existing else None,
    )


def _open_requests(db: Session, customer: Customer) -> list[ReviewRequest]:
    return list(
        db.execute(
            select(ReviewRequest)
            .where(
                ReviewRequest.business_id == customer.business_id,
                ReviewRequest.customer_id == customer.id,
                ReviewRequest.status.not_in(FAILURE_STATUSES | {"completed"}),
            )
            .order_by(ReviewRequest.created_at.desc())
            .with_for_update()
        ).scalars()
    )


def submit_rating(
    db: Session,
    *,
    customer_id: str,
    rating: int,
    comment: str | None = None,
    now: datetime | None = None,
) -> RatingSubmission:
    validated = validate_rating(rating)
    customer, business = _customer_and_business(db, customer_id)
    if _submission_for(db, customer.id):
        raise AlreadyUsedError("Feedback has already been submitted for this link")

    decision = decide(
        validated,
        review_config_for_business(business, private_feedback_url=private_feedback_url(customer.id)),
    )
    when = now or utcnow()
    open_requests = _open_requests(db, customer)

    submission = FeedbackGateSubmission(
        id=str(uuid.uuid4()),
        business_id=business.id,
        customer_id=customer.id,
        review_request_id=open_requests[0].id if open_requests else None,
        rating=validated,
        comment=(comment or "").strip() or None,
        decision=decision.outcome,
        platform=decision.platform.type if decision.platform else None,
        platform_url=decision.platform.url if decision.platform else None,
    )
    try:
        with db.begin_nested():
            db.add(submission)
            db.flush()
    except IntegrityError as exc:
        raise AlreadyUsedError("Feedback has already been submitted for this link") from exc

    for request in open_requests:
        apply_event(request, "completed", {"rating": validated}, when)
    db.flush()

    log_event(
        logger,
        "feedback.rating_submitted",
        business_id=business.id,
        customer_id=customer.id,
        rating=validated,
        decision=decision.outcome,
        platform=submission.platform,
        completed_requests=len(open_requests),
    )
    return RatingSubmission(
        submission=submission,
        decision=decision,
        completed_request_ids=tuple(request.id for request in open_requests),
    )


def submit_private_feedback(
    db: Session,
    *,
    customer_id: str,
    comment: str,
    contact_requested: bool = False,
) -> PrivateFeedback:
    customer, business = _customer_and_business(db, customer_id)
    text = (comment or "").strip()
    if not text:
        raise ValueError("comment is required")

    submission = _submission_for(db, customer.id)
    feedback = PrivateFeedback(
        id=str(uuid.uuid4()),
        business_id=business.id,
        customer_id=customer.id,
        submission_id=submission.id if submission else None,
        comment=text[:4000],
        contact_requested=contact_requested,
    )
    db.add(feedback)
    db.flush()
    log_event(
        logger,
        "feedback.private_submitted",
        business_id=business.id,
        customer_id=customer.id,
        contact_requested=contact_requested,
    )
    return feedback
