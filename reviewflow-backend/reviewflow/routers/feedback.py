from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from reviewflow.core.api_docs import error_responses
from reviewflow.core.config import settings
from reviewflow.core.deps import get_db
from reviewflow.core.rate_limit import SlidingWindowRateLimiter, client_ip
from reviewflow.schemas.business import PlatformLinkOut
from reviewflow.schemas.feedback import (
    FeedbackGateInfoOut,
    PrivateFeedbackIn,
    PrivateFeedbackOut,
    RatingDecisionOut,
    RatingSubmitIn,
)
from reviewflow.services.feedback_gate_service import get_gate_info, submit_private_feedback, submit_rating

router = APIRouter(prefix="/feedback", tags=["feedback"])

feedback_rate_limiter = SlidingWindowRateLimiter(
    max_requests=settings.feedback_public_rate_limit_requests,
    window_seconds=settings.feedback_public_rate_limit_window_seconds,
)


def enforce_public_rate_limit(request: Request) -> None:
    retry_after = feedback_rate_limiter.check_and_consume(client_ip(request))
    if retry_after > 0:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many requests. Try again later.",
            headers={"Retry-After": str(retry_after)},
        )


@router.get(
    "/{customer_id}",
    response_model=FeedbackGateInfoOut,
    summary="Feedback gate details",
    description="Public. Returns the names shown on the rating page and whether it was already used.",
    responses=error_responses(404, 429, 500),
    dependencies=[Depends(enforce_public_rate_limit)],
)
def feedback_gate_info(customer_id: str, db: Session = Depends(get_db)):
    info = get_gate_info(db, customer_id=customer_id)
    return FeedbackGateInfoOut(
        customer_id=info.customer_id,
        customer_name=info.customer_name,
        business_name=info.business_name,
        already_used=info.already_used,
        rating=info.rating,
    )


@router.post(
    "/{customer_id}/rating",
    response_model=RatingDecisionOut,
    summary="Submit a star rating",
    description=(
        "Public. Ratings at or above the business threshold are routed to the highest-priority "
        "review platform; lower ratings go to the private feedback form. One submission per customer."
    ),
    responses=error_responses(404, 409, 422, 429, 500),
    dependencies=[Depends(enforce_public_rate_limit)],
)
def feedback_submit_rating(customer_id: str, payload: RatingSubmitIn, db: Session = Depends(get_db)):
    result = submit_rating(db, customer_id=customer_id, rating=payload.rating, comment=payload.comment)
    db.commit()

    decision = result.decision
    platform = PlatformLinkOut(type=decision.platform.type, url=decision.platform.url) if decision.platform else None
    return RatingDecisionOut(
        submission_id=result.submission.id,
        outcome=decision.outcome,
        rating=decision.rating,
        threshold=decision.threshold,
        platform=platform,
        offered_platforms=[PlatformLinkOut(type=link.type, url=link.url) for link in decision.offered_platforms],
        private_feedback_url=decision.private_feedback_url,
        redirect_url=platform.url if platform else decision.private_feedback_url,
    )


@router.post(
    "/{customer_id}/private",
    response_model=PrivateFeedbackOut,
    status_code=201,
    summary="Submit private feedback",
    responses=error_responses(404, 422, 429, 500),
    dependencies=[Depends(enforce_public_rate_limit)],
)
def feedback_submit_private(customer_id: str, payload: PrivateFeedbackIn, db: Session = Depends(get_db)):
    feedback = submit_private_feedback(
        db,
        customer_id=customer_id,
        comment=payload.comment,
        contact_requested=payload.contact_requested,
    )
    db.commit()
    db.refresh(feedback)
    return PrivateFeedbackOut(
        id=feedback.id,
        submission_id=feedback.submission_id,
        contact_requested=feedback.contact_requested,
        created_at=feedback.created_at,
    )
