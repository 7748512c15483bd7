from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from reviewflow.core.api_docs import error_responses
from reviewflow.core.deps import get_db
from reviewflow.core.security_current import BusinessAccess, require_role
from reviewflow.models.business import Business
from reviewflow.schemas.business import PlatformLinkOut, ReviewSettingsOut, ReviewSettingsUpdateIn
from reviewflow.services.audit_service import log_audit_event
from reviewflow.services.rating_gate import platform_links, review_config_for_business

router = APIRouter(prefix="/business", tags=["business"])


def _review_settings_out(business: Business) -> ReviewSettingsOut:
    links = platform_links(review_config_for_business(business))
    return ReviewSettingsOut(
        business_id=business.id,
        business_name=business.name,
        public_rating_threshold=business.public_rating_threshold,
        google_review_short_url=business.google_review_short_url,
        google_place_id=business.google_place_id,
        facebook_page_url=business.facebook_page_url,
        yelp_page_url=business.yelp_page_url,
        platforms=[PlatformLinkOut(type=link.type, url=link.url) for link in links],
        updated_at=business.updated_at,
    )


@router.get(
    "/review-settings",
    response_model=ReviewSettingsOut,
    summary="Get review routing settings",
    description="Returns the rating threshold and the configured review platforms in priority order.",
    responses=error_responses(401, 403, 404, 500),
)
def get_review_settings(
    access: BusinessAccess = Depends(require_role("staff")),
):
    return _review_settings_out(access.business)


@router.put(
    "/review-settings",
    response_model=ReviewSettingsOut,
    summary="Update review routing settings",
    description="Empty strings clear a platform.",
    responses=error_responses(400, 401, 403, 404, 422, 500),
)
def update_review_settings(
    payload: ReviewSettingsUpdateIn,
    db: Session = Depends(get_db),
    access: BusinessAccess = Depends(require_role("admin")),
):
    business = access.business
    changes = payload.model_dump(exclude_unset=True)
    for field_name, value in changes.items():
        if field_name == "public_rating_threshold":
            if value is not None:
                business.public_rating_threshold = value
            continue
        setattr(business, field_name, value or None)

    log_audit_event(
        db,
        business_id=business.id,
        actor_user_id=access.user.id,
        action="business.review_settings.update",
        target_type="business",
        target_id=business.id,
        metadata_json={"fields": sorted(changes)},
    )
    db.commit()
    db.refresh(business)
    return _review_settings_out(business)
