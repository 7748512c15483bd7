"""Rating gate: routes a submitted star rating to a public platform or private feedback.

Everything here is pure. Callers persist the outcome and enforce the
one-submission-per-customer rule.
"""

from dataclasses import dataclass, field
from typing import Literal

from reviewflow.core.errors import InvalidRatingError

GateOutcome = Literal["route_public", "route_private"]
PlatformType = Literal["google_short_url", "google_place_id", "facebook", "yelp"]

ROUTE_PUBLIC: GateOutcome = "route_public"
ROUTE_PRIVATE: GateOutcome = "route_private"
DEFAULT_PUBLIC_RATING_THRESHOLD = 4

PLATFORM_PRIORITY: tuple[PlatformType, ...] = (
    "google_short_url",
    "google_place_id",
    "facebook",
    "yelp",
)
GOOGLE_WRITE_REVIEW_URL = "https://search.google.com/local/writereview?placeid={place_id}"


@dataclass(frozen=True)
class ReviewPlatform:
    type: PlatformType
    url: str | None = None
    place_id: str | None = None

    def review_url(self) -> str | None:
        if self.type == "google_place_id":
            place_id = (self.place_id or "").strip()
            return GOOGLE_WRITE_REVIEW_URL.format(place_id=place_id) if place_id else None

        url = (self.url or "").strip()
        if not url:
            return None
        if self.type == "facebook":
            return f"{url.rstrip('/')}/reviews"
        return url


@dataclass(frozen=True)
class PlatformLink:
    type: PlatformType
    url: str


@dataclass(frozen=True)
class BusinessReviewConfig:
    public_rating_threshold: int = DEFAULT_PUBLIC_RATING_THRESHOLD
    configured_platforms: tuple[ReviewPlatform, ...] = field(default_factory=tuple)
    private_feedback_url: str | None = None

    def __post_init__(self) -> None:
        threshold = self.public_rating_threshold
        if isinstance(threshold, bool) or not isinstance(threshold, int) or not 1 <= threshold <= 5:
            raise ValueError("public_rating_threshold must be an integer between 1 and 5")
        object.__setattr__(self, "configured_platforms", tuple(self.configured_platforms))


@dataclass(frozen=True)
class RatingGateDecision:
    outcome: GateOutcome
    rating: int
    threshold: int
    platform: PlatformLink | None
    offered_platforms: tuple[PlatformLink, ...]
    private_feedback_url: str | None

    @property
    def is_public(self) -> bool:
        return self.outcome == ROUTE_PUBLIC


def platform_links(config: BusinessReviewConfig) -> tuple[PlatformLink, ...]:
    """Usable platform links in priority order, first configured entry per type."""
    by_type: dict[str, PlatformLink] = {}
    for platform in config.configured_platforms:
        if platform.type in by_type or platform.type not in PLATFORM_PRIORITY:
            continue
        url = platform.review_url()
        if url:
            by_type[platform.type] = PlatformLink(type=platform.type, url=url)
    return tuple(by_type[kind] for kind in PLATFORM_PRIORITY if kind in by_type)


def validate_rating(rating: object) -> int:
    if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
        raise InvalidRatingError(f"Rating must be an integer between 1 and 5, got {rating!r}")
    return rating


def decide(rating: int, config: BusinessReviewConfig) -> RatingGateDecision:
    validated = validate_rating(rating)
    links = platform_links(config)

    if validated >= config.public_rating_threshold and links:
        return RatingGateDecision(
            outcome=ROUTE_PUBLIC,
            rating=validated,
            threshold=config.public_rating_threshold,
            platform=links[0],
            offered_platforms=links,
            private_feedback_url=config.private_feedback_url,
        )

    return RatingGateDecision(
        outcome=ROUTE_PRIVATE,
        rating=validated,
        threshold=config.public_rating_threshold,
        platform=None,
        offered_platforms=(),
        private_feedback_url=config.private_feedback_url,
    )


def review_config_for_business(business, *, private_feedback_url: str | None = None) -> BusinessReviewConfig:
    platforms = [
        ReviewPlatform(type="google_short_url", url=business.google_review_short_url),
        ReviewPlatform(type="google_place_id", place_id=business.google_place_id),
        ReviewPlatform(type="facebook", url=business.facebook_page_url),
        ReviewPlatform(type="yelp", url=business.yelp_page_url),
    ]
    return BusinessReviewConfig(
        public_rating_threshold=business.public_rating_threshold or DEFAULT_PUBLIC_RATING_THRESHOLD,
        configured_platforms=tuple(platforms),
        private_feedback_url=private_feedback_url,
    )
