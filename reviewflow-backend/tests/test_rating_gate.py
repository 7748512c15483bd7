import pytest

from reviewflow.core.errors import InvalidRatingError
from reviewflow.services.rating_gate import (
    ROUTE_PRIVATE,
    ROUTE_PUBLIC,
    BusinessReviewConfig,
    ReviewPlatform,
    decide,
    platform_links,
)

GOOGLE_SHORT = ReviewPlatform(type="google_short_url", url="https://g.page/r/sparkle/review")
GOOGLE_PLACE = ReviewPlatform(type="google_place_id", place_id="ChIJN1t_tDeuEmsRUsoyG83frY4")
FACEBOOK = ReviewPlatform(type="facebook", url="https://www.facebook.com/sparkle/")
YELP = ReviewPlatform(type="yelp", url="https://www.yelp.com/biz/sparkle")


def _config(*platforms: ReviewPlatform, threshold: int = 4) -> BusinessReviewConfig:
    return BusinessReviewConfig(
        public_rating_threshold=threshold,
        configured_platforms=platforms,
        private_feedback_url="https://app.example.com/feedback/c1",
    )


def test_high_rating_routes_to_google_before_facebook():
    decision = decide(5, _config(FACEBOOK, GOOGLE_SHORT))

    assert decision.outcome == ROUTE_PUBLIC
    assert decision.platform.type == "google_short_url"
    assert decision.platform.url == "https://g.page/r/sparkle/review"
    assert [link.type for link in decision.offered_platforms] == ["google_short_url", "facebook"]
    assert decision.is_public


def test_low_rating_routes_private():
    decision = decide(2, _config(GOOGLE_SHORT, FACEBOOK))

    assert decision.outcome == ROUTE_PRIVATE
    assert decision.platform is None
    assert decision.offered_platforms == ()
    assert decision.private_feedback_url == "https://app.example.com/feedback/c1"


@pytest.mark.parametrize("rating", [1, 2, 3, 4, 5])
def test_no_configured_platform_always_routes_private(rating):
    assert decide(rating, _config()).outcome == ROUTE_PRIVATE


@pytest.mark.parametrize("rating,expected", [(1, ROUTE_PRIVATE), (3, ROUTE_PRIVATE), (4, ROUTE_PUBLIC), (5, ROUTE_PUBLIC)])
def test_default_threshold_boundary(rating, expected):
    assert decide(rating, _config(YELP)).outcome == expected


def test_custom_threshold_is_respected():
    assert decide(4, _config(YELP, threshold=5)).outcome == ROUTE_PRIVATE
    assert decide(5, _config(YELP, threshold=5)).outcome == ROUTE_PUBLIC
    assert decide(1, _config(YELP, threshold=1)).outcome == ROUTE_PUBLIC


def test_decision_is_deterministic():
    config = _config(GOOGLE_PLACE, FACEBOOK, YELP)
    assert decide(4, config) == decide(4, config)


def test_place_id_builds_write_review_url():
    decision = decide(5, _config(YELP, GOOGLE_PLACE))

    assert decision.platform.type == "google_place_id"
    assert decision.platform.url == (
        "https://search.google.com/local/writereview?placeid=ChIJN1t_tDeuEmsRUsoyG83frY4"
    )


def test_facebook_link_points_at_reviews_tab():
    links = platform_links(_config(FACEBOOK))
    assert links[0].url == "https://www.facebook.com/sparkle/reviews"


def test_blank_platform_entries_are_ignored():
    config = _config(
        ReviewPlatform(type="google_short_url", url="   "),
        ReviewPlatform(type="google_place_id", place_id=None),
        YELP,
    )
    decision = decide(5, config)

    assert decision.platform.type == "yelp"
    assert len(decision.offered_platforms) == 1


def test_first_entry_per_platform_type_wins():
    other_yelp = ReviewPlatform(type="yelp", url="https://www.yelp.com/biz/other")
    links = platform_links(_config(YELP, other_yelp))
    assert [link.url for link in links] == ["https://www.yelp.com/biz/sparkle"]


@pytest.mark.parametrize("rating", [0, 6, -1, True, 4.5, "5", None])
def test_invalid_rating_is_rejected(rating):
    with pytest.raises(InvalidRatingError):
        decide(rating, _config(GOOGLE_SHORT))


@pytest.mark.parametrize("threshold", [0, 6, True])
def test_invalid_threshold_is_rejected(threshold):
    with pytest.raises(ValueError):
        BusinessReviewConfig(public_rating_threshold=threshold)
