import json
import re
from datetime import datetime
from typing import Any

from reviewflow.core.config import settings
from reviewflow.models.business import Business
from reviewflow.models.customer import Customer
from reviewflow.services.rating_gate import PlatformLink

_TEMPLATE_VAR_RE = re.compile(r"{{\s*([a-zA-Z0-9_.]+)\s*}}")

# Older stored templates use camelCase names.
_LEGACY_ALIASES = {
    "customerName": "customer_name",
    "customerFirstName": "customer_first_name",
    "customerEmail": "customer_email",
    "customerPhone": "customer_phone",
    "businessName": "business_name",
    "businessPhone": "business_phone",
    "businessWebsite": "business_website",
    "serviceType": "service_type",
    "serviceDate": "service_date",
    "reviewLink": "review_link",
    "feedbackLink": "feedback_link",
    "googleReviewUrl": "google_review_url",
    "facebookReviewUrl": "facebook_review_url",
    "yelpReviewUrl": "yelp_review_url",
    "unsubscribeUrl": "unsubscribe_url",
    "currentDate": "current_date",
    "currentYear": "current_year",
}


def feedback_gate_url(customer_id: str) -> str:
    return f"{settings.frontend_base_url}/feedback-gate/{customer_id}"


def private_feedback_url(customer_id: str) -> str:
    return f"{settings.frontend_base_url}/feedback/{customer_id}"


def unsubscribe_url(customer_id: str) -> str:
    return f"{settings.frontend_base_url}/unsubscribe/{customer_id}"


def build_template_context(
    *,
    customer: Customer,
    business: Business,
    platform_links: tuple[PlatformLink, ...] = (),
    now: datetime,
) -> dict[str, Any]:
    links = {link.type: link.url for link in platform_links}
    google_url = links.get("google_short_url") or links.get("google_place_id")
    context: dict[str, Any] = {
        "customer_name": customer.display_name,
        "customer_first_name": customer.first_name,
        "customer_email": customer.email,
        "customer_phone": customer.phone,
        "business_name": business.name,
        "business_phone": business.phone,
        "business_website": business.website,
        "service_type": customer.service_type or "service",
        "service_date": customer.service_date.strftime("%B %d, %Y") if customer.service_date else "recently",
        # The gate link is what customers click; it decides public vs private.
        "review_link": feedback_gate_url(customer.id),
        "feedback_link": private_feedback_url(customer.id),
        "google_review_url": google_url,
        "facebook_review_url": links.get("facebook"),
        "yelp_review_url": links.get("yelp"),
        "unsubscribe_url": unsubscribe_url(customer.id),
        "current_date": now.strftime("%B %d, %Y"),
        "current_year": str(now.year),
    }
    for legacy, canonical in _LEGACY_ALIASES.items():
        context[legacy] = context[canonical]
    return context


def _resolve_path(container: Any, path: str) -> Any:
    current: Any = container
    for part in [item for item in (path or "").strip().split(".") if item]:
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


def render_template(template: str | None, context: dict[str, Any]) -> str:
    if not template:
        return ""

    def _replace(match: re.Match[str]) -> str:
        resolved = _resolve_path(context, match.group(1))
        if resolved is None:
            return ""
        if isinstance(resolved, (dict, list)):
            return json.dumps(resolved, ensure_ascii=True)
        return str(resolved)

    return _TEMPLATE_VAR_RE.sub(_replace, template)
