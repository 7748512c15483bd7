"""Entry point for sending review requests, manually or from a campaign step."""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.orm import Session

from reviewflow.core.config import settings
from reviewflow.core.errors import DispatchError, InvalidRecipientError, NotFoundError, OptedOutError
from reviewflow.core.observability import log_event, mask_phone
from reviewflow.core.time_utils import utcnow
from reviewflow.models.business import Business
from reviewflow.models.campaign import CampaignStep
from reviewflow.models.customer import Customer
from reviewflow.models.review_request import ReviewRequest
from reviewflow.services.consent_service import is_opted_out
from reviewflow.services.delivery_status import apply_event
from reviewflow.services.messaging_provider import (
    CHANNELS,
    MessageSendRequest,
    MessageSendResult,
    get_channel_provider,
    send_with_timeout,
)
from reviewflow.services.rating_gate import platform_links, review_config_for_business
from reviewflow.services.recipients import require_email, require_phone
from reviewflow.services.template_renderer import build_template_context, render_template

logger = logging.getLogger("reviewflow.dispatch")


@dataclass(frozen=True)
class MessageTemplate:
    body: str
    subject: str | None = None


DEFAULT_TEMPLATES: dict[str, MessageTemplate] = {
    "sms": MessageTemplate(
        body=(
            "Hi {{customer_name}}! How was your experience with {{business_name}}? "
            "We'd love to hear about it: {{review_link}}"
        ),
    ),
    "email": MessageTemplate(
        subject="How was your {{service_type}} experience?",
        body=(
            "Hi {{customer_first_name}},\n\n"
            "Thank you for choosing {{business_name}} for your {{service_type}} {{service_date}}. "
            "We'd really appreciate hearing how it went.\n\n"
            "Share your feedback: {{review_link}}\n\n"
            "Thanks,\n{{business_name}}\n\n"
            "Unsubscribe: {{unsubscribe_url}}"
        ),
    ),
}


@dataclass(frozen=True)
class PreparedMessage:
    channel: str
    recipient: str
    subject: str | None
    body: str


def _normalize_channel(channel: str) -> str:
    normalized = (channel or "").strip().lower()
    if normalized not in CHANNELS:
        raise InvalidRecipientError(f"Unsupported channel '{channel}'")
    return normalized


def prepare_message(
    db: Session,
    *,
    customer: Customer,
    business: Business,
    channel: str,
    template: MessageTemplate | None,
    now: datetime,
) -> PreparedMessage:
    """Validates the recipient and renders the template; raises before anything is sent."""
    normalized = _normalize_channel(channel)
    if normalized == "sms":
        recipient = require_phone(customer.phone)
        if is_opted_out(db, customer=customer, channel="sms"):
            raise OptedOutError("Customer has opted out of SMS")
    else:
        recipient = require_email(customer.email)
        if is_opted_out(db, customer=customer, channel="email"):
            raise OptedOutError("Customer has unsubscribed from email")

    chosen = template or DEFAULT_TEMPLATES[normalized]
    context = build_template_context(
        customer=customer,
        business=business,
        platform_links=platform_links(review_config_for_business(business)),
        now=now,
    )
    subject = None
    if normalized == "email":
        subject = render_template(chosen.subject, context) or None
    body = render_template(chosen.body, context)
    if not body.strip():
        raise InvalidRecipientError("Rendered message body is empty")
    return PreparedMessage(channel=normalized, recipient=recipient, subject=subject, body=body)


def dispatch(
    db: Session,
    *,
    customer: Customer,
    business: Business,
    channel: str,
    template: MessageTemplate | None = None,
    provider_name: str | None = None,
    now: datetime | None = None,
) -> ReviewRequest:
    """Sends one review request and records it.

    Validation and policy failures raise before a row exists. A provider failure
    leaves a ``failed`` row behind and re-raises ``DispatchError``; the caller
    decides whether to commit it.
    """
    if customer.business_id != business.id:
        raise NotFoundError("Customer not found")

    when = now or utcnow()
    prepared = prepare_message(
        db,
        customer=customer,
        business=business,
        channel=channel,
        template=template,
        now=when,
    )
    provider = get_channel_provider(prepared.channel, provider_name)
    review_request = ReviewRequest(
        id=str(uuid.uuid4()),
        business_id=business.id,
        customer_id=customer.id,
        channel=prepared.channel,
        recipient=prepared.recipient,
        subject=prepared.subject,
        body=prepared.body,
        provider=provider.name,
        status="pending",
    )

    try:
        result = send_with_timeout(
            provider,
            MessageSendRequest(
                business_id=business.id,
                channel=prepared.channel,
                recipient=prepared.recipient,
                subject=prepared.subject,
                body=prepared.body,
                reference_id=review_request.id,
            ),
            settings.channel_send_timeout_seconds,
        )
    except DispatchError as exc:
        review_request.status = "failed"
        review_request.error_code = (exc.error_code or "provider_error")[:60]
        review_request.error_message = exc.reason[:500]
        db.add(review_request)
        db.flush()
        log_event(
            logger,
            "dispatch.failed",
            level=logging.WARNING,
            review_request_id=review_request.id,
            channel=prepared.channel,
            provider=provider.name,
            error_code=review_request.error_code,
            error=exc.reason,
        )
        raise

    review_request.provider_message_id = result.message_id
    if result.status == "sent":
        apply_event(review_request, "processed", {}, when)
    db.add(review_request)
    db.flush()
    log_event(
        logger,
        "dispatch.sent",
        review_request_id=review_request.id,
        channel=prepared.channel,
        provider=provider.name,
        recipient=mask_phone(prepared.recipient) if prepared.channel == "sms" else prepared.recipient,
        status=review_request.status,
    )
    return review_request


def deliver_step(
    db: Session,
    *,
    review_request: ReviewRequest,
    step: CampaignStep,
    now: datetime,
) -> MessageSendResult:
    """Sends one campaign step for an existing review request without creating a new one."""
    customer = db.get(Customer, review_request.customer_id)
    business = db.get(Business, review_request.business_id)
    if customer is None or business is None:
        raise InvalidRecipientError("Customer or business no longer exists")

    prepared = prepare_message(
        db,
        customer=customer,
        business=business,
        channel=step.message_type,
        template=MessageTemplate(body=step.body_template, subject=step.subject_template),
        now=now,
    )
    provider = get_channel_provider(prepared.channel)
    result = send_with_timeout(
        provider,
        MessageSendRequest(
            business_id=business.id,
            channel=prepared.channel,
            recipient=prepared.recipient,
            subject=prepared.subject,
            body=prepared.body,
            reference_id=review_request.id,
        ),
        settings.channel_send_timeout_seconds,
    )
    log_event(
        logger,
        "dispatch.step_sent",
        review_request_id=review_request.id,
        step_id=step.id,
        channel=prepared.channel,
        provider=provider.name,
    )
    return result
