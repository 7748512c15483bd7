"""Delivery status reconciliation for review requests.

Provider webhooks arrive out of order and may be replayed, so every event is
checked against ``EVENT_TRANSITIONS`` before it touches a request. Status only
moves forward along ``STATUS_RANK``; ``bounced`` and ``failed`` are absorbing.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from reviewflow.core.observability import log_event, mask_phone
from reviewflow.core.time_utils import utcnow
from reviewflow.models.campaign import CampaignExecution, CampaignStepExecution
from reviewflow.models.customer import Customer
from reviewflow.models.review_request import ReviewRequest
from reviewflow.services.consent_service import SUBSCRIBED, UNSUBSCRIBED, set_consent
from reviewflow.services.recipients import phone_lookup_candidates

logger = logging.getLogger("reviewflow.delivery")

STATUS_RANK: dict[str, int] = {
    "pending": 0,
    "sent": 1,
    "delivered": 2,
    "opened": 3,
    "clicked": 4,
    "completed": 5,
}
FAILURE_STATUSES = {"bounced", "failed"}
REVIEW_REQUEST_STATUSES = set(STATUS_RANK) | FAILURE_STATUSES


@dataclass(frozen=True)
class _Transition:
    allowed_from: frozenset[str]
    new_status: str
    timestamp_field: str | None


def _below(status: str) -> frozenset[str]:
    return frozenset(name for name, rank in STATUS_RANK.items() if rank < STATUS_RANK[status])


EVENT_TRANSITIONS: dict[str, _Transition] = {
    "processed": _Transition(frozenset({"pending"}), "sent", "sent_at"),
    "delivered": _Transition(frozenset({"pending", "sent"}), "delivered", "delivered_at"),
    "open": _Transition(_below("clicked"), "opened", "opened_at"),
    "click": _Transition(_below("completed"), "clicked", "clicked_at"),
    "bounce": _Transition(_below("delivered"), "bounced", None),
    "blocked": _Transition(frozenset({"pending"}), "failed", None),
    "dropped": _Transition(frozenset({"pending"}), "failed", None),
    # Customer action (rating gate submission, review detected).
    "completed": _Transition(_below("completed"), "completed", "completed_at"),
}
LOG_ONLY_EVENTS = {
    "deferred",
    "unsubscribe",
    "spamreport",
    "group_unsubscribe",
    "group_resubscribe",
}


def apply_event(
    request: ReviewRequest,
    event_type: str,
    payload: dict[str, Any] | None = None,
    event_time: datetime | None = None,
) -> ReviewRequest:
    _apply(request, event_type, payload or {}, event_time)
    return request


def _apply(
    request: ReviewRequest,
    event_type: str,
    payload: dict[str, Any],
    event_time: datetime | None,
) -> bool:
    normalized = (event_type or "").strip().lower()
    transition = EVENT_TRANSITIONS.get(normalized)
    if transition is None:
        log_event(
            logger,
            "delivery.event_log_only" if normalized in LOG_ONLY_EVENTS else "delivery.event_unknown",
            review_request_id=request.id,
            event_type=normalized,
        )
        return False

    if request.status not in transition.allowed_from:
        log_event(
            logger,
            "delivery.event_ignored",
            review_request_id=request.id,
            event_type=normalized,
            status=request.status,
        )
        return False

    occurred_at = event_time or utcnow()
    if transition.timestamp_field and getattr(request, transition.timestamp_field) is None:
        setattr(request, transition.timestamp_field, occurred_at)
    if normalized == "delivered" and request.sent_at is None:
        request.sent_at = occurred_at

    if normalized == "bounce":
        bounce_type = str(payload.get("type") or "unknown").strip().upper() or "UNKNOWN"
        request.error_code = str(payload.get("error_code") or f"BOUNCE_{bounce_type}")[:60]
        request.error_message = f"Message bounced: {payload.get('reason') or 'no reason given'}"[:500]
    elif normalized in {"blocked", "dropped"}:
        request.error_code = normalized.upper()
        request.error_message = str(payload.get("reason") or f"Message {normalized} by provider")[:500]

    request.status = transition.new_status
    request.last_provider_event = normalized
    log_event(
        logger,
        "delivery.event_applied",
        review_request_id=request.id,
        event_type=normalized,
        status=request.status,
    )
    return True


@dataclass(frozen=True)
class DeliveryEvent:
    event_type: str
    provider_message_id: str
    timestamp: datetime | None
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ReconcileSummary:
    received: int
    applied: int
    ignored: int
    unmatched: int
    dropped: int
    failed: int


def _first_present(raw: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = raw.get(key)
        if value not in (None, ""):
            return value
    return None


def parse_delivery_event(raw: Any) -> DeliveryEvent:
    """Accepts SendGrid-style and generic event objects; raises ValueError when malformed."""
    if not isinstance(raw, dict):
        raise ValueError("event must be an object")

    event_type = _first_present(raw, "event", "event_type", "eventType")
    if not isinstance(event_type, str) or not event_type.strip():
        raise ValueError("event type is required")

    message_id = _first_present(raw, "sg_message_id", "provider_message_id", "providerMessageId")
    if not isinstance(message_id, str) or not message_id.strip():
        raise ValueError("provider message id is required")
    message_id = message_id.strip().strip("<>")

    timestamp_raw = raw.get("timestamp")
    timestamp: datetime | None = None
    if timestamp_raw is not None:
        if isinstance(timestamp_raw, bool) or not isinstance(timestamp_raw, (int, float)):
            raise ValueError("timestamp must be epoch seconds")
        try:
            timestamp = datetime.fromtimestamp(timestamp_raw, tz=timezone.utc)
        except (OverflowError, OSError) as exc:
            raise ValueError("timestamp out of range") from exc

    payload = raw.get("payload")
    if not isinstance(payload, dict):
        payload = {key: value for key, value in raw.items() if key not in {"payload"}}

    return DeliveryEvent(
        event_type=event_type.strip().lower(),
        provider_message_id=message_id,
        timestamp=timestamp,
        payload=payload,
    )


def _message_id_candidates(message_id: str) -> list[str]:
    # SendGrid appends ".filterdrecv..." to the X-Message-Id returned at send time.
    candidates = [message_id]
    head = message_id.split(".", 1)[0]
    if head and head != message_id:
        candidates.append(head)
    return candidates


def _locked_request_for_message(db: Session, message_id: str) -> ReviewRequest | None:
    candidates = _message_id_candidates(message_id)
    request_id = db.execute(
        select(ReviewRequest.id)
        .where(ReviewRequest.provider_message_id.in_(candidates))
        .limit(1)
    ).scalar_one_or_none()

    if request_id is None:
        request_id = db.execute(
            select(CampaignExecution.review_request_id)
            .join(CampaignStepExecution, CampaignStepExecution.execution_id == CampaignExecution.id)
            .where(CampaignStepExecution.provider_message_id.in_(candidates))
            .limit(1)
        ).scalar_one_or_none()
    if request_id is None:
        return None

    return db.execute(
        select(ReviewRequest).where(ReviewRequest.id == request_id).with_for_update()
    ).scalar_one()


def reconcile_batch(db: Session, events: list[Any], *, provider: str = "email") -> ReconcileSummary:
    """Applies a webhook batch; one bad event never loses the rest."""
    applied = ignored = unmatched = dropped = failed = 0

    for index, raw in enumerate(events):
        try:
            event = parse_delivery_event(raw)
        except ValueError as exc:
            dropped += 1
            log_event(
                logger,
                "delivery.event_dropped",
                level=logging.WARNING,
                provider=provider,
                index=index,
                error=str(exc),
            )
            continue

        try:
            with db.begin_nested():
                request = _locked_request_for_message(db, event.provider_message_id)
                if request is None:
                    unmatched += 1
                    log_event(
                        logger,
                        "delivery.event_unmatched",
                        provider=provider,
                        event_type=event.event_type,
                        provider_message_id=event.provider_message_id,
                    )
                    continue
                if _apply(request, event.event_type, event.payload, event.timestamp):
                    applied += 1
                else:
                    ignored += 1
        except SQLAlchemyError as exc:
            failed += 1
            log_event(
                logger,
                "delivery.event_failed",
                level=logging.ERROR,
                provider=provider,
                event_type=event.event_type,
                provider_message_id=event.provider_message_id,
                error=str(exc),
            )

    return ReconcileSummary(
        received=len(events),
        applied=applied,
        ignored=ignored,
        unmatched=unmatched,
        dropped=dropped,
        failed=failed,
    )


_SMS_STATUS_EVENTS = {
    "accepted": "processed",
    "scheduled": "processed",
    "queued": "processed",
    "sending": "processed",
    "sent": "processed",
    "delivered": "delivered",
    "read": "open",
    "undelivered": "bounce",
    "failed": "bounce",
    "canceled": "dropped",
}


def sms_status_event(
    *,
    message_sid: str | None,
    message_status: str | None,
    error_code: str | None = None,
    error_message: str | None = None,
) -> dict[str, Any]:
    """Translates a Twilio status callback into the generic event shape."""
    status = (message_status or "").strip().lower()
    event_type = _SMS_STATUS_EVENTS.get(status, status)
    payload: dict[str, Any] = {"sms_status": status}
    if event_type == "bounce":
        payload["type"] = status
        payload["error_code"] = f"SMS_{error_code}" if error_code else f"SMS_{status.upper()}"
        payload["reason"] = error_message or f"SMS {status}"
    elif event_type == "dropped":
        payload["reason"] = error_message or "SMS canceled before sending"
    return {
        "event_type": event_type,
        "provider_message_id": message_sid,
        "payload": payload,
    }


SmsKeyword = Literal["stop", "start", "help"]

STOP_PATTERN = re.compile(r"\b(STOP|STOPALL|CANCEL|END|QUIT|UNSUBSCRIBE|REMOVE|REVOKE|OPTOUT)\b", re.IGNORECASE)
START_PATTERN = re.compile(r"\b(START|UNSTOP|SUBSCRIBE|YES)\b", re.IGNORECASE)
HELP_PATTERN = re.compile(r"\b(HELP|INFO|SUPPORT)\b", re.IGNORECASE)


def match_sms_keyword(body: str | None) -> SmsKeyword | None:
    text = body or ""
    if STOP_PATTERN.search(text):
        return "stop"
    if START_PATTERN.search(text):
        return "start"
    if HELP_PATTERN.search(text):
        return "help"
    return None


@dataclass(frozen=True)
class InboundSmsResult:
    keyword: SmsKeyword | None
    customer_ids: tuple[str, ...]
    reply: str | None


def handle_inbound_sms(db: Session, *, from_number: str, body: str, now: datetime | None = None) -> InboundSmsResult:
    """Updates SMS consent from STOP/START keywords; review requests are left untouched."""
    keyword = match_sms_keyword(body)
    candidates = phone_lookup_candidates(from_number)
    customers = (
        db.execute(select(Customer).where(Customer.phone.in_(candidates))).scalars().all()
        if candidates
        else []
    )
    when = now or utcnow()

    if keyword in {"stop", "start"}:
        status = UNSUBSCRIBED if keyword == "stop" else SUBSCRIBED
        for customer in customers:
            set_consent(db, customer=customer, channel="sms", status=status, source=f"sms_{keyword}_reply", now=when)

    log_event(
        logger,
        "delivery.inbound_sms",
        from_number=mask_phone(from_number),
        keyword=keyword,
        customers=len(customers),
    )

    reply: str | None = None
    if customers and keyword == "start":
        reply = "You're subscribed to review updates again. Reply STOP to unsubscribe, HELP for help."
    elif customers and keyword is None:
        reply = f"Hi {customers[0].first_name}! Reply HELP for info or STOP to unsubscribe."

    return InboundSmsResult(
        keyword=keyword,
        customer_ids=tuple(customer.id for customer in customers),
        reply=reply,
    )
