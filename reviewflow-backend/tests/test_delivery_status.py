import itertools
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from reviewflow.models.customer import CustomerConsent
from reviewflow.models.review_request import ReviewRequest
from reviewflow.services.delivery_status import (
    FAILURE_STATUSES,
    STATUS_RANK,
    apply_event,
    handle_inbound_sms,
    match_sms_keyword,
    parse_delivery_event,
    reconcile_batch,
    sms_status_event,
)

T0 = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


def _request(status: str = "pending") -> ReviewRequest:
    return ReviewRequest(
        id=str(uuid.uuid4()),
        business_id="b1",
        customer_id="c1",
        channel="email",
        recipient="aisha@example.com",
        body="Hi",
        provider="email_stub",
        status=status,
    )


def test_bounce_after_delivery_is_ignored():
    request = _request()
    apply_event(request, "delivered", {}, T0 + timedelta(seconds=10))
    apply_event(request, "bounce", {"type": "hard", "reason": "mailbox full"}, T0 + timedelta(seconds=15))

    assert request.status == "delivered"
    assert request.error_code is None
    assert request.error_message is None


def test_bounce_from_pending_records_error():
    request = _request()
    apply_event(request, "bounce", {"type": "hard", "reason": "550 no such user"}, T0 + timedelta(seconds=5))

    assert request.status == "bounced"
    assert request.error_code == "BOUNCE_HARD"
    assert "550 no such user" in request.error_message


def test_delivered_replay_is_idempotent():
    request = _request("sent")
    apply_event(request, "delivered", {}, T0)
    apply_event(request, "delivered", {}, T0 + timedelta(hours=1))

    assert request.status == "delivered"
    assert request.delivered_at == T0


def test_delivered_backfills_sent_at():
    request = _request()
    apply_event(request, "delivered", {}, T0)
    assert request.sent_at == T0


def test_open_before_delivered_keeps_opened():
    request = _request("sent")
    apply_event(request, "open", {}, T0)
    apply_event(request, "delivered", {}, T0 + timedelta(seconds=1))

    assert request.status == "opened"
    assert request.opened_at == T0
    assert request.delivered_at is None


def test_click_does_not_move_completed():
    request = _request("completed")
    apply_event(request, "click", {}, T0)
    assert request.status == "completed"
    assert request.clicked_at is None


def test_blocked_only_applies_to_pending():
    pending = _request()
    apply_event(pending, "blocked", {"reason": "spam filter"}, T0)
    assert pending.status == "failed"
    assert pending.error_code == "BLOCKED"

    sent = _request("sent")
    apply_event(sent, "dropped", {}, T0)
    assert sent.status == "sent"


@pytest.mark.parametrize("event_type", ["deferred", "spamreport", "totally_new_event", ""])
def test_unknown_and_log_only_events_are_no_ops(event_type):
    request = _request("sent")
    apply_event(request, event_type, {}, T0)
    assert request.status == "sent"
    assert request.last_provider_event is None


def _rank(status: str) -> int:
    return STATUS_RANK.get(status, -1)


def test_status_never_regresses_for_any_event_order():
    events = ["processed", "delivered", "open", "click", "bounce", "dropped"]
    for order in itertools.permutations(events):
        request = _request()
        best_rank = 0
        for event_type in order:
            before = request.status
            apply_event(request, event_type, {}, T0)
            if before in FAILURE_STATUSES:
                assert request.status == before
                continue
            if request.status in FAILURE_STATUSES:
                assert best_rank < STATUS_RANK["delivered"], order
                continue
            assert _rank(request.status) >= _rank(before), order
            best_rank = max(best_rank, _rank(request.status))


def test_parse_delivery_event_accepts_sendgrid_shape():
    event = parse_delivery_event(
        {"event": "Delivered", "sg_message_id": "<abc123.filterdrecv-1>", "timestamp": 1760000000, "ip": "1.2.3.4"}
    )
    assert event.event_type == "delivered"
    assert event.provider_message_id == "abc123.filterdrecv-1"
    assert event.timestamp == datetime.fromtimestamp(1760000000, tz=timezone.utc)
    assert event.payload["ip"] == "1.2.3.4"


@pytest.mark.parametrize(
    "raw",
    [
        "not-an-object",
        {"sg_message_id": "abc"},
        {"event": "open"},
        {"event": "open", "sg_message_id": "abc", "timestamp": "yesterday"},
        {"event": "open", "sg_message_id": "abc", "timestamp": True},
    ],
)
def test_parse_delivery_event_rejects_malformed(raw):
    with pytest.raises(ValueError):
        parse_delivery_event(raw)


def test_reconcile_batch_isolates_bad_events(db_session, make_business, make_customer):
    business = make_business()
    customer = make_customer(business)
    request = ReviewRequest(
        id=str(uuid.uuid4()),
        business_id=business.id,
        customer_id=customer.id,
        channel="email",
        recipient=customer.email,
        body="Hi",
        provider="sendgrid",
        status="sent",
        provider_message_id="msg-001",
    )
    db_session.add(request)
    db_session.commit()

    summary = reconcile_batch(
        db_session,
        [
            {"event": "delivered", "sg_message_id": "msg-001.filterdrecv-99", "timestamp": 1760000000},
            {"event": "open"},
            {"event": "open", "sg_message_id": "msg-unknown", "timestamp": 1760000001},
            {"event": "bounce", "sg_message_id": "msg-001", "timestamp": 1760000002},
            {"event": "open", "sg_message_id": "msg-001", "timestamp": 1760000003},
        ],
    )
    db_session.commit()

    assert summary.received == 5
    assert summary.applied == 2
    assert summary.ignored == 1
    assert summary.unmatched == 1
    assert summary.dropped == 1
    assert summary.failed == 0

    db_session.refresh(request)
    assert request.status == "opened"
    assert request.delivered_at is not None
    assert request.error_code is None


@pytest.mark.parametrize(
    "twilio_status,event_type",
    [
        ("queued", "processed"),
        ("sent", "processed"),
        ("delivered", "delivered"),
        ("read", "open"),
        ("undelivered", "bounce"),
        ("failed", "bounce"),
        ("canceled", "dropped"),
    ],
)
def test_sms_status_event_mapping(twilio_status, event_type):
    event = sms_status_event(message_sid="SM123", message_status=twilio_status, error_code="30003")
    assert event["event_type"] == event_type
    assert event["provider_message_id"] == "SM123"
    if event_type == "bounce":
        assert event["payload"]["error_code"] == "SMS_30003"


@pytest.mark.parametrize(
    "body,keyword",
    [
        ("STOP", "stop"),
        ("please unsubscribe me", "stop"),
        ("Start", "start"),
        ("unstop", "start"),
        ("help?", "help"),
        ("Thanks, it was great", None),
        ("", None),
    ],
)
def test_match_sms_keyword(body, keyword):
    assert match_sms_keyword(body) == keyword


def test_inbound_stop_then_start_updates_consent(db_session, make_business, make_customer):
    business = make_business()
    customer = make_customer(business, phone="+15551234567")
    db_session.commit()

    stopped = handle_inbound_sms(db_session, from_number="+1 (555) 123-4567", body="stop")
    db_session.commit()
    assert stopped.keyword == "stop"
    assert stopped.customer_ids == (customer.id,)
    assert stopped.reply is None

    consent = db_session.execute(
        select(CustomerConsent).where(CustomerConsent.customer_id == customer.id)
    ).scalar_one()
    assert consent.channel == "sms"
    assert consent.status == "unsubscribed"
    assert consent.source == "sms_stop_reply"

    started = handle_inbound_sms(db_session, from_number="5551234567", body="START")
    db_session.commit()
    db_session.refresh(consent)
    assert consent.status == "subscribed"
    assert "subscribed" in started.reply


def test_inbound_sms_from_unknown_number_is_harmless(db_session):
    result = handle_inbound_sms(db_session, from_number="+15550000000", body="STOP")
    assert result.keyword == "stop"
    assert result.customer_ids == ()
    assert result.reply is None
