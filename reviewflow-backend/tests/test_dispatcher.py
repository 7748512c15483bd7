import time
import uuid
from datetime import date, datetime, timezone

import pytest
from sqlalchemy import func, select

from reviewflow.core.config import settings
from reviewflow.core.errors import DispatchError, InvalidRecipientError, NotFoundError, OptedOutError
from reviewflow.models.customer import CustomerConsent
from reviewflow.models.review_request import ReviewRequest
from reviewflow.services import messaging_provider
from reviewflow.services.messaging_provider import MessageSendRequest, MessageSendResult, send_with_timeout
from reviewflow.services.recipients import normalize_phone, phone_lookup_candidates
from reviewflow.services.review_request_dispatcher import MessageTemplate, dispatch
from reviewflow.services.template_renderer import render_template

NOW = datetime(2026, 10, 18, 15, 30, tzinfo=timezone.utc)


class _FailingEmailProvider:
    name = "email_stub"
    channel = "email"

    def send(self, request: MessageSendRequest) -> MessageSendResult:
        raise DispatchError("Provider returned HTTP 503", provider=self.name, error_code="http_503")


class _QueuingSmsProvider:
    name = "sms_stub"
    channel = "sms"

    def __init__(self):
        self.requests: list[MessageSendRequest] = []

    def send(self, request: MessageSendRequest) -> MessageSendResult:
        self.requests.append(request)
        return MessageSendResult(provider=self.name, message_id="SM-queued-1", status="queued")


class _SlowProvider:
    name = "slow"
    channel = "email"

    def send(self, request: MessageSendRequest) -> MessageSendResult:
        time.sleep(0.5)
        return MessageSendResult(provider=self.name, message_id="late", status="sent")


class _CrashingProvider:
    name = "crashing"
    channel = "email"

    def send(self, request: MessageSendRequest) -> MessageSendResult:
        raise RuntimeError("connection pool exhausted")


def _request_count(db) -> int:
    return int(db.execute(select(func.count(ReviewRequest.id))).scalar_one())


def test_email_dispatch_renders_default_template(db_session, make_business, make_customer):
    business = make_business(google_review_short_url="https://g.page/r/sparkle/review")
    customer = make_customer(business, service_date=date(2026, 10, 12))

    request = dispatch(db_session, customer=customer, business=business, channel="email", now=NOW)

    assert request.status == "sent"
    assert request.sent_at == NOW
    assert request.provider == "email_stub"
    assert request.provider_message_id.startswith("email-")
    assert request.recipient == "aisha@example.com"
    assert request.subject == "How was your Full detail experience?"
    assert "Hi Aisha," in request.body
    assert "Sparkle Auto Detailing" in request.body
    assert "October 12, 2026" in request.body
    assert f"{settings.frontend_base_url}/feedback-gate/{customer.id}" in request.body
    assert f"{settings.frontend_base_url}/unsubscribe/{customer.id}" in request.body


def test_custom_template_supports_legacy_variable_names(db_session, make_business, make_customer):
    business = make_business()
    customer = make_customer(business)

    request = dispatch(
        db_session,
        customer=customer,
        business=business,
        channel="sms",
        template=MessageTemplate(body="{{customerName}} @ {{ businessName }}: {{missing_var}}done"),
        now=NOW,
    )

    assert request.body == "Aisha Bello @ Sparkle Auto Detailing: done"
    assert request.subject is None


def test_sms_requires_valid_phone(db_session, make_business, make_customer):
    business = make_business()
    customer = make_customer(business, phone="call me maybe")

    with pytest.raises(InvalidRecipientError):
        dispatch(db_session, customer=customer, business=business, channel="sms", now=NOW)
    assert _request_count(db_session) == 0


def test_email_requires_address(db_session, make_business, make_customer):
    business = make_business()
    customer = make_customer(business, email=None)

    with pytest.raises(InvalidRecipientError):
        dispatch(db_session, customer=customer, business=business, channel="email", now=NOW)
    assert _request_count(db_session) == 0


def test_opted_out_sms_customer_is_rejected(db_session, make_business, make_customer):
    business = make_business()
    customer = make_customer(business)
    db_session.add(
        CustomerConsent(
            id=str(uuid.uuid4()),
            business_id=business.id,
            customer_id=customer.id,
            channel="sms",
            status="unsubscribed",
            opted_at=NOW,
        )
    )
    db_session.flush()

    with pytest.raises(OptedOutError):
        dispatch(db_session, customer=customer, business=business, channel="sms", now=NOW)
    assert _request_count(db_session) == 0

    email_request = dispatch(db_session, customer=customer, business=business, channel="email", now=NOW)
    assert email_request.status == "sent"


def test_unknown_channel_is_invalid_recipient(db_session, make_business, make_customer):
    business = make_business()
    customer = make_customer(business)

    with pytest.raises(InvalidRecipientError):
        dispatch(db_session, customer=customer, business=business, channel="fax", now=NOW)


def test_customer_of_other_business_is_not_found(db_session, make_business, make_customer):
    business = make_business()
    other = make_business(name="Other Shop")
    customer = make_customer(other)

    with pytest.raises(NotFoundError):
        dispatch(db_session, customer=customer, business=business, channel="email", now=NOW)


def test_provider_failure_leaves_failed_row(db_session, make_business, make_customer, monkeypatch):
    monkeypatch.setitem(messaging_provider._CHANNEL_PROVIDERS, "email_stub", _FailingEmailProvider())
    business = make_business()
    customer = make_customer(business)

    with pytest.raises(DispatchError) as exc_info:
        dispatch(db_session, customer=customer, business=business, channel="email", now=NOW)
    assert exc_info.value.error_code == "http_503"

    failed = db_session.execute(select(ReviewRequest)).scalar_one()
    assert failed.status == "failed"
    assert failed.error_code == "http_503"
    assert failed.error_message == "Provider returned HTTP 503"
    assert failed.sent_at is None


def test_queued_provider_result_stays_pending(db_session, make_business, make_customer, monkeypatch):
    provider = _QueuingSmsProvider()
    monkeypatch.setitem(messaging_provider._CHANNEL_PROVIDERS, "sms_stub", provider)
    business = make_business()
    customer = make_customer(business, phone="(555) 123-4567")

    request = dispatch(db_session, customer=customer, business=business, channel="sms", now=NOW)

    assert request.status == "pending"
    assert request.provider_message_id == "SM-queued-1"
    assert request.recipient == "+15551234567"
    assert provider.requests[0].reference_id == request.id


def test_send_timeout_is_a_dispatch_error():
    request = MessageSendRequest(business_id="b1", channel="email", recipient="a@example.com", body="Hi")

    with pytest.raises(DispatchError) as exc_info:
        send_with_timeout(_SlowProvider(), request, timeout_seconds=0.05)
    assert exc_info.value.error_code == "timeout"
    assert exc_info.value.provider == "slow"


def test_unexpected_provider_exception_is_a_dispatch_error():
    request = MessageSendRequest(business_id="b1", channel="email", recipient="a@example.com", body="Hi")

    with pytest.raises(DispatchError) as exc_info:
        send_with_timeout(_CrashingProvider(), request, timeout_seconds=1)
    assert exc_info.value.error_code == "provider_error"
    assert exc_info.value.provider == "crashing"
    assert "RuntimeError" in exc_info.value.reason
    assert isinstance(exc_info.value.__cause__, RuntimeError)


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("+1 (555) 123-4567", "+15551234567"),
        ("555.123.4567", "+15551234567"),
        ("15551234567", "+15551234567"),
        ("00447911123456", "+447911123456"),
        ("+44 7911 123456", "+447911123456"),
        ("12345", None),
        ("not a phone", None),
        ("", None),
        (None, None),
    ],
)
def test_normalize_phone(raw, expected):
    assert normalize_phone(raw) == expected


def test_phone_lookup_candidates_cover_stored_variants():
    candidates = phone_lookup_candidates("+15551234567")
    assert {"+15551234567", "15551234567", "5551234567"} <= set(candidates)


def test_render_template_handles_empty_and_nested_values():
    assert render_template(None, {"a": 1}) == ""
    assert render_template("{{ a.b }}!", {"a": {"b": "deep"}}) == "deep!"
    assert render_template("{{a}}", {"a": ["x"]}) == '["x"]'
