import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import delete, func, select, update

from reviewflow.core.config import settings
from reviewflow.core.errors import AlreadyRunningError, DispatchError, NoDefaultSequenceError, NotFoundError
from reviewflow.core.time_utils import as_utc
from reviewflow.models.campaign import CampaignExecution, CampaignStepExecution
from reviewflow.models.customer import CustomerConsent
from reviewflow.models.review_request import ReviewRequest
from reviewflow.services import campaign_engine, messaging_provider
from reviewflow.services.campaign_engine import (
    REQUEST_COMPLETED_REASON,
    REQUEST_MISSING_REASON,
    cancel_execution,
    execute_due_step,
    run_due_executions,
    start_default_execution,
    start_execution,
    stop_execution,
)
from reviewflow.services.campaign_scheduler import next_fire_time
from reviewflow.services.delivery_status import apply_event
from reviewflow.services.messaging_provider import MessageSendRequest, MessageSendResult
from reviewflow.services.review_request_dispatcher import dispatch
from reviewflow.services.sequence_service import StepSpec, create_sequence, ensure_default_sequence

T0 = datetime(2026, 10, 1, 9, 0, tzinfo=timezone.utc)


class _FlakySmsProvider:
    name = "sms_stub"
    channel = "sms"

    def __init__(self, failures: int):
        self.failures = failures
        self.calls = 0

    def send(self, request: MessageSendRequest) -> MessageSendResult:
        self.calls += 1
        if self.calls <= self.failures:
            raise DispatchError("sms_stub did not respond within 20s", provider=self.name, error_code="timeout")
        return MessageSendResult(provider=self.name, message_id=f"SM-flaky-{self.calls}", status="sent")


class _CountingEmailProvider:
    name = "email_stub"
    channel = "email"

    def __init__(self):
        self.calls = 0

    def send(self, request: MessageSendRequest) -> MessageSendResult:
        self.calls += 1
        return MessageSendResult(provider=self.name, message_id=f"email-count-{self.calls}", status="sent")


def _step(number: int, delay: int, channel: str = "email", *, active: bool = True) -> StepSpec:
    return StepSpec(
        step_number=number,
        delay_hours=delay,
        message_type=channel,
        subject_template="Step {{customer_first_name}}" if channel == "email" else None,
        body_template=f"Step {number} for {{{{customer_name}}}}: {{{{review_link}}}}",
        is_active=active,
    )


@pytest.fixture()
def journey(db_session, make_business, make_customer):
    """Business, customer and an initial email review request sent at T0."""
    business = make_business()
    customer = make_customer(business)
    review_request = dispatch(db_session, customer=customer, business=business, channel="email", now=T0)
    db_session.commit()
    return business, customer, review_request


def _active_count(db, review_request_id: str) -> int:
    return int(
        db.execute(
            select(func.count(CampaignExecution.id)).where(
                CampaignExecution.review_request_id == review_request_id,
                CampaignExecution.status == "active",
            )
        ).scalar_one()
    )


def _step_executions(db, execution_id: str) -> list[CampaignStepExecution]:
    return list(
        db.execute(
            select(CampaignStepExecution)
            .where(CampaignStepExecution.execution_id == execution_id)
            .order_by(CampaignStepExecution.step_number)
        ).scalars()
    )


def test_three_step_sequence_fires_on_schedule(db_session, journey):
    business, _, review_request = journey
    sequence = create_sequence(
        db_session,
        business_id=business.id,
        name="Three touches",
        steps=[_step(1, 0), _step(2, 24, "sms"), _step(3, 48)],
    )
    execution = start_execution(db_session, review_request=review_request, sequence=sequence, now=T0)
    db_session.commit()

    first = execute_due_step(db_session, execution, now=T0)
    assert first.outcome == "dispatched"
    assert first.step_number == 1
    assert next_fire_time(execution, sequence) == T0 + timedelta(hours=24)

    early = execute_due_step(db_session, execution, now=T0 + timedelta(hours=23))
    assert early.outcome == "not_due"
    assert execution.current_step == 1

    second = execute_due_step(db_session, execution, now=T0 + timedelta(hours=24))
    assert second.outcome == "dispatched"
    assert second.step_number == 2
    assert next_fire_time(execution, sequence) == T0 + timedelta(hours=72)

    third = execute_due_step(db_session, execution, now=T0 + timedelta(hours=72))
    db_session.commit()
    assert third.outcome == "completed"
    assert execution.status == "completed"
    assert execution.current_step == 3
    assert execution.active_key is None

    sent = _step_executions(db_session, execution.id)
    assert [item.status for item in sent] == ["sent", "sent", "sent"]
    assert all(item.provider_message_id for item in sent)


def test_sms_failures_retry_then_progress(db_session, journey, monkeypatch):
    provider = _FlakySmsProvider(failures=2)
    monkeypatch.setitem(messaging_provider._CHANNEL_PROVIDERS, "sms_stub", provider)
    business, _, review_request = journey
    sequence = create_sequence(
        db_session,
        business_id=business.id,
        name="Text first",
        steps=[_step(1, 0, "sms"), _step(2, 24)],
    )
    execution = start_execution(db_session, review_request=review_request, sequence=sequence, now=T0)
    db_session.commit()

    outcomes = [
        execute_due_step(db_session, execution, now=T0 + timedelta(minutes=minute)).outcome
        for minute in (0, 10, 20)
    ]
    db_session.commit()

    assert outcomes == ["retry", "retry", "dispatched"]
    assert execution.status == "active"
    assert execution.current_step == 1
    step_execution = _step_executions(db_session, execution.id)[0]
    assert step_execution.status == "sent"
    assert step_execution.attempt_count == 3
    assert step_execution.provider_message_id == "SM-flaky-3"


def test_exceeding_retry_bound_fails_execution(db_session, journey, monkeypatch):
    monkeypatch.setitem(messaging_provider._CHANNEL_PROVIDERS, "sms_stub", _FlakySmsProvider(failures=100))
    business, _, review_request = journey
    sequence = create_sequence(
        db_session,
        business_id=business.id,
        name="Text only",
        steps=[_step(1, 0, "sms"), _step(2, 24)],
    )
    execution = start_execution(db_session, review_request=review_request, sequence=sequence, now=T0)
    db_session.commit()

    attempts = settings.campaign_step_retry_limit + 1
    outcomes = [
        execute_due_step(db_session, execution, now=T0 + timedelta(minutes=minute)).outcome
        for minute in range(attempts)
    ]
    db_session.commit()

    assert outcomes == ["retry"] * (attempts - 1) + ["failed"]
    assert execution.status == "failed"
    assert execution.completed_at is not None
    assert f"after {attempts} attempts" in execution.stop_reason
    assert execution.active_key is None

    step_execution = _step_executions(db_session, execution.id)[0]
    assert step_execution.status == "failed"
    assert step_execution.attempt_count == attempts

    assert execute_due_step(db_session, execution, now=T0 + timedelta(days=1)).outcome == "terminal"


def test_second_start_for_same_request_is_rejected(db_session, journey):
    business, _, review_request = journey
    sequence = create_sequence(db_session, business_id=business.id, name="Single", steps=[_step(1, 0)])
    start_execution(db_session, review_request=review_request, sequence=sequence, now=T0)
    db_session.commit()

    with pytest.raises(AlreadyRunningError):
        start_execution(db_session, review_request=review_request, sequence=sequence, now=T0)
    assert _active_count(db_session, review_request.id) == 1


def test_racing_start_is_caught_by_active_key(db_session, journey, monkeypatch):
    business, _, review_request = journey
    sequence = create_sequence(db_session, business_id=business.id, name="Single", steps=[_step(1, 0)])
    first = start_execution(db_session, review_request=review_request, sequence=sequence, now=T0)
    db_session.commit()

    # Both triggers pass the read check before either insert lands.
    monkeypatch.setattr(campaign_engine, "_active_execution_for_request", lambda db, review_request_id: None)
    with pytest.raises(AlreadyRunningError):
        start_execution(db_session, review_request=review_request, sequence=sequence, now=T0)
    db_session.commit()

    assert _active_count(db_session, review_request.id) == 1
    only = db_session.execute(select(CampaignExecution)).scalar_one()
    assert only.id == first.id


def test_new_execution_allowed_after_previous_finished(db_session, journey):
    business, _, review_request = journey
    sequence = create_sequence(db_session, business_id=business.id, name="Single", steps=[_step(1, 0)])
    first = start_execution(db_session, review_request=review_request, sequence=sequence, now=T0)
    stop_execution(db_session, first.id, reason="Paused by owner", now=T0)
    db_session.commit()

    second = start_execution(db_session, review_request=review_request, sequence=sequence, now=T0)
    db_session.commit()
    assert second.id != first.id
    assert _active_count(db_session, review_request.id) == 1


def test_completed_request_stops_execution_without_dispatch(db_session, journey, monkeypatch):
    provider = _CountingEmailProvider()
    monkeypatch.setitem(messaging_provider._CHANNEL_PROVIDERS, "email_stub", provider)
    business, _, review_request = journey
    sequence = create_sequence(
        db_session,
        business_id=business.id,
        name="Two emails",
        steps=[_step(1, 0), _step(2, 24)],
    )
    execution = start_execution(db_session, review_request=review_request, sequence=sequence, now=T0)
    assert execute_due_step(db_session, execution, now=T0).outcome == "dispatched"
    assert provider.calls == 1

    apply_event(review_request, "completed", {"rating": 5}, T0 + timedelta(hours=2))
    db_session.commit()

    outcome = execute_due_step(db_session, execution, now=T0 + timedelta(hours=30))
    db_session.commit()

    assert outcome.outcome == "stopped"
    assert execution.status == "stopped"
    assert execution.stop_reason == REQUEST_COMPLETED_REASON
    assert provider.calls == 1


def test_stale_version_loses_claim_and_sends_nothing(db_session, journey, monkeypatch):
    provider = _CountingEmailProvider()
    monkeypatch.setitem(messaging_provider._CHANNEL_PROVIDERS, "email_stub", provider)
    business, _, review_request = journey
    sequence = create_sequence(db_session, business_id=business.id, name="Single", steps=[_step(1, 0)])
    execution = start_execution(db_session, review_request=review_request, sequence=sequence, now=T0)
    db_session.commit()
    assert execution.version == 0

    # Another worker claims the step behind this session's back.
    db_session.execute(
        update(CampaignExecution)
        .where(CampaignExecution.id == execution.id)
        .values(version=CampaignExecution.version + 1)
        .execution_options(synchronize_session=False)
    )

    outcome = execute_due_step(db_session, execution, now=T0)
    assert outcome.outcome == "claim_lost"
    assert provider.calls == 0
    assert execution.current_step == 0


def test_inactive_step_is_skipped_but_progress_continues(db_session, journey):
    business, _, review_request = journey
    sequence = create_sequence(
        db_session,
        business_id=business.id,
        name="Middle paused",
        steps=[_step(1, 0), _step(2, 0, active=False), _step(3, 0)],
    )
    execution = start_execution(db_session, review_request=review_request, sequence=sequence, now=T0)

    outcomes = [execute_due_step(db_session, execution, now=T0).outcome for _ in range(3)]
    db_session.commit()

    assert outcomes == ["dispatched", "skipped", "completed"]
    assert [item.status for item in _step_executions(db_session, execution.id)] == ["sent", "skipped", "sent"]


def test_opted_out_sms_step_is_skipped(db_session, journey):
    business, customer, review_request = journey
    db_session.add(
        CustomerConsent(
            id=str(uuid.uuid4()),
            business_id=business.id,
            customer_id=customer.id,
            channel="sms",
            status="unsubscribed",
            opted_at=T0,
        )
    )
    sequence = create_sequence(
        db_session,
        business_id=business.id,
        name="Text then email",
        steps=[_step(1, 0, "sms"), _step(2, 0)],
    )
    execution = start_execution(db_session, review_request=review_request, sequence=sequence, now=T0)

    skipped = execute_due_step(db_session, execution, now=T0)
    assert skipped.outcome == "skipped"
    assert skipped.detail == "opted_out"
    assert execute_due_step(db_session, execution, now=T0).outcome == "completed"


def test_sequence_without_active_steps_completes_on_start(db_session, journey):
    business, _, review_request = journey
    sequence = create_sequence(
        db_session,
        business_id=business.id,
        name="All paused",
        steps=[_step(1, 0, active=False)],
    )
    execution = start_execution(db_session, review_request=review_request, sequence=sequence, now=T0)

    assert execution.status == "completed"
    assert execution.completed_at == T0
    assert execution.current_step == 0
    assert _active_count(db_session, review_request.id) == 0


def test_stop_and_cancel_are_idempotent(db_session, journey):
    business, _, review_request = journey
    sequence = create_sequence(db_session, business_id=business.id, name="Single", steps=[_step(1, 24)])
    execution = start_execution(db_session, review_request=review_request, sequence=sequence, now=T0)
    db_session.commit()

    stopped = stop_execution(db_session, execution.id, reason="Customer called in", now=T0 + timedelta(hours=1))
    assert stopped.status == "stopped"
    assert stopped.stop_reason == "Customer called in"
    first_completed_at = stopped.completed_at

    again = stop_execution(db_session, execution.id, reason="Second stop", now=T0 + timedelta(hours=2))
    cancelled = cancel_execution(db_session, execution.id, now=T0 + timedelta(hours=3))
    db_session.commit()

    assert again.status == cancelled.status == "stopped"
    assert cancelled.stop_reason == "Customer called in"
    assert cancelled.completed_at.replace(tzinfo=None) == first_completed_at.replace(tzinfo=None)
    assert execute_due_step(db_session, execution, now=T0 + timedelta(days=2)).outcome == "terminal"


def test_cancel_marks_cancelled(db_session, journey):
    business, _, review_request = journey
    sequence = create_sequence(db_session, business_id=business.id, name="Single", steps=[_step(1, 24)])
    execution = start_execution(db_session, review_request=review_request, sequence=sequence, now=T0)

    cancelled = cancel_execution(db_session, execution.id, business_id=business.id, now=T0)
    assert cancelled.status == "cancelled"
    assert cancelled.active_key is None


def test_stop_unknown_execution_is_not_found(db_session):
    with pytest.raises(NotFoundError):
        stop_execution(db_session, "missing", reason="x")


def test_start_rejects_sequence_of_other_business(db_session, journey, make_business):
    _, _, review_request = journey
    other = make_business(name="Other Shop")
    sequence = create_sequence(db_session, business_id=other.id, name="Theirs", steps=[_step(1, 0)])

    with pytest.raises(NotFoundError):
        start_execution(db_session, review_request=review_request, sequence=sequence, now=T0)


def test_start_default_requires_default_sequence(db_session, journey):
    business, _, review_request = journey
    with pytest.raises(NoDefaultSequenceError):
        start_default_execution(db_session, review_request=review_request, org_id=business.id, now=T0)

    default = ensure_default_sequence(db_session, business_id=business.id)
    execution = start_default_execution(db_session, review_request=review_request, org_id=business.id, now=T0)
    assert execution.sequence_id == default.id
    assert len(default.steps) == 4



class _QueuingEmailProvider:
    name = "email_stub"
    channel = "email"

    def __init__(self):
        self.calls = 0

    def send(self, request: MessageSendRequest) -> MessageSendResult:
        self.calls += 1
        return MessageSendResult(provider=self.name, message_id=f"email-queued-{self.calls}", status="queued")


class _BrokenOnceEmailProvider:
    name = "email_stub"
    channel = "email"

    def __init__(self):
        self.calls = 0

    def send(self, request: MessageSendRequest) -> MessageSendResult:
        self.calls += 1
        if self.calls == 1:
            raise RuntimeError("provider bug")
        return MessageSendResult(provider=self.name, message_id=f"email-ok-{self.calls}", status="sent")


def _second_request(db, business, make_customer) -> ReviewRequest:
    customer = make_customer(business, name="Tunde Ade", email="tunde@example.com", phone="+15557654321")
    return dispatch(db, customer=customer, business=business, channel="email", now=T0)


def test_run_due_executions_only_picks_due_executions(db_session, journey, make_customer):
    business, _, first_request = journey
    second_request = _second_request(db_session, business, make_customer)
    sequence = create_sequence(
        db_session,
        business_id=business.id,
        name="Two emails",
        steps=[_step(1, 0), _step(2, 24)],
    )
    due = start_execution(db_session, review_request=first_request, sequence=sequence, now=T0)
    later = start_execution(db_session, review_request=second_request, sequence=sequence, now=T0 + timedelta(hours=1))
    assert execute_due_step(db_session, later, now=T0 + timedelta(hours=1)).outcome == "dispatched"
    assert later.next_fire_at == T0 + timedelta(hours=25)
    db_session.commit()

    summary = run_due_executions(db_session, now=T0 + timedelta(hours=2))

    assert summary.processed == 1
    assert summary.dispatched == 1
    assert summary.not_due == 0
    assert summary.errors == 0
    assert due.current_step == 1
    assert as_utc(due.next_fire_at) == T0 + timedelta(hours=26)
    assert later.current_step == 1


def test_due_execution_is_not_starved_by_older_waiting_ones(db_session, journey, make_customer):
    business, _, first_request = journey
    second_request = _second_request(db_session, business, make_customer)
    slow = create_sequence(db_session, business_id=business.id, name="Two days later", steps=[_step(1, 48)])
    fast = create_sequence(
        db_session,
        business_id=business.id,
        name="Right away",
        steps=[_step(1, 0), _step(2, 24)],
    )
    waiting = start_execution(db_session, review_request=first_request, sequence=slow, now=T0)
    ready = start_execution(db_session, review_request=second_request, sequence=fast, now=T0 + timedelta(minutes=30))
    db_session.commit()

    summaries = [run_due_executions(db_session, now=T0 + timedelta(hours=hour), limit=1) for hour in (1, 2, 3)]

    assert [item.dispatched for item in summaries] == [1, 0, 0]
    assert [item.not_due for item in summaries] == [0, 0, 0]
    assert ready.current_step == 1
    assert waiting.current_step == 0
    assert waiting.status == ready.status == "active"


def test_provider_crash_is_retried_and_does_not_abort_the_pass(db_session, journey, make_customer, monkeypatch):
    provider = _BrokenOnceEmailProvider()
    business, _, first_request = journey
    second_request = _second_request(db_session, business, make_customer)
    sequence = create_sequence(
        db_session,
        business_id=business.id,
        name="Two emails",
        steps=[_step(1, 0), _step(2, 24)],
    )
    first = start_execution(db_session, review_request=first_request, sequence=sequence, now=T0)
    second = start_execution(db_session, review_request=second_request, sequence=sequence, now=T0)
    db_session.commit()
    monkeypatch.setitem(messaging_provider._CHANNEL_PROVIDERS, "email_stub", provider)

    summary = run_due_executions(db_session, now=T0)

    assert provider.calls == 2
    assert summary.processed == 2
    assert summary.retried == 1
    assert summary.dispatched == 1
    assert summary.errors == 0
    assert sorted([first.current_step, second.current_step]) == [0, 1]
    retried = first if first.current_step == 0 else second
    step_execution = _step_executions(db_session, retried.id)[0]
    assert step_execution.status == "pending"
    assert step_execution.attempt_count == 1
    assert "RuntimeError" in step_execution.last_error
    assert retried.status == "active"


def test_unexpected_error_is_isolated_and_deferred(db_session, journey, make_customer, monkeypatch):
    business, _, first_request = journey
    second_request = _second_request(db_session, business, make_customer)
    sequence = create_sequence(db_session, business_id=business.id, name="Single", steps=[_step(1, 0)])
    broken = start_execution(db_session, review_request=first_request, sequence=sequence, now=T0)
    healthy = start_execution(db_session, review_request=second_request, sequence=sequence, now=T0)
    broken_id, healthy_id = broken.id, healthy.id
    broken_request_id = first_request.id
    db_session.commit()

    real_deliver_step = campaign_engine.deliver_step

    def deliver_step(db, *, review_request, step, now):
        if review_request.id == broken_request_id:
            raise ValueError("Unknown channel provider 'email_typo'")
        return real_deliver_step(db, review_request=review_request, step=step, now=now)

    monkeypatch.setattr(campaign_engine, "deliver_step", deliver_step)

    summary = run_due_executions(db_session, now=T0)

    assert summary.processed == 2
    assert summary.errors == 1
    assert summary.completed == 1
    broken = db_session.get(CampaignExecution, broken_id)
    healthy = db_session.get(CampaignExecution, healthy_id)
    assert healthy.status == "completed"
    assert broken.status == "active"
    assert broken.current_step == 0
    assert broken.version == 0
    assert as_utc(broken.next_fire_at) == T0 + timedelta(seconds=settings.campaign_run_interval_seconds)

    # Not picked again until the deferral has passed.
    assert run_due_executions(db_session, now=T0 + timedelta(seconds=1)).processed == 0


def test_missing_review_request_stops_with_its_own_reason(db_session, journey):
    business, _, review_request = journey
    sequence = create_sequence(db_session, business_id=business.id, name="Single", steps=[_step(1, 0)])
    execution = start_execution(db_session, review_request=review_request, sequence=sequence, now=T0)
    db_session.commit()

    db_session.expunge(review_request)
    db_session.execute(delete(ReviewRequest).where(ReviewRequest.id == execution.review_request_id))
    db_session.commit()

    outcome = execute_due_step(db_session, execution, now=T0)

    assert outcome.outcome == "stopped"
    assert outcome.detail == REQUEST_MISSING_REASON
    assert execution.stop_reason == REQUEST_MISSING_REASON
    assert execution.next_fire_at is None


def test_queued_step_send_leaves_request_pending(db_session, make_business, make_customer, monkeypatch):
    provider = _QueuingEmailProvider()
    monkeypatch.setitem(messaging_provider._CHANNEL_PROVIDERS, "email_stub", provider)
    business = make_business()
    customer = make_customer(business)
    review_request = dispatch(db_session, customer=customer, business=business, channel="email", now=T0)
    assert review_request.status == "pending"
    sequence = create_sequence(
        db_session,
        business_id=business.id,
        name="Two emails",
        steps=[_step(1, 0), _step(2, 24)],
    )
    execution = start_execution(db_session, review_request=review_request, sequence=sequence, now=T0)

    outcome = execute_due_step(db_session, execution, now=T0)
    db_session.commit()

    assert outcome.outcome == "dispatched"
    assert review_request.status == "pending"
    assert review_request.sent_at is None
    step_execution = _step_executions(db_session, execution.id)[0]
    assert step_execution.status == "sent"
    assert step_execution.provider_message_id == "email-queued-2"
