from datetime import datetime, timedelta

from reviewflow.core.time_utils import as_utc
from reviewflow.models.campaign import CampaignExecution, CampaignSequence, CampaignStep

EXECUTION_STATUSES = {"active", "completed", "stopped", "cancelled", "failed"}
TERMINAL_EXECUTION_STATUSES = EXECUTION_STATUSES - {"active"}


def is_terminal(execution: CampaignExecution) -> bool:
    return execution.status in TERMINAL_EXECUTION_STATUSES


def ordered_steps(sequence: CampaignSequence) -> list[CampaignStep]:
    return sorted(sequence.steps, key=lambda step: step.step_number)


def has_dispatchable_steps(sequence: CampaignSequence) -> bool:
    return sequence.is_active and any(step.is_active for step in sequence.steps)


def next_step(execution: CampaignExecution, sequence: CampaignSequence) -> CampaignStep | None:
    steps = ordered_steps(sequence)
    if execution.current_step >= len(steps):
        return None
    return steps[execution.current_step]


def next_fire_time(execution: CampaignExecution, sequence: CampaignSequence) -> datetime | None:
    """Fire time of the next step, measured from the later of start and the previous fire."""
    if is_terminal(execution):
        return None
    step = next_step(execution, sequence)
    if step is None:
        return None

    anchor = as_utc(execution.started_at)
    last_fired = as_utc(execution.last_step_fired_at)
    if last_fired is not None and last_fired > anchor:
        anchor = last_fired
    return anchor + timedelta(hours=step.delay_hours)


def reschedule(execution: CampaignExecution, sequence: CampaignSequence) -> datetime | None:
    execution.next_fire_at = next_fire_time(execution, sequence)
    return execution.next_fire_at


def is_due(execution: CampaignExecution, sequence: CampaignSequence, now: datetime) -> bool:
    fire_at = next_fire_time(execution, sequence)
    return fire_at is not None and fire_at <= as_utc(now)


def is_step_dispatchable(step: CampaignStep, sequence: CampaignSequence) -> bool:
    return bool(sequence.is_active and step.is_active)


def complete(execution: CampaignExecution, now: datetime) -> CampaignExecution:
    execution.status = "completed"
    execution.completed_at = now
    execution.active_key = None
    execution.next_fire_at = None
    return execution


def advance(execution: CampaignExecution, sequence: CampaignSequence, now: datetime) -> CampaignExecution:
    if is_terminal(execution):
        raise ValueError(f"Cannot advance a {execution.status} execution")

    execution.current_step += 1
    execution.last_step_fired_at = now
    if execution.current_step >= len(sequence.steps):
        complete(execution, now)
    else:
        reschedule(execution, sequence)
    return execution
