import uuid
from dataclasses import dataclass

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from reviewflow.core.errors import InvalidSequenceError
from reviewflow.models.campaign import CampaignSequence, CampaignStep
from reviewflow.services.messaging_provider import CHANNELS

DEFAULT_SEQUENCE_NAME = "Default Review Collection"


@dataclass(frozen=True)
class StepSpec:
    step_number: int
    delay_hours: int
    message_type: str
    body_template: str
    subject_template: str | None = None
    is_active: bool = True


DEFAULT_SEQUENCE_STEPS: tuple[StepSpec, ...] = (
    StepSpec(
        step_number=1,
        delay_hours=0,
        message_type="sms",
        body_template=(
            "Hi {{customer_name}}! How was your experience with {{business_name}}? "
            "We'd love to hear about it: {{review_link}}"
        ),
    ),
    StepSpec(
        step_number=2,
        delay_hours=24,
        message_type="email",
        subject_template="How was your {{service_type}} experience?",
        body_template=(
            "Hi {{customer_first_name}},\n\n"
            "Thanks for choosing {{business_name}}. How did your {{service_type}} go?\n\n"
            "It only takes a minute: {{review_link}}\n\n"
            "Unsubscribe: {{unsubscribe_url}}"
        ),
    ),
    StepSpec(
        step_number=3,
        delay_hours=120,
        message_type="email",
        subject_template="Quick favor?",
        body_template=(
            "Hi {{customer_first_name}},\n\n"
            "Would you mind sharing a few words about {{business_name}}? "
            "Your feedback helps us a lot: {{review_link}}\n\n"
            "Unsubscribe: {{unsubscribe_url}}"
        ),
    ),
    StepSpec(
        step_number=4,
        delay_hours=336,
        message_type="email",
        subject_template="Last chance to share your experience",
        body_template=(
            "Hi {{customer_first_name}},\n\n"
            "This is our last note about your recent visit to {{business_name}}. "
            "If you have a moment: {{review_link}}\n\n"
            "Unsubscribe: {{unsubscribe_url}}"
        ),
    ),
)


def _validate_step_spec(spec: StepSpec) -> None:
    if spec.step_number < 1:
        raise InvalidSequenceError("step_number must be 1 or greater")
    if spec.delay_hours < 0:
        raise InvalidSequenceError("delay_hours cannot be negative")
    if spec.message_type not in CHANNELS:
        raise InvalidSequenceError(f"message_type must be one of: {', '.join(CHANNELS)}")
    if not spec.body_template.strip():
        raise InvalidSequenceError("body_template is required")


def _build_step(sequence_id: str, spec: StepSpec) -> CampaignStep:
    return CampaignStep(
        id=str(uuid.uuid4()),
        sequence_id=sequence_id,
        step_number=spec.step_number,
        delay_hours=spec.delay_hours,
        message_type=spec.message_type,
        subject_template=spec.subject_template,
        body_template=spec.body_template,
        is_active=spec.is_active,
    )


def create_sequence(
    db: Session,
    *,
    business_id: str,
    name: str,
    steps: list[StepSpec] | tuple[StepSpec, ...],
    description: str | None = None,
    is_default: bool = False,
    is_active: bool = True,
    created_by_user_id: str | None = None,
) -> CampaignSequence:
    numbers = [spec.step_number for spec in steps]
    if len(numbers) != len(set(numbers)):
        raise InvalidSequenceError("step_number values must be unique within a sequence")
    for spec in steps:
        _validate_step_spec(spec)

    existing = db.execute(
        select(CampaignSequence.id).where(
            CampaignSequence.business_id == business_id,
            CampaignSequence.name == name,
        )
    ).scalar_one_or_none()
    if existing:
        raise InvalidSequenceError(f"A sequence named '{name}' already exists")

    sequence = CampaignSequence(
        id=str(uuid.uuid4()),
        business_id=business_id,
        name=name,
        description=description,
        is_default=False,
        is_active=is_active,
        created_by_user_id=created_by_user_id,
    )
    sequence.steps = [_build_step(sequence.id, spec) for spec in sorted(steps, key=lambda item: item.step_number)]
    db.add(sequence)
    db.flush()

    if is_default:
        set_default_sequence(db, sequence=sequence)
    return sequence


def add_step(db: Session, *, sequence: CampaignSequence, spec: StepSpec) -> CampaignStep:
    _validate_step_spec(spec)
    if any(step.step_number == spec.step_number for step in sequence.steps):
        raise InvalidSequenceError(f"Step {spec.step_number} already exists in this sequence")
    step = _build_step(sequence.id, spec)
    sequence.steps.append(step)
    db.flush()
    return step


def set_default_sequence(db: Session, *, sequence: CampaignSequence) -> CampaignSequence:
    """Makes ``sequence`` the business default and clears the previous one in the same transaction."""
    db.execute(
        update(CampaignSequence)
        .where(
            CampaignSequence.business_id == sequence.business_id,
            CampaignSequence.id != sequence.id,
            CampaignSequence.is_default.is_(True),
        )
        .values(is_default=False, default_key=None)
        .execution_options(synchronize_session="fetch")
    )
    # Release the unique default_key before claiming it.
    db.flush()
    sequence.is_default = True
    sequence.default_key = sequence.business_id
    db.flush()
    return sequence


def get_default_sequence(db: Session, *, business_id: str) -> CampaignSequence | None:
    return db.execute(
        select(CampaignSequence).where(
            CampaignSequence.business_id == business_id,
            CampaignSequence.is_default.is_(True),
        )
    ).scalar_one_or_none()


def ensure_default_sequence(
    db: Session,
    *,
    business_id: str,
    created_by_user_id: str | None = None,
) -> CampaignSequence:
    """Returns the default sequence, seeding the stock four-step one when none exists."""
    current = get_default_sequence(db, business_id=business_id)
    if current:
        return current

    named = db.execute(
        select(CampaignSequence).where(
            CampaignSequence.business_id == business_id,
            CampaignSequence.name == DEFAULT_SEQUENCE_NAME,
        )
    ).scalar_one_or_none()
    if named:
        return set_default_sequence(db, sequence=named)

    return create_sequence(
        db,
        business_id=business_id,
        name=DEFAULT_SEQUENCE_NAME,
        description="One SMS followed by three emails over two weeks",
        steps=DEFAULT_SEQUENCE_STEPS,
        is_default=True,
        created_by_user_id=created_by_user_id,
    )
