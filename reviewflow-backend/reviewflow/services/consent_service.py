"""Per-channel opt-in state.

Staff edits, inbound SMS keywords and the dispatcher's pre-send check all go
through here so the three never disagree about what "opted out" means.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from reviewflow.core.time_utils import utcnow
from reviewflow.models.customer import Customer, CustomerConsent

SUBSCRIBED = "subscribed"
UNSUBSCRIBED = "unsubscribed"


@dataclass(frozen=True)
class ConsentChange:
    consent: CustomerConsent
    created: bool
    status_changed: bool


def get_consent(db: Session, *, customer: Customer, channel: str) -> CustomerConsent | None:
    return db.execute(
        select(CustomerConsent).where(
            CustomerConsent.business_id == customer.business_id,
            CustomerConsent.customer_id == customer.id,
            CustomerConsent.channel == channel,
        )
    ).scalar_one_or_none()


def is_opted_out(db: Session, *, customer: Customer, channel: str) -> bool:
    consent = get_consent(db, customer=customer, channel=channel)
    return consent is not None and consent.status == UNSUBSCRIBED


def set_consent(
    db: Session,
    *,
    customer: Customer,
    channel: str,
    status: str,
    source: str | None = None,
    note: str | None = None,
    now: datetime | None = None,
) -> ConsentChange:
    """Creates or updates the consent row.

    ``opted_at`` only moves when the status actually flips, so replayed STOP
    messages keep the original opt-out time.
    """
    when = now or utcnow()
    consent = get_consent(db, customer=customer, channel=channel)
    if consent is None:
        consent = CustomerConsent(
            id=str(uuid.uuid4()),
            business_id=customer.business_id,
            customer_id=customer.id,
            channel=channel,
            status=status,
            source=source,
            note=note,
            opted_at=when,
        )
        db.add(consent)
        db.flush()
        return ConsentChange(consent=consent, created=True, status_changed=True)

    status_changed = consent.status != status
    if status_changed:
        consent.status = status
        consent.opted_at = when
    if source is not None:
        consent.source = source
    if note is not None:
        consent.note = note
    db.flush()
    return ConsentChange(consent=consent, created=False, status_changed=status_changed)
