import uuid

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from reviewflow.core.api_docs import error_responses
from reviewflow.core.deps import get_db
from reviewflow.core.security_current import BusinessAccess, require_role
from reviewflow.models.customer import Customer
from reviewflow.schemas.common import pagination_meta
from reviewflow.schemas.customer import (
    CustomerConsentListOut,
    CustomerConsentOut,
    CustomerConsentUpsertIn,
    CustomerCreateIn,
    CustomerCreateOut,
    CustomerListOut,
    CustomerOut,
)
from reviewflow.services.audit_service import log_audit_event
from reviewflow.services.consent_service import set_consent
from reviewflow.services.recipients import normalize_phone

router = APIRouter(prefix="/customers", tags=["customers"])


def load_customer(db: Session, access: BusinessAccess, customer_id: str) -> Customer:
    """Customer in the caller's business; other businesses' ids look missing."""
    customer = db.execute(
        select(Customer).where(Customer.business_id == access.business.id, Customer.id == customer_id)
    ).scalar_one_or_none()
    if customer is None:
        raise HTTPException(status_code=404, detail="Customer not found")
    return customer


def _email_taken(db: Session, business_id: str, email: str) -> bool:
    found = db.execute(
        select(Customer.id).where(Customer.business_id == business_id, func.lower(Customer.email) == email.lower())
    ).first()
    return found is not None


def _search(term: str):
    pattern = f"%{term}%"
    return or_(
        *(func.lower(func.coalesce(column, "")).like(pattern) for column in (Customer.name, Customer.email, Customer.phone))
    )


@router.post(
    "",
    response_model=CustomerCreateOut,
    summary="Add a customer who can be asked for a review",
    responses=error_responses(401, 403, 409, 422, 500),
)
def create_customer(
    payload: CustomerCreateIn,
    db: Session = Depends(get_db),
    access: BusinessAccess = Depends(require_role("staff")),
):
    business_id = access.business.id
    if payload.email and _email_taken(db, business_id, str(payload.email)):
        raise HTTPException(status_code=409, detail="Email already exists for another customer")

    customer = Customer(
        id=str(uuid.uuid4()),
        business_id=business_id,
        name=payload.name,
        # E.164 so inbound STOP/START can find the customer again.
        phone=normalize_phone(payload.phone) or payload.phone,
        email=str(payload.email) if payload.email else None,
        service_type=payload.service_type,
        service_date=payload.service_date,
        note=payload.note,
    )
    db.add(customer)
    db.flush()
    log_audit_event(
        db,
        business_id=business_id,
        actor_user_id=access.user.id,
        action="customer.create",
        target_type="customer",
        target_id=customer.id,
        metadata_json={"has_email": customer.email is not None, "has_phone": customer.phone is not None},
    )
    db.commit()
    return CustomerCreateOut(id=customer.id)


@router.get(
    "",
    response_model=CustomerListOut,
    summary="List or search customers",
    description="`q` matches name, email or phone, case-insensitively. Newest first.",
    responses=error_responses(401, 403, 422, 500),
)
def list_customers(
    q: str | None = Query(default=None, max_length=120),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    access: BusinessAccess = Depends(require_role("staff")),
):
    term = (q or "").strip().lower() or None
    conditions = [Customer.business_id == access.business.id]
    if term:
        conditions.append(_search(term))

    total = db.execute(select(func.count()).select_from(Customer).where(*conditions)).scalar_one()
    page = db.execute(
        select(Customer)
        .where(*conditions)
        .order_by(Customer.created_at.desc(), Customer.id.desc())
        .limit(limit)
        .offset(offset)
    ).scalars().all()
    return CustomerListOut(
        items=[CustomerOut.model_validate(customer) for customer in page],
        pagination=pagination_meta(total=int(total), limit=limit, offset=offset, count=len(page)),
        q=term,
    )


@router.get(
    "/{customer_id}",
    response_model=CustomerOut,
    summary="Get a customer",
    responses=error_responses(401, 403, 404, 500),
)
def get_customer(
    customer_id: str,
    db: Session = Depends(get_db),
    access: BusinessAccess = Depends(require_role("staff")),
):
    return CustomerOut.model_validate(load_customer(db, access, customer_id))


@router.put(
    "/{customer_id}/consent",
    response_model=CustomerConsentOut,
    summary="Record a customer's channel preference",
    description="An `unsubscribed` channel is refused by manual sends and skipped by campaigns.",
    responses=error_responses(401, 403, 404, 422, 500),
)
def upsert_customer_consent(
    customer_id: str,
    payload: CustomerConsentUpsertIn,
    db: Session = Depends(get_db),
    access: BusinessAccess = Depends(require_role("staff")),
):
    customer = load_customer(db, access, customer_id)
    change = set_consent(
        db,
        customer=customer,
        channel=payload.channel,
        status=payload.status,
        source=payload.source,
        note=payload.note,
    )
    log_audit_event(
        db,
        business_id=customer.business_id,
        actor_user_id=access.user.id,
        action="customer.consent.create" if change.created else "customer.consent.update",
        target_type="customer_consent",
        target_id=change.consent.id,
        metadata_json={
            "customer_id": customer.id,
            "channel": payload.channel,
            "status": payload.status,
            "status_changed": change.status_changed,
        },
    )
    db.commit()
    db.refresh(change.consent)
    return CustomerConsentOut.model_validate(change.consent)


@router.get(
    "/{customer_id}/consent",
    response_model=CustomerConsentListOut,
    summary="List a customer's channel preferences",
    description="Channels without a row are treated as subscribed.",
    responses=error_responses(401, 403, 404, 500),
)
def list_customer_consents(
    customer_id: str,
    db: Session = Depends(get_db),
    access: BusinessAccess = Depends(require_role("staff")),
):
    customer = load_customer(db, access, customer_id)
    return CustomerConsentListOut(items=[CustomerConsentOut.model_validate(item) for item in customer.consents])
