import uuid
from typing import Any

from sqlalchemy.orm import Session

from reviewflow.core.observability import NO_REQUEST, get_request_id
from reviewflow.models.audit_log import AuditLog


def log_audit_event(
    db: Session,
    *,
    business_id: str,
    action: str,
    target_type: str,
    actor_user_id: str | None = None,
    target_id: str | None = None,
    metadata_json: dict[str, Any] | None = None,
) -> AuditLog:
    """Adds an audit row to the caller's transaction.

    ``actor_user_id`` is None for webhooks and the scheduler. Rows written
    outside a request (the campaign worker) carry no request id.
    """
    request_id = get_request_id()
    event = AuditLog(
        id=str(uuid.uuid4()),
        business_id=business_id,
        actor_user_id=actor_user_id,
        action=action,
        target_type=target_type,
        target_id=target_id,
        metadata_json=metadata_json,
        request_id=None if request_id == NO_REQUEST else request_id,
    )
    db.add(event)
    return event
