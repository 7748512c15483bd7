import base64
import hashlib
import hmac
import json
from xml.sax.saxutils import escape

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from sqlalchemy.orm import Session

from reviewflow.core.api_docs import error_responses
from reviewflow.core.config import settings
from reviewflow.core.deps import get_db
from reviewflow.models.customer import Customer
from reviewflow.schemas.webhook import ReconcileSummaryOut
from reviewflow.services.audit_service import log_audit_event
from reviewflow.services.delivery_status import handle_inbound_sms, reconcile_batch, sms_status_event

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

EMAIL_SIGNATURE_HEADER = "X-Twilio-Email-Event-Webhook-Signature"
EMAIL_TIMESTAMP_HEADER = "X-Twilio-Email-Event-Webhook-Timestamp"
SMS_SIGNATURE_HEADER = "X-Twilio-Signature"


def build_email_signature(key: str, timestamp: str, payload_bytes: bytes) -> str:
    digest = hmac.new(key.encode("utf-8"), timestamp.encode("utf-8") + payload_bytes, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def build_twilio_signature(auth_token: str, url: str, params: dict[str, str]) -> str:
    signed = url + "".join(f"{key}{params[key]}" for key in sorted(params))
    digest = hmac.new(auth_token.encode("utf-8"), signed.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


def _assert_email_signature(request: Request, payload_bytes: bytes) -> None:
    if not settings.email_webhook_validate_signature:
        return
    signature = request.headers.get(EMAIL_SIGNATURE_HEADER)
    timestamp = request.headers.get(EMAIL_TIMESTAMP_HEADER)
    if not signature or not timestamp:
        raise HTTPException(status_code=401, detail="Missing webhook signature")
    if not settings.email_webhook_verification_key:
        raise HTTPException(status_code=403, detail="Webhook verification key is not configured")

    expected = build_email_signature(settings.email_webhook_verification_key, timestamp, payload_bytes)
    if not hmac.compare_digest(signature.strip(), expected):
        raise HTTPException(status_code=403, detail="Invalid webhook signature")


def _assert_twilio_signature(request: Request, params: dict[str, str]) -> None:
    if not settings.sms_webhook_validate_signature:
        return
    signature = request.headers.get(SMS_SIGNATURE_HEADER)
    if not signature:
        raise HTTPException(status_code=401, detail="Missing webhook signature")
    if not settings.twilio_auth_token:
        raise HTTPException(status_code=403, detail="Twilio auth token is not configured")

    url = str(request.url)
    if settings.sms_webhook_public_url:
        url = f"{settings.sms_webhook_public_url}{request.url.path}"
    expected = build_twilio_signature(settings.twilio_auth_token, url, params)
    if not hmac.compare_digest(signature.strip(), expected):
        raise HTTPException(status_code=403, detail="Invalid webhook signature")


async def _form_params(request: Request) -> dict[str, str]:
    form = await request.form()
    return {key: str(value) for key, value in form.items()}


def _twiml(message: str | None) -> Response:
    body = '<?xml version="1.0" encoding="UTF-8"?><Response>'
    if message:
        body += f"<Message>{escape(message)}</Message>"
    body += "</Response>"
    return Response(content=body, media_type="application/xml")


@router.post(
    "/email/{provider}",
    response_model=ReconcileSummaryOut,
    summary="Email delivery events",
    description=(
        "Receives a batch of provider delivery events. The signature is base64 HMAC-SHA256 of the "
        "timestamp header followed by the raw body."
    ),
    responses=error_responses(400, 401, 403, 500),
)
async def email_delivery_webhook(provider: str, request: Request, db: Session = Depends(get_db)):
    raw_body = await request.body()
    _assert_email_signature(request, raw_body)

    try:
        events = json.loads(raw_body or b"null")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Body must be JSON") from exc
    if isinstance(events, dict):
        events = [events]
    if not isinstance(events, list):
        raise HTTPException(status_code=400, detail="Body must be a JSON array of events")

    summary = reconcile_batch(db, events, provider=provider.strip().lower() or "email")
    db.commit()
    return ReconcileSummaryOut(**summary.__dict__)


@router.post(
    "/sms/status",
    response_model=ReconcileSummaryOut,
    summary="SMS status callback",
    description="Twilio message status callback, form encoded and signed with X-Twilio-Signature.",
    responses=error_responses(401, 403, 500),
)
async def sms_status_webhook(request: Request, db: Session = Depends(get_db)):
    params = await _form_params(request)
    _assert_twilio_signature(request, params)

    event = sms_status_event(
        message_sid=params.get("MessageSid") or params.get("SmsSid"),
        message_status=params.get("MessageStatus") or params.get("SmsStatus"),
        error_code=params.get("ErrorCode"),
        error_message=params.get("ErrorMessage"),
    )
    summary = reconcile_batch(db, [event], provider="twilio")
    db.commit()
    return ReconcileSummaryOut(**summary.__dict__)


@router.post(
    "/sms/inbound",
    summary="Inbound SMS",
    description="Handles STOP / START / HELP keywords and answers with TwiML.",
    responses={
        200: {"content": {"application/xml": {}}, "description": "TwiML reply"},
        **error_responses(401, 403, 500),
    },
)
async def sms_inbound_webhook(request: Request, db: Session = Depends(get_db)):
    params = await _form_params(request)
    _assert_twilio_signature(request, params)

    result = handle_inbound_sms(db, from_number=params.get("From", ""), body=params.get("Body", ""))
    if result.keyword in {"stop", "start"}:
        for customer_id in result.customer_ids:
            customer = db.get(Customer, customer_id)
            log_audit_event(
                db,
                business_id=customer.business_id,
                action=f"customer.consent.sms_{result.keyword}",
                target_type="customer",
                target_id=customer_id,
                metadata_json={"channel": "sms"},
            )
    db.commit()
    return _twiml(result.reply)
