import smtplib
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import Literal, Protocol

import requests

from reviewflow.core.config import settings
from reviewflow.core.errors import DispatchError
from reviewflow.core.id_utils import generate_message_id

Channel = Literal["email", "sms"]
CHANNELS: tuple[Channel, ...] = ("email", "sms")


@dataclass(frozen=True)
class MessageSendRequest:
    business_id: str
    channel: Channel
    recipient: str
    body: str
    subject: str | None = None
    reference_id: str | None = None


@dataclass(frozen=True)
class MessageSendResult:
    provider: str
    message_id: str
    # "sent" when the provider confirmed acceptance synchronously.
    status: Literal["sent", "queued"]


class ChannelProvider(Protocol):
    name: str
    channel: Channel

    def send(self, request: MessageSendRequest) -> MessageSendResult:
        ...


class StubEmailProvider:
    name = "email_stub"
    channel: Channel = "email"

    def send(self, request: MessageSendRequest) -> MessageSendResult:
        return MessageSendResult(provider=self.name, message_id=generate_message_id("email"), status="sent")


class StubSmsProvider:
    name = "sms_stub"
    channel: Channel = "sms"

    def send(self, request: MessageSendRequest) -> MessageSendResult:
        return MessageSendResult(provider=self.name, message_id=generate_message_id("sms"), status="sent")


class SmtpEmailProvider:
    name = "smtp"
    channel: Channel = "email"

    def send(self, request: MessageSendRequest) -> MessageSendResult:
        if not (settings.smtp_host and settings.smtp_sender_email):
            raise DispatchError("SMTP not configured", provider=self.name, error_code="not_configured")

        message_id = make_msgid(domain=settings.smtp_sender_email.split("@")[-1])
        message = EmailMessage()
        message["Subject"] = request.subject or ""
        message["From"] = formataddr((settings.email_sender_name or "", settings.smtp_sender_email))
        message["To"] = request.recipient
        message["Message-ID"] = message_id
        if settings.smtp_reply_to_email:
            message["Reply-To"] = settings.smtp_reply_to_email
        message.set_content(request.body)

        timeout = settings.channel_send_timeout_seconds
        try:
            if settings.smtp_use_ssl:
                with smtplib.SMTP_SSL(settings.smtp_host, settings.smtp_port, timeout=timeout) as server:
                    if settings.smtp_username:
                        server.login(settings.smtp_username, settings.smtp_password or "")
                    server.send_message(message)
            else:
                with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=timeout) as server:
                    if settings.smtp_use_starttls:
                        server.starttls()
                    if settings.smtp_username:
                        server.login(settings.smtp_username, settings.smtp_password or "")
                    server.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            raise DispatchError(str(exc) or exc.__class__.__name__, provider=self.name) from exc

        return MessageSendResult(provider=self.name, message_id=message_id.strip("<>"), status="sent")


class SendGridEmailProvider:
    name = "sendgrid"
    channel: Channel = "email"

    def send(self, request: MessageSendRequest) -> MessageSendResult:
        if not (settings.sendgrid_api_key and settings.smtp_sender_email):
            raise DispatchError("SendGrid not configured", provider=self.name, error_code="not_configured")

        sender: dict[str, str] = {"email": settings.smtp_sender_email}
        if settings.email_sender_name:
            sender["name"] = settings.email_sender_name
        body = {
            "personalizations": [{"to": [{"email": request.recipient}]}],
            "from": sender,
            "subject": request.subject or "",
            "content": [{"type": "text/plain", "value": request.body}],
            "custom_args": {"review_request_ref": request.reference_id or ""},
        }
        try:
            response = requests.post(
                f"{settings.sendgrid_api_base_url.rstrip('/')}/mail/send",
                json=body,
                headers={"Authorization": f"Bearer {settings.sendgrid_api_key}"},
                timeout=settings.channel_send_timeout_seconds,
            )
        except requests.Timeout as exc:
            raise DispatchError("SendGrid request timed out", provider=self.name, error_code="timeout") from exc
        except requests.RequestException as exc:
            raise DispatchError(str(exc), provider=self.name) from exc

        if response.status_code >= 400:
            raise DispatchError(
                f"SendGrid rejected message: {response.text[:200]}",
                provider=self.name,
                error_code=f"http_{response.status_code}",
            )
        message_id = response.headers.get("X-Message-Id")
        if not message_id:
            raise DispatchError("SendGrid response missing X-Message-Id", provider=self.name)
        return MessageSendResult(provider=self.name, message_id=message_id, status="sent")


class TwilioSmsProvider:
    name = "twilio"
    channel: Channel = "sms"

    def send(self, request: MessageSendRequest) -> MessageSendResult:
        account_sid = settings.twilio_account_sid
        if not (account_sid and settings.twilio_auth_token and settings.twilio_from_number):
            raise DispatchError("Twilio not configured", provider=self.name, error_code="not_configured")

        data = {"To": request.recipient, "From": settings.twilio_from_number, "Body": request.body}
        if settings.sms_webhook_public_url:
            data["StatusCallback"] = settings.sms_webhook_public_url
        try:
            response = requests.post(
                f"{settings.twilio_api_base_url.rstrip('/')}/Accounts/{account_sid}/Messages.json",
                data=data,
                auth=(account_sid, settings.twilio_auth_token),
                timeout=settings.channel_send_timeout_seconds,
            )
        except requests.Timeout as exc:
            raise DispatchError("Twilio request timed out", provider=self.name, error_code="timeout") from exc
        except requests.RequestException as exc:
            raise DispatchError(str(exc), provider=self.name) from exc

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if response.status_code >= 400:
            raise DispatchError(
                str(payload.get("message") or f"Twilio returned HTTP {response.status_code}"),
                provider=self.name,
                error_code=f"twilio_{payload.get('code') or response.status_code}",
            )
        if not payload.get("sid"):
            raise DispatchError("Twilio response missing message sid", provider=self.name)
        # Twilio only queues synchronously; the status callback confirms sending.
        return MessageSendResult(provider=self.name, message_id=str(payload["sid"]), status="queued")


_CHANNEL_PROVIDERS: dict[str, ChannelProvider] = {
    "email_stub": StubEmailProvider(),
    "sms_stub": StubSmsProvider(),
    "smtp": SmtpEmailProvider(),
    "sendgrid": SendGridEmailProvider(),
    "twilio": TwilioSmsProvider(),
}


def _default_provider_name(channel: str) -> str:
    if channel == "email":
        return settings.email_provider_default
    return settings.sms_provider_default


def get_channel_provider(channel: str, name: str | None = None) -> ChannelProvider:
    normalized_channel = (channel or "").strip().lower()
    if normalized_channel not in CHANNELS:
        raise ValueError(f"Unknown channel '{channel}'. Available: {', '.join(CHANNELS)}")

    normalized = (name or _default_provider_name(normalized_channel)).strip().lower()
    provider = _CHANNEL_PROVIDERS.get(normalized)
    if not provider:
        available = ", ".join(sorted(_CHANNEL_PROVIDERS))
        raise ValueError(f"Unknown channel provider '{normalized}'. Available: {available}")
    if provider.channel != normalized_channel:
        raise ValueError(f"Provider '{normalized}' does not deliver {normalized_channel}")
    return provider


def send_with_timeout(
    provider: ChannelProvider,
    request: MessageSendRequest,
    timeout_seconds: float | None = None,
) -> MessageSendResult:
    """Runs ``provider.send`` with a hard deadline; a timeout is a DispatchError, never success."""
    timeout = timeout_seconds if timeout_seconds is not None else settings.channel_send_timeout_seconds
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"send-{provider.name}")
    try:
        future = pool.submit(provider.send, request)
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError as exc:
            raise DispatchError(
                f"{provider.name} did not respond within {timeout:g}s",
                provider=provider.name,
                error_code="timeout",
            ) from exc
        except DispatchError:
            raise
        except Exception as exc:
            raise DispatchError(
                f"{provider.name} raised {type(exc).__name__}: {exc}",
                provider=provider.name,
                error_code="provider_error",
            ) from exc
    finally:
        pool.shutdown(wait=False, cancel_futures=True)
