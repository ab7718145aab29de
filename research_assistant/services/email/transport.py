from __future__ import annotations

import asyncio
import base64
import logging
from dataclasses import dataclass, field
from typing import Literal, Protocol
from urllib.parse import quote

import httpx

from research_assistant.research.errors import DeliveryError, PermanentDeliveryError
from research_assistant.research.retry import RetryPolicy, Sleep, retry_with_policy
from research_assistant.services import logger as log_service
from research_assistant.services.providers.base import RETRYABLE_STATUS_CODES, parse_retry_after

APP_SIGNATURE = "Multi-API Research Assistant"
MAX_ERROR_LENGTH = 500


@dataclass(slots=True)
class DeliveryMessage:
    to: str
    subject: str
    body: str
    attachment: bytes
    filename: str
    content_type: str = "application/pdf"


@dataclass(slots=True)
class DeliveryResult:
    status: Literal["sent", "failed"]
    provider: str
    message_id: str | None = None
    error_message: str | None = None
    preview: str | None = field(default=None, repr=False)


class DeliveryTransport(Protocol):
    name: str

    async def send(self, message: DeliveryMessage) -> DeliveryResult: ...


def build_subject(title: str) -> str:
    return f"{title}: research report"


def build_body(app_base_url: str, session_id: str, title: str) -> str:
    detail_url = f"{app_base_url.rstrip('/')}/research/{quote(session_id, safe='')}"
    return "\n".join(
        [
            "Hi there,",
            "",
            f'Your research session "{title}" is complete. '
            "We've attached the PDF report for your records.",
            "",
            "You can also revisit the session online:",
            detail_url,
            "",
            f"-- {APP_SIGNATURE}",
        ]
    )


def truncate_error(message: str | None, max_length: int = MAX_ERROR_LENGTH) -> str | None:
    if not message:
        return None
    if len(message) <= max_length:
        return message
    return message[: max_length - 1] + "…"


def _sendgrid_error_detail(response: httpx.Response) -> str:
    try:
        errors = response.json().get("errors") or []
        messages = [e.get("message") for e in errors if isinstance(e, dict) and e.get("message")]
    except (ValueError, AttributeError):
        messages = []
    return "; ".join(messages) or response.text[:200] or "SendGrid API error"


class SendGridTransport:
    name = "sendgrid"

    def __init__(
        self,
        *,
        api_key: str,
        from_email: str,
        base_url: str = "https://api.sendgrid.com/v3",
        policy: RetryPolicy | None = None,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.api_key = api_key
        self.from_email = from_email
        self.base_url = base_url.rstrip("/")
        self.policy = policy or RetryPolicy(max_attempts=2, initial_delay_ms=500)
        self._sleep = sleep
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _payload(self, message: DeliveryMessage) -> dict:
        return {
            "personalizations": [{"to": [{"email": message.to}]}],
            "from": {"email": self.from_email},
            "subject": message.subject,
            "content": [{"type": "text/plain", "value": message.body}],
            "attachments": [
                {
                    "content": base64.b64encode(message.attachment).decode("ascii"),
                    "type": message.content_type,
                    "filename": message.filename,
                    "disposition": "attachment",
                }
            ],
        }

    async def _post(self, message: DeliveryMessage) -> str | None:
        try:
            response = await self._client.post(
                f"{self.base_url}/mail/send",
                json=self._payload(message),
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        except httpx.TransportError as exc:
            raise DeliveryError(f"SendGrid transport error: {exc}") from exc

        if response.is_success:
            return response.headers.get("x-message-id")

        detail = f"SendGrid responded {response.status_code}: {_sendgrid_error_detail(response)}"
        if response.status_code in RETRYABLE_STATUS_CODES or response.status_code >= 500:
            error = DeliveryError(detail)
            error.retry_after_ms = parse_retry_after(response.headers.get("retry-after"))
            raise error
        raise PermanentDeliveryError(detail)

    async def send(self, message: DeliveryMessage) -> DeliveryResult:
        if not self.api_key:
            return DeliveryResult(
                status="failed", provider=self.name, error_message="SENDGRID_API_KEY not configured"
            )

        try:
            message_id = await retry_with_policy(
                lambda _ctx: self._post(message),
                self.policy,
                on_retry=lambda error, ctx: log_service.log_event(
                    event_type="email_retry",
                    message=str(error),
                    level=logging.WARNING,
                    provider=self.name,
                    attempt=ctx.attempt,
                    delay_ms=ctx.delay_ms,
                ),
                sleep=self._sleep,
            )
        except DeliveryError as exc:
            return DeliveryResult(
                status="failed", provider=self.name, error_message=truncate_error(exc.message)
            )

        return DeliveryResult(status="sent", provider=self.name, message_id=message_id)


class DemoTransport:
    """Records a plain-text preview instead of sending anything."""

    name = "demo"

    def __init__(self) -> None:
        self.sent: list[DeliveryMessage] = []

    async def send(self, message: DeliveryMessage) -> DeliveryResult:
        self.sent.append(message)
        size_kb = max(1, round(len(message.attachment) / 1024))
        preview = "\n".join(
            [
                f"To: {message.to}",
                f"Subject: {message.subject}",
                "",
                message.body,
                "",
                f"Demo attachment: {message.filename} (~{size_kb} KB)",
            ]
        )
        return DeliveryResult(
            status="sent", provider=self.name, message_id=f"demo-{len(self.sent)}", preview=preview
        )
