import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal, Protocol

import requests
from sqlalchemy.orm import Session

from crm_automation.core.config import settings
from crm_automation.core.errors import EmailDeliveryError
from crm_automation.models.crm import Activity, Contact

EmailDeliveryStatus = Literal["sent"]


@dataclass(frozen=True)
class EmailMessage:
    to: str
    subject: str
    body: str
    sender: str


@dataclass(frozen=True)
class EmailDeliveryResult:
    provider: str
    message_id: str
    status: EmailDeliveryStatus


class EmailProvider(Protocol):
    name: str

    def send(self, message: EmailMessage) -> EmailDeliveryResult:
        ...


class StubEmailProvider:
    name = "stub"

    def send(self, message: EmailMessage) -> EmailDeliveryResult:
        return EmailDeliveryResult(
            provider=self.name,
            message_id=f"email-{uuid.uuid4().hex[:14]}",
            status="sent",
        )


class ResendEmailProvider:
    name = "resend"

    def __init__(self, *, api_key: str | None, api_url: str, timeout_seconds: float):
        self._api_key = api_key
        self._api_url = api_url
        self._timeout_seconds = timeout_seconds

    def send(self, message: EmailMessage) -> EmailDeliveryResult:
        if not self._api_key:
            raise EmailDeliveryError("RESEND_API_KEY is not configured")
        try:
            response = requests.post(
                self._api_url,
                headers={"Authorization": f"Bearer {self._api_key}"},
                json={
                    "from": message.sender,
                    "to": message.to,
                    "subject": message.subject,
                    "html": message.body,
                },
                timeout=self._timeout_seconds,
            )
        except requests.RequestException as exc:
            raise EmailDeliveryError(f"Resend request failed: {exc}") from exc

        if not response.ok:
            raise EmailDeliveryError(f"Resend API error {response.status_code}: {response.text[:300]}")
        payload = response.json() if response.content else {}
        return EmailDeliveryResult(
            provider=self.name,
            message_id=str(payload.get("id") or ""),
            status="sent",
        )


_EMAIL_PROVIDERS: dict[str, EmailProvider] = {
    "stub": StubEmailProvider(),
    "resend": ResendEmailProvider(
        api_key=settings.resend_api_key,
        api_url=settings.resend_api_url,
        timeout_seconds=settings.resend_timeout_seconds,
    ),
}


def get_email_provider(name: str | None = None) -> EmailProvider:
    normalized = (name or settings.email_provider).strip().lower()
    provider = _EMAIL_PROVIDERS.get(normalized)
    if not provider:
        available = ", ".join(sorted(_EMAIL_PROVIDERS))
        raise ValueError(f"Unknown email provider '{name}'. Available: {available}")
    return provider


def send_automation_email(
    db: Session,
    *,
    to: str,
    subject: str,
    body: str,
    contact_id: str | None = None,
    user_id: str | None = None,
    provider: EmailProvider | None = None,
) -> EmailDeliveryResult:
    """Deliver one email and, for a known contact, record the touchpoint.

    Provider failures raise `EmailDeliveryError` so the job is retried.
    """
    active_provider = provider or get_email_provider()
    result = active_provider.send(
        EmailMessage(to=to, subject=subject, body=body, sender=settings.email_from)
    )

    if contact_id:
        contact = db.get(Contact, contact_id)
        if contact is not None:
            db.add(
                Activity(
                    type="EMAIL_SENT",
                    title=f"Email sent: {subject}"[:255],
                    metadata_json={"to": to, "subject": subject, "message_id": result.message_id},
                    contact_id=contact_id,
                    user_id=user_id,
                )
            )
            contact.last_contacted_at = datetime.now(timezone.utc)
    return result
