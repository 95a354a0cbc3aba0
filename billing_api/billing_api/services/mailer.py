"""Outbound email delivery.

The pipeline talks to mail through the small :class:`Mailer` protocol so
the digest scheduler and side-effect dispatcher never depend on a specific
provider.  :class:`HttpMailer` posts to a mail relay's HTTP API (SendGrid
v3 ``/mail/send`` request shape); :class:`LoggingMailer` only logs and is
used when no relay is configured.

INVARIANT: ``send`` either returns normally (the relay accepted the
message) or raises :class:`MailDeliveryError`.  Callers rely on this to
decide whether a digest watermark may advance.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

import httpx
from billing_core.errors import MailDeliveryError

from billing_api.config import APISettings

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT_SECONDS = 10.0


class Mailer(Protocol):
    """Anything that can deliver a rendered email."""

    async def send(self, to: str, subject: str, html: str, text: str) -> None: ...


class HttpMailer:
    """Deliver mail through a relay HTTP API.

    Parameters
    ----------
    api_url:
        Full URL of the relay's send endpoint.
    api_key:
        Bearer token for the relay.
    from_address, from_name:
        Sender identity.
    http_client:
        Optional ``httpx.AsyncClient`` for testing.  A default client
        is created if not provided.
    """

    def __init__(
        self,
        *,
        api_url: str,
        api_key: str,
        from_address: str,
        from_name: str = "",
        timeout: float = _DEFAULT_TIMEOUT_SECONDS,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_url = api_url
        self._api_key = api_key
        self._from = {"email": from_address, "name": from_name} if from_name else {"email": from_address}
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None

    async def close(self) -> None:
        """Close the HTTP client if we own it."""
        if self._owns_client:
            await self._client.aclose()

    async def send(self, to: str, subject: str, html: str, text: str) -> None:
        body = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": self._from,
            "subject": subject,
            "content": [
                {"type": "text/plain", "value": text},
                {"type": "text/html", "value": html},
            ],
        }
        try:
            response = await self._client.post(
                self._api_url,
                json=body,
                headers={"Authorization": f"Bearer {self._api_key}"},
            )
        except httpx.HTTPError as exc:
            logger.warning("Mail relay request failed for %s: %s", to, exc)
            raise MailDeliveryError(f"Mail relay unreachable: {exc}") from exc

        if not 200 <= response.status_code < 300:
            logger.warning(
                "Mail relay rejected message to %s: status=%d",
                to,
                response.status_code,
            )
            raise MailDeliveryError(f"Mail relay returned HTTP {response.status_code}")

        logger.info(
            "Email sent to %s (subject=%r, message_id=%s)",
            to,
            subject,
            response.headers.get("X-Message-Id", "-"),
        )


@dataclass(frozen=True)
class SentMessage:
    to: str
    subject: str
    html: str
    text: str


class LoggingMailer:
    """Development mailer that records and logs messages instead of sending."""

    def __init__(self) -> None:
        self.outbox: list[SentMessage] = []

    async def close(self) -> None:
        return None

    async def send(self, to: str, subject: str, html: str, text: str) -> None:
        self.outbox.append(SentMessage(to=to, subject=subject, html=html, text=text))
        logger.info("EMAIL (not sent, no relay configured) to %s: %s", to, subject)


def build_mailer(settings: APISettings) -> HttpMailer | LoggingMailer:
    """Return an :class:`HttpMailer` when a relay is configured, else a :class:`LoggingMailer`."""
    if not settings.mail_api_url:
        logger.warning("Mail relay not configured; emails will be logged instead of sent")
        return LoggingMailer()
    return HttpMailer(
        api_url=settings.mail_api_url,
        api_key=settings.mail_api_key.get_secret_value(),
        from_address=settings.mail_from_address,
        from_name=settings.mail_from_name,
        timeout=settings.mail_timeout_seconds,
    )
