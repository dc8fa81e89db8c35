"""
Outbound notification delivery: email through Microsoft Graph and JSON
webhooks to downstream services.
"""

from __future__ import annotations

import html
import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional, Protocol

import requests
from azure.core.credentials import TokenCredential
from azure.core.exceptions import AzureError
from azure.identity import ClientSecretCredential

from dispatch_backend.errors import NotificationError

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30  # seconds
GRAPH_SCOPE = "https://graph.microsoft.com/.default"


class EmailClient(Protocol):
    def send_email(self, *, to: str, subject: str, html_body: str) -> None:
        ...


class WebhookForwarder(Protocol):
    def forward(self, url: str, payload: dict) -> None:
        ...


@dataclass
class SentEmail:
    to: str
    subject: str
    html_body: str


@dataclass
class InMemoryEmailClient:
    """Records messages instead of sending them."""

    sent: list[SentEmail] = field(default_factory=list)

    def send_email(self, *, to: str, subject: str, html_body: str) -> None:
        self.sent.append(SentEmail(to=to, subject=subject, html_body=html_body))


@dataclass
class InMemoryWebhookForwarder:
    """Records forwarded payloads instead of posting them."""

    delivered: list[tuple[str, dict]] = field(default_factory=list)

    def forward(self, url: str, payload: dict) -> None:
        self.delivered.append((url, payload))


class GraphEmailClient:
    """Sends HTML mail as ``sender`` through the Graph ``sendMail`` endpoint."""

    def __init__(
        self,
        *,
        tenant_id: str,
        client_id: str,
        client_secret: str,
        sender: str,
        graph_api_url: str = "https://graph.microsoft.com/v1.0",
        credential: Optional[TokenCredential] = None,
    ):
        self.sender = sender
        self.graph_api_url = graph_api_url.rstrip("/")
        # ClientSecretCredential caches tokens and refreshes them near expiry.
        self.credential = credential or ClientSecretCredential(
            tenant_id, client_id, client_secret
        )

    def _access_token(self) -> str:
        try:
            return self.credential.get_token(GRAPH_SCOPE).token
        except AzureError as exc:
            logger.error("Failed to obtain Microsoft Graph access token: %s", exc)
            raise NotificationError("Failed to obtain email access token") from exc

    def send_email(self, *, to: str, subject: str, html_body: str) -> None:
        message = {
            "message": {
                "subject": subject,
                "body": {"contentType": "HTML", "content": html_body},
                "from": {"emailAddress": {"address": self.sender}},
                "toRecipients": [{"emailAddress": {"address": str(to)}}],
            },
            "saveToSentItems": True,
        }
        token = self._access_token()
        try:
            response = requests.post(
                f"{self.graph_api_url}/users/{self.sender}/sendMail",
                json=message,
                headers={"Authorization": f"Bearer {token}"},
                timeout=REQUEST_TIMEOUT,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.error("Failed to send email to %s: %s", to, exc)
            raise NotificationError(f"Failed to send email: {exc}") from exc
        logger.info("Email sent to %s (%s)", to, subject)


class HttpWebhookForwarder:
    """POSTs JSON payloads to downstream webhooks."""

    def __init__(self, timeout: float = REQUEST_TIMEOUT):
        self.timeout = timeout

    def forward(self, url: str, payload: dict) -> None:
        try:
            response = requests.post(url, json=payload, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.error("Webhook forward to %s failed: %s", url, exc)
            raise NotificationError(f"Webhook forward failed: {exc}") from exc
        logger.info("Forwarded payload to %s (%d)", url, response.status_code)


def render_rankings_email(batch_id: str, rankings: Iterable[dict]) -> tuple[str, str]:
    """Return ``(subject, html_body)`` summarising a rankings batch."""
    rows = sorted(
        rankings, key=lambda r: r.get("rank") if r.get("rank") is not None else 1 << 30
    )
    items = []
    for ranking in rows:
        title = html.escape(ranking.get("title") or "(untitled)")
        link = ranking.get("link")
        label = f'<a href="{html.escape(link)}">{title}</a>' if link else title
        source = html.escape(ranking.get("source_name") or "")
        rank = ranking.get("rank")
        prefix = f"#{rank} " if rank is not None else ""
        items.append(f"<li>{prefix}{label}{f' ({source})' if source else ''}</li>")
    subject = f"Dispatch rankings received: {len(rows)} articles"
    body = (
        f"<p>Batch <code>{html.escape(batch_id)}</code></p>"
        f"<ul>{''.join(items)}</ul>"
    )
    return subject, body
