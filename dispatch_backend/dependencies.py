"""
Dependency wiring for the FastAPI app.
"""

from __future__ import annotations

from dispatch_backend.config import get_settings
from dispatch_backend.db import DbClient, InMemoryDbClient, SqlDbClient
from dispatch_backend.notifications import (
    EmailClient,
    GraphEmailClient,
    HttpWebhookForwarder,
    InMemoryEmailClient,
    InMemoryWebhookForwarder,
    WebhookForwarder,
)
from dispatch_backend.queue import InMemoryJobQueue, JobQueue, RedisJobQueue

_db_client: DbClient | None = None
_queue_client: JobQueue | None = None
_email_client: EmailClient | None = None
_webhook_forwarder: WebhookForwarder | None = None


def get_db_client() -> DbClient:
    """
    Return a singleton DB client so in-memory state persists across requests.
    """
    global _db_client
    if _db_client:
        return _db_client

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.database_url:
        _db_client = InMemoryDbClient()
    else:
        _db_client = SqlDbClient(settings.database_url)
    return _db_client


def get_queue_client() -> JobQueue:
    """
    Return a singleton queue client for dispatching notification jobs.
    """
    global _queue_client
    if _queue_client:
        return _queue_client

    settings = get_settings()
    if settings.redis_url and not settings.use_in_memory_backends:
        _queue_client = RedisJobQueue(
            url=settings.redis_url,
            queue_key=settings.redis_queue_key,
        )
    else:
        _queue_client = InMemoryJobQueue()
    return _queue_client


def get_email_client() -> EmailClient:
    global _email_client
    if _email_client:
        return _email_client

    settings = get_settings()
    configured = all(
        [
            settings.azure_tenant_id,
            settings.azure_client_id,
            settings.azure_client_secret,
            settings.email_sender,
        ]
    )
    if settings.use_in_memory_backends or not configured:
        _email_client = InMemoryEmailClient()
    else:
        _email_client = GraphEmailClient(
            tenant_id=settings.azure_tenant_id,
            client_id=settings.azure_client_id,
            client_secret=settings.azure_client_secret,
            sender=settings.email_sender,
            graph_api_url=settings.graph_api_url,
        )
    return _email_client


def get_webhook_forwarder() -> WebhookForwarder:
    global _webhook_forwarder
    if _webhook_forwarder:
        return _webhook_forwarder

    settings = get_settings()
    if settings.use_in_memory_backends:
        _webhook_forwarder = InMemoryWebhookForwarder()
    else:
        _webhook_forwarder = HttpWebhookForwarder(
            timeout=settings.webhook_timeout_seconds
        )
    return _webhook_forwarder
