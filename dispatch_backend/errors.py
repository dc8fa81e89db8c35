"""
Error types shared by routes, database clients and the notification worker.
"""

from __future__ import annotations


class ApiError(Exception):
    """Client-facing error rendered as ``{"code", "message", "request_id"}``."""

    def __init__(self, code: str, message: str, status_code: int = 400):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code


class StoreUnavailableError(Exception):
    """The backing store failed; distinct from a query that matched nothing."""


class FetchCancelledError(Exception):
    """A balanced fetch was abandoned because its caller gave up."""


class NotificationError(Exception):
    """An outbound email or webhook delivery failed."""
