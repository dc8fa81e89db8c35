"""
Queue abstraction for notification job dispatching.

Queued values are notification job ids; the job record itself lives in the
store. Jobs that exhaust ``notification_max_attempts`` are parked on a
dead-letter list so operators can inspect or replay them.

Supports an in-memory fallback for tests/local runs and a Redis-backed
implementation for production.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, Protocol

import redis
from redis import exceptions as redis_exceptions

logger = logging.getLogger(__name__)

DEAD_LETTER_SUFFIX = ":dead"


class JobQueue(Protocol):
    """Hands notification job ids to workers."""

    def enqueue(self, job_id: str) -> None:
        ...

    def dequeue(self, *, block: bool = True, timeout: int | None = None) -> Optional[str]:
        ...

    def dead_letter(self, job_id: str) -> None:
        ...


@dataclass
class InMemoryJobQueue:
    """FIFO queue for tests and local runs."""

    items: list[str] = field(default_factory=list)
    dead_letters: list[str] = field(default_factory=list)

    def enqueue(self, job_id: str) -> None:
        self.items.append(job_id)

    def dequeue(self, *, block: bool = True, timeout: int | None = None) -> Optional[str]:
        if not self.items:
            return None
        return self.items.pop(0)

    def dead_letter(self, job_id: str) -> None:
        self.dead_letters.append(job_id)


@dataclass
class RedisJobQueue:
    """Redis list of notification job ids, with a sibling dead-letter list."""

    url: str
    queue_key: str = "dispatch:notifications"

    def __post_init__(self):
        self.client = redis.Redis.from_url(self.url)

    @property
    def dead_letter_key(self) -> str:
        return self.queue_key + DEAD_LETTER_SUFFIX

    def enqueue(self, job_id: str) -> None:
        self.client.rpush(self.queue_key, job_id)

    def dequeue(self, *, block: bool = True, timeout: int | None = None) -> Optional[str]:
        try:
            if block:
                result = self.client.blpop(self.queue_key, timeout=timeout or 0)
                if result is None:
                    return None
                _, job_id = result
            else:
                job_id = self.client.lpop(self.queue_key)
                if job_id is None:
                    return None
            return job_id.decode("utf-8")
        except redis_exceptions.ConnectionError:
            # Managed Redis drops idle connections; reconnect and report empty.
            logger.warning("Redis connection lost on %s, reconnecting", self.queue_key)
            self.client = redis.Redis.from_url(self.url)
            return None

    def dead_letter(self, job_id: str) -> None:
        logger.warning("[%s] Moving to %s", job_id, self.dead_letter_key)
        self.client.rpush(self.dead_letter_key, job_id)
