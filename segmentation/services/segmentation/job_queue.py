"""
Job queue client for handing work to asynchronous executors.

Jobs are JSON envelopes pushed onto a Redis list per queue name:

    queue:{name} <- {"id": ..., "name": ..., "data": {...}, "enqueuedAt": ...}

Consumers (the flow executor) pop from the head, giving FIFO,
at-least-once delivery.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol
from uuid import uuid4

import redis.asyncio as redis
from redis.exceptions import RedisError

from segmentation.exceptions import JobQueueError

logger = logging.getLogger(__name__)


class JobQueue(Protocol):
    async def enqueue(self, queue_name: str, job_name: str, data: Dict[str, Any]) -> str:
        """Durably enqueue one job and return its ID."""
        ...

    async def close(self) -> None:
        ...


class RedisJobQueue:
    """Redis-list backed job queue."""

    KEY_PREFIX = "queue:"

    def __init__(self, redis_url: str, client: Optional[redis.Redis] = None):
        self._redis_url = redis_url
        self._client = client

    def _get_client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._client

    @classmethod
    def key_for(cls, queue_name: str) -> str:
        return f"{cls.KEY_PREFIX}{queue_name}"

    async def enqueue(self, queue_name: str, job_name: str, data: Dict[str, Any]) -> str:
        job_id = str(uuid4())
        envelope = {
            "id": job_id,
            "name": job_name,
            "data": data,
            "enqueuedAt": datetime.now(timezone.utc).isoformat(),
        }
        try:
            await self._get_client().rpush(self.key_for(queue_name), json.dumps(envelope))
        except RedisError as e:
            raise JobQueueError(f"Failed to enqueue {job_name} on {queue_name}: {e}") from e

        logger.debug("Enqueued job %s (%s) on %s", job_id, job_name, queue_name)
        return job_id

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
