from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Protocol

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings
from pydantic import BaseModel

from indiestore.core.config import Settings, get_settings
from indiestore.domain.records import RedeemedTicketRecord


logger = logging.getLogger(__name__)


def _queue_key(queue_name: str) -> str:
    # Use arq's queue naming convention for depth checks.
    return f"arq:queue:{queue_name}"


class TicketTokenPayload(BaseModel):
    # Job body handed to whoever delivers redeemed ticket tokens downstream.
    ticket_id: int
    subject: str
    resource: str
    iss: str | None = None
    ticket: str
    token: str
    created: datetime

    @classmethod
    def from_record(cls, record: RedeemedTicketRecord) -> TicketTokenPayload:
        return cls(
            ticket_id=record.ticket_id,
            subject=record.subject,
            resource=record.resource,
            iss=record.iss,
            ticket=record.ticket,
            token=record.token,
            created=record.created,
        )


class TicketPublisher(Protocol):
    async def publish(self, payload: TicketTokenPayload) -> str: ...


class ArqTicketPublisher:
    """Enqueue redeemed ticket tokens as arq jobs on the configured queue."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()
        self._pool: ArqRedis | None = None
        self._pool_loop: asyncio.AbstractEventLoop | None = None
        self._lock = asyncio.Lock()

    async def _get_pool(self) -> ArqRedis:
        # Cache the Redis pool per event loop to avoid reconnecting on every enqueue.
        current_loop = asyncio.get_running_loop()
        if self._pool is not None and self._pool_loop is current_loop:
            return self._pool
        async with self._lock:
            if self._pool is None or self._pool_loop is not current_loop:
                self._pool = await create_pool(
                    RedisSettings.from_dsn(self.settings.redis_url),
                    default_queue_name=self.settings.ticket_redeemed_queue_name,
                )
                self._pool_loop = current_loop
        return self._pool

    async def publish(self, payload: TicketTokenPayload) -> str:
        # Job id derives from the ticket row, so a retried publish does not enqueue twice.
        job_id = f"ticket-redeemed-{payload.ticket_id}"
        redis = await self._get_pool()
        job = await redis.enqueue_job(
            self.settings.ticket_redeemed_job_name,
            payload.model_dump(mode="json"),
            _job_id=job_id,
            _queue_name=self.settings.ticket_redeemed_queue_name,
        )
        # When a job id already exists, arq returns None; report the same id.
        return job.job_id if job else job_id

    async def queue_depth(self) -> int | None:
        # None signals Redis is unavailable.
        try:
            redis = await self._get_pool()
            depth = await redis.zcard(_queue_key(self.settings.ticket_redeemed_queue_name))
            return int(depth)
        except Exception:  # noqa: BLE001 - callers report degraded Redis rather than fail
            logger.warning("ticket_queue_depth_unavailable queue=%s", self.settings.ticket_redeemed_queue_name)
            return None

    async def close(self) -> None:
        if self._pool is None:
            return
        pool, self._pool = self._pool, None
        self._pool_loop = None
        await pool.aclose()
