from __future__ import annotations

from datetime import datetime, timezone

import pytest

from indiestore.core.config import Settings
from indiestore.domain.records import RedeemedTicketRecord
from indiestore.services.ticket_queue import ArqTicketPublisher, TicketTokenPayload


class _FakeJob:
    def __init__(self, job_id: str) -> None:
        self.job_id = job_id


class _FakeRedis:
    def __init__(self, duplicate: bool = False) -> None:
        self.duplicate = duplicate
        self.enqueued: list[tuple] = []
        self.closed = False

    async def enqueue_job(self, function, *args, _job_id=None, _queue_name=None):
        self.enqueued.append((function, args, _job_id, _queue_name))
        return None if self.duplicate else _FakeJob(_job_id)

    async def zcard(self, key: str) -> int:
        assert key == "arq:queue:tickets.test"
        return 4

    async def aclose(self) -> None:
        self.closed = True


def _record() -> RedeemedTicketRecord:
    return RedeemedTicketRecord(
        ticket_id=7,
        created=datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
        subject="https://alice.example/",
        resource="https://resource.example/",
        iss=None,
        ticket="ticket-7",
        token="token-7",
        published=None,
    )


def _publisher(redis: _FakeRedis) -> ArqTicketPublisher:
    publisher = ArqTicketPublisher(
        Settings(ticket_redeemed_queue_name="tickets.test", ticket_redeemed_job_name="deliver_ticket")
    )

    async def _get_pool():
        return redis

    publisher._get_pool = _get_pool
    publisher._pool = redis
    return publisher


def test_payload_from_record() -> None:
    payload = TicketTokenPayload.from_record(_record())
    assert payload.ticket_id == 7
    assert payload.model_dump(mode="json")["created"] == "2024-05-01T12:00:00Z"


@pytest.mark.asyncio
async def test_publish_enqueues_with_stable_job_id() -> None:
    redis = _FakeRedis()
    publisher = _publisher(redis)
    job_id = await publisher.publish(TicketTokenPayload.from_record(_record()))
    assert job_id == "ticket-redeemed-7"
    function, args, enqueued_job_id, queue_name = redis.enqueued[0]
    assert function == "deliver_ticket"
    assert args[0]["token"] == "token-7"
    assert enqueued_job_id == "ticket-redeemed-7"
    assert queue_name == "tickets.test"


@pytest.mark.asyncio
async def test_publish_reports_existing_job() -> None:
    publisher = _publisher(_FakeRedis(duplicate=True))
    assert await publisher.publish(TicketTokenPayload.from_record(_record())) == "ticket-redeemed-7"


@pytest.mark.asyncio
async def test_queue_depth_and_close() -> None:
    redis = _FakeRedis()
    publisher = _publisher(redis)
    assert await publisher.queue_depth() == 4
    await publisher.close()
    assert redis.closed is True
    # Closing again is a no-op.
    await publisher.close()
