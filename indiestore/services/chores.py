"""Periodic maintenance: token and scope sweeps, and ticket token hand-off.

Each chore can be run on demand or scheduled on its own asyncio loop. The
sweeps are throttled through the almanac, so running them more often than
configured is harmless.
"""
from __future__ import annotations

import asyncio
import logging
import math
from typing import Awaitable, Callable

from indiestore.core.config import Settings, get_settings
from indiestore.domain.records import CleanupResult
from indiestore.persistence.db import Database
from indiestore.persistence.repos.scopes import scope_cleanup
from indiestore.persistence.repos.tickets import ticket_token_get_unpublished, ticket_token_published
from indiestore.persistence.repos.tokens import token_cleanup
from indiestore.services.ticket_queue import TicketPublisher, TicketTokenPayload


logger = logging.getLogger(__name__)


class Chores:
    def __init__(
        self,
        db: Database,
        publisher: TicketPublisher | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.db = db
        self.publisher = publisher
        self.settings = settings or get_settings()
        self._tasks: dict[str, asyncio.Task] = {}
        self._stopping = asyncio.Event()

    @property
    def code_lifespan_seconds(self) -> int:
        return math.ceil(self.settings.manager_code_validity_timeout_ms / 1000)

    async def clean_tokens(self, at_least_ms_since_last: int | None = None) -> CleanupResult | None:
        # Remove tokens that are expired or otherwise unusable.
        if at_least_ms_since_last is None:
            at_least_ms_since_last = self.settings.chores_token_cleanup_ms
        async with self.db.context() as ctx:
            result = await token_cleanup(ctx, self.code_lifespan_seconds, at_least_ms_since_last)
        if result:
            logger.info("chore_clean_tokens_finished removed=%s", result.removed)
        return result

    async def clean_scopes(self, at_least_ms_since_last: int | None = None) -> CleanupResult | None:
        # Remove client-supplied scopes no longer referenced by profiles or tokens.
        if at_least_ms_since_last is None:
            at_least_ms_since_last = self.settings.chores_scope_cleanup_ms
        async with self.db.context() as ctx:
            result = await scope_cleanup(ctx, at_least_ms_since_last)
        if result:
            logger.info("chore_clean_scopes_finished removed=%s", result.removed)
        return result

    async def publish_tickets(self) -> int:
        # Hand every unpublished ticket token to the publisher; failures stay unpublished for the next run.
        if self.publisher is None:
            logger.debug("chore_publish_tickets_skipped reason=no_publisher")
            return 0
        queue_name = self.settings.ticket_redeemed_queue_name
        published = 0
        marked: set[tuple] = set()
        # The enqueue runs outside any transaction; each mark commits on its own.
        async with self.db.context() as ctx:
            records = await ticket_token_get_unpublished(ctx)
        for record in records:
            key = tuple(record.redeemed_data().values())
            if key in marked:
                # Identical redemption rows are marked together by the first update.
                continue
            try:
                job_id = await self.publisher.publish(TicketTokenPayload.from_record(record))
            except Exception:  # noqa: BLE001 - one failed publish must not block the rest
                logger.exception(
                    "chore_publish_ticket_failed queue=%s ticket_id=%s",
                    queue_name,
                    record.ticket_id,
                )
                continue
            async with self.db.context() as ctx:
                await ticket_token_published(ctx, **record.redeemed_data())
            marked.add(key)
            published += 1
            logger.info(
                "chore_ticket_published queue=%s ticket_id=%s job_id=%s subject=%s resource=%s",
                queue_name,
                record.ticket_id,
                job_id,
                record.subject,
                record.resource,
            )
        return published

    def _schedule(self) -> dict[str, tuple[Callable[[], Awaitable[object]], int]]:
        settings = self.settings
        return {
            "clean_tokens": (self.clean_tokens, settings.chores_token_cleanup_ms),
            "clean_scopes": (self.clean_scopes, settings.chores_scope_cleanup_ms),
            "publish_tickets": (self.publish_tickets, settings.chores_publish_tickets_ms),
        }

    async def _loop(self, name: str, chore: Callable[[], Awaitable[object]], interval_ms: int) -> None:
        # Run one chore on a fixed cadence until stopped; failures are logged and retried next tick.
        interval_s = interval_ms / 1000
        while not self._stopping.is_set():
            try:
                await chore()
            except Exception:  # noqa: BLE001 - keep the loop alive while surfacing failures in logs
                logger.exception("chore_failed chore=%s", name)
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=interval_s)
            except asyncio.TimeoutError:
                continue

    def start(self) -> None:
        # Launch a task per enabled chore; an interval of 0 leaves the chore manual-only.
        self._stopping.clear()
        for name, (chore, interval_ms) in self._schedule().items():
            if interval_ms <= 0 or name in self._tasks:
                continue
            self._tasks[name] = asyncio.create_task(self._loop(name, chore, interval_ms), name=f"chore:{name}")
            logger.info("chore_started chore=%s interval_ms=%s", name, interval_ms)

    async def stop(self) -> None:
        self._stopping.set()
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("chores_stopped count=%s", len(tasks))

    async def run_forever(self) -> None:
        self.start()
        try:
            await self._stopping.wait()
        finally:
            await self.stop()
