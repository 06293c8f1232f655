"""Broadcast dispatcher - fan one SMS out to groups and contacts."""

from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Iterable

from sqlalchemy import func, select, update

from database.db import db
from database.models import Broadcast, BroadcastRecipient, Contact, ContactGroupMember
from orchestrator.services.gateway import MessageGateway
from orchestrator.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)

OPEN_STATUSES = ("pending", "scheduled", "processing")


@dataclass(frozen=True)
class BroadcastCreated:
    broadcast_id: int
    recipient_count: int
    status: str


class BroadcastDispatcher:
    """
    Creates broadcasts and sends them one at a time.

    Recipients are sent in the order they were persisted. A global quota
    denial waits and retries the same recipient; a per-phone denial marks
    that recipient `rate_limited` and moves on.
    """

    def __init__(
        self,
        gateway: MessageGateway,
        *,
        max_recipients: int = 1000,
        send_interval_seconds: float = 0.2,
        global_backoff_seconds: float = 60.0,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.gateway = gateway
        self.max_recipients = max_recipients
        self.send_interval_seconds = send_interval_seconds
        self.global_backoff_seconds = global_backoff_seconds
        self.clock = clock
        self.sleep = sleep
        self._queue: deque[int] = deque()
        self._worker: asyncio.Task | None = None
        self._idle = asyncio.Event()
        self._idle.set()

    async def create_broadcast(
        self,
        name: str,
        content: str,
        group_ids: Iterable[int] = (),
        contact_ids: Iterable[int] = (),
        scheduled_at: datetime | None = None,
        created_by: str = "system",
    ) -> BroadcastCreated:
        """
        Resolve the audience, persist the broadcast and queue or schedule it.

        Raises:
            ValueError: empty name/content, no recipients, or more than
                `max_recipients` recipients (nothing is written)
        """
        if not (name or "").strip():
            raise ValueError("broadcast name is empty")
        if not (content or "").strip():
            raise ValueError("broadcast content is empty")

        group_ids = list(dict.fromkeys(int(g) for g in group_ids))
        contact_ids = list(dict.fromkeys(int(c) for c in contact_ids))
        recipients = await self._resolve_recipients(group_ids, contact_ids)

        if not recipients:
            raise ValueError("No valid recipients found")
        if len(recipients) > self.max_recipients:
            raise ValueError(f"Too many recipients: {len(recipients)} (max {self.max_recipients})")

        now = self.clock()
        status = "scheduled" if scheduled_at is not None and scheduled_at > now else "pending"
        async with db.session() as session:
            broadcast = Broadcast(
                name=name.strip(),
                content=content,
                target_groups=json.dumps(group_ids),
                target_contacts=json.dumps(contact_ids),
                status=status,
                recipient_count=len(recipients),
                scheduled_at=scheduled_at,
                created_by=created_by,
                created_at=now,
            )
            session.add(broadcast)
            await session.flush()
            broadcast_id = int(broadcast.id)
            for phone, (contact_id, group_id) in recipients.items():
                session.add(
                    BroadcastRecipient(
                        broadcast_id=broadcast_id,
                        contact_id=contact_id,
                        group_id=group_id,
                        phone=phone,
                        status="pending",
                    )
                )

        logger.info(f"Created broadcast {broadcast_id} ({status}) for {len(recipients)} recipients")
        if status == "pending":
            self._enqueue(broadcast_id)
        return BroadcastCreated(broadcast_id=broadcast_id, recipient_count=len(recipients), status=status)

    async def _resolve_recipients(self, group_ids: list[int], contact_ids: list[int]) -> dict[str, tuple[int, int | None]]:
        """phone -> (contact_id, group_id), groups first; a direct contact clears the group."""
        recipients: dict[str, tuple[int, int | None]] = {}
        async with db.session() as session:
            if group_ids:
                result = await session.execute(
                    select(Contact.id, Contact.phone, ContactGroupMember.group_id)
                    .join(ContactGroupMember, ContactGroupMember.contact_id == Contact.id)
                    .where(ContactGroupMember.group_id.in_(group_ids), Contact.is_active.is_(True))
                    .order_by(ContactGroupMember.group_id, ContactGroupMember.id)
                )
                for contact_id, phone, group_id in result.all():
                    recipients.setdefault(phone, (contact_id, group_id))
            if contact_ids:
                result = await session.execute(
                    select(Contact.id, Contact.phone).where(Contact.id.in_(contact_ids)).order_by(Contact.id)
                )
                for contact_id, phone in result.all():
                    recipients[phone] = (contact_id, None)
        return recipients

    # ---- queue ----

    def _enqueue(self, broadcast_id: int) -> None:
        if broadcast_id in self._queue:
            return
        self._queue.append(broadcast_id)
        self._idle.clear()
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._drain())

    async def _drain(self) -> None:
        try:
            while self._queue:
                broadcast_id = self._queue.popleft()
                try:
                    await self._dispatch(broadcast_id)
                except Exception as e:
                    logger.error(f"Broadcast {broadcast_id} failed: {e}", exc_info=True)
                    await self._mark_failed(broadcast_id, str(e))
        finally:
            self._idle.set()

    async def wait_idle(self) -> None:
        """Wait until every queued broadcast has been processed."""
        await self._idle.wait()

    async def stop(self) -> None:
        self._queue.clear()
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass

    async def _mark_failed(self, broadcast_id: int, error: str) -> None:
        try:
            async with db.session() as session:
                broadcast = await session.get(Broadcast, broadcast_id)
                if broadcast and broadcast.status in OPEN_STATUSES:
                    broadcast.status = "failed"
                    broadcast.error_message = error[:2000]
                    broadcast.completed_at = self.clock()
        except Exception as e:
            logger.error(f"Could not mark broadcast {broadcast_id} as failed: {e}")

    async def _is_cancelled(self, broadcast_id: int) -> bool:
        async with db.session() as session:
            result = await session.execute(select(Broadcast.status).where(Broadcast.id == broadcast_id))
            return result.scalar_one_or_none() == "cancelled"

    async def _cancel_remaining(self, broadcast_id: int) -> None:
        async with db.session() as session:
            await session.execute(
                update(BroadcastRecipient)
                .where(BroadcastRecipient.broadcast_id == broadcast_id, BroadcastRecipient.status == "pending")
                .values(status="cancelled")
            )
        logger.info(f"Broadcast {broadcast_id} cancelled, remaining recipients skipped")

    async def _dispatch(self, broadcast_id: int) -> None:
        async with db.session() as session:
            broadcast = await session.get(Broadcast, broadcast_id)
            if broadcast is None or broadcast.status not in ("pending", "processing"):
                return
            broadcast.status = "processing"
            broadcast.started_at = broadcast.started_at or self.clock()
            content = broadcast.content
            result = await session.execute(
                select(BroadcastRecipient.id, BroadcastRecipient.phone, BroadcastRecipient.contact_id)
                .where(BroadcastRecipient.broadcast_id == broadcast_id, BroadcastRecipient.status == "pending")
                .order_by(BroadcastRecipient.id)
            )
            pending = list(result.all())

        logger.info(f"Dispatching broadcast {broadcast_id} to {len(pending)} recipients")
        for recipient_id, phone, contact_id in pending:
            if await self._is_cancelled(broadcast_id):
                await self._cancel_remaining(broadcast_id)
                return

            while True:
                sent = await self.gateway.send(
                    phone, content, "broadcast", {"broadcast_id": broadcast_id, "contact_id": contact_id}
                )
                if not sent.globally_limited:
                    break
                logger.warning(
                    f"Global send quota reached ({sent.decision.window}); "
                    f"broadcast {broadcast_id} waits {self.global_backoff_seconds}s"
                )
                await self.sleep(self.global_backoff_seconds)
                if await self._is_cancelled(broadcast_id):
                    await self._cancel_remaining(broadcast_id)
                    return

            values: dict = {"status": sent.status, "message_id": sent.message_id}
            if sent.ok:
                values["sent_at"] = self.clock()
            elif sent.status == "rate_limited":
                values["error_message"] = f"{sent.decision.window} limit reached ({sent.decision.current}/{sent.decision.limit})"
            else:
                values["error_message"] = (sent.error or "send failed")[:2000]
            async with db.session() as session:
                await session.execute(
                    update(BroadcastRecipient).where(BroadcastRecipient.id == recipient_id).values(**values)
                )

            await self.sleep(self.send_interval_seconds)

        await self._complete(broadcast_id)

    async def _complete(self, broadcast_id: int) -> None:
        counts = await self._recipient_counts(broadcast_id)
        async with db.session() as session:
            broadcast = await session.get(Broadcast, broadcast_id)
            if broadcast is None or broadcast.status != "processing":
                return
            broadcast.sent_count = counts.get("sent", 0)
            broadcast.failed_count = counts.get("failed", 0) + counts.get("rate_limited", 0)
            broadcast.status = "completed"
            broadcast.completed_at = self.clock()
        logger.info(
            f"Broadcast {broadcast_id} completed: {counts.get('sent', 0)} sent, "
            f"{counts.get('failed', 0)} failed, {counts.get('rate_limited', 0)} rate limited"
        )

    async def _recipient_counts(self, broadcast_id: int) -> dict[str, int]:
        async with db.session() as session:
            result = await session.execute(
                select(BroadcastRecipient.status, func.count(BroadcastRecipient.id))
                .where(BroadcastRecipient.broadcast_id == broadcast_id)
                .group_by(BroadcastRecipient.status)
            )
            return {status: int(count) for status, count in result.all()}

    # ---- operations ----

    async def promote_scheduled(self) -> int:
        """Queue scheduled broadcasts whose time has come."""
        now = self.clock()
        async with db.session() as session:
            result = await session.execute(
                select(Broadcast)
                .where(Broadcast.status == "scheduled", Broadcast.scheduled_at <= now)
                .order_by(Broadcast.scheduled_at, Broadcast.id)
            )
            due = list(result.scalars().all())
            for broadcast in due:
                broadcast.status = "pending"
        for broadcast in due:
            logger.info(f"Scheduled broadcast {broadcast.id} is due")
            self._enqueue(int(broadcast.id))
        return len(due)

    async def resume_interrupted(self) -> int:
        """Re-queue broadcasts a previous process left pending or half-sent."""
        async with db.session() as session:
            result = await session.execute(
                select(Broadcast.id).where(Broadcast.status.in_(("pending", "processing"))).order_by(Broadcast.id)
            )
            ids = list(result.scalars().all())
        for broadcast_id in ids:
            self._enqueue(int(broadcast_id))
        return len(ids)

    async def cancel_broadcast(self, broadcast_id: int) -> bool:
        """Cancel a broadcast that has not finished. A running one stops before its next recipient."""
        async with db.session() as session:
            broadcast = await session.get(Broadcast, broadcast_id)
            if broadcast is None or broadcast.status not in OPEN_STATUSES:
                return False
            was_running = broadcast.status == "processing"
            broadcast.status = "cancelled"
            broadcast.completed_at = self.clock()

        if broadcast_id in self._queue:
            self._queue.remove(broadcast_id)
        if not was_running:
            await self._cancel_remaining(broadcast_id)
        logger.info(f"Broadcast {broadcast_id} cancelled")
        return True

    async def get_broadcast_stats(self, broadcast_id: int) -> dict:
        async with db.session() as session:
            broadcast = await session.get(Broadcast, broadcast_id)
        if broadcast is None:
            raise ValueError(f"Broadcast {broadcast_id} not found")
        counts = await self._recipient_counts(broadcast_id)
        return {
            "broadcast_id": broadcast_id,
            "name": broadcast.name,
            "status": broadcast.status,
            "recipient_count": broadcast.recipient_count,
            "pending": counts.get("pending", 0),
            "sent": counts.get("sent", 0),
            "failed": counts.get("failed", 0),
            "rate_limited": counts.get("rate_limited", 0),
            "cancelled": counts.get("cancelled", 0),
            "scheduled_at": broadcast.scheduled_at,
            "started_at": broadcast.started_at,
            "completed_at": broadcast.completed_at,
            "error_message": broadcast.error_message,
        }
