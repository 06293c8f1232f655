"""Tests for broadcast creation and dispatch."""
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from database.db import db
from database.models import Broadcast, BroadcastRecipient, Contact


async def _contacts(services, count, prefix="+1555123"):
    return [await services.contact_service.add_contact(f"C{i}", f"{prefix}{i:04d}") for i in range(count)]


async def _recipients(broadcast_id):
    async with db.session() as session:
        result = await session.execute(
            select(BroadcastRecipient).where(BroadcastRecipient.broadcast_id == broadcast_id).order_by(BroadcastRecipient.id)
        )
        return result.scalars().all()


async def _broadcast(broadcast_id):
    async with db.session() as session:
        return await session.get(Broadcast, broadcast_id)


async def test_recipients_deduplicated_by_phone(services, transport):
    a, b, c = await _contacts(services, 3)
    group = await services.contact_service.create_group("Members")
    await services.contact_service.add_to_group(group.id, [a.id, b.id])

    created = await services.broadcast_dispatcher.create_broadcast(
        "News", "Big news", group_ids=[group.id], contact_ids=[b.id, c.id]
    )
    await services.broadcast_dispatcher.wait_idle()

    assert created.recipient_count == 3
    assert created.status == "pending"
    recipients = {r.phone: r for r in await _recipients(created.broadcast_id)}
    assert set(recipients) == {a.phone, b.phone, c.phone}
    assert recipients[a.phone].group_id == group.id
    assert recipients[b.phone].group_id is None
    assert sorted(phone for phone, _ in transport.sent) == sorted([a.phone, b.phone, c.phone])

    broadcast = await _broadcast(created.broadcast_id)
    assert broadcast.status == "completed"
    assert broadcast.sent_count == 3
    assert broadcast.failed_count == 0


async def test_oversized_audience_rejected_before_any_write(services):
    async with db.session() as session:
        session.add_all(Contact(name=f"C{i}", phone=f"+1555{i:07d}") for i in range(1001))
        await session.flush()
        ids = list((await session.execute(select(Contact.id))).scalars().all())

    with pytest.raises(ValueError, match="Too many recipients"):
        await services.broadcast_dispatcher.create_broadcast("Spam", "Hello all", contact_ids=ids)

    async with db.session() as session:
        assert (await session.execute(select(func.count(Broadcast.id)))).scalar() == 0
        assert (await session.execute(select(func.count(BroadcastRecipient.id)))).scalar() == 0


async def test_empty_audience_rejected(services):
    group = await services.contact_service.create_group("Empty")
    with pytest.raises(ValueError, match="No valid recipients"):
        await services.broadcast_dispatcher.create_broadcast("Nothing", "Hello", group_ids=[group.id])


async def test_phone_limit_marks_recipient_rate_limited(services, transport):
    a, b = await _contacts(services, 2)
    await services.rate_limiter.update_config(rate_limit_per_phone_per_minute=1)
    await services.gateway.send(a.phone, "earlier message")

    created = await services.broadcast_dispatcher.create_broadcast("Promo", "Sale", contact_ids=[a.id, b.id])
    await services.broadcast_dispatcher.wait_idle()

    statuses = {r.phone: r.status for r in await _recipients(created.broadcast_id)}
    assert statuses == {a.phone: "rate_limited", b.phone: "sent"}
    broadcast = await _broadcast(created.broadcast_id)
    assert broadcast.sent_count == 1
    assert broadcast.failed_count == 1
    assert transport.to(a.phone) == ["earlier message"]


async def test_global_limit_waits_and_retries_same_recipient(services, transport, clock):
    (a,) = await _contacts(services, 1)
    await services.rate_limiter.update_config(global_rate_limit_per_minute=2)
    await services.rate_limiter.record_send("+15559990001")
    await services.rate_limiter.record_send("+15559990002")
    waits = []

    async def sleep(seconds):
        waits.append(seconds)
        clock.advance(seconds)

    services.broadcast_dispatcher.sleep = sleep
    created = await services.broadcast_dispatcher.create_broadcast("Later", "Hello", contact_ids=[a.id])
    await services.broadcast_dispatcher.wait_idle()

    assert waits[0] == 60.0
    assert transport.to(a.phone) == ["Hello"]
    assert (await _recipients(created.broadcast_id))[0].status == "sent"


async def test_transport_failure_marks_recipient_failed(services, transport):
    a, b = await _contacts(services, 2)
    transport.fail_for.add(a.phone)

    created = await services.broadcast_dispatcher.create_broadcast("Promo", "Sale", contact_ids=[a.id, b.id])
    await services.broadcast_dispatcher.wait_idle()

    recipients = {r.phone: r for r in await _recipients(created.broadcast_id)}
    assert recipients[a.phone].status == "failed"
    assert "carrier rejected" in recipients[a.phone].error_message
    assert recipients[b.phone].status == "sent"
    assert (await _broadcast(created.broadcast_id)).failed_count == 1


async def test_scheduled_broadcast_promoted_when_due(services, transport, clock):
    (a,) = await _contacts(services, 1)
    dispatcher = services.broadcast_dispatcher

    created = await dispatcher.create_broadcast(
        "Reminder", "Tomorrow!", contact_ids=[a.id], scheduled_at=clock.now + timedelta(hours=1)
    )
    assert created.status == "scheduled"
    assert await dispatcher.promote_scheduled() == 0

    clock.advance(3601)
    assert await dispatcher.promote_scheduled() == 1
    await dispatcher.wait_idle()

    assert transport.to(a.phone) == ["Tomorrow!"]
    assert (await _broadcast(created.broadcast_id)).status == "completed"


async def test_cancel_stops_running_broadcast(services, transport):
    contacts = await _contacts(services, 4)
    dispatcher = services.broadcast_dispatcher
    running = {}

    async def sleep(seconds):
        if "id" in running and not running.get("cancelled"):
            running["cancelled"] = await dispatcher.cancel_broadcast(running["id"])

    dispatcher.sleep = sleep
    created = await dispatcher.create_broadcast("Oops", "Wrong text", contact_ids=[c.id for c in contacts])
    running["id"] = created.broadcast_id
    await dispatcher.wait_idle()

    assert running["cancelled"] is True
    assert len(transport.sent) == 1
    statuses = [r.status for r in await _recipients(created.broadcast_id)]
    assert statuses == ["sent", "cancelled", "cancelled", "cancelled"]
    assert (await _broadcast(created.broadcast_id)).status == "cancelled"
    assert await dispatcher.cancel_broadcast(created.broadcast_id) is False


async def test_cancel_scheduled_broadcast(services, clock):
    (a,) = await _contacts(services, 1)
    created = await services.broadcast_dispatcher.create_broadcast(
        "Later", "Hi", contact_ids=[a.id], scheduled_at=clock.now + timedelta(days=1)
    )

    assert await services.broadcast_dispatcher.cancel_broadcast(created.broadcast_id)

    stats = await services.broadcast_dispatcher.get_broadcast_stats(created.broadcast_id)
    assert stats["status"] == "cancelled"
    assert stats["cancelled"] == 1
    assert stats["pending"] == 0


async def test_interrupted_broadcast_resumes_unsent_recipients(services, transport):
    a, b = await _contacts(services, 2)
    dispatcher = services.broadcast_dispatcher
    created = await dispatcher.create_broadcast("Restart", "Still coming", contact_ids=[a.id, b.id])
    await dispatcher.stop()
    async with db.session() as session:
        broadcast = await session.get(Broadcast, created.broadcast_id)
        broadcast.status = "processing"
        first = (await session.execute(
            select(BroadcastRecipient).where(BroadcastRecipient.phone == a.phone)
        )).scalar_one()
        first.status = "sent"

    assert await dispatcher.resume_interrupted() == 1
    await dispatcher.wait_idle()

    assert transport.sent == [(b.phone, "Still coming")]
    assert (await _broadcast(created.broadcast_id)).status == "completed"


async def test_global_limit_waits_even_when_phone_limit_also_reached(services, transport, clock):
    (a,) = await _contacts(services, 1)
    await services.rate_limiter.update_config(rate_limit_per_phone_per_minute=1, global_rate_limit_per_minute=1)
    await services.gateway.send(a.phone, "earlier")
    waits = []

    async def sleep(seconds):
        waits.append(seconds)
        clock.advance(seconds)

    services.broadcast_dispatcher.sleep = sleep
    created = await services.broadcast_dispatcher.create_broadcast("Both", "After the wait", contact_ids=[a.id])
    await services.broadcast_dispatcher.wait_idle()

    assert waits[0] == 60.0
    assert transport.to(a.phone) == ["earlier", "After the wait"]
    assert (await _recipients(created.broadcast_id))[0].status == "sent"
