"""Tests for the live agent broker."""
import asyncio

import pytest
from sqlalchemy import select

from database.db import db
from database.models import ChatSession
from orchestrator.services.agent_broker import AgentBroker
from orchestrator.utils import messages

USER = "+15551230001"
AGENT_A = "+15550000001"
AGENT_B = "+15550000002"


@pytest.fixture
async def user(services):
    return await services.contact_service.add_contact("Dana", USER)


async def _sessions():
    async with db.session() as session:
        return (await session.execute(select(ChatSession).order_by(ChatSession.id))).scalars().all()


async def _connect(services, user, agent_phone=AGENT_A):
    await services.agent_broker.request_connection(USER, user.id, "I need help")
    assert await services.agent_broker.process_agent_command(agent_phone, "ACCEPT")


async def test_concurrent_accepts_create_one_session(services, user, transport):
    broker = services.agent_broker
    await broker.add_agent("Ann", AGENT_A)
    await broker.add_agent("Ben", AGENT_B)
    await broker.request_connection(USER, user.id, "I need help")

    await asyncio.gather(
        broker.process_agent_command(AGENT_A, "ACCEPT"),
        broker.process_agent_command(AGENT_B, "accept"),
    )

    sessions = await _sessions()
    assert len(sessions) == 1
    winner = AGENT_A if sessions[0].agent_id == 1 else AGENT_B
    loser = AGENT_B if winner == AGENT_A else AGENT_A
    assert transport.to(loser)[-1] == messages.no_pending_requests_message()
    assert transport.to(winner)[-1] == messages.session_started_agent_message("Dana")
    assert transport.to(USER)[-1] == messages.session_started_user_message()


async def test_messages_are_relayed_both_ways(services, user, transport, clock):
    await services.agent_broker.add_agent("Ann", AGENT_A)
    await _connect(services, user)
    clock.advance(120)

    assert await services.agent_broker.forward_if_active_session(USER, "hi there")
    assert await services.agent_broker.process_agent_command(AGENT_A, "How can I help?")

    assert transport.to(AGENT_A)[-1] == "Dana: hi there"
    assert transport.to(USER)[-1] == "Agent: How can I help?"
    session = (await _sessions())[0]
    assert session.last_activity_at == clock.now


async def test_end_command_closes_session(services, user, transport):
    await services.agent_broker.add_agent("Ann", AGENT_A)
    await _connect(services, user)

    assert await services.agent_broker.process_agent_command(AGENT_A, " end ")

    session = (await _sessions())[0]
    assert session.status == "ended_by_agent"
    assert session.ended_at is not None
    assert transport.to(USER)[-1] == messages.session_ended_user_message()
    assert not await services.agent_broker.forward_if_active_session(USER, "still there?")

    assert await services.agent_broker.process_agent_command(AGENT_A, "END")
    assert transport.to(AGENT_A)[-1] == messages.no_active_chat_message()


async def test_going_offline_ends_sessions(services, user):
    agent = await services.agent_broker.add_agent("Ann", AGENT_A)
    await _connect(services, user)

    assert await services.agent_broker.update_agent_availability(agent.id, False)

    session = (await _sessions())[0]
    assert session.status == "agent_offline"
    assert session.ended_at is not None
    assert not await services.agent_broker.forward_if_active_session(USER, "hello?")


async def test_duplicate_request_and_existing_session(services, user, transport):
    broker = services.agent_broker
    await broker.add_agent("Ann", AGENT_A)

    assert await broker.request_connection(USER, user.id, "help") == "queued"
    assert await broker.request_connection(USER, user.id, "help!!") == "already_pending"
    assert transport.to(USER)[-1] == messages.request_already_pending_message()

    await broker.process_agent_command(AGENT_A, "ACCEPT")
    assert await broker.request_connection(USER, user.id, "help") == "in_session"
    assert transport.to(USER)[-1] == messages.already_in_session_message()


async def test_request_without_agents_expires(services, user, transport, clock):
    broker = services.agent_broker

    assert await broker.request_connection(USER, user.id, "help") == "queued"
    assert transport.to(USER) == [messages.all_agents_busy_message()]

    clock.advance(4 * 60)
    assert (await broker.expire_due())["expired_requests"] == 0

    clock.advance(61)
    assert (await broker.expire_due())["expired_requests"] == 1
    assert not broker.state.has_request(USER)
    assert transport.to(USER)[-1] == messages.request_expired_message()


async def test_idle_session_times_out(services, user, clock):
    await services.agent_broker.add_agent("Ann", AGENT_A)
    await _connect(services, user)

    clock.advance(29 * 60)
    assert (await services.agent_broker.expire_due())["timed_out"] == 0
    clock.advance(2 * 60)
    assert (await services.agent_broker.expire_due())["timed_out"] == 1

    assert (await _sessions())[0].status == "timeout"


async def test_accept_respects_capacity(services, user, transport):
    broker = services.agent_broker
    await broker.add_agent("Ann", AGENT_A, max_concurrent_chats=1)
    await _connect(services, user)
    other = await services.contact_service.add_contact("Eli", "+15551230002")
    await broker.request_connection(other.phone, other.id, "me too")

    await broker.process_agent_command(AGENT_A, "ACCEPT")

    assert transport.to(AGENT_A)[-1] == messages.agent_at_capacity_message(1)
    assert broker.state.has_request(other.phone)


async def test_non_agent_text_is_not_claimed(services, user):
    await services.agent_broker.add_agent("Ann", AGENT_A)

    assert not await services.agent_broker.process_agent_command(USER, "ACCEPT")
    assert not await services.agent_broker.process_agent_command(AGENT_A, "hello, anyone?")


async def test_add_agent_rejects_duplicate_phone(services):
    await services.agent_broker.add_agent("Ann", AGENT_A)
    with pytest.raises(ValueError, match="already exists"):
        await services.agent_broker.add_agent("Ann again", "(555) 000-0001")


async def test_restore_and_sweep_sessions_left_by_previous_process(services, user, transport, clock):
    await services.agent_broker.add_agent("Ann", AGENT_A)
    await _connect(services, user)

    restarted = AgentBroker(services.gateway, clock=clock)
    assert await restarted.restore_active_sessions() == 1
    assert await restarted.forward_if_active_session(USER, "after restart")
    assert transport.to(AGENT_A)[-1] == "Dana: after restart"

    cold = AgentBroker(services.gateway, clock=clock)
    clock.advance(2 * 3600)
    assert await cold.sweep_idle() == 1
    assert (await _sessions())[0].status == "abandoned"


async def test_stats(services, user):
    agent = await services.agent_broker.add_agent("Ann", AGENT_A)
    await _connect(services, user)
    await services.agent_broker.process_agent_command(AGENT_A, "END")

    agent_stats = await services.agent_broker.get_agent_stats(agent.id)
    assert agent_stats["total_sessions"] == 1
    assert agent_stats["completed_sessions"] == 1

    system = await services.agent_broker.get_system_chat_stats()
    assert system["sessions"]["total"] == 1
    assert system["agents"] == {"total": 1, "available": 1, "active": 1}
    assert system["active_sessions"] == 0
