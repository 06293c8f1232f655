"""Tests for program execution against a temporary database."""
import asyncio
import gc
import json

import pytest
from sqlalchemy import func, select, update

from database.db import db
from database.models import ProgramState
from orchestrator.services.program_schema import ProgramDefinitionError
from orchestrator.utils import messages

PHONE = "+15551230001"
AGENT_PHONE = "+15550000099"


def _steps(*steps):
    return {"steps": list(steps)}


async def _state(program_id, contact_id):
    async with db.session() as session:
        result = await session.execute(
            select(ProgramState).where(ProgramState.program_id == program_id, ProgramState.contact_id == contact_id)
        )
        return result.scalar_one_or_none()


@pytest.fixture
async def contact(services):
    return await services.contact_service.add_contact("Dana", PHONE)


async def test_state_created_once_under_concurrent_messages(services, contact, transport):
    program = await services.program_engine.create_program("Welcome", _steps(
        {"id": "hello", "type": "message", "content": "Welcome to {{system_name}}", "next_step_id": "ask"},
        {"id": "ask", "type": "input", "variable_name": "name", "next_step_id": "bye"},
        {"id": "bye", "type": "message", "content": "Nice to meet you {{name}}"},
    ), is_base=True)

    await asyncio.gather(
        services.program_engine.process_message(contact, "hi"),
        services.program_engine.process_message(contact, "Dana"),
    )

    async with db.session() as session:
        count = (await session.execute(
            select(func.count(ProgramState.id)).where(ProgramState.program_id == program.id)
        )).scalar()
    assert count == 1
    assert transport.to(PHONE).count("Welcome to SMS System") == 1


async def test_condition_takes_first_matching_branch(services, contact, transport):
    await services.program_engine.create_program("Router", _steps(
        {"id": "route", "type": "condition", "default_next_step_id": "other", "conditions": [
            {"type": "contains", "value": "help", "next_step_id": "one"},
            {"type": "contains", "value": "please", "next_step_id": "two"},
        ]},
        {"id": "one", "type": "message", "content": "1"},
        {"id": "two", "type": "message", "content": "2"},
        {"id": "other", "type": "message", "content": "default"},
    ), is_base=True)

    await services.program_engine.process_message(contact, "I need help please")

    assert transport.to(PHONE) == ["1"]


async def test_numeric_input_retries_until_valid(services, contact, transport):
    program = await services.program_engine.create_program("Age", _steps(
        {"id": "ask", "type": "message", "content": "How old are you?", "next_step_id": "age"},
        {"id": "age", "type": "input", "validators": [{"type": "numeric"}],
         "error_message": "Numbers only please", "next_step_id": "done"},
        {"id": "done", "type": "message", "content": "Thanks, {{user_input}}"},
    ), is_base=True)
    engine = services.program_engine

    await engine.process_message(contact, "start")
    await engine.process_message(contact, "abc")
    state = await _state(program.id, contact.id)
    assert state.current_step_id == "age"
    assert json.loads(state.variables) == {}

    await engine.process_message(contact, "42")

    assert transport.to(PHONE) == ["How old are you?", "Numbers only please", "Thanks, 42"]
    state = await _state(program.id, contact.id)
    assert json.loads(state.variables) == {"user_input": "42"}
    assert state.completed_at is not None


async def test_completed_program_does_not_rerun(services, contact, transport):
    await services.program_engine.create_program("Once", _steps(
        {"id": "only", "type": "message", "content": "Hello once"},
    ), is_base=True)

    await services.program_engine.process_message(contact, "hi")
    await services.program_engine.process_message(contact, "hi again")

    assert transport.to(PHONE) == ["Hello once"]


async def test_delay_tick_is_idempotent(services, contact, transport, clock):
    program = await services.program_engine.create_program("Drip", _steps(
        {"id": "wait", "type": "delay", "seconds": 60, "next_step_id": "later"},
        {"id": "later", "type": "message", "content": "later"},
    ), is_base=True)
    engine = services.program_engine

    await engine.process_message(contact, "hi")
    state = await _state(program.id, contact.id)
    assert state.next_action_at is not None
    assert transport.to(PHONE) == []

    clock.advance(30)
    assert await engine.run_due_delays() == 0

    clock.advance(31)
    await asyncio.gather(engine.run_due_delays(), engine.run_due_delays())
    assert await engine.run_due_delays() == 0

    assert transport.to(PHONE) == ["later"]
    state = await _state(program.id, contact.id)
    assert state.next_action_at is None
    assert state.completed_at is not None


async def test_paused_program_is_skipped(services, contact, transport):
    program = await services.program_engine.create_program("Greeter", _steps(
        {"id": "hello", "type": "message", "content": "Hello", "next_step_id": "ask"},
        {"id": "ask", "type": "input"},
    ), is_base=True)
    engine = services.program_engine

    await engine.process_message(contact, "hi")
    assert await engine.pause_program(program.id, contact.id) == 1
    await engine.process_message(contact, "answer")
    state = await _state(program.id, contact.id)
    assert state.is_paused and state.paused_reason == "manual"
    assert state.current_step_id == "ask"

    assert await engine.resume_program(program.id) == 1
    await engine.process_message(contact, "answer")
    state = await _state(program.id, contact.id)
    assert state.completed_at is not None


async def test_agent_connect_pauses_until_session_ends(services, contact, transport):
    await services.agent_broker.add_agent("Ann", AGENT_PHONE)
    program = await services.program_engine.create_program("Handoff", _steps(
        {"id": "hand", "type": "agent_connect", "message": "Customer wants help", "next_step_id": "back"},
        {"id": "back", "type": "message", "content": "Welcome back"},
    ), is_base=True)
    engine = services.program_engine

    await engine.process_message(contact, "hi")

    assert any("Customer wants help" in text for text in transport.to(AGENT_PHONE))
    assert transport.to(PHONE) == [messages.request_sent_message()]
    state = await _state(program.id, contact.id)
    assert state.is_paused and state.paused_reason == "agent"
    assert state.current_step_id == "back"

    assert await services.agent_broker.process_agent_command(AGENT_PHONE, "ACCEPT")
    assert await services.agent_broker.process_agent_command(AGENT_PHONE, "END")
    state = await _state(program.id, contact.id)
    assert not state.is_paused

    await engine.process_message(contact, "hello")
    assert transport.to(PHONE)[-1] == "Welcome back"


async def test_unknown_step_halts_only_that_program(services, contact, transport):
    broken = await services.program_engine.create_program("Broken", _steps(
        {"id": "hello", "type": "message", "content": "broken hello", "next_step_id": "ask"},
        {"id": "ask", "type": "input", "next_step_id": "bye"},
        {"id": "bye", "type": "message", "content": "broken bye"},
    ), is_base=True)
    await services.program_engine.create_program("Healthy", _steps(
        {"id": "hello", "type": "message", "content": "healthy hello"},
    ), is_base=True)

    await services.program_engine.process_message(contact, "first")
    async with db.session() as session:
        await session.execute(
            update(ProgramState).where(ProgramState.program_id == broken.id).values(current_step_id="ghost")
        )

    await services.program_engine.process_message(contact, "second")

    assert "broken bye" not in transport.to(PHONE)
    assert transport.to(PHONE) == ["broken hello", "healthy hello"]


async def test_create_and_update_reject_malformed_programs(services):
    engine = services.program_engine
    with pytest.raises(ProgramDefinitionError):
        await engine.create_program("Bad", _steps({"id": "a", "type": "message", "content": "x", "next_step_id": "b"}))

    program = await engine.create_program("Good", _steps({"id": "a", "type": "message", "content": "x"}))
    with pytest.raises(ProgramDefinitionError):
        await engine.update_program(program.id, program_data={"steps": [{"id": "a", "type": "delay", "seconds": -1}]})


async def test_group_assignment_runs_program(services, contact, transport):
    group = await services.contact_service.create_group("VIP")
    await services.contact_service.add_to_group(group.id, [contact.id])
    program = await services.program_engine.create_program("VIP offer", _steps(
        {"id": "offer", "type": "message", "content": "Hi {{name}}, it's {{current_date}}"},
    ))

    await services.program_engine.process_message(contact, "hi")
    assert transport.to(PHONE) == []

    assert await services.program_engine.assign_program(program.id, group_ids=[group.id]) == 1
    await services.program_engine.process_message(contact, "hi")

    assert transport.to(PHONE) == ["Hi {{name}}, it's 2024-01-15"]


async def test_assign_rejects_inactive_program(services, contact):
    engine = services.program_engine
    program = await engine.create_program("Old", _steps({"id": "a", "type": "message", "content": "x"}),
                                          is_active=False)

    with pytest.raises(ValueError, match="not active"):
        await engine.assign_program(program.id, contact_ids=[contact.id])
    with pytest.raises(ValueError, match="not found"):
        await engine.assign_program(9999, contact_ids=[contact.id])


async def test_reset_and_stats(services, contact):
    engine = services.program_engine
    program = await engine.create_program("Survey", _steps(
        {"id": "q1", "type": "message", "content": "Rate us 1-5", "next_step_id": "a1"},
        {"id": "a1", "type": "input"},
    ))
    await engine.assign_program(program.id, contact_ids=[contact.id])
    await engine.process_message(contact, "hi")

    stats = await engine.get_program_stats(program.id)
    assert stats["assignments"] == 1
    assert stats["total_states"] == 1
    assert stats["running"] == 1
    assert stats["steps"] == {"a1": 1}

    assert await engine.reset_program_state(program.id, contact.id)
    state = await _state(program.id, contact.id)
    assert state.current_step_id == "q1"
    assert state.completed_at is None


async def test_trigger_word_requests_agent(services, contact, transport):
    await services.agent_broker.add_agent("Ann", AGENT_PHONE, trigger_words=["human"])

    handled = await services.program_engine.process_message(contact, "Can I talk to a HUMAN?")

    assert handled is True
    assert services.agent_broker.state.has_request(PHONE)
    assert transport.to(PHONE) == [messages.request_sent_message()]


async def test_assignment_enrolls_contacts_so_pause_applies(services, contact, transport):
    engine = services.program_engine
    program = await engine.create_program("Onboarding", _steps(
        {"id": "hello", "type": "message", "content": "Welcome to the program"},
    ))

    await engine.assign_program(program.id, contact_ids=[contact.id])
    state = await _state(program.id, contact.id)
    assert state.current_step_id == "hello"

    assert await engine.pause_program(program.id) == 1
    await engine.process_message(contact, "hi")

    assert transport.to(PHONE) == []


async def test_group_assignment_fixes_membership_at_assignment_time(services, contact, transport):
    contacts = services.contact_service
    group = await contacts.create_group("Early birds")
    await contacts.add_to_group(group.id, [contact.id])
    program = await services.program_engine.create_program("Perk", _steps(
        {"id": "perk", "type": "message", "content": "Your early bird perk"},
    ))

    await services.program_engine.assign_program(program.id, group_ids=[group.id])
    late = await contacts.add_contact("Late", "+15551230077")
    await contacts.add_to_group(group.id, [late.id])

    await services.program_engine.process_message(contact, "hi")
    await services.program_engine.process_message(late, "hi")

    assert transport.to(PHONE) == ["Your early bird perk"]
    assert transport.to(late.phone) == []
    assert await _state(program.id, late.id) is None


async def test_reassignment_keeps_existing_progress(services, contact):
    engine = services.program_engine
    program = await engine.create_program("Survey", _steps(
        {"id": "q1", "type": "message", "content": "Rate us 1-5", "next_step_id": "a1"},
        {"id": "a1", "type": "input"},
    ))
    await engine.assign_program(program.id, contact_ids=[contact.id])
    await engine.process_message(contact, "hi")

    await engine.assign_program(program.id, contact_ids=[contact.id])

    assert (await _state(program.id, contact.id)).current_step_id == "a1"


async def test_step_locks_are_released_after_passes(services, contact):
    await services.program_engine.create_program("Once", _steps(
        {"id": "only", "type": "message", "content": "Hello once"},
    ), is_base=True)

    await services.program_engine.process_message(contact, "hi")
    gc.collect()

    assert len(services.program_engine._locks) == 0
