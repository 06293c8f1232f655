"""Tests for the inbound handler chain."""
from sqlalchemy import select

from database.db import db
from database.models import Contact, Message

AGENT_PHONE = "+15550000001"


async def test_unknown_sender_is_registered_and_logged(services):
    handled_by = await services.inbound_router.process_incoming_message("555-123-0002", "hello")

    assert handled_by == "ignored"
    async with db.session() as session:
        contact = (await session.execute(select(Contact))).scalar_one()
        message = (await session.execute(select(Message))).scalar_one()
    assert contact.phone == "+15551230002"
    assert contact.name == "+15551230002"
    assert message.direction == "inbound"
    assert message.status == "received"
    assert message.contact_id == contact.id
    assert message.to_phone == services.config.system_phone


async def test_handler_chain_order(services, transport):
    await services.agent_broker.add_agent("Ann", AGENT_PHONE)
    await services.program_engine.create_program(
        "Echo", {"steps": [{"id": "hi", "type": "message", "content": "Program says hi"}]}, is_base=True
    )
    router = services.inbound_router

    assert await router.process_incoming_message("+15551230001", "hi") == "program"
    assert transport.to("+15551230001") == ["Program says hi"]

    contact = await services.contact_service.get_by_phone("+15551230001")
    await services.agent_broker.request_connection(contact.phone, contact.id, "help")
    assert await router.process_incoming_message(AGENT_PHONE, "accept") == "agent"

    assert await router.process_incoming_message("+15551230001", "are you there?") == "chat"
    assert transport.to(AGENT_PHONE)[-1].endswith(": are you there?")

    assert await router.process_incoming_message("+15551230003", "hello") == "program"
    assert await router.process_incoming_message("+15551230003", "hello again") == "ignored"


async def test_handler_failure_is_contained(services, monkeypatch):
    async def broken(contact, text):
        raise RuntimeError("program store offline")

    monkeypatch.setattr(services.program_engine, "process_message", broken)

    assert await services.inbound_router.process_incoming_message("+15551230001", "hi") == "error"
