"""Program engine - runs scripted message programs per contact."""

from __future__ import annotations

import asyncio
import json
import logging
import re
import weakref
from datetime import datetime, timedelta
from typing import Callable, Iterable

from sqlalchemy import func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError

from database.db import db
from database.models import Agent, Contact, Program, ProgramAssignment, ProgramState
from orchestrator.services.contact_service import ContactService
from orchestrator.services.gateway import MessageGateway
from orchestrator.services.program_schema import (
    AgentConnectStep,
    ConditionStep,
    DelayStep,
    InputStep,
    MessageStep,
    ProgramDefinition,
    parse_program,
)
from orchestrator.utils import messages
from orchestrator.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)

MAX_STEPS_PER_PASS = 50
TEMPLATE_VAR = re.compile(r"\{\{\s*(\w+)\s*\}\}")


class ProgramEngine:
    """
    Per-contact state machine over program step graphs.

    A pass executes steps from the contact's cursor until one of them has to
    wait (delay not due, condition/input without a fresh reply, agent hand-off)
    or the program completes.
    """

    def __init__(
        self,
        gateway: MessageGateway,
        contacts: ContactService,
        *,
        system_name: str = "SMS System",
        trigger_words: Iterable[str] = (),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.gateway = gateway
        self.contacts = contacts
        self.system_name = system_name
        self.trigger_words = [w.lower() for w in trigger_words if w.strip()]
        self.clock = clock
        self.broker = None  # AgentBroker, wired by the container
        # Entries live only while a pass holds or waits on them.
        self._locks: weakref.WeakValueDictionary[tuple[int, int], asyncio.Lock] = weakref.WeakValueDictionary()

    # ---- program management ----

    async def create_program(
        self,
        name: str,
        program_data: str | dict,
        *,
        description: str | None = None,
        is_base: bool = False,
        is_active: bool = True,
    ) -> Program:
        """
        Raises:
            ProgramDefinitionError: malformed `program_data`
            ValueError: empty name
        """
        if not (name or "").strip():
            raise ValueError("Program name is required")
        definition = parse_program(program_data)
        async with db.session() as session:
            program = Program(
                name=name.strip(),
                description=description,
                program_data=definition.to_json(),
                is_base=bool(is_base),
                is_active=bool(is_active),
            )
            session.add(program)
            await session.flush()
        logger.info(f"Created program {program.id} ({program.name}, {len(definition.steps)} steps)")
        return program

    async def update_program(
        self,
        program_id: int,
        *,
        name: str | None = None,
        description: str | None = None,
        program_data: str | dict | None = None,
        is_active: bool | None = None,
        is_base: bool | None = None,
    ) -> Program:
        definition = parse_program(program_data) if program_data is not None else None
        async with db.session() as session:
            program = await session.get(Program, program_id)
            if not program:
                raise ValueError(f"Program {program_id} not found")
            if name is not None:
                if not name.strip():
                    raise ValueError("Program name is required")
                program.name = name.strip()
            if description is not None:
                program.description = description
            if definition is not None:
                program.program_data = definition.to_json()
            if is_active is not None:
                program.is_active = bool(is_active)
            if is_base is not None:
                program.is_base = bool(is_base)
        logger.info(f"Updated program {program_id}")
        return program

    async def assign_program(
        self,
        program_id: int,
        contact_ids: Iterable[int] = (),
        group_ids: Iterable[int] = (),
    ) -> int:
        """
        Assign a program to contacts and/or groups. Re-assigning reactivates.

        Every direct contact and every current member of the groups gets a
        state at the program's first step; contacts that already have one
        keep it. Later group members are not enrolled.

        Raises:
            ValueError: the program is missing or inactive
        """
        contact_ids = list(dict.fromkeys(contact_ids))
        group_ids = list(dict.fromkeys(group_ids))
        enrolled = list(dict.fromkeys(contact_ids + await self.contacts.member_ids(group_ids)))
        assigned = 0
        async with db.session() as session:
            program = await session.get(Program, program_id)
            if not program:
                raise ValueError(f"Program {program_id} not found")
            if not program.is_active:
                raise ValueError(f"Program {program_id} is not active")
            first_step_id = parse_program(program.program_data).first_step_id

            for column, ids in ((ProgramAssignment.contact_id, contact_ids), (ProgramAssignment.group_id, group_ids)):
                if not ids:
                    continue
                result = await session.execute(
                    select(ProgramAssignment).where(ProgramAssignment.program_id == program_id, column.in_(ids))
                )
                existing = {getattr(a, column.key): a for a in result.scalars().all()}
                for target_id in ids:
                    if target_id in existing:
                        existing[target_id].is_active = True
                    else:
                        session.add(ProgramAssignment(program_id=program_id, **{column.key: target_id}))
                    assigned += 1

            if enrolled:
                dialect = sqlite if db.is_sqlite else postgresql
                now = self.clock()
                await session.execute(
                    dialect.insert(ProgramState)
                    .values([
                        {"program_id": program_id, "contact_id": contact_id,
                         "current_step_id": first_step_id, "variables": "{}", "is_paused": False,
                         "started_at": now, "updated_at": now}
                        for contact_id in enrolled
                    ])
                    .on_conflict_do_nothing(index_elements=["program_id", "contact_id"])
                )

        logger.info(
            f"Program {program_id} assigned to {len(contact_ids)} contacts and {len(group_ids)} groups "
            f"({len(enrolled)} contacts enrolled)"
        )
        return assigned

    async def _set_paused(self, program_id: int | None, contact_id: int | None, paused: bool,
                          reason: str | None, only_reason: str | None = None) -> int:
        stmt = update(ProgramState).values(is_paused=paused, paused_reason=reason, updated_at=self.clock())
        if program_id is not None:
            stmt = stmt.where(ProgramState.program_id == program_id)
        if contact_id is not None:
            stmt = stmt.where(ProgramState.contact_id == contact_id)
        if only_reason is not None:
            stmt = stmt.where(ProgramState.is_paused.is_(True), ProgramState.paused_reason == only_reason)
        async with db.session() as session:
            result = await session.execute(stmt)
            return result.rowcount or 0

    async def pause_program(self, program_id: int, contact_id: int | None = None) -> int:
        """Pause one contact's run of a program, or every run when `contact_id` is None."""
        count = await self._set_paused(program_id, contact_id, True, "manual")
        logger.info(f"Paused program {program_id} for {count} state(s)")
        return count

    async def resume_program(self, program_id: int, contact_id: int | None = None) -> int:
        count = await self._set_paused(program_id, contact_id, False, None)
        logger.info(f"Resumed program {program_id} for {count} state(s)")
        return count

    async def resume_after_agent(self, contact_id: int) -> int:
        """Resume programs that paused for an agent hand-off of this contact."""
        return await self._set_paused(None, contact_id, False, None, only_reason="agent")

    async def reset_program_state(self, program_id: int, contact_id: int) -> bool:
        """Move a contact back to the first step with no variables; the next message starts over."""
        async with db.session() as session:
            program = await session.get(Program, program_id)
            if not program:
                return False
            result = await session.execute(
                update(ProgramState)
                .where(ProgramState.program_id == program_id, ProgramState.contact_id == contact_id)
                .values(
                    current_step_id=parse_program(program.program_data).first_step_id,
                    variables="{}",
                    is_paused=False,
                    paused_reason=None,
                    next_action_at=None,
                    completed_at=None,
                    updated_at=self.clock(),
                )
            )
            return bool(result.rowcount)

    async def get_program_stats(self, program_id: int) -> dict:
        async with db.session() as session:
            program = await session.get(Program, program_id)
            if not program:
                raise ValueError(f"Program {program_id} not found")
            result = await session.execute(select(ProgramState).where(ProgramState.program_id == program_id))
            states = result.scalars().all()
            assignments = await session.execute(
                select(func.count(ProgramAssignment.id)).where(
                    ProgramAssignment.program_id == program_id, ProgramAssignment.is_active.is_(True)
                )
            )
            assignment_count = int(assignments.scalar() or 0)

        steps: dict[str, int] = {}
        for state in states:
            if state.completed_at is None and state.current_step_id:
                steps[state.current_step_id] = steps.get(state.current_step_id, 0) + 1

        return {
            "program_id": program_id,
            "name": program.name,
            "is_active": bool(program.is_active),
            "is_base": bool(program.is_base),
            "assignments": assignment_count,
            "total_states": len(states),
            "running": sum(1 for s in states if not s.is_paused and s.completed_at is None),
            "paused": sum(1 for s in states if s.is_paused),
            "completed": sum(1 for s in states if s.completed_at is not None),
            "waiting_delay": sum(1 for s in states if s.next_action_at is not None),
            "steps": steps,
        }

    # ---- execution ----

    async def process_message(self, contact: Contact, text: str) -> bool:
        """
        Feed an inbound reply to the contact's base and assigned programs, then
        check agent trigger words. Returns True when anything acted on it.
        """
        handled = False
        requested_agent = False
        for program in await self._programs_for(contact.id):
            outcome = await self._run_pass(program, contact, reply=text)
            handled = handled or outcome is not None
            requested_agent = requested_agent or outcome == "agent"

        if not requested_agent and await self._check_agent_triggers(contact, text):
            handled = True
        return handled

    async def run_due_delays(self) -> int:
        """Continue every program whose delay has elapsed. Returns how many were resumed."""
        now = self.clock()
        async with db.session() as session:
            result = await session.execute(
                select(ProgramState.id, ProgramState.program_id, ProgramState.contact_id)
                .join(Program, Program.id == ProgramState.program_id)
                .where(
                    ProgramState.next_action_at.is_not(None),
                    ProgramState.next_action_at <= now,
                    ProgramState.is_paused.is_(False),
                    ProgramState.completed_at.is_(None),
                    Program.is_active.is_(True),
                )
                .order_by(ProgramState.next_action_at)
            )
            due = result.all()

        resumed = 0
        for _, program_id, contact_id in due:
            try:
                async with db.session() as session:
                    program = await session.get(Program, program_id)
                    contact = await session.get(Contact, contact_id)
                if not program or not contact:
                    continue
                if await self._run_pass(program, contact, reply=None, from_tick=True) is not None:
                    resumed += 1
            except Exception as e:
                logger.error(f"Delay tick failed for program {program_id} contact {contact_id}: {e}", exc_info=True)
        return resumed

    async def _programs_for(self, contact_id: int) -> list[Program]:
        """Active base programs, then every other active program the contact is enrolled in."""
        async with db.session() as session:
            base = await session.execute(
                select(Program).where(Program.is_base.is_(True), Program.is_active.is_(True)).order_by(Program.id)
            )
            assigned = await session.execute(
                select(Program)
                .join(ProgramState, ProgramState.program_id == Program.id)
                .where(Program.is_active.is_(True), ProgramState.contact_id == contact_id)
                .order_by(ProgramState.id)
            )
            ordered: dict[int, Program] = {}
            for program in list(base.scalars().all()) + list(assigned.scalars().all()):
                ordered.setdefault(program.id, program)
        return list(ordered.values())

    async def _load_or_create_state(self, definition: ProgramDefinition, program_id: int,
                                    contact_id: int) -> ProgramState:
        query = select(ProgramState).where(
            ProgramState.program_id == program_id, ProgramState.contact_id == contact_id
        )
        async with db.session() as session:
            state = (await session.execute(query)).scalar_one_or_none()
        if state:
            return state
        try:
            async with db.session() as session:
                state = ProgramState(
                    program_id=program_id,
                    contact_id=contact_id,
                    current_step_id=definition.first_step_id,
                    variables="{}",
                )
                session.add(state)
                await session.flush()
            logger.info(f"Started program {program_id} for contact {contact_id}")
            return state
        except IntegrityError:
            async with db.session() as session:
                return (await session.execute(query)).scalar_one()

    async def _save(self, state: ProgramState, **values) -> None:
        values["updated_at"] = self.clock()
        async with db.session() as session:
            await session.execute(update(ProgramState).where(ProgramState.id == state.id).values(**values))
        for key, value in values.items():
            setattr(state, key, value)

    async def _advance(self, state: ProgramState, next_step_id: str | None) -> bool:
        """Move the cursor. Returns False when the program just completed."""
        if next_step_id is None:
            await self._save(state, completed_at=self.clock(), next_action_at=None)
            logger.info(f"Program {state.program_id} completed for contact {state.contact_id}")
            return False
        await self._save(state, current_step_id=next_step_id, next_action_at=None)
        return True

    def _lock_for(self, program_id: int, contact_id: int) -> asyncio.Lock:
        key = (program_id, contact_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def render(self, content: str, variables: dict) -> str:
        now = self.clock()
        values = {
            **{k: str(v) for k, v in variables.items()},
            "current_time": now.strftime("%H:%M:%S"),
            "current_date": now.strftime("%Y-%m-%d"),
            "system_name": self.system_name,
        }
        return TEMPLATE_VAR.sub(lambda m: values.get(m.group(1), m.group(0)), content)

    async def _run_pass(self, program: Program, contact: Contact, *, reply: str | None,
                        from_tick: bool = False) -> str | None:
        """
        Execute one pass of `program` for `contact`.

        Returns None when the program was skipped, "agent" when it handed the
        contact to an agent, otherwise "ran".
        """
        try:
            definition = parse_program(program.program_data)
        except ValueError as e:
            logger.error(f"Program {program.id} has an invalid definition: {e}")
            return None

        async with self._lock_for(program.id, contact.id):
            state = await self._load_or_create_state(definition, program.id, contact.id)
            if state.is_paused or state.completed_at is not None:
                return None

            steps = definition.step_map()
            if from_tick:
                step = steps.get(state.current_step_id)
                if not isinstance(step, DelayStep) or state.next_action_at is None or state.next_action_at > self.clock():
                    return None

            fresh = reply
            variables = json.loads(state.variables or "{}")

            for _ in range(MAX_STEPS_PER_PASS):
                step = steps.get(state.current_step_id)
                if step is None:
                    logger.error(
                        f"Program {program.id}: unknown step {state.current_step_id!r} for contact {contact.id}"
                    )
                    return "ran"

                if isinstance(step, MessageStep):
                    result = await self.gateway.send(
                        contact.phone,
                        self.render(step.content, variables),
                        "program",
                        {"contact_id": contact.id, "program_id": program.id},
                    )
                    if not result.ok:
                        logger.warning(
                            f"Program {program.id} halted at {step.id!r} for contact {contact.id}: {result.status}"
                        )
                        return "ran"
                    fresh = None
                    if not await self._advance(state, step.next_step_id):
                        return "ran"

                elif isinstance(step, DelayStep):
                    now = self.clock()
                    if state.next_action_at is None:
                        await self._save(state, next_action_at=now + timedelta(seconds=step.seconds))
                        return "ran"
                    if state.next_action_at > now:
                        return "ran"
                    if not await self._advance(state, step.next_step_id):
                        return "ran"

                elif isinstance(step, ConditionStep):
                    if fresh is None:
                        return "ran"
                    target = step.next_for(fresh)
                    fresh = None
                    if not await self._advance(state, target):
                        return "ran"

                elif isinstance(step, InputStep):
                    if fresh is None:
                        return "ran"
                    answer, fresh = fresh, None
                    if not step.accepts(answer):
                        if step.error_message:
                            await self.gateway.send(
                                contact.phone,
                                self.render(step.error_message, variables),
                                "program",
                                {"contact_id": contact.id, "program_id": program.id},
                            )
                        return "ran"
                    variables[step.variable_name] = answer.strip()
                    await self._save(state, variables=json.dumps(variables))
                    if not await self._advance(state, step.next_step_id):
                        return "ran"

                elif isinstance(step, AgentConnectStep):
                    initial = step.message or reply or messages.default_agent_request_message()
                    if self.broker is not None:
                        await self.broker.request_connection(contact.phone, contact.id, initial)
                    else:
                        logger.error("Agent hand-off requested but no agent broker is configured")
                    values = {"is_paused": True, "paused_reason": "agent"}
                    if step.next_step_id is None:
                        values["completed_at"] = self.clock()
                    else:
                        values["current_step_id"] = step.next_step_id
                    await self._save(state, **values)
                    return "agent"

            logger.warning(f"Program {program.id} hit the step limit for contact {contact.id}")
            return "ran"

    async def _check_agent_triggers(self, contact: Contact, text: str) -> bool:
        if self.broker is None:
            return False
        lowered = (text or "").lower()
        async with db.session() as session:
            result = await session.execute(
                select(Agent.trigger_words).where(Agent.is_active.is_(True), Agent.is_available.is_(True))
            )
            words = list(self.trigger_words)
            for raw in result.scalars().all():
                try:
                    words.extend(str(w).lower() for w in json.loads(raw or "[]") if str(w).strip())
                except (TypeError, ValueError):
                    logger.warning(f"Ignoring malformed agent trigger words: {raw!r}")

        for word in words:
            if word in lowered:
                logger.info(f"Trigger word {word!r} from {contact.phone}, requesting an agent")
                await self.broker.request_connection(contact.phone, contact.id, text)
                return True
        return False
