"""Agent broker - hands contacts over to live agents and relays their chat."""

from __future__ import annotations

import asyncio
import json
import logging
import secrets
from datetime import datetime, timedelta
from typing import Callable, Iterable

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from database.db import db
from database.models import Agent, ChatSession, Contact
from orchestrator.services.agent_state import ActiveSession, AgentStateStore, PendingConnectionRequest
from orchestrator.services.contact_service import normalize_phone
from orchestrator.services.gateway import MessageGateway
from orchestrator.utils import messages
from orchestrator.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)

ENDED_STATUSES = ("ended", "timeout", "ended_by_agent", "ended_by_user", "agent_offline", "abandoned")


class AgentBroker:
    """
    Connects contacts with agents over SMS.

    Agents answer connection requests with ACCEPT and close chats with END;
    anything else they text is relayed to the contact of their most recently
    active session.
    """

    def __init__(
        self,
        gateway: MessageGateway,
        *,
        session_timeout_seconds: int = 30 * 60,
        request_timeout_seconds: int = 5 * 60,
        idle_abandon_seconds: int = 60 * 60,
        clock: Callable[[], datetime] = utcnow,
        state: AgentStateStore | None = None,
    ):
        self.gateway = gateway
        self.session_timeout = timedelta(seconds=session_timeout_seconds)
        self.request_timeout = timedelta(seconds=request_timeout_seconds)
        self.idle_abandon = timedelta(seconds=idle_abandon_seconds)
        self.clock = clock
        self.state = state or AgentStateStore()
        self.programs = None  # ProgramEngine, wired by the container
        self.accept_lock = asyncio.Lock()

    async def _system(self, phone: str, text: str, message_type: str = "system", **metadata) -> None:
        result = await self.gateway.send(phone, text, message_type, metadata)
        if not result.ok:
            logger.warning(f"Could not notify {phone}: {result.status} {result.error or ''}".rstrip())

    async def _touch(self, session: ActiveSession) -> None:
        now = self.clock()
        self.state.touch(session.session_key, now)
        async with db.session() as s:
            await s.execute(update(ChatSession).where(ChatSession.id == session.session_id).values(last_activity_at=now))

    # ---- inbound chain ----

    async def forward_if_active_session(self, from_phone: str, text: str) -> bool:
        """Relay a contact's message to their agent. False when the contact has no live chat."""
        session = self.state.session_for_user(from_phone)
        if session is None:
            return False
        await self._system(
            session.agent_phone,
            messages.user_chat_message(session.user_label, text),
            "chat",
            chat_session_id=session.session_id,
            contact_id=session.contact_id,
        )
        await self._touch(session)
        return True

    async def process_agent_command(self, agent_phone: str, text: str) -> bool:
        """
        Handle ACCEPT / END / chat text from an agent.

        Returns False when the sender is not an active agent, or is an agent
        with no live chat sending something other than a command.
        """
        agent = await self._agent_by_phone(agent_phone)
        if agent is None:
            return False

        command = (text or "").strip().upper()
        if command == "ACCEPT":
            await self._accept(agent)
            return True

        if command == "END":
            session = self.state.latest_for_agent(agent.phone)
            if session is None:
                await self._system(agent.phone, messages.no_active_chat_message())
            else:
                await self.end_session(session.session_key, "ended_by_agent")
            return True

        session = self.state.latest_for_agent(agent.phone)
        if session is None:
            return False
        await self._system(
            session.user_phone,
            messages.agent_chat_message(text),
            "chat",
            chat_session_id=session.session_id,
            contact_id=session.contact_id,
        )
        await self._touch(session)
        return True

    async def _accept(self, agent: Agent) -> None:
        async with self.accept_lock:
            active = await self._active_session_count(agent.id)
            if active >= agent.max_concurrent_chats:
                await self._system(agent.phone, messages.agent_at_capacity_message(agent.max_concurrent_chats))
                return

            request = self.state.pop_oldest_request()
            if request is None:
                await self._system(agent.phone, messages.no_pending_requests_message())
                return

            try:
                session = await self._open_session(agent, request)
            except Exception as e:
                logger.error(f"Failed to open chat for {request.user_phone} with agent {agent.id}: {e}", exc_info=True)
                self.state.add_request(request)
                self.state.pending.move_to_end(request.user_phone, last=False)
                await self._system(agent.phone, messages.connection_failed_message())
                return

        logger.info(f"Chat session {session.session_key} started: {session.user_phone} <-> {agent.phone}")
        await self._system(agent.phone, messages.session_started_agent_message(session.user_label))
        await self._system(session.user_phone, messages.session_started_user_message())

    async def _open_session(self, agent: Agent, request: PendingConnectionRequest) -> ActiveSession:
        now = self.clock()
        async with db.session() as s:
            contact_id = request.contact_id
            contact = await s.get(Contact, contact_id) if contact_id else None
            if contact is None:
                result = await s.execute(select(Contact).where(Contact.phone == request.user_phone))
                contact = result.scalar_one()
            row = ChatSession(
                session_key=secrets.token_hex(16),
                contact_id=contact.id,
                agent_id=agent.id,
                status="active",
                started_at=now,
                last_activity_at=now,
            )
            s.add(row)
            await s.flush()
            session = ActiveSession(
                session_id=row.id,
                session_key=row.session_key,
                contact_id=contact.id,
                agent_id=agent.id,
                user_phone=request.user_phone,
                agent_phone=agent.phone,
                user_label=contact.name or request.user_phone,
                started_at=now,
                last_activity_at=now,
            )
        self.state.add_session(session)
        return session

    # ---- requests / sessions ----

    async def request_connection(self, user_phone: str, contact_id: int | None, initial_message: str) -> str:
        """
        Queue a request for an agent and page every available agent.

        Returns "in_session", "already_pending" or "queued".
        """
        if self.state.session_for_user(user_phone) is not None:
            await self._system(user_phone, messages.already_in_session_message())
            return "in_session"
        if self.state.has_request(user_phone):
            await self._system(user_phone, messages.request_already_pending_message())
            return "already_pending"

        request = PendingConnectionRequest(
            user_phone=user_phone,
            contact_id=contact_id,
            initial_message=initial_message or messages.default_agent_request_message(),
            requested_at=self.clock(),
        )
        self.state.add_request(request)

        label = user_phone
        if contact_id:
            async with db.session() as s:
                contact = await s.get(Contact, contact_id)
                if contact and contact.name:
                    label = contact.name

        agents = await self.get_available_agents()
        text = messages.connection_request_message(label, user_phone, request.initial_message)
        for agent in agents:
            await self._system(agent.phone, text, "agent_request")
            request.notified_agent_ids.append(agent.id)

        if agents:
            await self._system(user_phone, messages.request_sent_message())
        else:
            await self._system(user_phone, messages.all_agents_busy_message())
        logger.info(f"Agent requested by {user_phone}; paged {len(agents)} agent(s)")
        return "queued"

    async def end_session(self, session_key: str, reason: str = "ended") -> bool:
        """Close a chat, notify both sides and resume the contact's agent-paused programs."""
        if reason not in ENDED_STATUSES:
            raise ValueError(f"Unknown session end reason: {reason}")

        session = self.state.remove_session(session_key)
        async with db.session() as s:
            result = await s.execute(
                select(ChatSession).where(ChatSession.session_key == session_key, ChatSession.status == "active")
            )
            row = result.scalar_one_or_none()
            if row is None and session is None:
                return False
            if row is not None:
                row.status = reason
                row.ended_at = self.clock()
                if session is None:
                    contact = await s.get(Contact, row.contact_id)
                    agent = await s.get(Agent, row.agent_id)
                    user_phone, agent_phone, contact_id = contact.phone, agent.phone, row.contact_id
            if session is not None:
                user_phone, agent_phone, contact_id = session.user_phone, session.agent_phone, session.contact_id

        logger.info(f"Chat session {session_key} ended ({reason})")
        await self._system(user_phone, messages.session_ended_user_message())
        await self._system(agent_phone, messages.session_ended_agent_message(user_phone, reason))

        if self.programs is not None:
            await self.programs.resume_after_agent(contact_id)
        return True

    # ---- agents ----

    async def _agent_by_phone(self, phone: str) -> Agent | None:
        async with db.session() as s:
            result = await s.execute(
                select(Agent).where(Agent.phone == normalize_phone(phone), Agent.is_active.is_(True))
            )
            return result.scalar_one_or_none()

    async def _active_session_count(self, agent_id: int) -> int:
        async with db.session() as s:
            result = await s.execute(
                select(func.count(ChatSession.id)).where(ChatSession.agent_id == agent_id, ChatSession.status == "active")
            )
            return int(result.scalar() or 0)

    async def get_available_agents(self) -> list[Agent]:
        """Active, available agents below their chat limit."""
        async with db.session() as s:
            active_chats = (
                select(ChatSession.agent_id, func.count(ChatSession.id).label("chats"))
                .where(ChatSession.status == "active")
                .group_by(ChatSession.agent_id)
                .subquery()
            )
            result = await s.execute(
                select(Agent)
                .outerjoin(active_chats, active_chats.c.agent_id == Agent.id)
                .where(
                    Agent.is_active.is_(True),
                    Agent.is_available.is_(True),
                    func.coalesce(active_chats.c.chats, 0) < Agent.max_concurrent_chats,
                )
                .order_by(Agent.id)
            )
            return list(result.scalars().all())

    async def add_agent(
        self,
        name: str,
        phone: str,
        trigger_words: Iterable[str] = (),
        max_concurrent_chats: int = 3,
    ) -> Agent:
        """
        Raises:
            ValueError: invalid input or an agent with this phone already exists
        """
        if not (name or "").strip():
            raise ValueError("Agent name is required")
        if int(max_concurrent_chats) < 1:
            raise ValueError("max_concurrent_chats must be at least 1")
        normalized = normalize_phone(phone)
        words = [w.strip() for w in trigger_words if w and w.strip()]
        try:
            async with db.session() as s:
                agent = Agent(
                    name=name.strip(),
                    phone=normalized,
                    trigger_words=json.dumps(words),
                    max_concurrent_chats=int(max_concurrent_chats),
                )
                s.add(agent)
                await s.flush()
        except IntegrityError as e:
            raise ValueError("Agent with this phone number already exists") from e
        logger.info(f"Added agent {agent.id} ({normalized})")
        return agent

    async def update_agent_availability(self, agent_id: int, available: bool) -> bool:
        """Toggle availability; going offline ends every live chat of the agent."""
        async with db.session() as s:
            agent = await s.get(Agent, agent_id)
            if agent is None:
                return False
            agent.is_available = bool(available)
            keys = []
            if not available:
                result = await s.execute(
                    select(ChatSession.session_key).where(ChatSession.agent_id == agent_id, ChatSession.status == "active")
                )
                keys = list(result.scalars().all())

        for key in keys:
            await self.end_session(key, "agent_offline")
        logger.info(f"Agent {agent_id} is now {'available' if available else 'unavailable'}")
        return True

    async def get_agent_stats(self, agent_id: int) -> dict:
        async with db.session() as s:
            result = await s.execute(select(ChatSession).where(ChatSession.agent_id == agent_id))
            sessions = result.scalars().all()
        return {
            "agent_id": agent_id,
            "total_sessions": len(sessions),
            "active_sessions": sum(1 for x in sessions if x.status == "active"),
            "completed_sessions": sum(1 for x in sessions if x.status != "active"),
            "avg_session_minutes": _avg_minutes(sessions),
        }

    async def get_system_chat_stats(self) -> dict:
        today = self.clock().replace(hour=0, minute=0, second=0, microsecond=0)
        async with db.session() as s:
            sessions = (await s.execute(select(ChatSession))).scalars().all()
            agents = (await s.execute(select(Agent))).scalars().all()
        return {
            "sessions": {
                "total": len(sessions),
                "active": sum(1 for x in sessions if x.status == "active"),
                "today": sum(1 for x in sessions if x.started_at and x.started_at >= today),
                "avg_duration_minutes": _avg_minutes(sessions),
            },
            "agents": {
                "total": len(agents),
                "available": sum(1 for a in agents if a.is_available),
                "active": sum(1 for a in agents if a.is_active),
            },
            "pending_connections": len(self.state.pending),
            "active_sessions": len(self.state.sessions),
        }

    # ---- deadlines ----

    async def expire_due(self) -> dict:
        """End idle chats and drop stale connection requests."""
        now = self.clock()
        timed_out = 0
        for session in self.state.idle_sessions(now - self.session_timeout):
            if await self.end_session(session.session_key, "timeout"):
                timed_out += 1

        expired = 0
        for request in self.state.expired_requests(now - self.request_timeout):
            if self.state.drop_request(request.user_phone) is None:
                continue
            expired += 1
            logger.info(f"Connection request from {request.user_phone} expired")
            await self._system(request.user_phone, messages.request_expired_message())
        return {"timed_out": timed_out, "expired_requests": expired}

    async def sweep_idle(self) -> int:
        """End stored chats with no activity for an hour, including ones a previous process left open."""
        cutoff = self.clock() - self.idle_abandon
        async with db.session() as s:
            result = await s.execute(
                select(ChatSession.session_key).where(
                    ChatSession.status == "active",
                    func.coalesce(ChatSession.last_activity_at, ChatSession.started_at) < cutoff,
                )
            )
            keys = list(result.scalars().all())
        ended = 0
        for key in keys:
            if await self.end_session(key, "abandoned"):
                ended += 1
        if ended:
            logger.info(f"Abandoned {ended} idle chat session(s)")
        return ended

    async def restore_active_sessions(self) -> int:
        """Reload chats that are still active in the store into memory."""
        async with db.session() as s:
            result = await s.execute(
                select(ChatSession, Contact, Agent)
                .join(Contact, Contact.id == ChatSession.contact_id)
                .join(Agent, Agent.id == ChatSession.agent_id)
                .where(ChatSession.status == "active")
            )
            rows = result.all()
        for row, contact, agent in rows:
            self.state.add_session(
                ActiveSession(
                    session_id=row.id,
                    session_key=row.session_key,
                    contact_id=contact.id,
                    agent_id=agent.id,
                    user_phone=contact.phone,
                    agent_phone=agent.phone,
                    user_label=contact.name or contact.phone,
                    started_at=row.started_at,
                    last_activity_at=row.last_activity_at or row.started_at,
                )
            )
        if rows:
            logger.info(f"Restored {len(rows)} active chat session(s)")
        return len(rows)


def _avg_minutes(sessions) -> float | None:
    durations = [
        (x.ended_at - x.started_at).total_seconds() / 60
        for x in sessions
        if x.ended_at is not None and x.started_at is not None
    ]
    return round(sum(durations) / len(durations), 1) if durations else None
