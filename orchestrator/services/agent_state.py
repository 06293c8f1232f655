"""In-memory table of live agent sessions and pending connection requests."""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class ActiveSession:
    session_id: int
    session_key: str
    contact_id: int
    agent_id: int
    user_phone: str
    agent_phone: str
    user_label: str
    started_at: datetime
    last_activity_at: datetime


@dataclass
class PendingConnectionRequest:
    user_phone: str
    contact_id: int | None
    initial_message: str
    requested_at: datetime
    notified_agent_ids: list[int] = field(default_factory=list)


class AgentStateStore:
    """
    Process-local broker state.

    Sessions are indexed by key, by user phone and by agent phone. Requests
    keep arrival order so ACCEPT always takes the oldest one.
    """

    def __init__(self):
        self.sessions: dict[str, ActiveSession] = {}
        self._by_user: dict[str, str] = {}
        self._by_agent: dict[str, set[str]] = {}
        self.pending: OrderedDict[str, PendingConnectionRequest] = OrderedDict()

    # sessions

    def add_session(self, session: ActiveSession) -> None:
        self.sessions[session.session_key] = session
        self._by_user[session.user_phone] = session.session_key
        self._by_agent.setdefault(session.agent_phone, set()).add(session.session_key)

    def remove_session(self, session_key: str) -> ActiveSession | None:
        session = self.sessions.pop(session_key, None)
        if session is None:
            return None
        if self._by_user.get(session.user_phone) == session_key:
            del self._by_user[session.user_phone]
        keys = self._by_agent.get(session.agent_phone)
        if keys is not None:
            keys.discard(session_key)
            if not keys:
                del self._by_agent[session.agent_phone]
        return session

    def session_for_user(self, user_phone: str) -> ActiveSession | None:
        key = self._by_user.get(user_phone)
        return self.sessions.get(key) if key else None

    def sessions_for_agent(self, agent_phone: str) -> list[ActiveSession]:
        """Agent's sessions, most recently active first."""
        keys = self._by_agent.get(agent_phone, ())
        sessions = [self.sessions[k] for k in keys if k in self.sessions]
        return sorted(sessions, key=lambda s: s.last_activity_at, reverse=True)

    def latest_for_agent(self, agent_phone: str) -> ActiveSession | None:
        sessions = self.sessions_for_agent(agent_phone)
        return sessions[0] if sessions else None

    def touch(self, session_key: str, now: datetime) -> None:
        session = self.sessions.get(session_key)
        if session is not None:
            session.last_activity_at = now

    def idle_sessions(self, cutoff: datetime) -> list[ActiveSession]:
        return [s for s in self.sessions.values() if s.last_activity_at < cutoff]

    # connection requests

    def has_request(self, user_phone: str) -> bool:
        return user_phone in self.pending

    def add_request(self, request: PendingConnectionRequest) -> None:
        self.pending[request.user_phone] = request

    def pop_oldest_request(self) -> PendingConnectionRequest | None:
        if not self.pending:
            return None
        _, request = self.pending.popitem(last=False)
        return request

    def drop_request(self, user_phone: str) -> PendingConnectionRequest | None:
        return self.pending.pop(user_phone, None)

    def expired_requests(self, cutoff: datetime) -> list[PendingConnectionRequest]:
        return [r for r in self.pending.values() if r.requested_at < cutoff]
