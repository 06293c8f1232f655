"""Database models - contacts, programs, agents, broadcasts and rate-limit counters."""
from datetime import datetime, timezone

from sqlalchemy import BigInteger, Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")


def _utcnow() -> datetime:
    # Columns are naive and always hold UTC.
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SystemConfig(Base):
    """Key/value settings that can be changed at runtime (rate limits, feature flags)."""

    __tablename__ = "system_config"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    config_key = Column(String(100), nullable=False, unique=True)
    config_value = Column(Text, nullable=True)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)


class Contact(Base):
    """A phone number the platform talks to."""

    __tablename__ = "contacts"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    phone = Column(String(20), nullable=False, unique=True)
    email = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    memberships = relationship("ContactGroupMember", back_populates="contact")

    def __repr__(self):
        return f"<Contact(id={self.id}, phone={self.phone})>"


class ContactGroup(Base):
    __tablename__ = "contact_groups"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False, unique=True)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, default=_utcnow)

    members = relationship("ContactGroupMember", back_populates="group")


class ContactGroupMember(Base):
    __tablename__ = "contact_group_members"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    contact_id = Column(BigInteger, ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False)
    group_id = Column(BigInteger, ForeignKey("contact_groups.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime, default=_utcnow)

    contact = relationship("Contact", back_populates="memberships")
    group = relationship("ContactGroup", back_populates="members")

    __table_args__ = (
        Index("uq_contact_group_member", "contact_id", "group_id", unique=True),
        Index("idx_contact_group_member_group", "group_id"),
    )


class Agent(Base):
    """Staff member who can take over conversations by SMS."""

    __tablename__ = "agents"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    phone = Column(String(20), nullable=False, unique=True)
    is_active = Column(Boolean, nullable=False, default=True)
    is_available = Column(Boolean, nullable=False, default=True)
    trigger_words = Column(Text, nullable=False, default="[]")  # JSON list of strings
    max_concurrent_chats = Column(Integer, nullable=False, default=3)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    def __repr__(self):
        return f"<Agent(id={self.id}, phone={self.phone}, available={self.is_available})>"


class Program(Base):
    """Automated message program. `program_data` holds the validated step graph as JSON."""

    __tablename__ = "programs"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    program_data = Column(Text, nullable=False)  # {"start_step_id": ..., "steps": [...]}
    is_active = Column(Boolean, nullable=False, default=True)
    is_base = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("idx_programs_base_active", "is_base", "is_active"),
    )


class ProgramAssignment(Base):
    """Links a program to a single contact or to a whole group."""

    __tablename__ = "program_assignments"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    program_id = Column(BigInteger, ForeignKey("programs.id", ondelete="CASCADE"), nullable=False)
    contact_id = Column(BigInteger, ForeignKey("contacts.id", ondelete="CASCADE"), nullable=True)
    group_id = Column(BigInteger, ForeignKey("contact_groups.id", ondelete="CASCADE"), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    assigned_at = Column(DateTime, default=_utcnow)

    __table_args__ = (
        Index("uq_program_assignment_contact", "program_id", "contact_id", unique=True),
        Index("uq_program_assignment_group", "program_id", "group_id", unique=True),
    )


class ProgramState(Base):
    """Execution cursor of one program for one contact."""

    __tablename__ = "program_states"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    program_id = Column(BigInteger, ForeignKey("programs.id", ondelete="CASCADE"), nullable=False)
    contact_id = Column(BigInteger, ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False)
    current_step_id = Column(String(100), nullable=True)
    variables = Column(Text, nullable=False, default="{}")  # JSON object string -> string
    is_paused = Column(Boolean, nullable=False, default=False)
    paused_reason = Column(String(20), nullable=True)  # agent|manual
    next_action_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    started_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("uq_program_state", "program_id", "contact_id", unique=True),
        Index("idx_program_states_due", "next_action_at", "is_paused"),
    )

    def __repr__(self):
        return f"<ProgramState(program={self.program_id}, contact={self.contact_id}, step={self.current_step_id})>"


class ChatSession(Base):
    """Live conversation between a contact and an agent."""

    __tablename__ = "chat_sessions"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    session_key = Column(String(100), nullable=False, unique=True)
    contact_id = Column(BigInteger, ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False)
    agent_id = Column(BigInteger, ForeignKey("agents.id", ondelete="CASCADE"), nullable=False)
    # active|ended|timeout|ended_by_agent|ended_by_user|agent_offline|abandoned
    status = Column(String(20), nullable=False, default="active")
    started_at = Column(DateTime, default=_utcnow)
    last_activity_at = Column(DateTime, default=_utcnow)
    ended_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_chat_sessions_agent_status", "agent_id", "status"),
        Index("idx_chat_sessions_contact_status", "contact_id", "status"),
    )


class Message(Base):
    """Every message sent or received through the gateway."""

    __tablename__ = "messages"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    direction = Column(String(10), nullable=False)  # inbound|outbound
    from_phone = Column(String(20), nullable=False)
    to_phone = Column(String(20), nullable=False)
    content = Column(Text, nullable=False)
    message_type = Column(String(20), nullable=False, default="sms")  # sms|system|broadcast|program|chat|agent_request
    status = Column(String(20), nullable=False, default="pending")  # pending|sent|delivered|failed|received|rate_limited
    contact_id = Column(BigInteger, ForeignKey("contacts.id", ondelete="SET NULL"), nullable=True)
    program_id = Column(BigInteger, ForeignKey("programs.id", ondelete="SET NULL"), nullable=True)
    chat_session_id = Column(BigInteger, ForeignKey("chat_sessions.id", ondelete="SET NULL"), nullable=True)
    broadcast_id = Column(BigInteger, ForeignKey("broadcasts.id", ondelete="SET NULL"), nullable=True)
    bridge_message_id = Column(String(100), nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("idx_messages_chat_session", "chat_session_id", "created_at"),
        Index("idx_messages_from_phone", "from_phone", "created_at"),
    )


class Broadcast(Base):
    """Broadcast campaign definition + progress tracking."""

    __tablename__ = "broadcasts"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    content = Column(Text, nullable=False)
    target_groups = Column(Text, nullable=False, default="[]")  # JSON list of group ids
    target_contacts = Column(Text, nullable=False, default="[]")  # JSON list of contact ids

    status = Column(String(20), nullable=False, default="pending")  # pending|scheduled|processing|completed|failed|cancelled
    recipient_count = Column(Integer, nullable=False, default=0)
    sent_count = Column(Integer, nullable=False, default=0)
    failed_count = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)

    scheduled_at = Column(DateTime, nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_by = Column(String(100), nullable=False, default="system")
    created_at = Column(DateTime, default=_utcnow)

    recipients = relationship("BroadcastRecipient", back_populates="broadcast")

    __table_args__ = (
        Index("idx_broadcasts_status_scheduled", "status", "scheduled_at"),
    )


class BroadcastRecipient(Base):
    """One resolved phone of a broadcast."""

    __tablename__ = "broadcast_recipients"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    broadcast_id = Column(BigInteger, ForeignKey("broadcasts.id", ondelete="CASCADE"), nullable=False)
    contact_id = Column(BigInteger, ForeignKey("contacts.id", ondelete="SET NULL"), nullable=True)
    group_id = Column(BigInteger, ForeignKey("contact_groups.id", ondelete="SET NULL"), nullable=True)
    phone = Column(String(20), nullable=False)

    status = Column(String(20), nullable=False, default="pending")  # pending|sent|failed|rate_limited|cancelled
    message_id = Column(BigInteger, nullable=True)
    error_message = Column(Text, nullable=True)
    sent_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=_utcnow)

    broadcast = relationship("Broadcast", back_populates="recipients")

    __table_args__ = (
        Index("uq_broadcast_recipient_phone", "broadcast_id", "phone", unique=True),
        Index("idx_broadcast_recipient_status", "broadcast_id", "status"),
    )


class RateLimitCounter(Base):
    """Send count of one phone inside one epoch-aligned window."""

    __tablename__ = "rate_limits"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    phone = Column(String(20), nullable=False)
    window = Column(String(10), nullable=False)  # minute|hour|day
    window_start = Column(DateTime, nullable=False)
    count = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("uq_rate_limit_window", "phone", "window", "window_start", unique=True),
        Index("idx_rate_limit_window_start", "window", "window_start"),
    )


class VirtualMessage(Base):
    """Outbox of the development phone simulator."""

    __tablename__ = "virtual_messages"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    message_id = Column(BigInteger, nullable=True)
    direction = Column(String(10), nullable=False)
    from_phone = Column(String(20), nullable=False)
    to_phone = Column(String(20), nullable=False)
    content = Column(Text, nullable=False)
    status = Column(String(20), nullable=False, default="sent")
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=_utcnow)
