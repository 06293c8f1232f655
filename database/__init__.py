"""Database package - models and connection management."""
from database.db import Database, db
from database.models import (
    Base,
    SystemConfig,
    Contact,
    ContactGroup,
    ContactGroupMember,
    Agent,
    Program,
    ProgramAssignment,
    ProgramState,
    ChatSession,
    Message,
    Broadcast,
    BroadcastRecipient,
    RateLimitCounter,
    VirtualMessage,
)

__all__ = [
    "Database",
    "db",
    "Base",
    "SystemConfig",
    "Contact",
    "ContactGroup",
    "ContactGroupMember",
    "Agent",
    "Program",
    "ProgramAssignment",
    "ProgramState",
    "ChatSession",
    "Message",
    "Broadcast",
    "BroadcastRecipient",
    "RateLimitCounter",
    "VirtualMessage",
]
