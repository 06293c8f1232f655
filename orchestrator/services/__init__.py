"""Services package - messaging orchestration layer."""
from orchestrator.services.rate_limiter import RateLimiter, RateLimitDecision
from orchestrator.services.gateway import MessageGateway, SendResult
from orchestrator.services.bridge_client import BridgeClient
from orchestrator.services.virtual_phone import VirtualPhone
from orchestrator.services.contact_service import ContactService, normalize_phone
from orchestrator.services.program_schema import ProgramDefinitionError, parse_program
from orchestrator.services.program_engine import ProgramEngine
from orchestrator.services.agent_broker import AgentBroker
from orchestrator.services.broadcast_dispatcher import BroadcastCreated, BroadcastDispatcher
from orchestrator.services.inbound_router import InboundRouter
from orchestrator.services.scheduler import Scheduler

__all__ = [
    "RateLimiter",
    "RateLimitDecision",
    "MessageGateway",
    "SendResult",
    "BridgeClient",
    "VirtualPhone",
    "ContactService",
    "normalize_phone",
    "ProgramDefinitionError",
    "parse_program",
    "ProgramEngine",
    "AgentBroker",
    "BroadcastCreated",
    "BroadcastDispatcher",
    "InboundRouter",
    "Scheduler",
]
