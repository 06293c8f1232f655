"""Inbound router - entry point for every SMS received from a contact or agent."""
import logging
from typing import Optional

from orchestrator.services.agent_broker import AgentBroker
from orchestrator.services.contact_service import ContactService, normalize_phone
from orchestrator.services.gateway import MessageGateway
from orchestrator.services.program_engine import ProgramEngine

logger = logging.getLogger(__name__)


class InboundRouter:
    """
    Routes an inbound SMS through the handler chain:
    live chat forwarding -> agent commands -> programs.
    The first handler that claims the message ends the chain.
    """

    def __init__(self, gateway: MessageGateway, contacts: ContactService, broker: AgentBroker,
                 programs: ProgramEngine):
        self.gateway = gateway
        self.contacts = contacts
        self.broker = broker
        self.programs = programs

    async def process_incoming_message(self, from_phone: str, content: str, to_phone: Optional[str] = None) -> str:
        """
        Handle one inbound SMS. Never raises.

        Returns which handler took the message: "chat", "agent", "program",
        "ignored" or "error".
        """
        phone = normalize_phone(from_phone)
        try:
            contact = await self.contacts.get_or_create_by_phone(phone)
            await self.gateway.log_inbound(phone, content, to_phone, contact_id=contact.id)

            if await self.broker.forward_if_active_session(phone, content):
                return "chat"
            if await self.broker.process_agent_command(phone, content):
                return "agent"
            if await self.programs.process_message(contact, content):
                return "program"
            return "ignored"
        except Exception as e:
            logger.error(f"Error processing inbound message from {phone}: {e}", exc_info=True)
            return "error"
