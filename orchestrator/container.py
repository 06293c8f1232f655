"""Service container - wires configuration, transport, and orchestration services."""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from orchestrator.config import Config
from orchestrator.services.agent_broker import AgentBroker
from orchestrator.services.bridge_client import BridgeClient
from orchestrator.services.broadcast_dispatcher import BroadcastDispatcher
from orchestrator.services.contact_service import ContactService
from orchestrator.services.gateway import MessageGateway, Transport
from orchestrator.services.inbound_router import InboundRouter
from orchestrator.services.program_engine import ProgramEngine
from orchestrator.services.rate_limiter import RateLimiter
from orchestrator.services.scheduler import Scheduler
from orchestrator.services.virtual_phone import VirtualPhone
from orchestrator.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    """Simple dependency container shared by the runner and the webhook server."""

    config: Config
    transport: Transport
    rate_limiter: RateLimiter
    gateway: MessageGateway
    contact_service: ContactService
    program_engine: ProgramEngine
    agent_broker: AgentBroker
    broadcast_dispatcher: BroadcastDispatcher
    inbound_router: InboundRouter
    scheduler: Scheduler

    @classmethod
    async def create(
        cls,
        config: Config,
        transport: Optional[Transport] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> "ServiceContainer":
        """
        Build the service container with all dependencies.

        Args:
            config: Loaded Config instance
            transport: Outbound SMS transport; defaults to the bridge in
                production and the virtual phone otherwise
            clock: Time source shared by every service
        """
        logger.info("Building service container...")

        if transport is None:
            if config.is_production:
                transport = BridgeClient(config.bridge_url, config.bridge_api_key)
            else:
                transport = VirtualPhone(config.system_phone)

        rate_limiter = RateLimiter(clock=clock)
        gateway = MessageGateway(transport, rate_limiter, config.system_phone)
        contact_service = ContactService()
        program_engine = ProgramEngine(
            gateway,
            contact_service,
            system_name=config.system_name,
            trigger_words=config.agent_trigger_words,
            clock=clock,
        )
        agent_broker = AgentBroker(
            gateway,
            session_timeout_seconds=config.session_timeout_seconds,
            request_timeout_seconds=config.connection_request_timeout_seconds,
            idle_abandon_seconds=config.session_idle_abandon_seconds,
            clock=clock,
        )
        program_engine.broker = agent_broker
        agent_broker.programs = program_engine

        broadcast_dispatcher = BroadcastDispatcher(
            gateway,
            max_recipients=config.broadcast_max_recipients,
            send_interval_seconds=config.broadcast_send_interval_seconds,
            global_backoff_seconds=config.broadcast_global_backoff_seconds,
            clock=clock,
        )
        inbound_router = InboundRouter(gateway, contact_service, agent_broker, program_engine)

        scheduler = Scheduler(clock=clock)
        scheduler.add("program_delays", config.program_tick_seconds, program_engine.run_due_delays)
        scheduler.add("broadcast_promotion", config.broadcast_poll_seconds, broadcast_dispatcher.promote_scheduled)
        scheduler.add("agent_deadlines", config.agent_deadline_tick_seconds, agent_broker.expire_due)
        scheduler.add("agent_idle_sweep", config.agent_sweep_seconds, agent_broker.sweep_idle, run_immediately=False)
        scheduler.add("rate_limit_reclaim", config.rate_limit_cleanup_seconds, rate_limiter.reclaim)

        logger.info("Service container ready")

        return cls(
            config=config,
            transport=transport,
            rate_limiter=rate_limiter,
            gateway=gateway,
            contact_service=contact_service,
            program_engine=program_engine,
            agent_broker=agent_broker,
            broadcast_dispatcher=broadcast_dispatcher,
            inbound_router=inbound_router,
            scheduler=scheduler,
        )

    async def start(self) -> None:
        """Load runtime state from the store before traffic arrives."""
        await self.rate_limiter.load_config()
        await self.agent_broker.restore_active_sessions()
        await self.broadcast_dispatcher.resume_interrupted()

    async def cleanup(self):
        """Stop background work and close the transport."""
        self.scheduler.stop()
        await self.broadcast_dispatcher.stop()
        try:
            await self.transport.close()
        except Exception as e:
            logger.warning(f"Transport close failed: {e}")
        logger.info("Service container cleanup complete")
