"""Message gateway - every outbound SMS goes through here."""
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from database.db import db
from database.models import Message
from orchestrator.services.rate_limiter import RateLimitDecision, RateLimiter

logger = logging.getLogger(__name__)


class Transport(Protocol):
    async def deliver(self, message_id: int, to_phone: str, content: str) -> str:
        ...

    async def health(self) -> bool:
        ...

    async def close(self) -> None:
        ...


@dataclass(frozen=True)
class SendResult:
    """Outcome of `MessageGateway.send`."""

    status: str  # sent|rate_limited|failed
    message_id: Optional[int] = None
    decision: Optional[RateLimitDecision] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "sent"

    @property
    def globally_limited(self) -> bool:
        return (
            self.status == "rate_limited"
            and self.decision is not None
            and (self.decision.window or "").startswith("global_")
        )


class MessageGateway:
    """
    Rate-limited outbound path.

    global limit -> phone limit -> log Message -> transport -> record send,
    all under one lock so two concurrent senders cannot both take the last
    unit of quota.
    """

    def __init__(self, transport: Transport, rate_limiter: RateLimiter, system_phone: str):
        self.transport = transport
        self.rate_limiter = rate_limiter
        self.system_phone = system_phone
        self.lock = asyncio.Lock()

    async def send(
        self,
        to_phone: str,
        content: str,
        message_type: str = "sms",
        metadata: Optional[dict] = None,
    ) -> SendResult:
        """
        Send one SMS.

        Args:
            metadata: optional contact_id / program_id / chat_session_id / broadcast_id
                to link the logged Message to.
        """
        metadata = metadata or {}
        async with self.lock:
            # Global quota before the phone quota.
            decision = await self.rate_limiter.check_global()
            if decision.allowed:
                decision = await self.rate_limiter.check_phone(to_phone)
            if not decision.allowed:
                if decision.window == "unavailable":
                    return SendResult(status="failed", decision=decision, error=decision.error)
                logger.warning(
                    f"Rate limited {message_type} to {to_phone}: "
                    f"{decision.window} {decision.current}/{decision.limit}"
                )
                return SendResult(status="rate_limited", decision=decision)

            try:
                message_id = await self._log(to_phone, content, message_type, metadata)
            except Exception as e:
                logger.error(f"Failed to log outbound message to {to_phone}: {e}")
                return SendResult(status="failed", error=str(e))

            try:
                status = await self.transport.deliver(message_id, to_phone, content)
            except Exception as e:
                await self.update_message_status(message_id, "failed", str(e))
                return SendResult(status="failed", message_id=message_id, error=str(e))

            await self.update_message_status(message_id, status or "sent")
            try:
                await self.rate_limiter.record_send(to_phone)
            except Exception as e:
                logger.error(f"Failed to record send to {to_phone}: {e}")

        return SendResult(status="sent", message_id=message_id)

    async def _log(self, to_phone: str, content: str, message_type: str, metadata: dict) -> int:
        async with db.session() as session:
            message = Message(
                direction="outbound",
                from_phone=self.system_phone,
                to_phone=to_phone,
                content=content,
                message_type=message_type,
                status="pending",
                contact_id=metadata.get("contact_id"),
                program_id=metadata.get("program_id"),
                chat_session_id=metadata.get("chat_session_id"),
                broadcast_id=metadata.get("broadcast_id"),
            )
            session.add(message)
            await session.flush()
            return message.id

    async def log_inbound(self, from_phone: str, content: str, to_phone: Optional[str] = None,
                          contact_id: Optional[int] = None) -> int:
        async with db.session() as session:
            message = Message(
                direction="inbound",
                from_phone=from_phone,
                to_phone=to_phone or self.system_phone,
                content=content,
                message_type="sms",
                status="received",
                contact_id=contact_id,
            )
            session.add(message)
            await session.flush()
            return message.id

    async def update_message_status(self, message_id: int, status: str, error: Optional[str] = None) -> bool:
        """Apply a delivery receipt. Returns False for an unknown message."""
        try:
            async with db.session() as session:
                message = await session.get(Message, message_id)
                if not message:
                    logger.warning(f"Status update for unknown message {message_id}")
                    return False
                message.status = status
                if error:
                    message.error_message = error
            return True
        except Exception as e:
            logger.error(f"Failed to update status of message {message_id}: {e}")
            return False
