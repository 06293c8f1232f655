"""Virtual phone - development transport that keeps outbound SMS in the database."""
import logging

from database.db import db
from database.models import VirtualMessage

logger = logging.getLogger(__name__)


class VirtualPhone:
    """Stores every outbound SMS as a `VirtualMessage` instead of sending it."""

    def __init__(self, system_phone: str):
        self.system_phone = system_phone

    async def deliver(self, message_id: int, to_phone: str, content: str) -> str:
        async with db.session() as session:
            session.add(
                VirtualMessage(
                    message_id=message_id,
                    direction="outbound",
                    from_phone=self.system_phone,
                    to_phone=to_phone,
                    content=content,
                    status="delivered",
                )
            )
        logger.info(f"[virtual] -> {to_phone}: {content}")
        return "delivered"

    async def health(self) -> bool:
        return True

    async def close(self) -> None:
        return None
