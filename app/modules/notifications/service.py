"""Fire-and-forget notification side-channel.

Notifications are written to the transactional outbox as ``NOTIFICATION``
events with a fixed shape and delivered by whatever consumes the event bus.
Emission runs in a savepoint so a failure here never undoes or blocks the
scheduling change that triggered it.
"""
import uuid
import logging
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from app.modules.events.outbox import OutboxService

logger = logging.getLogger(__name__)

class NotificationsService:
    def __init__(self, s: AsyncSession): self.s = s

    async def emit(self, org: uuid.UUID, *, title: str, message: str, user_id: uuid.UUID | None = None) -> bool:
        """user_id None means broadcast to the clinic's staff."""
        payload = {
            "tenant": str(org),
            "target": str(user_id) if user_id else "broadcast",
            "title": title,
            "message": message,
        }
        try:
            async with self.s.begin_nested():
                await OutboxService(self.s).enqueue(org, "NOTIFICATION", "notification", user_id or org, payload)
        except SQLAlchemyError:
            logger.warning("Dropping notification %r for org %s", title, org, exc_info=True)
            return False
        return True
