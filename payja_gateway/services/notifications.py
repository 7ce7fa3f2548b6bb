"""Outbound SMS queue: rows are written with the session step, delivery runs in the background"""

import logging
from typing import Callable, List, Sequence

from sqlalchemy.orm import Session

from payja_gateway.config import settings
from payja_gateway.domain.exceptions import NotificationDeliveryError
from payja_gateway.infrastructure.clients.sms import SmsClient
from payja_gateway.infrastructure.database.repositories import NotificationRepository
from payja_gateway.infrastructure.observability.metrics import notification_failure_counter
from payja_gateway.utils.date_utils import utcnow

logger = logging.getLogger(__name__)


def enqueue_notifications(db: Session, phone_number: str, messages: Sequence[str], kind: str) -> List[str]:
    """Add messages to the queue in the caller's transaction; returns their ids"""
    repo = NotificationRepository(db)
    return [repo.enqueue(phone_number, message, kind).id for message in messages]


class NotificationDispatcher:
    """
    Deliver queued notifications.

    Runs after the HTTP response is sent, so it opens its own database
    session instead of borrowing the request's.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        sms_client: SmsClient,
        max_attempts: int | None = None,
    ):
        self.session_factory = session_factory
        self.sms_client = sms_client
        self.max_attempts = max_attempts or settings.notification_max_attempts

    async def dispatch(self, notification_ids: Sequence[str]) -> int:
        """Try each notification once; returns how many were delivered"""
        delivered = 0
        db = self.session_factory()
        try:
            repo = NotificationRepository(db)
            for notification_id in notification_ids:
                notification = repo.get(notification_id)
                if notification is None or notification.status != "pending":
                    continue
                if await self._deliver(repo, notification):
                    delivered += 1
        finally:
            db.close()
        return delivered

    async def retry_pending(self) -> int:
        """Sweep everything still pending, for a periodic job"""
        db = self.session_factory()
        try:
            repo = NotificationRepository(db)
            ids = [n.id for n in repo.pending(self.max_attempts)]
        finally:
            db.close()
        return await self.dispatch(ids)

    async def _deliver(self, repo: NotificationRepository, notification) -> bool:
        try:
            await self.sms_client.send(notification.phone_number, notification.message)
        except NotificationDeliveryError as e:
            notification_failure_counter.inc()
            logger.warning(
                f"Notification delivery failed: {e}",
                extra={"notification_id": notification.id, "attempts": notification.attempts + 1},
            )
            repo.record_attempt(notification, False, utcnow(), self.max_attempts)
            return False

        repo.record_attempt(notification, True, utcnow(), self.max_attempts)
        return True
