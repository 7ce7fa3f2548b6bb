"""Periodic job: resend SMS notifications that are still pending"""

import asyncio
import logging

from payja_gateway.config import settings
from payja_gateway.infrastructure.clients.sms import SmsClient
from payja_gateway.infrastructure.database.session import SessionLocal
from payja_gateway.infrastructure.observability.logging import setup_logging
from payja_gateway.services.notifications import NotificationDispatcher


async def main() -> int:
    dispatcher = NotificationDispatcher(SessionLocal, SmsClient())
    return await dispatcher.retry_pending()


if __name__ == "__main__":
    setup_logging(settings.log_level)
    logging.info("Pending notifications retried", extra={"delivered": asyncio.run(main())})
