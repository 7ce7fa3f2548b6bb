"""Shared test database, constants and fakes"""

import re
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from payja_gateway.domain.exceptions import NotificationDeliveryError

# In-memory database shared by every session of a test
engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

NOW = datetime(2025, 6, 1, 12, 0, 0)
PHONE = "+258841234567"

CODE_PATTERN = re.compile(r"\b(\d{6})\b")


class FakeSmsClient:
    """Records messages instead of calling the provider"""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: List[Tuple[str, str]] = []

    async def send(self, phone_number: str, message: str) -> None:
        if self.fail:
            raise NotificationDeliveryError("SMS provider error: 503")
        self.sent.append((phone_number, message))

    def last_code(self, phone_number: str) -> Optional[str]:
        for phone, message in reversed(self.sent):
            if phone == phone_number:
                match = CODE_PATTERN.search(message)
                if match:
                    return match.group(1)
        return None
