"""One-time SMS codes proving the caller owns the phone"""

import logging
import secrets
from datetime import datetime

from sqlalchemy.orm import Session

from payja_gateway.config import settings
from payja_gateway.domain.exceptions import NotificationDeliveryError
from payja_gateway.infrastructure.clients.sms import SmsClient
from payja_gateway.infrastructure.database.repositories import VerificationCodeRepository

logger = logging.getLogger(__name__)

CODE_DIGITS = 6


def generate_code() -> str:
    return f"{secrets.randbelow(10 ** CODE_DIGITS):0{CODE_DIGITS}d}"


class VerificationService:
    def __init__(self, db: Session, sms_client: SmsClient, ttl_seconds: int | None = None):
        self.codes = VerificationCodeRepository(db)
        self.sms_client = sms_client
        self.ttl_seconds = ttl_seconds or settings.verification_code_ttl_seconds

    async def send_code(self, phone_number: str, now: datetime) -> bool:
        """Issue a fresh code and text it; False when the SMS could not be delivered"""
        code = generate_code()
        self.codes.issue(phone_number, code, now)
        minutes = self.ttl_seconds // 60
        try:
            await self.sms_client.send(
                phone_number,
                f"PayJA - Seu codigo de verificacao: {code}\n\nValido por {minutes} minutos.",
            )
        except NotificationDeliveryError as e:
            logger.warning(f"Verification SMS failed: {e}", extra={"phone_number": phone_number})
            return False
        return True

    def verify(self, phone_number: str, code: str, now: datetime) -> bool:
        """A code is good once, within its time-to-live"""
        return self.codes.consume(phone_number, code, now, self.ttl_seconds)
