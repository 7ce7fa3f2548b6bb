"""SMS provider HTTP client"""

from typing import Optional

import httpx

from payja_gateway.config import settings
from payja_gateway.domain.exceptions import NotificationDeliveryError


class SmsClient:
    """Client for the SMS provider's send endpoint"""

    def __init__(
        self,
        api_url: str | None = None,
        sender: str | None = None,
        timeout: float | None = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = api_url or settings.sms_api_url
        self.sender = sender or settings.sms_sender
        self.timeout = timeout or settings.http_timeout_seconds
        self.transport = transport

    async def send(self, phone_number: str, message: str) -> None:
        """
        Deliver one SMS.

        Raises:
            NotificationDeliveryError: On timeout, HTTP errors, or network failures
        """
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            try:
                response = await client.post(
                    self.api_url,
                    json={"to": phone_number, "from": self.sender, "message": message},
                )
                response.raise_for_status()
            except httpx.TimeoutException as e:
                raise NotificationDeliveryError(f"SMS provider timeout after {self.timeout}s") from e
            except httpx.HTTPStatusError as e:
                raise NotificationDeliveryError(f"SMS provider error: {e.response.status_code}") from e
            except httpx.RequestError as e:
                raise NotificationDeliveryError(f"SMS provider unreachable: {e}") from e
