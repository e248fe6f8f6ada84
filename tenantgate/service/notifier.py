from __future__ import annotations

from typing import Optional, Protocol

import httpx

from tenantgate.logging import get_logger, mask_phone

logger = get_logger(__name__)


class Notifier(Protocol):
    async def send_code(self, phone: str, code: str) -> bool: ...


class WhatsAppNotifier:
    """Delivers one-time passcodes through the WhatsApp Business messaging API.

    Supports:
    - Template messages with the code as the single body parameter
    - Bearer-token authentication
    - Fallback to logging when not configured (dev mode)
    """

    def __init__(
        self,
        *,
        api_url: Optional[str] = None,
        api_token: Optional[str] = None,
        template: str = "tenantgate_otp",
        language: str = "es",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_url = api_url
        self.api_token = api_token
        self.template = template
        self.language = language
        self.timeout = timeout
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.api_url and self.api_token)

    def _payload(self, phone: str, code: str) -> dict:
        return {
            "messaging_product": "whatsapp",
            # The messaging API expects the number without the leading plus
            "to": phone.lstrip("+"),
            "type": "template",
            "template": {
                "name": self.template,
                "language": {"code": self.language},
                "components": [
                    {"type": "body", "parameters": [{"type": "text", "text": code}]}
                ],
            },
        }

    async def send_code(self, phone: str, code: str) -> bool:
        """Send ``code`` to ``phone``.

        Returns True if the provider accepted the message, False otherwise.
        """
        if not self.is_configured:
            # Dev mode: the code itself is never logged
            logger.info("otp_delivery_dev_mode", destination=mask_phone(phone))
            return True

        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                follow_redirects=False,
                transport=self._transport,
            ) as client:
                response = await client.post(
                    self.api_url,
                    json=self._payload(phone, code),
                    headers={"Authorization": f"Bearer {self.api_token}"},
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "otp_delivery_rejected",
                destination=mask_phone(phone),
                status_code=exc.response.status_code,
            )
            return False
        except httpx.TimeoutException:
            logger.error("otp_delivery_timeout", destination=mask_phone(phone))
            return False
        except httpx.HTTPError as exc:
            logger.error(
                "otp_delivery_failed",
                destination=mask_phone(phone),
                error_type=type(exc).__name__,
            )
            return False

        logger.info("otp_delivered", destination=mask_phone(phone))
        return True
