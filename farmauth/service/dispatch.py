from __future__ import annotations

import asyncio
from typing import Dict, Optional, Protocol

import httpx

from farmauth.logging import get_logger
from farmauth.service.email import EmailService
from farmauth.service.errors import DispatchFailure
from farmauth.storage.models import Channel

logger = get_logger(__name__)


class Dispatcher(Protocol):
    """Delivers a message to a phone number or email address.

    Implementations raise ``DispatchFailure`` when delivery fails.
    """

    async def send(self, channel: Channel, identifier: str, message: str) -> None: ...


class LogDispatcher:
    """Development dispatcher: writes messages to the log instead of sending.

    Keeps no record of what it sent.
    """

    async def send(self, channel: Channel, identifier: str, message: str) -> None:
        logger.info(
            "otp_dev_dispatch",
            channel=channel.value,
            identifier=identifier,
            body_preview=message,
        )


class SmsDispatcher:
    """Sends SMS through an HTTP gateway accepting ``{to, from, message}`` JSON."""

    def __init__(
        self,
        gateway_url: str,
        *,
        api_key: Optional[str] = None,
        sender_id: str = "FARMCN",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.gateway_url = gateway_url
        self.api_key = api_key
        self.sender_id = sender_id
        self.timeout = timeout
        self._transport = transport

    async def send(self, channel: Channel, identifier: str, message: str) -> None:
        if channel != Channel.PHONE:
            raise DispatchFailure(f"sms dispatcher cannot deliver to {channel.value}")
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        payload = {"to": identifier, "from": self.sender_id, "message": message}
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post(
                    self.gateway_url, json=payload, headers=headers
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "sms_gateway_http_error",
                identifier=identifier,
                status_code=exc.response.status_code,
            )
            raise DispatchFailure(
                "sms gateway rejected the message",
                detail={"status_code": exc.response.status_code},
            ) from exc
        except httpx.HTTPError as exc:
            logger.error(
                "sms_gateway_unreachable",
                identifier=identifier,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise DispatchFailure("sms gateway unreachable") from exc
        logger.info("sms_sent", identifier=identifier)


class EmailDispatcher:
    """Adapts the blocking ``EmailService`` to the async dispatcher contract."""

    def __init__(self, email_service: EmailService, *, subject: str) -> None:
        self.email_service = email_service
        self.subject = subject

    async def send(self, channel: Channel, identifier: str, message: str) -> None:
        if channel != Channel.EMAIL:
            raise DispatchFailure(f"email dispatcher cannot deliver to {channel.value}")
        sent = await asyncio.to_thread(
            self.email_service.send, identifier, self.subject, message
        )
        if not sent:
            raise DispatchFailure("email delivery failed")


class ChannelDispatcher:
    """Routes each message to the dispatcher registered for its channel."""

    def __init__(self, routes: Dict[Channel, Dispatcher]) -> None:
        self.routes = dict(routes)

    async def send(self, channel: Channel, identifier: str, message: str) -> None:
        dispatcher = self.routes.get(channel)
        if dispatcher is None:
            logger.error("dispatch_channel_unconfigured", channel=channel.value)
            raise DispatchFailure(f"no dispatcher configured for {channel.value}")
        await dispatcher.send(channel, identifier, message)
