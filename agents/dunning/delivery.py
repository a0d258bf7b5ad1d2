"""Message delivery adapters.

The engine never talks to SMTP or SMS gateways itself. Rendered messages
are handed to a delivery service: the webhook adapter posts them to a
configured relay endpoint, the stdout adapter only prints an audit line
(dry run).
"""

from __future__ import annotations

import json
import logging
from urllib.parse import urlparse
from uuid import uuid4

import httpx

from backend.core.config import settings

from .dto import Channel
from .stores import DeliveryResult, RenderedMessage

logger = logging.getLogger(__name__)


class StdoutDeliveryService:
    name = "stdout"

    def send(
        self, channel: Channel, message: RenderedMessage, recipients: list[str]
    ) -> DeliveryResult:
        # Audit line only; content and addresses stay out of the output
        print(
            json.dumps(
                {
                    "transport": self.name,
                    "channel": channel.value,
                    "recipients": len(recipients),
                    "subject": message.subject,
                }
            )
        )
        return DeliveryResult(delivered=True, message_id=f"stdout-{uuid4()}")


def parse_success_codes(codes: str) -> set[int]:
    """Parse ``"200-299,304"`` style status code lists."""
    result: set[int] = set()
    for token in (codes or "").split(","):
        token = token.strip()
        if not token:
            continue
        try:
            if "-" in token:
                low, high = token.split("-", 1)
                result.update(range(int(low), int(high) + 1))
            else:
                result.add(int(token))
        except ValueError:
            continue
    return result or set(range(200, 300))


class WebhookDeliveryService:
    """POST rendered messages to a relay endpoint with a bounded timeout."""

    name = "webhook"

    def __init__(
        self,
        url: str | None = None,
        timeout_ms: int | None = None,
        success_codes: str | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.url = url if url is not None else settings.DUNNING_WEBHOOK_URL
        timeout_s = (timeout_ms or settings.DUNNING_DELIVERY_TIMEOUT_MS) / 1000.0
        self.timeout = httpx.Timeout(timeout_s)
        self.success_codes = parse_success_codes(
            success_codes if success_codes is not None else settings.DUNNING_WEBHOOK_SUCCESS_CODES
        )
        self.client = httpx.Client(
            timeout=self.timeout, verify=True, follow_redirects=False, transport=transport
        )

    def close(self) -> None:
        self.client.close()

    def send(
        self, channel: Channel, message: RenderedMessage, recipients: list[str]
    ) -> DeliveryResult:
        parsed = urlparse(self.url)
        if parsed.scheme.lower() != "https":
            return DeliveryResult(delivered=False, reason="unsupported_scheme")

        payload = {
            "channel": channel.value,
            "recipients": recipients,
            "subject": message.subject,
            "body": message.body,
            "reply_to": message.reply_to,
        }
        try:
            resp = self.client.post(self.url, json=payload)
        except httpx.TimeoutException:
            return DeliveryResult(delivered=False, reason="timeout")
        except httpx.HTTPError as e:
            return DeliveryResult(delivered=False, reason=f"transport_error: {e}")

        if resp.status_code not in self.success_codes:
            return DeliveryResult(delivered=False, reason=f"http_{resp.status_code}")

        message_id = None
        try:
            body = resp.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            message_id = body.get("message_id")
        return DeliveryResult(delivered=True, message_id=message_id)


def get_delivery_service(transport: str | None = None, timeout_ms: int | None = None):
    """Delivery service for the configured transport.

    ``timeout_ms`` bounds webhook calls; the process setting applies when
    it is not given.
    """
    name = (transport or settings.DUNNING_DELIVERY_TRANSPORT).lower()
    if name == "webhook":
        return WebhookDeliveryService(timeout_ms=timeout_ms)
    if name != "stdout":
        logger.warning("Unknown delivery transport, using stdout", extra={"transport": name})
    return StdoutDeliveryService()
