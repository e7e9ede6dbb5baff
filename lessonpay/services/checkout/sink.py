"""Outcome sinks: where confirmed grants go to unlock the purchased lesson."""

import asyncio
from typing import Protocol

import httpx

from lessonpay.common.config import settings
from lessonpay.common.logging import logger
from lessonpay.services.checkout.schemas import Outcome


class OutcomeSink(Protocol):
    async def deliver(self, outcome: Outcome) -> None:
        ...


def validate_grant(outcome: Outcome) -> None:
    """Schema/semantic validation of a grant before any sink acts on it."""

    if outcome.kind != "GRANTED":
        raise ValueError(f"only GRANTED outcomes can be delivered, got {outcome.kind}")
    if not outcome.verified:
        raise ValueError("grant is not verified")
    if not outcome.buyer_id or not outcome.item_id:
        raise ValueError("grant is missing buyer_id or item_id")
    if not isinstance(outcome.amount_minor_units, int) or outcome.amount_minor_units <= 0:
        raise ValueError("invalid amount_minor_units")
    if f"_{outcome.item_id}_{outcome.buyer_id}_" not in outcome.reference:
        raise ValueError(f"reference {outcome.reference} does not belong to this buyer/item")


class LoggingOutcomeSink:
    """Default sink: records the grant in the service log."""

    async def deliver(self, outcome: Outcome) -> None:
        validate_grant(outcome)
        logger.info(
            "access granted reference=%s buyer_id=%s item_id=%s amount_minor_units=%s currency=%s",
            outcome.reference,
            outcome.buyer_id,
            outcome.item_id,
            outcome.amount_minor_units,
            outcome.currency,
        )


class WebhookOutcomeSink:
    """Posts the grant to the access-granting system."""

    def __init__(self, url: str, timeout_seconds: float = 5.0, http_client: httpx.AsyncClient | None = None) -> None:
        self.url = url
        self.timeout_seconds = timeout_seconds
        self._http_client = http_client

    async def deliver(self, outcome: Outcome) -> None:
        """Post one grant. Raises on non-2xx or once `timeout_seconds` has elapsed in total."""

        validate_grant(outcome)
        resp = await asyncio.wait_for(self._post(outcome), self.timeout_seconds)
        resp.raise_for_status()

    async def _post(self, outcome: Outcome) -> httpx.Response:
        headers = {"x-payment-reference": outcome.reference}
        body = outcome.model_dump(mode="json")
        if self._http_client is not None:
            return await self._http_client.post(self.url, json=body, headers=headers, timeout=self.timeout_seconds)
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            return await client.post(self.url, json=body, headers=headers)


def sink_from_settings() -> OutcomeSink:
    if settings.grant_webhook_url:
        return WebhookOutcomeSink(settings.grant_webhook_url, settings.grant_webhook_timeout_seconds)
    return LoggingOutcomeSink()
