"""Server-side confirmation of gateway-reported payments.

The authority answers `POST {"reference": ...}` with `{"success": bool,
"message": str}`. A `success=false` answer is authoritative. Anything that is
not an answer (timeout, transport error, 5xx, unparseable body) counts as the
authority being unreachable, and the configured fallback policy decides.
"""

import asyncio
import time
from typing import Literal

import httpx

from lessonpay.common.config import settings
from lessonpay.common.errors import VERIFICATION_REJECTED, VERIFICATION_UNREACHABLE, VerificationUnreachable
from lessonpay.common.logging import logger
from lessonpay.common.metrics import retries_total, verification_fallback_total, verification_latency_seconds
from lessonpay.common.tracing import get_tracer
from lessonpay.services.checkout.schemas import VerificationResult

FallbackPolicy = Literal["strict", "permissive"]

tracer = get_tracer(__name__)


class VerificationClient:
    """Confirms references against the verification authority.

    Stateless: every call asks the authority again, so repeated calls for the
    same reference are safe and agree whenever the authority does.
    """

    def __init__(
        self,
        url: str | None,
        fallback: FallbackPolicy = "strict",
        timeout_seconds: float = 10.0,
        max_attempts: int = 1,
        backoff_seconds: float = 0.5,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if fallback not in ("strict", "permissive"):
            raise ValueError(f"unknown verification fallback policy: {fallback!r}")
        self.url = url
        self.fallback = fallback
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self._http_client = http_client

    @classmethod
    def from_settings(cls) -> "VerificationClient":
        return cls(
            url=settings.verification_url,
            fallback=settings.verification_fallback,
            timeout_seconds=settings.verification_timeout_seconds,
            max_attempts=settings.verification_max_attempts,
            backoff_seconds=settings.verification_backoff_seconds,
        )

    async def verify(self, reference: str) -> VerificationResult:
        with tracer.start_as_current_span("verification.verify") as span:
            span.set_attribute("payment.reference", reference)
            try:
                success, message = await self._ask_with_retries(reference)
            except VerificationUnreachable as exc:
                result = self._apply_fallback(reference, str(exc))
            else:
                if success:
                    result = VerificationResult(confirmed=True, detail=message or "verified")
                else:
                    logger.info("verification rejected reference=%s detail=%s", reference, message)
                    result = VerificationResult(
                        confirmed=False,
                        detail=message or "verification rejected",
                        error_code=VERIFICATION_REJECTED,
                    )
            span.set_attribute("verification.confirmed", result.confirmed)
            span.set_attribute("verification.fallback_applied", result.fallback_applied)
            return result

    async def _ask_with_retries(self, reference: str) -> tuple[bool, str]:
        if not self.url:
            raise VerificationUnreachable("no verification authority configured")
        last_error = "unknown"
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await self._ask(reference)
            except VerificationUnreachable as exc:
                last_error = str(exc)
                if attempt == self.max_attempts:
                    break
                retries_total.labels(service=settings.service_name, dependency="verification").inc()
                backoff_seconds = self.backoff_seconds * 2 ** (attempt - 1)
                logger.warning(
                    "verification unreachable reference=%s attempt=%s backoff_s=%s error=%s",
                    reference,
                    attempt,
                    backoff_seconds,
                    last_error,
                )
                await asyncio.sleep(backoff_seconds)
        raise VerificationUnreachable(last_error)

    async def _ask(self, reference: str) -> tuple[bool, str]:
        started = time.perf_counter()
        try:
            # httpx timeouts apply per read; the deadline caps the whole exchange.
            resp = await asyncio.wait_for(self._request(reference), self.timeout_seconds)
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise VerificationUnreachable(f"timed out after {self.timeout_seconds}s") from exc
        except httpx.HTTPError as exc:
            raise VerificationUnreachable(f"transport error: {exc.__class__.__name__}") from exc
        finally:
            verification_latency_seconds.labels(service=settings.service_name).observe(
                max(0.0, time.perf_counter() - started)
            )

        if resp.status_code >= 500:
            raise VerificationUnreachable(f"authority returned HTTP {resp.status_code}")
        try:
            body = resp.json()
        except ValueError as exc:
            raise VerificationUnreachable(f"unparseable response (HTTP {resp.status_code})") from exc
        if not isinstance(body, dict) or not isinstance(body.get("success"), bool):
            raise VerificationUnreachable(f"malformed response (HTTP {resp.status_code})")
        message = body.get("message")
        return body["success"], message if isinstance(message, str) else ""

    async def _request(self, reference: str) -> httpx.Response:
        if self._http_client is not None:
            return await self._post(self._http_client, reference)
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            return await self._post(client, reference)

    async def _post(self, client: httpx.AsyncClient, reference: str) -> httpx.Response:
        return await client.post(self.url, json={"reference": reference}, timeout=self.timeout_seconds)

    def _apply_fallback(self, reference: str, reason: str) -> VerificationResult:
        verification_fallback_total.labels(service=settings.service_name, policy=self.fallback).inc()
        if self.fallback == "permissive":
            logger.warning("verification skipped by permissive fallback reference=%s reason=%s", reference, reason)
            return VerificationResult(
                confirmed=True,
                detail=f"verification skipped: {reason}",
                fallback_applied=True,
            )
        logger.error("verification authority unreachable reference=%s reason=%s", reference, reason)
        return VerificationResult(
            confirmed=False,
            detail=f"verification authority unreachable: {reason}",
            error_code=VERIFICATION_UNREACHABLE,
        )
