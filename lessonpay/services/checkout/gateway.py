"""Gateway adapters: the narrow boundary around the hosted checkout.

Every `initiate` ends in exactly one of two signals, approval or dismissal.
Gateway errors never surface as a third signal; they are logged, counted and
turned into a dismissal.
"""

import asyncio
import random
import time
from typing import Any, Callable

from lessonpay.common.config import settings
from lessonpay.common.errors import GatewayError
from lessonpay.common.logging import logger
from lessonpay.common.metrics import gateway_errors_total
from lessonpay.services.checkout.schemas import GatewayResult, PaymentConfig

ApprovedHook = Callable[[GatewayResult], None]
DismissedHook = Callable[..., None]


class CheckoutHooks:
    """One-shot wrapper around the controller's two continuation hooks."""

    def __init__(
        self,
        reference: str,
        gateway: str,
        on_approved: ApprovedHook,
        on_dismissed: DismissedHook,
    ) -> None:
        self.reference = reference
        self.gateway = gateway
        self._on_approved = on_approved
        self._on_dismissed = on_dismissed
        self._fired = False

    def _claim(self, signal: str) -> bool:
        if self._fired:
            logger.warning("late gateway signal ignored reference=%s signal=%s", self.reference, signal)
            return False
        self._fired = True
        return True

    def approve(self, result: GatewayResult) -> bool:
        if not self._claim("approved"):
            return False
        self._on_approved(result)
        return True

    def dismiss(self, error: str | None = None) -> bool:
        if not self._claim("dismissed"):
            return False
        if error is None:
            self._on_dismissed()
        else:
            self._on_dismissed(error=error)
        return True

    def fail(self, exc: BaseException) -> bool:
        """Normalize a gateway failure into a dismissal carrying the error detail."""

        detail = str(exc) or exc.__class__.__name__
        logger.warning("gateway error reference=%s gateway=%s error=%s", self.reference, self.gateway, detail)
        gateway_errors_total.labels(service=settings.service_name, gateway=self.gateway).inc()
        return self.dismiss(error=detail)


class GatewayAdapter:
    """Base adapter; subclasses open the actual checkout in `_launch`."""

    name = "gateway"

    def initiate(self, config: PaymentConfig, on_approved: ApprovedHook, on_dismissed: DismissedHook) -> None:
        hooks = CheckoutHooks(config.reference, self.name, on_approved, on_dismissed)
        try:
            self._launch(config, hooks)
        except Exception as exc:
            hooks.fail(exc)

    def _launch(self, config: PaymentConfig, hooks: CheckoutHooks) -> None:
        raise NotImplementedError

    def release(self, reference: str) -> None:
        """Drop whatever the adapter still holds for a finished checkout."""

    def close(self) -> None:
        """Drop all pending checkouts on shutdown."""


class HostedCheckoutAdapter(GatewayAdapter):
    """Hosted checkout driven by the client SDK.

    `initiate` only registers the pending checkout. The browser opens the
    gateway modal with the config returned by the API and reports back through
    the approve/dismiss routes, which land in `approve` and `dismiss` here.
    """

    def __init__(self, name: str = "paystack") -> None:
        self.name = name
        self._pending: dict[str, tuple[PaymentConfig, CheckoutHooks]] = {}

    def _launch(self, config: PaymentConfig, hooks: CheckoutHooks) -> None:
        self._pending[config.reference] = (config, hooks)
        logger.info("hosted checkout opened reference=%s gateway=%s", config.reference, self.name)

    def pending_config(self, reference: str) -> PaymentConfig:
        return self._pending[reference][0]

    def is_pending(self, reference: str) -> bool:
        return reference in self._pending

    def release(self, reference: str) -> None:
        self._pending.pop(reference, None)

    def close(self) -> None:
        self._pending.clear()

    def approve(self, reference: str, payload: dict[str, Any]) -> None:
        """Forward a client-reported approval. Raises KeyError for unknown references."""

        _, hooks = self._pending.pop(reference)
        data = {"reference": reference}
        data.update({key: value for key, value in payload.items() if value is not None})
        try:
            result = GatewayResult.model_validate(data)
        except ValueError as exc:
            hooks.fail(GatewayError(f"malformed gateway result: {exc}"))
            return
        hooks.approve(result)

    def dismiss(self, reference: str, error: str | None = None) -> None:
        """Forward a close/cancel, or a gateway-side error, for one checkout."""

        _, hooks = self._pending.pop(reference)
        if error:
            hooks.fail(GatewayError(error))
        else:
            hooks.dismiss()


class SimulatedGatewayAdapter(GatewayAdapter):
    """Demo gateway: approves after a delay with a configurable success rate.

    Buyer ids starting with `force-dismiss` or `force-error` pin the outcome,
    which keeps demos and tests deterministic.
    """

    name = "simulated"

    def __init__(
        self,
        delay_seconds: float = 3.0,
        success_rate: float = 0.8,
        rng: random.Random | None = None,
    ) -> None:
        self.delay_seconds = delay_seconds
        self.success_rate = success_rate
        self._rng = rng or random.Random()
        self._tasks: set[asyncio.Task] = set()

    def _launch(self, config: PaymentConfig, hooks: CheckoutHooks) -> None:
        task = asyncio.get_running_loop().create_task(self._run(config, hooks))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, config: PaymentConfig, hooks: CheckoutHooks) -> None:
        try:
            await asyncio.sleep(self.delay_seconds)
            buyer_id = config.metadata.get("buyer_id", "").lower()
            if buyer_id.startswith("force-dismiss"):
                hooks.dismiss()
                return
            if buyer_id.startswith("force-error") or self._rng.random() >= self.success_rate:
                raise GatewayError("Payment failed. Please check your card details and try again.")
            hooks.approve(
                GatewayResult(
                    reference=config.reference,
                    transaction_id=f"TXN_{time.time_ns() // 1_000_000}",
                    status="success",
                    message="Payment successful",
                )
            )
        except Exception as exc:
            hooks.fail(exc)

    def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
