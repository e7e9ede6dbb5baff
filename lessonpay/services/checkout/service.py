"""Payment flow controller.

Drives one checkout attempt from INITIATED to exactly one terminal outcome:
opens the gateway, waits for its single approval/dismissal signal, confirms
approvals with the verification authority, then emits the outcome once and
hands grants to the outcome sink once. Client-reported approval alone never
grants access.
"""

import asyncio
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Callable

from lessonpay.common.config import settings
from lessonpay.common.errors import (
    GATEWAY_ERROR,
    GATEWAY_REFERENCE_MISMATCH,
    INTERNAL_FAULT,
    USER_CANCELLED,
    VERIFICATION_REJECTED,
    PaymentInProgressError,
)
from lessonpay.common.logging import bind_attempt, logger
from lessonpay.common.metrics import (
    checkout_attempts_total,
    checkout_e2e_seconds,
    checkout_outcomes_total,
    grant_delivery_failures_total,
)
from lessonpay.common.state_machine import (
    AWAITING_GATEWAY_RESULT,
    AWAITING_VERIFICATION,
    CANCELLED,
    FAILED,
    GRANTED,
    INITIATED,
    is_terminal,
    validate_transition,
)
from lessonpay.services.checkout.gateway import GatewayAdapter
from lessonpay.services.checkout.models import PaymentAttempt, TimelineEntry
from lessonpay.services.checkout.reference import ReferenceGenerator, generate_reference
from lessonpay.services.checkout.schemas import (
    Buyer,
    GatewayResult,
    Item,
    Outcome,
    OutcomeKind,
    PaymentChannel,
    PaymentConfig,
    VerificationResult,
)
from lessonpay.services.checkout.sink import OutcomeSink
from lessonpay.services.checkout.verification import VerificationClient

OutcomeListener = Callable[[Outcome], None]


class PaymentFlowController:
    """Owns the checkout state machine for one buyer.

    At most one attempt is in flight at a time; starting another while it is
    non-terminal raises `PaymentInProgressError`. Every start creates a fresh
    attempt with a fresh reference, so a retry never resumes an old attempt.
    """

    def __init__(
        self,
        gateway: GatewayAdapter,
        verifier: VerificationClient,
        sink: OutcomeSink,
        namespace: str | None = None,
        default_currency: str | None = None,
        channels: list[str] | None = None,
        references: ReferenceGenerator | None = None,
        on_outcome: OutcomeListener | None = None,
        service_name: str | None = None,
    ) -> None:
        self.gateway = gateway
        self.verifier = verifier
        self.sink = sink
        self.namespace = namespace or settings.reference_namespace
        self.default_currency = (default_currency or settings.default_currency).upper()
        self.channels = {PaymentChannel(channel) for channel in (channels or settings.payment_channels)}
        self._generate_reference = references.generate if references is not None else generate_reference
        self.on_outcome = on_outcome
        self.service_name = service_name or settings.service_name
        self._attempt: PaymentAttempt | None = None
        self._config: PaymentConfig | None = None
        self._last_outcome: Outcome | None = None

    @property
    def attempt(self) -> PaymentAttempt | None:
        return self._attempt

    @property
    def config(self) -> PaymentConfig | None:
        return self._config

    @property
    def last_outcome(self) -> Outcome | None:
        return self._last_outcome

    @property
    def in_flight(self) -> bool:
        return self._attempt is not None and not is_terminal(self._attempt.status)

    def start_payment(self, buyer: Buyer, item: Item, metadata: dict[str, str] | None = None) -> asyncio.Future:
        """Open a new checkout and return a future resolving to its outcome.

        The future never raises for payment failures; they resolve to a
        FAILED or CANCELLED outcome. Must be called from a running event loop.
        """

        if self.in_flight:
            raise PaymentInProgressError(self._attempt.reference)
        loop = asyncio.get_running_loop()

        attempt = PaymentAttempt(
            reference=self._generate_reference(self.namespace, item.id, buyer.id),
            buyer_id=buyer.id,
            buyer_email=buyer.email,
            item_id=item.id,
            amount_minor_units=item.price_minor_units,
            currency=(item.currency or self.default_currency).upper(),
        )
        attempt.timeline.append(TimelineEntry(from_state=None, to_state=INITIATED, reason="checkout_started"))
        self._attempt = attempt
        self._config = None
        with bind_attempt(attempt.reference, buyer.id):
            checkout_attempts_total.labels(service=self.service_name).inc()
            logger.info("checkout started reference=%s item_id=%s", attempt.reference, item.id)

            gateway_signal: asyncio.Future = loop.create_future()

            def on_approved(result: GatewayResult) -> None:
                if not gateway_signal.done():
                    gateway_signal.set_result(("approved", result))

            def on_dismissed(error: str | None = None) -> None:
                if not gateway_signal.done():
                    gateway_signal.set_result(("dismissed", error))

            try:
                self._config = self._build_config(attempt, buyer, item, metadata)
                self._transition(attempt, AWAITING_GATEWAY_RESULT, "gateway_initiated")
                self.gateway.initiate(self._config, on_approved, on_dismissed)
            except Exception:
                logger.exception("checkout could not be initiated reference=%s", attempt.reference)
                done: asyncio.Future = loop.create_future()
                done.set_result(self._fail(attempt, "internal error", INTERNAL_FAULT))
                return done

            # The task copies the bound context, so its logs carry the attempt.
            task = loop.create_task(self._run(attempt, gateway_signal))
        task.add_done_callback(lambda finished: self._finalize_cancelled(attempt, finished))
        return task

    def _finalize_cancelled(self, attempt: PaymentAttempt, task: asyncio.Task) -> None:
        # A task cancelled before its first step never enters `_run`.
        if task.cancelled() and not is_terminal(attempt.status):
            self._fail(attempt, "checkout interrupted", INTERNAL_FAULT)

    def _build_config(
        self, attempt: PaymentAttempt, buyer: Buyer, item: Item, metadata: dict[str, str] | None
    ) -> PaymentConfig:
        merged = dict(metadata or {})
        merged.update({"buyer_id": buyer.id, "item_id": item.id})
        if item.title:
            merged["item_title"] = item.title
        if item.course_title:
            merged["course_title"] = item.course_title
        return PaymentConfig(
            reference=attempt.reference,
            buyer_email=buyer.email,
            amount_minor_units=attempt.amount_minor_units,
            currency=attempt.currency,
            channels=set(self.channels),
            metadata=merged,
        )

    async def _run(self, attempt: PaymentAttempt, gateway_signal: asyncio.Future) -> Outcome:
        try:
            signal, value = await gateway_signal
            if signal == "dismissed":
                return self._cancel(attempt, value)
            return await self._verify_and_grant(attempt, value)
        except asyncio.CancelledError:
            if not is_terminal(attempt.status):
                self._fail(attempt, "checkout interrupted", INTERNAL_FAULT)
            raise
        except Exception:
            logger.exception("checkout internal fault reference=%s status=%s", attempt.reference, attempt.status)
            if not is_terminal(attempt.status):
                return self._fail(attempt, "internal error", INTERNAL_FAULT)
            return await self._settle(attempt)

    async def _settle(self, attempt: PaymentAttempt) -> Outcome:
        """Outcome for an attempt whose terminal transition landed before a fault."""

        if self._last_outcome is not None and self._last_outcome.reference == attempt.reference:
            return self._last_outcome
        if attempt.status == GRANTED:
            outcome = self._outcome_for(attempt, "GRANTED", verified=True, detail=attempt.error_detail)
            self._emit(attempt, outcome)
            await self._deliver(outcome)
            return outcome
        outcome = self._outcome_for(
            attempt,
            attempt.status,
            detail=attempt.error_detail or "internal error",
            error_code=INTERNAL_FAULT,
        )
        self._emit(attempt, outcome)
        return outcome

    async def _verify_and_grant(self, attempt: PaymentAttempt, result: GatewayResult) -> Outcome:
        attempt.gateway_payload = result.model_dump()
        if result.reference != attempt.reference:
            logger.warning(
                "gateway approval for foreign reference reported=%s expected=%s",
                result.reference,
                attempt.reference,
            )
            return self._fail(
                attempt,
                f"gateway reported reference {result.reference} for checkout {attempt.reference}",
                GATEWAY_REFERENCE_MISMATCH,
            )

        self._transition(attempt, AWAITING_VERIFICATION, "gateway_approved")
        verification: VerificationResult = await self.verifier.verify(attempt.reference)
        if not verification.confirmed:
            return self._fail(attempt, verification.detail, verification.error_code or VERIFICATION_REJECTED)

        reason = "verification_fallback" if verification.fallback_applied else "verification_confirmed"
        self._transition(attempt, GRANTED, reason)
        outcome = self._outcome_for(
            attempt,
            "GRANTED",
            verified=True,
            fallback_applied=verification.fallback_applied,
            detail=verification.detail,
        )
        self._emit(attempt, outcome)
        await self._deliver(outcome)
        return outcome

    def _cancel(self, attempt: PaymentAttempt, error: str | None) -> Outcome:
        error_code = GATEWAY_ERROR if error else USER_CANCELLED
        self._transition(attempt, CANCELLED, error_code.lower())
        outcome = self._outcome_for(
            attempt,
            "CANCELLED",
            detail=error or "checkout dismissed by user",
            error_code=error_code,
        )
        self._emit(attempt, outcome)
        return outcome

    def _fail(self, attempt: PaymentAttempt, detail: str, error_code: str) -> Outcome:
        attempt.error_detail = detail
        self._transition(attempt, FAILED, error_code.lower())
        outcome = self._outcome_for(attempt, "FAILED", detail=detail, error_code=error_code)
        self._emit(attempt, outcome)
        return outcome

    def _transition(self, attempt: PaymentAttempt, new_status: str, reason: str) -> None:
        """Apply one validated transition and record it on the timeline."""

        validate_transition(attempt.status, new_status)
        from_status = attempt.status
        attempt.status = new_status
        attempt.timeline.append(TimelineEntry(from_state=from_status, to_state=new_status, reason=reason))
        logger.info("transition reference=%s %s -> %s reason=%s", attempt.reference, from_status, new_status, reason)

    def _outcome_for(self, attempt: PaymentAttempt, kind: OutcomeKind, **fields: Any) -> Outcome:
        return Outcome(
            kind=kind,
            reference=attempt.reference,
            buyer_id=attempt.buyer_id,
            item_id=attempt.item_id,
            amount_minor_units=attempt.amount_minor_units,
            currency=attempt.currency,
            gateway=self.gateway.name,
            gateway_payload=attempt.gateway_payload,
            **fields,
        )

    def _emit(self, attempt: PaymentAttempt, outcome: Outcome) -> None:
        """Record the terminal outcome and notify the listener, once per attempt."""

        if self._last_outcome is not None and self._last_outcome.reference == attempt.reference:
            logger.error("duplicate outcome suppressed reference=%s kind=%s", attempt.reference, outcome.kind)
            return
        self._last_outcome = outcome
        self.gateway.release(attempt.reference)
        checkout_outcomes_total.labels(service=self.service_name, kind=outcome.kind).inc()
        elapsed = max(0.0, (datetime.now(timezone.utc) - attempt.created_at).total_seconds())
        checkout_e2e_seconds.labels(service=self.service_name, terminal_state=attempt.status).observe(elapsed)
        logger.info(
            "checkout finished reference=%s kind=%s error_code=%s detail=%s",
            attempt.reference,
            outcome.kind,
            outcome.error_code,
            outcome.detail,
        )
        if self.on_outcome is not None:
            try:
                self.on_outcome(outcome)
            except Exception:
                logger.exception("outcome listener failed reference=%s", attempt.reference)

    async def _deliver(self, outcome: Outcome) -> None:
        try:
            await self.sink.deliver(outcome)
        except Exception:
            grant_delivery_failures_total.labels(service=self.service_name).inc()
            logger.exception("grant delivery failed reference=%s", outcome.reference)


class CheckoutRegistry:
    """Keeps one controller per buyer and maps live references back to them.

    Controllers whose attempt has finished are kept for status polling, up to
    `retain_finished` of them; the oldest finished ones are evicted first.
    In-flight controllers are never evicted.
    """

    def __init__(
        self,
        controller_factory: Callable[[], PaymentFlowController],
        retain_finished: int | None = None,
    ) -> None:
        self._factory = controller_factory
        self.retain_finished = settings.checkout_retention if retain_finished is None else retain_finished
        self._controllers: dict[str, PaymentFlowController] = {}
        self._buyer_by_reference: dict[str, str] = {}
        self._finished: OrderedDict[str, None] = OrderedDict()
        self._tasks: set[asyncio.Future] = set()

    def __len__(self) -> int:
        return len(self._controllers)

    def start(self, buyer: Buyer, item: Item, metadata: dict[str, str] | None = None) -> PaymentFlowController:
        controller = self._controllers.get(buyer.id)
        if controller is None:
            controller = self._factory()
            self._controllers[buyer.id] = controller
        previous = controller.attempt
        future = controller.start_payment(buyer, item, metadata)
        self._finished.pop(buyer.id, None)
        if previous is not None:
            self._buyer_by_reference.pop(previous.reference, None)
        self._buyer_by_reference[controller.attempt.reference] = buyer.id
        self._tasks.add(future)
        future.add_done_callback(self._tasks.discard)
        future.add_done_callback(lambda _: self._mark_finished(buyer.id))
        return controller

    def lookup(self, reference: str) -> PaymentFlowController:
        """Controller whose current attempt has `reference`. Raises KeyError otherwise."""

        return self._controllers[self._buyer_by_reference[reference]]

    def _mark_finished(self, buyer_id: str) -> None:
        controller = self._controllers.get(buyer_id)
        if controller is None or controller.in_flight:
            return
        self._finished[buyer_id] = None
        self._finished.move_to_end(buyer_id)
        while len(self._finished) > self.retain_finished:
            evicted, _ = self._finished.popitem(last=False)
            self._evict(evicted)

    def _evict(self, buyer_id: str) -> None:
        controller = self._controllers.pop(buyer_id, None)
        if controller is not None and controller.attempt is not None:
            self._buyer_by_reference.pop(controller.attempt.reference, None)

    async def aclose(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
