"""HTTP surface for lesson checkouts.

`POST /checkouts` opens a checkout and returns the gateway config the browser
needs to launch the hosted payment modal. The modal's success/close callbacks
come back through the approve/dismiss routes; the outcome is only GRANTED
after server-side verification.
"""

from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, Header, HTTPException

from lessonpay.common.config import settings
from lessonpay.common.errors import PaymentInProgressError
from lessonpay.common.logging import configure_logging, trace_id_ctx
from lessonpay.common.metrics import metrics_response
from lessonpay.common.startup import log_startup_config
from lessonpay.common.tracing import instrument_app, setup_tracing
from lessonpay.services.checkout.gateway import GatewayAdapter, HostedCheckoutAdapter, SimulatedGatewayAdapter
from lessonpay.services.checkout.schemas import (
    CheckoutCreateRequest,
    CheckoutResponse,
    GatewayApproval,
    GatewayDismissal,
)
from lessonpay.services.checkout.service import CheckoutRegistry, PaymentFlowController
from lessonpay.services.checkout.sink import sink_from_settings
from lessonpay.services.checkout.verification import VerificationClient

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    [
        "SERVICE_NAME",
        "GATEWAY_MODE",
        "VERIFICATION_URL",
        "VERIFICATION_FALLBACK",
        "VERIFICATION_TIMEOUT_SECONDS",
        "GRANT_WEBHOOK_URL",
    ],
)


def build_gateway() -> GatewayAdapter:
    if settings.gateway_mode == "simulated":
        return SimulatedGatewayAdapter()
    return HostedCheckoutAdapter(settings.gateway_name)


gateway = build_gateway()
verifier = VerificationClient.from_settings()
sink = sink_from_settings()
registry = CheckoutRegistry(lambda: PaymentFlowController(gateway, verifier, sink), settings.checkout_retention)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Cancel checkouts still in flight and drop pending gateway state on shutdown."""

    yield
    await registry.aclose()
    gateway.close()


app = FastAPI(title="Lesson Checkout", lifespan=lifespan)
instrument_app(app)


def _bind_trace(x_trace_id: str | None) -> None:
    trace_id_ctx.set(x_trace_id or str(uuid4()))


def _response(controller: PaymentFlowController, reference: str) -> CheckoutResponse:
    attempt = controller.attempt
    outcome = controller.last_outcome
    if outcome is not None and outcome.reference != reference:
        outcome = None
    return CheckoutResponse(reference=reference, status=attempt.status, config=controller.config, outcome=outcome)


def _hosted_gateway() -> HostedCheckoutAdapter:
    if not isinstance(gateway, HostedCheckoutAdapter):
        raise HTTPException(status_code=409, detail="gateway does not accept client callbacks")
    return gateway


@app.post("/checkouts", response_model=CheckoutResponse, status_code=201)
async def create_checkout(req: CheckoutCreateRequest, x_trace_id: str | None = Header(default=None)):
    """Open a checkout for one buyer and lesson."""

    _bind_trace(x_trace_id)
    try:
        item = req.item.to_item(settings.default_currency)
    except (TypeError, ValueError) as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    try:
        controller = registry.start(req.buyer, item, req.metadata)
    except PaymentInProgressError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return _response(controller, controller.attempt.reference)


@app.post("/checkouts/{reference}/approve", response_model=CheckoutResponse, status_code=202)
async def approve_checkout(reference: str, req: GatewayApproval, x_trace_id: str | None = Header(default=None)):
    """Client SDK reported success. Verification decides the outcome."""

    _bind_trace(x_trace_id)
    hosted = _hosted_gateway()
    try:
        hosted.approve(reference, req.model_dump())
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="checkout not awaiting a gateway result") from exc
    return _response(registry.lookup(reference), reference)


@app.post("/checkouts/{reference}/dismiss", response_model=CheckoutResponse, status_code=202)
async def dismiss_checkout(
    reference: str,
    req: GatewayDismissal | None = None,
    x_trace_id: str | None = Header(default=None),
):
    """Client SDK reported the modal was closed, or failed with an error."""

    _bind_trace(x_trace_id)
    hosted = _hosted_gateway()
    try:
        hosted.dismiss(reference, req.error if req else None)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="checkout not awaiting a gateway result") from exc
    return _response(registry.lookup(reference), reference)


@app.get("/checkouts/{reference}", response_model=CheckoutResponse)
def get_checkout(reference: str):
    """Current status, plus the outcome once terminal."""

    try:
        controller = registry.lookup(reference)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="checkout not found") from exc
    return _response(controller, reference)


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
