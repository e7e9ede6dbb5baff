"""Structured JSON logging with checkout attempt context fields.

Every record carries the trace id of the request that touched it plus the
reference and buyer of the checkout attempt being driven, so one attempt can
be followed from gateway initiation to its terminal outcome.
"""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator

from pythonjsonlogger.json import JsonFormatter

from lessonpay.common.config import settings


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
reference_ctx: ContextVar[str] = ContextVar("reference", default="")
buyer_id_ctx: ContextVar[str] = ContextVar("buyer_id", default="")


class ContextFilter(logging.Filter):
    """Inject service, trace and checkout attempt identifiers into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        record.trace_id = trace_id_ctx.get()
        record.reference = getattr(record, "reference", None) or reference_ctx.get()
        record.buyer_id = getattr(record, "buyer_id", None) or buyer_id_ctx.get()
        return True


@contextmanager
def bind_attempt(reference: str, buyer_id: str) -> Iterator[None]:
    """Scope log context to one checkout attempt and restore the outer one after."""

    reference_token = reference_ctx.set(reference)
    buyer_token = buyer_id_ctx.set(buyer_id)
    try:
        yield
    finally:
        buyer_id_ctx.reset(buyer_token)
        reference_ctx.reset(reference_token)


def configure_logging() -> None:
    """Configure root logger once per service process."""

    handler = logging.StreamHandler(sys.stdout)
    context_filter = ContextFilter()
    handler.addFilter(context_filter)
    formatter = JsonFormatter(
        "%(asctime)s %(levelname)s %(service_name)s %(trace_id)s %(reference)s %(buyer_id)s %(message)s",
        rename_fields={"levelname": "level"},
    )
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)
    root.addFilter(context_filter)
    # httpx logs every verification/webhook request at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)


logger = logging.getLogger("lessonpay")
