"""In-memory checkout attempt records.

An attempt lives only as long as its controller keeps it; nothing here is
persisted. The timeline is the audit trail of every state transition.
"""

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

from lessonpay.common.state_machine import INITIATED


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TimelineEntry(BaseModel):
    """One applied state transition."""

    from_state: str | None
    to_state: str
    reason: str
    at: datetime = Field(default_factory=_utcnow)


class PaymentAttempt(BaseModel):
    """Current state of one checkout attempt."""

    reference: str
    buyer_id: str
    buyer_email: str
    item_id: str
    amount_minor_units: int
    currency: str
    status: str = INITIATED
    gateway_payload: dict[str, Any] | None = None
    error_detail: str | None = None
    timeline: list[TimelineEntry] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)
