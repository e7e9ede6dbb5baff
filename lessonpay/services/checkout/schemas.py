"""Checkout value objects exchanged between the controller and its collaborators."""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from lessonpay.common.money import to_minor_units


class PaymentChannel(str, Enum):
    """Payment methods offered inside the hosted checkout."""

    CARD = "card"
    BANK_TRANSFER = "bank_transfer"
    USSD = "ussd"
    MOBILE_MONEY = "mobile_money"


class Buyer(BaseModel):
    """The paying student."""

    id: str = Field(min_length=1)
    email: str = Field(min_length=3)


class Item(BaseModel):
    """A lesson offered for sale, priced in minor currency units."""

    id: str = Field(min_length=1)
    title: str = ""
    course_title: str = ""
    price_minor_units: int = Field(gt=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)


class ItemIn(BaseModel):
    """Item payload accepted over HTTP; `price` is in major units."""

    id: str = Field(min_length=1)
    title: str = ""
    course_title: str = ""
    price_minor_units: int | None = Field(default=None, gt=0)
    price: Decimal | None = Field(default=None, gt=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)

    @model_validator(mode="after")
    def _one_price(self) -> "ItemIn":
        if (self.price is None) == (self.price_minor_units is None):
            raise ValueError("provide exactly one of price or price_minor_units")
        return self

    def to_item(self, default_currency: str) -> Item:
        currency = (self.currency or default_currency).upper()
        minor = self.price_minor_units
        if minor is None:
            minor = to_minor_units(self.price, currency)
        return Item(
            id=self.id,
            title=self.title,
            course_title=self.course_title,
            price_minor_units=minor,
            currency=currency,
        )


class PaymentConfig(BaseModel):
    """Everything the hosted checkout needs to charge the buyer."""

    reference: str
    buyer_email: str
    amount_minor_units: int
    currency: str
    channels: set[PaymentChannel]
    metadata: dict[str, str] = Field(default_factory=dict)


class GatewayResult(BaseModel):
    """What the gateway reported on approval. Opaque beyond these fields."""

    model_config = ConfigDict(extra="allow")

    reference: str
    transaction_id: str
    status: str | None = None
    message: str | None = None


class VerificationResult(BaseModel):
    confirmed: bool
    detail: str
    error_code: str | None = None
    fallback_applied: bool = False


OutcomeKind = Literal["GRANTED", "FAILED", "CANCELLED"]


class Outcome(BaseModel):
    """Terminal result of one checkout attempt, delivered exactly once."""

    kind: OutcomeKind
    reference: str
    buyer_id: str
    item_id: str
    amount_minor_units: int
    currency: str
    gateway: str
    gateway_payload: dict[str, Any] | None = None
    verified: bool = False
    fallback_applied: bool = False
    detail: str | None = None
    error_code: str | None = None
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class CheckoutCreateRequest(BaseModel):
    buyer: Buyer
    item: ItemIn
    metadata: dict[str, str] = Field(default_factory=dict)


class CheckoutResponse(BaseModel):
    reference: str
    status: str
    config: PaymentConfig | None = None
    outcome: Outcome | None = None


class GatewayApproval(BaseModel):
    """Client-side SDK success callback forwarded to the server."""

    model_config = ConfigDict(extra="allow")

    transaction_id: str = Field(min_length=1)
    reference: str | None = None
    status: str | None = None
    message: str | None = None


class GatewayDismissal(BaseModel):
    error: str | None = None
