"""
Pydantic Checkout Session Models for the Agentic Commerce Protocol

Request bodies, the checkout session document returned by every checkout
endpoint, and the payment reference decided at the request boundary.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Literal, List, Union
from pydantic import BaseModel, Field, model_validator


SessionStatus = Literal["not_ready_for_payment", "ready_for_payment", "completed", "canceled"]

OPEN_STATUSES = ("not_ready_for_payment", "ready_for_payment")
TERMINAL_STATUSES = ("completed", "canceled")

DELEGATED_TOKEN_PREFIX = "vt_"


# ==================== Nested Types ====================

class Item(BaseModel):
    """Item reference as sent by the agent."""
    id: str = Field(min_length=1)
    quantity: int = Field(gt=0)


class Address(BaseModel):
    """Structured fulfillment or billing address."""
    name: str
    line_one: str
    line_two: Optional[str] = None
    city: str
    state: str
    country: str
    postal_code: str


class Buyer(BaseModel):
    first_name: str
    last_name: Optional[str] = None
    email: str
    phone_number: Optional[str] = None


class LineItem(BaseModel):
    """Priced line item; all amounts in minor units."""
    id: str
    item: Item
    base_amount: int = Field(ge=0)
    discount: int = Field(ge=0)
    subtotal: int = Field(ge=0)
    tax: int = Field(ge=0)
    total: int = Field(ge=0)

    @model_validator(mode='after')
    def validate_line_total(self):
        """Ensure subtotal and total follow from base amount, discount and tax."""
        if self.subtotal != self.base_amount - self.discount:
            raise ValueError(
                f"Line subtotal {self.subtotal} != base({self.base_amount}) - discount({self.discount})"
            )
        if self.total != self.subtotal + self.tax:
            raise ValueError(
                f"Line total {self.total} != subtotal({self.subtotal}) + tax({self.tax})"
            )
        return self


class FulfillmentOption(BaseModel):
    """Shipping choice offered once an address is known."""
    type: Literal["shipping"] = "shipping"
    id: str
    title: str
    subtitle: Optional[str] = None
    carrier: Optional[str] = None
    earliest_delivery_time: datetime
    latest_delivery_time: datetime
    subtotal: int = Field(ge=0)
    tax: int = Field(ge=0)
    total: int = Field(ge=0)


TotalType = Literal[
    "items_base_amount",
    "items_discount",
    "subtotal",
    "discount",
    "fulfillment",
    "tax",
    "fee",
    "total",
]


class Total(BaseModel):
    type: TotalType
    display_text: str
    amount: int = Field(ge=0)


class Message(BaseModel):
    """
    Info or error message attached to a session.

    Error messages are blocking: a session carrying one can never be
    ready_for_payment.
    """
    type: Literal["info", "error"]
    code: Optional[str] = None
    param: Optional[str] = None
    content_type: Literal["plain", "markdown"] = "plain"
    content: str


class Link(BaseModel):
    type: Literal["terms_of_use", "privacy_policy", "seller_shop_policies"]
    url: str


class PaymentProvider(BaseModel):
    provider: str
    supported_payment_methods: List[str]


class OrderSummary(BaseModel):
    id: str
    checkout_session_id: str
    permalink_url: str


# ==================== Checkout Session ====================

class CheckoutSession(BaseModel):
    """
    Authoritative checkout session document.

    Invariants:
    - The "total" entry of totals equals subtotal - discount + fulfillment + tax + fee
    - order is present exactly when status is completed
    """
    id: str = Field(pattern="^cs_")
    buyer: Optional[Buyer] = None
    payment_provider: PaymentProvider
    status: SessionStatus
    currency: str = Field(pattern="^[a-z]{3}$")
    line_items: List[LineItem]
    fulfillment_address: Optional[Address] = None
    fulfillment_options: List[FulfillmentOption]
    fulfillment_option_id: Optional[str] = None
    totals: List[Total]
    messages: List[Message]
    links: List[Link]
    order: Optional[OrderSummary] = None
    created_at: datetime
    updated_at: datetime
    expires_at: datetime
    completed_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None

    @model_validator(mode='after')
    def validate_totals(self):
        amounts = {t.type: t.amount for t in self.totals}
        if "total" in amounts:
            expected = (
                amounts.get("subtotal", 0)
                - amounts.get("discount", 0)
                + amounts.get("fulfillment", 0)
                + amounts.get("tax", 0)
                + amounts.get("fee", 0)
            )
            if amounts["total"] != expected:
                raise ValueError(f"Total {amounts['total']} != computed {expected}")
        return self

    @model_validator(mode='after')
    def validate_order_presence(self):
        if (self.status == "completed") != (self.order is not None):
            raise ValueError(f"Order must be set exactly when status is completed (status={self.status})")
        return self

    def amount_of(self, total_type: str) -> int:
        for total in self.totals:
            if total.type == total_type:
                return total.amount
        return 0


# ==================== Requests ====================

class CreateCheckoutSessionRequest(BaseModel):
    items: List[Item] = Field(min_length=1)
    buyer: Optional[Buyer] = None
    fulfillment_address: Optional[Address] = None


class UpdateCheckoutSessionRequest(BaseModel):
    """Every field optional; omitted or null fields keep their prior value."""
    items: Optional[List[Item]] = Field(None, min_length=1)
    buyer: Optional[Buyer] = None
    fulfillment_address: Optional[Address] = None
    fulfillment_option_id: Optional[str] = None


class PaymentData(BaseModel):
    token: str = Field(min_length=1)
    provider: str = Field(min_length=1)
    billing_address: Optional[Address] = None


class CompleteCheckoutSessionRequest(BaseModel):
    payment_data: PaymentData
    buyer: Optional[Buyer] = None


# ==================== Payment Reference ====================

@dataclass(frozen=True)
class DelegatedPaymentReference:
    """Vault token that must be validated and consumed before charging."""
    token_id: str


@dataclass(frozen=True)
class DirectPaymentReference:
    """Processor credential charged as-is."""
    credential: str


PaymentReference = Union[DelegatedPaymentReference, DirectPaymentReference]


def payment_reference_from(payment_data: PaymentData) -> PaymentReference:
    """Classify the payment token once, at the protocol boundary."""
    if payment_data.token.startswith(DELEGATED_TOKEN_PREFIX):
        return DelegatedPaymentReference(token_id=payment_data.token)
    return DirectPaymentReference(credential=payment_data.token)
