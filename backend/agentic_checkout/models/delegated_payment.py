"""
Pydantic Delegated Payment Models

Request/response bodies for POST /agentic_commerce/delegate_payment and the
stored delegated token as seen by the checkout flow.
"""
from datetime import datetime
from typing import Optional, Literal, List, Dict, Any, Union
from pydantic import BaseModel, Field, StrictInt

from .checkout import Address


class PaymentMethodCard(BaseModel):
    """
    Raw card credential sent by the agent's payment service.

    Only the display fields survive tokenization; number and cvc are handed
    to the credential tokenizer and never stored.
    """
    type: Literal["card"]
    card_number_type: Literal["fpan", "network_token"]
    number: str = Field(min_length=1)
    exp_month: Optional[Union[str, int]] = None
    exp_year: Optional[Union[str, int]] = None
    name: Optional[str] = None
    cvc: Optional[str] = None
    display_card_funding_type: Literal["credit", "debit", "prepaid"]
    display_brand: Optional[str] = None
    display_last4: Optional[str] = None
    display_wallet_type: Optional[str] = None
    metadata: Dict[str, Any]

    def redacted(self) -> Dict[str, Any]:
        """Card data that is safe to persist."""
        return {
            "type": self.type,
            "card_number_type": self.card_number_type,
            "display_brand": self.display_brand,
            "display_last4": self.display_last4 or self.number[-4:],
            "display_card_funding_type": self.display_card_funding_type,
            "display_wallet_type": self.display_wallet_type,
            "exp_month": self.exp_month,
            "exp_year": self.exp_year,
        }


class Allowance(BaseModel):
    """
    Usage constraints bound to a delegated token at issue time.

    Semantic checks (reason, positive amount, currency format, future
    expiry) are enforced by the vault, not here.
    """
    reason: str
    max_amount: StrictInt
    currency: str
    checkout_session_id: str = Field(min_length=1)
    merchant_id: str = Field(min_length=1)
    expires_at: datetime


class RiskSignal(BaseModel):
    type: str
    score: int
    action: Literal["blocked", "manual_review", "authorized"]


class DelegatePaymentRequest(BaseModel):
    payment_method: PaymentMethodCard
    allowance: Allowance
    billing_address: Optional[Address] = None
    risk_signals: List[RiskSignal] = Field(min_length=1)
    metadata: Dict[str, Any]


class DelegatePaymentResponse(BaseModel):
    id: str = Field(pattern="^vt_")
    created: datetime
    metadata: Dict[str, Any] = Field(default_factory=dict)


class DelegatedToken(BaseModel):
    """Stored vault token. wrapped_credential_ref is the processor token."""
    id: str = Field(pattern="^vt_")
    wrapped_credential_ref: str
    allowance: Allowance
    used: bool = False
    created_at: datetime
    used_at: Optional[datetime] = None
