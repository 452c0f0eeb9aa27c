"""
Mock Payment Processor

Simulates charging an opaque processor token during checkout completion.
Deterministic: every token is approved except the decline test tokens.

Payment Processor role: receives a processor token and an amount, never
sees card data or cart contents.
"""
import hashlib
import uuid
from typing import Dict, Any, Optional

from ..timeutils import utcnow, isoformat


class ProcessorUnavailableError(Exception):
    """Processor could not be reached; the charge outcome is unknown."""


# Test tokens that trigger specific behaviors
DECLINE_TOKENS = {
    "tok_decline": "insufficient_funds",
    "tok_decline_fraud": "fraud_suspected",
    "tok_decline_expired": "card_expired",
    "tok_decline_invalid": "invalid_card",
}

UNAVAILABLE_TOKEN = "tok_processor_unavailable"


async def charge_payment(
    source: str,
    amount_cents: int,
    currency: str,
    metadata: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """
    Charge a tokenized payment credential.

    Args:
        source: Processor token (tok_*) or direct credential reference
        amount_cents: Amount in minor units
        currency: Lowercase ISO-4217 code
        metadata: Optional charge metadata (checkout_session_id, merchant_id)

    Returns:
        Charge result dictionary:
        - status: "succeeded" or "declined"
        - charge_id: Unique charge id if succeeded (ch_*)
        - decline_reason: Reason if declined
        - amount_cents, currency, processed_at, metadata

    Raises:
        ProcessorUnavailableError: For UNAVAILABLE_TOKEN
    """
    metadata = metadata or {}
    processed_at = isoformat(utcnow())

    if source == UNAVAILABLE_TOKEN:
        raise ProcessorUnavailableError("Payment processor timed out")

    if source in DECLINE_TOKENS:
        return {
            "status": "declined",
            "charge_id": None,
            "decline_reason": DECLINE_TOKENS[source],
            "processed_at": processed_at,
            "amount_cents": amount_cents,
            "currency": currency,
            "metadata": metadata,
        }

    digest = hashlib.sha256(f"{source}:{uuid.uuid4().hex}".encode()).hexdigest()[:24]
    return {
        "status": "succeeded",
        "charge_id": f"ch_{digest}",
        "decline_reason": None,
        "processed_at": processed_at,
        "amount_cents": amount_cents,
        "currency": currency,
        "metadata": metadata,
    }
