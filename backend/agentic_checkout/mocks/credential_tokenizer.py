"""
Mock Credential Tokenizer

Simulates card-network tokenization for the delegated payment endpoint.
Turns raw card data into an opaque processor token (tok_*).

Credential Tokenizer role: the only component that ever sees the card
number. Callers keep the returned token and nothing else.
"""
import hashlib
import re
import uuid
from typing import Dict, Any, Optional


class TokenizationError(Exception):
    """Card rejected by the tokenizer."""


# Test card numbers that trigger specific behaviors
REJECTED_CARDS = {
    "4000000000000002": "Your card was declined.",
    "4000000000000069": "Your card has expired.",
    "4000000000000127": "Your card's security code is incorrect.",
}


def _luhn_valid(number: str) -> bool:
    total = 0
    for index, char in enumerate(reversed(number)):
        digit = int(char)
        if index % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit
    return total % 10 == 0


def redact(message: str) -> str:
    """Mask any run of four or more digits before it reaches a log or a client."""
    return re.sub(r"\d{4,}", "****", message)


def tokenize_card(
    number: str,
    exp_month: Optional[int] = None,
    exp_year: Optional[int] = None,
    cvc: Optional[str] = None,
    name: Optional[str] = None,
    billing_address: Optional[Dict[str, Any]] = None
) -> str:
    """
    Tokenize a card credential.

    Args:
        number: Card number (FPAN or network token)
        exp_month: Expiry month
        exp_year: Expiry year
        cvc: Card security code
        name: Cardholder name
        billing_address: Optional billing address dict

    Returns:
        Opaque processor token (tok_*)

    Raises:
        TokenizationError: If the card number is malformed or a rejected test card

    Mock Behavior:
    - Non-digit or Luhn-invalid numbers are rejected
    - REJECTED_CARDS trigger their specific messages
    - Token suffix is random so the token cannot be derived from the card
    """
    digits = number.replace(" ", "")
    if not digits.isdigit() or not 12 <= len(digits) <= 19:
        raise TokenizationError(f"Invalid card number {digits}")
    if digits in REJECTED_CARDS:
        raise TokenizationError(REJECTED_CARDS[digits])
    if not _luhn_valid(digits):
        raise TokenizationError(f"Card number {digits} failed checksum")

    fingerprint = hashlib.sha256(digits.encode()).hexdigest()[:8]
    return f"tok_{fingerprint}{uuid.uuid4().hex[:16]}"
