"""
Delegated Payment API Endpoint

POST /agentic_commerce/delegate_payment

Tokenizes a card credential and stores it in the vault behind a single-use
vt_* token bound to an allowance. Requires API-Version 2025-09-29.

The card number is handed to the credential tokenizer only; it is never
logged, stored or echoed back.
"""
import logging
from datetime import datetime
from typing import Optional, Union

from fastapi import APIRouter, Depends, Request, Response

from ..exceptions import InvalidRequestError
from ..mocks.credential_tokenizer import TokenizationError, redact, tokenize_card
from ..models.delegated_payment import DelegatePaymentRequest
from ..services.container import ServiceContainer
from .dependencies import ProtocolContext, delegate_payment_headers, get_services
from .idempotency import run_idempotent

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/agentic_commerce", tags=["delegated_payment"])


def check_card_expiry(
    exp_month: Optional[Union[str, int]],
    exp_year: Optional[Union[str, int]],
    now: datetime
) -> None:
    """
    Reject out-of-range or past expiry dates.

    A card stays valid through the last day of its expiry month. Nothing is
    checked unless both month and year are present.

    Raises:
        InvalidRequestError: code invalid_card, param payment_method.exp_month
    """
    if not exp_month or not exp_year:
        return

    try:
        month = int(exp_month)
        year = int(exp_year)
    except ValueError:
        raise InvalidRequestError(
            "Invalid expiry date", param="payment_method.exp_month", code="invalid_card"
        )

    if year < 100:
        year += 2000

    if month < 1 or month > 12:
        raise InvalidRequestError(
            "Invalid expiry date (exp_month must be 01-12)",
            param="payment_method.exp_month",
            code="invalid_card",
        )

    if (year, month) < (now.year, now.month):
        raise InvalidRequestError(
            "Card has expired", param="payment_method.exp_month", code="invalid_card"
        )


@router.post("/delegate_payment", status_code=201)
async def delegate_payment(
    request: Request,
    payload: DelegatePaymentRequest,
    ctx: ProtocolContext = Depends(delegate_payment_headers),
    services: ServiceContainer = Depends(get_services)
) -> Response:
    """
    Issue a delegated payment token.

    Request Body:
        payment_method: card credential (type, card_number_type, number, ...)
        allowance: {reason, max_amount, currency, checkout_session_id,
                    merchant_id, expires_at}
        billing_address: optional
        risk_signals: non-empty list
        metadata: object echoed in the response

    Returns:
        201 {id: "vt_...", created, metadata}

    Errors:
        400 invalid_card: expired card or tokenizer rejection
        400 invalid_request: allowance rejected (param names the field)
    """
    allowance = payload.allowance
    logger.info(
        f"Delegate payment for session {allowance.checkout_session_id}, "
        f"max_amount={allowance.max_amount} {allowance.currency} (request_id={ctx.request_id})"
    )

    async def handler():
        card = payload.payment_method
        check_card_expiry(card.exp_month, card.exp_year, services.clock())

        billing_address = payload.billing_address.model_dump() if payload.billing_address else None
        try:
            processor_token = tokenize_card(
                card.number,
                exp_month=card.exp_month,
                exp_year=card.exp_year,
                cvc=card.cvc,
                name=card.name,
                billing_address=billing_address,
            )
        except TokenizationError as e:
            safe_error = redact(str(e))
            logger.warning(f"Card tokenization failed: {safe_error}")
            raise InvalidRequestError(
                f"Card tokenization failed: {safe_error}",
                param="payment_method.number",
                code="invalid_card",
            )

        result = await services.vault.issue(
            processor_token,
            allowance,
            payment_method=card.redacted(),
            billing_address=billing_address,
            risk_signals=[signal.model_dump() for signal in payload.risk_signals],
            metadata=payload.metadata,
        )
        return 201, result.model_dump(mode="json")

    return await run_idempotent(
        request, services.idempotency, "delegate_payment", ctx.idempotency_key, handler
    )
