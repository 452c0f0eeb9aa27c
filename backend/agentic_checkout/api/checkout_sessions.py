"""
Checkout Sessions API Endpoints

Agentic Commerce Protocol checkout surface:
- POST /checkout_sessions                 create (201)
- POST /checkout_sessions/{id}            update (200)
- GET  /checkout_sessions/{id}            retrieve (200)
- POST /checkout_sessions/{id}/complete   complete (201)
- POST /checkout_sessions/{id}/cancel     cancel (200)

Every POST is idempotent under an Idempotency-Key.
"""
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request, Response

from ..models.checkout import (
    CheckoutSession,
    CompleteCheckoutSessionRequest,
    CreateCheckoutSessionRequest,
    UpdateCheckoutSessionRequest,
    payment_reference_from,
)
from ..services.container import ServiceContainer
from .dependencies import ProtocolContext, checkout_headers, get_services
from .idempotency import run_idempotent

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/checkout_sessions", tags=["checkout"])


def session_body(session: CheckoutSession) -> Dict[str, Any]:
    return session.model_dump(mode="json", exclude_none=True)


@router.post("", status_code=201)
async def create_checkout_session(
    request: Request,
    payload: CreateCheckoutSessionRequest,
    ctx: ProtocolContext = Depends(checkout_headers),
    services: ServiceContainer = Depends(get_services)
) -> Response:
    """
    Create a checkout session from items, optional buyer and address.

    Returns:
        201 with the session; status is ready_for_payment only when items,
        address and shipping are all resolved
    """
    logger.info(f"Create checkout session: {len(payload.items)} items (request_id={ctx.request_id})")

    async def handler():
        session = await services.checkout.create(payload)
        return 201, session_body(session)

    return await run_idempotent(
        request, services.idempotency, "create_checkout_session", ctx.idempotency_key, handler
    )


@router.post("/{checkout_session_id}")
async def update_checkout_session(
    checkout_session_id: str,
    request: Request,
    payload: UpdateCheckoutSessionRequest,
    ctx: ProtocolContext = Depends(checkout_headers),
    services: ServiceContainer = Depends(get_services)
) -> Response:
    """Merge buyer, items, address or fulfillment option into the session."""
    async def handler():
        session = await services.checkout.update(checkout_session_id, payload)
        return 200, session_body(session)

    return await run_idempotent(
        request, services.idempotency, "update_checkout_session", ctx.idempotency_key, handler
    )


@router.get("/{checkout_session_id}")
async def get_checkout_session(
    checkout_session_id: str,
    ctx: ProtocolContext = Depends(checkout_headers),
    services: ServiceContainer = Depends(get_services)
) -> Dict[str, Any]:
    session = await services.checkout.get(checkout_session_id)
    return session_body(session)


@router.post("/{checkout_session_id}/complete", status_code=201)
async def complete_checkout_session(
    checkout_session_id: str,
    request: Request,
    payload: CompleteCheckoutSessionRequest,
    ctx: ProtocolContext = Depends(checkout_headers),
    services: ServiceContainer = Depends(get_services)
) -> Response:
    """
    Pay for the session and create the order.

    payment_data.token is either a delegated vault token (vt_*) or a
    processor credential charged directly. The amount charged is always
    the session total.
    """
    payment = payment_reference_from(payload.payment_data)
    logger.info(
        f"Complete checkout session {checkout_session_id} with "
        f"{type(payment).__name__} (request_id={ctx.request_id})"
    )

    async def handler():
        session = await services.checkout.complete(
            checkout_session_id,
            payment,
            buyer=payload.buyer,
            provider=payload.payment_data.provider,
        )
        return 201, session_body(session)

    return await run_idempotent(
        request, services.idempotency, "complete_checkout_session", ctx.idempotency_key, handler
    )


@router.post("/{checkout_session_id}/cancel")
async def cancel_checkout_session(
    checkout_session_id: str,
    request: Request,
    ctx: ProtocolContext = Depends(checkout_headers),
    services: ServiceContainer = Depends(get_services)
) -> Response:
    async def handler():
        session = await services.checkout.cancel(checkout_session_id)
        return 200, session_body(session)

    return await run_idempotent(
        request, services.idempotency, "cancel_checkout_session", ctx.idempotency_key, handler
    )
