"""
Checkout Session Service

Create, update, retrieve, complete and cancel checkout sessions.

State machine:
    create                      -> not_ready_for_payment | ready_for_payment
    update   [open]             -> recomputed open status
    complete [ready_for_payment]-> completed (order created)
    cancel   [open]             -> canceled
    cancel   [canceled]         -> canceled, same document
    any mutation [completed|canceled] -> session_already_finalized
    any access past expires_at  -> canceled; mutations fail with session_expired

Every read-modify-write runs under a per-session lock, so concurrent
updates to one session are applied one after another.
"""
import json
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..db.models import CheckoutSessionModel, OrderModel
from ..exceptions import (
    PaymentDeclinedError,
    ProcessingError,
    SessionExpiredError,
    SessionFinalizedError,
    SessionNotFoundError,
    SessionNotReadyError,
)
from ..mocks.payment_processor import ProcessorUnavailableError
from ..models.checkout import (
    Address,
    Buyer,
    CheckoutSession,
    CreateCheckoutSessionRequest,
    DelegatedPaymentReference,
    Item,
    OPEN_STATUSES,
    OrderSummary,
    PaymentProvider,
    PaymentReference,
    TERMINAL_STATUSES,
    UpdateCheckoutSessionRequest,
)
from ..timeutils import Clock, utcnow
from .locks import KeyedLocks
from .notification_service import WebhookNotifier, order_created
from .pricing_service import PricingEngine
from .vault_service import AllowanceVault

logger = logging.getLogger(__name__)

ChargeFunction = Callable[[str, int, str, Optional[Dict[str, Any]]], Awaitable[Dict[str, Any]]]


def generate_session_id() -> str:
    return f"cs_{uuid.uuid4()}"


def generate_order_id() -> str:
    return f"ord_{uuid.uuid4()}"


class CheckoutSessionMachine:
    """Checkout session lifecycle backed by the checkout_sessions table."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        pricing: PricingEngine,
        vault: AllowanceVault,
        charge: ChargeFunction,
        notifier: Optional[WebhookNotifier] = None,
        currency: str = "usd",
        payment_provider: str = "stripe",
        supported_payment_methods: Optional[List[str]] = None,
        merchant_id: str = "merchant_demo",
        base_url: str = "https://shop.example.com",
        expiry_minutes: int = 30,
        clock: Clock = utcnow
    ):
        self._session_factory = session_factory
        self.pricing = pricing
        self.vault = vault
        self._charge = charge
        self._notifier = notifier
        self.currency = currency
        self.payment_provider = PaymentProvider(
            provider=payment_provider,
            supported_payment_methods=supported_payment_methods or ["card"],
        )
        self.merchant_id = merchant_id
        self.base_url = base_url.rstrip("/")
        self.expiry = timedelta(minutes=expiry_minutes)
        self._clock = clock
        self._locks = KeyedLocks("checkout_sessions")

    # ========================================================================
    # Helpers
    # ========================================================================

    async def _render(
        self,
        session_id: str,
        items: List[Item],
        buyer: Optional[Buyer],
        address: Optional[Address],
        fulfillment_option_id: Optional[str],
        created_at: datetime,
        updated_at: datetime,
        expires_at: datetime
    ) -> CheckoutSession:
        """Price the inputs and assemble the session document."""
        priced = await self.pricing.price(items, address, fulfillment_option_id)

        return CheckoutSession(
            id=session_id,
            buyer=buyer,
            payment_provider=self.payment_provider,
            status=priced.status,
            currency=self.currency,
            line_items=priced.line_items,
            fulfillment_address=address,
            fulfillment_options=priced.fulfillment_options,
            fulfillment_option_id=priced.selected_option.id if priced.selected_option else None,
            totals=priced.totals,
            messages=priced.messages,
            links=self.pricing.build_links(),
            created_at=created_at,
            updated_at=updated_at,
            expires_at=expires_at,
        )

    @staticmethod
    def _load(row: CheckoutSessionModel) -> CheckoutSession:
        return CheckoutSession.model_validate_json(row.session_data)

    @staticmethod
    def _store(row: CheckoutSessionModel, session: CheckoutSession) -> None:
        row.status = session.status
        row.session_data = session.model_dump_json()
        row.updated_at = session.updated_at

    def _is_expired(self, session: CheckoutSession) -> bool:
        return session.status in OPEN_STATUSES and self._clock() > session.expires_at

    def _mark_canceled(self, row: CheckoutSessionModel, session: CheckoutSession) -> CheckoutSession:
        now = self._clock()
        canceled = session.model_copy(update={
            "status": "canceled",
            "canceled_at": now,
            "updated_at": now,
        })
        self._store(row, canceled)
        return canceled

    async def _get_row(self, db, session_id: str) -> CheckoutSessionModel:
        row = await db.get(CheckoutSessionModel, session_id)
        if row is None:
            raise SessionNotFoundError(session_id)
        return row

    # ========================================================================
    # Operations
    # ========================================================================

    async def create(self, request: CreateCheckoutSessionRequest) -> CheckoutSession:
        """
        Create a new checkout session.

        Args:
            request: Items plus optional buyer and fulfillment address

        Returns:
            The new session, not_ready_for_payment or ready_for_payment
        """
        session_id = generate_session_id()
        now = self._clock()

        session = await self._render(
            session_id,
            items=request.items,
            buyer=request.buyer,
            address=request.fulfillment_address,
            fulfillment_option_id=None,
            created_at=now,
            updated_at=now,
            expires_at=now + self.expiry,
        )

        async with self._session_factory() as db:
            db.add(CheckoutSessionModel(
                id=session_id,
                status=session.status,
                currency=session.currency,
                session_data=session.model_dump_json(),
                request_items=json.dumps([item.model_dump() for item in request.items]),
                created_at=now,
                updated_at=now,
                expires_at=session.expires_at,
            ))
            await db.commit()

        logger.info(f"Checkout session created: {session_id} ({len(request.items)} items, status={session.status})")
        return session

    async def get(self, session_id: str) -> CheckoutSession:
        """
        Retrieve a session, canceling it first if it has expired.

        Raises:
            SessionNotFoundError: Unknown session id
        """
        async with self._session_factory() as db:
            row = await self._get_row(db, session_id)
            session = self._load(row)

        if not self._is_expired(session):
            return session

        async with self._locks.hold(session_id):
            async with self._session_factory() as db:
                row = await self._get_row(db, session_id)
                session = self._load(row)
                if self._is_expired(session):
                    session = self._mark_canceled(row, session)
                    await db.commit()
                    logger.info(f"Checkout session expired: {session_id}")
        return session

    async def update(self, session_id: str, patch: UpdateCheckoutSessionRequest) -> CheckoutSession:
        """
        Merge the patch into the session and recompute it.

        Omitted or null patch fields keep their prior value.

        Raises:
            SessionNotFoundError: Unknown session id
            SessionExpiredError: Session expired (it is canceled as a side effect)
            SessionFinalizedError: Session is completed or canceled
        """
        async with self._locks.hold(session_id):
            async with self._session_factory() as db:
                row = await self._get_row(db, session_id)
                session = self._load(row)

                if self._is_expired(session):
                    self._mark_canceled(row, session)
                    await db.commit()
                    logger.info(f"Checkout session expired on update: {session_id}")
                    raise SessionExpiredError(session_id)

                if session.status not in OPEN_STATUSES:
                    raise SessionFinalizedError(session_id, session.status)

                if patch.items is not None:
                    items = patch.items
                else:
                    items = [Item(**item) for item in json.loads(row.request_items)]

                updated = await self._render(
                    session_id,
                    items=items,
                    buyer=patch.buyer if patch.buyer is not None else session.buyer,
                    address=(
                        patch.fulfillment_address
                        if patch.fulfillment_address is not None
                        else session.fulfillment_address
                    ),
                    fulfillment_option_id=(
                        patch.fulfillment_option_id
                        if patch.fulfillment_option_id is not None
                        else session.fulfillment_option_id
                    ),
                    created_at=session.created_at,
                    updated_at=self._clock(),
                    expires_at=session.expires_at,
                )

                self._store(row, updated)
                row.request_items = json.dumps([item.model_dump() for item in items])
                await db.commit()

        logger.info(f"Checkout session updated: {session_id} (status={updated.status})")
        return updated

    async def complete(
        self,
        session_id: str,
        payment: PaymentReference,
        buyer: Optional[Buyer] = None,
        provider: Optional[str] = None
    ) -> CheckoutSession:
        """
        Charge the session total and create the order.

        The amount charged is always the session's own total. A delegated
        reference is validated and consumed by the vault first; on any
        failure the session is left unchanged.

        Args:
            session_id: Session to complete
            payment: Delegated (vt_*) or direct payment reference
            buyer: Optional buyer replacing the stored one
            provider: Payment provider named by the client

        Raises:
            SessionNotFoundError, SessionExpiredError, SessionFinalizedError,
            SessionNotReadyError, TokenError subclasses, PaymentDeclinedError,
            ProcessingError
        """
        async with self._locks.hold(session_id):
            async with self._session_factory() as db:
                row = await self._get_row(db, session_id)
                session = self._load(row)

                if self._is_expired(session):
                    self._mark_canceled(row, session)
                    await db.commit()
                    logger.info(f"Checkout session expired on complete: {session_id}")
                    raise SessionExpiredError(session_id)

            if session.status == "completed" and isinstance(payment, DelegatedPaymentReference):
                # A spent token is reported as such rather than as a finalized session
                await self.vault.validate(
                    payment.token_id, session_id, session.amount_of("total"), session.currency
                )

            if session.status not in OPEN_STATUSES:
                raise SessionFinalizedError(session_id, session.status)

            if session.status != "ready_for_payment":
                raise SessionNotReadyError(session.status)

            amount = session.amount_of("total")

            if isinstance(payment, DelegatedPaymentReference):
                token = await self.vault.validate_and_consume(
                    payment.token_id, session_id, amount, session.currency
                )
                source = token.wrapped_credential_ref
            else:
                source = payment.credential

            try:
                charge = await self._charge(
                    source,
                    amount,
                    session.currency,
                    {"checkout_session_id": session_id, "merchant_id": self.merchant_id},
                )
            except ProcessorUnavailableError as e:
                logger.error(f"Payment processor unavailable for {session_id}: {e}")
                raise ProcessingError("Payment processor unavailable")

            if charge["status"] != "succeeded":
                logger.warning(f"Payment declined for {session_id}: {charge.get('decline_reason')}")
                raise PaymentDeclinedError(charge.get("decline_reason") or "unknown")

            logger.info(f"Payment processed: {charge['charge_id']} for {session_id}")

            now = self._clock()
            order_id = generate_order_id()
            permalink_url = f"{self.base_url}/orders/{order_id}"
            completed = session.model_copy(update={
                "status": "completed",
                "buyer": buyer or session.buyer,
                "order": OrderSummary(
                    id=order_id,
                    checkout_session_id=session_id,
                    permalink_url=permalink_url,
                ),
                "completed_at": now,
                "updated_at": now,
            })

            order_data = {
                "id": order_id,
                "checkout_session_id": session_id,
                "permalink_url": permalink_url,
                "status": "confirmed",
                "buyer": completed.buyer.model_dump(mode="json") if completed.buyer else None,
                "line_items": [li.model_dump(mode="json") for li in session.line_items],
                "fulfillment_address": (
                    session.fulfillment_address.model_dump(mode="json")
                    if session.fulfillment_address else None
                ),
                "fulfillment_option_id": session.fulfillment_option_id,
                "totals": [t.model_dump(mode="json") for t in session.totals],
                "currency": session.currency,
                "payment": {
                    "provider": provider or self.payment_provider.provider,
                    "charge_id": charge["charge_id"],
                    "status": charge["status"],
                },
            }

            async with self._session_factory() as db:
                row = await self._get_row(db, session_id)
                self._store(row, completed)
                db.add(OrderModel(
                    id=order_id,
                    checkout_session_id=session_id,
                    permalink_url=permalink_url,
                    status="confirmed",
                    charge_id=charge["charge_id"],
                    amount=amount,
                    currency=session.currency,
                    order_data=json.dumps(order_data),
                    created_at=now,
                ))
                await db.commit()

        logger.info(f"Order created: {order_id} for session {session_id}")

        if self._notifier is not None:
            self._notifier.publish(order_created(order_id, session_id, permalink_url))

        return completed

    async def cancel(self, session_id: str) -> CheckoutSession:
        """
        Cancel an open session.

        Canceling an already canceled session returns it unchanged; an
        expired session is canceled and returned.

        Raises:
            SessionNotFoundError: Unknown session id
            SessionFinalizedError: Session is completed
        """
        async with self._locks.hold(session_id):
            async with self._session_factory() as db:
                row = await self._get_row(db, session_id)
                session = self._load(row)

                if session.status in TERMINAL_STATUSES:
                    if session.status == "canceled":
                        return session
                    raise SessionFinalizedError(session_id, session.status)

                canceled = self._mark_canceled(row, session)
                await db.commit()

        logger.info(f"Checkout session canceled: {session_id}")
        return canceled

    async def get_order(self, session_id: str) -> Optional[Dict[str, Any]]:
        """Stored order document for a completed session, if any."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(OrderModel).where(OrderModel.checkout_session_id == session_id)
            )
            row = result.scalar_one_or_none()
            return json.loads(row.order_data) if row else None
