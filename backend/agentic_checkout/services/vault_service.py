"""
Delegated Payment Vault

Issues, validates and consumes single-use delegated tokens (vt_*) that
stand in for a processor credential. Each token carries an allowance:
one_time use, a maximum amount, a currency, the checkout session it is
bound to and an expiry. The allowance never changes after issue.

Consumption is serialized per token id and claimed in storage with a
conditional UPDATE, so two concurrent completions can never both be told
a token is valid.
"""
import json
import logging
import re
import secrets
from datetime import timedelta
from typing import Dict, Any, List, Optional

from sqlalchemy import delete, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..db.models import DelegatedTokenModel
from ..exceptions import (
    InvalidRequestError,
    InvalidTokenError,
    TokenAlreadyUsedError,
    TokenExpiredError,
    TokenSessionMismatchError,
    AmountExceedsAllowanceError,
    CurrencyMismatchError,
)
from ..models.delegated_payment import Allowance, DelegatedToken, DelegatePaymentResponse
from ..timeutils import Clock, utcnow, ensure_utc
from .locks import KeyedLocks

logger = logging.getLogger(__name__)

CURRENCY_PATTERN = re.compile(r"^[a-z]{3}$")


def generate_token_id() -> str:
    return f"vt_{secrets.token_hex(16)}"


class AllowanceVault:
    """Storage and one-time-use enforcement for delegated tokens."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        cleanup_grace_hours: int = 24,
        clock: Clock = utcnow
    ):
        self._session_factory = session_factory
        self.cleanup_grace = timedelta(hours=cleanup_grace_hours)
        self._clock = clock
        self._locks = KeyedLocks("delegated_tokens")

    # ========================================================================
    # Issue
    # ========================================================================

    def _validate_allowance(self, allowance: Allowance) -> None:
        if allowance.reason != "one_time":
            raise InvalidRequestError(
                "Only one_time allowance is supported", param="allowance.reason"
            )
        if isinstance(allowance.max_amount, bool) or not isinstance(allowance.max_amount, int) \
                or allowance.max_amount <= 0:
            raise InvalidRequestError(
                "max_amount must be a positive integer in minor units",
                param="allowance.max_amount",
            )
        if not CURRENCY_PATTERN.match(allowance.currency or ""):
            raise InvalidRequestError(
                "currency must be a 3-letter lowercase ISO-4217 code",
                param="allowance.currency",
            )
        if ensure_utc(allowance.expires_at) <= self._clock():
            raise InvalidRequestError(
                "expires_at must be in the future", param="allowance.expires_at"
            )

    async def issue(
        self,
        wrapped_credential_ref: str,
        allowance: Allowance,
        payment_method: Optional[Dict[str, Any]] = None,
        billing_address: Optional[Dict[str, Any]] = None,
        risk_signals: Optional[List[Dict[str, Any]]] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> DelegatePaymentResponse:
        """
        Store a new delegated token.

        Args:
            wrapped_credential_ref: Processor token returned by the tokenizer
            allowance: Usage constraints, validated before storage
            payment_method: Redacted card display data
            billing_address: Optional billing address dict
            risk_signals: Risk signals sent with the request
            metadata: Caller metadata, echoed in the response

        Returns:
            {id, created, metadata}

        Raises:
            InvalidRequestError: If the allowance is not acceptable
        """
        self._validate_allowance(allowance)

        token_id = generate_token_id()
        now = self._clock()

        db_token = DelegatedTokenModel(
            id=token_id,
            processor_token=wrapped_credential_ref,
            payment_method=json.dumps(payment_method or {}),
            allowance_reason=allowance.reason,
            max_amount=allowance.max_amount,
            currency=allowance.currency,
            checkout_session_id=allowance.checkout_session_id,
            merchant_id=allowance.merchant_id,
            expires_at=ensure_utc(allowance.expires_at),
            billing_address=json.dumps(billing_address) if billing_address else None,
            risk_signals=json.dumps(risk_signals or []),
            token_metadata=json.dumps(metadata or {}),
            used=False,
            created_at=now,
        )

        async with self._session_factory() as db:
            db.add(db_token)
            await db.commit()

        logger.info(
            f"Delegated token stored: {token_id} for session {allowance.checkout_session_id}, "
            f"max_amount={allowance.max_amount} {allowance.currency}"
        )

        return DelegatePaymentResponse(id=token_id, created=now, metadata=metadata or {})

    # ========================================================================
    # Lookup / validation
    # ========================================================================

    @staticmethod
    def _to_domain(row: DelegatedTokenModel) -> DelegatedToken:
        return DelegatedToken(
            id=row.id,
            wrapped_credential_ref=row.processor_token,
            allowance=Allowance(
                reason=row.allowance_reason,
                max_amount=row.max_amount,
                currency=row.currency,
                checkout_session_id=row.checkout_session_id,
                merchant_id=row.merchant_id,
                expires_at=row.expires_at,
            ),
            used=row.used,
            created_at=row.created_at,
            used_at=row.used_at,
        )

    async def get_token(self, token_id: str) -> Optional[DelegatedToken]:
        async with self._session_factory() as db:
            row = await db.get(DelegatedTokenModel, token_id)
            return self._to_domain(row) if row else None

    def _check(
        self,
        row: Optional[DelegatedTokenModel],
        token_id: str,
        session_id: str,
        amount: int,
        currency: str
    ) -> None:
        """Allowance checks in protocol order; the first failure wins."""
        if row is None:
            raise InvalidTokenError(token_id)
        if row.used:
            raise TokenAlreadyUsedError()
        if self._clock() > row.expires_at:
            raise TokenExpiredError()
        if row.checkout_session_id != session_id:
            raise TokenSessionMismatchError()
        if amount > row.max_amount:
            raise AmountExceedsAllowanceError(amount, row.max_amount)
        if currency != row.currency:
            raise CurrencyMismatchError(currency, row.currency)

    async def validate(
        self,
        token_id: str,
        session_id: str,
        amount: int,
        currency: str
    ) -> DelegatedToken:
        """Run the allowance checks without consuming the token."""
        async with self._session_factory() as db:
            row = await db.get(DelegatedTokenModel, token_id)
            self._check(row, token_id, session_id, amount, currency)
            return self._to_domain(row)

    async def validate_and_consume(
        self,
        token_id: str,
        session_id: str,
        amount: int,
        currency: str
    ) -> DelegatedToken:
        """
        Validate the allowance and mark the token used, atomically.

        Args:
            token_id: Delegated token id (vt_*)
            session_id: Checkout session being completed
            amount: Authoritative session total in minor units
            currency: Session currency

        Returns:
            The consumed token, carrying the wrapped processor credential

        Raises:
            TokenError subclasses, one per failed check
        """
        async with self._locks.hold(token_id):
            async with self._session_factory() as db:
                row = await db.get(DelegatedTokenModel, token_id)
                self._check(row, token_id, session_id, amount, currency)

                used_at = self._clock()
                result = await db.execute(
                    update(DelegatedTokenModel)
                    .where(
                        DelegatedTokenModel.id == token_id,
                        DelegatedTokenModel.used.is_(False),
                    )
                    .values(used=True, used_at=used_at)
                )
                await db.commit()

                if result.rowcount != 1:
                    # Claimed by another process between read and update
                    raise TokenAlreadyUsedError()

        logger.info(f"Token consumed: {token_id} for session {session_id}, amount={amount} {currency}")

        token = self._to_domain(row)
        return token.model_copy(update={"used": True, "used_at": used_at})

    # ========================================================================
    # Maintenance
    # ========================================================================

    async def cleanup_expired(self) -> int:
        """
        Delete tokens that expired more than the grace window ago.

        Returns:
            Number of removed tokens
        """
        cutoff = self._clock() - self.cleanup_grace
        async with self._session_factory() as db:
            result = await db.execute(
                delete(DelegatedTokenModel).where(DelegatedTokenModel.expires_at < cutoff)
            )
            await db.commit()

        cleaned = result.rowcount or 0
        if cleaned:
            logger.info(f"Cleaned up {cleaned} expired tokens")
        return cleaned
