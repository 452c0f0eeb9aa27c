"""
Idempotency Service

Deduplicates retried requests by client-supplied Idempotency-Key.

Protocol:
- observe(): atomically reserve (operation, key). Exactly one concurrent
  caller gets NEW; the others wait until the winner records or releases.
- record(): store the exact response for replay. Write-once.
- release(): drop a reservation whose request failed with a server error,
  so a retry executes again.

Fingerprint canonicalization: HTTP method, path and JSON body with object
keys sorted recursively and null-valued members dropped, so key order and
absent-vs-null do not change the hash.
"""
import asyncio
import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any, Optional

from sqlalchemy import select, update, delete, or_, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..db.models import IdempotencyRecordModel
from ..timeutils import Clock, utcnow

logger = logging.getLogger(__name__)


class ObservationKind(str, Enum):
    NEW = "new"
    REPLAY = "replay"
    CONFLICT = "conflict"
    IN_PROGRESS = "in_progress"


@dataclass(frozen=True)
class Observation:
    kind: ObservationKind
    status: Optional[int] = None
    body: Optional[str] = None


def canonicalize(value: Any) -> Any:
    """Drop null object members recursively; list order is significant."""
    if isinstance(value, dict):
        return {k: canonicalize(v) for k, v in value.items() if v is not None}
    if isinstance(value, list):
        return [canonicalize(v) for v in value]
    return value


def compute_fingerprint(method: str, path: str, body: Any) -> str:
    """
    Deterministic request hash.

    Args:
        method: HTTP method
        path: Request path (session id included for session routes)
        body: Parsed JSON body, or None

    Returns:
        SHA-256 hex digest
    """
    normalized = json.dumps(
        {"method": method.upper(), "path": path, "body": canonicalize(body)},
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


class IdempotencyGuard:
    """
    Database-backed idempotency records with atomic reservation.

    The primary key (operation, idempotency_key) makes the reserving
    INSERT the single point where concurrent requests are ordered.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        retention_hours: int = 24,
        lock_timeout_seconds: float = 60,
        wait_timeout_seconds: float = 10.0,
        poll_interval_seconds: float = 0.05,
        clock: Clock = utcnow
    ):
        self._session_factory = session_factory
        self.retention = timedelta(hours=retention_hours)
        self.lock_timeout = timedelta(seconds=lock_timeout_seconds)
        self.wait_timeout_seconds = wait_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self._clock = clock

    async def observe(self, key: str, fingerprint: str, operation: str) -> Observation:
        """
        Reserve the key or report what happened to it before.

        Returns:
            NEW: caller executes and must then record() or release()
            REPLAY: return status/body verbatim
            CONFLICT: same key, different request
            IN_PROGRESS: another holder did not finish within the wait window
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.wait_timeout_seconds

        while True:
            observation = await self._try_reserve(key, fingerprint, operation)
            if observation is not None:
                if observation.kind != ObservationKind.NEW:
                    logger.info(f"Idempotency {observation.kind.value}: {operation}/{key}")
                return observation

            if loop.time() >= deadline:
                logger.warning(f"Idempotency key still in progress after wait: {operation}/{key}")
                return Observation(ObservationKind.IN_PROGRESS)

            await asyncio.sleep(self.poll_interval_seconds)

    async def _try_reserve(
        self,
        key: str,
        fingerprint: str,
        operation: str
    ) -> Optional[Observation]:
        """One reservation attempt; None means "held by someone else, poll again"."""
        now = self._clock()

        async with self._session_factory() as db:
            record = await db.get(IdempotencyRecordModel, (operation, key))

            if record is not None and record.state == "completed" and now - record.recorded_at > self.retention:
                await db.execute(
                    delete(IdempotencyRecordModel).where(
                        IdempotencyRecordModel.operation == operation,
                        IdempotencyRecordModel.idempotency_key == key,
                        IdempotencyRecordModel.recorded_at == record.recorded_at,
                    )
                )
                await db.commit()
                logger.debug(f"Evicted expired idempotency record {operation}/{key}")
                record = None

            if record is None:
                db.add(IdempotencyRecordModel(
                    operation=operation,
                    idempotency_key=key,
                    request_fingerprint=fingerprint,
                    state="pending",
                    reserved_at=now,
                ))
                try:
                    await db.commit()
                except IntegrityError:
                    await db.rollback()
                    return None
                return Observation(ObservationKind.NEW)

            if record.state == "pending":
                if now - record.reserved_at <= self.lock_timeout:
                    if record.request_fingerprint != fingerprint:
                        return Observation(ObservationKind.CONFLICT)
                    return None

                # Holder crashed or hung; take over its reservation
                result = await db.execute(
                    update(IdempotencyRecordModel)
                    .where(
                        IdempotencyRecordModel.operation == operation,
                        IdempotencyRecordModel.idempotency_key == key,
                        IdempotencyRecordModel.state == "pending",
                        IdempotencyRecordModel.reserved_at == record.reserved_at,
                    )
                    .values(reserved_at=now, request_fingerprint=fingerprint)
                )
                await db.commit()
                if result.rowcount == 1:
                    logger.warning(f"Took over stale idempotency reservation {operation}/{key}")
                    return Observation(ObservationKind.NEW)
                return None

            if record.request_fingerprint != fingerprint:
                return Observation(ObservationKind.CONFLICT)

            return Observation(
                ObservationKind.REPLAY,
                status=record.response_status,
                body=record.response_body,
            )

    async def record(self, key: str, operation: str, status: int, body: str) -> None:
        """Store the response for a reservation obtained from observe()."""
        async with self._session_factory() as db:
            result = await db.execute(
                update(IdempotencyRecordModel)
                .where(
                    IdempotencyRecordModel.operation == operation,
                    IdempotencyRecordModel.idempotency_key == key,
                    IdempotencyRecordModel.state == "pending",
                )
                .values(
                    state="completed",
                    response_status=status,
                    response_body=body,
                    recorded_at=self._clock(),
                )
            )
            await db.commit()

        if result.rowcount != 1:
            logger.warning(f"No pending reservation to record for {operation}/{key}")
        else:
            logger.debug(f"Recorded idempotent response {operation}/{key} status={status}")

    async def release(self, key: str, operation: str) -> None:
        """Forget a pending reservation so the next attempt runs again."""
        async with self._session_factory() as db:
            await db.execute(
                delete(IdempotencyRecordModel).where(
                    IdempotencyRecordModel.operation == operation,
                    IdempotencyRecordModel.idempotency_key == key,
                    IdempotencyRecordModel.state == "pending",
                )
            )
            await db.commit()
        logger.debug(f"Released idempotency reservation {operation}/{key}")

    async def get_record(self, key: str, operation: str) -> Optional[IdempotencyRecordModel]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(IdempotencyRecordModel).where(
                    IdempotencyRecordModel.operation == operation,
                    IdempotencyRecordModel.idempotency_key == key,
                )
            )
            return result.scalar_one_or_none()

    async def cleanup_expired(self) -> int:
        """
        Delete records past the retention window.

        Returns:
            Number of removed records
        """
        cutoff = self._clock() - self.retention
        async with self._session_factory() as db:
            result = await db.execute(
                delete(IdempotencyRecordModel).where(
                    or_(
                        and_(
                            IdempotencyRecordModel.state == "completed",
                            IdempotencyRecordModel.recorded_at < cutoff,
                        ),
                        and_(
                            IdempotencyRecordModel.state == "pending",
                            IdempotencyRecordModel.reserved_at < cutoff,
                        ),
                    )
                )
            )
            await db.commit()

        removed = result.rowcount or 0
        if removed:
            logger.info(f"Cleaned up {removed} expired idempotency records")
        return removed
