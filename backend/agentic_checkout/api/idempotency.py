"""
Idempotent Execution Helper

Wraps a route handler with observe -> execute -> record/release so a
retried request with the same Idempotency-Key gets the exact bytes of the
first response.
"""
import json
import logging
from typing import Any, Awaitable, Callable, Optional, Tuple

from fastapi import Request, Response

from ..exceptions import CheckoutError, IdempotencyConflictError, IdempotencyInProgressError
from ..services.idempotency_service import IdempotencyGuard, ObservationKind, compute_fingerprint

logger = logging.getLogger(__name__)

Handler = Callable[[], Awaitable[Tuple[int, Any]]]


def render_json(content: Any) -> str:
    return json.dumps(content, separators=(",", ":"), ensure_ascii=False)


def json_response(status_code: int, body: str) -> Response:
    return Response(content=body, status_code=status_code, media_type="application/json")


async def run_idempotent(
    request: Request,
    guard: IdempotencyGuard,
    operation: str,
    key: Optional[str],
    handler: Handler
) -> Response:
    """
    Execute handler at most once per (operation, key).

    Args:
        request: Incoming request; method, path and JSON body form the fingerprint
        guard: Idempotency store
        operation: Logical operation name
        key: Idempotency-Key header value, or None to run unguarded
        handler: Coroutine returning (status_code, JSON-able content)

    Returns:
        The fresh or replayed response

    Raises:
        IdempotencyConflictError: Key reused with a different request
        IdempotencyInProgressError: Key still held by a concurrent request
    """
    if not key:
        status_code, content = await handler()
        return json_response(status_code, render_json(content))

    body = await request.json() if await request.body() else None
    fingerprint = compute_fingerprint(request.method, request.url.path, body)

    observation = await guard.observe(key, fingerprint, operation)
    if observation.kind == ObservationKind.CONFLICT:
        raise IdempotencyConflictError()
    if observation.kind == ObservationKind.IN_PROGRESS:
        raise IdempotencyInProgressError()
    if observation.kind == ObservationKind.REPLAY:
        return json_response(observation.status, observation.body)

    try:
        status_code, content = await handler()
    except CheckoutError as e:
        if e.status_code >= 500:
            await guard.release(key, operation)
            raise
        rendered = render_json(e.to_dict())
        await guard.record(key, operation, e.status_code, rendered)
        logger.info(f"{operation} failed with {e.code}, recorded for replay under {key}")
        return json_response(e.status_code, rendered)
    except Exception:
        await guard.release(key, operation)
        raise

    rendered = render_json(content)
    if status_code >= 500:
        await guard.release(key, operation)
    else:
        await guard.record(key, operation, status_code, rendered)
    return json_response(status_code, rendered)
