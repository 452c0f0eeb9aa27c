"""
Request Dependencies

Protocol header validation and service access for the routers.

Headers:
- API-Version: required, must be a supported version
- Content-Type: application/json on POST
- Authorization: Bearer <key>, enforced only when an API key is configured
- Idempotency-Key: optional
- Signature + Timestamp: optional; the timestamp must be fresh
"""
import hmac
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from fastapi import Depends, Request

from ..exceptions import InvalidRequestError, UnauthorizedError
from ..services.container import ServiceContainer
from ..timeutils import ensure_utc

logger = logging.getLogger(__name__)


@dataclass
class ProtocolContext:
    """Validated header values for one request."""
    api_version: str
    request_id: Optional[str]
    idempotency_key: Optional[str]
    auth_token: Optional[str] = None
    timestamp: Optional[datetime] = None


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services


def _parse_timestamp(value: str) -> Optional[datetime]:
    try:
        return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        return None


def validate_protocol_headers(
    request: Request,
    services: ServiceContainer,
    allowed_versions: List[str]
) -> ProtocolContext:
    """
    Check the protocol headers shared by every endpoint.

    Raises:
        InvalidRequestError: missing_required_headers, unsupported_api_version,
            invalid_timestamp
        UnauthorizedError: API key configured and not presented
    """
    settings = services.settings
    headers = request.headers
    errors = []

    api_version = headers.get("api-version")
    if not api_version:
        errors.append("Missing required header: API-Version")
    elif api_version not in allowed_versions:
        raise InvalidRequestError(
            f"API version {api_version} is not supported. "
            f"Supported versions: {', '.join(allowed_versions)}",
            param="API-Version",
            code="unsupported_api_version",
        )

    if request.method == "POST":
        content_type = headers.get("content-type", "")
        if "application/json" not in content_type:
            errors.append("Content-Type must be application/json")

    if errors:
        raise InvalidRequestError(", ".join(errors), code="missing_required_headers")

    auth_token = None
    authorization = headers.get("authorization")
    if authorization and authorization.lower().startswith("bearer "):
        auth_token = authorization[7:].strip()

    if settings.api_key:
        if not auth_token or not hmac.compare_digest(auth_token, settings.api_key):
            raise UnauthorizedError()
    elif not authorization:
        logger.warning(f"Missing Authorization header on {request.method} {request.url.path}")

    timestamp = None
    signature = headers.get("signature")
    raw_timestamp = headers.get("timestamp")
    if signature and raw_timestamp:
        timestamp = _parse_timestamp(raw_timestamp)
        skew = timedelta(seconds=settings.signature_max_skew_seconds)
        if timestamp is None or abs(services.clock() - timestamp) > skew:
            raise InvalidRequestError(
                "Request timestamp is outside acceptable window",
                param="Timestamp",
                code="invalid_timestamp",
            )

    return ProtocolContext(
        api_version=api_version,
        request_id=getattr(request.state, "request_id", None),
        idempotency_key=headers.get("idempotency-key"),
        auth_token=auth_token,
        timestamp=timestamp,
    )


def checkout_headers(
    request: Request,
    services: ServiceContainer = Depends(get_services)
) -> ProtocolContext:
    return validate_protocol_headers(request, services, services.settings.api_versions)


def delegate_payment_headers(
    request: Request,
    services: ServiceContainer = Depends(get_services)
) -> ProtocolContext:
    return validate_protocol_headers(
        request, services, [services.settings.delegate_payment_api_version]
    )
