"""
Agentic Checkout Backend - FastAPI Application

Merchant-side Agentic Commerce Protocol server: checkout sessions,
delegated payment tokens and order webhooks.
"""
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from typing import Optional
import logging
import secrets

from . import __version__
from .config import Settings, settings as default_settings
from .exceptions import CheckoutError
from .services.container import ServiceContainer, build_services
from .api.checkout_sessions import router as checkout_router
from .api.delegate_payment import router as delegate_payment_router


# Configure logging
logging.basicConfig(
    level=getattr(logging, default_settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def _error_param(loc) -> Optional[str]:
    parts = [str(part) for part in loc if part != "body"]
    return ".".join(parts) if parts else None


def create_app(
    settings: Optional[Settings] = None,
    services: Optional[ServiceContainer] = None
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Settings to wire services from (defaults to the environment)
        services: Prebuilt services, used by tests to inject collaborators
    """
    settings = settings or (services.settings if services else default_settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan manager.

        - Startup: create tables, start the webhook worker and cleanup jobs
        - Shutdown: stop them and dispose of the engine
        """
        logger.info("Starting agentic checkout backend...")
        logger.info(f"Demo mode: {settings.demo_mode}")
        logger.info(f"Supported API versions: {settings.api_versions}")
        if not settings.api_key:
            logger.warning("API_KEY not configured, requests are accepted without authentication")

        container = app.state.services
        try:
            await container.startup()
            logger.info("Services started successfully")
        except Exception as e:
            logger.error(f"Failed to start services: {e}")
            raise

        logger.info("Server startup complete")

        yield

        logger.info("Shutting down agentic checkout backend...")
        try:
            await container.shutdown()
            logger.info("Services shutdown complete")
        except Exception as e:
            logger.error(f"Error during shutdown: {e}")

    app = FastAPI(
        title="Agentic Checkout API",
        description="Agentic Commerce Protocol merchant backend",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.services = services or build_services(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Request-Id", "Idempotency-Key"],
    )

    @app.middleware("http")
    async def correlation_headers(request: Request, call_next):
        """Echo or generate Request-Id and echo Idempotency-Key."""
        request_id = request.headers.get("request-id") or f"req_{secrets.token_hex(16)}"
        request.state.request_id = request_id
        idempotency_key = request.headers.get("idempotency-key")

        logger.debug(f"{request.method} {request.url.path} | Request-Id: {request_id}")

        response = await call_next(request)
        response.headers["Request-Id"] = request_id
        if idempotency_key:
            response.headers["Idempotency-Key"] = idempotency_key
        return response

    @app.exception_handler(CheckoutError)
    async def checkout_error_handler(request: Request, exc: CheckoutError):
        """Render protocol errors as the flat {type, code, message, param} body."""
        logger.warning(f"Checkout error on {request.url.path}: {exc.code} - {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        """
        Body validation failures are invalid_request (400).

        Only the field path and message are reported; the offending input is
        never echoed since it may be card data.
        """
        errors = exc.errors()
        first = errors[0] if errors else {}
        param = _error_param(first.get("loc", ()))
        code = "missing_required_fields" if first.get("type") == "missing" else "invalid_request"
        message = first.get("msg", "Invalid request")
        if param:
            message = f"{param}: {message}"

        logger.warning(f"Validation error on {request.url.path}: {code} {param}")

        content = {"type": "invalid_request", "code": code, "message": message}
        if param:
            content["param"] = param
        return JSONResponse(status_code=400, content=content)

    @app.exception_handler(Exception)
    async def general_error_handler(request: Request, exc: Exception):
        """
        Catch-all handler for unexpected errors.

        Logs full exception for debugging but returns generic message to client.
        """
        logger.error(f"Unexpected error: {str(exc)}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "type": "processing_error",
                "code": "internal_error",
                "message": "An unexpected error occurred",
            },
        )

    @app.get("/health")
    async def health_check():
        """Liveness probe."""
        return {
            "status": "healthy",
            "version": __version__,
            "demo_mode": settings.demo_mode,
        }

    app.include_router(checkout_router)
    app.include_router(delegate_payment_router)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "agentic_checkout.main:app",
        host=default_settings.host,
        port=default_settings.port,
        reload=default_settings.demo_mode,
        log_level=default_settings.log_level.lower()
    )
