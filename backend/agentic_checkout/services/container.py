"""
Service Wiring

Builds every service from Settings and owns their startup/shutdown.
The FastAPI app keeps one ServiceContainer on app.state.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from ..config import Settings
from ..db.init_db import create_engine, create_session_factory, initialize_database
from ..mocks.catalog import lookup_item
from ..mocks.payment_processor import charge_payment
from ..timeutils import Clock, utcnow
from .checkout_service import ChargeFunction, CheckoutSessionMachine
from .idempotency_service import IdempotencyGuard
from .notification_service import WebhookNotifier
from .pricing_service import CatalogLookup, PricingEngine, default_shipping_methods
from .scheduler import MaintenanceScheduler
from .vault_service import AllowanceVault

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker
    idempotency: IdempotencyGuard
    vault: AllowanceVault
    pricing: PricingEngine
    checkout: CheckoutSessionMachine
    notifier: WebhookNotifier
    scheduler: Optional[MaintenanceScheduler] = None
    clock: Clock = utcnow

    async def startup(self) -> None:
        await initialize_database(self.engine)
        await self.notifier.start()
        if self.scheduler is not None:
            self.scheduler.register_defaults(self.vault, self.idempotency)
            self.scheduler.start()

    async def shutdown(self) -> None:
        if self.scheduler is not None:
            self.scheduler.shutdown(wait=False)
        await self.notifier.close()
        await self.engine.dispose()


def build_services(
    settings: Settings,
    catalog: CatalogLookup = lookup_item,
    charge: ChargeFunction = charge_payment,
    clock: Clock = utcnow,
    with_scheduler: bool = True
) -> ServiceContainer:
    """
    Wire the services for one application instance.

    Args:
        settings: Application settings
        catalog: Catalog Provider lookup
        charge: Payment Processor charge function
        clock: Time source shared by every service
        with_scheduler: Whether to run the periodic cleanup jobs
    """
    engine = create_engine(settings.database_path)
    session_factory = create_session_factory(engine)

    idempotency = IdempotencyGuard(
        session_factory,
        retention_hours=settings.idempotency_retention_hours,
        lock_timeout_seconds=settings.idempotency_lock_timeout_seconds,
        wait_timeout_seconds=settings.idempotency_wait_timeout_seconds,
        clock=clock,
    )
    vault = AllowanceVault(
        session_factory,
        cleanup_grace_hours=settings.token_cleanup_grace_hours,
        clock=clock,
    )
    pricing = PricingEngine(
        catalog,
        tax_rate=settings.tax_rate,
        shipping_tax_rate=settings.shipping_tax_rate,
        shipping_methods=default_shipping_methods(
            settings.standard_shipping_cents, settings.express_shipping_cents
        ),
        base_url=settings.base_url,
        clock=clock,
    )
    notifier = WebhookNotifier(
        url=settings.webhook_url,
        secret=settings.webhook_secret,
        max_retries=settings.webhook_max_retries,
        base_delay_seconds=settings.webhook_base_delay_seconds,
        queue_size=settings.webhook_queue_size,
        timeout_seconds=settings.webhook_timeout_seconds,
    )
    checkout = CheckoutSessionMachine(
        session_factory,
        pricing=pricing,
        vault=vault,
        charge=charge,
        notifier=notifier,
        currency=settings.default_currency,
        payment_provider=settings.payment_provider,
        merchant_id=settings.merchant_id,
        base_url=settings.base_url,
        expiry_minutes=settings.checkout_session_expiry_minutes,
        clock=clock,
    )

    scheduler = MaintenanceScheduler(settings.maintenance_interval_minutes) if with_scheduler else None

    logger.info(f"Services wired (database={settings.database_path}, currency={settings.default_currency})")

    return ServiceContainer(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        idempotency=idempotency,
        vault=vault,
        pricing=pricing,
        checkout=checkout,
        notifier=notifier,
        scheduler=scheduler,
        clock=clock,
    )
