"""Tests for maintenance job scheduling and app wiring."""
import pytest
from fastapi.testclient import TestClient

from agentic_checkout.main import create_app
from agentic_checkout.services.container import build_services
from agentic_checkout.services.scheduler import (
    IDEMPOTENCY_CLEANUP_JOB_ID,
    VAULT_CLEANUP_JOB_ID,
    MaintenanceScheduler,
)


class TestMaintenanceScheduler:

    @pytest.mark.asyncio
    async def test_registers_cleanup_jobs(self, services):
        scheduler = MaintenanceScheduler(interval_minutes=5)
        scheduler.register_defaults(services.vault, services.idempotency)
        scheduler.start()
        try:
            assert scheduler.running
            assert sorted(scheduler.get_job_ids()) == sorted([VAULT_CLEANUP_JOB_ID, IDEMPOTENCY_CLEANUP_JOB_ID])
        finally:
            scheduler.shutdown(wait=False)

    @pytest.mark.asyncio
    async def test_replacing_a_job_keeps_one_entry(self):
        async def cleanup():
            return 0

        scheduler = MaintenanceScheduler()
        scheduler.add_cleanup_job("job", cleanup)
        scheduler.add_cleanup_job("job", cleanup, interval_minutes=1)
        scheduler.start()
        try:
            assert scheduler.get_job_ids() == ["job"]
        finally:
            scheduler.shutdown(wait=False)


class TestAppLifespan:

    def test_lifespan_starts_and_stops_services(self, settings, clock):
        container = build_services(settings, clock=clock, with_scheduler=True)
        app = create_app(services=container)

        with TestClient(app) as client:
            assert client.get("/health").status_code == 200
            assert container.scheduler.running

        assert not container.scheduler.running
