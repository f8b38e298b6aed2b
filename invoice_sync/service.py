"""
Admin surface for the invoice submission pipeline.

Wires the store, authority client, orchestrator and retry queue together and
exposes the operations the CLI and the surrounding system call.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Optional

from loguru import logger

from .client import AuthorityClient
from .config import SyncConfig
from .models import AuthorityResult, AuthorityStatus, utcnow
from .orchestrator import SubmissionOrchestrator
from .retry_queue import DrainReport, RetryQueue
from .scenarios import ScenarioCatalog, ScenarioDefinition, default_catalog
from .stores.base import Notifier, RecordStore, TenantConfigStore

STAT_PERIODS = {
    "day": timedelta(days=1),
    "week": timedelta(days=7),
    "month": timedelta(days=30),
    "quarter": timedelta(days=90),
    "year": timedelta(days=365),
}
DEFAULT_PERIOD = "month"


@dataclass
class RetryReport:
    retried_count: int = 0
    errors: list[str] = field(default_factory=list)


class InvoiceSyncService:
    """
    Entry point for submitting sales and managing the retry queue.

    Usage:
        with InvoiceSyncService(config, store=PostgresStore(config)) as service:
            result = service.process_sale("S-1001")
            service.drain()
    """

    def __init__(
        self,
        config: Optional[SyncConfig] = None,
        store: Optional[RecordStore] = None,
        tenants: Optional[TenantConfigStore] = None,
        client: Optional[AuthorityClient] = None,
        notifier: Optional[Notifier] = None,
        catalog: Optional[ScenarioCatalog] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config or SyncConfig.from_env()
        if store is None:
            from .stores.postgres import PostgresStore
            store = PostgresStore(self.config)
        self.store = store
        self.tenants = tenants or store
        self.client = client or AuthorityClient(self.config)
        self.catalog = catalog or default_catalog
        self.clock = clock

        self.queue = RetryQueue(
            self.store,
            config=self.config,
            notifier=notifier,
            tenants=self.tenants,
            clock=clock,
        )
        self.orchestrator = SubmissionOrchestrator(
            self.store,
            self.tenants,
            self.client,
            queue=self.queue,
            catalog=self.catalog,
            config=self.config,
            clock=clock,
        )

    def initialize_schema(self):
        """Create the database schema when the store supports it."""
        init = getattr(self.store, "initialize_schema", None)
        if init is None:
            logger.info("Store has no schema to initialize")
            return
        init()

    def process_sale(self, sale_id: str) -> AuthorityResult:
        """Submit one sale to the authority now."""
        sale = self.store.find_sale(sale_id)
        if sale is None:
            logger.warning(f"Sale {sale_id} not found")
            return AuthorityResult.permanent(f"Sale {sale_id} not found", error_code="NOT_FOUND")
        return self.orchestrator.process(sale)

    def retry_failed(self, sale_ids: Iterable[str]) -> RetryReport:
        """
        Resubmit sales whose submission failed terminally.

        A sale counts as retried when it ends up synced or queued; every other
        outcome is reported in errors.
        """
        report = RetryReport()
        for sale_id in sale_ids:
            sale = self.store.find_sale(sale_id)
            if sale is None:
                report.errors.append(f"Sale {sale_id} not found")
                continue
            if sale.authority_status != AuthorityStatus.FAILED:
                report.errors.append(
                    f"Sale {sale_id} is {sale.authority_status.value}, not failed"
                )
                continue

            result = self.orchestrator.process(sale)
            if result.ok or result.queued:
                report.retried_count += 1
            else:
                report.errors.append(f"Sale {sale_id}: {result.message}")

        logger.info(f"Retried {report.retried_count} failed sales, {len(report.errors)} errors")
        return report

    def get_statistics(self, tenant_id: str, period: str = DEFAULT_PERIOD) -> dict[str, Any]:
        """Submission log statistics for a tenant over a trailing period."""
        window = STAT_PERIODS.get(period)
        if window is None:
            logger.warning(f"Unknown statistics period {period!r}, using {DEFAULT_PERIOD}")
            period, window = DEFAULT_PERIOD, STAT_PERIODS[DEFAULT_PERIOD]

        stats = self.store.submission_stats(tenant_id, self.clock() - window)
        total = stats.get("total_requests") or 0
        success = stats.get("success_count") or 0
        return {
            "period": period,
            "total_requests": total,
            "success_count": success,
            "failure_count": stats.get("failure_count") or 0,
            "success_rate": round(success / total * 100, 2) if total else 0.0,
            "avg_response_time": round(float(stats.get("avg_response_time") or 0), 2),
        }

    def drain(self, limit: Optional[int] = None) -> DrainReport:
        return self.queue.drain_due(limit)

    def reclaim_stale(self, older_than_minutes: Optional[float] = None) -> int:
        older_than = timedelta(minutes=older_than_minutes) if older_than_minutes else None
        return self.queue.reclaim_stale(older_than)

    def cleanup(self, older_than_days: Optional[int] = None) -> int:
        return self.queue.cleanup(older_than_days)

    def test_connection(self, tenant_id: str) -> dict:
        tenant = self.tenants.get_tenant(tenant_id)
        if tenant is None or not tenant.is_configured:
            return {
                "status": "failed",
                "error": f"Authority integration is not configured for tenant {tenant_id}",
            }
        return self.client.test_connection(tenant.credentials())

    def scenarios(self) -> list[ScenarioDefinition]:
        return self.catalog.list()

    def close(self):
        """Close the authority session and the store."""
        self.client.close()
        close = getattr(self.store, "close", None)
        if close is not None:
            close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


def run_drain(limit: Optional[int] = None, config: Optional[SyncConfig] = None) -> DrainReport:
    """
    Convenience function to run one retry drain cycle against PostgreSQL.

    Args:
        limit: Maximum entries to claim (defaults to RETRY_DRAIN_LIMIT)
        config: Optional config override

    Returns:
        DrainReport with the cycle's counts
    """
    with InvoiceSyncService(config) as service:
        return service.drain(limit)
