"""
Submission orchestration for one sale.

Runs BUILD -> VALIDATE -> SUBMIT against the authority and records the
outcome on the sale. Retryable failures are handed to the RetryQueue; the
queue's worker comes back through retry() with the stored payload.

Usage:
    orchestrator = SubmissionOrchestrator(store, store, client, queue)
    result = orchestrator.process(sale)
    if result.queued:
        ...
"""
from __future__ import annotations
from dataclasses import replace
from datetime import datetime
from typing import Callable, Optional, TYPE_CHECKING

from loguru import logger

from .client import AuthorityClient
from .config import SyncConfig
from .errors import InvoiceSyncError
from .models import (
    AuthorityResult,
    AuthorityStatus,
    InvoicePayload,
    Outcome,
    RetryQueueEntry,
    Sale,
    SubmissionLog,
    TenantConfig,
    utcnow,
)
from .payload import PayloadBuilder
from .scenarios import ScenarioCatalog, ScenarioDefinition, default_catalog
from .stores.base import RecordStore, TenantConfigStore

if TYPE_CHECKING:
    from .retry_queue import RetryQueue

NOT_CONFIGURED = "NOT_CONFIGURED"
MISSING_FIELDS = "MISSING_FIELDS"
PROCESSING_ERROR = "PROCESSING_ERROR"
CLAIM_LOST = "CLAIM_LOST"


class SubmissionOrchestrator:
    """
    Drives a sale through validate and submit and maps the result onto the
    sale's authority fields.

    process() and retry() never raise; every failure comes back as an
    AuthorityResult.
    """

    def __init__(
        self,
        store: RecordStore,
        tenants: TenantConfigStore,
        client: AuthorityClient,
        queue: Optional["RetryQueue"] = None,
        catalog: Optional[ScenarioCatalog] = None,
        builder: Optional[PayloadBuilder] = None,
        config: Optional[SyncConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.tenants = tenants
        self.client = client
        self.queue = queue
        self.catalog = catalog or default_catalog
        self.builder = builder or PayloadBuilder()
        self.config = config or SyncConfig.from_env()
        self.clock = clock
        if queue is not None and queue.processor is None:
            queue.processor = self

    # Immediate path

    def process(self, sale: Sale) -> AuthorityResult:
        """Submit a sale now. Retryable failures are queued when the tenant allows it."""
        try:
            return self._process(sale)
        except InvoiceSyncError as e:
            logger.warning(f"Sale {sale.id} cannot be submitted: {e}")
            self._mark_failed(sale.id, str(e))
            return AuthorityResult.permanent(str(e), error_code=PROCESSING_ERROR)
        except Exception as e:
            logger.exception(f"Unexpected error processing sale {sale.id}")
            message = str(e) or e.__class__.__name__
            self._mark_failed(sale.id, message)
            return AuthorityResult.permanent(message, error_code=PROCESSING_ERROR)

    def _process(self, sale: Sale) -> AuthorityResult:
        if sale.authority_status == AuthorityStatus.SYNCED and sale.authority_invoice_number:
            logger.info(f"Sale {sale.id} already synced as {sale.authority_invoice_number}")
            return AuthorityResult.success(sale.authority_invoice_number)

        active = self.store.find_active_retry_entry(sale.id)
        if active is not None:
            logger.info(f"Sale {sale.id} already queued for retry ({active.status.value})")
            return AuthorityResult.retryable(
                active.last_error or "Queued for retry", queued=True
            )

        tenant = self.tenants.get_tenant(sale.tenant_id)
        if tenant is None or not tenant.is_configured:
            message = "Authority integration is not configured for this tenant"
            logger.warning(f"Sale {sale.id}: {message} ({sale.tenant_id})")
            self._mark_failed(sale.id, message)
            return AuthorityResult.permanent(message, error_code=NOT_CONFIGURED)

        scenario = self.select_scenario(sale, tenant)
        check = self.catalog.validate_requirements(scenario.code, sale.scenario_fields())
        if not check.valid:
            message = (
                f"Missing required fields for {scenario.code}: {', '.join(check.missing_fields)}"
                if check.missing_fields
                else "; ".join(check.errors)
            )
            logger.warning(f"Sale {sale.id}: {message}")
            self._mark_failed(sale.id, message)
            return AuthorityResult.permanent(message, error_code=MISSING_FIELDS)

        payload = self.builder.build(sale, tenant, scenario)
        logger.info(f"Submitting sale {sale.id} ({sale.invoice_number}) as {scenario.code}")
        result = self._attempt(sale, tenant, scenario.code, payload)

        if result.ok:
            self._mark_synced(sale, result.invoice_number)
            return result

        if result.is_retryable:
            if not tenant.auto_retry:
                logger.warning(f"Sale {sale.id}: automatic retry disabled, marking failed")
                self._mark_failed(sale.id, result.message)
                return replace(result, outcome=Outcome.PERMANENT)
            self._enqueue(sale, tenant, scenario.code, payload, result)
            return replace(result, queued=True)

        self._mark_failed(sale.id, result.message)
        return result

    def select_scenario(self, sale: Sale, tenant: TenantConfig) -> ScenarioDefinition:
        """
        Pick the scenario for a sale: its own code, then the tenant default,
        then the first recommendation.

        Raises:
            ContractViolation: if the chosen code is malformed
            ScenarioNotFoundError: if the chosen code is not in the catalog
        """
        code = sale.scenario_code or tenant.default_scenario
        if not code:
            code = self.catalog.recommend(sale.scenario_fields())[0]
        return self.catalog.get(code)

    def _enqueue(
        self,
        sale: Sale,
        tenant: TenantConfig,
        scenario_code: str,
        payload: InvoicePayload,
        result: AuthorityResult,
    ) -> RetryQueueEntry:
        if self.queue is None:
            raise RuntimeError("No retry queue configured for retryable failures")
        with self.store.transaction():
            entry = self.queue.enqueue(
                sale,
                scenario_code,
                payload,
                result.message,
                max_retries=tenant.retry_attempts,
                needs_reconciliation=result.unknown_outcome,
            )
            self.store.update_sale_authority_fields(
                sale.id, AuthorityStatus.PENDING, None, result.message
            )
        logger.info(f"Sale {sale.id} queued for retry as {entry.id}: {result.message}")
        return entry

    # Worker path

    def retry(
        self,
        entry: RetryQueueEntry,
        sale: Sale,
        still_claimed: Optional[Callable[[], bool]] = None,
    ) -> AuthorityResult:
        """
        Resubmit a queued sale with the payload stored on its entry.

        Only success is written to the sale here; the queue decides whether a
        failure is terminal. still_claimed is asked right before submit; when
        it answers False the submit is skipped and CLAIM_LOST comes back.
        """
        try:
            if sale.authority_status == AuthorityStatus.SYNCED and sale.authority_invoice_number:
                return AuthorityResult.success(sale.authority_invoice_number)

            tenant = self.tenants.get_tenant(sale.tenant_id)
            if tenant is None or not tenant.is_configured:
                return AuthorityResult.permanent(
                    "Authority integration is not configured for this tenant",
                    error_code=NOT_CONFIGURED,
                )

            payload = InvoicePayload.from_dict(entry.payload)
            logger.info(
                f"Retrying sale {sale.id} (attempt {entry.retry_count + 1}/{entry.max_retries})"
            )
            result = self._attempt(sale, tenant, entry.scenario_code, payload, still_claimed)
            if result.ok:
                self._mark_synced(sale, result.invoice_number)
            return result
        except Exception as e:
            logger.exception(f"Unexpected error retrying sale {sale.id}")
            return AuthorityResult.permanent(str(e) or e.__class__.__name__, error_code=PROCESSING_ERROR)

    # Shared steps

    def _attempt(
        self,
        sale: Sale,
        tenant: TenantConfig,
        scenario_code: str,
        payload: InvoicePayload,
        still_claimed: Optional[Callable[[], bool]] = None,
    ) -> AuthorityResult:
        credentials = tenant.credentials()
        validated = self.client.validate(payload, credentials)
        self._log_call(sale, scenario_code, "validate", validated)
        if not validated.ok:
            return validated

        if still_claimed is not None and not still_claimed():
            logger.warning(f"Retry entry for sale {sale.id} was taken over, not submitting")
            return AuthorityResult.retryable(
                "Retry entry was reclaimed by another worker", error_code=CLAIM_LOST
            )

        submitted = self.client.submit(payload, credentials)
        self._log_call(sale, scenario_code, "submit", submitted)
        return submitted

    def _log_call(self, sale: Sale, scenario_code: str, phase: str, result: AuthorityResult):
        log = SubmissionLog(
            tenant_id=sale.tenant_id,
            sale_id=sale.id,
            scenario_code=scenario_code,
            phase=phase,
            status="success" if result.ok else "failed",
            error_code=result.error_code,
            response_time_ms=result.response_time_ms,
            created_at=self.clock(),
        )
        try:
            self.store.insert_submission_log(log)
        except Exception as e:
            logger.warning(f"Could not write submission log for sale {sale.id}: {e}")

    def _mark_synced(self, sale: Sale, invoice_number: str):
        self.store.update_sale_authority_fields(sale.id, AuthorityStatus.SYNCED, invoice_number, None)
        logger.success(f"Sale {sale.id} synced as authority invoice {invoice_number}")
        try:
            self.tenants.touch_last_sync(sale.tenant_id)
        except Exception as e:
            logger.warning(f"Could not record last sync for tenant {sale.tenant_id}: {e}")

    def _mark_failed(self, sale_id: str, message: Optional[str]):
        try:
            self.store.update_sale_authority_fields(
                sale_id, AuthorityStatus.FAILED, None, message or "Authority submission failed"
            )
        except Exception as e:
            logger.error(f"Could not mark sale {sale_id} as failed: {e}")
