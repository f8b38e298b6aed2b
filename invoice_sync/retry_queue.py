"""
Durable retry queue for submissions that failed transiently.

Entries move pending -> processing -> pending | completed | failed. Each
claim stamps a claim_id, and the store applies updates only while the entry
is still processing under that claim_id. A drain refreshes the entry's
updated_at before working on it and again right before submit, and it skips
the submit once the entry has been reclaimed by another drain, so one entry
is never submitted by two workers at once. Reclaimed entries are flagged
needs_reconciliation because the earlier attempt may have reached the
authority.
"""
from __future__ import annotations
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, TYPE_CHECKING

from loguru import logger

from .config import SyncConfig
from .errors import DUPLICATE_REFERENCE
from .orchestrator import CLAIM_LOST
from .models import (
    AuthorityResult,
    AuthorityStatus,
    InvoicePayload,
    QueueStatus,
    RetryQueueEntry,
    Sale,
    utcnow,
)
from .stores.base import LogNotifier, Notifier, RecordStore, TenantConfigStore

if TYPE_CHECKING:
    from .orchestrator import SubmissionOrchestrator

FAILED = "failed"
RECONCILIATION_REQUIRED = "reconciliation_required"

RECONCILIATION_MESSAGE = (
    "The authority may already hold this invoice from an earlier attempt "
    "(duplicate reference). Reconcile manually before resubmitting."
)


@dataclass
class DrainReport:
    """What one drain cycle did."""

    claimed: int = 0
    completed: int = 0
    rescheduled: int = 0
    failed: int = 0
    reclaimed: int = 0
    skipped: bool = False


class RetryQueue:
    """
    Schedules and drains retry entries.

    Usage:
        queue = RetryQueue(store, config=config, tenants=store)
        orchestrator = SubmissionOrchestrator(store, store, client, queue)
        report = queue.drain_due()
    """

    def __init__(
        self,
        store: RecordStore,
        config: Optional[SyncConfig] = None,
        notifier: Optional[Notifier] = None,
        tenants: Optional[TenantConfigStore] = None,
        processor: Optional["SubmissionOrchestrator"] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.config = config or SyncConfig.from_env()
        self.notifier = notifier or LogNotifier()
        self.tenants = tenants
        self.processor = processor
        self.clock = clock
        self._drain_lock = threading.Lock()

    def enqueue(
        self,
        sale: Sale,
        scenario_code: str,
        payload: InvoicePayload,
        error: Optional[str],
        max_retries: Optional[int] = None,
        needs_reconciliation: bool = False,
    ) -> RetryQueueEntry:
        """Store a new pending entry, due immediately."""
        now = self.clock()
        entry = RetryQueueEntry(
            tenant_id=sale.tenant_id,
            sale_id=sale.id,
            scenario_code=scenario_code,
            payload=payload.to_dict(),
            max_retries=self.config.max_retries if max_retries is None else max_retries,
            next_attempt_at=now,
            last_error=error,
            needs_reconciliation=needs_reconciliation,
            created_at=now,
            updated_at=now,
        )
        return self.store.insert_retry_entry(entry)

    def backoff(self, retry_count: int, base_minutes: Optional[float] = None) -> timedelta:
        """Delay before the next attempt: base * 2**retry_count minutes, capped."""
        base = base_minutes or self.config.backoff_base_minutes
        minutes = min(base * (2 ** retry_count), self.config.backoff_cap_minutes)
        return timedelta(minutes=minutes)

    def reclaim_stale(self, older_than: Optional[timedelta] = None) -> int:
        """Return processing entries abandoned by a crashed worker to pending."""
        if older_than is None:
            older_than = timedelta(minutes=self.config.stale_processing_minutes)
        now = self.clock()
        count = self.store.reclaim_stale_retry_entries(now - older_than, now)
        if count:
            logger.warning(f"Reclaimed {count} stale retry entries")
        return count

    def cleanup(self, older_than_days: Optional[int] = None) -> int:
        """Delete completed and failed entries older than the cutoff."""
        days = self.config.cleanup_days if older_than_days is None else older_than_days
        count = self.store.delete_terminal_retry_entries(self.clock() - timedelta(days=days))
        logger.info(f"Deleted {count} terminal retry entries older than {days} days")
        return count

    def drain_due(self, limit: Optional[int] = None) -> DrainReport:
        """
        Claim due entries oldest first and resubmit each through the processor.

        A drain already running in this process makes the call a no-op.
        """
        if self.processor is None:
            raise RuntimeError("RetryQueue has no processor bound")
        if not self._drain_lock.acquire(blocking=False):
            logger.debug("Retry drain already running, skipping")
            return DrainReport(skipped=True)

        try:
            report = DrainReport(reclaimed=self.reclaim_stale())
            if limit is None:
                limit = self.config.drain_limit
            entries = self.store.claim_due_retry_entries(limit, self.clock())
            report.claimed = len(entries)
            if entries:
                logger.info(f"Draining {len(entries)} retry entries")
            for entry in entries:
                try:
                    status = self._process_entry(entry)
                except Exception:
                    # Left in processing; reclaim_stale returns it to pending
                    logger.exception(f"Error draining retry entry {entry.id}")
                    continue
                if status == QueueStatus.COMPLETED:
                    report.completed += 1
                elif status == QueueStatus.PENDING:
                    report.rescheduled += 1
                elif status == QueueStatus.FAILED:
                    report.failed += 1
            return report
        finally:
            self._drain_lock.release()

    def _process_entry(self, entry: RetryQueueEntry) -> Optional[QueueStatus]:
        if not self._still_claimed(entry):
            return None
        sale = self.store.find_sale(entry.sale_id)
        if sale is None:
            return self._fail(entry, None, "Sale not found")

        result = self.processor.retry(
            entry, sale, still_claimed=lambda: self._still_claimed(entry)
        )
        if result.error_code == CLAIM_LOST:
            return None
        if result.ok:
            return self._complete(entry, result)
        if result.is_retryable:
            return self._reschedule(entry, sale, result)

        if entry.needs_reconciliation and result.error_code == DUPLICATE_REFERENCE:
            return self._fail(entry, sale, RECONCILIATION_MESSAGE)
        return self._fail(entry, sale, result.message)

    def _complete(self, entry: RetryQueueEntry, result: AuthorityResult) -> Optional[QueueStatus]:
        entry.status = QueueStatus.COMPLETED
        entry.last_error = None
        entry.updated_at = self.clock()
        if not self._save(entry):
            return None
        logger.info(f"Retry entry {entry.id} completed as {result.invoice_number}")
        return QueueStatus.COMPLETED

    def _reschedule(
        self,
        entry: RetryQueueEntry,
        sale: Sale,
        result: AuthorityResult,
    ) -> Optional[QueueStatus]:
        entry.retry_count += 1
        entry.last_error = result.message
        entry.needs_reconciliation = entry.needs_reconciliation or result.unknown_outcome
        if entry.retry_count >= entry.max_retries:
            return self._fail(entry, sale, result.message)

        now = self.clock()
        entry.status = QueueStatus.PENDING
        entry.next_attempt_at = now + self.backoff(entry.retry_count, self._base_delay(entry))
        entry.updated_at = now
        with self.store.transaction():
            if not self._save(entry):
                return None
            self.store.update_sale_authority_fields(
                sale.id, AuthorityStatus.PENDING, None, result.message
            )
        logger.info(
            f"Retry entry {entry.id} rescheduled ({entry.retry_count}/{entry.max_retries}) "
            f"for {entry.next_attempt_at.isoformat()}"
        )
        return QueueStatus.PENDING

    def _fail(
        self,
        entry: RetryQueueEntry,
        sale: Optional[Sale],
        message: Optional[str],
    ) -> Optional[QueueStatus]:
        message = message or "Authority submission failed"
        entry.status = QueueStatus.FAILED
        entry.last_error = message
        entry.updated_at = self.clock()
        with self.store.transaction():
            if not self._save(entry):
                return None
            if sale is not None:
                self.store.update_sale_authority_fields(
                    sale.id, AuthorityStatus.FAILED, None, message
                )
        logger.error(f"Retry entry {entry.id} for sale {entry.sale_id} failed: {message}")

        try:
            self.notifier.notify({
                "sale_id": entry.sale_id,
                "invoice_number": sale.invoice_number if sale else None,
                "error": message,
                "status": RECONCILIATION_REQUIRED if entry.needs_reconciliation else FAILED,
            })
        except Exception as e:
            logger.error(f"Notification for sale {entry.sale_id} failed: {e}")
        return QueueStatus.FAILED

    def _still_claimed(self, entry: RetryQueueEntry) -> bool:
        if self.store.touch_retry_entry(entry.id, entry.claim_id, self.clock()):
            return True
        logger.warning(f"Retry entry {entry.id} was reclaimed by another drain, skipping it")
        return False

    def _save(self, entry: RetryQueueEntry) -> bool:
        if self.store.update_retry_entry(entry):
            return True
        logger.warning(f"Retry entry {entry.id} is no longer processing, leaving it alone")
        return False

    def _base_delay(self, entry: RetryQueueEntry) -> Optional[float]:
        if self.tenants is None:
            return None
        tenant = self.tenants.get_tenant(entry.tenant_id)
        return tenant.retry_delay_minutes if tenant else None
