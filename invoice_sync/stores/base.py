from __future__ import annotations
from datetime import datetime
from typing import Any, ContextManager, Optional, Protocol

from loguru import logger

from ..models import AuthorityStatus, RetryQueueEntry, Sale, SubmissionLog, TenantConfig


class RecordStore(Protocol):
    def transaction(self) -> ContextManager: ...

    def find_sale(self, sale_id: str) -> Optional[Sale]: ...

    def update_sale_authority_fields(
        self,
        sale_id: str,
        status: AuthorityStatus,
        invoice_number: str | None = None,
        error: str | None = None,
    ) -> None: ...

    def insert_retry_entry(self, entry: RetryQueueEntry) -> RetryQueueEntry: ...

    # Must only succeed while the stored entry is still 'processing' under entry.claim_id
    def update_retry_entry(self, entry: RetryQueueEntry) -> bool: ...

    def get_retry_entry(self, entry_id: str) -> Optional[RetryQueueEntry]: ...

    def find_active_retry_entry(self, sale_id: str) -> Optional[RetryQueueEntry]: ...

    # Atomically flips due 'pending' entries to 'processing', oldest first
    def claim_due_retry_entries(self, limit: int, now: datetime) -> list[RetryQueueEntry]: ...

    # Refreshes updated_at; False once the claim has been lost
    def touch_retry_entry(self, entry_id: str, claim_id: str, now: datetime) -> bool: ...

    # Returns stale entries to 'pending' and flags them for reconciliation
    def reclaim_stale_retry_entries(self, cutoff: datetime, now: datetime) -> int: ...

    def delete_terminal_retry_entries(self, cutoff: datetime) -> int: ...

    def insert_submission_log(self, log: SubmissionLog) -> None: ...

    def submission_stats(self, tenant_id: str, since: datetime) -> dict[str, Any]: ...


class TenantConfigStore(Protocol):
    def get_tenant(self, tenant_id: str) -> Optional[TenantConfig]: ...

    def touch_last_sync(self, tenant_id: str) -> None: ...


class Notifier(Protocol):
    def notify(self, event: dict[str, Any]) -> None: ...


class LogNotifier:
    """Default notifier: records terminal failures in the log for a human to pick up."""

    def notify(self, event: dict[str, Any]) -> None:
        logger.error(
            f"Authority submission needs attention: sale={event.get('sale_id')} "
            f"invoice={event.get('invoice_number')} status={event.get('status')} "
            f"error={event.get('error')}"
        )
