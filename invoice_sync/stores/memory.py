"""
In-memory record and tenant store.

Implements the same contracts as the PostgreSQL store, including the
atomic pending -> processing claim, behind a single lock.
"""
from __future__ import annotations
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Generator, Iterable, Optional
from uuid import uuid4

from ..models import (
    AuthorityStatus,
    QueueStatus,
    RetryQueueEntry,
    Sale,
    SubmissionLog,
    TenantConfig,
    check_authority_fields,
)

ACTIVE_STATUSES = (QueueStatus.PENDING, QueueStatus.PROCESSING)


class InMemoryStore:
    def __init__(
        self,
        sales: Iterable[Sale] = (),
        tenants: Iterable[TenantConfig] = (),
    ):
        self._lock = threading.RLock()
        self.sales: dict[str, Sale] = {s.id: s.model_copy(deep=True) for s in sales}
        self.tenants: dict[str, TenantConfig] = {t.tenant_id: t for t in tenants}
        self.entries: dict[str, RetryQueueEntry] = {}
        self.logs: list[SubmissionLog] = []
        self.last_sync: dict[str, datetime] = {}

    def add_sale(self, sale: Sale) -> None:
        with self._lock:
            self.sales[sale.id] = sale.model_copy(deep=True)

    def add_tenant(self, tenant: TenantConfig) -> None:
        with self._lock:
            self.tenants[tenant.tenant_id] = tenant

    def get_tenant(self, tenant_id: str) -> Optional[TenantConfig]:
        return self.tenants.get(tenant_id)

    def touch_last_sync(self, tenant_id: str) -> None:
        with self._lock:
            self.last_sync[tenant_id] = datetime.now(timezone.utc)

    def find_sale(self, sale_id: str) -> Optional[Sale]:
        with self._lock:
            sale = self.sales.get(sale_id)
            return sale.model_copy(deep=True) if sale else None

    def update_sale_authority_fields(
        self,
        sale_id: str,
        status: AuthorityStatus,
        invoice_number: str | None = None,
        error: str | None = None,
    ) -> None:
        check_authority_fields(status, invoice_number, error)
        with self._lock:
            sale = self.sales[sale_id]
            sale.authority_status = status
            sale.authority_invoice_number = invoice_number
            sale.authority_error = error

    @contextmanager
    def transaction(self) -> Generator:
        """Serialize a group of writes. There is no rollback in memory."""
        with self._lock:
            yield

    def insert_retry_entry(self, entry: RetryQueueEntry) -> RetryQueueEntry:
        with self._lock:
            active = self.find_active_retry_entry(entry.sale_id)
            if active is not None:
                raise ValueError(f"Sale {entry.sale_id} already has live retry entry {active.id}")
            self.entries[entry.id] = entry.model_copy(deep=True)
        return entry

    def update_retry_entry(self, entry: RetryQueueEntry) -> bool:
        with self._lock:
            current = self.entries.get(entry.id)
            if current is None or current.status != QueueStatus.PROCESSING:
                return False
            if current.claim_id != entry.claim_id:
                # Reclaimed and re-claimed by another drain
                return False
            self.entries[entry.id] = entry.model_copy(update={"claim_id": None}, deep=True)
            return True

    def get_retry_entry(self, entry_id: str) -> Optional[RetryQueueEntry]:
        with self._lock:
            entry = self.entries.get(entry_id)
            return entry.model_copy(deep=True) if entry else None

    def find_active_retry_entry(self, sale_id: str) -> Optional[RetryQueueEntry]:
        with self._lock:
            for entry in self.entries.values():
                if entry.sale_id == sale_id and entry.status in ACTIVE_STATUSES:
                    return entry.model_copy(deep=True)
        return None

    def claim_due_retry_entries(self, limit: int, now: datetime) -> list[RetryQueueEntry]:
        with self._lock:
            due = sorted(
                (
                    e for e in self.entries.values()
                    if e.status == QueueStatus.PENDING and e.next_attempt_at <= now
                ),
                key=lambda e: e.created_at,
            )[:limit]
            claim_id = uuid4().hex
            claimed = []
            for entry in due:
                entry.status = QueueStatus.PROCESSING
                entry.claim_id = claim_id
                entry.updated_at = now
                claimed.append(entry.model_copy(deep=True))
            return claimed

    def touch_retry_entry(self, entry_id: str, claim_id: str, now: datetime) -> bool:
        with self._lock:
            entry = self.entries.get(entry_id)
            if entry is None or entry.status != QueueStatus.PROCESSING or entry.claim_id != claim_id:
                return False
            entry.updated_at = now
            return True

    def reclaim_stale_retry_entries(self, cutoff: datetime, now: datetime) -> int:
        count = 0
        with self._lock:
            for entry in self.entries.values():
                if entry.status == QueueStatus.PROCESSING and entry.updated_at < cutoff:
                    entry.status = QueueStatus.PENDING
                    entry.claim_id = None
                    entry.needs_reconciliation = True
                    entry.updated_at = now
                    count += 1
        return count

    def delete_terminal_retry_entries(self, cutoff: datetime) -> int:
        with self._lock:
            doomed = [e.id for e in self.entries.values() if e.is_terminal and e.updated_at < cutoff]
            for entry_id in doomed:
                del self.entries[entry_id]
        return len(doomed)

    def insert_submission_log(self, log: SubmissionLog) -> None:
        with self._lock:
            self.logs.append(log)

    def submission_stats(self, tenant_id: str, since: datetime) -> dict[str, Any]:
        with self._lock:
            rows = [l for l in self.logs if l.tenant_id == tenant_id and l.created_at >= since]
        total = len(rows)
        return {
            "total_requests": total,
            "success_count": sum(1 for l in rows if l.status == "success"),
            "failure_count": sum(1 for l in rows if l.status == "failed"),
            "avg_response_time": (sum(l.response_time_ms for l in rows) / total) if total else 0.0,
        }

    def close(self):
        pass
