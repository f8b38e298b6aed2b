"""
PostgreSQL record and tenant store.

Provides connection management plus the retry-queue operations whose
atomicity the worker relies on: the claim is a single
UPDATE ... WHERE id IN (SELECT ... FOR UPDATE SKIP LOCKED) RETURNING, and
entry updates only apply while the row is still 'processing' under the
claim_id stamped by that claim.
"""
from __future__ import annotations
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Generator, Optional
from uuid import uuid4

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from loguru import logger

from ..config import SyncConfig
from ..models import (
    AuthorityStatus,
    QueueStatus,
    RetryQueueEntry,
    Sale,
    SaleItem,
    SubmissionLog,
    TenantConfig,
    check_authority_fields,
)

SCHEMA_FILE = Path(__file__).parent / "schema.sql"

ENTRY_COLUMNS = (
    "id, tenant_id, sale_id, scenario_code, payload, status, retry_count, max_retries, "
    "next_attempt_at, last_error, needs_reconciliation, claim_id, created_at, updated_at"
)
RETURNING_COLUMNS = ", ".join("q." + c.strip() for c in ENTRY_COLUMNS.split(","))


def get_connection(config: Optional[SyncConfig] = None):
    """Create an autocommit psycopg connection returning dict rows."""
    config = config or SyncConfig.from_env()
    return psycopg.connect(config.db_url, autocommit=True, row_factory=dict_row)


def _entry_from_row(row: dict) -> RetryQueueEntry:
    return RetryQueueEntry.model_validate(row)


class PostgresStore:
    """
    Record store and tenant configuration store backed by PostgreSQL.

    Usage:
        with PostgresStore(config) as store:
            store.initialize_schema()
            sale = store.find_sale("S-1001")
    """

    def __init__(self, config: Optional[SyncConfig] = None):
        self.config = config or SyncConfig.from_env()
        self.schema = self.config.db_schema
        self._conn = None

    @property
    def conn(self):
        """Get or create database connection."""
        if self._conn is None or self._conn.closed:
            self._conn = get_connection(self.config)
        return self._conn

    def close(self):
        """Close database connection."""
        if self._conn and not self._conn.closed:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    @contextmanager
    def transaction(self) -> Generator:
        """Commit on success, roll back on exception."""
        with self.conn.transaction():
            yield

    def initialize_schema(self):
        """Create schema and tables if they don't exist."""
        self.execute_ddl(SCHEMA_FILE)

    def execute_ddl(self, ddl_path: Path | str):
        """Execute DDL from a SQL file, substituting the configured schema name."""
        ddl_file = Path(ddl_path)
        if not ddl_file.exists():
            raise FileNotFoundError(f"DDL file not found: {ddl_path}")

        ddl = ddl_file.read_text(encoding="utf-8").replace("{schema}", self.schema)
        with self.conn.cursor() as cur:
            cur.execute(ddl)
        logger.info(f"Executed DDL from {ddl_file.name} into schema {self.schema}")

    # Tenants

    def get_tenant(self, tenant_id: str) -> Optional[TenantConfig]:
        with self.conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT tenant_id, ntn, business_name, province, address, bearer_token,
                       environment, is_active, auto_retry, retry_attempts,
                       retry_delay_minutes::float8 AS retry_delay_minutes, default_scenario
                FROM {self.schema}.tenant_settings
                WHERE tenant_id = %s
                """,
                (tenant_id,),
            )
            row = cur.fetchone()
        return TenantConfig.model_validate(row) if row else None

    def touch_last_sync(self, tenant_id: str):
        with self.conn.cursor() as cur:
            cur.execute(
                f"UPDATE {self.schema}.tenant_settings SET last_sync = NOW() WHERE tenant_id = %s",
                (tenant_id,),
            )

    # Sales

    def find_sale(self, sale_id: str) -> Optional[Sale]:
        with self.conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT id, tenant_id, invoice_number, sale_date, customer_name, customer_ntn,
                       customer_province, customer_address, customer_phone, reference_number,
                       scenario_code, export_document, original_invoice_number,
                       mrp::float8 AS mrp, discount_amount::float8 AS discount_amount,
                       total_amount::float8 AS total_amount, tax_amount::float8 AS tax_amount,
                       authority_status, authority_invoice_number, authority_error
                FROM {self.schema}.sales
                WHERE id = %s
                """,
                (sale_id,),
            )
            row = cur.fetchone()
            if not row:
                return None
            cur.execute(
                f"""
                SELECT product_id, name, hs_code, unit_of_measure,
                       quantity::float8 AS quantity, unit_price::float8 AS unit_price,
                       tax_category, tax_amount::float8 AS tax_amount
                FROM {self.schema}.sale_items
                WHERE sale_id = %s
                ORDER BY id
                """,
                (sale_id,),
            )
            items = [SaleItem.model_validate(r) for r in cur.fetchall()]
        return Sale.model_validate({**row, "items": items})

    def update_sale_authority_fields(
        self,
        sale_id: str,
        status: AuthorityStatus,
        invoice_number: str | None = None,
        error: str | None = None,
    ) -> None:
        check_authority_fields(status, invoice_number, error)
        with self.conn.cursor() as cur:
            cur.execute(
                f"""
                UPDATE {self.schema}.sales
                SET authority_status = %s, authority_invoice_number = %s, authority_error = %s
                WHERE id = %s
                """,
                (AuthorityStatus(status).value, invoice_number, error, sale_id),
            )

    # Retry queue

    def insert_retry_entry(self, entry: RetryQueueEntry) -> RetryQueueEntry:
        with self.conn.cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO {self.schema}.retry_queue ({ENTRY_COLUMNS})
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id, entry.tenant_id, entry.sale_id, entry.scenario_code,
                    Jsonb(entry.payload), entry.status.value, entry.retry_count,
                    entry.max_retries, entry.next_attempt_at, entry.last_error,
                    entry.needs_reconciliation, entry.claim_id, entry.created_at, entry.updated_at,
                ),
            )
        return entry

    def update_retry_entry(self, entry: RetryQueueEntry) -> bool:
        with self.conn.cursor() as cur:
            cur.execute(
                f"""
                UPDATE {self.schema}.retry_queue
                SET status = %s, retry_count = %s, next_attempt_at = %s, last_error = %s,
                    needs_reconciliation = %s, claim_id = NULL, updated_at = %s
                WHERE id = %s AND status = %s AND claim_id = %s
                """,
                (
                    entry.status.value, entry.retry_count, entry.next_attempt_at,
                    entry.last_error, entry.needs_reconciliation, entry.updated_at,
                    entry.id, QueueStatus.PROCESSING.value, entry.claim_id,
                ),
            )
            return cur.rowcount == 1

    def get_retry_entry(self, entry_id: str) -> Optional[RetryQueueEntry]:
        with self.conn.cursor() as cur:
            cur.execute(
                f"SELECT {ENTRY_COLUMNS} FROM {self.schema}.retry_queue WHERE id = %s",
                (entry_id,),
            )
            row = cur.fetchone()
        return _entry_from_row(row) if row else None

    def find_active_retry_entry(self, sale_id: str) -> Optional[RetryQueueEntry]:
        with self.conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {ENTRY_COLUMNS} FROM {self.schema}.retry_queue
                WHERE sale_id = %s AND status IN ('pending', 'processing')
                """,
                (sale_id,),
            )
            row = cur.fetchone()
        return _entry_from_row(row) if row else None

    def claim_due_retry_entries(self, limit: int, now: datetime) -> list[RetryQueueEntry]:
        with self.conn.cursor() as cur:
            cur.execute(
                f"""
                UPDATE {self.schema}.retry_queue q
                SET status = 'processing', claim_id = %(claim_id)s, updated_at = %(now)s
                WHERE q.id IN (
                    SELECT id FROM {self.schema}.retry_queue
                    WHERE status = 'pending' AND next_attempt_at <= %(now)s
                    ORDER BY created_at
                    LIMIT %(limit)s
                    FOR UPDATE SKIP LOCKED
                )
                AND q.status = 'pending'
                RETURNING {RETURNING_COLUMNS}
                """,
                {"now": now, "limit": limit, "claim_id": uuid4().hex},
            )
            rows = cur.fetchall()
        return sorted((_entry_from_row(r) for r in rows), key=lambda e: e.created_at)

    def touch_retry_entry(self, entry_id: str, claim_id: str, now: datetime) -> bool:
        with self.conn.cursor() as cur:
            cur.execute(
                f"""
                UPDATE {self.schema}.retry_queue
                SET updated_at = %s
                WHERE id = %s AND status = 'processing' AND claim_id = %s
                """,
                (now, entry_id, claim_id),
            )
            return cur.rowcount == 1

    def reclaim_stale_retry_entries(self, cutoff: datetime, now: datetime) -> int:
        with self.conn.cursor() as cur:
            cur.execute(
                f"""
                UPDATE {self.schema}.retry_queue
                SET status = 'pending', claim_id = NULL, needs_reconciliation = true,
                    updated_at = %s
                WHERE status = 'processing' AND updated_at < %s
                """,
                (now, cutoff),
            )
            return cur.rowcount

    def delete_terminal_retry_entries(self, cutoff: datetime) -> int:
        with self.conn.cursor() as cur:
            cur.execute(
                f"""
                DELETE FROM {self.schema}.retry_queue
                WHERE status IN ('completed', 'failed') AND updated_at < %s
                """,
                (cutoff,),
            )
            return cur.rowcount

    # Submission log

    def insert_submission_log(self, log: SubmissionLog) -> None:
        with self.conn.cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO {self.schema}.submission_log
                    (tenant_id, sale_id, scenario_code, phase, status, error_code,
                     response_time_ms, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    log.tenant_id, log.sale_id, log.scenario_code, log.phase, log.status,
                    log.error_code, log.response_time_ms, log.created_at,
                ),
            )

    def submission_stats(self, tenant_id: str, since: datetime) -> dict[str, Any]:
        with self.conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT COUNT(*) AS total_requests,
                       COUNT(*) FILTER (WHERE status = 'success') AS success_count,
                       COUNT(*) FILTER (WHERE status = 'failed') AS failure_count,
                       COALESCE(AVG(response_time_ms), 0)::float8 AS avg_response_time
                FROM {self.schema}.submission_log
                WHERE tenant_id = %s AND created_at >= %s
                """,
                (tenant_id, since),
            )
            return dict(cur.fetchone())
