"""
Invoice Sync - Tax invoice submission pipeline for a retail point-of-sale system.

Takes a completed sale, classifies it into an authority sale scenario,
builds the invoice payload, validates and then submits it to the tax
authority, and keeps transiently failed submissions in a durable retry
queue with exponential backoff.

Key Features:
- Scenario catalog (SN001-SN010) with required-field checks and recommendations
- Deterministic payload construction per tax category
- Two-phase validate/submit protocol with retryable vs. permanent failures
- Authority error-code translation
- PostgreSQL retry queue with atomic claims, stale-claim recovery and
  exactly-once exhaustion notification

Usage:
    # Submit one sale
    python -m invoice_sync process S-1001

    # Drain due retries (run from cron or a scheduler)
    python -m invoice_sync drain
"""

__version__ = "1.0.0"

from .client import AuthorityClient, ReferenceDataCache
from .config import SyncConfig, configure_logging
from .errors import ErrorTranslator, InvoiceSyncError
from .models import AuthorityResult, InvoicePayload, RetryQueueEntry, Sale, SaleItem, TenantConfig
from .orchestrator import SubmissionOrchestrator
from .payload import PayloadBuilder
from .retry_queue import DrainReport, RetryQueue
from .scenarios import ScenarioCatalog
from .service import InvoiceSyncService, RetryReport, run_drain

__all__ = [
    "AuthorityClient",
    "AuthorityResult",
    "DrainReport",
    "ErrorTranslator",
    "InvoicePayload",
    "InvoiceSyncError",
    "InvoiceSyncService",
    "PayloadBuilder",
    "ReferenceDataCache",
    "RetryQueue",
    "RetryQueueEntry",
    "RetryReport",
    "Sale",
    "SaleItem",
    "ScenarioCatalog",
    "SubmissionOrchestrator",
    "SyncConfig",
    "TenantConfig",
    "configure_logging",
    "run_drain",
    "__version__",
]
