"""
HTTP client for the tax authority's digital invoicing API.

Every call is a single JSON POST with a bearer token and a bounded timeout.
HTTP and transport problems are folded into an AuthorityResult instead of
raised, so callers only ever branch on the result's outcome.
"""
from __future__ import annotations
import time
from typing import Any, Optional

import requests
from loguru import logger
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .config import SyncConfig
from .errors import AuthorityConnectionError, ErrorTranslator, InvoiceSyncError
from .models import AuthorityResult, Credentials, InvoicePayload

DEFAULT_HEADERS = {
    "Content-Type": "application/json",
    "Accept": "application/json",
    "User-Agent": "invoice-sync/1.0",
}

ENDPOINTS = {
    ("validate", "sandbox"): "/validateinvoicedata_sb",
    ("submit", "sandbox"): "/postinvoicedata_sb",
    ("validate", "production"): "/validateinvoicedata",
    ("submit", "production"): "/postinvoicedata",
}

REFERENCE_ENDPOINTS = {
    "provinces": "/provinces",
    "doctypecode": "/doctypecode",
    "itemdesccode": "/itemdesccode",
    "sroitemcode": "/sroitemcode",
    "transtypecode": "/transtypecode",
    "uom": "/uom",
}

SUCCESS_STATUS = "00"
CONNECTION_FAILED = "connection failed"


class AuthorityClient:
    """
    Thin HTTP boundary to the authority.

    Features:
    - Connection pooling via requests.Session
    - Per-call credentials (no tenant state on the client)
    - One POST per validate or submit; retries belong to the durable queue
    - Short tenacity retry only for reference data reads
    """

    def __init__(
        self,
        config: Optional[SyncConfig] = None,
        translator: Optional[ErrorTranslator] = None,
        session: Optional[requests.Session] = None,
    ):
        self.config = config or SyncConfig.from_env()
        self.translator = translator or ErrorTranslator()
        self.session = session or requests.Session()
        self.session.headers.update(DEFAULT_HEADERS)

    def endpoint_url(self, phase: str, credentials: Credentials) -> str:
        environment = "sandbox" if credentials.is_sandbox else "production"
        return self.config.base_url(environment) + ENDPOINTS[(phase, environment)]

    def _auth_headers(self, credentials: Credentials) -> dict[str, str]:
        return {"Authorization": f"Bearer {credentials.bearer_token}"}

    def _post(self, url: str, body: dict, credentials: Credentials) -> requests.Response:
        return self.session.post(
            url,
            json=body,
            headers=self._auth_headers(credentials),
            timeout=self.config.request_timeout,
        )

    def validate(self, payload: InvoicePayload, credentials: Credentials) -> AuthorityResult:
        """Ask the authority to check the payload without booking it."""
        url = self.endpoint_url("validate", credentials)
        started = time.perf_counter()
        try:
            response = self._post(url, payload.to_dict(), credentials)
        except requests.RequestException as e:
            return self._transport_failure("validate", e, started)
        return self._interpret("validate", response, started)

    def submit(self, payload: InvoicePayload, credentials: Credentials) -> AuthorityResult:
        """Book the invoice with the authority. Never retried here."""
        url = self.endpoint_url("submit", credentials)
        started = time.perf_counter()
        try:
            response = self._post(url, payload.to_dict(), credentials)
        except requests.RequestException as e:
            return self._transport_failure("submit", e, started)
        return self._interpret("submit", response, started)

    def _elapsed_ms(self, started: float) -> float:
        return round((time.perf_counter() - started) * 1000, 2)

    def _transport_failure(self, phase: str, error: Exception, started: float) -> AuthorityResult:
        logger.error(f"Authority {phase} request failed: {error}")
        return AuthorityResult.retryable(
            CONNECTION_FAILED,
            raw_response={"error": str(error)},
            response_time_ms=self._elapsed_ms(started),
            unknown_outcome=phase == "submit",
        )

    def _interpret(self, phase: str, response: requests.Response, started: float) -> AuthorityResult:
        elapsed = self._elapsed_ms(started)
        if not 200 <= response.status_code < 300:
            logger.error(f"Authority {phase} returned HTTP {response.status_code}")
            return AuthorityResult.retryable(
                CONNECTION_FAILED,
                raw_response={"http_status": response.status_code, "body": response.text},
                response_time_ms=elapsed,
                unknown_outcome=phase == "submit",
            )

        try:
            data = response.json()
        except ValueError:
            logger.error(f"Authority {phase} returned a non-JSON body")
            return AuthorityResult.retryable(
                CONNECTION_FAILED,
                raw_response={"http_status": response.status_code, "body": response.text},
                response_time_ms=elapsed,
                unknown_outcome=phase == "submit",
            )

        validation = (data or {}).get("validationResponse") or {}
        status_code = validation.get("statusCode")
        invoice_number = (data or {}).get("invoiceNumber")

        if status_code == SUCCESS_STATUS and (phase == "validate" or invoice_number):
            logger.debug(f"Authority {phase} accepted ({elapsed} ms)")
            return AuthorityResult.success(
                invoice_number if phase == "submit" else None,
                raw_response=data,
                response_time_ms=elapsed,
            )

        error_code = validation.get("errorCode") or "UNKNOWN"
        message = self.translator.translate(error_code)
        logger.warning(
            f"Authority {phase} rejected with code {error_code}: "
            f"{validation.get('error') or 'no detail'}"
        )
        if error_code in self.config.transient_error_codes:
            return AuthorityResult.retryable(
                message,
                error_code=error_code,
                raw_response=data,
                response_time_ms=elapsed,
            )
        return AuthorityResult.permanent(
            message,
            error_code=error_code,
            raw_response=data,
            response_time_ms=elapsed,
        )

    @retry(
        wait=wait_exponential(multiplier=1, min=1, max=30),
        stop=stop_after_attempt(3),
        retry=retry_if_exception_type(requests.RequestException),
        reraise=True,
        before_sleep=lambda retry_state: logger.warning(
            f"Retrying reference data request (attempt {retry_state.attempt_number})..."
        ),
    )
    def _get(self, url: str, credentials: Credentials) -> Any:
        r = self.session.get(
            url, headers=self._auth_headers(credentials), timeout=self.config.request_timeout
        )
        r.raise_for_status()
        return r.json()

    def get_reference_data(self, kind: str, credentials: Credentials) -> Any:
        """
        Fetch an authority reference list (provinces, UoM codes, HS codes, ...).

        Raises:
            InvoiceSyncError: for an unknown reference type
            AuthorityConnectionError: when the authority stays unreachable
        """
        if kind not in REFERENCE_ENDPOINTS:
            raise InvoiceSyncError(
                f"Unknown reference data type: {kind}. Valid: {list(REFERENCE_ENDPOINTS)}"
            )
        url = self.config.reference_base_url.rstrip("/") + REFERENCE_ENDPOINTS[kind]
        try:
            return self._get(url, credentials)
        except requests.RequestException as e:
            logger.error(f"Failed to fetch {kind} reference data: {e}")
            raise AuthorityConnectionError(f"Cannot fetch {kind}: {e}") from e

    def test_connection(self, credentials: Credentials) -> dict:
        """Check that the token and environment reach the authority."""
        try:
            provinces = self.get_reference_data("provinces", credentials)
            return {
                "status": "connected",
                "environment": credentials.environment,
                "provinces_found": len(provinces) if isinstance(provinces, list) else 0,
            }
        except InvoiceSyncError as e:
            return {
                "status": "failed",
                "environment": credentials.environment,
                "error": str(e),
            }

    def close(self):
        """Close the session."""
        self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


# Cache lifetimes in seconds
REFERENCE_TTLS = {
    "provinces": 24 * 3600,
    "itemdesccode": 7 * 24 * 3600,
    "uom": 7 * 24 * 3600,
}
DEFAULT_REFERENCE_TTL = 24 * 3600


class ReferenceDataCache:
    """Process-local TTL cache in front of AuthorityClient.get_reference_data."""

    def __init__(self, client: AuthorityClient, clock=time.monotonic):
        self.client = client
        self.clock = clock
        self._cache: dict[str, tuple[Any, float]] = {}

    def get(self, kind: str, credentials: Credentials) -> Any:
        key = f"{credentials.environment}:{kind}"
        cached = self._cache.get(key)
        if cached and self.clock() < cached[1]:
            return cached[0]
        data = self.client.get_reference_data(kind, credentials)
        self._cache[key] = (data, self.clock() + REFERENCE_TTLS.get(kind, DEFAULT_REFERENCE_TTL))
        return data

    def clear(self):
        self._cache.clear()

    def clear_expired(self):
        now = self.clock()
        for key in [k for k, (_, expires) in self._cache.items() if expires <= now]:
            del self._cache[key]
