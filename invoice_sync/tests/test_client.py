"""
Tests for the authority HTTP client (requests session mocked).
"""
import pytest
import requests
from unittest.mock import Mock, patch

from invoice_sync.client import AuthorityClient, CONNECTION_FAILED, ReferenceDataCache
from invoice_sync.errors import AuthorityConnectionError, ERROR_MESSAGES, InvoiceSyncError
from invoice_sync.models import Credentials, Outcome
from invoice_sync.payload import build_payload


def response(status_code=200, body=None, text=None):
    r = Mock()
    r.status_code = status_code
    r.text = text if text is not None else str(body)
    if body is None:
        r.json.side_effect = ValueError("No JSON object could be decoded")
    else:
        r.json.return_value = body
    return r


def accepted(invoice_number=None):
    body = {"validationResponse": {"statusCode": "00", "status": "Valid"}}
    if invoice_number:
        body["invoiceNumber"] = invoice_number
    return response(200, body)


def rejected(error_code, error="rejected"):
    return response(
        200,
        {"validationResponse": {"statusCode": "01", "errorCode": error_code, "error": error}},
    )


@pytest.fixture
def session():
    return Mock()


@pytest.fixture
def authority(config, session):
    return AuthorityClient(config, session=session)


@pytest.fixture
def credentials():
    return Credentials("tenant-1", "secret-token", "sandbox")


@pytest.fixture
def payload(sale, tenant):
    return build_payload(sale, tenant)


class TestEndpoints:
    def test_sandbox_urls(self, authority, credentials):
        assert authority.endpoint_url("validate", credentials) == (
            "https://authority.test/di/validateinvoicedata_sb"
        )
        assert authority.endpoint_url("submit", credentials) == (
            "https://authority.test/di/postinvoicedata_sb"
        )

    def test_production_urls(self, authority):
        credentials = Credentials("tenant-1", "token", "production")
        assert authority.endpoint_url("submit", credentials).endswith("/postinvoicedata")

    def test_request_carries_bearer_token_and_timeout(
        self, authority, session, credentials, payload
    ):
        session.post.return_value = accepted()
        authority.validate(payload, credentials)
        _, kwargs = session.post.call_args
        assert kwargs["headers"] == {"Authorization": "Bearer secret-token"}
        assert kwargs["timeout"] == 5
        assert kwargs["json"]["scenarioId"] == "SN001"

    def test_credentials_repr_hides_token(self, credentials):
        assert "secret-token" not in repr(credentials)


class TestValidate:
    """Tests for the validate phase."""

    def test_success(self, authority, session, credentials, payload):
        session.post.return_value = accepted()
        result = authority.validate(payload, credentials)
        assert result.ok
        assert result.invoice_number is None
        assert result.response_time_ms >= 0

    def test_permanent_rejection_is_translated(self, authority, session, credentials, payload):
        session.post.return_value = rejected("0052", "Invalid HS code")
        result = authority.validate(payload, credentials)
        assert result.outcome == Outcome.PERMANENT
        assert result.error_code == "0052"
        assert result.message == ERROR_MESSAGES["0052"]

    @pytest.mark.parametrize("code", ["0098", "0099"])
    def test_transient_codes_are_retryable(self, authority, session, credentials, payload, code):
        session.post.return_value = rejected(code)
        result = authority.validate(payload, credentials)
        assert result.is_retryable
        assert result.error_code == code
        assert result.unknown_outcome is False

    def test_missing_error_code(self, authority, session, credentials, payload):
        session.post.return_value = response(200, {"validationResponse": {"statusCode": "01"}})
        result = authority.validate(payload, credentials)
        assert result.outcome == Outcome.PERMANENT
        assert result.message == "Authority error: UNKNOWN"

    def test_http_error_is_retryable(self, authority, session, credentials, payload):
        session.post.return_value = response(503, text="Service Unavailable")
        result = authority.validate(payload, credentials)
        assert result.is_retryable
        assert result.message == CONNECTION_FAILED
        assert result.raw_response["http_status"] == 503

    def test_transport_error_is_retryable(self, authority, session, credentials, payload):
        session.post.side_effect = requests.ConnectionError("connection refused")
        result = authority.validate(payload, credentials)
        assert result.is_retryable
        assert result.message == CONNECTION_FAILED
        assert result.unknown_outcome is False

    def test_transport_error_posts_once(self, authority, session, credentials, payload):
        """Validate does not retry in-process; the retry queue owns retries."""
        session.post.side_effect = requests.Timeout("read timed out")
        result = authority.validate(payload, credentials)
        assert session.post.call_count == 1
        assert result.outcome == Outcome.RETRYABLE

    def test_non_json_body_is_retryable(self, authority, session, credentials, payload):
        session.post.return_value = response(200, text="<html>gateway</html>")
        assert authority.validate(payload, credentials).is_retryable


class TestSubmit:
    """Tests for the submit phase."""

    def test_success_returns_invoice_number(self, authority, session, credentials, payload):
        session.post.return_value = accepted("FBR-1")
        result = authority.submit(payload, credentials)
        assert result.ok
        assert result.invoice_number == "FBR-1"

    def test_success_without_invoice_number_is_rejection(
        self, authority, session, credentials, payload
    ):
        session.post.return_value = accepted()
        result = authority.submit(payload, credentials)
        assert result.outcome == Outcome.PERMANENT

    def test_timeout_is_unknown_outcome(self, authority, session, credentials, payload):
        session.post.side_effect = requests.Timeout("read timed out")
        result = authority.submit(payload, credentials)
        assert result.is_retryable
        assert result.unknown_outcome is True
        session.post.assert_called_once()

    def test_http_error_is_unknown_outcome(self, authority, session, credentials, payload):
        session.post.return_value = response(502, text="Bad Gateway")
        result = authority.submit(payload, credentials)
        assert result.is_retryable
        assert result.unknown_outcome is True

    def test_duplicate_reference_is_permanent(self, authority, session, credentials, payload):
        session.post.return_value = rejected("0060")
        result = authority.submit(payload, credentials)
        assert result.outcome == Outcome.PERMANENT
        assert result.error_code == "0060"


class TestReferenceData:
    """Tests for reference lookups."""

    def test_fetch_provinces(self, authority, session, credentials):
        r = Mock()
        r.json.return_value = [{"stateProvinceCode": 7, "stateProvinceDesc": "PUNJAB"}]
        session.get.return_value = r
        data = authority.get_reference_data("provinces", credentials)
        assert data[0]["stateProvinceDesc"] == "PUNJAB"
        assert session.get.call_args.args[0] == "https://authority.test/pdi/provinces"

    def test_unknown_kind(self, authority, credentials):
        with pytest.raises(InvoiceSyncError):
            authority.get_reference_data("currencies", credentials)

    def test_unreachable(self, authority, credentials):
        with patch.object(
            AuthorityClient, "_get", side_effect=requests.ConnectionError("down")
        ):
            with pytest.raises(AuthorityConnectionError):
                authority.get_reference_data("uom", credentials)

    def test_connection_check(self, authority, credentials):
        with patch.object(AuthorityClient, "_get", return_value=[{}, {}, {}]):
            result = authority.test_connection(credentials)
        assert result == {"status": "connected", "environment": "sandbox", "provinces_found": 3}

    def test_connection_check_failure(self, authority, credentials):
        with patch.object(AuthorityClient, "_get", side_effect=requests.Timeout("slow")):
            result = authority.test_connection(credentials)
        assert result["status"] == "failed"
        assert "slow" in result["error"]


class TestReferenceDataCache:
    def test_cached_until_expiry(self, credentials):
        client = Mock()
        client.get_reference_data.side_effect = [["a"], ["b"]]
        now = [1000.0]
        cache = ReferenceDataCache(client, clock=lambda: now[0])

        assert cache.get("provinces", credentials) == ["a"]
        now[0] += 3600
        assert cache.get("provinces", credentials) == ["a"]
        now[0] += 24 * 3600
        assert cache.get("provinces", credentials) == ["b"]
        assert client.get_reference_data.call_count == 2

    def test_clear_expired(self, credentials):
        client = Mock()
        client.get_reference_data.return_value = ["x"]
        now = [0.0]
        cache = ReferenceDataCache(client, clock=lambda: now[0])
        cache.get("provinces", credentials)
        cache.get("uom", credentials)
        now[0] = 2 * 24 * 3600
        cache.clear_expired()
        assert list(cache._cache) == ["sandbox:uom"]
