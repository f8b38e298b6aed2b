"""
Tests for the submission orchestrator (authority client mocked).
"""
from unittest.mock import Mock

from invoice_sync.models import AuthorityResult, AuthorityStatus, Outcome, QueueStatus
from invoice_sync.orchestrator import (
    CLAIM_LOST,
    MISSING_FIELDS,
    NOT_CONFIGURED,
    SubmissionOrchestrator,
)

TRANSIENT = AuthorityResult.retryable("connection failed", unknown_outcome=True)


class TestHappyPath:
    """Sale submitted and synced on the first attempt."""

    def test_sale_synced(self, orchestrator, store, client, sale):
        result = orchestrator.process(sale)

        assert result.ok
        assert result.invoice_number == "FBR-1"
        stored = store.find_sale(sale.id)
        assert stored.authority_status == AuthorityStatus.SYNCED
        assert stored.authority_invoice_number == "FBR-1"
        assert stored.authority_error is None
        assert store.entries == {}
        assert "tenant-1" in store.last_sync

    def test_payload_uses_unit_price(self, orchestrator, client, sale):
        orchestrator.process(sale)
        payload, credentials = client.submit.call_args.args
        line = payload.to_dict()["items"][0]
        assert line["valueSalesExcludingST"] == 100.0
        assert line["salesTaxApplicable"] == 18.0
        assert line["totalValues"] == 118.0
        assert credentials.bearer_token == "secret-token"

    def test_validate_then_submit_logged(self, orchestrator, store, sale):
        orchestrator.process(sale)
        assert [(l.phase, l.status) for l in store.logs] == [
            ("validate", "success"),
            ("submit", "success"),
        ]
        assert store.logs[0].scenario_code == "SN001"

    def test_already_synced_is_not_resubmitted(self, orchestrator, client, sale_factory):
        sale = sale_factory(
            authority_status=AuthorityStatus.SYNCED, authority_invoice_number="FBR-0"
        )
        result = orchestrator.process(sale)
        assert result.ok
        assert result.invoice_number == "FBR-0"
        client.validate.assert_not_called()
        client.submit.assert_not_called()


class TestScenarioSelection:
    """Scenario comes from the sale, the tenant default, then recommendations."""

    def test_sale_scenario_wins(self, orchestrator, tenant, sale_factory):
        tenant.default_scenario = "SN009"
        sale = sale_factory(scenario_code="SN003")
        assert orchestrator.select_scenario(sale, tenant).code == "SN003"

    def test_tenant_default(self, orchestrator, tenant, sale):
        tenant.default_scenario = "SN009"
        assert orchestrator.select_scenario(sale, tenant).code == "SN009"

    def test_recommendation_for_walk_in(self, orchestrator, tenant, sale_factory):
        sale = sale_factory(customer_ntn=None)
        assert orchestrator.select_scenario(sale, tenant).code == "SN008"

    def test_missing_required_field_is_permanent(self, orchestrator, store, client, sale_factory):
        sale = sale_factory(scenario_code="SN006")
        store.add_sale(sale)

        result = orchestrator.process(sale)

        assert result.outcome == Outcome.PERMANENT
        assert result.error_code == MISSING_FIELDS
        assert "export_document" in result.message
        assert store.find_sale(sale.id).authority_status == AuthorityStatus.FAILED
        client.validate.assert_not_called()

    def test_unknown_scenario_is_permanent(self, orchestrator, store, client, sale_factory):
        sale = sale_factory(scenario_code="SN042")
        store.add_sale(sale)
        result = orchestrator.process(sale)
        assert result.outcome == Outcome.PERMANENT
        assert "SN042" in store.find_sale(sale.id).authority_error
        client.validate.assert_not_called()


class TestPermanentFailures:
    """Business rejections are surfaced immediately and never queued."""

    def test_validate_rejection(self, orchestrator, store, client, sale):
        client.validate.return_value = AuthorityResult.permanent(
            "Buyer NTN or CNIC is invalid.", error_code="0002"
        )

        result = orchestrator.process(sale)

        assert result.outcome == Outcome.PERMANENT
        assert result.error_code == "0002"
        client.submit.assert_not_called()
        stored = store.find_sale(sale.id)
        assert stored.authority_status == AuthorityStatus.FAILED
        assert stored.authority_error == "Buyer NTN or CNIC is invalid."
        assert store.entries == {}
        assert [(l.phase, l.status, l.error_code) for l in store.logs] == [
            ("validate", "failed", "0002")
        ]

    def test_tenant_not_configured(self, orchestrator, store, client, tenant, sale):
        tenant.bearer_token = None
        result = orchestrator.process(sale)
        assert result.error_code == NOT_CONFIGURED
        assert store.find_sale(sale.id).authority_status == AuthorityStatus.FAILED
        client.validate.assert_not_called()

    def test_unknown_tenant(self, orchestrator, store, sale_factory):
        sale = sale_factory(tenant_id="tenant-x")
        store.add_sale(sale)
        assert orchestrator.process(sale).error_code == NOT_CONFIGURED

    def test_sale_without_items_is_permanent(self, orchestrator, store, client, sale_factory):
        sale = sale_factory(items=[])
        store.add_sale(sale)
        result = orchestrator.process(sale)
        assert result.outcome == Outcome.PERMANENT
        assert store.find_sale(sale.id).authority_status == AuthorityStatus.FAILED
        client.validate.assert_not_called()

    def test_negative_price_becomes_permanent(self, orchestrator, store, client, sale_factory):
        sale = sale_factory()
        sale.items[0].unit_price = -5
        store.add_sale(sale)
        result = orchestrator.process(sale)
        assert result.outcome == Outcome.PERMANENT
        assert "Negative amount" in result.message
        client.validate.assert_not_called()

    def test_unexpected_client_exception_never_escapes(self, orchestrator, store, client, sale):
        client.submit.side_effect = RuntimeError("socket exploded")
        result = orchestrator.process(sale)
        assert result.outcome == Outcome.PERMANENT
        assert result.message == "socket exploded"
        assert store.find_sale(sale.id).authority_error == "socket exploded"


class TestRetryableFailures:
    """Transient failures are queued and the sale stays pending."""

    def test_transient_submit_failure_is_queued(self, orchestrator, store, client, sale, clock):
        client.submit.return_value = TRANSIENT

        result = orchestrator.process(sale)

        assert result.is_retryable
        assert result.queued is True
        stored = store.find_sale(sale.id)
        assert stored.authority_status == AuthorityStatus.PENDING
        assert stored.authority_error == "connection failed"

        (entry,) = store.entries.values()
        assert entry.status == QueueStatus.PENDING
        assert entry.retry_count == 0
        assert entry.max_retries == 5
        assert entry.next_attempt_at == clock.now
        assert entry.needs_reconciliation is True
        assert entry.payload["invoiceRefNo"] == "INV-S-1001"

    def test_transient_validate_failure_not_flagged(self, orchestrator, store, client, sale):
        client.validate.return_value = AuthorityResult.retryable(
            "Too many requests", error_code="0098"
        )
        orchestrator.process(sale)
        (entry,) = store.entries.values()
        assert entry.needs_reconciliation is False
        client.submit.assert_not_called()

    def test_tenant_retry_attempts_override(self, orchestrator, store, client, tenant, sale):
        tenant.retry_attempts = 2
        client.submit.return_value = TRANSIENT
        orchestrator.process(sale)
        (entry,) = store.entries.values()
        assert entry.max_retries == 2

    def test_auto_retry_disabled(self, orchestrator, store, client, tenant, sale):
        tenant.auto_retry = False
        client.submit.return_value = TRANSIENT

        result = orchestrator.process(sale)

        assert result.outcome == Outcome.PERMANENT
        assert result.queued is False
        assert store.entries == {}
        assert store.find_sale(sale.id).authority_status == AuthorityStatus.FAILED

    def test_queued_sale_is_not_submitted_again(self, orchestrator, store, client, sale):
        client.submit.return_value = TRANSIENT
        orchestrator.process(sale)
        client.reset_mock()

        result = orchestrator.process(store.find_sale(sale.id))

        assert result.is_retryable
        assert result.queued is True
        client.validate.assert_not_called()
        assert len(store.entries) == 1

    def test_without_queue_retryable_becomes_permanent(self, store, client, config, clock, sale):
        orchestrator = SubmissionOrchestrator(store, store, client, None, config=config, clock=clock)
        client.submit.return_value = TRANSIENT
        result = orchestrator.process(sale)
        assert result.outcome == Outcome.PERMANENT
        assert store.find_sale(sale.id).authority_status == AuthorityStatus.FAILED


class TestRetryPath:
    """The worker path reuses the stored payload."""

    def test_retry_reuses_stored_payload(self, orchestrator, store, client, sale):
        client.submit.return_value = TRANSIENT
        orchestrator.process(sale)
        (entry,) = store.entries.values()
        client.reset_mock()
        client.validate.return_value = AuthorityResult.success()
        client.submit.return_value = AuthorityResult.success("FBR-2")

        result = orchestrator.retry(entry, store.find_sale(sale.id))

        assert result.ok
        payload, _ = client.submit.call_args.args
        assert payload.to_dict() == entry.payload
        assert store.find_sale(sale.id).authority_invoice_number == "FBR-2"

    def test_retry_failure_leaves_sale_for_queue(self, orchestrator, store, client, sale):
        client.submit.return_value = AuthorityResult.permanent("rejected", error_code="0052")
        entry = Mock(payload=None, scenario_code="SN001", retry_count=0, max_retries=5)
        entry.payload = orchestrator.builder.build(sale, store.get_tenant("tenant-1")).to_dict()

        result = orchestrator.retry(entry, sale)

        assert result.outcome == Outcome.PERMANENT
        assert store.find_sale(sale.id).authority_status == AuthorityStatus.PENDING

    def test_retry_exception_is_permanent(self, orchestrator, store, client, sale):
        entry = Mock(payload={"not": "a payload"}, scenario_code="SN001", retry_count=0, max_retries=5)
        result = orchestrator.retry(entry, sale)
        assert result.outcome == Outcome.PERMANENT
        client.validate.assert_not_called()

    def test_retry_skips_submit_when_claim_lost(self, orchestrator, store, client, sale):
        client.submit.return_value = TRANSIENT
        orchestrator.process(sale)
        (entry,) = store.entries.values()
        client.reset_mock()
        client.validate.return_value = AuthorityResult.success()

        result = orchestrator.retry(entry, store.find_sale(sale.id), still_claimed=lambda: False)

        assert result.error_code == CLAIM_LOST
        client.validate.assert_called_once()
        client.submit.assert_not_called()
        assert store.find_sale(sale.id).authority_status == AuthorityStatus.PENDING
