"""
Domain models for the invoice submission pipeline.

Sales and their items belong to the surrounding order-management system;
this package only reads them and mutates the authority_* fields.
"""
from __future__ import annotations
import json
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaxCategory(str, Enum):
    STANDARD = "standard_rate"
    FIXED_RETAIL_PRICE = "third_schedule"
    REDUCED = "reduced_rate"
    EXEMPT = "exempt"
    SECTOR = "steel"

    @classmethod
    def parse(cls, value: Any) -> "TaxCategory":
        """Map a stored product category to the enum, falling back to standard rate."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            logger.warning(f"Unknown tax category {value!r}, using {cls.STANDARD.value}")
            return cls.STANDARD


class AuthorityStatus(str, Enum):
    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"


class QueueStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_QUEUE_STATUSES = frozenset({QueueStatus.COMPLETED, QueueStatus.FAILED})


def check_authority_fields(
    status: AuthorityStatus,
    invoice_number: str | None,
    error: str | None,
) -> None:
    """Raise ValueError if the authority fields of a sale would be inconsistent."""
    if status == AuthorityStatus.SYNCED and not invoice_number:
        raise ValueError("A synced sale needs an authority invoice number")
    if status == AuthorityStatus.FAILED and not error:
        raise ValueError("A failed sale needs an authority error")


class SaleItem(BaseModel):
    product_id: str
    name: str
    hs_code: str = ""
    unit_of_measure: str = ""
    quantity: float
    unit_price: float
    tax_category: TaxCategory = TaxCategory.STANDARD
    tax_amount: float = 0.0

    @field_validator("tax_category", mode="before")
    @classmethod
    def _parse_category(cls, value):
        return TaxCategory.parse(value)

    @property
    def total_price(self) -> float:
        return self.unit_price * self.quantity


class Sale(BaseModel):
    id: str
    tenant_id: str
    invoice_number: str
    sale_date: date
    customer_name: str | None = None
    customer_ntn: str | None = None
    customer_province: str | None = None
    customer_address: str | None = None
    customer_phone: str | None = None
    reference_number: str | None = None
    scenario_code: str | None = None
    export_document: str | None = None
    original_invoice_number: str | None = None
    mrp: float | None = None
    discount_amount: float = 0.0
    items: list[SaleItem] = Field(default_factory=list)
    total_amount: float = 0.0
    tax_amount: float = 0.0
    authority_status: AuthorityStatus = AuthorityStatus.PENDING
    authority_invoice_number: str | None = None
    authority_error: str | None = None

    def scenario_fields(self) -> dict[str, Any]:
        """Field mapping checked against a scenario's required fields."""
        return {
            "buyer_name": self.customer_name,
            "buyer_ntn": self.customer_ntn,
            "buyer_phone": self.customer_phone,
            "buyer_address": self.customer_address,
            "discount_amount": self.discount_amount,
            "export_document": self.export_document,
            "original_invoice_number": self.original_invoice_number,
            "items": [
                {"name": i.name, "tax_category": i.tax_category.value} for i in self.items
            ],
        }


class PayloadLineItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    hs_code: str = Field(alias="hsCode")
    product_description: str = Field(alias="productDescription")
    rate: str
    uom: str = Field(alias="uoM")
    quantity: float
    total_values: float = Field(alias="totalValues")
    value_excluding_tax: float = Field(alias="valueSalesExcludingST")
    fixed_retail_price: float = Field(alias="fixedNotifiedValueOrRetailPrice")
    tax_applicable: float = Field(alias="salesTaxApplicable")
    tax_withheld_at_source: float = Field(default=0.0, alias="salesTaxWithheldAtSource")
    extra_tax: float = Field(default=0.0, alias="extraTax")
    further_tax: float = Field(default=0.0, alias="furtherTax")
    sro_schedule_no: str = Field(default="", alias="sroScheduleNo")
    fed_payable: float = Field(default=0.0, alias="fedPayable")
    discount: float = 0.0
    sale_type: str = Field(alias="saleType")
    sro_item_serial_no: str = Field(default="", alias="sroItemSerialNo")


class InvoicePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    invoice_type: str = Field(default="Sale Invoice", alias="invoiceType")
    invoice_date: str = Field(alias="invoiceDate")
    seller_ntn: str = Field(alias="sellerNTNCNIC")
    seller_business_name: str = Field(alias="sellerBusinessName")
    seller_province: str = Field(alias="sellerProvince")
    seller_address: str = Field(alias="sellerAddress")
    buyer_ntn: str = Field(alias="buyerNTNCNIC")
    buyer_business_name: str = Field(alias="buyerBusinessName")
    buyer_province: str = Field(alias="buyerProvince")
    buyer_address: str = Field(alias="buyerAddress")
    buyer_registration_type: str = Field(alias="buyerRegistrationType")
    reference_number: str = Field(alias="invoiceRefNo")
    scenario_id: str = Field(alias="scenarioId")
    items: list[PayloadLineItem]
    special_fields: dict[str, Any] = Field(default_factory=dict, exclude=True)

    def to_dict(self) -> dict[str, Any]:
        """Authority JSON body; special fields are merged into the header."""
        body = self.model_dump(by_alias=True)
        body.update(self.special_fields)
        return body

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "InvoicePayload":
        known = {f.alias or name for name, f in cls.model_fields.items()}
        specials = {k: v for k, v in data.items() if k not in known}
        payload = cls.model_validate({k: v for k, v in data.items() if k in known})
        payload.special_fields = specials
        return payload


class RetryQueueEntry(BaseModel):
    id: str = Field(default_factory=lambda: uuid4().hex)
    tenant_id: str
    sale_id: str
    scenario_code: str
    payload: dict[str, Any]
    status: QueueStatus = QueueStatus.PENDING
    retry_count: int = 0
    max_retries: int = 5
    next_attempt_at: datetime = Field(default_factory=utcnow)
    last_error: str | None = None
    needs_reconciliation: bool = False
    # Token of the drain that holds the entry while it is processing
    claim_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_QUEUE_STATUSES


class Outcome(str, Enum):
    SUCCESS = "success"
    RETRYABLE = "retryable"
    PERMANENT = "permanent"


@dataclass(frozen=True)
class AuthorityResult:
    """Outcome of one authority call or of a whole submission attempt."""

    outcome: Outcome
    invoice_number: Optional[str] = None
    error_code: Optional[str] = None
    message: Optional[str] = None
    raw_response: Any = None
    response_time_ms: float = 0.0
    queued: bool = False
    # Submit may have reached the authority before failing
    unknown_outcome: bool = False

    @classmethod
    def success(cls, invoice_number: str | None = None, **kwargs) -> "AuthorityResult":
        return cls(Outcome.SUCCESS, invoice_number=invoice_number, **kwargs)

    @classmethod
    def retryable(cls, message: str, **kwargs) -> "AuthorityResult":
        return cls(Outcome.RETRYABLE, message=message, **kwargs)

    @classmethod
    def permanent(cls, message: str, error_code: str | None = None, **kwargs) -> "AuthorityResult":
        return cls(Outcome.PERMANENT, error_code=error_code, message=message, **kwargs)

    @property
    def ok(self) -> bool:
        return self.outcome == Outcome.SUCCESS

    @property
    def is_retryable(self) -> bool:
        return self.outcome == Outcome.RETRYABLE


@dataclass(frozen=True)
class Credentials:
    tenant_id: str
    bearer_token: str = field(repr=False)
    environment: str = "sandbox"

    @property
    def is_sandbox(self) -> bool:
        return self.environment != "production"


class TenantConfig(BaseModel):
    tenant_id: str
    ntn: str
    business_name: str
    province: str
    address: str = ""
    bearer_token: str | None = None
    environment: str = "sandbox"
    is_active: bool = True
    auto_retry: bool = True
    retry_attempts: int | None = None
    retry_delay_minutes: float | None = None
    default_scenario: str | None = None

    @property
    def is_configured(self) -> bool:
        return self.is_active and bool(self.bearer_token)

    def credentials(self) -> Credentials:
        return Credentials(self.tenant_id, self.bearer_token or "", self.environment)


class SubmissionLog(BaseModel):
    tenant_id: str
    sale_id: str
    scenario_code: str | None = None
    phase: str
    status: str
    error_code: str | None = None
    response_time_ms: float = 0.0
    created_at: datetime = Field(default_factory=utcnow)
