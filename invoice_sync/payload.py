"""
Builds the authority invoice payload from a sale.

Building is pure: no I/O, and identical inputs give identical payloads.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

from .errors import ContractViolation
from .models import InvoicePayload, PayloadLineItem, Sale, SaleItem, TaxCategory, TenantConfig
from .scenarios import ScenarioDefinition

WALK_IN_NTN = "0000000000000"
WALK_IN_NAME = "Walk-in Customer"
WALK_IN_ADDRESS = "N/A"


@dataclass(frozen=True)
class TaxCategoryRule:
    rate_percent: float
    sale_type: str

    @property
    def rate(self) -> float:
        return self.rate_percent / 100

    @property
    def rate_label(self) -> str:
        return f"{self.rate_percent:g}%"


DEFAULT_TAX_CATEGORIES: dict[TaxCategory, TaxCategoryRule] = {
    TaxCategory.STANDARD: TaxCategoryRule(18, "Goods at standard rate (default)"),
    TaxCategory.FIXED_RETAIL_PRICE: TaxCategoryRule(18, "Third Schedule (MRP)"),
    TaxCategory.REDUCED: TaxCategoryRule(5, "Goods at reduced rate"),
    TaxCategory.EXEMPT: TaxCategoryRule(0, "Exempt"),
    TaxCategory.SECTOR: TaxCategoryRule(18, "Steel"),
}


class TaxCategoryTable:
    """Product tax category -> rate and sale-type label."""

    def __init__(self, rules: Optional[Mapping[TaxCategory, TaxCategoryRule]] = None):
        self._rules = dict(DEFAULT_TAX_CATEGORIES if rules is None else rules)

    def resolve(self, category: Any) -> TaxCategoryRule:
        category = TaxCategory.parse(category)
        return self._rules.get(category, self._rules[TaxCategory.STANDARD])


# special field name -> (payload key, value from sale)
SPECIAL_FIELDS: dict[str, tuple[str, Callable[[Sale], Any]]] = {
    "fixed_notified_value_or_retail_price": (
        "fixedNotifiedValueOrRetailPrice",
        lambda s: s.mrp if s.mrp is not None else s.total_amount,
    ),
    "export_document": ("exportDocumentNo", lambda s: s.export_document or ""),
    "original_invoice_number": ("originalInvoiceRefNo", lambda s: s.original_invoice_number or ""),
}


class PayloadBuilder:
    def __init__(self, tax_categories: Optional[TaxCategoryTable] = None):
        self.tax_categories = tax_categories or TaxCategoryTable()

    def build(
        self,
        sale: Sale,
        tenant: TenantConfig,
        scenario: Optional[ScenarioDefinition] = None,
    ) -> InvoicePayload:
        """
        Build the invoice payload for one submission attempt.

        Raises:
            ContractViolation: if the sale has no items or a line item carries a
                negative quantity, price or tax amount.
        """
        if not sale.items:
            raise ContractViolation(f"Sale {sale.id} has no line items")

        has_ntn = bool((sale.customer_ntn or "").strip())
        payload = InvoicePayload(
            invoice_date=sale.sale_date.isoformat(),
            seller_ntn=tenant.ntn,
            seller_business_name=tenant.business_name,
            seller_province=tenant.province,
            seller_address=tenant.address,
            buyer_ntn=sale.customer_ntn if has_ntn else WALK_IN_NTN,
            buyer_business_name=sale.customer_name or WALK_IN_NAME,
            buyer_province=sale.customer_province or tenant.province,
            buyer_address=sale.customer_address or WALK_IN_ADDRESS,
            buyer_registration_type="Registered" if has_ntn else "Unregistered",
            reference_number=sale.reference_number or sale.invoice_number,
            scenario_id=scenario.code if scenario else "SN001",
            items=[self.build_line(item) for item in sale.items],
        )

        if scenario:
            for name in scenario.special_fields:
                if name in SPECIAL_FIELDS:
                    key, lookup = SPECIAL_FIELDS[name]
                    payload.special_fields[key] = lookup(sale)
        return payload

    def build_line(self, item: SaleItem) -> PayloadLineItem:
        if item.quantity < 0 or item.unit_price < 0 or item.tax_amount < 0:
            raise ContractViolation(
                f"Negative amount on line item {item.product_id}: "
                f"quantity={item.quantity}, unit_price={item.unit_price}, tax={item.tax_amount}"
            )

        rule = self.tax_categories.resolve(item.tax_category)
        if item.tax_category == TaxCategory.FIXED_RETAIL_PRICE:
            value_excluding_tax = 0.0
            fixed_retail_price = float(item.unit_price)
            tax_applicable = item.unit_price * rule.rate
        else:
            # NOTE: unit price, not unit price * quantity
            value_excluding_tax = float(item.unit_price)
            fixed_retail_price = 0.0
            tax_applicable = float(item.tax_amount)

        return PayloadLineItem(
            hs_code=item.hs_code,
            product_description=item.name,
            rate=rule.rate_label,
            uom=item.unit_of_measure,
            quantity=float(item.quantity),
            total_values=value_excluding_tax + tax_applicable,
            value_excluding_tax=value_excluding_tax,
            fixed_retail_price=fixed_retail_price,
            tax_applicable=tax_applicable,
            sale_type=rule.sale_type,
        )


def build_payload(
    sale: Sale,
    tenant: TenantConfig,
    scenario: Optional[ScenarioDefinition] = None,
) -> InvoicePayload:
    """Convenience wrapper using the default tax category table."""
    return PayloadBuilder().build(sale, tenant, scenario)
