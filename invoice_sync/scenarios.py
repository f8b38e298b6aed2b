"""
Authority scenario catalog.

Each scenario code (SN001..SN010) fixes the tax treatment of a sale and the
sale fields that must be present before it can be submitted. The table is
built once at import time and never mutated.
"""
from __future__ import annotations
import re
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, NamedTuple, Optional

from .errors import ContractViolation, ScenarioNotFoundError
from .models import TaxCategory

SCENARIO_CODE_RE = re.compile(r"^SN\d{3}$")

STANDARD_RATE = "SN001"
THIRD_SCHEDULE = "SN002"
EXEMPT = "SN004"
UNREGISTERED = "SN008"

_OPTIONAL = ("buyer_phone", "buyer_address", "discount_amount")


@dataclass(frozen=True)
class ScenarioDefinition:
    code: str
    name: str
    tax_rate: float
    tax_category: str
    required_fields: tuple[str, ...]
    optional_fields: tuple[str, ...] = _OPTIONAL
    special_fields: tuple[str, ...] = ()
    description: str = ""


class RequirementCheck(NamedTuple):
    valid: bool
    missing_fields: list[str]
    errors: list[str]


SCENARIOS: dict[str, ScenarioDefinition] = {
    d.code: d
    for d in (
        ScenarioDefinition(
            "SN001", "Standard Rate Sales", 0.18, "standard_rate",
            ("buyer_name", "buyer_ntn", "items"),
            description="Regular sales with 18% tax",
        ),
        ScenarioDefinition(
            "SN002", "Third Schedule (MRP)", 0.18, "third_schedule",
            ("buyer_name", "buyer_ntn", "items"),
            special_fields=("fixed_notified_value_or_retail_price",),
            description="Third schedule items with MRP",
        ),
        ScenarioDefinition(
            "SN003", "Reduced Rate Sales", 0.10, "reduced_rate",
            ("buyer_name", "buyer_ntn", "items"),
            description="Sales with reduced tax rate",
        ),
        ScenarioDefinition(
            "SN004", "Exempt Sales", 0.0, "exempt",
            ("buyer_name", "items"),
            description="Tax exempt sales",
        ),
        ScenarioDefinition(
            "SN005", "Steel Sector Sales", 0.18, "steel",
            ("buyer_name", "buyer_ntn", "items"),
            description="Steel sector specific sales",
        ),
        ScenarioDefinition(
            "SN006", "Export Sales", 0.0, "export",
            ("buyer_name", "buyer_ntn", "items", "export_document"),
            special_fields=("export_document",),
            description="Export sales with zero rating",
        ),
        ScenarioDefinition(
            "SN007", "Sales Return", 0.18, "return",
            ("buyer_name", "buyer_ntn", "items", "original_invoice_number"),
            special_fields=("original_invoice_number",),
            description="Sales return with credit note",
        ),
        ScenarioDefinition(
            "SN008", "Sales to Unregistered", 0.18, "unregistered",
            ("buyer_name", "items"),
            description="Sales to unregistered buyers",
        ),
        ScenarioDefinition(
            "SN009", "Sales to Government", 0.18, "government",
            ("buyer_name", "buyer_ntn", "items"),
            description="Sales to government entities",
        ),
        ScenarioDefinition(
            "SN010", "Sales to Diplomatic Missions", 0.0, "diplomatic",
            ("buyer_name", "items"),
            description="Sales to diplomatic missions",
        ),
    )
}


def parse_scenario_code(code: Any) -> str:
    """Normalize a scenario code, raising ContractViolation if it is malformed."""
    normalized = str(code or "").strip().upper()
    if not SCENARIO_CODE_RE.match(normalized):
        raise ContractViolation(f"Malformed scenario code: {code!r}")
    return normalized


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) == 0
    return False


def _item_category(item: Any) -> Optional[str]:
    if isinstance(item, Mapping):
        raw = item.get("tax_category")
    else:
        raw = getattr(item, "tax_category", None)
    if raw is None:
        return None
    return TaxCategory.parse(raw).value


class ScenarioCatalog:
    """Read-only lookup over the scenario table."""

    def __init__(self, scenarios: Optional[Mapping[str, ScenarioDefinition]] = None):
        self._scenarios = dict(SCENARIOS if scenarios is None else scenarios)

    def get(self, code: str) -> ScenarioDefinition:
        code = parse_scenario_code(code)
        try:
            return self._scenarios[code]
        except KeyError:
            raise ScenarioNotFoundError(f"Unknown scenario code: {code}") from None

    def list(self) -> list[ScenarioDefinition]:
        return [self._scenarios[c] for c in sorted(self._scenarios)]

    def names(self) -> dict[str, str]:
        return {d.code: d.name for d in self.list()}

    def __contains__(self, code: object) -> bool:
        return code in self._scenarios

    def validate_requirements(self, code: str, sale_data: Mapping[str, Any]) -> RequirementCheck:
        """
        Check that every required field of the scenario is present and non-empty.

        Unknown extra fields are ignored. An invalid code yields valid=False
        rather than an exception.
        """
        try:
            scenario = self.get(code)
        except (ContractViolation, ScenarioNotFoundError) as e:
            return RequirementCheck(False, [], [str(e)])

        missing = [f for f in scenario.required_fields if _is_empty(sale_data.get(f))]
        errors = [f"Required field '{f}' is missing" for f in missing]
        return RequirementCheck(not missing, missing, errors)

    def recommend(self, sale_data: Mapping[str, Any]) -> list[str]:
        """Suggest scenario codes for a sale; the caller picks one."""
        ntn = sale_data.get("buyer_ntn", sale_data.get("customer_ntn"))
        recommendations = [UNREGISTERED if _is_empty(ntn) else STANDARD_RATE]

        items: Iterable[Any] = sale_data.get("items") or []
        categories = [_item_category(i) for i in items]
        if TaxCategory.FIXED_RETAIL_PRICE.value in categories:
            recommendations.append(THIRD_SCHEDULE)
        if categories and all(c == TaxCategory.EXEMPT.value for c in categories):
            recommendations.append(EXEMPT)
        return recommendations


default_catalog = ScenarioCatalog()
