"""
Exceptions and authority error-code translation.
"""
from __future__ import annotations
from typing import Optional


class InvoiceSyncError(Exception):
    """Base class for invoice_sync errors."""
    pass


class ContractViolation(InvoiceSyncError):
    """Raised on programming/configuration errors such as a negative price. Never retried."""
    pass


class ScenarioNotFoundError(InvoiceSyncError):
    """Raised when a well-formed scenario code is not in the catalog."""
    pass


class AuthorityConnectionError(InvoiceSyncError):
    """Raised when the authority cannot be reached after retries."""
    pass


class TenantNotConfiguredError(InvoiceSyncError):
    """Raised when a tenant has no active authority integration."""
    pass


class SaleNotFoundError(InvoiceSyncError):
    """Raised when a sale id does not resolve to a record."""
    pass


RATE_LIMITED = "0098"
TEMPORARILY_UNAVAILABLE = "0099"
DUPLICATE_REFERENCE = "0060"

ERROR_MESSAGES = {
    "0001": "Seller not registered for sales tax. Check your NTN in the settings.",
    "0002": "Buyer NTN or CNIC is invalid. Use a valid 13-digit CNIC or 7/9-digit NTN.",
    "0021": "The value of sales for a line item is missing. Make sure the product has a price.",
    "0052": "The HS code for a product is incorrect. Update it in the product settings.",
    "0053": "Invalid invoice date format. Use YYYY-MM-DD.",
    "0054": "Invalid quantity value. Enter a valid numeric quantity.",
    "0055": "Invalid tax rate. Check the tax rate configuration.",
    "0056": "A required field is missing. Check that all required fields are filled.",
    "0057": "Invalid province code. Select a valid province.",
    "0058": "Invalid unit of measure. Select a valid UOM.",
    "0059": "Invalid scenario ID. Check the sale type configuration.",
    DUPLICATE_REFERENCE: "Duplicate invoice reference number. Use a unique reference number.",
    RATE_LIMITED: "Too many requests to the tax authority. The invoice will be retried.",
    TEMPORARILY_UNAVAILABLE: "The tax authority is temporarily unavailable. The invoice will be retried.",
}


class ErrorTranslator:
    """Maps authority error codes to tenant-facing messages."""

    def __init__(self, messages: Optional[dict[str, str]] = None):
        self.messages = dict(ERROR_MESSAGES if messages is None else messages)

    def translate(self, code: Optional[str]) -> str:
        code = (code or "").strip() or "UNKNOWN"
        return self.messages.get(code, f"Authority error: {code}")


default_translator = ErrorTranslator()


def translate(code: Optional[str]) -> str:
    return default_translator.translate(code)
