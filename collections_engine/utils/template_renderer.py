"""
Template rendering for outbound communications.

Templates use ``{{key}}`` placeholders. Unknown keys render as empty
strings; rendering never raises.
"""
import html
import re
from datetime import date
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from collections_engine.models.workflow import Debtor, TenantSettings
from collections_engine.utils.clock import utcnow

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([A-Za-z0-9_]+)\s*\}\}")

DEFAULT_COMPANY_NAME = "Collections Agency"
DEFAULT_LETTER_FOOTER = "This communication is from a debt collector."
DEFAULT_LEGAL_DISCLAIMER = (
    "Unless you notify this office within 30 days after receiving this notice "
    "that you dispute the validity of this debt or any portion thereof, this "
    "office will assume this debt is valid."
)
DEFAULT_EMAIL_SUBJECT = "Demand for Payment - {{debtor_name}}"


class TemplateVariable(str, Enum):
    """Variables available to every template."""

    # Debtor
    NAME = "name"
    DEBTOR_NAME = "debtor_name"
    EMAIL = "email"
    DEBTOR_EMAIL = "debtor_email"
    PHONE = "phone"
    BALANCE = "balance"
    BALANCE_AMOUNT = "balance_amount"
    ADDRESS = "address"
    CITY = "city"
    STATE = "state"
    ZIP = "zip"
    COUNTRY = "country"
    FULL_ADDRESS = "full_address"
    ACCOUNT_NUMBER = "account_number"
    ORIGINAL_CREDITOR = "original_creditor"

    # Tenant
    COMPANY_NAME = "company_name"
    COMPANY_ADDRESS = "company_address"
    COMPANY_CITY = "company_city"
    COMPANY_STATE = "company_state"
    COMPANY_ZIP = "company_zip"
    COMPANY_PHONE = "company_phone"
    COMPANY_EMAIL = "company_email"
    COMPANY_WEBSITE = "company_website"
    LICENSE_NUMBER = "license_number"
    LETTER_FOOTER = "letter_footer"
    LEGAL_DISCLAIMER = "legal_disclaimer"

    # System
    CURRENT_DATE = "current_date"
    WORKFLOW_NAME = "workflow_name"
    STEP_NUMBER = "step_number"


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def render(
    template_text: Optional[str],
    variables: Mapping[str, Any],
    escape_html: bool = False,
) -> str:
    """
    Substitute ``{{key}}`` placeholders.

    Args:
        template_text: Template source, ``None`` renders as an empty string
        variables: Values keyed by placeholder name
        escape_html: HTML-escape substituted values (email bodies)

    Returns:
        Rendered text
    """
    if not template_text:
        return ""

    def _replace(match: "re.Match[str]") -> str:
        value = _stringify(variables.get(match.group(1)))
        return html.escape(value) if escape_html else value

    return PLACEHOLDER_PATTERN.sub(_replace, template_text)


def format_currency(cents: int) -> str:
    return f"${cents / 100:,.2f}"


def format_full_address(debtor: Debtor) -> str:
    """Single-line mailing address, skipping missing parts."""
    state_zip = " ".join(part for part in (debtor.state, debtor.zip) if part)
    parts = [debtor.address, debtor.city, state_zip]
    return ", ".join(part for part in parts if part)


def build_template_variables(
    debtor: Debtor,
    tenant: TenantSettings,
    workflow_name: Optional[str] = None,
    step_number: Optional[int] = None,
    today: Optional[date] = None,
) -> Dict[str, str]:
    """Build the variable bag for a debtor, tenant and workflow position."""
    today = today or utcnow().date()
    balance_cents = debtor.balance_cents or 0

    values: Dict[TemplateVariable, Any] = {
        TemplateVariable.NAME: debtor.name,
        TemplateVariable.DEBTOR_NAME: debtor.name,
        TemplateVariable.EMAIL: debtor.email,
        TemplateVariable.DEBTOR_EMAIL: debtor.email,
        TemplateVariable.PHONE: debtor.phone,
        TemplateVariable.BALANCE: format_currency(balance_cents),
        TemplateVariable.BALANCE_AMOUNT: f"{balance_cents / 100:.2f}",
        TemplateVariable.ADDRESS: debtor.address,
        TemplateVariable.CITY: debtor.city,
        TemplateVariable.STATE: debtor.state,
        TemplateVariable.ZIP: debtor.zip,
        TemplateVariable.COUNTRY: debtor.country,
        TemplateVariable.FULL_ADDRESS: format_full_address(debtor),
        TemplateVariable.ACCOUNT_NUMBER: debtor.account_number,
        TemplateVariable.ORIGINAL_CREDITOR: debtor.original_creditor,
        TemplateVariable.COMPANY_NAME: tenant.company_name or DEFAULT_COMPANY_NAME,
        TemplateVariable.COMPANY_ADDRESS: tenant.company_address,
        TemplateVariable.COMPANY_CITY: tenant.company_city,
        TemplateVariable.COMPANY_STATE: tenant.company_state,
        TemplateVariable.COMPANY_ZIP: tenant.company_zip,
        TemplateVariable.COMPANY_PHONE: tenant.company_phone,
        TemplateVariable.COMPANY_EMAIL: tenant.company_email,
        TemplateVariable.COMPANY_WEBSITE: tenant.company_website,
        TemplateVariable.LICENSE_NUMBER: tenant.license_number,
        TemplateVariable.LETTER_FOOTER: tenant.letter_footer or DEFAULT_LETTER_FOOTER,
        TemplateVariable.LEGAL_DISCLAIMER: tenant.legal_disclaimer or DEFAULT_LEGAL_DISCLAIMER,
        TemplateVariable.CURRENT_DATE: f"{today.month}/{today.day}/{today.year}",
        TemplateVariable.WORKFLOW_NAME: workflow_name,
        TemplateVariable.STEP_NUMBER: step_number,
    }

    return {key.value: _stringify(value) for key, value in values.items()}
