"""
Tests for template rendering.
"""
from datetime import date

from collections_engine.models.workflow import Debtor, TenantSettings
from collections_engine.utils.template_renderer import (
    DEFAULT_COMPANY_NAME,
    DEFAULT_LETTER_FOOTER,
    TemplateVariable,
    build_template_variables,
    format_currency,
    format_full_address,
    render,
)


def make_debtor(**fields) -> Debtor:
    values = {
        "id": "debtor-1",
        "tenant_id": "tenant-1",
        "name": "Jane Doe",
        "email": "jane@example.com",
        "address": "123 Main St",
        "city": "Springfield",
        "state": "IL",
        "zip": "62701",
        "balance_cents": 125050,
        "account_number": "ACCT-1001",
    }
    values.update(fields)
    return Debtor(**values)


class TestRender:
    """Test cases for placeholder substitution."""

    def test_known_placeholders(self):
        assert render("Hi {{name}}, balance {{ balance }}", {"name": "Jane", "balance": "$5.00"}) == (
            "Hi Jane, balance $5.00"
        )

    def test_unknown_placeholders_render_empty(self):
        assert render("Hi {{name}}, balance {{balance}}", {"name": "Jane"}) == "Hi Jane, balance "

    def test_none_template(self):
        assert render(None, {"name": "Jane"}) == ""

    def test_escape_html(self):
        assert render("<p>{{name}}</p>", {"name": "<script>"}, escape_html=True) == (
            "<p>&lt;script&gt;</p>"
        )
        assert render("<p>{{name}}</p>", {"name": "<b>"}) == "<p><b></p>"

    def test_none_values_render_empty(self):
        assert render("[{{phone}}]", {"phone": None}) == "[]"


class TestFormatting:
    def test_format_currency(self):
        assert format_currency(125050) == "$1,250.50"
        assert format_currency(0) == "$0.00"

    def test_full_address_skips_missing_parts(self):
        assert format_full_address(make_debtor()) == "123 Main St, Springfield, IL 62701"
        assert format_full_address(make_debtor(city=None, zip=None)) == "123 Main St, IL"


class TestBuildTemplateVariables:
    """Test cases for the variable bag."""

    def test_debtor_and_system_values(self):
        variables = build_template_variables(
            make_debtor(),
            TenantSettings(tenant_id="tenant-1", company_name="Acme Recovery"),
            workflow_name="Standard",
            step_number=2,
            today=date(2026, 3, 2),
        )

        assert variables["name"] == "Jane Doe"
        assert variables["debtor_name"] == "Jane Doe"
        assert variables["balance"] == "$1,250.50"
        assert variables["balance_amount"] == "1250.50"
        assert variables["company_name"] == "Acme Recovery"
        assert variables["current_date"] == "3/2/2026"
        assert variables["workflow_name"] == "Standard"
        assert variables["step_number"] == "2"

    def test_tenant_defaults(self):
        variables = build_template_variables(make_debtor(), TenantSettings(tenant_id="tenant-1"))

        assert variables["company_name"] == DEFAULT_COMPANY_NAME
        assert variables["letter_footer"] == DEFAULT_LETTER_FOOTER
        assert variables["company_phone"] == ""
        assert variables["workflow_name"] == ""

    def test_every_variable_is_present(self):
        variables = build_template_variables(make_debtor(), TenantSettings(tenant_id="tenant-1"))

        assert set(variables) == {variable.value for variable in TemplateVariable}
        assert all(isinstance(value, str) for value in variables.values())
