"""Placeholder rendering and signed opt-out tokens."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from agents.dunning.templates import (
    InvalidOptOutToken,
    TemplateEngine,
    build_variables,
    load_defaults,
    money,
    opt_out_link,
    sign_opt_out_token,
    verify_opt_out_token,
)

ISSUED = datetime(2026, 10, 14, 13, 0, tzinfo=UTC)
KEY = "test-opt-out-key"


@pytest.fixture
def invoice():
    return {
        "id": 500,
        "order_reference": "SO-500",
        "invoice_number": "INV-500",
        "billing_name": "Pat Buyer",
        "billing_company": "Buyer Co",
        "total_amount": Decimal("500"),
        "paid_amount": Decimal("350.5"),
        "outstanding_amount": Decimal("149.5"),
        "days_outstanding": 45,
        "tax_date": datetime(2026, 8, 30, 22, 15, tzinfo=UTC),
        "order_date": datetime(2026, 8, 28, tzinfo=UTC),
        "payment_link_url": "https://pay.example.com/inv-500",
    }


@pytest.fixture
def variables(invoice):
    return build_variables(invoice, sender_name="Jordan AR", company_name="Acme Supplies", opt_out_link="https://x/o")


class TestRendering:
    def test_both_placeholder_styles_are_substituted(self, variables):
        text = TemplateEngine().render("Dear {CUSTOMER_NAME}, invoice {{ INVOICE_NUMBER }} is due.", variables)
        assert text == "Dear Pat Buyer, invoice INV-500 is due."

    def test_money_keys_have_two_decimals(self, variables):
        text = TemplateEngine().render("${TOTAL_AMOUNT} / ${TOTAL_PAID} / ${AMOUNT_DUE}", variables)
        assert text == "$500.00 / $350.50 / $149.50"

    def test_unknown_keys_stay_verbatim(self, variables):
        text = TemplateEngine().render("Ref {PURCHASE_ORDER} for {CUSTOMER_NAME}", variables)
        assert text == "Ref {PURCHASE_ORDER} for Pat Buyer"

    def test_jinja_syntax_in_template_text_is_literal(self, variables):
        text = "{% for x in range(3) %}{{ x }}{% endfor %} {{ config }} {CUSTOMER_NAME}"
        rendered = TemplateEngine().render(text, variables)
        assert rendered == "{% for x in range(3) %}{{ x }}{% endfor %} {{ config }} Pat Buyer"

    def test_lowercase_braces_are_not_placeholders(self, variables):
        assert TemplateEngine().render("{customer_name}", variables) == "{customer_name}"

    def test_none_values_render_empty(self):
        assert TemplateEngine().render("[{PAYMENT_LINK}]", {"PAYMENT_LINK": None}) == "[]"

    def test_subject_is_stripped_and_body_kept(self, variables):
        email = TemplateEngine().render_email(
            {"subject_template": "  Invoice {INVOICE_NUMBER}\n", "body_template": "Hi {CUSTOMER_NAME}\n"},
            variables,
        )
        assert email.subject == "Invoice INV-500"
        assert email.body == "Hi Pat Buyer\n"


class TestVariables:
    def test_invoice_fields_are_mapped(self, variables):
        assert variables["ORDER_ID"] == "500"
        assert variables["COMPANY_NAME"] == "Acme Supplies"
        assert variables["SENDER_NAME"] == "Jordan AR"
        assert variables["DAYS_OUTSTANDING"] == "45"
        assert variables["TAX_DATE"] == "08/30/2026"
        assert variables["PAYMENT_LINK"] == "https://pay.example.com/inv-500"
        assert variables["OPT_OUT_LINK"] == "https://x/o"

    def test_payment_status_and_history(self, invoice):
        partial = build_variables(invoice, sender_name="", company_name="")
        assert partial["PAYMENT_STATUS"] == "PARTIALLY PAID"
        assert "$350.50" in partial["PAYMENT_HISTORY"]

        invoice.update(paid_amount=Decimal("0"), outstanding_amount=Decimal("500"))
        unpaid = build_variables(invoice, sender_name="", company_name="")
        assert unpaid["PAYMENT_STATUS"] == "UNPAID"
        assert unpaid["PAYMENT_HISTORY"] == "No payments recorded."

    def test_fallbacks(self, invoice):
        invoice.update(billing_name=None, tax_date=None, payment_link_url=None)
        fallback = build_variables(invoice, sender_name="", company_name="")
        assert fallback["CUSTOMER_NAME"] == "Valued Customer"
        assert fallback["COMPANY_NAME"] == "Buyer Co"
        assert fallback["TAX_DATE"] == "08/28/2026"
        assert fallback["PAYMENT_LINK"] == ""

    @pytest.mark.parametrize("value,expected", [(None, "0.00"), ("12", "12.00"), (Decimal("1.005"), "1.00")])
    def test_money(self, value, expected):
        assert money(value) == expected


class TestDefaults:
    def test_every_default_campaign_has_a_template(self):
        defaults = load_defaults()
        template_types = set(defaults["templates"])
        assert {c["template_type"] for c in defaults["campaigns"]} <= template_types

    def test_default_templates_render_without_leftover_known_keys(self, variables):
        engine = TemplateEngine()
        for template_type, parts in load_defaults()["templates"].items():
            email = engine.render_email(
                {"subject_template": parts["subject"], "body_template": parts["body"]}, variables
            )
            for key in variables:
                assert "{%s}" % key not in email.body, (template_type, key)


class TestOptOutTokens:
    def test_round_trip_normalizes_the_address(self):
        token = sign_opt_out_token(" Pat@Example.com ", KEY, ISSUED)
        assert verify_opt_out_token(token, KEY, timedelta(days=365), ISSUED + timedelta(days=1)) == "pat@example.com"

    def test_forged_signature_is_rejected(self):
        payload, _ = sign_opt_out_token("pat@example.com", KEY, ISSUED).split(".")
        with pytest.raises(InvalidOptOutToken):
            verify_opt_out_token(f"{payload}.{'0' * 64}", KEY)

    def test_token_for_another_key_is_rejected(self):
        token = sign_opt_out_token("pat@example.com", "other-key", ISSUED)
        with pytest.raises(InvalidOptOutToken):
            verify_opt_out_token(token, KEY)

    def test_expired_token_is_rejected(self):
        token = sign_opt_out_token("pat@example.com", KEY, ISSUED)
        with pytest.raises(InvalidOptOutToken, match="expired"):
            verify_opt_out_token(token, KEY, timedelta(days=30), ISSUED + timedelta(days=31))

    @pytest.mark.parametrize("token", ["", "no-dot", ".", "abc.def"])
    def test_malformed_tokens_are_rejected(self, token):
        with pytest.raises(InvalidOptOutToken):
            verify_opt_out_token(token, KEY)

    def test_link_points_at_the_public_endpoint(self):
        link = opt_out_link("https://ar.example.com/", "pat@example.com", KEY, ISSUED)
        assert link.startswith("https://ar.example.com/api/public/opt-out?token=")
        token = link.split("token=", 1)[1]
        assert verify_opt_out_token(token, KEY) == "pat@example.com"
