import logging

import pytest

from primemart.errors import RenderError
from primemart.invoices import InvoiceComposer, compose_invoice, format_money

SELLER = {
    "name": "PrimeMart Retail Pvt Ltd",
    "address": "Warehouse Block C-12",
    "city": "Amravati",
    "state": "Maharashtra",
    "pincode": "444606",
    "gstin": "06AAAPM0000A1Z5",
    "phone": "+91 90000 00086",
    "email": "support@primemart.com",
}


def widget_order(**overrides):
    order = {
        "order_number": "ORD-0001",
        "items": [{"product_id": "", "name": "Widget", "price": 100.0, "quantity": 2}],
        "total_amount": 236.0,
        "tax": 36.0,
        "payment_status": "pending",
        "is_paid": False,
        "shipping_address": {
            "full_name": "Asha Rao",
            "phone": "9876543210",
            "street": "14 MG Road",
            "city": "Pune",
            "state": "Maharashtra",
            "pincode": "411001",
            "country": "India",
        },
    }
    order.update(overrides)
    return order


class TestComposeInvoice:
    def test_widget_totals(self):
        invoice = compose_invoice(widget_order(), "INV-0001", SELLER)

        assert format_money(invoice["totals"]["taxable"]) == "200.00"
        assert format_money(invoice["totals"]["cgst"]) == "18.00"
        assert format_money(invoice["totals"]["sgst"]) == "18.00"
        assert format_money(invoice["totals"]["grand_total"]) == "236.00"

    @pytest.mark.parametrize("total_amount, tax", [(236.0, 36.0), (99.99, 15.25), (1.0, 0.0), (1000.5, 152.62)])
    def test_taxable_plus_tax_equals_total(self, total_amount, tax):
        totals = compose_invoice(widget_order(total_amount=total_amount, tax=tax), "INV-0001", SELLER)["totals"]
        assert totals["taxable"] + totals["tax"] == pytest.approx(total_amount, abs=0.01)

    def test_line_tax_is_backed_out_of_inclusive_price(self):
        line = compose_invoice(widget_order(), "INV-0001", SELLER)["lines"][0]

        assert line["line_total"] == 200.0
        assert line["taxable_value"] == pytest.approx(169.49, abs=0.01)
        assert line["cgst"] == pytest.approx(15.25, abs=0.01)
        assert line["sgst"] == line["cgst"]

    def test_bill_to_falls_back_to_customer_and_defaults(self):
        order = widget_order(shipping_address={})
        invoice = compose_invoice(order, "INV-0001", SELLER, customer={"name": "Ravi", "mobile": "9000000000"})

        assert invoice["bill_to"]["name"] == "Ravi"
        assert invoice["bill_to"]["phone"] == "9000000000"
        assert invoice["bill_to"]["street"] == "Address Not Provided"

    def test_payment_badge(self):
        assert compose_invoice(widget_order(), "INV-1", SELLER)["payment_badge"] == "PENDING"
        paid = widget_order(payment_status="paid", is_paid=True)
        assert compose_invoice(paid, "INV-1", SELLER)["payment_badge"] == "PAID"


class TestInvoiceComposer:
    def test_renders_html_through_renderer(self, app, renderer):
        composer = InvoiceComposer(renderer, SELLER, logging.getLogger("tests"))

        document = composer.render(widget_order(), "INV-0007")

        assert document.startswith(b"%PDF")
        html = renderer.calls[0]
        assert "INV-0007" in html
        assert "Widget" in html
        assert "200.00" in html
        assert "236.00" in html

    def test_renderer_failure_propagates(self, app, renderer):
        renderer.fail = True
        composer = InvoiceComposer(renderer, SELLER, logging.getLogger("tests"))

        with pytest.raises(RenderError):
            composer.render(widget_order(), "INV-0001")
