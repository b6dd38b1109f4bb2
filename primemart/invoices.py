"""Tax invoice composition.

Line prices are tax inclusive. Each line's taxable value is backed out with
the combined GST rate and split evenly into CGST and SGST. Order totals come
from the stored amounts: ``taxable = total_amount - tax`` and the order tax is
halved between the two components.
"""

from datetime import datetime
from typing import Dict, Optional

from flask import render_template
from jinja2 import TemplateError

from primemart.config import utcnow
from primemart.errors import RenderError
from primemart.orders import PAYMENT_PAID, safe_float, safe_positive_int

CGST_RATE = 9
SGST_RATE = 9
TOTAL_GST_RATE = CGST_RATE + SGST_RATE
DEFAULT_HSN = "9983"


def format_money(value) -> str:
    return f"{safe_float(value, 0.0):,.2f}"


def build_bill_to(order: Dict, customer: Optional[Dict] = None) -> Dict[str, str]:
    address = order.get("shipping_address") or {}
    customer = customer or {}
    customer_address = customer.get("shipping_address") or {}
    return {
        "name": address.get("full_name") or customer.get("name") or "Customer",
        "phone": (
            address.get("phone")
            or customer.get("mobile")
            or customer_address.get("phone")
            or "N/A"
        ),
        "street": address.get("street") or "Address Not Provided",
        "city": address.get("city") or "",
        "state": address.get("state") or "N/A",
        "pincode": address.get("pincode") or "",
        "country": address.get("country") or "",
    }


def compose_invoice(order: Dict, invoice_number: str, seller: Dict, customer: Optional[Dict] = None) -> Dict:
    lines = []
    for index, item in enumerate(order.get("items") or [], start=1):
        quantity = safe_positive_int(item.get("quantity"), 1) or 1
        rate_with_tax = safe_float(item.get("price"), 0.0)
        line_total = rate_with_tax * quantity
        taxable_value = line_total / (1 + TOTAL_GST_RATE / 100)
        product_id = str(item.get("product_id") or "")
        lines.append(
            {
                "index": index,
                "name": item.get("name") or "Product",
                "sku": product_id[-6:].upper() if product_id else "N/A",
                "hsn": item.get("hsn") or DEFAULT_HSN,
                "quantity": quantity,
                "unit_taxable_rate": round(taxable_value / quantity, 2),
                "taxable_value": round(taxable_value, 2),
                "cgst": round(taxable_value * CGST_RATE / 100, 2),
                "sgst": round(taxable_value * SGST_RATE / 100, 2),
                "line_total": round(line_total, 2),
            }
        )

    total_amount = safe_float(order.get("total_amount"), 0.0)
    total_tax = safe_float(order.get("tax"), 0.0)
    payment_status = str(order.get("payment_status") or "pending").lower()
    is_paid = payment_status == PAYMENT_PAID or bool(order.get("is_paid"))
    created_at = order.get("created_at")

    return {
        "invoice_number": invoice_number or "N/A",
        "order_number": order.get("order_number") or str(order.get("_id") or ""),
        "invoice_date": (created_at if isinstance(created_at, datetime) else utcnow()).strftime("%d/%m/%Y"),
        "payment_badge": "PAID" if is_paid else payment_status.upper(),
        "is_paid": is_paid,
        "payment_method": str(order.get("payment_method") or "cod").upper(),
        "status": order.get("status") or "pending",
        "seller": seller,
        "bill_to": build_bill_to(order, customer),
        "lines": lines,
        "rates": {"cgst": CGST_RATE, "sgst": SGST_RATE},
        "totals": {
            "taxable": round(total_amount - total_tax, 2),
            "cgst": round(total_tax / 2, 2),
            "sgst": round(total_tax / 2, 2),
            "tax": round(total_tax, 2),
            "grand_total": round(total_amount, 2),
        },
    }


class InvoiceComposer:
    def __init__(self, renderer, seller: Dict, logger):
        self.renderer = renderer
        self.seller = seller
        self.logger = logger

    def build_html(self, order: Dict, invoice_number: str, customer: Optional[Dict] = None) -> str:
        invoice = compose_invoice(order, invoice_number, self.seller, customer)
        try:
            return render_template("invoice.html", invoice=invoice, money=format_money)
        except TemplateError as exc:
            self.logger.error("Invoice template failed for %s: %s", invoice["order_number"], exc)
            raise RenderError(f"Invoice layout failed: {exc}") from exc

    def render(self, order: Dict, invoice_number: str, customer: Optional[Dict] = None) -> bytes:
        return self.renderer.render(self.build_html(order, invoice_number, customer))
