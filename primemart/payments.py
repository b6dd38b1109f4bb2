from typing import Dict, List, Optional

import requests

from primemart.errors import (
    AuthorizationError,
    PaymentGatewayError,
    PaymentIncompleteError,
    ValidationError,
)
from primemart.orders import owns_order, safe_float, safe_positive_int


class StripeGateway:
    """Stripe Checkout over its form-encoded REST API."""

    def __init__(self, secret_key: str, api_base: str, timeout: int, logger, currency: str = "inr"):
        self.secret_key = (secret_key or "").strip()
        self.api_base = (api_base or "https://api.stripe.com").rstrip("/")
        self.timeout = timeout
        self.logger = logger
        self.currency = currency

    def create_checkout_session(
        self,
        line_items: List[Dict],
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
        customer_email: Optional[str] = None,
    ) -> Dict:
        form: Dict[str, object] = {
            "mode": "payment",
            "payment_method_types[0]": "card",
            "success_url": success_url,
            "cancel_url": cancel_url,
        }
        if customer_email:
            form["customer_email"] = customer_email
        for key, value in metadata.items():
            form[f"metadata[{key}]"] = value
        for index, item in enumerate(line_items):
            prefix = f"line_items[{index}]"
            form[f"{prefix}[price_data][currency]"] = self.currency
            form[f"{prefix}[price_data][product_data][name]"] = item["name"]
            form[f"{prefix}[price_data][unit_amount]"] = item["unit_amount"]
            form[f"{prefix}[quantity]"] = item["quantity"]
            if item.get("image"):
                form[f"{prefix}[price_data][product_data][images][0]"] = item["image"]

        return self._request("POST", "/v1/checkout/sessions", data=form)

    def retrieve_session(self, session_id: str) -> Dict:
        return self._request("GET", f"/v1/checkout/sessions/{session_id}")

    def _request(self, method: str, path: str, data: Optional[Dict] = None) -> Dict:
        if not self.secret_key:
            raise PaymentGatewayError("Payment configuration is incomplete. Please contact support.")

        try:
            response = requests.request(
                method,
                f"{self.api_base}{path}",
                data=data,
                auth=(self.secret_key, ""),
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            self.logger.error("Stripe request %s %s failed: %s", method, path, exc)
            raise PaymentGatewayError("Failed to reach the payment provider.") from exc

        if response.status_code != 200:
            self.logger.error("Stripe returned %s for %s: %s", response.status_code, path, response.text[:300])
            raise PaymentGatewayError("The payment provider rejected the request.")

        try:
            return response.json()
        except ValueError as exc:
            raise PaymentGatewayError("The payment provider returned an unreadable response.") from exc


def build_line_items(items: List[Dict]) -> List[Dict]:
    line_items = []
    for item in items or []:
        if not isinstance(item, dict):
            continue
        image = item.get("image") or item.get("image_url") or ""
        if isinstance(image, dict):
            image = image.get("url") or ""
        line_items.append(
            {
                "name": str(item.get("name") or "Product"),
                # Stripe expects the smallest currency unit.
                "unit_amount": int(round(safe_float(item.get("price"), 0.0) * 100)),
                "quantity": safe_positive_int(item.get("quantity") or item.get("qty"), 1) or 1,
                "image": str(image),
            }
        )
    return line_items


class PaymentReconciler:
    def __init__(self, gateway, lifecycle, identity, client_url: str, logger):
        self.gateway = gateway
        self.lifecycle = lifecycle
        self.identity = identity
        self.client_url = (client_url or "").rstrip("/")
        self.logger = logger

    def create_checkout_session(self, order_id, user: Dict, items: Optional[List[Dict]] = None, total_amount=None) -> Dict:
        if not order_id:
            raise ValidationError("Order ID is required to initiate payment.")

        order = self.lifecycle.load_order(order_id)
        if not (owns_order(order, user) or self.identity.is_staff(user)):
            raise AuthorizationError("Not authorized to pay for this order")
        if order.get("is_paid"):
            raise ValidationError("Order is already paid.")

        line_items = build_line_items(items or order.get("items") or [])
        if not line_items:
            raise ValidationError("No valid items in checkout.")
        if total_amount is not None and abs(safe_float(total_amount, 0.0) - safe_float(order.get("total_amount"), 0.0)) > 0.01:
            self.logger.warning(
                "Checkout total %s differs from stored total %s for %s",
                total_amount,
                order.get("total_amount"),
                order.get("order_number"),
            )

        session = self.gateway.create_checkout_session(
            line_items,
            success_url=f"{self.client_url}/payment-success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{self.client_url}/checkout",
            metadata={"orderId": str(order["_id"]), "userId": str(user["_id"])},
            customer_email=user.get("email"),
        )
        session_id = session.get("id") or ""
        self.lifecycle.attach_payment_session(order["_id"], user, session_id)
        self.logger.info("Created checkout session %s for %s", session_id, order.get("order_number"))
        return {"url": session.get("url", ""), "sessionId": session_id}

    def verify(self, session_id: Optional[str]):
        """Confirm a checkout session and settle its order.

        Unpaid sessions leave the order untouched. Verifying an already paid
        order re-asserts the payment fields and sends nothing.
        """
        session_id = str(session_id or "").strip()
        if not session_id:
            raise ValidationError("Session ID is required for verification.")

        session = self.gateway.retrieve_session(session_id)
        if session.get("payment_status") != "paid":
            raise PaymentIncompleteError()

        order_id = (session.get("metadata") or {}).get("orderId")
        if not order_id:
            raise ValidationError("Checkout session is not linked to an order.")

        return self.lifecycle.mark_paid(order_id, session.get("payment_intent") or "")
