import logging
from unittest import mock

import pytest
import requests

from primemart.errors import AuthorizationError, PaymentGatewayError, PaymentIncompleteError, ValidationError
from primemart.orders import PROCESSING, SHIPPED
from primemart.payments import StripeGateway, build_line_items

from tests.conftest import widget_draft


@pytest.fixture
def payments(services):
    return services["payments"]


@pytest.fixture
def online_order(lifecycle, customer):
    return lifecycle.create(widget_draft(payment_method="stripe"), customer).order


def open_session(payments, order, user):
    return payments.create_checkout_session(order["_id"], user)["sessionId"]


class TestCheckoutSession:
    def test_records_session_on_order(self, payments, online_order, customer, gateway, db):
        session = payments.create_checkout_session(str(online_order["_id"]), customer)

        assert session["url"] == f"https://checkout.test/{session['sessionId']}"
        assert db.orders.find_one({"_id": online_order["_id"]})["stripe_session_id"] == session["sessionId"]
        created = gateway.created[0]
        assert created["metadata"] == {"orderId": str(online_order["_id"]), "userId": str(customer["_id"])}
        assert created["line_items"][0]["unit_amount"] == 10000
        assert created["line_items"][0]["quantity"] == 2
        assert created["success_url"] == "http://shop.test/payment-success?session_id={CHECKOUT_SESSION_ID}"

    def test_order_id_is_required(self, payments, customer):
        with pytest.raises(ValidationError):
            payments.create_checkout_session("", customer)

    def test_other_customers_cannot_pay(self, payments, online_order, other_customer):
        with pytest.raises(AuthorizationError):
            payments.create_checkout_session(online_order["_id"], other_customer)


class TestVerify:
    def test_unpaid_session_leaves_order_unmodified(self, payments, online_order, customer, db):
        session_id = open_session(payments, online_order, customer)
        before = db.orders.find_one({"_id": online_order["_id"]})

        with pytest.raises(PaymentIncompleteError):
            payments.verify(session_id)

        assert db.orders.find_one({"_id": online_order["_id"]}) == before

    def test_paid_session_settles_order(self, payments, online_order, customer, gateway, mailer):
        session_id = open_session(payments, online_order, customer)
        gateway.complete(session_id)
        mails_before = len(mailer.calls)

        result = payments.verify(session_id)

        order = result.order
        assert order["payment_status"] == "paid"
        assert order["is_paid"] is True
        assert order["paid_at"] is not None
        assert order["status"] == PROCESSING
        assert order["payment_intent_id"] == f"pi_{session_id}"
        assert len(mailer.calls) == mails_before + 1
        assert mailer.calls[-1]["subject"] == "Payment Confirmed - Order Receipt"
        assert mailer.calls[-1]["attachment"] is not None

    def test_repeated_verification_sends_one_receipt(self, payments, online_order, customer, gateway, mailer, db):
        session_id = open_session(payments, online_order, customer)
        gateway.complete(session_id)
        first = payments.verify(session_id).order
        mails_after_first = len(mailer.calls)

        second = payments.verify(session_id).order

        assert len(mailer.calls) == mails_after_first
        assert second["paid_at"] == first["paid_at"]
        assert second["invoice"] == first["invoice"]

    def test_reverification_keeps_later_fulfilment_status(self, payments, online_order, customer, gateway, db):
        session_id = open_session(payments, online_order, customer)
        gateway.complete(session_id)
        payments.verify(session_id)
        db.orders.update_one({"_id": online_order["_id"]}, {"$set": {"status": SHIPPED}})

        assert payments.verify(session_id).order["status"] == SHIPPED

    def test_session_id_is_required(self, payments):
        with pytest.raises(ValidationError):
            payments.verify("  ")

    def test_unknown_session(self, payments):
        with pytest.raises(PaymentGatewayError):
            payments.verify("cs_missing")


class TestStripeGateway:
    def test_missing_key_is_a_gateway_error(self):
        gateway = StripeGateway("", "https://api.stripe.test", 5, logging.getLogger("tests"))
        with pytest.raises(PaymentGatewayError):
            gateway.retrieve_session("cs_1")

    def test_encodes_checkout_form(self):
        gateway = StripeGateway("sk_test", "https://api.stripe.test", 5, logging.getLogger("tests"))
        response = mock.Mock(status_code=200)
        response.json.return_value = {"id": "cs_1", "url": "https://checkout.stripe.test/cs_1"}

        with mock.patch("primemart.payments.requests.request", return_value=response) as request:
            session = gateway.create_checkout_session(
                build_line_items([{"name": "Widget", "price": 100, "quantity": 2}]),
                success_url="http://shop.test/ok",
                cancel_url="http://shop.test/checkout",
                metadata={"orderId": "o1", "userId": "u1"},
                customer_email="asha@example.com",
            )

        assert session["id"] == "cs_1"
        method, url = request.call_args.args
        form = request.call_args.kwargs["data"]
        assert (method, url) == ("POST", "https://api.stripe.test/v1/checkout/sessions")
        assert request.call_args.kwargs["auth"] == ("sk_test", "")
        assert request.call_args.kwargs["timeout"] == 5
        assert form["line_items[0][price_data][currency]"] == "inr"
        assert form["line_items[0][price_data][unit_amount]"] == 10000
        assert form["metadata[orderId]"] == "o1"

    def test_network_errors_are_gateway_errors(self):
        gateway = StripeGateway("sk_test", "https://api.stripe.test", 5, logging.getLogger("tests"))
        with mock.patch("primemart.payments.requests.request", side_effect=requests.Timeout("slow")):
            with pytest.raises(PaymentGatewayError):
                gateway.retrieve_session("cs_1")
