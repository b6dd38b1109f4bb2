"""Order lifecycle engine.

Every transition separates its primary effect from its advisory effects. The
primary effect (number allocation, the order write) either succeeds or raises.
Advisory effects (invoice generation, email, notifications, blob cleanup) are
attempted afterwards; their failures are logged and returned as warnings on
the ``TransitionResult`` so the recorded state change is never rolled back.
"""

from typing import Dict, List, NamedTuple, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from flask import render_template
from jinja2 import TemplateError
from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import PyMongoError

from primemart.config import utcnow
from primemart.errors import (
    AuthorizationError,
    DependencyError,
    NotFoundError,
    ValidationError,
)
from primemart.notifications import ORDER_APPROVED, ORDER_PLACED, ORDER_REJECTED
from primemart.orders import (
    DELETABLE_STATUSES,
    DELIVERED,
    ORDER_STATUSES,
    ORDER_TRANSITIONS,
    PAYMENT_PAID,
    PAYMENT_PENDING,
    PENDING,
    PROCESSING,
    REJECTED,
    TERMINAL_STATUSES,
    calculate_items_total,
    empty_invoice,
    normalize_payment_method,
    owns_order,
    parse_object_id,
    resolve_shipping_address,
    snapshot_items,
)

APPROVABLE_STATUSES = {PENDING, PROCESSING, REJECTED}
REJECTABLE_STATUSES = {PENDING, PROCESSING, REJECTED}
INVOICE_STATUSES = {PROCESSING, DELIVERED}
DEFAULT_REJECTION_REASON = "No specific reason provided."


class TransitionResult(NamedTuple):
    order: Dict
    warnings: List[str]


class OrderLifecycle:
    def __init__(
        self,
        db,
        allocator,
        composer,
        blob_store,
        mailer,
        notifications,
        audit,
        identity,
        logger,
        store_name: str = "PrimeMart",
    ):
        self.orders = db.orders
        self.users = db.users
        self.products = db.products
        self.allocator = allocator
        self.composer = composer
        self.blob_store = blob_store
        self.mailer = mailer
        self.notifications = notifications
        self.audit = audit
        self.identity = identity
        self.logger = logger
        self.store_name = store_name
        try:
            self.orders.create_index("order_number", unique=True)
            self.orders.create_index([("user_id", 1), ("created_at", DESCENDING)])
            self.orders.create_index("status")
        except Exception as exc:
            logger.warning("Unable to ensure indexes for orders: %s", exc)

    # --- Transitions ---

    def create(self, draft: Dict, user: Dict) -> TransitionResult:
        items = snapshot_items(draft.get("items") or [], self.products)
        tax = round(float(draft.get("tax") or 0), 2)
        total_amount = draft.get("total_amount")
        if total_amount is None:
            total_amount = calculate_items_total(items) + tax
        total_amount = round(float(total_amount), 2)
        if total_amount < 1:
            raise ValidationError("Total amount must be at least 1")
        if tax < 0 or tax > total_amount:
            raise ValidationError("Tax must be between 0 and the total amount")

        order_number = self.allocator.next_order_number()
        now = utcnow()
        order = {
            "order_number": order_number,
            "user_id": str(user["_id"]),
            "user_email": user.get("email", ""),
            "items": items,
            "total_amount": total_amount,
            "tax": tax,
            "shipping_address": resolve_shipping_address(draft.get("shipping_address"), user),
            "payment_method": normalize_payment_method(draft.get("payment_method")),
            "status": PENDING,
            "payment_status": PAYMENT_PENDING,
            "is_paid": False,
            "paid_at": None,
            "stripe_session_id": "",
            "payment_intent_id": "",
            "invoice": empty_invoice(),
            "approved_by": None,
            "approved_at": None,
            "rejected_by": None,
            "rejected_at": None,
            "rejection_reason": "",
            "created_at": now,
            "updated_at": now,
        }
        try:
            insert_result = self.orders.insert_one(order)
        except PyMongoError as exc:
            self.logger.error("Unable to persist order %s: %s", order_number, exc)
            raise DependencyError("Unable to save the order.") from exc
        order["_id"] = insert_result.inserted_id

        warnings: List[str] = []
        is_online = order["payment_method"] == "stripe"
        order, invoice_document = self._invoice_for_email(order, user, warnings)
        self._advise(
            warnings,
            order,
            "email",
            self._send_order_email,
            order,
            user,
            subject="Order Received - Awaiting Payment" if is_online else "Order Placed Successfully",
            heading="Thank you for your order!",
            paragraphs=[f"We have received your order {order_number}."],
            attachment=invoice_document,
        )
        self._advise(
            warnings,
            order,
            "notification",
            self.notifications.create,
            ORDER_PLACED,
            "New Online Order (Pending)" if is_online else "New COD Order Received",
            f"Order {order_number} placed for ₹{total_amount:g}.",
            order["_id"],
            order["user_id"],
        )
        return TransitionResult(order, warnings)

    def approve(self, order_id, actor: Dict) -> TransitionResult:
        self._require_staff(actor)
        order = self.load_order(order_id)
        if order.get("status") not in APPROVABLE_STATUSES:
            raise ValidationError(f"Cannot approve an order that is {order.get('status')}.")

        now = utcnow()
        order = self._apply(
            order,
            {
                "status": PROCESSING,
                "approved_by": str(actor["_id"]),
                "approved_at": now,
                "rejected_by": None,
                "rejected_at": None,
                "rejection_reason": "",
                "updated_at": now,
            },
        )

        warnings: List[str] = []
        customer = self._customer(order)
        self._advise(
            warnings,
            order,
            "notification",
            self.notifications.create,
            ORDER_APPROVED,
            "Order Approved",
            f"Order {order['order_number']} has been approved and is now processing.",
            order["_id"],
            order.get("user_id"),
        )
        self._advise(
            warnings,
            order,
            "email",
            self._send_order_email,
            order,
            customer,
            subject="Order Approved",
            heading="Great news! Your order is approved.",
            paragraphs=[
                f"Your order {order['order_number']} has been approved by our team and is now being processed.",
                "We will notify you once your order is shipped.",
            ],
        )
        self.audit.record(actor.get("email"), "Approved order", {"order_number": order["order_number"]})
        return TransitionResult(order, warnings)

    def reject(self, order_id, actor: Dict, reason: Optional[str] = None) -> TransitionResult:
        self._require_staff(actor)
        order = self.load_order(order_id)
        if order.get("status") not in REJECTABLE_STATUSES:
            raise ValidationError(f"Cannot reject an order that is {order.get('status')}.")
        return self._reject(order, actor, reason)

    def update_status(self, order_id, new_status: str, actor: Dict, rejection_reason: Optional[str] = None) -> TransitionResult:
        self._require_staff(actor)
        status = str(new_status or "").strip().lower()
        if status not in ORDER_STATUSES:
            raise ValidationError("Invalid status")

        order = self.load_order(order_id)
        if status == REJECTED:
            return self._reject(order, actor, rejection_reason)

        previous_status = order.get("status")
        if status != previous_status and status not in ORDER_TRANSITIONS.get(previous_status, set()):
            self.logger.info(
                "Administrative status change %s -> %s for %s", previous_status, status, order.get("order_number")
            )
        order = self._apply(order, {"status": status, "updated_at": utcnow()})

        warnings: List[str] = []
        customer = self._customer(order)
        if status in INVOICE_STATUSES and previous_status not in TERMINAL_STATUSES:
            order, invoice_document = self._invoice_for_email(order, customer, warnings)
            self._advise(
                warnings,
                order,
                "email",
                self._send_order_email,
                order,
                customer,
                subject=f"Order Update: {status.upper()} - Invoice Attached",
                heading="Your order has been updated",
                paragraphs=[f"Your order {order['order_number']} is now {status}."],
                attachment=invoice_document,
            )
        else:
            self._advise(
                warnings,
                order,
                "email",
                self._send_order_email,
                order,
                customer,
                subject=f"Order Update: {status.upper()}",
                heading="Your order has been updated",
                paragraphs=[f"Your order {order['order_number']} status is now {status}."],
            )

        self.audit.record(
            actor.get("email"),
            "Updated order status",
            {"order_number": order["order_number"], "from": previous_status, "to": status},
        )
        return TransitionResult(order, warnings)

    def ensure_invoice(self, order_id, requester: Dict) -> Dict[str, str]:
        order = self.load_order(order_id)
        if not (owns_order(order, requester) or self.identity.is_staff(requester)):
            raise AuthorizationError("Not authorized to access this invoice")

        if not (order.get("invoice") or {}).get("url"):
            order, _ = self._ensure_invoice(order, self._customer(order))

        invoice = order.get("invoice") or {}
        return {
            "invoiceUrl": invoice.get("url", ""),
            "invoiceNumber": invoice.get("number", ""),
            "orderNumber": order.get("order_number", ""),
        }

    def attach_payment_session(self, order_id, user: Dict, session_id: str) -> Dict:
        order = self.load_order(order_id)
        if not (owns_order(order, user) or self.identity.is_staff(user)):
            raise AuthorizationError("Not authorized to pay for this order")
        if order.get("is_paid"):
            raise ValidationError("Order is already paid.")
        return self._apply(order, {"stripe_session_id": session_id, "updated_at": utcnow()})

    def mark_paid(self, order_id, payment_reference: str) -> TransitionResult:
        order = self.load_order(order_id)
        newly_paid = order.get("payment_status") != PAYMENT_PAID
        now = utcnow()
        updates: Dict[str, object] = {
            "payment_status": PAYMENT_PAID,
            "is_paid": True,
            "payment_intent_id": payment_reference or order.get("payment_intent_id", ""),
            "updated_at": now,
        }
        if newly_paid:
            updates["paid_at"] = now
            updates["status"] = PROCESSING
        order = self._apply(order, updates)

        warnings: List[str] = []
        if newly_paid:
            customer = self._customer(order)
            order, invoice_document = self._invoice_for_email(order, customer, warnings)
            self._advise(
                warnings,
                order,
                "email",
                self._send_order_email,
                order,
                customer,
                subject="Payment Confirmed - Order Receipt",
                heading="Payment Received!",
                paragraphs=[
                    f"Your payment for order {order['order_number']} has been successfully verified.",
                ],
                attachment=invoice_document,
                accent="#10b981",
            )
        return TransitionResult(order, warnings)

    def delete(self, order_id, actor: Dict) -> TransitionResult:
        order = self.load_order(order_id)
        if not (owns_order(order, actor) or self.identity.is_staff(actor)):
            raise NotFoundError("Order not found")
        if order.get("status") not in DELETABLE_STATUSES:
            raise ValidationError("Only cancelled/rejected orders can be deleted")

        self.orders.delete_one({"_id": order["_id"]})

        warnings: List[str] = []
        storage_handle = (order.get("invoice") or {}).get("storage_handle")
        if storage_handle:
            self._advise(warnings, order, "invoice cleanup", self.blob_store.delete, storage_handle)
        self.audit.record(actor.get("email"), "Deleted order", {"order_number": order.get("order_number")})
        return TransitionResult(order, warnings)

    # --- Reads ---

    def get_order(self, order_id, requester: Dict) -> Dict:
        order = self.load_order(order_id)
        if not (owns_order(order, requester) or self.identity.is_staff(requester)):
            raise AuthorizationError("Not authorized to view this order")
        return order

    def list_for_user(self, user: Dict) -> List[Dict]:
        return list(self.orders.find({"user_id": str(user["_id"])}).sort("created_at", DESCENDING))

    def list_all(self, status: Optional[str] = None) -> List[Dict]:
        query = {"status": status} if status else {}
        return list(self.orders.find(query).sort("created_at", DESCENDING))

    # --- Internals ---

    def _reject(self, order: Dict, actor: Dict, reason: Optional[str]) -> TransitionResult:
        reason = str(reason or "").strip() or DEFAULT_REJECTION_REASON
        now = utcnow()
        order = self._apply(
            order,
            {
                "status": REJECTED,
                "rejected_by": str(actor["_id"]),
                "rejected_at": now,
                "rejection_reason": reason,
                "approved_by": None,
                "approved_at": None,
                "updated_at": now,
            },
        )

        warnings: List[str] = []
        customer = self._customer(order)
        self._advise(
            warnings,
            order,
            "notification",
            self.notifications.create,
            ORDER_REJECTED,
            "Order Rejected",
            f"Order {order['order_number']} was rejected by admin.",
            order["_id"],
            order.get("user_id"),
        )
        self._advise(
            warnings,
            order,
            "email",
            self._send_order_email,
            order,
            customer,
            subject=f"Order Rejected: {order['order_number']}",
            heading="Order Status: Rejected",
            paragraphs=[
                f"Regrettably, your order {order['order_number']} has been rejected.",
                f"Reason: {reason}",
                "Please contact our support for more info.",
            ],
            accent="#dc2626",
            border_color="#fee2e2",
        )
        self.audit.record(
            actor.get("email"), "Rejected order", {"order_number": order["order_number"], "reason": reason}
        )
        return TransitionResult(order, warnings)

    def _ensure_invoice(self, order: Dict, customer: Optional[Dict], with_document: bool = False) -> Tuple[Dict, Optional[bytes]]:
        """Return the order with an invoice recorded, generating one if needed.

        An existing invoice is never renumbered or re-uploaded; with
        ``with_document`` it is only re-rendered so it can be attached to an
        email. The invoice write only lands while the stored URL is still
        empty, so a concurrent generator that loses discards its own upload.
        """
        invoice = order.get("invoice") or {}
        if invoice.get("url"):
            document = self.composer.render(order, invoice.get("number", ""), customer) if with_document else None
            return order, document

        invoice_number = self.allocator.next_invoice_number()
        document = self.composer.render(order, invoice_number, customer)
        stored = self.blob_store.upload(document, f"{invoice_number}.pdf")
        invoice_fields = {
            "number": invoice_number,
            "url": stored["url"],
            "storage_handle": stored["handle"],
            "generated_at": utcnow(),
        }
        updated = self.orders.find_one_and_update(
            {"_id": order["_id"], "invoice.url": ""},
            {"$set": {"invoice": invoice_fields, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if updated:
            return updated, document

        self.logger.warning(
            "Invoice for %s was stored concurrently; discarding %s",
            order.get("order_number"),
            invoice_number,
        )
        try:
            self.blob_store.delete(stored["handle"])
        except DependencyError as exc:
            self.logger.warning("Unable to discard duplicate invoice %s: %s", stored["handle"], exc)
        current = self.load_order(order["_id"])
        current_invoice = current.get("invoice") or {}
        if with_document and current_invoice.get("url"):
            document = self.composer.render(current, current_invoice.get("number", ""), customer)
        return current, document if with_document else None

    def _invoice_for_email(self, order: Dict, customer: Optional[Dict], warnings: List[str]) -> Tuple[Dict, Optional[bytes]]:
        outcome = self._advise(warnings, order, "invoice", self._ensure_invoice, order, customer, True)
        if outcome is None:
            return order, None
        return outcome

    def _advise(self, warnings: List[str], order: Dict, label: str, effect, *args, **kwargs):
        try:
            return effect(*args, **kwargs)
        except (DependencyError, PyMongoError) as exc:
            self.logger.error("Advisory %s step failed for %s: %s", label, order.get("order_number"), exc)
            warnings.append(f"{label}: {exc}")
            return None

    def _send_order_email(
        self,
        order: Dict,
        customer: Optional[Dict],
        subject: str,
        heading: str,
        paragraphs: List[str],
        attachment: Optional[bytes] = None,
        accent: str = "#2563eb",
        border_color: str = "#eeeeee",
    ):
        customer = customer or {}
        recipient = customer.get("email") or order.get("user_email")
        if not recipient:
            self.logger.warning("No recipient for %s email on %s", subject, order.get("order_number"))
            return False

        invoice = order.get("invoice") or {}
        try:
            html_body = render_template(
                "emails/order_update.html",
                heading=heading,
                paragraphs=paragraphs,
                customer_name=customer.get("name") or (order.get("shipping_address") or {}).get("full_name") or "Customer",
                order_number=order.get("order_number", ""),
                status=order.get("status", ""),
                total_amount=f"{float(order.get('total_amount') or 0):,.2f}",
                invoice_url=invoice.get("url", ""),
                has_attachment=bool(attachment),
                accent=accent,
                border_color=border_color,
                store_name=self.store_name,
            )
        except TemplateError as exc:
            self.logger.error("Order email template failed for %s: %s", order.get("order_number"), exc)
            raise DependencyError(f"Email layout failed: {exc}") from exc
        sent, error_details = self.mailer.send(
            recipient,
            subject,
            html_body,
            attachment=attachment,
            filename=f"{invoice.get('number') or 'invoice'}.pdf",
        )
        if not sent:
            raise DependencyError(f"Email delivery failed: {error_details}")
        return True

    def _require_staff(self, actor: Optional[Dict]):
        if not actor or not self.identity.is_staff(actor):
            raise AuthorizationError()

    def load_order(self, order_id) -> Dict:
        order = self.orders.find_one({"_id": parse_object_id(order_id)})
        if not order:
            raise NotFoundError("Order not found")
        return order

    def _apply(self, order: Dict, updates: Dict) -> Dict:
        updated = self.orders.find_one_and_update(
            {"_id": order["_id"]},
            {"$set": updates},
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            raise NotFoundError("Order not found")
        return updated

    def _customer(self, order: Dict) -> Dict:
        try:
            user_id = ObjectId(str(order.get("user_id")))
        except (InvalidId, TypeError):
            return {}
        return self.users.find_one({"_id": user_id}) or {}
