"""Order documents: request normalization, snapshots and serialization.

Orders are stored with snake_case fields and served to clients in camelCase.
Line items and the shipping address are snapshots taken once at creation so
historical orders keep rendering the same way after catalog or profile edits.
"""

import math
from datetime import datetime
from typing import Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId

from primemart.errors import NotFoundError, ValidationError

PENDING = "pending"
PROCESSING = "processing"
SHIPPED = "shipped"
DELIVERED = "delivered"
CANCELLED = "cancelled"
REJECTED = "rejected"

ORDER_STATUSES = (PENDING, PROCESSING, SHIPPED, DELIVERED, CANCELLED, REJECTED)
TERMINAL_STATUSES = {DELIVERED, CANCELLED, REJECTED}
DELETABLE_STATUSES = {CANCELLED, REJECTED}

# Forward path of the fulfilment flow. Admin tooling may still set any known
# status through update_status.
ORDER_TRANSITIONS = {
    PENDING: {PROCESSING, REJECTED, CANCELLED},
    PROCESSING: {SHIPPED, CANCELLED},
    SHIPPED: {DELIVERED, CANCELLED},
    DELIVERED: set(),
    CANCELLED: set(),
    REJECTED: set(),
}

PAYMENT_PENDING = "pending"
PAYMENT_PAID = "paid"

ONLINE_PAYMENT_METHODS = {"stripe", "online", "card"}

ADDRESS_FIELDS = ("full_name", "phone", "street", "city", "state", "pincode", "country")
ADDRESS_FIELD_ALIASES = {
    "full_name": ("fullName", "full_name", "name"),
    "phone": ("phone", "mobile"),
    "street": ("street", "line1", "address"),
    "city": ("city",),
    "state": ("state",),
    "pincode": ("pincode", "postcode", "postalCode", "zip"),
    "country": ("country",),
}
DEFAULT_CUSTOMER_NAME = "Customer"
DEFAULT_PHONE = "N/A"
DEFAULT_COUNTRY = "India"


def safe_float(value, default=0.0):
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return default
    if math.isfinite(numeric):
        return numeric
    return default


def safe_positive_int(value, default=0):
    try:
        numeric = int(float(value))
    except (TypeError, ValueError):
        return default
    return max(default, numeric)


def parse_object_id(value, label: str = "Order") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise NotFoundError(f"{label} not found")


def isoformat(value) -> Optional[str]:
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is not None:
        return value.isoformat()
    return f"{value.isoformat()}Z"


def normalize_address_payload(payload: Optional[Dict]) -> Dict[str, str]:
    if not isinstance(payload, dict):
        return {}

    normalized: Dict[str, str] = {}
    for field in ADDRESS_FIELDS:
        for alias in ADDRESS_FIELD_ALIASES.get(field, (field,)):
            value = payload.get(alias)
            if value is None:
                continue
            trimmed = str(value).strip()
            if trimmed:
                normalized[field] = trimmed
                break
    return normalized


def resolve_shipping_address(explicit: Optional[Dict], user_document: Optional[Dict]) -> Dict[str, str]:
    """Fill every address field from the first source that has it.

    Order per field: the address sent with the request, the user's stored
    default, a guess derived from the profile, then static defaults.
    """
    requested = normalize_address_payload(explicit)
    user_document = user_document or {}
    stored = normalize_address_payload(user_document.get("shipping_address"))
    derived = {
        "full_name": str(user_document.get("name") or "").strip(),
        "phone": str(user_document.get("mobile") or "").strip(),
    }
    defaults = {
        "full_name": DEFAULT_CUSTOMER_NAME,
        "phone": DEFAULT_PHONE,
        "country": DEFAULT_COUNTRY,
    }

    resolved: Dict[str, str] = {}
    for field in ADDRESS_FIELDS:
        resolved[field] = (
            requested.get(field)
            or stored.get(field)
            or derived.get(field)
            or defaults.get(field, "")
        )
    return resolved


def normalize_order_request(payload: Optional[Dict]) -> Dict[str, object]:
    """Collapse the accepted request aliases into one draft shape."""
    payload = payload if isinstance(payload, dict) else {}

    raw_items = payload.get("orderItems") or payload.get("items")
    if not isinstance(raw_items, list) or not raw_items:
        raise ValidationError("Order cannot be created: No items provided.")

    items = []
    for entry in raw_items:
        if not isinstance(entry, dict):
            raise ValidationError("Each order item must be an object.")
        product_identifier = (
            entry.get("productId")
            or entry.get("product_id")
            or entry.get("product")
            or entry.get("_id")
            or entry.get("id")
            or ""
        )
        image = entry.get("image") or entry.get("imageUrl") or entry.get("image_url") or ""
        if isinstance(image, dict):
            image = image.get("url") or ""
        price = entry.get("price")
        items.append(
            {
                "product_id": str(product_identifier).strip(),
                "name": str(entry.get("name") or "").strip(),
                "price": safe_float(price, 0.0) if price is not None else None,
                "quantity": safe_positive_int(entry.get("quantity") or entry.get("qty"), 1) or 1,
                "image_url": str(image).strip(),
            }
        )

    address = payload.get("shippingAddress") or payload.get("address")
    total = payload.get("totalAmount")
    if total is None:
        total = payload.get("totalPrice")

    return {
        "items": items,
        "shipping_address": address if isinstance(address, dict) else None,
        "total_amount": safe_float(total, 0.0) if total is not None else None,
        "tax": round(safe_float(payload.get("tax"), 0.0), 2),
        "payment_method": str(payload.get("paymentMethod") or "").strip(),
    }


def normalize_payment_method(value: Optional[str]) -> str:
    return "stripe" if str(value or "").strip().lower() in ONLINE_PAYMENT_METHODS else "cod"


def snapshot_items(items: List[Dict], products_collection) -> List[Dict]:
    """Freeze line items, filling a missing name or price from the catalog."""
    snapshots = []
    for item in items:
        name = item.get("name") or ""
        price = item.get("price")
        image_url = item.get("image_url") or ""
        if not name or not price:
            product = None
            try:
                product = products_collection.find_one({"_id": ObjectId(item["product_id"])})
            except (InvalidId, TypeError):
                product = None
            if product:
                name = name or product.get("name", "")
                price = price or safe_float(product.get("price"), 0.0)
                image_url = image_url or product.get("image_url", "")
        if not name or price is None:
            raise ValidationError("Include item details (name, quantity, price) to place the order.")
        snapshots.append(
            {
                "product_id": item.get("product_id") or "",
                "name": name,
                "price": round(safe_float(price, 0.0), 2),
                "quantity": item.get("quantity") or 1,
                "image_url": image_url,
            }
        )
    return snapshots


def calculate_items_total(items: List[Dict]) -> float:
    return round(
        sum(safe_float(item.get("price"), 0.0) * safe_positive_int(item.get("quantity"), 1) for item in items),
        2,
    )


def empty_invoice() -> Dict[str, object]:
    return {"number": "", "url": "", "storage_handle": "", "generated_at": None}


def owns_order(order_document: Dict, user_document: Optional[Dict]) -> bool:
    if not order_document or not user_document:
        return False
    return str(order_document.get("user_id") or "") == str(user_document.get("_id") or "")


def serialize_order(order_document: Optional[Dict]) -> Optional[Dict[str, object]]:
    if not order_document:
        return None

    invoice = order_document.get("invoice") or {}
    address = order_document.get("shipping_address") or {}
    return {
        "id": str(order_document.get("_id") or ""),
        "orderNumber": order_document.get("order_number", ""),
        "userId": str(order_document.get("user_id") or ""),
        "items": [
            {
                "productId": item.get("product_id", ""),
                "name": item.get("name", ""),
                "price": item.get("price", 0),
                "quantity": item.get("quantity", 1),
                "image": item.get("image_url", ""),
                "lineTotal": round(safe_float(item.get("price"), 0.0) * safe_positive_int(item.get("quantity"), 1), 2),
            }
            for item in order_document.get("items") or []
        ],
        "totalAmount": order_document.get("total_amount", 0),
        "tax": order_document.get("tax", 0),
        "shippingAddress": {
            "fullName": address.get("full_name", ""),
            "phone": address.get("phone", ""),
            "street": address.get("street", ""),
            "city": address.get("city", ""),
            "state": address.get("state", ""),
            "pincode": address.get("pincode", ""),
            "country": address.get("country", ""),
        },
        "paymentMethod": order_document.get("payment_method", "cod"),
        "status": order_document.get("status", PENDING),
        "paymentStatus": order_document.get("payment_status", PAYMENT_PENDING),
        "isPaid": bool(order_document.get("is_paid")),
        "paidAt": isoformat(order_document.get("paid_at")),
        "invoiceNumber": invoice.get("number", ""),
        "invoiceUrl": invoice.get("url", ""),
        "invoiceGeneratedAt": isoformat(invoice.get("generated_at")),
        "approvedBy": order_document.get("approved_by"),
        "approvedAt": isoformat(order_document.get("approved_at")),
        "rejectedBy": order_document.get("rejected_by"),
        "rejectedAt": isoformat(order_document.get("rejected_at")),
        "rejectionReason": order_document.get("rejection_reason", ""),
        "createdAt": isoformat(order_document.get("created_at")),
        "updatedAt": isoformat(order_document.get("updated_at")),
    }
