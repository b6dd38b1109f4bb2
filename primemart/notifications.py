from typing import Dict, List, Optional

from pymongo import DESCENDING

from primemart.config import utcnow
from primemart.errors import NotFoundError, ValidationError
from primemart.orders import isoformat, parse_object_id

ORDER_PLACED = "order_placed"
ORDER_APPROVED = "order_approved"
ORDER_REJECTED = "order_rejected"
NOTIFICATION_TYPES = {ORDER_PLACED, ORDER_APPROVED, ORDER_REJECTED}
LATEST_LIMIT = 20


class NotificationService:
    def __init__(self, db, logger):
        self.collection = db.notifications
        self.orders = db.orders
        self.logger = logger
        try:
            self.collection.create_index([("user_id", 1), ("is_read", 1)])
            self.collection.create_index([("created_at", DESCENDING)])
        except Exception as exc:
            logger.warning("Unable to ensure indexes for notifications: %s", exc)

    def create(
        self,
        notification_type: str,
        title: str,
        message: str,
        order_id,
        user_id: Optional[str] = None,
    ) -> Dict:
        if notification_type not in NOTIFICATION_TYPES:
            raise ValidationError(f"Unknown notification type: {notification_type}")
        document = {
            "type": notification_type,
            "title": title.strip(),
            "message": message,
            "order_id": order_id,
            "user_id": user_id,
            "is_read": False,
            "read_at": None,
            "created_at": utcnow(),
        }
        result = self.collection.insert_one(document)
        document["_id"] = result.inserted_id
        return document

    def list_latest(self, limit: int = LATEST_LIMIT) -> List[Dict]:
        documents = list(
            self.collection.find().sort([("created_at", DESCENDING), ("_id", DESCENDING)]).limit(limit)
        )
        order_ids = [document.get("order_id") for document in documents if document.get("order_id")]
        orders = {
            order["_id"]: order
            for order in self.orders.find(
                {"_id": {"$in": order_ids}}, {"order_number": 1, "total_amount": 1}
            )
        }
        return [serialize_notification(document, orders.get(document.get("order_id"))) for document in documents]

    def mark_read(self, notification_id: str) -> Dict:
        object_id = parse_object_id(notification_id, "Notification")
        result = self.collection.update_one(
            {"_id": object_id}, {"$set": {"is_read": True, "read_at": utcnow()}}
        )
        if result.matched_count == 0:
            raise NotFoundError("Notification not found.")
        return serialize_notification(self.collection.find_one({"_id": object_id}))

    def mark_all_read(self) -> int:
        result = self.collection.update_many(
            {"is_read": False}, {"$set": {"is_read": True, "read_at": utcnow()}}
        )
        return result.modified_count

    def clear_read(self) -> int:
        return self.collection.delete_many({"is_read": True}).deleted_count


def serialize_notification(document: Optional[Dict], order: Optional[Dict] = None) -> Dict[str, object]:
    if not document:
        return {}
    order_id = document.get("order_id")
    serialized_order: object = str(order_id) if order_id else None
    if order:
        serialized_order = {
            "id": str(order["_id"]),
            "orderNumber": order.get("order_number", ""),
            "totalAmount": order.get("total_amount", 0),
        }
    return {
        "id": str(document.get("_id")),
        "type": document.get("type", ""),
        "title": document.get("title", ""),
        "message": document.get("message", ""),
        "order": serialized_order,
        "userId": document.get("user_id"),
        "isRead": bool(document.get("is_read")),
        "readAt": isoformat(document.get("read_at")),
        "createdAt": isoformat(document.get("created_at")),
    }
