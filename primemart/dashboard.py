from typing import Dict

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import DESCENDING

from primemart.catalog import serialize_product
from primemart.config import utcnow
from primemart.orders import DELIVERED, ORDER_STATUSES, PENDING, isoformat, safe_float, serialize_order

RECENT_ORDERS_LIMIT = 5
LOW_STOCK_LIMIT = 5


class Dashboard:
    def __init__(self, db, low_stock_threshold: int = 10):
        self.db = db
        self.low_stock_threshold = low_stock_threshold

    def summary(self) -> Dict[str, object]:
        orders = self.db.orders
        delivered = orders.find({"status": DELIVERED}, {"total_amount": 1})
        total_revenue = round(sum(safe_float(order.get("total_amount"), 0.0) for order in delivered), 2)

        users_by_id = {}
        recent_orders = []
        for order in orders.find().sort("created_at", DESCENDING).limit(RECENT_ORDERS_LIMIT):
            serialized = serialize_order(order)
            user_id = order.get("user_id")
            if user_id not in users_by_id:
                users_by_id[user_id] = self._user_summary(user_id)
            serialized["user"] = users_by_id[user_id]
            recent_orders.append(serialized)

        low_stock = self.db.products.find({"stock": {"$lt": self.low_stock_threshold}}).limit(LOW_STOCK_LIMIT)

        return {
            "summary": {
                "totalUsers": self.db.users.count_documents({}),
                "totalProducts": self.db.products.count_documents({}),
                "totalOrders": orders.count_documents({}),
                "totalRevenue": total_revenue,
            },
            "orderStatus": {status: orders.count_documents({"status": status}) for status in ORDER_STATUSES},
            "recentOrders": recent_orders,
            "lowStockProducts": [serialize_product(product) for product in low_stock],
            "updatedAt": isoformat(utcnow()),
        }

    def _user_summary(self, user_id) -> Dict[str, str]:
        try:
            user = self.db.users.find_one({"_id": ObjectId(str(user_id))}, {"name": 1, "email": 1})
        except (InvalidId, TypeError):
            user = None
        if not user:
            return {"name": "", "email": ""}
        return {"name": user.get("name", ""), "email": user.get("email", "")}

    def order_stats(self) -> Dict[str, object]:
        orders = self.db.orders
        paid = orders.find({"is_paid": True}, {"total_amount": 1})
        return {
            "totalOrders": orders.count_documents({}),
            "pendingOrders": orders.count_documents({"status": PENDING}),
            "deliveredOrders": orders.count_documents({"status": DELIVERED}),
            "totalRevenue": round(sum(safe_float(order.get("total_amount"), 0.0) for order in paid), 2),
        }
