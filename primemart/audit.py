import re
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from pymongo import DESCENDING
from pymongo.errors import PyMongoError

from primemart.config import utcnow
from primemart.errors import ValidationError
from primemart.orders import isoformat

MAX_PAGE_SIZE = 200


def flatten_details(details: Optional[Dict]) -> Dict[str, str]:
    """Keep scalar details as strings so entries stay queryable by value."""
    if not isinstance(details, dict):
        return {}
    return {str(key): str(value) for key, value in details.items() if value is not None}


def parse_boundary(value: Optional[str], label: str, closing: bool = False) -> Optional[datetime]:
    text = str(value or "").strip()
    if not text:
        return None
    try:
        moment = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(f"{label} must be an ISO date, got {text!r}")
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc).replace(tzinfo=None)
    # A bare day as the closing bound covers that whole day.
    if closing and len(text) == 10:
        moment += timedelta(days=1)
    return moment


class AuditLog:
    """Staff actions on orders, products and accounts, newest first."""

    def __init__(self, collection, logger):
        self.collection = collection
        self.logger = logger
        try:
            self.collection.create_index([("created_at", DESCENDING)])
            self.collection.create_index("metadata.order_number")
        except Exception as exc:
            logger.warning("Unable to ensure indexes for audit logs: %s", exc)

    def record(self, actor_email: Optional[str], action: str, details: Optional[Dict] = None):
        if not action:
            return
        entry = {
            "user_email": (actor_email or "").strip().lower() or None,
            "action": action,
            "metadata": flatten_details(details),
            "created_at": utcnow(),
        }
        try:
            self.collection.insert_one(entry)
        except PyMongoError as exc:
            self.logger.warning("Unable to record audit entry %r: %s", action, exc)

    def search(self, term: str = "", since=None, until=None, page: int = 1, per_page: int = 50) -> Dict:
        """Page through entries matching ``term`` inside an optional date window.

        ``term`` matches the actor, the action or an exact order number.
        ``until`` is exclusive, except that a bare date includes the whole day.
        """
        query: Dict[str, object] = {}
        term = (term or "").strip()
        if term:
            pattern = re.compile(re.escape(term), re.IGNORECASE)
            query["$or"] = [
                {"user_email": pattern},
                {"action": pattern},
                {"metadata.order_number": term.upper()},
            ]

        window = {}
        opening = parse_boundary(since, "since")
        closing = parse_boundary(until, "until", closing=True)
        if opening:
            window["$gte"] = opening
        if closing:
            window["$lt"] = closing
        if opening and closing and opening >= closing:
            raise ValidationError("since must be earlier than until")
        if window:
            query["created_at"] = window

        per_page = min(max(per_page, 1), MAX_PAGE_SIZE)
        page = max(page, 1)
        total = self.collection.count_documents(query)
        entries = (
            self.collection.find(query)
            .sort([("created_at", DESCENDING), ("_id", DESCENDING)])
            .skip((page - 1) * per_page)
            .limit(per_page)
        )
        return {
            "logs": [serialize_entry(entry) for entry in entries],
            "page": page,
            "perPage": per_page,
            "total": total,
            "pages": -(-total // per_page),
        }


def serialize_entry(entry: Dict) -> Dict[str, object]:
    details = entry.get("metadata")
    return {
        "id": str(entry["_id"]),
        "actor": entry.get("user_email") or "",
        "action": entry.get("action") or "",
        "metadata": details if isinstance(details, dict) else {},
        "createdAt": isoformat(entry.get("created_at")),
    }
