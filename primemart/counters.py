from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from primemart.errors import DependencyError

ORDER_COUNTER = "order"
INVOICE_COUNTER = "invoice"


def format_sequence(prefix: str, value: int) -> str:
    return f"{prefix}-{value:04d}"


class SequenceAllocator:
    """Named, gap-free counters backed by one MongoDB document per name.

    ``next_value`` relies on ``find_one_and_update`` with ``$inc`` so that two
    concurrent callers for the same name can never observe the same value.
    The unique index on ``name`` keeps racing first upserts from creating two
    counter documents; the caller that loses that race retries against the
    document the winner created.
    """

    def __init__(self, collection, logger):
        self.collection = collection
        self.logger = logger
        try:
            self.collection.create_index("name", unique=True)
        except PyMongoError as exc:
            logger.warning("Unable to ensure unique index for counters: %s", exc)

    def next_value(self, name: str) -> int:
        try:
            try:
                counter = self._increment(name)
            except DuplicateKeyError:
                self.logger.info("Concurrent first allocation for %s, retrying", name)
                counter = self._increment(name)
        except PyMongoError as exc:
            self.logger.error("Unable to allocate %s sequence: %s", name, exc)
            raise DependencyError("Sequence allocation is unavailable.") from exc
        return int(counter["seq"])

    def _increment(self, name: str):
        return self.collection.find_one_and_update(
            {"name": name},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )

    def next_order_number(self) -> str:
        return format_sequence("ORD", self.next_value(ORDER_COUNTER))

    def next_invoice_number(self) -> str:
        return format_sequence("INV", self.next_value(INVOICE_COUNTER))
