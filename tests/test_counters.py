import logging
import threading

import mongomock
import pytest
from pymongo.errors import DuplicateKeyError, ServerSelectionTimeoutError

from primemart.counters import INVOICE_COUNTER, ORDER_COUNTER, SequenceAllocator, format_sequence
from primemart.errors import DependencyError

logger = logging.getLogger("tests.counters")


class UnreachableCollection:
    def create_index(self, *args, **kwargs):
        raise ServerSelectionTimeoutError("no servers available")

    def find_one_and_update(self, *args, **kwargs):
        raise ServerSelectionTimeoutError("no servers available")


class SerializedCollection:
    """Applies each update atomically, the way mongod updates a single document."""

    def __init__(self, collection):
        self.collection = collection
        self.lock = threading.Lock()

    def create_index(self, *args, **kwargs):
        return self.collection.create_index(*args, **kwargs)

    def find_one_and_update(self, *args, **kwargs):
        with self.lock:
            return self.collection.find_one_and_update(*args, **kwargs)


class LostUpsertCollection:
    """Rejects the first upsert as if a concurrent caller inserted the counter first."""

    def __init__(self, collection):
        self.collection = collection
        self.calls = 0

    def create_index(self, *args, **kwargs):
        return self.collection.create_index(*args, **kwargs)

    def find_one_and_update(self, *args, **kwargs):
        self.calls += 1
        if self.calls == 1:
            self.collection.insert_one({"name": args[0]["name"], "seq": 1})
            raise DuplicateKeyError("E11000 duplicate key error collection: counters index: name_1")
        return self.collection.find_one_and_update(*args, **kwargs)


@pytest.fixture
def counters():
    return mongomock.MongoClient().db.counters


@pytest.fixture
def allocator(counters):
    return SequenceAllocator(counters, logger)


class TestFormatSequence:
    def test_pads_to_four_digits(self):
        assert format_sequence("ORD", 1) == "ORD-0001"
        assert format_sequence("INV", 42) == "INV-0042"

    def test_grows_beyond_four_digits(self):
        assert format_sequence("ORD", 12345) == "ORD-12345"


class TestSequenceAllocator:
    def test_first_value_is_one(self, allocator):
        assert allocator.next_value(ORDER_COUNTER) == 1

    def test_values_form_an_unbroken_range(self, allocator):
        values = [allocator.next_value(ORDER_COUNTER) for _ in range(25)]
        assert values == list(range(1, 26))

    def test_names_are_independent(self, allocator):
        allocator.next_value(ORDER_COUNTER)
        allocator.next_value(ORDER_COUNTER)
        assert allocator.next_value(INVOICE_COUNTER) == 1
        assert allocator.next_order_number() == "ORD-0003"
        assert allocator.next_invoice_number() == "INV-0002"

    def test_counter_names_are_unique(self, allocator, counters):
        indexes = counters.index_information()
        assert indexes["name_1"]["key"] == [("name", 1)]
        assert indexes["name_1"]["unique"] is True

    def test_concurrent_callers_get_distinct_values(self, counters):
        allocator = SequenceAllocator(SerializedCollection(counters), logger)
        workers = 16
        barrier = threading.Barrier(workers)
        values = []
        values_lock = threading.Lock()

        def allocate():
            barrier.wait()
            value = allocator.next_value(INVOICE_COUNTER)
            with values_lock:
                values.append(value)

        threads = [threading.Thread(target=allocate) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert len(values) == workers
        assert set(values) == set(range(1, workers + 1))
        assert counters.count_documents({"name": INVOICE_COUNTER}) == 1

    def test_lost_first_upsert_is_retried(self, counters):
        collection = LostUpsertCollection(counters)
        allocator = SequenceAllocator(collection, logger)

        assert allocator.next_value(ORDER_COUNTER) == 2
        assert collection.calls == 2
        assert counters.count_documents({"name": ORDER_COUNTER}) == 1

    def test_store_failure_is_fatal(self):
        allocator = SequenceAllocator(UnreachableCollection(), logger)
        with pytest.raises(DependencyError):
            allocator.next_order_number()
