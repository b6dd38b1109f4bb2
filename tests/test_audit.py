import logging
from datetime import datetime

import mongomock
import pytest

from primemart.audit import AuditLog, flatten_details, parse_boundary
from primemart.errors import ValidationError

logger = logging.getLogger("tests.audit")


@pytest.fixture
def audit():
    return AuditLog(mongomock.MongoClient().db.audit_logs, logger)


def backdate(audit, action, created_at, **details):
    audit.collection.insert_one(
        {"user_email": "admin@primemart.com", "action": action, "metadata": details, "created_at": created_at}
    )


class TestRecord:
    def test_details_are_stored_as_strings(self, audit):
        audit.record(" Admin@PrimeMart.com ", "Updated order status", {"order_number": "ORD-0004", "amount": 236, "note": None})

        entry = audit.collection.find_one()
        assert entry["user_email"] == "admin@primemart.com"
        assert entry["metadata"] == {"order_number": "ORD-0004", "amount": "236"}

    def test_blank_action_is_ignored(self, audit):
        audit.record("admin@primemart.com", "")
        assert audit.collection.count_documents({}) == 0

    def test_non_mapping_details(self):
        assert flatten_details(["ORD-0001"]) == {}


class TestParseBoundary:
    def test_bare_day_closing_bound_covers_the_day(self):
        assert parse_boundary("2026-03-01", "until", closing=True) == datetime(2026, 3, 2)

    def test_offsets_are_converted_to_utc(self):
        assert parse_boundary("2026-03-01T05:30:00+05:30", "since") == datetime(2026, 3, 1)

    def test_rejects_garbage(self):
        with pytest.raises(ValidationError):
            parse_boundary("last tuesday", "since")


class TestSearch:
    def test_date_window(self, audit):
        backdate(audit, "Approved order", datetime(2026, 2, 28, 23, 0), order_number="ORD-0001")
        backdate(audit, "Rejected order", datetime(2026, 3, 1, 9, 0), order_number="ORD-0002")
        backdate(audit, "Deleted order", datetime(2026, 3, 1, 22, 0), order_number="ORD-0003")
        backdate(audit, "Approved order", datetime(2026, 3, 2, 0, 0), order_number="ORD-0004")

        result = audit.search(since="2026-03-01", until="2026-03-01")

        assert [entry["action"] for entry in result["logs"]] == ["Deleted order", "Rejected order"]
        assert result["total"] == 2

    def test_inverted_window_is_rejected(self, audit):
        with pytest.raises(ValidationError):
            audit.search(since="2026-03-05", until="2026-03-01")

    def test_term_matches_order_number_exactly(self, audit):
        backdate(audit, "Approved order", datetime(2026, 3, 1), order_number="ORD-0010")
        backdate(audit, "Approved order", datetime(2026, 3, 2), order_number="ORD-0001")

        result = audit.search("ord-0001")

        assert [entry["metadata"]["order_number"] for entry in result["logs"]] == ["ORD-0001"]

    def test_pages(self, audit):
        for day in range(1, 6):
            backdate(audit, f"Updated product {day}", datetime(2026, 3, day))

        second = audit.search(page=2, per_page=2)

        assert [entry["action"] for entry in second["logs"]] == ["Updated product 3", "Updated product 2"]
        assert (second["total"], second["pages"], second["perPage"]) == (5, 3, 2)

    def test_page_size_is_capped(self, audit):
        assert audit.search(per_page=5000)["perPage"] == 200
