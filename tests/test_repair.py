import asyncio
from datetime import date

import pytest

from library_portal.models import BorrowRecord, Profile
from library_portal.repair import RepairError, inspect_records, load_repair_session, repair_record


def record(record_id, user_id, book_id=1):
    return BorrowRecord(id=record_id, book_id=book_id, user_id=user_id, borrow_date=date(2024, 1, 1), due_date=date(2024, 1, 31))


def test_padded_id_resolves_after_trimming():
    [item] = inspect_records([record(1, " abc123")], [Profile(id="abc123", username="alice")])

    assert item.id_has_spaces is True
    assert item.user_found is True
    assert item.clean_user_id == "abc123"
    assert item.username == "alice"
    assert item.needs_repair is True
    assert item.default_replacement == "abc123"


def test_unknown_id_is_reported_without_default():
    [item] = inspect_records([record(2, "zzz999")], [Profile(id="abc123", username="alice")], {1: "呐喊"})

    assert item.user_found is False
    assert item.username == "未知用户"
    assert item.needs_repair is True
    assert item.default_replacement == ""
    assert item.book_title == "呐喊"


def test_exact_match_needs_no_repair():
    [item] = inspect_records([record(3, "abc123", book_id=9)], [Profile(id="abc123", username="alice")])
    assert item.needs_repair is False
    assert item.book_title == "未知图书"


def test_session_summary(seeded, client):
    session = asyncio.run(load_repair_session(client))

    assert session.summary() == {"total": 5, "problems": 2, "fixed": 0}
    assert sorted(item.id for item in session.problem_records) == ["1", "2"]
    assert {u["id"] for u in session.to_dict()["users"]} == {"abc123", "admin1"}


def test_repair_defaults_to_trimmed_id(seeded, client):
    session = asyncio.run(load_repair_session(client))

    assert asyncio.run(repair_record(client, session, "1")) is True
    assert seeded.row("borrow_records", 1)["user_id"] == "abc123"
    assert "updated_at" in seeded.row("borrow_records", 1)
    assert session.summary()["fixed"] == 1
    # Fixed records stay listed for the rest of the session
    assert "1" in [item.id for item in session.problem_records]


def test_repair_is_idempotent(seeded, client):
    session = asyncio.run(load_repair_session(client))
    asyncio.run(repair_record(client, session, "1"))
    patches = len(seeded.requests_to("borrow_records", "PATCH"))

    assert asyncio.run(repair_record(client, session, "1")) is False
    assert asyncio.run(repair_record(client, session, "3")) is False
    assert len(seeded.requests_to("borrow_records", "PATCH")) == patches


def test_orphan_requires_operator_choice(seeded, client):
    session = asyncio.run(load_repair_session(client))

    with pytest.raises(RepairError):
        asyncio.run(repair_record(client, session, "2"))
    with pytest.raises(RepairError):
        asyncio.run(repair_record(client, session, "2", "nobody"))

    assert asyncio.run(repair_record(client, session, "2", "admin1")) is True
    assert seeded.row("borrow_records", 2)["user_id"] == "admin1"


def test_unknown_record(seeded, client):
    session = asyncio.run(load_repair_session(client))
    with pytest.raises(RepairError):
        asyncio.run(repair_record(client, session, "404", "abc123"))
