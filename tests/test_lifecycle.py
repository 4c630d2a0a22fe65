from datetime import datetime, timedelta

import pytest
from pymongo.errors import PyMongoError

import catalog
import lifecycle
from errors import Conflict, NotFound, ValidationFailed

NOW = datetime(2026, 3, 1, 10, 0, 0)
DUE = NOW + timedelta(days=14)


def copies(db, book):
    return db["book"].find_one({"_id": book["_id"]})["available_copies"]


def borrow(db, book, user, now=NOW, due=DUE, notes=None):
    return lifecycle.initiate_borrow(db, str(book["_id"]), str(user["_id"]), due, notes=notes, now=now)


# Fines and overdue derivation

def test_fine_is_zero_until_due_date():
    record = {"status": "borrowed", "due_date": DUE, "fine": 0}
    assert lifecycle.compute_fine(record, DUE - timedelta(days=1)) == 0
    assert lifecycle.compute_fine(record, DUE) == 0


def test_fine_accrues_one_unit_per_started_day():
    record = {"status": "overdue", "due_date": DUE, "fine": 0}
    assert lifecycle.compute_fine(record, DUE + timedelta(days=3)) == 3
    assert lifecycle.compute_fine(record, DUE + timedelta(days=3, minutes=1)) == 4


def test_check_overdue_leaves_current_borrow_alone():
    record = {"status": "borrowed", "due_date": DUE, "fine": 0}
    assert lifecycle.check_overdue(record, DUE) == record


def test_check_overdue_marks_past_due_borrow():
    record = {"status": "borrowed", "due_date": DUE, "fine": 0}
    derived = lifecycle.check_overdue(record, DUE + timedelta(days=5))
    assert derived["status"] == "overdue"
    assert derived["fine"] == 5
    assert record["status"] == "borrowed"


def test_check_overdue_ignores_returned_borrow():
    record = {"status": "returned", "due_date": DUE, "fine": 2, "return_date": DUE + timedelta(days=2)}
    assert lifecycle.check_overdue(record, DUE + timedelta(days=30)) == record


def test_fine_never_decreases():
    record = {"status": "overdue", "due_date": DUE, "fine": 9}
    assert lifecycle.check_overdue(record, DUE + timedelta(days=2))["fine"] == 9


# Borrowing

def test_borrow_creates_record_and_takes_a_copy(db, book, member):
    created = borrow(db, book, member, notes="Holiday reading")
    assert created["status"] == "borrowed"
    assert created["fine"] == 0
    assert created["return_date"] is None
    assert created["due_date"] == DUE
    assert created["notes"] == "Holiday reading"
    assert created["book"]["title"] == "The Great Gatsby"
    assert created["user"]["email"] == "shruti@email.com"
    assert copies(db, book) == 4


def test_borrow_requires_future_due_date(db, book, member):
    with pytest.raises(ValidationFailed):
        borrow(db, book, member, due=NOW)
    assert copies(db, book) == 5
    assert db["borrow"].count_documents({}) == 0


def test_borrow_missing_book(db, member):
    with pytest.raises(NotFound):
        lifecycle.initiate_borrow(db, "64b000000000000000000000", str(member["_id"]), DUE, now=NOW)


def test_borrow_inactive_book(db, book, member):
    catalog.delete_book(db, str(book["_id"]))
    with pytest.raises(NotFound):
        borrow(db, book, member)


def test_borrow_unavailable_book_changes_nothing(db, single_copy_book, member, other_member):
    borrow(db, single_copy_book, member)
    assert copies(db, single_copy_book) == 0
    with pytest.raises(Conflict) as exc:
        borrow(db, single_copy_book, other_member)
    assert "not available" in exc.value.message
    assert copies(db, single_copy_book) == 0
    assert db["borrow"].count_documents({}) == 1


def test_same_book_cannot_be_borrowed_twice_by_one_user(db, book, member):
    borrow(db, book, member)
    with pytest.raises(Conflict) as exc:
        borrow(db, book, member)
    assert "already have this book" in exc.value.message
    assert copies(db, book) == 4


def test_overdue_borrow_still_blocks_second_borrow(db, book, member):
    borrow(db, book, member)
    lifecycle.refresh_overdue(db, DUE + timedelta(days=1))
    with pytest.raises(Conflict):
        borrow(db, book, member, now=DUE + timedelta(days=1), due=DUE + timedelta(days=20))


def test_lost_race_for_last_copy_is_a_conflict(db, book, member, monkeypatch):
    monkeypatch.setattr(catalog, "adjust_available_copies", lambda *args: None)
    with pytest.raises(Conflict):
        borrow(db, book, member)
    assert db["borrow"].count_documents({}) == 0


def test_failed_insert_puts_copy_back(db, book, member, monkeypatch):
    def broken_insert(*args, **kwargs):
        raise PyMongoError("insert failed")

    monkeypatch.setattr(lifecycle, "create_document", broken_insert)
    with pytest.raises(PyMongoError):
        borrow(db, book, member)
    assert copies(db, book) == 5


# Reading, returning

def test_reading_past_due_borrow_marks_it_overdue(db, book, member):
    created = borrow(db, book, member)
    seen = lifecycle.get_borrow(db, str(created["_id"]), now=DUE + timedelta(days=5))
    assert seen["status"] == "overdue"
    assert seen["fine"] == 5
    stored = db["borrow"].find_one({"_id": created["_id"]})
    assert stored["status"] == "overdue"
    assert stored["fine"] == 5


def test_full_lifecycle(db, book, member):
    created = borrow(db, book, member)
    assert copies(db, book) == 4

    lifecycle.get_borrow(db, str(created["_id"]), now=DUE + timedelta(days=5))
    returned = lifecycle.return_borrow(db, str(created["_id"]), now=DUE + timedelta(days=7))

    assert returned["status"] == "returned"
    assert returned["return_date"] == DUE + timedelta(days=7)
    assert returned["fine"] == 7
    assert copies(db, book) == 5

    # fine stays frozen after the return
    later = lifecycle.get_borrow(db, str(created["_id"]), now=DUE + timedelta(days=40))
    assert later["fine"] == 7


def test_return_before_due_date_has_no_fine(db, book, member):
    created = borrow(db, book, member)
    returned = lifecycle.return_borrow(db, str(created["_id"]), now=NOW + timedelta(days=3))
    assert returned["fine"] == 0
    assert copies(db, book) == 5


def test_return_twice_is_a_conflict(db, book, member):
    created = borrow(db, book, member)
    lifecycle.return_borrow(db, str(created["_id"]), now=DUE + timedelta(days=2))
    with pytest.raises(Conflict):
        lifecycle.return_borrow(db, str(created["_id"]), now=DUE + timedelta(days=10))
    stored = db["borrow"].find_one({"_id": created["_id"]})
    assert stored["fine"] == 2
    assert copies(db, book) == 5


def test_return_unknown_borrow(db):
    with pytest.raises(NotFound):
        lifecycle.return_borrow(db, "64b000000000000000000000", now=NOW)


def test_return_with_malformed_id(db):
    with pytest.raises(ValidationFailed):
        lifecycle.return_borrow(db, "not-an-id", now=NOW)


def test_copies_never_exceed_total(db, book, member):
    created = borrow(db, book, member)
    # an admin restocked by hand while the copy was out
    db["book"].update_one({"_id": book["_id"]}, {"$set": {"available_copies": 5}})
    lifecycle.return_borrow(db, str(created["_id"]), now=NOW + timedelta(days=1))
    assert copies(db, book) == 5


# Listings

def test_list_overdue_is_ordered_by_due_date(db, book, single_copy_book, member):
    due_second = borrow(db, book, member, due=NOW + timedelta(days=3))
    due_first = borrow(db, single_copy_book, member, due=NOW + timedelta(days=1))
    overdue = lifecycle.list_overdue(db, NOW + timedelta(days=10))
    assert [b["_id"] for b in overdue] == [due_first["_id"], due_second["_id"]]
    assert [b["fine"] for b in overdue] == [9, 7]
    assert all(b["status"] == "overdue" for b in overdue)


def test_list_overdue_skips_returned_and_current(db, book, single_copy_book, member):
    returned = borrow(db, book, member, due=NOW + timedelta(days=1))
    lifecycle.return_borrow(db, str(returned["_id"]), now=NOW + timedelta(hours=1))
    borrow(db, single_copy_book, member, due=NOW + timedelta(days=30))
    assert lifecycle.list_overdue(db, NOW + timedelta(days=10)) == []


def test_list_borrows_scoped_to_user(db, book, member, other_member):
    borrow(db, book, member)
    borrow(db, book, other_member)
    mine, total = lifecycle.list_borrows(db, user_id=str(member["_id"]), now=NOW)
    assert total == 1
    assert mine[0]["user_id"] == str(member["_id"])
    everyone, total = lifecycle.list_borrows(db, now=NOW)
    assert total == 2


def test_list_borrows_status_filter_sees_overdue_transition(db, book, member):
    borrow(db, book, member)
    overdue, total = lifecycle.list_borrows(db, status="overdue", now=DUE + timedelta(days=1))
    assert total == 1
    assert overdue[0]["fine"] == 1


def test_stats(db, book, single_copy_book, member, other_member):
    first = borrow(db, book, member)
    borrow(db, book, other_member, due=NOW + timedelta(days=30))
    borrow(db, single_copy_book, member, due=NOW + timedelta(days=2))
    lifecycle.return_borrow(db, str(first["_id"]), now=DUE + timedelta(days=3))

    stats = lifecycle.borrow_stats(db, NOW + timedelta(days=6))
    assert stats == {
        "total_borrows": 3,
        "active_borrows": 1,
        "overdue_borrows": 1,
        "returned_borrows": 1,
        "total_fines": 3 + 4,
    }


def test_stats_on_empty_library(db):
    assert lifecycle.borrow_stats(db, NOW)["total_fines"] == 0
