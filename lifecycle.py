"""
Borrow lifecycle: starting a borrow, deriving overdue status and fines, and
returning a book.

A borrow moves borrowed -> overdue -> returned. The overdue transition is
derived lazily whenever a borrow is read, and written back so that listings
and statistics see it; nothing runs on a schedule. Book availability is only
ever changed through `catalog.adjust_available_copies`, a guarded
single-document update, so two requests can never both take the last copy.
"""

import logging
import math
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import PyMongoError

import catalog
from config import settings
from database import as_naive_utc, create_document, paginate, serialize, to_object_id, utcnow
from errors import Conflict, Forbidden, NotFound, ValidationFailed
from schemas import Borrow as BorrowSchema

logger = logging.getLogger(__name__)

BORROWED = "borrowed"
OVERDUE = "overdue"
RETURNED = "returned"
ACTIVE_STATUSES = [BORROWED, OVERDUE]

USER_FIELDS = {"name": 1, "email": 1, "membership_number": 1}
BOOK_FIELDS = {"title": 1, "author": 1, "isbn": 1, "cover_image": 1}


def compute_fine(borrow: Dict[str, Any], as_of: Optional[datetime] = None) -> int:
    """Fine owed for `borrow` at `as_of`: one unit per started day past the due date."""
    as_of = as_of or utcnow()
    days_overdue = math.ceil((as_of - borrow["due_date"]) / timedelta(days=1))
    return max(days_overdue, 0) * settings.unit_fine


def check_overdue(borrow: Dict[str, Any], as_of: Optional[datetime] = None) -> Dict[str, Any]:
    """Return a copy of `borrow` with status and fine derived for `as_of`.

    Returned borrows are left untouched. An unreturned borrow past its due
    date becomes overdue and its fine is recomputed; fines never go down.
    """
    as_of = as_of or utcnow()
    derived = dict(borrow)
    if derived.get("status") == RETURNED:
        return derived
    if as_of > derived["due_date"]:
        derived["status"] = OVERDUE
        derived["fine"] = max(compute_fine(derived, as_of), derived.get("fine", 0))
    return derived


def sync_overdue(db: Database, borrow: Dict[str, Any], as_of: Optional[datetime] = None) -> Dict[str, Any]:
    derived = check_overdue(borrow, as_of)
    if derived.get("status") == borrow.get("status") and derived.get("fine") == borrow.get("fine"):
        return derived
    db["borrow"].update_one(
        {"_id": borrow["_id"], "status": {"$ne": RETURNED}},
        {"$set": {"status": derived["status"], "fine": derived["fine"], "updated_at": utcnow()}},
    )
    logger.info("Borrow %s is overdue, fine now %s", borrow["_id"], derived["fine"])
    return derived


def refresh_overdue(db: Database, as_of: Optional[datetime] = None, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
    """Sync every unreturned borrow whose due date has passed. Ordered by due date, oldest first."""
    as_of = as_of or utcnow()
    query: Dict[str, Any] = {"status": {"$in": ACTIVE_STATUSES}, "due_date": {"$lt": as_of}}
    if user_id:
        query["user_id"] = user_id
    docs = db["borrow"].find(query).sort("due_date", 1)
    return [sync_overdue(db, d, as_of) for d in docs]


def _summary(db: Database, collection: str, id_str: str, fields: Dict[str, int]) -> Optional[Dict[str, Any]]:
    if not ObjectId.is_valid(id_str):
        return None
    doc = db[collection].find_one({"_id": ObjectId(id_str)}, fields)
    return serialize(doc) if doc else None


def populate(db: Database, borrow: Dict[str, Any]) -> Dict[str, Any]:
    """Attach display fields of the borrowing user and the book."""
    doc = dict(borrow)
    doc["user"] = _summary(db, "user", doc["user_id"], USER_FIELDS)
    doc["book"] = _summary(db, "book", doc["book_id"], BOOK_FIELDS)
    return doc


def initiate_borrow(
    db: Database,
    book_id: str,
    user_id: str,
    due_date: datetime,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    now = now or utcnow()
    due_date = as_naive_utc(due_date)
    if due_date <= now:
        raise ValidationFailed(
            "Due date must be in the future",
            errors=[{"field": "due_date", "message": "Due date must be in the future"}],
        )

    book_oid = to_object_id(book_id, "book")
    book = db["book"].find_one({"_id": book_oid, "is_active": True})
    if not book:
        raise NotFound("Book not found")
    if book.get("available_copies", 0) <= 0:
        raise Conflict("Book is not available for borrowing")

    existing = db["borrow"].find_one({
        "user_id": user_id,
        "book_id": str(book_oid),
        "status": {"$in": ACTIVE_STATUSES},
    })
    if existing:
        raise Conflict("You already have this book borrowed")

    # Someone else may have taken the last copy since the read above
    if catalog.adjust_available_copies(db, book_oid, -1) is None:
        raise Conflict("Book is not available for borrowing")

    borrow = BorrowSchema(
        user_id=user_id,
        book_id=str(book_oid),
        borrow_date=now,
        due_date=due_date,
        notes=notes,
    )
    try:
        borrow_id = create_document(db, "borrow", borrow)
    except PyMongoError:
        catalog.adjust_available_copies(db, book_oid, 1)
        raise

    logger.info("User %s borrowed book %s (borrow %s, due %s)", user_id, book_oid, borrow_id, due_date.isoformat())
    return populate(db, db["borrow"].find_one({"_id": ObjectId(borrow_id)}))


def get_borrow(
    db: Database,
    borrow_id: str,
    now: Optional[datetime] = None,
    owner_id: Optional[str] = None,
) -> Dict[str, Any]:
    """One borrow, synced and populated. With `owner_id`, anyone else's record is Forbidden."""
    borrow = db["borrow"].find_one({"_id": to_object_id(borrow_id, "borrow")})
    if not borrow:
        raise NotFound("Borrow record not found")
    if owner_id is not None and borrow["user_id"] != owner_id:
        raise Forbidden("Not authorized to access this record")
    return populate(db, sync_overdue(db, borrow, now))


def return_borrow(db: Database, borrow_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Close a borrow: stamp the return date, freeze the fine and put the copy back."""
    now = now or utcnow()
    oid = to_object_id(borrow_id, "borrow")
    borrow = db["borrow"].find_one({"_id": oid})
    if not borrow:
        raise NotFound("Borrow record not found")
    if borrow.get("status") == RETURNED:
        raise Conflict("Book is already returned")

    fine = max(compute_fine(borrow, now), borrow.get("fine", 0))
    updated = db["borrow"].find_one_and_update(
        {"_id": oid, "status": {"$ne": RETURNED}},
        {"$set": {"status": RETURNED, "return_date": now, "fine": fine, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise Conflict("Book is already returned")

    if catalog.adjust_available_copies(db, borrow["book_id"], 1) is None:
        logger.warning("Book %s was not restocked after borrow %s: already at total copies or missing", borrow["book_id"], oid)

    logger.info("Borrow %s returned with fine %s", oid, fine)
    return populate(db, updated)


def list_borrows(
    db: Database,
    user_id: Optional[str] = None,
    status: Optional[str] = None,
    page: int = 1,
    limit: int = 10,
    now: Optional[datetime] = None,
) -> Tuple[List[Dict[str, Any]], int]:
    """Borrows newest first; restricted to `user_id` when given."""
    refresh_overdue(db, now, user_id)
    query: Dict[str, Any] = {}
    if user_id:
        query["user_id"] = user_id
    if status:
        query["status"] = status
    p = paginate(page, limit)
    docs = db["borrow"].find(query).sort("created_at", -1).skip(p["skip"]).limit(p["limit"])
    data = [populate(db, d) for d in docs]
    return data, db["borrow"].count_documents(query)


def list_overdue(db: Database, as_of: Optional[datetime] = None) -> List[Dict[str, Any]]:
    return [populate(db, b) for b in refresh_overdue(db, as_of)]


def borrow_stats(db: Database, as_of: Optional[datetime] = None) -> Dict[str, int]:
    """All-time counts per status and the sum of fines, returned borrows included."""
    refresh_overdue(db, as_of)
    totals = list(db["borrow"].aggregate([
        {"$group": {"_id": None, "total": {"$sum": "$fine"}}}
    ]))
    return {
        "total_borrows": db["borrow"].count_documents({}),
        "active_borrows": db["borrow"].count_documents({"status": BORROWED}),
        "overdue_borrows": db["borrow"].count_documents({"status": OVERDUE}),
        "returned_borrows": db["borrow"].count_documents({"status": RETURNED}),
        "total_fines": totals[0]["total"] if totals else 0,
    }
