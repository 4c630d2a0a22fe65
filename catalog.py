"""
Catalog: books and categories.

Books are never removed, only flagged inactive, so borrow history keeps
pointing at something. Categories are hard-deleted and books referencing a
deleted category keep the dangling id.
"""

import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from covers import cover_for_title
from database import create_document, paginate, to_object_id, utcnow
from errors import Conflict, DuplicateEntry, NotFound, ValidationFailed
from schemas import Book as BookSchema, Category as CategorySchema, build

logger = logging.getLogger(__name__)

SORTABLE_FIELDS = ("title", "author", "publication_year", "created_at", "available_copies", "total_copies")
BOOK_FIELDS = tuple(BookSchema.model_fields)
# borrow statuses holding a physical copy
ON_LOAN_STATUSES = ["borrowed", "overdue"]


# ----------------------
# Books
# ----------------------

def present_book(db: Database, book: Dict[str, Any]) -> Dict[str, Any]:
    """Book with its category resolved to `{id, name}` and the derived `is_available` flag."""
    doc = dict(book)
    category_id = doc.get("category")
    category = None
    if category_id and ObjectId.is_valid(category_id):
        category = db["category"].find_one({"_id": ObjectId(category_id)}, {"name": 1})
    doc["category"] = {"id": category_id, "name": category["name"] if category else None}
    doc["is_available"] = doc.get("available_copies", 0) > 0
    return doc


def find_book_by_id(db: Database, book_id: str, include_inactive: bool = True) -> Dict[str, Any]:
    query: Dict[str, Any] = {"_id": to_object_id(book_id, "book")}
    if not include_inactive:
        query["is_active"] = True
    book = db["book"].find_one(query)
    if not book:
        raise NotFound("Book not found")
    return book


def adjust_available_copies(db: Database, book_id, delta: int) -> Optional[Dict[str, Any]]:
    """Atomically add `delta` to a book's available copies.

    The update only matches while the result stays within
    [0, total_copies]; returns the updated book, or None if the book is
    missing or the guard rejected the change.
    """
    result = {"$add": ["$available_copies", delta]}
    guard = {"$and": [{"$gte": [result, 0]}, {"$lte": [result, "$total_copies"]}]}
    return db["book"].find_one_and_update(
        {"_id": to_object_id(book_id, "book"), "$expr": guard},
        {"$inc": {"available_copies": delta}, "$set": {"updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )


def find_active_books(
    db: Database,
    search: Optional[str] = None,
    category: Optional[str] = None,
    sort_by: str = "title",
    sort_order: str = "asc",
    page: int = 1,
    limit: int = 10,
) -> Tuple[List[Dict[str, Any]], int]:
    query: Dict[str, Any] = {"is_active": True}
    if search:
        pattern = re.escape(search)
        query["$or"] = [
            {"title": {"$regex": pattern, "$options": "i"}},
            {"author": {"$regex": pattern, "$options": "i"}},
            {"isbn": {"$regex": pattern, "$options": "i"}},
        ]
    if category:
        query["category"] = category
    if sort_by not in SORTABLE_FIELDS:
        sort_by = "title"
    direction = -1 if sort_order == "desc" else 1

    p = paginate(page, limit)
    docs = db["book"].find(query).sort(sort_by, direction).skip(p["skip"]).limit(p["limit"])
    books = [present_book(db, d) for d in docs]
    return books, db["book"].count_documents(query)


def _ensure_isbn_free(db: Database, isbn: str, exclude: Optional[ObjectId] = None) -> None:
    query: Dict[str, Any] = {"isbn": isbn}
    if exclude is not None:
        query["_id"] = {"$ne": exclude}
    if db["book"].find_one(query):
        raise DuplicateEntry("Book with this ISBN already exists")


def create_book(db: Database, data: Dict[str, Any]) -> Dict[str, Any]:
    data = {k: v for k, v in data.items() if v is not None}
    to_object_id(data.get("category"), "category")
    data.setdefault("available_copies", data.get("total_copies", 1))
    if not data.get("cover_image"):
        data["cover_image"] = cover_for_title(data.get("title"))
    book = build(BookSchema, data)

    _ensure_isbn_free(db, book.isbn)
    try:
        book_id = create_document(db, "book", book)
    except DuplicateKeyError:
        raise DuplicateEntry("Book with this ISBN already exists")
    logger.info("Book created: %s (%s)", book.title, book.isbn)
    return db["book"].find_one({"_id": ObjectId(book_id)})


def update_book(db: Database, book_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
    existing = find_book_by_id(db, book_id)
    changes = {k: v for k, v in changes.items() if v is not None}
    if not changes:
        return existing
    if "category" in changes:
        to_object_id(changes["category"], "category")

    merged = {k: existing[k] for k in BOOK_FIELDS if existing.get(k) is not None}
    merged.update(changes)
    build(BookSchema, merged)

    query: Dict[str, Any] = {"_id": existing["_id"]}
    if "total_copies" in changes or "available_copies" in changes:
        on_loan = db["borrow"].count_documents({"book_id": str(existing["_id"]), "status": {"$in": ON_LOAN_STATUSES}})
        if merged["total_copies"] < merged["available_copies"] + on_loan:
            raise ValidationFailed(
                "Total copies cannot be less than available copies plus copies on loan",
                errors=[{"field": "total_copies", "message": "Total copies cannot be less than copies held"}],
            )
        # apply only against the copy counts checked above
        query["available_copies"] = existing["available_copies"]

    if "isbn" in changes:
        _ensure_isbn_free(db, changes["isbn"], exclude=existing["_id"])
    changes["updated_at"] = utcnow()
    try:
        result = db["book"].update_one(query, {"$set": changes})
    except DuplicateKeyError:
        raise DuplicateEntry("Book with this ISBN already exists")
    if result.matched_count == 0:
        raise Conflict("Book copies changed during the update, try again")
    logger.info("Book %s updated: %s", existing["_id"], sorted(k for k in changes if k != "updated_at"))
    return db["book"].find_one({"_id": existing["_id"]})


def delete_book(db: Database, book_id: str) -> None:
    book = find_book_by_id(db, book_id)
    db["book"].update_one({"_id": book["_id"]}, {"$set": {"is_active": False, "updated_at": utcnow()}})
    logger.info("Book %s soft-deleted", book["_id"])


def update_book_cover(db: Database, book_id: str, cover_image: Optional[str]) -> Dict[str, Any]:
    if not cover_image:
        raise ValidationFailed("Cover image URL required")
    book = db["book"].find_one_and_update(
        {"_id": to_object_id(book_id, "book")},
        {"$set": {"cover_image": cover_image, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not book:
        raise NotFound("Book not found")
    return book


# ----------------------
# Categories
# ----------------------

def list_categories(db: Database) -> List[Dict[str, Any]]:
    return list(db["category"].find({}).sort("name", 1))


def get_category(db: Database, category_id: str) -> Dict[str, Any]:
    category = db["category"].find_one({"_id": to_object_id(category_id, "category")})
    if not category:
        raise NotFound("Category not found")
    return category


def _ensure_name_free(db: Database, name: str, exclude: Optional[ObjectId] = None) -> None:
    query: Dict[str, Any] = {"name": name}
    if exclude is not None:
        query["_id"] = {"$ne": exclude}
    if db["category"].find_one(query):
        raise DuplicateEntry("Category already exists")


def create_category(db: Database, name: str) -> Dict[str, Any]:
    category = build(CategorySchema, {"name": name})
    _ensure_name_free(db, category.name)
    try:
        category_id = create_document(db, "category", category)
    except DuplicateKeyError:
        raise DuplicateEntry("Category already exists")
    logger.info("Category created: %s", category.name)
    return db["category"].find_one({"_id": ObjectId(category_id)})


def update_category(db: Database, category_id: str, name: str) -> Dict[str, Any]:
    category = get_category(db, category_id)
    renamed = build(CategorySchema, {"name": name})
    _ensure_name_free(db, renamed.name, exclude=category["_id"])
    try:
        db["category"].update_one(
            {"_id": category["_id"]},
            {"$set": {"name": renamed.name, "updated_at": utcnow()}},
        )
    except DuplicateKeyError:
        raise DuplicateEntry("Category already exists")
    return db["category"].find_one({"_id": category["_id"]})


def delete_category(db: Database, category_id: str) -> None:
    result = db["category"].delete_one({"_id": to_object_id(category_id, "category")})
    if result.deleted_count == 0:
        raise NotFound("Category not found")
    logger.info("Category %s deleted", category_id)
