"""
Load demo data: categories, an administrator, a few members and books.

Usage: python seed.py
Existing categories, users, books and borrows are removed first.
"""

import logging

from pymongo.database import Database

import accounts
import catalog
from config import settings
from database import ensure_indexes, get_db

logger = logging.getLogger(__name__)

CATEGORIES = [
    "Fiction", "Science Fiction", "Romance", "Mystery", "Biography",
    "History", "Self-Help", "Philosophy", "Business", "Technology",
    "Science", "Poetry", "Drama", "Travel", "Cooking",
]

USERS = [
    {"name": "Library Admin", "email": "admin@library.com", "password": "admin123", "role": "admin"},
    {
        "name": "Shruti Singh",
        "email": "shruti.singh@email.com",
        "password": "password123",
        "phone": "+919876543210",
        "address": {"street": "123 MG Road", "city": "Mumbai", "state": "Maharashtra", "zip_code": "400001"},
    },
    {"name": "Sandip Kushwaha", "email": "sandip.kushwaha@email.com", "password": "password123"},
]

BOOKS = [
    ("The Great Gatsby", "F. Scott Fitzgerald", "9780743273565", "Fiction", 1925, "Scribner", 5, "A1-01"),
    ("To Kill a Mockingbird", "Harper Lee", "9780061120084", "Fiction", 1960, "Harper Perennial", 4, "A1-02"),
    ("Dune", "Frank Herbert", "9780441172719", "Science Fiction", 1965, "Ace", 3, "B2-01"),
    ("Pride and Prejudice", "Jane Austen", "9780141439518", "Romance", 1813, "Penguin Classics", 3, "C1-04"),
    ("The Hound of the Baskervilles", "Arthur Conan Doyle", "9780140437867", "Mystery", 1902, "Penguin", 2, "D3-02"),
    ("Steve Jobs", "Walter Isaacson", "9781451648539", "Biography", 2011, "Simon & Schuster", 2, "E1-01"),
    ("Sapiens", "Yuval Noah Harari", "9780062316097", "History", 2011, "Harper", 4, "F2-03"),
    ("Clean Code", "Robert C. Martin", "9780132350884", "Technology", 2008, "Prentice Hall", 3, "G1-01"),
]


def seed(db: Database) -> None:
    for name in ("borrow", "book", "user", "category"):
        db[name].delete_many({})
    ensure_indexes(db)

    category_ids = {}
    for name in CATEGORIES:
        category_ids[name] = str(catalog.create_category(db, name)["_id"])

    for user in USERS:
        accounts.create_user(db, **user)

    for title, author, isbn, category, year, publisher, copies, location in BOOKS:
        catalog.create_book(db, {
            "title": title,
            "author": author,
            "isbn": isbn,
            "category": category_ids[category],
            "publication_year": year,
            "publisher": publisher,
            "total_copies": copies,
            "location": location,
        })

    logger.info(
        "Seeded %d categories, %d users, %d books into %s",
        len(CATEGORIES), len(USERS), len(BOOKS), settings.database_name,
    )


if __name__ == "__main__":
    logging.basicConfig(level=settings.log_level)
    seed(get_db())
