import mongomock
import pytest
from fastapi.testclient import TestClient

from config import settings

# cheap hashes keep the suite fast
settings.bcrypt_rounds = 4

import accounts  # noqa: E402
import catalog  # noqa: E402
from database import ensure_indexes, get_db  # noqa: E402
from main import app  # noqa: E402


@pytest.fixture
def db():
    database = mongomock.MongoClient()["library_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def admin(db):
    return accounts.create_user(db, "Library Admin", "admin@library.com", "admin123", role="admin")


@pytest.fixture
def member(db):
    return accounts.create_user(db, "Shruti Singh", "shruti@email.com", "password123")


@pytest.fixture
def other_member(db):
    return accounts.create_user(db, "Sandip Kushwaha", "sandip@email.com", "password123")


def bearer(user):
    return {"Authorization": f"Bearer {accounts.create_access_token(user)}"}


@pytest.fixture
def admin_headers(admin):
    return bearer(admin)


@pytest.fixture
def member_headers(member):
    return bearer(member)


@pytest.fixture
def category(db):
    return catalog.create_category(db, "Fiction")


@pytest.fixture
def book(db, category):
    return catalog.create_book(db, {
        "title": "The Great Gatsby",
        "author": "F. Scott Fitzgerald",
        "isbn": "9780743273565",
        "category": str(category["_id"]),
        "publication_year": 1925,
        "publisher": "Scribner",
        "total_copies": 5,
        "location": "A1-01",
    })


@pytest.fixture
def single_copy_book(db, category):
    return catalog.create_book(db, {
        "title": "Dune",
        "author": "Frank Herbert",
        "isbn": "9780441172719",
        "category": str(category["_id"]),
        "total_copies": 1,
        "location": "B2-01",
    })
