import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from fastapi import Cookie, Depends, FastAPI, Query, Request, Response, Security
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from pymongo.database import Database
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

import accounts
import catalog
import lifecycle
from config import settings
from database import ensure_indexes, get_db, serialize, total_pages
from errors import Forbidden, LibraryError, Unauthorized
from schemas import ISBN_PATTERN, Address, Role
from schemas import Book as BookSchema, Borrow as BorrowSchema, Category as CategorySchema, User as UserSchema

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# Request Models
class RequestModel(BaseModel):
    """Request bodies take camelCase keys (`bookId`, `dueDate`); snake_case names work too."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RegisterRequest(RequestModel):
    name: str = Field(..., min_length=1, max_length=50)
    email: str
    password: str = Field(..., min_length=accounts.MIN_PASSWORD_LENGTH)
    phone: Optional[str] = None
    address: Optional[Address] = None


class LoginRequest(RequestModel):
    email: str
    password: str


class RefreshRequest(RequestModel):
    refresh_token: Optional[str] = None


class CreateBook(RequestModel):
    title: str = Field(..., min_length=1, max_length=100)
    author: str = Field(..., min_length=1, max_length=50)
    isbn: str = Field(..., pattern=ISBN_PATTERN)
    category: str
    description: Optional[str] = Field(None, max_length=500)
    publication_year: Optional[int] = Field(None, ge=1800)
    publisher: Optional[str] = None
    total_copies: int = Field(..., ge=1)
    available_copies: Optional[int] = Field(None, ge=0)
    location: str = Field(..., min_length=1)
    cover_image: Optional[str] = None


class UpdateBook(RequestModel):
    title: Optional[str] = Field(None, min_length=1, max_length=100)
    author: Optional[str] = Field(None, min_length=1, max_length=50)
    isbn: Optional[str] = Field(None, pattern=ISBN_PATTERN)
    category: Optional[str] = None
    description: Optional[str] = Field(None, max_length=500)
    publication_year: Optional[int] = Field(None, ge=1800)
    publisher: Optional[str] = None
    total_copies: Optional[int] = Field(None, ge=1)
    available_copies: Optional[int] = Field(None, ge=0)
    location: Optional[str] = Field(None, min_length=1)
    cover_image: Optional[str] = None


class CoverRequest(RequestModel):
    cover_image: Optional[str] = None


class CategoryRequest(RequestModel):
    name: str = Field(..., min_length=1, max_length=50)


class BorrowRequest(RequestModel):
    book_id: str = Field(..., min_length=1)
    due_date: datetime
    notes: Optional[str] = Field(None, max_length=200)


class CreateUser(RegisterRequest):
    role: Role = "user"


class UpdateUser(RequestModel):
    name: Optional[str] = Field(None, min_length=1, max_length=50)
    email: Optional[str] = None
    role: Optional[Role] = None
    phone: Optional[str] = None
    address: Optional[Address] = None
    is_active: Optional[bool] = None


class ChangePasswordRequest(RequestModel):
    new_password: str = Field(..., min_length=accounts.MIN_PASSWORD_LENGTH)


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        ensure_indexes(get_db())
    except PyMongoError as e:
        logger.warning("Could not create indexes at startup: %s", e)
    yield


app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    client = request.client.host if request.client else "-"
    logger.info("%s %s - IP: %s", request.method, request.url.path, client)
    return await call_next(request)


# Error handlers
@app.exception_handler(LibraryError)
async def library_error_handler(request: Request, exc: LibraryError):
    body: Dict[str, Any] = {"success": False, "message": exc.message}
    if exc.errors:
        body["errors"] = exc.errors
    return JSONResponse(status_code=exc.status_code, content=body)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(p) for p in err["loc"] if p != "body"), "message": err["msg"]}
        for err in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"success": False, "message": "Validation failed", "errors": errors})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    message = exc.detail
    if exc.status_code == 404 and message == "Not Found":
        message = f"Route {request.url.path} not found"
    return JSONResponse(status_code=exc.status_code, content={"success": False, "message": message}, headers=exc.headers)


@app.exception_handler(Exception)
async def server_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"success": False, "message": "Server error"})


# Auth dependencies
bearer_scheme = HTTPBearer(auto_error=False)


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
    db: Database = Depends(get_db),
) -> Dict[str, Any]:
    if credentials is None:
        raise Unauthorized("Not authorized, no token")
    return accounts.user_from_token(db, credentials.credentials)


def require_admin(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    if user.get("role") != "admin":
        logger.warning("Admin access denied for user %s", user["_id"])
        raise Forbidden(f"User role {user.get('role')} is not authorized to access this route")
    return user


def ok(data: Any = None, **extra) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": True}
    if data is not None:
        body["data"] = data
    body.update(extra)
    return body


def auth_response(response: Response, user: Dict[str, Any]) -> Dict[str, Any]:
    tokens = accounts.issue_tokens(user)
    response.set_cookie(
        "refresh_token",
        tokens["refresh_token"],
        httponly=True,
        samesite="lax",
        secure=settings.environment == "production",
        max_age=settings.refresh_token_expire_days * 24 * 3600,
    )
    return {"success": True, **tokens, "user": serialize(accounts.present_user(user))}


@app.get("/")
def read_root():
    return {
        "success": True,
        "message": "Welcome to Library Management API",
        "version": settings.app_version,
        "endpoints": {
            "auth": "/api/auth",
            "books": "/api/books",
            "borrows": "/api/borrows",
            "users": "/api/users",
            "categories": "/api/categories",
            "health": "/api/health",
        },
    }


@app.get("/api/health")
def health():
    return {
        "success": True,
        "message": "Library Management API is running",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "environment": settings.environment,
    }


# Auth Endpoints
@app.post("/api/auth/register", status_code=201)
def register(payload: RegisterRequest, response: Response, db: Database = Depends(get_db)):
    user = accounts.create_user(db, **payload.model_dump())
    return auth_response(response, user)


@app.post("/api/auth/login")
def login(payload: LoginRequest, response: Response, db: Database = Depends(get_db)):
    user = accounts.authenticate(db, payload.email, payload.password)
    return auth_response(response, user)


@app.get("/api/auth/me")
def me(user: Dict[str, Any] = Depends(get_current_user)):
    return ok(serialize(accounts.present_user(user)))


@app.post("/api/auth/refresh")
def refresh(
    response: Response,
    payload: Optional[RefreshRequest] = None,
    refresh_token: Optional[str] = Cookie(None),
    db: Database = Depends(get_db),
):
    token = (payload.refresh_token if payload else None) or refresh_token
    if not token:
        raise Unauthorized("Not authorized, no refresh token")
    user = accounts.user_from_token(db, token, accounts.REFRESH)
    return auth_response(response, user)


# Books Endpoints
@app.get("/api/books")
def list_books(
    search: Optional[str] = None,
    category: Optional[str] = None,
    sort_by: str = Query("title", alias="sortBy"),
    sort_order: str = Query("asc", alias="sortOrder"),
    page: int = Query(1, ge=1),
    limit: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
    db: Database = Depends(get_db),
):
    books, count = catalog.find_active_books(db, search, category, sort_by, sort_order, page, limit)
    return ok(
        [serialize(b) for b in books],
        totalPages=total_pages(count, limit),
        currentPage=page,
        totalBooks=count,
    )


@app.get("/api/books/categories")
def deprecated_book_categories():
    return {"success": False, "message": "Use /api/categories endpoint instead"}


@app.get("/api/books/{book_id}")
def get_book(book_id: str, db: Database = Depends(get_db)):
    return ok(serialize(catalog.present_book(db, catalog.find_book_by_id(db, book_id))))


@app.post("/api/books", status_code=201)
def create_book(payload: CreateBook, db: Database = Depends(get_db), admin: Dict[str, Any] = Depends(require_admin)):
    book = catalog.create_book(db, payload.model_dump())
    return ok(serialize(catalog.present_book(db, book)))


@app.put("/api/books/{book_id}")
def update_book(
    book_id: str,
    payload: UpdateBook,
    db: Database = Depends(get_db),
    admin: Dict[str, Any] = Depends(require_admin),
):
    book = catalog.update_book(db, book_id, payload.model_dump(exclude_unset=True))
    return ok(serialize(catalog.present_book(db, book)))


@app.delete("/api/books/{book_id}")
def delete_book(book_id: str, db: Database = Depends(get_db), admin: Dict[str, Any] = Depends(require_admin)):
    catalog.delete_book(db, book_id)
    return {"success": True, "message": "Book deleted successfully"}


@app.put("/api/books/{book_id}/cover")
def update_book_cover(
    book_id: str,
    payload: CoverRequest,
    db: Database = Depends(get_db),
    admin: Dict[str, Any] = Depends(require_admin),
):
    book = catalog.update_book_cover(db, book_id, payload.cover_image)
    return ok(serialize(catalog.present_book(db, book)))


# Borrows Endpoints
@app.get("/api/borrows")
def list_borrows(
    status: Optional[Literal["borrowed", "overdue", "returned"]] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
    db: Database = Depends(get_db),
    user: Dict[str, Any] = Depends(get_current_user),
):
    # members only see their own borrows
    user_id = None if user.get("role") == "admin" else str(user["_id"])
    borrows, count = lifecycle.list_borrows(db, user_id=user_id, status=status, page=page, limit=limit)
    return ok(
        [serialize(b) for b in borrows],
        totalPages=total_pages(count, limit),
        currentPage=page,
        totalBorrows=count,
    )


@app.get("/api/borrows/overdue")
def list_overdue(db: Database = Depends(get_db), admin: Dict[str, Any] = Depends(require_admin)):
    return ok([serialize(b) for b in lifecycle.list_overdue(db)])


@app.get("/api/borrows/stats")
def borrow_stats(db: Database = Depends(get_db), admin: Dict[str, Any] = Depends(require_admin)):
    return ok(lifecycle.borrow_stats(db))


@app.get("/api/borrows/{borrow_id}")
def get_borrow(borrow_id: str, db: Database = Depends(get_db), user: Dict[str, Any] = Depends(get_current_user)):
    owner_id = None if user.get("role") == "admin" else str(user["_id"])
    return ok(serialize(lifecycle.get_borrow(db, borrow_id, owner_id=owner_id)))


@app.post("/api/borrows", status_code=201)
def borrow_book(payload: BorrowRequest, db: Database = Depends(get_db), user: Dict[str, Any] = Depends(get_current_user)):
    borrow = lifecycle.initiate_borrow(
        db,
        book_id=payload.book_id,
        user_id=str(user["_id"]),
        due_date=payload.due_date,
        notes=payload.notes,
    )
    return ok(serialize(borrow))


@app.put("/api/borrows/{borrow_id}/return")
def return_book(borrow_id: str, db: Database = Depends(get_db), admin: Dict[str, Any] = Depends(require_admin)):
    return ok(serialize(lifecycle.return_borrow(db, borrow_id)))


# Categories Endpoints
@app.get("/api/categories")
def list_categories(db: Database = Depends(get_db)):
    return ok([serialize(c) for c in catalog.list_categories(db)])


@app.get("/api/categories/{category_id}")
def get_category(category_id: str, db: Database = Depends(get_db)):
    return ok(serialize(catalog.get_category(db, category_id)))


@app.post("/api/categories", status_code=201)
def create_category(payload: CategoryRequest, db: Database = Depends(get_db), admin: Dict[str, Any] = Depends(require_admin)):
    return ok(serialize(catalog.create_category(db, payload.name)))


@app.put("/api/categories/{category_id}")
def update_category(
    category_id: str,
    payload: CategoryRequest,
    db: Database = Depends(get_db),
    admin: Dict[str, Any] = Depends(require_admin),
):
    return ok(serialize(catalog.update_category(db, category_id, payload.name)))


@app.delete("/api/categories/{category_id}")
def delete_category(category_id: str, db: Database = Depends(get_db), admin: Dict[str, Any] = Depends(require_admin)):
    catalog.delete_category(db, category_id)
    return {"success": True, "message": "Category deleted"}


# Users Endpoints (admin)
@app.get("/api/users")
def list_users(
    search: Optional[str] = None,
    role: Optional[Role] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
    db: Database = Depends(get_db),
    admin: Dict[str, Any] = Depends(require_admin),
):
    users, count = accounts.list_users(db, search, role, page, limit)
    return ok(
        [serialize(u) for u in users],
        totalPages=total_pages(count, limit),
        currentPage=page,
        totalUsers=count,
    )


@app.get("/api/users/{user_id}")
def get_user(user_id: str, db: Database = Depends(get_db), admin: Dict[str, Any] = Depends(require_admin)):
    return ok(serialize(accounts.present_user(accounts.get_user(db, user_id))))


@app.post("/api/users", status_code=201)
def create_user(payload: CreateUser, db: Database = Depends(get_db), admin: Dict[str, Any] = Depends(require_admin)):
    user = accounts.create_user(db, **payload.model_dump())
    return ok(serialize(accounts.present_user(user)))


@app.put("/api/users/{user_id}")
def update_user(
    user_id: str,
    payload: UpdateUser,
    db: Database = Depends(get_db),
    admin: Dict[str, Any] = Depends(require_admin),
):
    user = accounts.update_user(db, user_id, payload.model_dump(exclude_unset=True))
    return ok(serialize(accounts.present_user(user)))


@app.delete("/api/users/{user_id}")
def delete_user(user_id: str, db: Database = Depends(get_db), admin: Dict[str, Any] = Depends(require_admin)):
    if user_id == str(admin["_id"]):
        raise Forbidden("You cannot delete your own account")
    accounts.delete_user(db, user_id)
    return {"success": True, "message": "User deleted"}


@app.patch("/api/users/{user_id}/toggle-status")
def toggle_user_status(user_id: str, db: Database = Depends(get_db), admin: Dict[str, Any] = Depends(require_admin)):
    return ok(serialize(accounts.present_user(accounts.toggle_user_status(db, user_id))))


@app.patch("/api/users/{user_id}/change-password")
def change_password(
    user_id: str,
    payload: ChangePasswordRequest,
    db: Database = Depends(get_db),
    admin: Dict[str, Any] = Depends(require_admin),
):
    accounts.change_password(db, user_id, payload.new_password)
    return {"success": True, "message": "Password updated"}


# Schema info (useful for tooling)
@app.get("/schema")
def get_schema_info():
    return {
        "collections": [
            {"name": "book", "fields": list(BookSchema.model_fields.keys())},
            {"name": "category", "fields": list(CategorySchema.model_fields.keys())},
            {"name": "user", "fields": [f for f in UserSchema.model_fields.keys() if f != "password"]},
            {"name": "borrow", "fields": list(BorrowSchema.model_fields.keys())},
        ]
    }


@app.get("/test")
def test_database(db: Database = Depends(get_db)):
    response: Dict[str, Any] = {
        "backend": "Running",
        "database": "Not Available",
        "database_name": settings.database_name,
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        collections: List[str] = db.list_collection_names()
        response["collections"] = collections[:10]
        response["database"] = "Connected & Working"
        response["connection_status"] = "Connected"
    except PyMongoError as e:
        logger.error("Database check failed: %s", e)
        response["database"] = f"Error: {str(e)[:50]}"
    return response


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.api_host, port=settings.port)
