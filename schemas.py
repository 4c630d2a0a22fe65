"""
Database Schemas for the Library Management System

Each Pydantic model represents a collection in MongoDB.
Collection name is the lowercase class name.

Collections:
- Book
- Category
- User
- Borrow
"""

import re
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from covers import DEFAULT_COVER
from errors import ValidationFailed

ISBN_PATTERN = r"^(?:\d{10}|\d{13})$"
EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")

Role = Literal["user", "admin"]
BorrowStatus = Literal["borrowed", "overdue", "returned"]


def validate_email(value: str) -> str:
    value = value.strip().lower()
    if not EMAIL_PATTERN.match(value):
        raise ValueError("Please add a valid email")
    return value


def validate_publication_year(value: Optional[int]) -> Optional[int]:
    if value is not None and value > datetime.now().year:
        raise ValueError("Publication year cannot be in the future")
    return value


class Book(BaseModel):
    """
    Books collection schema
    Collection name: "book"
    """
    title: str = Field(..., min_length=1, max_length=100, description="Book title")
    author: str = Field(..., min_length=1, max_length=50, description="Primary author")
    isbn: str = Field(..., pattern=ISBN_PATTERN, description="10 or 13 digit ISBN")
    category: str = Field(..., description="Category ObjectId as string")
    description: Optional[str] = Field(None, max_length=500, description="Short description")
    publication_year: Optional[int] = Field(None, ge=1800, description="Year of publication")
    publisher: Optional[str] = Field(None, description="Publisher")
    total_copies: int = Field(1, ge=1, description="Total copies owned")
    available_copies: int = Field(1, ge=0, description="Copies currently on the shelf")
    location: str = Field(..., min_length=1, description="Shelf location")
    cover_image: str = Field(DEFAULT_COVER, description="Cover image URL")
    is_active: bool = Field(True, description="False once soft-deleted")

    @field_validator("title", "author", "publisher", "location", mode="before")
    @classmethod
    def strip_text(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("publication_year")
    @classmethod
    def year_not_in_future(cls, v):
        return validate_publication_year(v)

    @model_validator(mode="after")
    def copies_consistent(self):
        if self.available_copies > self.total_copies:
            raise ValueError("Available copies cannot exceed total copies")
        return self


class Category(BaseModel):
    """
    Categories collection schema
    Collection name: "category"
    """
    name: str = Field(..., min_length=1, max_length=50, description="Unique category name")

    @field_validator("name", mode="before")
    @classmethod
    def strip_name(cls, v):
        return v.strip() if isinstance(v, str) else v


class Address(BaseModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None


class User(BaseModel):
    """
    Users collection schema
    Collection name: "user"
    The password field holds a bcrypt hash, never the plain text.
    """
    name: str = Field(..., min_length=1, max_length=50, description="Full name")
    email: str = Field(..., description="Unique email address")
    password: str = Field(..., description="bcrypt hash")
    role: Role = Field("user", description="user | admin")
    membership_number: str = Field(..., description="Library membership number")
    phone: Optional[str] = Field(None, description="Phone number")
    address: Optional[Address] = Field(None, description="Postal address")
    is_active: bool = Field(True, description="Whether the account may sign in")

    @field_validator("email")
    @classmethod
    def email_format(cls, v):
        return validate_email(v)


class Borrow(BaseModel):
    """
    Borrows collection schema
    Collection name: "borrow"
    """
    user_id: str = Field(..., description="User ObjectId as string")
    book_id: str = Field(..., description="Book ObjectId as string")
    borrow_date: datetime = Field(..., description="When the copy left the shelf (UTC)")
    due_date: datetime = Field(..., description="Due date/time (UTC)")
    return_date: Optional[datetime] = Field(None, description="Return date/time (UTC)")
    status: BorrowStatus = Field("borrowed", description="borrowed | overdue | returned")
    fine: int = Field(0, ge=0, description="Accrued fine in currency units")
    notes: Optional[str] = Field(None, max_length=200, description="Free-form notes")


def build(model, data):
    """Validate `data` against a collection schema, reporting field errors as ValidationFailed."""
    try:
        return model(**data)
    except ValidationError as e:
        errors = [
            {"field": ".".join(str(p) for p in err["loc"]) or "__root__", "message": err["msg"]}
            for err in e.errors()
        ]
        raise ValidationFailed(errors[0]["message"] if len(errors) == 1 else "Validation failed", errors=errors)
