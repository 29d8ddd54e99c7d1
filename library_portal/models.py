"""Domain models for rows stored in the hosted backend.

Each class mirrors one table. ``from_dict`` accepts a row as returned by the
REST endpoint (extra columns are ignored) and ``to_dict`` produces the JSON
shape served by the API.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import date, datetime
from typing import Any, Dict, Optional

BOOK_AVAILABLE = "available"
BOOK_BORROWED = "borrowed"

ROLE_ADMIN = "admin"
ROLE_USER = "user"

# Placeholders used when a foreign key does not resolve
UNKNOWN_BOOK_TITLE = "未知图书"
UNKNOWN_AUTHOR_NAME = "未知作者"
UNKNOWN_USERNAME = "未知用户"
USERNAME_PREFIX = "用户"


def parse_date(value: Any) -> Optional[date]:
    """Parse a ``YYYY-MM-DD`` date or an ISO timestamp into a ``date``."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    # Timestamps keep only their calendar date; fractional seconds and offsets vary
    text = str(value).strip()
    if len(text) > 10 and text[10] in "T ":
        text = text[:10]
    return date.fromisoformat(text)


def format_date(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class Author:
    id: int
    name: str
    biography: Optional[str] = None

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Author":
        return Author(id=data["id"], name=data.get("name") or "", biography=data.get("biography"))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Category:
    id: int
    name: str
    description: Optional[str] = None

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Category":
        return Category(id=data["id"], name=data.get("name") or "", description=data.get("description"))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Book:
    """A single book in the collection."""

    id: int
    title: str
    author_id: Optional[int] = None
    category_id: Optional[int] = None
    isbn: Optional[str] = None
    publisher: Optional[str] = None
    publication_date: Optional[str] = None
    description: Optional[str] = None
    cover_image_url: Optional[str] = None
    status: str = BOOK_AVAILABLE

    @property
    def is_available(self) -> bool:
        return self.status == BOOK_AVAILABLE

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Book":
        return Book(
            id=data["id"],
            title=data.get("title") or "",
            author_id=data.get("author_id"),
            category_id=data.get("category_id"),
            isbn=data.get("isbn"),
            publisher=data.get("publisher"),
            publication_date=data.get("publication_date"),
            description=data.get("description"),
            cover_image_url=data.get("cover_image_url"),
            # Legacy rows may carry a null status
            status=data.get("status") or BOOK_AVAILABLE,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Profile:
    """Application-level user identity, keyed by the auth provider's user id."""

    id: str
    username: Optional[str] = None
    role: Optional[str] = ROLE_USER
    email: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Profile":
        return Profile(
            id=data["id"],
            username=data.get("username"),
            role=data.get("role"),
            email=data.get("email"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BorrowRecord:
    """A loan of one book to one profile.

    ``return_date`` is ``None`` while the book is still out.
    """

    id: Any
    book_id: int
    user_id: str
    borrow_date: date
    due_date: date
    return_date: Optional[date] = None

    def is_overdue(self, today: Optional[date] = None) -> bool:
        """Return True if the loan is still open and its due date has passed."""
        if self.return_date is not None:
            return False
        return self.due_date < (today or date.today())

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "BorrowRecord":
        return BorrowRecord(
            id=data["id"],
            book_id=data["book_id"],
            user_id=data.get("user_id") or "",
            borrow_date=parse_date(data["borrow_date"]),
            due_date=parse_date(data["due_date"]),
            return_date=parse_date(data.get("return_date")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "book_id": self.book_id,
            "user_id": self.user_id,
            "borrow_date": format_date(self.borrow_date),
            "due_date": format_date(self.due_date),
            "return_date": format_date(self.return_date),
        }


@dataclass
class LogEntry:
    id: int
    created_at: str
    action: str
    resource_type: str
    resource_id: Optional[str] = None
    user_id: Optional[str] = None
    user_email: Optional[str] = None
    details: Any = None

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "LogEntry":
        return LogEntry(
            id=data["id"],
            created_at=data.get("created_at") or "",
            action=data.get("action") or "",
            resource_type=data.get("resource_type") or "",
            resource_id=data.get("resource_id"),
            user_id=data.get("user_id"),
            user_email=data.get("user_email"),
            details=data.get("details"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AuthorRef:
    id: int
    name: str


@dataclass
class BookRef:
    id: int
    title: str
    author: AuthorRef


@dataclass
class UserRef:
    id: str
    username: str


@dataclass
class AssembledRecord:
    """A borrow record joined to its book, author and borrower for display.

    Every field is populated; unresolved joins carry placeholder values.
    """

    id: str
    borrow_date: date
    due_date: date
    return_date: Optional[date]
    book: BookRef
    user: UserRef

    def is_overdue(self, today: Optional[date] = None) -> bool:
        if self.return_date is not None:
            return False
        return self.due_date < (today or date.today())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "borrow_date": format_date(self.borrow_date),
            "due_date": format_date(self.due_date),
            "return_date": format_date(self.return_date),
            "book": asdict(self.book),
            "user": asdict(self.user),
        }
