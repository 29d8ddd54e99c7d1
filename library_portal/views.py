"""Filtering and pagination over assembled borrow records.

The borrow-record list is assembled once and then searched, filtered and
sliced in memory. :class:`Page` is also the result type of the server-side
paged queries used for the other entity lists.
"""

import math
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable, Dict, Generic, List, Optional, Sequence, TypeVar

from library_portal.config import settings
from library_portal.models import AssembledRecord

T = TypeVar("T")

STATUS_ALL = "all"
STATUS_ACTIVE = "active"
STATUS_RETURNED = "returned"
STATUS_OVERDUE = "overdue"
STATUS_FILTERS = (STATUS_ALL, STATUS_ACTIVE, STATUS_RETURNED, STATUS_OVERDUE)


@dataclass
class Page(Generic[T]):
    items: List[T]
    total_items: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total_items / self.page_size) if self.page_size > 0 else 0

    def to_dict(self, serialize: Callable[[T], Any] = lambda item: item) -> Dict[str, Any]:
        return {
            "items": [serialize(item) for item in self.items],
            "total": self.total_items,
            "page": self.page,
            "page_size": self.page_size,
            "total_pages": self.total_pages,
        }


def paginate(items: Sequence[T], page: int, page_size: int) -> Page[T]:
    """Slice ``items[(page-1)*page_size : page*page_size]``.

    Out-of-range pages are not clamped; they simply come back empty.
    """
    if page < 1 or page_size < 1:
        return Page(items=[], total_items=len(items), page=page, page_size=page_size)
    start = (page - 1) * page_size
    return Page(items=list(items[start:start + page_size]), total_items=len(items), page=page, page_size=page_size)


def matches_query(record: AssembledRecord, query: str) -> bool:
    """Case-insensitive substring match on title, author name or username."""
    if not query:
        return True
    needle = query.lower()
    return (
        needle in record.book.title.lower()
        or needle in record.book.author.name.lower()
        or needle in record.user.username.lower()
    )


def matches_status(record: AssembledRecord, status: str, today: Optional[date] = None) -> bool:
    if status == STATUS_ALL:
        return True
    if status == STATUS_ACTIVE:
        return record.return_date is None
    if status == STATUS_RETURNED:
        return record.return_date is not None
    if status == STATUS_OVERDUE:
        return record.is_overdue(today)
    raise ValueError(f"Unknown status filter: {status!r}. Allowed: {', '.join(STATUS_FILTERS)}")


def filter_records(
    records: Sequence[AssembledRecord],
    query: str = "",
    status: str = STATUS_ALL,
    today: Optional[date] = None,
) -> List[AssembledRecord]:
    if status not in STATUS_FILTERS:
        raise ValueError(f"Unknown status filter: {status!r}. Allowed: {', '.join(STATUS_FILTERS)}")
    today = today or date.today()
    return [r for r in records if matches_query(r, query) and matches_status(r, status, today)]


def status_label(record: AssembledRecord, today: Optional[date] = None) -> str:
    """Badge text: returned, overdue or on loan, with the relevant date."""
    if record.return_date is not None:
        return f"已归还 ({record.return_date.isoformat()})"
    if record.is_overdue(today):
        return f"已逾期 ({record.due_date.isoformat()})"
    return f"借阅中 (截止 {record.due_date.isoformat()})"


def loan_duration_days(record: AssembledRecord, today: Optional[date] = None) -> int:
    end = record.return_date or today or date.today()
    return (end - record.borrow_date).days


class BorrowRecordView:
    """Search, status filter and page state over an assembled record set.

    Every change recomputes the visible page from the records held here;
    nothing is re-fetched. Changing the page size returns to page 1.
    """

    def __init__(
        self,
        records: Sequence[AssembledRecord],
        page_size: Optional[int] = None,
        today: Optional[date] = None,
    ) -> None:
        self.records = list(records)
        self.search = ""
        self.status = STATUS_ALL
        self.page = 1
        self.page_size = page_size or settings.default_page_size
        self.today = today

    def set_search(self, query: str) -> None:
        self.search = query or ""
        self.page = 1

    def set_status(self, status: str) -> None:
        if status not in STATUS_FILTERS:
            raise ValueError(f"Unknown status filter: {status!r}. Allowed: {', '.join(STATUS_FILTERS)}")
        self.status = status
        self.page = 1

    def set_page(self, page: int) -> None:
        self.page = page

    def set_page_size(self, page_size: int) -> None:
        if page_size < 1:
            raise ValueError("page_size must be at least 1")
        self.page_size = page_size
        self.page = 1

    @property
    def filtered(self) -> List[AssembledRecord]:
        return filter_records(self.records, self.search, self.status, self.today)

    def current_page(self) -> Page[AssembledRecord]:
        return paginate(self.filtered, self.page, self.page_size)
