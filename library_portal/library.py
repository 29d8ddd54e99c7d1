import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from library_portal import database
from library_portal.config import settings
from library_portal.database import NotFoundError
from library_portal.models import (
    BOOK_AVAILABLE,
    BOOK_BORROWED,
    ROLE_ADMIN,
    ROLE_USER,
    AssembledRecord,
    Author,
    Book,
    BorrowRecord,
    Category,
    LogEntry,
    Profile,
    format_date,
)
from library_portal.records import assemble_record_detail, get_borrow_record, load_assembled_records
from library_portal.services.http_client import BackendClient, BackendError
from library_portal.utils.validators import DateValidator, ISBNValidator, TextValidator
from library_portal.views import STATUS_ALL, Page, filter_records, paginate

logger = logging.getLogger(__name__)

BOOK_COLUMNS = "id, title, isbn, publisher, publication_date, description, cover_image_url, status, author_id, category_id"
BOOK_EDITABLE = ("title", "isbn", "publisher", "publication_date", "description", "cover_image_url", "author_id", "category_id")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _page_size(page_size: Optional[int]) -> int:
    size = page_size or settings.default_page_size
    return min(max(size, 1), settings.max_page_size)


class Library:
    """Books, authors, categories, loans and admin data over the hosted backend."""

    def __init__(self, client: BackendClient) -> None:
        self.client = client

    # ------------------------- Books ------------------------- #
    async def list_books(
        self,
        page: int = 1,
        page_size: Optional[int] = None,
        query: Optional[str] = None,
        status: Optional[str] = None,
        author_id: Optional[int] = None,
        category_id: Optional[int] = None,
    ) -> Page[Dict[str, Any]]:
        """One page of books ordered by title, with author and category names."""
        size = _page_size(page_size)
        term = database.escape_search_term(query or "")

        def where(q):
            if term:
                q = q.ilike("title", f"*{term}*")
            if status:
                q = q.eq("status", status)
            if author_id is not None:
                q = q.eq("author_id", author_id)
            if category_id is not None:
                q = q.eq("category_id", category_id)
            return q

        rows, total = await database.fetch_page(
            self.client, database.BOOKS, page, size, BOOK_COLUMNS, order="title", where=where
        )
        return Page(items=await self._with_names(rows), total_items=total, page=page, page_size=size)

    async def _with_names(self, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        authors = await database.fetch_by_ids(self.client, database.AUTHORS, (r.get("author_id") for r in rows), "id, name")
        categories = await database.fetch_by_ids(
            self.client, database.CATEGORIES, (r.get("category_id") for r in rows), "id, name"
        )
        author_names = {a["id"]: a.get("name") for a in authors}
        category_names = {c["id"]: c.get("name") for c in categories}
        items = []
        for row in rows:
            item = Book.from_dict(row).to_dict()
            item["author_name"] = author_names.get(row.get("author_id"))
            item["category_name"] = category_names.get(row.get("category_id"))
            items.append(item)
        return items

    async def get_book(self, book_id: int) -> Dict[str, Any]:
        row = await database.fetch_one(self.client, database.BOOKS, book_id, BOOK_COLUMNS)
        if row is None:
            raise NotFoundError(f"图书 {book_id} 不存在")
        return (await self._with_names([row]))[0]

    def _book_values(self, values: Dict[str, Any]) -> Dict[str, Any]:
        cleaned = {key: values[key] for key in BOOK_EDITABLE if key in values}
        if "title" in cleaned:
            cleaned["title"] = TextValidator.require(cleaned["title"], "书名")
        if "isbn" in cleaned:
            cleaned["isbn"] = ISBNValidator.validate(cleaned["isbn"])
        if "description" in cleaned and cleaned["description"] is not None:
            cleaned["description"] = TextValidator.sanitize_text(cleaned["description"])
        return cleaned

    async def create_book(self, values: Dict[str, Any]) -> Book:
        """Create a book; new books are always available."""
        row = self._book_values(values)
        if "title" not in row:
            raise ValueError("书名不能为空")
        row.update({"status": BOOK_AVAILABLE, "updated_at": _now()})
        created = await database.insert_row(self.client, database.BOOKS, row)
        logger.info(f"Created book {created.get('id')}: {row['title']}")
        return Book.from_dict(created)

    async def update_book(self, book_id: int, values: Dict[str, Any]) -> Book:
        """Edit book details. Status is never changed here."""
        row = self._book_values(values)
        if not row:
            raise ValueError("没有需要更新的字段")
        row["updated_at"] = _now()
        updated = await database.update_row(self.client, database.BOOKS, book_id, row)
        if updated is None:
            raise NotFoundError(f"图书 {book_id} 不存在")
        return Book.from_dict(updated)

    async def delete_book(self, book_id: int) -> None:
        book = await self.get_book(book_id)
        if book["status"] == BOOK_BORROWED:
            raise ValueError(f"图书《{book['title']}》尚未归还，不能删除")
        await database.delete_row(self.client, database.BOOKS, book_id)
        logger.info(f"Deleted book {book_id}")

    async def list_available_books(self) -> List[Book]:
        rows = await database.fetch_all(
            self.client,
            database.BOOKS,
            BOOK_COLUMNS,
            order="title",
            where=lambda q: q.eq("status", BOOK_AVAILABLE),
        )
        return [Book.from_dict(row) for row in rows]

    # ------------------------- Authors & categories ------------------------- #
    async def _list_named(
        self, table: str, foreign_key: str, columns: str, page: int, page_size: Optional[int], query: Optional[str]
    ) -> Page[Dict[str, Any]]:
        size = _page_size(page_size)
        term = database.escape_search_term(query or "")

        def where(q):
            return q.ilike("name", f"*{term}*") if term else q

        rows, total = await database.fetch_page(self.client, table, page, size, columns, order="name", where=where)
        counts: Dict[Any, int] = {}
        ids = [row["id"] for row in rows]
        if ids:
            books = await database.fetch_all(
                self.client, database.BOOKS, f"id, {foreign_key}", where=lambda q: q.in_(foreign_key, ids)
            )
            for book in books:
                counts[book[foreign_key]] = counts.get(book[foreign_key], 0) + 1
        items = [dict(row, book_count=counts.get(row["id"], 0)) for row in rows]
        return Page(items=items, total_items=total, page=page, page_size=size)

    async def _books_for(self, foreign_key: str, owner_id: int) -> List[Dict[str, Any]]:
        rows = await database.fetch_all(
            self.client,
            database.BOOKS,
            "id, title, isbn, status, publication_date",
            order="title",
            where=lambda q: q.eq(foreign_key, owner_id),
        )
        return rows

    async def list_authors(self, page: int = 1, page_size: Optional[int] = None, query: Optional[str] = None):
        return await self._list_named(database.AUTHORS, "author_id", "id, name, biography", page, page_size, query)

    async def get_author(self, author_id: int) -> Dict[str, Any]:
        row = await database.fetch_one(self.client, database.AUTHORS, author_id)
        if row is None:
            raise NotFoundError(f"作者 {author_id} 不存在")
        return dict(Author.from_dict(row).to_dict(), books=await self._books_for("author_id", author_id))

    async def create_author(self, name: str, biography: Optional[str] = None) -> Author:
        if not TextValidator.validate_name(name):
            raise ValueError("作者姓名无效")
        row = await database.insert_row(
            self.client, database.AUTHORS, {"name": name.strip(), "biography": biography, "updated_at": _now()}
        )
        return Author.from_dict(row)

    async def update_author(self, author_id: int, name: str, biography: Optional[str] = None) -> Author:
        if not TextValidator.validate_name(name):
            raise ValueError("作者姓名无效")
        row = await database.update_row(
            self.client, database.AUTHORS, author_id, {"name": name.strip(), "biography": biography, "updated_at": _now()}
        )
        if row is None:
            raise NotFoundError(f"作者 {author_id} 不存在")
        return Author.from_dict(row)

    async def delete_author(self, author_id: int) -> None:
        await self.get_author(author_id)
        count = await database.count_rows(self.client, database.BOOKS, lambda q: q.eq("author_id", author_id))
        if count:
            raise ValueError(f"该作者还有 {count} 本图书，不能删除")
        await database.delete_row(self.client, database.AUTHORS, author_id)
        logger.info(f"Deleted author {author_id}")

    async def list_categories(self, page: int = 1, page_size: Optional[int] = None, query: Optional[str] = None):
        return await self._list_named(
            database.CATEGORIES, "category_id", "id, name, description", page, page_size, query
        )

    async def get_category(self, category_id: int) -> Dict[str, Any]:
        row = await database.fetch_one(self.client, database.CATEGORIES, category_id)
        if row is None:
            raise NotFoundError(f"分类 {category_id} 不存在")
        return dict(Category.from_dict(row).to_dict(), books=await self._books_for("category_id", category_id))

    async def create_category(self, name: str, description: Optional[str] = None) -> Category:
        name = TextValidator.require(name, "分类名称")
        row = await database.insert_row(
            self.client, database.CATEGORIES, {"name": name, "description": description, "updated_at": _now()}
        )
        return Category.from_dict(row)

    async def update_category(self, category_id: int, name: str, description: Optional[str] = None) -> Category:
        name = TextValidator.require(name, "分类名称")
        row = await database.update_row(
            self.client,
            database.CATEGORIES,
            category_id,
            {"name": name, "description": description, "updated_at": _now()},
        )
        if row is None:
            raise NotFoundError(f"分类 {category_id} 不存在")
        return Category.from_dict(row)

    async def delete_category(self, category_id: int) -> None:
        await self.get_category(category_id)
        count = await database.count_rows(self.client, database.BOOKS, lambda q: q.eq("category_id", category_id))
        if count:
            raise ValueError(f"该分类还有 {count} 本图书，不能删除")
        await database.delete_row(self.client, database.CATEGORIES, category_id)
        logger.info(f"Deleted category {category_id}")

    # ------------------------- Borrowing ------------------------- #
    async def list_borrow_records(
        self,
        query: str = "",
        status: str = STATUS_ALL,
        page: int = 1,
        page_size: Optional[int] = None,
        user_id: Optional[str] = None,
        today: Optional[date] = None,
    ) -> Page[AssembledRecord]:
        """Assemble every record, then search, filter and slice in memory.

        ``user_id`` restricts the result to one borrower's records.
        """
        records = await load_assembled_records(self.client)
        if user_id is not None:
            records = [r for r in records if r.user.id == user_id.strip()]
        return paginate(filter_records(records, query, status, today), page, _page_size(page_size))

    async def get_borrow_record(self, record_id: Any) -> AssembledRecord:
        return await assemble_record_detail(self.client, record_id)

    async def borrow_book(
        self,
        book_id: int,
        user_id: str,
        borrow_date: Optional[date] = None,
        due_date: Optional[date] = None,
    ) -> BorrowRecord:
        """Create a loan and mark the book borrowed.

        The user id is trimmed and must match a profile. If marking the book
        fails, the new loan row is deleted again and the error is re-raised.
        """
        clean_id = (user_id or "").strip()
        if not clean_id:
            raise ValueError("请选择借阅用户")
        if await database.fetch_one(self.client, database.PROFILES, clean_id, "id") is None:
            raise NotFoundError(f"用户 {clean_id} 不存在")

        row = await database.fetch_one(self.client, database.BOOKS, book_id, "id, title, status")
        if row is None:
            raise NotFoundError(f"图书 {book_id} 不存在")
        book = Book.from_dict(row)
        if not book.is_available:
            raise ValueError(f"图书《{book.title}》当前不可借阅")

        borrow_date = borrow_date or date.today()
        due_date = due_date or borrow_date + timedelta(days=settings.default_borrow_days)
        DateValidator.validate_loan_period(borrow_date, due_date)

        now = _now()
        created = await database.insert_row(
            self.client,
            database.BORROW_RECORDS,
            {
                "book_id": book_id,
                "user_id": clean_id,
                "borrow_date": format_date(borrow_date),
                "due_date": format_date(due_date),
                "created_at": now,
                "updated_at": now,
            },
        )
        try:
            await database.update_row(
                self.client, database.BOOKS, book_id, {"status": BOOK_BORROWED, "updated_at": now}
            )
        except BackendError:
            logger.warning(f"Marking book {book_id} borrowed failed, removing loan {created.get('id')}")
            await self._revert(database.delete_row(self.client, database.BORROW_RECORDS, created["id"]))
            raise
        logger.info(f"Book {book_id} borrowed by {clean_id} until {due_date}")
        return BorrowRecord.from_dict(created)

    async def return_book(self, record_id: Any, return_date: Optional[date] = None) -> BorrowRecord:
        """Close a loan and mark its book available again."""
        record = await get_borrow_record(self.client, record_id)
        if record.return_date is not None:
            raise ValueError(f"借阅记录 {record_id} 已经归还")
        return_date = return_date or date.today()
        DateValidator.validate_return(record.borrow_date, return_date)

        now = _now()
        await database.update_row(
            self.client,
            database.BORROW_RECORDS,
            record_id,
            {"return_date": format_date(return_date), "updated_at": now},
        )
        try:
            await database.update_row(
                self.client, database.BOOKS, record.book_id, {"status": BOOK_AVAILABLE, "updated_at": now}
            )
        except BackendError:
            logger.warning(f"Marking book {record.book_id} available failed, reopening loan {record_id}")
            await self._revert(
                database.update_row(self.client, database.BORROW_RECORDS, record_id, {"return_date": None})
            )
            raise
        record.return_date = return_date
        logger.info(f"Loan {record_id} returned on {return_date}")
        return record

    async def _revert(self, operation) -> None:
        try:
            await operation
        except BackendError as exc:
            logger.error(f"Compensating write failed, manual cleanup needed: {exc}")

    # ------------------------- Admin ------------------------- #
    async def get_statistics(self, today: Optional[date] = None) -> Dict[str, int]:
        """Row counts for the admin dashboard, one count query each."""
        today_text = format_date(today or date.today())
        count = database.count_rows
        client = self.client
        total_users = await count(client, database.PROFILES)
        admin_users = await count(client, database.PROFILES, lambda q: q.eq("role", ROLE_ADMIN))
        return {
            "total_users": total_users,
            "admin_users": admin_users,
            "regular_users": total_users - admin_users,
            "total_books": await count(client, database.BOOKS),
            "total_authors": await count(client, database.AUTHORS),
            "total_categories": await count(client, database.CATEGORIES),
            "active_loans": await count(client, database.BORROW_RECORDS, lambda q: q.is_null("return_date")),
            "completed_loans": await count(client, database.BORROW_RECORDS, lambda q: q.not_null("return_date")),
            "overdue_loans": await count(
                client, database.BORROW_RECORDS, lambda q: q.is_null("return_date").lt("due_date", today_text)
            ),
        }

    async def list_profiles(
        self,
        page: int = 1,
        page_size: Optional[int] = None,
        query: Optional[str] = None,
        role: Optional[str] = None,
    ) -> Page[Profile]:
        size = _page_size(page_size)
        term = database.escape_search_term(query or "")

        def where(q):
            if term:
                q = q.or_(f"username.ilike.*{term}*,email.ilike.*{term}*")
            if role:
                q = q.eq("role", role)
            return q

        rows, total = await database.fetch_page(
            self.client, database.PROFILES, page, size, "id, username, role, email", order="created_at", desc=True, where=where
        )
        return Page(items=[Profile.from_dict(row) for row in rows], total_items=total, page=page, page_size=size)

    async def get_profile(self, user_id: str) -> Optional[Profile]:
        row = await database.fetch_one(self.client, database.PROFILES, user_id, "id, username, role, email")
        return Profile.from_dict(row) if row else None

    async def list_user_options(self) -> List[Profile]:
        rows = await database.fetch_all(self.client, database.PROFILES, "id, username", order="username")
        return [Profile.from_dict(row) for row in rows]

    async def update_role(self, user_id: str, role: str) -> Profile:
        if role not in (ROLE_ADMIN, ROLE_USER):
            raise ValueError(f"无效的角色: {role}")
        row = await database.update_row(self.client, database.PROFILES, user_id, {"role": role, "updated_at": _now()})
        if row is None:
            raise NotFoundError(f"用户 {user_id} 不存在")
        logger.info(f"Role of {user_id} changed to {role}")
        return Profile.from_dict(row)

    async def list_logs(
        self,
        page: int = 1,
        page_size: Optional[int] = None,
        action: Optional[str] = None,
        resource_type: Optional[str] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
        user: Optional[str] = None,
    ) -> Page[LogEntry]:
        """System log entries, newest first. ``end`` includes the whole day."""
        size = _page_size(page_size)
        term = database.escape_search_term(user or "")

        def where(q):
            if action:
                q = q.eq("action", action)
            if resource_type:
                q = q.eq("resource_type", resource_type)
            if start:
                q = q.gte("created_at", format_date(start))
            if end:
                q = q.lte("created_at", f"{format_date(end)}T23:59:59")
            if term:
                q = q.ilike("user_email", f"*{term}*")
            return q

        rows, total = await database.fetch_page(
            self.client, database.SYSTEM_LOGS, page, size, order="created_at", desc=True, where=where
        )
        return Page(items=[LogEntry.from_dict(row) for row in rows], total_items=total, page=page, page_size=size)
