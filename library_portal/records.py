"""Assemble borrow records into display records.

Borrow rows only carry foreign keys. Books, their authors and the borrowing
profiles are fetched in three sequential id-set queries and joined here.
Joins that miss are filled with placeholders so every assembled record has a
book, an author and a username.
"""

import logging
from typing import Any, Dict, Iterable, List, Sequence

from library_portal import database
from library_portal.database import NotFoundError
from library_portal.models import (
    UNKNOWN_AUTHOR_NAME,
    UNKNOWN_BOOK_TITLE,
    USERNAME_PREFIX,
    AssembledRecord,
    AuthorRef,
    BookRef,
    BorrowRecord,
    UserRef,
)
from library_portal.services.http_client import BackendClient

logger = logging.getLogger(__name__)


def placeholder_author() -> AuthorRef:
    return AuthorRef(id=0, name=UNKNOWN_AUTHOR_NAME)


def placeholder_book(book_id: int) -> BookRef:
    return BookRef(id=book_id, title=UNKNOWN_BOOK_TITLE, author=placeholder_author())


def placeholder_username(user_id: str) -> str:
    """Synthetic name built from the first 8 characters of the trimmed id."""
    return USERNAME_PREFIX + user_id.strip()[:8]


def candidate_user_ids(records: Iterable[BorrowRecord]) -> List[str]:
    """Raw and trimmed ids of every record, for an exact-match profile fetch."""
    ids: Dict[str, None] = {}
    for record in records:
        ids.setdefault(record.user_id, None)
        ids.setdefault(record.user_id.strip(), None)
    return [user_id for user_id in ids if user_id]


def join_books_to_authors(book_rows: Iterable[Dict[str, Any]], author_rows: Iterable[Dict[str, Any]]) -> Dict[int, BookRef]:
    authors = {row["id"]: AuthorRef(id=row["id"], name=row.get("name") or UNKNOWN_AUTHOR_NAME) for row in author_rows}
    books: Dict[int, BookRef] = {}
    for row in book_rows:
        author = authors.get(row.get("author_id")) or placeholder_author()
        books[row["id"]] = BookRef(id=row["id"], title=row.get("title") or UNKNOWN_BOOK_TITLE, author=author)
    return books


def build_username_lookup(profile_rows: Iterable[Dict[str, Any]]) -> Dict[str, str]:
    """Map profile ids to usernames, keyed by both the raw and trimmed id."""
    lookup: Dict[str, str] = {}
    for row in profile_rows:
        profile_id = row.get("id")
        if not profile_id:
            continue
        username = row.get("username") or ""
        lookup[profile_id] = username
        lookup[profile_id.strip()] = username
    return lookup


def resolve_username(user_id: str, lookup: Dict[str, str]) -> str:
    clean_id = user_id.strip()
    return lookup.get(clean_id) or lookup.get(user_id) or placeholder_username(user_id)


def assemble_one(record: BorrowRecord, books: Dict[int, BookRef], usernames: Dict[str, str]) -> AssembledRecord:
    return AssembledRecord(
        id=str(record.id),
        borrow_date=record.borrow_date,
        due_date=record.due_date,
        return_date=record.return_date,
        book=books.get(record.book_id) or placeholder_book(record.book_id),
        user=UserRef(id=record.user_id.strip(), username=resolve_username(record.user_id, usernames)),
    )


async def fetch_joins(client: BackendClient, records: Sequence[BorrowRecord]):
    """Fetch the books (with authors) and username lookup for ``records``."""
    book_rows = await database.fetch_by_ids(
        client, database.BOOKS, (r.book_id for r in records), "id, title, author_id"
    )
    author_rows = await database.fetch_by_ids(
        client, database.AUTHORS, (row.get("author_id") for row in book_rows), "id, name"
    )
    profile_rows = await database.fetch_by_ids(
        client, database.PROFILES, candidate_user_ids(records), "id, username"
    )
    return join_books_to_authors(book_rows, author_rows), build_username_lookup(profile_rows)


async def assemble_records(client: BackendClient, records: Sequence[BorrowRecord]) -> List[AssembledRecord]:
    """Join ``records`` to books, authors and profiles, keeping input order.

    Any fetch error propagates as ``BackendError``; no partial result is
    returned.
    """
    if not records:
        return []
    books, usernames = await fetch_joins(client, records)
    assembled = [assemble_one(record, books, usernames) for record in records]
    unresolved = sum(1 for record in records if record.user_id.strip() not in usernames and record.user_id not in usernames)
    if unresolved:
        logger.info(f"{unresolved} borrow record(s) reference a missing profile")
    return assembled


async def load_borrow_records(client: BackendClient) -> List[BorrowRecord]:
    """All borrow records, newest borrow first."""
    rows = await database.fetch_all(
        client,
        database.BORROW_RECORDS,
        "id, book_id, user_id, borrow_date, due_date, return_date",
        order="borrow_date",
        desc=True,
    )
    return [BorrowRecord.from_dict(row) for row in rows]


async def load_assembled_records(client: BackendClient) -> List[AssembledRecord]:
    return await assemble_records(client, await load_borrow_records(client))


async def get_borrow_record(client: BackendClient, record_id: Any) -> BorrowRecord:
    row = await database.fetch_one(client, database.BORROW_RECORDS, record_id)
    if row is None:
        raise NotFoundError(f"借阅记录 {record_id} 不存在")
    return BorrowRecord.from_dict(row)


async def assemble_record_detail(client: BackendClient, record_id: Any) -> AssembledRecord:
    """Assemble a single record for its detail view."""
    record = await get_borrow_record(client, record_id)
    assembled = await assemble_records(client, [record])
    return assembled[0]
