"""Table access helpers over the hosted backend.

All reads and writes go through a :class:`BackendClient`; this module only
knows table names and the common query shapes (by id set, by page, counts).
"""

from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from library_portal.services.http_client import BackendClient, TableQuery

AUTHORS = "authors"
CATEGORIES = "categories"
BOOKS = "books"
PROFILES = "profiles"
BORROW_RECORDS = "borrow_records"
SYSTEM_LOGS = "system_logs"

# Applies the same filters to the count query and the page query
QueryFilter = Callable[[TableQuery], TableQuery]


def _no_filter(query: TableQuery) -> TableQuery:
    return query


def _distinct(values: Iterable[Any]) -> List[Any]:
    seen: Dict[Any, None] = {}
    for value in values:
        if value is not None:
            seen.setdefault(value, None)
    return list(seen)


async def fetch_by_ids(client: BackendClient, table: str, ids: Iterable[Any], columns: str = "*") -> List[Dict[str, Any]]:
    """Fetch the rows whose id is in ``ids``; an empty id set issues no request."""
    wanted = _distinct(ids)
    if not wanted:
        return []
    result = await client.table(table).select(columns).in_("id", wanted).execute()
    return result.data


async def fetch_one(client: BackendClient, table: str, row_id: Any, columns: str = "*") -> Optional[Dict[str, Any]]:
    result = await client.table(table).select(columns).eq("id", row_id).execute()
    return result.data[0] if result.data else None


async def fetch_all(
    client: BackendClient,
    table: str,
    columns: str = "*",
    order: Optional[str] = None,
    desc: bool = False,
    where: QueryFilter = _no_filter,
) -> List[Dict[str, Any]]:
    query = where(client.table(table).select(columns))
    if order:
        query = query.order(order, desc=desc)
    result = await query.execute()
    return result.data


async def count_rows(client: BackendClient, table: str, where: QueryFilter = _no_filter) -> int:
    result = await where(client.table(table).select("id", count=True, head=True)).execute()
    return result.count or 0


async def fetch_page(
    client: BackendClient,
    table: str,
    page: int,
    page_size: int,
    columns: str = "*",
    order: Optional[str] = None,
    desc: bool = False,
    where: QueryFilter = _no_filter,
) -> Tuple[List[Dict[str, Any]], int]:
    """Return one page of rows plus the total matching the same filters.

    The count is taken first; a page that starts past the end is returned
    empty without asking the backend for an unsatisfiable range.
    """
    total = await count_rows(client, table, where)
    start = (page - 1) * page_size
    if page < 1 or start >= total:
        return [], total
    query = where(client.table(table).select(columns))
    if order:
        query = query.order(order, desc=desc)
    result = await query.range(start, start + page_size - 1).execute()
    return result.data, total


async def insert_row(client: BackendClient, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
    result = await client.table(table).insert(row).execute()
    return result.data[0] if result.data else row


async def update_row(client: BackendClient, table: str, row_id: Any, values: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    result = await client.table(table).update(values).eq("id", row_id).execute()
    return result.data[0] if result.data else None


async def delete_row(client: BackendClient, table: str, row_id: Any) -> bool:
    result = await client.table(table).delete().eq("id", row_id).execute()
    return bool(result.data)


def escape_search_term(text: str) -> str:
    """Strip characters that would break an ``or=(...)`` filter expression."""
    return "".join(ch for ch in text if ch not in ",()").strip()


class NotFoundError(LookupError):
    """Raised when a row addressed by id does not exist."""
