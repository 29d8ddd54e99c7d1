"""Detect and repair borrow records whose ``user_id`` has no profile.

Detection compares each record's raw id, then its trimmed id, against the
full profile set. Repairs are chosen by an operator; nothing here reassigns
a record to a different person on its own.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set

from library_portal import database
from library_portal.models import UNKNOWN_BOOK_TITLE, UNKNOWN_USERNAME, BorrowRecord, Profile, format_date
from library_portal.records import load_borrow_records
from library_portal.services.http_client import BackendClient

logger = logging.getLogger(__name__)


class RepairError(ValueError):
    """Raised when a repair cannot be applied as requested."""


@dataclass
class RecordInspection:
    """Result of matching one borrow record against the profile set."""

    id: str
    book_id: int
    book_title: str
    borrow_date: date
    original_user_id: str
    clean_user_id: str
    user_found: bool
    exact_match: bool
    username: str

    @property
    def id_has_spaces(self) -> bool:
        return self.original_user_id != self.clean_user_id

    @property
    def needs_repair(self) -> bool:
        # Records that only resolve after trimming still carry a bad id
        return not self.exact_match

    @property
    def default_replacement(self) -> str:
        """Pre-selected replacement id: the trimmed id for whitespace defects."""
        return self.clean_user_id if self.id_has_spaces and self.user_found else ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "book_id": self.book_id,
            "book_title": self.book_title,
            "borrow_date": format_date(self.borrow_date),
            "original_user_id": self.original_user_id,
            "clean_user_id": self.clean_user_id,
            "id_has_spaces": self.id_has_spaces,
            "user_found": self.user_found,
            "username": self.username,
            "needs_repair": self.needs_repair,
            "default_replacement": self.default_replacement,
        }


def inspect_record(record: BorrowRecord, profiles: Dict[str, Profile], book_titles: Dict[int, str]) -> RecordInspection:
    clean_id = record.user_id.strip()
    profile = profiles.get(record.user_id)
    exact = profile is not None
    if profile is None:
        profile = profiles.get(clean_id)
    return RecordInspection(
        id=str(record.id),
        book_id=record.book_id,
        book_title=book_titles.get(record.book_id) or UNKNOWN_BOOK_TITLE,
        borrow_date=record.borrow_date,
        original_user_id=record.user_id,
        clean_user_id=clean_id,
        user_found=profile is not None,
        exact_match=exact,
        username=(profile.username if profile and profile.username else UNKNOWN_USERNAME),
    )


def inspect_records(
    records: Iterable[BorrowRecord],
    profiles: Iterable[Profile],
    book_titles: Optional[Dict[int, str]] = None,
) -> List[RecordInspection]:
    by_id = {profile.id: profile for profile in profiles}
    return [inspect_record(record, by_id, book_titles or {}) for record in records]


@dataclass
class RepairSession:
    """Inspection state for one pass of the repair tool."""

    inspections: List[RecordInspection]
    profiles: List[Profile]
    fixed: Set[str] = field(default_factory=set)

    @property
    def problem_records(self) -> List[RecordInspection]:
        return [item for item in self.inspections if item.needs_repair or item.id in self.fixed]

    def find(self, record_id: Any) -> Optional[RecordInspection]:
        return next((item for item in self.inspections if item.id == str(record_id)), None)

    def summary(self) -> Dict[str, int]:
        return {
            "total": len(self.inspections),
            "problems": len(self.problem_records),
            "fixed": len(self.fixed),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": self.summary(),
            "records": [item.to_dict() for item in self.problem_records],
            "fixed": sorted(self.fixed),
            "users": [{"id": p.id, "username": p.username} for p in self.profiles],
        }


async def load_repair_session(client: BackendClient) -> RepairSession:
    """Fetch all records, their book titles and every profile, then inspect."""
    records = await load_borrow_records(client)
    book_rows = await database.fetch_by_ids(client, database.BOOKS, (r.book_id for r in records), "id, title")
    profile_rows = await database.fetch_all(client, database.PROFILES, "id, username")
    profiles = [Profile.from_dict(row) for row in profile_rows]
    titles = {row["id"]: row.get("title") for row in book_rows}
    return RepairSession(inspections=inspect_records(records, profiles, titles), profiles=profiles)


async def repair_record(
    client: BackendClient,
    session: RepairSession,
    record_id: Any,
    replacement_id: Optional[str] = None,
) -> bool:
    """Point ``record_id`` at ``replacement_id`` and mark it fixed.

    Falls back to the trimmed id when the record only has a whitespace
    defect and no replacement was chosen. Returns False without writing when
    the record already resolves or was fixed earlier in this session.
    """
    inspection = session.find(record_id)
    if inspection is None:
        raise RepairError(f"找不到要修复的记录: {record_id}")
    if inspection.id in session.fixed or not inspection.needs_repair:
        return False

    user_id = (replacement_id or "").strip() or inspection.default_replacement
    if not user_id:
        raise RepairError("请选择一个有效的用户")

    profile = next((p for p in session.profiles if p.id == user_id), None)
    if profile is None:
        raise RepairError(f"用户 {user_id} 不存在")

    await database.update_row(
        client, database.BORROW_RECORDS, record_id, {"user_id": user_id, "updated_at": datetime.now(timezone.utc).isoformat()}
    )
    logger.info(f"Repaired borrow record {record_id}: {inspection.original_user_id!r} -> {user_id!r}")

    session.fixed.add(inspection.id)
    inspection.original_user_id = user_id
    inspection.clean_user_id = user_id
    inspection.user_found = True
    inspection.exact_match = True
    inspection.username = profile.username or UNKNOWN_USERNAME
    return True
