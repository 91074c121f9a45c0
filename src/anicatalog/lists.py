from __future__ import annotations

from datetime import UTC, date, datetime
import logging
import sqlite3

from pydantic import BaseModel

from .storage_sqlite import CatalogStorage, new_id, utc_now_iso


logger = logging.getLogger(__name__)

STATUSES_BY_MEDIA = {
    "anime": ("watching", "completed", "on_hold", "dropped", "plan_to_watch"),
    "manga": ("reading", "completed", "on_hold", "dropped", "plan_to_read"),
}
IN_PROGRESS_STATUSES = {"watching", "reading"}
MAX_SCORE = 10


class ListEntryError(ValueError):
    pass


class ListEntry(BaseModel):
    id: str
    user_id: str
    title_id: str
    media_type: str
    status: str
    status_label: str
    title: str
    total: int | None = None
    score: int | None = None
    progress: int = 0
    notes: str | None = None
    start_date: str | None = None
    finish_date: str | None = None
    added_at: str
    updated_at: str


_ENTRY_SELECT = """
    SELECT l.*, s.name AS status, s.label AS status_label, t.title AS title,
           COALESCE(a.episodes, m.chapters) AS total
    FROM user_title_lists l
    JOIN list_statuses s ON s.id = l.status_id
    JOIN titles t ON t.id = l.title_id
    LEFT JOIN anime_details a ON a.title_id = l.title_id
    LEFT JOIN manga_details m ON m.title_id = l.title_id
"""


def _to_entry(row: sqlite3.Row) -> ListEntry:
    return ListEntry(
        id=row["id"],
        user_id=row["user_id"],
        title_id=row["title_id"],
        media_type=row["media_type"],
        status=row["status"],
        status_label=row["status_label"],
        title=row["title"],
        total=row["total"],
        score=row["score"],
        progress=row["progress"],
        notes=row["notes"],
        start_date=row["start_date"],
        finish_date=row["finish_date"],
        added_at=row["added_at"],
        updated_at=row["updated_at"],
    )


def _status_id(conn: sqlite3.Connection, status: str, media_type: str) -> int:
    if status not in STATUSES_BY_MEDIA[media_type]:
        raise ListEntryError(
            f"Invalid {media_type} status {status!r}; allowed={list(STATUSES_BY_MEDIA[media_type])}"
        )
    row = conn.execute(
        "SELECT id FROM list_statuses WHERE name=? AND media_type IN (?, 'both')",
        (status, media_type),
    ).fetchone()
    if row is None:
        raise ListEntryError(f"List status {status!r} is not configured")
    return int(row["id"])


def _title_info(conn: sqlite3.Connection, title_id: str) -> tuple[str, int | None]:
    row = conn.execute(
        """
        SELECT t.content_type AS content_type, COALESCE(a.episodes, m.chapters) AS total
        FROM titles t
        LEFT JOIN anime_details a ON a.title_id = t.id
        LEFT JOIN manga_details m ON m.title_id = t.id
        WHERE t.id=?
        """,
        (title_id,),
    ).fetchone()
    if row is None:
        raise ListEntryError(f"Unknown title: {title_id}")
    return str(row["content_type"]), row["total"]


def _validate_score(score: int | None) -> None:
    if score is not None and not 0 <= score <= MAX_SCORE:
        raise ListEntryError(f"Score must be between 0 and {MAX_SCORE}")


def _validate_progress(progress: int, total: int | None) -> None:
    if progress < 0:
        raise ListEntryError("Progress cannot be negative")
    if total is not None and progress > total:
        raise ListEntryError(f"Progress {progress} exceeds total {total}")


def valid_statuses(media_type: str) -> tuple[str, ...]:
    if media_type not in STATUSES_BY_MEDIA:
        raise ListEntryError(f"Invalid media type {media_type!r}")
    return STATUSES_BY_MEDIA[media_type]


def get_entry(storage: CatalogStorage, user_id: str, entry_id: str) -> ListEntry:
    row = storage.conn.execute(
        f"{_ENTRY_SELECT} WHERE l.id=? AND l.user_id=?",
        (entry_id, user_id),
    ).fetchone()
    if row is None:
        raise ListEntryError(f"List entry not found: {entry_id}")
    return _to_entry(row)


def add_to_list(
    storage: CatalogStorage,
    user_id: str,
    title_id: str,
    status: str,
    *,
    score: int | None = None,
    progress: int = 0,
    notes: str | None = None,
    today: date | None = None,
) -> ListEntry:
    conn = storage.conn
    media_type, total = _title_info(conn, title_id)
    status_id = _status_id(conn, status, media_type)
    _validate_score(score)
    _validate_progress(progress, total)

    today_iso = (today or datetime.now(UTC).date()).isoformat()
    start_date = today_iso if status in IN_PROGRESS_STATUSES else None
    finish_date = None
    if status == "completed":
        finish_date = today_iso
        if total is not None:
            progress = total

    now = utc_now_iso()
    entry_id = new_id()
    try:
        with conn:
            conn.execute(
                """
                INSERT INTO user_title_lists(
                    id, user_id, title_id, media_type, status_id, score, progress, notes,
                    start_date, finish_date, added_at, updated_at
                )
                VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry_id,
                    user_id,
                    title_id,
                    media_type,
                    status_id,
                    score,
                    progress,
                    notes,
                    start_date,
                    finish_date,
                    now,
                    now,
                ),
            )
    except sqlite3.IntegrityError as exc:
        raise ListEntryError(f"Title {title_id} is already on the list") from exc
    logger.debug("User %s added %s as %s", user_id, title_id, status)
    return get_entry(storage, user_id, entry_id)


def update_entry(
    storage: CatalogStorage,
    user_id: str,
    entry_id: str,
    *,
    status: str | None = None,
    score: int | None = None,
    progress: int | None = None,
    notes: str | None = None,
    today: date | None = None,
) -> ListEntry:
    current = get_entry(storage, user_id, entry_id)
    conn = storage.conn
    today_iso = (today or datetime.now(UTC).date()).isoformat()
    changes: dict[str, object] = {}

    if score is not None:
        _validate_score(score)
        changes["score"] = score
    if progress is not None:
        _validate_progress(progress, current.total)
        changes["progress"] = progress
    if notes is not None:
        changes["notes"] = notes

    if status is not None and status != current.status:
        changes["status_id"] = _status_id(conn, status, current.media_type)
        if status in IN_PROGRESS_STATUSES and current.start_date is None:
            changes["start_date"] = today_iso
        if status == "completed":
            if current.finish_date is None:
                changes["finish_date"] = today_iso
            if current.total is not None and progress is None:
                changes["progress"] = current.total

    if not changes:
        return current

    changes["updated_at"] = utc_now_iso()
    assignments = ", ".join(f"{column}=?" for column in changes)
    with conn:
        conn.execute(
            f"UPDATE user_title_lists SET {assignments} WHERE id=? AND user_id=?",
            (*changes.values(), entry_id, user_id),
        )
    return get_entry(storage, user_id, entry_id)


def remove_from_list(storage: CatalogStorage, user_id: str, entry_id: str) -> None:
    with storage.conn:
        cursor = storage.conn.execute(
            "DELETE FROM user_title_lists WHERE id=? AND user_id=?",
            (entry_id, user_id),
        )
    if cursor.rowcount == 0:
        raise ListEntryError(f"List entry not found: {entry_id}")


def get_user_lists(storage: CatalogStorage, user_id: str) -> dict[str, list[ListEntry]]:
    rows = storage.conn.execute(
        f"{_ENTRY_SELECT} WHERE l.user_id=? ORDER BY l.updated_at DESC, l.id",
        (user_id,),
    ).fetchall()
    lists: dict[str, list[ListEntry]] = {"anime": [], "manga": []}
    for row in rows:
        lists[row["media_type"]].append(_to_entry(row))
    return lists


def status_counts(storage: CatalogStorage, user_id: str, media_type: str) -> dict[str, int]:
    counts = {status: 0 for status in valid_statuses(media_type)}
    rows = storage.conn.execute(
        """
        SELECT s.name AS status, COUNT(*) AS c
        FROM user_title_lists l
        JOIN list_statuses s ON s.id = l.status_id
        WHERE l.user_id=? AND l.media_type=?
        GROUP BY s.name
        """,
        (user_id, media_type),
    ).fetchall()
    for row in rows:
        counts[row["status"]] = int(row["c"])
    return counts
