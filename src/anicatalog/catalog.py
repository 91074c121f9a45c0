from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
import sqlite3
from typing import Any, Literal

from pydantic import BaseModel, Field

from .storage_sqlite import CatalogStorage


# next_episode_date is stored as an ISO UTC string; compare on its first 19 chars.
_STAMP = "%Y-%m-%dT%H:%M:%S"

SORTABLE_COLUMNS = {"score", "year", "popularity", "favorites", "title", "anilist_score", "num_users_voted"}

SearchScope = Literal["anime", "manga", "both"]


class TitleSummary(BaseModel):
    id: str
    anilist_id: int
    content_type: str
    title: str
    title_english: str | None = None
    image_url: str | None = None
    score: int | None = None
    popularity: int = 0
    year: int | None = None
    status: str | None = None
    format: str | None = None
    genres: list[str] = Field(default_factory=list)


class TitleDetail(TitleSummary):
    title_japanese: str | None = None
    synopsis: str | None = None
    banner_image: str | None = None
    anilist_score: int | None = None
    favorites: int = 0
    rank: int | None = None
    color_theme: str | None = None
    num_users_voted: int = 0
    details: dict[str, Any] = Field(default_factory=dict)
    studios: list[str] = Field(default_factory=list)
    authors: list[str] = Field(default_factory=list)


@dataclass(slots=True)
class SearchOptions:
    query: str
    content_type: SearchScope = "both"
    limit: int = 20
    genres: list[str] = field(default_factory=list)
    year: int | None = None
    status: str | None = None
    sort_by: str = "score"
    order: Literal["asc", "desc"] = "desc"


@dataclass(slots=True)
class SearchResult:
    anime: list[TitleSummary] = field(default_factory=list)
    manga: list[TitleSummary] = field(default_factory=list)

    @property
    def total_results(self) -> int:
        return len(self.anime) + len(self.manga)


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _order_clause(sort_by: str, order: str) -> str:
    if sort_by not in SORTABLE_COLUMNS:
        raise ValueError(f"Unsupported sort column {sort_by!r}; allowed={sorted(SORTABLE_COLUMNS)}")
    direction = "ASC" if order == "asc" else "DESC"
    return f"t.{sort_by} IS NULL, t.{sort_by} {direction}, t.anilist_id ASC"


def _details_table(content_type: str) -> str:
    return "anime_details" if content_type == "anime" else "manga_details"


def _names(conn: sqlite3.Connection, link_table: str, name_table: str, column: str, title_id: str) -> list[str]:
    rows = conn.execute(
        f"""
        SELECT n.name
        FROM {link_table} l
        JOIN {name_table} n ON n.id = l.{column}
        WHERE l.title_id=?
        ORDER BY n.name
        """,
        (title_id,),
    ).fetchall()
    return [str(row["name"]) for row in rows]


def _summary(conn: sqlite3.Connection, row: sqlite3.Row) -> TitleSummary:
    return TitleSummary(
        id=row["id"],
        anilist_id=row["anilist_id"],
        content_type=row["content_type"],
        title=row["title"],
        title_english=row["title_english"],
        image_url=row["image_url"],
        score=row["score"],
        popularity=row["popularity"],
        year=row["year"],
        status=row["status"],
        format=row["type"],
        genres=_names(conn, "title_genres", "genres", "genre_id", row["id"]),
    )


def _query_titles(
    storage: CatalogStorage,
    content_type: str,
    *,
    where: list[str],
    params: list[Any],
    order_by: str,
    limit: int,
    offset: int = 0,
) -> list[TitleSummary]:
    details = _details_table(content_type)
    clauses = ["t.content_type = ?", *where]
    rows = storage.conn.execute(
        f"""
        SELECT t.*, d.status AS status, d.type AS type
        FROM titles t
        JOIN {details} d ON d.title_id = t.id
        WHERE {' AND '.join(clauses)}
        ORDER BY {order_by}
        LIMIT ? OFFSET ?
        """,
        (content_type, *params, limit, offset),
    ).fetchall()
    return [_summary(storage.conn, row) for row in rows]


def search_titles(storage: CatalogStorage, options: SearchOptions) -> SearchResult:
    """Case-insensitive title search with optional genre, year and status filters."""

    term = options.query.strip()
    if not term:
        return SearchResult()
    if options.content_type not in ("anime", "manga", "both"):
        raise ValueError(f"Invalid search type {options.content_type!r}")

    order_by = _order_clause(options.sort_by, options.order)
    pattern = f"%{_escape_like(term.lower())}%"
    where = [
        "(LOWER(t.title) LIKE ? ESCAPE '\\' "
        "OR LOWER(COALESCE(t.title_english, '')) LIKE ? ESCAPE '\\' "
        "OR LOWER(COALESCE(t.title_japanese, '')) LIKE ? ESCAPE '\\')"
    ]
    params: list[Any] = [pattern, pattern, pattern]
    if options.year is not None:
        where.append("t.year = ?")
        params.append(options.year)
    if options.status:
        where.append("d.status = ?")
        params.append(options.status)
    genres = [genre for genre in options.genres if genre.strip()]
    if genres:
        where.append(
            f"""
            (SELECT COUNT(DISTINCT g.name)
             FROM title_genres tg JOIN genres g ON g.id = tg.genre_id
             WHERE tg.title_id = t.id AND g.name IN ({','.join('?' for _ in genres)})) = ?
            """
        )
        params.extend([*genres, len(set(genres))])

    if options.content_type == "both":
        # anime takes the odd slot so the two halves never exceed the limit
        limits = {"anime": (options.limit + 1) // 2, "manga": options.limit // 2}
    else:
        limits = {options.content_type: options.limit}

    result = SearchResult()
    for scope, limit in limits.items():
        if limit <= 0:
            continue
        rows = _query_titles(storage, scope, where=where, params=params, order_by=order_by, limit=limit)
        setattr(result, scope, rows)
    return result


def browse(
    storage: CatalogStorage,
    content_type: str,
    sort_by: str = "popularity",
    limit: int = 20,
    offset: int = 0,
) -> list[TitleSummary]:
    if content_type not in ("anime", "manga"):
        raise ValueError(f"Invalid content type {content_type!r}")
    return _query_titles(
        storage,
        content_type,
        where=[],
        params=[],
        order_by=_order_clause(sort_by, "desc"),
        limit=limit,
        offset=offset,
    )


def get_title(storage: CatalogStorage, title_id: str) -> TitleDetail | None:
    conn = storage.conn
    row = conn.execute("SELECT * FROM titles WHERE id=?", (title_id,)).fetchone()
    if row is None:
        return None
    details_row = conn.execute(
        f"SELECT * FROM {_details_table(row['content_type'])} WHERE title_id=?",
        (title_id,),
    ).fetchone()
    details = dict(details_row) if details_row else {}
    details.pop("title_id", None)
    return TitleDetail(
        id=row["id"],
        anilist_id=row["anilist_id"],
        content_type=row["content_type"],
        title=row["title"],
        title_english=row["title_english"],
        title_japanese=row["title_japanese"],
        synopsis=row["synopsis"],
        image_url=row["image_url"],
        banner_image=row["banner_image"],
        score=row["score"],
        anilist_score=row["anilist_score"],
        popularity=row["popularity"],
        favorites=row["favorites"],
        rank=row["rank"],
        year=row["year"],
        color_theme=row["color_theme"],
        num_users_voted=row["num_users_voted"],
        status=details.get("status"),
        format=details.get("type"),
        details=details,
        genres=_names(conn, "title_genres", "genres", "genre_id", title_id),
        studios=_names(conn, "title_studios", "studios", "studio_id", title_id),
        authors=_names(conn, "title_authors", "authors", "author_id", title_id),
    )


def get_title_by_anilist_id(storage: CatalogStorage, anilist_id: int) -> TitleDetail | None:
    title_id = storage.find_title_id(anilist_id)
    return get_title(storage, title_id) if title_id else None


def airing_soon(
    storage: CatalogStorage,
    within_days: int = 7,
    limit: int = 50,
    now: datetime | None = None,
) -> list[tuple[TitleSummary, str, int | None]]:
    """Anime whose next episode airs inside the window, soonest first."""

    start = (now or datetime.now(UTC)).astimezone(UTC)
    end = start + timedelta(days=within_days)
    rows = storage.conn.execute(
        """
        SELECT t.*, d.status AS status, d.type AS type,
               d.next_episode_date AS next_episode_date,
               d.next_episode_number AS next_episode_number
        FROM titles t
        JOIN anime_details d ON d.title_id = t.id
        WHERE d.next_episode_date IS NOT NULL
          AND substr(d.next_episode_date, 1, 19) BETWEEN ? AND ?
        ORDER BY d.next_episode_date ASC
        LIMIT ?
        """,
        (start.strftime(_STAMP), end.strftime(_STAMP), limit),
    ).fetchall()
    return [
        (_summary(storage.conn, row), row["next_episode_date"], row["next_episode_number"])
        for row in rows
    ]
