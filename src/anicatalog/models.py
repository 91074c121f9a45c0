from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import UTC, date, datetime
import math
import re
from typing import Any, Literal

from pydantic import BaseModel, Field


ContentType = Literal["anime", "manga"]
CONTENT_TYPES: tuple[str, ...] = ("anime", "manga")

UNKNOWN_TITLE = "Unknown Title"

ANIME_STATUS_MAP = {
    "FINISHED": "Finished Airing",
    "RELEASING": "Currently Airing",
    "NOT_YET_RELEASED": "Not yet aired",
    "CANCELLED": "Cancelled",
    "HIATUS": "Hiatus",
}

MANGA_STATUS_MAP = {
    "FINISHED": "Finished",
    "RELEASING": "Publishing",
    "NOT_YET_RELEASED": "Not yet published",
    "CANCELLED": "Cancelled",
    "HIATUS": "On Hiatus",
}

AUTHOR_OCCUPATIONS = {"Story & Art", "Story"}

_TAG_RE = re.compile(r"<[^>]*>")


class TitleRecord(BaseModel):
    anilist_id: int
    mal_id: int | None = None
    content_type: ContentType
    title: str
    title_english: str | None = None
    title_japanese: str | None = None
    synopsis: str | None = None
    image_url: str | None = None
    banner_image: str | None = None
    score: int | None = None
    anilist_score: int | None = None
    popularity: int = 0
    favorites: int = 0
    members: int = 0
    rank: int | None = None
    year: int | None = None
    color_theme: str | None = None
    num_users_voted: int = 0
    updated_at_source: int | None = None


class AnimeDetails(BaseModel):
    episodes: int | None = None
    aired_from: str | None = None
    aired_to: str | None = None
    season: str | None = None
    status: str = "Finished Airing"
    type: str = "TV"
    trailer_url: str | None = None
    trailer_id: str | None = None
    trailer_site: str | None = None
    next_episode_date: str | None = None
    next_episode_number: int | None = None


class MangaDetails(BaseModel):
    chapters: int | None = None
    volumes: int | None = None
    published_from: str | None = None
    published_to: str | None = None
    status: str = "Finished"
    type: str = "Manga"


class MediaItem(BaseModel):
    title: TitleRecord
    anime: AnimeDetails | None = None
    manga: MangaDetails | None = None
    genres: list[str] = Field(default_factory=list)
    studios: list[str] = Field(default_factory=list)
    authors: list[str] = Field(default_factory=list)

    @property
    def content_type(self) -> str:
        return self.title.content_type


class VoteCount(BaseModel):
    anilist_id: int
    num_users_voted: int


@dataclass(slots=True)
class SyncProgress:
    pages: int = 0
    processed: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    dead_lettered: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)

    def merge(self, other: SyncProgress) -> None:
        for key, value in other.as_dict().items():
            setattr(self, key, getattr(self, key) + value)


def require_content_type(content_type: str) -> str:
    normalized = (content_type or "").strip().lower()
    if normalized not in CONTENT_TYPES:
        raise ValueError(f'Invalid content type {content_type!r}. Must be "anime" or "manga"')
    return normalized


def strip_html(text: str | None) -> str | None:
    if not text:
        return None
    cleaned = _TAG_RE.sub("", text).strip()
    return cleaned or None


def format_fuzzy_date(value: dict[str, Any] | None) -> str | None:
    """Render an AniList FuzzyDate as ``YYYY-MM-DD``; partial dates pad month/day with 1."""

    if not value or not value.get("year"):
        return None
    year = int(value["year"])
    month = int(value.get("month") or 1)
    day = int(value.get("day") or 1)
    if year < 1900 or year > 2100:
        return None
    try:
        return date(year, month, day).isoformat()
    except ValueError:
        return None


def map_status(raw_status: str | None, content_type: str) -> str:
    mapping = ANIME_STATUS_MAP if content_type == "anime" else MANGA_STATUS_MAP
    if not raw_status:
        return mapping["FINISHED"]
    return mapping.get(raw_status, raw_status)


def _unique(names: list[str]) -> list[str]:
    seen: set[str] = set()
    rows: list[str] = []
    for name in names:
        name = name.strip()
        if name and name not in seen:
            seen.add(name)
            rows.append(name)
    return rows


def count_votes(item: dict[str, Any]) -> int:
    distribution = (item.get("stats") or {}).get("scoreDistribution") or []
    return sum(int(bucket.get("amount") or 0) for bucket in distribution)


def _studio_names(item: dict[str, Any]) -> list[str]:
    nodes = (item.get("studios") or {}).get("nodes") or []
    return _unique([str(node.get("name")) for node in nodes if node.get("name")])


def _staff_name(node: dict[str, Any]) -> str | None:
    name = node.get("name")
    if isinstance(name, dict):
        return name.get("full")
    return name


def _author_names(item: dict[str, Any]) -> list[str]:
    staff = item.get("staff") or {}
    names: list[str] = []
    for edge in staff.get("edges") or []:
        node = edge.get("node") or {}
        occupations = set(node.get("primaryOccupations") or [])
        role = edge.get("role") or ""
        if occupations & AUTHOR_OCCUPATIONS or "Story" in role:
            name = _staff_name(node)
            if name:
                names.append(str(name))
    for node in staff.get("nodes") or []:
        if set(node.get("primaryOccupations") or []) & AUTHOR_OCCUPATIONS:
            name = _staff_name(node)
            if name:
                names.append(str(name))
    return _unique(names)


def _epoch_to_iso(value: Any) -> str | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=UTC).isoformat()


def parse_title(item: dict[str, Any], content_type: str) -> TitleRecord:
    titles = item.get("title") or {}
    cover = item.get("coverImage") or {}
    start = item.get("startDate") or {}
    mean_score = item.get("meanScore")
    return TitleRecord(
        anilist_id=int(item["id"]),
        mal_id=item.get("idMal"),
        content_type=content_type,
        title=titles.get("romaji") or titles.get("english") or UNKNOWN_TITLE,
        title_english=titles.get("english"),
        title_japanese=titles.get("native"),
        synopsis=strip_html(item.get("description")),
        image_url=cover.get("large") or cover.get("medium"),
        banner_image=item.get("bannerImage"),
        score=item.get("averageScore"),
        anilist_score=item.get("averageScore"),
        popularity=int(item.get("popularity") or 0),
        favorites=int(item.get("favourites") or 0),
        members=int(item.get("popularity") or 0),
        rank=math.floor(mean_score * 10) if mean_score else None,
        year=item.get("seasonYear") or start.get("year"),
        color_theme=cover.get("color"),
        num_users_voted=count_votes(item),
        updated_at_source=item.get("updatedAt"),
    )


def parse_anime_details(item: dict[str, Any]) -> AnimeDetails:
    trailer = item.get("trailer") or {}
    is_youtube = trailer.get("site") == "youtube" and trailer.get("id")
    next_airing = item.get("nextAiringEpisode") or {}
    return AnimeDetails(
        episodes=item.get("episodes"),
        aired_from=format_fuzzy_date(item.get("startDate")),
        aired_to=format_fuzzy_date(item.get("endDate")),
        season=item.get("season"),
        status=map_status(item.get("status"), "anime"),
        type=item.get("format") or "TV",
        trailer_url=f"https://www.youtube.com/watch?v={trailer['id']}" if is_youtube else None,
        trailer_id=trailer.get("id") if is_youtube else None,
        trailer_site=trailer.get("site"),
        next_episode_date=_epoch_to_iso(next_airing.get("airingAt")),
        next_episode_number=next_airing.get("episode"),
    )


def parse_manga_details(item: dict[str, Any]) -> MangaDetails:
    return MangaDetails(
        chapters=item.get("chapters"),
        volumes=item.get("volumes"),
        published_from=format_fuzzy_date(item.get("startDate")),
        published_to=format_fuzzy_date(item.get("endDate")),
        status=map_status(item.get("status"), "manga"),
        type=item.get("format") or "Manga",
    )


def parse_media(item: dict[str, Any], content_type: str) -> MediaItem:
    content_type = require_content_type(content_type)
    title = parse_title(item, content_type)
    genres = _unique([str(genre) for genre in item.get("genres") or []])
    if content_type == "anime":
        return MediaItem(
            title=title,
            anime=parse_anime_details(item),
            genres=genres,
            studios=_studio_names(item),
        )
    return MediaItem(
        title=title,
        manga=parse_manga_details(item),
        genres=genres,
        authors=_author_names(item),
    )


def parse_vote_counts(items: list[dict[str, Any]]) -> list[VoteCount]:
    return [
        VoteCount(anilist_id=int(item["id"]), num_users_voted=count_votes(item))
        for item in items
        if item.get("id") is not None
    ]
