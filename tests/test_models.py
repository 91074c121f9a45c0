from __future__ import annotations

import pytest

from anicatalog.models import (
    SyncProgress,
    format_fuzzy_date,
    map_status,
    parse_media,
    parse_vote_counts,
    require_content_type,
    strip_html,
)
from tests.fakes import make_media


def test_parse_anime_media_maps_fields() -> None:
    raw = make_media(3, "anime")
    raw["nextAiringEpisode"] = {"episode": 5, "airingAt": 1717200000}

    item = parse_media(raw, "anime")

    assert item.title.anilist_id == 3
    assert item.title.title == "Anime 3"
    assert item.title.synopsis == "Synopsis 3"
    assert item.title.score == item.title.anilist_score == 63
    assert item.title.rank == 640
    assert item.title.members == item.title.popularity
    assert item.title.year == 2003
    assert item.title.num_users_voted == 8
    assert item.anime is not None and item.manga is None
    assert item.anime.status == "Currently Airing"
    assert item.anime.aired_from == "2003-04-01"
    assert item.anime.aired_to is None
    assert item.anime.trailer_url == "https://www.youtube.com/watch?v=yt3"
    assert item.anime.next_episode_date == "2024-06-01T00:00:00+00:00"
    assert item.anime.next_episode_number == 5
    assert item.studios == ["Studio A"]
    assert item.authors == []


def test_parse_manga_media_collects_authors_and_defaults() -> None:
    raw = make_media(4, "manga")
    raw["status"] = None
    raw["format"] = None
    raw["staff"]["edges"].append(
        {"role": "Art", "node": {"name": {"full": "Illustrator"}, "primaryOccupations": ["Illustrator"]}}
    )
    raw["staff"]["edges"].append(
        {"role": "Story", "node": {"name": {"full": "Author 0"}, "primaryOccupations": []}}
    )

    item = parse_media(raw, "manga")

    assert item.manga is not None
    assert item.manga.status == "Finished"
    assert item.manga.type == "Manga"
    assert item.manga.chapters == 100
    assert item.authors == ["Author 0"]
    assert item.studios == []


def test_title_falls_back_to_english_then_unknown() -> None:
    raw = make_media(5, "anime")
    raw["title"] = {"romaji": None, "english": "English Only", "native": None}
    assert parse_media(raw, "anime").title.title == "English Only"

    raw["title"] = {}
    assert parse_media(raw, "anime").title.title == "Unknown Title"


def test_trailer_url_only_for_youtube() -> None:
    raw = make_media(6, "anime")
    raw["trailer"] = {"id": "dm1", "site": "dailymotion"}

    details = parse_media(raw, "anime").anime

    assert details.trailer_url is None
    assert details.trailer_id is None
    assert details.trailer_site == "dailymotion"


@pytest.mark.parametrize(
    "value, expected",
    [
        (None, None),
        ({"year": None}, None),
        ({"year": 2020}, "2020-01-01"),
        ({"year": 2020, "month": 2, "day": 29}, "2020-02-29"),
        ({"year": 2021, "month": 2, "day": 30}, None),
        ({"year": 1850, "month": 1, "day": 1}, None),
        ({"year": 2150, "month": 1, "day": 1}, None),
    ],
)
def test_format_fuzzy_date(value, expected) -> None:
    assert format_fuzzy_date(value) == expected


def test_status_mapping_passes_unknown_values_through() -> None:
    assert map_status("HIATUS", "anime") == "Hiatus"
    assert map_status("HIATUS", "manga") == "On Hiatus"
    assert map_status(None, "anime") == "Finished Airing"
    assert map_status("SOMETHING_NEW", "manga") == "SOMETHING_NEW"


def test_strip_html_returns_none_for_empty_text() -> None:
    assert strip_html("<br><br>") is None
    assert strip_html("  <i>Hello</i> world ") == "Hello world"


def test_require_content_type() -> None:
    assert require_content_type(" Manga ") == "manga"
    with pytest.raises(ValueError):
        require_content_type("novel")


def test_parse_vote_counts_skips_items_without_id() -> None:
    counts = parse_vote_counts(
        [
            {"id": 1, "stats": {"scoreDistribution": [{"amount": 3}, {"amount": 4}]}},
            {"id": None},
            {"id": 2, "stats": None},
        ]
    )
    assert [(row.anilist_id, row.num_users_voted) for row in counts] == [(1, 7), (2, 0)]


def test_sync_progress_merge() -> None:
    total = SyncProgress(pages=1, processed=2)
    total.merge(SyncProgress(pages=1, processed=3, errors=1))
    assert total.as_dict()["processed"] == 5
    assert total.pages == 2
    assert total.errors == 1
