from __future__ import annotations

from datetime import UTC, datetime
import json
from pathlib import Path
import sqlite3
from typing import Any

import pandas as pd


MANIFEST_NAME = "catalog_manifest.json"


def _read_query(conn: sqlite3.Connection, query: str, params: tuple[Any, ...] = ()) -> pd.DataFrame:
    return pd.read_sql_query(query, conn, params=params)


def _scalar(conn: sqlite3.Connection, query: str) -> int:
    return int(_read_query(conn, query)["c"].iloc[0])


def export_catalog_to_parquet(*, db_path: Path, out_dir: Path) -> dict[str, Any]:
    if not db_path.exists():
        raise FileNotFoundError(f"Catalog database not found: {db_path}")
    out_dir.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)

    datasets = {
        "titles": (
            """
            SELECT id, anilist_id, mal_id, content_type, title, title_english, title_japanese,
                   synopsis, image_url, banner_image, score, anilist_score, popularity, favorites,
                   members, rank, year, color_theme, num_users_voted, created_at, updated_at
            FROM titles
            ORDER BY anilist_id
            """,
            "titles.parquet",
        ),
        "anime_details": (
            """
            SELECT t.anilist_id, d.*
            FROM anime_details d
            JOIN titles t ON t.id = d.title_id
            ORDER BY t.anilist_id
            """,
            "anime_details.parquet",
        ),
        "manga_details": (
            """
            SELECT t.anilist_id, d.*
            FROM manga_details d
            JOIN titles t ON t.id = d.title_id
            ORDER BY t.anilist_id
            """,
            "manga_details.parquet",
        ),
        "title_genres": (
            """
            SELECT t.anilist_id, tg.title_id, g.name AS genre
            FROM title_genres tg
            JOIN genres g ON g.id = tg.genre_id
            JOIN titles t ON t.id = tg.title_id
            ORDER BY t.anilist_id, g.name
            """,
            "title_genres.parquet",
        ),
        "user_title_lists": (
            """
            SELECT l.id, l.user_id, l.title_id, l.media_type, s.name AS status, l.score,
                   l.progress, l.notes, l.start_date, l.finish_date, l.added_at, l.updated_at
            FROM user_title_lists l
            JOIN list_statuses s ON s.id = l.status_id
            ORDER BY l.user_id, l.added_at
            """,
            "user_title_lists.parquet",
        ),
        "cron_job_logs": (
            """
            SELECT id, job_name, status, error_message, details_json, executed_at
            FROM cron_job_logs
            ORDER BY id
            """,
            "cron_job_logs.parquet",
        ),
    }

    counts: dict[str, int] = {}
    for name, (query, filename) in datasets.items():
        df = _read_query(conn, query)
        df.to_parquet(out_dir / filename, index=False)
        counts[name] = int(len(df))

    quality = {
        "duplicate_anilist_ids": _scalar(
            conn,
            """
            SELECT COUNT(*) AS c
            FROM (
                SELECT anilist_id, COUNT(*) AS n
                FROM titles
                GROUP BY anilist_id
                HAVING n > 1
            )
            """,
        ),
        "titles_without_details": _scalar(
            conn,
            """
            SELECT COUNT(*) AS c
            FROM titles t
            LEFT JOIN anime_details a ON a.title_id = t.id
            LEFT JOIN manga_details m ON m.title_id = t.id
            WHERE a.title_id IS NULL AND m.title_id IS NULL
            """,
        ),
        "list_entries_without_title": _scalar(
            conn,
            """
            SELECT COUNT(*) AS c
            FROM user_title_lists l
            LEFT JOIN titles t ON t.id = l.title_id
            WHERE t.id IS NULL
            """,
        ),
    }

    manifest = {
        "schema_version": 1,
        "generated_at": datetime.now(UTC).isoformat(),
        "database": str(db_path),
        "counts": counts,
        "quality_checks": quality,
    }

    with (out_dir / MANIFEST_NAME).open("w", encoding="utf-8") as handle:
        json.dump(manifest, handle, indent=2)

    conn.close()
    return manifest
