from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
import json
from pathlib import Path
import sqlite3
import time
from typing import Any
import uuid

from .models import MediaItem, SyncProgress, VoteCount


RUNNING = "running"
COMPLETED = "completed"
PARTIAL = "partial_success"
FAILED = "failed"

JOB_SUCCESS = "success"
JOB_PARTIAL = "partial_success"
JOB_ERROR = "error"

LIST_STATUSES: tuple[tuple[str, str, str, int], ...] = (
    ("watching", "Watching", "anime", 1),
    ("reading", "Reading", "manga", 1),
    ("completed", "Completed", "both", 2),
    ("on_hold", "On Hold", "both", 3),
    ("dropped", "Dropped", "both", 4),
    ("plan_to_watch", "Plan to Watch", "anime", 5),
    ("plan_to_read", "Plan to Read", "manga", 5),
)


class SyncInProgressError(RuntimeError):
    def __init__(self, name: str, holder: str, expires_at: float) -> None:
        self.name = name
        self.holder = holder
        self.expires_at = expires_at
        until = datetime.fromtimestamp(expires_at, tz=UTC).isoformat()
        super().__init__(f"{name} is already running (owner={holder}, lease until {until})")


@dataclass(slots=True)
class RunStats:
    run_id: str
    job_name: str
    content_type: str | None
    status: str
    started_at: str
    finished_at: str | None
    pages: int
    processed: int
    created: int
    updated: int
    skipped: int
    errors: int
    dead_lettered: int
    last_page: int


def utc_now_iso(now: datetime | None = None) -> str:
    return (now or datetime.now(UTC)).isoformat(timespec="microseconds")


def new_id() -> str:
    return uuid.uuid4().hex


class CatalogStorage:
    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(db_path)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL;")
        self.conn.execute("PRAGMA synchronous=NORMAL;")
        self.conn.execute("PRAGMA foreign_keys=ON;")

    def close(self) -> None:
        self.conn.close()

    def __enter__(self) -> CatalogStorage:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def initialize(self) -> None:
        self.conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS titles (
                id TEXT PRIMARY KEY,
                anilist_id INTEGER NOT NULL UNIQUE,
                mal_id INTEGER,
                content_type TEXT NOT NULL,
                title TEXT NOT NULL,
                title_english TEXT,
                title_japanese TEXT,
                synopsis TEXT,
                image_url TEXT,
                banner_image TEXT,
                score INTEGER,
                anilist_score INTEGER,
                popularity INTEGER NOT NULL DEFAULT 0,
                favorites INTEGER NOT NULL DEFAULT 0,
                members INTEGER NOT NULL DEFAULT 0,
                rank INTEGER,
                year INTEGER,
                color_theme TEXT,
                num_users_voted INTEGER NOT NULL DEFAULT 0,
                updated_at_source INTEGER,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS anime_details (
                title_id TEXT PRIMARY KEY,
                episodes INTEGER,
                aired_from TEXT,
                aired_to TEXT,
                season TEXT,
                status TEXT,
                type TEXT,
                trailer_url TEXT,
                trailer_id TEXT,
                trailer_site TEXT,
                next_episode_date TEXT,
                next_episode_number INTEGER,
                last_sync_check TEXT NOT NULL,
                FOREIGN KEY (title_id) REFERENCES titles(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS manga_details (
                title_id TEXT PRIMARY KEY,
                chapters INTEGER,
                volumes INTEGER,
                published_from TEXT,
                published_to TEXT,
                status TEXT,
                type TEXT,
                last_sync_check TEXT NOT NULL,
                FOREIGN KEY (title_id) REFERENCES titles(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS genres (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL UNIQUE,
                type TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS studios (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL UNIQUE,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS authors (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL UNIQUE,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS title_genres (
                title_id TEXT NOT NULL,
                genre_id INTEGER NOT NULL,
                PRIMARY KEY (title_id, genre_id),
                FOREIGN KEY (title_id) REFERENCES titles(id) ON DELETE CASCADE,
                FOREIGN KEY (genre_id) REFERENCES genres(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS title_studios (
                title_id TEXT NOT NULL,
                studio_id INTEGER NOT NULL,
                PRIMARY KEY (title_id, studio_id),
                FOREIGN KEY (title_id) REFERENCES titles(id) ON DELETE CASCADE,
                FOREIGN KEY (studio_id) REFERENCES studios(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS title_authors (
                title_id TEXT NOT NULL,
                author_id INTEGER NOT NULL,
                PRIMARY KEY (title_id, author_id),
                FOREIGN KEY (title_id) REFERENCES titles(id) ON DELETE CASCADE,
                FOREIGN KEY (author_id) REFERENCES authors(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS sync_runs (
                run_id TEXT PRIMARY KEY,
                job_name TEXT NOT NULL,
                content_type TEXT,
                status TEXT NOT NULL,
                started_at TEXT NOT NULL,
                finished_at TEXT,
                pages INTEGER NOT NULL DEFAULT 0,
                processed INTEGER NOT NULL DEFAULT 0,
                created INTEGER NOT NULL DEFAULT 0,
                updated INTEGER NOT NULL DEFAULT 0,
                skipped INTEGER NOT NULL DEFAULT 0,
                errors INTEGER NOT NULL DEFAULT 0,
                dead_lettered INTEGER NOT NULL DEFAULT 0
            );

            CREATE TABLE IF NOT EXISTS checkpoints (
                run_id TEXT NOT NULL,
                key TEXT NOT NULL,
                value TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (run_id, key),
                FOREIGN KEY (run_id) REFERENCES sync_runs(run_id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS sync_locks (
                name TEXT PRIMARY KEY,
                owner TEXT NOT NULL,
                acquired_at REAL NOT NULL,
                expires_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS cron_job_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                job_name TEXT NOT NULL,
                status TEXT NOT NULL,
                error_message TEXT,
                details_json TEXT NOT NULL,
                executed_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS dead_letter_queue (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                operation_type TEXT NOT NULL,
                dedupe_key TEXT NOT NULL,
                payload_json TEXT NOT NULL,
                error_message TEXT,
                retry_count INTEGER NOT NULL DEFAULT 0,
                max_retries INTEGER NOT NULL,
                next_retry_at TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE (operation_type, dedupe_key)
            );

            CREATE TABLE IF NOT EXISTS list_statuses (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                label TEXT NOT NULL,
                media_type TEXT NOT NULL,
                sort_order INTEGER NOT NULL,
                UNIQUE (name, media_type)
            );

            CREATE TABLE IF NOT EXISTS user_title_lists (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                title_id TEXT NOT NULL,
                media_type TEXT NOT NULL,
                status_id INTEGER NOT NULL,
                score INTEGER,
                progress INTEGER NOT NULL DEFAULT 0,
                notes TEXT,
                start_date TEXT,
                finish_date TEXT,
                added_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE (user_id, title_id),
                FOREIGN KEY (title_id) REFERENCES titles(id) ON DELETE CASCADE,
                FOREIGN KEY (status_id) REFERENCES list_statuses(id)
            );

            CREATE INDEX IF NOT EXISTS idx_titles_type_score ON titles(content_type, score DESC);
            CREATE INDEX IF NOT EXISTS idx_titles_popularity ON titles(popularity DESC);
            CREATE INDEX IF NOT EXISTS idx_anime_next_episode ON anime_details(next_episode_date);
            CREATE INDEX IF NOT EXISTS idx_cron_job_logs_job ON cron_job_logs(job_name, executed_at DESC);
            CREATE INDEX IF NOT EXISTS idx_dlq_due ON dead_letter_queue(next_retry_at, retry_count);
            CREATE INDEX IF NOT EXISTS idx_user_lists_user ON user_title_lists(user_id, updated_at DESC);
            """
        )
        self.conn.executemany(
            """
            INSERT OR IGNORE INTO list_statuses(name, label, media_type, sort_order)
            VALUES(?, ?, ?, ?)
            """,
            LIST_STATUSES,
        )
        self.conn.commit()

    # Catalog writes

    def _ensure_names(self, table: str, names: list[str], genre_type: str | None = None) -> list[int]:
        if not names:
            return []
        now = utc_now_iso()
        if table == "genres":
            self.conn.executemany(
                """
                INSERT INTO genres(name, type, created_at)
                VALUES(?, ?, ?)
                ON CONFLICT(name)
                DO UPDATE SET type=CASE
                    WHEN genres.type IS NULL OR genres.type = excluded.type THEN excluded.type
                    ELSE 'both'
                END
                """,
                [(name, genre_type, now) for name in names],
            )
        else:
            self.conn.executemany(
                f"INSERT OR IGNORE INTO {table}(name, created_at) VALUES(?, ?)",
                [(name, now) for name in names],
            )
        placeholders = ",".join("?" for _ in names)
        rows = self.conn.execute(
            f"SELECT id, name FROM {table} WHERE name IN ({placeholders})",
            names,
        ).fetchall()
        by_name = {row["name"]: int(row["id"]) for row in rows}
        return [by_name[name] for name in names if name in by_name]

    def _replace_links(self, table: str, column: str, title_id: str, ids: list[int]) -> int:
        self.conn.execute(f"DELETE FROM {table} WHERE title_id=?", (title_id,))
        if not ids:
            return 0
        self.conn.executemany(
            f"INSERT OR IGNORE INTO {table}(title_id, {column}) VALUES(?, ?)",
            [(title_id, link_id) for link_id in ids],
        )
        return len(ids)

    def find_title_id(self, anilist_id: int) -> str | None:
        row = self.conn.execute(
            "SELECT id FROM titles WHERE anilist_id=?",
            (anilist_id,),
        ).fetchone()
        return str(row["id"]) if row else None

    def upsert_media(self, item: MediaItem) -> tuple[str, bool]:
        """Write a title, its details and its links atomically. Returns ``(title_id, created)``."""

        title = item.title
        now = utc_now_iso()
        values = title.model_dump(exclude={"anilist_id"})
        columns = list(values)

        with self.conn:
            title_id = self.find_title_id(title.anilist_id)
            created = title_id is None
            if created:
                title_id = new_id()
                insert_columns = ["id", "anilist_id", *columns, "created_at", "updated_at"]
                self.conn.execute(
                    f"INSERT INTO titles({', '.join(insert_columns)}) "
                    f"VALUES({', '.join('?' for _ in insert_columns)})",
                    (title_id, title.anilist_id, *values.values(), now, now),
                )
            else:
                assignments = ", ".join(f"{column}=?" for column in columns)
                self.conn.execute(
                    f"UPDATE titles SET {assignments}, updated_at=? WHERE id=?",
                    (*values.values(), now, title_id),
                )

            if item.anime is not None:
                details = item.anime.model_dump()
                self._upsert_details("anime_details", title_id, details, now)
            if item.manga is not None:
                details = item.manga.model_dump()
                self._upsert_details("manga_details", title_id, details, now)

            genre_ids = self._ensure_names("genres", item.genres, genre_type=title.content_type)
            self._replace_links("title_genres", "genre_id", title_id, genre_ids)
            if title.content_type == "anime":
                studio_ids = self._ensure_names("studios", item.studios)
                self._replace_links("title_studios", "studio_id", title_id, studio_ids)
            else:
                author_ids = self._ensure_names("authors", item.authors)
                self._replace_links("title_authors", "author_id", title_id, author_ids)

        return title_id, created

    def _upsert_details(self, table: str, title_id: str, details: dict[str, Any], now: str) -> None:
        columns = ["title_id", *details, "last_sync_check"]
        updates = ", ".join(f"{column}=excluded.{column}" for column in columns[1:])
        self.conn.execute(
            f"""
            INSERT INTO {table}({', '.join(columns)})
            VALUES({', '.join('?' for _ in columns)})
            ON CONFLICT(title_id) DO UPDATE SET {updates}
            """,
            (title_id, *details.values(), now),
        )

    def update_vote_counts(self, rows: list[VoteCount]) -> int:
        if not rows:
            return 0
        now = utc_now_iso()
        updated = 0
        with self.conn:
            for row in rows:
                cursor = self.conn.execute(
                    "UPDATE titles SET num_users_voted=?, updated_at=? WHERE anilist_id=?",
                    (row.num_users_voted, now, row.anilist_id),
                )
                updated += cursor.rowcount
        return updated

    # Runs and checkpoints

    def create_run(self, run_id: str, job_name: str, content_type: str | None) -> None:
        self.conn.execute(
            """
            INSERT OR IGNORE INTO sync_runs(run_id, job_name, content_type, status, started_at)
            VALUES(?, ?, ?, ?, ?)
            """,
            (run_id, job_name, content_type, RUNNING, utc_now_iso()),
        )
        self.conn.commit()

    def run_exists(self, run_id: str) -> bool:
        row = self.conn.execute("SELECT 1 FROM sync_runs WHERE run_id=?", (run_id,)).fetchone()
        return row is not None

    def set_run_status(self, run_id: str, status: str) -> None:
        finished_at = utc_now_iso() if status != RUNNING else None
        self.conn.execute(
            "UPDATE sync_runs SET status=?, finished_at=? WHERE run_id=?",
            (status, finished_at, run_id),
        )
        self.conn.commit()

    def add_run_progress(self, run_id: str, progress: SyncProgress) -> None:
        counts = progress.as_dict()
        assignments = ", ".join(f"{key}={key} + ?" for key in counts)
        self.conn.execute(
            f"UPDATE sync_runs SET {assignments} WHERE run_id=?",
            (*counts.values(), run_id),
        )
        self.conn.commit()

    def set_checkpoint(self, run_id: str, key: str, value: str) -> None:
        self.conn.execute(
            """
            INSERT INTO checkpoints(run_id, key, value, updated_at)
            VALUES(?, ?, ?, ?)
            ON CONFLICT(run_id, key)
            DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
            """,
            (run_id, key, value, utc_now_iso()),
        )
        self.conn.commit()

    def get_checkpoint(self, run_id: str, key: str, default: str | None = None) -> str | None:
        row = self.conn.execute(
            "SELECT value FROM checkpoints WHERE run_id=? AND key=?",
            (run_id, key),
        ).fetchone()
        return row["value"] if row else default

    def get_run(self, run_id: str) -> RunStats:
        row = self.conn.execute("SELECT * FROM sync_runs WHERE run_id=?", (run_id,)).fetchone()
        if row is None:
            raise ValueError(f"Unknown run id: {run_id}")
        return RunStats(
            run_id=row["run_id"],
            job_name=row["job_name"],
            content_type=row["content_type"],
            status=row["status"],
            started_at=row["started_at"],
            finished_at=row["finished_at"],
            pages=int(row["pages"]),
            processed=int(row["processed"]),
            created=int(row["created"]),
            updated=int(row["updated"]),
            skipped=int(row["skipped"]),
            errors=int(row["errors"]),
            dead_lettered=int(row["dead_lettered"]),
            last_page=int(self.get_checkpoint(run_id, "last_page", "0") or "0"),
        )

    def latest_run_id(self) -> str | None:
        row = self.conn.execute(
            "SELECT run_id FROM sync_runs ORDER BY started_at DESC LIMIT 1"
        ).fetchone()
        return str(row["run_id"]) if row else None

    # Single-flight leases

    def acquire_lock(self, name: str, owner: str, ttl_seconds: float) -> None:
        now = time.time()
        self.conn.execute(
            """
            INSERT INTO sync_locks(name, owner, acquired_at, expires_at)
            VALUES(?, ?, ?, ?)
            ON CONFLICT(name) DO UPDATE SET
                owner=excluded.owner,
                acquired_at=excluded.acquired_at,
                expires_at=excluded.expires_at
            WHERE sync_locks.expires_at <= ? OR sync_locks.owner = excluded.owner
            """,
            (name, owner, now, now + ttl_seconds, now),
        )
        self.conn.commit()
        row = self.conn.execute(
            "SELECT owner, expires_at FROM sync_locks WHERE name=?",
            (name,),
        ).fetchone()
        if row is None or row["owner"] != owner:
            holder = row["owner"] if row else "unknown"
            expires_at = float(row["expires_at"]) if row else now
            raise SyncInProgressError(name, holder, expires_at)

    def release_lock(self, name: str, owner: str) -> bool:
        cursor = self.conn.execute(
            "DELETE FROM sync_locks WHERE name=? AND owner=?",
            (name, owner),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def active_locks(self) -> list[dict[str, Any]]:
        rows = self.conn.execute(
            "SELECT name, owner, acquired_at, expires_at FROM sync_locks WHERE expires_at > ? ORDER BY name",
            (time.time(),),
        ).fetchall()
        return [dict(row) for row in rows]

    # Job log

    def log_job(
        self,
        job_name: str,
        status: str,
        details: dict[str, Any],
        error_message: str | None = None,
    ) -> int:
        cursor = self.conn.execute(
            """
            INSERT INTO cron_job_logs(job_name, status, error_message, details_json, executed_at)
            VALUES(?, ?, ?, ?, ?)
            """,
            (job_name, status, error_message, json.dumps(details, ensure_ascii=True, default=str), utc_now_iso()),
        )
        self.conn.commit()
        return int(cursor.lastrowid)

    def recent_jobs(self, limit: int = 10, job_name: str | None = None) -> list[dict[str, Any]]:
        if job_name is None:
            rows = self.conn.execute(
                "SELECT * FROM cron_job_logs ORDER BY id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        else:
            rows = self.conn.execute(
                "SELECT * FROM cron_job_logs WHERE job_name=? ORDER BY id DESC LIMIT ?",
                (job_name, limit),
            ).fetchall()
        jobs: list[dict[str, Any]] = []
        for row in rows:
            job = dict(row)
            job["details"] = json.loads(job.pop("details_json") or "{}")
            jobs.append(job)
        return jobs

    # Dead-letter queue

    def enqueue_dead_letter(
        self,
        operation_type: str,
        dedupe_key: str,
        payload: dict[str, Any],
        error_message: str,
        max_retries: int,
    ) -> None:
        now = utc_now_iso()
        self.conn.execute(
            """
            INSERT INTO dead_letter_queue(
                operation_type, dedupe_key, payload_json, error_message, retry_count,
                max_retries, next_retry_at, created_at, updated_at
            )
            VALUES(?, ?, ?, ?, 0, ?, ?, ?, ?)
            ON CONFLICT(operation_type, dedupe_key)
            DO UPDATE SET
                payload_json=excluded.payload_json,
                error_message=excluded.error_message,
                updated_at=excluded.updated_at
            """,
            (
                operation_type,
                dedupe_key,
                json.dumps(payload, ensure_ascii=True),
                error_message,
                max_retries,
                now,
                now,
                now,
            ),
        )
        self.conn.commit()

    def due_dead_letters(self, limit: int = 50, now: datetime | None = None) -> list[dict[str, Any]]:
        rows = self.conn.execute(
            """
            SELECT *
            FROM dead_letter_queue
            WHERE retry_count < max_retries AND next_retry_at <= ?
            ORDER BY created_at ASC, id ASC
            LIMIT ?
            """,
            (utc_now_iso(now), limit),
        ).fetchall()
        items: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["payload"] = json.loads(item.pop("payload_json"))
            items.append(item)
        return items

    def resolve_dead_letter(self, item_id: int) -> None:
        self.conn.execute("DELETE FROM dead_letter_queue WHERE id=?", (item_id,))
        self.conn.commit()

    def fail_dead_letter(self, item_id: int, error_message: str, now: datetime | None = None) -> bool:
        """Record a failed retry. Returns ``True`` when the item has exhausted its retries."""

        row = self.conn.execute(
            "SELECT retry_count, max_retries FROM dead_letter_queue WHERE id=?",
            (item_id,),
        ).fetchone()
        if row is None:
            raise ValueError(f"Unknown dead letter id: {item_id}")
        now = now or datetime.now(UTC)
        retry_count = int(row["retry_count"]) + 1
        exhausted = retry_count >= int(row["max_retries"])
        next_retry_at = now + timedelta(minutes=2**retry_count)
        self.conn.execute(
            """
            UPDATE dead_letter_queue
            SET retry_count=?, error_message=?, next_retry_at=?, updated_at=?
            WHERE id=?
            """,
            (retry_count, error_message, utc_now_iso(next_retry_at), utc_now_iso(now), item_id),
        )
        self.conn.commit()
        return exhausted

    def exhaust_dead_letter(self, item_id: int, error_message: str) -> None:
        self.conn.execute(
            """
            UPDATE dead_letter_queue
            SET retry_count=max_retries, error_message=?, updated_at=?
            WHERE id=?
            """,
            (error_message, utc_now_iso(), item_id),
        )
        self.conn.commit()

    def dead_letter_counts(self) -> dict[str, int]:
        row = self.conn.execute(
            """
            SELECT
                SUM(CASE WHEN retry_count < max_retries THEN 1 ELSE 0 END) AS pending,
                SUM(CASE WHEN retry_count >= max_retries THEN 1 ELSE 0 END) AS exhausted
            FROM dead_letter_queue
            """
        ).fetchone()
        return {"pending": int(row["pending"] or 0), "exhausted": int(row["exhausted"] or 0)}

    # Health

    def catalog_counts(self) -> dict[str, int]:
        def count(query: str) -> int:
            return int(self.conn.execute(query).fetchone()["c"])

        return {
            "anime": count("SELECT COUNT(*) AS c FROM anime_details"),
            "manga": count("SELECT COUNT(*) AS c FROM manga_details"),
            "total": count("SELECT COUNT(*) AS c FROM titles"),
            "genres": count("SELECT COUNT(*) AS c FROM genres"),
            "studios": count("SELECT COUNT(*) AS c FROM studios"),
            "authors": count("SELECT COUNT(*) AS c FROM authors"),
            "list_entries": count("SELECT COUNT(*) AS c FROM user_title_lists"),
        }

    def titles_without_genres(self, limit: int = 100) -> list[str]:
        rows = self.conn.execute(
            """
            SELECT t.id
            FROM titles t
            LEFT JOIN title_genres tg ON tg.title_id = t.id
            WHERE tg.title_id IS NULL
            ORDER BY t.popularity DESC
            LIMIT ?
            """,
            (limit,),
        ).fetchall()
        return [str(row["id"]) for row in rows]

    def orphan_titles(self) -> list[str]:
        rows = self.conn.execute(
            """
            SELECT t.id
            FROM titles t
            LEFT JOIN anime_details a ON a.title_id = t.id
            LEFT JOIN manga_details m ON m.title_id = t.id
            WHERE a.title_id IS NULL AND m.title_id IS NULL
            """
        ).fetchall()
        return [str(row["id"]) for row in rows]

    def delete_orphan_titles(self) -> int:
        orphans = self.orphan_titles()
        if not orphans:
            return 0
        with self.conn:
            self.conn.executemany("DELETE FROM titles WHERE id=?", [(title_id,) for title_id in orphans])
        return len(orphans)
