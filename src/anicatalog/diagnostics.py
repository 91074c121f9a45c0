from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
import logging

from .storage_sqlite import JOB_ERROR, CatalogStorage


logger = logging.getLogger(__name__)

LOW_ANIME_COUNT = 1000
LOW_MANGA_COUNT = 1000
LOW_GENRE_COUNT = 20
TARGET_ANIME_COUNT = 10000
TARGET_MANGA_COUNT = 50000
TARGET_GENRE_COUNT = 50


@dataclass(slots=True)
class DiagnosticsReport:
    generated_at: str
    counts: dict[str, int]
    dead_letters: dict[str, int]
    api_healthy: bool | None
    last_job_at: str | None
    recent_job_errors: int
    titles_without_genres: int
    orphan_titles: int
    active_locks: list[str] = field(default_factory=list)
    issues: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)


def _recommendations(counts: dict[str, int], api_healthy: bool | None) -> list[str]:
    recommendations: list[str] = []
    if counts["anime"] < TARGET_ANIME_COUNT:
        recommendations.append("Run a full anime sync to grow the anime catalog")
    if counts["manga"] < TARGET_MANGA_COUNT:
        recommendations.append("Run a full manga sync to grow the manga catalog")
    if counts["genres"] < TARGET_GENRE_COUNT:
        recommendations.append("Genre data appears incomplete; check that genre links are being written")
    if api_healthy is False:
        recommendations.append("AniList API is unreachable; check network access and rate limiting")
    if not recommendations:
        recommendations.append("Database appears healthy; continue with incremental syncs")
    return recommendations


async def run_diagnostics(storage: CatalogStorage, client=None, job_window: int = 10) -> DiagnosticsReport:
    counts = storage.catalog_counts()
    issues: list[str] = []

    if counts["anime"] < LOW_ANIME_COUNT:
        issues.append("Low anime count; a full sync may be needed")
    if counts["manga"] < LOW_MANGA_COUNT:
        issues.append("Low manga count; a full sync may be needed")
    if counts["genres"] < LOW_GENRE_COUNT:
        issues.append("Low genre count; relationship data may be missing")

    jobs = storage.recent_jobs(limit=job_window)
    job_errors = sum(1 for job in jobs if job["status"] == JOB_ERROR)
    if job_errors:
        issues.append(f"{job_errors} of the last {len(jobs)} jobs failed")

    without_genres = storage.titles_without_genres()
    if without_genres:
        issues.append(f"{len(without_genres)} titles have no genre links")

    orphans = storage.orphan_titles()
    if orphans:
        issues.append(f"{len(orphans)} titles have neither anime nor manga details")

    dead_letters = storage.dead_letter_counts()
    if dead_letters["exhausted"]:
        issues.append(f"{dead_letters['exhausted']} dead-letter items exhausted their retries")

    api_healthy: bool | None = None
    if client is not None:
        api_healthy = await client.ping()
        if not api_healthy:
            issues.append("Cannot reach the AniList API")

    report = DiagnosticsReport(
        generated_at=datetime.now(UTC).isoformat(),
        counts=counts,
        dead_letters=dead_letters,
        api_healthy=api_healthy,
        last_job_at=jobs[0]["executed_at"] if jobs else None,
        recent_job_errors=job_errors,
        titles_without_genres=len(without_genres),
        orphan_titles=len(orphans),
        active_locks=[lock["name"] for lock in storage.active_locks()],
        issues=issues,
        recommendations=_recommendations(counts, api_healthy),
    )
    logger.info("Diagnostics: %d issues", len(issues))
    return report


def heal(storage: CatalogStorage) -> list[str]:
    """Repair what can be repaired locally; returns a description of each action."""

    actions: list[str] = []
    removed = storage.delete_orphan_titles()
    if removed:
        actions.append(f"Deleted {removed} orphan titles")
    missing = storage.titles_without_genres()
    if missing:
        actions.append(f"Found {len(missing)} titles without genre links; re-sync them to repair")
    if not actions:
        actions.append("No repairs needed")
    for action in actions:
        logger.info("Heal: %s", action)
    return actions
