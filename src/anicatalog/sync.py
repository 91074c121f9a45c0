from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
import logging
import sqlite3
import time
from typing import Any
import uuid

from pydantic import ValidationError

from .http_client import MAX_IDS_PER_REQUEST, AniListError
from .models import (
    UNKNOWN_TITLE,
    SyncProgress,
    parse_media,
    parse_vote_counts,
    require_content_type,
)
from .storage_sqlite import (
    COMPLETED,
    FAILED,
    JOB_ERROR,
    JOB_PARTIAL,
    JOB_SUCCESS,
    PARTIAL,
    RUNNING,
    CatalogStorage,
    SyncInProgressError,
)


logger = logging.getLogger(__name__)

MEDIA_UPSERT = "media_upsert"
DLQ_JOB_NAME = "dlq_processor"
DUAL_JOB_NAME = "dual-sync"

ProgressCallback = Callable[[SyncProgress, int], None] | None


@dataclass(slots=True)
class SyncResult:
    run_id: str
    job_name: str
    content_type: str
    status: str
    progress: SyncProgress
    duration_seconds: float
    last_page: int = 0

    @property
    def items_per_second(self) -> float:
        if self.duration_seconds <= 0:
            return 0.0
        return self.progress.processed / self.duration_seconds


@dataclass(slots=True)
class DualSyncResult:
    results: dict[str, SyncResult] = field(default_factory=dict)
    failures: dict[str, str] = field(default_factory=dict)

    @property
    def status(self) -> str:
        if not self.failures:
            return JOB_SUCCESS
        if self.results:
            return JOB_PARTIAL
        return JOB_ERROR


@dataclass(slots=True)
class DeadLetterResult:
    found: int = 0
    processed: int = 0
    failed: int = 0
    exhausted: int = 0


def _make_run_id(job_name: str) -> str:
    stamp = datetime.now(UTC).strftime("%Y%m%d_%H%M%S")
    suffix = uuid.uuid4().hex[:8]
    return f"{job_name}_{stamp}_{suffix}"


def lock_name_for(content_type: str) -> str:
    return f"sync:{content_type}"


@contextmanager
def sync_lease(storage: CatalogStorage, name: str, owner: str, ttl_seconds: float) -> Iterator[None]:
    storage.acquire_lock(name, owner, ttl_seconds)
    try:
        yield
    finally:
        storage.release_lock(name, owner)


def _media_dedupe_key(content_type: str, anilist_id: Any) -> str:
    return f"{content_type}:{anilist_id}"


def persist_media_items(
    storage: CatalogStorage,
    items: list[dict[str, Any]],
    content_type: str,
    dlq_max_retries: int,
) -> SyncProgress:
    """Parse and store one page of AniList media, dead-lettering items that fail to persist."""

    progress = SyncProgress()
    for item in items:
        anilist_id = item.get("id")
        if anilist_id is None:
            progress.skipped += 1
            continue
        try:
            media = parse_media(item, content_type)
            if media.title.title == UNKNOWN_TITLE:
                progress.skipped += 1
                continue
            _, created = storage.upsert_media(media)
        except (ValidationError, ValueError, sqlite3.Error) as exc:
            logger.error("Failed to store %s %s: %s", content_type, anilist_id, exc)
            progress.errors += 1
            storage.enqueue_dead_letter(
                MEDIA_UPSERT,
                _media_dedupe_key(content_type, anilist_id),
                {"anilist_id": int(anilist_id), "content_type": content_type},
                str(exc),
                dlq_max_retries,
            )
            progress.dead_lettered += 1
            continue
        progress.processed += 1
        if created:
            progress.created += 1
        else:
            progress.updated += 1
    return progress


def _finish_run(
    storage: CatalogStorage,
    *,
    run_id: str,
    job_name: str,
    content_type: str,
    progress: SyncProgress,
    started_at: float,
    extra: dict[str, Any] | None = None,
) -> SyncResult:
    status = COMPLETED if progress.errors == 0 else PARTIAL
    storage.set_run_status(run_id, status)
    duration = time.monotonic() - started_at
    details = {
        "run_id": run_id,
        "content_type": content_type,
        **progress.as_dict(),
        "duration_ms": int(duration * 1000),
        **(extra or {}),
    }
    storage.log_job(
        job_name,
        JOB_SUCCESS if status == COMPLETED else JOB_PARTIAL,
        details,
        error_message=f"{progress.errors} item or page errors" if progress.errors else None,
    )
    logger.info(
        "%s finished: %d processed (%d new, %d updated) in %.1fs",
        job_name,
        progress.processed,
        progress.created,
        progress.updated,
        duration,
    )
    return SyncResult(
        run_id=run_id,
        job_name=job_name,
        content_type=content_type,
        status=status,
        progress=progress,
        duration_seconds=duration,
        last_page=int(storage.get_checkpoint(run_id, "last_page", "0") or "0"),
    )


def _fail_run(storage: CatalogStorage, run_id: str, job_name: str, exc: BaseException) -> None:
    storage.set_run_status(run_id, FAILED)
    storage.log_job(
        job_name,
        JOB_ERROR,
        {"run_id": run_id, "error": repr(exc)},
        error_message=str(exc),
    )
    logger.error("%s failed: %s", job_name, exc)


async def sync_catalog(
    *,
    client,
    storage: CatalogStorage,
    content_type: str,
    max_pages: int,
    concurrency: int = 3,
    per_page: int | None = None,
    run_id: str | None = None,
    owner: str | None = None,
    lock_ttl_seconds: float = 1800,
    dlq_max_retries: int = 5,
    callback: ProgressCallback = None,
) -> SyncResult:
    """Walk the popularity-sorted AniList catalog and upsert every title.

    Pages are fetched ``concurrency`` at a time and stored in page order. The last
    contiguous stored page is checkpointed, so re-running with the same ``run_id``
    resumes after it. A page that fails to fetch ends the run as partial.
    """

    content_type = require_content_type(content_type)
    if max_pages < 1:
        raise ValueError("max_pages must be >= 1")
    job_name = f"sync-{content_type}"
    owner = owner or f"{job_name}:{uuid.uuid4().hex[:8]}"
    lock_name = lock_name_for(content_type)

    with sync_lease(storage, lock_name, owner, lock_ttl_seconds):
        resolved_run_id = run_id or _make_run_id(job_name)
        if not storage.run_exists(resolved_run_id):
            storage.create_run(resolved_run_id, job_name, content_type)
        else:
            storage.set_run_status(resolved_run_id, RUNNING)

        started_at = time.monotonic()
        progress = SyncProgress()
        page = int(storage.get_checkpoint(resolved_run_id, "last_page", "0") or "0") + 1
        logger.info("Starting %s at page %d (max %d)", job_name, page, max_pages)

        async def fetch(page_number: int) -> dict[str, Any] | AniListError:
            try:
                return await client.fetch_media_page(content_type, page_number, per_page=per_page)
            except AniListError as exc:
                return exc

        try:
            done = False
            while page <= max_pages and not done:
                window = list(range(page, min(page + max(1, concurrency), max_pages + 1)))
                pages = await asyncio.gather(*(fetch(number) for number in window))

                window_progress = SyncProgress()
                contiguous = True
                for number, payload in zip(window, pages):
                    if isinstance(payload, AniListError):
                        logger.error("Page %d of %s failed: %s", number, content_type, payload)
                        window_progress.errors += 1
                        contiguous = False
                        done = True
                        continue

                    media = payload.get("media") or []
                    page_progress = persist_media_items(storage, media, content_type, dlq_max_retries)
                    page_progress.pages = 1
                    window_progress.merge(page_progress)
                    if contiguous:
                        storage.set_checkpoint(resolved_run_id, "last_page", str(number))

                    has_next = bool((payload.get("pageInfo") or {}).get("hasNextPage"))
                    if not media or not has_next:
                        done = True
                        contiguous = False

                storage.add_run_progress(resolved_run_id, window_progress)
                progress.merge(window_progress)
                storage.acquire_lock(lock_name, owner, lock_ttl_seconds)
                if callback:
                    callback(progress, max_pages)
                page = window[-1] + 1
        except Exception as exc:
            _fail_run(storage, resolved_run_id, job_name, exc)
            raise

        return _finish_run(
            storage,
            run_id=resolved_run_id,
            job_name=job_name,
            content_type=content_type,
            progress=progress,
            started_at=started_at,
            extra={"max_pages": max_pages, "concurrency": concurrency},
        )


async def sync_incremental(
    *,
    client,
    storage: CatalogStorage,
    content_type: str,
    days_back: int = 7,
    max_pages: int = 5,
    per_page: int | None = None,
    owner: str | None = None,
    lock_ttl_seconds: float = 1800,
    dlq_max_retries: int = 5,
    now: datetime | None = None,
    callback: ProgressCallback = None,
) -> SyncResult:
    """Upsert titles AniList changed within the last ``days_back`` days."""

    content_type = require_content_type(content_type)
    if days_back < 0:
        raise ValueError("days_back must be >= 0")
    job_name = f"incremental-sync-{content_type}"
    owner = owner or f"{job_name}:{uuid.uuid4().hex[:8]}"
    threshold = int(((now or datetime.now(UTC)) - timedelta(days=days_back)).timestamp())

    with sync_lease(storage, lock_name_for(content_type), owner, lock_ttl_seconds):
        run_id = _make_run_id(job_name)
        storage.create_run(run_id, job_name, content_type)
        started_at = time.monotonic()
        progress = SyncProgress()

        try:
            for page in range(1, max_pages + 1):
                try:
                    payload = await client.fetch_recently_updated(content_type, page, per_page=per_page)
                except AniListError as exc:
                    logger.error("Incremental page %d of %s failed: %s", page, content_type, exc)
                    progress.errors += 1
                    break

                media = payload.get("media") or []
                recent = [item for item in media if int(item.get("updatedAt") or 0) >= threshold]
                page_progress = persist_media_items(storage, recent, content_type, dlq_max_retries)
                page_progress.pages = 1
                storage.add_run_progress(run_id, page_progress)
                storage.set_checkpoint(run_id, "last_page", str(page))
                progress.merge(page_progress)
                if callback:
                    callback(progress, max_pages)

                has_next = bool((payload.get("pageInfo") or {}).get("hasNextPage"))
                if len(recent) < len(media) or not media or not has_next:
                    break
        except Exception as exc:
            _fail_run(storage, run_id, job_name, exc)
            raise

        return _finish_run(
            storage,
            run_id=run_id,
            job_name=job_name,
            content_type=content_type,
            progress=progress,
            started_at=started_at,
            extra={"days_back": days_back, "threshold": threshold},
        )


async def sync_vote_counts(
    *,
    client,
    storage: CatalogStorage,
    content_type: str,
    max_pages: int = 5,
    per_page: int | None = None,
    owner: str | None = None,
    lock_ttl_seconds: float = 1800,
    callback: ProgressCallback = None,
) -> SyncResult:
    """Refresh ``num_users_voted`` for titles that are already in the catalog."""

    content_type = require_content_type(content_type)
    job_name = f"sync-{content_type}-voting-data"
    owner = owner or f"{job_name}:{uuid.uuid4().hex[:8]}"

    with sync_lease(storage, lock_name_for(content_type), owner, lock_ttl_seconds):
        run_id = _make_run_id(job_name)
        storage.create_run(run_id, job_name, content_type)
        started_at = time.monotonic()
        progress = SyncProgress()

        try:
            for page in range(1, max_pages + 1):
                try:
                    payload = await client.fetch_score_page(content_type, page, per_page=per_page)
                except AniListError as exc:
                    logger.error("Vote page %d of %s failed: %s", page, content_type, exc)
                    progress.errors += 1
                    continue

                media = payload.get("media") or []
                if not media:
                    break
                counts = parse_vote_counts(media)
                updated = storage.update_vote_counts(counts)
                page_progress = SyncProgress(
                    pages=1,
                    processed=updated,
                    updated=updated,
                    skipped=len(counts) - updated,
                )
                storage.add_run_progress(run_id, page_progress)
                progress.merge(page_progress)
                if callback:
                    callback(progress, max_pages)
                if not (payload.get("pageInfo") or {}).get("hasNextPage"):
                    break
        except Exception as exc:
            _fail_run(storage, run_id, job_name, exc)
            raise

        return _finish_run(
            storage,
            run_id=run_id,
            job_name=job_name,
            content_type=content_type,
            progress=progress,
            started_at=started_at,
        )


async def sync_all(
    *,
    client,
    storage: CatalogStorage,
    max_pages: int,
    concurrency: int = 3,
    per_page: int | None = None,
    lock_ttl_seconds: float = 1800,
    dlq_max_retries: int = 5,
    callback: Callable[[str, SyncProgress, int], None] | None = None,
) -> DualSyncResult:
    """Sync anime then manga. One side failing does not stop the other."""

    outcome = DualSyncResult()
    for content_type in ("anime", "manga"):
        side_callback = None
        if callback:
            def side_callback(progress: SyncProgress, total: int, _ct: str = content_type) -> None:
                callback(_ct, progress, total)

        try:
            outcome.results[content_type] = await sync_catalog(
                client=client,
                storage=storage,
                content_type=content_type,
                max_pages=max_pages,
                concurrency=concurrency,
                per_page=per_page,
                lock_ttl_seconds=lock_ttl_seconds,
                dlq_max_retries=dlq_max_retries,
                callback=side_callback,
            )
        except (SyncInProgressError, AniListError) as exc:
            logger.warning("Dual sync skipped %s: %s", content_type, exc)
            outcome.failures[content_type] = str(exc)

    storage.log_job(
        DUAL_JOB_NAME,
        outcome.status,
        {
            "results": {
                content_type: {"run_id": result.run_id, "status": result.status, **result.progress.as_dict()}
                for content_type, result in outcome.results.items()
            },
            "failures": outcome.failures,
        },
        error_message="; ".join(f"{k}: {v}" for k, v in outcome.failures.items()) or None,
    )
    return outcome


async def process_dead_letters(*, client, storage: CatalogStorage, limit: int = 50) -> DeadLetterResult:
    """Retry due dead-letter items by re-fetching them from AniList by id."""

    items = storage.due_dead_letters(limit=limit)
    result = DeadLetterResult(found=len(items))
    started_at = time.monotonic()

    def record_failure(item_id: int, message: str) -> None:
        result.failed += 1
        if storage.fail_dead_letter(item_id, message):
            result.exhausted += 1

    by_type: dict[str, list[dict[str, Any]]] = {}
    for item in items:
        if item["operation_type"] != MEDIA_UPSERT:
            storage.exhaust_dead_letter(item["id"], f"Unknown operation type: {item['operation_type']}")
            result.failed += 1
            result.exhausted += 1
            continue
        by_type.setdefault(item["payload"]["content_type"], []).append(item)

    try:
        batches = [
            (content_type, group[start : start + MAX_IDS_PER_REQUEST])
            for content_type, group in by_type.items()
            for start in range(0, len(group), MAX_IDS_PER_REQUEST)
        ]
        for content_type, group in batches:
            ids = [int(item["payload"]["anilist_id"]) for item in group]
            try:
                fetched = await client.fetch_media_by_ids(ids, media_type=content_type)
            except AniListError as exc:
                for item in group:
                    record_failure(item["id"], str(exc))
                continue

            by_id = {int(media["id"]): media for media in fetched if media.get("id") is not None}
            for item in group:
                media = by_id.get(int(item["payload"]["anilist_id"]))
                if media is None:
                    record_failure(item["id"], "Media not returned by AniList")
                    continue
                try:
                    storage.upsert_media(parse_media(media, content_type))
                except (ValidationError, ValueError, sqlite3.Error) as exc:
                    record_failure(item["id"], str(exc))
                    continue
                storage.resolve_dead_letter(item["id"])
                result.processed += 1
    except Exception as exc:
        storage.log_job(DLQ_JOB_NAME, JOB_ERROR, {"error": repr(exc)}, error_message=str(exc))
        raise

    storage.log_job(
        DLQ_JOB_NAME,
        JOB_SUCCESS,
        {
            "items_found": result.found,
            "processed_count": result.processed,
            "failed_count": result.failed,
            "exhausted_count": result.exhausted,
            "processing_time_ms": int((time.monotonic() - started_at) * 1000),
        },
    )
    return result
