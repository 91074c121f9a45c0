from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path
import time

import httpx
import pytest

from anicatalog.config import Settings
from anicatalog.http_client import AniListClient
from anicatalog.storage_sqlite import (
    COMPLETED,
    FAILED,
    JOB_PARTIAL,
    PARTIAL,
    CatalogStorage,
    SyncInProgressError,
)
from anicatalog.sync import (
    process_dead_letters,
    sync_all,
    sync_catalog,
    sync_incremental,
    sync_vote_counts,
)
from tests.fakes import BASE_EPOCH, FakeAniListClient, FakeClientConfig, make_media


@pytest.fixture()
def storage(tmp_path: Path):
    storage = CatalogStorage(tmp_path / "catalog.sqlite3")
    storage.initialize()
    yield storage
    storage.close()


@pytest.mark.asyncio
async def test_full_sync_happy_path(storage: CatalogStorage) -> None:
    client = FakeAniListClient(FakeClientConfig(anime_count=30))
    seen: list[int] = []

    result = await sync_catalog(
        client=client,
        storage=storage,
        content_type="anime",
        max_pages=5,
        concurrency=2,
        callback=lambda progress, total: seen.append(progress.processed),
    )

    assert result.run_id.startswith("sync-anime_")
    assert result.status == COMPLETED
    assert result.progress.processed == 30
    assert result.progress.created == 30
    assert result.last_page == 3
    assert seen and seen[-1] == 30
    assert storage.catalog_counts()["anime"] == 30
    assert storage.active_locks() == []

    job = storage.recent_jobs(limit=1)[0]
    assert job["job_name"] == "sync-anime"
    assert job["status"] == "success"
    assert job["details"]["processed"] == 30


@pytest.mark.asyncio
async def test_rerun_updates_instead_of_duplicating(storage: CatalogStorage) -> None:
    client = FakeAniListClient(FakeClientConfig(manga_count=15))

    await sync_catalog(client=client, storage=storage, content_type="manga", max_pages=5)
    second = await sync_catalog(client=client, storage=storage, content_type="manga", max_pages=5)

    assert second.progress.created == 0
    assert second.progress.updated == 15
    duplicates = storage.conn.execute(
        "SELECT COUNT(*) AS c FROM (SELECT anilist_id FROM titles GROUP BY anilist_id HAVING COUNT(*) > 1)"
    ).fetchone()["c"]
    assert duplicates == 0
    assert storage.catalog_counts()["authors"] == 4


@pytest.mark.asyncio
async def test_partial_failure_then_resume_from_checkpoint(storage: CatalogStorage) -> None:
    client = FakeAniListClient(FakeClientConfig(anime_count=30, fail_once_pages={"anime": {2}}))

    first = await sync_catalog(
        client=client,
        storage=storage,
        content_type="anime",
        max_pages=5,
        concurrency=1,
        run_id="run_resume",
    )
    assert first.status == PARTIAL
    assert first.last_page == 1
    assert first.progress.errors == 1
    assert storage.get_run("run_resume").status == PARTIAL

    second = await sync_catalog(
        client=client,
        storage=storage,
        content_type="anime",
        max_pages=5,
        concurrency=1,
        run_id="run_resume",
    )

    assert second.status == COMPLETED
    assert second.last_page == 3
    assert second.progress.created == 20
    assert client.requested_pages["anime"] == [1, 2, 2, 3]
    assert storage.catalog_counts()["anime"] == 30
    run = storage.get_run("run_resume")
    assert run.processed == 30
    assert run.errors == 1


@pytest.mark.asyncio
async def test_concurrent_sync_of_same_type_is_rejected(storage: CatalogStorage) -> None:
    storage.acquire_lock("sync:anime", "another-worker", ttl_seconds=60)
    client = FakeAniListClient()

    with pytest.raises(SyncInProgressError):
        await sync_catalog(client=client, storage=storage, content_type="anime", max_pages=1)

    assert client.requested_pages["anime"] == []
    assert storage.catalog_counts()["total"] == 0

    manga = await sync_catalog(client=client, storage=storage, content_type="manga", max_pages=1)
    assert manga.progress.processed == 10


@pytest.mark.asyncio
async def test_bad_items_are_dead_lettered_then_recovered(storage: CatalogStorage) -> None:
    client = FakeAniListClient(FakeClientConfig(anime_count=20, broken_ids={5, 12}))

    result = await sync_catalog(client=client, storage=storage, content_type="anime", max_pages=5)

    assert result.status == PARTIAL
    assert result.progress.processed == 18
    assert result.progress.dead_lettered == 2
    assert storage.dead_letter_counts() == {"pending": 2, "exhausted": 0}
    assert storage.recent_jobs(limit=1)[0]["status"] == JOB_PARTIAL

    recovered = await process_dead_letters(client=client, storage=storage)

    assert recovered.found == 2
    assert recovered.processed == 2
    assert recovered.failed == 0
    assert sorted(client.requested_ids[0]) == [5, 12]
    assert storage.dead_letter_counts() == {"pending": 0, "exhausted": 0}
    assert storage.catalog_counts()["anime"] == 20
    job = storage.recent_jobs(limit=1)[0]
    assert job["job_name"] == "dlq_processor"
    assert job["details"]["processed_count"] == 2


@pytest.mark.asyncio
async def test_dead_letter_retry_failures_back_off_and_exhaust(storage: CatalogStorage) -> None:
    storage.enqueue_dead_letter(
        "media_upsert",
        "manga:7",
        {"anilist_id": 7, "content_type": "manga"},
        "boom",
        max_retries=1,
    )
    storage.enqueue_dead_letter("unknown_op", "x", {}, "boom", max_retries=5)
    client = FakeAniListClient(FakeClientConfig(missing_ids={7}))

    result = await process_dead_letters(client=client, storage=storage)

    assert result.found == 2
    assert result.failed == 2
    assert result.exhausted == 2
    assert storage.dead_letter_counts() == {"pending": 0, "exhausted": 2}


@pytest.mark.asyncio
async def test_incremental_sync_stops_at_threshold(storage: CatalogStorage) -> None:
    client = FakeAniListClient(FakeClientConfig(anime_count=30))

    result = await sync_incremental(
        client=client,
        storage=storage,
        content_type="anime",
        days_back=1,
        max_pages=5,
        now=datetime.fromtimestamp(BASE_EPOCH, tz=UTC),
    )

    assert result.job_name == "incremental-sync-anime"
    assert result.progress.processed == 24
    assert client.requested_pages["anime"] == [1, 2, 3]
    assert storage.find_title_id(24) is not None
    assert storage.find_title_id(25) is None


@pytest.mark.asyncio
async def test_vote_sync_updates_existing_titles_only(storage: CatalogStorage) -> None:
    await sync_catalog(
        client=FakeAniListClient(FakeClientConfig(anime_count=30)),
        storage=storage,
        content_type="anime",
        max_pages=5,
    )

    client = FakeAniListClient(FakeClientConfig(anime_count=30, manga_count=10, vote_bonus=100))
    anime = await sync_vote_counts(client=client, storage=storage, content_type="anime", max_pages=5)
    manga = await sync_vote_counts(client=client, storage=storage, content_type="manga", max_pages=5)

    assert anime.job_name == "sync-anime-voting-data"
    assert anime.progress.updated == 30
    assert manga.progress.updated == 0
    assert manga.progress.skipped == 10
    row = storage.conn.execute("SELECT num_users_voted FROM titles WHERE anilist_id=1").fetchone()
    assert row["num_users_voted"] == 101


@pytest.mark.asyncio
async def test_sync_all_continues_when_one_side_is_locked(storage: CatalogStorage) -> None:
    storage.acquire_lock("sync:manga", "another-worker", ttl_seconds=60)
    client = FakeAniListClient(FakeClientConfig(anime_count=10, manga_count=10))
    calls: list[str] = []

    outcome = await sync_all(
        client=client,
        storage=storage,
        max_pages=2,
        callback=lambda content_type, progress, total: calls.append(content_type),
    )

    assert set(outcome.results) == {"anime"}
    assert "manga" in outcome.failures
    assert outcome.status == JOB_PARTIAL
    assert calls == ["anime"]
    job = storage.recent_jobs(limit=1, job_name="dual-sync")[0]
    assert job["status"] == JOB_PARTIAL
    assert job["details"]["results"]["anime"]["processed"] == 10


@pytest.mark.asyncio
async def test_invalid_content_type_is_rejected(storage: CatalogStorage) -> None:
    with pytest.raises(ValueError):
        await sync_catalog(client=FakeAniListClient(), storage=storage, content_type="novel", max_pages=1)


@pytest.mark.asyncio
async def test_failed_page_inside_a_window_keeps_checkpoint_contiguous(storage: CatalogStorage) -> None:
    client = FakeAniListClient(FakeClientConfig(anime_count=50, fail_once_pages={"anime": {2}}))

    first = await sync_catalog(
        client=client,
        storage=storage,
        content_type="anime",
        max_pages=5,
        concurrency=3,
        run_id="run_window",
    )

    assert first.status == PARTIAL
    assert first.progress.processed == 20
    assert first.last_page == 1
    assert storage.find_title_id(25) is not None

    second = await sync_catalog(
        client=client,
        storage=storage,
        content_type="anime",
        max_pages=5,
        concurrency=3,
        run_id="run_window",
    )

    assert second.status == COMPLETED
    assert second.last_page == 5
    assert second.progress.created == 30
    assert second.progress.updated == 10
    assert client.requested_pages["anime"] == [1, 2, 3, 2, 3, 4, 5]
    assert storage.catalog_counts()["anime"] == 50


class _LeaseTakeoverClient(FakeAniListClient):
    """Hands the anime lease to another worker while the first page is in flight."""

    def __init__(self, storage: CatalogStorage, config: FakeClientConfig) -> None:
        super().__init__(config)
        self.storage = storage

    async def fetch_media_page(self, media_type: str, page: int, per_page: int | None = None, sort=None):
        if page == 1:
            self.storage.conn.execute(
                "UPDATE sync_locks SET owner=?, expires_at=? WHERE name=?",
                ("other-worker", time.time() + 600, "sync:anime"),
            )
            self.storage.conn.commit()
        return await super().fetch_media_page(media_type, page, per_page=per_page, sort=sort)


@pytest.mark.asyncio
async def test_lost_lease_fails_run_and_keeps_new_holder(storage: CatalogStorage) -> None:
    client = _LeaseTakeoverClient(storage, FakeClientConfig(anime_count=30))

    with pytest.raises(SyncInProgressError):
        await sync_catalog(
            client=client,
            storage=storage,
            content_type="anime",
            max_pages=5,
            concurrency=1,
            run_id="run_lost_lease",
            owner="first-worker",
        )

    assert client.requested_pages["anime"] == [1]
    assert storage.get_run("run_lost_lease").status == FAILED
    job = storage.recent_jobs(limit=1)[0]
    assert job["job_name"] == "sync-anime"
    assert job["status"] == "error"
    assert [(lock["name"], lock["owner"]) for lock in storage.active_locks()] == [("sync:anime", "other-worker")]


@pytest.mark.asyncio
async def test_dead_letters_past_the_page_cap_are_all_retried(storage: CatalogStorage) -> None:
    for anilist_id in range(1, 81):
        storage.enqueue_dead_letter(
            "media_upsert",
            f"anime:{anilist_id}",
            {"anilist_id": anilist_id, "content_type": "anime"},
            "boom",
            max_retries=5,
        )
    batches: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        variables = json.loads(request.content)["variables"]
        batches.append(len(variables["ids"]))
        media = [make_media(i, "anime") for i in variables["ids"][: variables["perPage"]]]
        body = {"data": {"Page": {"pageInfo": {"hasNextPage": False, "currentPage": 1}, "media": media}}}
        return httpx.Response(200, text=json.dumps(body))

    client = AniListClient(
        settings=Settings(rate_limit_per_minute=1000),
        transport=httpx.MockTransport(handler),
    )
    result = await process_dead_letters(client=client, storage=storage, limit=100)
    await client.close()

    assert result.found == 80
    assert result.processed == 80
    assert result.failed == 0
    assert batches == [50, 30]
    assert storage.dead_letter_counts() == {"pending": 0, "exhausted": 0}
    assert storage.catalog_counts()["anime"] == 80
