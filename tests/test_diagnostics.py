from __future__ import annotations

from pathlib import Path

import pytest

from anicatalog.diagnostics import heal, run_diagnostics
from anicatalog.models import parse_media
from anicatalog.storage_sqlite import JOB_ERROR, CatalogStorage
from tests.fakes import FakeAniListClient, FakeClientConfig, make_media


@pytest.fixture()
def storage(tmp_path: Path):
    storage = CatalogStorage(tmp_path / "catalog.sqlite3")
    storage.initialize()
    yield storage
    storage.close()


@pytest.mark.asyncio
async def test_small_catalog_reports_issues_and_recommendations(storage: CatalogStorage) -> None:
    storage.upsert_media(parse_media(make_media(1, "anime"), "anime"))
    storage.log_job("sync-anime", JOB_ERROR, {}, error_message="boom")

    report = await run_diagnostics(storage, client=FakeAniListClient(FakeClientConfig(api_healthy=False)))

    assert report.counts["anime"] == 1
    assert report.api_healthy is False
    assert report.recent_job_errors == 1
    assert report.last_job_at is not None
    assert any("Low anime count" in issue for issue in report.issues)
    assert any("Low manga count" in issue for issue in report.issues)
    assert any("Low genre count" in issue for issue in report.issues)
    assert any("Cannot reach" in issue for issue in report.issues)
    assert any("unreachable" in rec for rec in report.recommendations)
    assert any("full manga sync" in rec for rec in report.recommendations)


@pytest.mark.asyncio
async def test_offline_diagnostics_skip_api_check(storage: CatalogStorage) -> None:
    report = await run_diagnostics(storage)

    assert report.api_healthy is None
    assert report.last_job_at is None
    assert report.dead_letters == {"pending": 0, "exhausted": 0}


@pytest.mark.asyncio
async def test_heal_removes_orphans_and_reports_missing_genres(storage: CatalogStorage) -> None:
    orphan_id, _ = storage.upsert_media(parse_media(make_media(1, "anime"), "anime"))
    raw = make_media(2, "anime")
    raw["genres"] = []
    storage.upsert_media(parse_media(raw, "anime"))
    storage.conn.execute("DELETE FROM anime_details WHERE title_id=?", (orphan_id,))
    storage.conn.commit()

    report = await run_diagnostics(storage)
    assert report.orphan_titles == 1
    assert report.titles_without_genres == 1

    actions = heal(storage)

    assert actions[0] == "Deleted 1 orphan titles"
    assert "without genre links" in actions[1]
    assert storage.orphan_titles() == []
    assert heal(storage)[-1].startswith("Found 1 titles")


def test_heal_on_clean_catalog(storage: CatalogStorage) -> None:
    storage.upsert_media(parse_media(make_media(1, "anime"), "anime"))
    assert heal(storage) == ["No repairs needed"]
