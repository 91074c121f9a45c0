from __future__ import annotations

import json
from pathlib import Path

import pandas as pd
import pytest

from anicatalog.export_parquet import MANIFEST_NAME, export_catalog_to_parquet
from anicatalog.lists import add_to_list
from anicatalog.models import parse_media
from anicatalog.storage_sqlite import CatalogStorage
from tests.fakes import make_media


REQUIRED_OUTPUTS = {
    "titles.parquet",
    "anime_details.parquet",
    "manga_details.parquet",
    "title_genres.parquet",
    "user_title_lists.parquet",
    "cron_job_logs.parquet",
    MANIFEST_NAME,
}


def test_export_writes_datasets_and_manifest(tmp_path: Path) -> None:
    db_path = tmp_path / "catalog.sqlite3"
    storage = CatalogStorage(db_path)
    storage.initialize()
    anime_id, _ = storage.upsert_media(parse_media(make_media(1, "anime"), "anime"))
    storage.upsert_media(parse_media(make_media(2, "manga"), "manga"))
    orphan_id, _ = storage.upsert_media(parse_media(make_media(3, "anime"), "anime"))
    storage.conn.execute("DELETE FROM anime_details WHERE title_id=?", (orphan_id,))
    storage.conn.commit()
    add_to_list(storage, "alice", anime_id, "watching")
    storage.log_job("sync-anime", "success", {"processed": 2})
    storage.close()

    out_dir = tmp_path / "export"
    manifest = export_catalog_to_parquet(db_path=db_path, out_dir=out_dir)

    assert REQUIRED_OUTPUTS.issubset({path.name for path in out_dir.iterdir()})
    assert manifest["counts"]["titles"] == 3
    assert manifest["counts"]["anime_details"] == 1
    assert manifest["counts"]["manga_details"] == 1
    assert manifest["counts"]["user_title_lists"] == 1
    assert manifest["counts"]["cron_job_logs"] == 1
    assert manifest["quality_checks"] == {
        "duplicate_anilist_ids": 0,
        "titles_without_details": 1,
        "list_entries_without_title": 0,
    }

    on_disk = json.loads((out_dir / MANIFEST_NAME).read_text(encoding="utf-8"))
    assert on_disk["counts"] == manifest["counts"]

    genres = pd.read_parquet(out_dir / "title_genres.parquet")
    assert set(genres["genre"]) == {"Action", "Comedy", "Drama"}
    lists = pd.read_parquet(out_dir / "user_title_lists.parquet")
    assert lists["status"].tolist() == ["watching"]


def test_export_requires_existing_database(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        export_catalog_to_parquet(db_path=tmp_path / "missing.sqlite3", out_dir=tmp_path / "out")
