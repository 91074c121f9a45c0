from __future__ import annotations

from dataclasses import dataclass, fields, replace
import os
from pathlib import Path
import tomllib
from typing import Any

_ALLOWED_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR"}


@dataclass(slots=True)
class Settings:
    api_url: str = os.getenv("ANICATALOG_API_URL", "https://graphql.anilist.co")
    rate_limit_per_minute: int = int(os.getenv("ANICATALOG_RATE_LIMIT_PER_MINUTE", "90"))
    rate_limit_period_seconds: float = 60.0
    max_retries: int = int(os.getenv("ANICATALOG_MAX_RETRIES", "5"))
    timeout_seconds: float = float(os.getenv("ANICATALOG_TIMEOUT_SECONDS", "30"))
    concurrency: int = int(os.getenv("ANICATALOG_CONCURRENCY", "3"))
    per_page: int = int(os.getenv("ANICATALOG_PER_PAGE", "50"))
    lock_ttl_seconds: int = int(os.getenv("ANICATALOG_LOCK_TTL_SECONDS", "1800"))
    dlq_max_retries: int = int(os.getenv("ANICATALOG_DLQ_MAX_RETRIES", "5"))
    db_path: Path = Path(os.getenv("ANICATALOG_DB_PATH", "./output/catalog.sqlite3"))
    log_level: str = os.getenv("ANICATALOG_LOG_LEVEL", "INFO")


def _load_toml(config_path: Path) -> dict[str, Any]:
    if not config_path.exists():
        raise RuntimeError(f"Config file not found: {config_path}")
    with config_path.open("rb") as handle:
        return tomllib.load(handle)


def _coerce(name: str, value: Any, current: Any) -> Any:
    if isinstance(current, bool):
        return bool(value)
    if isinstance(current, int):
        if isinstance(value, bool) or not isinstance(value, int):
            raise RuntimeError(f"Invalid sync.{name} in config: expected an integer, got {value!r}")
        if value < 1:
            raise RuntimeError(f"Invalid sync.{name} in config: must be >= 1")
        return value
    if isinstance(current, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise RuntimeError(f"Invalid sync.{name} in config: expected a number, got {value!r}")
        if value <= 0:
            raise RuntimeError(f"Invalid sync.{name} in config: must be > 0")
        return float(value)
    if not isinstance(value, str) or not value.strip():
        raise RuntimeError(f"Invalid sync.{name} in config: expected a non-empty string")
    return value.strip()


def load_settings(config_path: Path | None = None, base: Settings | None = None) -> Settings:
    """Build settings from env defaults, optionally overridden by a TOML ``[sync]`` section."""

    settings = base or Settings()
    if config_path is None:
        return settings

    config_path = config_path.resolve()
    doc = _load_toml(config_path)
    section = doc.get("sync", {})
    if not isinstance(section, dict):
        raise RuntimeError("Invalid config: [sync] must be a table.")

    known = {field.name: field for field in fields(Settings)}
    unknown = sorted(set(section) - set(known))
    if unknown:
        raise RuntimeError(f"Unknown keys in [sync] config section: {unknown}")

    overrides: dict[str, Any] = {}
    for name, raw in section.items():
        if name == "db_path":
            if not isinstance(raw, str) or not raw.strip():
                raise RuntimeError("Invalid sync.db_path in config: expected a non-empty string")
            db_path = Path(raw).expanduser()
            if not db_path.is_absolute():
                db_path = (config_path.parent / db_path).resolve()
            overrides[name] = db_path
            continue
        overrides[name] = _coerce(name, raw, getattr(settings, name))

    if "log_level" in overrides:
        level = str(overrides["log_level"]).upper()
        if level not in _ALLOWED_LOG_LEVELS:
            raise RuntimeError(
                f"Invalid sync.log_level in config: {level!r}; allowed={sorted(_ALLOWED_LOG_LEVELS)}"
            )
        overrides["log_level"] = level

    return replace(settings, **overrides)
