from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass
import logging
import random
import time
from typing import Any

import httpx

from .config import Settings
from .rate_limit import AsyncRateLimiter


logger = logging.getLogger(__name__)

DEFAULT_SORT = ("POPULARITY_DESC", "SCORE_DESC")
# AniList caps perPage at 50, so id_in lookups are sent in batches of this size.
MAX_IDS_PER_REQUEST = 50

MEDIA_FIELDS = """
    id
    idMal
    title { romaji english native }
    description
    startDate { year month day }
    endDate { year month day }
    season
    seasonYear
    format
    status
    episodes
    chapters
    volumes
    coverImage { large medium extraLarge color }
    bannerImage
    genres
    averageScore
    meanScore
    popularity
    favourites
    updatedAt
    stats { scoreDistribution { score amount } }
    studios(isMain: true) { nodes { name } }
    staff(perPage: 10) { edges { role node { name { full } primaryOccupations } } }
    trailer { id site }
    nextAiringEpisode { episode airingAt }
"""

PAGE_QUERY = f"""
query ($page: Int, $perPage: Int, $type: MediaType, $sort: [MediaSort]) {{
  Page(page: $page, perPage: $perPage) {{
    pageInfo {{ hasNextPage currentPage }}
    media(type: $type, sort: $sort) {{ {MEDIA_FIELDS} }}
  }}
}}
"""

IDS_QUERY = f"""
query ($ids: [Int], $type: MediaType, $perPage: Int) {{
  Page(page: 1, perPage: $perPage) {{
    pageInfo {{ hasNextPage currentPage }}
    media(id_in: $ids, type: $type) {{ {MEDIA_FIELDS} }}
  }}
}}
"""

SCORE_QUERY = """
query ($page: Int, $perPage: Int, $type: MediaType) {
  Page(page: $page, perPage: $perPage) {
    pageInfo { hasNextPage currentPage }
    media(type: $type, sort: [POPULARITY_DESC]) {
      id
      stats { scoreDistribution { score amount } }
    }
  }
}
"""

PING_QUERY = """
query {
  Page(page: 1, perPage: 1) {
    media(type: ANIME) { id title { romaji } }
  }
}
"""


class AniListError(Exception):
    pass


class AniListNotFoundError(AniListError):
    pass


class AniListForbiddenError(AniListError):
    pass


class AniListTemporaryError(AniListError):
    pass


class AniListGraphQLError(AniListError):
    def __init__(self, errors: list[dict[str, Any]]) -> None:
        self.errors = errors
        message = (errors[0].get("message") if errors else None) or "Unknown GraphQL error"
        super().__init__(f"AniList GraphQL error: {message}")

    @property
    def status(self) -> int | None:
        for error in self.errors:
            status = error.get("status")
            if isinstance(status, int):
                return status
        return None


@dataclass(slots=True)
class RequestTelemetry:
    total_requests: int = 0
    successful_requests: int = 0
    retries: int = 0
    rate_limited: int = 0
    errors: int = 0
    total_latency_seconds: float = 0.0
    throttled_seconds: float = 0.0

    @property
    def mean_latency_ms(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return (self.total_latency_seconds / self.total_requests) * 1000.0


def _media_type(content_type: str) -> str:
    normalized = content_type.strip().upper()
    if normalized not in ("ANIME", "MANGA"):
        raise ValueError(f"Unsupported media type: {content_type!r}")
    return normalized


def _retry_after_seconds(header: str | None, attempt: int) -> float:
    # Only delta-seconds are honoured; HTTP-date or junk values fall back to backoff.
    if header:
        try:
            return max(float(header), 0.0)
        except ValueError:
            logger.debug("Ignoring unparseable Retry-After %r", header)
    return 0.5 * (2**attempt)


class AniListClient:
    def __init__(
        self,
        settings: Settings,
        telemetry: RequestTelemetry | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self.telemetry = telemetry or RequestTelemetry()
        self._limiter = AsyncRateLimiter(
            max_calls=settings.rate_limit_per_minute,
            period_seconds=settings.rate_limit_period_seconds,
        )
        self._client = httpx.AsyncClient(
            timeout=settings.timeout_seconds,
            headers={
                "User-Agent": "anicatalog/0.1",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            transport=transport,
        )

    async def __aenter__(self) -> AniListClient:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def _backoff(self, attempt: int, base_seconds: float = 0.5) -> None:
        self.telemetry.retries += 1
        await asyncio.sleep(base_seconds * (2**attempt) + random.random() * 0.1)

    async def _post_graphql(self, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
        body = {"query": query, "variables": variables or {}}
        label = (variables or {}).get("type") or "query"

        for attempt in range(self.settings.max_retries + 1):
            self.telemetry.throttled_seconds += await self._limiter.acquire()
            started_at = time.monotonic()
            self.telemetry.total_requests += 1
            try:
                response = await self._client.post(self.settings.api_url, json=body)
            except httpx.HTTPError as exc:
                self.telemetry.errors += 1
                if attempt >= self.settings.max_retries:
                    raise AniListTemporaryError(str(exc)) from exc
                logger.warning("Transport error on %s (attempt %d): %s", label, attempt + 1, exc)
                await self._backoff(attempt)
                continue
            finally:
                self.telemetry.total_latency_seconds += time.monotonic() - started_at

            if response.status_code == 200:
                payload = response.json()
                errors = payload.get("errors")
                if errors:
                    error = AniListGraphQLError(errors)
                    retryable = error.status == 429 or (error.status or 0) >= 500
                    if not retryable or attempt >= self.settings.max_retries:
                        self.telemetry.errors += 1
                        raise error
                    logger.warning("Retryable GraphQL error on %s: %s", label, error)
                    await self._backoff(attempt)
                    continue
                self.telemetry.successful_requests += 1
                return payload.get("data") or {}

            if response.status_code == 404:
                raise AniListNotFoundError(label)
            if response.status_code in (401, 403):
                raise AniListForbiddenError(label)

            if response.status_code == 429:
                self.telemetry.rate_limited += 1
                if attempt >= self.settings.max_retries:
                    raise AniListTemporaryError(f"429 Too Many Requests for {label}")
                retry_after_seconds = _retry_after_seconds(response.headers.get("Retry-After"), attempt)
                logger.info("Rate limited on %s, sleeping %.1fs", label, retry_after_seconds)
                self.telemetry.retries += 1
                await asyncio.sleep(retry_after_seconds + random.random() * 0.1)
                continue

            if 500 <= response.status_code < 600:
                self.telemetry.errors += 1
                if attempt >= self.settings.max_retries:
                    raise AniListTemporaryError(f"{response.status_code} for {label}")
                await self._backoff(attempt)
                continue

            response.raise_for_status()

        raise AniListTemporaryError(f"Exhausted retries for {label}")

    async def fetch_media_page(
        self,
        media_type: str,
        page: int,
        per_page: int | None = None,
        sort: Sequence[str] | None = None,
    ) -> dict[str, Any]:
        data = await self._post_graphql(
            PAGE_QUERY,
            {
                "page": page,
                "perPage": per_page or self.settings.per_page,
                "type": _media_type(media_type),
                "sort": list(sort or DEFAULT_SORT),
            },
        )
        return data.get("Page") or {}

    async def fetch_recently_updated(
        self,
        media_type: str,
        page: int,
        per_page: int | None = None,
    ) -> dict[str, Any]:
        return await self.fetch_media_page(media_type, page, per_page=per_page, sort=["UPDATED_AT_DESC"])

    async def fetch_media_by_ids(
        self,
        ids: Sequence[int],
        media_type: str | None = None,
    ) -> list[dict[str, Any]]:
        wanted = [int(i) for i in ids]
        media: list[dict[str, Any]] = []
        for start in range(0, len(wanted), MAX_IDS_PER_REQUEST):
            batch = wanted[start : start + MAX_IDS_PER_REQUEST]
            variables: dict[str, Any] = {"ids": batch, "perPage": len(batch)}
            if media_type is not None:
                variables["type"] = _media_type(media_type)
            data = await self._post_graphql(IDS_QUERY, variables)
            media.extend((data.get("Page") or {}).get("media") or [])
        return media

    async def fetch_score_page(
        self,
        media_type: str,
        page: int,
        per_page: int | None = None,
    ) -> dict[str, Any]:
        data = await self._post_graphql(
            SCORE_QUERY,
            {"page": page, "perPage": per_page or self.settings.per_page, "type": _media_type(media_type)},
        )
        return data.get("Page") or {}

    async def ping(self) -> bool:
        try:
            data = await self._post_graphql(PING_QUERY)
        except (AniListError, httpx.HTTPError) as exc:
            logger.warning("AniList health check failed: %s", exc)
            return False
        return bool((data.get("Page") or {}).get("media") is not None)
