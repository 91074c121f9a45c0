from __future__ import annotations

import json

import httpx
import pytest

from anicatalog.config import Settings
from anicatalog.http_client import (
    AniListClient,
    AniListForbiddenError,
    AniListGraphQLError,
    AniListNotFoundError,
    AniListTemporaryError,
    RequestTelemetry,
)


def _page_response(media: list[dict], has_next: bool = False) -> httpx.Response:
    body = {"data": {"Page": {"pageInfo": {"hasNextPage": has_next, "currentPage": 1}, "media": media}}}
    return httpx.Response(200, text=json.dumps(body))


def _settings(**overrides) -> Settings:
    return Settings(rate_limit_per_minute=1000, **overrides)


@pytest.mark.asyncio
async def test_retry_backoff_on_429_then_success() -> None:
    call_count = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        call_count["n"] += 1
        if call_count["n"] == 1:
            return httpx.Response(429, headers={"Retry-After": "0"})
        return _page_response([{"id": 1}])

    telemetry = RequestTelemetry()
    client = AniListClient(
        settings=_settings(max_retries=2),
        telemetry=telemetry,
        transport=httpx.MockTransport(handler),
    )

    page = await client.fetch_media_page("anime", 1)
    await client.close()

    assert page["media"] == [{"id": 1}]
    assert call_count["n"] == 2
    assert telemetry.rate_limited == 1
    assert telemetry.retries == 1
    assert telemetry.successful_requests == 1


@pytest.mark.asyncio
async def test_raises_after_exhausting_5xx_retries() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503)

    client = AniListClient(
        settings=_settings(max_retries=1),
        transport=httpx.MockTransport(handler),
    )

    with pytest.raises(AniListTemporaryError):
        await client.fetch_media_page("manga", 1)

    await client.close()


@pytest.mark.asyncio
async def test_graphql_errors_in_200_body_are_not_retried() -> None:
    call_count = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        call_count["n"] += 1
        body = {"data": None, "errors": [{"message": "Validation error", "status": 400}]}
        return httpx.Response(200, text=json.dumps(body))

    client = AniListClient(settings=_settings(max_retries=3), transport=httpx.MockTransport(handler))

    with pytest.raises(AniListGraphQLError) as excinfo:
        await client.fetch_media_page("anime", 1)
    await client.close()

    assert call_count["n"] == 1
    assert excinfo.value.status == 400
    assert "Validation error" in str(excinfo.value)


@pytest.mark.asyncio
async def test_not_found_and_forbidden_are_distinct_errors() -> None:
    statuses = iter([404, 403])

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(next(statuses))

    client = AniListClient(settings=_settings(), transport=httpx.MockTransport(handler))

    with pytest.raises(AniListNotFoundError):
        await client.fetch_media_page("anime", 1)
    with pytest.raises(AniListForbiddenError):
        await client.fetch_media_page("anime", 1)
    await client.close()


@pytest.mark.asyncio
async def test_page_request_sends_graphql_variables() -> None:
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return _page_response([])

    client = AniListClient(settings=_settings(per_page=25), transport=httpx.MockTransport(handler))
    await client.fetch_media_page("anime", 3)
    await client.fetch_recently_updated("manga", 1, per_page=5)
    await client.close()

    assert seen[0]["variables"] == {
        "page": 3,
        "perPage": 25,
        "type": "ANIME",
        "sort": ["POPULARITY_DESC", "SCORE_DESC"],
    }
    assert seen[1]["variables"]["sort"] == ["UPDATED_AT_DESC"]
    assert seen[1]["variables"]["type"] == "MANGA"
    assert seen[1]["variables"]["perPage"] == 5


@pytest.mark.asyncio
async def test_fetch_media_by_ids_uses_id_in_filter() -> None:
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return _page_response([{"id": 7}, {"id": 9}])

    client = AniListClient(settings=_settings(), transport=httpx.MockTransport(handler))
    media = await client.fetch_media_by_ids([7, 9], media_type="manga")
    empty = await client.fetch_media_by_ids([])
    await client.close()

    assert [item["id"] for item in media] == [7, 9]
    assert empty == []
    assert len(seen) == 1
    assert seen[0]["variables"]["ids"] == [7, 9]
    assert "id_in" in seen[0]["query"]


@pytest.mark.asyncio
async def test_ping_reports_failure_without_raising() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(403)

    client = AniListClient(settings=_settings(), transport=httpx.MockTransport(handler))
    assert await client.ping() is False
    await client.close()


@pytest.mark.asyncio
async def test_invalid_media_type_is_rejected() -> None:
    client = AniListClient(settings=_settings(), transport=httpx.MockTransport(lambda r: _page_response([])))
    with pytest.raises(ValueError):
        await client.fetch_media_page("novel", 1)
    await client.close()


@pytest.mark.asyncio
async def test_fetch_media_by_ids_batches_past_the_page_cap() -> None:
    seen: list[list[int]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        variables = json.loads(request.content)["variables"]
        seen.append(variables["ids"])
        # AniList returns at most perPage items, whatever id_in holds.
        return _page_response([{"id": i} for i in variables["ids"][: variables["perPage"]]])

    client = AniListClient(settings=_settings(), transport=httpx.MockTransport(handler))
    media = await client.fetch_media_by_ids(list(range(1, 81)), media_type="anime")
    await client.close()

    assert [item["id"] for item in media] == list(range(1, 81))
    assert [len(ids) for ids in seen] == [50, 30]


@pytest.mark.asyncio
async def test_http_date_retry_after_falls_back_to_backoff() -> None:
    call_count = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        call_count["n"] += 1
        if call_count["n"] == 1:
            return httpx.Response(429, headers={"Retry-After": "Wed, 21 Oct 2015 07:28:00 GMT"})
        return _page_response([{"id": 3}])

    telemetry = RequestTelemetry()
    client = AniListClient(
        settings=_settings(max_retries=2),
        telemetry=telemetry,
        transport=httpx.MockTransport(handler),
    )

    page = await client.fetch_media_page("anime", 1)
    await client.close()

    assert page["media"] == [{"id": 3}]
    assert telemetry.rate_limited == 1
    assert telemetry.retries == 1
