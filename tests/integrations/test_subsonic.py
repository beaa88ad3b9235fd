from __future__ import annotations

import hashlib

import httpx
import pytest

from app.integrations.contracts import ProviderAuthError, ProviderError
from app.integrations.subsonic import SubsonicCatalogSource


def _song(index: int) -> dict[str, object]:
    return {
        "id": f"tr-{index}",
        "title": f"Track {index}",
        "artist": "Artist",
        "album": "Album",
        "duration": 180 + index,
        "path": f"Artist/Album/{index:02d}.flac",
    }


def _library_transport(total: int, requests: list[httpx.Request]) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        offset = int(request.url.params["songOffset"])
        count = int(request.url.params["songCount"])
        songs = [_song(index) for index in range(offset + 1, min(total, offset + count) + 1)]
        return httpx.Response(
            200,
            json={
                "subsonic-response": {
                    "status": "ok",
                    "version": "1.16.1",
                    "searchResult3": {"song": songs},
                }
            },
        )

    return httpx.MockTransport(handler)


def _source(transport: httpx.MockTransport, **overrides) -> SubsonicCatalogSource:
    params = {
        "base_url": "http://navidrome.local/",
        "username": "admin",
        "password": "secret",
        "page_size": 2,
        "backoff_base_ms": 1,
        "jitter_pct": 0,
        "transport": transport,
    }
    params.update(overrides)
    return SubsonicCatalogSource(**params)


@pytest.mark.asyncio
async def test_fetch_tracks_pages_through_library() -> None:
    requests: list[httpx.Request] = []

    tracks = await _source(_library_transport(5, requests)).fetch_tracks()

    assert [track.id for track in tracks] == [f"tr-{index}" for index in range(1, 6)]
    assert [request.url.params["songOffset"] for request in requests] == ["0", "2", "4"]
    assert tracks[0].duration == 181
    assert tracks[0].path == "Artist/Album/01.flac"


@pytest.mark.asyncio
async def test_fetch_tracks_respects_limit() -> None:
    requests: list[httpx.Request] = []

    tracks = await _source(_library_transport(10, requests)).fetch_tracks(limit=3)

    assert len(tracks) == 3
    assert [request.url.params["songCount"] for request in requests] == ["2", "1"]


@pytest.mark.asyncio
async def test_requests_use_salted_token_auth() -> None:
    requests: list[httpx.Request] = []

    await _source(_library_transport(1, requests)).fetch_tracks()

    params = requests[0].url.params
    assert requests[0].url.path == "/rest/search3.view"
    assert params["u"] == "admin"
    assert params["f"] == "json"
    assert "p" not in params
    expected = hashlib.md5(("secret" + params["s"]).encode("utf-8")).hexdigest()
    assert params["t"] == expected


@pytest.mark.asyncio
async def test_api_failure_envelope_raises_provider_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "subsonic-response": {
                    "status": "failed",
                    "error": {"code": 40, "message": "Wrong username or password"},
                }
            },
        )

    with pytest.raises(ProviderError) as excinfo:
        await _source(httpx.MockTransport(handler)).fetch_tracks()

    assert "Wrong username or password" in str(excinfo.value)


@pytest.mark.asyncio
async def test_transient_errors_are_retried() -> None:
    requests: list[httpx.Request] = []
    library = _library_transport(1, requests)
    calls = {"count": 0}

    async def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        if calls["count"] == 1:
            return httpx.Response(503, text="unavailable")
        return await library.handle_async_request(request)

    tracks = await _source(httpx.MockTransport(handler)).fetch_tracks()

    assert calls["count"] == 2
    assert [track.id for track in tracks] == ["tr-1"]


@pytest.mark.asyncio
async def test_auth_errors_are_not_retried() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(401, text="unauthorized")

    with pytest.raises(ProviderAuthError):
        await _source(httpx.MockTransport(handler)).fetch_tracks()

    assert calls["count"] == 1
