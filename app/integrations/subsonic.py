"""Catalog source backed by a Subsonic compatible server (e.g. Navidrome)."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
import hashlib
import secrets
from typing import Any

import httpx

from app.integrations.contracts import (
    CatalogTrack,
    ProviderError,
    ProviderValidationError,
    TransientProviderError,
)
from app.integrations.http_errors import map_transport_error, raise_for_status
from app.logging import get_logger
from app.logging_events import log_event
from app.utils.retry import RetryDirective, with_retry

logger = get_logger(__name__)

PROVIDER_NAME = "subsonic"
API_VERSION = "1.16.1"
CLIENT_NAME = "navimuse"


@dataclass(slots=True)
class SubsonicCatalogSource:
    """Page through every song of the library via ``search3`` with an empty query."""

    base_url: str
    username: str
    password: str
    page_size: int = 500
    timeout_ms: int = 10_000
    max_attempts: int = 3
    backoff_base_ms: int = 500
    jitter_pct: int = 20
    transport: httpx.AsyncBaseTransport | None = None

    async def fetch_tracks(self, limit: int | None = None) -> list[CatalogTrack]:
        tracks: list[CatalogTrack] = []
        offset = 0
        page_size = max(1, int(self.page_size))
        async with httpx.AsyncClient(
            base_url=self.base_url.rstrip("/"),
            timeout=httpx.Timeout(max(self.timeout_ms, 100) / 1000),
            transport=self.transport,
        ) as client:
            while True:
                if limit is not None:
                    remaining = limit - len(tracks)
                    if remaining <= 0:
                        break
                    count = min(page_size, remaining)
                else:
                    count = page_size
                body = await self._request(
                    client,
                    "search3.view",
                    {
                        "query": "",
                        "songCount": count,
                        "songOffset": offset,
                        "artistCount": 0,
                        "albumCount": 0,
                    },
                )
                songs = _extract_songs(body)
                tracks.extend(_normalise_song(song) for song in songs)
                log_event(
                    logger,
                    "catalog.fetch_page",
                    component="integrations.subsonic",
                    offset=offset,
                    received=len(songs),
                    total=len(tracks),
                )
                if len(songs) < count:
                    break
                offset += len(songs)
        return tracks

    def _auth_params(self) -> dict[str, str]:
        salt = secrets.token_hex(6)
        token = hashlib.md5((self.password + salt).encode("utf-8")).hexdigest()
        return {
            "u": self.username,
            "t": token,
            "s": salt,
            "v": API_VERSION,
            "c": CLIENT_NAME,
            "f": "json",
        }

    async def _request(
        self, client: httpx.AsyncClient, endpoint: str, params: Mapping[str, Any]
    ) -> Mapping[str, Any]:
        async def _perform() -> Mapping[str, Any]:
            try:
                response = await client.get(
                    f"/rest/{endpoint}", params={**self._auth_params(), **params}
                )
            except httpx.HTTPError as exc:
                raise map_transport_error(PROVIDER_NAME, exc, timeout_ms=self.timeout_ms) from exc
            raise_for_status(PROVIDER_NAME, response)
            try:
                payload = response.json()
            except ValueError as exc:
                raise ProviderValidationError(
                    PROVIDER_NAME, "subsonic returned invalid JSON", cause=exc
                ) from exc
            envelope = payload.get("subsonic-response") if isinstance(payload, Mapping) else None
            if not isinstance(envelope, Mapping):
                raise ProviderValidationError(PROVIDER_NAME, "subsonic response envelope missing")
            if envelope.get("status") == "failed":
                error = envelope.get("error") or {}
                raise ProviderError(
                    PROVIDER_NAME,
                    f"subsonic API error: {error.get('message')} (code {error.get('code')})",
                )
            return envelope

        def _classify(error: Exception) -> RetryDirective:
            return RetryDirective(retry=isinstance(error, TransientProviderError), error=error)

        return await with_retry(
            _perform,
            attempts=max(1, int(self.max_attempts)),
            base_ms=max(1, int(self.backoff_base_ms)),
            jitter_pct=max(0, int(self.jitter_pct)),
            timeout_ms=None,
            classify_err=_classify,
        )


def _extract_songs(envelope: Mapping[str, Any]) -> list[Mapping[str, Any]]:
    result = envelope.get("searchResult3") or {}
    songs = result.get("song") if isinstance(result, Mapping) else None
    if isinstance(songs, Mapping):
        return [songs]
    if isinstance(songs, list):
        return [song for song in songs if isinstance(song, Mapping)]
    return []


def _normalise_song(raw: Mapping[str, Any]) -> CatalogTrack:
    duration = raw.get("duration")
    return CatalogTrack(
        id=str(raw.get("id")),
        title=str(raw.get("title") or ""),
        artist=str(raw.get("artist") or ""),
        album=raw.get("album"),
        duration=int(duration) if isinstance(duration, (int, float)) else None,
        path=raw.get("path"),
        genre=raw.get("genre"),
    )


__all__ = ["SubsonicCatalogSource"]
