from __future__ import annotations

import asyncio

import httpx
import pytest

from app.config import load_config
from app.integrations.contracts import CatalogTrack, ProviderUnavailableError
from app.main import create_app
from app.models import MediaStatus
from app.orchestrator.bootstrap import PipelineRuntime
from tests.fixtures.pipeline import (
    FakeMetadataGenerator,
    StaticCatalogSource,
    build_runtime,
    seed_songs,
)


def _client(runtime: PipelineRuntime) -> httpx.AsyncClient:
    app = create_app(load_config(), runtime=runtime)
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_dry_run_start_returns_envelope() -> None:
    seed_songs(11)
    runtime = build_runtime()

    async with _client(runtime) as client:
        response = await client.post(
            "/pipeline/start", json={"skip_sync": True, "dry_run": True}
        )

    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["error"] is None
    assert body["data"]["pending_count"] == 11
    assert body["data"]["jobs_created"] == 2


@pytest.mark.asyncio
async def test_start_while_busy_returns_conflict() -> None:
    gate = asyncio.Event()
    runtime = build_runtime(
        catalog_source=StaticCatalogSource(
            [CatalogTrack(id="nd-1", title="T", artist="A")], gate=gate
        )
    )
    try:
        async with _client(runtime) as client:
            first = await client.post("/pipeline/start", json={})
            second = await client.post("/pipeline/start", json={"skip_sync": True})
        gate.set()
        await runtime.service.wait_until_idle(timeout=3)
    finally:
        gate.set()
        await runtime.service.shutdown()

    assert first.status_code == 200
    assert second.status_code == 409
    error = second.json()["error"]
    assert error["code"] == "BUSY"
    assert error["meta"] == {"state": "syncing"}


@pytest.mark.asyncio
async def test_pause_resume_and_stop_round_trip() -> None:
    runtime = build_runtime()
    try:
        async with _client(runtime) as client:
            paused = await client.post(
                "/pipeline/pause", json={"mode": "embedding", "duration_s": 120}
            )
            status = await client.get("/pipeline/status")
            resumed = await client.post("/pipeline/resume", json={"mode": "embedding"})
            stopped = await client.post("/pipeline/stop", json={"mode": "embedding"})
    finally:
        await runtime.service.shutdown()

    assert paused.status_code == 200
    assert paused.json()["data"]["resume_at"] is not None
    embedding = status.json()["data"]["queues"]["embedding"]
    assert embedding["paused"] is True
    assert embedding["resume_at"] == paused.json()["data"]["resume_at"]
    assert resumed.json()["data"]["mode"] == "embedding"
    assert stopped.json()["data"]["cleared_jobs"] == 0


@pytest.mark.asyncio
async def test_process_endpoint_runs_immediately() -> None:
    ids = seed_songs(2)
    runtime = build_runtime()

    async with _client(runtime) as client:
        response = await client.post("/pipeline/process", json={"ids": ids})

    assert response.status_code == 200
    assert response.json()["data"]["count"] == 2
    assert runtime.store.get_item(ids[0]).metadata_status is MediaStatus.COMPLETED


@pytest.mark.asyncio
async def test_process_endpoint_maps_failures_to_http_errors() -> None:
    ids = seed_songs(1)
    runtime = build_runtime(
        metadata_generator=FakeMetadataGenerator(error=ProviderUnavailableError("ai", "503"))
    )

    async with _client(runtime) as client:
        unknown = await client.post("/pipeline/process", json={"ids": ["ghost"]})
        blank = await client.post("/pipeline/process", json={"ids": ["  "]})
        provider = await client.post("/pipeline/process", json={"ids": ids})

    assert unknown.status_code == 400
    assert unknown.json()["error"]["code"] == "VALIDATION_ERROR"
    assert blank.status_code == 422
    assert provider.status_code == 503
    assert provider.json()["error"]["code"] == "DEPENDENCY_ERROR"


@pytest.mark.asyncio
async def test_invalid_mode_is_rejected() -> None:
    runtime = build_runtime()

    async with _client(runtime) as client:
        response = await client.post("/pipeline/pause", json={"mode": "everything"})

    assert response.status_code == 422
    assert response.json()["error"]["meta"]["fields"][0]["name"] == "mode"


@pytest.mark.asyncio
async def test_settings_endpoint_sets_and_clears_overrides() -> None:
    runtime = build_runtime()

    async with _client(runtime) as client:
        updated = await client.post(
            "/pipeline/settings", json={"key": "batch_size", "value": "25"}
        )
        cleared = await client.post("/pipeline/settings", json={"key": "batch_size"})
        invalid = await client.post(
            "/pipeline/settings", json={"key": "batch-size", "value": "1"}
        )

    assert updated.json()["data"] == {
        "key": "batch_size",
        "status": "set",
        "batch_size": 25,
        "immediate_max_items": 20,
    }
    assert cleared.json()["data"]["status"] == "cleared"
    assert cleared.json()["data"]["batch_size"] == 10
    assert invalid.status_code == 400


@pytest.mark.asyncio
async def test_missing_runtime_reports_dependency_error() -> None:
    app = create_app(load_config())

    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test"
    ) as client:
        response = await client.get("/pipeline/status")
        live = await client.get("/live")

    assert response.status_code == 503
    assert live.json() == {"status": "ok"}
