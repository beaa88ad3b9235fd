"""HTTP endpoints controlling the enrichment pipeline."""

from __future__ import annotations

from typing import NoReturn

from fastapi import APIRouter, Request, status

from app.errors import AppError, DependencyError, ErrorCode, ValidationAppError
from app.orchestrator.controller import ImmediateResult, PipelineService
from app.schemas.pipeline import (
    PipelineEnvelope,
    PipelineModeRequest,
    PipelinePauseRequest,
    PipelineProcessRequest,
    PipelineSettingRequest,
    PipelineStartRequest,
)
from app.services.runtime_settings import (
    clear_runtime_override,
    resolve_pipeline_config,
    set_runtime_override,
)

router = APIRouter(prefix="/pipeline", tags=["Pipeline"])


def _get_service(request: Request) -> PipelineService:
    service = getattr(request.app.state, "pipeline_service", None)
    if service is None:
        raise DependencyError("Pipeline service unavailable")
    return service


def _ok(data: dict) -> PipelineEnvelope:
    return PipelineEnvelope(ok=True, data=data, error=None)


def _raise_for_failure(message: str) -> NoReturn:
    raise AppError(message, code=ErrorCode.INTERNAL_ERROR)


@router.post("/start", response_model=PipelineEnvelope)
async def start_pipeline(request: Request, payload: PipelineStartRequest) -> PipelineEnvelope:
    service = _get_service(request)
    result = await service.start(
        skip_sync=payload.skip_sync,
        limit=payload.limit,
        dry_run=payload.dry_run,
        mode=payload.mode,
    )
    if result.busy:
        raise AppError(
            result.message,
            code=ErrorCode.BUSY,
            http_status=status.HTTP_409_CONFLICT,
            meta={"state": service.state.value},
        )
    if not result.success:
        _raise_for_failure(result.message)
    return _ok(result.as_dict())


@router.post("/pause", response_model=PipelineEnvelope)
async def pause_pipeline(request: Request, payload: PipelinePauseRequest) -> PipelineEnvelope:
    result = await _get_service(request).pause(payload.mode, duration_s=payload.duration_s)
    if not result.success:
        _raise_for_failure(result.message)
    return _ok(result.as_dict())


@router.post("/resume", response_model=PipelineEnvelope)
async def resume_pipeline(request: Request, payload: PipelineModeRequest) -> PipelineEnvelope:
    result = await _get_service(request).resume(payload.mode)
    if not result.success:
        _raise_for_failure(result.message)
    return _ok(result.as_dict())


@router.post("/stop", response_model=PipelineEnvelope)
async def stop_pipeline(request: Request, payload: PipelineModeRequest) -> PipelineEnvelope:
    result = await _get_service(request).stop(payload.mode)
    if not result.success:
        _raise_for_failure(result.message)
    return _ok(result.as_dict())


@router.get("/status", response_model=PipelineEnvelope)
def pipeline_status(request: Request) -> PipelineEnvelope:
    return _ok(_get_service(request).status().as_dict())


@router.post("/process", response_model=PipelineEnvelope)
async def process_immediate(
    request: Request, payload: PipelineProcessRequest
) -> PipelineEnvelope:
    result: ImmediateResult = await _get_service(request).process_immediate(
        payload.ids, payload.mode
    )
    if not result.success:
        if result.reason == "invalid_request":
            raise ValidationAppError(result.message, meta={"total": result.total})
        if result.reason == "provider_error":
            raise DependencyError(result.message)
        _raise_for_failure(result.message)
    return _ok(result.as_dict())


@router.post("/settings", response_model=PipelineEnvelope)
def update_setting(request: Request, payload: PipelineSettingRequest) -> PipelineEnvelope:
    _get_service(request)
    if payload.value is None:
        name = payload.key
        cleared = clear_runtime_override(payload.key)
        action = "cleared" if cleared else "unchanged"
    else:
        name = set_runtime_override(payload.key, payload.value)
        action = "set"
    config = resolve_pipeline_config()
    return _ok(
        {
            "key": name,
            "status": action,
            "batch_size": config.batch_size,
            "immediate_max_items": config.immediate_max_items,
        }
    )


__all__ = ["router"]
