"""Request and response models for the pipeline control endpoints."""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator

from app.workers.processors import PipelineMode


class PipelineStartRequest(BaseModel):
    skip_sync: bool = False
    limit: Optional[int] = Field(None, ge=1, description="Upper bound of items to enqueue")
    dry_run: bool = False
    mode: PipelineMode = PipelineMode.FULL


class PipelinePauseRequest(BaseModel):
    mode: PipelineMode = PipelineMode.FULL
    duration_s: Optional[float] = Field(
        None, gt=0, description="Resume automatically after this many seconds"
    )


class PipelineModeRequest(BaseModel):
    mode: PipelineMode = PipelineMode.FULL


class PipelineProcessRequest(BaseModel):
    ids: list[str] = Field(..., min_length=1)
    mode: PipelineMode = PipelineMode.FULL

    @field_validator("ids")
    @classmethod
    def _strip_ids(cls, value: list[str]) -> list[str]:
        cleaned = [entry.strip() for entry in value if entry and entry.strip()]
        if not cleaned:
            raise ValueError("ids must contain at least one non-empty value")
        return cleaned


class PipelineSettingRequest(BaseModel):
    key: str = Field(..., min_length=1, description="Setting name, e.g. batch_size")
    value: Optional[str] = Field(None, description="New value; null removes the override")


class PipelineEnvelope(BaseModel):
    ok: bool
    data: Dict[str, Any]
    error: Optional[Dict[str, Any]] = None


__all__ = [
    "PipelineEnvelope",
    "PipelineModeRequest",
    "PipelinePauseRequest",
    "PipelineProcessRequest",
    "PipelineSettingRequest",
    "PipelineStartRequest",
]
