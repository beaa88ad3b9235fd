"""Contracts shared by the pipeline and its external collaborators."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable


@dataclass(slots=True, frozen=True)
class AnalysisRequestItem:
    """Item identity handed to the metadata generator."""

    id: str
    title: str
    artist: str


@dataclass(slots=True, frozen=True)
class AnalysisResult:
    """Raw analysis returned by the metadata generator for one item.

    ``payload`` is either an already decoded mapping or the raw text the model
    produced for this item; parsing and repair happen in the processor.
    """

    id: str
    payload: Mapping[str, Any] | str
    llm_model: str | None = None


@dataclass(slots=True, frozen=True)
class CatalogTrack:
    """Track metadata as reported by the catalog server."""

    id: str
    title: str
    artist: str
    album: str | None = None
    duration: int | None = None
    path: str | None = None
    genre: str | None = None
    metadata: Mapping[str, object] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class SyncResult:
    added: int
    updated: int
    skipped: int

    def as_dict(self) -> dict[str, int]:
        return {"added": self.added, "updated": self.updated, "skipped": self.skipped}


class ProviderError(RuntimeError):
    """Base exception raised when a provider request fails."""

    def __init__(
        self,
        provider: str,
        message: str,
        *,
        status_code: int | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
        self.cause = cause


class TransientProviderError(ProviderError):
    """Failure expected to clear on retry (timeouts, throttling, network blips)."""


class ProviderTimeoutError(TransientProviderError):
    """Raised when the provider did not respond within the configured timeout."""

    def __init__(self, provider: str, timeout_ms: int, *, cause: Exception | None = None) -> None:
        super().__init__(provider, f"{provider} timed out after {timeout_ms}ms", cause=cause)
        self.timeout_ms = timeout_ms


class ProviderNetworkError(TransientProviderError):
    """Raised when the connection to the provider failed."""


class ProviderUnavailableError(TransientProviderError):
    """Raised when the provider answered with a server side error."""


class ProviderRateLimitedError(TransientProviderError):
    """Raised when a provider applied rate limits to the request."""

    def __init__(
        self,
        provider: str,
        message: str,
        *,
        retry_after_ms: int | None = None,
        cause: Exception | None = None,
        status_code: int | None = 429,
    ) -> None:
        super().__init__(provider, message, status_code=status_code, cause=cause)
        self.retry_after_ms = retry_after_ms


class ProviderQuotaExhaustedError(ProviderRateLimitedError):
    """Raised when the provider reports that the daily quota is used up."""


class ProviderAuthError(ProviderError):
    """Raised when the provider rejected the credentials."""


class ProviderValidationError(ProviderError):
    """Raised when a provider rejects the request as invalid."""


class MetadataGenerator(Protocol):
    """AI collaborator producing analysis payloads for a batch of items.

    May return fewer results than requested; raises ``ProviderError`` on
    provider level failures.
    """

    async def generate_batch_metadata(
        self, items: Sequence[AnalysisRequestItem]
    ) -> list[AnalysisResult]: ...


class EmbeddingGenerator(Protocol):
    async def embed(self, text: str) -> list[float]: ...


@runtime_checkable
class BatchEmbeddingGenerator(Protocol):
    """Embedding collaborators that can vectorise several texts per request."""

    async def embed(self, text: str) -> list[float]: ...

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]: ...


class CatalogSource(Protocol):
    async def fetch_tracks(self, limit: int | None = None) -> list[CatalogTrack]: ...


class CatalogSync(Protocol):
    """Idempotent upsert of catalog items; raises on unrecoverable fetch failure."""

    async def sync(self, limit: int | None = None) -> SyncResult: ...


__all__ = [
    "AnalysisRequestItem",
    "AnalysisResult",
    "BatchEmbeddingGenerator",
    "CatalogSource",
    "CatalogSync",
    "CatalogTrack",
    "EmbeddingGenerator",
    "MetadataGenerator",
    "ProviderAuthError",
    "ProviderError",
    "ProviderNetworkError",
    "ProviderQuotaExhaustedError",
    "ProviderRateLimitedError",
    "ProviderTimeoutError",
    "ProviderUnavailableError",
    "ProviderValidationError",
    "SyncResult",
    "TransientProviderError",
]
