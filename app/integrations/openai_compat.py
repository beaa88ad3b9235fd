"""OpenAI compatible metadata and embedding providers."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

import httpx

from app.config import ProviderConfig
from app.integrations.contracts import (
    AnalysisRequestItem,
    AnalysisResult,
    ProviderValidationError,
)
from app.integrations.http_errors import map_transport_error, raise_for_status
from app.logging import get_logger
from app.logging_events import log_event
from app.services.analysis import loads_with_repair
from app.utils.jsonx import safe_dumps

logger = get_logger(__name__)

METADATA_PROVIDER = "ai.metadata"
EMBEDDING_PROVIDER = "ai.embedding"

METADATA_SYSTEM_PROMPT = (
    "You are a music analyst. For every song in the user's JSON array return one "
    "object in a raw JSON array (no markdown) with the keys: id (copied from the "
    "input), vector_anchor {acoustic_model, semantic_push, cultural_weight, "
    "exclusion_logic}, embedding_tags {spectrum, spatial, energy (1-10), tempo_vibe, "
    "timbre_texture, mood_coord[], objects[], scene_tag}, popularity_raw (0-1), "
    "language, is_instrumental."
)


def _build_timeout(timeout_ms: int) -> httpx.Timeout:
    timeout_seconds = max(timeout_ms, 100) / 1000
    return httpx.Timeout(timeout_seconds, connect=min(timeout_seconds, 5.0))


def _headers(api_key: str | None) -> dict[str, str]:
    headers = {"Accept": "application/json", "Content-Type": "application/json"}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    return headers


async def _post_json(
    *,
    provider: str,
    base_url: str,
    path: str,
    api_key: str | None,
    payload: Mapping[str, Any],
    timeout_ms: int,
    transport: httpx.AsyncBaseTransport | None,
) -> Mapping[str, Any]:
    try:
        async with httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=_build_timeout(timeout_ms),
            headers=_headers(api_key),
            transport=transport,
        ) as client:
            response = await client.post(path, json=dict(payload))
    except httpx.HTTPError as exc:
        raise map_transport_error(provider, exc, timeout_ms=timeout_ms) from exc
    raise_for_status(provider, response)
    try:
        body = response.json()
    except ValueError as exc:
        raise ProviderValidationError(provider, f"{provider} returned invalid JSON", cause=exc) from exc
    if not isinstance(body, Mapping):
        raise ProviderValidationError(provider, f"{provider} returned an unexpected payload")
    return body


@dataclass(slots=True)
class OpenAICompatibleMetadataGenerator:
    """Ask a chat completion model for one analysis object per song."""

    base_url: str
    model: str
    api_key: str | None = None
    temperature: float = 0.7
    timeout_ms: int = 60_000
    system_prompt: str = METADATA_SYSTEM_PROMPT
    transport: httpx.AsyncBaseTransport | None = None

    @classmethod
    def from_config(
        cls, config: ProviderConfig, *, transport: httpx.AsyncBaseTransport | None = None
    ) -> OpenAICompatibleMetadataGenerator:
        return cls(
            base_url=config.base_url,
            model=config.model,
            api_key=config.api_key,
            temperature=config.temperature,
            timeout_ms=config.timeout_ms,
            transport=transport,
        )

    async def generate_batch_metadata(
        self, items: Sequence[AnalysisRequestItem]
    ) -> list[AnalysisResult]:
        if not items:
            return []
        request_items = [
            {"id": item.id, "title": item.title, "artist": item.artist} for item in items
        ]
        body = await _post_json(
            provider=METADATA_PROVIDER,
            base_url=self.base_url,
            path="/chat/completions",
            api_key=self.api_key,
            payload={
                "model": self.model,
                "temperature": self.temperature,
                "messages": [
                    {"role": "system", "content": self.system_prompt},
                    {"role": "user", "content": safe_dumps(request_items)},
                ],
            },
            timeout_ms=self.timeout_ms,
            transport=self.transport,
        )
        content = _message_content(body)
        model_name = str(body.get("model") or self.model)
        decoded = loads_with_repair(content)
        entries = decoded if isinstance(decoded, list) else [decoded]

        requested = {item.id for item in items}
        results: list[AnalysisResult] = []
        for entry in entries:
            if not isinstance(entry, Mapping):
                continue
            raw_id = entry.get("id")
            item_id = str(raw_id) if raw_id is not None else None
            if item_id is None or item_id not in requested:
                continue
            payload = dict(entry)
            payload.setdefault("llm_model", model_name)
            results.append(AnalysisResult(id=item_id, payload=payload, llm_model=model_name))

        log_event(
            logger,
            "ai.metadata.batch",
            component="integrations.openai_compat",
            model=model_name,
            requested=len(items),
            returned=len(results),
        )
        return results


def _message_content(body: Mapping[str, Any]) -> str:
    choices = body.get("choices")
    if not isinstance(choices, list) or not choices:
        raise ProviderValidationError(METADATA_PROVIDER, "completion returned no choices")
    message = choices[0].get("message") if isinstance(choices[0], Mapping) else None
    content = message.get("content") if isinstance(message, Mapping) else None
    if not isinstance(content, str):
        raise ProviderValidationError(METADATA_PROVIDER, "completion returned no content")
    return content


@dataclass(slots=True)
class OpenAICompatibleEmbeddingGenerator:
    base_url: str
    model: str
    api_key: str | None = None
    dimensions: int | None = None
    timeout_ms: int = 60_000
    transport: httpx.AsyncBaseTransport | None = None

    @classmethod
    def from_config(
        cls, config: ProviderConfig, *, transport: httpx.AsyncBaseTransport | None = None
    ) -> OpenAICompatibleEmbeddingGenerator:
        return cls(
            base_url=config.embedding_base_url,
            model=config.embedding_model,
            api_key=config.embedding_api_key,
            dimensions=config.embedding_dimensions,
            timeout_ms=config.timeout_ms,
            transport=transport,
        )

    async def embed(self, text: str) -> list[float]:
        vectors = await self.embed_batch([text])
        return vectors[0]

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []
        payload: dict[str, Any] = {"model": self.model, "input": list(texts)}
        if self.dimensions:
            payload["dimensions"] = int(self.dimensions)
        body = await _post_json(
            provider=EMBEDDING_PROVIDER,
            base_url=self.base_url,
            path="/embeddings",
            api_key=self.api_key,
            payload=payload,
            timeout_ms=self.timeout_ms,
            transport=self.transport,
        )
        data = body.get("data")
        if not isinstance(data, list) or len(data) != len(texts):
            raise ProviderValidationError(
                EMBEDDING_PROVIDER,
                f"expected {len(texts)} embeddings, received "
                f"{len(data) if isinstance(data, list) else 0}",
            )
        ordered = sorted(
            (entry for entry in data if isinstance(entry, Mapping)),
            key=lambda entry: int(entry.get("index", 0)),
        )
        vectors: list[list[float]] = []
        for entry in ordered:
            embedding = entry.get("embedding")
            if not isinstance(embedding, list):
                raise ProviderValidationError(EMBEDDING_PROVIDER, "embedding entry is malformed")
            vectors.append([float(value) for value in embedding])
        return vectors


__all__ = [
    "METADATA_SYSTEM_PROMPT",
    "OpenAICompatibleEmbeddingGenerator",
    "OpenAICompatibleMetadataGenerator",
]
