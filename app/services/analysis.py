"""Parsing, repair and projection of AI analysis payloads."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
import re
from typing import Any

from app.errors import MalformedResponseError
from app.logging import get_logger
from app.logging_events import log_event
from app.utils.jsonx import extract_json_block, safe_loads

logger = get_logger(__name__)

FLATTENED_PLACEHOLDER = "[Auto-repaired: data was flattened]"

_FENCE_MARKERS = re.compile(r"```(?:json|JSON)?")
_CONTROL_CHARS = re.compile(r"[\ufffd\x00-\x1f]")
_SCENE_TAG_PAREN = re.compile(r'("scene_tag"\s*:\s*"[^"]*"\s*)\)')
_SCENE_TAG_BRACKET = re.compile(r'("scene_tag"\s*:\s*"[^"]*"\s*)\]')
_TAGS_CLOSED_BY_BRACKET = re.compile(r'\],(\s*"language")')
_EARLY_CLOSURE = re.compile(r'\}\s*,\s*\{\s*"language"')
_FLAT_ANCHOR = re.compile(r'"vector_anchor"\s*:\s*"([^"]+)"')
_DOUBLE_COMMA = re.compile(r",\s*,")
_TRAILING_COMMA_ARRAY = re.compile(r",\s*\]")
_TRAILING_COMMA_OBJECT = re.compile(r",\s*\}")


def clean_markdown(text: str) -> str:
    """Drop markdown code fence markers wherever the model placed them."""

    return _FENCE_MARKERS.sub("", text).strip()


def repair_json(content: str) -> str:
    """Apply best-effort fixes for the malformations LLMs commonly emit."""

    repaired = content
    repairs: list[str] = []

    cleaned = _CONTROL_CHARS.sub("", repaired)
    if cleaned != repaired:
        repairs.append("control_chars")
    repaired = cleaned

    repaired, count = _SCENE_TAG_PAREN.subn(r"\1}", repaired)
    if count:
        repairs.append("scene_tag_paren")
    repaired, count = _SCENE_TAG_BRACKET.subn(r"\1}", repaired)
    if count:
        repairs.append("scene_tag_bracket")
    repaired, count = _TAGS_CLOSED_BY_BRACKET.subn(r"},\1", repaired)
    if count:
        repairs.append("embedding_tags_closure")
    repaired, count = _EARLY_CLOSURE.subn('},"language"', repaired)
    if count:
        repairs.append("early_closure")

    def _expand_anchor(match: re.Match[str]) -> str:
        return (
            '"vector_anchor":{"acoustic_model":"'
            + match.group(1)
            + f'","semantic_push":"{FLATTENED_PLACEHOLDER}"'
            + f',"cultural_weight":"{FLATTENED_PLACEHOLDER}"}}'
        )

    repaired, count = _FLAT_ANCHOR.subn(_expand_anchor, repaired)
    if count:
        repairs.append("flattened_vector_anchor")

    trimmed = repaired.strip()
    if trimmed.startswith("[") and not trimmed.endswith("]"):
        last_brace = repaired.rfind("}")
        if last_brace > 0:
            repaired = repaired[: last_brace + 1] + "]"
            repairs.append("missing_closing_bracket")

    repaired = _DOUBLE_COMMA.sub(",", repaired)
    repaired = _TRAILING_COMMA_ARRAY.sub("]", repaired)
    repaired = _TRAILING_COMMA_OBJECT.sub("}", repaired)

    if repairs:
        log_event(logger, "analysis.repair", component="services.analysis", repairs=",".join(repairs))
    return repaired


def loads_with_repair(text: str, *, item_id: str | None = None) -> Any:
    """Decode ``text`` as JSON, falling back to :func:`repair_json` once."""

    block = extract_json_block(clean_markdown(text))
    try:
        return safe_loads(block)
    except ValueError:
        pass
    try:
        return safe_loads(repair_json(block))
    except ValueError as exc:
        raise MalformedResponseError(
            "AI response is not valid JSON after repair.", item_id=item_id, preview=text
        ) from exc


def parse_analysis(raw: Mapping[str, Any] | str, *, item_id: str | None = None) -> dict[str, Any]:
    """Return a validated analysis mapping or raise ``MalformedResponseError``."""

    if isinstance(raw, Mapping):
        data: Any = dict(raw)
    elif isinstance(raw, str):
        data = loads_with_repair(raw, item_id=item_id)
    else:
        raise MalformedResponseError(
            f"Unsupported analysis payload type: {type(raw).__name__}", item_id=item_id
        )

    if isinstance(data, list) and len(data) == 1:
        data = data[0]
    if not isinstance(data, Mapping):
        raise MalformedResponseError("Analysis payload must be a JSON object.", item_id=item_id)

    # a string anchor is the flattened variant with semantic_push at the top level
    if not isinstance(data.get("vector_anchor"), (str, Mapping)):
        raise MalformedResponseError("Analysis payload lacks vector_anchor.", item_id=item_id)
    if not isinstance(data.get("embedding_tags"), Mapping):
        raise MalformedResponseError("Analysis payload lacks embedding_tags.", item_id=item_id)
    return dict(data)


def _tags(analysis: Mapping[str, Any]) -> Mapping[str, Any]:
    tags = analysis.get("embedding_tags")
    return tags if isinstance(tags, Mapping) else {}


def _string_list(value: Any) -> list[str]:
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, Sequence):
        return [str(entry) for entry in value if entry is not None and str(entry).strip()]
    return []


def _optional_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _anchor_parts(analysis: Mapping[str, Any]) -> tuple[str, str, str, str]:
    anchor = analysis.get("vector_anchor")
    if isinstance(anchor, str):
        return (
            anchor,
            str(analysis.get("semantic_push") or ""),
            str(analysis.get("cultural_weight") or ""),
            "None",
        )
    anchor = anchor if isinstance(anchor, Mapping) else {}
    return (
        str(anchor.get("acoustic_model") or ""),
        str(anchor.get("semantic_push") or ""),
        str(anchor.get("cultural_weight") or ""),
        str(anchor.get("exclusion_logic") or "None"),
    )


def derive_fields(analysis: Mapping[str, Any]) -> dict[str, Any]:
    """Project an analysis payload onto the searchable item columns."""

    tags = _tags(analysis)
    acoustic, semantic, _, _ = _anchor_parts(analysis)
    moods = _string_list(tags.get("mood_coord"))
    objects = _string_list(tags.get("objects"))
    scene_tag = _optional_str(tags.get("scene_tag"))
    spectrum = _optional_str(tags.get("spectrum"))

    tag_list = [*moods, *objects]
    if scene_tag:
        tag_list.append(scene_tag)
    if spectrum:
        tag_list.append(f"#Spectrum:{spectrum}")

    return {
        "description": f"{acoustic}\n\n[Imagery] {semantic}",
        "tags": tag_list,
        "mood": moods[0] if moods else "Unknown",
        "is_instrumental": analysis.get("is_instrumental") is True,
        "energy_level": _optional_float(tags.get("energy")),
        "popularity": _optional_float(analysis.get("popularity_raw")),
        "language": _optional_str(analysis.get("language")),
        "spectrum": spectrum,
        "spatial": _optional_str(tags.get("spatial")),
        "scene_tag": scene_tag,
        "tempo_vibe": _optional_str(tags.get("tempo_vibe")),
        "timbre_texture": _optional_str(tags.get("timbre_texture")),
        "llm_model": _optional_str(analysis.get("llm_model")),
    }


def infer_genre(analysis: Mapping[str, Any]) -> str | None:
    for entry in _string_list(_tags(analysis).get("objects")):
        if "Genre" in entry or "Style" in entry:
            return entry
    return None


def build_embedding_text(
    analysis: Mapping[str, Any],
    *,
    title: str,
    artist: str,
    genre: str | None = None,
) -> str:
    """Render the structured document that gets embedded for retrieval."""

    tags = _tags(analysis)
    acoustic, semantic, cultural, exclusion = _anchor_parts(analysis)
    popularity = _optional_float(analysis.get("popularity_raw")) or 0.0
    resolved_genre = genre or infer_genre(analysis) or "Unknown Genre"

    return "\n".join(
        [
            "[Category: Music Retrieval]",
            f"[Entity: {title} by {artist}]",
            "",
            "[Acoustics & Soundstage]",
            f"{acoustic}.",
            (
                f"Spectrum Profile: {tags.get('spectrum')}; "
                f"Spatial Signature: {tags.get('spatial')}; "
                f"Energy Density: {tags.get('energy')}/10."
            ),
            (
                f"Rhythmic Structure: {tags.get('tempo_vibe')}; "
                f"Timbre Texture: {tags.get('timbre_texture')}."
            ),
            "",
            "[Subjective Experience]",
            f"Mood: {', '.join(_string_list(tags.get('mood_coord')))}.",
            f"Narrative: {semantic}.",
            f"Key Elements: {', '.join(_string_list(tags.get('objects')))}.",
            "",
            "[Boundary Constraints]",
            f"Exclusion: {exclusion}.",
            "",
            "[Metadata Fingerprint]",
            (
                f"Genre: {resolved_genre} | Era/Culture: {cultural} | "
                f"Popularity Index: {popularity:.2f}."
            ),
        ]
    )


__all__ = [
    "FLATTENED_PLACEHOLDER",
    "clean_markdown",
    "build_embedding_text",
    "derive_fields",
    "infer_genre",
    "loads_with_repair",
    "parse_analysis",
    "repair_json",
]
