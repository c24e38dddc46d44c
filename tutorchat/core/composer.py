"""Builds provider-ready requests from raw conversation turns."""

from __future__ import annotations

from enum import Enum
from typing import Any, Iterable, Mapping

from tutorchat.config.settings import settings
from tutorchat.core.models import HARM_CATEGORIES, GenerationOptions, ProviderRequest, SafetySetting, Turn
from tutorchat.core.prompts import TUTOR_PREAMBLE

_ROLE_MAP = {
    "user": "user",
    "model": "model",
    "assistant": "model",
}

_OPTION_KEYS = {
    "temperature": "temperature",
    "topK": "top_k",
    "top_k": "top_k",
    "topP": "top_p",
    "top_p": "top_p",
    "maxOutputTokens": "max_output_tokens",
    "max_output_tokens": "max_output_tokens",
}


class HistoryWindow(str, Enum):
    """Named truncation policies; the size of each comes from settings."""

    BUFFERED = "buffered"
    STREAM = "stream"

    def limit(self) -> int:
        if self is HistoryWindow.BUFFERED:
            return max(0, int(settings.buffered_history_turns))
        return max(0, int(settings.stream_history_turns))


def default_generation_options() -> GenerationOptions:
    return GenerationOptions(
        temperature=settings.default_temperature,
        top_k=settings.default_top_k,
        top_p=settings.default_top_p,
        max_output_tokens=settings.default_max_output_tokens,
    )


def default_safety_settings() -> tuple[SafetySetting, ...]:
    return tuple(SafetySetting(category=category, threshold=settings.safety_threshold) for category in HARM_CATEGORIES)


def _flatten_parts(parts: Any) -> str:
    if not isinstance(parts, list):
        return ""
    texts: list[str] = []
    for part in parts:
        if isinstance(part, Mapping) and isinstance(part.get("text"), str):
            texts.append(part["text"])
        elif isinstance(part, str):
            texts.append(part)
    return "".join(texts)


def normalize_turn(raw: Any) -> Turn:
    """Coerce one raw message into a Turn, never failing.

    Accepts ``{"role", "content"}`` and ``{"role", "parts": [{"text"}]}``;
    unknown roles become ``user`` and missing content becomes empty text.
    """
    if isinstance(raw, Turn):
        return raw
    if isinstance(raw, str):
        return Turn(role="user", content=raw)
    if not isinstance(raw, Mapping):
        return Turn(role="user", content="")

    role = _ROLE_MAP.get(str(raw.get("role") or "").strip().lower(), "user")
    content = raw.get("content")
    if content is None:
        content = raw.get("text")
    if content is None and "parts" in raw:
        content = _flatten_parts(raw.get("parts"))
    if isinstance(content, list):
        content = _flatten_parts(content)
    return Turn(role=role, content=content if isinstance(content, str) else ("" if content is None else str(content)))


def merge_options(base: GenerationOptions, overrides: Mapping[str, Any] | None) -> GenerationOptions:
    if not overrides:
        return base
    update: dict[str, Any] = {}
    for key, value in overrides.items():
        field_name = _OPTION_KEYS.get(key)
        if field_name is not None and value is not None:
            update[field_name] = value
    if not update:
        return base
    merged = base.model_dump()
    merged.update(update)
    return GenerationOptions(**merged)


def compose(
    messages: Iterable[Any],
    *,
    window: HistoryWindow = HistoryWindow.STREAM,
    overrides: Mapping[str, Any] | None = None,
    base_options: GenerationOptions | None = None,
) -> ProviderRequest:
    turns = [normalize_turn(item) for item in messages]
    limit = window.limit()
    if limit:
        turns = turns[-limit:]
    return ProviderRequest(
        preamble=TUTOR_PREAMBLE,
        turns=tuple(turns),
        options=merge_options(base_options or default_generation_options(), overrides),
        safety_settings=default_safety_settings(),
    )


def stream_overrides() -> dict[str, Any]:
    return {"maxOutputTokens": settings.stream_max_output_tokens}


def fallback_overrides() -> dict[str, Any]:
    return {"maxOutputTokens": settings.fallback_max_output_tokens}
