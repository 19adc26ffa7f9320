"""Parsing of interpreter model output into a tagged variant.

Interpreter responses arrive in several JSON shapes. Instead of probing
optional fields ad hoc, ``classify_interpretation`` inspects a fixed set of
discriminating fields and returns exactly one of:

- ``NarrativeAnalysis``: has ``interpretation`` or ``dreamTopic``
- ``StructuredInsights``: has an ``insights``, ``symbols`` or ``themes`` list
- ``Fallback``: anything else, including non-JSON text
"""

import json
import re
from typing import Any, Literal, Union

from pydantic import BaseModel, Field

from dream_rag.core.logging import get_logger

logger = get_logger(__name__)

NARRATIVE_FIELDS = ("interpretation", "dreamTopic")
STRUCTURED_FIELDS = ("insights", "symbols", "themes")

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


class NarrativeAnalysis(BaseModel):
    kind: Literal["narrative"] = "narrative"
    dream_topic: str = ""
    interpretation: str = ""
    quick_take: str = ""
    self_reflection: str = ""
    symbols: list[str] = Field(default_factory=list)
    raw: dict[str, Any] = Field(default_factory=dict)


class StructuredInsights(BaseModel):
    kind: Literal["structured"] = "structured"
    insights: list[Any] = Field(default_factory=list)
    symbols: list[Any] = Field(default_factory=list)
    themes: list[Any] = Field(default_factory=list)
    raw: dict[str, Any] = Field(default_factory=dict)


class Fallback(BaseModel):
    kind: Literal["fallback"] = "fallback"
    text: str = ""
    raw: dict[str, Any] = Field(default_factory=dict)


Interpretation = Union[NarrativeAnalysis, StructuredInsights, Fallback]


def _strip_fences(raw_output: str) -> str:
    """Strip markdown code fences (```json ... ``` or ``` ... ```) and whitespace."""
    cleaned = raw_output.strip()
    fence_match = re.search(r"```(?:json)?\s*\n?(.*?)```", cleaned, re.DOTALL)
    if fence_match:
        return fence_match.group(1).strip()
    return cleaned


def _load_json(raw_output: str) -> dict[str, Any] | None:
    cleaned = _strip_fences(raw_output)
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError:
        match = _JSON_OBJECT.search(cleaned)
        if not match:
            return None
        try:
            parsed = json.loads(match.group(0))
        except json.JSONDecodeError:
            return None
    return parsed if isinstance(parsed, dict) else None


def _as_text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _as_list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def classify_interpretation(payload: dict[str, Any]) -> Interpretation:
    """Pick the variant for a parsed payload from its discriminating fields."""
    if any(_as_text(payload.get(name)) for name in NARRATIVE_FIELDS):
        return NarrativeAnalysis(
            dream_topic=_as_text(payload.get("dreamTopic")),
            interpretation=_as_text(payload.get("interpretation")),
            quick_take=_as_text(payload.get("quickTake")),
            self_reflection=_as_text(payload.get("selfReflection")),
            symbols=[s for s in _as_list(payload.get("symbols")) if isinstance(s, str)],
            raw=payload,
        )

    if any(isinstance(payload.get(name), list) for name in STRUCTURED_FIELDS):
        return StructuredInsights(
            insights=_as_list(payload.get("insights")),
            symbols=_as_list(payload.get("symbols")),
            themes=_as_list(payload.get("themes")),
            raw=payload,
        )

    text = next((v for v in payload.values() if isinstance(v, str) and v.strip()), "")
    return Fallback(text=text.strip(), raw=payload)


def parse_interpretation(raw: str | dict[str, Any]) -> Interpretation:
    """
    Parse raw interpreter output.

    Args:
        raw: Model output text (possibly fenced JSON) or an already-decoded dict

    Returns:
        One of NarrativeAnalysis, StructuredInsights, Fallback. Never raises.
    """
    if isinstance(raw, dict):
        return classify_interpretation(raw)

    payload = _load_json(raw or "")
    if payload is None:
        logger.debug("Interpreter output is not JSON, keeping it as plain text")
        return Fallback(text=(raw or "").strip())
    return classify_interpretation(payload)
