"""Structured-first parsing of model output.

Every parser here returns something usable: a strict JSON parse when the model
followed its schema, a heuristic extraction when it wrote prose around the
payload, and the raw text otherwise.
"""

import json
import re
from typing import Any, Dict, Iterable, Optional

from . import agents
from .llm import message_content
from .schemas import ExtractionResult

_FENCE_RE = re.compile(r"```(?:[a-zA-Z0-9_+-]*)\s*\n?(.*?)```", re.DOTALL)
_JSON_FENCE_RE = re.compile(r"```json\s*(.*?)\s*```", re.DOTALL | re.IGNORECASE)
_PROMPT_LABEL_RE = re.compile(
    r"(?im)^\s*[*_#\s]*(?:enhanced|optimized|final|image|refined)?\s*prompt[*_\s]*:\s*(.+)$"
)
_QUOTED_RE = re.compile(r"\"([^\"\n]{20,})\"")
_PREAMBLE_RE = re.compile(r"^(?:here(?:'s| is| are)|sure|certainly|below is|of course)\b.*$", re.IGNORECASE)
_HEADING_RE = re.compile(r"^\s*#{1,6}\s+")

PRIMARY_FIELDS = (
    "optimizedPrompt",
    "prompt",
    "narrative",
    "content",
    "analysis",
    "code",
    "answer",
    "visualDirection",
)


def extract_json_block(text: Optional[str]) -> Optional[Any]:
    """Return the first JSON value found in text, or None."""
    if not text:
        return None
    raw = text.strip()
    try:
        return json.loads(raw)
    except Exception:
        pass
    match = _JSON_FENCE_RE.search(raw)
    if match:
        try:
            return json.loads(match.group(1))
        except Exception:
            pass
    start = raw.find("{")
    end = raw.rfind("}")
    if start != -1 and end > start:
        try:
            return json.loads(raw[start : end + 1])
        except Exception:
            return None
    return None


async def safe_json_parse(raw: str, registry: Any = None, fixer_model: Optional[str] = None) -> Optional[dict]:
    """Try to parse JSON, and fall back to the JSON repair prompt to fix it."""
    parsed = extract_json_block(raw)
    if isinstance(parsed, dict):
        return parsed
    if registry is None or not fixer_model:
        return None
    try:
        resp = await registry.invoke(
            fixer_model,
            {
                "messages": [
                    {"role": "system", "content": agents.JSON_REPAIR_SYSTEM},
                    {"role": "user", "content": raw},
                ],
                "temperature": 0.0,
                "max_tokens": 800,
            },
        )
        fixed = extract_json_block(message_content(resp))
        return fixed if isinstance(fixed, dict) else None
    except Exception:
        return None


def _primary_text(data: Dict[str, Any], fields: Iterable[str]) -> Optional[str]:
    for name in fields:
        value = data.get(name)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _heuristic_text(text: str) -> Optional[str]:
    fence = _FENCE_RE.search(text)
    if fence and fence.group(1).strip():
        return fence.group(1).strip()
    label = _PROMPT_LABEL_RE.search(text)
    if label:
        tail = text[label.start(1) :].split("\n\n", 1)[0]
        cleaned = tail.strip().strip('"').strip()
        if cleaned:
            return cleaned
    quoted = _QUOTED_RE.search(text)
    if quoted:
        return quoted.group(1).strip()
    lines = [ln for ln in text.strip().splitlines()]
    if lines and _PREAMBLE_RE.match(lines[0].strip()):
        body = "\n".join(ln for ln in lines[1:] if not _HEADING_RE.match(ln)).strip()
        if body:
            return body.split("\n\n", 1)[0].strip()
    return None


def extract_structured(text: Optional[str], fields: Optional[Iterable[str]] = None) -> ExtractionResult:
    raw = (text or "").strip()
    preferred = tuple(fields or ()) + PRIMARY_FIELDS
    data = extract_json_block(raw)
    if isinstance(data, dict) and data:
        primary = _primary_text(data, preferred)
        return ExtractionResult(
            kind="structured",
            text=primary if primary is not None else json.dumps(data, ensure_ascii=True),
            data=data,
            notes="parsed schema output",
        )
    heuristic = _heuristic_text(raw) if raw else None
    if heuristic and heuristic != raw:
        return ExtractionResult(kind="heuristic", text=heuristic, notes="extracted from free text")
    return ExtractionResult(kind="raw", text=raw, notes="passed through unchanged")
