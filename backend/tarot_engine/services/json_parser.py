"""Parsing of JSON objects out of free-form model output.

Models wrap their JSON in markdown fences, prepend chatter, or stop mid-way
through an object when they hit a token limit. ``parse_ai_response`` copes
with all three; ``validate_json_structure`` then decides whether the object
is complete enough to use.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Sequence

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^```[a-zA-Z0-9_-]*[ \t]*\r?\n(.*?)\r?\n?```$", re.DOTALL)
_EMBEDDED_FENCE_RE = re.compile(r"```(?:json)?[ \t]*\r?\n(.*?)\r?\n```", re.DOTALL)


@dataclass
class ParsedResponse:
    success: bool
    data: Any = None
    error: str | None = None
    raw_response: str | None = None
    missing_fields: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class StructureCheck:
    valid: bool
    missing_fields: list[str]


def strip_code_fence(text: str) -> str:
    cleaned = (text or "").strip()
    match = _FENCE_RE.match(cleaned)
    if match:
        return match.group(1).strip()
    return cleaned


def try_fix_truncated_json(raw: str) -> str | None:
    """Close brackets and braces left open by a truncated response."""
    open_braces = raw.count("{")
    close_braces = raw.count("}")
    open_brackets = raw.count("[")
    close_brackets = raw.count("]")
    if open_braces <= close_braces and open_brackets <= close_brackets:
        return None

    fixed = raw.rstrip()
    # drop a dangling partial value after the last complete token
    last_complete = max(fixed.rfind('"'), fixed.rfind("}"), fixed.rfind("]"))
    if last_complete > 0:
        fixed = fixed[: last_complete + 1]
    fixed = fixed.rstrip().rstrip(",:")

    stack: list[str] = []
    in_string = False
    escaped = False
    for ch in fixed:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "{[":
            stack.append("}" if ch == "{" else "]")
        elif ch in "}]" and stack:
            stack.pop()
    if in_string:
        fixed += '"'
    return fixed + "".join(reversed(stack))


def parse_ai_response(response: str) -> ParsedResponse:
    clean = strip_code_fence(response)
    result = ParsedResponse(success=False, raw_response=clean)
    if not clean:
        result.error = "Empty response"
        return result

    try:
        result.data = json.loads(clean)
        result.success = True
        return result
    except json.JSONDecodeError:
        pass

    # a fenced block somewhere inside surrounding prose
    embedded = _EMBEDDED_FENCE_RE.search(clean)
    if embedded:
        try:
            result.data = json.loads(embedded.group(1).strip())
            result.success = True
            return result
        except json.JSONDecodeError as exc:
            result.error = f"Failed to parse JSON from code block: {exc}"
            return result

    start = clean.find("{")
    if start == -1:
        result.error = f"No JSON object found in response: {clean[:200]}"
        return result

    end = clean.rfind("}")
    candidate = clean[start : end + 1] if end > start else clean[start:]
    try:
        result.data = json.loads(candidate)
        result.success = True
        return result
    except json.JSONDecodeError as exc:
        fixed = try_fix_truncated_json(clean[start:])
        if fixed:
            try:
                result.data = json.loads(fixed)
                result.success = True
                return result
            except json.JSONDecodeError:
                pass
        result.error = f"Failed to parse extracted JSON: {exc}"
        return result


def validate_json_structure(data: Any, required_fields: Sequence[str]) -> StructureCheck:
    if not isinstance(data, dict):
        return StructureCheck(valid=False, missing_fields=list(required_fields))
    missing = [f for f in required_fields if f not in data or data.get(f) is None]
    return StructureCheck(valid=not missing, missing_fields=missing)


def parse_and_validate_ai_response(response: str, required_fields: Sequence[str]) -> ParsedResponse:
    parsed = parse_ai_response(response)
    if not parsed.success:
        return parsed

    check = validate_json_structure(parsed.data, required_fields)
    if not check.valid:
        return ParsedResponse(
            success=False,
            data=parsed.data,
            error=f"Missing required fields: {', '.join(check.missing_fields)}",
            raw_response=parsed.raw_response,
            missing_fields=check.missing_fields,
        )
    return parsed


def log_parsing_error(stage: str, response: str, error: str) -> None:
    text = response or ""
    logger.warning(
        "llm.parse_error stage=%s error=%s length=%s open_braces=%s close_braces=%s preview=%r",
        stage,
        error,
        len(text),
        text.count("{"),
        text.count("}"),
        text[:300],
    )
