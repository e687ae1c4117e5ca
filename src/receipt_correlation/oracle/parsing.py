"""Defensive parsing of oracle output into verdicts.

LLM output is the main source of flakiness: markdown fences, prose around
the JSON, trailing commas, missing or surplus entries. `parse_verdicts`
never raises; every failure becomes the "no correlation" default verdict
for the affected candidates.
"""

from __future__ import annotations

import json
import logging
import math
import re
from typing import Any

from ..schemas import Classification, RecommendedAction, Transaction, Verdict

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*", re.IGNORECASE)
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
_BARE_KEY_RE = re.compile(r"(\{|,)\s*([a-zA-Z_][a-zA-Z0-9_]*)\s*:")


def _outermost_json(content: str) -> str | None:
    """Slice from the first opening bracket to its last matching closer."""
    starts = [pos for pos in (content.find("{"), content.find("[")) if pos != -1]
    if not starts:
        return None
    start = min(starts)
    closer = "}" if content[start] == "{" else "]"
    end = content.rfind(closer)
    if end <= start:
        return None
    return content[start : end + 1]


def _strip_trailing_commas(content: str) -> str:
    return _TRAILING_COMMA_RE.sub(r"\1", _CONTROL_CHARS_RE.sub("", content))


def _quote_bare_keys(content: str) -> str:
    return _BARE_KEY_RE.sub(r'\1"\2":', content)


def parse_json_response(content: str) -> dict:
    """Parse JSON from LLM response with robust handling of malformed responses.

    Handles:
    - Markdown code blocks (```json ... ```)
    - Prose before or after the JSON object
    - Control characters, trailing commas, unquoted keys
    - A bare top-level array (wrapped as {"correlations": [...]})

    Args:
        content: Raw LLM response content.

    Returns:
        Parsed JSON dict.

    Raises:
        json.JSONDecodeError: If content cannot be parsed as valid JSON.
    """
    if not content or not content.strip():
        raise json.JSONDecodeError("Empty response", "", 0)

    content = _FENCE_RE.sub("", content.strip()).strip()

    attempts = [content]
    extracted = _outermost_json(content)
    if extracted is not None:
        attempts.append(extracted)
    base = extracted if extracted is not None else content
    attempts.append(_strip_trailing_commas(base))
    attempts.append(_quote_bare_keys(_strip_trailing_commas(base)))

    for attempt in attempts:
        try:
            # strict=False tolerates raw newlines inside string values
            data = json.loads(attempt, strict=False)
        except json.JSONDecodeError:
            continue
        if isinstance(data, list):
            return {"correlations": data}
        if isinstance(data, dict):
            return data

    raise json.JSONDecodeError(
        f"Could not parse JSON from response: {content[:200]}...", content, 0
    )


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in {"true", "yes", "1"}
    return False


def _coerce_confidence(value: Any) -> int:
    """Confidence as an int in 0-100.

    A fractional value strictly between 0 and 1 is read as a probability.
    """
    if isinstance(value, bool) or value is None:
        return 0
    try:
        number = float(str(value).strip().rstrip("%"))
    except ValueError:
        return 0
    # json.loads accepts NaN and Infinity
    if not math.isfinite(number):
        return 0
    if 0 < number < 1 and not number.is_integer():
        number *= 100
    return max(0, min(100, int(round(number))))


def _coerce_index(value: Any, count: int) -> int | None:
    """Zero-based slot for a 1-based transaction_index, if valid."""
    if isinstance(value, bool):
        return None
    try:
        index = int(value)
    except (TypeError, ValueError, OverflowError):
        return None
    return index - 1 if 1 <= index <= count else None


def verdict_from_entry(entry: dict, candidate_id: str | None) -> Verdict:
    """Build a verdict from one parsed oracle entry."""
    return Verdict(
        candidate_id=candidate_id,
        is_correlated=_coerce_bool(entry.get("is_correlated")),
        confidence=_coerce_confidence(entry.get("confidence")),
        classification=Classification.parse(
            entry.get("correlation_type") or entry.get("classification")
        ),
        recommended_action=RecommendedAction.parse(entry.get("recommended_action")),
        reason=str(entry.get("reason") or ""),
    )


def default_verdicts(candidates: list[Transaction], reason: str) -> list[Verdict]:
    """One "no correlation" verdict per candidate."""
    return [Verdict.no_correlation(candidate.id, reason) for candidate in candidates]


def parse_verdicts(content: str | None, candidates: list[Transaction]) -> list[Verdict]:
    """Parse oracle output into exactly one verdict per candidate, in order.

    Entries are placed by their 1-based `transaction_index` when it is valid
    and unused, otherwise positionally into the remaining slots. Missing
    entries are padded with defaults, surplus entries are dropped.

    Args:
        content: Raw oracle output.
        candidates: Candidates the request described, in request order.

    Returns:
        List of verdicts, same length and order as `candidates`.
    """
    if not candidates:
        return []

    try:
        data = parse_json_response(content or "")
    except json.JSONDecodeError as e:
        logger.warning("Failed to parse correlation response: %s", e.msg)
        return default_verdicts(candidates, "Failed to parse analysis")

    entries = data.get("correlations")
    if not isinstance(entries, list):
        # Single-pair answer without the wrapping object
        entries = [data] if "is_correlated" in data else []
    entries = [entry for entry in entries if isinstance(entry, dict)]

    count = len(candidates)
    slots: list[dict | None] = [None] * count
    unplaced: list[dict] = []
    for entry in entries:
        index = _coerce_index(entry.get("transaction_index"), count)
        if index is not None and slots[index] is None:
            slots[index] = entry
        else:
            unplaced.append(entry)

    for entry in unplaced:
        try:
            free = slots.index(None)
        except ValueError:
            break
        slots[free] = entry

    missing = slots.count(None)
    if missing:
        logger.info("Oracle judged %d of %d candidates, padding the rest", count - missing, count)
    if len(entries) > count:
        logger.debug("Ignoring %d surplus oracle entries", len(entries) - count)

    return [
        verdict_from_entry(entry, candidate.id)
        if entry is not None
        else Verdict.no_correlation(candidate.id, "No analysis provided")
        for entry, candidate in zip(slots, candidates)
    ]
