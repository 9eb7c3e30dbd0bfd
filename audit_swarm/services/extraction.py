"""
Tolerant structured-output extraction for reasoning service responses.

Order of attempts:
  1. the whole response as JSON
  2. the contents of each fenced code block
  3. the first balanced {...} from the first opening brace, then the
     first-brace/last-brace slice, both bounded by a maximum scan size
  4. give up with MalformedModelOutput
"""

import json
import logging
import re
from typing import Any, Optional

from audit_swarm.config import get_settings
from audit_swarm.services.exceptions import MalformedModelOutput

logger = logging.getLogger("extraction")
settings = get_settings()

_FENCE_RE = re.compile(r"```[ \t]*([A-Za-z0-9_-]*)[ \t]*\r?\n?(.*?)```", re.DOTALL)


def _try_parse(candidate: str) -> Optional[Any]:
    candidate = candidate.strip()
    if not candidate:
        return None
    try:
        return json.loads(candidate)
    except (json.JSONDecodeError, ValueError):
        return None


def _balanced_span(text: str, start: int, limit: int) -> Optional[str]:
    """Return text[start:end] where end closes the brace opened at start, or None."""
    depth = 0
    in_string = False
    escaped = False
    end = min(len(text), start + limit)

    for i in range(start, end):
        ch = text[i]
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
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


def extract_json(text: Optional[str], max_scan_chars: Optional[int] = None) -> dict:
    """Pull a JSON object out of a possibly-decorated model response."""
    if text is None or not text.strip():
        raise MalformedModelOutput("Empty response from reasoning service", raw=text)

    limit = max_scan_chars or settings.EXTRACTION_MAX_SCAN_CHARS

    # 1. Direct
    parsed = _try_parse(text)
    if isinstance(parsed, dict):
        return parsed

    # 2. Fenced blocks
    for match in _FENCE_RE.finditer(text):
        parsed = _try_parse(match.group(2))
        if isinstance(parsed, dict):
            return parsed

    # 3. Brace scan
    first = text.find("{")
    if first != -1:
        span = _balanced_span(text, first, limit)
        if span is not None:
            parsed = _try_parse(span)
            if isinstance(parsed, dict):
                return parsed

        last = text.rfind("}")
        if last > first and (last - first) < limit:
            parsed = _try_parse(text[first:last + 1])
            if isinstance(parsed, dict):
                return parsed

    preview = text[:200].replace("\n", " ")
    logger.warning(f"[Extraction] Could not recover JSON object from response: {preview!r}")
    raise MalformedModelOutput("Reasoning service output is not valid structured data", raw=text)
