"""
Restricted glob → regex translation for matching planner patterns against
a snapshot's file index.

  **   any number of path segments (including none)
  *    any run of characters inside one segment
  ?    exactly one character inside one segment

Every other character is matched literally. Patterns are anchored at both
ends, so `src/*.py` never matches `src/sub/x.py` or `vendor/src/a.py`.
"""

import re
from functools import lru_cache
from typing import Iterable, List, Pattern, Sequence


def glob_to_regex(pattern: str) -> str:
    pattern = pattern.strip()
    if pattern.startswith("./"):
        pattern = pattern[2:]
    pattern = pattern.lstrip("/")

    out: List[str] = []
    i = 0
    n = len(pattern)
    while i < n:
        ch = pattern[i]
        if ch == "*":
            if i + 1 < n and pattern[i + 1] == "*":
                # `**/` may match zero directories: `src/**/a.py` matches `src/a.py`
                if i + 2 < n and pattern[i + 2] == "/":
                    out.append("(?:.*/)?")
                    i += 3
                else:
                    out.append(".*")
                    i += 2
                continue
            out.append("[^/]*")
        elif ch == "?":
            out.append("[^/]")
        else:
            out.append(re.escape(ch))
        i += 1

    return "^" + "".join(out) + "$"


@lru_cache(maxsize=512)
def compile_glob(pattern: str) -> Pattern[str]:
    return re.compile(glob_to_regex(pattern))


def is_glob(pattern: str) -> bool:
    return "*" in pattern or "?" in pattern


def expand_patterns(patterns: Iterable[str], valid_files: Sequence[str]) -> List[str]:
    """
    Expand patterns into literal paths drawn only from `valid_files`.
    Literal patterns must match an indexed path exactly. Output keeps the
    index order and contains no duplicates.
    """
    valid_set = set(valid_files)
    matched = set()

    for raw in patterns:
        if not isinstance(raw, str) or not raw.strip():
            continue
        pattern = raw.strip()
        if is_glob(pattern):
            regex = compile_glob(pattern)
            matched.update(path for path in valid_files if regex.match(path))
        else:
            literal = pattern[2:] if pattern.startswith("./") else pattern
            literal = literal.lstrip("/")
            if literal in valid_set:
                matched.add(literal)
            elif literal.endswith("/"):
                # bare directory → everything beneath it
                matched.update(path for path in valid_files if path.startswith(literal))

    return [path for path in valid_files if path in matched]
