"""
Exclusion globs: compile patterns once, match normalized relative paths.

Syntax:
  *       any run of characters except '/'
  **      zero or more whole path segments ('**/x', 'x/**', 'x/**/y', '**')
  ?       one character except '/'
  [abc]   one character from a set; ranges 'a-z'; '[!...]' or '[^...]' negates
  {a,b}   alternation
  \\x      the literal character x
"""

import logging
import re
from typing import Iterable, List, Sequence, Tuple

from common import PatternError, normalize_name


def _translate_class(pattern: str, start: int) -> Tuple[str, int]:
    """Translate the bracket class opening at pattern[start]; return (regex, next index)."""
    i = start + 1
    n = len(pattern)
    negate = False
    if i < n and pattern[i] in '!^':
        negate = True
        i += 1

    items: List[str] = []
    first = True
    while True:
        if i >= n:
            raise PatternError(pattern, f"unclosed character class at offset {start}")
        c = pattern[i]
        if c == ']' and not first:
            i += 1
            break
        first = False
        if i + 2 < n and pattern[i + 1] == '-' and pattern[i + 2] != ']':
            lo, hi = c, pattern[i + 2]
            if lo > hi:
                raise PatternError(pattern, f"invalid range {lo}-{hi}")
            items.append(f"{re.escape(lo)}-{re.escape(hi)}")
            i += 3
        else:
            items.append(re.escape(c))
            i += 1

    body = ''.join(items)
    if negate:
        return f"[^/{body}]", i
    return f"(?!/)[{body}]", i


def translate_glob(pattern: str) -> str:
    """Translate one glob pattern into a regular expression source string."""
    if not pattern:
        raise PatternError(pattern, "empty pattern")

    parts: List[str] = []
    in_alternation = False
    i = 0
    n = len(pattern)
    while i < n:
        c = pattern[i]
        if c == '*':
            if i + 1 < n and pattern[i + 1] == '*':
                end = i + 2
                starts_segment = i == 0 or pattern[i - 1] == '/'
                ends_segment = end == n or pattern[end] == '/'
                if not (starts_segment and ends_segment):
                    raise PatternError(pattern, "'**' must be a whole path segment")
                if end == n:
                    parts.append('.*')
                    i = end
                else:
                    parts.append('(?:.*/)?')
                    i = end + 1
                continue
            parts.append('[^/]*')
        elif c == '?':
            parts.append('[^/]')
        elif c == '[':
            regex, i = _translate_class(pattern, i)
            parts.append(regex)
            continue
        elif c == '{':
            if in_alternation:
                raise PatternError(pattern, "nested alternation")
            in_alternation = True
            parts.append('(?:')
        elif c == '}' and in_alternation:
            in_alternation = False
            parts.append(')')
        elif c == ',' and in_alternation:
            parts.append('|')
        elif c == '\\':
            if i + 1 >= n:
                raise PatternError(pattern, "dangling escape")
            parts.append(re.escape(pattern[i + 1]))
            i += 2
            continue
        else:
            parts.append(re.escape(c))
        i += 1

    if in_alternation:
        raise PatternError(pattern, "unclosed alternation")
    return ''.join(parts)


class ExclusionMatcher:
    """A set of exclusion globs compiled once into a single regex.

    A path is excluded when any pattern fully matches it. Patterns are
    NFC-normalized so they compare equal to normalized paths.
    """

    def __init__(self, patterns: Iterable[str] = ()) -> None:
        self._patterns: Tuple[str, ...] = tuple(patterns)
        sources = [translate_glob(normalize_name(p)) for p in self._patterns]
        if sources:
            self._regex = re.compile('|'.join(f'(?:{s})' for s in sources), re.DOTALL)
        else:
            self._regex = None
        logging.debug(f"Compiled {len(sources)} exclude pattern(s)")

    @property
    def patterns(self) -> Tuple[str, ...]:
        return self._patterns

    def is_excluded(self, relative_path: str) -> bool:
        if self._regex is None:
            return False
        return self._regex.fullmatch(relative_path) is not None

    def __repr__(self) -> str:
        return f"ExclusionMatcher({list(self._patterns)!r})"


def parse_exclude_patterns(exclude_args: Sequence[str]) -> List[str]:
    """Drop empty entries and duplicates from repeated --exclude options, keeping order."""
    patterns: List[str] = []
    seen = set()
    for pattern in exclude_args:
        if not pattern or pattern in seen:
            continue
        seen.add(pattern)
        patterns.append(pattern)
    return patterns
