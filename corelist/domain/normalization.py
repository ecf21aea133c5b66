from __future__ import annotations

import re
from typing import Iterable, List, Optional, Sequence, Tuple


_PARENS_CONTENT_PATTERN = re.compile(r"\([^()]*\)")
# Decorative arrow used in curated song lists, plus its cp1252 mojibake form
_ARROW_TOKENS = ("➔", "âž”")
_APOSTROPHES = ("'", "’")
_BULLET_PREFIX = "  - "
_HEADER_MARK = "__"
_FALLBACK_SEPARATOR = " - "


def normalize(text: Optional[str]) -> str:
    """Strip noise tokens from a song or artist string before comparison.

    Parenthetical annotations, decorative arrows and apostrophes are removed and the
    result is trimmed. Case is preserved.
    """
    if not text:
        return ""
    value, removed = _PARENS_CONTENT_PATTERN.subn("", str(text))
    # Innermost groups go first, so nested annotations need repeated passes
    while removed:
        value, removed = _PARENS_CONTENT_PATTERN.subn("", value)
    for token in _ARROW_TOKENS:
        value = value.replace(token, "")
    for apostrophe in _APOSTROPHES:
        value = value.replace(apostrophe, "")
    return value.strip()


def normalize_artists(artists) -> str:
    """Normalize each artist independently and join them with a single space."""
    if not artists:
        return ""
    if isinstance(artists, str):
        return normalize(artists)
    return " ".join(normalize(a) for a in artists)


def is_column_header(line: str) -> bool:
    return line.startswith(_HEADER_MARK) and line.endswith(_HEADER_MARK)


def strip_bullet(line: str) -> str:
    if line.startswith(_BULLET_PREFIX):
        return line[len(_BULLET_PREFIX):].strip()
    stripped = line.strip()
    if stripped.startswith("- "):
        return stripped[2:].strip()
    return stripped


def parse_song_requests(text: Optional[str]) -> List[str]:
    """Turn newline-delimited free text into an ordered list of song requests.

    Bullet prefixes are stripped; blank lines and ``__Column__`` headers are dropped.
    """
    if not text:
        return []
    requests: List[str] = []
    for raw_line in text.split("\n"):
        line = strip_bullet(raw_line.rstrip("\r"))
        if not line or is_column_header(line):
            continue
        requests.append(line)
    return requests


def compose_song_list(columns: Iterable[Tuple[str, Sequence[str]]]) -> str:
    """Concatenate song columns into request text, each under a ``__name__`` header."""
    lines: List[str] = []
    for column_name, songs in columns:
        lines.append(f"{_HEADER_MARK}{column_name or 'Column'}{_HEADER_MARK}")
        lines.extend(songs)
        lines.append("")
    return "\n".join(lines)


def fallback_prefix(query: str) -> Optional[str]:
    """Return the ``<prefix>`` of a ``<prefix> - <suffix>`` query, or None."""
    if not query or _FALLBACK_SEPARATOR not in query:
        return None
    prefix = query.split(_FALLBACK_SEPARATOR, 1)[0].strip()
    return prefix or None
