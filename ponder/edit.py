"""String replacement engine behind the edit_file tool.

``replace()`` tries exact matching first, then a line-by-line comparison
that ignores surrounding whitespace, then the same with typographic
punctuation folded to ASCII.
"""

from __future__ import annotations

import re

_SINGLE_QUOTES = re.compile(r"[\u2018\u2019\u201a\u201b]")
_DOUBLE_QUOTES = re.compile(r"[\u201c\u201d\u201e\u201f]")
_DASHES = re.compile(r"[\u2010\u2011\u2012\u2013\u2014\u2015]")


def _fold_punctuation(s: str) -> str:
    s = _SINGLE_QUOTES.sub("'", s)
    s = _DOUBLE_QUOTES.sub('"', s)
    s = _DASHES.sub("-", s)
    return s.replace("\u2026", "...").replace("\u00a0", " ")


def _trimmed(line: str) -> str:
    return line.strip()


def _folded(line: str) -> str:
    return _fold_punctuation(line.strip())


def _line_spans(content: str, old_string: str, normalize) -> list[tuple[int, int]]:
    """Find non-overlapping line-window matches of old_string in content.

    Returns character spans into content. When old_string has no trailing
    newline, the span stops before the last matched line's newline.
    """
    lines = content.split("\n")
    body = old_string[:-1] if old_string.endswith("\n") else old_string
    wanted = [normalize(line) for line in body.split("\n")]
    width = len(wanted)
    offsets = [0]
    for line in lines:
        offsets.append(offsets[-1] + len(line) + 1)

    spans: list[tuple[int, int]] = []
    i = 0
    while i <= len(lines) - width:
        if all(normalize(lines[i + j]) == wanted[j] for j in range(width)):
            start = offsets[i]
            end = offsets[i + width]
            if not old_string.endswith("\n"):
                end -= 1
            spans.append((start, min(end, len(content))))
            i += width
        else:
            i += 1
    return spans


def _splice(content: str, spans: list[tuple[int, int]], new_string: str) -> str:
    out = []
    cursor = 0
    for start, end in spans:
        out.append(content[cursor:start])
        out.append(new_string)
        cursor = end
    out.append(content[cursor:])
    return "".join(out)


def replace(
    content: str,
    old_string: str,
    new_string: str,
    replace_all: bool = False,
) -> str:
    """Replace old_string with new_string in content.

    Raises ValueError with "no changes", "old_string must not be empty",
    "not found", or "multiple matches" (more than one hit without
    replace_all).
    """
    if old_string == new_string:
        raise ValueError("no changes")
    if not old_string:
        raise ValueError("old_string must not be empty")

    exact = content.count(old_string)
    if exact:
        if exact > 1 and not replace_all:
            raise ValueError("multiple matches")
        return content.replace(old_string, new_string, -1 if replace_all else 1)

    for normalize in (_trimmed, _folded):
        spans = _line_spans(content, old_string, normalize)
        if not spans:
            continue
        if len(spans) > 1 and not replace_all:
            raise ValueError("multiple matches")
        return _splice(content, spans, new_string)

    raise ValueError("not found")
