"""
Match engine: decide whether a unit of text matches and render a preview.

Literal terms match case-insensitively. Regex terms are Python patterns,
written bare (``foo\\d+``) or delimited with trailing flags (``/foo/i``).
Previews are HTML-escaped with every visible occurrence wrapped in
``<mark>`` tags.
"""

from __future__ import annotations

import re

from markupsafe import Markup, escape

from ..errors import InvalidPattern


MODE_LITERAL = "literal"
MODE_REGEX = "regex"
MODES = (MODE_LITERAL, MODE_REGEX)

HIGHLIGHT_OPEN = Markup("<mark>")
HIGHLIGHT_CLOSE = Markup("</mark>")
ELLIPSIS = "..."
DEFAULT_PREVIEW_WIDTH = 200

_DELIMITED = re.compile(r"^/(?P<body>.*)/(?P<flags>[imsxu]*)$", re.DOTALL)
_FLAGS = {
    "i": re.IGNORECASE,
    "m": re.MULTILINE,
    "s": re.DOTALL,
    "x": re.VERBOSE,
    "u": 0,
}
_WHITESPACE = re.compile(r"\s+")


def compile_pattern(term: str, mode: str) -> re.Pattern[str]:
    """Compile a search term. Raises ``re.error`` for bad regexes."""
    if mode == MODE_LITERAL:
        return re.compile(re.escape(term), re.IGNORECASE)
    if mode == MODE_REGEX:
        delimited = _DELIMITED.match(term)
        if delimited:
            flags = 0
            for flag in delimited.group("flags"):
                flags |= _FLAGS[flag]
            return re.compile(delimited.group("body"), flags)
        return re.compile(term)
    raise InvalidPattern(f"Unknown match mode: {mode!r} (expected one of {', '.join(MODES)})")


def validate_pattern(term: str, mode: str) -> re.Pattern[str]:
    """Validate a term once at session creation."""
    if not term:
        raise InvalidPattern("Search string is required")
    try:
        return compile_pattern(term, mode)
    except re.error as exc:
        raise InvalidPattern(f"Invalid regular expression: {exc}") from exc


class Matcher:
    """A compiled term. Fails closed: an uncompilable pattern matches nothing."""

    def __init__(self, term: str, mode: str, preview_width: int = DEFAULT_PREVIEW_WIDTH):
        self.term = term
        self.mode = mode
        self.preview_width = preview_width
        try:
            self._pattern: re.Pattern[str] | None = compile_pattern(term, mode) if term else None
        except (re.error, InvalidPattern):
            self._pattern = None

    def search(self, text: str) -> re.Match[str] | None:
        if self._pattern is None:
            return None
        return self._pattern.search(text)

    def matches(self, text: str) -> bool:
        return self.search(text) is not None

    def preview(self, content: str, strip_markup: bool = True) -> str:
        return render_preview(self._pattern, content, self.preview_width, strip_markup)


def normalize_text(content: str, strip_markup: bool = True) -> str:
    if strip_markup:
        return str(Markup(content).striptags())
    return _WHITESPACE.sub(" ", content).strip()


def render_preview(
    pattern: re.Pattern[str] | None,
    content: str,
    width: int = DEFAULT_PREVIEW_WIDTH,
    strip_markup: bool = True,
) -> str:
    text = normalize_text(content, strip_markup)

    start, end = 0, len(text)
    if len(text) > width:
        first = pattern.search(text) if pattern is not None else None
        anchor = first.start() if first else 0
        start = max(0, anchor - width // 2)
        end = min(len(text), start + width)
        start = max(0, end - width)
    window = text[start:end]

    parts: list[Markup] = []
    last = 0
    if pattern is not None:
        for found in pattern.finditer(window):
            if found.end() == found.start():
                continue
            parts.append(escape(window[last:found.start()]))
            parts.append(HIGHLIGHT_OPEN + escape(found.group(0)) + HIGHLIGHT_CLOSE)
            last = found.end()
    parts.append(escape(window[last:]))

    prefix = ELLIPSIS if start > 0 else ""
    suffix = ELLIPSIS if end < len(text) else ""
    return prefix + str(Markup("").join(parts)) + suffix


def matches(haystack: str, needle: str, mode: str) -> bool:
    return Matcher(needle, mode).matches(haystack)


def preview(
    content: str,
    needle: str,
    mode: str,
    width: int = DEFAULT_PREVIEW_WIDTH,
    strip_markup: bool = True,
) -> str:
    return Matcher(needle, mode, preview_width=width).preview(content, strip_markup=strip_markup)
