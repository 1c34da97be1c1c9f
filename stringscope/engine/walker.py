"""
Structured-value walker.

Stored option and meta values are often JSON documents or PHP-serialized
arrays kept in a single text field. Searching the encoded string misses
matches (escaped characters, length prefixes) and cannot say where in the
document the hit is, so decoded containers are walked leaf by leaf with an
explicit stack and a depth limit.

Paths use ``[i]`` for array positions and ``->key`` for object members,
e.g. ``[2]->title``. PHP arrays are keyed, so their entries read ``[key]``.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from io import BytesIO
from typing import Any, Iterator

import phpserialize

from .matching import Matcher

logger = logging.getLogger(__name__)

MAX_DEPTH = 64

PHP_CONTAINER_PREFIXES = ("a:", "O:")


class PhpArray(dict):
    """A decoded PHP array; keys are ints or strings."""


@dataclass(frozen=True)
class ValueMatch:
    preview: str
    path: str = ""
    structured: bool = False


def _decode_json(text: str) -> Any:
    return json.loads(text)


def _decode_php(text: str) -> Any:
    stream = BytesIO(text.encode("utf-8"))
    decoded = phpserialize.load(
        stream,
        decode_strings=True,
        array_hook=PhpArray,
        object_hook=phpserialize.phpobject,
    )
    if stream.read(1):
        raise ValueError("trailing data after serialized value")
    return decoded


def decode_structured(value: str) -> Any:
    """
    Return the decoded container, or None when ``value`` is not one.

    Corrupt or absurdly nested input is not a container either; the caller
    falls back to searching the raw text.
    """
    stripped = value.strip()
    if len(stripped) < 2:
        return None
    if stripped[0] in "[{":
        decoder = _decode_json
    elif stripped.startswith(PHP_CONTAINER_PREFIXES):
        decoder = _decode_php
    else:
        return None
    try:
        decoded = decoder(stripped)
    except (ValueError, RecursionError):
        return None
    if isinstance(decoded, (dict, list, phpserialize.phpobject)):
        return decoded
    return None


def _member_name(key: Any) -> Any:
    # private and protected members are stored as "\0Class\0name" / "\0*\0name"
    if isinstance(key, str) and key.startswith("\0"):
        return key.rsplit("\0", 1)[-1]
    return key


def _children(node: Any, path: str, depth: int) -> list[tuple[Any, str, int]] | None:
    if isinstance(node, phpserialize.phpobject):
        return [(value, f"{path}->{_member_name(key)}", depth + 1) for key, value in node._asdict().items()]
    if isinstance(node, PhpArray):
        return [(value, f"{path}[{key}]", depth + 1) for key, value in node.items()]
    if isinstance(node, dict):
        return [(value, f"{path}->{key}", depth + 1) for key, value in node.items()]
    if isinstance(node, list):
        return [(value, f"{path}[{index}]", depth + 1) for index, value in enumerate(node)]
    return None


def walk_leaves(container: Any, max_depth: int = MAX_DEPTH) -> Iterator[tuple[str, str]]:
    """Yield ``(path, text)`` for every scalar leaf in document order."""
    stack: list[tuple[Any, str, int]] = [(container, "", 0)]
    while stack:
        node, path, depth = stack.pop()

        if isinstance(node, str):
            nested = decode_structured(node) if depth < max_depth else None
            if nested is None:
                yield path, node
                continue
            node = nested

        children = _children(node, path, depth)
        if children is None:
            if not (isinstance(node, bool) or node is None):
                yield path, str(node)
            continue

        if depth >= max_depth:
            logger.debug("Structured value deeper than %d levels at %s, not descending", max_depth, path or "<root>")
            continue
        stack.extend(reversed(children))


def search_value(value: str, matcher: Matcher, limit: int = 0) -> list[ValueMatch]:
    """
    Search one stored value, descending into it when it decodes as a container.

    ``limit`` caps the number of matches kept (0 = unlimited). A decoded
    document whose leaves do not match but whose raw text does (a key name,
    for instance) yields a single raw-text match.
    """
    decoded = decode_structured(value)
    if decoded is not None:
        found: list[ValueMatch] = []
        for path, leaf in walk_leaves(decoded):
            if not matcher.matches(leaf):
                continue
            found.append(ValueMatch(preview=matcher.preview(leaf), path=path, structured=True))
            if limit and len(found) >= limit:
                break
        if found:
            return found

    if matcher.matches(value):
        return [ValueMatch(preview=matcher.preview(value))]
    return []
