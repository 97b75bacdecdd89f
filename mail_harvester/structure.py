"""IMAP FETCH response parsing and the BODYSTRUCTURE part tree.

``imaplib`` hands back FETCH responses as a flat list where string literals
are split out into ``(prefix, literal)`` tuples.  :func:`parse_fetch_response`
rebuilds the parenthesised structure; :func:`build_tree` turns a
BODYSTRUCTURE value into a :class:`LeafPart` / :class:`MultiPart` tree that
:func:`has_candidate_attachment` walks without downloading any body.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from typing import Any, Union

_TOKEN_RE = re.compile(
    rb"""
    \s*(?:
        (?P<open>\()
      | (?P<close>\))
      | "(?P<quoted>(?:[^"\\]|\\.)*)"
      | \{(?P<literal>\d+)\}
      | (?P<atom>[^\s()"{}]+)
    )
    """,
    re.VERBOSE | re.DOTALL,
)
_QUOTED_ESCAPE_RE = re.compile(rb"\\(.)")

_OPEN = object()
_CLOSE = object()


class MalformedResponse(ValueError):
    """The response could not be tokenized or does not have the expected shape."""


# ------------------------------------------------------------------
# Tokenizing
# ------------------------------------------------------------------


def _segments(data: Iterable[Any]) -> Iterator[tuple[bool, bytes]]:
    """Yield ``(is_literal, chunk)`` pairs from raw ``imaplib`` response data."""
    for item in data:
        if item is None:
            continue
        if isinstance(item, tuple):
            prefix, literal = item[0], item[1]
            yield False, prefix
            yield True, literal
        else:
            yield False, item


def _tokens(data: Iterable[Any]) -> Iterator[Any]:
    for is_literal, chunk in _segments(data):
        if is_literal:
            yield chunk
            continue
        pos = 0
        while pos < len(chunk):
            if chunk[pos:].strip() == b"":
                break
            match = _TOKEN_RE.match(chunk, pos)
            if match is None:
                raise MalformedResponse(f"unexpected data at offset {pos}: {chunk[pos:pos + 20]!r}")
            pos = match.end()
            if match.group("open"):
                yield _OPEN
            elif match.group("close"):
                yield _CLOSE
            elif match.group("quoted") is not None:
                yield _QUOTED_ESCAPE_RE.sub(rb"\1", match.group("quoted")).decode(
                    "utf-8", errors="replace"
                )
            elif match.group("literal") is not None:
                # The literal's bytes arrive as the next segment.
                continue
            else:
                atom = match.group("atom").decode("ascii", errors="replace")
                yield None if atom.upper() == "NIL" else atom


def parse_values(data: Iterable[Any]) -> list[Any]:
    """Parse response data into nested lists of ``str``/``bytes``/``None`` values."""
    stack: list[list[Any]] = [[]]
    for token in _tokens(data):
        if token is _OPEN:
            stack.append([])
        elif token is _CLOSE:
            if len(stack) == 1:
                raise MalformedResponse("unbalanced ')'")
            closed = stack.pop()
            stack[-1].append(closed)
        else:
            stack[-1].append(token)
    if len(stack) != 1:
        raise MalformedResponse("unbalanced '('")
    return stack[0]


def parse_fetch_response(data: Iterable[Any]) -> list[dict[str, Any]]:
    """Parse the data of a ``UID FETCH`` into one attribute dict per message.

    Attribute names are upper-cased (``UID``, ``BODYSTRUCTURE``, ``BODY[]``).
    """
    values = parse_values(data)
    messages: list[dict[str, Any]] = []
    it = iter(values)
    for seq in it:
        attrs = next(it, None)
        if not isinstance(seq, str) or not isinstance(attrs, list) or len(attrs) % 2:
            raise MalformedResponse(f"unexpected FETCH item: {seq!r}")
        parsed = {str(attrs[i]).upper(): attrs[i + 1] for i in range(0, len(attrs), 2)}
        messages.append(parsed)
    return messages


# ------------------------------------------------------------------
# Part tree
# ------------------------------------------------------------------


@dataclass(frozen=True)
class LeafPart:
    """A single (non-multipart) body part."""

    maintype: str
    subtype: str
    params: dict[str, str] = field(default_factory=dict)
    disposition: str | None = None
    filename: str | None = None
    embedded: BodyPart | None = None  # message/rfc822 only


@dataclass(frozen=True)
class MultiPart:
    """A multipart container and its child parts."""

    subtype: str
    children: tuple[BodyPart, ...] = ()


BodyPart = Union[LeafPart, MultiPart]


def _text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, str):
        return value
    raise MalformedResponse(f"expected string, got {type(value).__name__}")


def _pairs(value: Any) -> dict[str, str]:
    if not isinstance(value, list):
        return {}
    result: dict[str, str] = {}
    for i in range(0, len(value) - 1, 2):
        key = _text(value[i])
        if key:
            result[key.lower()] = _text(value[i + 1]) or ""
    return result


def build_tree(node: Any) -> BodyPart:
    """Build a part tree from a parsed BODYSTRUCTURE value (RFC 3501 §7.4.2)."""
    if not isinstance(node, list) or not node:
        raise MalformedResponse("empty body structure")

    if isinstance(node[0], list):
        children: list[BodyPart] = []
        index = 0
        while index < len(node) and isinstance(node[index], list):
            children.append(build_tree(node[index]))
            index += 1
        subtype = _text(node[index]) if index < len(node) else None
        return MultiPart(subtype=(subtype or "mixed").lower(), children=tuple(children))

    if len(node) < 7:
        raise MalformedResponse("truncated body part")

    maintype = (_text(node[0]) or "").lower()
    subtype = (_text(node[1]) or "").lower()
    params = _pairs(node[2])

    # Type-specific fields sit between the basic fields and the extension data.
    extension_at = 7
    if maintype == "text":
        extension_at += 1
    elif maintype == "message" and subtype == "rfc822":
        extension_at += 3
    disposition_at = extension_at + 1  # after body MD5

    disposition: str | None = None
    disposition_params: dict[str, str] = {}
    if disposition_at < len(node) and isinstance(node[disposition_at], list):
        raw = node[disposition_at]
        disposition = (_text(raw[0]) or "").lower() if raw else None
        disposition_params = _pairs(raw[1]) if len(raw) > 1 else {}

    filename = disposition_params.get("filename") or params.get("name")
    embedded = None
    if maintype == "message" and subtype == "rfc822" and len(node) > 8 and isinstance(node[8], list) and node[8]:
        embedded = build_tree(node[8])
    return LeafPart(
        maintype=maintype,
        subtype=subtype,
        params=params,
        disposition=disposition,
        filename=filename,
        embedded=embedded,
    )


def has_candidate_attachment(part: BodyPart) -> bool:
    """Whether any part is ``application/*`` or has an ``attachment`` disposition.

    Encapsulated ``message/rfc822`` bodies are searched as well.
    """
    if isinstance(part, MultiPart):
        return any(has_candidate_attachment(child) for child in part.children)
    if part.maintype == "application" or part.disposition == "attachment":
        return True
    return part.embedded is not None and has_candidate_attachment(part.embedded)
