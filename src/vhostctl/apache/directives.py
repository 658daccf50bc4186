"""Tokenise the interior of a configuration block into a directive map.

Directive names are case-folded and every occurrence is kept, in order, so
``ServerAlias`` lines repeated three times yield three values. Directives found
inside nested sections (``<Directory>``, ``<IfModule>``, ...) are merged into
the same map after the block's own directives; lookups do not distinguish the
context they came from.
"""
from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass, field

from .syntax import Block, strip_comment, top_level_sections

CONTINUATION_MARKER = "\\"

DirectiveMap = dict[str, list[str]]

_DIRECTIVE_RE = re.compile(r"^(?P<name>[A-Za-z][A-Za-z0-9_-]*)(?:\s+(?P<value>.*))?$")


@dataclass(slots=True)
class _Pending:
    """A directive whose value is still being continued across lines."""

    name: str
    fragments: list[str] = field(default_factory=list)

    def value(self) -> str:
        return " ".join(fragment for fragment in self.fragments if fragment)


def tokenize(text: str) -> DirectiveMap:
    """Return the directive map for the block interior *text*."""
    directives: DirectiveMap = {}
    sections = top_level_sections(text)
    for name, value in scan_directives(_without_spans(text, sections)):
        add_directive(directives, name, value)
    for section in sections:
        for name, values in tokenize(section.interior).items():
            for value in values:
                add_directive(directives, name, value)
    return directives


def scan_directives(text: str) -> list[tuple[str, str]]:
    """Scan *text* line by line and return ``(name, value)`` pairs.

    The scan is a two-state machine: idle, or accumulating a directive whose
    last fragment ended with the continuation marker. A blank line (or a
    section tag) commits whatever is pending.
    """
    committed: list[tuple[str, str]] = []
    pending: _Pending | None = None

    for raw_line in text.splitlines():
        line = strip_comment(raw_line).strip()

        if not line or line.startswith("<"):
            if pending is not None:
                committed.append((pending.name, pending.value()))
                pending = None
            continue

        if pending is not None:
            fragment, continues = _split_continuation(line)
            pending.fragments.append(fragment)
            if not continues:
                committed.append((pending.name, pending.value()))
                pending = None
            continue

        match = _DIRECTIVE_RE.match(line)
        if match is None:
            continue
        name = match.group("name")
        fragment, continues = _split_continuation(match.group("value") or "")
        if continues:
            pending = _Pending(name=name, fragments=[fragment])
        else:
            committed.append((name, fragment))

    if pending is not None:
        committed.append((pending.name, pending.value()))
    return committed


def add_directive(directives: DirectiveMap, name: str, value: str) -> None:
    """Append *value* under the case-folded *name*."""
    directives.setdefault(name.lower(), []).append(value)


def first_value(directives: DirectiveMap, name: str) -> str | None:
    """Return the first value recorded for *name*, if any."""
    values = directives.get(name.lower())
    return values[0] if values else None


def has_any(directives: DirectiveMap, names: Iterable[str]) -> bool:
    """Return True when at least one of *names* is present."""
    return any(name.lower() in directives for name in names)


def _split_continuation(value: str) -> tuple[str, bool]:
    stripped = value.strip()
    if stripped.endswith(CONTINUATION_MARKER):
        return stripped[: -len(CONTINUATION_MARKER)].strip(), True
    return stripped, False


def _without_spans(text: str, sections: list[Block]) -> str:
    if not sections:
        return text
    pieces: list[str] = []
    cursor = 0
    for section in sections:
        pieces.append(text[cursor : section.start])
        cursor = section.end
    pieces.append(text[cursor:])
    return "".join(pieces)


__all__ = [
    "CONTINUATION_MARKER",
    "DirectiveMap",
    "add_directive",
    "first_value",
    "has_any",
    "scan_directives",
    "tokenize",
]
