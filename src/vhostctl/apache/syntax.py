"""Low-level scanning of Apache's ``<Section ...>...</Section>`` grammar.

Everything here works on character offsets into the original text so callers
can splice blocks out of (or back into) a file without disturbing the bytes
around them.
"""
from __future__ import annotations

import re
from collections.abc import Iterator
from dataclasses import dataclass

COMMENT_MARKER = "#"
ESCAPE = "\\"

_TAG_RE = re.compile(
    r"<\s*(?P<close>/)?\s*(?P<name>[A-Za-z][A-Za-z0-9_.:-]*)(?P<attrs>[^<>]*)>"
)


@dataclass(frozen=True, slots=True)
class Tag:
    """An opening or closing section tag found in the text."""

    name: str
    closing: bool
    attributes: str
    start: int
    end: int

    @property
    def key(self) -> str:
        """Case-folded tag name used for matching."""
        return self.name.lower()


@dataclass(frozen=True, slots=True)
class Block:
    """A matched ``<Name ...>`` / ``</Name>`` pair and its source span."""

    name: str
    open_tag: str
    interior: str
    raw: str
    start: int
    end: int

    @property
    def attributes(self) -> str:
        """Text between the tag name and ``>`` of the opening tag."""
        match = _TAG_RE.match(self.open_tag)
        return match.group("attrs").strip() if match else ""


def strip_comment(line: str) -> str:
    """Drop everything from the first unescaped comment marker onward."""
    search_from = 0
    while True:
        position = line.find(COMMENT_MARKER, search_from)
        if position == -1:
            return line
        if position > 0 and line[position - 1] == ESCAPE:
            search_from = position + 1
            continue
        return line[:position]


def iter_lines(text: str) -> Iterator[tuple[int, str]]:
    """Yield ``(offset, line)`` pairs, line endings excluded."""
    offset = 0
    for line in text.splitlines(keepends=True):
        yield offset, line.rstrip("\r\n")
        offset += len(line)


def iter_tags(text: str) -> Iterator[Tag]:
    """Yield section tags outside comments, in document order."""
    for offset, line in iter_lines(text):
        code = strip_comment(line)
        for match in _TAG_RE.finditer(code):
            yield Tag(
                name=match.group("name"),
                closing=bool(match.group("close")),
                attributes=match.group("attrs").strip(),
                start=offset + match.start(),
                end=offset + match.end(),
            )


def match_sections(text: str) -> list[Block]:
    """Return every properly closed section, ordered by start offset.

    A closing tag pairs with the nearest open tag of the same name; openers
    left dangling inside that pair are discarded. Unmatched closers are
    ignored, so a broken section never swallows the ones after it.
    """
    stack: list[Tag] = []
    sections: list[Block] = []
    for tag in iter_tags(text):
        if not tag.closing:
            stack.append(tag)
            continue
        for index in range(len(stack) - 1, -1, -1):
            opener = stack[index]
            if opener.key != tag.key:
                continue
            del stack[index:]
            sections.append(
                Block(
                    name=opener.name,
                    open_tag=text[opener.start : opener.end],
                    interior=text[opener.end : tag.start],
                    raw=text[opener.start : tag.end],
                    start=opener.start,
                    end=tag.end,
                )
            )
            break
    sections.sort(key=lambda section: section.start)
    return sections


def outermost(sections: list[Block]) -> list[Block]:
    """Filter *sections* (sorted by start) to those not nested in another."""
    result: list[Block] = []
    boundary = -1
    for section in sections:
        if section.start < boundary:
            continue
        result.append(section)
        boundary = section.end
    return result


def top_level_sections(text: str) -> list[Block]:
    """Return the outermost matched sections of *text*."""
    return outermost(match_sections(text))


__all__ = [
    "Block",
    "Tag",
    "iter_lines",
    "iter_tags",
    "match_sections",
    "outermost",
    "strip_comment",
    "top_level_sections",
]
