"""Locate ``<VirtualHost>`` blocks in a configuration file.

Blocks are found by explicit tag scanning, never by one greedy regular
expression, so a block's closing tag can never be paired with an unrelated
block further down the file. A ``<VirtualHost>`` without a closing tag is
skipped and does not affect the blocks that follow it.
"""
from __future__ import annotations

from collections.abc import Iterable

from .syntax import Block, match_sections, outermost

VIRTUAL_HOST = "virtualhost"


def extract_blocks(text: str) -> list[Block]:
    """Return the VirtualHost blocks of *text* in document order.

    Blocks may sit inside other sections (certbot wraps its TLS file in
    ``<IfModule mod_ssl.c>``); only VirtualHost-in-VirtualHost nesting is
    collapsed to the outer block.
    """
    candidates = [
        section for section in match_sections(text) if section.name.lower() == VIRTUAL_HOST
    ]
    return outermost(candidates)


def remove_blocks(text: str, blocks: Iterable[Block]) -> str:
    """Splice *blocks* out of *text* by offset.

    Indentation before a removed block and the newline that ends its last line
    go with it; every other byte of *text* is kept.
    """
    pieces: list[str] = []
    cursor = 0
    for block in sorted(blocks, key=lambda item: item.start):
        start = _line_start_if_blank_prefix(text, block.start)
        end = _consume_newline(text, block.end)
        if start < cursor:
            start = cursor
        pieces.append(text[cursor:start])
        cursor = end
    pieces.append(text[cursor:])
    return "".join(pieces)


def replace_block(text: str, block: Block, replacement: str) -> str:
    """Return *text* with the span of *block* replaced by *replacement*."""
    return text[: block.start] + replacement + text[block.end :]


def _line_start_if_blank_prefix(text: str, position: int) -> int:
    line_start = text.rfind("\n", 0, position) + 1
    if text[line_start:position].strip(" \t"):
        return position
    return line_start


def _consume_newline(text: str, position: int) -> int:
    if text.startswith("\r\n", position):
        return position + 2
    if text.startswith("\n", position):
        return position + 1
    return position


__all__ = ["VIRTUAL_HOST", "extract_blocks", "remove_blocks", "replace_block"]
