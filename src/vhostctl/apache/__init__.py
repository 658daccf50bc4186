"""Parsing of Apache VirtualHost configuration files."""
from __future__ import annotations

from .blocks import extract_blocks, remove_blocks, replace_block
from .directives import DirectiveMap, tokenize
from .sites import (
    SiteGroup,
    SiteKind,
    SiteRecord,
    TlsState,
    classify_sites,
    declared_names,
    group_sites,
    merge_sites,
    parse_config_file,
    parse_config_text,
    read_sites,
)
from .syntax import Block

__all__ = [
    "Block",
    "DirectiveMap",
    "SiteGroup",
    "SiteKind",
    "SiteRecord",
    "TlsState",
    "classify_sites",
    "declared_names",
    "extract_blocks",
    "group_sites",
    "merge_sites",
    "parse_config_file",
    "parse_config_text",
    "read_sites",
    "remove_blocks",
    "replace_block",
    "tokenize",
]
