"""Source loading: tokenizer, grammar adapters and the arena syntax tree."""

from contractlens.loader.adapters import (
    get_adapter,
    language_for_path,
    load_source,
    parse,
    parse_pattern,
    parse_source,
    register_adapter,
)
from contractlens.loader.ast import SourceFile, SyntaxNode, SyntaxTree

__all__ = [
    "SourceFile",
    "SyntaxNode",
    "SyntaxTree",
    "get_adapter",
    "language_for_path",
    "load_source",
    "parse",
    "parse_pattern",
    "parse_source",
    "register_adapter",
]
