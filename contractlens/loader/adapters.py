"""Grammar adapter registry and source loading.

Usage:
    source = load_source("contracts/vault/src/lib.rs")
    tree = parse_source(source)
    for diag in tree.diagnostics:
        ...

A GrammarAdapter turns text in one language into a ``SyntaxTree``. The
``rust`` adapter is registered at import time; other languages can be added
with ``register_adapter``.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol, runtime_checkable

from contractlens.core.errors import IOAccessError, ParseError
from contractlens.loader.ast import SourceFile, SyntaxTree
from contractlens.loader.rust_parser import RustParser

logger = logging.getLogger(__name__)


@runtime_checkable
class GrammarAdapter(Protocol):
    """Parses one language into language-agnostic syntax trees."""

    language: str
    extensions: tuple[str, ...]

    def parse(self, source: SourceFile) -> SyntaxTree:
        ...

    def parse_pattern(self, text: str) -> SyntaxTree:
        ...


class RustAdapter:
    """Adapter for Rust contract sources."""

    language = "rust"
    extensions = (".rs",)

    def parse(self, source: SourceFile) -> SyntaxTree:
        parser = RustParser(source.text, file=source.path)
        try:
            root = parser.parse_file()
        except RecursionError as exc:
            raise ParseError("source nests too deeply to parse", file=source.path) from exc
        return SyntaxTree.build(source, root, parser.diagnostics)

    def parse_pattern(self, text: str) -> SyntaxTree:
        parser = RustParser(text, file="<pattern>", pattern_mode=True)
        root = parser.parse_pattern()
        if parser.diagnostics:
            raise ParseError(parser.diagnostics[0].message, file="<pattern>")
        if not root.children:
            raise ParseError("empty pattern", file="<pattern>")
        source = SourceFile(path="<pattern>", text=text, language=self.language)
        return SyntaxTree.build(source, root)


_ADAPTERS: dict[str, GrammarAdapter] = {}


def register_adapter(adapter: GrammarAdapter) -> None:
    _ADAPTERS[adapter.language] = adapter


def get_adapter(language: str) -> GrammarAdapter:
    adapter = _ADAPTERS.get(language.lower())
    if adapter is None:
        raise ParseError(f"unsupported language '{language}'")
    return adapter


def supported_languages() -> list[str]:
    return sorted(_ADAPTERS)


def language_for_path(path: str | Path) -> str | None:
    """Language tag for a file extension, or None if no adapter claims it."""
    suffix = Path(path).suffix.lower()
    for language in sorted(_ADAPTERS):
        if suffix in _ADAPTERS[language].extensions:
            return language
    return None


def parse(source_text: str, language: str, path: str = "<memory>") -> SyntaxTree:
    """Parse raw text. Raises ParseError for unsupported languages or untokenizable text."""
    return parse_source(SourceFile(path=path, text=source_text, language=language))


def parse_source(source: SourceFile) -> SyntaxTree:
    tree = get_adapter(source.language).parse(source)
    if tree.diagnostics:
        logger.debug(
            "Parsed with %d skipped region(s)", len(tree.diagnostics),
            extra={"file": source.path},
        )
    return tree


def parse_pattern(text: str, language: str) -> SyntaxTree:
    return get_adapter(language).parse_pattern(text)


def load_source(path: str | Path, *, display_path: str | None = None) -> SourceFile:
    """Read a UTF-8 source file. Raises IOAccessError if it cannot be read."""
    path = Path(path)
    shown = display_path or path.as_posix()
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise IOAccessError(shown, f"not valid UTF-8 ({exc.reason})") from exc
    except OSError as exc:
        raise IOAccessError(shown, exc.strerror or str(exc)) from exc
    language = language_for_path(path) or ""
    return SourceFile(path=shown, text=text, language=language)


register_adapter(RustAdapter())
