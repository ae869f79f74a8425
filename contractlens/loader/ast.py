"""Language-agnostic syntax tree stored in an index-addressed arena.

Parsers build a lightweight ``RawNode`` tree; ``SyntaxTree.build`` flattens
it in pre-order so that the same source text always yields the same arena
layout. Node 0 is the root, and the descendants of node ``i`` occupy the
contiguous index range ``[i, i + size)``.
"""

from __future__ import annotations

import bisect
import hashlib
from dataclasses import dataclass, field
from typing import Iterator

from pydantic import BaseModel, ConfigDict

from contractlens.core.types import Diagnostic


LITERAL_KINDS = frozenset({
    "int_literal",
    "float_literal",
    "str_literal",
    "bytes_literal",
    "char_literal",
    "bool_literal",
})

# Pattern-only node kinds.
METAVAR = "metavar"
ELLIPSIS = "ellipsis"
WILDCARD = "wildcard"


class SourceFile(BaseModel):
    """A loaded source file. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    path: str
    text: str
    language: str


@dataclass
class RawNode:
    """Mutable node used while parsing, before arena allocation."""

    kind: str
    start: int
    end: int
    value: str | None = None
    children: list["RawNode"] = field(default_factory=list)


@dataclass(frozen=True)
class SyntaxNode:
    """A node in the arena. ``children`` and ``parent`` are arena indices."""

    index: int
    kind: str
    start: int
    end: int
    start_line: int
    end_line: int
    children: tuple[int, ...]
    value: str | None
    parent: int
    size: int


class SyntaxTree:
    """Arena-owned syntax tree for exactly one SourceFile."""

    def __init__(
        self,
        source: SourceFile,
        nodes: tuple[SyntaxNode, ...],
        shapes: tuple[str, ...],
        diagnostics: tuple[Diagnostic, ...] = (),
    ) -> None:
        self.source = source
        self.nodes = nodes
        self._shapes = shapes
        self.diagnostics = diagnostics

    # ── Construction ─────────────────────────────────────────────────────

    @classmethod
    def build(
        cls,
        source: SourceFile,
        root: RawNode,
        diagnostics: list[Diagnostic] | tuple[Diagnostic, ...] = (),
    ) -> "SyntaxTree":
        line_starts = _line_starts(source.text)
        records: list[list] = []

        # Iterative pre-order allocation; parents are allocated first.
        stack: list[tuple[RawNode, int]] = [(root, -1)]
        raw_by_index: list[RawNode] = []
        while stack:
            raw, parent = stack.pop()
            index = len(records)
            records.append([raw, parent, []])
            raw_by_index.append(raw)
            if parent >= 0:
                records[parent][2].append(index)
            for child in reversed(raw.children):
                stack.append((child, index))

        sizes = [1] * len(records)
        for index in range(len(records) - 1, 0, -1):
            sizes[records[index][1]] += sizes[index]

        nodes = tuple(
            SyntaxNode(
                index=i,
                kind=raw.kind,
                start=raw.start,
                end=raw.end,
                start_line=_line_of(line_starts, raw.start),
                end_line=_line_of(line_starts, max(raw.start, raw.end - 1)),
                children=tuple(children),
                value=raw.value,
                parent=parent,
                size=sizes[i],
            )
            for i, (raw, parent, children) in enumerate(records)
        )

        shapes: list[str] = [""] * len(nodes)
        for node in reversed(nodes):
            shapes[node.index] = _digest(node.kind, node.value, [shapes[c] for c in node.children])

        return cls(source, nodes, tuple(shapes), tuple(diagnostics))

    # ── Accessors ────────────────────────────────────────────────────────

    @property
    def path(self) -> str:
        return self.source.path

    @property
    def root(self) -> SyntaxNode:
        return self.nodes[0]

    def __len__(self) -> int:
        return len(self.nodes)

    def node(self, index: int) -> SyntaxNode:
        return self.nodes[index]

    def children(self, index: int) -> list[SyntaxNode]:
        return [self.nodes[c] for c in self.nodes[index].children]

    def child(self, index: int, position: int) -> SyntaxNode:
        return self.nodes[self.nodes[index].children[position]]

    def parent(self, index: int) -> SyntaxNode | None:
        parent = self.nodes[index].parent
        return self.nodes[parent] if parent >= 0 else None

    def ancestors(self, index: int, *, inclusive: bool = False) -> Iterator[SyntaxNode]:
        """Walk from ``index`` (optionally included) up to the root."""
        current = index if inclusive else self.nodes[index].parent
        while current >= 0:
            node = self.nodes[current]
            yield node
            current = node.parent

    def enclosing(self, index: int, kind: str) -> SyntaxNode | None:
        return next((a for a in self.ancestors(index) if a.kind == kind), None)

    def subtree(self, index: int) -> range:
        """Arena indices of ``index`` and all its descendants, in pre-order."""
        return range(index, index + self.nodes[index].size)

    def is_ancestor(self, ancestor: int, index: int) -> bool:
        """True if ``ancestor`` is ``index`` or one of its ancestors."""
        return ancestor <= index < ancestor + self.nodes[ancestor].size

    def walk(self, kind: str | None = None) -> Iterator[SyntaxNode]:
        for node in self.nodes:
            if kind is None or node.kind == kind:
                yield node

    def text(self, index: int) -> str:
        node = self.nodes[index]
        return self.source.text[node.start:node.end]

    def shape(self, index: int) -> str:
        """Structural digest: equal digests mean structurally identical subtrees."""
        return self._shapes[index]

    def render(self, index: int = 0) -> str:
        """S-expression rendering of a subtree (canonical, whitespace-free)."""
        rendered: dict[int, str] = {}
        for i in reversed(self.subtree(index)):
            node = self.nodes[i]
            head = node.kind if node.value is None else f"{node.kind}:{node.value}"
            if node.children:
                inner = " ".join(rendered.pop(c) for c in node.children)
                rendered[i] = f"({head} {inner})"
            else:
                rendered[i] = f"({head})"
        return rendered[index]


def _line_starts(text: str) -> list[int]:
    starts = [0]
    pos = text.find("\n")
    while pos >= 0:
        starts.append(pos + 1)
        pos = text.find("\n", pos + 1)
    return starts


def _line_of(line_starts: list[int], offset: int) -> int:
    return bisect.bisect_right(line_starts, offset)


def _digest(kind: str, value: str | None, child_shapes: list[str]) -> str:
    h = hashlib.blake2b(digest_size=16)
    h.update(kind.encode())
    h.update(b"\x00")
    if value is not None:
        h.update(b"\x01")
        h.update(value.encode("utf-8", "surrogatepass"))
    h.update(b"\x00")
    for shape in child_shapes:
        h.update(shape.encode())
        h.update(b",")
    return h.hexdigest()
