"""Compiled structural patterns.

A pattern is a small syntax tree parsed in pattern mode. Its roots are the
children of the synthetic ``pattern`` root node: one root for an expression
or item pattern, several for a statement-sequence pattern.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from contractlens.loader.adapters import parse_pattern
from contractlens.loader.ast import ELLIPSIS, METAVAR, RawNode, SourceFile, SyntaxTree

# Nested matcher calls a pattern may cause before the search is refused.
MAX_SEARCH_DEPTH = 300


@dataclass(frozen=True)
class Pattern:
    text: str
    tree: SyntaxTree
    roots: tuple[int, ...]
    # Typed metavariables: name -> node kind the bound node must have.
    typed: dict[str, str] = field(default_factory=dict)

    @classmethod
    def compile(cls, text: str, language: str = "rust") -> "Pattern":
        """Parse pattern text. Raises ParseError if it is not a valid pattern."""
        tree = parse_pattern(text.strip(), language)
        return cls(text=text, tree=tree, roots=tree.root.children)

    @classmethod
    def from_raw(
        cls,
        roots: list[RawNode],
        *,
        text: str,
        language: str,
        typed: dict[str, str] | None = None,
    ) -> "Pattern":
        """Build a pattern from already-constructed root nodes."""
        wrapper = RawNode("pattern", roots[0].start, roots[-1].end, children=list(roots))
        source = SourceFile(path="<pattern>", text=text, language=language)
        tree = SyntaxTree.build(source, wrapper)
        return cls(text=text, tree=tree, roots=tree.root.children, typed=dict(typed or {}))

    @property
    def is_sequence(self) -> bool:
        return len(self.roots) > 1

    def kind(self, index: int) -> str:
        return self.tree.nodes[index].kind

    def trimmed_roots(self) -> tuple[int, ...]:
        """Roots without leading or trailing ellipses."""
        roots = list(self.roots)
        while roots and self.kind(roots[0]) == ELLIPSIS:
            roots.pop(0)
        while roots and self.kind(roots[-1]) == ELLIPSIS:
            roots.pop()
        return tuple(roots)

    def metavariables(self) -> set[str]:
        return {node.value for node in self.tree.walk(METAVAR) if node.value}

    def search_depth(self) -> int:
        """Longest chain of nested matcher calls this pattern can cause.

        Matching a node with ``n`` children descends through one sequence
        step per preceding sibling, so wide and deep patterns both count.
        """
        cost = [0] * len(self.tree)
        for node in reversed(self.tree.nodes):
            steps = [len(node.children) + 1]
            steps.extend(k + 1 + cost[c] for k, c in enumerate(node.children))
            cost[node.index] = 1 + max(steps)
        return cost[0]

    def render(self) -> str:
        """Canonical rendering, independent of source whitespace and offsets."""
        body = " ".join(self.tree.render(r) for r in self.roots)
        if self.typed:
            types = ",".join(f"{k}:{v}" for k, v in sorted(self.typed.items()))
            return f"{body} [{types}]"
        return body
