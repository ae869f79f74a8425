"""Recognition of guard calls (ownership and deposit checks).

A node is *guarded* when some guard call sits in a block that encloses it.
Guard sites are computed once per syntax tree and are read-only afterwards.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Sequence

from contractlens.core.config import get_settings
from contractlens.core.errors import ConfigError, MatchTimeout, ParseError
from contractlens.core.types import Diagnostic, DiagnosticKind
from contractlens.loader.ast import SyntaxTree
from contractlens.rules.matcher import Budget, TreeMatcher
from contractlens.rules.pattern import Pattern

logger = logging.getLogger(__name__)

_ACCESS_CONTROL_MARKERS = ("predecessor_account_id", "signer_account_id", "owner")


@dataclass(frozen=True)
class GuardPattern:
    text: str
    pattern: Pattern
    access_control: bool


@dataclass(frozen=True)
class GuardSite:
    node: int           # matched guard node
    scope: int          # nearest enclosing block
    access_control: bool
    text: str


@dataclass(frozen=True)
class GuardIndex:
    """Guard sites of one tree."""

    tree: SyntaxTree
    sites: tuple[GuardSite, ...] = ()
    diagnostics: tuple[Diagnostic, ...] = field(default=())

    def guards_of(self, index: int) -> list[GuardSite]:
        return [site for site in self.sites if self.tree.is_ancestor(site.scope, index)]

    def is_guarded(self, index: int) -> bool:
        return any(self.tree.is_ancestor(site.scope, index) for site in self.sites)


class GuardDetector:
    """Compiles the configured guard patterns and indexes trees against them."""

    def __init__(self, patterns: Sequence[str] | None = None, *, language: str = "rust") -> None:
        texts = list(patterns) if patterns is not None else list(get_settings().guard_patterns)
        self.language = language
        self.patterns: list[GuardPattern] = []
        for text in texts:
            try:
                compiled = Pattern.compile(text, language)
            except ParseError as e:
                raise ConfigError(f"invalid guard pattern {text!r}: {e}") from e
            access = any(marker in text for marker in _ACCESS_CONTROL_MARKERS)
            self.patterns.append(GuardPattern(text, compiled, access))

    def index(self, tree: SyntaxTree, *, budget: int | None = None) -> GuardIndex:
        if tree.source.language != self.language:
            return GuardIndex(tree)
        limit = budget if budget is not None else get_settings().match_budget
        matcher = TreeMatcher(tree, Budget(limit, rule_id="guard-detection", file=tree.path))
        sites: dict[int, GuardSite] = {}
        try:
            for guard in self.patterns:
                for first, _, _ in matcher.occurrences(guard.pattern):
                    scope = tree.enclosing(first, "block")
                    if scope is None:
                        continue
                    previous = sites.get(first)
                    access = guard.access_control or (previous is not None and previous.access_control)
                    sites[first] = GuardSite(first, scope.index, access, guard.text)
        except MatchTimeout as e:
            logger.warning("%s", e, extra={"file": tree.path})
            diagnostic = Diagnostic(
                kind=DiagnosticKind.MATCH_TIMEOUT,
                file=tree.path,
                rule_id="guard-detection",
                message=str(e),
            )
            return GuardIndex(tree, tuple(sites[k] for k in sorted(sites)), (diagnostic,))
        return GuardIndex(tree, tuple(sites[k] for k in sorted(sites)))
