"""Backtracking structural matcher and rule evaluation.

Matching is a depth-first search over (pattern node, source node) pairs.
Every search step ticks a per-(file, rule) budget; exhausting it raises
``MatchTimeout``, which ``RuleEngine`` records as a diagnostic before moving
on to the next rule.

Clause semantics:
    pattern             match at the candidate (first clause) or anywhere
                        in the candidate's subtree (later clauses)
    pattern-inside      some ancestor of the candidate (itself included)
                        matches
    pattern-not         no match within the candidate's subtree under any
                        extension of the current bindings
    pattern-not-inside  no ancestor (itself included) matches
    metavariable-regex  ``re.search`` on the bound node's source text
"""

from __future__ import annotations

import logging
import re
from typing import Iterator

from contractlens.core.config import get_settings
from contractlens.core.errors import MatchTimeout
from contractlens.core.types import Diagnostic, DiagnosticKind, Finding
from contractlens.loader.ast import ELLIPSIS, METAVAR, WILDCARD, SyntaxTree
from contractlens.rules.bindings import EMPTY, Bindings
from contractlens.rules.models import Clause, ClauseKind, PatternRule, RuleSet
from contractlens.rules.pattern import MAX_SEARCH_DEPTH, Pattern

logger = logging.getLogger(__name__)

_UNORDERED_KINDS = frozenset({"attributes"})
_FREE_KINDS = frozenset({METAVAR, ELLIPSIS, WILDCARD})
_MESSAGE_VAR_RE = re.compile(r"\$[A-Za-z_][A-Za-z0-9_]*")


class Budget:
    """Cooperative step counter for one (file, rule) pair."""

    __slots__ = ("limit", "remaining", "rule_id", "file")

    def __init__(self, limit: int, *, rule_id: str = "", file: str = "") -> None:
        self.limit = limit
        self.remaining = limit
        self.rule_id = rule_id
        self.file = file

    def tick(self) -> None:
        self.remaining -= 1
        if self.remaining < 0:
            raise MatchTimeout(self.rule_id, self.file, self.limit)


class TreeMatcher:
    """Matches patterns against nodes of one source tree."""

    def __init__(self, tree: SyntaxTree, budget: Budget) -> None:
        self.tree = tree
        self.budget = budget

    # ── Node-level matching ──────────────────────────────────────────────

    def match_node(self, pat: Pattern, p: int, s: int, env: Bindings) -> Iterator[Bindings]:
        self.budget.tick()
        pnode = pat.tree.nodes[p]
        snode = self.tree.nodes[s]

        if pnode.kind == METAVAR:
            name = pnode.value
            required = pat.typed.get(name)
            if required is not None and snode.kind != required:
                return
            bound = env.get(name)
            if bound is None:
                yield env.extend(name, s)
            elif self.tree.shape(bound) == self.tree.shape(s):
                yield env
            return
        if pnode.kind in (WILDCARD, ELLIPSIS):
            yield env
            return
        if pnode.kind != snode.kind or pnode.value != snode.value:
            return

        if pnode.kind in _UNORDERED_KINDS:
            yield from self._match_subset(pat, pnode.children, snode.children, env, frozenset())
            return
        for env2, end in self.match_sequence(pat, pnode.children, snode.children, 0, env, 0):
            if end == len(snode.children):
                yield env2

    def match_sequence(
        self,
        pat: Pattern,
        pats: tuple[int, ...],
        srcs: tuple[int, ...],
        si: int,
        env: Bindings,
        pi: int = 0,
    ) -> Iterator[tuple[Bindings, int]]:
        """Match ``pats[pi:]`` against ``srcs`` from ``si``; yields (bindings, end)."""
        if pi == len(pats):
            yield env, si
            return
        p = pats[pi]
        if pat.tree.nodes[p].kind == ELLIPSIS:
            if pi == len(pats) - 1:
                yield env, len(srcs)
                return
            for skip in range(si, len(srcs) + 1):
                self.budget.tick()
                yield from self.match_sequence(pat, pats, srcs, skip, env, pi + 1)
            return
        if si >= len(srcs):
            return
        for env2 in self.match_node(pat, p, srcs[si], env):
            yield from self.match_sequence(pat, pats, srcs, si + 1, env2, pi + 1)

    def _match_subset(
        self,
        pat: Pattern,
        pats: tuple[int, ...],
        srcs: tuple[int, ...],
        env: Bindings,
        used: frozenset[int],
    ) -> Iterator[Bindings]:
        if not pats:
            yield env
            return
        p, rest = pats[0], pats[1:]
        if pat.tree.nodes[p].kind == ELLIPSIS:
            yield from self._match_subset(pat, rest, srcs, env, used)
            return
        for s in srcs:
            if s in used:
                continue
            for env2 in self.match_node(pat, p, s, env):
                yield from self._match_subset(pat, rest, srcs, env2, used | {s})

    # ── Pattern-level matching ───────────────────────────────────────────

    def match_at(self, pat: Pattern, candidate: int, env: Bindings = EMPTY) -> Iterator[tuple[Bindings, int]]:
        """Match a whole pattern anchored at ``candidate``.

        Yields (bindings, last) where ``last`` is the last source node the
        match covers: the candidate itself for a single-root pattern, the
        final statement of the run for a sequence pattern (whose candidate is
        the run's first statement).
        """
        roots = pat.trimmed_roots()
        if len(roots) == 1:
            for env2 in self.match_node(pat, roots[0], candidate, env):
                yield env2, candidate
            return
        parent = self.tree.parent(candidate)
        if parent is None or parent.kind != "block":
            return
        siblings = parent.children
        position = siblings.index(candidate)
        for env2, end in self.match_sequence(pat, roots, siblings, position, env):
            yield env2, siblings[end - 1]

    def occurrences(
        self, pat: Pattern, scope: range | None = None, env: Bindings = EMPTY,
    ) -> Iterator[tuple[int, Bindings, int]]:
        """(first, bindings, last) for every match of ``pat`` rooted in ``scope``."""
        head = self.head_kind(pat)
        for s in scope if scope is not None else range(len(self.tree)):
            if head is not None and self.tree.nodes[s].kind != head:
                continue
            for env2, last in self.match_at(pat, s, env):
                yield s, env2, last

    def search(self, pat: Pattern, scope: range, env: Bindings) -> Iterator[Bindings]:
        """All matches of ``pat`` rooted anywhere in ``scope`` (arena indices)."""
        for _, env2, _ in self.occurrences(pat, scope, env):
            yield env2

    def inside(self, pat: Pattern, candidate: int, env: Bindings) -> Iterator[Bindings]:
        """Matches of ``pat`` on an ancestor region that contains ``candidate``."""
        if not pat.is_sequence:
            for ancestor in self.tree.ancestors(candidate, inclusive=True):
                yield from self.match_node(pat, pat.roots[0], ancestor.index, env)
            return
        # Sequence: some run of statements in an enclosing block must cover
        # the candidate. Leading/trailing ``...`` extend the run to the block's ends.
        for block in self.tree.ancestors(candidate, inclusive=False):
            if block.kind != "block" or not block.children:
                continue
            siblings = block.children
            for start in range(len(siblings)):
                for env2, end in self.match_sequence(pat, pat.roots, siblings, start, env):
                    if end == start:
                        continue
                    last = siblings[end - 1]
                    if siblings[start] <= candidate < last + self.tree.nodes[last].size:
                        yield env2

    def head_kind(self, pat: Pattern) -> str | None:
        roots = pat.trimmed_roots()
        if not roots:
            return None
        kind = pat.kind(roots[0])
        return None if kind in _FREE_KINDS else kind


# ── Rule evaluation ──────────────────────────────────────────────────────────


def match(rule: PatternRule, tree: SyntaxTree, *, budget: int | None = None) -> list[Finding]:
    """All findings of ``rule`` in ``tree``, one per matched top-level node.

    Raises MatchTimeout when the search budget is exhausted or a pattern
    nests deeper than the interpreter stack allows.
    """
    limit = budget if budget is not None else get_settings().match_budget
    matcher = TreeMatcher(tree, Budget(limit, rule_id=rule.id, file=tree.path))
    head = matcher.head_kind(rule.primary)

    findings: list[Finding] = []
    try:
        for node in tree.nodes:
            if head is not None and node.kind != head:
                continue
            completion = _first_completion(rule, matcher, node.index)
            if completion is not None:
                env, last = completion
                findings.append(_make_finding(rule, tree, node.index, last, env))
    except RecursionError as exc:
        raise MatchTimeout(
            rule.id, tree.path, limit, reason=f"nests deeper than {MAX_SEARCH_DEPTH} search levels",
        ) from exc
    return findings


def _first_completion(rule: PatternRule, matcher: TreeMatcher, candidate: int) -> tuple[Bindings, int] | None:
    positives = rule.extra_positives
    for env, last in matcher.match_at(rule.primary, candidate):
        for env2 in _satisfy_positives(rule, matcher, candidate, last, positives, env):
            if _regex_ok(rule, matcher.tree, env2) and _negatives_ok(rule, matcher, candidate, last, env2):
                return env2, last
    return None


def _satisfy_positives(
    rule: PatternRule,
    matcher: TreeMatcher,
    candidate: int,
    last: int,
    clauses: list[Clause],
    env: Bindings,
) -> Iterator[Bindings]:
    if not clauses:
        yield env
        return
    clause, rest = clauses[0], clauses[1:]
    if clause.kind == ClauseKind.PATTERN:
        scope = range(candidate, last + matcher.tree.nodes[last].size)
        options = matcher.search(clause.pattern, scope, env)
    else:
        options = matcher.inside(clause.pattern, candidate, env)
    for env2 in options:
        yield from _satisfy_positives(rule, matcher, candidate, last, rest, env2)


def _regex_ok(rule: PatternRule, tree: SyntaxTree, env: Bindings) -> bool:
    for clause in rule.clauses_of(ClauseKind.METAVARIABLE_REGEX):
        bound = env.get(clause.metavariable)
        if bound is None or not clause.regex.search(tree.text(bound)):
            return False
    return True


def _negatives_ok(rule: PatternRule, matcher: TreeMatcher, candidate: int, last: int, env: Bindings) -> bool:
    scope = range(candidate, last + matcher.tree.nodes[last].size)
    for clause in rule.clauses:
        if clause.kind == ClauseKind.PATTERN_NOT:
            if next(matcher.search(clause.pattern, scope, env), None) is not None:
                return False
        elif clause.kind == ClauseKind.PATTERN_NOT_INSIDE:
            if next(matcher.inside(clause.pattern, candidate, env), None) is not None:
                return False
    return True


def render_message(template: str, tree: SyntaxTree, env: Bindings) -> str:
    """Interpolate ``$X`` placeholders with the bound source text."""

    def replace(m: re.Match[str]) -> str:
        bound = env.get(m.group(0))
        return tree.text(bound) if bound is not None else m.group(0)

    return _MESSAGE_VAR_RE.sub(replace, template)


def _make_finding(rule: PatternRule, tree: SyntaxTree, first: int, last: int, env: Bindings) -> Finding:
    start_node = tree.nodes[first]
    end_node = tree.nodes[last]
    return Finding(
        rule_id=rule.id,
        file=tree.path,
        node_index=first,
        start=start_node.start,
        end=end_node.end,
        line_start=start_node.start_line,
        line_end=end_node.end_line,
        severity=rule.severity,
        message=render_message(rule.message, tree, env),
        category=rule.category,
        bindings={name: tree.text(index) for name, index in sorted(env.items())},
    )


class RuleEngine:
    """Runs a read-only rule set against syntax trees."""

    def __init__(self, ruleset: RuleSet, *, budget: int | None = None) -> None:
        self.ruleset = ruleset
        self.budget = budget if budget is not None else get_settings().match_budget

    def run(self, tree: SyntaxTree) -> tuple[list[Finding], list[Diagnostic]]:
        findings: list[Finding] = []
        diagnostics: list[Diagnostic] = []
        for rule in self.ruleset.for_language(tree.source.language):
            try:
                findings.extend(match(rule, tree, budget=self.budget))
            except MatchTimeout as e:
                logger.warning("%s", e, extra={"file": tree.path, "rule_id": rule.id})
                diagnostics.append(
                    Diagnostic(
                        kind=DiagnosticKind.MATCH_TIMEOUT,
                        file=tree.path,
                        rule_id=rule.id,
                        message=str(e),
                    )
                )
        return findings, diagnostics
