"""Variant propagation: generalize confirmed findings and re-match the corpus.

For each confirmed finding the matched subtree is turned into a pattern:
literals and variable identifiers become typed metavariables (the same
identifier always maps to the same metavariable) while node kinds, callee
names, method names, paths and operators are kept. The generalized rule is
then run over every file of the frozen corpus, so a variant set is always a
superset of what a fresh full-corpus run of that rule reports.
"""

from __future__ import annotations

import hashlib
import logging
from typing import Iterable

from pydantic import BaseModel, Field

from contractlens.core.config import get_settings
from contractlens.core.errors import MatchTimeout
from contractlens.core.types import (
    Diagnostic,
    DiagnosticKind,
    Finding,
    TriageState,
    VariantVerdict,
)
from contractlens.loader.ast import LITERAL_KINDS, METAVAR, RawNode, SyntaxTree
from contractlens.rules.matcher import match
from contractlens.rules.models import PatternRule
from contractlens.rules.pattern import MAX_SEARCH_DEPTH, Pattern
from contractlens.variants.corpus import CorpusCache

logger = logging.getLogger(__name__)

# Identifiers that name language items rather than variables.
_FIXED_IDENTS = frozenset({"self", "Self", "crate", "super", "_"})


# ── Models ───────────────────────────────────────────────────────────────────


class VariantMember(BaseModel):
    finding: Finding
    verdict: VariantVerdict


class VariantSet(BaseModel):
    """Findings sharing one generalized-pattern fingerprint."""

    origin: Finding
    fingerprint: str
    rule_id: str
    pattern: str
    members: list[VariantMember] = Field(default_factory=list)

    def sort_key(self) -> tuple:
        return (*self.origin.sort_key(), self.fingerprint)

    def member_keys(self) -> set[tuple[str, int, int, int]]:
        return {m.finding.node_key for m in self.members}


# ── Generalization ───────────────────────────────────────────────────────────


class _Namer:
    def __init__(self) -> None:
        self.names: dict[tuple[str, str | None], str] = {}
        self.typed: dict[str, str] = {}
        self._counts: dict[str, int] = {}

    def name_for(self, kind: str, value: str | None) -> str:
        key = (kind, value)
        if key not in self.names:
            prefix = "VAR" if kind == "ident" else kind.upper()
            self._counts[prefix] = self._counts.get(prefix, 0) + 1
            name = f"${prefix}{self._counts[prefix]}"
            self.names[key] = name
            self.typed[name] = kind
        return self.names[key]


def _is_fixed_ident(tree: SyntaxTree, index: int) -> bool:
    node = tree.nodes[index]
    if node.value in _FIXED_IDENTS or (node.value or "")[:1].isupper():
        return True
    parent = tree.parent(index)
    if parent is None:
        return False
    # Callee of a call or the name of an invoked macro.
    if parent.kind in ("call", "macro_call") and parent.children[0] == index:
        return True
    return False


def _metavar_name(tree: SyntaxTree, index: int, namer: _Namer) -> str | None:
    node = tree.nodes[index]
    if node.kind in LITERAL_KINDS or (node.kind == "ident" and not _is_fixed_ident(tree, index)):
        return namer.name_for(node.kind, node.value)
    parent = tree.parent(index)
    if node.kind == "name" and parent is not None and parent.kind == "function" and parent.children[2] == index:
        return namer.name_for("name", node.value)
    return None


def _generalize(tree: SyntaxTree, index: int, namer: _Namer) -> RawNode:
    """Generalized copy of the subtree at ``index``.

    Names are handed out in pre-order; the copy is then assembled bottom-up,
    so arbitrarily deep expressions never recurse.
    """
    visited: list[int] = []
    replaced: dict[int, RawNode] = {}
    skip_to = index
    for i in tree.subtree(index):
        if i < skip_to:
            continue
        visited.append(i)
        name = _metavar_name(tree, i, namer)
        if name is not None:
            node = tree.nodes[i]
            replaced[i] = RawNode(METAVAR, node.start, node.end, value=name)
            skip_to = i + node.size

    built: dict[int, RawNode] = {}
    for i in reversed(visited):
        if i in replaced:
            built[i] = replaced[i]
            continue
        node = tree.nodes[i]
        built[i] = RawNode(
            node.kind, node.start, node.end, value=node.value,
            children=[built.pop(c) for c in node.children],
        )
    return built[index]


def _matched_roots(tree: SyntaxTree, finding: Finding) -> list[int]:
    """Arena roots covered by a finding: one node, or a run of statements."""
    first = finding.node_index
    parent = tree.parent(first)
    if tree.nodes[first].end >= finding.end or parent is None or parent.kind != "block":
        return [first]
    siblings = parent.children
    position = siblings.index(first)
    roots = [first]
    for sibling in siblings[position + 1:]:
        if tree.nodes[sibling].start >= finding.end:
            break
        roots.append(sibling)
    return roots


def generalize(finding: Finding, tree: SyntaxTree) -> Pattern:
    namer = _Namer()
    roots = [_generalize(tree, r, namer) for r in _matched_roots(tree, finding)]
    return Pattern.from_raw(
        roots, text=tree.source.text, language=tree.source.language, typed=namer.typed,
    )


def fingerprint(pattern: Pattern) -> str:
    return hashlib.sha256(pattern.render().encode("utf-8")).hexdigest()


# ── Propagation ──────────────────────────────────────────────────────────────


class VariantPropagator:
    """Runs generalized rules over a frozen corpus."""

    def __init__(
        self,
        corpus: CorpusCache,
        *,
        budget: int | None = None,
        auto_confirm: bool | None = None,
    ) -> None:
        if not corpus.frozen:
            raise RuntimeError("variant propagation requires a frozen corpus cache")
        settings = get_settings()
        self.corpus = corpus
        self.budget = budget if budget is not None else settings.match_budget
        self.auto_confirm = settings.auto_confirm_variants if auto_confirm is None else auto_confirm
        self.diagnostics: list[Diagnostic] = []

    def propagate(self, findings: Iterable[Finding]) -> list[VariantSet]:
        groups: dict[str, tuple[Pattern, list[Finding]]] = {}
        for finding in sorted(
            (f for f in findings if f.triage == TriageState.CONFIRMED),
            key=lambda f: f.sort_key(),
        ):
            entry = self.corpus.get(finding.file)
            if entry is None:
                logger.warning(
                    "Confirmed finding %s references a file outside the corpus", finding.rule_id,
                    extra={"file": finding.file},
                )
                continue
            pattern = generalize(finding, entry.tree)
            depth = pattern.search_depth()
            if depth > MAX_SEARCH_DEPTH:
                self._refuse(finding, depth)
                continue
            groups.setdefault(fingerprint(pattern), (pattern, []))[1].append(finding)

        variant_sets = [
            self._expand(fp, pattern, origins) for fp, (pattern, origins) in groups.items()
        ]
        variant_sets.sort(key=lambda vs: vs.sort_key())
        logger.info(
            "Propagated %d confirmed finding group(s) into %d member(s)",
            len(variant_sets), sum(len(vs.members) for vs in variant_sets),
        )
        return variant_sets

    def generalized_rule(self, fp: str, pattern: Pattern, origin: Finding) -> PatternRule:
        return PatternRule.from_pattern(
            f"{origin.rule_id}#variant-{fp[:8]}",
            pattern,
            language=pattern.tree.source.language,
            severity=origin.severity,
            message=origin.message,
            metadata={"category": origin.category, "origin_rule": origin.rule_id},
        )

    def _refuse(self, finding: Finding, depth: int) -> None:
        message = (
            f"variant search skipped: generalized pattern nests {depth} levels "
            f"(limit {MAX_SEARCH_DEPTH})"
        )
        logger.warning("%s", message, extra={"file": finding.file, "rule_id": finding.rule_id})
        self.diagnostics.append(
            Diagnostic(
                kind=DiagnosticKind.MATCH_TIMEOUT,
                file=finding.file,
                rule_id=finding.rule_id,
                line=finding.line_start,
                message=message,
            )
        )

    def run_rule(self, rule: PatternRule) -> list[Finding]:
        """A full-corpus run of ``rule``; timeouts become diagnostics."""
        results: list[Finding] = []
        for entry in self.corpus:
            if entry.tree.source.language != rule.language:
                continue
            try:
                results.extend(match(rule, entry.tree, budget=self.budget))
            except MatchTimeout as e:
                logger.warning("%s", e, extra={"file": entry.path, "rule_id": rule.id})
                self.diagnostics.append(
                    Diagnostic(
                        kind=DiagnosticKind.MATCH_TIMEOUT,
                        file=entry.path,
                        rule_id=rule.id,
                        message=str(e),
                    )
                )
        return results

    def _expand(self, fp: str, pattern: Pattern, origins: list[Finding]) -> VariantSet:
        origin = origins[0]
        rule = self.generalized_rule(fp, pattern, origin)

        members: dict[tuple[str, int, int, int], VariantMember] = {}
        for confirmed in origins:
            members[confirmed.node_key] = VariantMember(
                finding=confirmed, verdict=VariantVerdict.ORIGIN,
            )

        for candidate in self.run_rule(rule):
            if candidate.node_key in members:
                continue
            entry = self.corpus.get(candidate.file)
            guarded = entry.guards.is_guarded(candidate.node_index)
            verdict = VariantVerdict.NEEDS_REVIEW if guarded else VariantVerdict.CONFIRMED_VARIANT
            state = (
                TriageState.CONFIRMED
                if self.auto_confirm and not guarded
                else TriageState.NEEDS_REVIEW
            )
            member = candidate.model_copy(
                update={"severity": origin.severity, "category": origin.category}
            ).transition(
                state, variant_of=origin.rule_id, fingerprint=fp, verdict=verdict.value,
            )
            members[candidate.node_key] = VariantMember(finding=member, verdict=verdict)

        ordered = sorted(members.values(), key=lambda m: m.finding.sort_key())
        return VariantSet(
            origin=origin,
            fingerprint=fp,
            rule_id=rule.id,
            pattern=pattern.render(),
            members=ordered,
        )


def propagate(findings: Iterable[Finding], corpus: CorpusCache) -> tuple[list[VariantSet], list[Diagnostic]]:
    propagator = VariantPropagator(corpus)
    variant_sets = propagator.propagate(findings)
    return variant_sets, propagator.diagnostics
