"""Finding classification: taxonomy lookup plus ordered context modifiers.

Severity starts at the class's base severity (unknown categories fall back
to the rule's declared severity). Modifiers then run in a fixed order and
each result is clamped to the class's [floor, ceiling], so identical inputs
always produce identical severities:

    1. inside-guard      an enclosing block contains a guard call   -> -1 level
    2. test-code         finding lies in test code                  -> floor
    3. payable-context   enclosing function is ``#[payable]``       -> +1 level
"""

from __future__ import annotations

import logging
from pathlib import PurePosixPath
from typing import Callable

from contractlens.classifier.guards import GuardDetector, GuardIndex
from contractlens.classifier.taxonomy import VulnerabilityClass, lookup_class
from contractlens.core.types import Finding, Severity
from contractlens.loader.ast import SyntaxTree

logger = logging.getLogger(__name__)

_TEST_ATTRIBUTES = ("test", "tokio::test", "cfg(test)")


def _attribute_values(tree: SyntaxTree, index: int) -> list[str]:
    """Attribute values of an item node (``function``, ``mod``, ...)."""
    node = tree.nodes[index]
    if not node.children:
        return []
    first = tree.nodes[node.children[0]]
    if first.kind != "attributes":
        return []
    return [tree.nodes[a].value or "" for a in first.children]


def is_test_code(tree: SyntaxTree, index: int) -> bool:
    path = PurePosixPath(tree.path)
    if "tests" in path.parts[:-1] or path.name.endswith(("_test.rs", "_tests.rs")) or path.name == "tests.rs":
        return True
    for ancestor in tree.ancestors(index, inclusive=True):
        if ancestor.kind in ("function", "mod"):
            if any(v in _TEST_ATTRIBUTES for v in _attribute_values(tree, ancestor.index)):
                return True
    return False


def in_payable_function(tree: SyntaxTree, index: int) -> bool:
    function = next(
        (a for a in tree.ancestors(index, inclusive=True) if a.kind == "function"), None
    )
    return function is not None and "payable" in _attribute_values(tree, function.index)


Modifier = Callable[[Severity, VulnerabilityClass, Finding, SyntaxTree, GuardIndex], Severity | None]


def _inside_guard(severity, cls, finding, tree, guards):
    if guards.is_guarded(finding.node_index):
        return severity.shift(-1)
    return None


def _test_code(severity, cls, finding, tree, guards):
    if is_test_code(tree, finding.node_index):
        return cls.floor
    return None


def _payable_context(severity, cls, finding, tree, guards):
    if in_payable_function(tree, finding.node_index):
        return severity.shift(1)
    return None


MODIFIER_FUNCS: dict[str, Modifier] = {
    "inside-guard": _inside_guard,
    "test-code": _test_code,
    "payable-context": _payable_context,
}


class FindingClassifier:
    """Deterministic classifier; holds only read-only configuration."""

    def __init__(self, detector: GuardDetector | None = None) -> None:
        self.detector = detector or GuardDetector()

    def classify(
        self,
        finding: Finding,
        tree: SyntaxTree,
        guards: GuardIndex | None = None,
    ) -> tuple[VulnerabilityClass, Severity, list[str]]:
        """Return (class, severity, applied modifier names)."""
        cls = lookup_class(finding.category or finding.rule_id, finding.severity)
        if guards is None:
            guards = self.detector.index(tree)

        # The class base wins over the rule's declared severity, which is kept
        # in metadata by apply().
        severity = cls.clamp(cls.base_severity)
        applied: list[str] = []
        for name in cls.modifiers:
            result = MODIFIER_FUNCS[name](severity, cls, finding, tree, guards)
            if result is None:
                continue
            severity = cls.clamp(result)
            applied.append(name)
        return cls, severity, applied

    def apply(self, finding: Finding, tree: SyntaxTree, guards: GuardIndex | None = None) -> Finding:
        """Copy of ``finding`` carrying its classified severity and class."""
        cls, severity, applied = self.classify(finding, tree, guards)
        if severity != finding.severity:
            logger.debug(
                "%s: %s -> %s via %s", finding.rule_id, finding.severity.value,
                severity.value, ",".join(applied),
                extra={"file": finding.file, "rule_id": finding.rule_id},
            )
        return finding.model_copy(
            update={
                "severity": severity,
                "category": cls.name,
                "metadata": {
                    **finding.metadata,
                    "rule_severity": finding.severity.value,
                    "modifiers": applied,
                },
            }
        )


def classify(finding: Finding, tree: SyntaxTree, guards: GuardIndex | None = None) -> tuple[VulnerabilityClass, Severity]:
    cls, severity, _ = FindingClassifier().classify(finding, tree, guards)
    return cls, severity
