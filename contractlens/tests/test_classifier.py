"""Tests for guard detection and severity classification."""

from __future__ import annotations

import pytest

from contractlens.classifier import FindingClassifier, GuardDetector, classify, lookup_class
from contractlens.classifier.classifier import in_payable_function, is_test_code
from contractlens.core.errors import ConfigError
from contractlens.core.types import Severity
from contractlens.rules.matcher import match

ADDITION_RULE = """
    id: unsafe-addition
    severity: medium
    pattern: $X + $Y
    metadata:
      category: arithmetic
"""


@pytest.fixture
def addition(make_rule):
    return make_rule(ADDITION_RULE)


def _only(rule, tree):
    findings = match(rule, tree)
    assert len(findings) == 1
    return findings[0]


class TestGuardDetector:
    def test_owner_assertion_is_an_access_control_guard(self, parse_rust, vault_v1):
        tree = parse_rust(vault_v1)
        index = GuardDetector().index(tree)
        assert len(index.sites) == 1
        site = index.sites[0]
        assert site.access_control
        assert tree.nodes[site.scope].kind == "block"
        withdraw = tree.enclosing(site.node, "function")
        assert tree.child(withdraw.index, 2).value == "withdraw"

    def test_guard_scope_is_the_enclosing_block(self, parse_rust):
        tree = parse_rust("""
            impl Vault {
                pub fn guarded(&mut self) {
                    self.assert_owner();
                    self.total = 0;
                }
                pub fn open(&mut self) {
                    self.total = 1;
                }
            }
        """)
        index = GuardDetector().index(tree)
        assigns = list(tree.walk("assign"))
        assert index.is_guarded(assigns[0].index)
        assert not index.is_guarded(assigns[1].index)
        assert index.guards_of(assigns[0].index)[0].text == "$S.assert_owner(...)"

    def test_custom_patterns(self, parse_rust):
        tree = parse_rust("fn f() { only_admin(); let x = a + b; }")
        index = GuardDetector(["only_admin()"]).index(tree)
        assert len(index.sites) == 1
        assert not index.sites[0].access_control

    def test_invalid_pattern_is_a_config_error(self):
        with pytest.raises(ConfigError):
            GuardDetector(["let = ;"])


class TestContext:
    def test_test_code_by_path(self, parse_rust):
        tree = parse_rust("fn f() { g(); }", path="contracts/tests/vault.rs")
        assert is_test_code(tree, 0)

    def test_test_code_by_attribute(self, parse_rust):
        tree = parse_rust("""
            #[cfg(test)]
            mod tests {
                #[test]
                fn adds() { let x = a + b; }
            }
            fn prod() { let y = c + d; }
        """)
        binaries = list(tree.walk("binary"))
        assert is_test_code(tree, binaries[0].index)
        assert not is_test_code(tree, binaries[1].index)

    def test_payable_context(self, parse_rust):
        tree = parse_rust("""
            #[payable]
            pub fn deposit(&mut self) { let x = a + b; }
            pub fn view(&self) { let y = c + d; }
        """)
        binaries = list(tree.walk("binary"))
        assert in_payable_function(tree, binaries[0].index)
        assert not in_payable_function(tree, binaries[1].index)


class TestFindingClassifier:
    def test_plain_finding_gets_class_base_severity(self, parse_rust, addition):
        tree = parse_rust("fn f() { let x = a + b; }")
        cls, severity = classify(_only(addition, tree), tree)
        assert cls.name == "arithmetic"
        assert severity == Severity.MEDIUM

    def test_guard_lowers_severity(self, parse_rust, addition):
        tree = parse_rust("fn f(&mut self) { self.assert_owner(); let x = a + b; }")
        cls, severity, applied = FindingClassifier().classify(_only(addition, tree), tree)
        assert severity == Severity.LOW
        assert applied == ["inside-guard"]

    def test_test_code_drops_to_floor(self, parse_rust, addition):
        tree = parse_rust("#[test]\nfn adds() { let x = a + b; }")
        _, severity = classify(_only(addition, tree), tree)
        assert severity == lookup_class("arithmetic").floor

    def test_payable_raises_severity(self, parse_rust, addition):
        tree = parse_rust("#[payable]\npub fn deposit(&mut self) { let x = a + b; }")
        _, severity, applied = FindingClassifier().classify(_only(addition, tree), tree)
        assert severity == Severity.HIGH
        assert applied == ["payable-context"]

    def test_modifiers_compose_in_order(self, parse_rust, addition):
        tree = parse_rust("#[payable]\npub fn deposit(&mut self) { self.assert_owner(); let x = a + b; }")
        _, severity, applied = FindingClassifier().classify(_only(addition, tree), tree)
        assert applied == ["inside-guard", "payable-context"]
        assert severity == Severity.MEDIUM

    def test_critical_rule_starts_from_class_base(self, parse_rust, make_rule):
        rule = make_rule("""
            id: overflow-critical
            severity: critical
            pattern: $X + $Y
            metadata:
              category: arithmetic
        """)
        tree = parse_rust("#[payable]\npub fn deposit(&mut self) { let x = a + b; }")
        _, severity = classify(_only(rule, tree), tree)
        assert severity == Severity.HIGH

    def test_class_base_wins_over_declared_severity(self, parse_rust, make_rule):
        rule = make_rule("""
            id: overflow-low
            severity: low
            pattern: $X + $Y
            metadata:
              category: arithmetic
        """)
        tree = parse_rust("fn f() { let x = a + b; }")
        finding = FindingClassifier().apply(_only(rule, tree), tree)
        assert lookup_class("arithmetic").base_severity == Severity.MEDIUM
        assert finding.severity == Severity.MEDIUM
        assert finding.metadata["rule_severity"] == "low"

    def test_unknown_category_is_unbounded(self, parse_rust, make_rule):
        rule = make_rule("""
            id: custom
            severity: critical
            pattern: $X + $Y
        """)
        tree = parse_rust("fn f() { let x = a + b; }")
        cls, severity = classify(_only(rule, tree), tree)
        assert cls.name == "custom"
        assert severity == Severity.CRITICAL
        assert cls.base_severity == Severity.CRITICAL

    def test_apply_records_metadata(self, parse_rust, addition):
        tree = parse_rust("#[payable]\npub fn deposit(&mut self) { let x = a + b; }")
        finding = FindingClassifier().apply(_only(addition, tree), tree)
        assert finding.severity == Severity.HIGH
        assert finding.category == "arithmetic"
        assert finding.metadata == {"rule_severity": "medium", "modifiers": ["payable-context"]}

    def test_classification_is_deterministic(self, parse_rust, addition):
        tree = parse_rust("fn f(&mut self) { self.assert_owner(); let x = a + b; }")
        finding = _only(addition, tree)
        classifier = FindingClassifier()
        results = {classifier.classify(finding, tree)[1] for _ in range(5)}
        assert results == {Severity.LOW}
