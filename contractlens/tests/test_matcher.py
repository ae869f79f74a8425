"""Tests for the structural matcher and RuleEngine."""

from __future__ import annotations

import pytest

from contractlens.core.errors import MatchTimeout
from contractlens.core.types import DiagnosticKind, Severity
from contractlens.rules.bindings import EMPTY
from contractlens.rules.matcher import RuleEngine, match
from contractlens.rules.models import RuleSet

ADDITION_RULE = """
    id: unsafe-addition
    severity: medium
    message: "Unchecked addition of $X and $Y can overflow"
    pattern: $X + $Y
    pattern-not: $X.checked_add($Y)
    metadata:
      category: arithmetic
"""


def _by_rule(findings, rule_id):
    return [f for f in findings if f.rule_id == rule_id]


class TestBindings:
    def test_extend_is_persistent(self):
        a = EMPTY.extend("$X", 1)
        b = a.extend("$Y", 2)
        assert a.get("$Y") is None
        assert b.as_dict() == {"$X": 1, "$Y": 2}
        assert len(EMPTY) == 0 and len(b) == 2
        assert "$X" in b and "$Z" not in b


class TestArithmeticRule:
    def test_unchecked_addition_is_reported(self, parse_rust, make_rule):
        rule = make_rule(ADDITION_RULE)
        tree = parse_rust("""
            fn settle(a: u128, b: u128) -> u128 {
                let total = a + b;
                total
            }
        """)
        findings = match(rule, tree)
        assert len(findings) == 1
        finding = findings[0]
        assert finding.line_start == 3
        assert finding.bindings == {"$X": "a", "$Y": "b"}
        assert finding.message == "Unchecked addition of a and b can overflow"
        assert finding.category == "arithmetic"
        assert finding.severity == Severity.MEDIUM
        assert tree.text(finding.node_index) == "a + b"

    def test_checked_addition_is_not_reported(self, parse_rust, make_rule):
        rule = make_rule(ADDITION_RULE)
        tree = parse_rust("""
            fn settle(a: u128, b: u128) -> u128 {
                let total = a.checked_add(&b).unwrap();
                total
            }
        """)
        assert match(rule, tree) == []

    def test_nested_additions_are_separate_findings(self, parse_rust, make_rule):
        rule = make_rule(ADDITION_RULE)
        tree = parse_rust("fn f() { let x = a + b + c; }")
        findings = match(rule, tree)
        assert len(findings) == 2
        assert len({f.node_index for f in findings}) == 2

    def test_repeated_metavariable_requires_equal_subtrees(self, parse_rust, make_rule):
        rule = make_rule("""
            id: doubled
            severity: low
            pattern: $X + $X
        """)
        tree = parse_rust("""
            fn f() {
                let a2 = a + a;
                let ab = a + b;
                let fields = self.x + self.x;
            }
        """)
        texts = [tree.text(f.node_index) for f in match(rule, tree)]
        assert texts == ["a + a", "self.x + self.x"]

    def test_literal_pattern_matches_canonical_spelling(self, parse_rust, make_rule):
        rule = make_rule("""
            id: magic-fee
            severity: low
            pattern: fee * 1_000
        """)
        tree = parse_rust("fn f() { let a = fee * 1000; let b = fee * 0x3e8; let c = fee * 999; }")
        assert len(match(rule, tree)) == 2

    def test_ground_pattern_matches_identical_nodes_only(self, parse_rust, make_rule):
        rule = make_rule("""
            id: deposit-read
            severity: informational
            pattern: env::attached_deposit()
        """)
        tree = parse_rust("""
            fn f() {
                let a = env::attached_deposit();
                let b = near_sdk::env::attached_deposit();
                let c = env::attached_deposit();
            }
        """)
        assert [f.line_start for f in match(rule, tree)] == [3, 5]


class TestClauses:
    def test_metavariable_regex(self, parse_rust, make_rule):
        rule = make_rule("""
            id: balance-addition
            severity: high
            pattern: $X + $Y
            metavariable-regex:
              metavariable: $X
              regex: ^balance
        """)
        tree = parse_rust("fn f() { let a = balance + 1; let b = total + 1; }")
        findings = match(rule, tree)
        assert [f.bindings["$X"] for f in findings] == ["balance"]

    def test_pattern_inside(self, parse_rust, make_rule):
        rule = make_rule("""
            id: loop-addition
            severity: low
            pattern: $X + $Y
            pattern-inside: "loop { ... }"
        """)
        tree = parse_rust("""
            fn f() {
                let a = x + 1;
                loop { let b = y + 1; }
            }
        """)
        assert [f.bindings["$X"] for f in match(rule, tree)] == ["y"]

    def test_pattern_not_inside(self, parse_rust, make_rule):
        rule = make_rule("""
            id: outside-loop-addition
            severity: low
            pattern: $X + $Y
            pattern-not-inside: "loop { ... }"
        """)
        tree = parse_rust("""
            fn f() {
                let a = x + 1;
                loop { let b = y + 1; }
            }
        """)
        assert [f.bindings["$X"] for f in match(rule, tree)] == ["x"]

    def test_pattern_not_excludes_candidate(self, parse_rust, make_rule):
        rule = make_rule("""
            id: call-without-check
            severity: medium
            pattern: |
              fn $F(...) { ... }
            pattern-not: "assert!(...)"
        """)
        tree = parse_rust("""
            fn checked() { assert!(ok); run(); }
            fn unchecked() { run(); }
        """)
        assert [f.bindings["$F"] for f in match(rule, tree)] == ["unchecked"]

    def test_statement_sequence_pattern(self, parse_rust, make_rule):
        rule = make_rule("""
            id: transfer-then-write
            severity: high
            pattern: |
              Promise::new($A).transfer($AMT);
              ...
              self.$FIELD -= $AMT;
        """)
        tree = parse_rust("""
            fn withdraw(&mut self, amount: u128) {
                Promise::new(self.owner.clone()).transfer(amount);
                log!("sent");
                self.total -= amount;
            }
            fn safe(&mut self, amount: u128) {
                self.total -= amount;
                Promise::new(self.owner.clone()).transfer(amount);
            }
        """)
        findings = match(rule, tree)
        assert len(findings) == 1
        assert findings[0].line_start == 3
        assert findings[0].line_end == 5
        assert findings[0].bindings["$FIELD"] == "total"


class TestBudget:
    def test_match_raises_when_budget_is_exhausted(self, parse_rust, make_rule):
        rule = make_rule(ADDITION_RULE)
        tree = parse_rust("fn f() { let x = a + b; }")
        with pytest.raises(MatchTimeout) as excinfo:
            match(rule, tree, budget=1)
        assert excinfo.value.rule_id == "unsafe-addition"

    def test_engine_records_timeout_and_continues(self, parse_rust, make_rule):
        slow = make_rule(ADDITION_RULE)
        cheap = make_rule("""
            id: danger-ident
            severity: low
            pattern: danger
        """)
        tree = parse_rust("fn f() { danger(1 + 2); }")
        findings, diagnostics = RuleEngine(RuleSet("1", (slow, cheap)), budget=1).run(tree)
        assert [f.rule_id for f in findings] == ["danger-ident"]
        assert len(diagnostics) == 1
        assert diagnostics[0].kind == DiagnosticKind.MATCH_TIMEOUT
        assert diagnostics[0].rule_id == "unsafe-addition"

    def test_budget_comes_from_settings(self, monkeypatch, parse_rust, make_rule):
        monkeypatch.setenv("CONTRACTLENS_MATCH_BUDGET", "1")
        rule = make_rule(ADDITION_RULE)
        with pytest.raises(MatchTimeout):
            match(rule, parse_rust("fn f() { let x = a + b; }"))


def _long_sum(count: int) -> str:
    return " + ".join(f"a{i}" for i in range(count))


class TestDeepTrees:
    def test_every_link_of_a_long_chain_is_reported(self, parse_rust, make_rule):
        tree = parse_rust(f"fn f() -> u128 {{ {_long_sum(720)} }}")
        findings = match(make_rule(ADDITION_RULE), tree)
        assert len(findings) == 719
        assert findings[0].bindings["$Y"] == "a719"

    def test_pattern_nested_past_the_stack_is_a_timeout(self, parse_rust, make_rule):
        chain = " + ".join(f"$A{i}" for i in range(600))
        rule = make_rule(f'id: long-sum\nseverity: low\npattern: "{chain}"\n')
        cheap = make_rule("""
            id: danger-ident
            severity: low
            pattern: danger
        """)
        tree = parse_rust(f"fn f() -> u128 {{ danger(); {_long_sum(720)} }}")
        findings, diagnostics = RuleEngine(RuleSet("1", (rule, cheap))).run(tree)
        assert [f.rule_id for f in findings] == ["danger-ident"]
        assert [(d.kind, d.rule_id) for d in diagnostics] == [(DiagnosticKind.MATCH_TIMEOUT, "long-sum")]
        assert "nests deeper than" in diagnostics[0].message


class TestBundledRules:
    def test_payable_without_deposit_check(self, parse_rust, bundled_ruleset):
        tree = parse_rust("""
            #[near_bindgen]
            impl Vault {
                #[payable]
                pub fn deposit(&mut self) {
                    self.total += 1;
                }
            }
        """)
        findings, diagnostics = RuleEngine(bundled_ruleset).run(tree)
        payable = _by_rule(findings, "payable-no-check")
        assert len(payable) == 1
        assert payable[0].bindings["$F"] == "deposit"
        assert payable[0].severity == Severity.HIGH
        assert diagnostics == []

    def test_payable_with_deposit_check(self, parse_rust, bundled_ruleset):
        tree = parse_rust("""
            #[near_bindgen]
            impl Vault {
                #[payable]
                pub fn deposit(&mut self) {
                    let amount = env::attached_deposit();
                    require!(amount > 0, "attach a deposit");
                }
            }
        """)
        findings, _ = RuleEngine(bundled_ruleset).run(tree)
        assert _by_rule(findings, "payable-no-check") == []

    def test_payable_with_long_nested_body(self, parse_rust, bundled_ruleset):
        statements = "\n".join(f"        self.total = self.total.wrapping_sub({i});" for i in range(200))
        tree = parse_rust(
            "impl Vault {\n    #[payable]\n    pub fn deposit(&mut self) {\n"
            f"{statements}\n"
            "        if self.open {\n"
            "            while self.busy {\n"
            "                for k in 0..3 { self.log(k); }\n"
            "            }\n"
            "        }\n"
            "    }\n}\n"
        )
        findings, diagnostics = RuleEngine(bundled_ruleset).run(tree)
        assert [(f.rule_id, f.bindings["$F"]) for f in findings] == [("payable-no-check", "deposit")]
        assert diagnostics == []

    def test_callback_without_result_handling(self, parse_rust, bundled_ruleset):
        tree = parse_rust("""
            impl Vault {
                #[private]
                pub fn on_transfer(&mut self) {
                    let outcome = env::promise_result(0);
                    self.pending = false;
                }
            }
        """)
        findings, _ = RuleEngine(bundled_ruleset).run(tree)
        assert [(f.rule_id, f.bindings["$F"]) for f in findings] == [
            ("callback-no-error-handling", "on_transfer")
        ]
        assert findings[0].message.startswith("Callback on_transfer reads env::promise_result()")

    def test_callback_branching_on_ok_is_handled(self, parse_rust, bundled_ruleset):
        tree = parse_rust("""
            impl Vault {
                #[private]
                pub fn on_balance(&mut self, #[callback_result] r: Result<u128, PromiseError>) {
                    if let Ok(v) = r {
                        self.cached = v;
                    } else {
                        self.pending = false;
                    }
                }
            }
        """)
        findings, _ = RuleEngine(bundled_ruleset).run(tree)
        assert findings == []

    def test_private_method_without_promise_is_not_a_callback(self, parse_rust, bundled_ruleset):
        tree = parse_rust("""
            impl Vault {
                #[private]
                pub fn set_owner(&mut self, owner: AccountId) {
                    self.owner = owner;
                }
            }
        """)
        findings, _ = RuleEngine(bundled_ruleset).run(tree)
        assert findings == []

    @pytest.mark.parametrize("attribute,param_type", [
        ("callback_result", "Result<u128, PromiseError>"),
        ("callback_unwrap", "u128"),
    ])
    def test_unchecked_callback_argument(self, parse_rust, bundled_ruleset, attribute, param_type):
        tree = parse_rust(f"""
            impl Vault {{
                #[private]
                pub fn on_balance(&mut self, #[{attribute}] balance: {param_type}) {{
                    self.cached = balance.unwrap();
                }}
            }}
        """)
        findings, _ = RuleEngine(bundled_ruleset).run(tree)
        assert [(f.rule_id, f.bindings["$F"]) for f in findings] == [
            ("callback-result-unchecked", "on_balance")
        ]
        assert findings[0].bindings["$PARAM"].startswith(f"#[{attribute}]")

    def test_clean_contract_has_no_findings(self, parse_rust, bundled_ruleset, vault_v1):
        findings, diagnostics = RuleEngine(bundled_ruleset).run(parse_rust(vault_v1))
        assert findings == []
        assert diagnostics == []

    def test_findings_are_deterministic(self, parse_rust, bundled_ruleset):
        text = """
            impl Vault {
                #[payable]
                pub fn deposit(&mut self, amount: u128) {
                    self.total = self.total + amount * 2;
                }
            }
        """
        engine = RuleEngine(bundled_ruleset)
        first, _ = engine.run(parse_rust(text))
        second, _ = engine.run(parse_rust(text))
        assert [f.model_dump() for f in first] == [f.model_dump() for f in second]
        assert {f.rule_id for f in first} == {"unsafe-addition", "unsafe-multiplication", "payable-no-check"}
