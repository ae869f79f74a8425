"""Shared fixtures for the contractlens test suite."""

from __future__ import annotations

import textwrap
from pathlib import Path
from typing import Callable

import pytest
import yaml

from contractlens.core.config import get_settings
from contractlens.core.types import Finding, Severity
from contractlens.loader.adapters import parse
from contractlens.loader.ast import SyntaxTree
from contractlens.rules.loader import bundled_rules_dir, compile_rule, load_rules
from contractlens.rules.models import PatternRule, RuleSet


# ── Settings isolation ───────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def _fresh_settings(monkeypatch):
    """Each test sees settings built from its own environment."""
    for var in ("CONTRACTLENS_MATCH_BUDGET", "CONTRACTLENS_AUTO_CONFIRM_VARIANTS", "CONTRACTLENS_MAX_WORKERS"):
        monkeypatch.delenv(var, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


# ── Parsing helpers ──────────────────────────────────────────────────────────


@pytest.fixture
def parse_rust() -> Callable[..., SyntaxTree]:
    def _parse(text: str, path: str = "lib.rs") -> SyntaxTree:
        return parse(textwrap.dedent(text), "rust", path)

    return _parse


@pytest.fixture
def make_rule() -> Callable[[str], PatternRule]:
    """Compile one rule from a YAML mapping."""

    def _make(text: str) -> PatternRule:
        return compile_rule(yaml.safe_load(textwrap.dedent(text)), path="test.yaml")

    return _make


@pytest.fixture
def bundled_ruleset() -> RuleSet:
    return load_rules(bundled_rules_dir())


@pytest.fixture
def write_tree(tmp_path: Path) -> Callable[[dict[str, str], str], Path]:
    """Write {relative path: content} under tmp_path/<name> and return the root."""

    def _write(files: dict[str, str], name: str = "src") -> Path:
        root = tmp_path / name
        for rel, content in files.items():
            target = root / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(textwrap.dedent(content), encoding="utf-8")
        root.mkdir(parents=True, exist_ok=True)
        return root

    return _write


@pytest.fixture
def rules_dir(tmp_path: Path) -> Callable[[str], Path]:
    def _rules(text: str) -> Path:
        directory = tmp_path / "rules"
        directory.mkdir(exist_ok=True)
        (directory / "rules.yaml").write_text(textwrap.dedent(text), encoding="utf-8")
        return directory

    return _rules


@pytest.fixture
def sample_finding() -> Finding:
    return Finding(
        rule_id="unsafe-addition",
        file="src/lib.rs",
        node_index=12,
        start=100,
        end=105,
        line_start=7,
        line_end=7,
        severity=Severity.MEDIUM,
        message="Unchecked addition of a and b can overflow",
        category="arithmetic",
        bindings={"$X": "a", "$Y": "b"},
    )


# ── Contract sources ─────────────────────────────────────────────────────────

VAULT_V1 = """
use near_sdk::collections::LookupMap;
use near_sdk::{env, near_bindgen, AccountId, Promise};

#[near_bindgen]
pub struct Vault {
    owner: AccountId,
    balances: LookupMap<AccountId, u128>,
    total: u128,
}

#[near_bindgen]
impl Vault {
    #[init]
    pub fn new(owner: AccountId) -> Self {
        Self {
            owner,
            balances: LookupMap::new(b"b"),
            total: 0,
        }
    }

    pub fn withdraw(&mut self, amount: u128) {
        assert_eq!(env::predecessor_account_id(), self.owner, "owner only");
        self.total -= amount;
        Promise::new(self.owner.clone()).transfer(amount);
    }

    #[private]
    pub fn on_refund(&mut self) {
        match env::promise_result(0) {
            PromiseResult::Successful(_) => {}
            PromiseResult::Failed => self.total += 1,
        }
    }
}
"""


@pytest.fixture
def vault_v1() -> str:
    return VAULT_V1
