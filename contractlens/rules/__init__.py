"""Pattern rule engine: rule loading, compiled patterns and the structural matcher."""

from contractlens.rules.bindings import EMPTY, Bindings
from contractlens.rules.loader import RuleLoader, bundled_rules_dir, load_rules
from contractlens.rules.matcher import RuleEngine, TreeMatcher, match
from contractlens.rules.models import Clause, ClauseKind, PatternRule, RuleSet
from contractlens.rules.pattern import Pattern

__all__ = [
    "EMPTY",
    "Bindings",
    "Clause",
    "ClauseKind",
    "Pattern",
    "PatternRule",
    "RuleEngine",
    "RuleLoader",
    "RuleSet",
    "TreeMatcher",
    "bundled_rules_dir",
    "load_rules",
    "match",
]
