"""Rule loading: discovery, YAML parsing, validation and pattern compilation.

A rules directory holds any number of ``*.yaml`` / ``*.yml`` files, each a
rule set:

    version: "2"
    rules:
      - id: unsafe-addition
        severity: medium
        pattern: $X + $Y
        pattern-not: $X.checked_add($Y)

Any malformed file rejects the whole rule set: a partially loaded rule set
cannot be trusted to gate CI.

Usage:
    ruleset = RuleLoader("rules/").load()
    for rule in ruleset:
        ...
"""

from __future__ import annotations

import hashlib
import logging
import re
from importlib import resources
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from contractlens.core.errors import ConfigError, ParseError, RuleSyntaxError
from contractlens.loader.adapters import supported_languages
from contractlens.rules.models import (
    CLAUSE_KEYS,
    Clause,
    ClauseKind,
    MetavariableRegexSpec,
    PatternRule,
    RuleFileSpec,
    RuleSet,
    RuleSpec,
)
from contractlens.rules.pattern import Pattern

logger = logging.getLogger(__name__)

RULE_SUFFIXES = (".yaml", ".yml")


class RuleLoader:
    """Discovers and compiles every rule file under a directory."""

    def __init__(self, rules_dir: str | Path) -> None:
        self._rules_dir = Path(rules_dir)

    def discover(self) -> list[Path]:
        """Rule files under the directory, in sorted order."""
        if not self._rules_dir.exists():
            raise ConfigError(f"rules directory {self._rules_dir} does not exist")
        if not self._rules_dir.is_dir():
            raise ConfigError(f"rules path {self._rules_dir} is not a directory")
        try:
            files = sorted(
                p for p in self._rules_dir.rglob("*")
                if p.suffix.lower() in RULE_SUFFIXES and p.is_file()
            )
        except OSError as e:
            raise ConfigError(f"cannot read rules directory {self._rules_dir}: {e}") from e
        return files

    def load(self) -> RuleSet:
        files = self.discover()
        if not files:
            raise ConfigError(f"no rule files (*.yaml, *.yml) found in {self._rules_dir}")

        hasher = hashlib.sha256()
        versions: set[str] = set()
        rules: list[PatternRule] = []
        seen: dict[str, str] = {}

        for path in files:
            display = path.relative_to(self._rules_dir).as_posix()
            text = _read(path)
            hasher.update(display.encode())
            hasher.update(text.encode())
            version, file_rules = parse_rule_document(_load_yaml(text, display), path=display)
            versions.add(version)
            for rule in file_rules:
                if rule.id in seen:
                    raise RuleSyntaxError(
                        f"duplicate rule id (first defined in {seen[rule.id]})",
                        path=display, rule_id=rule.id, clause="id",
                    )
                seen[rule.id] = display
                rules.append(rule)
            logger.debug("Loaded %d rule(s) from %s", len(file_rules), display)

        version = next(iter(versions)) if len(versions) == 1 else "+".join(sorted(versions))
        logger.info("Loaded %d rules from %d file(s), version %s", len(rules), len(files), version)
        return RuleSet(version=version, rules=tuple(rules), checksum=hasher.hexdigest())


def load_rules(rules_dir: str | Path) -> RuleSet:
    return RuleLoader(rules_dir).load()


def bundled_rules_dir() -> Path:
    """Directory of the rule sets shipped with the package."""
    return Path(str(resources.files("contractlens") / "rulesets"))


def _read(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigError(f"cannot read rule file {path}: {e}") from e


def _load_yaml(text: str, display: str) -> Any:
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise RuleSyntaxError(f"invalid YAML: {e}", path=display) from e


def _describe(exc: ValidationError) -> tuple[str, str]:
    """(message, clause) for the first validation error."""
    error = exc.errors()[0]
    clause = ".".join(str(part) for part in error.get("loc", ()))
    return error.get("msg", "invalid value"), clause


def parse_rule_document(data: Any, *, path: str = "") -> tuple[str, list[PatternRule]]:
    """Validate one loaded YAML document and compile its rules."""
    if not isinstance(data, dict):
        raise RuleSyntaxError("rule file must be a mapping with a 'rules' list", path=path)
    try:
        spec = RuleFileSpec.model_validate(data)
    except ValidationError as e:
        message, clause = _describe(e)
        raise RuleSyntaxError(message, path=path, clause=clause) from e
    return spec.version, [compile_rule(entry, path=path) for entry in spec.rules]


def compile_rule(entry: Any, *, path: str = "") -> PatternRule:
    if not isinstance(entry, dict):
        raise RuleSyntaxError("rule entry must be a mapping", path=path)
    rule_id = str(entry.get("id", ""))
    try:
        spec = RuleSpec.model_validate(entry)
    except ValidationError as e:
        message, clause = _describe(e)
        raise RuleSyntaxError(message, path=path, rule_id=rule_id, clause=clause) from e

    if spec.language not in supported_languages():
        raise RuleSyntaxError(
            f"unsupported language '{spec.language}'",
            path=path, rule_id=spec.id, clause="language",
        )

    clauses = [_compile_clause(key, value, spec, path) for key, value in spec.clause_entries()]

    positives = [c for c in clauses if c.kind == ClauseKind.PATTERN]
    if not positives:
        raise RuleSyntaxError(
            "rule needs at least one 'pattern' clause",
            path=path, rule_id=spec.id, clause="pattern",
        )
    if not positives[0].pattern.trimmed_roots():
        raise RuleSyntaxError(
            "primary pattern matches nothing but '...'",
            path=path, rule_id=spec.id, clause="pattern",
        )

    bound: set[str] = set()
    for clause in clauses:
        if clause.kind in (ClauseKind.PATTERN, ClauseKind.PATTERN_INSIDE):
            bound |= clause.pattern.metavariables()
    for clause in clauses:
        if clause.kind == ClauseKind.METAVARIABLE_REGEX and clause.metavariable not in bound:
            raise RuleSyntaxError(
                f"metavariable {clause.metavariable} is not bound by any positive pattern",
                path=path, rule_id=spec.id, clause="metavariable-regex",
            )

    return PatternRule(
        id=spec.id,
        language=spec.language,
        severity=spec.severity,
        clauses=tuple(clauses),
        message=spec.message,
        remediation=spec.remediation,
        metadata=dict(spec.metadata),
        path=path,
    )


def _compile_clause(key: str, value: Any, spec: RuleSpec, path: str) -> Clause:
    if key not in CLAUSE_KEYS:
        raise RuleSyntaxError(f"unknown clause '{key}'", path=path, rule_id=spec.id, clause=key)
    kind = ClauseKind(key)

    if kind == ClauseKind.METAVARIABLE_REGEX:
        try:
            regex_spec = MetavariableRegexSpec.model_validate(value)
        except ValidationError as e:
            message, _ = _describe(e)
            raise RuleSyntaxError(message, path=path, rule_id=spec.id, clause=key) from e
        name = regex_spec.metavariable
        if not name.startswith("$"):
            name = f"${name}"
        try:
            compiled = re.compile(regex_spec.regex)
        except re.error as e:
            raise RuleSyntaxError(
                f"invalid regex: {e}", path=path, rule_id=spec.id, clause=key,
            ) from e
        return Clause(kind, regex_spec.regex, metavariable=name, regex=compiled)

    if not isinstance(value, str) or not value.strip():
        raise RuleSyntaxError(
            "clause must be a non-empty pattern string", path=path, rule_id=spec.id, clause=key,
        )
    try:
        pattern = Pattern.compile(value, spec.language)
    except ParseError as e:
        raise RuleSyntaxError(
            f"cannot parse pattern: {e}", path=path, rule_id=spec.id, clause=key,
        ) from e
    return Clause(kind, value, pattern=pattern)
