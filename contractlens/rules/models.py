"""Rule schemas (as written in YAML) and their compiled forms."""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field
from typing import Any, Iterator

from pydantic import BaseModel, ConfigDict, Field, field_validator

from contractlens.core.types import Severity
from contractlens.rules.pattern import Pattern


class ClauseKind(str, enum.Enum):
    PATTERN = "pattern"
    PATTERN_NOT = "pattern-not"
    PATTERN_INSIDE = "pattern-inside"
    PATTERN_NOT_INSIDE = "pattern-not-inside"
    METAVARIABLE_REGEX = "metavariable-regex"


CLAUSE_KEYS = tuple(kind.value for kind in ClauseKind)


# ── YAML schemas ─────────────────────────────────────────────────────────────


class MetavariableRegexSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    metavariable: str
    regex: str


class RuleSpec(BaseModel):
    """One entry of a rule file's ``rules:`` list."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    id: str = Field(min_length=1)
    language: str = "rust"
    severity: Severity
    message: str = ""
    remediation: str = ""
    pattern: str | None = None
    pattern_not: str | None = Field(default=None, alias="pattern-not")
    pattern_inside: str | None = Field(default=None, alias="pattern-inside")
    pattern_not_inside: str | None = Field(default=None, alias="pattern-not-inside")
    metavariable_regex: MetavariableRegexSpec | None = Field(default=None, alias="metavariable-regex")
    patterns: list[dict[str, Any]] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("severity", mode="before")
    @classmethod
    def _parse_severity(cls, value: Any) -> Any:
        if isinstance(value, str):
            return Severity.parse(value)
        return value

    @field_validator("language")
    @classmethod
    def _lower_language(cls, value: str) -> str:
        return value.strip().lower()

    def clause_entries(self) -> list[tuple[str, Any]]:
        """Clauses in declaration order: top-level keys first, then ``patterns:``."""
        entries: list[tuple[str, Any]] = []
        top_level = {
            "pattern": self.pattern,
            "pattern-not": self.pattern_not,
            "pattern-inside": self.pattern_inside,
            "pattern-not-inside": self.pattern_not_inside,
            "metavariable-regex": (
                self.metavariable_regex.model_dump() if self.metavariable_regex else None
            ),
        }
        for key in CLAUSE_KEYS:
            if top_level[key] is not None:
                entries.append((key, top_level[key]))
        for entry in self.patterns:
            entries.extend(entry.items())
        return entries


class RuleFileSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    version: str = "1"
    rules: list[dict[str, Any]] = Field(default_factory=list)

    @field_validator("version", mode="before")
    @classmethod
    def _stringify_version(cls, value: Any) -> Any:
        if isinstance(value, (int, float)):
            return str(value)
        return value


# ── Compiled rules ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Clause:
    kind: ClauseKind
    source: str
    pattern: Pattern | None = None
    metavariable: str = ""
    regex: re.Pattern[str] | None = None


@dataclass(frozen=True, eq=False)
class PatternRule:
    """A compiled, read-only rule."""

    id: str
    language: str
    severity: Severity
    clauses: tuple[Clause, ...]
    message: str = ""
    remediation: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    path: str = ""

    @property
    def category(self) -> str:
        return str(self.metadata.get("category") or self.id)

    @property
    def primary_clause(self) -> Clause:
        """The first ``pattern`` clause; match candidates come from it."""
        for clause in self.clauses:
            if clause.kind == ClauseKind.PATTERN and clause.pattern is not None:
                return clause
        raise ValueError(f"rule '{self.id}' has no positive pattern")

    @property
    def primary(self) -> Pattern:
        return self.primary_clause.pattern

    @property
    def extra_positives(self) -> list[Clause]:
        """``pattern`` and ``pattern-inside`` clauses besides the primary one."""
        primary = self.primary_clause
        return [
            c for c in self.clauses
            if c is not primary and c.kind in (ClauseKind.PATTERN, ClauseKind.PATTERN_INSIDE)
        ]

    def clauses_of(self, kind: ClauseKind) -> list[Clause]:
        return [c for c in self.clauses if c.kind == kind]

    @classmethod
    def from_pattern(
        cls,
        rule_id: str,
        pattern: Pattern,
        *,
        language: str,
        severity: Severity,
        message: str = "",
        metadata: dict[str, Any] | None = None,
    ) -> "PatternRule":
        """Single-clause rule around an already-compiled pattern."""
        clause = Clause(ClauseKind.PATTERN, pattern.render(), pattern=pattern)
        return cls(
            id=rule_id,
            language=language,
            severity=severity,
            clauses=(clause,),
            message=message,
            metadata=dict(metadata or {}),
        )


@dataclass(frozen=True)
class RuleSet:
    """All loaded rules plus one version tag for the whole set."""

    version: str
    rules: tuple[PatternRule, ...]
    checksum: str = ""

    def __iter__(self) -> Iterator[PatternRule]:
        return iter(self.rules)

    def __len__(self) -> int:
        return len(self.rules)

    def get(self, rule_id: str) -> PatternRule | None:
        return next((r for r in self.rules if r.id == rule_id), None)

    def for_language(self, language: str) -> list[PatternRule]:
        return [r for r in self.rules if r.language == language]
