"""Shared enums and types used across the engine."""

from __future__ import annotations

import enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# ── Enums ────────────────────────────────────────────────────────────────────


class Severity(str, enum.Enum):
    """Vulnerability severity level."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFORMATIONAL = "informational"

    @property
    def rank(self) -> int:
        """Numeric rank, higher is more severe (informational = 0)."""
        return _SEVERITY_RANK[self]

    @classmethod
    def from_rank(cls, rank: int) -> "Severity":
        rank = max(0, min(rank, len(_SEVERITY_ORDER) - 1))
        return _SEVERITY_ORDER[rank]

    @classmethod
    def parse(cls, value: str) -> "Severity":
        """Parse a severity name; ``info`` is accepted as an alias."""
        text = value.strip().lower()
        if text == "info":
            text = "informational"
        return cls(text)

    def shift(self, levels: int) -> "Severity":
        return Severity.from_rank(self.rank + levels)


_SEVERITY_ORDER = [
    Severity.INFORMATIONAL,
    Severity.LOW,
    Severity.MEDIUM,
    Severity.HIGH,
    Severity.CRITICAL,
]
_SEVERITY_RANK = {sev: i for i, sev in enumerate(_SEVERITY_ORDER)}


class TriageState(str, enum.Enum):
    """Status of a finding through triage."""

    DETECTED = "detected"
    CONFIRMED = "confirmed"
    NEEDS_REVIEW = "needs-review"
    FALSE_POSITIVE = "false-positive"
    FIXED = "fixed"


_TRIAGE_TRANSITIONS: dict[TriageState, frozenset[TriageState]] = {
    TriageState.DETECTED: frozenset(
        {
            TriageState.CONFIRMED,
            TriageState.NEEDS_REVIEW,
            TriageState.FALSE_POSITIVE,
            TriageState.FIXED,
        }
    ),
    TriageState.NEEDS_REVIEW: frozenset(
        {TriageState.CONFIRMED, TriageState.FALSE_POSITIVE, TriageState.FIXED}
    ),
    TriageState.CONFIRMED: frozenset({TriageState.FIXED}),
    TriageState.FALSE_POSITIVE: frozenset(),
    TriageState.FIXED: frozenset(),
}


class DiagnosticKind(str, enum.Enum):
    """Non-fatal problems recorded during a scan."""

    PARSE_ERROR = "parse-error"
    IO_ERROR = "io-error"
    MATCH_TIMEOUT = "match-timeout"
    UNSUPPORTED_LANGUAGE = "unsupported-language"


class ChangeKind(str, enum.Enum):
    """Classification of a structural change between two versions."""

    SAFE_APPEND = "safe-append"
    REORDER = "reorder"
    RENAME = "rename"
    REMOVAL = "removal"


class VariantVerdict(str, enum.Enum):
    """Outcome of the suppression heuristic for a propagated match."""

    ORIGIN = "origin"
    CONFIRMED_VARIANT = "confirmed-variant"
    NEEDS_REVIEW = "needs-review"


# ── Shared Schemas ───────────────────────────────────────────────────────────


class Diagnostic(BaseModel):
    """A per-file or per-rule problem surfaced in the report."""

    model_config = ConfigDict(frozen=True)

    kind: DiagnosticKind
    file: str = ""
    rule_id: str = ""
    line: int | None = None
    message: str

    def sort_key(self) -> tuple:
        return (self.file, self.line or 0, self.kind.value, self.rule_id, self.message)


class Finding(BaseModel):
    """A single reported match of a pattern rule against one source location."""

    rule_id: str
    file: str
    node_index: int
    start: int
    end: int
    line_start: int
    line_end: int
    severity: Severity
    message: str = ""
    category: str = ""
    bindings: dict[str, str] = Field(default_factory=dict)
    triage: TriageState = TriageState.DETECTED
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def location_key(self) -> tuple[str, str, int, int]:
        """Identity of the finding across reports: rule plus location."""
        return (self.rule_id, self.file, self.line_start, self.line_end)

    @property
    def node_key(self) -> tuple[str, int, int, int]:
        """Identity of the matched AST node within one scan."""
        return (self.file, self.node_index, self.start, self.end)

    def sort_key(self) -> tuple:
        return (
            -self.severity.rank,
            self.file,
            self.line_start,
            self.line_end,
            self.start,
            self.rule_id,
        )

    def transition(self, state: TriageState, **metadata: Any) -> "Finding":
        """Return a copy moved to ``state``; raises ValueError on an illegal move."""
        if state == self.triage:
            return self
        if state not in _TRIAGE_TRANSITIONS[self.triage]:
            raise ValueError(
                f"Illegal triage transition {self.triage.value} -> {state.value} "
                f"for {self.rule_id} at {self.file}:{self.line_start}"
            )
        return self.model_copy(
            update={"triage": state, "metadata": {**self.metadata, **metadata}}
        )
