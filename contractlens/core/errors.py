"""Exception taxonomy for the contractlens engine.

Per-file and per-rule failures (``ParseError``, ``MatchTimeout``,
``IOAccessError``) are caught by the scan pipeline and surfaced as
diagnostics. Configuration-level failures (``RuleSyntaxError``,
``ConfigError``) abort the run.
"""

from __future__ import annotations


class ContractLensError(Exception):
    """Base class for all engine errors."""


class ConfigError(ContractLensError):
    """Bad rules directory, unreadable target path or conflicting flags."""


class ParseError(ContractLensError):
    """A source file (or pattern) could not be parsed."""

    def __init__(self, message: str, *, file: str = "", line: int | None = None) -> None:
        self.file = file
        self.line = line
        where = f"{file}:{line}" if file and line else file
        super().__init__(f"{where}: {message}" if where else message)


class RuleSyntaxError(ContractLensError):
    """A rule file is malformed; the whole rule set is rejected."""

    def __init__(self, message: str, *, path: str = "", rule_id: str = "", clause: str = "") -> None:
        self.path = path
        self.rule_id = rule_id
        self.clause = clause
        parts = [p for p in (path, rule_id, clause) if p]
        prefix = " / ".join(parts)
        super().__init__(f"{prefix}: {message}" if prefix else message)


class MatchTimeout(ContractLensError):
    """A (file, rule) pair exhausted its search budget or nested too deeply."""

    def __init__(self, rule_id: str, file: str, budget: int, *, reason: str | None = None) -> None:
        self.rule_id = rule_id
        self.file = file
        self.budget = budget
        reason = reason or f"exceeded match budget of {budget} steps"
        super().__init__(f"rule '{rule_id}' {reason} on {file}")


class IOAccessError(ContractLensError):
    """A source file could not be read."""

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"cannot read {path}: {reason}")


class ScanAborted(ContractLensError):
    """The scan was interrupted; partial results are discarded."""
