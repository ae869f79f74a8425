"""Baseline reconciliation between a previous report and the current scan.

Findings are matched on (rule id, file, line span):
  - New findings (present now but not in the baseline)
  - Persistent findings (present in both; triage decisions carry forward)
  - Resolved findings (present in the baseline only; moved to ``fixed``)

Findings are never dropped: a resolved finding keeps its history and points
at the baseline report after which it disappeared.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable

from pydantic import BaseModel, Field

from contractlens.core.errors import ConfigError
from contractlens.core.types import Finding, TriageState
from contractlens.reports.generator import Report

logger = logging.getLogger(__name__)

# Triage decisions a reviewer made on the baseline that survive a rescan.
_CARRIED = (TriageState.CONFIRMED, TriageState.NEEDS_REVIEW, TriageState.FALSE_POSITIVE)


class BaselineDiff(BaseModel):
    new: list[Finding] = Field(default_factory=list)
    persistent: list[Finding] = Field(default_factory=list)
    resolved: list[Finding] = Field(default_factory=list)

    @property
    def summary(self) -> dict[str, int]:
        return {
            "new": len(self.new),
            "persistent": len(self.persistent),
            "resolved": len(self.resolved),
        }

    def current(self) -> list[Finding]:
        """Findings of the current scan with carried-forward triage."""
        return sorted(self.new + self.persistent, key=lambda f: f.sort_key())


def load_baseline(path: str | Path) -> Report:
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"cannot read baseline report {path}: {e}") from e
    try:
        return Report.from_json(text)
    except ValueError as e:
        raise ConfigError(f"baseline {path} is not a contractlens JSON report: {e}") from e


def reconcile(
    previous: Iterable[Finding],
    current: Iterable[Finding],
    *,
    baseline_fingerprint: str = "",
) -> BaselineDiff:
    """Compare baseline findings with the current scan."""
    baseline: dict[tuple, Finding] = {}
    for f in previous:
        baseline.setdefault(f.location_key, f)
    current = list(current)
    target = {f.location_key for f in current}

    result = BaselineDiff()
    for finding in current:
        before = baseline.get(finding.location_key)
        if before is None:
            result.new.append(finding)
            continue
        if finding.triage == TriageState.DETECTED and before.triage in _CARRIED:
            finding = finding.transition(before.triage, baseline_triage=before.triage.value)
        result.persistent.append(finding)

    for key, finding in baseline.items():
        if key in target:
            continue
        if finding.triage in (TriageState.FIXED, TriageState.FALSE_POSITIVE):
            result.resolved.append(finding)
            continue
        result.resolved.append(finding.transition(TriageState.FIXED, resolved_after=baseline_fingerprint))

    result.new.sort(key=lambda f: f.sort_key())
    result.persistent.sort(key=lambda f: f.sort_key())
    result.resolved.sort(key=lambda f: f.sort_key())
    logger.info(
        "Baseline: %d new, %d persistent, %d resolved",
        len(result.new), len(result.persistent), len(result.resolved),
    )
    return result
