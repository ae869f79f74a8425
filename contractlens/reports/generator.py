"""Report generation: canonical JSON, Jinja2 text and SARIF.

Everything in a report is sorted (severity descending, then file, then line
span) and no wall-clock data is included, so scanning unchanged sources with
an unchanged rule set yields byte-identical output.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any, Iterable

from jinja2 import Environment, FileSystemLoader
from pydantic import BaseModel, Field

from contractlens import __version__
from contractlens.core.types import Diagnostic, Finding, Severity, TriageState, VariantVerdict
from contractlens.diff.analyzer import DiffChangeSet
from contractlens.variants.propagator import VariantSet

TEMPLATE_DIR = Path(__file__).parent / "templates"

FORMATS = ("json", "text", "sarif")

_INACTIVE = (TriageState.FALSE_POSITIVE, TriageState.FIXED)


class ReportSummary(BaseModel):
    total_findings: int = 0
    by_severity: dict[str, int] = Field(default_factory=dict)
    variant_sets: int = 0
    variant_members: int = 0
    diff_changes: int = 0
    diagnostics: int = 0
    highest_severity: Severity | None = None


class Report(BaseModel):
    """Aggregated, deterministically ordered scan output."""

    findings: list[Finding] = Field(default_factory=list)
    variant_sets: list[VariantSet] = Field(default_factory=list)
    diff_changes: list[DiffChangeSet] = Field(default_factory=list)
    diagnostics: list[Diagnostic] = Field(default_factory=list)
    summary: ReportSummary = Field(default_factory=ReportSummary)
    ruleset_version: str = ""
    files_scanned: int = 0
    fingerprint: str = ""

    # ── Thresholds ───────────────────────────────────────────────────────

    def blocking(self, threshold: Severity) -> list[str]:
        """Descriptions of active results at or above ``threshold``."""
        hits: list[str] = []
        for f in self.findings:
            if f.triage not in _INACTIVE and f.severity.rank >= threshold.rank:
                hits.append(f"{f.rule_id} {f.file}:{f.line_start}")
        for vs in self.variant_sets:
            for member in vs.members:
                f = member.finding
                if member.verdict == VariantVerdict.ORIGIN or f.triage != TriageState.CONFIRMED:
                    continue
                if f.severity.rank >= threshold.rank:
                    hits.append(f"{f.rule_id} {f.file}:{f.line_start}")
        for change in self.diff_changes:
            if change.severity.rank >= threshold.rank:
                hits.append(f"{change.kind.value} {change.entity}")
        return hits

    # ── Serialization ────────────────────────────────────────────────────

    def body(self) -> dict[str, Any]:
        """Report content without the fingerprint.

        Every key is always present so the layout does not depend on which
        stages ran: ``diffChanges`` is an empty list when no diff was requested.
        """
        return {
            "findings": [_finding_record(f) for f in self.findings],
            "variantSets": [vs.model_dump(mode="json") for vs in self.variant_sets],
            "diffChanges": [c.model_dump(mode="json") for c in self.diff_changes],
            "diagnostics": [d.model_dump(mode="json") for d in self.diagnostics],
            "summary": self.summary.model_dump(mode="json"),
            "rulesetVersion": self.ruleset_version,
            "filesScanned": self.files_scanned,
        }

    def to_dict(self) -> dict[str, Any]:
        return {**self.body(), "fingerprint": self.fingerprint}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, sort_keys=True, ensure_ascii=False) + "\n"

    def to_text(self, *, color: bool = False) -> str:
        return ReportRenderer(color=color).render(self)

    def to_sarif(self) -> str:
        return generate_sarif(self)

    def render(self, fmt: str = "json", **kwargs: Any) -> str:
        if fmt == "json":
            return self.to_json()
        if fmt == "text":
            return self.to_text(**kwargs)
        if fmt == "sarif":
            return self.to_sarif()
        raise ValueError(f"unknown report format {fmt!r}; expected one of {', '.join(FORMATS)}")

    @classmethod
    def from_json(cls, text: str) -> "Report":
        """Load a previously written JSON report (used for baselines)."""
        data = json.loads(text)
        return cls(
            findings=[Finding.model_validate(f) for f in data.get("findings", [])],
            variant_sets=[VariantSet.model_validate(v) for v in data.get("variantSets", [])],
            diff_changes=[DiffChangeSet.model_validate(c) for c in data.get("diffChanges", [])],
            diagnostics=[Diagnostic.model_validate(d) for d in data.get("diagnostics", [])],
            summary=ReportSummary.model_validate(data.get("summary", {})),
            ruleset_version=data.get("rulesetVersion", ""),
            files_scanned=data.get("filesScanned", 0),
            fingerprint=data.get("fingerprint", ""),
        )


def _finding_record(f: Finding) -> dict[str, Any]:
    return f.model_dump(mode="json")


def _canonical_digest(body: dict[str, Any]) -> str:
    content = json.dumps(body, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def _summarize(
    findings: list[Finding],
    variant_sets: list[VariantSet],
    diff_changes: list[DiffChangeSet],
    diagnostics: list[Diagnostic],
) -> ReportSummary:
    by_severity = {sev.value: 0 for sev in Severity}
    for f in findings:
        by_severity[f.severity.value] += 1
    ranked = [f.severity for f in findings] + [c.severity for c in diff_changes]
    return ReportSummary(
        total_findings=len(findings),
        by_severity=by_severity,
        variant_sets=len(variant_sets),
        variant_members=sum(len(vs.members) for vs in variant_sets),
        diff_changes=len(diff_changes),
        diagnostics=len(diagnostics),
        highest_severity=max(ranked, key=lambda s: s.rank) if ranked else None,
    )


def generate(
    findings: Iterable[Finding],
    variant_sets: Iterable[VariantSet] = (),
    diff_changes: Iterable[DiffChangeSet] = (),
    diagnostics: Iterable[Diagnostic] = (),
    *,
    ruleset_version: str = "",
    files_scanned: int = 0,
) -> Report:
    """Aggregate scan outputs into a sorted report with a content fingerprint."""
    ordered_findings = sorted(findings, key=lambda f: f.sort_key())
    ordered_sets = sorted(variant_sets, key=lambda vs: vs.sort_key())
    ordered_changes = sorted(diff_changes, key=lambda c: c.sort_key())
    ordered_diagnostics = sorted(set(diagnostics), key=lambda d: d.sort_key())

    report = Report(
        findings=ordered_findings,
        variant_sets=ordered_sets,
        diff_changes=ordered_changes,
        diagnostics=ordered_diagnostics,
        summary=_summarize(ordered_findings, ordered_sets, ordered_changes, ordered_diagnostics),
        ruleset_version=ruleset_version,
        files_scanned=files_scanned,
    )
    report.fingerprint = _canonical_digest(report.body())
    return report


# ── Text rendering ───────────────────────────────────────────────────────────


class ReportRenderer:
    """Plain-text report rendered from a Jinja2 template."""

    COLORS = {
        "critical": "\033[91m",
        "high": "\033[91m",
        "medium": "\033[93m",
        "low": "\033[96m",
        "informational": "\033[90m",
    }
    RESET = "\033[0m"

    def __init__(self, *, color: bool = False) -> None:
        self.color = color
        self._jinja_env = Environment(
            loader=FileSystemLoader(str(TEMPLATE_DIR)),
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )
        self._jinja_env.filters["severity_label"] = self._severity_label

    def _severity_label(self, severity: Severity | str) -> str:
        value = severity.value if isinstance(severity, Severity) else str(severity)
        label = value.upper()
        if not self.color:
            return label
        return f"{self.COLORS.get(value, '')}{label}{self.RESET}"

    def render(self, report: Report) -> str:
        template = self._jinja_env.get_template("report.txt.j2")
        return template.render(
            report=report,
            summary=report.summary,
            severities=[sev.value for sev in Severity],
        )


# ── SARIF ────────────────────────────────────────────────────────────────────


def _severity_to_sarif_level(severity: Severity) -> str:
    return {
        Severity.CRITICAL: "error",
        Severity.HIGH: "error",
        Severity.MEDIUM: "warning",
        Severity.LOW: "note",
        Severity.INFORMATIONAL: "note",
    }.get(severity, "note")


def _severity_to_score(severity: Severity) -> float:
    return {
        Severity.CRITICAL: 9.5,
        Severity.HIGH: 7.5,
        Severity.MEDIUM: 5.5,
        Severity.LOW: 3.5,
        Severity.INFORMATIONAL: 1.0,
    }.get(severity, 1.0)


def _sarif_result(rule_id: str, message: str, severity: Severity, file: str, start: int, end: int,
                  properties: dict[str, Any] | None = None) -> dict[str, Any]:
    result: dict[str, Any] = {
        "ruleId": rule_id,
        "message": {"text": message},
        "level": _severity_to_sarif_level(severity),
        "locations": [
            {
                "physicalLocation": {
                    "artifactLocation": {"uri": file},
                    "region": {"startLine": start, "endLine": end},
                }
            }
        ],
    }
    if properties:
        result["properties"] = properties
    return result


def generate_sarif(report: Report) -> str:
    """SARIF 2.1.0 rendering for code-scanning integrations."""
    rules: dict[str, dict[str, Any]] = {}
    results: list[dict[str, Any]] = []

    def add_rule(rule_id: str, severity: Severity, category: str) -> None:
        if rule_id in rules:
            return
        rules[rule_id] = {
            "id": rule_id,
            "name": rule_id.replace("-", " ").title().replace(" ", ""),
            "shortDescription": {"text": rule_id},
            "defaultConfiguration": {"level": _severity_to_sarif_level(severity)},
            "properties": {
                "security-severity": str(_severity_to_score(severity)),
                "tags": ["security", category] if category else ["security"],
            },
        }

    for f in report.findings:
        add_rule(f.rule_id, f.severity, f.category)
        results.append(_sarif_result(
            f.rule_id, f.message, f.severity, f.file, f.line_start, f.line_end,
            {"triage": f.triage.value},
        ))

    for vs in report.variant_sets:
        for member in vs.members:
            if member.verdict == VariantVerdict.ORIGIN:
                continue
            f = member.finding
            add_rule(vs.rule_id, f.severity, f.category)
            results.append(_sarif_result(
                vs.rule_id, f.message, f.severity, f.file, f.line_start, f.line_end,
                {"verdict": member.verdict.value, "triage": f.triage.value, "variantOf": vs.origin.rule_id},
            ))

    for change in report.diff_changes:
        ref = change.after or change.before
        rule_id = f"upgrade-{change.kind.value}"
        add_rule(rule_id, change.severity, "upgrade-safety")
        message = f"{change.entity}: {'; '.join(change.details) or change.kind.value}"
        results.append(_sarif_result(
            rule_id, message, change.severity,
            ref.file if ref else "", ref.line_start if ref else 1, ref.line_end if ref else 1,
        ))

    sarif = {
        "$schema": "https://raw.githubusercontent.com/oasis-tcs/sarif-spec/master/Schemata/sarif-schema-2.1.0.json",
        "version": "2.1.0",
        "runs": [
            {
                "tool": {
                    "driver": {
                        "name": "contractlens",
                        "version": __version__,
                        "rules": [rules[k] for k in sorted(rules)],
                    }
                },
                "results": results,
            }
        ],
    }
    return json.dumps(sarif, indent=2, sort_keys=True) + "\n"
