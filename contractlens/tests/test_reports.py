"""Tests for report generation, rendering and baseline reconciliation."""

from __future__ import annotations

import json

import pytest

from contractlens.core.errors import ConfigError
from contractlens.core.types import (
    ChangeKind,
    Diagnostic,
    DiagnosticKind,
    Severity,
    TriageState,
    VariantVerdict,
)
from contractlens.diff.analyzer import DiffChangeSet, NodeRef
from contractlens.reports import Report, generate, load_baseline, reconcile
from contractlens.variants.propagator import VariantMember, VariantSet


@pytest.fixture
def findings(sample_finding):
    return [
        sample_finding,
        sample_finding.model_copy(update={
            "rule_id": "payable-no-check", "file": "src/a.rs", "line_start": 3, "line_end": 9,
            "severity": Severity.HIGH, "category": "payable-validation",
            "message": "Payable method deposit never inspects the attached deposit",
            "bindings": {"$F": "deposit"},
        }),
        sample_finding.model_copy(update={"file": "src/a.rs", "line_start": 40, "line_end": 40, "start": 900}),
    ]


@pytest.fixture
def variant_set(sample_finding):
    origin = sample_finding.transition(TriageState.CONFIRMED)
    member = sample_finding.model_copy(update={
        "rule_id": "unsafe-addition#variant-abcdef12", "file": "src/b.rs", "node_index": 4,
        "line_start": 2, "line_end": 2, "triage": TriageState.CONFIRMED,
    })
    return VariantSet(
        origin=origin,
        fingerprint="abcdef12" * 8,
        rule_id="unsafe-addition#variant-abcdef12",
        pattern="(binary:+ (metavar:$VAR1) (metavar:$VAR2))",
        members=[
            VariantMember(finding=origin, verdict=VariantVerdict.ORIGIN),
            VariantMember(finding=member, verdict=VariantVerdict.CONFIRMED_VARIANT),
        ],
    )


@pytest.fixture
def reorder():
    ref = NodeRef(file="src/lib.rs", node_index=5, kind="struct", line_start=4, line_end=8)
    return DiffChangeSet(
        entity="struct:Vault", kind=ChangeKind.REORDER, severity=Severity.HIGH,
        before=ref, after=ref, details=["order ['owner', 'total'] -> ['total', 'owner']"],
    )


@pytest.fixture
def timeout():
    return Diagnostic(
        kind=DiagnosticKind.MATCH_TIMEOUT, file="src/a.rs", rule_id="unsafe-addition",
        message="rule 'unsafe-addition' exceeded match budget of 1 steps on src/a.rs",
    )


class TestGenerate:
    def test_ordering(self, findings):
        report = generate(findings)
        assert [(f.severity, f.file, f.line_start) for f in report.findings] == [
            (Severity.HIGH, "src/a.rs", 3),
            (Severity.MEDIUM, "src/a.rs", 40),
            (Severity.MEDIUM, "src/lib.rs", 7),
        ]

    def test_input_order_does_not_matter(self, findings, variant_set, reorder, timeout):
        a = generate(findings, [variant_set], [reorder], [timeout], ruleset_version="2", files_scanned=3)
        b = generate(list(reversed(findings)), [variant_set], [reorder], [timeout, timeout],
                     ruleset_version="2", files_scanned=3)
        assert a.to_json() == b.to_json()
        assert a.fingerprint == b.fingerprint

    def test_fingerprint_tracks_content(self, findings):
        assert generate(findings).fingerprint != generate(findings[:2]).fingerprint
        assert len(generate(findings).fingerprint) == 64

    def test_summary(self, findings, variant_set, reorder, timeout):
        report = generate(findings, [variant_set], [reorder], [timeout, timeout])
        summary = report.summary
        assert summary.total_findings == 3
        assert summary.by_severity == {
            "critical": 0, "high": 1, "medium": 2, "low": 0, "informational": 0,
        }
        assert summary.variant_sets == 1
        assert summary.variant_members == 2
        assert summary.diff_changes == 1
        assert summary.diagnostics == 1
        assert summary.highest_severity == Severity.HIGH

    def test_empty_report(self):
        report = generate([])
        assert report.summary.total_findings == 0
        assert report.summary.highest_severity is None
        assert json.loads(report.to_json())["findings"] == []


class TestBlocking:
    def test_threshold(self, findings):
        report = generate(findings)
        assert report.blocking(Severity.HIGH) == ["payable-no-check src/a.rs:3"]
        assert len(report.blocking(Severity.MEDIUM)) == 3
        assert report.blocking(Severity.CRITICAL) == []

    def test_inactive_findings_do_not_block(self, sample_finding):
        report = generate([
            sample_finding.transition(TriageState.FALSE_POSITIVE),
            sample_finding.model_copy(update={"line_start": 9, "line_end": 9}).transition(TriageState.FIXED),
        ])
        assert report.blocking(Severity.INFORMATIONAL) == []

    def test_confirmed_variants_and_changes_block(self, variant_set, reorder):
        report = generate([], [variant_set], [reorder])
        assert report.blocking(Severity.MEDIUM) == [
            "unsafe-addition#variant-abcdef12 src/b.rs:2",
            "reorder struct:Vault",
        ]


class TestRendering:
    def test_json_layout(self, findings, variant_set, reorder):
        report = generate(findings, [variant_set], [reorder], ruleset_version="2", files_scanned=4)
        data = json.loads(report.to_json())
        assert set(data) == {
            "findings", "variantSets", "diffChanges", "diagnostics", "summary",
            "rulesetVersion", "filesScanned", "fingerprint",
        }
        assert data["filesScanned"] == 4
        assert data["findings"][0]["severity"] == "high"
        assert data["diffChanges"][0]["kind"] == "reorder"
        assert report.to_json().endswith("}\n")

    def test_layout_is_fixed_without_a_diff(self, findings):
        data = json.loads(generate(findings, ruleset_version="2").to_json())
        assert set(data) == {
            "findings", "variantSets", "diffChanges", "diagnostics", "summary",
            "rulesetVersion", "filesScanned", "fingerprint",
        }
        assert data["diffChanges"] == [] and data["variantSets"] == []
        assert data["summary"]["diff_changes"] == 0

    def test_from_json_round_trip(self, findings, variant_set, reorder, timeout):
        report = generate(findings, [variant_set], [reorder], [timeout], ruleset_version="2")
        loaded = Report.from_json(report.to_json())
        assert loaded.to_json() == report.to_json()
        assert loaded.findings == report.findings

    def test_text(self, findings, reorder, timeout):
        text = generate(findings, diff_changes=[reorder], diagnostics=[timeout], ruleset_version="2").to_text()
        assert text.startswith("contractlens report\n")
        assert "[HIGH] payable-no-check  src/a.rs:3-9" in text
        assert "    Unchecked addition of a and b can overflow" in text
        assert "bindings: $X=a, $Y=b" in text
        assert "[HIGH] reorder  struct:Vault" in text
        assert "match-timeout  src/a.rs (unsafe-addition)" in text
        assert "\033[" not in text

    def test_text_with_color(self, findings):
        text = generate(findings).render("text", color=True)
        assert "\033[91mHIGH\033[0m" in text

    def test_sarif(self, findings, variant_set, reorder):
        sarif = json.loads(generate(findings, [variant_set], [reorder]).to_sarif())
        assert sarif["version"] == "2.1.0"
        run = sarif["runs"][0]
        assert run["tool"]["driver"]["name"] == "contractlens"
        rule_ids = [r["id"] for r in run["tool"]["driver"]["rules"]]
        assert rule_ids == sorted(rule_ids)
        assert "upgrade-reorder" in rule_ids
        results = run["results"]
        assert len(results) == 3 + 1 + 1
        assert results[0]["level"] == "error"
        location = results[0]["locations"][0]["physicalLocation"]
        assert location["artifactLocation"]["uri"] == "src/a.rs"
        assert location["region"] == {"startLine": 3, "endLine": 9}

    def test_unknown_format(self, findings):
        with pytest.raises(ValueError):
            generate(findings).render("xml")


class TestBaseline:
    def test_reconcile(self, sample_finding):
        persistent = sample_finding.transition(TriageState.CONFIRMED)
        gone = sample_finding.model_copy(update={"line_start": 20, "line_end": 20})
        dismissed = sample_finding.model_copy(
            update={"line_start": 30, "line_end": 30}
        ).transition(TriageState.FALSE_POSITIVE)
        fresh = sample_finding.model_copy(update={"line_start": 40, "line_end": 40})

        result = reconcile([persistent, gone, dismissed], [sample_finding, fresh], baseline_fingerprint="f" * 64)

        assert result.summary == {"new": 1, "persistent": 1, "resolved": 2}
        assert [f.line_start for f in result.new] == [40]
        carried = result.persistent[0]
        assert carried.triage == TriageState.CONFIRMED
        assert carried.metadata["baseline_triage"] == "confirmed"

        resolved = {f.line_start: f for f in result.resolved}
        assert resolved[20].triage == TriageState.FIXED
        assert resolved[20].metadata["resolved_after"] == "f" * 64
        assert resolved[30].triage == TriageState.FALSE_POSITIVE
        assert [f.line_start for f in result.current()] == [7, 40]

    def test_current_triage_wins(self, sample_finding):
        previous = sample_finding.transition(TriageState.NEEDS_REVIEW)
        current = sample_finding.transition(TriageState.CONFIRMED)
        result = reconcile([previous], [current])
        assert result.persistent[0].triage == TriageState.CONFIRMED

    def test_same_line_duplicates_are_all_kept(self, sample_finding):
        twin = sample_finding.model_copy(update={"start": 110, "end": 115, "node_index": 14})
        result = reconcile([sample_finding], [sample_finding, twin])
        assert len(result.persistent) == 2

    def test_load_baseline(self, tmp_path, findings):
        path = tmp_path / "baseline.json"
        report = generate(findings)
        path.write_text(report.to_json(), encoding="utf-8")
        assert load_baseline(path).findings == report.findings

    def test_load_baseline_errors(self, tmp_path):
        with pytest.raises(ConfigError):
            load_baseline(tmp_path / "missing.json")
        bad = tmp_path / "bad.json"
        bad.write_text("{not json", encoding="utf-8")
        with pytest.raises(ConfigError):
            load_baseline(bad)
