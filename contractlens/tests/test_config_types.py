"""Tests for settings and the shared enums."""

from __future__ import annotations

import json
import logging

import pytest

from contractlens.core.config import DEFAULT_GUARD_PATTERNS, Settings, get_settings
from contractlens.core.errors import MatchTimeout, ParseError, RuleSyntaxError
from contractlens.core.logging import DevFormatter, JSONFormatter, setup_logging
from contractlens.core.types import Diagnostic, DiagnosticKind, Severity, TriageState


class TestSettings:
    def test_defaults(self):
        s = Settings()
        assert s.source_extensions == [".rs"]
        assert "target" in s.exclude_dirs
        assert s.guard_patterns == list(DEFAULT_GUARD_PATTERNS)
        assert s.auto_confirm_variants is False

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("CONTRACTLENS_MATCH_BUDGET", "500")
        monkeypatch.setenv("CONTRACTLENS_MAX_WORKERS", "9")
        monkeypatch.setenv("CONTRACTLENS_AUTO_CONFIRM_VARIANTS", "1")
        s = Settings()
        assert (s.match_budget, s.max_workers, s.auto_confirm_variants) == (500, 9, True)

    def test_get_settings_is_cached(self):
        assert get_settings() is get_settings()


class TestSeverity:
    @pytest.mark.parametrize("text,expected", [
        ("HIGH", Severity.HIGH),
        (" medium ", Severity.MEDIUM),
        ("info", Severity.INFORMATIONAL),
        ("informational", Severity.INFORMATIONAL),
    ])
    def test_parse(self, text, expected):
        assert Severity.parse(text) == expected

    def test_parse_rejects_unknown(self):
        with pytest.raises(ValueError):
            Severity.parse("urgent")

    def test_rank_and_shift(self):
        assert Severity.INFORMATIONAL.rank == 0
        assert Severity.CRITICAL.rank == 4
        assert Severity.MEDIUM.shift(1) == Severity.HIGH
        assert Severity.CRITICAL.shift(1) == Severity.CRITICAL
        assert Severity.LOW.shift(-3) == Severity.INFORMATIONAL
        assert Severity.from_rank(2) == Severity.MEDIUM


class TestTriage:
    def test_legal_transitions(self, sample_finding):
        reviewed = sample_finding.transition(TriageState.NEEDS_REVIEW, note="check")
        confirmed = reviewed.transition(TriageState.CONFIRMED)
        fixed = confirmed.transition(TriageState.FIXED)
        assert fixed.triage == TriageState.FIXED
        assert fixed.metadata == {"note": "check"}
        assert sample_finding.triage == TriageState.DETECTED

    @pytest.mark.parametrize("start", [TriageState.DETECTED, TriageState.NEEDS_REVIEW])
    def test_untriaged_findings_can_be_resolved(self, sample_finding, start):
        finding = sample_finding.model_copy(update={"triage": start})
        assert finding.transition(TriageState.FIXED).triage == TriageState.FIXED

    def test_same_state_is_a_no_op(self, sample_finding):
        assert sample_finding.transition(TriageState.DETECTED) is sample_finding

    @pytest.mark.parametrize("start,target", [
        (TriageState.CONFIRMED, TriageState.FALSE_POSITIVE),
        (TriageState.FALSE_POSITIVE, TriageState.CONFIRMED),
        (TriageState.FIXED, TriageState.DETECTED),
        (TriageState.NEEDS_REVIEW, TriageState.DETECTED),
    ])
    def test_illegal_transitions(self, sample_finding, start, target):
        finding = sample_finding.model_copy(update={"triage": start})
        with pytest.raises(ValueError):
            finding.transition(target)

    def test_keys(self, sample_finding):
        assert sample_finding.location_key == ("unsafe-addition", "src/lib.rs", 7, 7)
        assert sample_finding.node_key == ("src/lib.rs", 12, 100, 105)


class TestErrors:
    def test_messages_carry_location(self):
        assert str(ParseError("bad token", file="lib.rs", line=3)) == "lib.rs:3: bad token"
        err = RuleSyntaxError("unknown clause", path="a.yaml", rule_id="r", clause="fix")
        assert str(err) == "a.yaml / r / fix: unknown clause"
        timeout = MatchTimeout("r", "lib.rs", 10)
        assert (timeout.rule_id, timeout.file, timeout.budget) == ("r", "lib.rs", 10)

    def test_diagnostics_are_hashable(self):
        d = Diagnostic(kind=DiagnosticKind.PARSE_ERROR, file="lib.rs", line=2, message="skipped")
        assert len({d, d.model_copy()}) == 1


class TestLogging:
    def _record(self, **extra):
        record = logging.LogRecord("contractlens.test", logging.WARNING, __file__, 10, "hello %s", ("x",), None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_json_formatter_includes_scan_context(self):
        entry = json.loads(JSONFormatter().format(self._record(file="lib.rs", rule_id="r")))
        assert entry["message"] == "hello x"
        assert entry["level"] == "WARNING"
        assert (entry["file"], entry["rule_id"]) == ("lib.rs", "r")

    def test_dev_formatter_prefixes_file(self):
        assert "[lib.rs] hello x" in DevFormatter().format(self._record(file="lib.rs"))

    def test_dev_formatter_shows_rule_and_duration(self):
        line = DevFormatter().format(self._record(file="lib.rs", rule_id="r", duration_ms=1.5))
        assert "[lib.rs r] hello x (1.5 ms)" in line

    def test_setup_logging_selects_formatter(self):
        root = logging.getLogger()
        handlers, level = list(root.handlers), root.level
        try:
            setup_logging("production", "info")
            assert root.level == logging.INFO
            assert [type(h.formatter) for h in root.handlers] == [JSONFormatter]
            setup_logging("development", "bogus")
            assert root.level == logging.WARNING
            assert [type(h.formatter) for h in root.handlers] == [DevFormatter]
        finally:
            root.handlers[:] = handlers
            root.setLevel(level)
