"""Scan orchestrator: coordinates the analysis pipeline over a source tree.

Scan flow:
1. DISCOVER: collect source files (extension filter, excluded dirs, size cap)
2. ANALYZE: one task per file, bounded by a semaphore; parsing, matching,
   guard indexing and classification run in worker threads
3. MERGE: per-file results are merged and sorted after ``gather``
4. TRIAGE: baseline carry-forward and explicit confirmations
5. PROPAGATE: confirmed findings are generalized over the frozen corpus
6. DIFF: optional structural comparison against a second snapshot
7. REPORT: deterministic report generation

An interrupted scan raises ``ScanAborted``; partial results are discarded.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Sequence

from contractlens.classifier.classifier import FindingClassifier
from contractlens.classifier.guards import GuardDetector, GuardIndex
from contractlens.core.config import Settings, get_settings
from contractlens.core.errors import ConfigError, IOAccessError, ParseError, ScanAborted
from contractlens.core.types import Diagnostic, DiagnosticKind, Finding, TriageState
from contractlens.diff.analyzer import DiffChangeSet, diff_snapshots
from contractlens.loader.adapters import language_for_path, load_source, parse_source
from contractlens.loader.ast import SyntaxTree
from contractlens.reports.baseline import load_baseline, reconcile
from contractlens.reports.generator import Report, generate
from contractlens.rules.matcher import RuleEngine
from contractlens.rules.models import RuleSet
from contractlens.variants.corpus import CorpusCache, CorpusEntry
from contractlens.variants.propagator import VariantPropagator

logger = logging.getLogger(__name__)


@dataclass
class WorkerResult:
    """Output of one file's analysis, owned by its worker until merge."""

    path: str
    tree: SyntaxTree | None = None
    guards: GuardIndex | None = None
    findings: list[Finding] = field(default_factory=list)
    diagnostics: list[Diagnostic] = field(default_factory=list)


@dataclass(frozen=True)
class Confirmation:
    """A ``RULE:FILE:LINE`` triage confirmation."""

    rule_id: str
    file: str
    line: int

    @classmethod
    def parse(cls, text: str) -> "Confirmation":
        parts = text.rsplit(":", 2)
        if len(parts) != 3 or not all(parts):
            raise ConfigError(f"invalid confirmation {text!r}; expected RULE:FILE:LINE")
        rule_id, file, line = parts
        try:
            return cls(rule_id, file, int(line))
        except ValueError:
            raise ConfigError(f"invalid line number in confirmation {text!r}") from None

    def matches(self, finding: Finding) -> bool:
        return (
            finding.rule_id == self.rule_id
            and finding.file == self.file
            and finding.line_start <= self.line <= finding.line_end
        )


# ── Discovery ────────────────────────────────────────────────────────────────


def discover_files(root: Path, settings: Settings | None = None) -> tuple[list[tuple[Path, str]], list[Diagnostic]]:
    """Return sorted (path, display path) pairs plus skip diagnostics."""
    settings = settings or get_settings()
    if not root.exists():
        raise ConfigError(f"target path does not exist: {root}")

    if root.is_file():
        candidates = [(root, root.name)]
    else:
        candidates = []
        for path in sorted(root.rglob("*")):
            rel = path.relative_to(root)
            if any(part in settings.exclude_dirs for part in rel.parts[:-1]):
                continue
            if path.is_file() and path.suffix.lower() in settings.source_extensions:
                candidates.append((path, rel.as_posix()))

    files: list[tuple[Path, str]] = []
    skipped: list[Diagnostic] = []
    for path, display in candidates:
        try:
            size = path.stat().st_size
        except OSError as e:
            skipped.append(Diagnostic(kind=DiagnosticKind.IO_ERROR, file=display, message=str(e)))
            continue
        if size > settings.max_file_size_bytes:
            skipped.append(Diagnostic(
                kind=DiagnosticKind.IO_ERROR,
                file=display,
                message=f"file size {size} exceeds limit of {settings.max_file_size_bytes} bytes",
            ))
            continue
        files.append((path, display))
    return files, skipped


# ── Orchestrator ─────────────────────────────────────────────────────────────


class ScanOrchestrator:
    """Coordinates a scan of one source tree against a loaded rule set."""

    def __init__(
        self,
        ruleset: RuleSet,
        *,
        settings: Settings | None = None,
        workers: int | None = None,
        detector: GuardDetector | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self.ruleset = ruleset
        self.workers = max(1, workers or self._settings.max_workers)
        self._engine = RuleEngine(ruleset, budget=self._settings.match_budget)
        self._detector = detector or GuardDetector(self._settings.guard_patterns)
        self._classifier = FindingClassifier(self._detector)

    # ── Per-file work (runs in worker threads) ───────────────────────────

    def _parse(self, path: Path, display: str) -> WorkerResult:
        result = WorkerResult(path=display)
        if language_for_path(path) is None:
            result.diagnostics.append(Diagnostic(
                kind=DiagnosticKind.UNSUPPORTED_LANGUAGE,
                file=display,
                message=f"no grammar adapter for '{path.suffix}' files",
            ))
            return result
        try:
            source = load_source(path, display_path=display)
            tree = parse_source(source)
        except IOAccessError as e:
            logger.warning("%s", e, extra={"file": display})
            result.diagnostics.append(Diagnostic(kind=DiagnosticKind.IO_ERROR, file=display, message=e.reason))
            return result
        except ParseError as e:
            logger.warning("%s", e, extra={"file": display})
            result.diagnostics.append(Diagnostic(
                kind=DiagnosticKind.PARSE_ERROR, file=display, line=e.line, message=str(e),
            ))
            return result
        result.tree = tree
        result.diagnostics.extend(tree.diagnostics)
        result.guards = self._detector.index(tree, budget=self._settings.match_budget)
        result.diagnostics.extend(result.guards.diagnostics)
        return result

    def analyze_file(self, path: Path, display: str) -> WorkerResult:
        start = time.monotonic()
        result = self._parse(path, display)
        if result.tree is None:
            return result
        findings, diagnostics = self._engine.run(result.tree)
        result.findings = [self._classifier.apply(f, result.tree, result.guards) for f in findings]
        result.diagnostics.extend(diagnostics)
        logger.debug(
            "Analyzed file", extra={
                "file": display,
                "findings": len(result.findings),
                "duration_ms": round((time.monotonic() - start) * 1000, 1),
            },
        )
        return result

    # ── Concurrency ──────────────────────────────────────────────────────

    async def _run_workers(self, files: Sequence[tuple[Path, str]], *, analyze: bool) -> list[WorkerResult]:
        semaphore = asyncio.Semaphore(self.workers)
        work = self.analyze_file if analyze else self._parse

        async def run_one(path: Path, display: str) -> WorkerResult:
            async with semaphore:
                return await asyncio.to_thread(work, path, display)

        try:
            results = await asyncio.gather(*(run_one(p, d) for p, d in files))
        except (KeyboardInterrupt, asyncio.CancelledError) as e:
            raise ScanAborted("scan interrupted; partial results discarded") from e
        return sorted(results, key=lambda r: r.path)

    def _corpus(self, results: Iterable[WorkerResult]) -> CorpusCache:
        corpus = CorpusCache()
        for r in results:
            if r.tree is not None and r.guards is not None:
                corpus.add(CorpusEntry(r.tree.source, r.tree, r.guards))
        return corpus.freeze()

    async def snapshot(self, root: Path) -> tuple[CorpusCache, list[Diagnostic]]:
        """Parse a tree without running rules (the other side of a diff)."""
        files, diagnostics = discover_files(root, self._settings)
        results = await self._run_workers(files, analyze=False)
        for r in results:
            diagnostics.extend(r.diagnostics)
        return self._corpus(results), diagnostics

    # ── Pipeline ─────────────────────────────────────────────────────────

    async def run(
        self,
        root: str | Path,
        *,
        diff_against: str | Path | None = None,
        baseline: str | Path | None = None,
        confirm: Sequence[str] = (),
        confirm_all: bool = False,
    ) -> Report:
        """Run the full pipeline and return the report."""
        start = time.monotonic()
        root = Path(root)
        confirmations = [Confirmation.parse(c) for c in confirm]
        previous = load_baseline(baseline) if baseline is not None else None

        files, diagnostics = discover_files(root, self._settings)
        logger.info("Scanning %s", root, extra={"files": len(files)})
        results = await self._run_workers(files, analyze=True)

        findings: list[Finding] = []
        for r in results:
            findings.extend(r.findings)
            diagnostics.extend(r.diagnostics)
        findings.sort(key=lambda f: f.sort_key())

        resolved: list[Finding] = []
        if previous is not None:
            reconciled = reconcile(
                previous.findings, findings, baseline_fingerprint=previous.fingerprint,
            )
            findings = reconciled.current()
            resolved = reconciled.resolved

        findings = self._confirm(findings, confirmations, confirm_all)

        corpus = self._corpus(results)
        propagator = VariantPropagator(
            corpus,
            budget=self._settings.match_budget,
            auto_confirm=self._settings.auto_confirm_variants,
        )
        variant_sets = propagator.propagate(findings)
        diagnostics.extend(propagator.diagnostics)

        changes: list[DiffChangeSet] = []
        if diff_against is not None:
            other, other_diagnostics = await self.snapshot(Path(diff_against))
            diagnostics.extend(
                d.model_copy(update={"message": f"[diff base] {d.message}"}) for d in other_diagnostics
            )
            changes = diff_snapshots(other, corpus)

        report = generate(
            findings + resolved,
            variant_sets,
            changes,
            diagnostics,
            ruleset_version=self.ruleset.version,
            files_scanned=len(files),
        )
        logger.info(
            "Scan complete", extra={
                "files": len(files),
                "findings": len(report.findings),
                "duration_ms": round((time.monotonic() - start) * 1000, 1),
            },
        )
        return report

    def run_sync(self, root: str | Path, **kwargs) -> Report:
        try:
            return asyncio.run(self.run(root, **kwargs))
        except KeyboardInterrupt as e:
            raise ScanAborted("scan interrupted; partial results discarded") from e

    @staticmethod
    def _confirm(findings: list[Finding], confirmations: list[Confirmation], confirm_all: bool) -> list[Finding]:
        used: set[Confirmation] = set()
        confirmed: list[Finding] = []
        for f in findings:
            hits = [c for c in confirmations if c.matches(f)]
            used.update(hits)
            wanted = confirm_all or bool(hits)
            if wanted and f.triage in (TriageState.DETECTED, TriageState.NEEDS_REVIEW):
                f = f.transition(TriageState.CONFIRMED)
            confirmed.append(f)
        for c in confirmations:
            if c not in used:
                logger.warning(
                    "Confirmation %s:%s:%d matched no finding", c.rule_id, c.file, c.line,
                    extra={"file": c.file, "rule_id": c.rule_id},
                )
        return confirmed
