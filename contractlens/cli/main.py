"""contractlens CLI: pattern-based static analysis for smart contract sources.

Usage:
    contractlens scan <path>          Scan a Rust file or project directory
    contractlens rules [<dir>]        List and validate a rule directory
    contractlens config               Show current configuration

Examples:
    contractlens scan ./contracts/
    contractlens scan ./contracts --rules ./rules --format sarif -o results.sarif
    contractlens scan ./v2 --diff ./v1 --fail-on medium
    contractlens scan ./src --baseline last.json --confirm unsafe-addition:lib.rs:42

Exit codes: 0 no results at or above --fail-on, 1 results at or above
--fail-on, 2 fatal error (bad rules directory, malformed rule file, bad
target path, conflicting flags).
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from contractlens import __version__
from contractlens.core.config import get_settings
from contractlens.core.errors import ContractLensError, ScanAborted
from contractlens.core.logging import setup_logging
from contractlens.core.types import Severity

logger = logging.getLogger("contractlens.cli")

EXIT_OK = 0
EXIT_FINDINGS = 1
EXIT_ERROR = 2


# ── Coloured output helpers ──────────────────────────────────────────────────

_RESET = "\033[0m"
_BOLD = "\033[1m"
_RED = "\033[91m"
_YELLOW = "\033[93m"
_GREEN = "\033[92m"
_CYAN = "\033[96m"
_DIM = "\033[2m"

_SEV_COLOR = {
    "critical": _RED,
    "high": "\033[38;5;208m",  # orange
    "medium": _YELLOW,
    "low": _CYAN,
    "informational": _DIM,
}


def _c(text: str, code: str) -> str:
    return f"{code}{text}{_RESET}"


def _error(message: str) -> None:
    print(_c(f"Error: {message}", _RED), file=sys.stderr)


# ── CLI argument parser ─────────────────────────────────────────────────────


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="contractlens",
        description="contractlens: pattern-based static analysis for smart contracts",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="store_true", help="Print version and exit")

    sub = parser.add_subparsers(dest="command")

    # ── scan ─────────────────────────────────────────────────────────────────
    scan_p = sub.add_parser("scan", help="Scan a source file or project directory")
    scan_p.add_argument("path", help="Path to a source file or project directory")
    scan_p.add_argument("--rules", "-r", help="Rule directory (default: bundled rules)")
    scan_p.add_argument("--diff", metavar="OTHER", help="Previous version to check for upgrade regressions")
    scan_p.add_argument(
        "--format",
        "-f",
        default="text",
        choices=["text", "json", "sarif"],
        help="Output format (default: text)",
    )
    scan_p.add_argument(
        "--fail-on",
        choices=["critical", "high", "medium", "low", "info", "informational"],
        help="Exit 1 when results at or above this severity exist (default from settings)",
    )
    scan_p.add_argument("--output", "-o", help="Write output to file instead of stdout")
    scan_p.add_argument("--baseline", metavar="REPORT", help="Previous JSON report to reconcile against")
    scan_p.add_argument(
        "--confirm",
        action="append",
        default=[],
        metavar="RULE:FILE:LINE",
        help="Confirm a finding so it seeds variant propagation (repeatable)",
    )
    scan_p.add_argument("--confirm-all", action="store_true", help="Confirm every finding")
    scan_p.add_argument("--workers", "-w", type=int, help="Concurrent file workers")
    verbosity = scan_p.add_mutually_exclusive_group()
    verbosity.add_argument("--quiet", "-q", action="store_true", help="Only report output and errors")
    verbosity.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    # ── rules ────────────────────────────────────────────────────────────────
    rules_p = sub.add_parser("rules", help="List and validate a rule directory")
    rules_p.add_argument("dir", nargs="?", help="Rule directory (default: bundled rules)")

    # ── config ───────────────────────────────────────────────────────────────
    config_p = sub.add_parser("config", help="Show current configuration")
    config_p.add_argument("--json", action="store_true", help="Print settings as JSON")

    return parser


# ── Scan command ─────────────────────────────────────────────────────────────


def _same_path(a: str, b: str) -> bool:
    return Path(a).resolve() == Path(b).resolve()


def _print_summary(report, threshold: Severity, hits: list[str]) -> None:
    parts = []
    for sev in Severity:
        count = report.summary.by_severity.get(sev.value, 0)
        if count:
            parts.append(f"{_SEV_COLOR.get(sev.value, '')}{count} {sev.value.upper()}{_RESET}")
    print(f"\n{_BOLD}Scan complete{_RESET}: {report.files_scanned} file(s)", file=sys.stderr)
    if parts:
        print(f"  {' · '.join(parts)}", file=sys.stderr)
    if report.diff_changes:
        print(f"  {len(report.diff_changes)} upgrade change(s)", file=sys.stderr)
    if report.diagnostics:
        print(_c(f"  {len(report.diagnostics)} diagnostic(s)", _YELLOW), file=sys.stderr)
    if hits:
        print(_c(f"  {len(hits)} result(s) at or above {threshold.value}", _RED), file=sys.stderr)
    else:
        print(_c(f"  No results at or above {threshold.value}.", _GREEN), file=sys.stderr)


def _run_scan(args: argparse.Namespace) -> int:
    from contractlens.pipeline.orchestrator import ScanOrchestrator
    from contractlens.rules.loader import bundled_rules_dir, load_rules

    settings = get_settings()
    if args.diff and _same_path(args.diff, args.path):
        _error("--diff must point at a different version than the scanned path")
        return EXIT_ERROR
    if args.workers is not None and args.workers < 1:
        _error("--workers must be at least 1")
        return EXIT_ERROR

    try:
        threshold = Severity.parse(args.fail_on or settings.default_fail_on)
    except ValueError:
        _error(f"invalid fail-on severity {settings.default_fail_on!r}")
        return EXIT_ERROR

    try:
        ruleset = load_rules(args.rules or bundled_rules_dir())
        orchestrator = ScanOrchestrator(ruleset, settings=settings, workers=args.workers)
        report = orchestrator.run_sync(
            args.path,
            diff_against=args.diff,
            baseline=args.baseline,
            confirm=args.confirm,
            confirm_all=args.confirm_all,
        )
    except ScanAborted as exc:
        _error(str(exc))
        return EXIT_ERROR
    except ContractLensError as exc:
        _error(str(exc))
        return EXIT_ERROR

    to_terminal = not args.output and sys.stdout.isatty()
    output = report.render(args.format, **({"color": to_terminal} if args.format == "text" else {}))
    if args.output:
        try:
            Path(args.output).write_text(output, encoding="utf-8")
        except OSError as exc:
            _error(f"cannot write {args.output}: {exc}")
            return EXIT_ERROR
        if not args.quiet:
            print(f"  Written to {_c(args.output, _CYAN)}", file=sys.stderr)
    else:
        sys.stdout.write(output)

    hits = report.blocking(threshold)
    if not args.quiet:
        _print_summary(report, threshold, hits)
    return EXIT_FINDINGS if hits else EXIT_OK


# ── Rules command ────────────────────────────────────────────────────────────


def _run_rules(args: argparse.Namespace) -> int:
    from contractlens.rules.loader import bundled_rules_dir, load_rules

    try:
        ruleset = load_rules(args.dir or bundled_rules_dir())
    except ContractLensError as exc:
        _error(str(exc))
        return EXIT_ERROR

    print(f"\n{_BOLD}Rule set {ruleset.version}{_RESET}  {_DIM}sha256:{ruleset.checksum[:12]}{_RESET}\n")
    for rule in ruleset:
        sev = rule.severity.value
        badge = _c(f"{sev.upper():<13}", _SEV_COLOR.get(sev, ""))
        print(f"  {badge} {rule.id:<32} {_DIM}{rule.language}  {rule.category or '-'}{_RESET}")
    print(f"\n  {len(ruleset)} rule(s) valid\n")
    return EXIT_OK


# ── Config command ───────────────────────────────────────────────────────────


def _run_config(args: argparse.Namespace) -> int:
    """Print effective settings."""
    s = get_settings()
    if args.json:
        print(s.model_dump_json(indent=2))
        return EXIT_OK
    print(f"\n{_BOLD}contractlens configuration{_RESET}\n")
    for field_name in sorted(type(s).model_fields.keys()):
        print(f"  {_DIM}{field_name}:{_RESET}  {getattr(s, field_name, '')}")
    print()
    return EXIT_OK


# ── Entrypoint ───────────────────────────────────────────────────────────────


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        print(f"contractlens {__version__}")
        return EXIT_OK

    if not args.command:
        parser.print_help()
        return EXIT_OK

    settings = get_settings()
    level = settings.log_level
    if getattr(args, "verbose", False):
        level = "DEBUG"
    elif getattr(args, "quiet", False):
        level = "ERROR"
    setup_logging(settings.app_env, level)

    try:
        if args.command == "config":
            return _run_config(args)
        if args.command == "rules":
            return _run_rules(args)
        if args.command == "scan":
            return _run_scan(args)
    except KeyboardInterrupt:
        _error("scan interrupted; no report written")
        return EXIT_ERROR
    except Exception as exc:
        logger.exception("%s failed", args.command)
        _error(f"{args.command} failed: {exc}")
        return EXIT_ERROR

    parser.print_help()
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
