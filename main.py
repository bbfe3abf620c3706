#!/usr/bin/env python3
"""vulnsweep - LLM-assisted scanner for remotely exploitable Python vulnerabilities.

Usage:
    python main.py -r /path/to/project
    python main.py -r https://github.com/owner/repo
    python main.py -r /path/to/project -a server.py -l openai
    python main.py -r /path/to/project -v LFI -v RCE -b 5.00
    python main.py -r /path/to/project --dry-run
"""

import argparse
import logging
import sys

import structlog

from config.defaults import DEFAULTS
from config.vulns import VULN_TYPES
from core.engine import RunStatus
from core.orchestrator import AnalysisPipeline
from core.state import SEVERITY_ORDER
from utils.reports import sort_findings


def configure_logging(verbosity):
    level = {0: logging.WARNING, 1: logging.INFO}.get(verbosity, logging.DEBUG)
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
    )


def _options(args):
    """Explicit CLI input. None means 'not given' so the config file can fill it."""
    return {
        "repo_root": args.root,
        "analyze_path": args.analyze,
        "provider": args.llm,
        "model": args.model,
        "max_budget_usd": args.budget,
        "min_confidence": args.confidence,
        "max_iterations": args.iterations,
        "vuln_types": [v.upper() for v in args.vuln or []],
        "dry_run": True if args.dry_run else None,
        "checkpoint": False if args.no_checkpoint else None,
        "resume": False if args.no_resume else None,
        "max_cost_per_file": args.max_cost_per_file,
        "file_concurrency": args.concurrency,
        "config_path": args.config,
    }


def _print_preview(preview):
    print(f"\nDry run: {preview['file_count']} file(s) with {preview['model']}")
    print(f"  Estimated tokens: {preview['estimated_total_tokens']:,}")
    print(f"  Estimated cost:   ${preview['estimated_cost_usd']:.4f} "
          f"(range ${preview['estimated_cost_range']['low']:.4f}"
          f" - ${preview['estimated_cost_range']['high']:.4f})")
    for est in preview["file_estimates"]:
        print(f"  ${est['estimated_cost_usd']:.4f}  {est['file_path']}")


def _print_findings(aggregate):
    findings = sort_findings(aggregate.findings)
    print(f"\nFiles analyzed: {len(aggregate.files_analyzed)}")
    print(f"Findings:       {len(findings)}")
    by_sev = aggregate.summary.get("by_severity", {})
    if by_sev:
        print("  " + "  ".join(f"{s.value}: {by_sev.get(s.value, 0)}" for s in SEVERITY_ORDER))
    for f in findings:
        print(f"  [{f.severity.value}] {f.vuln_type.value} in {f.file_path} "
              f"(confidence {f.confidence}/10, {f.cwe})")
    if aggregate.report_paths:
        print("\nReports:")
        for path in aggregate.report_paths:
            print(f"  {path}")


def cmd_scan(args):
    pipeline = AnalysisPipeline()
    result = pipeline.run_sync(_options(args))
    state = result.state

    if state is not None and state.ledger is not None and state.ledger.call_count:
        print(state.ledger.detailed_report())

    if result.status == RunStatus.COMPLETED:
        aggregate = result.result
        if aggregate.preview:
            _print_preview(aggregate.preview)
        else:
            _print_findings(aggregate)
        return 0

    if result.status == RunStatus.CANCELLED:
        print("\nScan cancelled. Progress was checkpointed; re-run to resume.")
        return 130

    print(f"\nScan failed: {result.error}", file=sys.stderr)
    if state is not None and state.file_results:
        partial = [f for r in state.file_results for f in r.findings]
        print(f"Partial results: {len(state.file_results)} file(s), {len(partial)} finding(s).")
        print("Re-run the same command to resume from the checkpoint.")
    return 1


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="vulnsweep",
        description="Find remotely exploitable vulnerabilities in Python projects with an LLM",
    )
    parser.add_argument("-r", "--root", required=True,
                        help="Path to the project root, or a git URL to clone")
    parser.add_argument("-a", "--analyze",
                        help="File or directory to analyze, relative to the root")
    parser.add_argument("-l", "--llm", choices=sorted(DEFAULTS["models"]),
                        help=f"LLM provider (default: {DEFAULTS['provider']})")
    parser.add_argument("-m", "--model", help="Model name (default depends on provider)")
    parser.add_argument("-b", "--budget", type=float, help="Maximum spend in USD")
    parser.add_argument("-c", "--confidence", type=int,
                        help=f"Minimum confidence 0-10 to report (default: {DEFAULTS['min_confidence']})")
    parser.add_argument("-i", "--iterations", type=int,
                        help=f"Refinement rounds per vulnerability type "
                             f"(default: {DEFAULTS['max_iterations']})")
    parser.add_argument("-v", "--vuln", action="append", type=str.upper, choices=VULN_TYPES,
                        help="Only report this vulnerability type (repeatable)")
    parser.add_argument("--max-cost-per-file", type=float, help="Spend cap per file in USD")
    parser.add_argument("--concurrency", type=int,
                        help="Files analyzed at once (default: 1)")
    parser.add_argument("--config", help="Path to a .vulnhuntr.yaml config file")
    parser.add_argument("--dry-run", action="store_true",
                        help="Estimate cost without calling the LLM")
    parser.add_argument("--no-checkpoint", action="store_true",
                        help="Do not write a checkpoint")
    parser.add_argument("--no-resume", action="store_true",
                        help="Ignore an existing checkpoint and start over")
    parser.add_argument("--verbose", action="count", default=0,
                        help="More log output (repeat for debug)")

    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    try:
        return cmd_scan(args)
    except KeyboardInterrupt:
        print("\nInterrupted.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
