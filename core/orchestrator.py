"""Analysis pipeline: the concrete stage graph run on core.engine.

setup
  -> parallel(discover-files, summarize-readme)
  -> prepare-analysis
  -> conditional(is-dry-run){preview | start-checkpoint}
  -> tap(log-plan)
  -> for_each(files){analyze-file}
  -> collect-findings
  -> parallel(write-json, write-sarif, write-md, write-html, write-csv, write-cost-summary)
  -> conditional(was-cloned){cleanup}
  -> finalize

Every stage reads and writes its services through RunState (ctx.state);
only the per-stage values in between travel as `data`.
"""

import asyncio
import os
from dataclasses import fields
from datetime import datetime

import structlog

from agents.analyzer import PerFileAnalyzer
from agents.discovery import DiscoveryAgent
from agents.readme_summarizer import ReadmeSummarizer
from agents.report_writer import CostSummaryWriter, ReportWriter
from config.defaults import DEFAULTS
from config.loader import load_config, merge_config, to_run_options
from core.budget import BudgetPolicy
from core.checkpoint import CheckpointStore
from core.cost import CostLedger, estimate_analysis_cost
from core.engine import Hooks, build as build_pipeline, conditional, for_each, parallel, sequential, tap
from core.state import AggregateResult, RunConfig, RunState, confidence_bucket
from utils.llm import get_client
from utils.prompts import build_system_prompt
from utils.repo import copy_reports, remove_clone, resolve_repo
from utils.symbol_finder import SymbolResolver

log = structlog.get_logger(__name__)

REPORT_FORMATS = ["json", "sarif", "md", "html", "csv"]

_RUN_FIELDS = {f.name for f in fields(RunConfig)}


def build_run_config(options, start_dir=None):
    """Merge explicit options over the project config file into a RunConfig."""
    file_config = to_run_options(load_config(options.get("config_path"), start_dir=start_dir))
    merged = merge_config(file_config, options)
    return RunConfig(**{k: v for k, v in merged.items() if k in _RUN_FIELDS})


def summarize(findings, files_analyzed):
    by_type, by_confidence, by_severity = {}, {}, {}
    for f in findings:
        by_type[f.vuln_type.value] = by_type.get(f.vuln_type.value, 0) + 1
        bucket = confidence_bucket(f.confidence)
        by_confidence[bucket] = by_confidence.get(bucket, 0) + 1
        by_severity[f.severity.value] = by_severity.get(f.severity.value, 0) + 1
    return {
        "total_files": len(files_analyzed),
        "total_findings": len(findings),
        "by_vuln_type": by_type,
        "by_confidence": by_confidence,
        "by_severity": by_severity,
    }


class AnalysisPipeline:
    """Builds and runs the scan. llm and resolver may be injected (tests, embedding)."""

    def __init__(self, llm=None, resolver=None):
        self.llm = llm
        self.resolver = resolver
        self.analyzer = PerFileAnalyzer()
        self.discovery = DiscoveryAgent()
        self.readme = ReadmeSummarizer()
        self.pipeline = None

    # --- stages -----------------------------------------------------------

    def setup(self, data, ctx):
        state = ctx.state
        target = data.repo_root if isinstance(data, RunConfig) else data["repo_root"]
        state.local_path, state.is_cloned = resolve_repo(target)

        if isinstance(data, RunConfig):
            config = data
        else:
            config = build_run_config(data, start_dir=state.local_path)
        state.config = config

        state.run_stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        state.reports_dir = config.reports_dir or os.path.join(state.local_path, DEFAULTS["reports_dir"])
        state.ledger = CostLedger()
        state.budget = BudgetPolicy(
            max_budget_usd=config.max_budget_usd,
            warn_threshold=config.warn_threshold,
            max_cost_per_file=config.max_cost_per_file,
            max_cost_per_iteration=config.max_cost_per_iteration,
        )

        # A clone lives in a temp dir, so its checkpoint is kept in the CWD
        base = os.getcwd() if state.is_cloned else state.local_path
        state.checkpoint = CheckpointStore(
            config.checkpoint_dir or os.path.join(base, DEFAULTS["checkpoint_dir"]),
            enabled=config.checkpoint and not config.dry_run,
        )
        state.resolver = self.resolver or SymbolResolver()
        if self.llm is not None:
            state.llm = self.llm
        elif not config.dry_run:
            state.llm = get_client(config.provider, config.model_name)

        if config.resume and state.checkpoint.can_resume():
            record = state.checkpoint.load()
            if record is not None and record.repo_root == self._repo_key(state):
                record = state.checkpoint.resume(state.ledger)
                state.resumed = True
                state.completed_files = set(record.completed_files)
                state.resumed_findings = record.findings()
            elif record is not None:
                log.warning("checkpoint_ignored", checkpoint_repo=record.repo_root,
                            repo=self._repo_key(state))

        log.info("setup_complete", root=state.local_path, cloned=state.is_cloned,
                 provider=config.provider, model=config.model_name, resumed=state.resumed)
        return config

    @staticmethod
    def _repo_key(state):
        return state.config.repo_root if state.is_cloned else state.local_path

    def discover_files(self, data, ctx):
        return self.discovery.run(ctx.state)

    def summarize_readme(self, data, ctx):
        return self.readme.run(ctx.state)

    def prepare_analysis(self, data, ctx):
        state = ctx.state
        discovery, summary = data
        state.all_files = discovery["all_files"]
        state.files_to_analyze = discovery["files_to_analyze"]
        state.readme_summary = summary
        state.system_prompt = build_system_prompt(summary)
        return state.files_to_analyze

    def is_dry_run(self, data, ctx):
        return ctx.state.config.dry_run

    def preview(self, files, ctx):
        state = ctx.state
        contents = []
        for rel in files:
            try:
                with open(os.path.join(state.local_path, rel), encoding="utf-8", errors="replace") as f:
                    contents.append((rel, f.read()))
            except OSError as e:
                log.warning("file_unreadable", file=rel, error=str(e))
        state.preview = estimate_analysis_cost(contents, state.config.model_name)
        return files

    def start_checkpoint(self, files, ctx):
        state = ctx.state
        if not state.resumed:
            state.checkpoint.start(self._repo_key(state), files, state.config.model_name, state.ledger)
        return files

    def log_plan(self, files, ctx):
        state = ctx.state
        pending = [f for f in files if f not in state.completed_files]
        log.info("analysis_plan", files=len(files), pending=len(pending),
                 already_done=len(files) - len(pending), dry_run=state.config.dry_run,
                 budget=state.config.max_budget_usd)

    def files_for_analysis(self, data, ctx):
        if ctx.state.config.dry_run:
            return []
        return ctx.state.files_to_analyze

    def analyze_file(self, file_path, ctx):
        return self.analyzer.run(ctx.state, file_path, cancel_event=ctx.cancel_event)

    def collect_findings(self, results, ctx):
        state = ctx.state
        findings = list(state.resumed_findings)
        for result in results:
            findings.extend(result.findings)
        # resumed files count too: their findings are part of this result
        files_analyzed = [r.file_path for r in results]

        aggregate = AggregateResult(
            findings=findings,
            files_analyzed=files_analyzed,
            total_cost_usd=state.ledger.total_cost,
            summary=summarize(findings, files_analyzed),
            preview=state.preview,
        )
        state.aggregate = aggregate
        log.info("findings_collected", findings=len(findings), files=len(files_analyzed),
                 cost=round(aggregate.total_cost_usd, 4))
        return aggregate

    def _writer_step(self, fmt):
        def write(aggregate, ctx):
            state = ctx.state
            if state.config.dry_run:
                return None
            return ReportWriter(fmt, state.reports_dir, stamp=state.run_stamp).write(aggregate)
        return write

    def write_cost_summary(self, aggregate, ctx):
        state = ctx.state
        if state.config.dry_run:
            return None
        return CostSummaryWriter(state.reports_dir, stamp=state.run_stamp).write(state.ledger)

    def was_cloned(self, data, ctx):
        return ctx.state.is_cloned

    def cleanup(self, paths, ctx):
        state = ctx.state
        written = [p for p in paths if p]
        copied = copy_reports(written, os.path.join(os.getcwd(), DEFAULTS["reports_dir"]))
        remove_clone(state.local_path)
        return tuple(copied)

    def finalize(self, paths, ctx):
        state = ctx.state
        state.report_paths = [p for p in paths if p]
        state.aggregate.report_paths = list(state.report_paths)
        state.checkpoint.finalize(success=True)
        return state.aggregate

    # --- hooks ------------------------------------------------------------

    def on_start(self, run):
        log.info("run_started", execution_id=run.execution_id)

    def on_stage_end(self, stage_id, data, run):
        log.debug("stage_complete", stage=stage_id, execution_id=run.execution_id)

    def on_error(self, error, run, cancelled):
        state = run.state
        if cancelled:
            log.warning("run_cancelled", execution_id=run.execution_id)
        else:
            log.error("run_error", execution_id=run.execution_id, error=str(error))
        if state is not None and state.checkpoint is not None:
            state.checkpoint.flush()
            log.info("checkpoint_flushed", progress=state.checkpoint.progress())

    def on_finish(self, result):
        state = result.state
        cost = state.ledger.total_cost if state is not None and state.ledger else 0.0
        log.info("run_finished", status=result.status.value, execution_id=result.execution_id,
                 cost=round(cost, 4))

    # --- graph ------------------------------------------------------------

    def build(self, file_concurrency=DEFAULTS["file_concurrency"]):
        writers = [sequential(f"write-{fmt}", self._writer_step(fmt)) for fmt in REPORT_FORMATS]
        stages = [
            sequential("setup", self.setup),
            parallel(
                "discover-and-summarize",
                sequential("discover-files", self.discover_files),
                sequential("summarize-readme", self.summarize_readme),
            ),
            sequential("prepare-analysis", self.prepare_analysis),
            conditional(
                "dry-run-or-checkpoint", self.is_dry_run,
                then=sequential("preview", self.preview),
                otherwise=sequential("start-checkpoint", self.start_checkpoint),
            ),
            tap("log-plan", self.log_plan),
            for_each(
                "analyze-files",
                sequential("analyze-file", self.analyze_file),
                items=self.files_for_analysis,
                concurrency=file_concurrency,
            ),
            sequential("collect-findings", self.collect_findings),
            parallel(
                "write-reports",
                *writers,
                sequential("write-cost-summary", self.write_cost_summary),
            ),
            conditional("was-cloned", self.was_cloned,
                        then=sequential("cleanup", self.cleanup)),
            sequential("finalize", self.finalize),
        ]
        hooks = Hooks(
            on_start=self.on_start,
            on_stage_end=self.on_stage_end,
            on_error=self.on_error,
            on_finish=self.on_finish,
        )
        return build_pipeline(stages, hooks)

    async def run(self, config):
        """config is a RunConfig, or a dict of explicit options merged over the
        project config file (None values mean 'not given')."""
        concurrency = (config.file_concurrency if isinstance(config, RunConfig)
                       else config.get("file_concurrency") or DEFAULTS["file_concurrency"])
        self.pipeline = self.build(concurrency)
        state = RunState(config=config if isinstance(config, RunConfig) else None)
        return await self.pipeline.run(config, state)

    def run_sync(self, config):
        return asyncio.run(self.run(config))

    def cancel(self):
        return self.pipeline.cancel() if self.pipeline is not None else False
