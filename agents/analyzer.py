"""Per-file analyzer: a broad first pass, then per-type refinement rounds.

Phase 1 asks the model for every vulnerability type at once. Phase 2 takes
each type it reported and refines it, feeding back the definitions of the
symbols the model asked for, until one of these happens:

- max_iterations rounds have run
- the model stops asking for context
- the model asks for exactly the same symbols as in the previous round
- the budget policy refuses further spend
- a request fails
- the run is cancelled (the file stays pending)
"""

import json
import os

import structlog

from agents.base import BaseAgent
from core.state import FileResult, response_to_finding
from utils.llm import parse_analysis_response
from utils.prompts import build_initial_prompt, build_refinement_prompt

log = structlog.get_logger(__name__)


def _cancelled(cancel_event):
    return cancel_event is not None and cancel_event.is_set()


class PerFileAnalyzer(BaseAgent):
    """Analyzes one file against the services held in RunState.

    run() never raises for a file-level problem: unreadable files, failed
    requests and budget stops all produce a FileResult with a status.
    """

    name = "analyzer"
    description = "Two-phase LLM vulnerability analysis of a single file"

    def run(self, state, file_path, cancel_event=None):
        """cancel_event is a threading.Event; once set, the file is abandoned
        before the next request and left pending in the checkpoint."""
        if file_path in state.completed_files:
            return self._finish(state, FileResult(file_path, status="resumed"), mark=False)

        ledger, budget = state.ledger, state.budget
        if not budget.allow(ledger.total_cost, ledger.file_cost(file_path)):
            log.warning("file_skipped_budget", file=file_path)
            return self._finish(state, FileResult(file_path, status="budget_skipped"))

        if state.checkpoint is not None:
            state.checkpoint.set_current_file(file_path)

        content = self._read(state, file_path)
        if content is None:
            return self._finish(state, FileResult(file_path, status="read_failed"))
        if not content.strip():
            return self._finish(state, FileResult(file_path, status="no_vulns"))

        result = FileResult(file_path)
        if _cancelled(cancel_event):
            return self._abandon(result)
        try:
            text, phase1_cost = self._call_llm(
                state, state.system_prompt, build_initial_prompt(file_path, content),
                file_path=file_path, call_kind="initial", json_prefill=True,
            )
        except Exception as e:
            log.error("initial_analysis_failed", file=file_path, error=str(e))
            state.errors.append(f"{file_path}: {e}")
            result.status = "llm_failed"
            return self._finish(state, result)
        result.llm_calls += 1

        initial = parse_analysis_response(text)
        log.info("initial_analysis", file=file_path, confidence=initial.confidence_score,
                 types=[vt.value for vt in initial.vulnerability_types])

        vuln_types = [vt for vt in initial.vulnerability_types
                      if not state.config.vuln_types or vt.value in state.config.vuln_types]
        if not vuln_types:
            result.status = "no_vulns"
            return self._finish(state, result)

        for vuln_type in vuln_types:
            finding = self._refine(state, file_path, content, vuln_type, initial, phase1_cost,
                                   result, cancel_event)
            if result.status == "cancelled":
                return self._abandon(result)
            if finding is not None:
                result.findings.append(finding)

        return self._finish(state, result)

    def _refine(self, state, file_path, content, vuln_type, initial, phase1_cost, result,
                cancel_event=None):
        """Refinement rounds for one vulnerability type; returns a Finding or None."""
        config, ledger, budget = state.config, state.ledger, state.budget
        current = initial
        iter_cost = phase1_cost
        definitions = []
        resolved = set()
        prev_names = frozenset()

        for i in range(config.max_iterations):
            if _cancelled(cancel_event):
                result.status = "cancelled"
                return None
            if not budget.allow(ledger.total_cost, ledger.file_cost(file_path)):
                break
            if not budget.allow_iteration(file_path, i, iter_cost, ledger.total_cost):
                break

            if i > 0:
                names = current.requested_names
                if not current.context_code:
                    log.debug("refinement_no_context", file=file_path, type=vuln_type.value, iteration=i)
                    break
                if names == prev_names:
                    log.debug("refinement_converged", file=file_path, type=vuln_type.value, iteration=i)
                    break
                prev_names = names

                for request in current.context_code:
                    if request.name in resolved:
                        continue
                    resolved.add(request.name)
                    definition = state.resolver.resolve(
                        request.name, request.code_line, state.all_files, state.local_path,
                    )
                    if definition is not None:
                        definitions.append(definition)
                    else:
                        log.debug("context_unresolved", file=file_path, name=request.name)

            prompt = build_refinement_prompt(
                file_path, content, definitions, vuln_type.value,
                json.dumps(current.to_dict(), indent=2),
            )
            try:
                text, iter_cost = self._call_llm(
                    state, state.system_prompt, prompt,
                    file_path=file_path, call_kind="secondary", json_prefill=True,
                )
            except Exception as e:
                log.error("refinement_failed", file=file_path, type=vuln_type.value,
                          iteration=i, error=str(e))
                state.errors.append(f"{file_path} [{vuln_type.value}]: {e}")
                break
            result.llm_calls += 1
            current = parse_analysis_response(text)
            log.info("refinement", file=file_path, type=vuln_type.value, iteration=i,
                     confidence=current.confidence_score, requested=sorted(current.requested_names))

        if current.confidence_score < config.min_confidence:
            return None

        context_code = "\n\n".join(f"# {d.file_path}: {d.name}\n{d.source}" for d in definitions)
        finding = response_to_finding(current, file_path, vuln_type, context_code=context_code)
        log.info("finding", file=file_path, type=vuln_type.value,
                 confidence=finding.confidence, severity=finding.severity.value)
        return finding

    def _read(self, state, file_path):
        path = os.path.join(state.local_path, file_path)
        try:
            with open(path, encoding="utf-8", errors="replace") as f:
                return f.read()
        except OSError as e:
            log.warning("file_unreadable", file=file_path, error=str(e))
            state.errors.append(f"{file_path}: {e}")
            return None

    def _finish(self, state, result, mark=True):
        if mark and state.checkpoint is not None:
            try:
                state.checkpoint.mark_file_complete(result.file_path, result.findings)
            except OSError as e:
                log.error("checkpoint_write_failed", file=result.file_path, error=str(e))
        state.file_results.append(result)
        return result

    def _abandon(self, result):
        # not marked complete, so a resumed run scans the file again
        log.info("file_cancelled", file=result.file_path, llm_calls=result.llm_calls)
        result.status = "cancelled"
        result.findings = []
        return result
