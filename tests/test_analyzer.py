"""Tests for agents.analyzer: scripted LLM replies, verify the refinement loop."""

import threading

from agents.analyzer import PerFileAnalyzer
from core.budget import BudgetPolicy
from core.state import Severity, VulnType

from conftest import FakeLLM, response

VIEW = (
    "from app.db import run_query\n\n"
    "def search(request):\n"
    "    return run_query(request.args['q'])\n"
)
DB = "def run_query(q):\n    return cursor.execute('SELECT * FROM t WHERE n = %s' % q)\n"


def test_no_vulns_single_call(make_state):
    state = make_state(replies=[response(types=[])])
    result = PerFileAnalyzer().run(state, "app.py")

    assert result.status == "no_vulns"
    assert result.findings == []
    assert state.ledger.call_count == 1
    assert state.checkpoint.record.completed_files == ["app.py"]
    assert state.file_results == [result]


def test_refinement_converges_to_finding(make_state):
    state = make_state(
        files={"app/views.py": VIEW, "app/db.py": DB},
        replies=[
            response(types=["SQLI"], confidence=3),
            response(types=["SQLI"], confidence=6, context=["run_query"]),
            response(types=["SQLI"], confidence=8, poc="q=' OR 1=1--"),
        ],
    )
    result = PerFileAnalyzer().run(state, "app/views.py")

    assert result.status == "analyzed"
    assert len(result.findings) == 1
    finding = result.findings[0]
    assert finding.vuln_type == VulnType.SQLI
    assert finding.severity == Severity.HIGH
    assert finding.cwe == "CWE-89"
    assert finding.confidence == 8
    assert finding.poc == "q=' OR 1=1--"
    assert "# app/db.py: run_query" in finding.context_code
    assert state.ledger.call_count == 3
    assert result.llm_calls == 3


def test_resolved_definition_reaches_next_prompt(make_state):
    state = make_state(
        files={"app/views.py": VIEW, "app/db.py": DB},
        replies=[
            response(types=["SQLI"], confidence=3),
            response(types=["SQLI"], confidence=6, context=["run_query"]),
            response(types=["SQLI"], confidence=8),
        ],
    )
    PerFileAnalyzer().run(state, "app/views.py")

    last_prompt = state.llm.calls[-1]["user"]
    assert "<context_name_requested>run_query</context_name_requested>" in last_prompt
    assert "cursor.execute" in last_prompt


def test_low_confidence_is_not_reported(make_state):
    state = make_state(replies=[
        response(types=["XSS"], confidence=2),
        response(types=["XSS"], confidence=3),
    ])
    result = PerFileAnalyzer().run(state, "app.py")

    assert result.findings == []
    assert result.status == "analyzed"


def test_budget_exceeded_before_file(make_state):
    budget = BudgetPolicy(max_budget_usd=0.01)
    state = make_state(budget=budget, max_budget_usd=0.01)
    state.ledger.record(10_000, 0, "claude-sonnet-4-5-20250929")

    result = PerFileAnalyzer().run(state, "app.py")

    assert result.status == "budget_skipped"
    assert state.llm.calls == []
    assert state.checkpoint.record.completed_files == ["app.py"]


def test_repeated_context_request_stops_loop(make_state):
    state = make_state(
        max_iterations=7,
        replies=[
            response(types=["RCE"], confidence=4),
            response(types=["RCE"], confidence=5, context=["parse_input"]),
            response(types=["RCE"], confidence=6, context=["parse_input"]),
        ],
    )
    result = PerFileAnalyzer().run(state, "app.py")

    # one initial call plus two refinement rounds
    assert state.ledger.call_count == 3
    assert result.findings[0].confidence == 6
    assert state.llm.replies == []


def test_max_iterations_caps_rounds(make_state):
    state = make_state(
        max_iterations=2,
        replies=[
            response(types=["SSRF"], confidence=4),
            response(types=["SSRF"], confidence=5, context=["fetch"]),
            response(types=["SSRF"], confidence=7, context=["build_url"]),
        ],
    )
    result = PerFileAnalyzer().run(state, "app.py")

    assert state.ledger.call_count == 3
    assert result.findings[0].confidence == 7


def test_vuln_filter_drops_other_types(make_state):
    state = make_state(
        vuln_types=["LFI"],
        replies=[
            response(types=["SQLI", "LFI"], confidence=5),
            response(types=["LFI"], confidence=9),
        ],
    )
    result = PerFileAnalyzer().run(state, "app.py")

    assert [f.vuln_type for f in result.findings] == [VulnType.LFI]
    assert result.findings[0].severity == Severity.CRITICAL
    assert state.ledger.call_count == 2


def test_each_reported_type_is_refined(make_state):
    state = make_state(replies=[
        response(types=["SQLI", "XSS"], confidence=5),
        response(types=["SQLI"], confidence=7),
        response(types=["XSS"], confidence=6),
    ])
    result = PerFileAnalyzer().run(state, "app.py")

    assert [f.vuln_type for f in result.findings] == [VulnType.SQLI, VulnType.XSS]
    assert "<example_bypasses>" in state.llm.calls[1]["user"]


def test_initial_call_failure(make_state):
    state = make_state(replies=[RuntimeError("connection reset")])
    result = PerFileAnalyzer().run(state, "app.py")

    assert result.status == "llm_failed"
    assert state.ledger.call_count == 0
    assert state.checkpoint.record.completed_files == ["app.py"]
    assert any("connection reset" in e for e in state.errors)


def test_refinement_failure_keeps_last_report(make_state):
    state = make_state(replies=[
        response(types=["LFI"], confidence=6),
        RuntimeError("overloaded"),
    ])
    result = PerFileAnalyzer().run(state, "app.py")

    # the phase-1 report is still the best answer
    assert result.findings[0].confidence == 6
    assert result.findings[0].vuln_type == VulnType.LFI


def test_unparsable_reply_is_no_vulns(make_state):
    state = make_state(replies=["I cannot help with that."])
    result = PerFileAnalyzer().run(state, "app.py")

    assert result.status == "no_vulns"
    assert result.findings == []


def test_missing_file_is_read_failed(make_state):
    state = make_state()
    result = PerFileAnalyzer().run(state, "gone.py")

    assert result.status == "read_failed"
    assert state.llm.calls == []


def test_empty_file_makes_no_calls(make_state):
    state = make_state(files={"empty.py": "\n\n"})
    result = PerFileAnalyzer().run(state, "empty.py")

    assert result.status == "no_vulns"
    assert state.llm.calls == []


def test_already_completed_file_is_skipped(make_state):
    state = make_state()
    state.completed_files = {"app.py"}
    result = PerFileAnalyzer().run(state, "app.py")

    assert result.status == "resumed"
    assert state.llm.calls == []
    assert state.checkpoint.record.completed_files == []


def test_iteration_cost_cap_stops_refinement(make_state):
    budget = BudgetPolicy(max_cost_per_iteration=0.001)
    state = make_state(budget=budget, replies=[
        response(types=["SQLI"], confidence=6),
    ])
    result = PerFileAnalyzer().run(state, "app.py")

    # phase-1 cost (0.0105) is above the cap, so no refinement is attempted
    assert state.ledger.call_count == 1
    assert result.findings[0].confidence == 6


def test_budget_overshoot_is_at_most_one_call(make_state):
    budget = BudgetPolicy(max_budget_usd=0.02)
    state = make_state(budget=budget, max_budget_usd=0.02, replies=[
        response(types=["RCE"], confidence=5),
        response(types=["RCE"], confidence=6, context=["a"]),
        response(types=["RCE"], confidence=7, context=["b"]),
        response(types=["RCE"], confidence=8, context=["c"]),
    ])
    result = PerFileAnalyzer().run(state, "app.py")

    # each call costs 0.0105: the second one crosses the cap and nothing follows
    assert state.ledger.call_count == 2
    assert state.ledger.total_cost < 0.02 + 0.0105
    assert result.findings[0].confidence == 6


def test_file_cost_cap_stops_refinement(make_state):
    budget = BudgetPolicy(max_cost_per_file=0.02)
    state = make_state(budget=budget, max_iterations=7, replies=[
        response(types=["SQLI"], confidence=5),
        response(types=["SQLI"], confidence=6, context=["a"]),
        response(types=["SQLI"], confidence=7, context=["b"]),
        response(types=["SQLI"], confidence=8, context=["c"]),
    ])
    result = PerFileAnalyzer().run(state, "app.py")

    # phase 1 plus one round reach 0.021; the next round is refused
    assert state.ledger.call_count == 2
    assert state.ledger.file_cost("app.py") < 0.02 + 0.0105
    assert result.findings[0].confidence == 6


class CancelOnCall(FakeLLM):
    """Sets the event while answering the given call."""

    def __init__(self, replies, event, on_call):
        super().__init__(replies)
        self.event = event
        self.on_call = on_call

    def send(self, *args, **kwargs):
        text = super().send(*args, **kwargs)
        if len(self.calls) == self.on_call:
            self.event.set()
        return text


def test_cancelled_before_first_call(make_state):
    state = make_state(replies=[response(types=["RCE"], confidence=9)])
    event = threading.Event()
    event.set()
    result = PerFileAnalyzer().run(state, "app.py", cancel_event=event)

    assert result.status == "cancelled"
    assert state.llm.calls == []
    assert state.checkpoint.record.completed_files == []
    assert state.checkpoint.record.pending_files == ["app.py"]


def test_cancel_during_refinement_stops_requests(make_state):
    event = threading.Event()
    state = make_state()
    state.llm = CancelOnCall([
        response(types=["SQLI", "XSS"], confidence=5),
        response(types=["SQLI"], confidence=7, context=["a"]),
        response(types=["SQLI"], confidence=8, context=["b"]),
        response(types=["XSS"], confidence=8, context=["c"]),
    ], event, on_call=2)
    result = PerFileAnalyzer().run(state, "app.py", cancel_event=event)

    assert result.status == "cancelled"
    assert result.findings == []
    assert len(state.llm.calls) == 2
    assert "app.py" not in state.checkpoint.record.completed_files
