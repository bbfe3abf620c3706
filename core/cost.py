"""Token/cost bookkeeping for LLM calls, plus dry-run estimation."""

import math
import threading
import time
from dataclasses import asdict
from datetime import datetime, timezone

from core.state import CostRecord

# USD per 1,000 tokens
PRICING = {
    # Anthropic
    "claude-sonnet-4-5-20250929": {"input": 0.003, "output": 0.015},
    "claude-sonnet-4-5": {"input": 0.003, "output": 0.015},
    "claude-sonnet-4-20250514": {"input": 0.003, "output": 0.015},
    "claude-3-5-sonnet-20241022": {"input": 0.003, "output": 0.015},
    "claude-3-5-sonnet-latest": {"input": 0.003, "output": 0.015},
    "claude-3-opus-20240229": {"input": 0.015, "output": 0.075},
    "claude-3-haiku-20240307": {"input": 0.00025, "output": 0.00125},
    # OpenAI
    "gpt-4o": {"input": 0.005, "output": 0.015},
    "gpt-4o-2024-08-06": {"input": 0.005, "output": 0.015},
    "chatgpt-4o-latest": {"input": 0.005, "output": 0.015},
    "gpt-4-turbo": {"input": 0.01, "output": 0.03},
    "gpt-3.5-turbo": {"input": 0.0005, "output": 0.0015},
    # Local models are free
    "ollama": {"input": 0.0, "output": 0.0},
    "llama3": {"input": 0.0, "output": 0.0},
    "codellama": {"input": 0.0, "output": 0.0},
    "mistral": {"input": 0.0, "output": 0.0},
}

DEFAULT_PRICING = {"input": 0.01, "output": 0.03}

CHARS_PER_TOKEN = 4


def get_model_pricing(model):
    """Exact match, then substring match, then model-family fallback."""
    if model in PRICING:
        return PRICING[model]

    lower = model.lower()
    for known, pricing in PRICING.items():
        if known in lower or lower in known:
            return pricing

    if "claude" in lower:
        return PRICING["claude-sonnet-4-5"]
    if "gpt-4o" in lower:
        return PRICING["gpt-4o"]
    if "gpt-4" in lower:
        return PRICING["gpt-4-turbo"]
    if "gpt-3" in lower:
        return PRICING["gpt-3.5-turbo"]
    return DEFAULT_PRICING


def calculate_cost(input_tokens, output_tokens, model):
    pricing = get_model_pricing(model)
    return (input_tokens / 1000) * pricing["input"] + (output_tokens / 1000) * pricing["output"]


def estimate_tokens(text):
    """Rough token count (~4 characters per token)."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


class CostLedger:
    """Append-only record of every LLM call and what it cost.

    Access is serialized with a lock so the ledger stays consistent when
    files are analyzed concurrently. The lock only guards in-memory updates.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._records = []
        self._total_input = 0
        self._total_output = 0
        self._total_cost = 0.0
        self._by_file = {}
        self._by_model = {}
        self._started = datetime.now(timezone.utc)
        self._clock_start = time.monotonic()

    def record(self, input_tokens, output_tokens, model, file_path=None, call_kind="analysis"):
        """Record one call; returns its cost in USD."""
        cost = calculate_cost(input_tokens, output_tokens, model)
        entry = CostRecord(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            model=model,
            cost_usd=cost,
            timestamp=datetime.now(timezone.utc).isoformat(),
            file_path=file_path,
            call_kind=call_kind,
        )
        with self._lock:
            self._records.append(entry)
            self._total_input += input_tokens
            self._total_output += output_tokens
            self._total_cost += cost
            if file_path:
                self._by_file[file_path] = self._by_file.get(file_path, 0.0) + cost
            self._by_model[model] = self._by_model.get(model, 0.0) + cost
        return cost

    @property
    def records(self):
        with self._lock:
            return tuple(self._records)

    @property
    def total_cost(self):
        return self._total_cost

    @property
    def total_input_tokens(self):
        return self._total_input

    @property
    def total_output_tokens(self):
        return self._total_output

    @property
    def total_tokens(self):
        return self._total_input + self._total_output

    @property
    def call_count(self):
        return len(self._records)

    def file_cost(self, file_path):
        return self._by_file.get(file_path, 0.0)

    def summary(self):
        with self._lock:
            return {
                "total_cost_usd": round(self._total_cost, 4),
                "total_input_tokens": self._total_input,
                "total_output_tokens": self._total_output,
                "total_tokens": self._total_input + self._total_output,
                "api_calls": len(self._records),
                "costs_by_file": {k: round(v, 4) for k, v in self._by_file.items()},
                "costs_by_model": {k: round(v, 4) for k, v in self._by_model.items()},
                "elapsed_seconds": round(time.monotonic() - self._clock_start, 1),
                "start_time": self._started.isoformat(),
            }

    def detailed_report(self):
        s = self.summary()
        lines = [
            "",
            "=" * 60,
            "COST SUMMARY",
            "=" * 60,
            f"Total Cost: ${s['total_cost_usd']:.4f} USD",
            f"Total Tokens: {s['total_tokens']:,} "
            f"({s['total_input_tokens']:,} in / {s['total_output_tokens']:,} out)",
            f"API Calls: {s['api_calls']}",
            f"Elapsed Time: {s['elapsed_seconds']} seconds",
            "",
        ]
        if s["costs_by_model"]:
            lines.append("Costs by Model:")
            for model, cost in sorted(s["costs_by_model"].items(), key=lambda kv: -kv[1]):
                lines.append(f"  {model}: ${cost:.4f}")
            lines.append("")
        if s["costs_by_file"]:
            lines.append("Top 10 Files by Cost:")
            top = sorted(s["costs_by_file"].items(), key=lambda kv: -kv[1])[:10]
            for path, cost in top:
                lines.append(f"  ${cost:.4f} - {path}")
            lines.append("")
        lines.append("=" * 60)
        return "\n".join(lines)

    def to_dict(self):
        with self._lock:
            return {
                "calls": [asdict(r) for r in self._records],
                "total_input_tokens": self._total_input,
                "total_output_tokens": self._total_output,
                "total_cost": self._total_cost,
                "costs_by_file": dict(self._by_file),
                "costs_by_model": dict(self._by_model),
                "start_time": self._started.isoformat(),
            }

    def restore(self, data):
        """Load a snapshot produced by to_dict(), replacing current contents."""
        with self._lock:
            self._records = [CostRecord(**c) for c in data.get("calls", [])]
            self._total_input = data.get("total_input_tokens", 0)
            self._total_output = data.get("total_output_tokens", 0)
            self._total_cost = data.get("total_cost", 0.0)
            self._by_file = dict(data.get("costs_by_file", {}))
            self._by_model = dict(data.get("costs_by_model", {}))
            if data.get("start_time"):
                self._started = datetime.fromisoformat(data["start_time"])

    @classmethod
    def from_dict(cls, data):
        ledger = cls()
        ledger.restore(data)
        return ledger


# Heuristics for dry-run estimates
PROMPT_OVERHEAD_TOKENS = 3000
INITIAL_OUTPUT_TOKENS = 2000
SECONDARY_OUTPUT_TOKENS = 2500
CONTEXT_TOKENS_PER_ITERATION = 1000
AVG_VULN_TYPES_FOUND = 2.5
AVG_ITERATIONS_PER_VULN = 5
README_OVERHEAD_USD = 0.01


def estimate_file_cost(content, file_path, model):
    file_tokens = estimate_tokens(content)
    pricing = get_model_pricing(model)

    initial_input = file_tokens + PROMPT_OVERHEAD_TOKENS
    secondary_calls = AVG_VULN_TYPES_FOUND * AVG_ITERATIONS_PER_VULN
    avg_context = CONTEXT_TOKENS_PER_ITERATION * (AVG_ITERATIONS_PER_VULN / 2)
    secondary_input = file_tokens + PROMPT_OVERHEAD_TOKENS + avg_context

    total_input = round(initial_input + secondary_input * secondary_calls)
    total_output = round(INITIAL_OUTPUT_TOKENS + SECONDARY_OUTPUT_TOKENS * secondary_calls)
    cost = (total_input / 1000) * pricing["input"] + (total_output / 1000) * pricing["output"]

    return {
        "file_path": file_path,
        "file_tokens": file_tokens,
        "estimated_input_tokens": total_input,
        "estimated_output_tokens": total_output,
        "estimated_total_tokens": total_input + total_output,
        "estimated_calls": round(1 + secondary_calls),
        "estimated_cost_usd": round(cost, 4),
    }


def estimate_analysis_cost(files, model):
    """files: iterable of (path, content) pairs."""
    estimates = [estimate_file_cost(content, path, model) for path, content in files]
    total_input = sum(e["estimated_input_tokens"] for e in estimates)
    total_output = sum(e["estimated_output_tokens"] for e in estimates)
    total_cost = sum(e["estimated_cost_usd"] for e in estimates) + README_OVERHEAD_USD

    return {
        "model": model,
        "file_count": len(estimates),
        "estimated_input_tokens": total_input,
        "estimated_output_tokens": total_output,
        "estimated_total_tokens": total_input + total_output,
        "estimated_cost_usd": round(total_cost, 4),
        "estimated_cost_range": {
            "low": round(total_cost * 0.5, 4),
            "high": round(total_cost * 1.5, 4),
        },
        "file_estimates": estimates,
    }
