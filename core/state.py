"""Pipeline state models shared across all stages."""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from config.defaults import DEFAULTS
from config.vulns import CWE_MAP, CWE_NAMES


class VulnType(str, Enum):
    LFI = "LFI"
    RCE = "RCE"
    SSRF = "SSRF"
    AFO = "AFO"
    SQLI = "SQLI"
    XSS = "XSS"
    IDOR = "IDOR"


class Severity(str, Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    INFO = "INFO"


SEVERITY_ORDER = [Severity.CRITICAL, Severity.HIGH, Severity.MEDIUM, Severity.LOW, Severity.INFO]

SEVERITY_SCORES = {
    Severity.CRITICAL: 10,
    Severity.HIGH: 8,
    Severity.MEDIUM: 5,
    Severity.LOW: 3,
    Severity.INFO: 1,
}


def severity_for(confidence: int) -> Severity:
    """Bucket a 0-10 confidence score into a severity."""
    if confidence >= 9:
        return Severity.CRITICAL
    if confidence >= 7:
        return Severity.HIGH
    if confidence >= 5:
        return Severity.MEDIUM
    if confidence >= 3:
        return Severity.LOW
    return Severity.INFO


def confidence_bucket(confidence: int) -> str:
    if confidence >= 8:
        return "high"
    if confidence >= 5:
        return "medium"
    return "low"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _vuln_type(value) -> VulnType:
    try:
        return VulnType(value)
    except ValueError:
        raise ValueError(f"Unknown vulnerability type: {value!r}") from None


@dataclass(frozen=True)
class ContextCodeRequest:
    name: str           # symbol the model wants to see
    reason: str
    code_line: str      # line where the symbol is referenced

    @classmethod
    def from_dict(cls, data: dict) -> ContextCodeRequest:
        if not isinstance(data, dict):
            raise ValueError("context_code items must be objects")
        name = data.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ValueError("context_code item needs a non-empty name")
        return cls(
            name=name.strip(),
            reason=str(data.get("reason") or ""),
            code_line=str(data.get("code_line") or ""),
        )


@dataclass(frozen=True)
class AnalysisResponse:
    """One structured verdict from the model.

    Validation is strict: an out-of-range confidence or an unknown
    vulnerability type raises ValueError rather than being clamped or dropped.
    """

    scratchpad: str
    analysis: str
    poc: str | None
    confidence_score: int
    vulnerability_types: tuple[VulnType, ...] = ()
    context_code: tuple[ContextCodeRequest, ...] = ()

    def __post_init__(self):
        score = self.confidence_score
        if isinstance(score, bool) or not isinstance(score, int):
            raise ValueError(f"confidence_score must be an integer, got {score!r}")
        if not 0 <= score <= 10:
            raise ValueError(f"confidence_score must be between 0 and 10, got {score}")

        # Keep first-seen order, drop repeats
        seen = []
        for vt in self.vulnerability_types:
            vt = _vuln_type(vt)
            if vt not in seen:
                seen.append(vt)
        object.__setattr__(self, "vulnerability_types", tuple(seen))
        object.__setattr__(self, "context_code", tuple(self.context_code))

    @classmethod
    def from_dict(cls, data: dict) -> AnalysisResponse:
        if not isinstance(data, dict):
            raise ValueError("response must be a JSON object")

        score = data.get("confidence_score")
        # JSON has one number type; 7.0 is an integer score, 7.5 is not
        if isinstance(score, float) and score.is_integer():
            score = int(score)

        types = data.get("vulnerability_types") or []
        if not isinstance(types, list):
            raise ValueError("vulnerability_types must be a list")
        context = data.get("context_code") or []
        if not isinstance(context, list):
            raise ValueError("context_code must be a list")

        poc = data.get("poc")
        return cls(
            scratchpad=str(data.get("scratchpad") or ""),
            analysis=str(data.get("analysis") or ""),
            poc=str(poc) if poc else None,
            confidence_score=score,
            vulnerability_types=tuple(types),
            context_code=tuple(ContextCodeRequest.from_dict(c) for c in context),
        )

    @classmethod
    def placeholder(cls, raw_text: str = "") -> AnalysisResponse:
        """Zero-confidence stand-in for a reply that could not be parsed."""
        return cls(
            scratchpad=raw_text,
            analysis="Failed to parse structured response",
            poc=None,
            confidence_score=0,
        )

    @property
    def requested_names(self) -> frozenset[str]:
        return frozenset(c.name for c in self.context_code)

    def to_dict(self) -> dict:
        return {
            "scratchpad": self.scratchpad,
            "analysis": self.analysis,
            "poc": self.poc,
            "confidence_score": self.confidence_score,
            "vulnerability_types": [vt.value for vt in self.vulnerability_types],
            "context_code": [asdict(c) for c in self.context_code],
        }


@dataclass(frozen=True)
class Finding:
    rule_id: str
    title: str
    file_path: str
    vuln_type: VulnType
    severity: Severity
    confidence: int
    cwe: str
    cwe_name: str
    analysis: str
    scratchpad: str = ""
    poc: str | None = None
    context_code: str = ""
    discovered_at: str = ""

    @property
    def cwe_url(self) -> str:
        return f"https://cwe.mitre.org/data/definitions/{self.cwe.replace('CWE-', '')}.html"

    def to_dict(self) -> dict:
        data = asdict(self)
        data["vuln_type"] = self.vuln_type.value
        data["severity"] = self.severity.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> Finding:
        data = dict(data)
        data["vuln_type"] = _vuln_type(data["vuln_type"])
        data["severity"] = Severity(data["severity"])
        return cls(**data)


def response_to_finding(response: AnalysisResponse, file_path: str, vuln_type,
                        context_code: str = "") -> Finding:
    """Turn the final refinement response for (file, type) into a Finding."""
    vuln_type = _vuln_type(vuln_type)
    cwe = CWE_MAP.get(vuln_type.value, "CWE-0")
    return Finding(
        rule_id=f"vulnhuntr/{vuln_type.value}",
        title=f"{vuln_type.value} vulnerability in {os.path.basename(file_path) or file_path}",
        file_path=file_path,
        vuln_type=vuln_type,
        severity=severity_for(response.confidence_score),
        confidence=response.confidence_score,
        cwe=cwe,
        cwe_name=CWE_NAMES.get(cwe, "Unknown"),
        analysis=response.analysis,
        scratchpad=response.scratchpad,
        poc=response.poc,
        context_code=context_code,
        discovered_at=_now(),
    )


@dataclass(frozen=True)
class CostRecord:
    input_tokens: int
    output_tokens: int
    model: str
    cost_usd: float
    timestamp: str
    file_path: str | None = None
    call_kind: str = "analysis"     # "readme", "initial", "secondary"


@dataclass(frozen=True)
class CodeDefinition:
    name: str
    context_name_requested: str
    file_path: str
    source: str


@dataclass
class FileResult:
    file_path: str
    findings: list[Finding] = field(default_factory=list)
    status: str = "analyzed"    # analyzed|no_vulns|budget_skipped|read_failed|llm_failed|resumed|cancelled
    llm_calls: int = 0


@dataclass
class RunConfig:
    """Validated pipeline input."""

    repo_root: str
    provider: str = DEFAULTS["provider"]
    model: str | None = None
    analyze_path: str | None = None
    max_budget_usd: float | None = None
    min_confidence: int = DEFAULTS["min_confidence"]
    max_iterations: int = DEFAULTS["max_iterations"]
    vuln_types: list[str] = field(default_factory=list)
    dry_run: bool = False
    max_cost_per_file: float | None = None
    max_cost_per_iteration: float | None = None
    warn_threshold: float = DEFAULTS["warn_threshold"]
    checkpoint: bool = True
    checkpoint_dir: str | None = None
    resume: bool = True
    reports_dir: str | None = None
    exclude_paths: list[str] = field(default_factory=list)
    file_concurrency: int = DEFAULTS["file_concurrency"]

    def __post_init__(self):
        if not self.repo_root:
            raise ValueError("repo_root is required")
        if self.provider not in DEFAULTS["models"]:
            raise ValueError(
                f"Unknown provider '{self.provider}'. Choose from: {sorted(DEFAULTS['models'])}"
            )
        if not 0 <= self.min_confidence <= 10:
            raise ValueError("min_confidence must be between 0 and 10")
        if not 1 <= self.max_iterations <= DEFAULTS["hard_max_iterations"]:
            raise ValueError(
                f"max_iterations must be between 1 and {DEFAULTS['hard_max_iterations']}"
            )
        if self.file_concurrency < 1:
            raise ValueError("file_concurrency must be at least 1")
        if self.max_budget_usd is not None and self.max_budget_usd < 0:
            raise ValueError("max_budget_usd cannot be negative")
        self.vuln_types = [_vuln_type(v.upper() if isinstance(v, str) else v).value
                           for v in self.vuln_types]

    @property
    def model_name(self) -> str:
        return self.model or DEFAULTS["models"][self.provider]


@dataclass
class AggregateResult:
    findings: list[Finding]
    files_analyzed: list[str]
    total_cost_usd: float
    summary: dict[str, Any]
    report_paths: list[str] = field(default_factory=list)
    preview: dict | None = None

    def to_dict(self) -> dict:
        return {
            "findings": [f.to_dict() for f in self.findings],
            "files_analyzed": list(self.files_analyzed),
            "total_cost_usd": self.total_cost_usd,
            "summary": self.summary,
            "report_paths": list(self.report_paths),
            "preview": self.preview,
        }


@dataclass
class RunState:
    """Side-channel context: built once per run, passed by reference to every stage."""

    config: RunConfig | None = None     # filled in by the setup stage when not given
    ledger: Any = None          # core.cost.CostLedger
    budget: Any = None          # core.budget.BudgetPolicy
    checkpoint: Any = None      # core.checkpoint.CheckpointStore
    llm: Any = None             # utils.llm.LLMClient
    resolver: Any = None        # utils.symbol_finder.SymbolResolver
    local_path: str = ""
    is_cloned: bool = False
    all_files: list[str] = field(default_factory=list)
    files_to_analyze: list[str] = field(default_factory=list)
    readme_summary: str = ""
    system_prompt: str = ""
    resumed: bool = False
    completed_files: set[str] = field(default_factory=set)
    resumed_findings: list[Finding] = field(default_factory=list)
    file_results: list[FileResult] = field(default_factory=list)
    preview: dict | None = None
    aggregate: AggregateResult | None = None
    report_paths: list[str] = field(default_factory=list)
    reports_dir: str = ""
    errors: list[str] = field(default_factory=list)
    run_stamp: str = ""         # shared timestamp for report file names
