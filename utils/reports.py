"""Report renderers. Each takes an AggregateResult and returns text; no I/O."""

import csv
import hashlib
import html
import io
import json
from datetime import datetime, timezone

from config.vulns import CWE_MAP, CWE_NAMES
from core.state import SEVERITY_ORDER, SEVERITY_SCORES, Severity

TOOL_NAME = "vulnsweep"
TOOL_VERSION = "1.0.0"
TOOL_URI = "https://github.com/protectai/vulnhuntr"

CSV_HEADERS = [
    "rule_id", "title", "file_path", "vuln_type", "severity", "confidence",
    "cwe", "cwe_name", "analysis", "poc", "discovered_at",
]


def sort_findings(findings):
    """Most severe first, then highest confidence."""
    return sorted(findings, key=lambda f: (-SEVERITY_SCORES[f.severity], -f.confidence))


def _cwe_url(cwe):
    return f"https://cwe.mitre.org/data/definitions/{cwe.replace('CWE-', '')}.html"


def fingerprint(finding):
    key = f"{finding.file_path}:{finding.vuln_type.value}:{finding.rule_id}"
    return hashlib.sha256(key.encode()).hexdigest()[:16]


def _by_severity(findings):
    counts = {}
    for f in findings:
        counts[f.severity.value] = counts.get(f.severity.value, 0) + 1
    return counts


def render_json(aggregate):
    findings = sort_findings(aggregate.findings)
    report = {
        "metadata": {
            "tool": TOOL_NAME,
            "version": TOOL_VERSION,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "files_analyzed": len(aggregate.files_analyzed),
            "total_findings": len(findings),
            "total_cost_usd": round(aggregate.total_cost_usd, 4),
        },
        "summary": dict(aggregate.summary, by_severity=_by_severity(findings)),
        "findings": [dict(f.to_dict(), cwe_url=f.cwe_url) for f in findings],
    }
    return json.dumps(report, indent=2)


def _sarif_level(severity):
    if severity in (Severity.CRITICAL, Severity.HIGH):
        return "error"
    if severity == Severity.MEDIUM:
        return "warning"
    return "note"


def _sarif_result(finding):
    result = {
        "ruleId": finding.rule_id,
        "level": _sarif_level(finding.severity),
        "message": {"text": finding.analysis},
        "partialFingerprints": {"primaryLocationLineHash": fingerprint(finding)},
        "locations": [{
            "physicalLocation": {"artifactLocation": {"uri": finding.file_path}},
        }],
        "properties": {
            "confidence": finding.confidence,
            "severity": finding.severity.value,
            "cwe": finding.cwe,
            "security-severity": str(SEVERITY_SCORES[finding.severity]),
        },
    }
    if finding.poc:
        result["properties"]["poc"] = finding.poc
    if finding.discovered_at:
        result["properties"]["discovered_at"] = finding.discovered_at
    if finding.context_code:
        result["codeFlows"] = [{
            "threadFlows": [{
                "locations": [{
                    "location": {
                        "physicalLocation": {"artifactLocation": {"uri": finding.file_path}},
                        "message": {"text": finding.context_code[:500]},
                    },
                }],
            }],
        }]
    return result


def render_sarif(aggregate):
    rules = [
        {
            "id": f"vulnhuntr/{vt}",
            "name": vt,
            "shortDescription": {"text": f"{vt} vulnerability detection"},
            "fullDescription": {"text": CWE_NAMES.get(cwe, f"{vt} vulnerability")},
            "helpUri": _cwe_url(cwe),
            "properties": {
                "tags": ["security", cwe],
                "security-severity": str(SEVERITY_SCORES[Severity.HIGH]),
            },
        }
        for vt, cwe in CWE_MAP.items()
    ]
    report = {
        "$schema": "https://raw.githubusercontent.com/oasis-tcs/sarif-spec/master/"
                   "Schemata/sarif-schema-2.1.0.json",
        "version": "2.1.0",
        "runs": [{
            "tool": {
                "driver": {
                    "name": TOOL_NAME,
                    "version": TOOL_VERSION,
                    "informationUri": TOOL_URI,
                    "rules": rules,
                },
            },
            "invocations": [{
                "executionSuccessful": True,
                "endTimeUtc": datetime.now(timezone.utc).isoformat(),
            }],
            "taxonomies": [{
                "name": "CWE",
                "taxa": [
                    {"id": cwe, "name": name, "shortDescription": {"text": name},
                     "helpUri": _cwe_url(cwe)}
                    for cwe, name in CWE_NAMES.items()
                ],
            }],
            "results": [_sarif_result(f) for f in sort_findings(aggregate.findings)],
        }],
    }
    return json.dumps(report, indent=2)


def render_markdown(aggregate):
    findings = sort_findings(aggregate.findings)
    counts = _by_severity(findings)
    lines = [
        "# Vulnerability Scan Report",
        "",
        f"- **Generated:** {datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')}",
        f"- **Files analyzed:** {len(aggregate.files_analyzed)}",
        f"- **Findings:** {len(findings)}",
        f"- **Cost:** ${aggregate.total_cost_usd:.4f}",
        "",
        "## Summary",
        "",
        "| Severity | Count |",
        "|---|---|",
    ]
    for sev in SEVERITY_ORDER:
        lines.append(f"| {sev.value} | {counts.get(sev.value, 0)} |")
    lines.append("")

    if not findings:
        lines.append("No vulnerabilities found.")
        return "\n".join(lines) + "\n"

    lines += ["## Findings", ""]
    for i, f in enumerate(findings, 1):
        lines += [
            f"### {i}. [{f.severity.value}] {f.title}",
            "",
            f"- **File:** `{f.file_path}`",
            f"- **Type:** {f.vuln_type.value} ([{f.cwe}]({f.cwe_url}): {f.cwe_name})",
            f"- **Confidence:** {f.confidence}/10",
            "",
            f.analysis,
            "",
        ]
        if f.poc:
            lines += ["**Proof of concept:**", "", "```", f.poc, "```", ""]
        if f.scratchpad:
            lines += [
                "<details><summary>Reasoning</summary>",
                "",
                f.scratchpad,
                "",
                "</details>",
                "",
            ]
    return "\n".join(lines)


_HTML_STYLE = """
body { font-family: sans-serif; margin: 2em; color: #222; }
table { border-collapse: collapse; }
td, th { border: 1px solid #ccc; padding: 4px 10px; }
.finding { border-left: 4px solid #999; padding: 0.5em 1em; margin: 1em 0; }
.CRITICAL { border-color: #b00020; } .HIGH { border-color: #e65100; }
.MEDIUM { border-color: #f9a825; } .LOW { border-color: #2e7d32; } .INFO { border-color: #1565c0; }
pre { background: #f5f5f5; padding: 0.5em; overflow-x: auto; }
"""


def render_html(aggregate):
    esc = html.escape
    findings = sort_findings(aggregate.findings)
    counts = _by_severity(findings)
    rows = "".join(
        f"<tr><td>{sev.value}</td><td>{counts.get(sev.value, 0)}</td></tr>"
        for sev in SEVERITY_ORDER
    )
    blocks = []
    for f in findings:
        poc = f"<h4>Proof of concept</h4><pre>{esc(f.poc)}</pre>" if f.poc else ""
        blocks.append(
            f'<div class="finding {f.severity.value}">'
            f"<h3>[{f.severity.value}] {esc(f.title)}</h3>"
            f"<p><b>File:</b> <code>{esc(f.file_path)}</code><br>"
            f'<b>Type:</b> {f.vuln_type.value} (<a href="{f.cwe_url}">{f.cwe}</a> '
            f"{esc(f.cwe_name)})<br><b>Confidence:</b> {f.confidence}/10</p>"
            f"<p>{esc(f.analysis)}</p>{poc}</div>"
        )
    body = "".join(blocks) or "<p>No vulnerabilities found.</p>"
    return (
        "<!DOCTYPE html>\n<html><head><meta charset=\"utf-8\">"
        f"<title>Vulnerability Scan Report</title><style>{_HTML_STYLE}</style></head><body>"
        "<h1>Vulnerability Scan Report</h1>"
        f"<p>Files analyzed: {len(aggregate.files_analyzed)} &middot; "
        f"Findings: {len(findings)} &middot; Cost: ${aggregate.total_cost_usd:.4f}</p>"
        f"<table><tr><th>Severity</th><th>Count</th></tr>{rows}</table>"
        f"{body}</body></html>\n"
    )


def render_csv(aggregate):
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    for f in sort_findings(aggregate.findings):
        writer.writerow([
            f.rule_id, f.title, f.file_path, f.vuln_type.value, f.severity.value,
            f.confidence, f.cwe, f.cwe_name, f.analysis, f.poc or "", f.discovered_at,
        ])
    return buf.getvalue()


RENDERERS = {
    "json": render_json,
    "sarif": render_sarif,
    "md": render_markdown,
    "html": render_html,
    "csv": render_csv,
}
