"""Prompt assembly. Every section is wrapped in its own XML tag."""

import json
import os

from config.vulns import VULN_PROMPTS, VULN_TYPES

_PROMPT_DIR = os.path.join(os.path.dirname(os.path.dirname(__file__)), "agents", "prompts")

RESPONSE_FORMAT = {
    "type": "object",
    "properties": {
        "scratchpad": {
            "type": "string",
            "description": "Your step-by-step analysis process. Output in plaintext with no line breaks.",
        },
        "analysis": {
            "type": "string",
            "description": "Your final analysis. Output in plaintext with no line breaks.",
        },
        "poc": {
            "type": "string",
            "description": "Proof-of-concept exploit, if applicable.",
        },
        "confidence_score": {
            "type": "integer",
            "description": "0-10, where 0 is no confidence and 10 is absolute certainty because "
                           "you have the entire user input to server output code path.",
        },
        "vulnerability_types": {
            "type": "array",
            "items": {"type": "string", "enum": VULN_TYPES},
            "description": "The types of identified vulnerabilities",
        },
        "context_code": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "name": {"type": "string", "description": "Function or Class name"},
                    "reason": {
                        "type": "string",
                        "description": "Brief reason why this function's code is needed for analysis",
                    },
                    "code_line": {
                        "type": "string",
                        "description": "The single line of code where this context object is referenced.",
                    },
                },
                "required": ["name", "reason", "code_line"],
            },
            "description": "List of context code items requested for analysis, one function or "
                           "class name per item. No standard library or third-party package code.",
        },
    },
    "required": ["scratchpad", "analysis", "poc", "confidence_score",
                 "vulnerability_types", "context_code"],
}

_cache = {}


def _load_prompt(name):
    if name not in _cache:
        with open(os.path.join(_PROMPT_DIR, f"{name}.txt"), encoding="utf-8") as f:
            _cache[name] = f.read().strip()
    return _cache[name]


def xml_tag(tag, content):
    return f"<{tag}>{content}</{tag}>"


def response_format():
    return xml_tag("response_format", json.dumps(RESPONSE_FORMAT, indent=4))


def build_file_code(file_path, source):
    return xml_tag(
        "file_code",
        xml_tag("file_path", file_path) + "\n" + xml_tag("file_source", source),
    )


def build_code_definitions(definitions):
    """definitions: iterable of CodeDefinition."""
    blocks = []
    for d in definitions:
        blocks.append(xml_tag("code", "\n".join([
            xml_tag("name", d.name),
            xml_tag("context_name_requested", d.context_name_requested),
            xml_tag("file_path", d.file_path),
            xml_tag("source", d.source),
        ])))
    return xml_tag("context_code", "\n".join(blocks))


def build_example_bypasses(vuln_type):
    return xml_tag("example_bypasses", "\n".join(VULN_PROMPTS[vuln_type]["bypasses"]))


def build_system_prompt(readme_summary):
    return (
        xml_tag("instructions", _load_prompt("system")) + "\n"
        + xml_tag("readme_summary", readme_summary)
    )


def build_readme_summary_prompt(readme_content):
    return (
        xml_tag("readme_content", readme_content) + "\n"
        + xml_tag("instructions", _load_prompt("readme_summary"))
    )


def build_initial_prompt(file_path, source):
    return "\n".join([
        build_file_code(file_path, source),
        xml_tag("instructions", _load_prompt("initial")),
        xml_tag("analysis_approach", _load_prompt("analysis_approach")),
        xml_tag("previous_analysis", ""),
        xml_tag("guidelines", _load_prompt("guidelines")),
        response_format(),
    ])


def build_refinement_prompt(file_path, source, definitions, vuln_type, previous_analysis):
    """Prompt for one refinement round of a single vulnerability type.

    previous_analysis is the JSON text of the prior round's response.
    """
    return "\n".join([
        build_file_code(file_path, source),
        build_code_definitions(definitions),
        build_example_bypasses(vuln_type),
        xml_tag("instructions", VULN_PROMPTS[vuln_type]["prompt"]),
        xml_tag("analysis_approach", _load_prompt("analysis_approach")),
        xml_tag("previous_analysis", previous_analysis),
        xml_tag("guidelines", _load_prompt("guidelines")),
        response_format(),
    ])
