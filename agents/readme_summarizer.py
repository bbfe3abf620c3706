"""README summarizer: one LLM call giving the model context on the project."""

import structlog

from agents.base import BaseAgent
from agents.discovery import RepoScanner
from config.defaults import DEFAULTS
from utils.llm import extract_between_tags
from utils.prompts import build_readme_summary_prompt

log = structlog.get_logger(__name__)

NO_README = "No README summary available."
SUMMARY_FAILED = "README summary unavailable."


class ReadmeSummarizer(BaseAgent):
    """Summarizes the README. Never raises: failures degrade to fixed text."""

    name = "readme_summarizer"
    description = "Summarize the README from an attack-surface point of view"

    def run(self, state):
        content = RepoScanner(state.local_path).get_readme_content()
        if not content:
            log.info("readme_missing", root=state.local_path)
            return NO_README

        if state.config.dry_run:
            return NO_README

        try:
            text, _ = self._call_llm(
                state,
                "",
                build_readme_summary_prompt(content),
                call_kind="readme",
                max_tokens=DEFAULTS["readme_max_tokens"],
            )
        except Exception as e:
            log.warning("readme_summary_failed", error=str(e))
            return SUMMARY_FAILED

        summaries = extract_between_tags("summary", text)
        summary = summaries[0] if summaries else text.strip()
        log.info("readme_summarized", chars=len(summary))
        return summary or SUMMARY_FAILED
