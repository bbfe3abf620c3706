"""LLM clients (Anthropic, OpenAI-compatible) and response repair/parsing."""

import json
import os
import re
import time

import anthropic
import openai
import structlog

from config.defaults import DEFAULTS
from core.state import AnalysisResponse

log = structlog.get_logger(__name__)

# Claude is primed to start the JSON object itself so it does not wrap it in prose
JSON_PREFILL = '{"scratchpad": "1.'

RETRY_DELAY = 2


class LLMError(Exception):
    """The provider call failed after its retry."""


class LLMClient:
    """Common surface for all providers.

    send() returns the raw reply text. last_usage holds the token counts the
    provider reported for the most recent call, or None when it reported none.
    """

    provider = "base"

    def __init__(self, model):
        self.model = model
        self.last_usage = None

    def send(self, system_prompt, user_prompt, max_tokens=None, json_prefill=False):
        raise NotImplementedError


class AnthropicClient(LLMClient):
    provider = "anthropic"

    def __init__(self, model, api_key=None, prefill=DEFAULTS["claude_prefill"]):
        super().__init__(model)
        self.prefill = prefill
        self.client = anthropic.Anthropic(api_key=api_key or os.environ.get("ANTHROPIC_API_KEY"))

    def send(self, system_prompt, user_prompt, max_tokens=None, json_prefill=False):
        max_tokens = max_tokens or DEFAULTS["max_tokens"]
        messages = [{"role": "user", "content": user_prompt}]
        prefix = ""
        if json_prefill and self.prefill:
            prefix = JSON_PREFILL
            messages.append({"role": "assistant", "content": prefix})

        kwargs = {"model": self.model, "max_tokens": max_tokens, "messages": messages}
        if system_prompt:
            kwargs["system"] = system_prompt

        self.last_usage = None
        for attempt in range(2):
            try:
                # Streaming avoids the SDK timeout for large max_tokens
                text = ""
                with self.client.messages.stream(**kwargs) as stream:
                    for chunk in stream.text_stream:
                        text += chunk
                    final = stream.get_final_message()

                if final.stop_reason == "max_tokens":
                    log.warning("response_truncated", model=self.model, max_tokens=max_tokens)
                usage = getattr(final, "usage", None)
                if usage is not None:
                    self.last_usage = {
                        "input_tokens": usage.input_tokens,
                        "output_tokens": usage.output_tokens,
                    }
                return prefix + text

            except anthropic.APIError as e:
                if attempt == 0:
                    log.warning("llm_retry", provider=self.provider, error=str(e))
                    time.sleep(RETRY_DELAY)
                    continue
                raise LLMError(f"Anthropic request failed: {e}") from e


class OpenAIClient(LLMClient):
    """OpenAI chat completions, or any compatible server (Ollama) via base_url."""

    provider = "openai"

    def __init__(self, model, api_key=None, base_url=None):
        super().__init__(model)
        self.client = openai.OpenAI(
            api_key=api_key or os.environ.get("OPENAI_API_KEY") or "ollama",
            base_url=base_url,
        )

    def send(self, system_prompt, user_prompt, max_tokens=None, json_prefill=False):
        max_tokens = max_tokens or DEFAULTS["max_tokens"]
        messages = [{"role": "user", "content": user_prompt}]
        if system_prompt:
            messages.insert(0, {"role": "system", "content": system_prompt})

        self.last_usage = None
        for attempt in range(2):
            try:
                response = self.client.chat.completions.create(
                    model=self.model,
                    max_tokens=max_tokens,
                    messages=messages,
                )
                if response.usage is not None:
                    self.last_usage = {
                        "input_tokens": response.usage.prompt_tokens,
                        "output_tokens": response.usage.completion_tokens,
                    }
                return response.choices[0].message.content or ""

            except openai.APIError as e:
                if attempt == 0:
                    log.warning("llm_retry", provider=self.provider, error=str(e))
                    time.sleep(RETRY_DELAY)
                    continue
                raise LLMError(f"OpenAI request failed: {e}") from e


def get_client(provider, model=None):
    """Return a client for the provider. Raises if a required API key is missing."""
    model = model or DEFAULTS["models"].get(provider)
    if provider == "anthropic":
        if not os.environ.get("ANTHROPIC_API_KEY"):
            raise RuntimeError(
                "ANTHROPIC_API_KEY environment variable is not set. "
                "Get a key at https://console.anthropic.com/ and run:\n"
                "  export ANTHROPIC_API_KEY='your-key-here'"
            )
        return AnthropicClient(model)
    if provider == "openai":
        if not os.environ.get("OPENAI_API_KEY"):
            raise RuntimeError("OPENAI_API_KEY environment variable is not set.")
        return OpenAIClient(model, base_url=os.environ.get("OPENAI_BASE_URL")
                            or DEFAULTS["base_urls"]["openai"])
    if provider == "ollama":
        base_url = os.environ.get("OLLAMA_BASE_URL") or DEFAULTS["base_urls"]["ollama"]
        client = OpenAIClient(model, api_key="ollama", base_url=base_url)
        client.provider = "ollama"
        return client
    raise ValueError(f"Unknown provider '{provider}'. Choose from: {sorted(DEFAULTS['models'])}")


_FENCE_START = re.compile(r"^\s*```[\w-]*\s*\n?")
_FENCE_END = re.compile(r"\n?\s*```\s*$")
_STRING_OR_PYLITERAL = re.compile(r'"(?:\\.|[^"\\])*"|\b(None|True|False)\b')
_PY_TO_JSON = {"None": "null", "True": "true", "False": "false"}
_ESCAPE = re.compile(r'\\(["\\/bfnrt]|u[0-9a-fA-F]{4})|\\')


def _is_json_object(text):
    try:
        return isinstance(json.loads(text, strict=False), dict)
    except ValueError:
        return False


def _first_object(text):
    """Slice out the first balanced {...} block, skipping braces inside strings."""
    start = text.find("{")
    if start == -1:
        return text
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    end = text.rfind("}")
    return text[start:end + 1] if end > start else text[start:]


def fix_json_response(text):
    """Best-effort repair of a model reply into a JSON object string.

    A reply that already parses as an object comes back untouched, so
    applying the repair twice gives the same result as applying it once.
    """
    if _is_json_object(text):
        return text

    fixed = _FENCE_END.sub("", _FENCE_START.sub("", text.strip()))
    fixed = _first_object(fixed)
    fixed = _STRING_OR_PYLITERAL.sub(
        lambda m: _PY_TO_JSON[m.group(1)] if m.group(1) else m.group(0), fixed
    )
    fixed = _ESCAPE.sub(lambda m: m.group(0) if m.group(1) else "", fixed)
    return fixed


def extract_between_tags(tag, text):
    return [m.strip() for m in re.findall(rf"<{tag}>(.*?)</{tag}>", text, re.DOTALL)]


def parse_analysis_response(text):
    """Parse a reply into an AnalysisResponse; never raises.

    Anything that cannot be repaired or fails validation becomes the
    zero-confidence placeholder carrying the raw text.
    """
    try:
        data = json.loads(fix_json_response(text), strict=False)
        return AnalysisResponse.from_dict(data)
    except (ValueError, TypeError) as e:
        log.warning("response_parse_failed", error=str(e), preview=text[:200])
        return AnalysisResponse.placeholder(text)
