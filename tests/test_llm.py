"""Tests for utils.llm: response repair/parsing and provider clients with mocked SDKs."""

import json
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from core.state import VulnType
from utils import llm
from utils.llm import (
    JSON_PREFILL,
    AnthropicClient,
    LLMError,
    OpenAIClient,
    extract_between_tags,
    fix_json_response,
    get_client,
    parse_analysis_response,
)

GOOD = {
    "scratchpad": "1. step",
    "analysis": "found it",
    "poc": None,
    "confidence_score": 6,
    "vulnerability_types": ["RCE"],
    "context_code": [],
}


def test_fix_json_leaves_valid_json_alone():
    text = json.dumps(GOOD)
    assert fix_json_response(text) == text


def test_fix_json_strips_fences_and_prose():
    text = "Here you go:\n```json\n" + json.dumps(GOOD) + "\n```\nHope that helps {x}"
    assert json.loads(fix_json_response(text)) == GOOD


def test_fix_json_python_literals():
    text = '{"poc": None, "flag": True, "other": False, "note": "None of these"}'
    data = json.loads(fix_json_response(text))
    assert data == {"poc": None, "flag": True, "other": False, "note": "None of these"}


def test_fix_json_drops_invalid_escapes():
    text = '{"analysis": "path C:\\q\\n ok"}'
    data = json.loads(fix_json_response(text), strict=False)
    assert data["analysis"].startswith("path C:q")


def test_fix_json_is_idempotent():
    text = "```\n{'bad': 1} {\"analysis\": \"x\", \"poc\": None}\n```"
    once = fix_json_response(text)
    assert fix_json_response(once) == once


def test_fix_json_braces_inside_strings():
    text = 'prefix {"analysis": "uses {curly} braces", "confidence_score": 3} trailing}'
    assert json.loads(fix_json_response(text))["analysis"] == "uses {curly} braces"


def test_parse_analysis_response():
    r = parse_analysis_response("```json\n" + json.dumps(GOOD) + "\n```")
    assert r.confidence_score == 6
    assert r.vulnerability_types == (VulnType.RCE,)


def test_parse_invalid_reply_gives_placeholder():
    r = parse_analysis_response("no json here")
    assert r.confidence_score == 0
    assert r.scratchpad == "no json here"


def test_parse_out_of_range_gives_placeholder():
    r = parse_analysis_response(json.dumps(dict(GOOD, confidence_score=42)))
    assert r.confidence_score == 0
    assert r.vulnerability_types == ()


def test_extract_between_tags():
    text = "<summary> one </summary> noise <summary>two</summary>"
    assert extract_between_tags("summary", text) == ["one", "two"]
    assert extract_between_tags("summary", "nothing") == []


class FakeAPIError(Exception):
    pass


def _stream(text, input_tokens=120, output_tokens=40, stop_reason="end_turn"):
    stream = MagicMock()
    stream.text_stream = iter([text[:5], text[5:]])
    stream.get_final_message.return_value = SimpleNamespace(
        stop_reason=stop_reason,
        usage=SimpleNamespace(input_tokens=input_tokens, output_tokens=output_tokens),
    )
    ctx = MagicMock()
    ctx.__enter__.return_value = stream
    ctx.__exit__.return_value = False
    return ctx


@pytest.fixture
def anthropic_client():
    with patch("utils.llm.anthropic.Anthropic"):
        client = AnthropicClient("claude-sonnet-4-5-20250929", api_key="test")
    return client


def test_anthropic_prefill_and_usage(anthropic_client):
    anthropic_client.client.messages.stream.return_value = _stream(' check", "analysis": "x"}')
    text = anthropic_client.send("sys", "user", json_prefill=True)

    assert text.startswith(JSON_PREFILL)
    kwargs = anthropic_client.client.messages.stream.call_args.kwargs
    assert kwargs["system"] == "sys"
    assert kwargs["messages"][-1] == {"role": "assistant", "content": JSON_PREFILL}
    assert anthropic_client.last_usage == {"input_tokens": 120, "output_tokens": 40}


def test_anthropic_omits_empty_system(anthropic_client):
    anthropic_client.client.messages.stream.return_value = _stream("<summary>hi</summary>")
    text = anthropic_client.send("", "user")

    assert text == "<summary>hi</summary>"
    kwargs = anthropic_client.client.messages.stream.call_args.kwargs
    assert "system" not in kwargs
    assert len(kwargs["messages"]) == 1


def test_anthropic_retries_once(anthropic_client):
    anthropic_client.client.messages.stream.side_effect = [FakeAPIError("busy"), _stream("ok!!!")]
    with patch.object(llm.anthropic, "APIError", FakeAPIError), \
            patch("utils.llm.time.sleep") as sleep:
        assert anthropic_client.send("s", "u") == "ok!!!"
    sleep.assert_called_once_with(llm.RETRY_DELAY)


def test_anthropic_gives_up_after_retry(anthropic_client):
    anthropic_client.client.messages.stream.side_effect = FakeAPIError("down")
    with patch.object(llm.anthropic, "APIError", FakeAPIError), \
            patch("utils.llm.time.sleep"):
        with pytest.raises(LLMError, match="down"):
            anthropic_client.send("s", "u")
    assert anthropic_client.client.messages.stream.call_count == 2
    assert anthropic_client.last_usage is None


def test_openai_client_usage():
    with patch("utils.llm.openai.OpenAI"):
        client = OpenAIClient("gpt-4o", api_key="test")
    client.client.chat.completions.create.return_value = SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content="{}"))],
        usage=SimpleNamespace(prompt_tokens=50, completion_tokens=7),
    )
    assert client.send("sys", "user") == "{}"
    messages = client.client.chat.completions.create.call_args.kwargs["messages"]
    assert messages[0] == {"role": "system", "content": "sys"}
    assert client.last_usage == {"input_tokens": 50, "output_tokens": 7}


def test_openai_client_without_usage():
    with patch("utils.llm.openai.OpenAI"):
        client = OpenAIClient("llama3", api_key="ollama")
    client.client.chat.completions.create.return_value = SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=None))], usage=None,
    )
    assert client.send("", "user") == ""
    assert client.last_usage is None


def test_get_client_requires_anthropic_key(monkeypatch):
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    with pytest.raises(RuntimeError, match="ANTHROPIC_API_KEY"):
        get_client("anthropic")


def test_get_client_requires_openai_key(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with pytest.raises(RuntimeError, match="OPENAI_API_KEY"):
        get_client("openai")


def test_get_client_ollama(monkeypatch):
    monkeypatch.setenv("OLLAMA_BASE_URL", "http://gpu-box:11434/v1")
    with patch("utils.llm.openai.OpenAI") as ctor:
        client = get_client("ollama")
    assert client.provider == "ollama"
    assert client.model == "llama3"
    assert ctor.call_args.kwargs["base_url"] == "http://gpu-box:11434/v1"


def test_get_client_anthropic(monkeypatch):
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")
    with patch("utils.llm.anthropic.Anthropic"):
        client = get_client("anthropic", "claude-3-5-sonnet-latest")
    assert isinstance(client, AnthropicClient)
    assert client.model == "claude-3-5-sonnet-latest"


def test_get_client_unknown_provider():
    with pytest.raises(ValueError, match="Unknown provider"):
        get_client("bard")
