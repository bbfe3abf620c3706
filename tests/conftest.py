"""Shared fixtures: a scripted fake LLM and a RunState factory."""

import json

import pytest
import structlog

from core.budget import BudgetPolicy
from core.checkpoint import CheckpointStore
from core.cost import CostLedger
from core.state import RunConfig, RunState
from utils.symbol_finder import SymbolResolver

MODEL = "claude-sonnet-4-5-20250929"


class FakeLLM:
    """Replays scripted replies. A reply may be a dict (sent as JSON), a str,
    or an Exception instance (raised). Each call reports fixed token usage."""

    provider = "fake"

    def __init__(self, replies=(), model=MODEL, usage=(1000, 500)):
        self.replies = list(replies)
        self.model = model
        self.usage = usage
        self.calls = []
        self.last_usage = None

    def send(self, system_prompt, user_prompt, max_tokens=None, json_prefill=False):
        self.calls.append({"system": system_prompt, "user": user_prompt})
        if not self.replies:
            raise AssertionError("FakeLLM ran out of scripted replies")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            self.last_usage = None
            raise reply
        self.last_usage = {"input_tokens": self.usage[0], "output_tokens": self.usage[1]}
        return json.dumps(reply) if isinstance(reply, dict) else reply


def response(types=(), confidence=0, context=(), analysis="analysis", poc=None):
    """Build a reply dict in the shape the model is asked to produce."""
    return {
        "scratchpad": "1. looked at the code",
        "analysis": analysis,
        "poc": poc,
        "confidence_score": confidence,
        "vulnerability_types": list(types),
        "context_code": [
            {"name": name, "reason": "need it", "code_line": f"{name}(x)"} for name in context
        ],
    }


@pytest.fixture(autouse=True)
def reset_logging():
    """main.configure_logging binds structlog to the stderr of the moment."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def make_state(tmp_path):
    """Factory: make_state(files={"app.py": "..."}, replies=[...], **run_config)."""

    def _make(files=None, replies=(), checkpoint=True, budget=None, **config):
        files = files or {"app.py": "def handler(request):\n    return request.args['q']\n"}
        for rel, content in files.items():
            path = tmp_path / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content)

        run_config = RunConfig(repo_root=str(tmp_path), **config)
        state = RunState(
            config=run_config,
            ledger=CostLedger(),
            budget=budget or BudgetPolicy(max_budget_usd=run_config.max_budget_usd),
            checkpoint=CheckpointStore(str(tmp_path / ".ckpt"), enabled=checkpoint),
            llm=FakeLLM(replies),
            resolver=SymbolResolver(),
            local_path=str(tmp_path),
            all_files=sorted(files),
            files_to_analyze=sorted(files),
            system_prompt="system",
        )
        state.checkpoint.start(str(tmp_path), sorted(files), MODEL, state.ledger)
        return state

    return _make


@pytest.fixture
def repo(tmp_path):
    """A small web project with one network-facing file and some noise."""
    files = {
        "README.md": "# Demo\nA Flask service exposing a search API.\n",
        "app/views.py": (
            "from flask import Flask, request\n"
            "from app.db import run_query\n\n"
            "app = Flask(__name__)\n\n"
            "@app.route('/search')\n"
            "def search():\n"
            "    return run_query(request.args['q'])\n"
        ),
        "app/db.py": (
            "def run_query(q):\n"
            "    return cursor.execute(\"SELECT * FROM t WHERE name = '%s'\" % q)\n"
        ),
        "tests/test_views.py": "def test_x():\n    pass\n",
        "setup.py": "from setuptools import setup\nsetup()\n",
    }
    for rel, content in files.items():
        path = tmp_path / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    return tmp_path


def read_json(path):
    with open(path) as f:
        return json.load(f)


@pytest.fixture
def no_home_config(tmp_path, monkeypatch):
    """Point $HOME somewhere empty so a developer's own config is never picked up."""
    home = tmp_path / "_home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    return home


