"""Tests for core.sandbox."""

import sys
import tempfile

import pytest

from config.defaults import DEFAULTS
from core.sandbox import run_in_sandbox


@pytest.fixture
def allow_python(monkeypatch):
    monkeypatch.setitem(DEFAULTS, "allowed_commands", DEFAULTS["allowed_commands"] + [sys.executable])


def test_allowed_command(allow_python):
    with tempfile.TemporaryDirectory() as tmpdir:
        stdout, stderr, rc = run_in_sandbox([sys.executable, "--version"], cwd=tmpdir)
        assert rc == 0
        assert "Python" in stdout or "Python" in stderr


def test_git_prompt_disabled(allow_python):
    with tempfile.TemporaryDirectory() as tmpdir:
        stdout, _, rc = run_in_sandbox(
            [sys.executable, "-c", "import os; print(os.environ['GIT_TERMINAL_PROMPT'])"],
            cwd=tmpdir,
        )
        assert rc == 0
        assert stdout.strip() == "0"


def test_extra_env(allow_python):
    with tempfile.TemporaryDirectory() as tmpdir:
        stdout, _, _ = run_in_sandbox(
            [sys.executable, "-c", "import os; print(os.environ['SCAN_MARKER'])"],
            cwd=tmpdir, env={"SCAN_MARKER": "yes"},
        )
        assert stdout.strip() == "yes"


def test_disallowed_command():
    with tempfile.TemporaryDirectory() as tmpdir:
        with pytest.raises(ValueError, match="not in allowlist"):
            run_in_sandbox(["rm", "-rf", "/"], cwd=tmpdir)


def test_disallowed_python():
    with tempfile.TemporaryDirectory() as tmpdir:
        with pytest.raises(ValueError, match="not in allowlist"):
            run_in_sandbox(["python3", "-c", "print(1)"], cwd=tmpdir)


def test_disallowed_bash():
    with tempfile.TemporaryDirectory() as tmpdir:
        with pytest.raises(ValueError, match="not in allowlist"):
            run_in_sandbox(["bash", "-c", "echo pwned"], cwd=tmpdir)


def test_invalid_cwd():
    with pytest.raises(ValueError, match="does not exist"):
        run_in_sandbox(["git", "--version"], cwd="/nonexistent/path")


def test_empty_command():
    with tempfile.TemporaryDirectory() as tmpdir:
        with pytest.raises(ValueError, match="non-empty list"):
            run_in_sandbox([], cwd=tmpdir)


def test_timeout(allow_python):
    with tempfile.TemporaryDirectory() as tmpdir:
        stdout, stderr, rc = run_in_sandbox(
            [sys.executable, "-c", "import time; time.sleep(10)"],
            cwd=tmpdir,
            timeout=1,
        )
        assert rc == -1
        assert "timed out" in stderr.lower()


def test_command_not_found(monkeypatch):
    monkeypatch.setitem(DEFAULTS, "allowed_commands", ["nonexistent_cmd_xyz"])
    with tempfile.TemporaryDirectory() as tmpdir:
        stdout, stderr, rc = run_in_sandbox(["nonexistent_cmd_xyz"], cwd=tmpdir)
        assert rc == -1
        assert "not found" in stderr.lower()
