"""Repository acquisition (local path or git clone) and report directory naming."""

import os
import re
import shutil
import tempfile
from datetime import datetime

import structlog

from core.sandbox import run_in_sandbox

log = structlog.get_logger(__name__)

_REMOTE_RE = re.compile(r"^(?:https?://|git@|ssh://|git://|github\.com/)")
_GITHUB_RE = re.compile(r"github\.com[/:]([^/\s]+)/([^/\s#?]+?)(?:\.git)?/?$")


class RepoError(Exception):
    """The repository could not be located or cloned."""


def is_remote(target):
    return bool(_REMOTE_RE.match(target.strip()))


def parse_repo_name(url):
    """Return (owner, name) for a remote URL; owner is '' for non-GitHub hosts."""
    url = url.strip()
    match = _GITHUB_RE.search(url)
    if match:
        return match.group(1), match.group(2)
    tail = url.rstrip("/").rsplit("/", 1)[-1].rsplit(":", 1)[-1]
    return "", tail.removesuffix(".git") or "repo"


def slugify(text):
    """Convert text to a filesystem-safe slug."""
    text = text.lower().strip()
    text = re.sub(r"[^\w\s.-]", "", text)
    text = re.sub(r"[\s_]+", "_", text)
    return text.strip("_.") or "repo"


def normalize_url(url):
    url = url.strip()
    if url.startswith("github.com/"):
        return "https://" + url
    return url


def clone_repo(url, dest_parent=None, branch=None):
    """Shallow-clone url into a fresh temp dir and return the checkout path."""
    url = normalize_url(url)
    _, name = parse_repo_name(url)
    parent = dest_parent or tempfile.mkdtemp(prefix="vulnsweep_")
    dest = os.path.join(parent, slugify(name))

    command = ["git", "clone", "--depth", "1"]
    if branch:
        command += ["--branch", branch]
    command += [url, dest]

    log.info("cloning_repo", url=url, dest=dest)
    stdout, stderr, rc = run_in_sandbox(command, cwd=parent)
    if rc != 0:
        shutil.rmtree(parent, ignore_errors=True)
        raise RepoError(f"git clone failed for {url}: {stderr.strip() or stdout.strip()}")
    return dest


def resolve_repo(target):
    """Return (local_path, is_cloned) for a local directory or remote URL."""
    if is_remote(target):
        return clone_repo(target), True

    path = os.path.realpath(os.path.expanduser(target))
    if not os.path.isdir(path):
        raise RepoError(f"Repository path does not exist or is not a directory: {target}")
    return path, False


def remove_clone(local_path):
    """Delete a cloned checkout along with the temp dir that holds it."""
    parent = os.path.dirname(local_path)
    if os.path.basename(parent).startswith("vulnsweep_"):
        shutil.rmtree(parent, ignore_errors=True)
    else:
        shutil.rmtree(local_path, ignore_errors=True)
    log.info("clone_removed", path=local_path)


def report_filename(ext, stamp=None):
    """Timestamped report name, e.g. vulnhuntr-report-20250101-120000.sarif."""
    stamp = stamp or datetime.now().strftime("%Y%m%d-%H%M%S")
    return f"vulnhuntr-report-{stamp}.{ext}"


def copy_reports(paths, dest_dir):
    """Copy report files into dest_dir; returns the new paths."""
    os.makedirs(dest_dir, exist_ok=True)
    copied = []
    for path in paths:
        target = os.path.join(dest_dir, os.path.basename(path))
        shutil.copy2(path, target)
        copied.append(target)
    return copied
