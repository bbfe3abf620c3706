"""Checkpoint persistence so an interrupted scan can pick up where it stopped."""

import json
import os
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone

import structlog

from config.defaults import DEFAULTS
from core.state import Finding

log = structlog.get_logger(__name__)

CHECKPOINT_VERSION = "1.0"
CHECKPOINT_FILE = "checkpoint.json"


@dataclass
class CheckpointRecord:
    repo_root: str
    model: str
    completed_files: list = field(default_factory=list)
    pending_files: list = field(default_factory=list)
    current_file: str | None = None
    results: dict = field(default_factory=dict)     # file -> [finding dict, ...]
    cost_snapshot: dict = field(default_factory=dict)
    started_at: str = ""
    saved_at: str = ""
    version: str = CHECKPOINT_VERSION

    def findings(self):
        """All findings stored for completed files, in completion order."""
        out = []
        for path in self.completed_files:
            out.extend(Finding.from_dict(d) for d in self.results.get(path, []))
        return out


def _now():
    return datetime.now(timezone.utc).isoformat()


class CheckpointStore:
    """JSON checkpoint written atomically (temp file, then os.replace).

    A lock serializes in-memory updates and writes so concurrent
    mark_file_complete calls never interleave a save.
    """

    def __init__(self, checkpoint_dir=DEFAULTS["checkpoint_dir"],
                 save_frequency=DEFAULTS["checkpoint_save_frequency"], enabled=True):
        self.checkpoint_dir = checkpoint_dir
        self.path = os.path.join(checkpoint_dir, CHECKPOINT_FILE)
        self.save_frequency = max(1, save_frequency)
        self.enabled = enabled
        self.record = None
        self._ledger = None
        self._since_save = 0
        self._lock = threading.Lock()

    def can_resume(self):
        return self.enabled and os.path.isfile(self.path)

    def load(self):
        """Read the checkpoint file; returns None when missing or unreadable."""
        if not os.path.isfile(self.path):
            return None
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
            return CheckpointRecord(**data)
        except (OSError, ValueError, TypeError) as e:
            log.warning("checkpoint_load_failed", path=self.path, error=str(e))
            return None

    def start(self, repo_root, files, model, ledger=None):
        if not self.enabled:
            return
        with self._lock:
            self._ledger = ledger
            self.record = CheckpointRecord(
                repo_root=str(repo_root),
                model=model,
                pending_files=[str(f) for f in files],
                started_at=_now(),
            )
            self._save_locked()
        log.info("checkpoint_started", path=self.path, files=len(files))

    def resume(self, ledger=None):
        """Load the saved record and restore the ledger from its cost snapshot."""
        record = self.load()
        if record is None:
            return None
        with self._lock:
            self.record = record
            self._ledger = ledger
            if ledger is not None and record.cost_snapshot:
                ledger.restore(record.cost_snapshot)
        log.info("checkpoint_resumed", completed=len(record.completed_files),
                 pending=len(record.pending_files))
        return record

    def set_current_file(self, file_path):
        if not self.enabled or self.record is None:
            return
        with self._lock:
            self.record.current_file = str(file_path)

    def mark_file_complete(self, file_path, findings=()):
        if not self.enabled or self.record is None:
            return
        file_path = str(file_path)
        with self._lock:
            rec = self.record
            if file_path in rec.pending_files:
                rec.pending_files.remove(file_path)
            if file_path not in rec.completed_files:
                rec.completed_files.append(file_path)
            rec.results[file_path] = [f.to_dict() for f in findings]
            if rec.current_file == file_path:
                rec.current_file = None

            self._since_save += 1
            if self._since_save >= self.save_frequency:
                self._save_locked()

    def flush(self):
        """Write unconditionally; used from error and cancellation hooks."""
        if not self.enabled or self.record is None:
            return
        with self._lock:
            self._save_locked()

    def finalize(self, success=True):
        if not self.enabled or self.record is None:
            return
        with self._lock:
            if success and not self.record.pending_files:
                try:
                    os.remove(self.path)
                except FileNotFoundError:
                    pass
                log.info("checkpoint_cleared", path=self.path)
            else:
                self._save_locked()
                log.info("checkpoint_kept", path=self.path,
                         pending=len(self.record.pending_files))

    def progress(self):
        if self.record is None:
            return {"completed": 0, "pending": 0, "total": 0, "percent": 0.0}
        done = len(self.record.completed_files)
        pending = len(self.record.pending_files)
        total = done + pending
        return {
            "completed": done,
            "pending": pending,
            "total": total,
            "percent": round(100 * done / total, 1) if total else 0.0,
        }

    def _save_locked(self):
        rec = self.record
        rec.saved_at = _now()
        if self._ledger is not None:
            rec.cost_snapshot = self._ledger.to_dict()

        os.makedirs(self.checkpoint_dir, exist_ok=True)
        tmp = self.path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(asdict(rec), f, indent=2)
        os.replace(tmp, self.path)
        self._since_save = 0
