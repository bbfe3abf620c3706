"""Discovery agent: finds the Python files worth sending to the model."""

import os

import structlog

from config.rules import EXCLUDE_FILENAMES, EXCLUDE_PATHS, NETWORK_PATTERNS, README_CANDIDATES

log = structlog.get_logger(__name__)


class RepoScanner:
    """Walks a repository. Paths it returns are relative to root, '/'-separated."""

    def __init__(self, root, exclude_paths=()):
        self.root = os.path.realpath(root)
        self.exclude_paths = set(EXCLUDE_PATHS) | {p.lower() for p in exclude_paths}

    def _rel(self, path):
        return os.path.relpath(path, self.root).replace(os.sep, "/")

    def is_excluded(self, rel_path):
        probe = "/" + rel_path.lower()
        if any(fragment in probe for fragment in self.exclude_paths):
            return True
        base = os.path.basename(rel_path)
        return any(marker in base for marker in EXCLUDE_FILENAMES)

    def get_python_files(self, start=None):
        start = start or self.root
        found = []
        for dirpath, dirnames, filenames in os.walk(start):
            dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
            for name in sorted(filenames):
                if not name.endswith(".py"):
                    continue
                rel = self._rel(os.path.join(dirpath, name))
                if not self.is_excluded(rel):
                    found.append(rel)
        return found

    def is_network_file(self, rel_path):
        try:
            with open(os.path.join(self.root, rel_path), encoding="utf-8", errors="replace") as f:
                content = f.read()
        except OSError:
            return False
        return any(p.search(content) for p in NETWORK_PATTERNS)

    def get_network_files(self, files):
        return [f for f in files if self.is_network_file(f)]

    def get_files_to_analyze(self, all_files, analyze_path=None):
        """A file analyze_path yields exactly that file; a directory yields
        every Python file under it; no analyze_path yields network files only."""
        if not analyze_path:
            return self.get_network_files(all_files)

        target = analyze_path
        if not os.path.isabs(target):
            target = os.path.join(self.root, target)
        target = os.path.realpath(target)

        if os.path.isfile(target):
            return [self._rel(target)]
        if os.path.isdir(target):
            return self.get_python_files(target)
        raise FileNotFoundError(f"Analyze path does not exist: {analyze_path}")

    def get_readme_content(self):
        for name in README_CANDIDATES:
            path = os.path.join(self.root, name)
            if os.path.isfile(path):
                with open(path, encoding="utf-8", errors="replace") as f:
                    return f.read()
        # Case-insensitive fallback
        for name in sorted(os.listdir(self.root)):
            if name.lower().startswith("readme") and os.path.isfile(os.path.join(self.root, name)):
                with open(os.path.join(self.root, name), encoding="utf-8", errors="replace") as f:
                    return f.read()
        return None


class DiscoveryAgent:
    """Lists candidate files. Makes no LLM calls."""

    name = "discovery"

    def run(self, state):
        config = state.config
        scanner = RepoScanner(state.local_path, config.exclude_paths)
        all_files = scanner.get_python_files()
        files = scanner.get_files_to_analyze(all_files, config.analyze_path)
        log.info("files_discovered", total=len(all_files), to_analyze=len(files),
                 network_only=not config.analyze_path)
        return {"all_files": all_files, "files_to_analyze": files}
