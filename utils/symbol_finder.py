"""Resolve the class/function names the model asks for into source code."""

import ast
import functools
import os
import re

import structlog

from config.defaults import DEFAULTS
from core.state import CodeDefinition

log = structlog.get_logger(__name__)

REFERENCE_BEFORE = 20
REFERENCE_AFTER = 30

_DEF_NODES = (ast.ClassDef, ast.FunctionDef, ast.AsyncFunctionDef)


def _def_patterns(name):
    name = re.escape(name)
    return [
        re.compile(rf"^\s*class\s+{name}\s*[:(]"),
        re.compile(rf"^\s*(?:async\s+)?def\s+{name}\s*\("),
    ]


def _find_in_tree(tree, parts):
    """Find a definition node for Name or Owner.name; falls back to the owner class."""
    if len(parts) == 1:
        for node in ast.walk(tree):
            if isinstance(node, _DEF_NODES) and node.name == parts[0]:
                return node
        return None

    owner, attr = parts[-2], parts[-1]
    for node in ast.walk(tree):
        if isinstance(node, ast.ClassDef) and node.name == owner:
            for child in node.body:
                if isinstance(child, _DEF_NODES) and child.name == attr:
                    return child
            return node
    return None


def _block_from_line(lines, start, max_lines):
    """Definition starting at lines[start], followed by its indented body."""
    first = lines[start]
    indent = len(first) - len(first.lstrip())
    block = [first]
    for line in lines[start + 1:]:
        if len(block) >= max_lines:
            break
        stripped = line.strip()
        if stripped and len(line) - len(line.lstrip()) <= indent:
            break
        block.append(line)
    while block and not block[-1].strip():
        block.pop()
    return "\n".join(block)


class SymbolResolver:
    """Three-step lookup over the candidate files, in the order given:

    1. AST definition lookup (regex definition search for files that do not parse)
    2. bare-name definition lookup for dotted names (module.func, Class.method)
    3. a window of lines around the first reference to the name
    """

    def __init__(self, max_lines=DEFAULTS["max_definition_lines"],
                 cache_size=DEFAULTS["symbol_cache_files"]):
        self.max_lines = max_lines
        # parsed files are kept for the most recently used cache_size paths only
        self._read = functools.lru_cache(maxsize=cache_size)(self._load)

    @staticmethod
    def _load(path):
        """Return (source, tree); either is None when the file cannot be read or parsed."""
        try:
            with open(path, encoding="utf-8", errors="replace") as f:
                source = f.read()
        except OSError as e:
            log.debug("symbol_file_unreadable", path=path, error=str(e))
            return None, None
        try:
            return source, ast.parse(source)
        except (SyntaxError, ValueError):
            return source, None

    def _definition(self, source, tree, parts):
        lines = source.splitlines()
        if tree is not None:
            node = _find_in_tree(tree, parts)
            if node is None:
                return None
            start = min([node.lineno] + [d.lineno for d in node.decorator_list]) - 1
            end = min(node.end_lineno, start + self.max_lines)
            return "\n".join(lines[start:end])

        for pattern in _def_patterns(parts[0] if len(parts) == 1 else parts[-2]):
            for i, line in enumerate(lines):
                if pattern.match(line):
                    return _block_from_line(lines, i, self.max_lines)
        return None

    def resolve(self, name, code_line, candidate_files, root):
        clean = name.strip().removesuffix("()")
        parts = [p for p in clean.split(".") if p]
        if not parts:
            return None

        paths = [(f, os.path.join(root, f)) for f in candidate_files]
        searches = [parts] if len(parts) == 1 else [parts, parts[-1:]]

        for search in searches:
            for rel, path in paths:
                source, tree = self._read(path)
                if source is None:
                    continue
                found = self._definition(source, tree, search)
                if found:
                    return self._result(clean, name, rel, root, found)

        base = parts[-1]
        hint = code_line.strip() if code_line else ""
        for rel, path in paths:
            source, _ = self._read(path)
            if source is None:
                continue
            lines = source.splitlines()
            hit = next((i for i, line in enumerate(lines) if hint and hint in line), None)
            if hit is None:
                hit = next((i for i, line in enumerate(lines) if base in line), None)
            if hit is not None:
                window = lines[max(0, hit - REFERENCE_BEFORE):hit + REFERENCE_AFTER]
                return self._result(clean, name, rel, root, "\n".join(window))

        log.debug("symbol_not_found", name=name)
        return None

    @staticmethod
    def _result(clean, requested, rel, root, source):
        file_path = os.path.relpath(rel, root) if os.path.isabs(rel) else rel
        return CodeDefinition(name=clean, context_name_requested=requested,
                              file_path=file_path, source=source)
