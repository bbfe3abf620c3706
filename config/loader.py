"""Project config file (.vulnhuntr.yaml) discovery and merging."""

import os

import structlog
import yaml

log = structlog.get_logger(__name__)

CONFIG_NAMES = [".vulnhuntr.yaml", ".vulnhuntr.yml"]

# Keys recognised at top level, plus the sections they may also live in
_FLAT_KEYS = {
    "budget": float,
    "max_cost_per_file": float,
    "max_cost_per_iteration": float,
    "checkpoint": bool,
    "provider": str,
    "model": str,
    "dry_run": bool,
    "vuln_types": list,
    "exclude_paths": list,
    "max_iterations": int,
    "confidence_threshold": int,
}

_SECTIONS = {
    "cost": ("budget", "max_cost_per_file", "max_cost_per_iteration", "checkpoint"),
    "llm": ("provider", "model"),
    "analysis": ("vuln_types", "exclude_paths", "max_iterations", "confidence_threshold"),
}


def find_config_file(start_dir=None):
    """Walk upward from start_dir looking for a config file, then try $HOME."""
    current = os.path.realpath(start_dir or os.getcwd())
    while True:
        for name in CONFIG_NAMES:
            candidate = os.path.join(current, name)
            if os.path.isfile(candidate):
                return candidate
        parent = os.path.dirname(current)
        if parent == current:
            break
        current = parent

    home = os.path.expanduser("~")
    for name in CONFIG_NAMES:
        candidate = os.path.join(home, name)
        if os.path.isfile(candidate):
            return candidate
    return None


def _coerce(key, value):
    kind = _FLAT_KEYS[key]
    if value is None:
        return None
    if kind is list:
        if not isinstance(value, list):
            raise ValueError(f"Config key '{key}' must be a list")
        return [str(v) for v in value]
    return kind(value)


def config_from_dict(data):
    """Flatten a parsed YAML mapping into a dict of known keys."""
    config = {}
    for key in _FLAT_KEYS:
        if key in data:
            config[key] = _coerce(key, data[key])

    for section, keys in _SECTIONS.items():
        block = data.get(section)
        if not isinstance(block, dict):
            continue
        for key in keys:
            if key in block:
                config[key] = _coerce(key, block[key])
    return config


def load_config(config_path=None, start_dir=None):
    """Load the project config; an absent or empty file yields {}.

    A file that exists but cannot be parsed raises ValueError so a typo in
    the budget never silently disables it.
    """
    path = config_path or find_config_file(start_dir)
    if not path or not os.path.isfile(path):
        return {}

    with open(path, encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid config file {path}: {e}") from e

    if not data:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping")

    config = config_from_dict(data)
    log.info("config_loaded", path=path, keys=sorted(config))
    return config


def merge_config(file_config, overrides):
    """Explicit input wins over the file; None in overrides means 'not given'."""
    merged = dict(file_config)
    for key, value in overrides.items():
        if value is None:
            continue
        if isinstance(value, (list, tuple)) and not value:
            continue
        merged[key] = value
    return merged


# Config-file keys that are named differently on RunConfig
_RENAMES = {"budget": "max_budget_usd", "confidence_threshold": "min_confidence"}


def to_run_options(file_config):
    return {_RENAMES.get(k, k): v for k, v in file_config.items()}
