"""Default pipeline settings."""

DEFAULTS = {
    "provider": "anthropic",
    "models": {
        "anthropic": "claude-sonnet-4-5-20250929",
        "openai": "gpt-4o",
        "ollama": "llama3",
    },
    "base_urls": {
        "openai": None,
        "ollama": "http://127.0.0.1:11434/v1",
    },
    "max_tokens": 8192,
    "readme_max_tokens": 2048,
    "claude_prefill": True,
    "max_iterations": 7,
    "hard_max_iterations": 20,  # absolute ceiling, cannot be overridden
    "min_confidence": 5,
    "warn_threshold": 0.8,
    "escalation_factor": 1.25,
    "escalation_window": 3,
    "file_concurrency": 1,
    "checkpoint_dir": ".vulnhuntr_checkpoint",
    "checkpoint_save_frequency": 1,
    "reports_dir": ".vulnhuntr-reports",
    "sandbox_timeout": 300,
    "allowed_commands": ["git"],
    "max_definition_lines": 150,
    "symbol_cache_files": 128,
}
