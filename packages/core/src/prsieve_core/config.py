import os
from pathlib import Path
from typing import Optional

import yaml

DEFAULT_CONFIG: dict = {
    "model": "anthropic",
    "max_tokens": None,  # None = provider limit
    "temperature": None,
    "guidelines": None,  # None = use built-in default; set to a path string to override
    "exclude": [],  # fnmatch patterns or directory names to skip (e.g. "migrations/", "*.min.js")
    "analysis_timeout_seconds": None,
    "batch_processing": {
        "enabled": True,
        "max_files_per_batch": 3,
        "single_request_threshold": 5,
        "batch_delay_ms": 1000,
        "prioritize_security_files": True,
        "batch_token_ratio": 0.7,
        "parallel": {
            "enabled": True,
            "max_concurrent_batches": 3,
            "failure_handling": "continue",  # "continue" | "stop-all"
            "stagger_delay_ms": 200,
            "enable_token_budget": True,
        },
    },
    "deduplication": {
        "semantic": True,
        "similarity_threshold": 85,
        "similarity_batch_size": 15,
        "bot_login": None,
    },
    "retry": {
        "max_attempts": 3,
        "base_delay": 1.0,
        "max_delay": 10.0,
    },
    # Several analyzers review the same batches; their findings are deduplicated together.
    "multi_instance": {
        "enabled": False,
        "instances": [],  # [{"name": "claude", "model": "anthropic", "model_name": None, "temperature": None}]
        "max_comments": None,  # keep only the N most severe findings after dedup
    },
}

BUILTIN_GUIDELINES_DIR = Path(__file__).parent / "guidelines"
_BUILTIN_DEFAULT = BUILTIN_GUIDELINES_DIR / "default.md"

# Sections merged key-by-key instead of replaced wholesale.
_NESTED_SECTIONS = ("batch_processing", "deduplication", "retry", "multi_instance")


def _copy_defaults() -> dict:
    config = dict(DEFAULT_CONFIG)
    config["exclude"] = list(DEFAULT_CONFIG["exclude"])
    for section in _NESTED_SECTIONS:
        config[section] = dict(DEFAULT_CONFIG[section])
    config["batch_processing"]["parallel"] = dict(DEFAULT_CONFIG["batch_processing"]["parallel"])
    config["multi_instance"]["instances"] = list(DEFAULT_CONFIG["multi_instance"]["instances"])
    return config


def load_config(config_path: str = ".prsieve.yml", cli_overrides: Optional[dict] = None) -> dict:
    """
    Load configuration by merging (in order of precedence):
      1. Built-in defaults
      2. .prsieve.yml in the current directory
      3. CLI argument overrides
    """
    config = _copy_defaults()

    path = Path(config_path)
    if path.exists():
        with open(path) as f:
            file_config = yaml.safe_load(f) or {}
        for key, value in file_config.items():
            if key in _NESTED_SECTIONS and isinstance(value, dict):
                value = dict(value)
                parallel = value.pop("parallel", None)
                config[key].update(value)
                if key == "batch_processing" and isinstance(parallel, dict):
                    config[key]["parallel"].update(parallel)
            else:
                config[key] = value

    if cli_overrides:
        for key, value in cli_overrides.items():
            if value is not None:
                config[key] = value

    # Resolve credentials from environment variables
    config["github_token"] = os.environ.get("GITHUB_TOKEN")
    config["anthropic_api_key"] = os.environ.get("ANTHROPIC_API_KEY")
    config["openai_api_key"] = os.environ.get("OPENAI_API_KEY")

    return config


def load_guidelines(config: dict) -> str:
    """
    Load review guidelines.

    If ``guidelines`` is set in config, loads from that path (relative to cwd).
    Otherwise falls back to the built-in default.
    """
    custom_path = config.get("guidelines")
    if custom_path:
        p = Path(custom_path)
        if not p.exists():
            raise FileNotFoundError(f"Guidelines file not found: {custom_path}")
        return p.read_text()

    if _BUILTIN_DEFAULT.exists():
        return _BUILTIN_DEFAULT.read_text()

    raise FileNotFoundError("No guidelines configured and built-in default is missing.")
