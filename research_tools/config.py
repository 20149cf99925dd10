import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "agent_config.json"

DEFAULT_AGENT_CONFIG: Dict[str, Any] = {
    "model": "gpt-4o-mini",
    "token_budget": 1_000_000,
    "max_bad_attempts": 3,
    "max_steps": 60,
    "step_sleep": 1.0,
    "search_provider": "jina",
    "max_references": 6,
    "min_chunk_length": 50,
    "max_chunk_length": 500,
    "rerank_batch_size": 100,
    "dedup_threshold": 0.86,
}

_ENV_KEYS = {
    "model": "OPENAI_MODEL",
    "token_budget": "DEEPSEARCH_TOKEN_BUDGET",
    "max_bad_attempts": "DEEPSEARCH_MAX_BAD_ATTEMPTS",
    "max_steps": "DEEPSEARCH_MAX_STEPS",
    "step_sleep": "DEEPSEARCH_STEP_SLEEP",
    "search_provider": "SEARCH_PROVIDER",
}

_INT_RANGES = {
    "token_budget": (1_000, 100_000_000),
    "max_bad_attempts": (1, 20),
    "max_steps": (1, 1_000),
    "max_references": (1, 50),
    "min_chunk_length": (1, 5_000),
    "max_chunk_length": (10, 20_000),
    "rerank_batch_size": (1, 2_048),
}

_FLOAT_RANGES = {
    "step_sleep": (0.0, 60.0),
    "dedup_threshold": (0.5, 0.999),
}


def _read_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Ignoring unreadable config %s: %s", path, exc)
        return {}
    return raw if isinstance(raw, dict) else {}


def load_agent_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Defaults, overlaid by the JSON config file, overlaid by environment variables."""
    config_path = Path(path or os.getenv("DEEPSEARCH_CONFIG", "") or DEFAULT_CONFIG_PATH)
    merged: Dict[str, Any] = dict(DEFAULT_AGENT_CONFIG)
    for key, value in _read_file(config_path).items():
        if key in merged:
            merged[key] = value
    for key, env_name in _ENV_KEYS.items():
        raw = os.getenv(env_name)
        if raw is not None and raw.strip():
            merged[key] = raw.strip()

    config: Dict[str, Any] = {}
    for key, default in DEFAULT_AGENT_CONFIG.items():
        value = merged.get(key, default)
        if key in _INT_RANGES:
            lo, hi = _INT_RANGES[key]
            try:
                config[key] = min(max(int(value), lo), hi)
            except (TypeError, ValueError):
                config[key] = default
        elif key in _FLOAT_RANGES:
            lo, hi = _FLOAT_RANGES[key]
            try:
                config[key] = min(max(float(value), lo), hi)
            except (TypeError, ValueError):
                config[key] = default
        else:
            config[key] = str(value or default).strip() or default
    if config["search_provider"] not in {"jina", "brave"}:
        logger.warning("Unknown search provider %r; using jina", config["search_provider"])
        config["search_provider"] = "jina"
    return config
