"""
Configuration management for the code knowledge graph.

Handles per-repository configuration stored in the .codegraph/ directory.
"""

import os
import json
import copy
from pathlib import Path
from typing import Optional, Dict, Any

DEFAULT_CONFIG = {
    "neo4j": {
        "uri": "bolt://localhost:7687",
        "user": "neo4j",
        "password": "password",
    },
    "llm": {
        "provider": "openai",
        "model": "gpt-4o-mini",
        "api_key": "",  # Empty means will use env var
        "max_tokens": 2048,
        "annotation_limit": 20,
    },
    "indexing": {
        "root": ".",
        "include_patterns": [
            "**/*.js",
            "**/*.html",
            "**/*.py",
        ],
        "exclude_patterns": [
            "node_modules",
            ".git",
            ".codegraph",
            "__pycache__",
            ".venv",
            "venv",
            "dist",
            "build",
            "test-images",
            "tools/graph-builder",
            "fixtures",
        ],
    },
}

# Provider name -> environment variable holding its API key
API_KEY_ENV_VARS = {
    "openai": "OPENAI_API_KEY",
}


class Config:
    """Manages knowledge graph configuration for a repository."""

    def __init__(self, repo_root: Path):
        """
        Initialize config for a repository.

        Args:
            repo_root: Path to the repository root
        """
        self.repo_root = repo_root
        self.config_dir = repo_root / ".codegraph"
        self.config_file = self.config_dir / "config.json"

    def exists(self) -> bool:
        """Check if config exists for this repo."""
        return self.config_file.exists()

    def load(self) -> Dict[str, Any]:
        """Load config from file, or return defaults if not exists."""
        if not self.exists():
            return copy.deepcopy(DEFAULT_CONFIG)

        try:
            with open(self.config_file, "r") as f:
                config = json.load(f)
                # Merge with defaults to handle missing keys
                return self._merge_defaults(config)
        except (json.JSONDecodeError, IOError) as e:
            raise RuntimeError(f"Failed to load config from {self.config_file}: {e}")

    def save(self, config: Dict[str, Any]) -> None:
        """Save config to file."""
        self.config_dir.mkdir(exist_ok=True)
        payload = copy.deepcopy(config)

        # Don't save empty api_key - let it fall back to env var
        if payload.get("llm", {}).get("api_key") == "":
            payload["llm"]["api_key"] = None

        with open(self.config_file, "w") as f:
            json.dump(payload, f, indent=2)

    def _merge_defaults(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Merge user config with defaults."""
        return self._deep_merge_dicts(copy.deepcopy(DEFAULT_CONFIG), config)

    def _deep_merge_dicts(self, base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively merge nested dictionaries."""
        for key, value in overrides.items():
            if key in base and isinstance(base[key], dict) and isinstance(value, dict):
                base[key] = self._deep_merge_dicts(base[key], value)
            else:
                base[key] = value
        return base

    def get_neo4j_config(self) -> Dict[str, str]:
        """Get Neo4j connection config, with env var fallbacks."""
        neo4j = self.load()["neo4j"]
        return {
            "uri": os.getenv("NEO4J_URI", neo4j["uri"]),
            "user": os.getenv("NEO4J_USER") or os.getenv("NEO4J_USERNAME", neo4j["user"]),
            "password": os.getenv("NEO4J_PASSWORD", neo4j["password"]),
        }

    def get_llm_config(self) -> Dict[str, Any]:
        """Get language model settings, with env var fallbacks."""
        llm = dict(self.load()["llm"])
        llm["provider"] = os.getenv("CODEGRAPH_LLM_PROVIDER", llm["provider"])
        llm["model"] = os.getenv("CODEGRAPH_LLM_MODEL", llm["model"])
        llm["api_key"] = self.get_llm_api_key(llm)
        return llm

    def get_llm_api_key(self, llm: Optional[Dict[str, Any]] = None) -> Optional[str]:
        """Get the LLM API key. Priority: config file > env var."""
        llm = llm or self.load()["llm"]
        key = llm.get("api_key")
        if key:
            return key
        env_var = API_KEY_ENV_VARS.get(llm.get("provider", "openai"), "OPENAI_API_KEY")
        return os.getenv(env_var)

    def get_indexing_config(self) -> Dict[str, Any]:
        """Get indexing configuration with the root resolved against the repo."""
        indexing = dict(self.load()["indexing"])
        root = Path(indexing.get("root") or ".")
        if not root.is_absolute():
            root = self.repo_root / root
        indexing["root"] = root.resolve()
        return indexing


def find_repo_root(start_path: Path = None) -> Path:
    """
    Find the repository root by looking for .codegraph directory.

    Args:
        start_path: Path to start searching from (defaults to cwd)

    Returns:
        Path to repo root (falls back to the start path)
    """
    start_path = start_path or Path.cwd()
    current = start_path.resolve()

    # Walk up directories looking for .codegraph
    while current != current.parent:
        if (current / ".codegraph").exists():
            return current
        current = current.parent

    # Not found, check if current dir is a git repo
    current = start_path.resolve()
    while current != current.parent:
        if (current / ".git").exists():
            return current
        current = current.parent

    # Fallback to current directory
    return start_path.resolve()
