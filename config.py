"""Configuration for context-mcp."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _llm_api_key() -> str | None:
    """Get Gemini API key from environment or secrets file."""
    key = os.environ.get("GOOGLE_API_KEY") or os.environ.get("GEMINI_API_KEY")
    if key:
        return key
    secrets_path = Path.home() / ".secrets" / "GOOGLE_API_KEY"
    if secrets_path.exists():
        return secrets_path.read_text().strip() or None
    return None


@dataclass(frozen=True, slots=True)
class Config:
    """Server configuration with sensible defaults.

    Defaults are read from the environment when an instance is created, so
    tests can build isolated configurations without patching module state.
    """

    db_path: Path = field(
        default_factory=lambda: Path(
            os.environ.get("CONTEXT_MCP_DB_PATH", Path.home() / ".context-mcp" / "lancedb")
        )
    )
    table_name: str = "context"
    embedding_dim: int = field(default_factory=lambda: int(os.environ.get("EMBEDDING_DIM", "1536")))
    embedding_provider: str = field(
        default_factory=lambda: os.environ.get("EMBEDDING_PROVIDER", "auto")
    )  # auto | remote | hash
    embedding_api_key: str | None = field(default_factory=lambda: os.environ.get("OPENAI_API_KEY"))
    embedding_api_url: str = field(
        default_factory=lambda: os.environ.get(
            "EMBEDDING_API_URL", "https://api.openai.com/v1/embeddings"
        )
    )
    embedding_model: str = field(
        default_factory=lambda: os.environ.get("EMBEDDING_MODEL", "text-embedding-3-small")
    )
    embedding_max_chars: int = 8000
    llm_api_key: str | None = field(default_factory=_llm_api_key)
    llm_model: str = field(default_factory=lambda: os.environ.get("LLM_MODEL", "gemini-3-flash-preview"))
    summary_input_chars: int = 4000
    summary_fallback_chars: int = 500
    remote_timeout: float = field(default_factory=lambda: float(os.environ.get("REMOTE_TIMEOUT", "30")))
    claude_dir: Path = field(
        default_factory=lambda: Path(os.environ.get("CLAUDE_CONFIG_DIR", Path.home() / ".claude"))
    )
    project_path: str | None = field(
        default_factory=lambda: os.environ.get("CONTEXT_MCP_PROJECT_PATH") or None
    )
    watch_depth: int = 3
    watch_debounce_ms: int = 1600
    watch_force_polling: bool = field(default_factory=lambda: _env_flag("WATCH_FORCE_POLLING"))
    default_limit: int = 5
    max_limit: int = 50
    preview_chars: int = 500
