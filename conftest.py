"""Shared fixtures: every test gets its own database and offline embeddings."""

import pytest

from config import Config
from store import ContextStore


@pytest.fixture
def config(tmp_path):
    """Isolated config: tmp database, tmp transcript root, hash embeddings, no LLM."""
    return Config(
        db_path=tmp_path / "lancedb",
        embedding_provider="hash",
        embedding_api_key=None,
        llm_api_key=None,
        claude_dir=tmp_path / "claude",
        project_path=None,
        watch_debounce_ms=100,
        watch_force_polling=True,
    )


@pytest.fixture
async def store(config):
    """Initialized store over the isolated database."""
    store = ContextStore(config)
    await store.initialize()
    return store
