"""
Embedding & summarization for context-mcp.

Two interchangeable embedding strategies behind one provider:
- remote: OpenAI-compatible /v1/embeddings endpoint via requests
- hash: deterministic, offline bag-of-tokens hashing (semantically weak)

Summarization uses Google Gemini and degrades to a plain prefix of the input.
"""

from __future__ import annotations

import asyncio
import re
import sys
import threading
from functools import lru_cache
from typing import TYPE_CHECKING

import numpy as np
import requests

from config import Config
from errors import UpstreamUnavailableError
from utils import string_hash

if TYPE_CHECKING:
    from google.genai import Client as GenAIClient

_STRIP_PUNCTUATION = re.compile(r"[^A-Za-z0-9_\s]")

SUMMARY_PROMPT = (
    "Summarize the following text in 2-3 sentences, focusing on the key topics, "
    "decisions, and technical details:\n\n{text}"
)


# =============================================================================
# Deterministic Fallback
# =============================================================================


def tokenize(text: str) -> list[str]:
    """Lowercase, strip punctuation, split on whitespace, drop tokens of length <= 2."""
    cleaned = _STRIP_PUNCTUATION.sub("", text.lower())
    return [word for word in cleaned.split() if len(word) > 2]


def hash_embedding(text: str, dim: int) -> list[float]:
    """Deterministic hash-based embedding.

    Each token lands in bucket ``abs(hash) % dim`` with weight ``1 / (i + 1)``
    so earlier tokens dominate. Not real semantic meaning: unrelated words
    can collide in one bucket. Returns the all-zero vector when no token
    qualifies.
    """
    return list(_hash_embedding_cached(text, dim))


@lru_cache(maxsize=256)
def _hash_embedding_cached(text: str, dim: int) -> tuple[float, ...]:
    embedding = np.zeros(dim, dtype=np.float64)
    for idx, word in enumerate(tokenize(text)):
        embedding[abs(string_hash(word)) % dim] += 1 / (idx + 1)

    norm = np.linalg.norm(embedding)
    if norm > 0:
        embedding = embedding / norm
    return tuple(embedding.tolist())


def fit_dimension(values: list[float], dim: int) -> list[float]:
    """Truncate or zero-pad a vector to ``dim`` and L2-normalize it."""
    embedding = np.array(values, dtype=np.float64)
    if len(embedding) > dim:
        embedding = embedding[:dim]
    elif len(embedding) < dim:
        embedding = np.concatenate([embedding, np.zeros(dim - len(embedding))])
    norm = np.linalg.norm(embedding)
    return (embedding / norm).tolist() if norm > 0 else embedding.tolist()


# =============================================================================
# Provider
# =============================================================================


class EmbeddingProvider:
    """Text -> vector[D] plus short-text summarization.

    ``embed`` and ``summarize`` never raise on upstream failure: the remote
    strategy falls back to :func:`hash_embedding`, and summarization falls
    back to the first ``summary_fallback_chars`` characters of the input.
    """

    def __init__(self, config: Config) -> None:
        self.config = config
        self.dim = config.embedding_dim
        self._lock = threading.Lock()
        self._genai_client: GenAIClient | None = None

    @property
    def strategy(self) -> str:
        """Active embedding strategy: ``remote`` or ``hash``."""
        provider = self.config.embedding_provider.lower()
        if provider == "hash" or not self.config.embedding_api_key:
            return "hash"
        return "remote"

    @property
    def summary_strategy(self) -> str:
        return "llm" if self.config.llm_api_key else "truncate"

    # -------------------------------------------------------------------------
    # Embeddings
    # -------------------------------------------------------------------------

    async def embed(self, text: str) -> list[float]:
        """Generate an embedding of length D (remote with hash fallback)."""
        if self.strategy == "remote":
            try:
                return await asyncio.to_thread(self._embed_remote_sync, text)
            except UpstreamUnavailableError as e:
                print(
                    f"[context-mcp] Remote embedding failed, using hash fallback: {e}",
                    file=sys.stderr,
                )
        return hash_embedding(text, self.dim)

    def _embed_remote_sync(self, text: str) -> list[float]:
        try:
            response = requests.post(
                self.config.embedding_api_url,
                headers={
                    "Authorization": f"Bearer {self.config.embedding_api_key}",
                    "Content-Type": "application/json",
                },
                json={
                    "model": self.config.embedding_model,
                    "input": text[: self.config.embedding_max_chars],
                },
                timeout=self.config.remote_timeout,
            )
            response.raise_for_status()
            values = response.json()["data"][0]["embedding"]
            return fit_dimension(values, self.dim)
        except (requests.RequestException, ValueError, KeyError, IndexError, TypeError) as e:
            raise UpstreamUnavailableError(str(e)) from e

    # -------------------------------------------------------------------------
    # Summarization
    # -------------------------------------------------------------------------

    def get_genai_client(self) -> GenAIClient:
        """Get or create the GenAI client (thread-safe)."""
        if self._genai_client is None:
            with self._lock:
                if self._genai_client is None:  # Double-check after acquiring lock
                    from google import genai
                    from google.genai import types

                    self._genai_client = genai.Client(
                        api_key=self.config.llm_api_key,
                        http_options=types.HttpOptions(
                            timeout=int(self.config.remote_timeout * 1000)
                        ),
                    )
        return self._genai_client

    def _summarize_sync(self, text: str) -> str:
        try:
            client = self.get_genai_client()
            prompt = SUMMARY_PROMPT.format(text=text[: self.config.summary_input_chars])
            response = client.models.generate_content(model=self.config.llm_model, contents=prompt)
            summary = (response.text or "").strip()
        except Exception as e:
            raise UpstreamUnavailableError(str(e)) from e
        if not summary:
            raise UpstreamUnavailableError("empty summary")
        return summary

    async def summarize(self, text: str) -> str:
        """Summarize text in 2-3 sentences; falls back to a plain prefix."""
        fallback = text[: self.config.summary_fallback_chars]
        if not self.config.llm_api_key:
            return fallback
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._summarize_sync, text),
                timeout=self.config.remote_timeout,
            )
        except (UpstreamUnavailableError, asyncio.TimeoutError) as e:
            print(f"[context-mcp] Summarization error: {e!r}", file=sys.stderr)
            return fallback
