"""Tests for the embedding provider and its deterministic fallback."""

import asyncio
import time
from dataclasses import replace

import numpy as np
import pytest
import requests

from embeddings import EmbeddingProvider, fit_dimension, hash_embedding, tokenize
from errors import UpstreamUnavailableError
from utils import dash_project_path, hash_project_path, string_hash


class FakeResponse:
    def __init__(self, payload, status_error=None):
        self._payload = payload
        self._status_error = status_error

    def raise_for_status(self):
        if self._status_error:
            raise self._status_error

    def json(self):
        return self._payload


# =============================================================================
# Rolling Hash
# =============================================================================


class TestStringHash:
    """The rolling hash must match the agent's 32-bit convention exactly."""

    def test_known_values(self):
        assert string_hash("") == 0
        assert string_hash("ab") == 97 * 31 + 98
        assert string_hash("hello") == 99162322

    def test_wraps_to_signed_32_bit(self):
        assert string_hash("polygenelubricants") == -(2**31)
        for text in ["a" * 100, "/home/user/projects/some-long-project-name", "ünïcødé"]:
            assert -(2**31) <= string_hash(text) < 2**31

    def test_utf16_code_units(self):
        # U+1F600 is a surrogate pair: 0xD83D, 0xDE00
        assert string_hash("\U0001f600") == (0xD83D * 31 + 0xDE00)

    def test_project_dir_names(self):
        assert hash_project_path("ab") == "c21"
        assert hash_project_path("polygenelubricants") == "80000000"
        assert dash_project_path("/home/me/my_app.v2") == "-home-me-my-app-v2"


# =============================================================================
# Deterministic Fallback
# =============================================================================


class TestHashEmbedding:
    DIM = 1536

    def test_tokenize_strips_punctuation_and_short_tokens(self):
        assert tokenize("Hi, the API's design!") == ["the", "apis", "design"]
        assert tokenize("a an of to") == []

    def test_deterministic(self):
        text = "Use asyncio.to_thread for blocking LanceDB calls"
        first = hash_embedding(text, self.DIM)
        second = hash_embedding(text, self.DIM)
        assert first == second
        assert np.array_equal(np.array(first), np.array(second))

    def test_empty_text_is_zero_vector(self):
        vector = hash_embedding("", self.DIM)
        assert len(vector) == self.DIM
        assert all(v == 0.0 for v in vector)

    def test_only_short_tokens_is_zero_vector(self):
        vector = hash_embedding("a an is to of ?? !!", self.DIM)
        assert len(vector) == self.DIM
        assert not any(vector)

    def test_normalized(self):
        vector = hash_embedding("Database migration strategy for the context store", self.DIM)
        assert len(vector) == self.DIM
        assert np.linalg.norm(vector) == pytest.approx(1.0)

    def test_earlier_tokens_weigh_more(self):
        dim = 64
        first, second = "apple", "banana"
        first_bucket = abs(string_hash(first)) % dim
        second_bucket = abs(string_hash(second)) % dim
        if first_bucket == second_bucket:
            pytest.skip("tokens collide in this dimension")
        vector = hash_embedding(f"{first} {second}", dim)
        assert vector[first_bucket] == pytest.approx(2 * vector[second_bucket])

    def test_case_and_punctuation_insensitive(self):
        assert hash_embedding("Hello, World!", self.DIM) == hash_embedding("hello world", self.DIM)


def test_fit_dimension_pads_and_truncates():
    padded = fit_dimension([3.0, 4.0], 4)
    assert padded == pytest.approx([0.6, 0.8, 0.0, 0.0])
    truncated = fit_dimension([1.0, 0.0, 5.0], 2)
    assert truncated == pytest.approx([1.0, 0.0])
    assert fit_dimension([0.0, 0.0], 3) == [0.0, 0.0, 0.0]


# =============================================================================
# Provider Strategies
# =============================================================================


class TestProviderEmbed:
    async def test_hash_strategy_without_credential(self, config):
        provider = EmbeddingProvider(replace(config, embedding_provider="auto"))
        assert provider.strategy == "hash"
        assert await provider.embed("context store") == hash_embedding(
            "context store", config.embedding_dim
        )

    async def test_hash_strategy_forced(self, config):
        provider = EmbeddingProvider(replace(config, embedding_api_key="sk-test"))
        assert provider.strategy == "hash"

    async def test_remote_success(self, config, monkeypatch):
        calls = []

        def fake_post(url, headers, json, timeout):
            calls.append({"url": url, "json": json, "timeout": timeout})
            return FakeResponse({"data": [{"embedding": [3.0, 4.0]}]})

        monkeypatch.setattr(requests, "post", fake_post)
        remote = replace(config, embedding_provider="remote", embedding_api_key="sk-test")
        provider = EmbeddingProvider(remote)
        assert provider.strategy == "remote"

        vector = await provider.embed("x" * 20000)
        assert len(vector) == config.embedding_dim
        assert vector[:2] == pytest.approx([0.6, 0.8])
        assert len(calls) == 1
        assert len(calls[0]["json"]["input"]) == config.embedding_max_chars
        assert calls[0]["timeout"] == config.remote_timeout

    async def test_remote_failure_falls_back_to_hash(self, config, monkeypatch):
        def failing_post(*args, **kwargs):
            raise requests.ConnectionError("network down")

        monkeypatch.setattr(requests, "post", failing_post)
        provider = EmbeddingProvider(
            replace(config, embedding_provider="remote", embedding_api_key="sk-test")
        )
        vector = await provider.embed("fallback path")
        assert vector == hash_embedding("fallback path", config.embedding_dim)

    async def test_remote_auth_error_falls_back_to_hash(self, config, monkeypatch):
        monkeypatch.setattr(
            requests,
            "post",
            lambda *a, **k: FakeResponse({}, status_error=requests.HTTPError("401")),
        )
        provider = EmbeddingProvider(
            replace(config, embedding_provider="remote", embedding_api_key="sk-bad")
        )
        assert await provider.embed("quota") == hash_embedding("quota", config.embedding_dim)

    async def test_remote_malformed_body_falls_back_to_hash(self, config, monkeypatch):
        monkeypatch.setattr(requests, "post", lambda *a, **k: FakeResponse({"data": []}))
        provider = EmbeddingProvider(
            replace(config, embedding_provider="remote", embedding_api_key="sk-test")
        )
        assert await provider.embed("empty") == hash_embedding("empty", config.embedding_dim)

    @pytest.mark.parametrize("embedding", ["oops", [[0.1, 0.2], [0.3]], None])
    async def test_remote_non_numeric_embedding_falls_back_to_hash(
        self, config, monkeypatch, embedding
    ):
        monkeypatch.setattr(
            requests, "post", lambda *a, **k: FakeResponse({"data": [{"embedding": embedding}]})
        )
        provider = EmbeddingProvider(
            replace(config, embedding_provider="remote", embedding_api_key="sk-test")
        )
        assert await provider.embed("bad vector") == hash_embedding(
            "bad vector", config.embedding_dim
        )


class TestProviderSummarize:
    LONG_TEXT = "The indexer parses transcripts and stores them. " * 40

    async def test_without_credential_returns_prefix(self, config):
        provider = EmbeddingProvider(config)
        assert provider.summary_strategy == "truncate"
        assert await provider.summarize(self.LONG_TEXT) == self.LONG_TEXT[:500]

    async def test_llm_summary(self, config, monkeypatch):
        provider = EmbeddingProvider(replace(config, llm_api_key="key"))
        monkeypatch.setattr(provider, "_summarize_sync", lambda text: "A short summary.")
        assert provider.summary_strategy == "llm"
        assert await provider.summarize(self.LONG_TEXT) == "A short summary."

    async def test_llm_failure_returns_prefix(self, config, monkeypatch):
        provider = EmbeddingProvider(replace(config, llm_api_key="key"))

        def failing(text):
            raise UpstreamUnavailableError("quota exceeded")

        monkeypatch.setattr(provider, "_summarize_sync", failing)
        assert await provider.summarize(self.LONG_TEXT) == self.LONG_TEXT[:500]

    async def test_llm_timeout_returns_prefix(self, config, monkeypatch):
        provider = EmbeddingProvider(replace(config, llm_api_key="key", remote_timeout=0.1))

        def slow(text):
            time.sleep(1)
            return "too late"

        monkeypatch.setattr(provider, "_summarize_sync", slow)
        started = asyncio.get_running_loop().time()
        assert await provider.summarize(self.LONG_TEXT) == self.LONG_TEXT[:500]
        assert asyncio.get_running_loop().time() - started < 1

    async def test_short_text_unchanged_on_fallback(self, config):
        provider = EmbeddingProvider(config)
        assert await provider.summarize("short") == "short"
