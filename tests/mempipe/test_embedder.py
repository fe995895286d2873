"""Unit tests for the batched, cached embedder."""

import asyncio
import os
import sys
from types import SimpleNamespace

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "..", "server", "mempipe_server"))

from mempipe.errors import EmbeddingError
from mempipe.ingestion.embedder import OpenAIEmbedder, clear_cache


class FakeEmbeddingsClient:
    def __init__(self, dim=3, failures=0):
        self.dim = dim
        self.failures = failures
        self.calls = []
        self.embeddings = SimpleNamespace(create=self._create)

    async def _create(self, input, model):
        self.calls.append(list(input))
        if self.failures:
            self.failures -= 1
            raise ConnectionError("rate limited")
        return SimpleNamespace(
            data=[SimpleNamespace(embedding=[float(len(text))] * self.dim) for text in input]
        )


def setup_function():
    clear_cache()


def _embedder(client, **kwargs):
    kwargs.setdefault("dim", 3)
    return OpenAIEmbedder(client, model="test-model", backoff_base=0.0, **kwargs)


def test_embeddings_returned_in_order():
    client = FakeEmbeddingsClient()
    vectors = asyncio.run(_embedder(client).embed(["a", "bbb"]))
    assert vectors == [[1.0] * 3, [3.0] * 3]


def test_cached_texts_not_requested_again():
    client = FakeEmbeddingsClient()
    embedder = _embedder(client)
    asyncio.run(embedder.embed(["alpha"]))
    asyncio.run(embedder.embed(["alpha", "beta"]))
    assert client.calls == [["alpha"], ["beta"]]


def test_batches_by_size():
    client = FakeEmbeddingsClient()
    asyncio.run(_embedder(client, batch_size=2).embed(["a", "b", "c", "d", "e"]))
    assert [len(c) for c in client.calls] == [2, 2, 1]


def test_retries_then_succeeds():
    client = FakeEmbeddingsClient(failures=2)
    vector = asyncio.run(_embedder(client, max_retries=3).embed_one("hello"))
    assert vector == [5.0] * 3
    assert len(client.calls) == 3


def test_gives_up_after_max_retries():
    client = FakeEmbeddingsClient(failures=5)
    with pytest.raises(EmbeddingError):
        asyncio.run(_embedder(client, max_retries=2).embed(["hello"]))
    assert len(client.calls) == 2


def test_dimension_mismatch_rejected():
    client = FakeEmbeddingsClient(dim=4)
    with pytest.raises(EmbeddingError):
        asyncio.run(_embedder(client, dim=3).embed(["hello"]))
