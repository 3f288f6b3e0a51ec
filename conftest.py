"""Shared fixtures: isolated SQLite + LanceDB under tmp_path, offline embeddings."""

import pytest

from config import Config
from embeddings import Embedder, EmbeddingError
from env_store import EnvStore
from models import EnvVariable
from record_store import RecordStore
from vector_index import VectorIndex, VectorIndexError


class FailingEmbedder:
    """Embedding provider that is always down."""

    def __init__(self):
        self.calls = 0

    def embed(self, text, task_type="SEMANTIC_SIMILARITY"):
        self.calls += 1
        raise EmbeddingError("provider unavailable")


class RejectingVectorIndex:
    """Vector index that refuses writes and deletes but still answers queries."""

    def __init__(self, inner: VectorIndex):
        self.inner = inner

    def upsert(self, vector_id, vector, tenant_id, metadata):
        raise VectorIndexError("insert rejected")

    def delete_by_ids(self, ids, tenant_id):
        raise VectorIndexError("delete rejected")

    def query(self, vector, top_k, tenant_id):
        return self.inner.query(vector, top_k, tenant_id)

    def count(self, tenant_id):
        return self.inner.count(tenant_id)


@pytest.fixture
def config(tmp_path):
    return Config(data_dir=tmp_path, embedding_provider="hash", hash_fallback=False, api_key=None)


@pytest.fixture
def records(config):
    store = RecordStore(config.sqlite_path)
    store.migrate()
    return store


@pytest.fixture
def vector_index(config):
    return VectorIndex(config)


@pytest.fixture
def embedder(config):
    return Embedder(config)


@pytest.fixture
def make_store(config, records, vector_index, embedder):
    def factory(tenant_id, *, index=None, embed=None, cfg=None):
        return EnvStore(
            tenant_id,
            records,
            index or vector_index,
            embed or embedder,
            cfg or config,
        )

    return factory


@pytest.fixture
def stripe_key():
    return EnvVariable(
        name="STRIPE_SECRET_KEY",
        description="Stripe payment processing secret",
        category="payment",
        service="Stripe",
        required=True,
    )
