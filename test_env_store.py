"""Integration tests for EnvStore over a real SQLite file and LanceDB table."""

import dataclasses

import pytest

from conftest import FailingEmbedder, RejectingVectorIndex
from models import EnvVariable, IndexState
from utils import resolve_tenant

TENANT_A = resolve_tenant("key-a")
TENANT_B = resolve_tenant("key-b")


def env(name, service="Acme", category="other", description=None, required=False):
    return EnvVariable(
        name=name,
        description=description or f"{name.replace('_', ' ').lower()} setting",
        category=category,
        service=service,
        required=required,
    )


class CountingVectorIndex:
    """Pass-through index that records delete batches."""

    def __init__(self, inner):
        self.inner = inner
        self.delete_calls = []

    def upsert(self, vector_id, vector, tenant_id, metadata):
        self.inner.upsert(vector_id, vector, tenant_id, metadata)

    def delete_by_ids(self, ids, tenant_id):
        self.delete_calls.append(list(ids))
        self.inner.delete_by_ids(ids, tenant_id)

    def query(self, vector, top_k, tenant_id):
        return self.inner.query(vector, top_k, tenant_id)

    def count(self, tenant_id):
        return self.inner.count(tenant_id)


class TestSearch:
    async def test_stripe_key_ranks_first(self, make_store, stripe_key):
        store = make_store(TENANT_A)
        await store.upsert(stripe_key)
        await store.upsert(
            env("OPENAI_API_KEY", "OpenAI", "ai_services", "OpenAI API key for GPT models", True)
        )
        await store.upsert(env("DATABASE_URL", "PostgreSQL", "database", "Postgres connection string"))

        results = await store.search("stripe payment")
        assert results
        top = results[0]
        assert top.record.name == "STRIPE_SECRET_KEY"
        assert top.match_type == "hybrid"
        assert top.boost == pytest.approx(0.05)
        assert all(r.record.tenant_id == TENANT_A for r in results)

        results = await store.search("payment processing")
        assert results[0].record.name == "STRIPE_SECRET_KEY"
        assert results[0].match_type in ("keyword", "hybrid")

    async def test_category_filter(self, make_store, stripe_key):
        store = make_store(TENANT_A)
        await store.upsert(stripe_key)
        await store.upsert(env("STRIPE_WEBHOOK_URL", "Stripe", "deployment"))

        results = await store.search("stripe", category="PAYMENT")
        assert [r.record.name for r in results] == ["STRIPE_SECRET_KEY"]

    async def test_invalid_category_raises(self, make_store):
        with pytest.raises(ValueError, match="Invalid category"):
            await make_store(TENANT_A).search("stripe", category="bogus")

    async def test_search_is_logged(self, make_store, records, stripe_key):
        store = make_store(TENANT_A)
        await store.upsert(stripe_key)
        await store.search("stripe")

        logged = records.recent_searches(TENANT_A)
        assert logged[0]["query"] == "stripe"
        assert logged[0]["result_count"] >= 1
        assert records.recent_searches(TENANT_B) == []

    async def test_embedding_outage_degrades_to_keyword(self, make_store, stripe_key):
        await make_store(TENANT_A).upsert(stripe_key)
        embedder = FailingEmbedder()
        store = make_store(TENANT_A, embed=embedder)

        results = await store.search("stripe secret")
        assert [r.record.name for r in results] == ["STRIPE_SECRET_KEY"]
        assert results[0].match_type == "keyword"
        assert embedder.calls == 1


class TestTenantIsolation:
    async def test_other_tenant_sees_nothing(self, make_store, stripe_key):
        await make_store(TENANT_A).upsert(stripe_key)
        other = make_store(TENANT_B)

        assert await other.search("stripe payment secret") == []
        assert other.get_by_name("STRIPE_SECRET_KEY") is None
        assert other.list_envs() == []
        assert other.get_stats()["total"] == 0

    async def test_same_name_in_two_tenants(self, make_store, stripe_key, vector_index):
        a, b = make_store(TENANT_A), make_store(TENANT_B)
        first = await a.upsert(stripe_key)
        second = await b.upsert(stripe_key)

        assert first.id != second.id
        assert vector_index.count(TENANT_A) == 1
        assert vector_index.count(TENANT_B) == 1
        assert await b.delete_by_name("STRIPE_SECRET_KEY")
        assert a.get_by_name("STRIPE_SECRET_KEY") is not None
        assert vector_index.count(TENANT_A) == 1


class TestWritePath:
    async def test_upsert_indexes_record(self, make_store, stripe_key, vector_index):
        store = make_store(TENANT_A)
        result = await store.upsert(stripe_key)

        assert result.indexed
        saved = store.get_by_name("STRIPE_SECRET_KEY")
        assert saved.id == result.id
        assert saved.vector_ref and saved.indexed_at
        assert store.get_indexing_status("STRIPE_SECRET_KEY").status == IndexState.INDEXED
        assert vector_index.count(TENANT_A) == 1

    async def test_upsert_same_name_replaces(self, make_store, stripe_key, vector_index):
        store = make_store(TENANT_A)
        first = await store.upsert(stripe_key)
        vector_ref = store.get_by_name("STRIPE_SECRET_KEY").vector_ref

        updated = stripe_key.model_copy(update={"description": "Stripe live secret key"})
        second = await store.upsert(updated)

        assert second.id == first.id
        assert len(store.list_envs()) == 1
        saved = store.get_by_name("STRIPE_SECRET_KEY")
        assert saved.description == "Stripe live secret key"
        assert saved.vector_ref == vector_ref
        assert vector_index.count(TENANT_A) == 1

    async def test_failed_reindex_drops_old_embedding(self, make_store, vector_index, stripe_key):
        store = make_store(TENANT_A)
        await store.upsert(stripe_key)

        changed = stripe_key.model_copy(
            update={"description": "Twilio sms gateway token", "category": "sms", "service": "Twilio"}
        )
        result = await make_store(TENANT_A, index=RejectingVectorIndex(vector_index)).upsert(changed)

        assert not result.indexed
        saved = store.get_by_name("STRIPE_SECRET_KEY")
        assert saved.vector_ref is None
        assert saved.indexed_at is None
        assert store.get_indexing_status("STRIPE_SECRET_KEY").status == IndexState.FAILED

        # the old vector could not be deleted, but it no longer matches
        assert vector_index.count(TENANT_A) == 1
        results = await store.search("stripe payment processing secret")
        assert [r.match_type for r in results] == ["keyword"]

    async def test_failed_reindex_deletes_old_vector(self, make_store, vector_index, stripe_key):
        await make_store(TENANT_A).upsert(stripe_key)
        changed = stripe_key.model_copy(update={"description": "Stripe restricted key"})

        result = await make_store(TENANT_A, embed=FailingEmbedder()).upsert(changed)
        assert not result.indexed
        assert vector_index.count(TENANT_A) == 0

    async def test_vector_id_follows_record(self, make_store, records, vector_index, stripe_key):
        store = make_store(TENANT_A)
        first = await store.upsert(stripe_key)
        assert store.get_by_name("STRIPE_SECRET_KEY").vector_ref == store.vector_id(first.id)

        # a writer that lost the stored ref still lands on the same vector
        records.mark_failed(TENANT_A, first.id, "interrupted")
        await store.upsert(stripe_key)
        assert vector_index.count(TENANT_A) == 1
        assert store.vector_id(first.id) != make_store(TENANT_B).vector_id(first.id)

    async def test_failed_indexing_keeps_record_searchable(self, make_store, vector_index, stripe_key):
        store = make_store(TENANT_A, index=RejectingVectorIndex(vector_index))
        result = await store.upsert(stripe_key)

        assert not result.indexed
        saved = store.get_by_name("STRIPE_SECRET_KEY")
        assert saved is not None
        assert saved.vector_ref is None
        status = store.get_indexing_status("STRIPE_SECRET_KEY")
        assert status.status == IndexState.FAILED
        assert status.retry_count == 1
        assert "insert rejected" in status.error_message

        results = await store.search("stripe")
        assert [r.record.name for r in results] == ["STRIPE_SECRET_KEY"]
        assert results[0].match_type == "keyword"

    async def test_reindex_pending_recovers(self, make_store, vector_index, stripe_key):
        await make_store(TENANT_A, embed=FailingEmbedder()).upsert(stripe_key)
        store = make_store(TENANT_A)

        result = await store.reindex_pending()
        assert result == {"attempted": 1, "indexed": 1, "failed": 0}
        assert store.get_indexing_status("STRIPE_SECRET_KEY").status == IndexState.INDEXED
        assert vector_index.count(TENANT_A) == 1
        assert await store.reindex_pending() == {"attempted": 0, "indexed": 0, "failed": 0}

    async def test_reindex_respects_retry_budget(self, make_store, stripe_key):
        failing = make_store(TENANT_A, embed=FailingEmbedder())
        await failing.upsert(stripe_key)
        await failing.reindex_pending()
        await failing.reindex_pending()

        assert failing.get_indexing_status("STRIPE_SECRET_KEY").retry_count == 3
        assert await failing.reindex_pending() == {"attempted": 0, "indexed": 0, "failed": 0}

    async def test_bulk_upsert_counts(self, make_store):
        store = make_store(TENANT_A)
        result = await store.bulk_upsert([env("ONE"), env("TWO"), env("ONE")])
        assert result == {"inserted": 3, "indexed": 3}
        assert len(store.list_envs()) == 2


class TestDeletion:
    async def test_delete_by_name(self, make_store, stripe_key, vector_index):
        store = make_store(TENANT_A)
        await store.upsert(stripe_key)

        assert await store.delete_by_name("STRIPE_SECRET_KEY")
        assert store.get_by_name("STRIPE_SECRET_KEY") is None
        assert store.get_indexing_status("STRIPE_SECRET_KEY") is None
        assert vector_index.count(TENANT_A) == 0
        assert await store.search("stripe") == []

    async def test_delete_missing_returns_false(self, make_store):
        assert not await make_store(TENANT_A).delete_by_name("NOPE")

    async def test_delete_survives_index_failure(self, make_store, vector_index, stripe_key):
        await make_store(TENANT_A).upsert(stripe_key)
        store = make_store(TENANT_A, index=RejectingVectorIndex(vector_index))

        assert await store.delete_by_name("STRIPE_SECRET_KEY")
        assert store.get_by_name("STRIPE_SECRET_KEY") is None

    async def test_delete_all_is_tenant_scoped(self, make_store, vector_index):
        a, b = make_store(TENANT_A), make_store(TENANT_B)
        await a.bulk_upsert([env(f"VAR_{i}") for i in range(5)])
        await b.upsert(env("KEEP_ME"))

        assert await a.delete_all() == 5
        assert a.list_envs() == []
        assert vector_index.count(TENANT_A) == 0
        assert [e.name for e in b.list_envs()] == ["KEEP_ME"]
        assert vector_index.count(TENANT_B) == 1

    async def test_delete_all_batches_vector_deletes(self, make_store, vector_index, config):
        counting = CountingVectorIndex(vector_index)
        store = make_store(
            TENANT_A, index=counting, cfg=dataclasses.replace(config, delete_batch_size=2)
        )
        await store.bulk_upsert([env(f"VAR_{i}") for i in range(5)])

        assert await store.delete_all() == 5
        assert [len(batch) for batch in counting.delete_calls] == [2, 2, 1]

    async def test_delete_all_on_empty_tenant(self, make_store):
        assert await make_store(TENANT_A).delete_all() == 0


class TestReads:
    async def test_stats(self, make_store, stripe_key, vector_index):
        await make_store(TENANT_A).upsert(stripe_key)
        await make_store(TENANT_A, index=RejectingVectorIndex(vector_index)).upsert(
            env("OPENAI_API_KEY", "OpenAI", "ai_services")
        )

        stats = make_store(TENANT_A).get_stats()
        assert stats["total"] == 2
        assert stats["required"] == 1
        assert stats["by_category"] == {"ai_services": 1, "payment": 1}
        assert stats["by_service"] == {"OpenAI": 1, "Stripe": 1}
        assert stats["by_status"] == {"failed": 1, "indexed": 1}

    async def test_envs_for_services(self, make_store, stripe_key):
        store = make_store(TENANT_A)
        await store.upsert(stripe_key)
        await store.upsert(env("STRIPE_PUBLISHABLE_KEY", "Stripe", "payment"))
        await store.upsert(env("OPENAI_API_KEY", "OpenAI", "ai_services"))

        grouped = store.get_envs_for_services(["stripe", "Twilio"])
        assert list(grouped) == ["stripe", "Twilio"]
        assert [e.name for e in grouped["stripe"]] == ["STRIPE_SECRET_KEY", "STRIPE_PUBLISHABLE_KEY"]
        assert grouped["Twilio"] == []

    async def test_list_filters(self, make_store, stripe_key):
        store = make_store(TENANT_A)
        await store.upsert(stripe_key)
        await store.upsert(env("OPENAI_API_KEY", "OpenAI", "ai_services"))

        assert [e.name for e in store.list_envs(category="ai_services")] == ["OPENAI_API_KEY"]
        assert [e.name for e in store.list_envs(required_only=True)] == ["STRIPE_SECRET_KEY"]
        assert [e.name for e in store.list_envs(service="Stripe")] == ["STRIPE_SECRET_KEY"]


class TestProjects:
    async def test_link_and_fetch(self, make_store, stripe_key):
        store = make_store(TENANT_A)
        await store.upsert(stripe_key)
        project = store.create_project("billing", repo_url="git@github.com:acme/billing.git")
        assert project.repo_url == "github.com/acme/billing"

        link = store.link_env("STRIPE_SECRET_KEY", "billing", "PROD", "sk_live_x")
        assert link.environment == "prod"

        envs = store.get_project_envs("billing")
        assert [(e.name, e.environment, e.example) for e in envs] == [
            ("STRIPE_SECRET_KEY", "prod", "sk_live_x")
        ]
        assert store.get_project_envs("billing", "dev") == []

    async def test_link_missing_side_returns_none(self, make_store, stripe_key):
        store = make_store(TENANT_A)
        await store.upsert(stripe_key)
        store.create_project("billing")

        assert store.link_env("MISSING", "billing") is None
        assert store.link_env("STRIPE_SECRET_KEY", "missing") is None
        assert make_store(TENANT_B).link_env("STRIPE_SECRET_KEY", "billing") is None

    async def test_invalid_environment(self, make_store):
        with pytest.raises(ValueError):
            make_store(TENANT_A).link_env("X", "billing", "qa")

    async def test_delete_cascades_links(self, make_store, stripe_key):
        store = make_store(TENANT_A)
        await store.upsert(stripe_key)
        store.create_project("billing")
        store.link_env("STRIPE_SECRET_KEY", "billing")

        await store.delete_by_name("STRIPE_SECRET_KEY")
        assert store.get_project_envs("billing") == []
        assert store.delete_project("billing")
        assert store.list_projects() == []


class TestMigrations:
    def test_migrate_is_idempotent(self, records):
        assert records.schema_version() == 2
        assert records.pending_migrations() == []
        assert records.migrate() == []
