"""Tenant-scoped operations over the record store, vector index and ranker."""

from __future__ import annotations

import asyncio
import sys
import uuid
from typing import Any

from config import Config
from embeddings import Embedder, EmbeddingError
from models import (
    EnvVariable,
    EnvWithProject,
    IndexingStatus,
    Project,
    ProjectLink,
    ScoredRecord,
    SearchOptions,
    UpsertResult,
    normalize_category,
    normalize_environment,
)
from ranker import HybridRanker
from record_store import RecordStore
from utils import enrich_text, normalize_git_url
from vector_index import VectorIndex, VectorIndexError


class EnvStore:
    """Everything one tenant can do. Construct per request."""

    def __init__(
        self,
        tenant_id: str,
        records: RecordStore,
        vector_index: VectorIndex,
        embedder: Embedder,
        config: Config,
    ) -> None:
        self.tenant_id = tenant_id
        self.records = records
        self.vector_index = vector_index
        self.embedder = embedder
        self.config = config

    def ranker(self) -> HybridRanker:
        return HybridRanker(self.tenant_id, self.embedder, self.vector_index, self.records, self.config)

    # -------------------------------------------------------------------------
    # Search
    # -------------------------------------------------------------------------

    async def search(
        self,
        query: str,
        category: str | None = None,
        service: str | None = None,
        required_only: bool = False,
        limit: int | None = None,
        min_score: float | None = None,
    ) -> list[ScoredRecord]:
        options = SearchOptions(
            category=normalize_category(category) if category else None,
            service=service or None,
            required_only=required_only,
            limit=self.config.default_limit if limit is None else limit,
            min_score=min_score,
        )
        results = await self.ranker().search(query, options)

        try:
            top_id = results[0].record.id if results else None
            await asyncio.to_thread(self.records.log_search, self.tenant_id, query, len(results), top_id)
        except Exception as e:
            print(f"[envmem] Search analytics warning: {e}", file=sys.stderr)
        return results

    # -------------------------------------------------------------------------
    # Write path
    # -------------------------------------------------------------------------

    def vector_id(self, record_id: int) -> str:
        """Stable vector id for a record; repeat writes replace the same vector."""
        return uuid.uuid5(uuid.NAMESPACE_URL, f"envmem:{self.tenant_id}:{record_id}").hex

    async def _index(self, env: EnvVariable, record_id: int) -> bool:
        """Embed and store the vector; record the outcome in indexing_status."""
        vector_ref = self.vector_id(record_id)
        try:
            vector = await asyncio.to_thread(self.embedder.embed, enrich_text(env))
            await asyncio.to_thread(
                self.vector_index.upsert,
                vector_ref,
                vector,
                self.tenant_id,
                {"record_id": record_id, "name": env.name, "category": env.category},
            )
        except (EmbeddingError, VectorIndexError) as e:
            print(f"[envmem] Indexing failed for {env.name}: {e}", file=sys.stderr)
            # a vector from an earlier write no longer matches the record text
            await asyncio.to_thread(self._delete_vectors, [vector_ref])
            self.records.mark_failed(self.tenant_id, record_id, str(e))
            return False
        self.records.mark_indexed(self.tenant_id, record_id, vector_ref)
        return True

    async def upsert(self, env: EnvVariable) -> UpsertResult:
        """Write metadata, then index it.

        The metadata row is committed before embedding starts, so a record whose
        indexing fails is still stored and lexically searchable.
        """
        env = env.model_copy(update={"tenant_id": self.tenant_id})
        record_id = self.records.upsert(self.tenant_id, env)
        self.records.mark_processing(record_id)
        indexed = await self._index(env, record_id)
        return UpsertResult(id=record_id, indexed=indexed)

    async def bulk_upsert(self, envs: list[EnvVariable]) -> dict[str, int]:
        inserted = indexed = 0
        for env in envs:
            result = await self.upsert(env)
            inserted += 1
            indexed += int(result.indexed)
        return {"inserted": inserted, "indexed": indexed}

    async def reindex_pending(self, max_retries: int | None = None) -> dict[str, int]:
        """Retry indexing for records that are not yet indexed."""
        budget = self.config.max_index_retries if max_retries is None else max_retries
        pending = self.records.pending_index(self.tenant_id, budget)
        indexed = 0
        for env in pending:
            self.records.mark_processing(env.id)
            if await self._index(env, env.id):
                indexed += 1
        return {"attempted": len(pending), "indexed": indexed, "failed": len(pending) - indexed}

    # -------------------------------------------------------------------------
    # Deletion
    # -------------------------------------------------------------------------

    def _delete_vectors(self, refs: list[str]) -> None:
        batch_size = self.config.delete_batch_size
        for start in range(0, len(refs), batch_size):
            batch = refs[start : start + batch_size]
            try:
                self.vector_index.delete_by_ids(batch, self.tenant_id)
            except VectorIndexError as e:
                print(f"[envmem] Vector delete warning ({len(batch)} ids): {e}", file=sys.stderr)

    async def delete_by_name(self, name: str) -> bool:
        env = self.records.get_by_name(self.tenant_id, name)
        if env is None:
            return False
        await asyncio.to_thread(self._delete_vectors, [self.vector_id(env.id)])
        return self.records.delete(self.tenant_id, env.id)

    async def delete_all(self) -> int:
        refs = [self.vector_id(i) for i in self.records.record_ids(self.tenant_id)]
        await asyncio.to_thread(self._delete_vectors, refs)
        return self.records.delete_all(self.tenant_id)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_by_name(self, name: str) -> EnvVariable | None:
        return self.records.get_by_name(self.tenant_id, name)

    def get_indexing_status(self, name: str) -> IndexingStatus | None:
        return self.records.get_status(self.tenant_id, name)

    def list_envs(
        self,
        category: str | None = None,
        service: str | None = None,
        required_only: bool = False,
        limit: int = 100,
    ) -> list[EnvVariable]:
        options = SearchOptions(
            category=normalize_category(category) if category else None,
            service=service or None,
            required_only=required_only,
        )
        return self.records.list_envs(self.tenant_id, options, limit)

    def get_envs_for_services(self, services: list[str]) -> dict[str, list[EnvVariable]]:
        """Group records by service, in the order the services were asked for."""
        grouped: dict[str, list[EnvVariable]] = {s: [] for s in services}
        lookup = {s.strip().lower(): s for s in services}
        for env in self.records.by_services(self.tenant_id, services):
            grouped[lookup[env.service.lower()]].append(env)
        return grouped

    def get_stats(self) -> dict[str, Any]:
        return self.records.stats(self.tenant_id)

    # -------------------------------------------------------------------------
    # Projects
    # -------------------------------------------------------------------------

    def create_project(
        self,
        name: str,
        repo_url: str | None = None,
        tags: list[str] | None = None,
        description: str | None = None,
    ) -> Project:
        if not name.strip():
            raise ValueError("project name is required")
        project = Project(
            tenant_id=self.tenant_id,
            name=name.strip(),
            repo_url=normalize_git_url(repo_url) if repo_url else None,
            tags=tags or [],
            description=description,
        )
        return self.records.upsert_project(self.tenant_id, project)

    def list_projects(self) -> list[Project]:
        return self.records.list_projects(self.tenant_id)

    def delete_project(self, name: str) -> bool:
        return self.records.delete_project(self.tenant_id, name)

    def link_env(
        self,
        env_name: str,
        project_name: str,
        environment: str = "default",
        value_override: str | None = None,
    ) -> ProjectLink | None:
        return self.records.link(
            self.tenant_id, env_name, project_name, normalize_environment(environment), value_override
        )

    def get_project_envs(
        self, project_name: str, environment: str | None = None
    ) -> list[EnvWithProject]:
        if environment:
            environment = normalize_environment(environment)
        return self.records.project_envs(self.tenant_id, project_name, environment)
