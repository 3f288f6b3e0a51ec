"""Hybrid ranking: semantic + keyword + metadata boost.

final = 0.6 * semantic + 0.3 * keyword + boost

- semantic: cosine similarity from the vector index, in [0, 1]
- keyword: position in the lexical result list, max(0.1, 1 - pos / total)
- boost: +0.05 for required, +0.05 for a priority category (max 0.10)

Both channels run concurrently and fail independently: a channel that raises
or times out contributes nothing, and the search still returns a list.
"""

from __future__ import annotations

import asyncio
import sqlite3
import sys
from dataclasses import dataclass
from typing import TYPE_CHECKING

from models import EnvVariable, ScoredRecord, SearchOptions
from utils import tokenize_query

if TYPE_CHECKING:
    from config import Config
    from embeddings import Embedder
    from record_store import RecordStore
    from vector_index import VectorIndex


@dataclass(slots=True)
class ChannelHit:
    record: EnvVariable
    score: float  # raw channel score in [0, 1]


class HybridRanker:
    """Ranker scoped to a single tenant; build one per request."""

    def __init__(
        self,
        tenant_id: str,
        embedder: Embedder,
        vector_index: VectorIndex,
        records: RecordStore,
        config: Config,
    ) -> None:
        self.tenant_id = tenant_id
        self.embedder = embedder
        self.vector_index = vector_index
        self.records = records
        self.config = config

    def clamp_limit(self, limit: int | None) -> int:
        if limit is None:
            return self.config.default_limit
        if limit < 1:
            raise ValueError(f"limit must be positive, got {limit}")
        return min(limit, self.config.max_limit)

    # -------------------------------------------------------------------------
    # Channels
    # -------------------------------------------------------------------------

    def semantic_search(self, query: str, options: SearchOptions) -> list[ChannelHit]:
        embedding = self.embedder.embed(query, task_type="RETRIEVAL_QUERY")
        hits = self.vector_index.query(embedding, options.limit * 2, self.tenant_id)

        results: list[ChannelHit] = []
        for hit in hits:
            if hit.tenant_id != self.tenant_id:
                continue
            record = self.records.get_by_id(self.tenant_id, hit.record_id)
            if record is None or record.vector_ref != hit.id or not options.matches(record):
                continue
            if options.min_score is not None and hit.score < options.min_score:
                continue
            results.append(ChannelHit(record, hit.score))
            if len(results) >= options.limit:
                break
        return results

    def keyword_search(self, query: str, options: SearchOptions) -> list[ChannelHit]:
        tokens = tokenize_query(query)
        if not tokens:
            return []
        fetch = options.limit * 2
        try:
            records = self.records.lexical_search(self.tenant_id, tokens, options, fetch)
        except sqlite3.Error as e:
            print(f"[envmem] FTS query failed, using substring scan: {e}", file=sys.stderr)
            records = self._substring_fallback(tokens, options, fetch)

        total = len(records)
        return [
            ChannelHit(record, max(self.config.keyword_floor, 1.0 - position / total))
            for position, record in enumerate(records)
        ]

    def _substring_fallback(
        self, tokens: list[str], options: SearchOptions, limit: int
    ) -> list[EnvVariable]:
        try:
            return self.records.substring_search(self.tenant_id, tokens, options, limit)
        except Exception as e:
            print(f"[envmem] Substring fallback failed: {e}", file=sys.stderr)
            return []

    async def _run_channel(self, name: str, fn, query: str, options: SearchOptions) -> list[ChannelHit]:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, query, options), timeout=self.config.channel_timeout
            )
        except Exception as e:
            # TimeoutError included: a slow channel is treated like a failed one
            print(f"[envmem] {name} channel unavailable: {e!r}", file=sys.stderr)
            return []

    # -------------------------------------------------------------------------
    # Fusion
    # -------------------------------------------------------------------------

    def boost(self, record: EnvVariable) -> float:
        value = 0.0
        if record.required:
            value += self.config.required_boost
        if record.category in self.config.priority_categories:
            value += self.config.priority_boost
        return value

    def fuse(
        self, semantic: list[ChannelHit], keyword: list[ChannelHit], limit: int
    ) -> list[ScoredRecord]:
        """Join channel hits by record name and rank by blended score."""
        merged: dict[str, dict] = {}
        for hit in semantic:
            entry = merged.setdefault(hit.record.name, {"record": hit.record, "semantic": 0.0, "keyword": 0.0})
            entry["semantic"] = max(entry["semantic"], hit.score * self.config.semantic_weight)
            entry["in_semantic"] = True
        for hit in keyword:
            entry = merged.setdefault(hit.record.name, {"record": hit.record, "semantic": 0.0, "keyword": 0.0})
            entry["keyword"] = max(entry["keyword"], hit.score * self.config.keyword_weight)
            entry["in_keyword"] = True

        scored = []
        for entry in merged.values():
            record = entry["record"]
            boost = self.boost(record)
            if entry.get("in_semantic") and entry.get("in_keyword"):
                match_type = "hybrid"
            elif entry.get("in_semantic"):
                match_type = "semantic"
            else:
                match_type = "keyword"
            scored.append(
                ScoredRecord(
                    record=record,
                    score=entry["semantic"] + entry["keyword"] + boost,
                    match_type=match_type,
                    semantic_score=entry["semantic"],
                    keyword_score=entry["keyword"],
                    boost=boost,
                )
            )

        # sorted() is stable: equal scores keep semantic-then-keyword order
        scored = sorted(scored, key=lambda r: r.score, reverse=True)
        return scored[:limit]

    async def search(self, query: str, options: SearchOptions | None = None) -> list[ScoredRecord]:
        if not query or not query.strip():
            raise ValueError("query is required")
        options = (options or SearchOptions()).model_copy()
        options.limit = self.clamp_limit(options.limit)

        semantic, keyword = await asyncio.gather(
            self._run_channel("semantic", self.semantic_search, query, options),
            self._run_channel("keyword", self.keyword_search, query, options),
        )
        return self.fuse(semantic, keyword, options.limit)
