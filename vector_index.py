"""LanceDB-backed vector index.

One table is shared by every tenant; isolation is the `tenant_id` column,
which every query and delete below filters on.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any

import lancedb
import pyarrow as pa

from config import Config
from models import EnvVector
from utils import escape_filter_value, now_iso


class VectorIndexError(RuntimeError):
    """Raised for any failure talking to the vector index."""


@dataclass(frozen=True, slots=True)
class VectorHit:
    id: str
    score: float  # cosine similarity clamped to [0, 1]
    tenant_id: str
    record_id: int
    name: str


def _tenant_filter(tenant_id: str) -> str:
    return f"tenant_id = '{escape_filter_value(tenant_id)}'"


class VectorIndex:
    def __init__(self, config: Config) -> None:
        self.config = config
        self._lock = threading.RLock()
        self._db: lancedb.DBConnection | None = None
        self._table: lancedb.table.Table | None = None

    def get_table(self) -> lancedb.table.Table:
        """Get or create the vectors table (thread-safe)."""
        if self._table is None:
            with self._lock:
                if self._table is None:  # Double-check after acquiring lock
                    try:
                        self.config.lancedb_path.parent.mkdir(parents=True, exist_ok=True)
                        self._db = lancedb.connect(str(self.config.lancedb_path))
                        self._table = self._db.create_table(
                            self.config.vector_table, schema=EnvVector, exist_ok=True
                        )
                    except Exception as e:
                        raise VectorIndexError(f"Could not open vector table: {e}") from e
        return self._table

    def upsert(
        self, vector_id: str, vector: list[float], tenant_id: str, metadata: dict[str, Any]
    ) -> None:
        """Insert or replace one vector, tagged with its tenant."""
        row = EnvVector(
            id=vector_id,
            vector=vector,
            tenant_id=tenant_id,
            record_id=metadata["record_id"],
            name=metadata["name"],
            category=metadata.get("category", "other"),
            updated_at=now_iso(),
        )
        table = self.get_table()
        try:
            data = pa.Table.from_pylist([row.model_dump()], schema=EnvVector.to_arrow_schema())
            (
                table.merge_insert("id")
                .when_matched_update_all()
                .when_not_matched_insert_all()
                .execute(data)
            )
        except Exception as e:
            raise VectorIndexError(f"Vector upsert failed for {vector_id}: {e}") from e

    def query(self, vector: list[float], top_k: int, tenant_id: str) -> list[VectorHit]:
        """Nearest neighbours by cosine similarity within one tenant."""
        table = self.get_table()
        try:
            rows = (
                table.search(vector)
                .distance_type("cosine")
                .where(_tenant_filter(tenant_id), prefilter=True)
                .limit(top_k)
                .to_list()
            )
        except Exception as e:
            raise VectorIndexError(f"Vector query failed: {e}") from e

        hits = []
        for row in rows:
            if row["tenant_id"] != tenant_id:
                continue
            similarity = 1.0 - float(row.get("_distance", 1.0))
            hits.append(
                VectorHit(
                    id=row["id"],
                    score=min(1.0, max(0.0, similarity)),
                    tenant_id=row["tenant_id"],
                    record_id=int(row["record_id"]),
                    name=row["name"],
                )
            )
        return hits

    def delete_by_ids(self, ids: list[str], tenant_id: str) -> None:
        """Delete vectors by id; never touches another tenant's rows."""
        if not ids:
            return
        id_list = ", ".join(f"'{escape_filter_value(i)}'" for i in ids)
        table = self.get_table()
        try:
            table.delete(f"{_tenant_filter(tenant_id)} AND id IN ({id_list})")
        except Exception as e:
            raise VectorIndexError(f"Vector delete failed: {e}") from e

    def count(self, tenant_id: str) -> int:
        table = self.get_table()
        try:
            return table.count_rows(_tenant_filter(tenant_id))
        except Exception as e:
            raise VectorIndexError(f"Vector count failed: {e}") from e
