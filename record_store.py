"""SQLite record store and FTS5 lexical index.

The authoritative metadata lives in `env_variables`; `env_fts` is an
external-content FTS5 table kept in sync by triggers. The schema is created
by the versioned MIGRATIONS below, tracked in `PRAGMA user_version`, and
applied once at startup (see `migrate`), so nothing here probes for columns.

Every query is scoped by `tenant_id`.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from models import (
    EnvVariable,
    EnvWithProject,
    IndexingStatus,
    IndexState,
    Project,
    ProjectLink,
    SearchOptions,
)
from utils import escape_like, fts_expression, now_iso

MIGRATIONS: list[tuple[str, str]] = [
    (
        "env variables, indexing status, search analytics, full-text index",
        """
        CREATE TABLE env_variables (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            tenant_id TEXT NOT NULL DEFAULT 'anonymous',
            name TEXT NOT NULL,
            description TEXT NOT NULL,
            category TEXT NOT NULL,
            service TEXT NOT NULL,
            required INTEGER NOT NULL DEFAULT 0,
            example TEXT,
            keywords TEXT NOT NULL DEFAULT '[]',
            related_to TEXT NOT NULL DEFAULT '[]',
            vector_ref TEXT,
            indexed_at TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        CREATE UNIQUE INDEX idx_env_tenant_name ON env_variables(tenant_id, name);
        CREATE INDEX idx_env_tenant_category ON env_variables(tenant_id, category);
        CREATE INDEX idx_env_tenant_service ON env_variables(tenant_id, service);
        CREATE INDEX idx_env_vector_ref ON env_variables(vector_ref);

        CREATE TABLE indexing_status (
            env_variable_id INTEGER PRIMARY KEY
                REFERENCES env_variables(id) ON DELETE CASCADE,
            status TEXT NOT NULL,
            queued_at TEXT,
            indexed_at TEXT,
            error_message TEXT,
            retry_count INTEGER NOT NULL DEFAULT 0
        );
        CREATE INDEX idx_indexing_status ON indexing_status(status);

        CREATE TABLE search_analytics (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            tenant_id TEXT NOT NULL,
            query TEXT NOT NULL,
            result_count INTEGER NOT NULL,
            top_result_id INTEGER REFERENCES env_variables(id) ON DELETE SET NULL,
            timestamp TEXT NOT NULL
        );
        CREATE INDEX idx_search_tenant_time ON search_analytics(tenant_id, timestamp);

        CREATE VIRTUAL TABLE env_fts USING fts5(
            name, description, category, service, keywords,
            content='env_variables', content_rowid='id'
        );
        CREATE TRIGGER env_fts_insert AFTER INSERT ON env_variables BEGIN
            INSERT INTO env_fts(rowid, name, description, category, service, keywords)
            VALUES (new.id, new.name, new.description, new.category, new.service, new.keywords);
        END;
        CREATE TRIGGER env_fts_delete AFTER DELETE ON env_variables BEGIN
            INSERT INTO env_fts(env_fts, rowid, name, description, category, service, keywords)
            VALUES ('delete', old.id, old.name, old.description, old.category, old.service, old.keywords);
        END;
        CREATE TRIGGER env_fts_update
        AFTER UPDATE OF name, description, category, service, keywords ON env_variables BEGIN
            INSERT INTO env_fts(env_fts, rowid, name, description, category, service, keywords)
            VALUES ('delete', old.id, old.name, old.description, old.category, old.service, old.keywords);
            INSERT INTO env_fts(rowid, name, description, category, service, keywords)
            VALUES (new.id, new.name, new.description, new.category, new.service, new.keywords);
        END;
        """,
    ),
    (
        "projects and env/project links",
        """
        CREATE TABLE projects (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            tenant_id TEXT NOT NULL DEFAULT 'anonymous',
            name TEXT NOT NULL,
            repo_url TEXT,
            tags TEXT NOT NULL DEFAULT '[]',
            description TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        CREATE UNIQUE INDEX idx_project_tenant_name ON projects(tenant_id, name);
        CREATE INDEX idx_project_repo ON projects(repo_url);

        CREATE TABLE env_project_links (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            env_variable_id INTEGER NOT NULL
                REFERENCES env_variables(id) ON DELETE CASCADE,
            project_id INTEGER NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
            environment TEXT NOT NULL DEFAULT 'default',
            value_override TEXT,
            created_at TEXT NOT NULL
        );
        CREATE UNIQUE INDEX idx_link_env_project_env
            ON env_project_links(env_variable_id, project_id, environment);
        CREATE INDEX idx_link_project ON env_project_links(project_id);
        """,
    ),
]


def _row_to_env(row: sqlite3.Row) -> EnvVariable:
    return EnvVariable(
        id=row["id"],
        tenant_id=row["tenant_id"],
        name=row["name"],
        description=row["description"],
        category=row["category"],
        service=row["service"],
        required=bool(row["required"]),
        example=row["example"],
        keywords=json.loads(row["keywords"]) if row["keywords"] else [],
        related_to=json.loads(row["related_to"]) if row["related_to"] else [],
        vector_ref=row["vector_ref"],
        indexed_at=row["indexed_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_project(row: sqlite3.Row) -> Project:
    return Project(
        id=row["id"],
        tenant_id=row["tenant_id"],
        name=row["name"],
        repo_url=row["repo_url"],
        tags=json.loads(row["tags"]) if row["tags"] else [],
        description=row["description"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _filter_sql(options: SearchOptions | None, alias: str = "") -> tuple[str, list[Any]]:
    """SQL fragment (leading AND) for the category/service/required filters."""
    if options is None:
        return "", []
    prefix = f"{alias}." if alias else ""
    clauses: list[str] = []
    params: list[Any] = []
    if options.category:
        clauses.append(f"{prefix}category = ?")
        params.append(options.category)
    if options.service:
        clauses.append(f"{prefix}service = ?")
        params.append(options.service)
    if options.required_only:
        clauses.append(f"{prefix}required = 1")
    return "".join(f" AND {c}" for c in clauses), params


class RecordStore:
    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """One connection per operation; commits on success, rolls back on error."""
        conn = sqlite3.connect(self.path, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    # -------------------------------------------------------------------------
    # Schema
    # -------------------------------------------------------------------------

    def schema_version(self) -> int:
        if not self.path.exists():
            return 0
        with self._connect() as conn:
            return conn.execute("PRAGMA user_version").fetchone()[0]

    def pending_migrations(self) -> list[tuple[int, str]]:
        version = self.schema_version()
        return [
            (number, description)
            for number, (description, _) in enumerate(MIGRATIONS, 1)
            if number > version
        ]

    def migrate(self) -> list[tuple[int, str]]:
        """Apply pending migrations in order; returns what was applied."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        applied = []
        for number, description in self.pending_migrations():
            script = MIGRATIONS[number - 1][1]
            conn = sqlite3.connect(self.path, timeout=30)
            try:
                conn.executescript(f"BEGIN;\n{script}\nPRAGMA user_version = {number};\nCOMMIT;")
            except sqlite3.Error:
                if conn.in_transaction:
                    conn.rollback()
                raise
            finally:
                conn.close()
            applied.append((number, description))
        return applied

    # -------------------------------------------------------------------------
    # Env variables
    # -------------------------------------------------------------------------

    def upsert(self, tenant_id: str, env: EnvVariable) -> int:
        """Insert or replace by (tenant_id, name); vector_ref is left untouched."""
        timestamp = now_iso()
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO env_variables (
                    tenant_id, name, description, category, service, required,
                    example, keywords, related_to, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(tenant_id, name) DO UPDATE SET
                    description = excluded.description,
                    category = excluded.category,
                    service = excluded.service,
                    required = excluded.required,
                    example = excluded.example,
                    keywords = excluded.keywords,
                    related_to = excluded.related_to,
                    updated_at = excluded.updated_at
                RETURNING id
                """,
                (
                    tenant_id,
                    env.name,
                    env.description,
                    env.category,
                    env.service,
                    1 if env.required else 0,
                    env.example,
                    json.dumps(env.keywords),
                    json.dumps(env.related_to),
                    timestamp,
                    timestamp,
                ),
            ).fetchone()
        return row["id"]

    def get_by_id(self, tenant_id: str, record_id: int) -> EnvVariable | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM env_variables WHERE tenant_id = ? AND id = ?",
                (tenant_id, record_id),
            ).fetchone()
        return _row_to_env(row) if row else None

    def get_by_name(self, tenant_id: str, name: str) -> EnvVariable | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM env_variables WHERE tenant_id = ? AND name = ?",
                (tenant_id, name),
            ).fetchone()
        return _row_to_env(row) if row else None

    def list_envs(
        self, tenant_id: str, options: SearchOptions | None = None, limit: int = 100
    ) -> list[EnvVariable]:
        filters, params = _filter_sql(options)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM env_variables WHERE tenant_id = ?{filters} ORDER BY name LIMIT ?",
                [tenant_id, *params, limit],
            ).fetchall()
        return [_row_to_env(r) for r in rows]

    def by_services(self, tenant_id: str, services: list[str]) -> list[EnvVariable]:
        wanted = [s.strip().lower() for s in services if s.strip()]
        if not wanted:
            return []
        placeholders = ", ".join("?" for _ in wanted)
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM env_variables
                WHERE tenant_id = ? AND lower(service) IN ({placeholders})
                ORDER BY service, required DESC, name
                """,
                [tenant_id, *wanted],
            ).fetchall()
        return [_row_to_env(r) for r in rows]

    def delete(self, tenant_id: str, record_id: int) -> bool:
        with self._connect() as conn:
            conn.execute("DELETE FROM indexing_status WHERE env_variable_id = ?", (record_id,))
            conn.execute("DELETE FROM env_project_links WHERE env_variable_id = ?", (record_id,))
            cursor = conn.execute(
                "DELETE FROM env_variables WHERE tenant_id = ? AND id = ?", (tenant_id, record_id)
            )
        return cursor.rowcount > 0

    def record_ids(self, tenant_id: str) -> list[int]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id FROM env_variables WHERE tenant_id = ? ORDER BY id", (tenant_id,)
            ).fetchall()
        return [r["id"] for r in rows]

    def delete_all(self, tenant_id: str) -> int:
        scope = "SELECT id FROM env_variables WHERE tenant_id = ?"
        with self._connect() as conn:
            conn.execute(f"DELETE FROM indexing_status WHERE env_variable_id IN ({scope})", (tenant_id,))
            conn.execute(f"DELETE FROM env_project_links WHERE env_variable_id IN ({scope})", (tenant_id,))
            cursor = conn.execute("DELETE FROM env_variables WHERE tenant_id = ?", (tenant_id,))
        return cursor.rowcount

    # -------------------------------------------------------------------------
    # Lexical index
    # -------------------------------------------------------------------------

    def lexical_search(
        self, tenant_id: str, tokens: list[str], options: SearchOptions, limit: int
    ) -> list[EnvVariable]:
        """FTS5 search ordered by bm25 relevance, best first.

        Raises sqlite3.Error when the index rejects the query.
        """
        filters, params = _filter_sql(options, "ev")
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT ev.* FROM env_fts
                JOIN env_variables ev ON ev.id = env_fts.rowid
                WHERE env_fts MATCH ? AND ev.tenant_id = ?{filters}
                ORDER BY bm25(env_fts)
                LIMIT ?
                """,
                [fts_expression(tokens), tenant_id, *params, limit],
            ).fetchall()
        return [_row_to_env(r) for r in rows]

    def substring_search(
        self, tenant_id: str, tokens: list[str], options: SearchOptions, limit: int
    ) -> list[EnvVariable]:
        """LIKE scan over name/description/service/keywords.

        Ordered by how many tokens matched, then by insertion order.
        """
        if not tokens:
            return []
        fields = ("name", "description", "service", "keywords")
        clauses = []
        params: list[Any] = [tenant_id]
        filters, filter_params = _filter_sql(options)
        params.extend(filter_params)
        for token in tokens:
            pattern = f"%{escape_like(token)}%"
            clauses.append(
                "(" + " OR ".join(f"lower({f}) LIKE ? ESCAPE '\\'" for f in fields) + ")"
            )
            params.extend([pattern] * len(fields))

        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM env_variables
                WHERE tenant_id = ?{filters} AND ({" OR ".join(clauses)})
                ORDER BY id
                """,
                params,
            ).fetchall()

        def matched(row: sqlite3.Row) -> int:
            haystack = " ".join(str(row[f] or "") for f in fields).lower()
            return sum(1 for t in tokens if t in haystack)

        ranked = sorted(rows, key=matched, reverse=True)
        return [_row_to_env(r) for r in ranked[:limit]]

    # -------------------------------------------------------------------------
    # Indexing status
    # -------------------------------------------------------------------------

    def mark_processing(self, record_id: int) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO indexing_status (env_variable_id, status, queued_at)
                VALUES (?, ?, ?)
                ON CONFLICT(env_variable_id) DO UPDATE SET
                    status = excluded.status,
                    queued_at = excluded.queued_at,
                    error_message = NULL
                """,
                (record_id, IndexState.PROCESSING.value, now_iso()),
            )

    def mark_indexed(self, tenant_id: str, record_id: int, vector_ref: str) -> None:
        """Set vector_ref, indexed_at and the status row in one transaction."""
        timestamp = now_iso()
        with self._connect() as conn:
            conn.execute(
                "UPDATE env_variables SET vector_ref = ?, indexed_at = ? WHERE tenant_id = ? AND id = ?",
                (vector_ref, timestamp, tenant_id, record_id),
            )
            conn.execute(
                """
                UPDATE indexing_status
                SET status = ?, indexed_at = ?, error_message = NULL
                WHERE env_variable_id = ?
                """,
                (IndexState.INDEXED.value, timestamp, record_id),
            )

    def mark_failed(self, tenant_id: str, record_id: int, message: str) -> None:
        """Clear vector_ref/indexed_at and record the failure in one transaction."""
        with self._connect() as conn:
            conn.execute(
                "UPDATE env_variables SET vector_ref = NULL, indexed_at = NULL WHERE tenant_id = ? AND id = ?",
                (tenant_id, record_id),
            )
            conn.execute(
                """
                UPDATE indexing_status
                SET status = ?, error_message = ?, retry_count = retry_count + 1
                WHERE env_variable_id = ?
                """,
                (IndexState.FAILED.value, message, record_id),
            )

    def get_status(self, tenant_id: str, name: str) -> IndexingStatus | None:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT s.* FROM indexing_status s
                JOIN env_variables ev ON ev.id = s.env_variable_id
                WHERE ev.tenant_id = ? AND ev.name = ?
                """,
                (tenant_id, name),
            ).fetchone()
        return IndexingStatus(**dict(row)) if row else None

    def pending_index(self, tenant_id: str, max_retries: int) -> list[EnvVariable]:
        """Records not yet indexed whose retry budget is not exhausted."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT ev.* FROM env_variables ev
                LEFT JOIN indexing_status s ON s.env_variable_id = ev.id
                WHERE ev.tenant_id = ?
                  AND (s.status IS NULL OR s.status != ?)
                  AND COALESCE(s.retry_count, 0) < ?
                ORDER BY ev.id
                """,
                (tenant_id, IndexState.INDEXED.value, max_retries),
            ).fetchall()
        return [_row_to_env(r) for r in rows]

    # -------------------------------------------------------------------------
    # Stats & analytics
    # -------------------------------------------------------------------------

    def stats(self, tenant_id: str) -> dict[str, Any]:
        with self._connect() as conn:
            total, required = conn.execute(
                "SELECT COUNT(*), COALESCE(SUM(required), 0) FROM env_variables WHERE tenant_id = ?",
                (tenant_id,),
            ).fetchone()
            by_category = conn.execute(
                """
                SELECT category, COUNT(*) AS count FROM env_variables
                WHERE tenant_id = ? GROUP BY category ORDER BY category
                """,
                (tenant_id,),
            ).fetchall()
            by_service = conn.execute(
                """
                SELECT service, COUNT(*) AS count FROM env_variables
                WHERE tenant_id = ? GROUP BY service ORDER BY count DESC, service
                """,
                (tenant_id,),
            ).fetchall()
            by_status = conn.execute(
                """
                SELECT COALESCE(s.status, 'queued') AS status, COUNT(*) AS count
                FROM env_variables ev
                LEFT JOIN indexing_status s ON s.env_variable_id = ev.id
                WHERE ev.tenant_id = ? GROUP BY 1 ORDER BY 1
                """,
                (tenant_id,),
            ).fetchall()
        return {
            "total": total,
            "required": required,
            "by_category": {r["category"]: r["count"] for r in by_category},
            "by_service": {r["service"]: r["count"] for r in by_service},
            "by_status": {r["status"]: r["count"] for r in by_status},
        }

    def log_search(
        self, tenant_id: str, query: str, result_count: int, top_result_id: int | None
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO search_analytics (tenant_id, query, result_count, top_result_id, timestamp)
                VALUES (?, ?, ?, ?, ?)
                """,
                (tenant_id, query, result_count, top_result_id, now_iso()),
            )

    def recent_searches(self, tenant_id: str, limit: int = 10) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT query, result_count, top_result_id, timestamp FROM search_analytics
                WHERE tenant_id = ? ORDER BY id DESC LIMIT ?
                """,
                (tenant_id, limit),
            ).fetchall()
        return [dict(r) for r in rows]

    # -------------------------------------------------------------------------
    # Projects
    # -------------------------------------------------------------------------

    def upsert_project(self, tenant_id: str, project: Project) -> Project:
        timestamp = now_iso()
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO projects (tenant_id, name, repo_url, tags, description, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(tenant_id, name) DO UPDATE SET
                    repo_url = excluded.repo_url,
                    tags = excluded.tags,
                    description = excluded.description,
                    updated_at = excluded.updated_at
                RETURNING *
                """,
                (
                    tenant_id,
                    project.name,
                    project.repo_url,
                    json.dumps(project.tags),
                    project.description,
                    timestamp,
                    timestamp,
                ),
            ).fetchone()
        return _row_to_project(row)

    def list_projects(self, tenant_id: str) -> list[Project]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM projects WHERE tenant_id = ? ORDER BY name", (tenant_id,)
            ).fetchall()
        return [_row_to_project(r) for r in rows]

    def delete_project(self, tenant_id: str, name: str) -> bool:
        with self._connect() as conn:
            conn.execute(
                """
                DELETE FROM env_project_links WHERE project_id IN (
                    SELECT id FROM projects WHERE tenant_id = ? AND name = ?
                )
                """,
                (tenant_id, name),
            )
            cursor = conn.execute(
                "DELETE FROM projects WHERE tenant_id = ? AND name = ?", (tenant_id, name)
            )
        return cursor.rowcount > 0

    def link(
        self,
        tenant_id: str,
        env_name: str,
        project_name: str,
        environment: str,
        value_override: str | None,
    ) -> ProjectLink | None:
        """Bind a record to a project; None when either is missing in the tenant."""
        with self._connect() as conn:
            env_row = conn.execute(
                "SELECT id FROM env_variables WHERE tenant_id = ? AND name = ?",
                (tenant_id, env_name),
            ).fetchone()
            project_row = conn.execute(
                "SELECT id FROM projects WHERE tenant_id = ? AND name = ?",
                (tenant_id, project_name),
            ).fetchone()
            if env_row is None or project_row is None:
                return None
            row = conn.execute(
                """
                INSERT INTO env_project_links (
                    env_variable_id, project_id, environment, value_override, created_at
                ) VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(env_variable_id, project_id, environment) DO UPDATE SET
                    value_override = excluded.value_override
                RETURNING *
                """,
                (env_row["id"], project_row["id"], environment, value_override, now_iso()),
            ).fetchone()
        return ProjectLink(**dict(row))

    def project_envs(
        self, tenant_id: str, project_name: str, environment: str | None = None
    ) -> list[EnvWithProject]:
        env_filter = " AND l.environment = ?" if environment else ""
        params: list[Any] = [tenant_id, tenant_id, project_name]
        if environment:
            params.append(environment)
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT ev.*, p.name AS project_name, l.environment, l.value_override
                FROM env_project_links l
                JOIN env_variables ev ON ev.id = l.env_variable_id
                JOIN projects p ON p.id = l.project_id
                WHERE p.tenant_id = ? AND ev.tenant_id = ? AND p.name = ?{env_filter}
                ORDER BY ev.name, l.environment
                """,
                params,
            ).fetchall()
        results = []
        for row in rows:
            env = _row_to_env(row)
            results.append(
                EnvWithProject(
                    **env.model_dump(exclude={"example"}),
                    example=row["value_override"] or env.example,
                    project_name=row["project_name"],
                    environment=row["environment"],
                    value_override=row["value_override"],
                )
            )
        return results
