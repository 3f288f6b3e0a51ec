#!/usr/bin/env python3
"""
EnvMem MCP Server - environment variable memory with hybrid search

Stores named environment variables (description, category, service, example,
keywords) per tenant and finds them with natural-language queries using:
- FastMCP for clean, idiomatic MCP server patterns
- SQLite for metadata plus an FTS5 keyword index (BM25)
- LanceDB for the cosine vector index
- Ollama / Google Gemini embeddings, hashed bag-of-words fallback

Ranking blends 60% semantic similarity, 30% keyword rank and up to 10%
metadata boost (required, AI services).
"""

from __future__ import annotations

import argparse
import asyncio
import sys
import threading

from mcp.server.fastmcp import FastMCP

from config import Config
from embeddings import Embedder
from env_store import EnvStore
from models import VALID_CATEGORIES, VALID_ENVIRONMENTS, EnvVariable, ScoredRecord
from record_store import RecordStore
from sample_envs import sample_env_variables
from utils import resolve_tenant
from vector_index import VectorIndex, VectorIndexError

CONFIG = Config()

# =============================================================================
# Backends (Lazy Singletons)
# =============================================================================

_lock = threading.RLock()  # RLock allows reentrant calls (get_store -> get_records)

_records: RecordStore | None = None
_vector_index: VectorIndex | None = None
_embedder: Embedder | None = None
_api_key: str | None = None


def get_records() -> RecordStore:
    """Get or create the SQLite record store (thread-safe)."""
    global _records
    if _records is None:
        with _lock:
            if _records is None:  # Double-check after acquiring lock
                _records = RecordStore(CONFIG.sqlite_path)
    return _records


def get_vector_index() -> VectorIndex:
    """Get or create the LanceDB vector index (thread-safe)."""
    global _vector_index
    if _vector_index is None:
        with _lock:
            if _vector_index is None:
                _vector_index = VectorIndex(CONFIG)
    return _vector_index


def get_embedder() -> Embedder:
    """Get or create the embedding provider chain (thread-safe)."""
    global _embedder
    if _embedder is None:
        with _lock:
            if _embedder is None:
                _embedder = Embedder(CONFIG)
    return _embedder


def current_tenant() -> str:
    return resolve_tenant(_api_key or CONFIG.api_key)


def get_store() -> EnvStore:
    """A fresh store for the current tenant; backends are shared."""
    return EnvStore(current_tenant(), get_records(), get_vector_index(), get_embedder(), CONFIG)


async def init_database() -> None:
    """Apply schema migrations and open the vector table."""
    applied = get_records().migrate()
    for number, description in applied:
        print(f"[envmem] Applied migration {number}: {description}", file=sys.stderr)
    try:
        get_vector_index().get_table()
    except VectorIndexError as e:
        print(f"[envmem] Vector index warning (keyword search only): {e}", file=sys.stderr)
    print(f"[envmem] Server ready (tenant: {current_tenant()})", file=sys.stderr)


# =============================================================================
# Formatting
# =============================================================================


def _format_env(env: EnvVariable, indent: str = "    ") -> list[str]:
    flag = " [required]" if env.required else ""
    lines = [f"{env.name} ({env.category}, {env.service}){flag}", f"{indent}{env.description}"]
    if env.example:
        lines.append(f"{indent}Example: {env.example}")
    if env.keywords:
        lines.append(f"{indent}Keywords: {', '.join(env.keywords)}")
    if env.related_to:
        lines.append(f"{indent}Related: {', '.join(env.related_to)}")
    return lines


def _format_result(index: int, result: ScoredRecord) -> list[str]:
    head, *rest = _format_env(result.record)
    return [
        f"[{index}] {head}",
        *rest,
        f"    Relevance: {result.score:.3f} ({result.match_type})",
        "",
    ]


# =============================================================================
# FastMCP Server
# =============================================================================

mcp = FastMCP(
    "envmem",
    instructions=(
        "Personal environment variable memory. Search with natural language "
        "(hybrid semantic + keyword ranking), add, delete and organize by project."
    ),
)


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def search_env_variables(
    query: str,
    category: str | None = None,
    service: str | None = None,
    required_only: bool = False,
    limit: int = 10,
    min_score: float | None = None,
) -> str:
    """Search environment variables using natural language.

    Example: "browser automation" returns Browserbase, E2B, Playwright variables.

    Args:
        query: Natural language search query (e.g. "AI code generation", "monitoring tools")
        category: Optional category filter, e.g. ai_services, database, payment
        service: Optional exact service name filter
        required_only: Only return required variables
        limit: Max results (default 10, max 50)
        min_score: Optional floor for semantic similarity (0-1)
    """
    if not query.strip():
        return "Error: query is required"
    try:
        results = await get_store().search(
            query,
            category=category,
            service=service,
            required_only=required_only,
            limit=limit,
            min_score=min_score,
        )
    except ValueError as e:
        return f"Error: {e}"

    if not results:
        return f"No environment variables found for '{query}'"

    lines = [f"Found {len(results)} environment variables (hybrid search):\n"]
    for i, result in enumerate(results, 1):
        lines.extend(_format_result(i, result))
    return "\n".join(lines).rstrip()


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def get_env_by_name(name: str) -> str:
    """Get environment variable details by exact name.

    Args:
        name: Exact variable name (e.g. "OPENAI_API_KEY")
    """
    store = get_store()
    env = store.get_by_name(name.strip())
    if env is None:
        return f"Environment variable {name} not found"
    lines = _format_env(env)
    status = store.get_indexing_status(env.name)
    if status is not None:
        detail = f" ({status.error_message})" if status.error_message else ""
        lines.append(f"    Indexing: {status.status.value}{detail}")
    return "\n".join(lines)


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def get_envs_for_services(services: list[str]) -> str:
    """Get all environment variables for several services at once.

    Args:
        services: Service names, e.g. ["Stripe", "OpenAI"] (case-insensitive)
    """
    if not services:
        return "Error: at least one service is required"
    grouped = get_store().get_envs_for_services(services)
    lines = []
    for service, envs in grouped.items():
        lines.append(f"{service}: {len(envs)} variables")
        for env in envs:
            flag = " [required]" if env.required else ""
            lines.append(f"  {env.name}{flag} - {env.description}")
    return "\n".join(lines)


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def list_env_categories() -> str:
    """List categories and services with variable counts."""
    stats = get_store().get_stats()
    if stats["total"] == 0:
        return "No environment variables stored yet."

    lines = [
        "=== Environment Variables ===",
        f"Total: {stats['total']} ({stats['required']} required)",
        "",
        "By Category:",
    ]
    for category, count in stats["by_category"].items():
        lines.append(f"  {category}: {count}")
    lines.append("\nBy Service:")
    for service, count in stats["by_service"].items():
        lines.append(f"  {service}: {count}")
    lines.append("\nIndexing:")
    for status, count in stats["by_status"].items():
        lines.append(f"  {status}: {count}")
    return "\n".join(lines)


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def list_env_variables(
    category: str | None = None,
    service: str | None = None,
    required_only: bool = False,
    limit: int = 100,
) -> str:
    """List stored environment variables, optionally filtered.

    Args:
        category: Optional category filter
        service: Optional exact service name filter
        required_only: Only list required variables
        limit: Max entries (default 100)
    """
    try:
        envs = get_store().list_envs(category, service, required_only, limit)
    except ValueError as e:
        return f"Error: {e}"
    if not envs:
        return "No environment variables found."
    lines = [f"{len(envs)} environment variables:"]
    for env in envs:
        flag = " [required]" if env.required else ""
        lines.append(f"  {env.name} ({env.category}, {env.service}){flag}")
    return "\n".join(lines)


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def add_env_variable(
    name: str,
    description: str,
    service: str,
    category: str = "other",
    required: bool = False,
    example: str | None = None,
    keywords: list[str] | None = None,
    related_to: list[str] | None = None,
) -> str:
    """Add or update an environment variable (same name replaces the old entry).

    Args:
        name: Variable name, e.g. STRIPE_SECRET_KEY
        description: What the variable is for
        service: Provider name, e.g. Stripe
        category: One of ai_services, browser_automation, database, monitoring,
            deployment, auth, analytics, storage, email, sms, social, cms, payment, other
        required: Whether projects usually need it
        example: Example value (stored as-is)
        keywords: Extra search keywords
        related_to: Names of related variables
    """
    if not description.strip() or not service.strip():
        return "Error: description and service are required"
    try:
        env = EnvVariable(
            name=name,
            description=description.strip(),
            category=category,
            service=service.strip(),
            required=required,
            example=example,
            keywords=keywords or [],
            related_to=related_to or [],
        )
    except ValueError as e:
        return f"Error: {e}"

    result = await get_store().upsert(env)
    if result.indexed:
        return f"Saved {env.name} (ID: {result.id}, {env.category})"
    return (
        f"Saved {env.name} (ID: {result.id}, {env.category})\n"
        "Warning: embedding failed, keyword search only until reindexed"
    )


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": True,
        "idempotentHint": True,
    }
)
async def delete_env_variable(name: str) -> str:
    """Delete an environment variable by exact name.

    Args:
        name: The variable name to delete
    """
    if await get_store().delete_by_name(name.strip()):
        return f"Deleted {name}"
    return f"Environment variable {name} not found"


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": True,
        "idempotentHint": True,
    }
)
async def clear_all_env_variables(confirm: bool = False) -> str:
    """Delete ALL of your environment variables. Requires confirm=true.

    Args:
        confirm: Must be true to proceed
    """
    if not confirm:
        return "Error: pass confirm=true to delete all environment variables"
    deleted = await get_store().delete_all()
    return f"Deleted {deleted} environment variables"


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def reindex_env_variables() -> str:
    """Retry embedding for variables whose indexing failed or never finished."""
    result = await get_store().reindex_pending()
    if result["attempted"] == 0:
        return "Nothing to reindex."
    return (
        f"Reindexed {result['indexed']}/{result['attempted']} variables"
        + (f" ({result['failed']} still failing)" if result["failed"] else "")
    )


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def seed_sample_env_variables() -> str:
    """Insert a starter catalogue of common environment variables."""
    result = await get_store().bulk_upsert(sample_env_variables())
    return f"Seeded {result['inserted']} environment variables ({result['indexed']} indexed)"


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def create_project(
    name: str,
    repo_url: str | None = None,
    tags: list[str] | None = None,
    description: str | None = None,
) -> str:
    """Create or update a project for grouping environment variables.

    Args:
        name: Project name
        repo_url: Optional git remote (normalized to host/owner/repo)
        tags: Optional tags
        description: Optional description
    """
    try:
        project = get_store().create_project(name, repo_url, tags, description)
    except ValueError as e:
        return f"Error: {e}"
    repo = f", {project.repo_url}" if project.repo_url else ""
    return f"Project {project.name} saved (ID: {project.id}{repo})"


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def list_projects() -> str:
    """List your projects."""
    projects = get_store().list_projects()
    if not projects:
        return "No projects yet."
    lines = [f"{len(projects)} projects:"]
    for project in projects:
        extra = f" - {project.repo_url}" if project.repo_url else ""
        tags = f" [{', '.join(project.tags)}]" if project.tags else ""
        lines.append(f"  {project.name}{extra}{tags}")
    return "\n".join(lines)


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def link_env_to_project(
    env_name: str,
    project_name: str,
    environment: str = "default",
    value_override: str | None = None,
) -> str:
    """Link an environment variable to a project for one environment.

    Args:
        env_name: Existing variable name
        project_name: Existing project name
        environment: One of dev, staging, prod, default
        value_override: Optional value for this project/environment
    """
    try:
        link = get_store().link_env(env_name, project_name, environment, value_override)
    except ValueError as e:
        return f"Error: {e}"
    if link is None:
        return f"Error: variable {env_name} or project {project_name} not found"
    return f"Linked {env_name} to {project_name} ({link.environment})"


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def get_project_envs(project_name: str, environment: str | None = None) -> str:
    """Get the environment variables linked to a project.

    Args:
        project_name: Project name
        environment: Optional filter: dev, staging, prod, default
    """
    try:
        envs = get_store().get_project_envs(project_name, environment)
    except ValueError as e:
        return f"Error: {e}"
    if not envs:
        return f"No environment variables linked to {project_name}"
    lines = [f"{project_name}: {len(envs)} variables"]
    for env in envs:
        value = f"={env.example}" if env.example else ""
        lines.append(f"  [{env.environment}] {env.name}{value}")
    return "\n".join(lines)


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def env_health() -> str:
    """Get health status - schema version, index sizes, configuration."""
    store = get_store()
    stats = store.get_stats()
    try:
        vectors = str(get_vector_index().count(store.tenant_id))
    except VectorIndexError as e:
        vectors = f"unavailable ({e})"

    lines = [
        "=== EnvMem Health Status ===",
        f"\nTenant: {store.tenant_id}",
        f"Variables: {stats['total']}",
        f"Vectors: {vectors}",
        f"Schema version: {get_records().schema_version()}",
        f"Embedding: {CONFIG.embedding_provider} ({CONFIG.embedding_model}, {CONFIG.embedding_dim}D)",
        f"Hash fallback: {'on' if CONFIG.hash_fallback else 'off'}",
        "Search: Hybrid (0.6 semantic + 0.3 keyword + metadata boost)",
        f"Categories: {', '.join(sorted(VALID_CATEGORIES))}",
        f"Environments: {', '.join(sorted(VALID_ENVIRONMENTS))}",
    ]
    return "\n".join(lines)


# =============================================================================
# Server Entry Point
# =============================================================================


async def run_server():
    """Run the MCP server with database initialization."""
    await init_database()
    await mcp.run_stdio_async()


def main():
    """Entry point."""
    global _api_key
    parser = argparse.ArgumentParser(description="EnvMem MCP server (stdio)")
    parser.add_argument("--api-key", help="API key identifying your tenant (or set ENVMEM_API_KEY)")
    args = parser.parse_args()
    _api_key = args.api_key
    asyncio.run(run_server())


if __name__ == "__main__":
    main()
