"""Shared data models for envmem."""

from __future__ import annotations

import os
from enum import Enum

from lancedb.pydantic import LanceModel, Vector
from pydantic import BaseModel, Field, field_validator

# Configuration
EMBEDDING_DIM = int(os.environ.get("EMBEDDING_DIM", "768"))

ANONYMOUS_TENANT = "anonymous"

VALID_CATEGORIES = frozenset(
    {
        "ai_services",
        "browser_automation",
        "database",
        "monitoring",
        "deployment",
        "auth",
        "analytics",
        "storage",
        "email",
        "sms",
        "social",
        "cms",
        "payment",
        "other",
    }
)
VALID_ENVIRONMENTS = frozenset({"dev", "staging", "prod", "default"})


def normalize_category(category: str) -> str:
    """Lower-case a category and check it against VALID_CATEGORIES."""
    normalized = category.strip().lower()
    if normalized not in VALID_CATEGORIES:
        raise ValueError(f"Invalid category '{category}'. Valid: {sorted(VALID_CATEGORIES)}")
    return normalized


def normalize_environment(environment: str) -> str:
    normalized = environment.strip().lower()
    if normalized not in VALID_ENVIRONMENTS:
        raise ValueError(
            f"Invalid environment '{environment}'. Valid: {sorted(VALID_ENVIRONMENTS)}"
        )
    return normalized


class EnvVector(LanceModel):
    """LanceDB schema for the vector index.

    IMPORTANT: Any changes to this schema require migration of existing data.
    `tenant_id` is the isolation tag and must match the owning record.
    """

    id: str  # vector_ref stored on the record
    vector: Vector(EMBEDDING_DIM)  # type: ignore[valid-type]
    tenant_id: str
    record_id: int
    name: str
    category: str
    updated_at: str


class EnvVariable(BaseModel):
    """An environment variable record."""

    id: int | None = None
    tenant_id: str = ANONYMOUS_TENANT
    name: str
    description: str
    category: str = "other"
    service: str
    required: bool = False
    example: str | None = None
    keywords: list[str] = Field(default_factory=list)
    related_to: list[str] = Field(default_factory=list)
    vector_ref: str | None = None
    indexed_at: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("name is required")
        return value

    @field_validator("category")
    @classmethod
    def _check_category(cls, value: str) -> str:
        return normalize_category(value)


class IndexState(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    INDEXED = "indexed"
    FAILED = "failed"


class IndexingStatus(BaseModel):
    env_variable_id: int
    status: IndexState
    queued_at: str | None = None
    indexed_at: str | None = None
    error_message: str | None = None
    retry_count: int = 0


class Project(BaseModel):
    id: int | None = None
    tenant_id: str = ANONYMOUS_TENANT
    name: str
    repo_url: str | None = None
    tags: list[str] = Field(default_factory=list)
    description: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


class ProjectLink(BaseModel):
    id: int | None = None
    env_variable_id: int
    project_id: int
    environment: str = "default"
    value_override: str | None = None
    created_at: str | None = None

    @field_validator("environment")
    @classmethod
    def _check_environment(cls, value: str) -> str:
        return normalize_environment(value)


class EnvWithProject(EnvVariable):
    """A record as seen through one of its project links."""

    project_name: str
    environment: str
    value_override: str | None = None


class SearchOptions(BaseModel):
    category: str | None = None
    service: str | None = None
    required_only: bool = False
    limit: int = 10
    min_score: float | None = None

    def matches(self, env: EnvVariable) -> bool:
        """Apply the metadata filters (not min_score) to a resolved record."""
        if self.category and env.category != self.category:
            return False
        if self.service and env.service != self.service:
            return False
        if self.required_only and not env.required:
            return False
        return True


class ScoredRecord(BaseModel):
    record: EnvVariable
    score: float
    match_type: str  # semantic | keyword | hybrid
    semantic_score: float = 0.0
    keyword_score: float = 0.0
    boost: float = 0.0


class UpsertResult(BaseModel):
    id: int
    indexed: bool
