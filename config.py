"""Configuration for envmem."""

import os
from dataclasses import dataclass
from pathlib import Path

from models import EMBEDDING_DIM


def _env_flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True, slots=True)
class Config:
    """Server configuration with sensible defaults.

    Resolved once at process start and passed explicitly into stores and
    rankers; nothing below reads the environment again.
    """

    data_dir: Path = Path(os.environ.get("ENVMEM_DATA_DIR", Path.home() / ".envmem"))
    vector_table: str = "env_vectors"
    embedding_provider: str = os.environ.get("ENVMEM_EMBEDDING_PROVIDER", "ollama")  # ollama | google | hash
    embedding_model: str = os.environ.get("EMBEDDING_MODEL", "nomic-embed-text")
    embedding_dim: int = EMBEDDING_DIM
    ollama_base_url: str = os.environ.get("OLLAMA_BASE_URL", "http://localhost:11434")
    hash_fallback: bool = _env_flag("ENVMEM_HASH_FALLBACK", "1")
    api_key: str | None = os.environ.get("ENVMEM_API_KEY") or None

    # Ranking
    default_limit: int = 10
    max_limit: int = 50
    semantic_weight: float = 0.6
    keyword_weight: float = 0.3
    keyword_floor: float = 0.1
    required_boost: float = 0.05
    priority_boost: float = 0.05
    priority_categories: frozenset[str] = frozenset({"ai_services"})
    channel_timeout: float = float(os.environ.get("ENVMEM_CHANNEL_TIMEOUT", "10"))

    # Maintenance
    delete_batch_size: int = 100
    max_index_retries: int = 3

    @property
    def sqlite_path(self) -> Path:
        return self.data_dir / "envmem.db"

    @property
    def lancedb_path(self) -> Path:
        return self.data_dir / "lancedb"
