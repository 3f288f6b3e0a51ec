"""Embedding providers with a fallback chain.

Ollama (local) and Google GenAI produce real semantic vectors. The hash
provider is a deterministic hashed bag-of-words vector: no semantic meaning
beyond shared words, but it never needs the network, so records can always
be indexed and tests run offline.
"""

from __future__ import annotations

import hashlib
import os
import re
import sys
import threading
from functools import lru_cache
from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from google.genai import Client as GenAIClient

    from config import Config

_lock = threading.RLock()
_genai_client: GenAIClient | None = None


class EmbeddingError(RuntimeError):
    """Raised when no provider in the chain produced an embedding."""


def _get_api_key() -> str:
    """Get API key from environment or secrets file."""
    key = os.environ.get("GOOGLE_API_KEY") or os.environ.get("GEMINI_API_KEY")
    if key:
        return key
    secrets_path = Path.home() / ".secrets" / "GOOGLE_API_KEY"
    if secrets_path.exists():
        return secrets_path.read_text().strip()
    raise EmbeddingError(
        "GOOGLE_API_KEY not found. Set environment variable or create ~/.secrets/GOOGLE_API_KEY"
    )


def get_genai_client() -> GenAIClient:
    """Get or create the GenAI client singleton (thread-safe)."""
    global _genai_client
    if _genai_client is None:
        with _lock:
            if _genai_client is None:  # Double-check after acquiring lock
                from google import genai

                _genai_client = genai.Client(api_key=_get_api_key())
    return _genai_client


def _normalize(embedding: np.ndarray, dim: int) -> list[float]:
    """Truncate/pad to `dim` and scale to unit length."""
    if len(embedding) > dim:
        embedding = embedding[:dim]
    elif len(embedding) < dim:
        embedding = np.concatenate([embedding, np.zeros(dim - len(embedding))])
    norm = np.linalg.norm(embedding)
    return (embedding / norm).tolist() if norm > 0 else embedding.tolist()


def _embed_ollama(text: str, config: Config) -> list[float]:
    import requests

    response = requests.post(
        f"{config.ollama_base_url}/api/embeddings",
        json={"model": config.embedding_model, "prompt": text},
        timeout=30,
    )
    response.raise_for_status()
    values = response.json().get("embedding") or []
    if not values:
        raise EmbeddingError("Ollama returned an empty embedding")
    return _normalize(np.array(values, dtype=float), config.embedding_dim)


def _embed_google(text: str, config: Config, task_type: str) -> list[float]:
    from google.genai import types

    client = get_genai_client()
    response = client.models.embed_content(
        model=config.embedding_model,
        contents=text,
        config=types.EmbedContentConfig(
            task_type=task_type, output_dimensionality=config.embedding_dim
        ),
    )
    return _normalize(np.array(response.embeddings[0].values, dtype=float), config.embedding_dim)


def embed_hash(text: str, dim: int) -> list[float]:
    """Deterministic hashed bag-of-words embedding.

    Whole words weigh 1.0 and character trigrams 0.25, so texts sharing
    words (or word stems) land close together under cosine similarity.
    """
    vector = np.zeros(dim)
    words = re.findall(r"[a-z0-9]+", text.lower()) or [text.lower() or "empty"]
    features: list[tuple[str, float]] = []
    for word in words:
        features.append((f"w:{word}", 1.0))
        padded = f"#{word}#"
        features.extend((f"t:{padded[i:i + 3]}", 0.25) for i in range(len(padded) - 2))

    for feature, weight in features:
        digest = hashlib.sha256(feature.encode()).digest()
        index = int.from_bytes(digest[:4], "big") % dim
        sign = 1.0 if digest[4] & 1 else -1.0
        vector[index] += sign * weight

    return _normalize(vector, dim)


class Embedder:
    """Embedding provider chain with an LRU cache.

    `embed` raises EmbeddingError when every provider failed.
    """

    def __init__(self, config: Config) -> None:
        self.config = config
        self._cached = lru_cache(maxsize=128)(self._compute)

    def _chain(self) -> list[str]:
        provider = self.config.embedding_provider.lower()
        if provider == "hash":
            return ["hash"]
        chain = ["ollama", "google"] if provider == "ollama" else ["google"]
        if self.config.hash_fallback:
            chain.append("hash")
        return chain

    def _compute(self, text: str, task_type: str) -> tuple[float, ...]:
        errors = []
        for provider in self._chain():
            try:
                if provider == "ollama":
                    values = _embed_ollama(text, self.config)
                elif provider == "google":
                    values = _embed_google(text, self.config, task_type)
                else:
                    if errors:
                        print(
                            "[envmem] Using hash fallback embedding (poor semantic quality)",
                            file=sys.stderr,
                        )
                    values = embed_hash(text, self.config.embedding_dim)
                return tuple(values)
            except Exception as e:
                print(f"[envmem] {provider} embedding error: {e}", file=sys.stderr)
                errors.append(f"{provider}: {e}")
        raise EmbeddingError("; ".join(errors) or "no embedding provider configured")

    def embed(self, text: str, task_type: str = "SEMANTIC_SIMILARITY") -> list[float]:
        """Embed text, reusing cached vectors for repeated inputs."""
        return list(self._cached(text, task_type))
