"""Shared utility functions for envmem."""

from __future__ import annotations

import hashlib
import re
from datetime import datetime
from typing import TYPE_CHECKING

from models import ANONYMOUS_TENANT

if TYPE_CHECKING:
    from models import EnvVariable

_EDGE_PUNCTUATION = ".,;:!?\"'()[]{}"


def resolve_tenant(credential: str | None) -> str:
    """Map an API key to a stable tenant id.

    No credential means the shared "anonymous" tenant. The same key always
    yields the same id.
    """
    if credential is None or not credential.strip():
        return ANONYMOUS_TENANT
    digest = hashlib.sha256(credential.strip().encode()).hexdigest()
    return f"user_{digest[:16]}"


def normalize_git_url(url: str) -> str:
    """Normalize git URLs to canonical format: provider.com/owner/repo

    Examples:
        git@github.com:acme/billing.git -> github.com/acme/billing
        https://github.com/acme/billing.git -> github.com/acme/billing
        git@gitlab.com:owner/project -> gitlab.com/owner/project
    """
    url = url.strip().removesuffix("/").removesuffix(".git")

    # SSH format: git@github.com:owner/repo -> github.com/owner/repo
    ssh_match = re.match(r"git@([^:]+):(.+)", url)
    if ssh_match:
        return f"{ssh_match.group(1)}/{ssh_match.group(2)}"

    # HTTPS format: https://github.com/owner/repo -> github.com/owner/repo
    https_match = re.match(r"https?://(.+)", url)
    if https_match:
        return https_match.group(1)

    return url


def enrich_text(env: EnvVariable) -> str:
    """Build the text that gets embedded for a record.

    Name and category are de-snaked so "OPENAI_API_KEY" reads as words.
    """
    parts = [
        env.name.replace("_", " "),
        env.description,
        env.category.replace("_", " "),
        env.service,
        *env.keywords,
    ]
    return ". ".join(p.strip() for p in parts if p and p.strip())


def tokenize_query(query: str) -> list[str]:
    """Lower-cased whitespace tokens longer than one character, deduplicated."""
    words = (w.strip(_EDGE_PUNCTUATION) for w in query.lower().split())
    return list(dict.fromkeys(w for w in words if len(w) > 1))


def fts_expression(tokens: list[str]) -> str:
    """Disjunctive FTS5 MATCH expression of quoted tokens."""
    return " OR ".join('"' + t.replace('"', '""') + '"' for t in tokens)


def escape_filter_value(value: str) -> str:
    """Escape single quotes in filter values to prevent injection."""
    return value.replace("'", "''")


def escape_like(value: str) -> str:
    """Escape LIKE wildcards; pair with ESCAPE '\\'."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def now_iso() -> str:
    """Get current timestamp as ISO string."""
    return datetime.now().isoformat()
