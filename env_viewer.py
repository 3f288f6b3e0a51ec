#!/usr/bin/env python3
"""Web viewer and small JSON API for environment variables.

The tenant comes from the X-API-Key header (no header: the shared
"anonymous" tenant).
"""

from __future__ import annotations

import asyncio

from flask import Flask, jsonify, render_template_string, request

import server
from env_store import EnvStore
from utils import resolve_tenant

app = Flask(__name__)
ITEMS_PER_PAGE = 10


def _store():
    return EnvStore(
        resolve_tenant(request.headers.get("X-API-Key")),
        server.get_records(),
        server.get_vector_index(),
        server.get_embedder(),
        server.CONFIG,
    )


def get_page_links(current: int, total: int) -> list:
    """Generate smart pagination links with ellipsis for gaps."""
    if total <= 7:
        return list(range(1, total + 1))

    links = []
    for p in range(1, total + 1):
        show_page = (
            p <= 3  # First 3 pages
            or p >= total - 2  # Last 3 pages
            or abs(p - current) <= 1  # Pages around current
        )
        if show_page:
            links.append(p)
        elif links[-1] != "...":
            links.append("...")
    return links


HTML = """
<!DOCTYPE html>
<html>
<head>
    <title>EnvMem Viewer</title>
    <style>
        body { font-family: system-ui; max-width: 900px; margin: 0 auto; padding: 20px; background: #1a1a2e; color: #eee; }
        h1 { color: #00d9ff; }
        .header { display: flex; justify-content: space-between; align-items: center; margin-bottom: 20px; flex-wrap: wrap; gap: 10px; }
        .pagination { display: flex; gap: 6px; align-items: center; flex-wrap: wrap; }
        .pagination a, .pagination span { padding: 6px 12px; background: #0f3460; color: #00d9ff; text-decoration: none; border-radius: 5px; display: inline-block; }
        .pagination span.current { background: #00d9ff; color: #1a1a2e; font-weight: bold; }
        .pagination span.ellipsis { color: #888; background: transparent; }
        .pagination a.disabled { color: #666; pointer-events: none; }
        .env { background: #16213e; padding: 15px; margin: 10px 0; border-radius: 8px; border-left: 4px solid #00d9ff; }
        .env.required { border-left-color: #e74c3c; }
        .category { display: inline-block; padding: 2px 8px; border-radius: 4px; font-size: 12px; font-weight: bold; background: #0f3460; }
        .name { font-family: monospace; font-size: 15px; margin-left: 8px; }
        .tag { background: #0f3460; padding: 2px 6px; border-radius: 3px; font-size: 11px; margin-right: 5px; }
        .meta { color: #888; font-size: 12px; margin-top: 8px; }
        input { padding: 10px; width: 100%; border-radius: 5px; border: none; background: #0f3460; color: #fff; }
    </style>
</head>
<body>
    <div class="header">
        <h1>EnvMem Viewer</h1>
        <div class="pagination">
            {% if page > 1 %}
            <a href="/?page={{ page-1 }}">← Prev</a>
            {% else %}
            <a class="disabled">← Prev</a>
            {% endif %}

            {% for p in page_links %}
            {% if p == "..." %}
            <span class="ellipsis">...</span>
            {% elif p == page %}
            <span class="current">{{ p }}</span>
            {% else %}
            <a href="/?page={{ p }}">{{ p }}</a>
            {% endif %}
            {% endfor %}

            {% if page < total_pages %}
            <a href="/?page={{ page+1 }}">Next →</a>
            {% else %}
            <a class="disabled">Next →</a>
            {% endif %}
        </div>
    </div>
    <p>{{ total_envs }} environment variables total</p>
    <input type="text" id="filter" placeholder="Filter this page..." onkeyup="filterEnvs()">
    <div id="envs">
        {% for e in envs %}
        <div class="env{% if e.required %} required{% endif %}" data-content="{{ (e.name ~ ' ' ~ e.description ~ ' ' ~ e.service)|lower }}">
            <span class="category">{{ e.category }}</span><span class="name">{{ e.name }}</span>
            <p>{{ e.description }}</p>
            {% for k in e.keywords %}<span class="tag">{{ k }}</span>{% endfor %}
            <div class="meta">{{ e.service }}{% if e.example %} | {{ e.example }}{% endif %} | {{ (e.updated_at or '')[:19] }}</div>
        </div>
        {% endfor %}
    </div>
    <script>
        function filterEnvs() {
            const q = document.getElementById('filter').value.toLowerCase();
            document.querySelectorAll('.env').forEach(el => {
                el.style.display = el.dataset.content.includes(q) ? 'block' : 'none';
            });
        }
    </script>
</body>
</html>
"""


@app.route("/")
def index():
    all_envs = _store().list_envs(limit=10000)
    total = len(all_envs)
    page = max(1, request.args.get("page", 1, type=int))
    start = (page - 1) * ITEMS_PER_PAGE
    envs = all_envs[start : start + ITEMS_PER_PAGE]
    total_pages = max(1, (total + ITEMS_PER_PAGE - 1) // ITEMS_PER_PAGE)

    return render_template_string(
        HTML,
        envs=envs,
        page=page,
        total_pages=total_pages,
        total_envs=total,
        page_links=get_page_links(page, total_pages),
    )


@app.route("/health")
def health():
    store = _store()
    return jsonify(
        {
            "status": "healthy",
            "service": "envmem",
            "tenant": store.tenant_id,
            "stats": store.get_stats(),
        }
    )


@app.route("/stats")
def stats():
    return jsonify(_store().get_stats())


@app.route("/search")
def search():
    query = request.args.get("q", "")
    if not query.strip():
        return jsonify({"error": 'Query parameter "q" required'}), 400
    try:
        results = asyncio.run(
            _store().search(
                query,
                category=request.args.get("category") or None,
                service=request.args.get("service") or None,
                required_only=request.args.get("required") == "true",
                limit=request.args.get("limit", 10, type=int),
                min_score=request.args.get("minScore", type=float),
            )
        )
    except ValueError as e:
        return jsonify({"error": str(e)}), 400

    return jsonify(
        {
            "query": query,
            "results": [
                {
                    **r.record.model_dump(include={"name", "description", "category", "service", "required", "example", "related_to"}),
                    "relevance_score": round(r.score, 3),
                    "match_type": r.match_type,
                }
                for r in results
            ],
        }
    )


if __name__ == "__main__":
    server.get_records().migrate()
    print("Open http://localhost:5000 in your browser")
    app.run(port=5000)
