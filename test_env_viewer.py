"""Tests for the Flask viewer and its JSON endpoints."""

import asyncio

import pytest

import server as server_module
from config import Config
from env_viewer import app, get_page_links
from models import EnvVariable


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setattr(
        server_module,
        "CONFIG",
        Config(data_dir=tmp_path, embedding_provider="hash", hash_fallback=False, api_key=None),
    )
    monkeypatch.setattr(server_module, "_records", None)
    monkeypatch.setattr(server_module, "_vector_index", None)
    monkeypatch.setattr(server_module, "_embedder", None)
    monkeypatch.setattr(server_module, "_api_key", None)
    server_module.get_records().migrate()

    app.config["TESTING"] = True
    with app.test_client() as client:
        yield client


def seed(api_key=None):
    server_module._api_key = api_key
    try:
        asyncio.run(
            server_module.get_store().upsert(
                EnvVariable(
                    name="STRIPE_SECRET_KEY",
                    description="Stripe payment processing secret",
                    category="payment",
                    service="Stripe",
                    required=True,
                )
            )
        )
    finally:
        server_module._api_key = None


def test_page_links():
    assert get_page_links(1, 3) == [1, 2, 3]
    assert get_page_links(5, 12) == [1, 2, 3, 4, 5, 6, "...", 10, 11, 12]


def test_index_lists_variables(client):
    seed()
    response = client.get("/")
    assert response.status_code == 200
    assert b"STRIPE_SECRET_KEY" in response.data
    assert b"1 environment variables total" in response.data


def test_health(client):
    seed()
    data = client.get("/health").get_json()
    assert data["status"] == "healthy"
    assert data["tenant"] == "anonymous"
    assert data["stats"]["total"] == 1


def test_search(client):
    seed()
    data = client.get("/search?q=stripe+payment").get_json()
    assert data["query"] == "stripe payment"
    top = data["results"][0]
    assert top["name"] == "STRIPE_SECRET_KEY"
    assert top["match_type"] == "hybrid"
    assert 0 < top["relevance_score"] <= 1


def test_search_requires_query(client):
    assert client.get("/search").status_code == 400
    assert client.get("/search?q=stripe&limit=0").status_code == 400
    assert client.get("/search?q=stripe&category=bogus").status_code == 400


def test_tenant_header(client):
    seed(api_key="key-a")
    assert client.get("/stats").get_json()["total"] == 0
    stats = client.get("/stats", headers={"X-API-Key": "key-a"}).get_json()
    assert stats["total"] == 1
    results = client.get("/search?q=stripe", headers={"X-API-Key": "key-b"}).get_json()
    assert results["results"] == []
