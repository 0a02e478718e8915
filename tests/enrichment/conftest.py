"""Shared fixtures for enrichment tests."""

from __future__ import annotations

from pathlib import Path

import pytest

from codelore.enrichment.store import SQLiteGraphStore


@pytest.fixture()
def store(tmp_path: Path) -> SQLiteGraphStore:
    graph = SQLiteGraphStore(tmp_path / "graph.db")
    yield graph
    graph.close()


@pytest.fixture()
def seeded_store(store: SQLiteGraphStore) -> SQLiteGraphStore:
    """Two source files with a small call graph.

    ``checkout`` (services/checkout.py) calls ``charge`` and ``validate``;
    ``handler`` (api/routes.py) calls ``checkout``.
    """
    services = store.upsert_file("src/services/checkout.py", "hash-services", fan_in=12, fan_out=3)
    routes = store.upsert_file("src/api/routes.py", "hash-routes", fan_in=0, fan_out=1)

    store.upsert_chunk(
        "chunk-checkout",
        services,
        name="checkout",
        type="function",
        code="def checkout(cart):\n    validate(cart)\n    return charge(cart)\n",
        signature="def checkout(cart)",
        docstring='"""Run a checkout."""',
        start_line=1,
        end_line=3,
        token_count=600,
        centrality=0.02,
    )
    store.upsert_chunk(
        "chunk-charge",
        services,
        name="charge",
        type="function",
        code="def charge(cart):\n    return gateway.charge(cart.total)\n",
        start_line=5,
        end_line=6,
        token_count=120,
        centrality=0.006,
    )
    store.upsert_chunk(
        "chunk-validate",
        services,
        name="validate",
        type="function",
        code="def validate(cart):\n    assert cart.items\n",
        start_line=8,
        end_line=9,
        token_count=80,
        centrality=0.002,
    )
    store.upsert_chunk(
        "chunk-handler",
        routes,
        name="handler",
        type="function",
        code="def handler(request):\n    return checkout(request.cart)\n",
        start_line=1,
        end_line=2,
        token_count=90,
        centrality=0.0005,
        exported=True,
    )
    store.add_call_edge("chunk-checkout", "chunk-charge", 3)
    store.add_call_edge("chunk-checkout", "chunk-validate", 2)
    store.add_call_edge("chunk-handler", "chunk-checkout", 2)
    return store

