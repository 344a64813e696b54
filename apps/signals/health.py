# apps/signals/health.py
from __future__ import annotations

import logging
from typing import Any, Dict

from sqlalchemy.engine import Engine

from config import settings
from db import healthcheck as db_healthcheck
from errors import GraphStoreError
from graph import Neo4jGraphStore

log = logging.getLogger("health")


def check_database(engine: Engine) -> Dict[str, Any]:
    """Check if database connection is working."""
    try:
        db_healthcheck(engine)
        return {"ok": True, "dialect": engine.dialect.name}
    except Exception as e:
        log.warning("Database health check failed: %s", e)
        return {"ok": False, "error": str(e)}


def check_neo4j(graph=None, skip_if_disabled: bool = False) -> Dict[str, Any]:
    """Check if Neo4j is working (only needed by graph population)."""
    uri = (settings.neo4j_uri or "").strip()
    if not uri:
        return {"ok": True, "skipped": True, "reason": "Neo4j URI not configured"}

    if skip_if_disabled:
        return {"ok": True, "skipped": True, "reason": "optional check skipped"}

    try:
        store = graph or Neo4jGraphStore.from_settings()
        try:
            counts = store.counts()
        finally:
            if graph is None:
                store.close()
        edges = counts.get("edges", 0)
        return {"ok": True, "nodes": sum(counts.values()) - edges, "edges": edges}
    except GraphStoreError as e:
        log.warning("Neo4j health check failed: %s", e)
        return {"ok": True, "error": str(e), "optional": True}


def collect_health_status(engine: Engine, include_optional: bool = True, graph=None) -> Dict[str, Any]:
    """
    Run all checks. Overall "ok" follows the database only; the graph store
    is reported but optional.
    """
    database = check_database(engine)
    neo4j = check_neo4j(graph, skip_if_disabled=not include_optional)
    return {
        "ok": bool(database.get("ok", False)),
        "checks": {"database": database, "neo4j": neo4j},
    }
