# apps/signals/graph.py
from __future__ import annotations

import enum
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from neo4j import Driver, GraphDatabase
from neo4j.exceptions import DriverError, Neo4jError
from sqlalchemy.orm import Session

from config import settings
from errors import GraphStoreError, TransientStoreError
from models import Author, CatalogItem, ItemAuthor, ItemSubject, Subject

# silence verbose driver logs/notifications
logging.getLogger("neo4j").setLevel(logging.WARNING)
logging.getLogger("neo4j.notifications").setLevel(logging.ERROR)

log = logging.getLogger("graph")

ITEM = "item"
AUTHOR = "author"
SUBJECT = "subject"

WROTE = "wrote"  # author -> item
HAS_SUBJECT = "has_subject"  # item -> subject

NodeRef = Tuple[str, str]  # (kind, key)


@dataclass(frozen=True)
class GraphNode:
    kind: str
    key: str
    props: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def ref(self) -> NodeRef:
        return (self.kind, self.key)


@dataclass(frozen=True)
class GraphEdge:
    kind: str
    source: NodeRef
    target: NodeRef


class EdgeOutcome(enum.Enum):
    INSERTED = "inserted"
    SKIPPED_MISSING_ENDPOINT = "skipped_missing_endpoint"


@dataclass
class EdgeBatchResult:
    inserted: int = 0
    skipped: int = 0

    def record(self, outcome: EdgeOutcome) -> None:
        if outcome is EdgeOutcome.INSERTED:
            self.inserted += 1
        else:
            self.skipped += 1


@dataclass
class GraphPopulationStats:
    items: int = 0
    authors: int = 0
    subjects: int = 0
    edges: int = 0
    skipped_edges: int = 0


def item_ref(item_id: int) -> NodeRef:
    return (ITEM, str(item_id))


def author_ref(author_id: int) -> NodeRef:
    return (AUTHOR, str(author_id))


def subject_ref(subject: str) -> NodeRef:
    return (SUBJECT, subject)


class InMemoryGraphStore:
    """Adjacency-list graph. Edges are directed in storage, traversed both ways."""

    def __init__(self) -> None:
        self._nodes: Dict[NodeRef, Dict[str, Any]] = {}
        self._edges: Set[GraphEdge] = set()
        self._adjacent: Dict[NodeRef, Dict[NodeRef, Set[str]]] = {}

    def clear(self) -> None:
        self._nodes.clear()
        self._edges.clear()
        self._adjacent.clear()

    def add_nodes(self, nodes: Iterable[GraphNode]) -> int:
        added = 0
        for node in nodes:
            self._nodes.setdefault(node.ref, {}).update(node.props)
            added += 1
        return added

    def add_edge(self, edge: GraphEdge) -> EdgeOutcome:
        if edge.source not in self._nodes or edge.target not in self._nodes:
            return EdgeOutcome.SKIPPED_MISSING_ENDPOINT
        self._edges.add(edge)
        self._adjacent.setdefault(edge.source, {}).setdefault(edge.target, set()).add(edge.kind)
        self._adjacent.setdefault(edge.target, {}).setdefault(edge.source, set()).add(edge.kind)
        return EdgeOutcome.INSERTED

    def add_edges(self, edges: Iterable[GraphEdge]) -> EdgeBatchResult:
        result = EdgeBatchResult()
        for edge in edges:
            result.record(self.add_edge(edge))
        return result

    def has_node(self, ref: NodeRef) -> bool:
        return ref in self._nodes

    def neighbors(
        self,
        start: NodeRef,
        hops: int = 1,
        edge_kinds: Optional[Iterable[str]] = None,
    ) -> Set[NodeRef]:
        if start not in self._nodes or hops < 1:
            return set()
        allowed = set(edge_kinds) if edge_kinds else None

        seen = {start}
        frontier = deque([(start, 0)])
        while frontier:
            node, depth = frontier.popleft()
            if depth >= hops:
                continue
            for other, kinds in self._adjacent.get(node, {}).items():
                if allowed is not None and not (kinds & allowed):
                    continue
                if other in seen:
                    continue
                seen.add(other)
                frontier.append((other, depth + 1))
        seen.discard(start)
        return seen

    def counts(self) -> Dict[str, int]:
        out = {ITEM: 0, AUTHOR: 0, SUBJECT: 0, "edges": len(self._edges)}
        for kind, _key in self._nodes:
            out[kind] = out.get(kind, 0) + 1
        return out


_LABELS = {ITEM: "Item", AUTHOR: "Author", SUBJECT: "Subject"}
_KINDS_BY_LABEL = {label: kind for kind, label in _LABELS.items()}
_REL_TYPES = {WROTE: "WROTE", HAS_SUBJECT: "HAS_SUBJECT"}


class Neo4jGraphStore:
    def __init__(self, driver: Driver, database: Optional[str] = None) -> None:
        self._driver = driver
        self._database = database or settings.neo4j_database or "neo4j"
        self._constraints_ready = False

    @classmethod
    def from_settings(cls) -> "Neo4jGraphStore":
        uri = (settings.neo4j_uri or "").strip()
        if not uri:
            raise GraphStoreError("NEO4J_URI is empty")
        driver = None
        try:
            driver = GraphDatabase.driver(
                uri,
                auth=(settings.neo4j_username or "", settings.neo4j_password or ""),
            )
            driver.verify_connectivity()
        except (Neo4jError, DriverError) as exc:
            if driver is not None:
                driver.close()
            raise GraphStoreError(f"neo4j connection failed: {exc}") from exc
        log.info("Neo4j connected: %s", uri)
        return cls(driver)

    def close(self) -> None:
        self._driver.close()

    def _run(self, cypher: str, **params) -> List[Dict[str, Any]]:
        try:
            with self._driver.session(database=self._database) as sess:
                return [record.data() for record in sess.run(cypher, **params)]
        except (Neo4jError, DriverError) as exc:
            raise GraphStoreError(str(exc)) from exc

    def ensure_constraints(self) -> None:
        if self._constraints_ready:
            return
        for kind, label in _LABELS.items():
            self._run(
                f"CREATE CONSTRAINT {kind}_id_unique IF NOT EXISTS "
                f"FOR (n:{label}) REQUIRE n.id IS UNIQUE"
            )
        self._constraints_ready = True
        log.info("Neo4j constraints ensured")

    def clear(self) -> None:
        self.ensure_constraints()
        self._run("MATCH (n) DETACH DELETE n")

    def add_nodes(self, nodes: Iterable[GraphNode]) -> int:
        self.ensure_constraints()
        by_kind: Dict[str, List[Dict[str, Any]]] = {}
        for node in nodes:
            if node.kind not in _LABELS:
                raise GraphStoreError(f"unknown node kind {node.kind!r}")
            by_kind.setdefault(node.kind, []).append({"id": node.key, "props": dict(node.props)})

        added = 0
        for kind, rows in by_kind.items():
            self._run(
                f"UNWIND $rows AS row MERGE (n:{_LABELS[kind]} {{id: row.id}}) SET n += row.props",
                rows=rows,
            )
            added += len(rows)
        return added

    def add_edges(self, edges: Iterable[GraphEdge]) -> EdgeBatchResult:
        self.ensure_constraints()
        grouped: Dict[Tuple[str, str, str], List[Dict[str, str]]] = {}
        for edge in edges:
            if edge.kind not in _REL_TYPES:
                raise GraphStoreError(f"unknown edge kind {edge.kind!r}")
            key = (edge.kind, edge.source[0], edge.target[0])
            grouped.setdefault(key, []).append({"src": edge.source[1], "dst": edge.target[1]})

        result = EdgeBatchResult()
        for (kind, src_kind, dst_kind), rows in grouped.items():
            # MATCH drops rows whose endpoints are absent; the difference is the skip count
            records = self._run(
                f"""
                UNWIND $rows AS row
                MATCH (a:{_LABELS[src_kind]} {{id: row.src}})
                MATCH (b:{_LABELS[dst_kind]} {{id: row.dst}})
                MERGE (a)-[:{_REL_TYPES[kind]}]->(b)
                RETURN count(*) AS inserted
                """,
                rows=rows,
            )
            inserted = int(records[0]["inserted"]) if records else 0
            result.inserted += inserted
            result.skipped += len(rows) - inserted
        return result

    def neighbors(
        self,
        start: NodeRef,
        hops: int = 1,
        edge_kinds: Optional[Iterable[str]] = None,
    ) -> Set[NodeRef]:
        hops = int(hops)
        if hops < 1 or start[0] not in _LABELS:
            return set()
        rel = ""
        if edge_kinds:
            rel = ":" + "|".join(_REL_TYPES[k] for k in edge_kinds)
        records = self._run(
            f"""
            MATCH (s:{_LABELS[start[0]]} {{id: $id}})-[{rel}*1..{hops}]-(n)
            WHERE n <> s
            RETURN DISTINCT labels(n)[0] AS label, n.id AS id
            """,
            id=start[1],
        )
        return {
            (_KINDS_BY_LABEL[r["label"]], str(r["id"]))
            for r in records
            if r["label"] in _KINDS_BY_LABEL
        }

    def counts(self) -> Dict[str, int]:
        out = {ITEM: 0, AUTHOR: 0, SUBJECT: 0, "edges": 0}
        for r in self._run("MATCH (n) RETURN labels(n)[0] AS label, count(*) AS n"):
            kind = _KINDS_BY_LABEL.get(r["label"])
            if kind:
                out[kind] = int(r["n"])
        records = self._run("MATCH ()-[r]->() RETURN count(r) AS n")
        out["edges"] = int(records[0]["n"]) if records else 0
        return out


def _chunks(rows: Sequence, size: int) -> Iterable[Tuple[int, Sequence]]:
    for batch_no, start in enumerate(range(0, len(rows), size), start=1):
        yield batch_no, rows[start:start + size]


def populate_graph(
    db: Session,
    graph,
    batch_size: Optional[int] = None,
) -> GraphPopulationStats:
    """
    Full rebuild: clear the graph, then load item/author/subject nodes and
    wrote/has_subject edges in fixed-size batches. Edges whose endpoints are
    missing are skipped and counted.
    """
    batch_size = max(1, batch_size or settings.graph_batch_size)
    started = time.monotonic()
    stats = GraphPopulationStats()

    try:
        graph.clear()
    except GraphStoreError as exc:
        raise TransientStoreError("graph_clear", 0, exc) from exc

    items = [
        GraphNode(ITEM, str(item_id), {"title": title, "series": series or ""})
        for item_id, title, series in db.query(
            CatalogItem.id, CatalogItem.title, CatalogItem.series
        ).filter(CatalogItem.title.isnot(None)).order_by(CatalogItem.id)
    ]
    authors = [
        GraphNode(AUTHOR, str(author_id), {"name": name})
        for author_id, name in db.query(Author.id, Author.name)
        .filter(Author.name.isnot(None))
        .order_by(Author.id)
    ]
    subjects = [
        GraphNode(SUBJECT, subject, {"name": subject})
        for (subject,) in db.query(Subject.subject).order_by(Subject.subject)
    ]

    for label, nodes, attr in (
        ("items", items, "items"),
        ("authors", authors, "authors"),
        ("subjects", subjects, "subjects"),
    ):
        for batch_no, batch in _chunks(nodes, batch_size):
            try:
                added = graph.add_nodes(batch)
            except GraphStoreError as exc:
                raise TransientStoreError(f"graph_{label}", batch_no, exc) from exc
            setattr(stats, attr, getattr(stats, attr) + added)
            log.info("graph_nodes_batch_ok kind=%s batch=%d rows=%d", label, batch_no, added)

    wrote = [
        GraphEdge(WROTE, author_ref(author_id), item_ref(item_id))
        for item_id, author_id in db.query(ItemAuthor.item_id, ItemAuthor.author_id).distinct()
    ]
    has_subject = [
        GraphEdge(HAS_SUBJECT, item_ref(item_id), subject_ref(subject))
        for item_id, subject in db.query(ItemSubject.item_id, ItemSubject.subject)
    ]

    for label, edges in (("wrote", wrote), ("has_subject", has_subject)):
        for batch_no, batch in _chunks(edges, batch_size):
            try:
                result = graph.add_edges(batch)
            except GraphStoreError as exc:
                raise TransientStoreError(f"graph_{label}", batch_no, exc) from exc
            stats.edges += result.inserted
            stats.skipped_edges += result.skipped
            if result.skipped:
                log.warning(
                    "graph_edges_skipped kind=%s batch=%d skipped=%d",
                    label, batch_no, result.skipped,
                )
            log.info("graph_edges_batch_ok kind=%s batch=%d inserted=%d", label, batch_no, result.inserted)

    log.info(
        "graph_populate_ok items=%d authors=%d subjects=%d edges=%d skipped_edges=%d elapsed=%.2fs",
        stats.items, stats.authors, stats.subjects, stats.edges, stats.skipped_edges,
        time.monotonic() - started,
    )
    return stats


def related_items(graph, item_id: int, hops: int = 2) -> List[int]:
    """Other items reachable within `hops` through shared authors or subjects."""
    found = graph.neighbors(item_ref(item_id), hops=hops)
    return sorted(int(key) for kind, key in found if kind == ITEM)
