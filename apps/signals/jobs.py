# apps/signals/jobs.py
import argparse
import json
import logging
import sys
import time
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from config import settings
from db import make_engine, make_session_factory, session_scope
from errors import SignalsError

log = logging.getLogger("jobs")


def _quality(args, factory) -> int:
    from quality import compute_work_quality

    with session_scope(factory) as db:
        rows = compute_work_quality(db, batch_size=args.batch_size)
    log.info("job_summary job=quality rows=%d", rows)
    return 0


def _graph_populate(args, factory) -> int:
    from graph import Neo4jGraphStore, populate_graph

    store = Neo4jGraphStore.from_settings()
    try:
        with session_scope(factory) as db:
            stats = populate_graph(db, store, batch_size=args.batch_size)
    finally:
        store.close()
    log.info(
        "job_summary job=graph-populate items=%d authors=%d subjects=%d edges=%d skipped=%d",
        stats.items, stats.authors, stats.subjects, stats.edges, stats.skipped_edges,
    )
    return 0


def _graph_features(args, factory) -> int:
    from graph_features import compute_graph_features

    with session_scope(factory) as db:
        rows = compute_graph_features(db, args.user, candidate_limit=args.candidate_limit)
    log.info("job_summary job=graph-features user=%s rows=%d", args.user, rows)
    return 0


def _cooccurrence(args, factory) -> int:
    from cooccurrence import build_cooccurrence

    with session_scope(factory) as db:
        stats = build_cooccurrence(
            db, min_overlap=args.min_overlap, min_lists=args.min_lists, top_k=args.top_k
        )
    log.info(
        "job_summary job=cooccurrence list_pairs=%d author_pairs=%d rows=%d",
        stats.list_pairs, stats.author_pairs, stats.rows_written,
    )
    return 0


def _communities(args, factory) -> int:
    from communities import build_communities

    with session_scope(factory) as db:
        stats = build_communities(db, seed=args.seed)
    log.info(
        "job_summary job=communities communities=%d assigned=%d",
        stats.communities, stats.assigned_items,
    )
    return 0


def _profile(args, factory) -> int:
    from user_profile import build_user_profile, profile_needs_refresh

    with session_scope(factory) as db:
        if not args.force and not profile_needs_refresh(db, args.user):
            log.info("job_summary job=profile user=%s skipped=up_to_date", args.user)
            return 0
        profile = build_user_profile(db, args.user)
    log.info(
        "job_summary job=profile user=%s dims=%d anchors=%d",
        args.user, len(profile.profile_vec), len(profile.anchors),
    )
    return 0


def _aggregate_reading(args, factory) -> int:
    from reading import aggregate_reading

    with session_scope(factory) as db:
        stats = aggregate_reading(db, args.user)
    log.info(
        "job_summary job=aggregate-reading user=%s aggregates=%d streak=%d auto_dnfs=%d",
        args.user, stats.aggregates, stats.streak, stats.auto_dnfs,
    )
    return 0


def _embed(args, factory) -> int:
    from embedding_utils import embed_missing_items

    with session_scope(factory) as db:
        rows = embed_missing_items(db, limit=args.limit)
    log.info("job_summary job=embed rows=%d", rows)
    return 0


def _dedupe(args, factory) -> int:
    from identity import resolve_duplicates

    report = resolve_duplicates(factory, args.item, concurrency=args.concurrency)
    log.info("job_summary job=dedupe merged=%d failed=%d", len(report.merged), len(report.failed))
    return 1 if report.failed else 0


def _merge(args, factory) -> int:
    from identity import merge_works

    with session_scope(factory) as db:
        info = merge_works(db, args.from_id, args.to_id, args.reason)
    log.info(
        "job_summary job=merge from=%d to=%d editions_moved=%d",
        info.item_id_from, info.item_id_to, info.editions_moved,
    )
    return 0


def _health(args, factory) -> int:
    from health import collect_health_status

    status = collect_health_status(factory.kw["bind"], include_optional=not args.skip_optional)
    print(json.dumps(status, indent=2))
    return 0 if status["ok"] else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bookrec-signals",
        description="Batch jobs that derive recommendation signals from catalog and reader data",
    )
    parser.add_argument("--database-url", default=None, help="defaults to DATABASE_URL")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("quality", help="blend rating stats into work quality scores")
    p.add_argument("--batch-size", type=int, default=None)
    p.set_defaults(func=_quality)

    p = sub.add_parser("graph-populate", help="rebuild the item/author/subject graph")
    p.add_argument("--batch-size", type=int, default=None)
    p.set_defaults(func=_graph_populate)

    p = sub.add_parser("graph-features", help="score candidate items against a reader's favorites")
    p.add_argument("--user", required=True)
    p.add_argument("--candidate-limit", type=int, default=None)
    p.set_defaults(func=_graph_features)

    p = sub.add_parser("cooccurrence", help="rebuild the co-occurrence table")
    p.add_argument("--min-overlap", type=int, default=None)
    p.add_argument("--min-lists", type=int, default=None)
    p.add_argument("--top-k", type=int, default=None)
    p.set_defaults(func=_cooccurrence)

    p = sub.add_parser("communities", help="label items with co-occurrence communities")
    p.add_argument("--seed", type=int, default=None)
    p.set_defaults(func=_communities)

    p = sub.add_parser("profile", help="build a reader's taste profile")
    p.add_argument("--user", required=True)
    p.add_argument("--force", action="store_true", help="rebuild even if the profile is current")
    p.set_defaults(func=_profile)

    p = sub.add_parser("aggregate-reading", help="roll reading sessions up into aggregates and events")
    p.add_argument("--user", required=True)
    p.set_defaults(func=_aggregate_reading)

    p = sub.add_parser("embed", help="embed catalog items that have no vector yet")
    p.add_argument("--limit", type=int, default=None)
    p.set_defaults(func=_embed)

    p = sub.add_parser("dedupe", help="find and merge duplicates of the given items")
    p.add_argument("--item", type=int, action="append", required=True)
    p.add_argument("--concurrency", type=int, default=None)
    p.set_defaults(func=_dedupe)

    p = sub.add_parser("merge", help="merge one catalog item into another")
    p.add_argument("from_id", type=int)
    p.add_argument("to_id", type=int)
    p.add_argument("--reason", default="manual")
    p.set_defaults(func=_merge)

    p = sub.add_parser("health", help="check database and graph connectivity")
    p.add_argument("--skip-optional", action="store_true")
    p.set_defaults(func=_health)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO)
    args = build_parser().parse_args(argv)

    engine = make_engine(args.database_url or settings.database_url)
    factory = make_session_factory(engine)
    started = time.monotonic()
    try:
        code = args.func(args, factory)
    except (SignalsError, SQLAlchemyError) as exc:
        log.error("job_failed job=%s error=%s", args.command, exc)
        code = 1
    finally:
        engine.dispose()
    log.info("job_exit job=%s code=%d elapsed=%.2fs", args.command, code, time.monotonic() - started)
    return code


if __name__ == "__main__":
    sys.exit(main())
