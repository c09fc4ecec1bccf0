from __future__ import annotations

import argparse
import dataclasses
import json
import logging
from datetime import timedelta

import yaml

from .config import ConfigError, import_runtime_config, load_runtime_config
from .db import connect_db, get_db_path
from .images import list_image_candidates
from .ingest import fetch_seeds
from .scheduler import GenerationScheduler
from .storage import count_articles, list_generation_logs, purge_topic_fingerprints, upsert_image
from .tagger import normalize_tags
from .utils import configure_logging, log_event, to_utc_iso, utc_now


def _open(args: argparse.Namespace, logger: logging.Logger):
    db_path = args.db or get_db_path()
    conn = connect_db(db_path)
    try:
        config = load_runtime_config(conn, path=args.config)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        conn.close()
        return None, None
    return conn, config


def _cmd_run_once(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open(args, logger)
    if conn is None:
        return 1
    scheduler = GenerationScheduler(conn, config, logger)
    outcome = scheduler.run_once(reason="manual")
    log_event(
        logger,
        logging.INFO,
        "run_once_finished",
        status=outcome.status,
        reason=outcome.reason,
        saved=outcome.audit.count_saved,
    )
    return 1 if outcome.status == "error" else 0


def _cmd_loop(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open(args, logger)
    if conn is None:
        return 1
    scheduler = GenerationScheduler(conn, config, logger)
    scheduler.run_loop(max_runs=args.max_runs)
    return 0


def _cmd_status(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open(args, logger)
    if conn is None:
        return 1
    scheduler = GenerationScheduler(conn, config, logger)
    allowance = scheduler.compute_allowed_count()
    snapshot = scheduler.status_snapshot()
    snapshot.update(
        {
            "allowed_now": allowance.allowed,
            "saved_last_hour": allowance.used_hour,
            "saved_today": allowance.used_day,
            "ai_articles": count_articles(conn, source="ai-batch"),
            "recent_runs": [
                {
                    "run_at": entry.run_at,
                    "status": entry.status,
                    "reason": entry.reason,
                    "saved": entry.count_saved,
                    "error": entry.error_message,
                }
                for entry in list_generation_logs(conn, limit=args.limit)
            ],
        }
    )
    print(json.dumps(snapshot, indent=2))
    return 0


def _cmd_seeds(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open(args, logger)
    if conn is None:
        return 1
    seeds = fetch_seeds(config, logger, limit=args.limit)
    for seed in seeds:
        log_event(
            logger,
            logging.INFO,
            "seed",
            category=seed.category,
            published_at=to_utc_iso(seed.published_at),
            title=seed.title,
            link=seed.link,
        )
    log_event(logger, logging.INFO, "seeds_listed", count=len(seeds))
    return 0


def _cmd_images_import(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, _ = _open(args, logger)
    if conn is None:
        return 1
    try:
        with open(args.path, "r", encoding="utf-8") as handle:
            entries = yaml.safe_load(handle) or []
    except (OSError, yaml.YAMLError) as exc:
        log_event(logger, logging.ERROR, "images_import_error", path=args.path, error=str(exc))
        return 1
    if not isinstance(entries, list):
        log_event(logger, logging.ERROR, "images_import_error", error="expected a list of images")
        return 1

    imported = 0
    for entry in entries:
        if not isinstance(entry, dict) or not entry.get("public_id") or not entry.get("url"):
            log_event(logger, logging.WARNING, "image_skipped", entry=entry)
            continue
        try:
            priority = int(entry.get("priority") or 0)
        except (TypeError, ValueError):
            log_event(
                logger,
                logging.WARNING,
                "image_skipped",
                public_id=entry["public_id"],
                reason="invalid_priority",
            )
            continue
        upsert_image(
            conn,
            public_id=str(entry["public_id"]),
            url=str(entry["url"]),
            tags=normalize_tags(entry.get("tags") or []),
            category=entry.get("category"),
            source=str(entry.get("source") or "manual"),
            priority=priority,
        )
        imported += 1
    log_event(logger, logging.INFO, "images_imported", count=imported, path=args.path)
    return 0


def _cmd_images_candidates(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open(args, logger)
    if conn is None:
        return 1
    meta = {
        "title": args.title,
        "summary": args.summary,
        "category": args.category,
        "tags": args.tag,
    }
    candidates = list_image_candidates(conn, meta, config.images, limit=args.limit)
    for candidate in candidates:
        log_event(
            logger,
            logging.INFO,
            "image_candidate",
            public_id=candidate.entry.public_id,
            score=candidate.score,
            strong_matches=candidate.strong_matches,
            matched_tags=",".join(candidate.matched_tags),
            matched_keywords=",".join(candidate.matched_keywords),
        )
    log_event(logger, logging.INFO, "image_candidates_listed", count=len(candidates))
    return 0


def _cmd_fingerprints_purge(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open(args, logger)
    if conn is None:
        return 1
    cutoff = utc_now() - timedelta(days=config.novelty.topic_retention_days)
    removed = purge_topic_fingerprints(conn, to_utc_iso(cutoff))
    log_event(logger, logging.INFO, "topic_fingerprints_purged", removed=removed)
    return 0


def _cmd_config_show(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open(args, logger)
    if conn is None:
        return 1
    print(json.dumps(dataclasses.asdict(config), indent=2, sort_keys=True))
    return 0


def _cmd_config_import(args: argparse.Namespace, logger: logging.Logger) -> int:
    db_path = args.db or get_db_path()
    conn = connect_db(db_path)
    try:
        import_runtime_config(conn, args.path)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_import_error", path=args.path, error=str(exc))
        return 1
    finally:
        conn.close()
    log_event(logger, logging.INFO, "config_imported", path=args.path, db=db_path)
    return 0


def _cmd_db_migrate(args: argparse.Namespace, logger: logging.Logger) -> int:
    db_path = args.db or get_db_path()
    conn = connect_db(db_path)
    conn.close()
    log_event(logger, logging.INFO, "db_migrated", path=db_path)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="autonews", description="Automated newsroom CLI")
    parser.add_argument(
        "--config",
        dest="config",
        default=None,
        help="YAML file used to seed the stored runtime config on first start",
    )
    parser.add_argument(
        "--db",
        dest="db",
        default=None,
        help="Path to the sqlite database (defaults to AN_STATE_DB or AN_DATA_DIR)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    run_once = subparsers.add_parser("run-once", help="Run one scheduled generation tick")
    run_once.set_defaults(func=_cmd_run_once)

    loop = subparsers.add_parser("loop", help="Run generation ticks on the configured interval")
    loop.add_argument("--max-runs", type=int, default=None, help="Stop after this many ticks")
    loop.set_defaults(func=_cmd_loop)

    status = subparsers.add_parser("status", help="Show scheduler state and recent runs")
    status.add_argument("--limit", type=int, default=10, help="Number of runs to show")
    status.set_defaults(func=_cmd_status)

    seeds = subparsers.add_parser("seeds", help="Fetch and list fresh seeds")
    seeds.add_argument("--limit", type=int, default=10, help="Maximum seeds to list")
    seeds.set_defaults(func=_cmd_seeds)

    images_parser = subparsers.add_parser("images", help="Image library commands")
    images_subparsers = images_parser.add_subparsers(dest="images_command", required=True)

    images_import = images_subparsers.add_parser("import", help="Import images from YAML")
    images_import.add_argument("path", help="YAML file with a list of images")
    images_import.set_defaults(func=_cmd_images_import)

    images_candidates = images_subparsers.add_parser(
        "candidates", help="Preview scored image candidates for an article"
    )
    images_candidates.add_argument("--title", required=True, help="Article title")
    images_candidates.add_argument("--summary", default="", help="Article summary")
    images_candidates.add_argument("--category", default=None, help="Article category")
    images_candidates.add_argument(
        "--tag", action="append", default=[], help="Article tag (repeatable)"
    )
    images_candidates.add_argument("--limit", type=int, default=24, help="Candidates to show")
    images_candidates.set_defaults(func=_cmd_images_candidates)

    fingerprints_parser = subparsers.add_parser("fingerprints", help="Topic fingerprint commands")
    fingerprints_subparsers = fingerprints_parser.add_subparsers(
        dest="fingerprints_command", required=True
    )
    fingerprints_purge = fingerprints_subparsers.add_parser(
        "purge", help="Delete fingerprints past the retention period"
    )
    fingerprints_purge.set_defaults(func=_cmd_fingerprints_purge)

    config_parser = subparsers.add_parser("config", help="Config commands")
    config_subparsers = config_parser.add_subparsers(dest="config_command", required=True)
    config_show = config_subparsers.add_parser("show", help="Print the effective config")
    config_show.set_defaults(func=_cmd_config_show)
    config_import = config_subparsers.add_parser(
        "import", help="Merge a YAML file into the stored runtime config"
    )
    config_import.add_argument("path", help="YAML file with config overrides")
    config_import.set_defaults(func=_cmd_config_import)

    db_parser = subparsers.add_parser("db", help="Database maintenance")
    db_subparsers = db_parser.add_subparsers(dest="db_command", required=True)
    db_migrate = db_subparsers.add_parser("migrate", help="Apply database migrations")
    db_migrate.set_defaults(func=_cmd_db_migrate)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = configure_logging("autonews.cli")
    return args.func(args, logger)


if __name__ == "__main__":
    raise SystemExit(main())
