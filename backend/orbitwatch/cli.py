"""Command-line entry point: ``orbitwatch <command>``.

Exit codes: 0 success, 1 configuration or argument error, 2 TLE ingest
failure, 3 fatal internal error, 130 interrupted.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime

from pydantic import ValidationError

EXIT_OK = 0
EXIT_CONFIG = 1
EXIT_INGEST = 2
EXIT_FATAL = 3
EXIT_INTERRUPTED = 130

logger = logging.getLogger("orbitwatch.cli")


def _instant(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an ISO-8601 instant: {value!r}")
    from .services.timeframes import ensure_utc

    return ensure_utc(parsed)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="orbitwatch", description="Conjunction screening and re-entry risk engine")
    parser.add_argument("--database-url", help="Override the configured database URL")
    commands = parser.add_subparsers(dest="command", required=True)

    serve = commands.add_parser("serve", help="Run the HTTP/WebSocket API")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    serve.set_defaults(handler=cmd_serve)

    ingest = commands.add_parser("ingest", help="Ingest element sets into the catalog")
    source = ingest.add_mutually_exclusive_group()
    source.add_argument("--url", help="Fetch a multi-TLE file over HTTP (default: configured source)")
    source.add_argument("--file", help="Read a multi-TLE file from disk")
    ingest.set_defaults(handler=cmd_ingest)

    screen = commands.add_parser("screen", help="Run one conjunction screening scan")
    screen.add_argument("--at", type=_instant, help="Scan start instant (default: now)")
    screen.add_argument("--limit", type=int, default=20, help="Events to print")
    screen.set_defaults(handler=cmd_screen)

    reentry = commands.add_parser("reentry", help="Run one re-entry prediction sweep")
    reentry.add_argument("--at", type=_instant, help="Prediction instant (default: now)")
    reentry.set_defaults(handler=cmd_reentry)

    stats = commands.add_parser("catalog-stats", help="Print catalog counts by orbital regime")
    stats.set_defaults(handler=cmd_catalog_stats)
    return parser


def _emit(data: dict) -> None:
    print(json.dumps(data, indent=2, default=str))


def _session_factory(args):
    from sqlalchemy.orm import sessionmaker

    from .db import SessionLocal, create_db_engine, init_db

    if not args.database_url:
        init_db()
        return SessionLocal
    db_engine = create_db_engine(args.database_url)
    init_db(db_engine)
    return sessionmaker(bind=db_engine, autoflush=False, autocommit=False, future=True)


def _load_engine(args, settings):
    from .engine import OrbitWatchEngine

    sessions = _session_factory(args)
    engine = OrbitWatchEngine(settings)
    with sessions() as db:
        engine.restore(db)
    return engine, sessions


def cmd_serve(args, settings) -> int:
    import uvicorn

    uvicorn.run("orbitwatch.main:app", host=args.host, port=args.port, log_level=settings.log_level.lower())
    return EXIT_OK


def cmd_ingest(args, settings) -> int:
    from .errors import TLESourceError

    engine, sessions = _load_engine(args, settings)
    if args.file:
        try:
            summary = engine.ingest.ingest_file(args.file)
        except OSError as exc:
            raise TLESourceError(f"Cannot read {args.file}: {exc}") from exc
    else:
        summary = asyncio.run(engine.refresh_catalog(args.url))
    with sessions() as db:
        engine.persist(db)
    _emit(
        {
            "inserted": summary.inserted,
            "superseded": summary.superseded,
            "unchanged": summary.unchanged,
            "catalog_size": len(engine.store),
        }
    )
    return EXIT_OK


def cmd_screen(args, settings) -> int:
    engine, sessions = _load_engine(args, settings)
    result = engine.run_screening(args.at)
    with sessions() as db:
        engine.persist(db)
    summary = result.to_dict()
    summary["event_count"] = len(result.events)
    summary["events"] = summary["events"][: args.limit]
    _emit(summary)
    return EXIT_OK


async def _reentry_cycle(engine, at):
    await engine.start()
    try:
        return await engine.reentry_cycle(at)
    finally:
        await engine.stop()


def cmd_reentry(args, settings) -> int:
    engine, sessions = _load_engine(args, settings)
    result, events = asyncio.run(_reentry_cycle(engine, args.at))
    with sessions() as db:
        engine.persist(db)
    _emit(
        {
            "candidates": result.candidates,
            "predictions": [p.to_dict() for p in result.predictions if p.status != "normal"],
            "errors": {str(k): v for k, v in sorted(result.errors.items())},
            "alert_events": [{"type": e.type, "alert_id": e.alert.id} for e in events],
            "statistics": engine.reentry_statistics(),
        }
    )
    return EXIT_OK


def cmd_catalog_stats(args, settings) -> int:
    engine, _ = _load_engine(args, settings)
    _emit(engine.store.stats())
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as exc:
        return EXIT_OK if exc.code == 0 else EXIT_CONFIG

    try:
        from .config import settings
    except ValidationError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return EXIT_CONFIG

    logging.basicConfig(level=settings.log_level)
    from .errors import MalformedTLE, OrbitWatchError, TLESourceError

    try:
        return args.handler(args, settings)
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return EXIT_INTERRUPTED
    except (TLESourceError, MalformedTLE) as exc:
        logger.error("TLE ingest failed: %s", exc)
        return EXIT_INGEST
    except OrbitWatchError as exc:
        logger.error("Command failed: kind=%s message=%s", exc.kind, exc.message)
        return EXIT_FATAL
    except Exception as exc:
        logger.exception("Fatal error: %s", exc)
        return EXIT_FATAL


if __name__ == "__main__":
    sys.exit(main())
