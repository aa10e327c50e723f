#!/usr/bin/env python3
"""Poll Amtrak train positions and publish GTFS-realtime feeds."""
from __future__ import annotations

import argparse
import logging
import os
import signal
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable

import psycopg2
from dotenv import load_dotenv

from amtk_poller.dedup import DedupGate
from amtk_poller.notify import FailureNotifier
from amtk_poller.refresh import CycleSummary, RefreshOrchestrator
from amtk_poller.schedule import PostgresScheduleLookup, ScheduleMatcher
from amtk_poller.sink import GtfsRealtimeFeed, write_feed_snapshots
from amtk_poller.source import DEFAULT_TRAINS_URL, TrainPositionsSource

LOGGER = logging.getLogger(__name__)


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise SystemExit(f"Invalid {name} value: {value!r}. Provide a numeric value.") from exc


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise SystemExit(f"Invalid {name} value: {value!r}. Provide an integer.") from exc


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Poll Amtrak train positions and publish GTFS-realtime feeds."
    )
    parser.add_argument(
        "--feed-url",
        default=os.getenv("AMTK_TRAINS_URL", DEFAULT_TRAINS_URL),
        help="Train positions features URL (defaults to AMTK_TRAINS_URL env var).",
    )
    parser.add_argument(
        "--api-key",
        default=os.getenv("MAPS_ENGINE_KEY"),
        help="API key appended to the features request (defaults to MAPS_ENGINE_KEY).",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=_env_float("AMTK_REFRESH_INTERVAL", 60.0),
        help="Seconds between the end of one poll and the start of the next (default: 60).",
    )
    parser.add_argument(
        "--http-timeout",
        type=float,
        default=_env_float("AMTK_HTTP_TIMEOUT", 15.0),
        help="Seconds to wait for the features response (default: 15).",
    )
    parser.add_argument(
        "--database-url",
        default=os.getenv("DATABASE_URL"),
        help="PostgreSQL connection string holding the static schedule. Defaults to DATABASE_URL.",
    )
    parser.add_argument(
        "--output-dir",
        default=os.getenv("AMTK_OUTPUT_DIR", "data/feeds"),
        help="Directory where feed snapshots are written (default: data/feeds).",
    )
    parser.add_argument(
        "--vehicle-retention-hours",
        type=float,
        default=_env_float("VEHICLE_RETENTION_HOURS", 48.0),
        help="Forget vehicles not updated for this many hours (default: 48).",
    )
    parser.add_argument(
        "--failure-threshold",
        type=int,
        default=_env_int("FAILURE_ALERT_THRESHOLD", 5),
        help="Consecutive fetch failures before a Discord alert; 0 disables (default: 5).",
    )
    parser.add_argument(
        "--no-json",
        action="store_true",
        help="Skip writing JSON projections next to the protobuf snapshots.",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single polling cycle and exit.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Run the pipeline without writing feed snapshots.",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging.",
    )
    args = parser.parse_args(argv)

    if args.interval <= 0:
        parser.error("--interval must be greater than zero.")
    if args.vehicle_retention_hours <= 0:
        parser.error("--vehicle-retention-hours must be greater than zero.")
    return args


def ensure_database_url(url: str | None) -> str:
    if not url:
        raise SystemExit(
            "Database URL not provided. Use --database-url or set DATABASE_URL env var."
        )
    return url


def run_polling_loop(
    orchestrator: RefreshOrchestrator,
    interval: float,
    once: bool = False,
    after_cycle: Callable[[CycleSummary | None], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """Run cycles back to back with a fixed delay between them.

    The delay starts when a cycle finishes, so a slow fetch pushes the next
    poll back rather than overlapping it.
    """

    LOGGER.info("Entering polling loop (interval=%ss)", interval)
    while True:
        summary = orchestrator.run_cycle()
        if after_cycle is not None:
            after_cycle(summary)
        if once:
            break
        LOGGER.debug("Sleeping %.2fs before next poll.", interval)
        sleep(interval)


def main(argv: list[str] | None = None) -> None:
    load_dotenv()
    args = parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    database_url = ensure_database_url(args.database_url)
    if not args.api_key:
        LOGGER.warning("No API key configured; requesting %s without one.", args.feed_url)

    retention = timedelta(hours=args.vehicle_retention_hours)
    output_dir = Path(args.output_dir)

    conn = psycopg2.connect(database_url)
    feed = GtfsRealtimeFeed()
    orchestrator = RefreshOrchestrator(
        fetch=TrainPositionsSource(args.feed_url, args.api_key, args.http_timeout),
        matcher=ScheduleMatcher(PostgresScheduleLookup(conn)),
        gate=DedupGate(retention=retention),
        sink=feed,
        notifier=FailureNotifier(
            os.getenv("DISCORD_WEBHOOK_URL"),
            threshold=args.failure_threshold,
            username=os.getenv("DISCORD_USERNAME"),
            avatar_url=os.getenv("DISCORD_AVATAR_URL"),
        ),
        source_name=args.feed_url,
    )

    def publish_snapshots(summary: CycleSummary | None) -> None:
        feed.expire_before(datetime.now(timezone.utc) - retention)
        if args.dry_run:
            return
        write_feed_snapshots(feed, output_dir, store_json=not args.no_json)

    def _handle_shutdown(signum, frame):
        LOGGER.info("Received signal %s; stopping GTFS-realtime service.", signum)
        raise SystemExit(0)

    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    LOGGER.info("Starting GTFS-realtime service")
    if args.dry_run:
        LOGGER.info("Dry run: no snapshots will be written.")
    try:
        run_polling_loop(
            orchestrator,
            args.interval,
            once=args.once,
            after_cycle=publish_snapshots,
        )
    finally:
        conn.close()
        LOGGER.info("GTFS-realtime service stopped")


if __name__ == "__main__":
    main()
