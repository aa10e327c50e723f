#!/usr/bin/env python3
"""Load the static Amtrak GTFS schedule into PostgreSQL dimension tables."""
from __future__ import annotations

import argparse
import csv
import io
import logging
import os
import zipfile
from datetime import date, datetime
from pathlib import Path
from typing import Iterable

import psycopg2
import requests
from dotenv import load_dotenv
from psycopg2.extras import execute_batch

from amtk_poller.schedule import WEEKDAY_COLUMNS

LOGGER = logging.getLogger(__name__)
BATCH_SIZE = 2000

SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS dim_trips (
        trip_id TEXT PRIMARY KEY,
        route_id TEXT,
        service_id TEXT NOT NULL,
        trip_short_name TEXT,
        trip_headsign TEXT,
        direction_id SMALLINT
    );
    """,
    "CREATE INDEX IF NOT EXISTS dim_trips_service_idx ON dim_trips (service_id);",
    """
    CREATE TABLE IF NOT EXISTS dim_calendar (
        service_id TEXT PRIMARY KEY,
        monday SMALLINT NOT NULL,
        tuesday SMALLINT NOT NULL,
        wednesday SMALLINT NOT NULL,
        thursday SMALLINT NOT NULL,
        friday SMALLINT NOT NULL,
        saturday SMALLINT NOT NULL,
        sunday SMALLINT NOT NULL,
        start_date DATE NOT NULL,
        end_date DATE NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS dim_calendar_dates (
        service_id TEXT NOT NULL,
        service_date DATE NOT NULL,
        exception_type SMALLINT NOT NULL,
        PRIMARY KEY (service_id, service_date)
    );
    """,
]


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Load Amtrak GTFS trips and calendars into PostgreSQL.",
    )
    parser.add_argument(
        "--zip-path",
        default=os.getenv("AMTK_GTFS_ZIP", "data/static/amtrak_gtfs.zip"),
        help="Path to the GTFS static zip (default: data/static/amtrak_gtfs.zip).",
    )
    parser.add_argument(
        "--zip-url",
        default=os.getenv("AMTK_GTFS_URL"),
        help="Optional URL to download the GTFS static zip if the path is missing.",
    )
    parser.add_argument(
        "--database-url",
        default=os.getenv("DATABASE_URL"),
        help="PostgreSQL connection string (defaults to DATABASE_URL env var).",
    )
    return parser.parse_args()


def ensure_database_url(url: str | None) -> str:
    if not url:
        raise SystemExit(
            "Database URL not provided. Use --database-url or set DATABASE_URL env var."
        )
    return url


def ensure_schema(conn: psycopg2.extensions.connection) -> None:
    with conn.cursor() as cur:
        for statement in SCHEMA_STATEMENTS:
            cur.execute(statement)
    conn.commit()


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def _to_int(value: str | None) -> int | None:
    value = _clean(value)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def _to_date(value: str | None) -> date | None:
    value = _clean(value)
    if value is None:
        return None
    try:
        return datetime.strptime(value, "%Y%m%d").date()
    except ValueError:
        return None


def _open_csv(zf: zipfile.ZipFile, name: str, required: bool = True) -> zipfile.ZipExtFile | None:
    try:
        return zf.open(name)
    except KeyError as exc:
        if not required:
            LOGGER.info("%s not present in %s; skipping.", name, zf.filename)
            return None
        raise SystemExit(f"File {name} not found inside {zf.filename}") from exc


def _download_zip(url: str, dest: Path) -> Path:
    dest.parent.mkdir(parents=True, exist_ok=True)
    LOGGER.info("Downloading GTFS static bundle from %s", url)
    with requests.get(url, stream=True, timeout=60) as response:
        response.raise_for_status()
        with open(dest, "wb") as fh:
            for chunk in response.iter_content(chunk_size=1 << 20):
                if chunk:
                    fh.write(chunk)
    LOGGER.info("Saved GTFS static bundle to %s (%s bytes)", dest, dest.stat().st_size)
    return dest


def _insert_batched(
    conn: psycopg2.extensions.connection,
    statement: str,
    rows: Iterable[tuple],
) -> int:
    batch: list[tuple] = []
    count = 0
    with conn.cursor() as cur:
        for row in rows:
            batch.append(row)
            count += 1
            if len(batch) >= BATCH_SIZE:
                execute_batch(cur, statement, batch)
                batch.clear()
        if batch:
            execute_batch(cur, statement, batch)
    conn.commit()
    return count


def truncate_dimensions(conn: psycopg2.extensions.connection) -> None:
    with conn.cursor() as cur:
        cur.execute("TRUNCATE TABLE dim_trips, dim_calendar, dim_calendar_dates")
    conn.commit()


def iter_trip_rows(reader: Iterable[dict[str, str]]) -> Iterable[tuple]:
    for row in reader:
        trip_id = _clean(row.get("trip_id"))
        service_id = _clean(row.get("service_id"))
        if not trip_id or not service_id:
            continue
        yield (
            trip_id,
            _clean(row.get("route_id")),
            service_id,
            _clean(row.get("trip_short_name")),
            _clean(row.get("trip_headsign")),
            _to_int(row.get("direction_id")),
        )


def iter_calendar_rows(reader: Iterable[dict[str, str]]) -> Iterable[tuple]:
    for row in reader:
        service_id = _clean(row.get("service_id"))
        start_date = _to_date(row.get("start_date"))
        end_date = _to_date(row.get("end_date"))
        if not service_id or start_date is None or end_date is None:
            continue
        flags = tuple(_to_int(row.get(day)) or 0 for day in WEEKDAY_COLUMNS)
        yield (service_id, *flags, start_date, end_date)


def iter_calendar_date_rows(reader: Iterable[dict[str, str]]) -> Iterable[tuple]:
    for row in reader:
        service_id = _clean(row.get("service_id"))
        service_date = _to_date(row.get("date"))
        exception_type = _to_int(row.get("exception_type"))
        if not service_id or service_date is None or exception_type not in (1, 2):
            continue
        yield (service_id, service_date, exception_type)


def load_trips(conn: psycopg2.extensions.connection, reader: Iterable[dict[str, str]]) -> int:
    count = _insert_batched(
        conn,
        """
        INSERT INTO dim_trips (
            trip_id, route_id, service_id, trip_short_name, trip_headsign, direction_id
        ) VALUES (%s, %s, %s, %s, %s, %s)
        ON CONFLICT (trip_id) DO NOTHING
        """,
        iter_trip_rows(reader),
    )
    LOGGER.info("Loaded %d trips", count)
    return count


def load_calendar(conn: psycopg2.extensions.connection, reader: Iterable[dict[str, str]]) -> int:
    count = _insert_batched(
        conn,
        """
        INSERT INTO dim_calendar (
            service_id, monday, tuesday, wednesday, thursday, friday, saturday, sunday,
            start_date, end_date
        ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (service_id) DO NOTHING
        """,
        iter_calendar_rows(reader),
    )
    LOGGER.info("Loaded %d calendar services", count)
    return count


def load_calendar_dates(
    conn: psycopg2.extensions.connection,
    reader: Iterable[dict[str, str]],
) -> int:
    count = _insert_batched(
        conn,
        """
        INSERT INTO dim_calendar_dates (service_id, service_date, exception_type)
        VALUES (%s, %s, %s)
        ON CONFLICT (service_id, service_date) DO UPDATE
            SET exception_type = EXCLUDED.exception_type
        """,
        iter_calendar_date_rows(reader),
    )
    LOGGER.info("Loaded %d calendar date exceptions", count)
    return count


def load_bundle(conn: psycopg2.extensions.connection, zip_path: Path) -> None:
    with zipfile.ZipFile(zip_path) as zf:
        LOGGER.info("Loading trips.txt")
        with _open_csv(zf, "trips.txt") as raw:
            load_trips(conn, csv.DictReader(io.TextIOWrapper(raw, encoding="utf-8-sig")))

        raw = _open_csv(zf, "calendar.txt", required=False)
        if raw is not None:
            LOGGER.info("Loading calendar.txt")
            with raw:
                load_calendar(conn, csv.DictReader(io.TextIOWrapper(raw, encoding="utf-8-sig")))

        raw = _open_csv(zf, "calendar_dates.txt", required=False)
        if raw is not None:
            LOGGER.info("Loading calendar_dates.txt")
            with raw:
                load_calendar_dates(
                    conn, csv.DictReader(io.TextIOWrapper(raw, encoding="utf-8-sig"))
                )


def main() -> None:
    load_dotenv()
    args = parse_args()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")

    database_url = ensure_database_url(args.database_url)
    zip_path = Path(args.zip_path)
    if not zip_path.exists():
        if args.zip_url:
            _download_zip(args.zip_url, zip_path)
        else:
            raise SystemExit(f"Zip file not found: {zip_path}")
    elif args.zip_url:
        LOGGER.info("Using existing GTFS bundle at %s; skip download from %s", zip_path, args.zip_url)

    conn = psycopg2.connect(database_url)
    conn.autocommit = False
    try:
        LOGGER.info("Ensuring dimension tables exist before reload.")
        ensure_schema(conn)

        LOGGER.info("Truncating dimension tables before reload.")
        truncate_dimensions(conn)

        load_bundle(conn, zip_path)
        LOGGER.info("Static GTFS schedule refreshed successfully.")
    finally:
        conn.close()


if __name__ == "__main__":
    main()
