"""Reconcile a delta file and upsert its surviving records from the command line.

Useful for replaying an exported change file against the control database
without going through the HTTP upload endpoint.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

# Ensure project root is importable when the script is executed directly.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from insight_sync.database import SessionLocal  # noqa: E402  (import after path setup)
from insight_sync.services.delta_ingestion import DEFAULT_CHUNK_SIZE, DeltaIngestionEngine  # noqa: E402


def ingest_file(
    path: Path,
    target_object: str,
    key_field: str | None = None,
    *,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    has_header: bool = True,
    session_factory: Callable[[], Session] = SessionLocal,
) -> int:
    if not path.is_file():
        print(f"Delta file {path} does not exist.")
        return 1

    engine = DeltaIngestionEngine(session_factory)
    try:
        with path.open("r", encoding="utf-8-sig", newline="") as handle:
            summary = engine.ingest(
                handle,
                target_object,
                key_field,
                chunk_size=chunk_size,
                has_header=has_header,
            )
    except ValueError as exc:
        print(f"Unable to ingest {path}: {exc}")
        return 1
    except SQLAlchemyError as exc:
        print("Failed to write reconciled records: %s" % exc)
        print("Run database migrations and ensure the synced_records table exists before retrying.")
        return 1

    print(
        f"Read {summary.lines_read} line(s) for {summary.target_object}: "
        f"{summary.upserted} upserted, {summary.malformed} malformed, "
        f"{summary.filtered} filtered, {summary.discarded} discarded, "
        f"{summary.coercion_failures} coercion failure(s)."
    )
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Reconcile a delta change file by business key and upsert the latest version of each record."
    )
    parser.add_argument("path", type=Path, help="Path to the delimited delta file.")
    parser.add_argument("target_object", help="Target object name the batch belongs to.")
    parser.add_argument(
        "--key-field",
        help="Payload field used as the business key (defaults to the configured delta_key_field).",
    )
    parser.add_argument(
        "--chunk-size",
        type=int,
        default=DEFAULT_CHUNK_SIZE,
        help="Number of parsed records reconciled per chunk.",
    )
    parser.add_argument(
        "--no-header",
        action="store_true",
        help="Treat the first line as data instead of a header row.",
    )

    args = parser.parse_args(argv)
    return ingest_file(
        args.path,
        args.target_object,
        args.key_field,
        chunk_size=args.chunk_size,
        has_header=not args.no_header,
    )


if __name__ == "__main__":
    raise SystemExit(main())
