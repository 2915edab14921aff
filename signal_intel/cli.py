#!/usr/bin/env python
"""
Signal Intelligence CLI - process signals, generate and inspect hotspots.

Usage:
    python -m signal_intel.cli process                 # Classify + featurize stored signals
    python -m signal_intel.cli cluster -t 5            # Full run, persist hotspots
    python -m signal_intel.cli rerank                  # Re-rank stored hotspots
    python -m signal_intel.cli hotspots                # List stored hotspots
    python -m signal_intel.cli init-db                 # Create tables

    # Offline, against a JSON file of signals (in-memory storage)
    python -m signal_intel.cli --signals-file signals.json cluster --json
"""

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

import psycopg2
from dotenv import load_dotenv
from pydantic import ValidationError

from signal_intel.db.connection import init_db
from signal_intel.db.hotspot_storage import (
    HotspotStorage,
    InMemoryHotspotStorage,
    PostgresHotspotStorage,
    StorageError,
)
from signal_intel.db.models import ClusteringOptions, Signal
from signal_intel.logging_utils import configure_safe_logging
from signal_intel.pipeline import PipelineStatus, SignalIntelligencePipeline
from signal_intel.services.embedding_service import get_embedding_provider

load_dotenv(Path(__file__).parent.parent / ".env")

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID_OPTIONS = 2

FAILED_STATUSES = {PipelineStatus.TIMEOUT, PipelineStatus.INTERNAL_ERROR}


def load_signals_file(path: str) -> List[Signal]:
    """Read signals from a JSON file: a list, or an object with a "signals" list."""
    with open(path) as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get("signals", [])
    return [Signal.model_validate(item) for item in data]


def build_storage(args) -> HotspotStorage:
    if args.signals_file:
        return InMemoryHotspotStorage(load_signals_file(args.signals_file))
    return PostgresHotspotStorage()


def build_pipeline(args, storage: HotspotStorage) -> SignalIntelligencePipeline:
    return SignalIntelligencePipeline(
        storage=storage,
        embedding_provider=get_embedding_provider(args.embedding_provider),
        concurrency=args.concurrency,
        deadline_seconds=args.deadline,
    )


def _print_json(payload) -> None:
    print(json.dumps(payload, indent=2, default=str))


def cmd_process(args) -> int:
    """Classify and featurize signals."""
    storage = build_storage(args)
    pipeline = build_pipeline(args, storage)
    signals = storage.list_signals(args.signal_ids or None)
    batch = pipeline.process_signals(signals, force_regenerate=args.force)

    if args.json:
        _print_json(batch.to_dict())
        return EXIT_OK

    stats = batch.stats
    print(f"\nProcessed {batch.total} signals ({batch.embedding_provider})")
    print(f"  succeeded: {batch.succeeded}  failed: {batch.failed}  skipped: {batch.skipped}")
    print(f"  average confidence: {stats['average_confidence']:.2f}")
    print(f"  flagged for review: {stats['flagged_for_review']}")
    for root_cause, count in stats["root_cause_distribution"].items():
        print(f"    {root_cause:<15} {count}")
    for failure in batch.failures:
        print(f"  ! {failure.signal_id}: {failure.error}")
    print()
    return EXIT_OK


def cmd_cluster(args) -> int:
    """Run the full pipeline and persist hotspots."""
    try:
        options = ClusteringOptions(
            signal_ids=args.signal_ids or None,
            force_regenerate=args.force,
            target_cluster_count=args.target,
            min_cluster_size=args.min_cluster_size,
            min_samples=args.min_samples,
            quality_threshold=args.quality_threshold,
        )
    except ValidationError as e:
        print(f"Invalid options:\n{e}", file=sys.stderr)
        return EXIT_INVALID_OPTIONS

    storage = build_storage(args)
    result = build_pipeline(args, storage).generate_hotspots(options)

    if args.json:
        _print_json(result.to_dict())
    else:
        print(f"\nStatus: {result.status.value} ({result.duration_ms}ms)")
        if result.failed_stage:
            print(f"Failed stage: {result.failed_stage}")
        print(f"\n{'Rank':<7} {'Size':<5} {'Conf':<6} Title")
        print("-" * 70)
        for hotspot in result.hotspots:
            print(
                f"{hotspot.rank_score:<7.3f} {hotspot.signal_count:<5} "
                f"{hotspot.confidence:<6.2f} {hotspot.title}"
            )
        for message in result.warnings:
            print(f"  warning: {message}")
        for message in result.errors:
            print(f"  error: {message}")
        print()

    return EXIT_FAILED if result.status in FAILED_STATUSES else EXIT_OK


def cmd_rerank(args) -> int:
    """Re-rank stored hotspots."""
    storage = build_storage(args)
    hotspots = build_pipeline(args, storage).rerank_hotspots()
    if args.json:
        _print_json([h.model_dump(mode="json") for h in hotspots])
    else:
        print(f"\nRe-ranked {len(hotspots)} hotspots")
        for hotspot in hotspots:
            print(f"  {hotspot.rank_score:.3f}  {hotspot.title}")
        print()
    return EXIT_OK


def cmd_hotspots(args) -> int:
    """List stored hotspots."""
    storage = build_storage(args)
    hotspots = storage.list_hotspots(status=args.status)

    if args.json:
        _print_json([h.model_dump(mode="json") for h in hotspots])
        return EXIT_OK

    if not hotspots:
        print("No hotspots found.")
        return EXIT_OK

    print(f"\n{'Rank':<7} {'Status':<12} {'Size':<5} Title")
    print("-" * 70)
    for hotspot in hotspots:
        print(f"{hotspot.rank_score:<7.3f} {hotspot.status:<12} {hotspot.signal_count:<5} {hotspot.title}")
        if args.verbose:
            print(f"        {hotspot.summary}")
            for entity in hotspot.linked_entities:
                print(f"        - {entity.type}: {entity.name} ({entity.count}x)")
    print()
    return EXIT_OK


def cmd_init_db(args) -> int:
    """Create database tables."""
    try:
        init_db()
    except psycopg2.Error as e:
        raise StorageError(f"Schema initialization failed: {e}") from e
    print("Database schema initialized.")
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Signal Intelligence CLI - turn signals into ranked hotspots",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m signal_intel.cli process --force            # Rebuild all annotations
  python -m signal_intel.cli cluster -t 6 -q 0.6        # 6 clusters max, looser gate
  python -m signal_intel.cli hotspots -s APPROVED -v    # Approved hotspots with detail
  python -m signal_intel.cli --signals-file s.json cluster --json
        """,
    )
    parser.add_argument("--signals-file", help="Run offline against signals in this JSON file")
    parser.add_argument(
        "--embedding-provider",
        choices=["openai", "hashed"],
        default=None,
        help="Override EMBEDDING_PROVIDER",
    )
    parser.add_argument("--concurrency", type=int, default=None, help="Per-signal workers")
    parser.add_argument("--deadline", type=float, default=None, help="Run budget in seconds")
    parser.add_argument("--json", action="store_true", help="Print JSON output")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    subparsers = parser.add_subparsers(dest="command", help="Command")

    # process
    p_process = subparsers.add_parser("process", help="Classify and featurize signals")
    p_process.add_argument("--signal-id", dest="signal_ids", action="append", help="Restrict to id (repeatable)")
    p_process.add_argument("--force", action="store_true", help="Ignore existing annotations")
    p_process.set_defaults(func=cmd_process)

    # cluster
    p_cluster = subparsers.add_parser("cluster", help="Generate and persist hotspots")
    p_cluster.add_argument("--signal-id", dest="signal_ids", action="append", help="Restrict to id (repeatable)")
    p_cluster.add_argument("--force", action="store_true", help="Ignore existing annotations")
    p_cluster.add_argument("-t", "--target", type=int, default=5, help="Target cluster count (4-6)")
    p_cluster.add_argument("-m", "--min-cluster-size", type=int, default=3, help="Minimum members per hotspot")
    p_cluster.add_argument("--min-samples", type=int, default=2, help="Density min_samples")
    p_cluster.add_argument("-q", "--quality-threshold", type=float, default=0.7, help="Hotspot gate")
    p_cluster.set_defaults(func=cmd_cluster)

    # rerank
    p_rerank = subparsers.add_parser("rerank", help="Re-rank stored hotspots")
    p_rerank.set_defaults(func=cmd_rerank)

    # hotspots
    p_hotspots = subparsers.add_parser("hotspots", help="List stored hotspots")
    p_hotspots.add_argument("-s", "--status", default=None, help="Filter by status")
    p_hotspots.set_defaults(func=cmd_hotspots)

    # init-db
    p_init = subparsers.add_parser("init-db", help="Create database tables")
    p_init.set_defaults(func=cmd_init_db)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    configure_safe_logging(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        log_file=os.getenv("SIGNAL_INTEL_LOG_FILE"),
    )

    if args.command is None:
        parser.print_help()
        return EXIT_OK

    try:
        return args.func(args)
    except StorageError as e:
        logger.error(f"Storage unavailable: {e}")
        print(f"Storage error: {e}", file=sys.stderr)
        return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
