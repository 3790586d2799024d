"""Command-line entry point for ingesting documents and querying the index.

Usage:
    lessonrag ingest notes/lesson1.txt notes/lesson2.txt
    lessonrag query "What is photosynthesis?" --top-k 3 --scores
    lessonrag stats
"""
import argparse
import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import structlog

from lessonrag import config
from lessonrag.errors import CorruptIndexSnapshotError
from lessonrag.rag.service import RetrievalService

logger = structlog.get_logger()


def configure_logging(level: Optional[str] = None) -> None:
    """Configure structured JSON logging on stderr, keeping stdout for results."""
    level = (level or config.LOG_LEVEL).upper()
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )


def cmd_ingest(service: RetrievalService, args) -> int:
    start_time = datetime.now()
    files_processed = 0
    files_failed = 0
    chunks_created = 0

    for path in args.paths:
        try:
            text = Path(path).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            print(f"  ❌ {path}: {e}")
            logger.error("file_read_failed", path=str(path), error=str(e))
            files_failed += 1
            continue

        result = service.ingest(text, Path(path).name)
        chunks_created += result.chunks_created

        if result.success:
            files_processed += 1
            print(f"  ✅ {path}: {result.chunks_created} chunks")
        else:
            files_failed += 1
            print(f"  ❌ {path}: {result.error.value} ({result.message})")

    elapsed = (datetime.now() - start_time).total_seconds()

    print(f"\n  📁 Files processed: {files_processed}")
    print(f"  ❌ Files failed:    {files_failed}")
    print(f"  📝 Chunks created:  {chunks_created}")
    print(f"  ⏱️  Time elapsed:    {elapsed:.1f}s\n")

    return 1 if files_failed else 0


def cmd_query(service: RetrievalService, args) -> int:
    if args.scores:
        results = service.retrieve(args.query, top_k=args.top_k)
        for i, r in enumerate(results, 1):
            print(f"[{i}] {r.source} score={r.score:.4f}")
            print(r.content)
            print("-" * 80)
        return 0

    for i, content in enumerate(service.search(args.query, top_k=args.top_k), 1):
        print(f"[{i}] {content}")
        print("-" * 80)
    return 0


def cmd_stats(service: RetrievalService, args) -> int:
    print(json.dumps(service.get_stats(), indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Ingest lesson text and retrieve relevant passages",
    )
    parser.add_argument(
        "--data-dir",
        type=Path,
        default=None,
        help=f"Data directory (default: {config.DATA_DIR})",
    )
    parser.add_argument(
        "--strict",
        action="store_true",
        default=None,
        help="Fail instead of starting empty when the embeddings snapshot is corrupt",
    )
    parser.add_argument("--log-level", default=None, help="Log level (default: LOG_LEVEL)")

    sub = parser.add_subparsers(dest="cmd", required=True)

    pi = sub.add_parser("ingest", help="Ingest UTF-8 text files")
    pi.add_argument("paths", nargs="+", help="Files to ingest")
    pi.set_defaults(func=cmd_ingest)

    pq = sub.add_parser("query", help="Search ingested documents")
    pq.add_argument("query", help="Search query")
    pq.add_argument("--top-k", type=int, default=config.RETRIEVAL_TOP_K)
    pq.add_argument("--scores", action="store_true", help="Show sources and scores")
    pq.set_defaults(func=cmd_query)

    ps = sub.add_parser("stats", help="Show index statistics")
    ps.set_defaults(func=cmd_stats)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the lessonrag command."""
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)

    service = RetrievalService.from_config(data_dir=args.data_dir, strict=args.strict)

    try:
        service.load()
    except CorruptIndexSnapshotError as e:
        print(f"\n❌ Error: {e}\n")
        return 1

    try:
        return args.func(service, args)
    except KeyboardInterrupt:
        print("\n\n⚠️  Cancelled by user.\n")
        return 1


if __name__ == "__main__":
    sys.exit(main())
