#!/usr/bin/env python
"""
Omnisearch CLI - Run searches and manage caches from the terminal.

Usage:
    omnisearch init-db                               # Create tables
    omnisearch search "project roadmap" --user u1    # Unified search
    omnisearch warmup queries.txt                    # Pre-embed frequent queries
    omnisearch invalidate --user u1                  # Purge cached results
"""

import argparse
import asyncio
import json
import logging
from pathlib import Path

from dotenv import load_dotenv
from pydantic import ValidationError

from omnisearch.db.connection import init_db
from omnisearch.logging_utils import configure_safe_logging
from omnisearch.search.errors import AllSourcesFailed, SearchValidationError
from omnisearch.search.models import SearchFilters, SearchRequest, SearchResponse
from omnisearch.search.unified_search import UnifiedSearchService

logger = logging.getLogger(__name__)


def _split(value):
    if not value:
        return None
    return [v.strip() for v in value.split(",") if v.strip()] or None


def cmd_init_db(args, service_factory):
    """Create the pgvector extension and tables."""
    init_db()
    print("Database schema ready.")
    return 0


def cmd_search(args, service_factory):
    """Run one unified search and print the ranked hits."""
    try:
        request = SearchRequest(
            query=args.query,
            user_id=args.user,
            filters=SearchFilters(
                content_types=_split(args.type),
                limit=args.limit,
                threshold=args.threshold,
                sources=_split(args.sources),
            ),
        )
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'request'}: {err['msg']}" for err in e.errors()
        )
        print(f"Invalid search: {problems}")
        return 2
    service = service_factory()
    try:
        result = asyncio.run(service.search(request))
    except SearchValidationError as e:
        print(f"Invalid search: {e}")
        return 2
    except AllSourcesFailed as e:
        print(f"Search failed: {e}")
        for stats in e.per_source_stats:
            print(f"  {stats.source:<10} {stats.status.value:<10} {stats.error or ''}")
        return 1

    response = SearchResponse.from_result(result)
    if args.json:
        print(json.dumps(response.model_dump(by_alias=True, mode="json"), indent=2))
        return 0

    if not response.results:
        print(f"\nNo results for '{response.query}'.\n")
    else:
        print(f"\n{'Score':<7} {'Origin':<16} {'Type':<11} Title")
        print("-" * 70)
        for hit in response.results:
            print(f"{hit.similarity:<7.4f} {hit.origin:<16} {hit.content_type:<11} {hit.title}")
        print()

    for stats in response.per_source_stats:
        detail = stats.error or stats.reason or ""
        print(f"  {stats.source:<10} {stats.status.value:<10} {stats.count:>3} hits  {stats.latency_ms:.0f}ms  {detail}")
    print(f"  total {response.performance.total_time_ms:.0f}ms\n")
    return 0


def cmd_warmup(args, service_factory):
    """Embed frequent queries ahead of traffic."""
    texts = [line.strip() for line in Path(args.file).read_text().splitlines() if line.strip()]
    service = service_factory()
    added = asyncio.run(service.embedding_generator.warmup(texts))
    print(f"Warmed {added} of {len(texts)} queries.")
    return 0


def cmd_invalidate(args, service_factory):
    """Purge cached search results."""
    service = service_factory()
    removed = asyncio.run(service.invalidate(args.user))
    target = args.user or "all users"
    print(f"Invalidated {removed} cached searches for {target}.")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="omnisearch",
        description="Omnisearch CLI - unified search over internal content and Google providers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  omnisearch search "project roadmap" --user u1
  omnisearch search standup --user u1 --type event --sources calendar
  omnisearch search roadmap --user u1 --json
  omnisearch invalidate                       # every user
        """,
    )
    subparsers = parser.add_subparsers(dest="command", help="Command")

    # init-db
    p_init = subparsers.add_parser("init-db", help="Create database tables")
    p_init.set_defaults(func=cmd_init_db)

    # search
    p_search = subparsers.add_parser("search", help="Run a unified search")
    p_search.add_argument("query", help="Free-text query")
    p_search.add_argument("-u", "--user", required=True, help="Requesting user id")
    p_search.add_argument("-t", "--type", help="Comma-separated content types")
    p_search.add_argument("-l", "--limit", type=int, help="Max results")
    p_search.add_argument("--threshold", type=float, help="Minimum similarity")
    p_search.add_argument("-s", "--sources", help="Comma-separated sources")
    p_search.add_argument("--json", action="store_true", help="Print the API response JSON")
    p_search.set_defaults(func=cmd_search)

    # warmup
    p_warmup = subparsers.add_parser("warmup", help="Pre-embed frequent queries")
    p_warmup.add_argument("file", help="File with one query per line")
    p_warmup.set_defaults(func=cmd_warmup)

    # invalidate
    p_invalidate = subparsers.add_parser("invalidate", help="Purge cached results")
    p_invalidate.add_argument("-u", "--user", help="Only this user (default: all)")
    p_invalidate.set_defaults(func=cmd_invalidate)

    return parser


def main(argv=None, service_factory=UnifiedSearchService.from_config) -> int:
    configure_safe_logging()
    load_dotenv()

    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    return args.func(args, service_factory)


if __name__ == "__main__":
    raise SystemExit(main())
