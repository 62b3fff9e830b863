"""Command line entry point for keyword deduplication.

Usage:
    keyword-dedupe run                       # dry run: report clusters only
    keyword-dedupe run --apply               # merge/rename/skip with Gemini
    keyword-dedupe run --apply --aggressive  # delete every secondary
    keyword-dedupe embed                     # backfill missing embeddings
    keyword-dedupe embed --force             # re-embed every keyword
    keyword-dedupe compare 12 48             # similarity of two keywords

Exit codes: 0 success, 1 run failure, 2 invalid configuration.
"""

import argparse
import asyncio
import json
import sys
from dataclasses import replace
from typing import List, Optional

from src.common.config import (
    ConfigError,
    KeywordDedupeSettings,
    load_keyword_dedupe_settings,
    validate_keyword_dedupe_settings,
)
from src.common.env import load_env
from src.common.logging import get_logger, log_error
from src.keyword_dedupe.dedupe_service import (
    KeywordDedupeService,
    create_keyword_dedupe_service,
    format_report,
)
from src.keyword_dedupe.embedding_client import EmbeddingProviderError
from src.keyword_dedupe.embeddings import EmptyInputError
from src.keyword_dedupe.firestore_repository import StoreError
from src.keyword_dedupe.models import TriggeredBy

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="keyword-dedupe",
        description="Find and merge duplicate keywords using embeddings and Gemini decisions",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Cluster similar keywords and optionally merge them")
    run.add_argument("--apply", action="store_true", help="Apply mutations (default is a dry run)")
    run.add_argument("--threshold", type=float, help="Similarity threshold (0.05-0.999)")
    run.add_argument("--max-neighbors", type=int, help="Per-keyword cap on accepted pairs (0 = none)")
    run.add_argument("--max-cluster-size", type=int, help="Discard larger clusters (0 = no cap)")
    run.add_argument("--max-keywords", type=int, help="Number of keywords to scan")
    run.add_argument("--aggressive", action="store_true", help="Delete all secondaries without LLM decisions")
    run.add_argument("--keep-secondaries", action="store_true", help="Do not delete merged secondaries")
    run.add_argument("--name-only", action="store_true", help="Compare name embeddings only")

    embed = subparsers.add_parser("embed", help="Backfill missing embeddings")
    embed.add_argument("--max-keywords", type=int, help="Number of keywords to scan")
    embed.add_argument("--name-only", action="store_true", help="Only backfill name embeddings")
    embed.add_argument(
        "--force",
        action="store_true",
        help="Re-embed every keyword from its current name and description",
    )

    compare = subparsers.add_parser("compare", help="Cosine similarity between two keywords")
    compare.add_argument("first_id", type=int)
    compare.add_argument("second_id", type=int)

    return parser


def settings_from_args(settings: KeywordDedupeSettings, args: argparse.Namespace) -> KeywordDedupeSettings:
    """Apply command line overrides and re-validate.

    Raises:
        ConfigError: If the resulting settings are invalid.
    """
    overrides = {}
    if getattr(args, "threshold", None) is not None:
        overrides["similarity_threshold"] = args.threshold
    if getattr(args, "max_neighbors", None) is not None:
        overrides["max_neighbors"] = args.max_neighbors
    if getattr(args, "max_cluster_size", None) is not None:
        overrides["max_cluster_size"] = args.max_cluster_size
    if getattr(args, "max_keywords", None) is not None:
        overrides["max_keywords"] = args.max_keywords
    if getattr(args, "aggressive", False):
        overrides["aggressive"] = True
    if getattr(args, "keep_secondaries", False):
        overrides["delete_secondaries"] = False
    if getattr(args, "name_only", False):
        overrides["name_only"] = True
    return validate_keyword_dedupe_settings(replace(settings, **overrides))


async def _run(service: KeywordDedupeService, args: argparse.Namespace) -> int:
    result = await service.run(dry_run=not args.apply, triggered_by=TriggeredBy.CLI)
    if result.summary.dry_run:
        print(format_report(result, service.settings))
    else:
        print(json.dumps(result.summary.to_dict(), indent=2, ensure_ascii=False))
    return EXIT_OK


async def _embed(service: KeywordDedupeService, args: argparse.Namespace) -> int:
    result = await service.backfill_embeddings(force=args.force)
    print(
        f"Embeddings ready for {len(result.keywords)} keywords "
        f"(written: {result.written}, failures: {result.failures})"
    )
    return EXIT_OK if result.failures == 0 else EXIT_FAILURE


async def _compare(service: KeywordDedupeService, args: argparse.Namespace) -> int:
    comparison = await service.compare(args.first_id, args.second_id)
    text_score = "n/a" if comparison.text_score is None else f"{comparison.text_score:.4f}"
    print(f"{comparison.a.label()} vs {comparison.b.label()}")
    print(f"  text cosine: {text_score}")
    print(f"  name cosine: {comparison.name_score:.4f}")
    print(f"  pair score:  {comparison.score:.4f}")
    return EXIT_OK


_COMMANDS = {"run": _run, "embed": _embed, "compare": _compare}


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    load_env()

    try:
        settings = settings_from_args(load_keyword_dedupe_settings(), args)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG

    service = create_keyword_dedupe_service(settings)
    try:
        return asyncio.run(_COMMANDS[args.command](service, args))
    except (StoreError, EmbeddingProviderError, EmptyInputError) as e:
        log_error(logger, "Keyword dedupe command failed", error=e, command=args.command)
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
