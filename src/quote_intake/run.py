"""
CLI runner for quote-intake maintenance and triage.

Usage:
    python -m quote_intake.run [OPTIONS]

    # Create or migrate the database
    python -m quote_intake.run --init-db

    # Remove expired counters, tokens and cached analyses
    python -m quote_intake.run --purge-expired

    # Run (or re-run) the triage analysis for a request
    python -m quote_intake.run --analyze abc123 --force
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from .config import IntakeConfig
from .errors import RequestNotFound
from .intake import IntakeOrchestrator, build_intake

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("quote-intake")


async def analyze(intake: IntakeOrchestrator, request_id: str, force: bool) -> int:
    if intake.provider is None:
        logger.error("No AI provider configured (plugins.datasette-quote-intake.llm)")
        return 1

    analysis = await intake.analyze(request_id, force=force)
    if analysis is None:
        logger.error(f"Analysis failed for {request_id}, see the audit log")
        return 1

    print(json.dumps(analysis.to_dict(), indent=2, ensure_ascii=False))
    return 0


async def similar(intake: IntakeOrchestrator, request_id: str) -> int:
    match = await intake.find_similar(request_id)
    logger.info(f"{match.source}: {len(match.results)} similar quote(s)")
    print(json.dumps(match.to_dict(), indent=2, ensure_ascii=False))
    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="quote-intake: quote request intake and triage",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Apply database migrations
    python -m quote_intake.run --init-db

    # Show comparable quotes for a request
    python -m quote_intake.run --similar abc123def456

    # Use a specific config file
    python -m quote_intake.run --config datasette.yaml --purge-expired
        """,
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=Path("datasette.yaml"),
        help="Path to config file (default: datasette.yaml)",
    )
    parser.add_argument("--db", type=Path, help="Override database path from config")
    parser.add_argument("--init-db", action="store_true", help="Apply pending migrations")
    parser.add_argument(
        "--purge-expired",
        action="store_true",
        help="Delete expired key-value entries",
    )
    parser.add_argument("--analyze", metavar="REQUEST_ID", help="Run triage for a request")
    parser.add_argument(
        "--force",
        action="store_true",
        help="With --analyze: recompute even if a cached analysis exists",
    )
    parser.add_argument("--similar", metavar="REQUEST_ID", help="List similar quotes")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    config = IntakeConfig.from_yaml(args.config)
    if args.db:
        config.db_path = args.db

    logger.info(f"Config loaded from {args.config}")
    logger.info(f"Database: {config.db_path}")

    if args.init_db:
        from datasette_quote_intake.migrations import run_migrations

        applied = run_migrations(config.db_path, verbose=args.verbose)
        logger.info(f"Applied {len(applied)} migration(s)")
        if not (args.purge_expired or args.analyze or args.similar):
            return 0

    if not config.db_path.exists():
        logger.error(f"Database not found: {config.db_path}")
        logger.error("Run 'python -m quote_intake.run --init-db' first.")
        return 1

    intake = build_intake(config)

    if args.purge_expired:
        removed = intake.purge_expired()
        logger.info(f"Purged {removed} expired entr{'y' if removed == 1 else 'ies'}")

    try:
        if args.analyze:
            return asyncio.run(analyze(intake, args.analyze, args.force))
        if args.similar:
            return asyncio.run(similar(intake, args.similar))
    except RequestNotFound as e:
        logger.error(str(e))
        return 1

    if not args.purge_expired:
        parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
