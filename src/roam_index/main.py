#!/usr/bin/env python
"""Command line entry point for roam-index."""
import argparse
import logging
import os
import sys
from pathlib import Path

from roam_index import __version__
from roam_index.config import config
from roam_index.exceptions import RoamIndexError
from roam_index.observability import configure_logging
from roam_index.services.roam_index import RoamIndex


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="roam-index", description="Incremental index of interlinked notes"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--directory",
        help="Note directory to index",
        type=str,
        default=os.environ.get("ROAM_DIRECTORY")
    )
    parser.add_argument(
        "--database-path",
        help="SQLite database file path",
        type=str,
        default=os.environ.get("ROAM_DATABASE_PATH")
    )
    parser.add_argument(
        "--log-level",
        help="Logging level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.environ.get("ROAM_LOG_LEVEL", "WARNING")
    )

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("build", help="Incrementally update the index")
    commands.add_parser("rebuild", help="Clear the index and scan everything again")
    backlinks = commands.add_parser("backlinks", help="List notes linking to a note")
    backlinks.add_argument("path", help="Note file")
    commands.add_parser("completions", help="List titles and aliases with their notes")
    resolve = commands.add_parser("resolve", help="Find the note carrying a reference key")
    resolve.add_argument("key", help="Reference key, e.g. a URL or citekey")
    return parser.parse_args(argv)


def update_config(args):
    """Update the global config with command line arguments."""
    if args.directory:
        config.directory = Path(args.directory)
    if args.database_path:
        config.database_path = Path(args.database_path)


def run_command(index: RoamIndex, args) -> int:
    """Run one subcommand against a built index, printing one record per line."""
    if args.command == "rebuild":
        print(index.rebuild())
        return 0

    stats = index.build_index()
    if args.command == "build":
        print(stats)
    elif args.command == "backlinks":
        for backlink in index.backlinks(args.path):
            excerpt = " ".join(backlink.excerpt.split())
            print(f"{backlink.source}:{backlink.offset}\t{excerpt}")
    elif args.command == "completions":
        for label, path in index.completions():
            print(f"{label}\t{path}")
    elif args.command == "resolve":
        path = index.resolve_ref(args.key)
        if path is None:
            print(f"No note carries the key '{args.key}'", file=sys.stderr)
            return 1
        print(path)
    return 0


def main(argv=None) -> int:
    """Run the roam-index command line."""
    args = parse_args(argv)
    update_config(args)

    log_level = getattr(logging, args.log_level.upper(), logging.WARNING)
    configure_logging(level=log_level, console=True)
    logger = logging.getLogger(__name__)

    try:
        with RoamIndex(config) as index:
            logger.info(f"Using SQLite database: {config.get_db_url()}")
            return run_command(index, args)
    except RoamIndexError as e:
        logger.error(f"{e}")
        return 2


if __name__ == "__main__":
    sys.exit(main())
