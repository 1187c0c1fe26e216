#!/usr/bin/env python3
"""
ShelfBridge - Audiobookshelf to Hardcover Reading Progress Sync Tool

A CLI tool that pushes listening progress from Audiobookshelf to reading
progress in Hardcover, for every user in the configuration.
"""

import argparse
import logging
import sys
import time
from datetime import datetime
from typing import Dict, List, Optional

import pytz
from croniter import croniter

from .config import Config
from .exceptions import ConfigError
from .models import SyncResult
from .sync_manager import SyncManager
from .utils import format_duration

COMMANDS = [
    "sync",
    "test",
    "config",
    "cache-stats",
    "clear-cache",
    "clear-editions",
    "export-cache",
    "cron",
]


def setup_logging(
    verbose: bool = False,
    log_file: Optional[str] = "shelfbridge.log",
    console_level: str = "INFO",
) -> None:
    """Setup logging configuration with controlled verbosity"""
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()

    detailed_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    clean_format = "%(asctime)s - %(levelname)s - %(message)s"

    # File handler is always detailed for debugging
    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(detailed_format))
        root_logger.addHandler(file_handler)

    console_handler = logging.StreamHandler(sys.stdout)
    if verbose:
        console_handler.setLevel(logging.DEBUG)
        console_handler.setFormatter(logging.Formatter(detailed_format))
    else:
        console_handler.setLevel(getattr(logging, console_level.upper(), logging.INFO))
        console_handler.setFormatter(logging.Formatter(clean_format))
    root_logger.addHandler(console_handler)

    # Suppress chatty third-party loggers unless in verbose mode
    if not verbose:
        logging.getLogger("urllib3.connectionpool").setLevel(logging.WARNING)
        logging.getLogger("requests").setLevel(logging.WARNING)


def log_summary(user_id: str, result: SyncResult) -> None:
    logger = logging.getLogger(__name__)

    logger.info("=" * 50)
    logger.info(f"📚 SYNC SUMMARY ({user_id})")
    logger.info("=" * 50)
    logger.info(f"⏱️  Duration: {format_duration(result.duration)}")
    logger.info(f"📖 Books processed: {result.books_processed}")
    logger.info(f"✅ Books synced: {result.books_synced}")
    logger.info(f"🎯 Books completed: {result.books_completed}")
    logger.info(f"➕ Books auto-added: {result.books_auto_added}")
    logger.info(f"⏭ Books skipped: {result.books_skipped}")
    if result.duplicates_removed:
        logger.info(f"🧹 Duplicates removed: {result.duplicates_removed}")

    if result.errors:
        logger.warning(f"❌ Errors encountered: {len(result.errors)}")
        for error in result.errors:
            logger.error(f"  - {error}")
    else:
        logger.info("🎉 No errors encountered!")

    logger.info("=" * 50)


def sync_users(config: Config, users: List[dict], dry_run: bool, force: bool) -> bool:
    """Run one sync per user; True when every run finished without errors"""
    logger = logging.getLogger(__name__)
    ok = True

    for user in users:
        logger.info(f"🔄 Syncing user {user['id']}...")
        sync_manager = SyncManager(user, config.get_global(), dry_run=dry_run, force=force)
        result = sync_manager.sync_progress()
        log_summary(str(user["id"]), result)
        if not result.success or result.errors:
            ok = False

    return ok


def test_connections(sync_manager: SyncManager) -> bool:
    """Test connections to both APIs"""
    logger = logging.getLogger(__name__)
    logger.info(f"🔍 Testing API connections for {sync_manager.user_id}...")

    abs_status = sync_manager.audiobookshelf.test_connection()
    if abs_status:
        logger.info("✅ Audiobookshelf connection: Success")
    else:
        logger.error("❌ Audiobookshelf connection: Failed")

    hc_status = sync_manager.hardcover.test_connection()
    if hc_status:
        logger.info("✅ Hardcover connection: Success")
    else:
        logger.error("❌ Hardcover connection: Failed")

    return abs_status and hc_status


def show_config(config: Config) -> None:
    """Print the effective configuration with tokens masked"""
    print("=== Configuration ===")
    print(f"Config file: {config.config_path}")
    for key, value in sorted(config.get_global().items()):
        print(f"  {key}: {value}")

    print(f"\nUsers ({len(config.get_users())}):")
    for user in config.get_users():
        print(f"  - {user['id']}: {user['abs_url']}")
        for token_key in ("abs_token", "hardcover_token"):
            token = str(user.get(token_key, ""))
            masked = f"{token[:4]}…" if len(token) > 4 else "****"
            print(f"      {token_key}: {masked}")


def confirm(prompt: str, assume_yes: bool) -> bool:
    if assume_yes:
        return True
    return input(f"{prompt} (y/N): ").strip().lower() in ["y", "yes"]


def run_cron_mode(config: Config, users: List[dict], dry_run: bool, force: bool) -> None:
    """Run syncs for all users on the configured schedule until interrupted"""
    logger = logging.getLogger(__name__)

    cron_config = config.get_cron_config()
    schedule = cron_config["schedule"]
    tz = pytz.timezone(cron_config["timezone"])

    cron = croniter(schedule, datetime.now(tz))
    next_run = cron.get_next(datetime)
    logger.info(f"🕐 Cron mode: schedule '{schedule}' ({cron_config['timezone']})")
    logger.info(f"⏰ Next sync at {next_run.strftime('%Y-%m-%d %H:%M:%S %Z')}")

    try:
        while True:
            time_until_next = (next_run - datetime.now(tz)).total_seconds()

            if time_until_next > 0:
                time.sleep(min(time_until_next, 60))
                continue

            logger.info("🔄 Running scheduled sync...")
            if sync_users(config, users, dry_run, force):
                logger.info("✅ Scheduled sync completed successfully")
            else:
                logger.warning("Scheduled sync completed with errors")

            cron = croniter(schedule, datetime.now(tz))
            next_run = cron.get_next(datetime)
            logger.info(f"⏰ Next sync at {next_run.strftime('%Y-%m-%d %H:%M:%S %Z')}")

    except KeyboardInterrupt:
        logger.info("🛑 Cron mode stopped by user")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="shelfbridge",
        description="Sync reading progress from Audiobookshelf to Hardcover",
    )
    parser.add_argument("command", choices=COMMANDS, help="Command to execute")
    parser.add_argument(
        "--config",
        "-c",
        default="config/config.yaml",
        help="Path to the YAML configuration file",
    )
    parser.add_argument("--user", "-u", help="Only run for this user id")
    parser.add_argument(
        "--verbose", "-v", action="store_true", help="Enable verbose logging"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be synced without making changes",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Sync every book even when the cache shows no change",
    )
    parser.add_argument(
        "--yes", "-y", action="store_true", help="Do not ask for confirmation"
    )
    parser.add_argument(
        "--output",
        "-o",
        default="book_cache_export.json",
        help="Output file for export-cache",
    )
    return parser


def run_command(args: argparse.Namespace, config: Config) -> int:
    """Execute a parsed command; returns the process exit status"""
    if args.command == "config":
        show_config(config)
        return 0

    users = [config.get_user(args.user)] if args.user else config.get_users()
    global_config = config.get_global()

    if args.command == "sync":
        return 0 if sync_users(config, users, args.dry_run, args.force) else 1

    if args.command == "cron":
        run_cron_mode(config, users, args.dry_run, args.force)
        return 0

    if args.command == "test":
        results: Dict[str, bool] = {}
        for user in users:
            results[user["id"]] = test_connections(SyncManager(user, global_config))
        return 0 if all(results.values()) else 1

    # The cache is shared by all users, any user's manager can reach it
    sync_manager = SyncManager(users[0], global_config, dry_run=True)

    if args.command == "cache-stats":
        stats = sync_manager.get_cache_stats()
        print("📊 Book Cache Statistics:")
        print(f"   Total books: {stats['total_books']}")
        print(f"   Updated in the last 7 days: {stats['recent_books']}")
        print(f"   Cache file size: {stats['cache_size_bytes']} bytes")
        return 0

    if args.command == "clear-cache":
        if confirm("🗑️  Are you sure you want to clear the book cache?", args.yes):
            sync_manager.clear_cache()
            print("✅ Book cache cleared successfully!")
            print("📝 Next sync will be a full resync.")
        else:
            print("❌ Book cache clear cancelled.")
        return 0

    if args.command == "clear-editions":
        if confirm(
            "🔄 Clear edition mappings? Progress data is kept.", args.yes
        ):
            affected_rows = sync_manager.clear_edition_mappings()
            print(f"✅ Edition mappings cleared for {affected_rows} books!")
            print("📝 Next sync will re-fetch editions and author data.")
        else:
            print("❌ Edition mapping clear cancelled.")
        return 0

    if args.command == "export-cache":
        count = sync_manager.export_to_json(args.output)
        print(f"✅ Exported {count} books to {args.output}")
        return 0

    raise ValueError(f"Unknown command: {args.command}")


def main(argv: Optional[List[str]] = None) -> None:
    """Main CLI entry point"""
    args = build_parser().parse_args(argv)

    setup_logging(verbose=args.verbose)
    logger = logging.getLogger(__name__)

    try:
        config = Config(args.config)
        if not args.verbose:
            setup_logging(console_level=config.get_global()["log_level"])
        sys.exit(run_command(args, config))

    except ConfigError as e:
        logger.error(str(e))
        sys.exit(1)
    except KeyError as e:
        logger.error(f"{e.args[0] if e.args else e}")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Operation cancelled by user")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Application error: {str(e)}")
        if args.verbose:
            logger.exception("Full error details:")
        sys.exit(1)


if __name__ == "__main__":
    main()
