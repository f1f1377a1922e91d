#!/usr/bin/env python3
"""
Main entry point for the mailbox sync service.

``serve`` (default) starts the scheduler and the web API; ``sync-once`` runs
a single Gmail sync cycle for every connected user, or for one user.
"""

import argparse
import json
import sys
from typing import List, Optional


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Incremental Gmail ingestion service")
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("serve", help="Run the scheduler and web API (default)")
    once = sub.add_parser("sync-once", help="Run one sync cycle and exit")
    once.add_argument("--user-id", help="Only sync this user")
    once.add_argument("--force-full", action="store_true", help="Discard stored cursors and bootstrap")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point for the mailbox sync service.
    """
    args = build_parser().parse_args(argv)

    from sync_manager.app import SyncServiceManager

    if args.command == "sync-once":
        from sync_manager.utils.logger import setup_script_logging

        logger = setup_script_logging("sync_once")
        manager = SyncServiceManager(configure_logging=False)
        try:
            user_ids = [args.user_id] if args.user_id else None
            stats = manager.scheduler_manager.run_cycle(user_ids, force_full_sync=args.force_full, trigger="cli")
        finally:
            manager.shutdown()
        logger.info("Sync cycle finished")
        print(json.dumps(stats, indent=2, default=str))
        return 1 if stats["errors"] else 0

    app_manager = SyncServiceManager()
    app_manager.run()
    return 0


if __name__ == "__main__":
    sys.exit(main())
