"""
finsync command-line entry point.

Runs one sync operation against the configured API (and Supabase, when
configured) using the credentials in FINSYNC_TOKEN / FINSYNC_USER_ID.

  finsync status
  finsync pull [--last-write-wins]
  finsync push [--all]
  finsync sync [--last-write-wins]
  finsync pending
  finsync secondary
  finsync restore [--last-write-wins]
  finsync queue [--clear]
  finsync dead-letters [--retry | --discard]
  finsync audit
"""

import argparse
import logging
import sys

from . import config
from .api import APIClient
from .auth import AuthSession
from .database import Database
from .mutation_queue import MutationQueue
from .supabase_client import SupabaseStore
from .sync import SyncService

log = logging.getLogger("finsync")


def setup_logging(level: str = None):
    """Configure application logging with rotating file handler."""
    from logging.handlers import RotatingFileHandler

    config.LOG_PATH.parent.mkdir(parents=True, exist_ok=True)

    fmt = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # Rotating file handler, 5 MB x 3 backups
    file_handler = RotatingFileHandler(
        str(config.LOG_PATH),
        maxBytes=config.LOG_MAX_BYTES,
        backupCount=config.LOG_BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setFormatter(fmt)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(fmt)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(file_handler)
    root.addHandler(console_handler)
    root.setLevel(level or config.LOG_LEVEL)

    # Suppress noisy libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("hpack").setLevel(logging.WARNING)


def build_service(db_path=None) -> SyncService:
    """Wire the database, remotes and queue into one SyncService."""
    db = Database(db_path or config.DB_PATH)
    db.connect()
    db.initialize()

    auth = AuthSession(config.AUTH_TOKEN, config.AUTH_USER_ID)
    api = APIClient(auth)
    supabase = SupabaseStore(auth) if config.USE_SUPABASE else None
    return SyncService(db, api, auth, supabase=supabase, mutation_queue=MutationQueue(db))


def _print_result(result) -> int:
    print(f"{result.operation}: {result.status}")
    for name, count in result.kinds.items():
        print(f"  {name:<22} {count}")
    if result.repaired:
        print(f"  references repaired: {result.repaired}")
    for name, message in result.errors.items():
        print(f"  ! {name}: {message}")
    return 0 if result.ok else 1


def _print_entries(entries) -> None:
    for e in entries:
        line = f"  {e.enqueued_at}  {e.operation:<6} {e.kind} #{e.local_id} -> {e.remote}"
        if e.attempts:
            line += f"  (attempts: {e.attempts}, last error: {e.last_error})"
        print(line)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=config.APP_NAME, description="Finance tracker sync")
    parser.add_argument("--db", help="Path to the SQLite database")
    parser.add_argument("--log-level", help="Logging level (default from FINSYNC_LOG_LEVEL)")
    sub = parser.add_subparsers(dest="command", required=True)

    lww = argparse.ArgumentParser(add_help=False)
    lww.add_argument("--last-write-wins", action="store_true",
                     help="Keep local records edited more recently than the remote copy")

    sub.add_parser("status", help="Show queue and last sync state")
    sub.add_parser("pull", parents=[lww], help="Replace local data with the server copy")
    push = sub.add_parser("push", help="Upload local records through the migration endpoint")
    push.add_argument("--all", action="store_true", help="Include records already on the server")
    sub.add_parser("sync", parents=[lww], help="Send local changes, then pull")
    sub.add_parser("pending", help="Create unsynced records one by one, then repair references")
    sub.add_parser("secondary", help="Mirror every local record into Supabase")
    sub.add_parser("restore", parents=[lww], help="Replace local data with the Supabase copy")
    q = sub.add_parser("queue", help="Replay queued changes")
    q.add_argument("--clear", action="store_true", help="Drop queued changes instead of sending them")
    dead = sub.add_parser("dead-letters", help="List changes that gave up retrying")
    group = dead.add_mutually_exclusive_group()
    group.add_argument("--retry", action="store_true", help="Put them back on the queue")
    group.add_argument("--discard", action="store_true", help="Drop them")
    sub.add_parser("audit", help="Compare API and Supabase coverage")
    return parser


def main(argv=None) -> int:
    """Application entry point."""
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)
    log.info(f"{config.APP_NAME} {config.APP_VERSION}: {args.command}")

    service = build_service(args.db)
    try:
        # Dropping the queue must not replay it first
        if args.command == "queue" and args.clear:
            service.mutations.load()
            print(f"dropped {service.mutations.clear()}")
            return 0

        service.startup()

        if args.command == "status":
            for key, value in service.status().items():
                print(f"{key:<20} {value}")
            return 0

        if args.command == "pull":
            return _print_result(service.pull_all(last_write_wins=args.last_write_wins))
        if args.command == "push":
            return _print_result(service.push_all(include_synced=args.all))
        if args.command == "sync":
            return _print_result(service.full_sync(last_write_wins=args.last_write_wins))
        if args.command == "pending":
            return _print_result(service.push_pending())
        if args.command == "secondary":
            return _print_result(service.push_secondary())
        if args.command == "restore":
            return _print_result(service.pull_secondary(last_write_wins=args.last_write_wins))

        if args.command == "queue":
            result = service.process_queue()
            if result is None:
                print("Not authenticated (set FINSYNC_TOKEN)")
                return 1
            print(f"replayed {result.succeeded}, failed {result.failed}, "
                  f"dead-lettered {result.dead_lettered}, remaining {result.remaining}")
            return 0 if result.ok else 1

        if args.command == "dead-letters":
            if args.retry:
                print(f"re-queued {service.mutations.retry_dead_letters()}")
            elif args.discard:
                print(f"discarded {service.mutations.discard_dead_letters()}")
            else:
                _print_entries(service.mutations.dead_letters())
            return 0

        if args.command == "audit":
            report = service.audit()
            for label, bucket in (("api only", report.api_only),
                                  ("supabase only", report.supabase_only),
                                  ("unsynced", report.unsynced),
                                  ("supabase orphans", report.remote_orphans),
                                  ("errors", report.errors)):
                for name, items in bucket.items():
                    print(f"{label:<18} {name:<22} {items}")
            if report.consistent:
                print("consistent")
            return 0 if report.consistent else 1
    finally:
        service.stop()
        service.db.close()
    return 2


if __name__ == "__main__":
    sys.exit(main())
