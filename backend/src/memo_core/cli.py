"""Admin CLI for the memo store."""
import argparse
import logging
import sys

from sqlalchemy import func, select

from .config import settings
from .counters import audit_counters, repair_counters
from .database import init_db, SessionLocal
from .models import Comment, CommentLike, Follow, Like, Memo, Share, User


def cmd_init(args):
    """Initialize the database."""
    print("Initializing database...")
    init_db()
    print("Database initialized successfully")


def cmd_stats(args):
    """Show database statistics."""
    init_db()
    db = SessionLocal()

    try:
        print("Memo Store Statistics")
        print("=" * 40)
        for model in (User, Memo, Comment):
            rows = dict(
                db.execute(select(model.deleted, func.count()).group_by(model.deleted)).all()
            )
            active, deleted = rows.get(False, 0), rows.get(True, 0)
            print(f"{model.__tablename__.capitalize()}: {active} active ({deleted} deleted)")

        for model in (Follow, Like, Share, CommentLike):
            total = db.execute(select(func.count()).select_from(model)).scalar_one()
            print(f"{model.__tablename__.replace('_', ' ').capitalize()}: {total}")
    finally:
        db.close()


def cmd_audit_counters(args):
    """Compare derived counters with their edge rows."""
    init_db()
    db = SessionLocal()

    try:
        drifts = repair_counters(db) if args.fix else audit_counters(db)

        if not drifts:
            print("All counters match their edge rows")
            return 0

        print(f"Counter drift ({len(drifts)} found):")
        print("-" * 70)
        for drift in drifts:
            print(f"  {drift.table}/{drift.record_id}.{drift.column}: stored {drift.stored}, actual {drift.actual}")

        if args.fix:
            print(f"\nRepaired {len(drifts)} counters")
            return 0
        return 1
    finally:
        db.close()


def main(argv=None):
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Memo Core - versioned memo store administration"
    )
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # init
    init_parser = subparsers.add_parser("init", help="Initialize database")
    init_parser.set_defaults(func=cmd_init)

    # stats
    stats_parser = subparsers.add_parser("stats", help="Show statistics")
    stats_parser.set_defaults(func=cmd_stats)

    # audit-counters
    audit_parser = subparsers.add_parser("audit-counters", help="Check derived counters against edges")
    audit_parser.add_argument("--fix", action="store_true", help="Rewrite drifted counters")
    audit_parser.set_defaults(func=cmd_audit_counters)

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return args.func(args) or 0


if __name__ == "__main__":
    sys.exit(main())
