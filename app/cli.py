"""Operational commands: `assistly generate-renewal-invoices` and `assistly seed-plans`."""

import argparse
import sys
from typing import Optional

from app.config import settings
from app.database import SessionLocal
from app.logging_config import get_logger, setup_logging
from app.services.plan_catalog import seed_subscription_plans
from app.services.renewal_service import generate_upcoming_renewal_invoices

logger = get_logger("cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="assistly")
    commands = parser.add_subparsers(dest="command", required=True)

    renew = commands.add_parser("generate-renewal-invoices", help="Issue invoices for subscriptions expiring soon")
    renew.add_argument("--days-ahead", type=int, default=settings.renewal_days_ahead)

    commands.add_parser("seed-plans", help="Upsert the subscription plan catalog")
    return parser


def run_command(args: argparse.Namespace, session_factory=SessionLocal) -> int:
    db = session_factory()
    try:
        if args.command == "generate-renewal-invoices":
            processed = generate_upcoming_renewal_invoices(db, days_ahead=max(args.days_ahead, 0))
            db.commit()
            print(f"Processed subscriptions: {processed}")
            return processed
        if args.command == "seed-plans":
            written = seed_subscription_plans(db)
            db.commit()
            print(f"Seeded plans: {written}")
            return written
        raise ValueError(f"Unknown command: {args.command}")
    except Exception:
        db.rollback()
        logger.error(f"Command {args.command} failed", exc_info=True)
        raise
    finally:
        db.close()


def main(argv: Optional[list[str]] = None) -> int:
    setup_logging(settings.log_level)
    args = build_parser().parse_args(argv)
    run_command(args)
    return 0


if __name__ == "__main__":
    sys.exit(main())
