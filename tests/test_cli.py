from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

from app.cli import build_parser, run_command
from app.main import seconds_until_next_run


class TestParser:
    def test_renewal_days(self):
        args = build_parser().parse_args(["generate-renewal-invoices", "--days-ahead", "5"])
        assert args.command == "generate-renewal-invoices"
        assert args.days_ahead == 5

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestRunCommand:
    @patch("app.cli.generate_upcoming_renewal_invoices", return_value=4)
    def test_renewal_commits(self, generate):
        db = MagicMock()
        args = build_parser().parse_args(["generate-renewal-invoices", "--days-ahead", "2"])

        assert run_command(args, session_factory=lambda: db) == 4

        generate.assert_called_once_with(db, days_ahead=2)
        db.commit.assert_called_once()
        db.close.assert_called_once()

    @patch("app.cli.seed_subscription_plans", side_effect=RuntimeError("no table"))
    def test_failure_rolls_back(self, _seed):
        db = MagicMock()
        with pytest.raises(RuntimeError):
            run_command(build_parser().parse_args(["seed-plans"]), session_factory=lambda: db)
        db.rollback.assert_called_once()
        db.close.assert_called_once()


class TestRenewalSchedule:
    def test_later_today(self):
        now = datetime(2025, 3, 10, 0, 30, tzinfo=timezone.utc)
        assert seconds_until_next_run(now, 1, 0) == 1800

    def test_tomorrow(self):
        now = datetime(2025, 3, 10, 1, 0, tzinfo=timezone.utc)
        assert seconds_until_next_run(now, 1, 0) == 86400
