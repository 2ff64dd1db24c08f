from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from conftest import NOW, make_plan, make_subscription

from app.services.subscription_service import (
    has_chat_quota,
    increment_chat_usage,
    partition_assistant_ids,
    provision_default_workspace_for_user,
    roll_billing_period,
    sync_assistant_access,
)


def quota_subscription(used: int):
    return make_subscription(make_plan(included_chats=500), chat_count_current_period=used)


class TestChatQuota:
    def test_last_included_chat_is_answered(self):
        subscription = quota_subscription(500)
        assert has_chat_quota(subscription, 500, now=NOW) is True

    def test_chat_past_the_quota_is_not_answered(self):
        subscription = quota_subscription(501)
        assert has_chat_quota(subscription, 501, now=NOW) is False

    def test_without_counted_value_uses_stored_usage(self):
        assert has_chat_quota(quota_subscription(499), None, now=NOW) is True
        assert has_chat_quota(quota_subscription(500), None, now=NOW) is False

    def test_inactive_subscription_has_no_quota(self):
        subscription = make_subscription(make_plan(included_chats=500), status="expired")
        assert has_chat_quota(subscription, 1, now=NOW) is False

    def test_missing_subscription(self):
        assert has_chat_quota(None, 1, now=NOW) is False


class TestIncrementChatUsage:
    def _db(self, subscription, returned):
        db = MagicMock()
        db.query.return_value.filter.return_value.first.return_value = subscription
        db.execute.return_value.first.return_value = returned
        return db

    def test_returns_value_after_increment(self):
        subscription = quota_subscription(499)
        db = self._db(subscription, (500,))

        counted = increment_chat_usage(db, SimpleNamespace(id=3), now=NOW)

        assert counted == 500
        assert subscription.chat_count_current_period == 500
        params = db.execute.call_args[0][1]
        assert params == {"count": 1, "id": subscription.id}

    def test_skips_inactive_subscription(self):
        db = self._db(make_subscription(make_plan(), status="pending_payment"), (1,))
        assert increment_chat_usage(db, SimpleNamespace(id=3), now=NOW) is None
        db.execute.assert_not_called()

    def test_skips_subscription_that_has_not_started(self):
        subscription = make_subscription(make_plan(), starts_at=NOW + timedelta(days=5))
        db = self._db(subscription, (1,))
        assert increment_chat_usage(db, SimpleNamespace(id=3), now=NOW) is None
        db.execute.assert_not_called()

    def test_skips_zero_quantity(self):
        db = self._db(make_subscription(make_plan(), quantity=0), (1,))
        assert increment_chat_usage(db, SimpleNamespace(id=3), now=NOW) is None
        db.execute.assert_not_called()

    def test_non_positive_count_is_ignored(self):
        db = MagicMock()
        assert increment_chat_usage(db, SimpleNamespace(id=3), count=0) is None
        db.query.assert_not_called()


class TestAssistantEntitlement:
    def test_lowest_ids_win(self):
        assert partition_assistant_ids([20, 10], 1) == ([10], [20])

    def test_zero_limit_denies_everything(self):
        assert partition_assistant_ids([3, 1, 2], 0) == ([], [1, 2, 3])

    def test_limit_above_count(self):
        assert partition_assistant_ids([5, 4], 3) == ([4, 5], [])

    def test_no_subscription_deactivates_all(self):
        db = MagicMock()
        with patch("app.services.subscription_service.get_subscription", return_value=None):
            sync_assistant_access(db, SimpleNamespace(id=3), now=NOW)

        update = db.query.return_value.filter.return_value.update
        update.assert_called_once()
        assert list(update.call_args[0][0].values()) == [False]

    def test_expired_subscription_deactivates_all(self):
        db = MagicMock()
        expired = make_subscription(make_plan(), expires_at=NOW - timedelta(days=1))
        with patch("app.services.subscription_service.get_subscription", return_value=expired):
            sync_assistant_access(db, SimpleNamespace(id=3), now=NOW)

        assert expired.status == "expired"
        db.query.return_value.filter.return_value.update.assert_called_once()


class TestRollBillingPeriod:
    def test_no_change_inside_period(self, subscription):
        assert roll_billing_period(subscription, NOW) is False

    def test_rolls_over_elapsed_periods(self, plan):
        subscription = make_subscription(
            plan,
            chat_count_current_period=120,
            chat_period_started_at=NOW - timedelta(days=65),
            chat_period_ends_at=NOW - timedelta(days=35),
            expires_at=NOW + timedelta(days=100),
        )

        assert roll_billing_period(subscription, NOW) is True
        assert subscription.chat_count_current_period == 0
        assert subscription.chat_period_started_at == NOW - timedelta(days=5)
        assert subscription.chat_period_ends_at == NOW + timedelta(days=25)

        assert roll_billing_period(subscription, NOW) is False

    def test_expires_lapsed_subscription(self, plan):
        subscription = make_subscription(plan, expires_at=NOW - timedelta(minutes=1))
        assert roll_billing_period(subscription, NOW) is True
        assert subscription.status == "expired"


class TestProvisioning:
    def test_creates_company_for_new_user(self):
        db = MagicMock()
        db.query.return_value.filter.return_value.first.return_value = None
        user = SimpleNamespace(id=42, name="Nodira Salon")

        with patch("app.services.subscription_service.ensure_current_subscription") as ensure:
            company = provision_default_workspace_for_user(db, user)

        assert company.name == "Nodira Salon Company"
        assert company.slug == "nodira-salon-42"
        db.add.assert_called_once_with(company)
        ensure.assert_called_once_with(db, company)

    def test_reuses_existing_company(self):
        existing = SimpleNamespace(id=3, user_id=42)
        db = MagicMock()
        db.query.return_value.filter.return_value.first.return_value = existing

        with patch("app.services.subscription_service.ensure_current_subscription"):
            assert provision_default_workspace_for_user(db, SimpleNamespace(id=42, name="x")) is existing
        db.add.assert_not_called()
