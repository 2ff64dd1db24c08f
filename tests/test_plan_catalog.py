from unittest.mock import MagicMock

from app.services.plan_catalog import build_plan_rows, load_catalog, seed_subscription_plans


class TestCatalogRows:
    def test_bundled_catalog_expands_every_period(self):
        rows = build_plan_rows(load_catalog())
        codes = {row["code"] for row in rows}

        assert len(rows) == 12
        assert {"starter-monthly", "growth-quarterly", "scale-semiannual", "enterprise-monthly"} <= codes

    def test_period_pricing(self):
        rows = {row["code"]: row for row in build_plan_rows(load_catalog())}

        assert rows["starter-monthly"]["price"] == "30.00"
        assert rows["starter-quarterly"]["price"] == "81.00"
        assert rows["starter-semiannual"]["price"] == "144.00"
        assert rows["starter-quarterly"]["billing_period_days"] == 90
        assert rows["growth-semiannual"]["features"]["discount_percent"] == 20

    def test_description_mentions_discount(self):
        rows = {row["code"]: row for row in build_plan_rows(load_catalog())}
        assert rows["scale-monthly"]["description"] == "Scale plan for 30 days."
        assert rows["scale-quarterly"]["description"] == "Scale plan with 10% discount for 90 days."

    def test_empty_catalog(self):
        assert build_plan_rows({}) == []


class TestSeedPlans:
    def test_upserts_by_code(self):
        db = MagicMock()
        db.query.return_value.filter.return_value.first.return_value = None

        written = seed_subscription_plans(db)

        assert written == 12
        assert db.add.call_count == 12
        db.query.return_value.filter.return_value.delete.assert_called_once()
        db.flush.assert_called_once()
