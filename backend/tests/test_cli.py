"""
Operator CLI tests.
"""

from backoffice.extensions import db
from backoffice.models import Customer, ProductVariant


class TestOrdersCommands:
    def test_allocate_prints_short_lines(self, app, db_session, acme, beta, simple_variant, make_order):
        make_order(acme, [(simple_variant, 6)])
        make_order(beta, [(simple_variant, 7)])

        result = app.test_cli_runner().invoke(args=["orders", "allocate"])

        assert result.exit_code == 0
        assert "10 units reserved" in result.output
        assert "short 3" in result.output

    def test_ship_all_unknown_order(self, app, db_session):
        result = app.test_cli_runner().invoke(args=["orders", "ship-all", "9999"])
        assert result.exit_code != 0
        assert "not found" in result.output


class TestStockCommands:
    def test_drift_and_fix(self, app, db_session, simple_product, simple_variant):
        db_session.query(ProductVariant).filter_by(id=simple_variant.id).update({"allocated_stock": 2})
        db_session.commit()
        runner = app.test_cli_runner()

        listed = runner.invoke(args=["stock", "drift"])
        fixed = runner.invoke(args=["stock", "fix-drift", "--product-id", str(simple_product.id)])

        assert listed.exit_code == 0
        assert str(simple_variant.id) in listed.output
        assert fixed.exit_code == 0
        assert "2 -> 0" in fixed.output
        assert db.session.get(ProductVariant, simple_variant.id, populate_existing=True).allocated_stock == 0

    def test_verify_ledger_strict_fails_on_mismatch(self, app, db_session, simple_variant):
        db_session.query(ProductVariant).filter_by(id=simple_variant.id).update({"physical_stock": 1})
        db_session.commit()

        result = app.test_cli_runner().invoke(
            args=["stock", "verify-ledger", "--variant-id", str(simple_variant.id), "--strict"]
        )

        assert result.exit_code != 0


class TestMileageCommands:
    def test_verify_then_recompute(self, app, db_session, acme):
        db_session.query(Customer).filter_by(id=acme.id).update({"mileage_balance": 50})
        db_session.commit()
        runner = app.test_cli_runner()

        verify = runner.invoke(args=["mileage", "verify"])
        recompute = runner.invoke(args=["mileage", "recompute", "--customer-id", str(acme.id)])

        assert "FAIL" in verify.output
        assert recompute.exit_code == 0
        assert "50 -> 0" in recompute.output
