"""
Stock ledger tests.

Every physical stock change must write exactly one append-only ledger row,
and initial_stock + SUM(quantity_delta) must always equal physical_stock.
"""

import pytest

from backoffice.extensions import db
from backoffice.models import ProductVariant, StockMovement
from backoffice.models.stock import MOVEMENT_INBOUND, MOVEMENT_MANUAL_ADJUSTMENT, MOVEMENT_SAMPLE_OUT
from backoffice.services import reconciliation_service, stock_ledger_service
from backoffice.services.stock_ledger_service import apply_stock_change
from backoffice.validation import (
    ConsistencyError,
    InsufficientStockError,
    NotFoundError,
    ValidationError,
)


def _movements(variant_id):
    return (
        db.session.query(StockMovement)
        .filter_by(variant_id=variant_id)
        .order_by(StockMovement.id)
        .all()
    )


class TestCatalogSeeding:
    def test_simple_product_gets_one_blank_variant(self, db_session, simple_product):
        variants = simple_product.variants
        assert len(variants) == 1
        assert variants[0].color == ""
        assert variants[0].size == ""
        assert variants[0].physical_stock == 10
        assert variants[0].initial_stock == 10
        assert variants[0].allocated_stock == 0

    def test_opening_stock_writes_no_ledger_rows(self, db_session, simple_variant):
        assert _movements(simple_variant.id) == []

    def test_variants_are_unique_per_option(self, db_session):
        with pytest.raises(ValidationError):
            stock_ledger_service.create_product(
                code="DUP",
                name="Dup",
                variants=[{"color": "red", "size": "M"}, {"color": "red", "size": "M"}],
            )
        db_session.rollback()

    def test_find_variant_treats_none_as_blank(self, db_session, simple_product):
        variant = stock_ledger_service.find_variant(simple_product.id, None, None)
        assert variant.id == simple_product.variants[0].id

    def test_find_variant_missing_option(self, db_session, simple_product):
        with pytest.raises(NotFoundError):
            stock_ledger_service.find_variant(simple_product.id, "green", "XL")


class TestDirectMovements:
    def test_receive_stock_writes_inbound_row(self, db_session, simple_product):
        change = stock_ledger_service.receive_stock(
            product_id=simple_product.id, color=None, size=None, quantity=5, reason="Supplier delivery",
        )
        assert change.variant.physical_stock == 15
        assert change.movement.quantity_delta == 5
        assert change.movement.movement_type == MOVEMENT_INBOUND
        assert change.movement.balance_after == 15

    def test_receive_stock_creates_new_option(self, db_session, simple_product):
        change = stock_ledger_service.receive_stock(
            product_id=simple_product.id, color="navy", size="L", quantity=3, reason="New colourway",
        )
        assert change.variant.color == "navy"
        assert change.variant.physical_stock == 3
        assert change.variant.initial_stock == 0
        report = reconciliation_service.verify_stock_ledger(change.variant.id)
        assert report["consistent"] is True

    def test_receive_requires_reason(self, db_session, simple_product):
        with pytest.raises(ValidationError):
            stock_ledger_service.receive_stock(
                product_id=simple_product.id, color=None, size=None, quantity=5, reason="  ",
            )

    @pytest.mark.parametrize("quantity", [0, -1, 1.5, "1e3", True])
    def test_receive_rejects_bad_quantities(self, db_session, simple_product, quantity):
        with pytest.raises(ValidationError):
            stock_ledger_service.receive_stock(
                product_id=simple_product.id, color=None, size=None, quantity=quantity, reason="x",
            )

    def test_adjust_below_zero_is_rejected(self, db_session, simple_product, simple_variant):
        with pytest.raises(InsufficientStockError):
            stock_ledger_service.adjust_stock(
                product_id=simple_product.id, color=None, size=None, delta=-11, reason="Shrink",
            )
        variant = db.session.get(ProductVariant, simple_variant.id, populate_existing=True)
        assert variant.physical_stock == 10
        assert _movements(variant.id) == []

    def test_adjust_below_zero_allowed_when_configured(self, app, db_session, simple_product, simple_variant):
        app.config["ALLOW_NEGATIVE_PHYSICAL_STOCK"] = True
        try:
            change = stock_ledger_service.adjust_stock(
                product_id=simple_product.id, color=None, size=None, delta=-12, reason="Write-off",
            )
        finally:
            app.config["ALLOW_NEGATIVE_PHYSICAL_STOCK"] = False
        assert change.variant.physical_stock == -2
        assert change.movement.movement_type == MOVEMENT_MANUAL_ADJUSTMENT

    def test_sample_out_uses_only_unreserved_stock(self, db_session, simple_product, simple_variant):
        apply_stock_change(variant_id=simple_variant.id, allocated_delta=8, require_available=True)
        db_session.commit()

        with pytest.raises(InsufficientStockError) as exc_info:
            stock_ledger_service.sample_out(
                product_id=simple_product.id, color=None, size=None, quantity=3,
            )
        assert exc_info.value.available == 2

        change = stock_ledger_service.sample_out(
            product_id=simple_product.id, color=None, size=None, quantity=2, reference_id="SAMPLE-1",
        )
        assert change.variant.physical_stock == 8
        assert change.variant.allocated_stock == 8
        assert change.movement.movement_type == MOVEMENT_SAMPLE_OUT
        assert change.movement.quantity_delta == -2

    def test_sample_round_trip_keeps_ledger_consistent(self, db_session, simple_product, simple_variant):
        stock_ledger_service.sample_out(product_id=simple_product.id, color=None, size=None, quantity=4)
        stock_ledger_service.sample_return(product_id=simple_product.id, color=None, size=None, quantity=3)

        report = reconciliation_service.verify_stock_ledger(simple_variant.id)
        assert report["physical_stock"] == 9
        assert report["ledger_sum"] == -1
        assert report["consistent"] is True


class TestPrimitiveGuards:
    def test_release_more_than_allocated_is_a_consistency_error(self, db_session, simple_variant):
        with pytest.raises(ConsistencyError):
            apply_stock_change(variant_id=simple_variant.id, allocated_delta=-1)
        db_session.rollback()

    def test_reservation_cannot_exceed_available(self, db_session, simple_variant):
        with pytest.raises(InsufficientStockError):
            apply_stock_change(variant_id=simple_variant.id, allocated_delta=11, require_available=True)
        db_session.rollback()

    def test_physical_change_requires_movement_type(self, db_session, simple_variant):
        with pytest.raises(ValidationError):
            apply_stock_change(variant_id=simple_variant.id, physical_delta=1)

    def test_unknown_variant(self, db_session):
        with pytest.raises(NotFoundError):
            apply_stock_change(variant_id=9999, allocated_delta=1)
        db_session.rollback()


class TestLedgerCheck:
    def test_detects_out_of_band_edit(self, db_session, simple_variant):
        db_session.query(ProductVariant).filter_by(id=simple_variant.id).update({"physical_stock": 7})
        db_session.commit()

        report = reconciliation_service.verify_stock_ledger(simple_variant.id)
        assert report["consistent"] is False
        assert report["drift"] == -3

        with pytest.raises(ConsistencyError):
            reconciliation_service.verify_stock_ledger(simple_variant.id, strict=True)


class TestMovementListing:
    def test_newest_first_with_pagination(self, db_session, simple_product, simple_variant):
        for quantity in (1, 2, 3):
            stock_ledger_service.receive_stock(
                product_id=simple_product.id, color=None, size=None, quantity=quantity, reason="Restock",
            )

        page = stock_ledger_service.list_movements(variant_id=simple_variant.id, page=1, limit=2)
        assert [row["quantity_delta"] for row in page["items"]] == [3, 2]
        assert page["pagination"] == {"page": 1, "limit": 2, "total": 3, "total_pages": 2}

    def test_rejects_unknown_movement_type(self, db_session):
        with pytest.raises(ValidationError):
            stock_ledger_service.list_movements(movement_type="teleport")
