"""
Allocation engine tests: FIFO and priority reservation, idempotency,
release and reset.
"""

import pytest

from backoffice.extensions import db
from backoffice.models import Order, OrderLine, ProductVariant, StockMovement
from backoffice.services import allocation_service
from backoffice.validation import ValidationError


def _line(order):
    return db.session.query(OrderLine).filter_by(order_id=order.id).populate_existing().one()


def _variant(variant_id):
    return db.session.get(ProductVariant, variant_id, populate_existing=True)


class TestFifoAllocation:
    def test_oldest_order_is_served_first(self, db_session, acme, beta, simple_variant, make_order):
        order_x = make_order(acme, [(simple_variant, 6)])
        order_y = make_order(beta, [(simple_variant, 7)])

        result = allocation_service.allocate()

        assert _line(order_x).allocated_quantity == 6
        assert _line(order_y).allocated_quantity == 4
        assert _variant(simple_variant.id).allocated_stock == 10
        assert result.allocated_units == 10
        assert len(result.short_lines) == 1
        assert result.short_lines[0]["order_id"] == order_y.id
        assert result.short_lines[0]["shortfall"] == 3

    def test_allocation_writes_no_ledger_rows(self, db_session, acme, simple_variant, make_order):
        make_order(acme, [(simple_variant, 6)])
        allocation_service.allocate()
        assert db_session.query(StockMovement).count() == 0
        assert _variant(simple_variant.id).physical_stock == 10

    def test_rerun_with_unchanged_stock_is_a_no_op(self, db_session, acme, beta, simple_variant, make_order):
        order_x = make_order(acme, [(simple_variant, 6)])
        order_y = make_order(beta, [(simple_variant, 7)])
        allocation_service.allocate()

        second = allocation_service.allocate()

        assert second.allocated_units == 0
        assert _line(order_x).allocated_quantity == 6
        assert _line(order_y).allocated_quantity == 4
        assert _variant(simple_variant.id).allocated_stock == 10

    def test_new_stock_tops_up_short_line(self, db_session, acme, beta, simple_product, simple_variant, make_order):
        from backoffice.services import stock_ledger_service

        make_order(acme, [(simple_variant, 6)])
        order_y = make_order(beta, [(simple_variant, 7)])
        allocation_service.allocate()

        stock_ledger_service.receive_stock(
            product_id=simple_product.id, color=None, size=None, quantity=5, reason="Restock",
        )
        result = allocation_service.allocate()

        assert result.allocated_units == 3
        assert _line(order_y).allocated_quantity == 7
        assert _variant(simple_variant.id).allocated_stock == 13

    def test_allocation_moves_pending_order_to_processing(self, db_session, acme, simple_variant, make_order):
        order = make_order(acme, [(simple_variant, 2)])
        allocation_service.allocate()
        assert db.session.get(Order, order.id, populate_existing=True).status == "processing"

    def test_ineligible_orders_are_skipped(self, db_session, acme, simple_variant, make_order):
        make_order(acme, [(simple_variant, 2)], status="cancelled")
        make_order(acme, [(simple_variant, 2)], status="shipped")
        result = allocation_service.allocate()
        assert result.lines_considered == 0
        assert _variant(simple_variant.id).allocated_stock == 0

    def test_no_stock_means_shortfall_not_error(self, db_session, acme, make_product, make_order):
        product = make_product("EMPTY", stock=0)
        order = make_order(acme, [(product.variants[0], 4)])
        result = allocation_service.allocate()
        assert result.errors == []
        assert result.short_lines[0]["shortfall"] == 4
        assert _line(order).allocated_quantity == 0

    def test_product_filter(self, db_session, acme, simple_variant, make_product, make_order):
        other = make_product("OTHER", stock=5)
        make_order(acme, [(simple_variant, 2)])
        other_order = make_order(acme, [(other.variants[0], 2)])

        allocation_service.allocate(product_id=other.id)

        assert _variant(simple_variant.id).allocated_stock == 0
        assert _line(other_order).allocated_quantity == 2

    def test_invalid_mode(self, db_session):
        with pytest.raises(ValidationError):
            allocation_service.allocate(mode="lottery")


class TestPriorityAllocation:
    def test_priority_level_beats_age(self, db_session, make_customer, simple_variant, make_order):
        walk_in = make_customer("Walk In", priority_level=None)
        vip = make_customer("VIP", priority_level=1)
        old = make_order(walk_in, [(simple_variant, 8)])
        new = make_order(vip, [(simple_variant, 8)])

        allocation_service.allocate(mode="priority")

        assert _line(new).allocated_quantity == 8
        assert _line(old).allocated_quantity == 2

    def test_customer_type_breaks_priority_ties(self, db_session, make_customer, simple_variant, make_order):
        retailer = make_customer("Retail Co", customer_type="retailer")
        distributor = make_customer("Main Dist", customer_type="main_distributor")
        retail_order = make_order(retailer, [(simple_variant, 6)])
        dist_order = make_order(distributor, [(simple_variant, 6)])

        allocation_service.allocate(mode="priority")

        assert _line(dist_order).allocated_quantity == 6
        assert _line(retail_order).allocated_quantity == 4

    def test_larger_order_total_breaks_type_ties(self, db_session, make_customer, simple_variant, make_order):
        a = make_customer("Shop A")
        b = make_customer("Shop B")
        small = make_order(a, [(simple_variant, 6)], unit_price=1000)
        large = make_order(b, [(simple_variant, 6)], unit_price=5000)

        allocation_service.allocate(mode="priority")

        assert _line(large).allocated_quantity == 6
        assert _line(small).allocated_quantity == 4


class TestReleaseAndReset:
    def test_release_order_allocation(self, db_session, acme, simple_variant, make_order):
        order = make_order(acme, [(simple_variant, 6)])
        allocation_service.allocate()

        released = allocation_service.release_order_allocation(order.id)

        assert released == 6
        assert _line(order).allocated_quantity == 0
        assert _variant(simple_variant.id).allocated_stock == 0

    def test_reset_and_reallocate_rebuilds_in_fifo_order(
        self, db_session, make_customer, simple_variant, make_order
    ):
        walk_in = make_customer("Walk In")
        vip = make_customer("VIP", priority_level=1)
        old = make_order(walk_in, [(simple_variant, 8)])
        new = make_order(vip, [(simple_variant, 8)])
        allocation_service.allocate(mode="priority")

        result = allocation_service.reset_and_reallocate()

        assert result["released_units"] == 10
        assert result["allocation"]["allocated_units"] == 10
        assert _line(old).allocated_quantity == 8
        assert _line(new).allocated_quantity == 2
        assert _variant(simple_variant.id).allocated_stock == 10

    def test_summary(self, db_session, acme, beta, simple_product, simple_variant, make_order):
        make_order(acme, [(simple_variant, 6)])
        make_order(beta, [(simple_variant, 7)])
        allocation_service.allocate()

        summary = allocation_service.allocation_summary(simple_product.id)

        assert len(summary) == 1
        assert summary[0]["total_ordered"] == 13
        assert summary[0]["total_allocated"] == 10
        assert summary[0]["pending_allocation"] == 3
