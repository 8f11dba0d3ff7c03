"""
HTTP surface tests: status codes and JSON shapes of the blueprints.
"""

from backoffice.extensions import db
from backoffice.models import OrderLine, ProductVariant


def _line_id(order):
    return db.session.query(OrderLine.id).filter_by(order_id=order.id).scalar()


class TestHealth:
    def test_health_ok(self, client, db_session):
        resp = client.get("/health")
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["status"] == "healthy"
        assert data["checks"]["database"]["status"] == "healthy"

    def test_health_degraded_on_drift(self, client, db_session, simple_variant):
        db_session.query(ProductVariant).filter_by(id=simple_variant.id).update({"allocated_stock": 3})
        db_session.commit()

        resp = client.get("/health")

        assert resp.status_code == 200
        assert resp.get_json()["status"] == "degraded"


class TestAllocationRoutes:
    def test_run_reports_shortfall(self, client, db_session, acme, beta, simple_variant, make_order):
        make_order(acme, [(simple_variant, 6)])
        make_order(beta, [(simple_variant, 7)])

        resp = client.post("/api/allocation/run", json={})

        assert resp.status_code == 200
        data = resp.get_json()
        assert data["allocated_units"] == 10
        assert data["short_count"] == 1
        assert data["shortfall_units"] == 3

    def test_invalid_mode_is_400(self, client, db_session):
        resp = client.post("/api/allocation/run", json={"mode": "random"})
        assert resp.status_code == 400
        assert "error" in resp.get_json()

    def test_summary_unknown_product_is_404(self, client, db_session):
        assert client.get("/api/allocation/summary/9999").status_code == 404

    def test_reset(self, client, db_session, acme, simple_product, simple_variant, make_order):
        make_order(acme, [(simple_variant, 4)])
        client.post("/api/allocation/run", json={})

        resp = client.post("/api/allocation/reset", json={"product_id": simple_product.id})

        assert resp.status_code == 200
        assert resp.get_json()["released_units"] == 4
        assert resp.get_json()["allocation"]["allocated_units"] == 4


class TestOrderRoutes:
    def test_ship_then_repeat(self, client, db_session, acme, simple_variant, make_order):
        order = make_order(acme, [(simple_variant, 6)])
        client.post("/api/allocation/run", json={})
        line_id = _line_id(order)

        first = client.post(f"/api/orders/{order.id}/ship", json={"items": [{"line_id": line_id, "quantity": 6}]})
        second = client.post(f"/api/orders/{order.id}/ship", json={"items": [{"line_id": line_id, "quantity": 6}]})

        assert first.status_code == 200
        assert first.get_json()["shipped_units"] == 6
        assert first.get_json()["order_status"] == "shipped"
        assert second.status_code == 200
        assert second.get_json()["failed_count"] == 1

        detail = client.get(f"/api/orders/{order.id}").get_json()["order"]
        assert detail["lines"][0]["shipped_quantity"] == 6

    def test_ship_malformed_is_400(self, client, db_session, acme, simple_variant, make_order):
        order = make_order(acme, [(simple_variant, 6)])
        resp = client.post(f"/api/orders/{order.id}/ship", json={"items": "all"})
        assert resp.status_code == 400

    def test_unknown_order_is_404(self, client, db_session):
        assert client.get("/api/orders/9999").status_code == 404
        assert client.post("/api/orders/9999/ship-all").status_code == 404

    def test_cancel_after_ship_is_409(self, client, db_session, acme, simple_variant, make_order):
        order = make_order(acme, [(simple_variant, 6)])
        client.post("/api/allocation/run", json={})
        client.post(f"/api/orders/{order.id}/ship-all")

        resp = client.post(f"/api/orders/{order.id}/cancel", json={"reason": "Too late"})

        assert resp.status_code == 409

    def test_return_creates_statement(self, client, db_session, acme, simple_variant, make_order):
        order = make_order(acme, [(simple_variant, 6)])
        client.post("/api/allocation/run", json={})
        client.post(f"/api/orders/{order.id}/ship-all")

        resp = client.post(
            f"/api/orders/{order.id}/return",
            json={"items": [{"line_id": _line_id(order), "quantity": 2}], "reason": "Damaged"},
        )

        assert resp.status_code == 201
        data = resp.get_json()
        assert data["order"]["status"] == "partial_returned"
        assert data["statement"]["statement_type"] == "return"
        assert data["statement"]["status"] == "pending"

    def test_bulk_ship(self, client, db_session, acme, beta, simple_variant, make_order):
        a = make_order(acme, [(simple_variant, 2)])
        b = make_order(beta, [(simple_variant, 3)])
        client.post("/api/allocation/run", json={})

        resp = client.post("/api/orders/bulk-ship", json={"order_ids": [a.id, b.id]})

        assert resp.status_code == 200
        assert resp.get_json()["shipped_units"] == 5


class TestInventoryRoutes:
    def test_inbound_and_movements(self, client, db_session, simple_product, simple_variant):
        resp = client.post("/api/inventory/inbound", json={
            "product_id": simple_product.id, "quantity": 5, "reason": "Delivery",
        })
        assert resp.status_code == 201
        assert resp.get_json()["variant"]["physical_stock"] == 15

        listing = client.get(f"/api/inventory/movements?variant_id={simple_variant.id}").get_json()
        assert listing["pagination"]["total"] == 1
        assert listing["items"][0]["movement_type"] == "inbound"

        check = client.get(f"/api/inventory/ledger-check/{simple_variant.id}").get_json()
        assert check["consistent"] is True

    def test_adjust_below_zero_is_409(self, client, db_session, simple_product):
        resp = client.post("/api/inventory/adjust", json={
            "product_id": simple_product.id, "delta": -50, "reason": "Shrink",
        })
        assert resp.status_code == 409

    def test_sample_out_and_return(self, client, db_session, simple_product):
        out = client.post("/api/inventory/samples/out", json={"product_id": simple_product.id, "quantity": 2})
        back = client.post("/api/inventory/samples/return", json={"product_id": simple_product.id, "quantity": 2})
        assert out.status_code == 200
        assert back.status_code == 200
        assert back.get_json()["variant"]["physical_stock"] == 10

    def test_audit(self, client, db_session, simple_product):
        resp = client.post("/api/inventory/audit", json={
            "actual_counts": [{"product_id": simple_product.id, "actual": 8}],
        })
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["discrepancies"] == 1
        assert data["corrections"][0]["difference"] == -2

    def test_sync_check_and_fix(self, client, db_session, simple_product, simple_variant):
        db_session.query(ProductVariant).filter_by(id=simple_variant.id).update({"allocated_stock": 4})
        db_session.commit()

        check = client.get(f"/api/inventory/sync-check?product_id={simple_product.id}")
        assert check.status_code == 200
        assert check.get_json()["sync"]["needs_fix"] is True

        drift = client.get("/api/inventory/drift").get_json()
        assert drift["count"] == 1

        fix = client.post("/api/inventory/sync-check/fix", json={"product_id": simple_product.id})
        assert fix.status_code == 200
        assert fix.get_json()["allocated_after"] == 0

    def test_sync_check_unknown_variant_is_404(self, client, db_session, simple_product):
        resp = client.get(f"/api/inventory/sync-check?product_id={simple_product.id}&color=pink")
        assert resp.status_code == 404


class TestStatementAndMileageRoutes:
    def test_deduction_flow(self, client, db_session, acme):
        created = client.post("/api/statements/deduction", json={
            "company_name": acme.company_name,
            "items": [{"product_name": "Tee", "quantity": 2, "unit_price": 1500}],
        })
        assert created.status_code == 201
        statement_id = created.get_json()["statement"]["id"]

        first = client.post("/api/statements/deduction/process", json={"statement_ids": [statement_id]})
        second = client.post("/api/statements/deduction/process", json={"statement_ids": [statement_id]})

        assert first.get_json()["processed_count"] == 1
        assert first.get_json()["total_amount"] == 3000
        assert second.status_code == 200
        assert second.get_json()["failed_count"] == 1

        mileage = client.get(f"/api/mileage/{acme.id}").get_json()
        assert mileage["balance"] == -3000
        assert mileage["pagination"]["total"] == 1

    def test_reject_then_get(self, client, db_session, acme):
        created = client.post("/api/statements/deduction", json={
            "company_name": acme.company_name, "items": [], "total_amount": 100,
        })
        statement_id = created.get_json()["statement"]["id"]

        assert client.post(f"/api/statements/{statement_id}/reject", json={"reason": "dup"}).status_code == 200
        assert client.post(f"/api/statements/{statement_id}/reject", json={}).status_code == 409
        assert client.get(f"/api/statements/{statement_id}").get_json()["statement"]["status"] == "rejected"

    def test_manual_mileage_overdraw_is_409(self, client, db_session, acme):
        resp = client.post("/api/mileage", json={
            "customer_id": acme.id, "amount": 100, "type": "spend", "description": "Redeem",
        })
        assert resp.status_code == 409

    def test_manual_mileage_and_verify(self, client, db_session, acme):
        resp = client.post("/api/mileage", json={
            "customer_id": acme.id, "amount": 100, "type": "earn", "description": "Promo",
        })
        assert resp.status_code == 201
        assert resp.get_json()["balance"] == 100

        verify = client.get(f"/api/mileage/{acme.id}/verify").get_json()
        assert verify["needs_fix"] is False

        recompute = client.post(f"/api/mileage/{acme.id}/recompute")
        assert recompute.status_code == 200
        assert recompute.get_json()["fixed"] is False

    def test_unknown_customer_is_404(self, client, db_session):
        assert client.get("/api/mileage/9999").status_code == 404
