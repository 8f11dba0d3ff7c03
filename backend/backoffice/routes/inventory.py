# backend/backoffice/routes/inventory.py
"""
Inventory routes: stock ledger movements, physical audit and reconciliation.

Every physical change goes through the stock ledger service, so each
endpoint here either writes exactly one ledger row per affected variant
or none at all.

Batch endpoints (audit) answer 200 with per-item results even when some
items fail.
"""
from flask import Blueprint, current_app, jsonify, request

from ..extensions import db
from ..services import reconciliation_service, stock_ledger_service
from ..validation import ConflictError, NotFoundError, ValidationError, require_int


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")


def _change_payload(change) -> dict:
    return {
        "variant": change.variant.to_dict(),
        "movement": change.movement.to_dict() if change.movement else None,
    }


def _variant_key(source) -> tuple[int, str | None, str | None]:
    return (
        require_int(source.get("product_id"), "product_id"),
        source.get("color"),
        source.get("size"),
    )


# =============================================================================
# MOVEMENTS
# =============================================================================

@inventory_bp.post("/inbound")
def inbound_route():
    """
    Receive stock into a variant (created on first receipt).

    Request body:
    {
        "product_id": 1,
        "color": "black",   (optional)
        "size": "M",        (optional)
        "quantity": 10,
        "reason": "Supplier delivery"
    }

    Returns:
        201: variant and ledger entry
        400: invalid input
        404: product not found
    """
    data = request.get_json(silent=True) or {}
    try:
        product_id, color, size = _variant_key(data)
        change = stock_ledger_service.receive_stock(
            product_id=product_id,
            color=color,
            size=size,
            quantity=data.get("quantity"),
            reason=data.get("reason"),
        )
        return jsonify(_change_payload(change)), 201
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to receive stock")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.post("/adjust")
def adjust_route():
    """
    Signed manual adjustment of physical stock.

    Request body: {"product_id", "color", "size", "delta": -2, "reason": "Damaged"}

    Returns:
        200: variant and ledger entry
        409: adjustment would take physical stock below zero
    """
    data = request.get_json(silent=True) or {}
    try:
        product_id, color, size = _variant_key(data)
        change = stock_ledger_service.adjust_stock(
            product_id=product_id,
            color=color,
            size=size,
            delta=data.get("delta"),
            reason=data.get("reason"),
        )
        return jsonify(_change_payload(change)), 200
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to adjust stock")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.post("/samples/out")
def sample_out_route():
    data = request.get_json(silent=True) or {}
    try:
        product_id, color, size = _variant_key(data)
        change = stock_ledger_service.sample_out(
            product_id=product_id,
            color=color,
            size=size,
            quantity=data.get("quantity"),
            reference_id=data.get("reference_id"),
            notes=data.get("notes"),
        )
        return jsonify(_change_payload(change)), 200
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to record sample out")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.post("/samples/return")
def sample_return_route():
    data = request.get_json(silent=True) or {}
    try:
        product_id, color, size = _variant_key(data)
        change = stock_ledger_service.sample_return(
            product_id=product_id,
            color=color,
            size=size,
            quantity=data.get("quantity"),
            reference_id=data.get("reference_id"),
            notes=data.get("notes"),
        )
        return jsonify(_change_payload(change)), 200
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to record sample return")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.get("/movements")
def list_movements_route():
    """
    Paged stock ledger history, newest first.

    Query params: product_id, variant_id, movement_type, reference_id, page, limit
    """
    args = request.args
    try:
        result = stock_ledger_service.list_movements(
            product_id=require_int(args["product_id"], "product_id") if args.get("product_id") else None,
            variant_id=require_int(args["variant_id"], "variant_id") if args.get("variant_id") else None,
            movement_type=args.get("movement_type") or None,
            reference_id=args.get("reference_id") or None,
            page=args.get("page", 1),
            limit=args.get("limit"),
        )
        return jsonify(result), 200
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400


@inventory_bp.get("/ledger-check/<int:variant_id>")
def ledger_check_route(variant_id: int):
    """initial_stock + SUM(ledger deltas) vs physical_stock for one variant."""
    try:
        return jsonify(reconciliation_service.verify_stock_ledger(variant_id)), 200
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404


# =============================================================================
# AUDIT / RECONCILIATION
# =============================================================================

@inventory_bp.post("/audit")
def physical_audit_route():
    """
    Apply physical counts.

    Request body:
    {
        "actual_counts": [
            {"product_id": 1, "color": "black", "size": "M", "actual": 3},
            {"variant_id": 7, "actual": 0}
        ],
        "note": "Quarterly count"   (optional)
    }

    Returns:
        200: {items_checked, discrepancies, corrections[], alerts[], errors[]}
        400: actual_counts missing or empty
    """
    data = request.get_json(silent=True) or {}
    try:
        result = reconciliation_service.physical_audit(
            data.get("actual_counts"),
            note=data.get("note"),
        )
        return jsonify(result.to_dict()), 200
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to apply physical audit")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.get("/sync-check")
def sync_check_route():
    """Allocation drift report for one variant (?product_id=&color=&size=)."""
    try:
        product_id, color, size = _variant_key(request.args)
        return jsonify(reconciliation_service.sync_check(product_id, color, size)), 200
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404


@inventory_bp.post("/sync-check/fix")
def sync_fix_route():
    """
    Repair allocated_stock for one variant.

    Request body: {"product_id", "color", "size", "mode": "precise" | "reset"}
    """
    data = request.get_json(silent=True) or {}
    try:
        product_id, color, size = _variant_key(data)
        result = reconciliation_service.fix_allocation_drift(
            product_id,
            color,
            size,
            mode=data.get("mode") or reconciliation_service.FIX_MODE_PRECISE,
        )
        return jsonify(result), 200
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to fix allocation drift")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.get("/drift")
def drift_scan_route():
    """Every variant whose stored allocation disagrees with its order lines."""
    try:
        product_id = request.args.get("product_id")
        drifted = reconciliation_service.scan_allocation_drift(
            require_int(product_id, "product_id") if product_id else None
        )
        return jsonify({"count": len(drifted), "variants": drifted}), 200
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
