# backend/backoffice/routes/allocation.py
"""
Allocation engine routes.

Running allocation never fails for lack of stock: short lines come back
in the response with their shortfall.
"""
from flask import Blueprint, current_app, jsonify, request

from ..extensions import db
from ..services import allocation_service
from ..validation import NotFoundError, ValidationError, require_int


allocation_bp = Blueprint("allocation", __name__, url_prefix="/api/allocation")


def _optional_int(value, field):
    if value is None or value == "":
        return None
    return require_int(value, field)


@allocation_bp.post("/run")
def run_allocation_route():
    """
    Reserve available stock for eligible order lines.

    Request body (all optional):
    {
        "product_id": 1,
        "mode": "fifo" | "priority",
        "order_ids": [10, 11]
    }

    Returns:
        200: {mode, lines_considered, allocated_lines, allocated_units,
              short_lines[], short_count, shortfall_units, errors[]}
        400: invalid mode or ids
    """
    data = request.get_json(silent=True) or {}
    try:
        order_ids = data.get("order_ids")
        if order_ids is not None:
            if not isinstance(order_ids, list):
                raise ValidationError("order_ids must be a list")
            order_ids = [require_int(value, "order_ids[]") for value in order_ids]

        result = allocation_service.allocate(
            product_id=_optional_int(data.get("product_id"), "product_id"),
            mode=data.get("mode") or allocation_service.ALLOCATION_MODE_FIFO,
            order_ids=order_ids,
        )
        return jsonify(result.to_dict()), 200
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to run allocation")
        return jsonify({"error": "Internal server error"}), 500


@allocation_bp.post("/reset")
def reset_allocation_route():
    """Release every eligible reservation, then allocate again (FIFO)."""
    data = request.get_json(silent=True) or {}
    try:
        result = allocation_service.reset_and_reallocate(
            product_id=_optional_int(data.get("product_id"), "product_id"),
        )
        return jsonify(result), 200
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to reset allocation")
        return jsonify({"error": "Internal server error"}), 500


@allocation_bp.get("/summary/<int:product_id>")
def allocation_summary_route(product_id: int):
    try:
        return jsonify({
            "product_id": product_id,
            "variants": allocation_service.allocation_summary(product_id),
        }), 200
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
