# backend/backoffice/routes/orders.py
"""
Order fulfilment routes: ship, cancel, return.

DESIGN:
- Ship endpoints answer 200 with per-line results; a line shipping more
  than it has reserved is reported in `errors` and nothing is decremented
  for it.
- Cancel is only allowed before anything has shipped.
- Return is all-or-nothing and issues a pending return statement.
"""

from flask import Blueprint, current_app, jsonify, request

from ..extensions import db
from ..services import shipment_service
from ..validation import ConflictError, NotFoundError, ValidationError


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


@orders_bp.get("/<int:order_id>")
def get_order_route(order_id: int):
    try:
        order = shipment_service.get_order(order_id)
        return jsonify({"order": order.to_dict(include_lines=True)}), 200
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404


@orders_bp.post("/<int:order_id>/ship")
def ship_order_route(order_id: int):
    """
    Ship reserved units.

    Request body:
    {
        "items": [{"line_id": 5, "quantity": 6}]
    }

    Returns:
        200: {order_id, order_status, shipped_lines, shipped_units,
              failed_count, results[], errors[]}
        400: malformed items
        404: order not found
    """
    data = request.get_json(silent=True) or {}
    try:
        result = shipment_service.ship(order_id, data.get("items"))
        return jsonify(result.to_dict()), 200
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to ship order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/ship-all")
def ship_all_route(order_id: int):
    """Ship every currently reserved unit on the order."""
    try:
        result = shipment_service.ship_all_allocated(order_id)
        return jsonify(result.to_dict()), 200
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to ship order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/bulk-ship")
def bulk_ship_route():
    """
    Ship all reserved units for several orders.

    Request body: {"order_ids": [1, 2, 3]}
    """
    data = request.get_json(silent=True) or {}
    try:
        return jsonify(shipment_service.bulk_ship(data.get("order_ids"))), 200
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to bulk ship orders")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/cancel")
def cancel_order_route(order_id: int):
    """
    Cancel a pre-shipment order and release its reservations.

    Request body: {"reason": "Customer request"}  (optional)

    Returns:
        200: cancelled order
        409: order already shipped or not cancellable
    """
    data = request.get_json(silent=True) or {}
    try:
        order = shipment_service.cancel_order(order_id, data.get("reason"))
        return jsonify({"order": order.to_dict(include_lines=True)}), 200
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to cancel order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/return")
def return_order_route(order_id: int):
    """
    Return shipped units.

    Request body:
    {
        "items": [{"line_id": 5, "quantity": 2, "restock": true}],
        "reason": "Wrong size"
    }

    Returns:
        201: {order, statement, returned_units, restocked_units}
        400: quantity exceeds returnable
        409: order not in a returnable status
    """
    data = request.get_json(silent=True) or {}
    try:
        result = shipment_service.return_order_lines(order_id, data.get("items"), data.get("reason"))
        return jsonify(result), 201
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to return order lines")
        return jsonify({"error": "Internal server error"}), 500
