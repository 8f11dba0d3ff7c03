# backend/backoffice/routes/mileage.py
"""
Mileage (store credit) routes.

The balance shown is the cached Customer.mileage_balance; /verify compares
it against the ledger and /recompute resets the cache from the ledger.
"""
from flask import Blueprint, current_app, jsonify, request

from ..extensions import db
from ..services import mileage_service
from ..validation import ConflictError, NotFoundError, ValidationError, require_int


mileage_bp = Blueprint("mileage", __name__, url_prefix="/api/mileage")


@mileage_bp.get("/<int:customer_id>")
def get_mileage_route(customer_id: int):
    """
    Balance and paged history.

    Query params: type (earn|spend|all), status, page, limit
    """
    args = request.args
    try:
        customer = mileage_service.get_customer(customer_id)
        history = mileage_service.list_entries(
            customer_id=customer_id,
            entry_type=args.get("type"),
            status=args.get("status"),
            page=args.get("page", 1),
            limit=args.get("limit", 20),
        )
        return jsonify({
            "customer": customer.to_dict(),
            "balance": customer.mileage_balance,
            **history,
        }), 200
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404


@mileage_bp.post("")
def add_mileage_route():
    """
    Manual earn or spend.

    Request body:
    {
        "customer_id": 3,
        "amount": 5000,          (positive; the sign comes from type)
        "type": "earn" | "spend",
        "description": "Promotion credit",
        "order_id": 10           (optional)
    }

    Returns:
        201: entry and new balance
        409: spend exceeds the ledger balance
    """
    data = request.get_json(silent=True) or {}
    try:
        customer_id = require_int(data.get("customer_id"), "customer_id")
        order_id = data.get("order_id")
        entry = mileage_service.add_manual_mileage(
            customer_id=customer_id,
            amount=data.get("amount"),
            entry_type=data.get("type"),
            description=data.get("description"),
            order_id=require_int(order_id, "order_id") if order_id is not None else None,
        )
        customer = mileage_service.get_customer(customer_id)
        return jsonify({"entry": entry.to_dict(), "balance": customer.mileage_balance}), 201
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to record manual mileage")
        return jsonify({"error": "Internal server error"}), 500


@mileage_bp.get("/<int:customer_id>/verify")
def verify_mileage_route(customer_id: int):
    try:
        return jsonify(mileage_service.verify_balance(customer_id)), 200
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404


@mileage_bp.post("/<int:customer_id>/recompute")
def recompute_mileage_route(customer_id: int):
    try:
        return jsonify(mileage_service.recompute_balance(customer_id)), 200
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to recompute mileage balance")
        return jsonify({"error": "Internal server error"}), 500
