# backend/backoffice/routes/statements.py
"""
Deduction / return statement routes.

Processing endpoints take a batch of ids and always answer 200 with
{processed_count, failed_count, total_amount, processed_ids, errors[]};
each statement commits independently, so a failed id never blocks the rest.
"""
from flask import Blueprint, current_app, jsonify, request

from ..extensions import db
from ..services import statement_service
from ..validation import ConflictError, NotFoundError, ValidationError, require_int


statements_bp = Blueprint("statements", __name__, url_prefix="/api/statements")


def _optional_int(value, field):
    if value is None or value == "":
        return None
    return require_int(value, field)


@statements_bp.post("/deduction")
def create_deduction_route():
    """
    Issue a pending deduction statement.

    Request body:
    {
        "company_name": "Acme Trading",
        "customer_id": 3,          (optional)
        "order_id": 10,            (optional)
        "items": [{"product_id": 1, "product_name": "Tee", "color": "black",
                   "size": "M", "quantity": 2, "unit_price": 15000}],
        "total_amount": 30000,     (optional, defaults to sum of items)
        "mileage_amount": 30000    (optional, defaults to total_amount)
    }

    Returns:
        201: statement
        400: invalid input
        404: customer or order not found
    """
    data = request.get_json(silent=True) or {}
    try:
        statement = statement_service.create_deduction_statement(
            company_name=data.get("company_name"),
            customer_id=_optional_int(data.get("customer_id"), "customer_id"),
            order_id=_optional_int(data.get("order_id"), "order_id"),
            items=data.get("items", []),
            total_amount=data.get("total_amount"),
            mileage_amount=data.get("mileage_amount"),
            reason=data.get("reason"),
        )
        return jsonify({"statement": statement.to_dict()}), 201
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to create deduction statement")
        return jsonify({"error": "Internal server error"}), 500


@statements_bp.post("/deduction/process")
def process_deductions_route():
    """Request body: {"statement_ids": [1, 2, 3]}"""
    data = request.get_json(silent=True) or {}
    try:
        result = statement_service.process_deduction_statements(data.get("statement_ids"))
        return jsonify(result.to_dict()), 200
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to process deduction statements")
        return jsonify({"error": "Internal server error"}), 500


@statements_bp.post("/return/process")
def process_returns_route():
    """Request body: {"statement_ids": [4, 5]}"""
    data = request.get_json(silent=True) or {}
    try:
        result = statement_service.process_return_statements(data.get("statement_ids"))
        return jsonify(result.to_dict()), 200
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to process return statements")
        return jsonify({"error": "Internal server error"}), 500


@statements_bp.post("/<int:statement_id>/reject")
def reject_statement_route(statement_id: int):
    """
    Reject a pending statement.

    Returns:
        200: rejected statement
        409: statement is no longer pending
    """
    data = request.get_json(silent=True) or {}
    try:
        statement = statement_service.reject_statement(statement_id, data.get("reason"))
        return jsonify({"statement": statement.to_dict()}), 200
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to reject statement")
        return jsonify({"error": "Internal server error"}), 500


@statements_bp.get("/<int:statement_id>")
def get_statement_route(statement_id: int):
    try:
        statement = statement_service.get_statement(statement_id)
        return jsonify({"statement": statement.to_dict()}), 200
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
