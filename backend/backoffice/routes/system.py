# backend/backoffice/routes/system.py
"""
System health endpoint.

Besides database reachability, reports how many variants currently carry
allocation drift so an operator sees reconciliation work before it bites.
"""

import time
from flask import Blueprint, current_app
from ..extensions import db
from ..models import Customer, Order, ProductVariant, Statement
from ..models.statements import STATEMENT_STATUS_PENDING
from ..services import reconciliation_service
from ..time_utils import utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    """
    Check database connectivity and basic operations.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        variant_count = db.session.query(ProductVariant).count()
        order_count = db.session.query(Order).count()
        customer_count = db.session.query(Customer).count()
        pending_statements = db.session.query(Statement).filter_by(
            status=STATEMENT_STATUS_PENDING
        ).count()

        elapsed_ms = (time.time() - start_time) * 1000

        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "variants": variant_count,
                "orders": order_count,
                "customers": customer_count,
                "pending_statements": pending_statements,
            }
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


def check_allocation_health() -> dict:
    """Drifted variants make the service degraded, not unhealthy."""
    start_time = time.time()
    try:
        drifted = reconciliation_service.scan_allocation_drift()
        elapsed_ms = (time.time() - start_time) * 1000

        if drifted:
            return {
                "status": "degraded",
                "latency_ms": round(elapsed_ms, 2),
                "warning": f"{len(drifted)} variant(s) with allocation drift",
                "details": {
                    "drifted_variant_ids": [r["option"]["variant_id"] for r in drifted],
                }
            }

        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {"drifted_variants": 0},
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Allocation health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Allocation check error"
        }


@system_bp.get("/health")
def health():
    """
    Health check endpoint.

    Returns:
    - 200: healthy or degraded
    - 503: database unreachable
    """
    start_time = time.time()

    database_health = check_database_health()
    allocation_health = check_allocation_health()

    all_checks = [database_health, allocation_health]
    unhealthy_count = sum(1 for check in all_checks if check["status"] == "unhealthy")
    degraded_count = sum(1 for check in all_checks if check["status"] == "degraded")

    if unhealthy_count > 0:
        overall_status = "unhealthy"
        http_status = 503
    elif degraded_count > 0:
        overall_status = "degraded"
        http_status = 200  # Degraded is still operational
    else:
        overall_status = "healthy"
        http_status = 200

    total_elapsed_ms = (time.time() - start_time) * 1000

    response = {
        "status": overall_status,
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round(total_elapsed_ms, 2),
        "checks": {
            "database": database_health,
            "allocation": allocation_health,
        }
    }

    return response, http_status
