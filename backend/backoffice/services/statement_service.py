# Overview: Service-layer operations for deduction and return statements; applies each to the mileage ledger exactly once.

# backend/backoffice/services/statement_service.py
"""
Statement processing.

WHY: A deduction statement charges a customer's mileage for goods shipped;
a return statement credits it back for goods returned. Either must move
the balance exactly once no matter how many times an operator presses
"process".

IDEMPOTENCY:
- A statement is claimed with a conditional UPDATE that only matches
  status='pending' AND the per-type flag still false. A second claim
  matches zero rows and the item is reported as already processed.
- The claim, the mileage entry and the cached balance change share one
  transaction.

BATCHES:
- Every statement in a batch is processed and committed on its own. A
  failing item is rolled back and reported; the others still commit.

CUSTOMER RESOLUTION:
- statement.customer_id if set, otherwise the account whose company_name
  matches statement.company_name.
- deduction without a resolvable customer: the item fails.
- return without a resolvable customer (admin-authored): the statement is
  marked refunded with no ledger mutation.
"""
from __future__ import annotations

from dataclasses import dataclass, field

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Customer, Order, Statement
from ..models.mileage import (
    MILEAGE_SOURCE_MANUAL,
    MILEAGE_SOURCE_REFUND,
    MILEAGE_TYPE_EARN,
    MILEAGE_TYPE_SPEND,
)
from ..models.statements import (
    STATEMENT_STATUS_COMPLETED,
    STATEMENT_STATUS_PENDING,
    STATEMENT_STATUS_REFUNDED,
    STATEMENT_STATUS_REJECTED,
    STATEMENT_TYPE_DEDUCTION,
    STATEMENT_TYPE_RETURN,
)
from ..time_utils import business_today_str, utcnow
from ..validation import (
    AlreadyProcessedError,
    ConflictError,
    NotFoundError,
    ValidationError,
    optional_str,
    require_int,
    require_list,
    require_non_negative_int,
)
from . import mileage_service
from .concurrency import lock_for_update, run_in_transaction


STATEMENT_PREFIXES = {
    STATEMENT_TYPE_DEDUCTION: "DS",
    STATEMENT_TYPE_RETURN: "RS",
}
STATEMENT_NUMBER_ATTEMPTS = 3


@dataclass
class StatementBatchResult:
    processed_count: int = 0
    failed_count: int = 0
    total_amount: int = 0
    processed_ids: list[int] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "processed_count": self.processed_count,
            "failed_count": self.failed_count,
            "total_amount": self.total_amount,
            "processed_ids": self.processed_ids,
            "errors": self.errors,
        }


# =============================================================================
# CREATION
# =============================================================================

def next_statement_number(statement_type: str) -> str:
    """Next number after the highest one issued today for this type."""
    prefix = f"{STATEMENT_PREFIXES[statement_type]}-{business_today_str()}-"
    latest = lock_for_update(
        db.session.query(Statement.statement_number)
        .filter(Statement.statement_number.like(f"{prefix}%"))
        .order_by(Statement.statement_number.desc())
    ).first()
    issued = int(latest[0][len(prefix):]) if latest else 0
    return f"{prefix}{str(issued + 1).zfill(4)}"


def run_with_number_retry(func):
    """
    Run a transaction that issues a statement number.

    Two writers can pick the same number; the loser hits the unique
    constraint, rolls back and runs again with a fresh number.
    """
    return run_in_transaction(func, attempts=STATEMENT_NUMBER_ATTEMPTS, retry_on=(IntegrityError,))


def _normalize_items(items) -> list[dict]:
    items = require_list(items, "items", allow_empty=True)
    normalized = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValidationError(f"items[{index}] must be an object")
        normalized.append({
            "product_id": item.get("product_id"),
            "product_name": item.get("product_name"),
            "color": item.get("color") or "",
            "size": item.get("size") or "",
            "quantity": require_non_negative_int(item.get("quantity", 0), f"items[{index}].quantity"),
            "unit_price": require_non_negative_int(item.get("unit_price", 0), f"items[{index}].unit_price"),
        })
    return normalized


def build_statement(
    *,
    statement_type: str,
    company_name: str | None,
    items,
    total_amount=None,
    mileage_amount=None,
    refund_amount=None,
    customer_id: int | None = None,
    order_id: int | None = None,
    reason: str | None = None,
) -> Statement:
    """Create a pending statement inside the caller's transaction."""
    if statement_type not in STATEMENT_PREFIXES:
        raise ValidationError(f"Invalid statement type: {statement_type}")
    items = _normalize_items(items)
    if total_amount is None:
        total_amount = sum(item["quantity"] * item["unit_price"] for item in items)
    total_amount = require_non_negative_int(total_amount, "total_amount")

    if customer_id is not None and db.session.get(Customer, customer_id) is None:
        raise NotFoundError(f"Customer {customer_id} not found")
    if order_id is not None and db.session.get(Order, order_id) is None:
        raise NotFoundError(f"Order {order_id} not found")

    statement = Statement(
        statement_number=next_statement_number(statement_type),
        statement_type=statement_type,
        company_name=optional_str(company_name, "company_name"),
        customer_id=customer_id,
        order_id=order_id,
        items=items,
        total_amount=total_amount,
        mileage_amount=require_non_negative_int(mileage_amount, "mileage_amount") if mileage_amount is not None else None,
        refund_amount=require_non_negative_int(refund_amount, "refund_amount") if refund_amount is not None else None,
        status=STATEMENT_STATUS_PENDING,
        reason=optional_str(reason, "reason"),
    )
    db.session.add(statement)
    db.session.flush()
    return statement


def create_deduction_statement(**kwargs) -> Statement:
    statement = run_with_number_retry(
        lambda: build_statement(statement_type=STATEMENT_TYPE_DEDUCTION, **kwargs)
    )
    current_app.logger.info("Issued deduction statement %s", statement.statement_number)
    return statement


def create_return_statement(**kwargs) -> Statement:
    statement = run_with_number_retry(
        lambda: build_statement(statement_type=STATEMENT_TYPE_RETURN, **kwargs)
    )
    current_app.logger.info("Issued return statement %s", statement.statement_number)
    return statement


def get_statement(statement_id: int) -> Statement:
    statement = db.session.get(Statement, statement_id)
    if statement is None:
        raise NotFoundError(f"Statement {statement_id} not found")
    return statement


# =============================================================================
# PROCESSING
# =============================================================================

def _resolve_customer(statement: Statement) -> Customer | None:
    if statement.customer_id is not None:
        return db.session.get(Customer, statement.customer_id)
    if statement.order is not None and statement.order.customer_id is not None:
        return db.session.get(Customer, statement.order.customer_id)
    return mileage_service.find_customer_by_company(statement.company_name)


def _claim(statement: Statement) -> None:
    """Flip pending -> done exactly once; raises if someone else got there first."""
    if statement.statement_type == STATEMENT_TYPE_DEDUCTION:
        flag = Statement.mileage_deducted
        values = {"status": STATEMENT_STATUS_COMPLETED, "mileage_deducted": True}
    else:
        flag = Statement.refunded
        values = {"status": STATEMENT_STATUS_REFUNDED, "refunded": True}

    result = db.session.execute(
        update(Statement)
        .where(
            Statement.id == statement.id,
            Statement.status == STATEMENT_STATUS_PENDING,
            flag.is_(False),
        )
        .values(processed_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise AlreadyProcessedError("already processed")


def _check_pending(statement: Statement) -> None:
    if statement.status != STATEMENT_STATUS_PENDING:
        raise AlreadyProcessedError(f"already {statement.status}")
    if statement.statement_type == STATEMENT_TYPE_DEDUCTION and statement.mileage_deducted:
        raise AlreadyProcessedError("already processed")
    if statement.statement_type == STATEMENT_TYPE_RETURN and statement.refunded:
        raise AlreadyProcessedError("already processed")


def _process_deduction(statement: Statement) -> int:
    customer = _resolve_customer(statement)
    if customer is None:
        raise NotFoundError("customer not found")

    amount = statement.deduction_amount
    if amount <= 0:
        raise ValidationError("nothing to deduct")

    _claim(statement)
    mileage_service.record_entry(
        customer_id=customer.id,
        amount=-amount,
        entry_type=MILEAGE_TYPE_SPEND,
        source=MILEAGE_SOURCE_MANUAL,
        description=f"Deduction statement {statement.statement_number}",
        order_id=statement.order_id,
        statement_id=statement.id,
        allow_negative=bool(current_app.config.get("ALLOW_NEGATIVE_MILEAGE", True)),
    )
    return amount


def _process_return(statement: Statement) -> int:
    customer = _resolve_customer(statement)
    _claim(statement)

    if customer is None:
        current_app.logger.info(
            "Return statement %s has no linked customer; marked refunded without mileage",
            statement.statement_number,
        )
        return 0

    amount = statement.credit_amount
    if amount <= 0:
        return 0

    mileage_service.record_entry(
        customer_id=customer.id,
        amount=amount,
        entry_type=MILEAGE_TYPE_EARN,
        source=MILEAGE_SOURCE_REFUND,
        description=f"Return statement {statement.statement_number}",
        order_id=statement.order_id,
        statement_id=statement.id,
    )
    return amount


def process_statement(statement_id: int, *, statement_type: str | None = None) -> int:
    """
    Apply one statement to the mileage ledger. Commits on success.

    Returns the mileage amount moved (0 for a return with no linked customer).
    """
    def _op():
        statement = db.session.get(Statement, statement_id, populate_existing=True)
        if statement is None:
            raise NotFoundError(f"Statement {statement_id} not found")
        if statement_type is not None and statement.statement_type != statement_type:
            raise ValidationError(f"not a {statement_type} statement")
        _check_pending(statement)

        if statement.statement_type == STATEMENT_TYPE_DEDUCTION:
            return _process_deduction(statement)
        return _process_return(statement)

    return run_in_transaction(_op)


def process_statements(statement_ids, *, statement_type: str | None = None) -> StatementBatchResult:
    """
    Process a batch of statements independently.

    Returns counts of processed/failed items, the total mileage moved, and
    one "<statement number>: <reason>" string per failed item.
    """
    statement_ids = require_list(statement_ids, "statement_ids")
    ids = [require_int(value, "statement_ids[]") for value in statement_ids]

    result = StatementBatchResult()
    for statement_id in dict.fromkeys(ids):
        try:
            amount = process_statement(statement_id, statement_type=statement_type)
        except (ValidationError, NotFoundError, ConflictError) as exc:
            label = _label_for(statement_id)
            current_app.logger.warning("Statement %s skipped: %s", label, exc)
            result.failed_count += 1
            result.errors.append(f"{label}: {exc}")
            continue

        result.processed_count += 1
        result.total_amount += amount
        result.processed_ids.append(statement_id)

    current_app.logger.info(
        "Statement batch: %s processed, %s failed, %s mileage moved",
        result.processed_count, result.failed_count, result.total_amount,
    )
    return result


def process_deduction_statements(statement_ids) -> StatementBatchResult:
    return process_statements(statement_ids, statement_type=STATEMENT_TYPE_DEDUCTION)


def process_return_statements(statement_ids) -> StatementBatchResult:
    return process_statements(statement_ids, statement_type=STATEMENT_TYPE_RETURN)


def _label_for(statement_id: int) -> str:
    statement = db.session.get(Statement, statement_id)
    return statement.statement_number if statement else str(statement_id)


def reject_statement(statement_id: int, reason: str | None) -> Statement:
    """pending -> rejected; a rejected statement can never be processed."""
    reason = optional_str(reason, "reason")

    def _op():
        statement = get_statement(statement_id)
        result = db.session.execute(
            update(Statement)
            .where(Statement.id == statement_id, Statement.status == STATEMENT_STATUS_PENDING)
            .values(status=STATEMENT_STATUS_REJECTED, rejected_reason=reason, processed_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise AlreadyProcessedError(f"Statement {statement.statement_number} is already {statement.status}")
        return db.session.get(Statement, statement_id, populate_existing=True)

    return run_in_transaction(_op)
