# Overview: Service-layer operations for the mileage (store credit) ledger.

# backend/backoffice/services/mileage_service.py
"""
Mileage Ledger Invariants (authoritative)

- MileageEntry is append-only; amount is signed (earn > 0, spend < 0).
- Customer.mileage_balance is a cache of SUM(amount) over completed entries.
- record_entry() is the only code path that moves the cache in step with a
  new entry; it issues one guarded UPDATE (balance = balance + :amount) so
  concurrent credits and debits never overwrite each other.
- recompute_balance() is the explicit repair: it resets the cache from the
  ledger and logs the drift it removed.
"""
from __future__ import annotations

from flask import current_app
from sqlalchemy import func, update

from ..extensions import db
from ..models import Customer, MileageEntry
from ..models.mileage import (
    MILEAGE_SOURCE_AUTO,
    MILEAGE_SOURCE_MANUAL,
    MILEAGE_SOURCE_ORDER,
    MILEAGE_SOURCE_REFUND,
    MILEAGE_STATUS_CANCELLED,
    MILEAGE_STATUS_COMPLETED,
    MILEAGE_STATUS_PENDING,
    MILEAGE_TYPE_EARN,
    MILEAGE_TYPE_SPEND,
)
from ..validation import (
    ConflictError,
    NotFoundError,
    ValidationError,
    optional_str,
    require_positive_int,
)
from .concurrency import run_in_transaction


MILEAGE_TYPES = (MILEAGE_TYPE_EARN, MILEAGE_TYPE_SPEND)
MILEAGE_SOURCES = (MILEAGE_SOURCE_ORDER, MILEAGE_SOURCE_REFUND, MILEAGE_SOURCE_MANUAL, MILEAGE_SOURCE_AUTO)
MILEAGE_STATUSES = (MILEAGE_STATUS_COMPLETED, MILEAGE_STATUS_PENDING, MILEAGE_STATUS_CANCELLED)


class InsufficientMileageError(ConflictError):
    """A spend would take the balance below zero where that is not allowed."""


def get_customer(customer_id: int) -> Customer:
    customer = db.session.get(Customer, customer_id)
    if customer is None:
        raise NotFoundError(f"Customer {customer_id} not found")
    return customer


def find_customer_by_company(company_name: str | None) -> Customer | None:
    if not company_name:
        return None
    return db.session.query(Customer).filter_by(company_name=company_name.strip()).first()


def record_entry(
    *,
    customer_id: int,
    amount: int,
    entry_type: str,
    source: str,
    description: str | None = None,
    order_id: int | None = None,
    statement_id: int | None = None,
    status: str = MILEAGE_STATUS_COMPLETED,
    allow_negative: bool = True,
) -> MileageEntry:
    """
    Append a ledger entry and move the cached balance with it.

    Caller owns the transaction (this only flushes), so the entry, the
    balance change and whatever triggered them commit or roll back together.

    Raises:
        ValidationError: amount sign does not match entry_type, unknown enums
        NotFoundError: customer missing
        InsufficientMileageError: spend would go negative and allow_negative is False
    """
    if entry_type not in MILEAGE_TYPES:
        raise ValidationError(f"Invalid mileage type: {entry_type}")
    if source not in MILEAGE_SOURCES:
        raise ValidationError(f"Invalid mileage source: {source}")
    if status not in MILEAGE_STATUSES:
        raise ValidationError(f"Invalid mileage status: {status}")
    if amount == 0:
        raise ValidationError("Mileage amount must not be 0")
    if entry_type == MILEAGE_TYPE_EARN and amount < 0:
        raise ValidationError("Earn entries must have a positive amount")
    if entry_type == MILEAGE_TYPE_SPEND and amount > 0:
        raise ValidationError("Spend entries must have a negative amount")

    if status == MILEAGE_STATUS_COMPLETED:
        conditions = [Customer.id == customer_id]
        if not allow_negative and amount < 0:
            conditions.append(Customer.mileage_balance + amount >= 0)
        result = db.session.execute(
            update(Customer)
            .where(*conditions)
            .values(mileage_balance=Customer.mileage_balance + amount)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            customer = get_customer(customer_id)
            raise InsufficientMileageError(
                f"Customer {customer_id} has {customer.mileage_balance} mileage, cannot spend {-amount}"
            )
        db.session.get(Customer, customer_id, populate_existing=True)
    else:
        get_customer(customer_id)

    entry = MileageEntry(
        customer_id=customer_id,
        amount=amount,
        type=entry_type,
        source=source,
        status=status,
        description=(description or "")[:255] or None,
        order_id=order_id,
        statement_id=statement_id,
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def ledger_balance(customer_id: int) -> int:
    """Authoritative balance: SUM(amount) over completed entries."""
    total = db.session.query(
        func.coalesce(func.sum(MileageEntry.amount), 0)
    ).filter(
        MileageEntry.customer_id == customer_id,
        MileageEntry.status == MILEAGE_STATUS_COMPLETED,
    ).scalar()
    return int(total or 0)


def add_manual_mileage(
    *,
    customer_id: int,
    amount,
    entry_type: str,
    description: str | None,
    order_id: int | None = None,
) -> MileageEntry:
    """
    Manual earn/spend by an administrator. amount is given as a positive number.

    Manual spends are checked against the ledger balance (not the cache) and
    may never overdraw it.
    """
    amount = require_positive_int(amount, "amount")
    description = optional_str(description, "description")
    if not description:
        raise ValidationError("description is required")
    if entry_type not in MILEAGE_TYPES:
        raise ValidationError(f"Invalid mileage type: {entry_type}")

    def _op():
        get_customer(customer_id)
        if entry_type == MILEAGE_TYPE_SPEND:
            balance = ledger_balance(customer_id)
            if balance < amount:
                raise InsufficientMileageError(
                    f"Insufficient mileage: balance {balance}, requested {amount}"
                )
        signed = amount if entry_type == MILEAGE_TYPE_EARN else -amount
        return record_entry(
            customer_id=customer_id,
            amount=signed,
            entry_type=entry_type,
            source=MILEAGE_SOURCE_MANUAL,
            description=description,
            order_id=order_id,
            allow_negative=False,
        )

    entry = run_in_transaction(_op)
    current_app.logger.info(
        "Manual mileage %s of %s for customer %s", entry_type, amount, customer_id
    )
    return entry


def verify_balance(customer_id: int) -> dict:
    customer = get_customer(customer_id)
    ledger = ledger_balance(customer_id)
    return {
        "customer_id": customer.id,
        "company_name": customer.company_name,
        "cached_balance": customer.mileage_balance,
        "ledger_balance": ledger,
        "drift": customer.mileage_balance - ledger,
        "needs_fix": customer.mileage_balance != ledger,
    }


def recompute_balance(customer_id: int) -> dict:
    """Reset the cached balance to the ledger sum; logs any drift removed."""
    def _op():
        report = verify_balance(customer_id)
        if report["needs_fix"]:
            db.session.execute(
                update(Customer)
                .where(Customer.id == customer_id)
                .values(mileage_balance=report["ledger_balance"])
                .execution_options(synchronize_session=False)
            )
            db.session.get(Customer, customer_id, populate_existing=True)
        return report

    report = run_in_transaction(_op)
    if report["needs_fix"]:
        current_app.logger.warning(
            "Mileage cache for customer %s drifted by %s; reset to ledger balance %s",
            customer_id, report["drift"], report["ledger_balance"],
        )
    return {**report, "fixed": report["needs_fix"], "balance": report["ledger_balance"]}


def list_entries(
    *,
    customer_id: int | None = None,
    entry_type: str | None = None,
    status: str | None = None,
    page: int = 1,
    limit: int = 20,
) -> dict:
    page = require_positive_int(page, "page")
    limit = require_positive_int(limit, "limit")

    q = db.session.query(MileageEntry)
    if customer_id is not None:
        q = q.filter(MileageEntry.customer_id == customer_id)
    if entry_type and entry_type != "all":
        q = q.filter(MileageEntry.type == entry_type)
    if status and status != "all":
        q = q.filter(MileageEntry.status == status)

    total = q.count()
    rows = (
        q.order_by(MileageEntry.created_at.desc(), MileageEntry.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {
        "items": [row.to_dict() for row in rows],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": (total + limit - 1) // limit,
        },
    }
