"""
Statement processing and mileage ledger tests.

A statement moves a customer's mileage exactly once; the cached balance
always equals the ledger sum.
"""

import pytest

from backoffice.extensions import db
from backoffice.models import Customer, MileageEntry, Statement
from backoffice.services import mileage_service, statement_service
from backoffice.services.mileage_service import InsufficientMileageError
from backoffice.validation import AlreadyProcessedError, NotFoundError, ValidationError


def _customer(customer_id):
    return db.session.get(Customer, customer_id, populate_existing=True)


def _statement(statement_id):
    return db.session.get(Statement, statement_id, populate_existing=True)


def _deduction(company_name, amount, **kwargs):
    return statement_service.create_deduction_statement(
        company_name=company_name,
        items=[{"product_name": "Tee", "quantity": 1, "unit_price": amount}],
        **kwargs,
    )


class TestStatementCreation:
    def test_numbers_are_sequential_per_type_and_day(self, db_session, acme):
        first = _deduction(acme.company_name, 1000)
        second = _deduction(acme.company_name, 2000)
        ret = statement_service.create_return_statement(company_name=acme.company_name, items=[])

        assert first.statement_number.startswith("DS-")
        assert first.statement_number.endswith("-0001")
        assert second.statement_number.endswith("-0002")
        assert ret.statement_number.startswith("RS-")
        assert ret.statement_number.endswith("-0001")

    def test_total_defaults_to_item_sum(self, db_session, acme):
        statement = statement_service.create_deduction_statement(
            company_name=acme.company_name,
            items=[
                {"product_name": "Tee", "quantity": 2, "unit_price": 1500},
                {"product_name": "Cap", "quantity": 1, "unit_price": 700},
            ],
        )
        assert statement.total_amount == 3700
        assert statement.deduction_amount == 3700

    def test_number_collision_is_retried(self, db_session, acme, monkeypatch):
        first = _deduction(acme.company_name, 1000)
        taken = iter([first.statement_number])
        issue = statement_service.next_statement_number
        monkeypatch.setattr(
            statement_service,
            "next_statement_number",
            lambda statement_type: next(taken, None) or issue(statement_type),
        )

        second = _deduction(acme.company_name, 2000)

        assert second.statement_number.endswith("-0002")
        assert db_session.query(Statement).count() == 2

    def test_numbering_continues_after_highest_issued(self, db_session, acme):
        first = _deduction(acme.company_name, 1000)
        _deduction(acme.company_name, 2000)
        db_session.query(Statement).filter_by(id=first.id).delete()
        db_session.commit()

        third = _deduction(acme.company_name, 3000)

        assert third.statement_number.endswith("-0003")

    def test_unknown_customer_id_rejected(self, db_session):
        with pytest.raises(NotFoundError):
            _deduction("Ghost", 1000, customer_id=9999)


class TestDeductionProcessing:
    def test_processing_twice_moves_balance_once(self, db_session, make_customer):
        customer = make_customer("Acme Trading", mileage_balance=0)
        statement = _deduction(customer.company_name, 5000)

        statement_service.process_statement(statement.id)
        with pytest.raises(AlreadyProcessedError):
            statement_service.process_statement(statement.id)

        entries = db_session.query(MileageEntry).filter_by(statement_id=statement.id).all()
        assert len(entries) == 1
        assert entries[0].amount == -5000
        assert entries[0].type == "spend"
        assert _customer(customer.id).mileage_balance == -5000
        assert _statement(statement.id).status == "completed"
        assert _statement(statement.id).mileage_deducted is True

    def test_batch_commits_good_items_and_reports_bad(self, db_session, acme):
        good = _deduction(acme.company_name, 3000)
        bad = _deduction("Nobody Ltd", 2000)

        result = statement_service.process_deduction_statements([good.id, bad.id])

        assert result.processed_count == 1
        assert result.failed_count == 1
        assert result.total_amount == 3000
        assert result.errors == [f"{bad.statement_number}: customer not found"]
        assert _statement(good.id).status == "completed"
        assert _statement(bad.id).status == "pending"
        assert _customer(acme.id).mileage_balance == -3000

    def test_batch_reports_already_processed(self, db_session, acme):
        statement = _deduction(acme.company_name, 1000)
        statement_service.process_deduction_statements([statement.id])

        result = statement_service.process_deduction_statements([statement.id])

        assert result.processed_count == 0
        assert result.failed_count == 1
        assert "already" in result.errors[0]

    def test_duplicate_ids_in_one_batch_process_once(self, db_session, acme):
        statement = _deduction(acme.company_name, 1000)
        result = statement_service.process_deduction_statements([statement.id, statement.id])
        assert result.processed_count == 1
        assert _customer(acme.id).mileage_balance == -1000

    def test_mileage_amount_overrides_total(self, db_session, acme):
        statement = _deduction(acme.company_name, 10000, mileage_amount=2500)
        assert statement_service.process_statement(statement.id) == 2500
        assert _customer(acme.id).mileage_balance == -2500

    def test_wrong_type_rejected(self, db_session, acme):
        ret = statement_service.create_return_statement(company_name=acme.company_name, items=[], total_amount=100)
        result = statement_service.process_deduction_statements([ret.id])
        assert result.failed_count == 1
        assert _statement(ret.id).status == "pending"

    def test_rejected_statement_cannot_be_processed(self, db_session, acme):
        statement = _deduction(acme.company_name, 1000)
        statement_service.reject_statement(statement.id, "Duplicate")

        with pytest.raises(AlreadyProcessedError):
            statement_service.process_statement(statement.id)
        with pytest.raises(AlreadyProcessedError):
            statement_service.reject_statement(statement.id, "Again")
        assert _customer(acme.id).mileage_balance == 0


class TestReturnProcessing:
    def test_return_credits_customer(self, db_session, make_customer):
        customer = make_customer("Acme Trading")
        mileage_service.record_entry(
            customer_id=customer.id, amount=1000, entry_type="earn", source="manual",
        )
        db_session.commit()
        ret = statement_service.create_return_statement(
            company_name=customer.company_name, items=[], total_amount=4000,
        )

        result = statement_service.process_return_statements([ret.id])

        assert result.processed_count == 1
        assert result.total_amount == 4000
        assert _customer(customer.id).mileage_balance == 5000
        assert _statement(ret.id).status == "refunded"
        assert _statement(ret.id).refunded is True

    def test_admin_return_without_customer_marked_refunded(self, db_session):
        ret = statement_service.create_return_statement(company_name="Walk-in", items=[], total_amount=4000)

        result = statement_service.process_return_statements([ret.id])

        assert result.processed_count == 1
        assert result.total_amount == 0
        assert _statement(ret.id).status == "refunded"
        assert db_session.query(MileageEntry).count() == 0


class TestMileageLedger:
    def test_manual_earn_and_spend(self, db_session, acme):
        mileage_service.add_manual_mileage(
            customer_id=acme.id, amount=3000, entry_type="earn", description="Promotion",
        )
        mileage_service.add_manual_mileage(
            customer_id=acme.id, amount=1000, entry_type="spend", description="Redeemed",
        )
        assert _customer(acme.id).mileage_balance == 2000
        assert mileage_service.ledger_balance(acme.id) == 2000

    def test_manual_spend_cannot_overdraw(self, db_session, acme):
        mileage_service.add_manual_mileage(
            customer_id=acme.id, amount=500, entry_type="earn", description="Promotion",
        )
        with pytest.raises(InsufficientMileageError):
            mileage_service.add_manual_mileage(
                customer_id=acme.id, amount=501, entry_type="spend", description="Too much",
            )
        assert _customer(acme.id).mileage_balance == 500
        assert db_session.query(MileageEntry).count() == 1

    def test_manual_mileage_requires_description(self, db_session, acme):
        with pytest.raises(ValidationError):
            mileage_service.add_manual_mileage(
                customer_id=acme.id, amount=10, entry_type="earn", description="",
            )

    def test_sign_must_match_type(self, db_session, acme):
        with pytest.raises(ValidationError):
            mileage_service.record_entry(customer_id=acme.id, amount=100, entry_type="spend", source="manual")
        with pytest.raises(ValidationError):
            mileage_service.record_entry(customer_id=acme.id, amount=-100, entry_type="earn", source="manual")

    def test_verify_and_recompute(self, db_session, acme):
        mileage_service.add_manual_mileage(
            customer_id=acme.id, amount=700, entry_type="earn", description="Promotion",
        )
        db_session.query(Customer).filter_by(id=acme.id).update({"mileage_balance": 9999})
        db_session.commit()

        report = mileage_service.verify_balance(acme.id)
        assert report["needs_fix"] is True
        assert report["drift"] == 9299

        result = mileage_service.recompute_balance(acme.id)
        assert result["fixed"] is True
        assert result["balance"] == 700
        assert _customer(acme.id).mileage_balance == 700
        assert mileage_service.verify_balance(acme.id)["needs_fix"] is False

    def test_list_entries_filters_by_type(self, db_session, acme):
        mileage_service.add_manual_mileage(customer_id=acme.id, amount=700, entry_type="earn", description="a")
        mileage_service.add_manual_mileage(customer_id=acme.id, amount=200, entry_type="spend", description="b")

        page = mileage_service.list_entries(customer_id=acme.id, entry_type="spend")

        assert page["pagination"]["total"] == 1
        assert page["items"][0]["amount"] == -200
