"""
Pytest fixtures for back office tests.

Provides the test database, domain factories (customers, products, orders)
and the test client.
"""

from datetime import timedelta
from itertools import count

import pytest
from backoffice import create_app
from backoffice.extensions import db
from backoffice.models import Customer, Order, OrderLine
from backoffice.services import stock_ledger_service
from backoffice.time_utils import utcnow


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'STOCK_RETRY_ATTEMPTS': 1,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def make_customer(db_session):
    """Factory: make_customer("Acme", customer_type="distributor", priority_level=1)."""
    def _make(company_name, *, customer_type="retailer", priority_level=None, mileage_balance=0):
        customer = Customer(
            company_name=company_name,
            representative_name=f"{company_name} rep",
            customer_type=customer_type,
            priority_level=priority_level,
            mileage_balance=mileage_balance,
        )
        db_session.add(customer)
        db_session.commit()
        return customer
    return _make


@pytest.fixture(scope='function')
def make_product(db_session):
    """Factory: make_product("TEE", stock=10) or make_product("TEE", variants=[...])."""
    def _make(code, *, name=None, price=10000, stock=0, variants=None):
        product = stock_ledger_service.create_product(
            code=code,
            name=name or f"Product {code}",
            price=price,
            variants=variants,
            stock=stock,
        )
        db_session.commit()
        return product
    return _make


@pytest.fixture(scope='function')
def make_order(db_session):
    """
    Factory: make_order(customer, [(variant, quantity), ...]).

    Orders created by one test get strictly increasing created_at values
    unless one is passed explicitly.
    """
    sequence = count(1)
    base = utcnow() - timedelta(days=1)

    def _make(customer, lines, *, status="pending", created_at=None, unit_price=10000, order_number=None):
        n = next(sequence)
        order = Order(
            order_number=order_number or f"ORD-{n:04d}",
            customer_id=customer.id if customer is not None else None,
            status=status,
            created_at=created_at or base + timedelta(minutes=n),
        )
        db_session.add(order)
        db_session.flush()

        total = 0
        for variant, quantity in lines:
            db_session.add(OrderLine(
                order_id=order.id,
                variant_id=variant.id,
                quantity=quantity,
                unit_price=unit_price,
            ))
            total += quantity * unit_price
        order.total_amount = total
        db_session.commit()
        return order
    return _make


@pytest.fixture(scope='function')
def simple_product(make_product):
    """One product, one variant, 10 on hand."""
    return make_product("TEE-BLK", stock=10)


@pytest.fixture(scope='function')
def simple_variant(simple_product):
    return simple_product.variants[0]


@pytest.fixture(scope='function')
def acme(make_customer):
    return make_customer("Acme Trading")


@pytest.fixture(scope='function')
def beta(make_customer):
    return make_customer("Beta Wholesale")
