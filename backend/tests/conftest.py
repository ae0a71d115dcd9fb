"""
Pytest fixtures for stock ledger backend tests.

Provides the in-memory database, two branches with their actors, products
with stock records, factory orders and a recorder for domain events.

Fixtures commit what they create: every service opens its unit of work with
a rollback, so anything left pending would be discarded.
"""

from datetime import timedelta

import pytest
from stockledger import create_app
from stockledger import events
from stockledger.extensions import db
from stockledger.models import Branch, Order, OrderLine, Product, User
from stockledger.services import stock_service
from stockledger.time_utils import utcnow


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'RETURN_WINDOW_DAYS': 3,
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
        # Core deletes bypass the history immutability listeners
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        db.session.rollback()


@pytest.fixture(scope='function')
def branch(db_session):
    branch = Branch(name="Downtown", code="DT")
    db_session.add(branch)
    db_session.commit()
    return branch


@pytest.fixture(scope='function')
def other_branch(db_session):
    branch = Branch(name="Harbor", code="HB")
    db_session.add(branch)
    db_session.commit()
    return branch


def _user(db_session, username, role, branch_id=None):
    user = User(username=username, role=role, branch_id=branch_id)
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def admin(db_session):
    return _user(db_session, "admin", "admin")


@pytest.fixture(scope='function')
def production_user(db_session):
    return _user(db_session, "factory", "production")


@pytest.fixture(scope='function')
def branch_user(db_session, branch):
    return _user(db_session, "cashier_dt", "branch", branch.id)


@pytest.fixture(scope='function')
def other_branch_user(db_session, other_branch):
    return _user(db_session, "cashier_hb", "branch", other_branch.id)


@pytest.fixture(scope='function')
def products(db_session):
    """Three products: P1 (500c), P2 (300c), P3 (1200c)."""
    rows = [
        Product(code="P1", name="Sourdough", price_cents=500),
        Product(code="P2", name="Baguette", price_cents=300),
        Product(code="P3", name="Cheesecake", price_cents=1200),
    ]
    db_session.add_all(rows)
    db_session.commit()
    return rows


@pytest.fixture(scope='function')
def make_stock(db_session, admin):
    """Create a stock record through the service so movements and history line up."""
    def _make(product, branch, quantity=0, min_level=0, max_level=0):
        return stock_service.create_stock_record(
            product_id=product.id,
            branch_id=branch.id,
            actor=admin,
            initial_stock=quantity,
            min_stock_level=min_level,
            max_stock_level=max_level,
        )
    return _make


@pytest.fixture(scope='function')
def make_order(db_session):
    """
    Create a factory order for a branch.

    lines: [(product, quantity, price_cents), ...]
    """
    counter = {"n": 0}

    def _make(branch, lines, status="in_transit", age_days=0):
        counter["n"] += 1
        order = Order(
            order_number=f"ORD-{branch.code}-{counter['n']:04d}",
            branch_id=branch.id,
            status=status,
        )
        for product, quantity, price_cents in lines:
            order.lines.append(OrderLine(product_id=product.id, quantity=quantity, price_cents=price_cents))
        order.total_amount_cents = sum(q * p for _, q, p in lines)
        if age_days:
            order.created_at = utcnow() - timedelta(days=age_days)
        db_session.add(order)
        db_session.commit()
        return order
    return _make


@pytest.fixture(scope='function')
def captured_events():
    """Record every domain event as (signal name, payload)."""
    received = []

    def make_receiver(name):
        def receiver(sender, **payload):
            received.append((name, payload))
        return receiver

    receivers = [(signal, make_receiver(signal.name)) for signal in events.ALL_SIGNALS]
    for signal, receiver in receivers:
        signal.connect(receiver, weak=False)

    yield received

    for signal, receiver in receivers:
        signal.disconnect(receiver)


def actor_headers(user) -> dict:
    """Helper to create the actor header for a user."""
    return {'X-User-Id': str(user.id)}
