"""
Pytest fixtures for PharmaConnect backend tests.

Provides an in-memory database, marketplace parties, catalog products,
bearer-token headers and a controllable clock for the order lifecycle.
"""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from pharmaconnect import create_app
from pharmaconnect.extensions import db
from pharmaconnect.models import Product, User
from pharmaconnect.decorators import issue_token
from pharmaconnect.permissions import Actor
from pharmaconnect.time_utils import utcnow


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'SECRET_KEY': 'test-secret-key',
        'CANCELLATION_WINDOW_MINUTES': 120,
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
def lifecycle(app, db_session):
    """The app's order lifecycle, with its clock and dispatcher restored afterwards."""
    lc = app.extensions["order_lifecycle"]
    original_clock, original_dispatcher = lc.clock, lc.dispatcher
    yield lc
    lc.clock = original_clock
    lc.dispatcher = original_dispatcher


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(scope='function')
def clock(lifecycle):
    """Freeze the lifecycle clock a day in the past."""
    frozen = FrozenClock(utcnow().replace(microsecond=0) - timedelta(days=1))
    lifecycle.clock = frozen
    return frozen


# =============================================================================
# PARTIES
# =============================================================================

def create_user(session, username: str, role: str, phone: str | None = None, is_active: bool = True) -> User:
    user = User(username=username, role=role, phone=phone, is_active=is_active, created_at=utcnow())
    session.add(user)
    session.commit()
    return user


@pytest.fixture(scope='function')
def pharmacy(db_session):
    """Pharmacy with a phone number, so SMS copies are queued."""
    return create_user(db_session, "pharmacy_a", "pharmacy", phone="+201000000001")


@pytest.fixture(scope='function')
def other_pharmacy(db_session):
    return create_user(db_session, "pharmacy_b", "pharmacy")


@pytest.fixture(scope='function')
def warehouse(db_session):
    return create_user(db_session, "warehouse_a", "warehouse")


@pytest.fixture(scope='function')
def other_warehouse(db_session):
    return create_user(db_session, "warehouse_b", "warehouse")


@pytest.fixture(scope='function')
def admin(db_session):
    return create_user(db_session, "admin", "admin")


def actor_for(user: User) -> Actor:
    return Actor(user_id=user.id, role=user.role)


def auth_headers(user: User) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {issue_token(user)}'}


# =============================================================================
# CATALOG
# =============================================================================

def create_product(
    session,
    warehouse: User,
    name: str = "Paracetamol 500mg",
    price: str = "10.00",
    quantity: int = 100,
    discount_percent: str = "0",
    bonus_buy_quantity: int | None = None,
    bonus_free_quantity: int | None = None,
) -> Product:
    product = Product(
        warehouse_id=warehouse.id,
        name=name,
        price=Decimal(price),
        quantity=quantity,
        discount_percent=Decimal(discount_percent),
        bonus_buy_quantity=bonus_buy_quantity,
        bonus_free_quantity=bonus_free_quantity,
    )
    session.add(product)
    session.commit()
    return product


@pytest.fixture(scope='function')
def product(db_session, warehouse):
    """Plain product: 10.00 each, 100 in stock, no offer."""
    return create_product(db_session, warehouse)


@pytest.fixture(scope='function')
def place_order(lifecycle, pharmacy, warehouse):
    """Place an order as the default pharmacy against the default warehouse."""
    def _place(product: Product, quantity: int = 1, **kwargs):
        return lifecycle.create_order(
            actor_for(pharmacy),
            warehouse.id,
            [{"product_id": product.id, "quantity": quantity}],
            **kwargs,
        )
    return _place


@pytest.fixture(scope='function')
def deliver(lifecycle, warehouse):
    """Walk an order pending -> processing -> shipped -> delivered."""
    def _deliver(order_id: int):
        actor = actor_for(warehouse)
        for status in ("processing", "shipped", "delivered"):
            order = lifecycle.change_status(actor, order_id, status)
        return order
    return _deliver
