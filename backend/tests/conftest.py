"""
Pytest fixtures for orderledger backend tests.

Provides the test database, a channel with its chart of accounts and
payment methods, catalog rows, and factories for building orders.
"""

import pytest

from orderledger import create_app
from orderledger.errors import ErrorResult
from orderledger.extensions import db
from orderledger.models import Customer, ProductVariant, ShippingMethod, Supplier
from orderledger.services import order_service, order_state_service, payment_service
from orderledger.services.channel_service import create_channel
from orderledger.services.settings_service import get_channel_settings
from orderledger.states import ORDER_ARRANGING_PAYMENT


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
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
def channel(db_session):
    """Web channel with the default chart of accounts and payment methods."""
    channel = create_channel(code="WEB", name="Web Store", currency_code="USD")
    db_session.commit()
    return channel


@pytest.fixture(scope='function')
def other_channel(db_session):
    channel = create_channel(code="POS", name="Counter", currency_code="USD")
    db_session.commit()
    return channel


@pytest.fixture(scope='function')
def settings(channel):
    return get_channel_settings(channel.id)


@pytest.fixture(scope='function')
def tshirt(db_session, channel):
    """1000 cents, untaxed, 10 on hand."""
    variant = ProductVariant(
        channel_id=channel.id,
        sku="TSHIRT-M",
        name="T-Shirt (M)",
        price_cents=1000,
        tax_rate_bps=0,
        stock_on_hand=10,
    )
    db_session.add(variant)
    db_session.commit()
    return variant


@pytest.fixture(scope='function')
def mug(db_session, channel):
    """500 cents, untaxed, 5 on hand."""
    variant = ProductVariant(
        channel_id=channel.id,
        sku="MUG",
        name="Mug",
        price_cents=500,
        tax_rate_bps=0,
        stock_on_hand=5,
    )
    db_session.add(variant)
    db_session.commit()
    return variant


@pytest.fixture(scope='function')
def taxed_variant(db_session, channel):
    """1000 cents at 16% tax."""
    variant = ProductVariant(
        channel_id=channel.id,
        sku="SPEAKER",
        name="Speaker",
        price_cents=1000,
        tax_rate_bps=1600,
        stock_on_hand=10,
    )
    db_session.add(variant)
    db_session.commit()
    return variant


@pytest.fixture(scope='function')
def shipping_method(db_session, channel):
    method = ShippingMethod(
        channel_id=channel.id,
        code="STANDARD",
        name="Standard Shipping",
        price_cents=500,
        tax_rate_bps=0,
    )
    db_session.add(method)
    db_session.commit()
    return method


@pytest.fixture(scope='function')
def customer(db_session, channel):
    customer = Customer(channel_id=channel.id, first_name="Amina", last_name="Otieno", email="amina@example.com")
    db_session.add(customer)
    db_session.commit()
    return customer


@pytest.fixture(scope='function')
def supplier(db_session, channel):
    supplier = Supplier(channel_id=channel.id, name="Nairobi Wholesale")
    db_session.add(supplier)
    db_session.commit()
    return supplier


@pytest.fixture(scope='function')
def headers():
    """Cashier actor."""
    return {"X-User-Id": "1"}


@pytest.fixture(scope='function')
def manager_headers():
    return {"X-User-Id": "2", "X-User-Role": "manager"}


def _unwrap(result):
    assert not isinstance(result, ErrorResult), result.to_dict()
    return result


@pytest.fixture(scope='function')
def order_factory(channel, settings):
    """Build an order in ArrangingPayment from [(variant, quantity)]."""
    def _build(items, customer=None):
        order = order_service.create_order(
            channel_id=channel.id,
            customer_id=customer.id if customer else None,
            actor_user_id=1,
        )
        for variant, quantity in items:
            _unwrap(order_service.add_item_to_order(order.id, variant.id, quantity, settings=settings))
        return _unwrap(order_state_service.transition_order_to_state(order.id, ORDER_ARRANGING_PAYMENT))

    return _build


@pytest.fixture(scope='function')
def placed_order_factory(order_factory, settings):
    """Build an order and pay its full total with one payment method."""
    def _build(items, method="cash", customer=None):
        order = order_factory(items, customer=customer)
        return _unwrap(payment_service.add_payment_to_order(
            order.id, method_code=method, actor_user_id=1, settings=settings
        ))

    return _build
