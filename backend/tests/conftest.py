"""
Pytest configuration and fixtures.
"""
import pytest

from grochain import create_app
from grochain.extensions import db

from factories import Factory

BASE_CONFIG = {
    "TESTING": True,
    "SECRET_KEY": "test-secret-key-0123456789abcdef0123456789",
    "SQLALCHEMY_DATABASE_URI": "sqlite://",
    "PAYSTACK_SECRET_KEY": "",
    "FLUTTERWAVE_SECRET_KEY": "",
    "FLUTTERWAVE_WEBHOOK_HASH": "",
    "PAYMENTS_TEST_MODE": "auto",
    "PAYMENTS_WEBHOOK_STRICT": False,
    "PLATFORM_FEE_RATE": 0.03,
    "DEFAULT_COMMISSION_RATE": 0.05,
    "SETTLEMENT_RETRY_AGE_MINUTES": 5,
    "FRONTEND_URL": "http://localhost:3000",
}


def _build_app(**overrides):
    config = dict(BASE_CONFIG)
    config.update(overrides)
    return create_app(config)


@pytest.fixture
def app():
    """App on an in-memory database, no provider credentials (auto-verify mode)."""
    app = _build_app()
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def live_app():
    """App with provider credentials configured, so gateways hit (mocked) HTTP."""
    app = _build_app(
        PAYMENTS_TEST_MODE="0",
        PAYSTACK_SECRET_KEY="sk_test_live_like_key",
        FLUTTERWAVE_SECRET_KEY="FLWSECK_TEST-live-like-key",
        FLUTTERWAVE_WEBHOOK_HASH="flw-hash",
    )
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def file_app(tmp_path):
    """File-backed SQLite so separate threads get separate connections to one store."""
    app = _build_app(
        SQLALCHEMY_DATABASE_URI=f"sqlite:///{(tmp_path / 'race.db').as_posix()}",
        SQLALCHEMY_ENGINE_OPTIONS={"connect_args": {"timeout": 30}},
    )
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def factory(app):
    return Factory()


@pytest.fixture
def marketplace(app, factory):
    """Buyer, admin, a farmer with a direct partner, one listing and one pending order of 10 @ 100."""
    partner_user = factory.user(role="partner")
    partner = factory.partner(rate=0.05, user=partner_user)
    farmer = factory.user(role="farmer", partner=partner)
    buyer = factory.user(role="buyer")
    admin = factory.user(role="admin")
    listing = factory.listing(farmer, available=50.0, price=100.0)
    order = factory.order(buyer, [(listing, 10.0, 100.0)])
    tx = factory.transaction(order)
    return {
        "partner_user": partner_user,
        "partner": partner,
        "farmer": farmer,
        "buyer": buyer,
        "admin": admin,
        "listing": listing,
        "order": order,
        "tx": tx,
    }
