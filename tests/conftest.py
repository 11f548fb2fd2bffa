import threading
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import promptpay_checkout.orders
import promptpay_checkout.routes
from promptpay_checkout.auth import current_user_id
from promptpay_checkout.database import Base
from promptpay_checkout.gateway import QrCode, TransactionStatus, verify_signature
from promptpay_checkout.main import app as fastapi_app
from promptpay_checkout.models import Cart, CartItem, Product, ProductVariant
from promptpay_checkout.notifier import OrderNotifier
from tests.helpers import USER_ID, WEBHOOK_SECRET

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_checkout.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory():
    return TestingSessionLocal


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def seed_variant():
    def _seed(name="Soft Pinch Lip Trio", price="100.00", stock=10, shade="Rose Delight"):
        session = TestingSessionLocal()
        product = Product(name=name, base_price=Decimal(price))
        variant = ProductVariant(product=product, sku=f"SKU-{name[:8].upper()}",
                                 shade_name=shade, price=Decimal(price), stock_qty=stock)
        session.add(variant)
        session.commit()
        variant_id = variant.id
        session.close()
        return variant_id
    return _seed


@pytest.fixture
def fill_cart(seed_variant):
    """Cart with 2 x 100.00 and 1 x 50.00 for ``user_id``."""
    def _fill(user_id=USER_ID):
        first = seed_variant("Soft Pinch Lip Trio", "100.00")
        second = seed_variant("Luminizing Gloss", "50.00", shade="Dazzle")
        session = TestingSessionLocal()
        cart = Cart(user_id=user_id)
        cart.items = [
            CartItem(variant_id=first, qty=2, unit_price=Decimal("100.00"), line_total=Decimal("200.00")),
            CartItem(variant_id=second, qty=1, unit_price=Decimal("50.00"), line_total=Decimal("50.00")),
        ]
        session.add(cart)
        session.commit()
        session.close()
        return first, second
    return _fill


@pytest.fixture
def gateway(mocker):
    """Stand-in for ScbClient with a real signature check."""
    mock = mocker.Mock()
    mock.get_access_token.return_value = "token_123"
    mock.create_payment_qr.return_value = QrCode(
        mode="v2",
        transaction_id="txn_001",
        qr_id="qr_001",
        qr_image_url="https://scb.test/qr/001.png",
    )
    mock.inquiry_transaction_status.return_value = TransactionStatus(status="PENDING", raw={})
    mock.inquiry_by_reference.return_value = TransactionStatus(status="PENDING", raw={})
    mock.verify_webhook_signature.side_effect = (
        lambda body, signature: verify_signature(WEBHOOK_SECRET, body, signature)
    )
    return mock


@pytest.fixture
def registry():
    return OrderNotifier()


@pytest.fixture
def client(monkeypatch, gateway, registry):
    monkeypatch.setattr(promptpay_checkout.routes, "SessionLocal", TestingSessionLocal)
    monkeypatch.setattr(promptpay_checkout.routes, "notifier", registry)
    # Bypass auth verification and the real gateway
    fastapi_app.dependency_overrides[current_user_id] = lambda: USER_ID
    fastapi_app.dependency_overrides[promptpay_checkout.routes.get_gateway] = lambda: gateway
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def cart_race(monkeypatch):
    """Run two checkout calls so ``fast`` commits while ``slow`` sits between
    reading the cart and writing its order. Returns each call's result or
    raised exception as ``(slow, fast)``."""
    def _race(slow, fast):
        slow_has_read = threading.Event()
        fast_done = threading.Event()
        lookup = promptpay_checkout.orders.variant_display_info

        def paused_lookup(session, variant_id):
            if threading.current_thread().name == "slow" and not slow_has_read.is_set():
                slow_has_read.set()
                fast_done.wait(timeout=10)
            return lookup(session, variant_id)

        monkeypatch.setattr(promptpay_checkout.orders, "variant_display_info", paused_lookup)
        outcome = {}

        def run(name, call):
            try:
                outcome[name] = call()
            except Exception as e:
                outcome[name] = e

        slow_thread = threading.Thread(target=run, args=("slow", slow), name="slow")
        slow_thread.start()
        assert slow_has_read.wait(timeout=10)
        fast_thread = threading.Thread(target=run, args=("fast", fast), name="fast")
        fast_thread.start()
        fast_thread.join(timeout=10)
        fast_done.set()
        slow_thread.join(timeout=10)
        return outcome["slow"], outcome["fast"]
    return _race
