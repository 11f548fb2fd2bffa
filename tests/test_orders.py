from decimal import Decimal

import pytest

from promptpay_checkout.errors import CartNotFound, EmptyCart, OrderNotFound
from promptpay_checkout.models import Cart, CartItem, Order, OrderItem, ProductVariant
from promptpay_checkout.orders import OrderService
from tests.helpers import USER_ID


@pytest.fixture
def orders(session_factory):
    return OrderService(session_factory)


def test_checkout_snapshots_cart_into_pending_order(orders, fill_cart, db):
    first, second = fill_cart()

    result = orders.checkout(USER_ID)

    assert result.cleared == 2
    order = db.get(Order, result.order.id)
    assert order.status == "PENDING"
    assert order.subtotal == Decimal("250.00")
    assert order.shipping_fee == Decimal("0.00")
    assert order.discount_total == Decimal("0.00")
    assert order.grand_total == order.subtotal - order.discount_total + order.shipping_fee

    lines = db.query(OrderItem).filter_by(order_id=order.id).order_by(OrderItem.id).all()
    assert [(l.variant_id, l.name, l.shade_name, l.qty) for l in lines] == [
        (first, "Soft Pinch Lip Trio", "Rose Delight", 2),
        (second, "Luminizing Gloss", "Dazzle", 1),
    ]
    assert [l.line_total for l in lines] == [Decimal("200.00"), Decimal("50.00")]
    assert sum(l.line_total for l in lines) == order.subtotal


def test_checkout_deletes_cart_and_lines(orders, fill_cart, db):
    fill_cart()

    orders.checkout(USER_ID)

    assert db.query(Cart).filter_by(user_id=USER_ID).count() == 0
    assert db.query(CartItem).count() == 0


def test_checkout_twice_creates_a_single_order(orders, fill_cart, db):
    fill_cart()

    orders.checkout(USER_ID)
    with pytest.raises(CartNotFound):
        orders.checkout(USER_ID)

    assert db.query(Order).filter_by(user_id=USER_ID).count() == 1
    assert db.query(OrderItem).count() == 2


def test_concurrent_checkouts_on_one_cart_create_a_single_order(orders, fill_cart, cart_race, db):
    fill_cart()

    loser, winner = cart_race(lambda: orders.checkout(USER_ID), lambda: orders.checkout(USER_ID))

    assert isinstance(loser, CartNotFound)
    assert winner.cleared == 2
    assert db.query(Order).filter_by(user_id=USER_ID).count() == 1
    assert db.query(OrderItem).count() == 2
    assert db.query(Cart).count() == 0
    assert db.query(CartItem).count() == 0


def test_checkout_without_cart(orders):
    with pytest.raises(CartNotFound):
        orders.checkout(USER_ID)


def test_checkout_empty_cart_leaves_nothing_behind(orders, db):
    db.add(Cart(user_id=USER_ID))
    db.commit()

    with pytest.raises(EmptyCart):
        orders.checkout(USER_ID)

    assert db.query(Order).count() == 0
    assert db.query(Cart).filter_by(user_id=USER_ID).count() == 1


def test_failed_checkout_rolls_back_everything(orders, fill_cart, db, mocker):
    fill_cart()
    mocker.patch("promptpay_checkout.orders.variant_display_info", side_effect=RuntimeError("catalog down"))

    with pytest.raises(RuntimeError):
        orders.checkout(USER_ID)

    assert db.query(Order).count() == 0
    assert db.query(CartItem).count() == 2


def test_order_snapshot_ignores_later_catalog_changes(orders, fill_cart, db):
    first, _ = fill_cart()
    order_id = orders.checkout(USER_ID).order.id

    variant = db.get(ProductVariant, first)
    variant.price = Decimal("999.00")
    variant.product.name = "Renamed"
    db.commit()

    detail = orders.get_order(USER_ID, order_id)
    assert detail["items"][0]["name"] == "Soft Pinch Lip Trio"
    assert detail["items"][0]["unit_price"] == "100.00"
    assert detail["grand_total"] == "250.00"


def test_removed_variant_falls_back_to_sku_name(orders, db):
    cart = Cart(user_id=USER_ID)
    cart.items = [CartItem(variant_id=404, qty=1, unit_price=Decimal("5.00"), line_total=Decimal("5.00"))]
    db.add(cart)
    db.commit()

    order_id = orders.checkout(USER_ID).order.id

    assert orders.get_order(USER_ID, order_id)["items"][0]["name"] == "SKU-404"


def test_get_order_is_owner_only(orders, fill_cart):
    fill_cart()
    order_id = orders.checkout(USER_ID).order.id

    with pytest.raises(OrderNotFound):
        orders.get_order(USER_ID + 1, order_id)


def test_list_and_latest_orders(orders, fill_cart):
    fill_cart()
    first_id = orders.checkout(USER_ID).order.id
    fill_cart()
    second_id = orders.checkout(USER_ID).order.id

    assert [o["id"] for o in orders.list_orders(USER_ID)] == [second_id, first_id]
    assert orders.latest_order(USER_ID)["id"] == second_id
    with pytest.raises(OrderNotFound):
        orders.latest_order(USER_ID + 1)
