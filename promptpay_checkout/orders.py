"""Order assembly: turn a user's cart into an immutable order snapshot."""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from promptpay_checkout.carts import find_cart
from promptpay_checkout.catalog import variant_display_info
from promptpay_checkout.codec import format_amount
from promptpay_checkout.database import session_scope
from promptpay_checkout.errors import CartNotFound, EmptyCart, OrderNotFound
from promptpay_checkout.models import Cart, CartItem, Order, OrderItem, OrderStatus

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


@dataclass
class CheckoutResult:
    order: Order
    cleared: int


def assemble_order(session, user_id: int) -> CheckoutResult:
    """Create a PENDING order from the cart and delete the cart, inside ``session``.

    The caller owns the transaction. The cart row is locked where the backend
    supports it, and the final delete must remove exactly that one row, so two
    checkouts racing on the same cart cannot both commit.
    """
    cart = find_cart(session, user_id, lock=True)
    if cart is None:
        raise CartNotFound()

    items = (
        session.query(CartItem)
        .filter(CartItem.cart_id == cart.id)
        .order_by(CartItem.id)
        .all()
    )
    if not items:
        raise EmptyCart()

    lines = []
    subtotal = ZERO
    for it in items:
        unit_price = Decimal(it.unit_price)
        line_total = unit_price * it.qty
        subtotal += line_total
        info = variant_display_info(session, it.variant_id)
        lines.append(
            OrderItem(
                product_id=info.product_id,
                variant_id=it.variant_id,
                name=info.name,
                shade_name=info.shade,
                unit_price=unit_price,
                qty=it.qty,
                line_total=line_total,
            )
        )

    shipping_fee = discount_total = ZERO
    order = Order(
        user_id=user_id,
        status=OrderStatus.PENDING.value,
        subtotal=subtotal,
        shipping_fee=shipping_fee,
        discount_total=discount_total,
        grand_total=subtotal - discount_total + shipping_fee,
        items=lines,
    )
    session.add(order)
    session.flush()

    cleared = (
        session.query(CartItem)
        .filter(CartItem.cart_id == cart.id)
        .delete(synchronize_session=False)
    )
    if session.query(Cart).filter(Cart.id == cart.id).delete(synchronize_session=False) != 1:
        # another checkout consumed this cart first
        raise CartNotFound()

    logger.info("Order %s created for user %s: %s lines, subtotal %s",
                order.id, user_id, len(lines), format_amount(subtotal))
    return CheckoutResult(order=order, cleared=cleared)


def find_pending_order(session, user_id: int) -> Optional[Order]:
    return (
        session.query(Order)
        .filter(Order.user_id == user_id, Order.status == OrderStatus.PENDING.value)
        .order_by(Order.created_at.desc(), Order.id.desc())
        .first()
    )


def order_to_dict(order: Order, include_items: bool = False) -> dict:
    data = {
        "id": order.id,
        "status": order.status,
        "subtotal": format_amount(order.subtotal),
        "shipping_fee": format_amount(order.shipping_fee),
        "discount_total": format_amount(order.discount_total),
        "grand_total": format_amount(order.grand_total),
        "scb_transaction_id": order.scb_transaction_id,
        "scb_qr_id": order.scb_qr_id,
        "created_at": order.created_at.isoformat() if order.created_at else None,
        "updated_at": order.updated_at.isoformat() if order.updated_at else None,
    }
    if include_items:
        data["items"] = [
            {
                "id": it.id,
                "product_id": it.product_id,
                "variant_id": it.variant_id,
                "name": it.name,
                "shade_name": it.shade_name,
                "unit_price": format_amount(it.unit_price),
                "qty": it.qty,
                "line_total": format_amount(it.line_total),
            }
            for it in order.items
        ]
    return data


class OrderService:
    """Checkout and order lookups backed by the DB."""

    def __init__(self, session_factory=None):
        self._session_factory = session_factory

    def checkout(self, user_id: int) -> CheckoutResult:
        with session_scope(self._session_factory) as session:
            return assemble_order(session, user_id)

    def list_orders(self, user_id: int) -> List[dict]:
        with session_scope(self._session_factory) as session:
            orders = (
                session.query(Order)
                .filter(Order.user_id == user_id)
                .order_by(Order.created_at.desc(), Order.id.desc())
                .all()
            )
            return [order_to_dict(o) for o in orders]

    def get_order(self, user_id: int, order_id: int) -> dict:
        with session_scope(self._session_factory) as session:
            order = session.get(Order, order_id)
            if order is None or order.user_id != user_id:
                raise OrderNotFound()
            return order_to_dict(order, include_items=True)

    def latest_order(self, user_id: int) -> dict:
        with session_scope(self._session_factory) as session:
            order = (
                session.query(Order)
                .filter(Order.user_id == user_id)
                .order_by(Order.created_at.desc(), Order.id.desc())
                .first()
            )
            if order is None:
                raise OrderNotFound("No orders found")
            return order_to_dict(order, include_items=True)
