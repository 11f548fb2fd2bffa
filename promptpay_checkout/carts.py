from decimal import Decimal

from promptpay_checkout.catalog import get_variant
from promptpay_checkout.codec import format_amount
from promptpay_checkout.database import session_scope
from promptpay_checkout.errors import CartItemNotFound, Forbidden, OutOfStock
from promptpay_checkout.models import Cart, CartItem


def find_cart(session, user_id: int, lock: bool = False):
    query = session.query(Cart).filter(Cart.user_id == user_id)
    if lock:
        query = query.with_for_update()
    return query.first()


def get_or_create_cart(session, user_id: int) -> Cart:
    cart = find_cart(session, user_id)
    if cart is None:
        cart = Cart(user_id=user_id)
        session.add(cart)
        session.flush()
    return cart


def clear_cart(session, user_id: int) -> int:
    """Delete every line of the user's cart and return how many went."""
    cart = find_cart(session, user_id)
    if cart is None:
        return 0
    return (
        session.query(CartItem)
        .filter(CartItem.cart_id == cart.id)
        .delete(synchronize_session=False)
    )


def _reprice(item: CartItem, qty: int) -> None:
    variant = item.variant
    price = Decimal(variant.price)
    safe_qty = min(int(variant.stock_qty or 0), qty)
    if safe_qty < 1:
        raise OutOfStock()
    item.qty = safe_qty
    item.unit_price = price
    item.line_total = price * safe_qty


class CartService:
    """Cart staging backed by the DB."""

    def __init__(self, session_factory=None):
        self._session_factory = session_factory

    def _scope(self):
        return session_scope(self._session_factory)

    @staticmethod
    def _payload(session, cart: Cart) -> dict:
        items = []
        subtotal = Decimal("0")
        total_qty = 0
        for it in session.query(CartItem).filter(CartItem.cart_id == cart.id).order_by(CartItem.id):
            variant = it.variant
            items.append(
                {
                    "id": it.id,
                    "cart_id": it.cart_id,
                    "variant_id": it.variant_id,
                    "qty": it.qty,
                    "unit_price": format_amount(it.unit_price),
                    "line_total": format_amount(it.line_total),
                    "sku": variant.sku if variant else None,
                    "shade_name": variant.shade_name if variant else None,
                    "image_url": variant.image_url if variant else None,
                    "price_now": format_amount(variant.price) if variant else None,
                    "stock_qty": variant.stock_qty if variant else None,
                }
            )
            subtotal += Decimal(it.line_total)
            total_qty += it.qty
        return {
            "id": cart.id,
            "user_id": cart.user_id,
            "items": items,
            "summary": {"total_qty": total_qty, "subtotal": format_amount(subtotal)},
        }

    def get_cart(self, user_id: int) -> dict:
        with self._scope() as session:
            return self._payload(session, get_or_create_cart(session, user_id))

    def add_item(self, user_id: int, variant_id: int, qty: int = 1) -> dict:
        add_qty = max(1, int(qty or 1))
        with self._scope() as session:
            cart = get_or_create_cart(session, user_id)
            variant = get_variant(session, variant_id)
            item = (
                session.query(CartItem)
                .filter(CartItem.cart_id == cart.id, CartItem.variant_id == variant.id)
                .first()
            )
            if item is None:
                item = CartItem(cart=cart, variant=variant)
                session.add(item)
                _reprice(item, add_qty)
            else:
                _reprice(item, item.qty + add_qty)
            session.flush()
            return self._payload(session, cart)

    def _owned_item(self, session, user_id: int, item_id: int) -> CartItem:
        item = session.get(CartItem, item_id)
        if item is None:
            raise CartItemNotFound()
        if item.cart.user_id != user_id:
            raise Forbidden()
        return item

    def update_item(self, user_id: int, item_id: int, qty: int) -> dict:
        with self._scope() as session:
            item = self._owned_item(session, user_id, item_id)
            _reprice(item, max(1, int(qty)))
            session.flush()
            return self._payload(session, item.cart)

    def remove_item(self, user_id: int, item_id: int) -> dict:
        with self._scope() as session:
            item = self._owned_item(session, user_id, item_id)
            cart = item.cart
            session.delete(item)
            session.flush()
            return self._payload(session, cart)
