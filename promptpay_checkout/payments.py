"""Payment sessions: QR issuance against an order and payment confirmation.

An order moves ``PENDING -> PAID`` through exactly one conditional UPDATE,
shared by the webhook, the status poll and the sandbox override. Whichever
path lands first performs the side effects (cart clear, realtime push); the
others find nothing to update and do nothing.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from promptpay_checkout.carts import clear_cart
from promptpay_checkout.codec import format_amount, make_reference, parse_reference
from promptpay_checkout.database import session_scope
from promptpay_checkout.errors import (
    CartNotFound,
    GatewayMaintenanceError,
    InvalidReference,
    InvalidSignature,
    OrderNotFound,
)
from promptpay_checkout.gateway import PAID_STATUSES
from promptpay_checkout.models import Order, OrderStatus
from promptpay_checkout.notifier import OrderNotifier, notifier
from promptpay_checkout.orders import assemble_order, find_pending_order

logger = logging.getLogger(__name__)

CHANNEL_TAG = "WEB"
DEFAULT_QR_EXPIRY = timedelta(minutes=15)


@dataclass
class QrSession:
    order_id: int
    amount: Decimal
    expires_at: datetime
    transaction_id: Optional[str] = None
    qr_id: Optional[str] = None
    qr_image_url: Optional[str] = None
    qr_raw_data: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "orderId": self.order_id,
            "amount": format_amount(self.amount),
            "qrImageUrl": self.qr_image_url,
            "qrRawData": self.qr_raw_data,
            "transactionId": self.transaction_id,
            "expiresAt": self.expires_at.isoformat(),
        }


@dataclass
class PaymentStatus:
    status: str
    raw: Any = field(default=None)

    def to_dict(self) -> dict:
        return {"status": self.status, "raw": self.raw}


def _webhook_fields(payload: Any) -> Tuple[Optional[str], Optional[str], str]:
    data = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(data, dict):
        data = payload if isinstance(payload, dict) else {}
    reference = data.get("ref1") or data.get("reference1") or data.get("billPaymentRef1")
    status = data.get("status") or data.get("transactionStatus") or ""
    if not isinstance(status, str):
        status = ""
    return reference, data.get("transactionId"), status.strip().upper()


class PaymentService:
    def __init__(self, gateway, session_factory=None, registry: OrderNotifier = notifier,
                 qr_expiry: timedelta = DEFAULT_QR_EXPIRY):
        self.gateway = gateway
        self.registry = registry
        self.qr_expiry = qr_expiry
        self._session_factory = session_factory

    def _scope(self):
        return session_scope(self._session_factory)

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    def _ensure_pending_order(self, user_id: int) -> Tuple[int, Decimal]:
        with self._scope() as session:
            order = find_pending_order(session, user_id)
            if order is not None:
                logger.info("Reusing pending order %s for user %s", order.id, user_id)
                return order.id, Decimal(order.grand_total)
        try:
            with self._scope() as session:
                order = assemble_order(session, user_id).order
                return order.id, Decimal(order.grand_total)
        except CartNotFound:
            # a concurrent request may have just turned this cart into an order
            with self._scope() as session:
                order = find_pending_order(session, user_id)
                if order is None:
                    raise
                return order.id, Decimal(order.grand_total)

    def _record_gateway_ids(self, order_id: int, transaction_id: Optional[str], qr_id: Optional[str]) -> None:
        try:
            with self._scope() as session:
                session.query(Order).filter(Order.id == order_id).update(
                    {Order.scb_transaction_id: transaction_id, Order.scb_qr_id: qr_id},
                    synchronize_session=False,
                )
        except SQLAlchemyError:
            # the QR is already issued; the poll can still find it by reference
            logger.exception("Could not store gateway ids for order %s", order_id)

    def issue_qr(self, user_id: int) -> QrSession:
        order_id, amount = self._ensure_pending_order(user_id)
        token = self.gateway.get_access_token()
        qr = self.gateway.create_payment_qr(
            amount,
            make_reference(order_id),
            str(user_id),
            CHANNEL_TAG,
            access_token=token,
        )
        self._record_gateway_ids(order_id, qr.transaction_id, qr.qr_id)
        logger.info("Issued %s QR for order %s (%s)", qr.mode, order_id, format_amount(amount))
        return QrSession(
            order_id=order_id,
            amount=amount,
            expires_at=self._now() + self.qr_expiry,
            transaction_id=qr.transaction_id,
            qr_id=qr.qr_id,
            qr_image_url=qr.qr_image_url,
            qr_raw_data=qr.qr_raw_data,
        )

    def mark_paid(self, order_id: int, source: str) -> bool:
        """Move a PENDING order to PAID. Returns False if it was not PENDING."""
        with self._scope() as session:
            updated = (
                session.query(Order)
                .filter(Order.id == order_id, Order.status == OrderStatus.PENDING.value)
                .update(
                    {Order.status: OrderStatus.PAID.value, Order.updated_at: func.now()},
                    synchronize_session=False,
                )
            )
            if not updated:
                logger.info("Order %s not pending, %s confirmation ignored", order_id, source)
                return False
            user_id = session.query(Order.user_id).filter(Order.id == order_id).scalar()
            cleared = clear_cart(session, user_id)

        logger.info("Order %s marked PAID via %s (%s cart lines cleared)", order_id, source, cleared)
        self.registry.publish(order_id, {"orderId": order_id, "status": OrderStatus.PAID.value})
        return True

    def _order_id_for_transaction(self, transaction_id: str) -> Optional[int]:
        with self._scope() as session:
            return (
                session.query(Order.id)
                .filter(Order.scb_transaction_id == transaction_id)
                .scalar()
            )

    def confirm_by_webhook(self, raw_body: bytes, signature: Optional[str]) -> bool:
        """Apply a gateway callback. Raises ``InvalidSignature`` before touching any state."""
        if not self.gateway.verify_webhook_signature(raw_body, signature):
            logger.warning("Rejected webhook with invalid signature")
            raise InvalidSignature()

        try:
            payload = json.loads(raw_body)
        except ValueError:
            logger.warning("Webhook body is not JSON, ignoring")
            return False

        reference, transaction_id, status = _webhook_fields(payload)
        if status not in PAID_STATUSES:
            logger.info("Webhook status %r for reference %r, nothing to do", status, reference)
            return False

        order_id = None
        if reference:
            try:
                order_id = parse_reference(reference)
            except InvalidReference:
                logger.warning("Webhook reference %r does not name an order", reference)
        if order_id is None and transaction_id:
            order_id = self._order_id_for_transaction(str(transaction_id))
        if order_id is None:
            logger.warning("Webhook for unknown order (ref=%r, txn=%r)", reference, transaction_id)
            return False
        return self.mark_paid(order_id, source="webhook")

    def _confirms_order(self, order_id: int, result, transaction_id: Optional[str],
                        stored_transaction_id: Optional[str]) -> bool:
        if not transaction_id or transaction_id == stored_transaction_id:
            return True
        # a caller-supplied transaction id only counts if the gateway ties it to this order
        if not result.reference:
            return False
        try:
            return parse_reference(result.reference) == order_id
        except InvalidReference:
            return False

    def check_status(self, user_id: int, order_id: int, transaction_id: Optional[str] = None) -> PaymentStatus:
        with self._scope() as session:
            order = session.get(Order, order_id)
            if order is None or order.user_id != user_id:
                raise OrderNotFound()
            if order.status == OrderStatus.PAID.value:
                return PaymentStatus(OrderStatus.PAID.value, {"orderId": order_id, "source": "local"})
            stored_transaction_id = order.scb_transaction_id
            transaction_id = transaction_id or stored_transaction_id

        try:
            if transaction_id:
                result = self.gateway.inquiry_transaction_status(transaction_id)
            else:
                result = self.gateway.inquiry_by_reference(make_reference(order_id), str(user_id))
        except GatewayMaintenanceError as e:
            logger.info("Gateway maintenance while polling order %s: %s", order_id, e.message)
            return PaymentStatus(OrderStatus.PENDING.value, {"note": "gateway maintenance"})

        if result.is_paid:
            if not self._confirms_order(order_id, result, transaction_id, stored_transaction_id):
                logger.warning(
                    "Transaction %s (ref %r) is not for order %s, not marking paid",
                    transaction_id, result.reference, order_id,
                )
                return PaymentStatus(OrderStatus.PENDING.value, {"note": "transaction does not match order"})
            self.mark_paid(order_id, source="poll")
        return PaymentStatus(result.status, result.raw)

    def simulate_paid(self, order_id: int) -> bool:
        with self._scope() as session:
            if session.get(Order, order_id) is None:
                raise OrderNotFound()
        return self.mark_paid(order_id, source="simulation")
