from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from bookstore.core.exceptions import (
    AlreadyPaid,
    InvalidState,
    NotFound,
    WrongMethod,
)
from bookstore.models.enums import PaymentMethod, PaymentStatus
from bookstore.models.models import Order, Payment
from bookstore.utils.logger import get_transaction_logger, log_audit_trail

logger = get_transaction_logger(__name__)


def _now():
    return datetime.now(timezone.utc)


def lock_order(db: Session, order_id: int) -> Order:
    """SELECT ... FOR UPDATE on the order row (no-op lock on SQLite)."""
    order = db.query(Order).filter(Order.id == order_id).with_for_update().first()
    if order is None:
        raise NotFound(f"Order not found with id: {order_id}")
    return order


class PaymentLedger:
    """Owns Payment rows and keeps Order.payment_status in step with them.

    Exactly one Payment exists per order. Every method flushes but never commits:
    the caller wraps the call in `transactional(db)` together with whatever else
    it changes.
    """

    def __init__(self, db: Session):
        self.db = db

    # ---- queries ----

    def get_by_order(self, order_id: int) -> Payment:
        payment = self.db.query(Payment).filter(Payment.order_id == order_id).first()
        if payment is None:
            raise NotFound("Payment not found for this order")
        return payment

    def _order(self, order_id: int) -> Order:
        order = self.db.query(Order).filter(Order.id == order_id).first()
        if order is None:
            raise NotFound(f"Order not found with id: {order_id}")
        return order

    def _payment_or_none(self, order_id: int) -> Optional[Payment]:
        return self.db.query(Payment).filter(Payment.order_id == order_id).first()

    # ---- transitions ----

    def create_pending(self, order: Order, method: Optional[PaymentMethod] = None,
                       info: Optional[str] = None) -> Payment:
        """Record the payment intent for `order`.

        COD starts UNPAID, online methods start PENDING. An existing row is reset
        in place (e.g. a retry after FAILED or a switch of provider).
        """
        method = method or order.method_payment
        initial = PaymentStatus.UNPAID if method == PaymentMethod.COD else PaymentStatus.PENDING

        payment = self._payment_or_none(order.id)
        if payment is not None:
            if payment.payment_status == PaymentStatus.PAID:
                raise AlreadyPaid()
            if payment.payment_status == PaymentStatus.REFUNDED:
                raise InvalidState("Payment has been refunded")
        else:
            payment = Payment(order_id=order.id)
            self.db.add(payment)

        payment.payment_method = method
        payment.payment_status = initial
        payment.amount = order.total_amount
        payment.transaction_id = None
        payment.transaction_time = None
        payment.payment_info = info

        order.method_payment = method
        order.payment_status = initial
        self.db.flush()

        logger.info(
            "Payment intent recorded",
            extra={"order_id": order.id, "method": method.value, "status": initial.value},
        )
        return payment

    def confirm_online(
        self,
        order_id: int,
        transaction_id: Optional[str],
        info: Optional[str],
        *,
        amount: Optional[int] = None,
        transaction_time: Optional[datetime] = None,
        method: Optional[PaymentMethod] = None,
    ) -> Payment:
        """Mark an order PAID from a verified gateway notification.

        The status flip is a conditional UPDATE so two concurrent callbacks cannot
        both win; the loser gets AlreadyPaid.
        """
        order = self._order(order_id)
        if order.payment_status == PaymentStatus.REFUNDED:
            raise InvalidState("Payment has been refunded")

        updated = (
            self.db.query(Order)
            .filter(Order.id == order_id, Order.payment_status != PaymentStatus.PAID)
            .update({Order.payment_status: PaymentStatus.PAID}, synchronize_session="fetch")
        )
        if updated == 0:
            raise AlreadyPaid()

        payment = self._payment_or_none(order_id)
        if payment is None:
            payment = Payment(order_id=order_id)
            self.db.add(payment)

        payment.payment_method = method or payment.payment_method or order.method_payment
        payment.payment_status = PaymentStatus.PAID
        payment.amount = order.total_amount if amount is None else amount
        payment.transaction_id = transaction_id
        payment.transaction_time = transaction_time or _now()
        payment.payment_info = info
        if method is not None:
            order.method_payment = method
        self.db.flush()

        log_audit_trail(
            action="payment_confirmed",
            actor_user_id="gateway",
            target=f"order:{order_id}",
            details={"transaction_id": transaction_id, "amount": payment.amount},
        )
        return payment

    def confirm_cod(self, order_id: int) -> Payment:
        payment = self.get_by_order(order_id)
        if payment.payment_method != PaymentMethod.COD:
            raise WrongMethod()
        if payment.payment_status == PaymentStatus.PAID:
            raise AlreadyPaid()
        if payment.payment_status == PaymentStatus.REFUNDED:
            raise InvalidState("Payment has been refunded")

        order = self._order(order_id)
        payment.payment_status = PaymentStatus.PAID
        payment.transaction_time = _now()
        payment.payment_info = "Cash collected on delivery"
        order.payment_status = PaymentStatus.PAID
        self.db.flush()

        log_audit_trail(
            action="cod_collected",
            actor_user_id="system",
            target=f"order:{order_id}",
            details={"amount": payment.amount},
        )
        return payment

    def refund(self, order_id: int, info: str = "Refunded due to order cancellation") -> Payment:
        payment = self.get_by_order(order_id)
        if payment.payment_status != PaymentStatus.PAID:
            raise InvalidState("Can only refund paid payments")

        order = self._order(order_id)
        payment.payment_status = PaymentStatus.REFUNDED
        payment.payment_info = info
        order.payment_status = PaymentStatus.REFUNDED
        self.db.flush()

        log_audit_trail(
            action="payment_refunded",
            actor_user_id="system",
            target=f"order:{order_id}",
            details={"amount": payment.amount, "transaction_id": payment.transaction_id},
        )
        return payment

    def fail(
        self,
        order_id: int,
        reason: str,
        *,
        transaction_id: Optional[str] = None,
        transaction_time: Optional[datetime] = None,
    ) -> Payment:
        order = self._order(order_id)
        if order.payment_status == PaymentStatus.PAID:
            raise AlreadyPaid()
        if order.payment_status == PaymentStatus.REFUNDED:
            raise InvalidState("Payment has been refunded")

        payment = self._payment_or_none(order_id)
        if payment is None:
            payment = Payment(
                order_id=order_id,
                payment_method=order.method_payment,
                amount=order.total_amount,
            )
            self.db.add(payment)

        payment.payment_status = PaymentStatus.FAILED
        payment.payment_info = reason
        if transaction_id is not None:
            payment.transaction_id = transaction_id
        if transaction_time is not None:
            payment.transaction_time = transaction_time
        order.payment_status = PaymentStatus.FAILED
        self.db.flush()

        logger.warning("Payment failed", extra={"order_id": order_id, "reason": reason})
        return payment
