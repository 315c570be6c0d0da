import pytest

from bookstore.core.exceptions import (
    AlreadyPaid,
    InvalidState,
    NotFound,
    WrongMethod,
)
from bookstore.database.database import transactional
from bookstore.models.enums import PaymentMethod, PaymentStatus
from bookstore.models.models import Order, Payment
from bookstore.services.payment_service.ledger import PaymentLedger


def _payments(db, order_id):
    return db.query(Payment).filter(Payment.order_id == order_id).all()


def test_create_pending_resets_failed_payment_in_place(db, factory):
    user = factory.user()
    order = factory.order(user, method=PaymentMethod.VNPAY, payment_status=PaymentStatus.FAILED)

    with transactional(db):
        PaymentLedger(db).create_pending(order, PaymentMethod.MOMO, info="MoMo - retry")

    rows = _payments(db, order.id)
    assert len(rows) == 1
    assert rows[0].payment_status == PaymentStatus.PENDING
    assert rows[0].payment_method == PaymentMethod.MOMO
    db.refresh(order)
    assert order.payment_status == PaymentStatus.PENDING
    assert order.method_payment == PaymentMethod.MOMO


def test_create_pending_for_cod_starts_unpaid(db, factory):
    user = factory.user()
    order = factory.order(user, method=PaymentMethod.COD)

    with transactional(db):
        payment = PaymentLedger(db).create_pending(order)

    assert payment.payment_status == PaymentStatus.UNPAID


def test_create_pending_rejects_paid_order(db, factory):
    user = factory.user()
    order = factory.order(user, payment_status=PaymentStatus.PAID)

    with pytest.raises(AlreadyPaid):
        PaymentLedger(db).create_pending(order, PaymentMethod.VNPAY)


def test_confirm_online_marks_order_and_payment_paid(db, factory):
    user = factory.user()
    order = factory.order(user, total=150000)

    with transactional(db):
        PaymentLedger(db).confirm_online(order.id, "14112233", "VNPay - NCB - test", amount=150000)

    payment = PaymentLedger(db).get_by_order(order.id)
    assert payment.payment_status == PaymentStatus.PAID
    assert payment.transaction_id == "14112233"
    assert payment.transaction_time is not None
    assert db.get(Order, order.id).payment_status == PaymentStatus.PAID


def test_confirm_online_loses_race_when_order_already_paid(db, factory):
    user = factory.user()
    order = factory.order(user)
    ledger = PaymentLedger(db)
    ledger._order(order.id)  # stale copy in the identity map

    # another worker flips the row first
    db.query(Order).filter(Order.id == order.id).update(
        {Order.payment_status: PaymentStatus.PAID}, synchronize_session=False
    )

    with pytest.raises(AlreadyPaid):
        ledger.confirm_online(order.id, "T1", "info")


def test_confirm_cod_requires_cod_method(db, factory):
    user = factory.user()
    order = factory.order(user, method=PaymentMethod.MOMO)

    with pytest.raises(WrongMethod) as exc:
        PaymentLedger(db).confirm_cod(order.id)
    assert exc.value.status_code == 409


def test_confirm_cod_sets_paid_and_time(db, factory):
    user = factory.user()
    order = factory.order(user, method=PaymentMethod.COD)

    with transactional(db):
        payment = PaymentLedger(db).confirm_cod(order.id)

    assert payment.payment_status == PaymentStatus.PAID
    assert payment.payment_info == "Cash collected on delivery"
    assert payment.transaction_time is not None
    assert db.get(Order, order.id).payment_status == PaymentStatus.PAID


def test_refund_only_from_paid(db, factory):
    user = factory.user()
    pending = factory.order(user)
    paid = factory.order(user, payment_status=PaymentStatus.PAID)
    ledger = PaymentLedger(db)

    with pytest.raises(InvalidState) as exc:
        ledger.refund(pending.id)
    assert exc.value.message == "Can only refund paid payments"

    with transactional(db):
        ledger.refund(paid.id)
    assert ledger.get_by_order(paid.id).payment_status == PaymentStatus.REFUNDED
    assert db.get(Order, paid.id).payment_status == PaymentStatus.REFUNDED


def test_refunded_is_terminal(db, factory):
    user = factory.user()
    order = factory.order(user, payment_status=PaymentStatus.REFUNDED)
    ledger = PaymentLedger(db)

    with pytest.raises(InvalidState):
        ledger.confirm_online(order.id, "T1", "info")
    with pytest.raises(InvalidState):
        ledger.fail(order.id, "late failure")


def test_fail_records_reason_and_never_overrides_paid(db, factory):
    user = factory.user()
    order = factory.order(user)
    paid = factory.order(user, payment_status=PaymentStatus.PAID)
    ledger = PaymentLedger(db)

    with transactional(db):
        ledger.fail(order.id, "VNPay failed - Code: 24")
    payment = ledger.get_by_order(order.id)
    assert payment.payment_status == PaymentStatus.FAILED
    assert payment.payment_info == "VNPay failed - Code: 24"

    with pytest.raises(AlreadyPaid):
        ledger.fail(paid.id, "should not apply")


def test_get_by_order_missing(db):
    with pytest.raises(NotFound):
        PaymentLedger(db).get_by_order(999)


def test_one_payment_row_per_order_across_operations(db, factory):
    user = factory.user()
    order = factory.order(user)
    ledger = PaymentLedger(db)

    with transactional(db):
        ledger.fail(order.id, "cancelled by user at gateway")
    with transactional(db):
        ledger.create_pending(db.get(Order, order.id), PaymentMethod.MOMO)
    with transactional(db):
        ledger.confirm_online(order.id, "T9", "MoMo - qr - retry")
    with transactional(db):
        ledger.refund(order.id)

    assert len(_payments(db, order.id)) == 1
