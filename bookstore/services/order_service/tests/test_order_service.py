import pytest

from conftest import identity
from bookstore.core.exceptions import (
    Forbidden,
    InvalidRequest,
    InvalidState,
    InvalidTransition,
    NotFound,
)
from bookstore.models.enums import (
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    ShippingMethod,
)
from bookstore.models.models import Cart, CartItem, OrderItem, Payment, Product
from bookstore.services.order_service import order as order_service


def _stock(db, product_id):
    db.expire_all()
    return db.get(Product, product_id).stock_quantity


def test_create_order_from_whole_cart(db, factory):
    user = factory.user()
    book = factory.product("Dune", price=50000, stock=5)
    other = factory.product("Emma", price=30000, stock=2)
    factory.cart(user, [(book, 2), (other, 1)])

    order = order_service.create_order(
        db, identity(user.id), "12 Le Loi", PaymentMethod.VNPAY, ShippingMethod.STANDARD
    )

    assert order.total_amount == 2 * 50000 + 30000 + 20000
    assert order.total_item == 3
    assert order.status == OrderStatus.PENDING
    assert order.payment_status == PaymentStatus.PENDING
    assert _stock(db, book.id) == 3
    assert _stock(db, other.id) == 1
    assert db.query(OrderItem).filter(OrderItem.order_id == order.id).count() == 2
    assert db.query(CartItem).count() == 0

    payment = db.query(Payment).filter(Payment.order_id == order.id).one()
    assert payment.payment_status == PaymentStatus.PENDING
    assert payment.amount == order.total_amount


def test_create_cod_order_with_selected_items_and_express(db, factory):
    user = factory.user()
    book = factory.product(price=40000, stock=5)
    kept = factory.product("Kept", price=10000, stock=5)
    cart = factory.cart(user, [(book, 1), (kept, 2)])
    selected = db.query(CartItem).filter(CartItem.product_id == book.id).one()

    order = order_service.create_order(
        db, identity(user.id), "1 Hang Bai", PaymentMethod.COD, ShippingMethod.EXPRESS,
        selected_cart_item_ids=[selected.id],
    )

    assert order.total_amount == 40000 + 30000
    assert order.payment_status == PaymentStatus.UNPAID
    remaining = db.query(CartItem).all()
    assert [item.product_id for item in remaining] == [kept.id]
    db.expire_all()
    assert db.get(Cart, cart.id).total == 20000


def test_create_order_rejects_foreign_cart_items(db, factory):
    me = factory.user()
    them = factory.user()
    book = factory.product()
    factory.cart(me, [(book, 1)])
    factory.cart(them, [(book, 1)])
    theirs = (
        db.query(CartItem)
        .join(Cart, Cart.id == CartItem.cart_id)
        .filter(Cart.user_id == them.id)
        .one()
    )

    with pytest.raises(Forbidden):
        order_service.create_order(
            db, identity(me.id), "addr", PaymentMethod.COD, selected_cart_item_ids=[theirs.id]
        )


def test_create_order_empty_cart_and_insufficient_stock(db, factory):
    user = factory.user()
    book = factory.product("Scarce", stock=1)
    factory.cart(user)

    with pytest.raises(InvalidRequest) as exc:
        order_service.create_order(db, identity(user.id), "addr", PaymentMethod.COD)
    assert exc.value.message == "No items selected"

    buyer = factory.user()
    factory.cart(buyer, [(book, 2)])
    with pytest.raises(InvalidRequest) as exc:
        order_service.create_order(db, identity(buyer.id), "addr", PaymentMethod.COD)
    assert exc.value.message == "Product 'Scarce' has insufficient stock"
    assert _stock(db, book.id) == 1


def test_stock_is_checked_against_all_lines_for_a_product(db, factory):
    user = factory.user()
    book = factory.product("Dune", stock=5)
    factory.cart(user, [(book, 3), (book, 3)])

    with pytest.raises(InvalidRequest) as exc:
        order_service.create_order(db, identity(user.id), "addr", PaymentMethod.COD)

    assert exc.value.message == "Product 'Dune' has insufficient stock"
    assert _stock(db, book.id) == 5
    assert db.query(CartItem).count() == 2


def test_repeated_product_lines_decrement_the_summed_quantity(db, factory):
    user = factory.user()
    book = factory.product(price=10000, stock=6)
    factory.cart(user, [(book, 3), (book, 3)])

    order = order_service.create_order(db, identity(user.id), "addr", PaymentMethod.COD)

    assert order.total_item == 6
    assert _stock(db, book.id) == 0
    assert db.query(OrderItem).filter(OrderItem.order_id == order.id).count() == 2


def test_unknown_selected_cart_item_is_not_found(db, factory):
    user = factory.user()
    book = factory.product(stock=5)
    factory.cart(user, [(book, 1)])
    mine = db.query(CartItem).one()

    with pytest.raises(NotFound) as exc:
        order_service.create_order(
            db, identity(user.id), "addr", PaymentMethod.COD,
            selected_cart_item_ids=[mine.id, mine.id + 1000],
        )

    assert exc.value.message == "Cart item not found"
    assert _stock(db, book.id) == 5
    assert db.query(CartItem).count() == 1


def test_duplicate_selected_ids_are_accepted(db, factory):
    user = factory.user()
    book = factory.product(stock=5)
    factory.cart(user, [(book, 2)])
    mine = db.query(CartItem).one()

    order = order_service.create_order(
        db, identity(user.id), "addr", PaymentMethod.COD,
        selected_cart_item_ids=[mine.id, mine.id],
    )

    assert order.total_item == 2
    assert _stock(db, book.id) == 3


def test_create_order_without_cart(db, factory):
    user = factory.user()
    with pytest.raises(NotFound):
        order_service.create_order(db, identity(user.id), "addr", PaymentMethod.COD)


def test_cancel_pending_order_restores_stock_and_fails_payment(db, factory):
    user = factory.user()
    p1 = factory.product("A", price=10000, stock=4)
    p2 = factory.product("B", price=20000, stock=0)
    order = factory.order(user, items=[(p1, 3), (p2, 2)], total=100000)

    cancelled = order_service.cancel_order(db, order.id, identity(user.id))

    assert cancelled.status == OrderStatus.CANCELLED
    assert _stock(db, p1.id) == 7
    assert _stock(db, p2.id) == 2
    payment = db.query(Payment).filter(Payment.order_id == order.id).one()
    assert payment.payment_status == PaymentStatus.FAILED
    assert payment.payment_info == "Order cancelled before payment completed"


def test_cancel_paid_order_refunds(db, factory):
    user = factory.user()
    book = factory.product(stock=0)
    order = factory.order(user, items=[(book, 1)], payment_status=PaymentStatus.PAID)

    cancelled = order_service.cancel_order(db, order.id, identity(user.id))

    assert cancelled.payment_status == PaymentStatus.REFUNDED
    assert db.query(Payment).filter(Payment.order_id == order.id).one().payment_status == PaymentStatus.REFUNDED
    assert _stock(db, book.id) == 1


def test_cancel_cod_order_leaves_payment_unpaid(db, factory):
    user = factory.user()
    order = factory.order(user, method=PaymentMethod.COD)

    cancelled = order_service.cancel_order(db, order.id, identity(user.id))

    assert cancelled.payment_status == PaymentStatus.UNPAID


def test_cancel_rules(db, factory):
    owner = factory.user()
    stranger = factory.user()
    book = factory.product(stock=0)
    order = factory.order(owner, items=[(book, 1)])
    confirmed = factory.order(owner, status=OrderStatus.CONFIRMED)

    with pytest.raises(NotFound):
        order_service.cancel_order(db, order.id, identity(stranger.id))
    with pytest.raises(InvalidTransition):
        order_service.cancel_order(db, confirmed.id, identity(owner.id))
    assert _stock(db, book.id) == 0


def test_update_status_walks_the_lifecycle_and_collects_cod(db, factory):
    user = factory.user()
    order = factory.order(user, method=PaymentMethod.COD)
    admin = identity(99, admin=True)

    for target in (OrderStatus.CONFIRMED, OrderStatus.PROCESSING,
                   OrderStatus.SHIPPING, OrderStatus.DELIVERED):
        updated = order_service.update_order_status(db, order.id, target, admin)
        assert updated.status == target

    assert updated.payment_status == PaymentStatus.PAID
    payment = db.query(Payment).filter(Payment.order_id == order.id).one()
    assert payment.payment_info == "Cash collected on delivery"


def test_update_status_rejects_skips_without_side_effects(db, factory):
    user = factory.user()
    order = factory.order(user)

    with pytest.raises(InvalidTransition):
        order_service.update_order_status(db, order.id, OrderStatus.PROCESSING)

    db.expire_all()
    assert order_service.get_order(db, order.id, identity(user.id)).status == OrderStatus.PENDING


def test_admin_cancel_runs_cancellation_effects(db, factory):
    user = factory.user()
    book = factory.product(stock=1)
    order = factory.order(user, items=[(book, 2)], payment_status=PaymentStatus.PAID)

    updated = order_service.update_order_status(db, order.id, OrderStatus.CANCELLED)

    assert updated.status == OrderStatus.CANCELLED
    assert updated.payment_status == PaymentStatus.REFUNDED
    assert _stock(db, book.id) == 3


def test_approve_only_from_pending(db, factory):
    user = factory.user()
    order = factory.order(user)
    admin = identity(99, admin=True)

    approved = order_service.approve_order(db, order.id, admin)
    assert approved.status == OrderStatus.CONFIRMED

    with pytest.raises(InvalidState) as exc:
        order_service.approve_order(db, order.id, admin)
    assert exc.value.message == "Only pending orders can be approved"

    with pytest.raises(NotFound):
        order_service.approve_order(db, 999, admin)


def test_queries(db, factory):
    me = factory.user()
    them = factory.user()
    mine = factory.order(me)
    theirs = factory.order(them, status=OrderStatus.CONFIRMED)

    assert [o.id for o in order_service.list_my_orders(db, identity(me.id))] == [mine.id]
    assert {o.id for o in order_service.list_orders(db)} == {mine.id, theirs.id}
    assert [o.id for o in order_service.list_orders(db, OrderStatus.CONFIRMED)] == [theirs.id]

    with pytest.raises(Forbidden):
        order_service.get_order(db, theirs.id, identity(me.id))
    assert order_service.get_order(db, theirs.id, identity(me.id, admin=True)).id == theirs.id
