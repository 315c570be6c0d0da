from typing import List, Optional

from fastapi import APIRouter, Depends, status
from sqlalchemy import desc
from sqlalchemy.orm import Session

from bookstore.config.config import settings
from bookstore.core.exceptions import Forbidden, InvalidRequest, InvalidState, NotFound
from bookstore.database.database import get_db, transactional
from bookstore.models.enums import (
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    ShippingMethod,
)
from bookstore.models.models import Cart, CartItem, Order, OrderItem, Product
from bookstore.oauth2 import oauth2
from bookstore.schemas.order import (
    OrderCreate,
    OrderItemResponse,
    OrderResponse,
    OrderStatusUpdate,
)
from bookstore.schemas.token import TokenData
from bookstore.services.order_service.state_machine import ensure_transition
from bookstore.services.payment_service.ledger import PaymentLedger, lock_order
from bookstore.utils.logger import get_application_logger, log_audit_trail

router = APIRouter(tags=["Orders"])
logger = get_application_logger(__name__)

CANCELLED_BEFORE_PAYMENT = "Order cancelled before payment completed"


def shipping_fee(method: ShippingMethod) -> int:
    if method == ShippingMethod.EXPRESS:
        return settings.shipping_fee_express
    return settings.shipping_fee_standard


# ============================
# SERVICE
# ============================


def create_order(
    db: Session,
    identity: TokenData,
    address: str,
    method_payment: PaymentMethod,
    shipping_method: ShippingMethod = ShippingMethod.STANDARD,
    selected_cart_item_ids: Optional[List[int]] = None,
) -> Order:
    """Check out the caller's cart (all items, or only the selected ones)."""
    with transactional(db):
        cart = db.query(Cart).filter(Cart.user_id == identity.id).first()
        if cart is None:
            raise NotFound("Cart not found")

        if selected_cart_item_ids:
            cart_items = db.query(CartItem).filter(CartItem.id.in_(selected_cart_item_ids)).all()
            if len(cart_items) != len(set(selected_cart_item_ids)):
                raise NotFound("Cart item not found")
            for item in cart_items:
                if item.cart_id != cart.id:
                    raise Forbidden("Cart item does not belong to your cart")
        else:
            cart_items = db.query(CartItem).filter(CartItem.cart_id == cart.id).all()

        if not cart_items:
            raise InvalidRequest("No items selected")

        # stock is checked against the total per product across cart lines
        needed = {}
        for item in cart_items:
            needed[item.product_id] = needed.get(item.product_id, 0) + item.quantity

        products = {}
        for product_id, quantity in needed.items():
            product = (
                db.query(Product)
                .filter(Product.id == product_id)
                .with_for_update()
                .first()
            )
            if product is None:
                raise NotFound(f"Product not found with id: {product_id}")
            if product.stock_quantity < quantity:
                raise InvalidRequest(f"Product '{product.name}' has insufficient stock")
            products[product_id] = product

        items_total = sum(item.total for item in cart_items)
        total_item = sum(item.quantity for item in cart_items)
        initial = PaymentStatus.UNPAID if method_payment == PaymentMethod.COD else PaymentStatus.PENDING

        order = Order(
            user_id=identity.id,
            address=address,
            status=OrderStatus.PENDING,
            method_payment=method_payment,
            payment_status=initial,
            total_amount=items_total + shipping_fee(shipping_method),
            total_item=total_item,
        )
        db.add(order)
        db.flush()

        PaymentLedger(db).create_pending(order, method_payment)

        for item in cart_items:
            db.add(OrderItem(
                order_id=order.id,
                product_id=item.product_id,
                quantity=item.quantity,
                total=item.total,
            ))
            products[item.product_id].stock_quantity -= item.quantity
            db.delete(item)
        db.flush()

        remaining = db.query(CartItem).filter(CartItem.cart_id == cart.id).all()
        cart.total = sum(item.total for item in remaining)

    logger.info(
        "Order created",
        extra={"order_id": order.id, "total_amount": order.total_amount,
               "method_payment": method_payment.value},
    )
    return order


def get_order(db: Session, order_id: int, identity: TokenData) -> Order:
    order = db.query(Order).filter(Order.id == order_id).first()
    if order is None:
        raise NotFound("Order not found")
    if order.user_id != identity.id and not identity.is_admin:
        raise Forbidden("You do not have permission to view this order")
    return order


def list_my_orders(db: Session, identity: TokenData) -> List[Order]:
    return (
        db.query(Order)
        .filter(Order.user_id == identity.id)
        .order_by(desc(Order.created_at), desc(Order.id))
        .all()
    )


def list_orders(db: Session, order_status: Optional[OrderStatus] = None) -> List[Order]:
    query = db.query(Order)
    if order_status is not None:
        query = query.filter(Order.status == order_status)
    return query.order_by(desc(Order.created_at), desc(Order.id)).all()


def _apply_cancellation(db: Session, order: Order) -> None:
    items = db.query(OrderItem).filter(OrderItem.order_id == order.id).all()
    for item in items:
        product = (
            db.query(Product)
            .filter(Product.id == item.product_id)
            .with_for_update()
            .first()
        )
        if product is not None:
            product.stock_quantity += item.quantity

    ledger = PaymentLedger(db)
    if order.payment_status == PaymentStatus.PAID:
        ledger.refund(order.id)
    elif order.payment_status == PaymentStatus.PENDING:
        ledger.fail(order.id, CANCELLED_BEFORE_PAYMENT)

    order.status = OrderStatus.CANCELLED


def cancel_order(db: Session, order_id: int, identity: TokenData) -> Order:
    with transactional(db):
        order = (
            db.query(Order)
            .filter(Order.id == order_id, Order.user_id == identity.id)
            .with_for_update()
            .first()
        )
        if order is None:
            raise NotFound("Order not found or you don't have permission")
        ensure_transition(order.status, OrderStatus.CANCELLED)
        _apply_cancellation(db, order)

    log_audit_trail(
        action="order_cancelled",
        actor_user_id=str(identity.id),
        target=f"order:{order_id}",
        details={"payment_status": order.payment_status.value},
    )
    return order


def update_order_status(db: Session, order_id: int, target: OrderStatus,
                        identity: Optional[TokenData] = None) -> Order:
    with transactional(db):
        order = lock_order(db, order_id)
        previous = order.status
        ensure_transition(previous, target)

        if target == OrderStatus.CANCELLED:
            _apply_cancellation(db, order)
        else:
            order.status = target
            if (
                target == OrderStatus.DELIVERED
                and order.method_payment == PaymentMethod.COD
                and order.payment_status == PaymentStatus.UNPAID
            ):
                PaymentLedger(db).confirm_cod(order.id)

    log_audit_trail(
        action="order_status_changed",
        actor_user_id=str(identity.id) if identity else "system",
        target=f"order:{order_id}",
        details={"from": previous.value, "to": order.status.value},
    )
    return order


def approve_order(db: Session, order_id: int, identity: TokenData) -> Order:
    with transactional(db):
        order = lock_order(db, order_id)
        if order.status != OrderStatus.PENDING:
            raise InvalidState("Only pending orders can be approved")
        order.status = OrderStatus.CONFIRMED

    log_audit_trail(
        action="order_approved",
        actor_user_id=str(identity.id),
        target=f"order:{order_id}",
        details={"from": OrderStatus.PENDING.value, "to": OrderStatus.CONFIRMED.value},
    )
    return order


def to_response(db: Session, order: Order) -> OrderResponse:
    response = OrderResponse.model_validate(order)
    items = db.query(OrderItem).filter(OrderItem.order_id == order.id).all()
    response.items = [OrderItemResponse.model_validate(item) for item in items]
    return response


# ============================
# ROUTES
# ============================


@router.get("/admin/all", response_model=List[OrderResponse])
def admin_list_orders(
    status: Optional[OrderStatus] = None,
    db: Session = Depends(get_db),
    current_user: TokenData = Depends(oauth2.require_admin),
):
    return [to_response(db, order) for order in list_orders(db, status)]


@router.get("/my-orders", response_model=List[OrderResponse])
def my_orders(
    db: Session = Depends(get_db),
    current_user: TokenData = Depends(oauth2.get_current_user),
):
    return [to_response(db, order) for order in list_my_orders(db, current_user)]


@router.get("/{order_id}", response_model=OrderResponse)
def read_order(
    order_id: int,
    db: Session = Depends(get_db),
    current_user: TokenData = Depends(oauth2.get_current_user),
):
    return to_response(db, get_order(db, order_id, current_user))


@router.post("", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
def place_order(
    payload: OrderCreate,
    db: Session = Depends(get_db),
    current_user: TokenData = Depends(oauth2.get_current_user),
):
    order = create_order(
        db,
        current_user,
        address=payload.address,
        method_payment=payload.method_payment,
        shipping_method=payload.shipping_method,
        selected_cart_item_ids=payload.selected_cart_item_ids,
    )
    return to_response(db, order)


@router.put("/admin/{order_id}/status", response_model=OrderResponse)
def admin_update_status(
    order_id: int,
    payload: OrderStatusUpdate,
    db: Session = Depends(get_db),
    current_user: TokenData = Depends(oauth2.require_admin),
):
    return to_response(db, update_order_status(db, order_id, payload.status, current_user))


@router.put("/admin/{order_id}/approve", response_model=OrderResponse)
def admin_approve(
    order_id: int,
    db: Session = Depends(get_db),
    current_user: TokenData = Depends(oauth2.require_admin),
):
    return to_response(db, approve_order(db, order_id, current_user))


@router.put("/{order_id}/cancel", response_model=OrderResponse)
def cancel(
    order_id: int,
    db: Session = Depends(get_db),
    current_user: TokenData = Depends(oauth2.get_current_user),
):
    return to_response(db, cancel_order(db, order_id, current_user))
