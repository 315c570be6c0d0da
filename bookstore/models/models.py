from sqlalchemy import (
    Column,
    Integer,
    BigInteger,
    String,
    TIMESTAMP,
    ForeignKey,
    Text,
    Enum,
    func,
)
from bookstore.database.database import Base
from bookstore.models.enums import OrderStatus, PaymentMethod, PaymentStatus, Role

# Rows reference each other by foreign key only; callers join explicitly.


def _enum(enum_cls, name):
    return Enum(enum_cls, name=name, native_enum=False, length=20)


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, nullable=False, unique=True)
    full_name = Column(String, nullable=False)
    role = Column(_enum(Role, "user_role"), nullable=False, default=Role.USER)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())


class Product(Base):
    __tablename__ = "products"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    price = Column(BigInteger, nullable=False)
    stock_quantity = Column(Integer, nullable=False, default=0)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())


class Cart(Base):
    __tablename__ = "carts"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, unique=True)
    total = Column(BigInteger, nullable=False, default=0)


class CartItem(Base):
    __tablename__ = "cart_items"
    id = Column(Integer, primary_key=True, index=True)
    cart_id = Column(Integer, ForeignKey("carts.id"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    total = Column(BigInteger, nullable=False)


class Order(Base):
    __tablename__ = "orders"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    address = Column(String, nullable=False)
    status = Column(_enum(OrderStatus, "order_status"), nullable=False, default=OrderStatus.PENDING)
    method_payment = Column(_enum(PaymentMethod, "payment_method"), nullable=False)
    payment_status = Column(_enum(PaymentStatus, "payment_status"), nullable=False)
    total_amount = Column(BigInteger, nullable=False)  # VND, no minor unit
    total_item = Column(Integer, nullable=False, default=0)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())


class OrderItem(Base):
    __tablename__ = "order_items"
    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    total = Column(BigInteger, nullable=False)


class Payment(Base):
    __tablename__ = "payments"
    id = Column(Integer, primary_key=True, index=True)

    # One payment per order; concurrent callbacks rely on this constraint
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, unique=True)

    payment_method = Column(_enum(PaymentMethod, "payment_method"), nullable=False)
    payment_status = Column(_enum(PaymentStatus, "payment_status"), nullable=False)
    amount = Column(BigInteger, nullable=False)

    transaction_id = Column(String, nullable=True)  # gateway's reference
    transaction_time = Column(TIMESTAMP(timezone=True), nullable=True)
    payment_info = Column(Text, nullable=True)

    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())
