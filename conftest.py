import os
import tempfile

# Settings and the engine are built at import time
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["MOMO_PARTNER_CODE"] = "MOMOTEST"
os.environ["MOMO_ACCESS_KEY"] = "test-access-key"
os.environ["MOMO_SECRET_KEY"] = "test-momo-secret"
os.environ["VNPAY_TMN_CODE"] = "TESTTMN1"
os.environ["VNPAY_HASH_SECRET"] = "TESTVNPAYSECRET"
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="bookstore-logs-"))

import pytest
from fastapi.testclient import TestClient

from bookstore.database.database import Base, SessionLocal, engine, get_db
from bookstore.main import app
from bookstore.models.enums import (
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    Role,
)
from bookstore.models.models import (
    Cart,
    CartItem,
    Order,
    OrderItem,
    Payment,
    Product,
    User,
)
from bookstore.oauth2.oauth2 import create_access_token
from bookstore.schemas.token import TokenData


@pytest.fixture(autouse=True)
def _schema():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def client(db):
    def _override_get_db():
        yield db

    app.dependency_overrides[get_db] = _override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def auth_header(user_id, roles=(Role.USER.value,)):
    token = create_access_token({"user_id": user_id, "roles": list(roles)})
    return {"Authorization": f"Bearer {token}"}


def identity(user_id, admin=False):
    roles = [Role.ADMIN.value] if admin else [Role.USER.value]
    return TokenData(id=user_id, roles=roles)


class Factory:
    """Seeds rows directly and commits, as if earlier requests had run."""

    def __init__(self, db):
        self.db = db
        self._users = 0

    def user(self, role=Role.USER, id=None):
        self._users += 1
        user = User(
            id=id,
            email=f"reader{self._users}@example.com",
            full_name=f"Reader {self._users}",
            role=role,
        )
        self.db.add(user)
        self.db.commit()
        return user

    def product(self, name="Dune", price=50000, stock=10):
        product = Product(name=name, price=price, stock_quantity=stock)
        self.db.add(product)
        self.db.commit()
        return product

    def cart(self, user, items=()):
        """items: iterable of (product, quantity)"""
        cart = Cart(user_id=user.id, total=0)
        self.db.add(cart)
        self.db.flush()
        total = 0
        for product, quantity in items:
            line = product.price * quantity
            self.db.add(CartItem(cart_id=cart.id, product_id=product.id,
                                 quantity=quantity, total=line))
            total += line
        cart.total = total
        self.db.commit()
        return cart

    def order(
        self,
        user,
        total=150000,
        method=PaymentMethod.VNPAY,
        payment_status=None,
        status=OrderStatus.PENDING,
        items=(),
        id=None,
    ):
        if payment_status is None:
            payment_status = PaymentStatus.UNPAID if method == PaymentMethod.COD else PaymentStatus.PENDING
        order = Order(
            id=id,
            user_id=user.id,
            address="12 Nguyen Hue, District 1",
            status=status,
            method_payment=method,
            payment_status=payment_status,
            total_amount=total,
            total_item=sum(q for _, q in items),
        )
        self.db.add(order)
        self.db.flush()
        for product, quantity in items:
            self.db.add(OrderItem(order_id=order.id, product_id=product.id,
                                  quantity=quantity, total=product.price * quantity))
        self.db.add(Payment(
            order_id=order.id,
            payment_method=method,
            payment_status=payment_status,
            amount=total,
        ))
        self.db.commit()
        return order


@pytest.fixture
def factory(db):
    return Factory(db)
