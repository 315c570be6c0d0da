import os

from fastapi import FastAPI

from bookstore.database.database import engine
from bookstore.middleware.request_id import RequestIDMiddleware
from bookstore.models import models
from bookstore.services.order_service import order
from bookstore.services.payment_service import payment
from bookstore.utils.logger import init_logging, get_application_logger

# Initialize logging when the app starts
init_logging()

logger = get_application_logger(__name__)

logger.info("Bookstore backend starting...")
logger.info(f"Environment: {os.getenv('ENVIRONMENT', 'development')}")

models.Base.metadata.create_all(bind=engine)

app = FastAPI(title="Bookstore Backend")

app.add_middleware(RequestIDMiddleware)

# Include routers
app.include_router(order.router, prefix="/api/v1/orders")
app.include_router(payment.momo_router, prefix="/api/payments/momo")
app.include_router(payment.vnpay_router, prefix="/api/payments/vnpay")
app.include_router(payment.router, prefix="/api/payments")


@app.get("/healthz")
def healthz():
    return {"status": "ok"}
