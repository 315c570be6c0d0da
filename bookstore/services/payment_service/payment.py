from typing import Dict, Optional

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from bookstore.core.exceptions import Forbidden, InvalidRequest, NotFound
from bookstore.database.database import get_db, transactional
from bookstore.middleware.request_id import client_ip
from bookstore.models.models import Order
from bookstore.oauth2 import oauth2
from bookstore.schemas.payment import (
    ConfirmPaymentRequest,
    GatewayPaymentRequest,
    GatewayPaymentResponse,
    MoMoCallbackResponse,
    PaymentResponse,
    ProviderQueryResponse,
    VNPayCallbackResponse,
)
from bookstore.schemas.token import TokenData
from bookstore.services.payment_service.gateways import MoMoGateway, VNPayGateway
from bookstore.services.payment_service.ledger import PaymentLedger
from bookstore.utils.logger import get_transaction_logger, log_audit_trail
from bookstore.webhooks.handler import MoMoCallbackProcessor, VNPayCallbackProcessor

logger = get_transaction_logger(__name__)

router = APIRouter(tags=["Payments"])
momo_router = APIRouter(tags=["MoMo"])
vnpay_router = APIRouter(tags=["VNPay"])


# ============================
# LEDGER ENDPOINTS
# ============================


@router.get("/order/{order_id}", response_model=PaymentResponse)
def get_payment_by_order(
    order_id: int,
    db: Session = Depends(get_db),
    current_user: TokenData = Depends(oauth2.get_current_user),
):
    order = db.query(Order).filter(Order.id == order_id).first()
    if order is None:
        raise NotFound("Order not found")
    if order.user_id != current_user.id and not current_user.is_admin:
        raise Forbidden("You do not have permission to view this payment")
    return PaymentLedger(db).get_by_order(order_id)


@router.post("/confirm", response_model=PaymentResponse)
def confirm_payment(
    payload: ConfirmPaymentRequest,
    db: Session = Depends(get_db),
    current_user: TokenData = Depends(oauth2.require_admin),
):
    with transactional(db):
        payment = PaymentLedger(db).confirm_online(
            payload.order_id,
            payload.transaction_id,
            payload.payment_info or "Confirmed manually",
        )
    logger.info(
        "Payment confirmed manually",
        extra={"order_id": payload.order_id, "admin_id": current_user.id},
    )
    return payment


@router.post("/confirm-cod/{order_id}", response_model=PaymentResponse)
def confirm_cod_payment(
    order_id: int,
    db: Session = Depends(get_db),
    current_user: TokenData = Depends(oauth2.require_admin),
):
    with transactional(db):
        payment = PaymentLedger(db).confirm_cod(order_id)
    return payment


@router.post("/refund/{order_id}", response_model=PaymentResponse)
def refund_payment(
    order_id: int,
    db: Session = Depends(get_db),
    current_user: TokenData = Depends(oauth2.require_admin),
):
    with transactional(db):
        payment = PaymentLedger(db).refund(order_id)
    log_audit_trail(
        action="refund_requested",
        actor_user_id=str(current_user.id),
        target=f"order:{order_id}",
    )
    return payment


# ============================
# MOMO
# ============================


def _gateway_response(result) -> GatewayPaymentResponse:
    return GatewayPaymentResponse(
        order_id=result.order_id,
        transaction_ref=result.transaction_ref,
        request_id=result.request_id,
        payment_url=result.payment_url,
        deeplink=result.deeplink,
        qr_code_url=result.qr_code_url,
        message=result.message,
    )


@momo_router.post("/create", response_model=GatewayPaymentResponse)
def momo_create(
    payload: GatewayPaymentRequest,
    request: Request,
    db: Session = Depends(get_db),
    current_user: TokenData = Depends(oauth2.get_current_user),
):
    result = MoMoGateway(db).create_payment(
        payload.order_id,
        current_user,
        order_info=payload.order_info,
        return_url=payload.return_url,
        notify_url=payload.notify_url,
        client_ip=client_ip(request),
    )
    return _gateway_response(result)


async def _callback_params(request: Request) -> Dict[str, str]:
    """Merge query string with a form or JSON body (MoMo IPN posts JSON)."""
    params = dict(request.query_params)
    content_type = request.headers.get("content-type", "")
    if request.method == "POST":
        if content_type.startswith("application/json"):
            try:
                body = await request.json()
            except ValueError:
                raise InvalidRequest("Invalid JSON body")
            if not isinstance(body, dict):
                raise InvalidRequest("Invalid JSON body")
            params.update(body)
        elif content_type.startswith(("application/x-www-form-urlencoded", "multipart/form-data")):
            form = await request.form()
            params.update({k: v for k, v in form.items() if isinstance(v, str)})
    return params


@momo_router.post("/notify", response_model=MoMoCallbackResponse)
async def momo_notify(request: Request, db: Session = Depends(get_db)):
    params = await _callback_params(request)
    result = await run_in_threadpool(MoMoCallbackProcessor(db).process, params)
    return result.body


@momo_router.get("/callback", response_model=MoMoCallbackResponse)
async def momo_callback(request: Request, db: Session = Depends(get_db)):
    params = await _callback_params(request)
    result = await run_in_threadpool(MoMoCallbackProcessor(db).process, params)
    return result.body


@momo_router.get("/query", response_model=ProviderQueryResponse)
def momo_query(
    order_ref: str,
    request_id: Optional[str] = None,
    db: Session = Depends(get_db),
    current_user: TokenData = Depends(oauth2.require_admin),
):
    gateway = MoMoGateway(db)
    response = gateway.query_transaction(order_ref, request_id)
    return ProviderQueryResponse(
        order_ref=order_ref,
        request_id=request_id or str(response.get("requestId", "")),
        provider_response=response,
    )


# ============================
# VNPAY
# ============================


@vnpay_router.post("/create", response_model=GatewayPaymentResponse)
def vnpay_create(
    payload: GatewayPaymentRequest,
    request: Request,
    db: Session = Depends(get_db),
    current_user: TokenData = Depends(oauth2.get_current_user),
):
    result = VNPayGateway(db).create_payment(
        payload.order_id,
        current_user,
        order_info=payload.order_info,
        return_url=payload.return_url,
        client_ip=client_ip(request),
    )
    return _gateway_response(result)


async def _vnpay(request: Request, db: Session):
    params = dict(request.query_params)
    result = await run_in_threadpool(
        VNPayCallbackProcessor(db).process, params, request.url.query
    )
    return result.body


@vnpay_router.get("/notify", response_model=VNPayCallbackResponse)
async def vnpay_notify(request: Request, db: Session = Depends(get_db)):
    return await _vnpay(request, db)


@vnpay_router.get("/callback", response_model=VNPayCallbackResponse)
async def vnpay_callback(request: Request, db: Session = Depends(get_db)):
    return await _vnpay(request, db)
