"""Outbound side of the MoMo and VNPay integrations.

Each gateway records the PENDING intent through the ledger, commits, and only then
talks to the provider, so no row lock is held across network I/O.
"""
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo

import requests
from sqlalchemy.orm import Session

from bookstore.config.config import settings
from bookstore.core.exceptions import (
    AlreadyPaid,
    Forbidden,
    GatewayRejected,
    GatewayUnavailable,
    InvalidRequest,
    InvalidState,
)
from bookstore.database.database import transactional
from bookstore.models.enums import OrderStatus, PaymentMethod, PaymentStatus
from bookstore.schemas.token import TokenData
from bookstore.services.payment_service.ledger import PaymentLedger, lock_order
from bookstore.utils.logger import get_transaction_logger, get_error_logger
from bookstore.webhooks.signature_verify import (
    MOMO_CREATE_CODEC,
    MOMO_QUERY_CODEC,
    VNPAY_CODEC,
)

logger = get_transaction_logger(__name__)
error_logger = get_error_logger(__name__)

TXN_REF_PREFIX = "ORDER"
VNPAY_DATE_FORMAT = "%Y%m%d%H%M%S"


def now_millis() -> int:
    return int(time.time() * 1000)


def gateway_now() -> datetime:
    return datetime.now(ZoneInfo(settings.gateway_timezone))


def build_transaction_ref(order_id: int, millis: Optional[int] = None) -> str:
    return f"{TXN_REF_PREFIX}{order_id}_{now_millis() if millis is None else millis}"


def parse_transaction_ref(ref: Optional[str]) -> int:
    """`ORDER42_1700000000000` -> 42. The timestamp suffix is not checked."""
    if not ref or not ref.startswith(TXN_REF_PREFIX) or "_" not in ref:
        raise InvalidRequest("Invalid transaction reference")
    digits = ref[len(TXN_REF_PREFIX):ref.index("_")]
    if not digits.isdigit():
        raise InvalidRequest("Invalid transaction reference")
    return int(digits)


def default_order_info(order_id: int) -> str:
    return f"Thanh toan don hang {order_id}"


@dataclass
class GatewayPayment:
    order_id: int
    transaction_ref: str
    request_id: str
    payment_url: str
    deeplink: Optional[str] = None
    qr_code_url: Optional[str] = None
    message: str = "Payment URL created"


class PaymentGatewayBase(ABC):
    """Shared checks and intent recording; subclasses only talk to the provider."""

    method: PaymentMethod
    name: str = ""

    def __init__(self, db: Session, config=settings):
        self.db = db
        self.config = config

    def create_payment(
        self,
        order_id: int,
        identity: TokenData,
        *,
        order_info: Optional[str] = None,
        return_url: Optional[str] = None,
        notify_url: Optional[str] = None,
        client_ip: Optional[str] = None,
    ) -> GatewayPayment:
        info = order_info or default_order_info(order_id)

        with transactional(self.db):
            order = lock_order(self.db, order_id)
            if order.user_id != identity.id and not identity.is_admin:
                raise Forbidden("You do not have permission to pay for this order")
            if order.status == OrderStatus.CANCELLED:
                raise InvalidState("Cannot pay for a cancelled order")
            if order.payment_status == PaymentStatus.PAID:
                raise AlreadyPaid()
            PaymentLedger(self.db).create_pending(
                order, self.method, info=f"{self.name} - {info}"
            )
            amount = order.total_amount

        millis = now_millis()
        ref = build_transaction_ref(order_id, millis)
        logger.info(
            f"Creating {self.name} payment",
            extra={"order_id": order_id, "transaction_ref": ref, "amount": amount},
        )
        return self._initiate(
            order_id=order_id,
            amount=amount,
            ref=ref,
            request_id=str(millis),
            order_info=info,
            return_url=return_url,
            notify_url=notify_url,
            client_ip=client_ip,
        )

    @abstractmethod
    def _initiate(self, *, order_id: int, amount: int, ref: str, request_id: str,
                  order_info: str, return_url: Optional[str], notify_url: Optional[str],
                  client_ip: Optional[str]) -> GatewayPayment:
        ...


class MoMoGateway(PaymentGatewayBase):
    method = PaymentMethod.MOMO
    name = "MoMo"

    def __init__(self, db: Session, config=settings, http: Optional[requests.Session] = None):
        super().__init__(db, config)
        self.http = http or requests.Session()

    @property
    def timeout(self):
        return (self.config.gateway_timeout_seconds, self.config.gateway_timeout_seconds)

    def _initiate(self, *, order_id, amount, ref, request_id, order_info,
                  return_url, notify_url, client_ip):
        cfg = self.config
        params = {
            "accessKey": cfg.momo_access_key,
            "amount": str(amount),
            "extraData": "",
            "ipnUrl": notify_url or cfg.momo_notify_url,
            "orderId": ref,
            "orderInfo": order_info,
            "partnerCode": cfg.momo_partner_code,
            "redirectUrl": return_url or cfg.momo_return_url,
            "requestId": request_id,
            "requestType": cfg.momo_request_type,
        }
        signature = MOMO_CREATE_CODEC.sign(params, cfg.momo_secret_key)

        body = {
            "partnerCode": params["partnerCode"],
            "accessKey": params["accessKey"],
            "requestId": request_id,
            "amount": params["amount"],
            "orderId": ref,
            "orderInfo": order_info,
            "redirectUrl": params["redirectUrl"],
            "ipnUrl": params["ipnUrl"],
            "requestType": params["requestType"],
            "extraData": "",
            "lang": cfg.momo_lang,
            "signature": signature,
        }
        result = self._post(cfg.momo_endpoint, body)

        if _result_code(result) != 0:
            message = result.get("message") or "MoMo rejected the payment request"
            logger.warning(
                "MoMo create payment rejected",
                extra={"order_id": order_id, "result_code": result.get("resultCode"),
                       "provider_message": message},
            )
            raise GatewayRejected(f"MoMo error: {message}")

        return GatewayPayment(
            order_id=order_id,
            transaction_ref=ref,
            request_id=request_id,
            payment_url=result.get("payUrl") or "",
            deeplink=result.get("deeplink"),
            qr_code_url=result.get("qrCodeUrl"),
            message=result.get("message") or "Payment URL created",
        )

    def query_transaction(self, order_ref: str, request_id: Optional[str] = None) -> Dict[str, Any]:
        """Ask MoMo for the current status of a transaction reference."""
        cfg = self.config
        request_id = request_id or str(now_millis())
        params = {
            "accessKey": cfg.momo_access_key,
            "orderId": order_ref,
            "partnerCode": cfg.momo_partner_code,
            "requestId": request_id,
        }
        body = {
            "partnerCode": cfg.momo_partner_code,
            "accessKey": cfg.momo_access_key,
            "requestId": request_id,
            "orderId": order_ref,
            "lang": cfg.momo_lang,
            "signature": MOMO_QUERY_CODEC.sign(params, cfg.momo_secret_key),
        }
        logger.info("Querying MoMo transaction", extra={"order_ref": order_ref, "request_id": request_id})
        return self._post(cfg.momo_query_url, body)

    def _post(self, url: str, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = self.http.post(url, json=body, timeout=self.timeout)
            result = response.json()
        except (requests.RequestException, ValueError) as exc:
            error_logger.error(
                "MoMo request failed",
                exc_info=True,
                extra={"url": url, "order_ref": body.get("orderId")},
            )
            raise GatewayUnavailable(f"Error connecting to MoMo: {exc.__class__.__name__}")
        if not isinstance(result, dict):
            raise GatewayUnavailable("Unexpected response from MoMo")
        return result


def _result_code(result: Dict[str, Any]) -> Optional[int]:
    try:
        return int(result.get("resultCode"))
    except (TypeError, ValueError):
        return None


class VNPayGateway(PaymentGatewayBase):
    method = PaymentMethod.VNPAY
    name = "VNPay"

    def _initiate(self, *, order_id, amount, ref, request_id, order_info,
                  return_url, notify_url, client_ip):
        cfg = self.config
        created = gateway_now()
        expires = created + timedelta(minutes=cfg.vnpay_expire_minutes)
        params = {
            "vnp_Version": cfg.vnpay_version,
            "vnp_Command": cfg.vnpay_command,
            "vnp_TmnCode": cfg.vnpay_tmn_code,
            "vnp_Amount": str(amount * 100),
            "vnp_CurrCode": "VND",
            "vnp_TxnRef": ref,
            "vnp_OrderInfo": order_info,
            "vnp_OrderType": cfg.vnpay_order_type,
            "vnp_Locale": cfg.vnpay_locale,
            "vnp_ReturnUrl": return_url or cfg.vnpay_return_url,
            "vnp_IpAddr": client_ip or "127.0.0.1",
            "vnp_CreateDate": created.strftime(VNPAY_DATE_FORMAT),
            "vnp_ExpireDate": expires.strftime(VNPAY_DATE_FORMAT),
        }
        query = VNPAY_CODEC.query_string(params, cfg.vnpay_hash_secret)
        return GatewayPayment(
            order_id=order_id,
            transaction_ref=ref,
            request_id=request_id,
            payment_url=f"{cfg.vnpay_url}?{query}",
        )


