"""Inbound gateway notifications (IPN and browser return) for MoMo and VNPay.

verify -> resolve order (row lock) -> idempotency -> amount check -> apply.
Everything after verification runs in one transaction.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Mapping, Optional
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from bookstore.config.config import settings
from bookstore.core.exceptions import (
    AlreadyPaid,
    AmountMismatch,
    InvalidRequest,
    InvalidState,
    SignatureInvalid,
)
from bookstore.database.database import transactional
from bookstore.models.enums import OrderStatus, PaymentMethod, PaymentStatus
from bookstore.services.payment_service.gateways import (
    VNPAY_DATE_FORMAT,
    gateway_now,
    parse_transaction_ref,
)
from bookstore.services.payment_service.ledger import PaymentLedger, lock_order
from bookstore.utils.logger import (
    get_transaction_logger,
    log_payment_attempt,
    log_security_event,
)
from bookstore.webhooks.signature_verify import (
    missing_fields,
    verify_momo_callback,
    verify_vnpay_callback,
)

logger = get_transaction_logger(__name__)

ALREADY_CONFIRMED = "ALREADY_CONFIRMED"
APPLIED_PAID = "APPLIED_PAID"
APPLIED_FAILED = "APPLIED_FAILED"
REFUNDED_AFTER_CANCEL = "REFUNDED_AFTER_CANCEL"

LATE_PAYMENT_REFUND = "Refunded: payment received after order cancellation"

VNPAY_RESPONSE_MESSAGES = {
    "00": "Giao dịch thành công",
    "07": "Trừ tiền thành công. Giao dịch bị nghi ngờ",
    "09": "Giao dịch không thành công do thẻ chưa đăng ký dịch vụ",
    "10": "Giao dịch không thành công do xác thực không đúng",
    "11": "Giao dịch không thành công do đã hết hạn chờ thanh toán",
    "12": "Giao dịch không thành công do thẻ bị khóa",
    "24": "Giao dịch không thành công do khách hàng hủy",
    "51": "Giao dịch không thành công do tài khoản không đủ số dư",
    "65": "Giao dịch không thành công do vượt quá số lần nhập",
    "75": "Ngân hàng thanh toán đang bảo trì",
    "79": "Giao dịch không thành công do nhập sai mật khẩu quá số lần",
    "99": "Lỗi không xác định",
}


def vnpay_response_message(code: Optional[str]) -> str:
    return VNPAY_RESPONSE_MESSAGES.get(code or "", "Giao dịch thất bại")


@dataclass
class CallbackResult:
    outcome: str
    order_id: int
    body: Dict[str, Any] = field(default_factory=dict)


class CallbackProcessor(ABC):
    provider: str = ""
    method: PaymentMethod
    required: tuple = ()

    def __init__(self, db: Session, config=settings):
        self.db = db
        self.config = config

    def process(self, params: Mapping[str, Any], raw_query: Optional[str] = None) -> CallbackResult:
        params = {k: "" if v is None else str(v) for k, v in params.items()}
        ref = self.reference(params)

        try:
            self.verify(params, raw_query)
        except SignatureInvalid:
            log_security_event(
                "gateway_signature_invalid",
                "warning",
                details={"provider": self.provider, "transaction_ref": ref},
            )
            raise

        missing = missing_fields(params, self.required)
        if missing:
            raise InvalidRequest(f"Missing required fields: {', '.join(missing)}")

        order_id = parse_transaction_ref(ref)
        ledger = PaymentLedger(self.db)

        with transactional(self.db):
            order = lock_order(self.db, order_id)

            if order.payment_status == PaymentStatus.PAID:
                result = self._already_confirmed(order_id, params)
            elif order.payment_status == PaymentStatus.REFUNDED:
                raise InvalidState("Payment has been refunded")
            else:
                amount = self.declared_amount(params)
                if amount != order.total_amount:
                    logger.error(
                        "Amount mismatch",
                        extra={"order_id": order_id, "expected": order.total_amount,
                               "received": amount, "provider": self.provider},
                    )
                    raise AmountMismatch()

                if self.is_success(params):
                    try:
                        ledger.confirm_online(
                            order_id,
                            self.transaction_id(params),
                            self.success_info(params),
                            amount=amount,
                            transaction_time=self.transaction_time(params),
                            method=self.method,
                        )
                        if order.status == OrderStatus.CANCELLED:
                            # money arrived after cancellation restored stock
                            ledger.refund(order_id, LATE_PAYMENT_REFUND)
                            result = self._refunded_after_cancel(order_id, amount, params)
                        else:
                            result = self._paid(order_id, amount, params)
                    except AlreadyPaid:
                        # a concurrent delivery won the conditional update
                        result = self._already_confirmed(order_id, params)
                else:
                    ledger.fail(
                        order_id,
                        self.failure_info(params),
                        transaction_id=self.failed_transaction_id(params),
                        transaction_time=self.transaction_time(params),
                    )
                    result = self._failed(order_id, amount, params)

        log_payment_attempt(
            transaction_id=self.transaction_id(params),
            order_id=order_id,
            amount=result.body.get("amount"),
            provider=self.provider,
            status=result.outcome,
        )
        return result

    # ---- provider specifics ----

    @abstractmethod
    def reference(self, params: Dict[str, str]) -> str:
        ...

    @abstractmethod
    def verify(self, params: Dict[str, str], raw_query: Optional[str]) -> None:
        ...

    @abstractmethod
    def declared_amount(self, params: Dict[str, str]) -> int:
        ...

    @abstractmethod
    def is_success(self, params: Dict[str, str]) -> bool:
        ...

    @abstractmethod
    def transaction_id(self, params: Dict[str, str]) -> Optional[str]:
        ...

    def failed_transaction_id(self, params: Dict[str, str]) -> Optional[str]:
        return None

    @abstractmethod
    def transaction_time(self, params: Dict[str, str]) -> datetime:
        ...

    @abstractmethod
    def success_info(self, params: Dict[str, str]) -> str:
        ...

    @abstractmethod
    def failure_info(self, params: Dict[str, str]) -> str:
        ...

    @abstractmethod
    def _already_confirmed(self, order_id: int, params: Dict[str, str]) -> CallbackResult:
        ...

    @abstractmethod
    def _paid(self, order_id: int, amount: int, params: Dict[str, str]) -> CallbackResult:
        ...

    @abstractmethod
    def _failed(self, order_id: int, amount: int, params: Dict[str, str]) -> CallbackResult:
        ...

    def _refunded_after_cancel(self, order_id: int, amount: int,
                               params: Dict[str, str]) -> CallbackResult:
        """Acknowledge the gateway; the payment itself is already refunded."""
        logger.warning(
            "Payment received for cancelled order, refunded",
            extra={"order_id": order_id, "amount": amount, "provider": self.provider},
        )
        result = self._paid(order_id, amount, params)
        result.outcome = REFUNDED_AFTER_CANCEL
        return result

    def _fallback_time(self, raw: Optional[str]) -> datetime:
        logger.warning(
            "Unparsable transaction time, using current time",
            extra={"provider": self.provider, "raw_time": raw},
        )
        return gateway_now()


def _parse_int(value: Optional[str], name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidRequest(f"Invalid {name}")


class MoMoCallbackProcessor(CallbackProcessor):
    provider = "MoMo"
    method = PaymentMethod.MOMO
    required = ("orderId", "amount", "resultCode")

    def reference(self, params):
        return params.get("orderId", "")

    def verify(self, params, raw_query):
        verify_momo_callback(params, self.config.momo_access_key, self.config.momo_secret_key)

    def declared_amount(self, params):
        return _parse_int(params.get("amount"), "amount")

    def is_success(self, params):
        return params.get("resultCode") == "0"

    def transaction_id(self, params):
        return params.get("transId") or None

    def failed_transaction_id(self, params):
        return self.transaction_id(params)

    def transaction_time(self, params):
        raw = params.get("responseTime")
        try:
            return datetime.fromtimestamp(int(raw) / 1000, ZoneInfo(self.config.gateway_timezone))
        except (TypeError, ValueError, OverflowError, OSError):
            return self._fallback_time(raw)

    def success_info(self, params):
        return f"MoMo - {params.get('payType', '')} - {params.get('orderInfo', '')}"

    def failure_info(self, params):
        return f"MoMo failed - Code: {params.get('resultCode')} - {params.get('message', '')}"

    def _body(self, params, result_code, message, amount, status):
        return {
            "resultCode": result_code,
            "message": message,
            "orderId": params.get("orderId"),
            "amount": amount,
            "transId": params.get("transId"),
            "orderInfo": params.get("orderInfo"),
            "paymentStatus": status,
        }

    def _already_confirmed(self, order_id, params):
        logger.warning("Order already paid, skipping duplicate callback", extra={"order_id": order_id})
        amount = _parse_int(params.get("amount"), "amount")
        return CallbackResult(
            ALREADY_CONFIRMED, order_id,
            self._body(params, 0, "Payment already confirmed", amount, PaymentStatus.PAID.value),
        )

    def _paid(self, order_id, amount, params):
        logger.info("MoMo payment successful", extra={"order_id": order_id})
        return CallbackResult(
            APPLIED_PAID, order_id,
            self._body(params, 0, "Payment confirmed successfully", amount, PaymentStatus.PAID.value),
        )

    def _refunded_after_cancel(self, order_id, amount, params):
        result = super()._refunded_after_cancel(order_id, amount, params)
        result.body["paymentStatus"] = PaymentStatus.REFUNDED.value
        return result

    def _failed(self, order_id, amount, params):
        logger.warning(
            "MoMo payment failed",
            extra={"order_id": order_id, "result_code": params.get("resultCode")},
        )
        return CallbackResult(
            APPLIED_FAILED, order_id,
            self._body(
                params,
                _parse_int(params.get("resultCode"), "resultCode"),
                f"Payment failed: {params.get('message', '')}",
                amount,
                PaymentStatus.FAILED.value,
            ),
        )


class VNPayCallbackProcessor(CallbackProcessor):
    provider = "VNPay"
    method = PaymentMethod.VNPAY
    required = ("vnp_TxnRef", "vnp_Amount", "vnp_ResponseCode")

    def reference(self, params):
        return params.get("vnp_TxnRef", "")

    def verify(self, params, raw_query):
        verify_vnpay_callback(params, raw_query, self.config.vnpay_hash_secret)

    def declared_amount(self, params):
        # vnp_Amount is in 1/100 VND
        amount, remainder = divmod(_parse_int(params.get("vnp_Amount"), "vnp_Amount"), 100)
        if remainder:
            raise AmountMismatch()
        return amount

    def is_success(self, params):
        return params.get("vnp_ResponseCode") == "00"

    def transaction_id(self, params):
        return params.get("vnp_TransactionNo") or None

    def transaction_time(self, params):
        raw = params.get("vnp_PayDate")
        try:
            parsed = datetime.strptime(raw, VNPAY_DATE_FORMAT)
        except (TypeError, ValueError):
            return self._fallback_time(raw)
        return parsed.replace(tzinfo=ZoneInfo(self.config.gateway_timezone))

    def success_info(self, params):
        return f"VNPay - {params.get('vnp_BankCode', '')} - {params.get('vnp_OrderInfo', '')}"

    def failure_info(self, params):
        return f"VNPay failed - Code: {params.get('vnp_ResponseCode')}"

    def _body(self, order_id, status, message, amount, params):
        return {
            "status": status,
            "message": message,
            "orderId": order_id,
            "transactionNo": params.get("vnp_TransactionNo"),
            "amount": amount,
            "bankCode": params.get("vnp_BankCode"),
            "payDate": params.get("vnp_PayDate"),
        }

    def _already_confirmed(self, order_id, params):
        logger.warning("Order already paid, skipping duplicate callback", extra={"order_id": order_id})
        amount = _parse_int(params.get("vnp_Amount"), "vnp_Amount") // 100
        return CallbackResult(
            ALREADY_CONFIRMED, order_id,
            self._body(order_id, "SUCCESS", "Payment already confirmed", amount, params),
        )

    def _paid(self, order_id, amount, params):
        logger.info("VNPay payment successful", extra={"order_id": order_id})
        return CallbackResult(
            APPLIED_PAID, order_id,
            self._body(order_id, "SUCCESS", "Payment successful", amount, params),
        )

    def _failed(self, order_id, amount, params):
        code = params.get("vnp_ResponseCode")
        logger.warning("VNPay payment failed", extra={"order_id": order_id, "response_code": code})
        return CallbackResult(
            APPLIED_FAILED, order_id,
            self._body(order_id, "FAILED", vnpay_response_message(code), amount, params),
        )
