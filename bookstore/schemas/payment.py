from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from bookstore.models.enums import PaymentMethod, PaymentStatus


class PaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_id: int
    payment_method: PaymentMethod
    payment_status: PaymentStatus
    amount: int
    transaction_id: Optional[str] = None
    transaction_time: Optional[datetime] = None
    payment_info: Optional[str] = None


class ConfirmPaymentRequest(BaseModel):
    """Manual confirmation of an online payment by an admin"""
    order_id: int
    transaction_id: str = Field(..., min_length=1, max_length=100)
    payment_info: Optional[str] = None


class GatewayPaymentRequest(BaseModel):
    order_id: int = Field(..., gt=0)
    order_info: Optional[str] = Field(default=None, max_length=255)
    return_url: Optional[str] = None
    notify_url: Optional[str] = None


class GatewayPaymentResponse(BaseModel):
    order_id: int
    transaction_ref: str
    request_id: str
    payment_url: str
    deeplink: Optional[str] = None
    qr_code_url: Optional[str] = None
    message: str = "Payment URL created"


class MoMoCallbackResponse(BaseModel):
    resultCode: int
    message: str
    orderId: Optional[str] = None
    amount: Optional[int] = None
    transId: Optional[str] = None
    orderInfo: Optional[str] = None
    paymentStatus: str


class VNPayCallbackResponse(BaseModel):
    status: str
    message: str
    orderId: Optional[int] = None
    transactionNo: Optional[str] = None
    amount: Optional[int] = None
    bankCode: Optional[str] = None
    payDate: Optional[str] = None


class ProviderQueryResponse(BaseModel):
    order_ref: str
    request_id: str
    provider_response: Dict[str, Any]
