from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from bookstore.models.enums import OrderStatus, PaymentMethod, PaymentStatus, ShippingMethod


class OrderCreate(BaseModel):
    address: str = Field(..., min_length=1, max_length=500)
    method_payment: PaymentMethod
    shipping_method: ShippingMethod = ShippingMethod.STANDARD
    selected_cart_item_ids: Optional[List[int]] = None


class OrderStatusUpdate(BaseModel):
    status: OrderStatus


class OrderItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    product_id: int
    quantity: int
    total: int


class OrderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    address: str
    status: OrderStatus
    method_payment: PaymentMethod
    payment_status: PaymentStatus
    total_amount: int
    total_item: int
    created_at: Optional[datetime] = None
    items: List[OrderItemResponse] = []
