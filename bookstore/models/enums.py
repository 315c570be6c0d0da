from enum import Enum


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PROCESSING = "PROCESSING"
    SHIPPING = "SHIPPING"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class PaymentMethod(str, Enum):
    COD = "COD"
    VNPAY = "VNPAY"
    MOMO = "MOMO"
    BANKING = "BANKING"


class PaymentStatus(str, Enum):
    UNPAID = "UNPAID"      # COD, collected on delivery
    PENDING = "PENDING"    # online, waiting for the gateway
    PAID = "PAID"
    REFUNDED = "REFUNDED"
    FAILED = "FAILED"


class Role(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"


class ShippingMethod(str, Enum):
    STANDARD = "STANDARD"
    EXPRESS = "EXPRESS"
