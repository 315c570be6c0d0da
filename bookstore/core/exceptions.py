from typing import Optional

from fastapi import HTTPException, status


class AppException(HTTPException):
    """Domain error rendered by FastAPI as {"detail": {"code": ..., "message": ...}}.

    `code` is the stable, machine-checkable identifier; `message` is for humans.
    """

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "INTERNAL_ERROR"
    default_message: str = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(
            status_code=self.status_code,
            detail={"code": self.code, "message": self.message},
        )

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class NotFound(AppException):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"
    default_message = "Resource not found"


class Forbidden(AppException):
    status_code = status.HTTP_403_FORBIDDEN
    code = "FORBIDDEN"
    default_message = "You do not have permission to access this resource"


class InvalidRequest(AppException):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "BAD_REQUEST"
    default_message = "Invalid request"


class Conflict(AppException):
    status_code = status.HTTP_409_CONFLICT
    code = "CONFLICT"
    default_message = "Request conflicts with the current state"


class AlreadyPaid(Conflict):
    code = "ALREADY_PAID"
    default_message = "Order has already been paid"


class WrongMethod(Conflict):
    code = "WRONG_PAYMENT_METHOD"
    default_message = "This is not a COD payment"


class InvalidState(AppException):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "INVALID_STATE"
    default_message = "Operation not allowed in the current state"


class InvalidTransition(InvalidState):
    code = "INVALID_TRANSITION"

    def __init__(self, current, target):
        self.current = current
        self.target = target
        super().__init__(
            f"Cannot change order status from {_name(current)} to {_name(target)}"
        )


class SignatureInvalid(AppException):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "SIGNATURE_INVALID"
    default_message = "Invalid signature"


class AmountMismatch(AppException):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "AMOUNT_MISMATCH"
    default_message = "Payment amount does not match order amount"


class GatewayRejected(AppException):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "GATEWAY_REJECTED"
    default_message = "Payment gateway rejected the request"


class GatewayUnavailable(AppException):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "GATEWAY_UNAVAILABLE"
    default_message = "Payment gateway is unavailable"


def _name(value) -> str:
    return getattr(value, "value", str(value))
