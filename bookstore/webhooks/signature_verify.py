import hashlib
import hmac
from abc import ABC, abstractmethod
from typing import Dict, Iterable, Mapping, Optional, Sequence
from urllib.parse import quote_plus

from bookstore.core.exceptions import SignatureInvalid
from bookstore.utils.logger import get_error_logger

logger = get_error_logger(__name__)


class SignatureCodec(ABC):
    """Canonical string + HMAC for one provider's signing rules."""

    digestmod = hashlib.sha256

    @abstractmethod
    def canonical(self, params: Mapping[str, object]) -> str:
        ...

    def sign(self, params: Mapping[str, object], secret: str) -> str:
        return self.sign_raw(self.canonical(params), secret)

    def sign_raw(self, data: str, secret: str) -> str:
        if not secret:
            logger.error("Attempt to sign gateway data but secret key is not configured")
            raise SignatureInvalid("Signing secret not configured")
        return hmac.new(
            secret.encode("utf-8"), data.encode("utf-8"), self.digestmod
        ).hexdigest()

    def verify(self, params: Mapping[str, object], received: Optional[str], secret: str) -> None:
        self.verify_raw(self.canonical(params), received, secret)

    def verify_raw(self, data: str, received: Optional[str], secret: str) -> None:
        if not received:
            raise SignatureInvalid("Missing signature")
        expected = self.sign_raw(data, secret)
        if not hmac.compare_digest(expected, received.lower()):
            raise SignatureInvalid()


class FixedOrderCodec(SignatureCodec):
    """`k=v&k=v` in a hardcoded field order, raw values, empties kept (MoMo)."""

    digestmod = hashlib.sha256

    def __init__(self, fields: Sequence[str]):
        self.fields = tuple(fields)

    def canonical(self, params: Mapping[str, object]) -> str:
        return "&".join(f"{name}={_text(params.get(name))}" for name in self.fields)


class SortedEncodedCodec(SignatureCodec):
    """Sorted `vnp_` fields, form-encoded values, empties skipped (VNPay)."""

    digestmod = hashlib.sha512

    prefix = "vnp_"
    excluded = frozenset({"vnp_SecureHash", "vnp_SecureHashType"})

    def pairs(self, params: Mapping[str, object]) -> Dict[str, str]:
        return {
            name: _text(value)
            for name, value in params.items()
            if name.startswith(self.prefix)
            and name not in self.excluded
            and _text(value) != ""
        }

    def canonical(self, params: Mapping[str, object]) -> str:
        fields = self.pairs(params)
        return "&".join(f"{name}={quote_plus(fields[name])}" for name in sorted(fields))

    def canonical_from_query(self, raw_query: str) -> str:
        """Canonical string over the still-encoded query as the provider sent it."""
        pairs = []
        for chunk in raw_query.split("&"):
            if not chunk:
                continue
            name, _, value = chunk.partition("=")
            if not name.startswith(self.prefix) or name in self.excluded or value == "":
                continue
            pairs.append((name, value))
        pairs.sort(key=lambda pair: pair[0])
        return "&".join(f"{name}={value}" for name, value in pairs)

    def query_string(self, params: Mapping[str, object], secret: str) -> str:
        """Encoded, sorted query with vnp_SecureHash appended last."""
        canonical = self.canonical(params)
        return f"{canonical}&vnp_SecureHash={self.sign_raw(canonical, secret)}"


def _text(value) -> str:
    return "" if value is None else str(value)


MOMO_CREATE_CODEC = FixedOrderCodec((
    "accessKey", "amount", "extraData", "ipnUrl", "orderId", "orderInfo",
    "partnerCode", "redirectUrl", "requestId", "requestType",
))

MOMO_IPN_CODEC = FixedOrderCodec((
    "accessKey", "amount", "extraData", "message", "orderId", "orderInfo",
    "orderType", "partnerCode", "payType", "requestId", "responseTime",
    "resultCode", "transId",
))

MOMO_QUERY_CODEC = FixedOrderCodec(("accessKey", "orderId", "partnerCode", "requestId"))

VNPAY_CODEC = SortedEncodedCodec()


def verify_vnpay_callback(params: Mapping[str, str], raw_query: Optional[str], secret: str) -> None:
    received = params.get("vnp_SecureHash")
    if raw_query:
        VNPAY_CODEC.verify_raw(VNPAY_CODEC.canonical_from_query(raw_query), received, secret)
    else:
        VNPAY_CODEC.verify(params, received, secret)


def verify_momo_callback(params: Mapping[str, object], access_key: str, secret: str) -> None:
    # accessKey is ours, the IPN does not echo it back
    signed = dict(params)
    signed["accessKey"] = access_key
    MOMO_IPN_CODEC.verify(signed, _signature_of(params), secret)


def _signature_of(params: Mapping[str, object]) -> Optional[str]:
    value = params.get("signature")
    return None if value is None else str(value)


def missing_fields(params: Mapping[str, object], required: Iterable[str]):
    return [name for name in required if params.get(name) in (None, "")]
