from pydantic_settings import BaseSettings
from typing import Optional
from dotenv import load_dotenv

# LOG_LEVEL / LOG_DIR are read straight from os.environ by the logger
load_dotenv()


class Settings(BaseSettings):
    # Database config. database_url wins when set (tests use sqlite://)
    database_url: Optional[str] = None
    database_hostname: str = "localhost"
    database_port: str = "5432"
    database_password: str = ""
    database_name: str = "bookstore"
    database_username: str = "postgres"

    # Auth config
    secret_key: str = "default-insecure-key-change-in-production"
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 60

    # Shared gateway settings
    gateway_timeout_seconds: int = 30
    gateway_timezone: str = "Asia/Ho_Chi_Minh"

    # MoMo (wallet / QR)
    momo_partner_code: str = "MOMO"
    momo_access_key: str = ""
    momo_secret_key: str = ""
    momo_endpoint: str = "https://test-payment.momo.vn/v2/gateway/api/create"
    momo_query_endpoint: Optional[str] = None
    momo_return_url: str = "http://localhost:8000/api/payments/momo/callback"
    momo_notify_url: str = "http://localhost:8000/api/payments/momo/notify"
    momo_request_type: str = "captureWallet"
    momo_lang: str = "vi"

    # VNPay (card / bank redirect)
    vnpay_tmn_code: str = ""
    vnpay_hash_secret: str = ""
    vnpay_url: str = "https://sandbox.vnpayment.vn/paymentv2/vpcpay.html"
    vnpay_return_url: str = "http://localhost:8000/api/payments/vnpay/callback"
    vnpay_version: str = "2.1.0"
    vnpay_command: str = "pay"
    vnpay_order_type: str = "other"
    vnpay_locale: str = "vn"
    vnpay_expire_minutes: int = 15

    # Checkout
    shipping_fee_standard: int = 20000
    shipping_fee_express: int = 30000

    class Config:
        env_file = ".env"
        extra = "ignore"

    @property
    def sqlalchemy_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"postgresql://{self.database_username}:{self.database_password}"
            f"@{self.database_hostname}:{self.database_port}/{self.database_name}"
        )

    @property
    def momo_query_url(self) -> str:
        # MoMo serves /query next to /create
        return self.momo_query_endpoint or self.momo_endpoint.replace("/create", "/query")


settings = Settings()
