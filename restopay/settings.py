from __future__ import annotations
from functools import lru_cache
from enum import Enum
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class EnvironmentTypes(str, Enum):
    DEBUG = "Debug"
    PROD = "Prod"


class MpesaEnvironment(str, Enum):
    SANDBOX = "sandbox"
    PRODUCTION = "production"


MPESA_BASE_URLS = {
    MpesaEnvironment.SANDBOX: "https://sandbox.safaricom.co.ke",
    MpesaEnvironment.PRODUCTION: "https://api.safaricom.co.ke",
}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="restopay_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="allow",
    )

    # Core app
    app_name: str = Field(default="RestoPay")
    environment: EnvironmentTypes = Field(default=EnvironmentTypes.PROD)
    cors_origins: list[str] = Field(default=["http://localhost:5173", "http://localhost:8080"])

    # Database
    database_url: str = Field(default="sqlite+aiosqlite:///./restopay.db")
    database_echo: bool = Field(default=False)

    # Staff auth
    secret_key: str = Field(default="dev-secret-change-me")
    access_token_expire_minutes: int = Field(default=60)

    # M-Pesa (Daraja) configuration
    mpesa_environment: MpesaEnvironment = Field(default=MpesaEnvironment.SANDBOX)
    mpesa_consumer_key: str = Field(default="")
    mpesa_consumer_secret: str = Field(default="")
    mpesa_shortcode: str = Field(default="")
    mpesa_passkey: str = Field(default="")
    mpesa_callback_url: str = Field(default="")
    mpesa_transaction_desc: str = Field(default="BBQ Restaurant Payment")
    mpesa_transaction_type: str | None = Field(default=None)

    gateway_timeout_seconds: float = Field(default=15.0, gt=0)
    token_expiry_margin_seconds: int = Field(default=60, ge=0)
    country_code: str = Field(default="254")

    @property
    def debug(self) -> bool:
        return self.environment == EnvironmentTypes.DEBUG

    @property
    def mpesa_base_url(self) -> str:
        return MPESA_BASE_URLS[self.mpesa_environment]

    @property
    def stk_transaction_type(self) -> str:
        # Till numbers use BuyGoods; sandbox test shortcodes are paybills
        if self.mpesa_transaction_type:
            return self.mpesa_transaction_type
        if self.mpesa_environment == MpesaEnvironment.PRODUCTION:
            return "CustomerBuyGoodsOnline"
        return "CustomerPayBillOnline"

    def missing_mpesa_credentials(self) -> list[str]:
        required = {
            "mpesa_consumer_key": self.mpesa_consumer_key,
            "mpesa_consumer_secret": self.mpesa_consumer_secret,
            "mpesa_shortcode": self.mpesa_shortcode,
            "mpesa_passkey": self.mpesa_passkey,
        }
        return [name for name, value in required.items() if not value]


@lru_cache
def get_settings() -> Settings:
    return Settings()
