# app/core/config.py
from pydantic_settings import BaseSettings
from pydantic import AnyHttpUrl, field_validator # AnyHttpUrl stays in pydantic core
from functools import lru_cache
from typing import List
from dotenv import load_dotenv

from app.gateway.pricing import RoutePrice, parse_routes, to_micro

# Load .env file if it exists
load_dotenv()

class Settings(BaseSettings):
    PROJECT_NAME: str = "NTMPI 402 Payment Gateway"
    HOST: str = "0.0.0.0"
    PORT: int = 4020
    LOG_LEVEL: str = "INFO"

    # Upstream service that paid requests are proxied to
    GATEWAY_UPSTREAM: AnyHttpUrl = "http://localhost:3000"
    GATEWAY_UPSTREAM_TIMEOUT: float = 30.0

    # Neutaro account that receives payments, and the LCD endpoint used to find them
    GATEWAY_PAYMENT_ADDRESS: str = ""
    GATEWAY_REST: AnyHttpUrl = "https://api2.neutaro.io"
    GATEWAY_LEDGER_TIMEOUT: float = 10.0
    GATEWAY_CURRENCY: str = "NTMPI"
    GATEWAY_DENOM: str = "uneutaro"

    GATEWAY_INVOICE_TTL: int = 300
    GATEWAY_MIN_CONFIRMATIONS: int = 1

    # Pricing: "pattern=price,pattern=price", first match wins
    GATEWAY_ROUTES: str = ""
    GATEWAY_DEFAULT_PRICE: str = "0.001"

    GATEWAY_PREPAID: bool = False
    GATEWAY_DB: str = "./gateway.db"
    GATEWAY_SWEEP_INTERVAL: float = 60.0
    GATEWAY_AUDIT_LOG_PATH: str = "logs/gateway_audit.jsonl"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields from .env

    @field_validator("GATEWAY_DEFAULT_PRICE")
    @classmethod
    def validate_default_price(cls, value: str) -> str:
        to_micro(value)
        return value.strip()

    @field_validator("GATEWAY_ROUTES")
    @classmethod
    def validate_routes(cls, value: str) -> str:
        for route in parse_routes(value):
            to_micro(route.amount)
        return value

    @property
    def route_prices(self) -> List[RoutePrice]:
        return parse_routes(self.GATEWAY_ROUTES)

    @property
    def upstream_base(self) -> str:
        return str(self.GATEWAY_UPSTREAM).rstrip("/")

    @property
    def rest_base(self) -> str:
        return str(self.GATEWAY_REST).rstrip("/")

@lru_cache() # Cache the settings object for performance
def get_settings() -> Settings:
    return Settings()

settings = get_settings()
