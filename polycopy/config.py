"""
Configuration module for Polymarket Copy Trading Bot
"""

from pydantic_settings import BaseSettings
from pydantic import AliasChoices, Field, field_validator
from typing import Optional, List

from .exceptions import ConfigurationError


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Accounts
    target_user_address: str = Field(default="", description="Account whose positions are mirrored")
    my_user_address: str = Field(default="", description="Operator account")
    private_key: str = Field(
        default="",
        validation_alias=AliasChoices("private_key", "polymarket_private_key"),
        description="Operator wallet private key",
    )

    # Polymarket API
    clob_http_url: str = Field(default="https://clob.polymarket.com")
    clob_ws_url: str = Field(default="wss://ws-subscriptions-clob.polymarket.com/ws/market")
    gamma_api_url: str = Field(default="https://gamma-api.polymarket.com")
    chain_id: int = Field(default=137, validation_alias=AliasChoices("chain_id", "polymarket_chain_id"))

    # Exchange authentication
    polymarket_proxy: str = Field(
        default="",
        validation_alias=AliasChoices("polymarket_proxy", "proxy_wallet_address"),
        description="Proxy/funder wallet address",
    )
    polymarket_signature_type: Optional[int] = Field(default=None, description="0=EOA, 1=POLY_PROXY, 2=GNOSIS_SAFE")
    polymarket_credential_path: str = Field(default="", description="JSON file with key/secret/passphrase")
    polymarket_tick_size: str = Field(default="0.01")
    polymarket_neg_risk: bool = Field(default=False)

    # Builder attribution headers
    builder_api_key: str = Field(default="")
    builder_secret: str = Field(default="")
    builder_passphrase: str = Field(default="")
    builder_signer_url: str = Field(default="")
    builder_signer_token: Optional[str] = Field(default=None)

    # Copy trading
    polling_interval: int = Field(default=4000, description="Polling interval in milliseconds")
    max_position_limit: float = Field(default=0.2, description="Max notional (USDC) per trade")
    min_trade_size: float = Field(default=1.0, description="Min shares per trade")
    auto_redeem: bool = Field(default=False)
    redeem_interval: int = Field(default=7_200_000, description="Redemption sweep interval in milliseconds")

    # Price trigger bot
    bot_market: str = Field(default="btc")
    bot_target_price: float = Field(default=0.95, description="Buy when best ask <= this")
    bot_min_price: Optional[float] = Field(default=None, description="Only buy when best ask >= this")
    bot_buy_size: int = Field(default=5)
    bot_dry_run: bool = Field(default=False)
    bot_price_log_interval_ms: int = Field(default=1000)

    # Trade journal
    database_url: str = Field(default="", description="e.g. sqlite+aiosqlite:///./copy_trading.db")

    # Logging
    log_level: str = Field(default="INFO")
    log_file: str = Field(default="")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        env_ignore_empty = True
        case_sensitive = False
        extra = "ignore"

    @field_validator("polymarket_tick_size")
    @classmethod
    def _check_tick_size(cls, value: str) -> str:
        if value not in TradingConstants.TICK_SIZES:
            raise ValueError(f"tick size must be one of {sorted(TradingConstants.TICK_SIZES)}")
        return value

    @field_validator("bot_buy_size")
    @classmethod
    def _at_least_one_share(cls, value: int) -> int:
        return max(1, value)

    @field_validator("polymarket_signature_type")
    @classmethod
    def _check_signature_type(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and value not in (0, 1, 2):
            raise ValueError("signature type must be 0, 1 or 2")
        return value

    @property
    def signature_type(self) -> int:
        """Explicit signature type, else proxy wallets sign as Gnosis Safe"""
        if self.polymarket_signature_type is not None:
            return self.polymarket_signature_type
        return 2 if self.polymarket_proxy else 1

    @property
    def polling_interval_seconds(self) -> float:
        return self.polling_interval / 1000

    @property
    def redeem_interval_seconds(self) -> float:
        return self.redeem_interval / 1000

    def require(self, *fields: str):
        """Raise ConfigurationError naming every missing field"""
        missing: List[str] = [name.upper() for name in fields if not getattr(self, name)]
        if missing:
            raise ConfigurationError(
                f"Missing required environment variables: {', '.join(missing)}"
            )


def get_settings() -> Settings:
    """Get application settings"""
    return Settings()


# API Endpoints
class APIEndpoints:
    """Polymarket API endpoints"""

    ORDER_BOOK = "/book"
    ORDER = "/order"
    ORDERS = "/orders"
    CANCEL_ORDER = "/orders/{order_id}"
    USER_POSITIONS = "/users/{address}/positions"
    USER_ORDERS = "/users/{address}/orders"
    MARKET_BY_SLUG = "/markets/slug/{slug}"


# Trading Constants
class TradingConstants:
    """Trading-related constants"""

    # Order Types
    ORDER_TYPE_GTC = "GTC"  # Good Till Cancelled

    # Highest limit price the trigger bot will pay
    MAX_PRICE = 0.99

    TICK_SIZES = {"0.01": 2, "0.001": 3, "0.0001": 4}

    # Shares below this are treated as noise
    POSITION_EPSILON = 0.01

    # Pause after every attempted copy trade, in seconds
    TRADE_DELAY = 1.0

    # Smallest notional the exchange accepts, USDC
    MIN_ORDER_NOTIONAL = 1.0
