"""
Configuration for the payment relay.
"""

from decimal import Decimal
from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, SecretStr, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError


def is_valid_address(value: str) -> bool:
    """Check that a string is a base58-encoded 32-byte Solana public key."""
    from solders.pubkey import Pubkey

    try:
        Pubkey.from_string(value)
    except Exception:
        return False
    return True


class Settings(BaseSettings):
    """
    Relay configuration settings.

    All settings can be overridden via environment variables. Names follow the
    original deployment (SOL_WALLET, PRIVATE_KEY, TOKEN_ADDRESS, ...).
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # HTTP server
    host: str = Field(default="0.0.0.0", alias="HOST")
    # Render/Railway inject PORT
    port: int = Field(default=3000, alias="PORT")
    debug: bool = Field(default=False, alias="DEBUG")
    allowed_origins: list[str] = Field(
        default=["*"],
        description="CORS allowed origins",
        alias="ALLOWED_ORIGINS",
    )

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    json_logs: bool = Field(default=True, alias="JSON_LOGS")

    # Wallets
    receiving_address: str = Field(
        ...,
        description="Wallet that buyers send SOL to",
        alias="SOL_WALLET",
    )
    payout_secret_key: SecretStr = Field(
        ...,
        description="Payout wallet keypair: JSON array of 64 bytes or base58 string",
        alias="PRIVATE_KEY",
    )
    token_mint: Optional[str] = Field(
        default=None,
        description="Mint of the payout token (required in token mode)",
        alias="TOKEN_ADDRESS",
    )
    token_decimals: int = Field(default=6, ge=0, le=18, alias="TOKEN_DECIMALS")

    # Pricing
    exchange_rate: int = Field(
        default=100_000_000,
        gt=0,
        description="Payout base units per 1 SOL",
        alias="EXCHANGE_RATE",
    )
    min_purchase_sol: Decimal = Field(default=Decimal("0.1"), gt=0, alias="MIN_PURCHASE_SOL")

    # Chain
    solana_rpc_url: str = Field(
        default="https://api.mainnet-beta.solana.com",
        alias="SOLANA_RPC_URL",
    )
    rpc_timeout_seconds: float = Field(default=30.0, gt=0, alias="RPC_TIMEOUT_SECONDS")
    commitment: Literal["confirmed", "finalized"] = Field(default="confirmed", alias="COMMITMENT")

    # Disbursement
    # - native: SOL system transfer to the sender
    # - token: SPL transfer to the sender's associated token account
    disbursement_mode: Literal["native", "token"] = Field(default="native", alias="DISBURSEMENT_MODE")
    submit_max_retries: int = Field(default=3, ge=1, alias="SUBMIT_MAX_RETRIES")
    submit_retry_delay_seconds: float = Field(default=0.5, ge=0, alias="SUBMIT_RETRY_DELAY_SECONDS")
    confirm_timeout_seconds: float = Field(default=60.0, gt=0, alias="CONFIRM_TIMEOUT_SECONDS")
    confirm_poll_interval_seconds: float = Field(default=0.5, ge=0, alias="CONFIRM_POLL_INTERVAL_SECONDS")
    fee_reserve_lamports: int = Field(default=10_000, ge=0, alias="FEE_RESERVE_LAMPORTS")
    request_timeout_seconds: float = Field(default=90.0, gt=0, alias="REQUEST_TIMEOUT_SECONDS")

    # Verification
    # - window: scan the last VERIFICATION_LOOKBACK signatures
    # - indexed: scan everything since the stored watermark
    verification_mode: Literal["window", "indexed"] = Field(default="window", alias="VERIFICATION_MODE")
    verification_lookback: int = Field(default=10, ge=1, le=1000, alias="VERIFICATION_LOOKBACK")
    payment_tolerance_sol: Decimal = Field(default=Decimal("0.01"), ge=0, alias="PAYMENT_TOLERANCE_SOL")
    indexer_max_pages: int = Field(default=10, ge=1, alias="INDEXER_MAX_PAGES")

    # Ledger
    ledger_enabled: bool = Field(default=True, alias="LEDGER_ENABLED")
    database_url: str = Field(default="sqlite:///./relay.db", alias="DATABASE_URL")

    @field_validator("receiving_address", "token_mint")
    @classmethod
    def _check_address(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        value = value.strip()
        if not is_valid_address(value):
            raise ValueError(f"not a valid Solana address: {value!r}")
        return value

    @model_validator(mode="after")
    def _check_modes(self) -> "Settings":
        if self.disbursement_mode == "token" and not self.token_mint:
            raise ValueError("TOKEN_ADDRESS is required when DISBURSEMENT_MODE=token")
        if self.verification_mode == "indexed" and not self.ledger_enabled:
            raise ValueError("VERIFICATION_MODE=indexed requires LEDGER_ENABLED=true")
        return self


def load_settings(**overrides: object) -> Settings:
    """
    Load settings from the environment, failing fast on missing or invalid values.

    Raises:
        ConfigurationError: listing every offending setting
    """
    try:
        return Settings(**overrides)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in err['loc']) or 'settings'}: {err['msg']}"
            for err in e.errors()
        )
        raise ConfigurationError(f"Invalid configuration: {problems}") from e


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return load_settings()
