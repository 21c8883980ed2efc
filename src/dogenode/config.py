"""Application configuration using pydantic-settings.

Withdrawal limits, fee schedule, retry policy, background loop timings and the
three payment rails are all configured through environment variables.
"""

from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ======================
    # Database
    # ======================
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/dogenode.db",
        description="Database connection URL",
    )

    # ======================
    # API
    # ======================
    api_host: str = Field(default="0.0.0.0", description="API server host")
    api_port: int = Field(default=3000, description="API server port")
    cors_origin: str = Field(default="*", description="Allowed CORS origin")

    # ======================
    # Environment
    # ======================
    environment: str = Field(default="development", description="Runtime environment")
    debug: bool = Field(default=False, description="Enable debug mode")

    # ======================
    # Withdrawals
    # ======================
    withdrawal_min_amount: Decimal = Field(default=Decimal("10"), description="Minimum withdrawal (DOGE)")
    withdrawal_max_amount: Decimal = Field(
        default=Decimal("10000"), description="Maximum single withdrawal (DOGE)"
    )
    withdrawal_fee_fixed: Decimal = Field(default=Decimal("1"), description="Fixed fee per withdrawal")
    withdrawal_fee_percent: Decimal = Field(
        default=Decimal("0"), description="Additional fee as a percentage of the amount"
    )
    withdrawal_daily_limit: Decimal = Field(
        default=Decimal("50000"), description="Default per-account daily withdrawal limit"
    )
    withdrawal_max_retries: int = Field(default=3, description="Send attempts before a withdrawal fails")
    retry_base_delay: float = Field(default=2.0, description="First retry delay in seconds")
    retry_max_delay: float = Field(default=60.0, description="Upper bound for the retry delay")

    # ======================
    # Background loops
    # ======================
    monitor_interval: float = Field(default=15.0, description="Seconds between confirmation polls")
    monitor_max_attempts: int = Field(default=20, description="Polls per record before review")
    monitor_batch_size: int = Field(default=50, description="Records polled per cycle")
    min_confirmations: int = Field(default=6, description="Confirmations needed to complete")
    limit_reset_interval: float = Field(default=60.0, description="Seconds between daily limit checks")

    # ======================
    # Rails (shared)
    # ======================
    rail_timeout: float = Field(default=10.0, description="Timeout for every rail call in seconds")

    # Dogecoin Core node
    dogecoin_node_enabled: bool = Field(default=False, description="Enable the Dogecoin node rail")
    dogecoin_host: str = Field(default="localhost", description="Dogecoin RPC host")
    dogecoin_port: int = Field(default=22555, description="Dogecoin RPC port")
    dogecoin_user: str = Field(default="dogecoinrpc", description="Dogecoin RPC user")
    dogecoin_password: str = Field(default="", description="Dogecoin RPC password")
    dogecoin_network: str = Field(default="mainnet", description="mainnet or testnet")

    # Dogechain explorer API
    dogechain_enabled: bool = Field(default=False, description="Enable the explorer API rail")
    dogechain_api_url: str = Field(
        default="https://dogechain.info/api/v1", description="Dogechain API base URL"
    )
    dogechain_hot_wallet_address: Optional[str] = Field(
        default=None, description="Hot wallet address whose balance funds explorer payouts"
    )

    # Wrapped DOGE on BSC
    wrapped_doge_enabled: bool = Field(default=False, description="Enable the wrapped DOGE rail")
    bsc_rpc_url: str = Field(default="https://bsc-dataseed.binance.org/", description="BSC RPC URL")
    bsc_chain_id: int = Field(default=56, description="BSC chain id")
    wdoge_contract: str = Field(default="", description="Wrapped DOGE BEP-20 contract address")
    wdoge_decimals: int = Field(default=18, description="Wrapped DOGE token decimals")
    wallet_private_key: Optional[str] = Field(default=None, description="BSC hot wallet private key")
    gas_price_gwei: Optional[Decimal] = Field(
        default=None, description="Fixed gas price in gwei (None = ask the node)"
    )
    gas_limit: int = Field(default=100000, description="Gas limit for token transfers")
    token_min_confirmations: int = Field(default=15, description="Confirmations needed on BSC")

    # ======================
    # Webhooks
    # ======================
    webhook_secret: Optional[str] = Field(default=None, description="HMAC secret for confirmation webhooks")

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    @property
    def dogecoin_rpc_url(self) -> str:
        """Dogecoin Core JSON-RPC endpoint."""
        return f"http://{self.dogecoin_host}:{self.dogecoin_port}"

    def get_safe_dict(self) -> dict:
        """Return settings dict with secrets redacted."""
        return {
            "environment": self.environment,
            "debug": self.debug,
            "database_url": self._redact_url(self.database_url),
            "withdrawal": {
                "min_amount": str(self.withdrawal_min_amount),
                "max_amount": str(self.withdrawal_max_amount),
                "fee_fixed": str(self.withdrawal_fee_fixed),
                "fee_percent": str(self.withdrawal_fee_percent),
                "daily_limit": str(self.withdrawal_daily_limit),
                "max_retries": self.withdrawal_max_retries,
            },
            "rails": {
                "node": {
                    "enabled": self.dogecoin_node_enabled,
                    "rpc": self.dogecoin_rpc_url,
                    "password": "***" if self.dogecoin_password else "(not set)",
                },
                "explorer-api": {
                    "enabled": self.dogechain_enabled,
                    "api": self.dogechain_api_url,
                },
                "token-contract": {
                    "enabled": self.wrapped_doge_enabled,
                    "rpc": self.bsc_rpc_url,
                    "contract": self.wdoge_contract or "(not set)",
                    "private_key": "***" if self.wallet_private_key else "(not set)",
                },
            },
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact sensitive parts of database URL."""
        if "://" in url and "@" in url:
            proto, rest = url.split("://", 1)
            if "@" in rest:
                creds, host = rest.rsplit("@", 1)
                if ":" in creds:
                    user, _ = creds.split(":", 1)
                    return f"{proto}://{user}:***@{host}"
        return url


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
