"""
Configuration management for the PayVVM fisher relay.

All settings are read once at startup from FISHER_* environment variables
or a .env file.
"""

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-based settings."""

    model_config = SettingsConfigDict(
        env_prefix="FISHER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Relay account
    # SECURITY: never log this value.
    private_key: str = Field(default="", description="Fisher account private key (0x...)")
    enabled: bool = Field(default=True, description="Master switch for the relay worker")
    require_staker: bool = Field(
        default=True,
        description="Refuse to run unless the fisher is a staker or the golden fisher",
    )

    # Relay policy
    min_priority_fee: int = Field(default=0, ge=0, description="Minimum priority fee to pick up")
    gas_limit: int = Field(default=500_000, gt=0, description="Gas ceiling per relayed call")

    # EVM network
    rpc_url: str = "https://ethereum-sepolia-rpc.publicnode.com"
    fallback_rpc_urls: str = Field(
        default="",
        description="Comma-separated RPC URLs tried after rpc_url",
    )
    chain_id: int = 11155111

    # Contract addresses
    evvm_address: str = "0x9486f6C9d28ECdd95aba5bfa6188Bbc104d89C3e"
    staking_address: str = "0x64A47d84dE05B9Efda4F63Fbca2Fc8cEb96E6816"
    pyusd_faucet_address: str = "0x74F7A28aF1241cfBeC7c6DBf5e585Afc18832a9a"
    mate_faucet_address: str = "0x068E9091e430786133439258C4BeeD696939405e"
    evvm_id: Optional[int] = Field(
        default=None,
        description="Message domain id; read from getEvvmID() when unset",
    )

    # Relay loop
    poll_interval_seconds: float = Field(default=2.0, gt=0)
    batch_limit: int = Field(default=10, gt=0)
    pending_order: str = Field(default="fifo", pattern="^(fifo|fee)$")
    confirmation_timeout_seconds: float = Field(default=120.0, gt=0)
    submit_max_attempts: int = Field(default=3, ge=1)
    retry_backoff_seconds: float = Field(default=1.0, ge=0)

    # Database
    database_url: str = "sqlite:///./fisher.db"

    # API server
    # WARNING: when binding 0.0.0.0, set FISHER_API_TOKEN.
    host: str = "127.0.0.1"
    port: int = 8000
    api_token: Optional[str] = Field(
        default=None,
        description="Token required via X-API-Key on operator endpoints",
    )
    allowed_origins: list[str] = Field(
        default=["http://localhost:3000", "http://127.0.0.1:3000"],
        description="CORS allowed origins",
    )

    @property
    def rpc_urls(self) -> list[str]:
        """Primary RPC URL followed by the fallbacks, without duplicates."""
        urls = [self.rpc_url]
        for url in self.fallback_rpc_urls.split(","):
            url = url.strip()
            if url and url not in urls:
                urls.append(url)
        return urls


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


@dataclass
class RelayerConfig:
    """Full relayer configuration."""

    settings: Settings

    @classmethod
    def from_env(cls, env_path: Optional[Path] = None) -> "RelayerConfig":
        """Load configuration from environment."""
        settings = Settings(_env_file=env_path) if env_path else Settings()
        return cls(settings=settings)
