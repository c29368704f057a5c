"""
Configuration management using Pydantic Settings.
Values are loaded once from the environment (prefix MEMOFEED_) or a .env file.
"""

from typing import Optional, List
from pydantic import validator
from pydantic_settings import BaseSettings


def parse_url_list(value: str) -> List[str]:
    """Split a comma-separated list, dropping blanks."""
    return [item.strip() for item in (value or "").split(",") if item.strip()]


class Settings(BaseSettings):
    """Application settings with environment-based configuration."""

    # Application
    app_name: str = "memofeed"
    app_version: str = "0.1.0"
    debug: bool = False
    environment: str = "development"

    # API
    api_v1_prefix: str = "/api/v1"
    host: str = "127.0.0.1"
    port: int = 8000
    cors_origins: str = "*"

    # Cluster and gateway endpoints (comma-separated)
    cluster: str = "mainnet"
    rpc_devnet: str = "https://api.devnet.solana.com"
    rpc_mainnet: str = "https://api.mainnet-beta.solana.com"

    # Registry discovery
    owner_wallet: str = "HeGffZqFhB9euhind4aJFWy8waLCppTkie4gvW8bQhzp"
    publish_registry: Optional[str] = None
    manifest_tag: str = "registry.v1"
    manifest_scan_limit: int = 100
    max_registries: int = 4
    registry_cache_ttl: float = 60.0
    write_sharding: bool = False
    shard_bucket_minutes: int = 30

    # Likes / tips (lamports)
    like_lamports: int = 5_000
    superlike_lamports: int = 50_000
    like_fee_bps: int = 1_000

    # Feed
    page_size: int = 12
    page_limit_max: int = 32
    tally_scan_limit: int = 240
    min_call_spacing_ms: int = 250
    precomputed_feed_url: Optional[str] = None

    # Gateway timeouts (seconds)
    probe_timeout: float = 3.5
    blockhash_timeout: float = 5.0
    signatures_timeout: float = 6.5
    transaction_timeout: float = 9.0
    status_timeout: float = 3.5

    # Backoff
    cooldown_base: float = 3.0
    cooldown_cap: float = 30.0
    fetch_max_attempts: int = 3
    confirmation_max_cycles: int = 6

    # Logging
    log_level: str = "INFO"
    log_format: str = "console"  # json or console
    log_file: Optional[str] = None

    @validator("environment")
    def validate_environment(cls, v: str) -> str:
        allowed = ["development", "staging", "production"]
        if v not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v

    @validator("log_level")
    def validate_log_level(cls, v: str) -> str:
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in allowed:
            raise ValueError(f"Log level must be one of: {allowed}")
        return v.upper()

    @validator("cluster")
    def validate_cluster(cls, v: str) -> str:
        allowed = ["devnet", "mainnet"]
        if v.lower() not in allowed:
            raise ValueError(f"Cluster must be one of: {allowed}")
        return v.lower()

    @validator("max_registries")
    def validate_max_registries(cls, v: int) -> int:
        return max(1, min(8, v))

    @validator("like_fee_bps")
    def validate_fee_bps(cls, v: int) -> int:
        if not 0 <= v <= 10_000:
            raise ValueError("Fee basis points must be between 0 and 10000")
        return v

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def rpc_urls(self) -> List[str]:
        """Endpoint candidates for the configured cluster."""
        raw = self.rpc_devnet if self.cluster == "devnet" else self.rpc_mainnet
        return parse_url_list(raw)

    @property
    def cors_origin_list(self) -> List[str]:
        return parse_url_list(self.cors_origins)

    class Config:
        env_prefix = "MEMOFEED_"
        env_file = ".env"
        case_sensitive = False


# Global settings instance
settings = Settings()


class LedgerConfig:
    """Ledger-specific constants."""

    MEMO_PROGRAM_ID = "MemoSq4gqABAXKb96qnH8TysNcWxMyWCqXgDLGmfcHr"

    # Public fallbacks used when every configured URL is filtered out
    DEFAULT_RPCS = {
        "devnet": ["https://api.devnet.solana.com"],
        "mainnet": ["https://api.mainnet-beta.solana.com"],
    }
