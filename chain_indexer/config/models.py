"""Configuration models for chain settings and indexer configuration"""

from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ChainConfig(BaseSettings):
    """Configuration for the indexed blockchain network"""

    name: str
    chain_id: int
    rpc_urls: List[str]
    poll_interval_ms: int = Field(default=5000, ge=0)
    batch_size: int = Field(default=1, ge=1)
    retry_backoff_seconds: float = Field(default=1.0, ge=0)

    model_config = SettingsConfigDict(frozen=True)

    @property
    def poll_interval_seconds(self) -> float:
        """Poll interval converted to seconds"""
        return self.poll_interval_ms / 1000.0


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Database
    database_url: str = Field(alias="DATABASE_URL")

    # Chain
    eth_rpc_url: str = Field(alias="ETH_RPC_URL")
    eth_rpc_fallback: str = Field(default="", alias="ETH_RPC_FALLBACK")
    chain_id: int = Field(default=1, alias="CHAIN_ID")
    chain_name: str = Field(default="ethereum", alias="CHAIN_NAME")

    # Sync loop
    poll_interval_ms: int = Field(default=5000, ge=0, alias="POLL_INTERVAL_MS")
    batch_size: int = Field(default=1, ge=1, alias="BATCH_SIZE")

    # ABI resolution
    abi_dir: str = Field(default="abis", alias="ABI_DIR")
    proxy_cache_ttl_seconds: int = Field(default=86400, ge=0, alias="PROXY_CACHE_TTL_SECONDS")

    # Health server
    api_host: str = Field(default="0.0.0.0", alias="API_HOST")
    api_port: int = Field(default=8000, alias="API_PORT")

    # Monitoring
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    def get_rpc_urls(self) -> List[str]:
        """Primary RPC endpoint followed by comma-separated fallbacks"""
        fallbacks = [url.strip() for url in self.eth_rpc_fallback.split(",") if url.strip()]
        return [self.eth_rpc_url] + fallbacks

    def get_chain_config(self) -> ChainConfig:
        """Get chain configuration"""
        return ChainConfig(
            name=self.chain_name,
            chain_id=self.chain_id,
            rpc_urls=self.get_rpc_urls(),
            poll_interval_ms=self.poll_interval_ms,
            batch_size=self.batch_size,
        )
