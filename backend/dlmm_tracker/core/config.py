"""
Configuration module for the DLMM position tracker.
Loads environment variables and provides typed settings.
"""
from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings
from pydantic import Field


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Solana RPC Configuration
    solana_rpc_url: str = Field(
        default="https://api.mainnet-beta.solana.com",
        description="Solana JSON-RPC endpoint (Helius recommended)"
    )

    # Meteora DLMM hosted API
    meteora_api_base_url: str = Field(
        default="https://dlmm-api.meteora.ag",
        description="Meteora DLMM read API base URL"
    )

    # Indexed accounts source (Shyft GraphQL)
    indexer_graphql_url: str = Field(
        default="https://programs.shyft.to/v0/graphql/",
        description="GraphQL endpoint for indexed program accounts"
    )
    indexer_api_key: str = Field(
        default="",
        description="API key for the indexer; empty disables the indexed strategy"
    )

    # Program & Mint Addresses (Solana mainnet)
    dlmm_program_id: str = Field(
        default="LBUZKhRxPF3XUpBCjp4YzTKgLccjZhTSDM9YuVaPwxo",
        description="Meteora DLMM program"
    )
    native_mint: str = Field(
        default="So11111111111111111111111111111111111111112",
        description="Wrapped SOL mint"
    )
    stable_mints: List[str] = Field(
        default=[
            "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v",  # USDC
            "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB",  # USDT
        ],
        description="Mints priced at exactly 1.0 USD"
    )
    seed_pools: List[str] = Field(
        default=["BGm1tav58oGcsQJehL9WXBFXF7D27vZsKefj4xJKD5Y"],  # SOL-USDC
        description="High-liquidity pools always probed by the pool scan"
    )
    top_pools_limit: int = Field(
        default=20,
        description="How many live top pools to add to the pool scan"
    )

    # Rate Limiting / Retries
    max_retries: int = Field(
        default=3,
        description="Retries after a rate-limit response"
    )
    retry_base_delay: float = Field(
        default=1.0,
        description="First backoff delay in seconds (doubles per retry)"
    )
    batch_concurrency: int = Field(
        default=3,
        description="Concurrent calls in a batch fetch"
    )
    batch_delay: float = Field(
        default=0.1,
        description="Delay in seconds a worker waits between batch items"
    )
    http_timeout: float = Field(
        default=30.0,
        description="Timeout for a single HTTP request"
    )

    # History
    history_limit: int = Field(
        default=100,
        description="Signatures fetched per wallet reconciliation"
    )

    # Cache TTL Settings (in seconds)
    pair_cache_ttl: int = Field(
        default=60,
        description="TTL for pool metadata cache"
    )
    listing_cache_ttl: int = Field(
        default=30,
        description="TTL for owner position listings"
    )

    log_level: str = Field(
        default="INFO",
        description="Root log level"
    )

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export
settings = get_settings()
