"""
Facilitator Hub Configuration Management
Uses pydantic-settings for type-safe environment variable loading
"""

import logging
from typing import Literal, Optional

import structlog
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class HubConfig(BaseSettings):
    """Configuration for the facilitator hub, built once at process start"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Server Configuration
    api_host: str = Field(default="0.0.0.0", description="Host to bind the API server to")
    api_port: int = Field(default=8000, description="Port to bind the API server to")
    cors_origins: list[str] = Field(
        default=["http://localhost:3000"],
        description="Allowed CORS origins"
    )
    hub_url: str = Field(default="http://localhost:8000", description="API base URL used by the CLI")

    # Secrets
    system_master_key: str = Field(default="", description="Master secret for system-held facilitator keys")

    # Key-value store (Upstash Redis REST)
    upstash_redis_rest_url: str = Field(default="")
    upstash_redis_rest_token: str = Field(default="")

    # Network Configuration
    default_network: str = Field(default="avalanche-fuji", description="Network assumed for legacy records")
    rpc_url_avalanche_fuji: str = Field(default="https://api.avax-test.network/ext/bc/C/rpc")
    rpc_url_ethereum_sepolia: str = Field(default="https://ethereum-sepolia-rpc.publicnode.com")
    rpc_url_base_sepolia: str = Field(default="https://sepolia.base.org")
    rpc_url_polygon_amoy: str = Field(default="https://rpc-amoy.polygon.technology")
    usdc_address_avalanche_fuji: str = Field(default="0x5425890298aed601595a70AB815c96711a31Bc65")
    usdc_address_ethereum_sepolia: str = Field(default="0x1c7D4B196Cb0C7B01d743Fbc6116a902379C7238")
    usdc_address_base_sepolia: str = Field(default="0x036CbD53842c5426634e7929541eC2318f3dCF7e")
    usdc_address_polygon_amoy: str = Field(default="0x41E94Eb019C0762f9Bfcf9Fb1E58725BfB0e7582")

    # Authorization Configuration
    authorization_timeout_seconds: int = Field(default=300, gt=0, description="Validity window of a new authorization")
    clock_skew_seconds: int = Field(default=60, ge=0, description="validAfter is backdated by this much")

    # Settlement Configuration
    allow_token_address_override: bool = Field(
        default=True,
        description="Accept a caller-supplied token contract instead of the registry default"
    )
    confirmation_timeout_override: Optional[float] = Field(
        default=None,
        description="Replaces every network's confirmation timeout when set"
    )

    # Default facilitator: an operator-held key, per network with a shared fallback
    default_facilitator_private_key: str = Field(default="")
    default_facilitator_private_key_avalanche_fuji: str = Field(default="")
    default_facilitator_private_key_ethereum_sepolia: str = Field(default="")
    default_facilitator_private_key_base_sepolia: str = Field(default="")
    default_facilitator_private_key_polygon_amoy: str = Field(default="")

    # Registration Configuration
    payment_recipient: str = Field(
        default="",
        description="Receives registration payments; empty disables the on-chain proof check"
    )
    registration_fee: str = Field(
        default="1",
        description="Registration payment in whole tokens, paid on the facilitator's network"
    )

    # Funding Configuration
    deactivation_threshold_wei: int = Field(
        default=10 ** 14,
        ge=0,
        description="Native balance at or below this marks a facilitator as needing funds"
    )

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    log_format: Literal["json", "text"] = Field(default="json")

    @field_validator(
        "usdc_address_avalanche_fuji",
        "usdc_address_ethereum_sepolia",
        "usdc_address_base_sepolia",
        "usdc_address_polygon_amoy",
    )
    @classmethod
    def validate_token_address(cls, v):
        if v and not v.startswith("0x"):
            return f"0x{v}"
        return v


def configure_logging(config: HubConfig) -> None:
    """Configure structlog for the whole process"""
    renderer = (
        structlog.processors.JSONRenderer()
        if config.log_format == "json"
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, config.log_level)
        ),
    )


# Singleton instance
_hub_config: HubConfig | None = None


def get_hub_config() -> HubConfig:
    """Get or create hub configuration singleton"""
    global _hub_config
    if _hub_config is None:
        _hub_config = HubConfig()
    return _hub_config
