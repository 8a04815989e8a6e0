"""
Settlement configuration.

All settings come from environment variables prefixed with
``CCIP_SETTLEMENT_`` (or a ``.env`` file), validated by pydantic-settings.

Example:
    >>> config = SettlementConfig(
    ...     source_contract_address="0xSender...",
    ...     destination_escrow_address="0xEscrow...",
    ... )
    >>> config.poll_interval
    5.0

List values are given as JSON in the environment, e.g.
``CCIP_SETTLEMENT_STATUS_API_URLS='["https://a.example", "https://b.example"]'``.
"""

import logging
from functools import lru_cache
from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ccip_settlement.networks import get_network_by_chain_id

DEFAULT_STATUS_API_URLS = [
    "https://ccip.chain.link/api/h/atlas",
    "https://ccip.chain.link/api",
]


class SettlementConfig(BaseSettings):
    """Configuration for the settlement state machine and delivery tracker."""

    model_config = SettingsConfigDict(
        env_prefix="CCIP_SETTLEMENT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- Chains ---
    source_chain_id: int = 11155111
    destination_chain_id: int = 43113
    source_rpc_url: Optional[str] = None
    destination_rpc_url: Optional[str] = None
    destination_chain_selector: Optional[int] = None

    # --- Contracts ---
    source_contract_address: str = ""
    # Deliberately no default: deployments have disagreed on this address
    destination_escrow_address: str
    offramp_address: Optional[str] = None

    # --- Signer ---
    private_key: Optional[str] = Field(None, repr=False)
    gas_limit: int = 500_000
    receipt_timeout: float = 120.0
    token_decimals: int = 6

    # --- Status oracle ---
    status_api_urls: list[str] = Field(default_factory=lambda: list(DEFAULT_STATUS_API_URLS))
    status_api_timeout: float = 3.0

    # --- Tracking ---
    poll_interval: float = 5.0
    max_poll_attempts: int = 60
    manual_override_after: float = 180.0

    # --- Payment store (PostgREST) ---
    store_url: Optional[str] = None
    store_api_key: Optional[str] = Field(None, repr=False)
    store_table: str = "payments"

    # --- Logging ---
    log_level: str = "INFO"

    @model_validator(mode="after")
    def _fill_and_check(self) -> "SettlementConfig":
        source = get_network_by_chain_id(self.source_chain_id)
        destination = get_network_by_chain_id(self.destination_chain_id)
        if self.source_chain_id == self.destination_chain_id:
            raise ValueError("source and destination chains must differ")
        if self.source_rpc_url is None:
            self.source_rpc_url = source.rpc_url
        if self.destination_rpc_url is None:
            self.destination_rpc_url = destination.rpc_url
        if self.destination_chain_selector is None:
            self.destination_chain_selector = destination.chain_selector
        if self.offramp_address is None:
            self.offramp_address = destination.offramp_address

        if self.poll_interval < 0:
            raise ValueError("poll_interval must not be negative")
        if self.max_poll_attempts < 1:
            raise ValueError("max_poll_attempts must be at least 1")
        if self.status_api_timeout <= 0:
            raise ValueError("status_api_timeout must be positive")
        if self.poll_interval and self.status_api_timeout >= self.poll_interval:
            raise ValueError("status_api_timeout must be shorter than poll_interval")
        if not self.destination_escrow_address:
            raise ValueError("destination_escrow_address must be configured")
        return self

    @property
    def tracking_window(self) -> float:
        """Seconds a tracker polls before giving up (attempts x interval)."""
        return self.poll_interval * self.max_poll_attempts


@lru_cache()
def get_config() -> SettlementConfig:
    """Cached configuration singleton, read from the environment."""
    return SettlementConfig()


def configure_logging(level: Optional[str] = None) -> None:
    """
    Configure root logging for applications embedding the settlement core.

    The library itself only creates module loggers; call this once from the
    application entry point.
    """
    logging.basicConfig(
        level=(level or get_config().log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
