"""
pkp_orchestrator.settings

Central configuration model (Pydantic Settings).

Responsibilities:
- Provide strongly-typed, env-driven settings for the login gateway, relay and signing network.
- Hide secrets from repr/logging (e.g., relay API key).
- Offer a cached settings instance for the composition root.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

SERRANO_NODES = [f"https://serrano.litgateway.com:{port}" for port in range(7370, 7380)]


class Settings(BaseSettings):
    """
    - Env-driven configuration (prefix `PKP_`)
    - Defaults point at the public staging relay and the serrano network
    - Single settings object injected into every component
    """

    model_config = SettingsConfigDict(env_prefix="PKP_", case_sensitive=False)

    env: Literal["dev", "test", "prod"] = "dev"
    service_name: str = "pkp-orchestrator"
    log_level: str = "INFO"

    # Identity gateway. The return address is the only value the host environment must supply.
    redirect_uri: str = "http://localhost:3000"
    login_base_url: str = "https://login.litgateway.com"
    identity_provider: Literal["google", "discord"] = "google"

    # Relay
    relay_base_url: str = "https://relay-server-staging.herokuapp.com"
    relay_api_key: str = Field(default="", repr=False)
    relay_timeout_seconds: float = 30.0

    # Mint polling (bounded retry loop)
    mint_poll_interval_seconds: float = 15.0
    mint_poll_max_attempts: int = 20
    mint_poll_timeout_seconds: float = 300.0
    mint_poll_backoff: float = 1.0
    mint_poll_max_interval_seconds: float = 30.0

    # Signing network
    signing_network: str = "serrano"
    signing_network_nodes: list[str] = Field(default_factory=lambda: list(SERRANO_NODES))
    min_node_count: int = 6
    network_timeout_seconds: float = 30.0

    # Session scope
    session_chain: str = "ethereum"
    session_chain_id: int = 1
    session_resources: list[str] = Field(default_factory=lambda: ["litAction://*"])
    session_ttl_seconds: int = 24 * 60 * 60

    # Name under which the signing action returns its signature.
    signature_name: str = "sig1"

    @model_validator(mode="after")
    def check_quorum(self) -> Settings:
        if not 1 <= self.min_node_count <= len(self.signing_network_nodes):
            raise ValueError(
                f"min_node_count={self.min_node_count} needs 1..{len(self.signing_network_nodes)} nodes"
            )
        return self


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    # Cache avoids re-parsing env vars for every orchestrator built in-process.
    return Settings()


# --- Module Notes -----------------------------------------------------------
# Nothing here is persisted; a page reload (or process restart) starts from SignedOut.
