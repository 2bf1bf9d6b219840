"""Application configuration."""

from decimal import Decimal
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    data_dir: Path = Path("data/store")
    debug: bool = False
    app_title: str = "TokenPage"

    # Identity provider
    identity_url: str = "https://auth.privy.io/api/v1/users/me"
    identity_app_id: str = ""
    identity_app_secret: str = ""
    identity_cookie: str = "privy-id-token"
    identity_chain_type: str = "solana"

    # Asset ledger (getAssetsByOwner JSON-RPC)
    ledger_url: str = "https://mainnet.helius-rpc.com/"
    ledger_api_key: str = ""
    gate_threshold: Decimal = Decimal("1")

    # Signed private-content links
    signing_secret: str = ""
    signed_url_ttl: int = 600

    http_timeout: float = 10.0
    admin_token: str = ""

    model_config = SettingsConfigDict(
        env_prefix="TOKENPAGE_",
        env_file=".env",
        env_file_encoding="utf-8",
    )


settings = Settings()
