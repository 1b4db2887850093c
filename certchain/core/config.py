"""
Application settings for the CertChain service.
Values are read from the environment and an optional .env file.
"""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration for chain access, storage, rendering and delivery"""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False
    log_level: str = "INFO"

    # Network configuration
    network_name: str = "localhost"
    rpc_url: str = "http://127.0.0.1:8545"
    chain_id: int = 31337

    # Signing identity and registry contract
    private_key: Optional[str] = None
    contract_address: Optional[str] = None

    # Transaction handling
    gas_limit: int = 500000
    tx_confirm_timeout: int = 120
    verify_unique_ids: bool = True
    id_generation_attempts: int = 3

    # Content-addressed storage (Pinata)
    pinata_jwt: Optional[str] = None
    pinata_gateway: str = "https://gateway.pinata.cloud"
    pinata_api_url: str = "https://api.pinata.cloud/pinning/pinFileToIPFS"

    # Artifacts
    verify_base_url: str = "http://localhost:3000/verify"
    output_dir: str = "output"
    upload_dir: str = "uploads"
    max_upload_size: int = 10 * 1024 * 1024

    # SMTP delivery
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_pass: Optional[str] = None
    email_from: Optional[str] = None
    email_delay_seconds: float = 0.5

    # Job retention
    job_ttl_seconds: int = 24 * 60 * 60
    max_jobs: int = 200


@lru_cache()
def get_settings() -> Settings:
    """Get cached application settings"""
    return Settings()
