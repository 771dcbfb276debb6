"""
Checkout Reconciler Configuration Module

Loads environment variables for gateway credentials, storage and background jobs.
Variable names follow the deployment's existing .env file (PHONEPE_*, REDIRECT_URL, ...).
"""
from pydantic_settings import BaseSettings
from typing import Literal


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Security Notes:
    - The salt key signs every outbound request and authenticates every callback
    - It is never logged; only the salt index appears in health output
    - An empty salt key rejects all callbacks instead of disabling verification
    """

    # Gateway credentials
    phonepe_merchant_id: str = "PGTESTPAYUAT86"
    phonepe_salt_key: str = "salt_key_demo_only_change_me"
    phonepe_salt_index: str = "1"
    phonepe_base_url: str = "https://api-preprod.phonepe.com/apis/hermes"
    gateway_timeout_seconds: float = 10.0

    # Redirect targets
    redirect_url: str = "http://localhost:3000/payment-callback"
    frontend_url: str = "http://localhost:5500"

    # Spreadsheet mirror (empty disables it)
    google_sheets_url: str = ""

    # Ledger storage
    ledger_backend: Literal["sqlite", "memory"] = "sqlite"
    database_path: str = "./orders.db"
    orders_snapshot_path: str = "./orders.json"

    # Pending order sweep
    pending_sweep_enabled: bool = True
    pending_sweep_interval_seconds: int = 60
    pending_sweep_min_age_seconds: int = 30

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Server
    host: str = "0.0.0.0"
    port: int = 3000

    class Config:
        env_file = ".env"
        case_sensitive = False

    @property
    def environment(self) -> str:
        """Human label for the gateway environment in use."""
        return "UAT/Testing" if "preprod" in self.phonepe_base_url else "Production"


# Global settings instance
settings = Settings()
