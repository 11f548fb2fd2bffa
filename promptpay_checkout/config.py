import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Force-load .env from the project root (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")

SCB_SANDBOX_BASE = "https://api-sandbox.partners.scb/partners/sandbox"


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./promptpay_checkout.db"
    jwt_secret: str = "dev_secret"
    app_env: str = "development"
    log_level: str = "INFO"

    scb_base: str = SCB_SANDBOX_BASE
    scb_api_key: str = ""
    scb_api_secret: str = field(default="", repr=False)
    scb_client_id: str = ""
    scb_client_secret: str = field(default="", repr=False)
    scb_biller_id: str = ""
    scb_ref3_prefix: str = ""
    scb_callback_url: str = ""
    scb_webhook_secret: str = field(default="", repr=False)
    scb_timeout: float = 15.0

    qr_expiry_minutes: int = 15
    promptpay_id: Optional[str] = None

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() == "production"

    @property
    def webhook_secret(self) -> str:
        return self.scb_webhook_secret or self.scb_api_secret


def load_settings() -> Settings:
    api_key = os.getenv("SCB_API_KEY", "")
    api_secret = os.getenv("SCB_API_SECRET", "")
    return Settings(
        database_url=os.getenv("DATABASE_URL", "sqlite:///./promptpay_checkout.db"),
        jwt_secret=os.getenv("JWT_SECRET", "dev_secret"),
        app_env=os.getenv("APP_ENV", "development"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        scb_base=os.getenv("SCB_BASE", SCB_SANDBOX_BASE).rstrip("/"),
        scb_api_key=api_key,
        scb_api_secret=api_secret,
        scb_client_id=os.getenv("SCB_CLIENT_ID") or api_key,
        scb_client_secret=os.getenv("SCB_CLIENT_SECRET") or api_secret,
        scb_biller_id=os.getenv("SCB_BILLER_ID", "").strip(),
        scb_ref3_prefix=os.getenv("SCB_REF3_PREFIX", ""),
        scb_callback_url=os.getenv("SCB_CALLBACK_URL", ""),
        scb_webhook_secret=os.getenv("SCB_WEBHOOK_SECRET", ""),
        scb_timeout=float(os.getenv("SCB_TIMEOUT", "15")),
        qr_expiry_minutes=int(os.getenv("QR_EXPIRY_MINUTES", "15")),
        promptpay_id=os.getenv("PROMPTPAY_ID") or None,
    )


@lru_cache
def get_settings() -> Settings:
    return load_settings()
