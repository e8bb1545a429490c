"""Application configuration loaded from environment variables."""
import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

BASE_DIR = Path(__file__).resolve().parent.parent.parent


class Settings:
    # SQLite DB URL for the local replica
    DATABASE_URL: str = os.getenv(
        "DATABASE_URL", f"sqlite:///{BASE_DIR / 'sales_cache.db'}"
    )

    # Upstream customer-portal API (reached directly, not through the browser proxy)
    UPSTREAM_BASE_URL: str = os.getenv(
        "UPSTREAM_BASE_URL",
        "https://www.itcatalystindia.com/Development/CustomerPortal_API",
    )
    SALES_EXTRACT_PATH: str = os.getenv("SALES_EXTRACT_PATH", "api/reports/salesextract")
    CARDS_PATH: str = os.getenv("CARDS_PATH", "api/dashboard/cards")
    REQUEST_TIMEOUT: float = float(os.getenv("REQUEST_TIMEOUT", "120"))

    # Sync
    DEFAULT_SYNC_FROM: str = os.getenv("DEFAULT_SYNC_FROM", "20250401")
    VOUCHER_TYPE_FILTER: str = os.getenv("VOUCHER_TYPE_FILTER", "$$isSales, $$IsCreditNote")

    # Vouchers whose reserved type name contains this marker count negatively
    CREDIT_NOTE_MARKER: str = os.getenv("CREDIT_NOTE_MARKER", "Credit Note")

    # Card compiler
    DEFAULT_CARD_LIMIT: int = int(os.getenv("DEFAULT_CARD_LIMIT", "10"))
    MAX_SEGMENTS: int = int(os.getenv("MAX_SEGMENTS", "5"))

    # Raw data browsing
    RAW_PAGE_LIMIT: int = int(os.getenv("RAW_PAGE_LIMIT", "100"))

    # API server
    API_HOST: str = os.getenv("API_HOST", "0.0.0.0")
    API_PORT: int = int(os.getenv("API_PORT", "8000"))

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_FILE: str = os.getenv("LOG_FILE", "logs/app.log")

    # CORS
    CORS_ORIGINS: list[str] = [
        o.strip()
        for o in os.getenv(
            "CORS_ORIGINS", "http://localhost:5173,http://localhost:3000"
        ).split(",")
    ]


settings = Settings()
