"""
Configuration management for the Betslip Intake bot.

This module handles loading and validating environment variables.
"""

import os
from typing import Optional

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _int_env(key: str, default: int) -> int:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _float_env(key: str, default: float) -> float:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        return default


class Config:
    """Configuration class with environment variables."""

    # Telegram
    TELEGRAM_BOT_TOKEN: Optional[str] = os.getenv("TELEGRAM_BOT_TOKEN")

    # Extraction service ("http" or "openai")
    EXTRACTION_BACKEND: str = os.getenv("EXTRACTION_BACKEND", "http").strip().lower()
    EXTRACTION_API_URL: Optional[str] = os.getenv("EXTRACTION_API_URL")
    EXTRACTION_API_KEY: Optional[str] = os.getenv("EXTRACTION_API_KEY")

    # OpenAI
    OPENAI_API_KEY: Optional[str] = os.getenv("OPENAI_API_KEY")

    # Ledger ingestion service
    LEDGER_API_URL: Optional[str] = os.getenv("LEDGER_API_URL")
    LEDGER_API_KEY: Optional[str] = os.getenv("LEDGER_API_KEY")

    HTTP_TIMEOUT_SECONDS: float = _float_env("HTTP_TIMEOUT_SECONDS", 30.0)

    # Batch review engine
    COALESCE_IDLE_MS: int = _int_env("COALESCE_IDLE_MS", 1200)
    REVIEW_PAGE_SIZE: int = _int_env("REVIEW_PAGE_SIZE", 6)
    LOW_CONFIDENCE_THRESHOLD: float = _float_env("LOW_CONFIDENCE_THRESHOLD", 0.6)
    HIGH_CONFIDENCE_THRESHOLD: float = _float_env("HIGH_CONFIDENCE_THRESHOLD", 0.85)

    # Ephemeral session eviction
    BATCH_TTL_SECONDS: int = _int_env("BATCH_TTL_SECONDS", 60 * 60)
    EDIT_SESSION_TTL_SECONDS: int = _int_env("EDIT_SESSION_TTL_SECONDS", 300)
    SESSION_SWEEP_INTERVAL_SECONDS: int = _int_env("SESSION_SWEEP_INTERVAL_SECONDS", 300)

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    @classmethod
    def validate(cls) -> None:
        """
        Validate that required configuration is present.

        Raises:
            ValueError: If required configuration is missing.
        """
        if not cls.TELEGRAM_BOT_TOKEN:
            raise ValueError("TELEGRAM_BOT_TOKEN must be configured")

        if not cls.LEDGER_API_URL:
            raise ValueError("LEDGER_API_URL must be configured")

        if cls.EXTRACTION_BACKEND not in ("http", "openai"):
            raise ValueError("EXTRACTION_BACKEND must be 'http' or 'openai'")

        if cls.EXTRACTION_BACKEND == "http" and not cls.EXTRACTION_API_URL:
            raise ValueError("EXTRACTION_API_URL must be configured for the http backend")

        if cls.EXTRACTION_BACKEND == "openai" and not cls.OPENAI_API_KEY:
            raise ValueError("OPENAI_API_KEY must be configured for the openai backend")

        if not 0.0 <= cls.LOW_CONFIDENCE_THRESHOLD <= cls.HIGH_CONFIDENCE_THRESHOLD <= 1.0:
            raise ValueError(
                "Confidence thresholds must satisfy 0 <= LOW <= HIGH <= 1"
            )

        if cls.REVIEW_PAGE_SIZE < 1:
            raise ValueError("REVIEW_PAGE_SIZE must be at least 1")

        # Optional but recommended
        if not cls.LEDGER_API_KEY:
            print("WARNING: LEDGER_API_KEY not configured - ledger requests are unauthenticated")
