"""Configuration management for the account ledger backend"""

import os
import logging
from decimal import Decimal
from typing import Dict, Any

from dotenv import load_dotenv

load_dotenv(os.path.join(os.path.dirname(os.path.abspath(__file__)), '.env'))

logger = logging.getLogger(__name__)


class Config:
    """Application configuration"""

    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./ledger.db")
    DATABASE_ECHO = os.getenv("DATABASE_ECHO", "false").lower() == "true"

    # Payout provider selection: "nowpayments" uses the real HTTP adapter,
    # "stub" uses the deterministic in-process provider
    PAYOUT_PROVIDER = os.getenv("PAYOUT_PROVIDER", "stub").lower().strip()
    NOWPAYMENTS_API_KEY = os.getenv("NOWPAYMENTS_API_KEY")
    NOWPAYMENTS_BASE_URL = os.getenv("NOWPAYMENTS_BASE_URL", "https://api.nowpayments.io")
    PAYOUT_PROVIDER_TIMEOUT = int(os.getenv("PAYOUT_PROVIDER_TIMEOUT", "30"))
    PAYOUT_MAX_ATTEMPTS = int(os.getenv("PAYOUT_MAX_ATTEMPTS", "3"))
    PAYOUT_RETRY_DELAY_SECONDS = float(os.getenv("PAYOUT_RETRY_DELAY_SECONDS", "1"))

    # Referral commission paid on approved deposits
    REFERRAL_BONUS_PERCENT = Decimal(os.getenv("REFERRAL_BONUS_PERCENT", "5"))

    # Gift cards
    GIFT_CARD_FEE = Decimal(os.getenv("GIFT_CARD_FEE", "4.5"))
    GIFT_CARD_MIN_AMOUNT = Decimal(os.getenv("GIFT_CARD_MIN_AMOUNT", "10"))
    GIFT_CARD_MAX_AMOUNT = Decimal(os.getenv("GIFT_CARD_MAX_AMOUNT", "1000"))
    GIFT_CARD_VALIDITY_DAYS = int(os.getenv("GIFT_CARD_VALIDITY_DAYS", "365"))

    # Virtual cards
    VIRTUAL_CARD_FEE = Decimal(os.getenv("VIRTUAL_CARD_FEE", "49"))
    VIRTUAL_CARD_VALIDITY_YEARS = int(os.getenv("VIRTUAL_CARD_VALIDITY_YEARS", "3"))

    # Banking fees (percent)
    EXTERNAL_TRANSFER_FEE_PERCENT = Decimal(os.getenv("EXTERNAL_TRANSFER_FEE_PERCENT", "2.5"))
    FLIGHT_BOOKING_FEE_PERCENT = Decimal(os.getenv("FLIGHT_BOOKING_FEE_PERCENT", "1.8"))

    # Audit trail file (unset: audit entries only go to the database and log stream)
    AUDIT_LOG_FILE = os.getenv("AUDIT_LOG_FILE")

    # Throttling
    CONTACT_COOLDOWN_SECONDS = int(os.getenv("CONTACT_COOLDOWN_SECONDS", "300"))
    RATE_LIMIT_MAX_KEYS = int(os.getenv("RATE_LIMIT_MAX_KEYS", "10000"))

    @staticmethod
    def masked_api_key() -> str:
        key = Config.NOWPAYMENTS_API_KEY
        if not key:
            return "not configured"
        if len(key) <= 8:
            return "***"
        return f"{key[:4]}...{key[-4:]}"

    @staticmethod
    def as_dict() -> Dict[str, Any]:
        """Snapshot of the active configuration with secrets masked"""
        return {
            "environment": Config.ENVIRONMENT,
            "database_url": Config.DATABASE_URL.split("@")[-1],
            "payout_provider": Config.PAYOUT_PROVIDER,
            "nowpayments_api_key": Config.masked_api_key(),
            "payout_provider_timeout": Config.PAYOUT_PROVIDER_TIMEOUT,
            "payout_max_attempts": Config.PAYOUT_MAX_ATTEMPTS,
            "referral_bonus_percent": str(Config.REFERRAL_BONUS_PERCENT),
            "gift_card_fee": str(Config.GIFT_CARD_FEE),
            "virtual_card_fee": str(Config.VIRTUAL_CARD_FEE),
            "external_transfer_fee_percent": str(Config.EXTERNAL_TRANSFER_FEE_PERCENT),
            "flight_booking_fee_percent": str(Config.FLIGHT_BOOKING_FEE_PERCENT),
        }

    @staticmethod
    def log_configuration():
        """Log the active configuration at startup"""
        logger.info(f"🔧 Environment: {Config.ENVIRONMENT.upper()}")
        for key, value in Config.as_dict().items():
            logger.info(f"   {key}: {value}")

        if Config.PAYOUT_PROVIDER == "nowpayments" and not Config.NOWPAYMENTS_API_KEY:
            logger.warning("⚠️ PAYOUT_PROVIDER=nowpayments but NOWPAYMENTS_API_KEY is not set - withdrawals will route to manual review")
        if Config.PAYOUT_PROVIDER not in ("nowpayments", "stub"):
            logger.error(f"❌ Unknown PAYOUT_PROVIDER '{Config.PAYOUT_PROVIDER}' - falling back to stub provider")
