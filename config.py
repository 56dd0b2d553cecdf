"""Configuration management for the Gameroom Token Backend"""

import os
import logging
from typing import List

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower().strip() in ("1", "true", "yes", "on")


class Config:
    """Application configuration"""

    # Environment detection: ENVIRONMENT=production is the only production switch
    ENVIRONMENT = os.getenv("ENVIRONMENT", "").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"
    CURRENT_ENVIRONMENT = "production" if IS_PRODUCTION else "development"

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL")
    if DATABASE_URL and DATABASE_URL.startswith("postgres://"):
        # Heroku/Railway style URLs are not accepted by SQLAlchemy 2.x
        DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)

    if not DATABASE_URL:
        DATABASE_SOURCE = "NOT CONFIGURED"
    elif DATABASE_URL.startswith("sqlite"):
        DATABASE_SOURCE = "SQLite (Development)"
    else:
        DATABASE_SOURCE = "PostgreSQL"

    # Business civil time zone. Closing-hour windows and release crons are
    # evaluated in this zone, never in server-local time or UTC.
    BUSINESS_TIMEZONE = os.getenv("BUSINESS_TIMEZONE", "America/Chicago")

    # Payment provider selection
    PAYMENT_PROVIDER = os.getenv("PAYMENT_PROVIDER", "stripe").lower().strip()
    SUPPORTED_PAYMENT_PROVIDERS = ("stripe", "paypal")
    PROVIDER_TIMEOUT_SECONDS = float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "12"))
    DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "usd").lower()

    # Stripe
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
    STRIPE_API_BASE = os.getenv("STRIPE_API_BASE", "https://api.stripe.com")

    # PayPal
    PAYPAL_CLIENT_ID = os.getenv("PAYPAL_CLIENT_ID")
    PAYPAL_CLIENT_SECRET = os.getenv("PAYPAL_CLIENT_SECRET")
    PAYPAL_WEBHOOK_ID = os.getenv("PAYPAL_WEBHOOK_ID")
    PAYPAL_BASE_URL = os.getenv(
        "PAYPAL_BASE_URL",
        "https://api-m.paypal.com" if IS_PRODUCTION else "https://api-m.sandbox.paypal.com",
    )
    PAYPAL_BRAND_NAME = os.getenv("PAYPAL_BRAND_NAME", "HCCC Games")
    FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")

    # Reconciliation
    DUPLICATE_INTENT_WINDOW_MINUTES = int(os.getenv("DUPLICATE_INTENT_WINDOW_MINUTES", "30"))
    RECONCILIATION_INTERVAL_MINUTES = min(
        10, max(1, int(os.getenv("RECONCILIATION_INTERVAL_MINUTES", "1")))
    )
    SWEEP_BATCH_SIZE = int(os.getenv("SWEEP_BATCH_SIZE", "200"))

    # Webhook authenticity bypass is a development-only escape hatch
    WEBHOOK_SIGNATURE_BYPASS_REQUESTED = _env_bool("WEBHOOK_SIGNATURE_BYPASS")
    WEBHOOK_SIGNATURE_BYPASS = WEBHOOK_SIGNATURE_BYPASS_REQUESTED and not IS_PRODUCTION

    # Notifications (Brevo transactional email)
    BREVO_API_KEY = os.getenv("BREVO_API_KEY")
    FROM_EMAIL = os.getenv("FROM_EMAIL", "noreply@hccc.online")
    FROM_NAME = os.getenv("FROM_NAME", "HCCC Games")
    EMAIL_NOTIFICATIONS_ENABLED = _env_bool("EMAIL_NOTIFICATIONS_ENABLED", "true")
    ADMIN_EMAIL_CEDAR_PARK = os.getenv("ADMIN_EMAIL_CEDAR_PARK")
    ADMIN_EMAIL_LIBERTY_HILL = os.getenv("ADMIN_EMAIL_LIBERTY_HILL")

    # HTTP server
    PORT = int(os.getenv("PORT", "5000"))

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging"""
        logger.info("🔧 Token Backend Configuration:")
        logger.info(f"   Environment: {Config.CURRENT_ENVIRONMENT.upper()}")
        logger.info(f"   Database: {Config.DATABASE_SOURCE}")
        logger.info(f"   Business timezone: {Config.BUSINESS_TIMEZONE}")
        logger.info(f"   Payment provider: {Config.PAYMENT_PROVIDER}")
        logger.info(f"   Provider timeout: {Config.PROVIDER_TIMEOUT_SECONDS}s")
        logger.info(f"   Reconciliation interval: {Config.RECONCILIATION_INTERVAL_MINUTES} min")
        logger.info(f"   Duplicate intent window: {Config.DUPLICATE_INTENT_WINDOW_MINUTES} min")
        if Config.WEBHOOK_SIGNATURE_BYPASS:
            logger.warning("   ⚠️ Webhook signature verification BYPASSED (development only)")
        elif Config.WEBHOOK_SIGNATURE_BYPASS_REQUESTED:
            logger.error("   🚨 WEBHOOK_SIGNATURE_BYPASS ignored in production")
        logger.info(f"   Email notifications: {'enabled' if Config.BREVO_API_KEY else 'not configured'}")

    @staticmethod
    def validate_production_config() -> List[str]:
        """Return a list of configuration problems; empty when the config is usable"""
        problems = []

        if not Config.DATABASE_URL:
            problems.append("DATABASE_URL is required")

        if Config.PAYMENT_PROVIDER not in Config.SUPPORTED_PAYMENT_PROVIDERS:
            problems.append(
                f"PAYMENT_PROVIDER must be one of {', '.join(Config.SUPPORTED_PAYMENT_PROVIDERS)}"
            )
        elif Config.PAYMENT_PROVIDER == "stripe":
            if not Config.STRIPE_SECRET_KEY:
                problems.append("STRIPE_SECRET_KEY is required for the stripe provider")
            if not Config.STRIPE_WEBHOOK_SECRET and not Config.WEBHOOK_SIGNATURE_BYPASS:
                problems.append("STRIPE_WEBHOOK_SECRET is required to verify webhooks")
        elif Config.PAYMENT_PROVIDER == "paypal":
            if not Config.PAYPAL_CLIENT_ID or not Config.PAYPAL_CLIENT_SECRET:
                problems.append("PAYPAL_CLIENT_ID and PAYPAL_CLIENT_SECRET are required for the paypal provider")
            if not Config.PAYPAL_WEBHOOK_ID and not Config.WEBHOOK_SIGNATURE_BYPASS:
                problems.append("PAYPAL_WEBHOOK_ID is required to verify webhooks")

        if Config.IS_PRODUCTION and Config.WEBHOOK_SIGNATURE_BYPASS_REQUESTED:
            problems.append("WEBHOOK_SIGNATURE_BYPASS must not be set in production")

        if Config.IS_PRODUCTION and Config.DATABASE_URL and Config.DATABASE_URL.startswith("sqlite"):
            problems.append("SQLite is not supported in production")

        try:
            from zoneinfo import ZoneInfo
            ZoneInfo(Config.BUSINESS_TIMEZONE)
        except Exception:
            problems.append(f"BUSINESS_TIMEZONE '{Config.BUSINESS_TIMEZONE}' is not a valid IANA zone")

        return problems

    @staticmethod
    def admin_email_for_location(location: str):
        """Staff recipient for a location, matched the same loose way as closing hours"""
        normalized = (location or "").lower()
        if "cedar" in normalized:
            return Config.ADMIN_EMAIL_CEDAR_PARK
        if "liberty" in normalized:
            return Config.ADMIN_EMAIL_LIBERTY_HILL
        return None
