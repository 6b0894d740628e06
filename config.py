"""
config.py
This file contains all the configuration for the application, including the auth secret,
the app store / play store verification credentials, and the in-app purchase client settings

To change log level, set the LOG_LEVEL environment variable (e.g., LOG_LEVEL=WARNING)
"""

import os
from dotenv import load_dotenv
import logging

# Load environment variables from .env file first
load_dotenv()

# Centralized logging configuration for production
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)

# Debug logging flag - controls whether detailed info logs are shown
# Set LOGGER_DEBUG=true for testing, false for production
LOGGER_DEBUG = os.getenv("LOGGER_DEBUG", "false").lower() == "true"

def get_logger(name=None):
    """Get a logger with the specified name, using the centralized config."""
    return logging.getLogger(name)

def log_debug(logger, message, *args, **kwargs):
    """
    Conditionally log info messages based on LOGGER_DEBUG flag.
    Use this for detailed debug logs that should only appear when debugging is enabled.
    When LOGGER_DEBUG=false, these logs are suppressed.
    """
    if LOGGER_DEBUG:
        logger.info(message, *args, **kwargs)

def log_debug_error(logger, message, *args, **kwargs):
    """
    Conditionally log error messages based on LOGGER_DEBUG flag.
    Use this for receipt verification error logs that should only appear when debugging is enabled.
    """
    if LOGGER_DEBUG:
        logger.error(message, *args, **kwargs)

def _env_bool(name, default="false"):
    return os.getenv(name, default).lower() == "true"

# **** USER AUTHENTICATION ****
class UserAuth:
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key")
    ALGORITHM = os.getenv("ALGORITHM", "HS256")
    ACCESS_TOKEN_EXPIRE_MINUTES = 30  # 30 minutes

# **** APPLE APP STORE ****
class AppStore:
    # Shared secret from App Store Connect, required by the legacy verifyReceipt endpoint
    SHARED_SECRET = os.getenv("APPLE_SHARED_SECRET", "")
    BUNDLE_ID = os.getenv("APPLE_BUNDLE_ID", "com.ideaspark.app")
    IS_PRODUCTION = os.getenv("ENVIRONMENT", "development").lower() == "production"
    PRODUCTION_VERIFY_URL = "https://buy.itunes.apple.com/verifyReceipt"
    SANDBOX_VERIFY_URL = "https://sandbox.itunes.apple.com/verifyReceipt"
    PUBLIC_KEYS_URL = os.getenv(
        "APPLE_PUBLIC_KEYS_URL", "https://api.storekit.itunes.apple.com/inApps/v1/publicKeys"
    )

# **** GOOGLE PLAY ****
class GooglePlay:
    PACKAGE_NAME = os.getenv("GOOGLE_PACKAGE_NAME", "com.ideaspark.app")
    # OAuth access token for the Android Publisher API (service account)
    ACCESS_TOKEN = os.getenv("GOOGLE_PLAY_TOKEN")
    API_BASE = "https://androidpublisher.googleapis.com/androidpublisher/v3"

# **** RECEIPT VERIFICATION ****
class ReceiptVerification:
    # Simulated verification for development/testing
    TEST_MODE = _env_bool("PREMIUM_TEST_MODE")
    TIMEOUT_SECONDS = float(os.getenv("RECEIPT_VERIFY_TIMEOUT_SECONDS", "10"))

# **** SUBSCRIPTION LIFECYCLE ****
class SubscriptionLifecycle:
    # How long after expiry before the user is fully downgraded to FREE
    GRACE_PERIOD_DAYS = int(os.getenv("SUBSCRIPTION_GRACE_PERIOD_DAYS", "3"))
    # Receipt validation requests allowed per user per minute
    VALIDATE_RATE_LIMIT = int(os.getenv("VALIDATE_RATE_LIMIT", "5"))

# **** IN-APP PURCHASE CLIENT ****
class IAPClient:
    # Platform the client runs on: 'ios' or 'android'
    PLATFORM = os.getenv("IAP_PLATFORM", "ios").lower()
    API_BASE_URL = os.getenv("IAP_API_BASE_URL", "http://localhost:8000")
    API_TIMEOUT_SECONDS = float(os.getenv("IAP_API_TIMEOUT_SECONDS", "10"))
    # Total attempts for retryable backend failures (network, 429, 5xx)
    API_MAX_RETRIES = int(os.getenv("IAP_API_MAX_RETRIES", "3"))
    API_BACKOFF_SECONDS = float(os.getenv("IAP_API_BACKOFF_SECONDS", "0.5"))
    # How long purchase_subscription waits for the store to report the checkout
    PURCHASE_TIMEOUT_SECONDS = float(os.getenv("IAP_PURCHASE_TIMEOUT_SECONDS", "300"))
    CACHE_PATH = os.getenv("IAP_CACHE_PATH", os.path.expanduser("~/.ideaspark/iap_cache.json"))
