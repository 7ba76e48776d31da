"""
Application configuration, read once from the environment at import time.
"""

import os


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


DATABASE_URL = os.getenv("DATABASE_URL", "memory://")
DATABASE_NAME = os.getenv("DATABASE_NAME", "pickles_shop")

SESSION_TTL_HOURS = int(os.getenv("SESSION_TTL_HOURS", "168"))

ADMIN_USERNAME = os.getenv("ADMIN_USERNAME", "")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "")
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "admin@example.com")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
PORT = int(os.getenv("PORT", "8000"))

# Pricing rules (see pricing.PricingRules)
NORMAL_SHIPPING_FEE = float(os.getenv("NORMAL_SHIPPING_FEE", "0.5"))
NORMAL_FREE_SHIPPING_THRESHOLD = float(os.getenv("NORMAL_FREE_SHIPPING_THRESHOLD", "10"))
EXPRESS_SHIPPING_FEE = float(os.getenv("EXPRESS_SHIPPING_FEE", "1"))
EXPRESS_FREE_SHIPPING_THRESHOLD = float(os.getenv("EXPRESS_FREE_SHIPPING_THRESHOLD", "15"))
POINTS_BASE_RATE = float(os.getenv("POINTS_BASE_RATE", "0.01"))
POINTS_BOOST_AS_PERCENT = _flag("POINTS_BOOST_AS_PERCENT", "1")

LOW_STOCK_THRESHOLD = int(os.getenv("LOW_STOCK_THRESHOLD", "5"))
