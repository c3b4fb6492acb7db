# backend/orderledger/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/orderledger.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///orderledger.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Channel defaults (a Channel row may override each of these)
    DEFAULT_CURRENCY_CODE = os.environ.get("DEFAULT_CURRENCY_CODE", "USD")
    DEFAULT_VARIANCE_NOTIFICATION_THRESHOLD_CENTS = int(
        os.environ.get("DEFAULT_VARIANCE_NOTIFICATION_THRESHOLD_CENTS", "100")
    )
    DEFAULT_ORDER_ITEM_LIMIT = int(os.environ.get("DEFAULT_ORDER_ITEM_LIMIT", "999"))

    # Bulk allocation ordering when no explicit order list is given:
    # "oldest_first" (FIFO) or "newest_first"
    ALLOCATION_ORDER_POLICY = os.environ.get("ALLOCATION_ORDER_POLICY", "oldest_first")
