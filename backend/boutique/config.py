# backend/boutique/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/boutique.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///boutique.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Single tax rate for every sale, in basis points (1800 = 18%)
    SALES_TAX_RATE_BPS = int(os.environ.get("SALES_TAX_RATE_BPS", "1800"))

    # Reversal windows
    SALE_ANNUL_WINDOW_HOURS = int(os.environ.get("SALE_ANNUL_WINDOW_HOURS", "24"))
    RETURN_WINDOW_DAYS = int(os.environ.get("RETURN_WINDOW_DAYS", "30"))

    # LOW_STOCK urgency by stock / stock_minimum ratio, checked in order
    ALERT_URGENCY_BANDS = (
        (0.25, "HIGH"),
        (0.5, "MEDIUM"),
        (1.0, "LOW"),
    )

    DEFAULT_PAGE_SIZE = 20
    MAX_PAGE_SIZE = 100
