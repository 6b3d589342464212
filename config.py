"""
Application configuration.

Settings for the bid tabulation / award service: database connection, secret key,
award tolerance and transaction bounds. Values come from environment variables with
development defaults. In production set DATABASE_URL (PostgreSQL) and SECRET_KEY.
"""

import os
from decimal import Decimal
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent


class Config:
    """Base configuration shared by all environments."""

    # IMPORTANT: change this in production
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-change-me-please")

    # Database: SQLite for development (simple file in project folder)
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        f"sqlite:///{BASE_DIR / 'bidtab.db'}"
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # CSRF protection for mutating requests (X-CSRFToken header for JSON clients)
    WTF_CSRF_ENABLED = True

    APP_NAME = "Bid Tabulation & Award"

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Award amount may deviate from the evaluated (adjusted) bid amount by this fraction
    AWARD_AMOUNT_TOLERANCE = Decimal(os.environ.get("AWARD_AMOUNT_TOLERANCE", "0.01"))

    # Upper bound for one unit of work (tabulation, leveling, award)
    TRANSACTION_TIMEOUT_SECONDS = float(os.environ.get("TRANSACTION_TIMEOUT_SECONDS", "10"))

    NOTIFICATIONS_ENABLED = os.environ.get("NOTIFICATIONS_ENABLED", "1") == "1"
    NOTIFICATION_SENDER = os.environ.get("NOTIFICATION_SENDER", "procurement@example.com")


class TestConfig(Config):
    """Configuration used by the test suite (in-memory SQLite, no CSRF)."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    WTF_CSRF_ENABLED = False
    LOG_LEVEL = "DEBUG"
