# backend/backoffice/config.py
from __future__ import annotations
import os


def _env_flag(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/backoffice.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///backoffice.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Orders whose short lines the allocation engine may reserve stock for
    ALLOCATION_ELIGIBLE_STATUSES = ("pending", "confirmed", "processing", "partial_shipped")

    # Manual adjustments may not push on-hand below zero unless enabled
    ALLOW_NEGATIVE_PHYSICAL_STOCK = _env_flag("ALLOW_NEGATIVE_PHYSICAL_STOCK", False)

    # Statement deductions are allowed to overdraw a customer's mileage
    ALLOW_NEGATIVE_MILEAGE = _env_flag("ALLOW_NEGATIVE_MILEAGE", True)

    MOVEMENT_PAGE_SIZE = int(os.environ.get("MOVEMENT_PAGE_SIZE", "50"))
    STOCK_RETRY_ATTEMPTS = int(os.environ.get("STOCK_RETRY_ATTEMPTS", "3"))
