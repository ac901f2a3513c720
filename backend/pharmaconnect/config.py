# backend/pharmaconnect/config.py
from __future__ import annotations
import os
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/pharmaconnect.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///pharmaconnect.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Platform fee charged on every order total (fixed, not env-driven)
    COMMISSION_RATE = Decimal("0.10")

    # Window during which a pharmacy may cancel its own pending order
    CANCELLATION_WINDOW_MINUTES = int(os.environ.get("CANCELLATION_WINDOW_MINUTES", "120"))

    AUTH_TOKEN_MAX_AGE_SECONDS = int(os.environ.get("AUTH_TOKEN_MAX_AGE_SECONDS", str(7 * 24 * 3600)))


@dataclass(frozen=True)
class OrderPolicy:
    """
    Process-wide order settings, read once at startup and handed to the
    order lifecycle. Services never consult the environment directly.
    """
    commission_rate: Decimal = Decimal("0.10")
    cancellation_window: timedelta = timedelta(minutes=120)

    @classmethod
    def from_mapping(cls, config) -> "OrderPolicy":
        return cls(
            commission_rate=Decimal(str(config.get("COMMISSION_RATE", "0.10"))),
            cancellation_window=timedelta(minutes=int(config.get("CANCELLATION_WINDOW_MINUTES", 120))),
        )
