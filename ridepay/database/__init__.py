"""Database models and connection management."""
from .connection import close_db, get_db, get_session_factory, init_db
from .models import (
    Base,
    Booking,
    DriverPayoutAccount,
    LedgerEvent,
    Payout,
    Ride,
    Transaction,
    User,
)

__all__ = [
    "Base",
    "Booking",
    "DriverPayoutAccount",
    "LedgerEvent",
    "Payout",
    "Ride",
    "Transaction",
    "User",
    "close_db",
    "get_db",
    "get_session_factory",
    "init_db",
]
