"""
Persistence Layer for Tollgate

Supports SQLite (dev) and PostgreSQL (production).
"""

from .database import Database, Transaction, get_database
from .models import (
    UserRecord,
    CreditTransactionRecord,
    UsageEventRecord,
    JobRecord,
)
from .repository import UserRepository, UsageRepository, normalize_email

__all__ = [
    "Database",
    "Transaction",
    "get_database",
    "UserRecord",
    "CreditTransactionRecord",
    "UsageEventRecord",
    "JobRecord",
    "UserRepository",
    "UsageRepository",
    "normalize_email",
]
