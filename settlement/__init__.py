"""
Settlement engine for the GEUWAT membership and referral program

This module provides:
- Payment and extension-request settlement sharing one algorithm
- Referral bonus and cashback computed from tier percentage rates
- Append-only ledger entries tagged with the tier and rate in effect
- Balances projected from the ledger, resumable after partial failure
"""

from .dates import extend
from .models import (
    Account,
    AccountStatus,
    LedgerEntry,
    LedgerEntryType,
    Tier,
    TierRate,
)
from .service import (
    SettlementService,
    SettlementError,
    NotFoundError,
    ConfigurationError,
    DependencyFailure,
    AlreadySettledError,
)

__all__ = [
    "extend",
    "Account",
    "AccountStatus",
    "LedgerEntry",
    "LedgerEntryType",
    "Tier",
    "TierRate",
    "SettlementService",
    "SettlementError",
    "NotFoundError",
    "ConfigurationError",
    "DependencyFailure",
    "AlreadySettledError",
]
