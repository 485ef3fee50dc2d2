"""
USDT Yield Ledger

This module provides:
- Available/locked balances per account with atomic updates
- Deposit and withdrawal requests settled by admin approval
- Plan purchases with holding snapshots and daily interest accrual
- Multi-level referral commissions on plan purchases
- Audited manual transaction entry
"""

from .models import (
    Account,
    Actor,
    PlanDefinition,
    PlanHolding,
    ReferralCommission,
    ReferralConfig,
    Transaction,
    TransactionStatus,
    TransactionType,
    UserRole,
)
from .service import LedgerService

__all__ = [
    "Account",
    "Actor",
    "PlanDefinition",
    "PlanHolding",
    "ReferralCommission",
    "ReferralConfig",
    "Transaction",
    "TransactionStatus",
    "TransactionType",
    "UserRole",
    "LedgerService",
]
