import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterator, Optional

from .config import Settings
from .exceptions import ValidationError
from .models import (
    Account,
    PlanDefinition,
    PlanHolding,
    ReferralCommission,
    ReferralConfig,
    Transaction,
    UserRole,
)


class AccountLocks:
    """One re-entrant lock per account id, created on first use."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    def get(self, account_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[account_id] = lock
            return lock

    @contextmanager
    def hold(self, *account_ids: str) -> Iterator[None]:
        # Sorted acquisition order so multi-account holds cannot deadlock.
        locks = [self.get(a) for a in sorted(set(account_ids))]
        for lock in locks:
            lock.acquire()
        try:
            yield
        finally:
            for lock in reversed(locks):
                lock.release()


class InMemoryStorage:
    def __init__(self, settings: Optional[Settings] = None, seed: Optional[bool] = None):
        settings = settings or Settings()
        self.accounts: dict[str, Account] = {}
        self.plans: dict[str, PlanDefinition] = {}
        self.holdings: dict[str, PlanHolding] = {}
        self.transactions: dict[str, Transaction] = {}
        self.commissions: dict[str, ReferralCommission] = {}
        self.referral_code_index: dict[str, str] = {}
        self.referral_config = ReferralConfig(
            max_levels=settings.referral_max_levels,
            level_percentages=list(settings.referral_level_percentages),
            active=settings.referral_active,
        )
        self.locks = AccountLocks()
        # Guards inserts and catalogue/config changes.
        self.registry_lock = threading.RLock()
        if settings.seed_demo_data if seed is None else seed:
            self._seed_data()

    def add_account(self, account: Account) -> None:
        with self.registry_lock:
            self.accounts[account.id] = account
            self.referral_code_index[account.referral_code] = account.id

    def insert_transaction(self, tx: Transaction) -> None:
        with self.registry_lock:
            if tx.id in self.transactions:
                raise ValidationError(f"Transaction {tx.id} already exists")
            self.transactions[tx.id] = tx

    def insert_holding(self, holding: PlanHolding) -> None:
        with self.registry_lock:
            self.holdings[holding.id] = holding

    def insert_commission(self, commission: ReferralCommission) -> None:
        with self.registry_lock:
            self.commissions[commission.id] = commission

    # Readers iterate over copies; inserts from other threads resize the live dicts.

    def all_accounts(self) -> list[Account]:
        with self.registry_lock:
            return list(self.accounts.values())

    def all_transactions(self) -> list[Transaction]:
        with self.registry_lock:
            return list(self.transactions.values())

    def all_holdings(self) -> list[PlanHolding]:
        with self.registry_lock:
            return list(self.holdings.values())

    def all_commissions(self) -> list[ReferralCommission]:
        with self.registry_lock:
            return list(self.commissions.values())

    def _seed_data(self):
        now = datetime.now(timezone.utc)

        for plan_id, name, price, rate, days in (
            ("plan-1", "Starter Yield", "100", "1.5", 30),
            ("plan-2", "Pro Multiplier", "500", "2.2", 45),
            ("plan-3", "Elite Wealth", "2500", "3.5", 60),
        ):
            price, rate = Decimal(price), Decimal(rate)
            self.plans[plan_id] = PlanDefinition(
                id=plan_id, name=name, price=price, daily_interest_rate=rate,
                duration_days=days,
                total_profit=PlanDefinition.compute_total_profit(price, rate, days),
                active=True,
            )

        self.add_account(Account(
            id="admin-1", username="GlobalAdmin", role=UserRole.ADMIN,
            referral_code="ROOT-001", created_at=now,
        ))
        self.add_account(Account(
            id="user-1", username="CryptoInvestor88", role=UserRole.USER,
            available=Decimal("1250.50"), locked=Decimal("600.00"),
            opening_available=Decimal("1250.50"), opening_locked=Decimal("600.00"),
            referral_code="YIELD-9941", upliner_id="admin-1", created_at=now,
        ))
