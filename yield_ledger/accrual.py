"""
Daily interest accrual.

Credits one INTEREST transaction per elapsed day for every active holding and
releases the invested principal from locked back to available once the
holding reaches its end date.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
from uuid import uuid4

from loguru import logger

from .models import (
    AccrualResult,
    HoldingStatus,
    InterestDetails,
    PlanHolding,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from .storage import InMemoryStorage

SECONDS_PER_DAY = 86400


def days_elapsed(holding: PlanHolding, as_of: datetime) -> int:
    elapsed = int((as_of - holding.start_date).total_seconds() // SECONDS_PER_DAY)
    return max(0, min(elapsed, holding.plan.duration_days))


class InterestAccrual:
    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    def run(self, as_of: Optional[datetime] = None, performed_by: Optional[str] = None) -> AccrualResult:
        as_of = as_of or datetime.now(timezone.utc)
        if as_of.tzinfo is None:
            as_of = as_of.replace(tzinfo=timezone.utc)

        tx_count = 0
        credited = Decimal("0.00")
        matured = 0

        for holding in self.storage.all_holdings():
            if holding.status != HoldingStatus.ACTIVE:
                continue
            with self.storage.locks.hold(holding.account_id):
                # Re-read under the lock; another run may have advanced it.
                holding = self.storage.holdings[holding.id]
                if holding.status != HoldingStatus.ACTIVE:
                    continue
                count, amount, did_mature = self._accrue_holding(holding, as_of, performed_by)
            tx_count += count
            credited += amount
            matured += int(did_mature)

        if tx_count or matured:
            logger.info(
                f"Accrual as of {as_of.isoformat()}: {tx_count} interest payments, "
                f"{credited} USDT credited, {matured} holdings matured"
            )
        return AccrualResult(
            as_of=as_of,
            interest_transactions=tx_count,
            interest_credited=credited,
            matured_holdings=matured,
        )

    def _accrue_holding(
        self, holding: PlanHolding, as_of: datetime, performed_by: Optional[str]
    ) -> tuple[int, Decimal, bool]:
        account = self.storage.accounts[holding.account_id]
        due_days = days_elapsed(holding, as_of)
        now = datetime.now(timezone.utc)

        new_transactions = []
        for day in range(holding.days_paid + 1, due_days + 1):
            if holding.daily_earning <= 0:
                break
            new_transactions.append(Transaction(
                id=f"tx-{uuid4().hex}",
                account_id=account.id,
                created_at=now,
                type=TransactionType.INTEREST,
                amount=holding.daily_earning,
                status=TransactionStatus.COMPLETED,
                details=InterestDetails(holding_id=holding.id, day=day),
                balance_applied=True,
                settled_at=now,
                settled_by=performed_by,
            ))

        interest = holding.daily_earning * len(new_transactions)
        available = account.available + interest
        locked = account.locked
        updates: dict = {"days_paid": max(holding.days_paid, due_days)}

        did_mature = as_of >= holding.end_date
        if did_mature:
            available += holding.invested_amount
            locked -= holding.invested_amount
            updates["status"] = HoldingStatus.MATURED

        for tx in new_transactions:
            self.storage.insert_transaction(tx)
        self.storage.holdings[holding.id] = holding.model_copy(update=updates)
        self.storage.accounts[account.id] = account.model_copy(
            update={"available": available, "locked": locked}
        )
        if did_mature:
            logger.info(f"Holding {holding.id} matured, released {holding.invested_amount} to {account.id}")
        return len(new_transactions), interest, did_mature
