from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional
from uuid import uuid4

from loguru import logger

from .accrual import InterestAccrual
from .catalog import PlanCatalog
from .config import Settings, get_settings
from .exceptions import (
    AboveMaximum,
    AccountNotFound,
    BelowMinimum,
    DuplicateReferralCode,
    InsufficientAvailableBalance,
    InsufficientBalance,
    InvalidAddress,
    InvalidAmount,
    MissingRequiredFields,
    NotPending,
    PlanInactive,
    TransactionNotFound,
    ValidationError,
)
from .models import (
    Account,
    AccountSummary,
    Actor,
    AccrualResult,
    AdminOverview,
    BalanceSnapshot,
    DepositDetails,
    DepositRequest,
    HoldingStatus,
    InterestDetails,
    ManualEntryRequest,
    ManualTransactionDraft,
    Network,
    OpenAccountRequest,
    PlanHolding,
    PlanPurchaseDetails,
    PurchaseRequest,
    PurchaseResponse,
    Reconciliation,
    ReferralCommission,
    ReferralCommissionDetails,
    RejectRequest,
    Transaction,
    TransactionListResponse,
    TransactionResponse,
    TransactionStatus,
    TransactionType,
    WithdrawalDetails,
    WithdrawalRequest,
    quantize,
)
from .permissions import require_admin, require_owner_or_admin
from .referrals import ReferralProgram
from .storage import InMemoryStorage

CREDIT_TYPES = (
    TransactionType.DEPOSIT,
    TransactionType.REFERRAL_COMMISSION,
    TransactionType.INTEREST,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid4().hex}"


def _positive_amount(amount: Optional[Decimal]) -> Decimal:
    if amount is None or not Decimal(amount).is_finite():
        raise InvalidAmount("Amount must be a finite number")
    amount = quantize(amount)
    if amount <= 0:
        raise InvalidAmount(f"Amount must be positive, got {amount}")
    return amount


class LedgerService:
    def __init__(self, storage: Optional[InMemoryStorage] = None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.storage = storage or InMemoryStorage(self.settings)
        self.catalog = PlanCatalog(self.storage)
        self.referrals = ReferralProgram(self.storage)
        self.accrual = InterestAccrual(self.storage)

    # Accounts

    def open_account(self, actor: Actor, request: OpenAccountRequest) -> Account:
        require_admin(actor, "open accounts")
        with self.storage.registry_lock:
            account_id = request.account_id or _new_id("user")
            if account_id in self.storage.accounts:
                raise ValidationError(f"Account {account_id} already exists")

            referral_code = request.referral_code or f"YIELD-{uuid4().hex[:6].upper()}"
            if referral_code in self.storage.referral_code_index:
                raise DuplicateReferralCode(f"Referral code {referral_code} is already taken")

            upliner_id = None
            if request.referred_by_code:
                upliner_id = self.storage.referral_code_index.get(request.referred_by_code)
                if upliner_id is None:
                    raise AccountNotFound(f"No account with referral code {request.referred_by_code}")

            available = quantize(request.opening_available)
            locked = quantize(request.opening_locked)
            account = Account(
                id=account_id,
                username=request.username,
                role=request.role,
                available=available,
                locked=locked,
                referral_code=referral_code,
                upliner_id=upliner_id,
                opening_available=available,
                opening_locked=locked,
                created_at=_now(),
            )
            self.storage.add_account(account)

        logger.info(f"Account {account.id} opened by {actor.id} (upliner={upliner_id})")
        return account

    def get_account(self, actor: Actor, account_id: str) -> Account:
        require_owner_or_admin(actor, account_id, "view accounts")
        return self._require_account(account_id)

    def get_balance(self, actor: Actor, account_id: str) -> BalanceSnapshot:
        require_owner_or_admin(actor, account_id, "view balances")
        return self._snapshot(self._require_account(account_id))

    def _require_account(self, account_id: str) -> Account:
        account = self.storage.accounts.get(account_id)
        if not account:
            raise AccountNotFound(f"Account {account_id} not found")
        with self.storage.locks.hold(account_id):
            return self.storage.accounts[account_id]

    # Deposits and withdrawals

    def request_deposit(self, actor: Actor, account_id: str, request: DepositRequest) -> TransactionResponse:
        require_owner_or_admin(actor, account_id, "request deposits")
        amount = _positive_amount(request.amount)
        self._require_account(account_id)

        tx = Transaction(
            id=_new_id("tx"),
            account_id=account_id,
            created_at=_now(),
            type=TransactionType.DEPOSIT,
            amount=amount,
            status=TransactionStatus.PENDING,
            details=DepositDetails(network=request.network, external_ref=request.external_ref),
        )
        self.storage.insert_transaction(tx)
        logger.info(f"Deposit {tx.id} requested: {amount} USDT via {request.network.value} for {account_id}")
        return TransactionResponse(
            transaction=tx,
            balance=self._snapshot(self._require_account(account_id)),
            message="Deposit pending approval",
        )

    def request_withdrawal(self, actor: Actor, account_id: str, request: WithdrawalRequest) -> TransactionResponse:
        require_owner_or_admin(actor, account_id, "request withdrawals")
        amount = _positive_amount(request.amount)
        address = (request.destination_address or "").strip()
        if not address:
            raise InvalidAddress("Destination address is required")
        if amount < self.settings.min_withdrawal:
            raise BelowMinimum(f"Minimum withdrawal is {self.settings.min_withdrawal} USDT")
        if amount > self.settings.max_withdrawal:
            raise AboveMaximum(f"Maximum withdrawal is {self.settings.max_withdrawal} USDT")

        self._require_account(account_id)
        with self.storage.locks.hold(account_id):
            account = self.storage.accounts[account_id]
            if amount > account.available:
                raise InsufficientAvailableBalance(
                    f"Requested {amount} USDT but only {account.available} USDT is available"
                )
            tx = Transaction(
                id=_new_id("tx"),
                account_id=account_id,
                created_at=_now(),
                type=TransactionType.WITHDRAWAL,
                amount=amount,
                status=TransactionStatus.PENDING,
                details=WithdrawalDetails(
                    destination_address=address,
                    fee=quantize(self.settings.withdrawal_fee),
                    network=request.network,
                ),
                funds_reserved=True,
            )
            self.storage.insert_transaction(tx)
            account = self._move(account, available=-amount, locked=amount)

        logger.info(f"Withdrawal {tx.id} requested: {amount} USDT from {account_id}, funds reserved")
        return TransactionResponse(
            transaction=tx,
            balance=self._snapshot(account),
            message="Withdrawal pending approval",
        )

    # Settlement

    def get_transaction(self, tx_id: str) -> Transaction:
        tx = self.storage.transactions.get(tx_id)
        if not tx:
            raise TransactionNotFound(f"Transaction {tx_id} not found")
        return tx

    def approve_transaction(self, actor: Actor, tx_id: str) -> TransactionResponse:
        require_admin(actor, "approve transactions")
        account_id = self.get_transaction(tx_id).account_id
        with self.storage.locks.hold(account_id):
            tx = self._settle(actor, self.get_transaction(tx_id), TransactionStatus.COMPLETED)
            account = self.storage.accounts[account_id]

        logger.info(f"Transaction {tx_id} ({tx.type.value}) approved by {actor.id}")
        return TransactionResponse(
            transaction=tx,
            balance=self._snapshot(account),
            message="Transaction approved",
        )

    def reject_transaction(
        self, actor: Actor, tx_id: str, request: Optional[RejectRequest] = None
    ) -> TransactionResponse:
        require_admin(actor, "reject transactions")
        reason = request.reason if request else None
        account_id = self.get_transaction(tx_id).account_id
        with self.storage.locks.hold(account_id):
            tx = self._reject(actor, self.get_transaction(tx_id), reason)
            account = self.storage.accounts[account_id]

        logger.info(f"Transaction {tx_id} ({tx.type.value}) rejected by {actor.id}: {reason or 'no reason'}")
        return TransactionResponse(
            transaction=tx,
            balance=self._snapshot(account),
            message="Transaction rejected",
        )

    def _settle(
        self, actor: Actor, tx: Transaction, status: TransactionStatus, apply_balance: bool = True
    ) -> Transaction:
        # Caller holds the lock of tx.account_id. Reserved withdrawal funds are
        # always paid out of locked, whatever apply_balance says.
        if not tx.can_settle():
            raise NotPending(f"Cannot approve transaction in {tx.status.value} state")

        account = self.storage.accounts[tx.account_id]
        applied = False
        if tx.type == TransactionType.WITHDRAWAL and tx.funds_reserved:
            self._move(account, locked=-tx.amount)
            applied = True
        elif apply_balance and tx.type in CREDIT_TYPES:
            self._move(account, available=tx.amount)
            applied = True
        elif apply_balance and tx.type == TransactionType.WITHDRAWAL:
            if tx.amount > account.available:
                raise InsufficientAvailableBalance(
                    f"Cannot pay out {tx.amount} USDT, only {account.available} USDT is available"
                )
            self._move(account, available=-tx.amount)
            applied = True

        settled = tx.model_copy(update={
            "status": status,
            "balance_applied": applied,
            "funds_reserved": False,
            "settled_at": _now(),
            "settled_by": actor.id,
        })
        self.storage.transactions[tx.id] = settled
        self._sync_commission(settled)
        return settled

    def _reject(self, actor: Actor, tx: Transaction, reason: Optional[str]) -> Transaction:
        # Caller holds the lock of tx.account_id.
        if not tx.can_settle():
            raise NotPending(f"Cannot reject transaction in {tx.status.value} state")

        if tx.type == TransactionType.WITHDRAWAL and tx.funds_reserved:
            account = self.storage.accounts[tx.account_id]
            self._move(account, available=tx.amount, locked=-tx.amount)

        notes = tx.notes
        if reason:
            notes = f"{notes}\n{reason}" if notes else reason
        rejected = tx.model_copy(update={
            "status": TransactionStatus.REJECTED,
            "funds_reserved": False,
            "notes": notes,
            "settled_at": _now(),
            "settled_by": actor.id,
        })
        self.storage.transactions[tx.id] = rejected
        self._sync_commission(rejected)
        return rejected

    def _sync_commission(self, tx: Transaction) -> None:
        if tx.type != TransactionType.REFERRAL_COMMISSION or not tx.details.commission_id:
            return
        commission = self.storage.commissions.get(tx.details.commission_id)
        if commission:
            self.storage.commissions[commission.id] = commission.model_copy(update={"status": tx.status})

    # Plans

    def purchase_plan(self, actor: Actor, account_id: str, request: PurchaseRequest) -> PurchaseResponse:
        require_owner_or_admin(actor, account_id, "purchase plans")
        plan = self.catalog.get_plan(request.plan_id)
        if not plan.active:
            raise PlanInactive(f"Plan {plan.id} is not open for purchase")
        self._require_account(account_id)

        price = quantize(plan.price)
        if price <= 0:
            raise InvalidAmount(f"Plan {plan.id} has no payable price")
        with self.storage.locks.hold(account_id):
            account = self.storage.accounts[account_id]
            if account.available < price:
                raise InsufficientBalance(
                    f"Plan costs {price} USDT but only {account.available} USDT is available"
                )

            now = _now()
            holding = PlanHolding(
                id=_new_id("holding"),
                account_id=account_id,
                plan=plan.model_copy(deep=True),
                invested_amount=price,
                daily_earning=plan.daily_earning,
                start_date=now,
                end_date=now + timedelta(days=plan.duration_days),
            )
            tx = Transaction(
                id=_new_id("tx"),
                account_id=account_id,
                created_at=now,
                type=TransactionType.PLAN_PURCHASE,
                amount=price,
                status=TransactionStatus.COMPLETED,
                details=PlanPurchaseDetails(holding_id=holding.id, plan_id=plan.id, plan_name=plan.name),
                balance_applied=True,
                settled_at=now,
                settled_by=actor.id,
            )
            self.storage.insert_transaction(tx)
            self.storage.insert_holding(holding)
            account = self._move(account, available=-price, locked=price)
            commissions = self._fan_out_commissions(account_id, plan.name, price, now)

        logger.info(
            f"Account {account_id} purchased {plan.name} for {price} USDT "
            f"({len(commissions)} referral commissions pending)"
        )
        return PurchaseResponse(
            transaction=tx,
            holding=holding,
            commissions=commissions,
            balance=self._snapshot(account),
            message=f"Purchased the {plan.name} plan",
        )

    def _fan_out_commissions(
        self, source_id: str, plan_name: str, base_amount: Decimal, now: datetime
    ) -> list[ReferralCommission]:
        commissions = []
        for share in self.referrals.shares_for(source_id, base_amount):
            commission_id = _new_id("commission")
            tx = Transaction(
                id=_new_id("tx"),
                account_id=share.beneficiary.id,
                created_at=now,
                type=TransactionType.REFERRAL_COMMISSION,
                amount=share.amount,
                status=TransactionStatus.PENDING,
                details=ReferralCommissionDetails(
                    commission_id=commission_id, source_account_id=source_id, level=share.level,
                ),
            )
            commission = ReferralCommission(
                id=commission_id,
                source_account_id=source_id,
                beneficiary_account_id=share.beneficiary.id,
                level=share.level,
                plan_name=plan_name,
                base_amount=base_amount,
                percentage=share.percentage,
                commission_amount=share.amount,
                transaction_id=tx.id,
                created_at=now,
            )
            self.storage.insert_transaction(tx)
            self.storage.insert_commission(commission)
            commissions.append(commission)
        return commissions

    def list_holdings(self, actor: Actor, account_id: str) -> list[PlanHolding]:
        require_owner_or_admin(actor, account_id, "view holdings")
        self._require_account(account_id)
        holdings = [h for h in self.storage.all_holdings() if h.account_id == account_id]
        holdings.sort(key=lambda h: h.start_date, reverse=True)
        return holdings

    def run_accrual(self, actor: Actor, as_of: Optional[datetime] = None) -> AccrualResult:
        require_admin(actor, "run interest accrual")
        return self.accrual.run(as_of, performed_by=actor.id)

    # Manual entries

    def manual_entry(self, actor: Actor, request: ManualEntryRequest) -> TransactionResponse:
        require_admin(actor, "record manual transactions")
        draft = request.draft
        if not draft.account_id or draft.amount is None:
            raise MissingRequiredFields("account_id and amount are required")
        amount = _positive_amount(draft.amount)
        self._require_account(draft.account_id)

        audit = f"[manual entry by {actor.id}]"
        notes = f"{audit} {draft.notes}" if draft.notes else audit

        if draft.id and draft.id in self.storage.transactions:
            return self._update_manual_entry(actor, draft, amount, notes, request.apply_balance_change)

        with self.storage.locks.hold(draft.account_id):
            account = self.storage.accounts[draft.account_id]
            available_delta = Decimal("0.00")
            locked_delta = Decimal("0.00")
            if request.apply_balance_change and draft.status.is_settled:
                if draft.type == TransactionType.DEPOSIT:
                    available_delta = amount
                elif draft.type == TransactionType.WITHDRAWAL:
                    available_delta = -amount
            elif (
                request.apply_balance_change
                and draft.status == TransactionStatus.PENDING
                and draft.type == TransactionType.WITHDRAWAL
            ):
                available_delta, locked_delta = -amount, amount
            if account.available + available_delta < 0:
                raise InsufficientAvailableBalance(
                    f"Cannot debit {amount} USDT, only {account.available} USDT is available"
                )

            now = _now()
            terminal = draft.status != TransactionStatus.PENDING
            tx = Transaction(
                id=draft.id or _new_id("tx"),
                account_id=draft.account_id,
                created_at=now,
                type=draft.type,
                amount=amount,
                status=draft.status,
                details=self._manual_details(draft),
                notes=notes,
                balance_applied=terminal and available_delta != 0,
                funds_reserved=locked_delta != 0,
                settled_at=now if terminal else None,
                settled_by=actor.id if terminal else None,
            )
            self.storage.insert_transaction(tx)
            if available_delta or locked_delta:
                account = self._move(account, available=available_delta, locked=locked_delta)

        logger.info(
            f"Manual {tx.type.value} {tx.id} of {amount} USDT recorded by {actor.id} "
            f"for {tx.account_id} (status={tx.status.value}, balance_applied={tx.balance_applied})"
        )
        return TransactionResponse(
            transaction=tx,
            balance=self._snapshot(account),
            message="Manual transaction recorded",
        )

    def _update_manual_entry(
        self, actor: Actor, draft: ManualTransactionDraft, amount: Decimal, notes: str, apply_balance: bool
    ) -> TransactionResponse:
        """Move an existing PENDING record to the draft's status.

        Only status and notes change. The draft must name the stored
        account, type and amount.
        """
        account_id = self.get_transaction(draft.id).account_id
        with self.storage.locks.hold(account_id):
            tx = self.get_transaction(draft.id)
            if not tx.can_settle():
                raise NotPending(f"Transaction {tx.id} is {tx.status.value} and can no longer be edited")
            mismatched = [
                name for name, stored, given in (
                    ("account_id", tx.account_id, draft.account_id),
                    ("type", tx.type, draft.type),
                    ("amount", tx.amount, amount),
                )
                if stored != given
            ]
            if mismatched:
                raise ValidationError(
                    f"Transaction {tx.id} cannot change {', '.join(mismatched)} through manual entry"
                )

            notes = f"{tx.notes}\n{notes}" if tx.notes else notes
            tx = tx.model_copy(update={"notes": notes})
            if draft.status.is_settled:
                tx = self._settle(actor, tx, draft.status, apply_balance=apply_balance)
            elif draft.status == TransactionStatus.REJECTED:
                tx = self._reject(actor, tx, None)
            else:
                self.storage.transactions[tx.id] = tx
            account = self.storage.accounts[account_id]

        logger.info(f"Manual update of {tx.id} by {actor.id}: status={tx.status.value}")
        return TransactionResponse(
            transaction=tx,
            balance=self._snapshot(account),
            message="Manual transaction updated",
        )

    @staticmethod
    def _manual_details(draft: ManualTransactionDraft):
        if draft.type == TransactionType.DEPOSIT:
            return DepositDetails(network=draft.network or Network.TRC20, external_ref=draft.external_ref)
        if draft.type == TransactionType.WITHDRAWAL:
            return WithdrawalDetails(
                destination_address=draft.destination_address or "",
                fee=quantize(draft.fee) if draft.fee is not None else Decimal("0.00"),
                network=draft.network,
            )
        if draft.type == TransactionType.PLAN_PURCHASE:
            return PlanPurchaseDetails()
        if draft.type == TransactionType.REFERRAL_COMMISSION:
            return ReferralCommissionDetails()
        return InterestDetails()

    # Queries

    def list_transactions(
        self,
        actor: Actor,
        account_id: Optional[str] = None,
        status: Optional[TransactionStatus] = None,
        tx_type: Optional[TransactionType] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> TransactionListResponse:
        if account_id is None:
            require_admin(actor, "list every account's transactions")
        else:
            require_owner_or_admin(actor, account_id, "view transactions")
        return self._query_transactions(account_id, status, tx_type, limit, offset)

    def list_pending(self, actor: Actor, limit: int = 50, offset: int = 0) -> TransactionListResponse:
        require_admin(actor, "view the approval queue")
        return self._query_transactions(status=TransactionStatus.PENDING, limit=limit, offset=offset)

    def _query_transactions(
        self,
        account_id: Optional[str] = None,
        status: Optional[TransactionStatus] = None,
        tx_type: Optional[TransactionType] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> TransactionListResponse:
        transactions = [
            t for t in self.storage.all_transactions()
            if (account_id is None or t.account_id == account_id)
            and (status is None or t.status == status)
            and (tx_type is None or t.type == tx_type)
        ]
        transactions.sort(key=lambda t: t.created_at, reverse=True)
        return TransactionListResponse(
            transactions=transactions[offset:offset + limit],
            total_count=len(transactions),
        )

    def list_commissions(self, actor: Actor, account_id: Optional[str] = None) -> list[ReferralCommission]:
        if account_id is None:
            require_admin(actor, "list every account's commissions")
        else:
            require_owner_or_admin(actor, account_id, "view commissions")
        commissions = [
            c for c in self.storage.all_commissions()
            if account_id is None or c.beneficiary_account_id == account_id
        ]
        commissions.sort(key=lambda c: c.created_at, reverse=True)
        return commissions

    def account_summary(self, actor: Actor, account_id: str) -> AccountSummary:
        require_owner_or_admin(actor, account_id, "view account summaries")
        account = self._require_account(account_id)
        active = [
            h for h in self.storage.all_holdings()
            if h.account_id == account_id and h.status == HoldingStatus.ACTIVE
        ]
        earnings = Decimal("0.00")
        pending_withdrawals = Decimal("0.00")
        for tx in self.storage.all_transactions():
            if tx.account_id != account_id:
                continue
            if tx.balance_applied and tx.type in (TransactionType.INTEREST, TransactionType.REFERRAL_COMMISSION):
                earnings += tx.amount
            elif tx.type == TransactionType.WITHDRAWAL and tx.status == TransactionStatus.PENDING:
                pending_withdrawals += tx.amount

        return AccountSummary(
            account_id=account.id,
            username=account.username,
            available=account.available,
            locked=account.locked,
            total_invested=sum((h.invested_amount for h in active), Decimal("0.00")),
            total_earnings=earnings,
            daily_interest=sum((h.daily_earning for h in active), Decimal("0.00")),
            pending_withdrawals=pending_withdrawals,
            active_holdings=len(active),
        )

    def admin_overview(self, actor: Actor) -> AdminOverview:
        require_admin(actor, "view the admin overview")
        accounts = self.storage.all_accounts()
        transactions = self.storage.all_transactions()
        return AdminOverview(
            total_accounts=len(accounts),
            total_deposits=sum(
                (t.amount for t in transactions if t.type == TransactionType.DEPOSIT and t.balance_applied),
                Decimal("0.00"),
            ),
            pending_withdrawals=sum(
                1 for t in transactions
                if t.type == TransactionType.WITHDRAWAL and t.status == TransactionStatus.PENDING
            ),
            system_balance=sum((a.total for a in accounts), Decimal("0.00")),
        )

    def reconcile(self, actor: Actor, account_id: str) -> Reconciliation:
        require_owner_or_admin(actor, account_id, "reconcile accounts")
        self._require_account(account_id)
        # The account lock keeps its balance and applied transactions in step.
        with self.storage.locks.hold(account_id):
            account = self.storage.accounts[account_id]
            transactions = self.storage.all_transactions()

        credits = Decimal("0.00")
        debits = Decimal("0.00")
        for tx in transactions:
            if tx.account_id != account_id or not tx.balance_applied:
                continue
            if tx.type in CREDIT_TYPES:
                credits += tx.amount
            elif tx.type == TransactionType.WITHDRAWAL:
                debits += tx.amount

        expected = account.opening_available + account.opening_locked + credits - debits
        return Reconciliation(
            account_id=account_id,
            actual_total=account.total,
            expected_total=expected,
            credits=credits,
            debits=debits,
            balanced=account.total == expected,
        )

    def get_deposit_address(self, network: Network) -> str:
        return self.settings.deposit_addresses()[network.value]

    # Internals

    def _move(self, account: Account, available: Decimal = Decimal("0"), locked: Decimal = Decimal("0")) -> Account:
        """Apply an available/locked delta as one replacement of the account record."""
        new_available = account.available + available
        new_locked = account.locked + locked
        if new_available < 0 or new_locked < 0:
            raise InsufficientAvailableBalance(
                f"Balance change would leave account {account.id} negative"
            )
        updated = account.model_copy(update={"available": new_available, "locked": new_locked})
        self.storage.accounts[account.id] = updated
        return updated

    @staticmethod
    def _snapshot(account: Account) -> BalanceSnapshot:
        return BalanceSnapshot(
            account_id=account.id,
            available=account.available,
            locked=account.locked,
            total=account.total,
        )
