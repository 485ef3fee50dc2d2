"""
Referral commission calculation.

Walks the upliner chain of a purchasing account and works out what each
level earns under the current Referral Config. The ledger service turns the
resulting shares into PENDING commission records and transactions.
"""

from dataclasses import dataclass
from decimal import Decimal

from loguru import logger

from .exceptions import InvalidConfiguration
from .models import Account, Actor, ReferralConfig, quantize
from .permissions import require_admin
from .storage import InMemoryStorage


@dataclass
class CommissionShare:
    """One level's cut of a purchase."""

    level: int
    beneficiary: Account
    percentage: Decimal
    amount: Decimal


class ReferralProgram:
    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    @property
    def config(self) -> ReferralConfig:
        return self.storage.referral_config

    def update_config(self, actor: Actor, config: ReferralConfig) -> ReferralConfig:
        require_admin(actor, "change referral tiers")
        if len(config.level_percentages) != config.max_levels:
            raise InvalidConfiguration(
                f"Expected {config.max_levels} level percentages, got {len(config.level_percentages)}"
            )
        with self.storage.registry_lock:
            self.storage.referral_config = config.model_copy(deep=True)
        logger.info(
            f"Referral config updated by {actor.id}: levels={config.max_levels} "
            f"percentages={[str(p) for p in config.level_percentages]} active={config.active}"
        )
        return self.storage.referral_config

    def upliner_chain(self, account_id: str, max_levels: int) -> list[Account]:
        """Upliners of ``account_id``, nearest first, at most ``max_levels`` long."""
        chain: list[Account] = []
        seen = {account_id}
        account = self.storage.accounts.get(account_id)
        while account and account.upliner_id and len(chain) < max_levels:
            if account.upliner_id in seen:
                logger.warning(f"Referral cycle detected at {account.upliner_id}, stopping walk")
                break
            upliner = self.storage.accounts.get(account.upliner_id)
            if upliner is None:
                break
            chain.append(upliner)
            seen.add(upliner.id)
            account = upliner
        logger.debug(f"Upliner chain for {account_id}: {[a.id for a in chain]}")
        return chain

    def shares_for(self, account_id: str, base_amount: Decimal) -> list[CommissionShare]:
        config = self.config
        if not config.active:
            return []

        shares = []
        chain = self.upliner_chain(account_id, config.max_levels)
        for level, beneficiary in enumerate(chain, start=1):
            percentage = config.level_percentages[level - 1]
            amount = quantize(base_amount * percentage / Decimal(100))
            if amount <= 0:
                continue
            shares.append(CommissionShare(
                level=level, beneficiary=beneficiary, percentage=percentage, amount=amount,
            ))
        return shares
