"""
Tests for referral commission fan-out on plan purchases.
"""

from decimal import Decimal

import pytest

from yield_ledger.config import Settings
from yield_ledger.exceptions import InvalidConfiguration, NotPending, PermissionDeniedError
from yield_ledger.models import (
    Actor,
    DepositRequest,
    OpenAccountRequest,
    PurchaseRequest,
    ReferralConfig,
    TransactionStatus,
    TransactionType,
    UserRole,
)
from yield_ledger.service import LedgerService


ADMIN = Actor(id="admin-1", role=UserRole.ADMIN)


def make_chain(levels=(Decimal("10"), Decimal("5"))) -> LedgerService:
    """top <- l1 <- buyer, unrelated to the seeded accounts."""
    service = LedgerService(settings=Settings(
        referral_max_levels=len(levels),
        referral_level_percentages=list(levels),
    ))
    service.open_account(ADMIN, OpenAccountRequest(username="top", account_id="top", referral_code="TOP"))
    service.open_account(ADMIN, OpenAccountRequest(
        username="l1", account_id="l1", referral_code="L1", referred_by_code="TOP",
    ))
    service.open_account(ADMIN, OpenAccountRequest(
        username="buyer", account_id="buyer", referral_code="BUYER", referred_by_code="L1",
        opening_available=Decimal("3000"),
    ))
    return service


class TestCommissionFanOut:
    """Tests for commissions created by a purchase."""

    def test_two_level_chain(self):
        """Each upliner gets a PENDING commission at its level's percentage."""
        service = make_chain()

        response = service.purchase_plan(Actor(id="buyer"), "buyer", PurchaseRequest(plan_id="plan-2"))

        by_level = {c.level: c for c in response.commissions}
        assert set(by_level) == {1, 2}
        assert by_level[1].beneficiary_account_id == "l1"
        assert by_level[1].commission_amount == Decimal("50.00")
        assert by_level[2].beneficiary_account_id == "top"
        assert by_level[2].commission_amount == Decimal("25.00")
        assert all(c.status == TransactionStatus.PENDING for c in response.commissions)
        assert all(c.base_amount == Decimal("500.00") for c in response.commissions)

        l1_txs = service.list_transactions(ADMIN, "l1", tx_type=TransactionType.REFERRAL_COMMISSION)
        assert l1_txs.total_count == 1
        assert l1_txs.transactions[0].status == TransactionStatus.PENDING
        assert l1_txs.transactions[0].details.source_account_id == "buyer"

        # Nothing credited before approval
        assert service.get_balance(ADMIN, "l1").available == Decimal("0.00")
        assert service.get_balance(ADMIN, "top").available == Decimal("0.00")

    def test_chain_shorter_than_levels(self):
        """Walk stops early when the chain ends."""
        service = make_chain(levels=(Decimal("10"), Decimal("5"), Decimal("2")))

        response = service.purchase_plan(ADMIN, "buyer", PurchaseRequest(plan_id="plan-1"))

        assert [c.level for c in response.commissions] == [1, 2]
        assert [c.commission_amount for c in response.commissions] == [Decimal("10.00"), Decimal("5.00")]

    def test_max_levels_caps_walk(self):
        """Upliners beyond max_levels earn nothing."""
        service = make_chain(levels=(Decimal("10"),))

        response = service.purchase_plan(ADMIN, "buyer", PurchaseRequest(plan_id="plan-3"))

        assert len(response.commissions) == 1
        assert response.commissions[0].beneficiary_account_id == "l1"
        assert response.commissions[0].commission_amount == Decimal("250.00")

    def test_inactive_config_pays_nothing(self):
        """No commissions when the program is switched off."""
        service = make_chain()
        service.referrals.update_config(
            ADMIN, ReferralConfig(max_levels=2, level_percentages=[Decimal("10"), Decimal("5")], active=False)
        )

        response = service.purchase_plan(ADMIN, "buyer", PurchaseRequest(plan_id="plan-2"))

        assert response.commissions == []
        assert service.list_commissions(ADMIN) == []

    def test_deposits_never_create_commissions(self):
        """Only plan purchases trigger the fan-out."""
        service = make_chain()
        tx = service.request_deposit(ADMIN, "buyer", DepositRequest(amount=Decimal("100"))).transaction
        service.approve_transaction(ADMIN, tx.id)

        assert service.list_commissions(ADMIN) == []


class TestCommissionSettlement:
    """Tests for approving and rejecting commissions."""

    def test_approve_credits_beneficiary(self):
        """Approval credits available and completes the commission record."""
        service = make_chain()
        commission = service.purchase_plan(ADMIN, "buyer", PurchaseRequest(plan_id="plan-2")).commissions[0]

        response = service.approve_transaction(ADMIN, commission.transaction_id)

        assert response.balance.account_id == "l1"
        assert response.balance.available == Decimal("50.00")
        assert service.list_commissions(ADMIN, "l1")[0].status == TransactionStatus.COMPLETED
        assert service.reconcile(ADMIN, "l1").balanced
        assert service.account_summary(ADMIN, "l1").total_earnings == Decimal("50.00")

        with pytest.raises(NotPending):
            service.approve_transaction(ADMIN, commission.transaction_id)

    def test_reject_marks_commission_rejected(self):
        """Rejected commissions credit nothing."""
        service = make_chain()
        commission = service.purchase_plan(ADMIN, "buyer", PurchaseRequest(plan_id="plan-2")).commissions[1]

        service.reject_transaction(ADMIN, commission.transaction_id)

        assert service.get_balance(ADMIN, "top").available == Decimal("0.00")
        assert service.list_commissions(ADMIN, "top")[0].status == TransactionStatus.REJECTED


class TestReferralConfig:
    """Tests for referral tier configuration."""

    def test_length_must_match_levels(self):
        """Percentage list length must equal max_levels."""
        service = make_chain()

        with pytest.raises(InvalidConfiguration):
            service.referrals.update_config(
                ADMIN, ReferralConfig(max_levels=3, level_percentages=[Decimal("10"), Decimal("5")])
            )

    def test_update_applies_to_next_purchase(self):
        """New percentages are used from the next purchase on."""
        service = make_chain()
        service.referrals.update_config(
            ADMIN, ReferralConfig(max_levels=2, level_percentages=[Decimal("20"), Decimal("0")])
        )

        response = service.purchase_plan(ADMIN, "buyer", PurchaseRequest(plan_id="plan-2"))

        # Zero-percent levels are skipped
        assert [(c.level, c.commission_amount) for c in response.commissions] == [(1, Decimal("100.00"))]

    def test_user_cannot_change_config(self):
        """Tier changes are admin-only."""
        service = make_chain()

        with pytest.raises(PermissionDeniedError):
            service.referrals.update_config(
                Actor(id="buyer"), ReferralConfig(max_levels=1, level_percentages=[Decimal("50")])
            )


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
