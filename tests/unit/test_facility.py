"""
test_facility.py - Unit tests for CreditFacility entry points

Tests:
- Construction and logical time
- Borrower admission and ceilings
- Loan request, approval, limit and rate updates
- Draws, repayments, default, recovery and close
- Vault registration
- Accessors, aggregates, audit log, cloning and re-entry
"""

import pytest
from datetime import timedelta

from loanbook import (
    CreditFacility, FacilityConfig, TrustedVault, LoanStatus, DebtStatus, ONE,
    EVENT_BORROWER_JOINED, EVENT_LOAN_APPROVED, EVENT_LOAN_REJECTED, EVENT_DRAW_EXECUTED,
    EVENT_REPAID, EVENT_DEFAULTED, EVENT_CLOSED, EVENT_VAULT_ADDED, EVENT_VAULT_UPDATED,
    EVENT_ACCUMULATOR_REFRESHED, EVENT_BORROWER_LIMIT_UPDATED, EVENT_LOAN_RATE_UPDATED,
    ZeroIdentity, IdentityCollision, NotTrustedBorrower, NotValidBorrower, NotEligible, MissingRole,
    BorrowerAlreadyExists, UpdateCeilingLimitDirectly, ZeroCeiling, ZeroAmount,
    LoanCeilingLimitExceedsBorrowerRemainingLimit, CeilingLimitBelowUsedLimit,
    NotValidLoan, NotPendingLoan, NotValidInterestRate, NotLoanOwner,
    MaturityTimeShouldAfterBlockTimestamp, BorrowAmountOverLoanRemainingLimit,
    NoVaultCapacity, RepayTooLittle, InsufficientFunds, NotValidDebt, NotMaturedDebt,
    NotDefaultedDebt, DebtResidualTooLarge, VaultAssetMismatch, InvalidVaultPercentage,
)

from tests.fake_collaborators import T0, ASSET, OPERATOR, OpenMembership, ReentrantFunding, FailingFunding, build_facility


MATURITY = T0 + timedelta(days=30)


@pytest.fixture
def defaulted(drawn):
    """alice's debt past maturity, defaulted onto tier 17; the operator holds recovery funds."""
    fac, debt_index = drawn
    fac.advance_time(MATURITY + timedelta(seconds=1))
    fac.defaulted(OPERATOR, "alice", debt_index, 17)
    fac.funding.issue(ASSET, OPERATOR, 1_000_000)
    return fac, debt_index


class TestConstruction:
    """Tests for facility setup and the logical clock."""

    def test_missing_collaborator(self, members, roles):
        with pytest.raises(ZeroIdentity, match="funding"):
            CreditFacility(FacilityConfig(ASSET), None, members, roles)

    def test_defaults(self, facility):
        assert facility.current_time == T0
        assert len(facility.rate_table) == 20
        assert facility.accumulator.last_updated == T0

    def test_time_moves_forward_only(self, facility):
        facility.advance_time(T0 + timedelta(days=1))
        with pytest.raises(ValueError, match="backwards"):
            facility.advance_time(T0)


class TestJoinAndAgree:
    """Tests for borrower admission and ceilings."""

    def test_join(self, facility):
        borrower = facility.join("alice")
        assert borrower.index == 0
        assert facility.borrower(0).borrower == "alice"
        assert facility.events_of(EVENT_BORROWER_JOINED)[0].payload["borrower"] == "alice"

    def test_join_not_allowed(self, facility):
        with pytest.raises(NotEligible):
            facility.join("carol")

    def test_join_excluded(self, facility, members):
        members.deny("bob")
        with pytest.raises(NotEligible):
            facility.join("bob")

    def test_join_twice(self, facility):
        facility.join("alice")
        with pytest.raises(BorrowerAlreadyExists):
            facility.join("alice")

    def test_join_empty(self, facility):
        with pytest.raises(ZeroIdentity):
            facility.join("")

    def test_vault_identity_cannot_join(self, facility, members):
        members.allow("vault_a")
        with pytest.raises(IdentityCollision, match="trusted vault"):
            facility.join("vault_a")
        assert len(facility.borrowers) == 0

    def test_custom_eligibility_service(self, tokens, roles):
        fac = CreditFacility(FacilityConfig(ASSET), tokens, OpenMembership(excluded={"mallory"}), roles)
        fac.join("anyone")
        with pytest.raises(NotEligible):
            fac.join("mallory")

    def test_agree_requires_operator(self, facility):
        facility.join("alice")
        with pytest.raises(MissingRole, match="OPERATOR"):
            facility.agree("alice", "alice", 1_000)

    def test_agree_unjoined(self, facility):
        with pytest.raises(NotTrustedBorrower):
            facility.agree(OPERATOR, "bob", 1_000)

    def test_agree_excluded(self, facility, members):
        facility.join("alice")
        members.deny("alice")
        with pytest.raises(NotValidBorrower):
            facility.agree(OPERATOR, "alice", 1_000)

    def test_agree_zero_and_twice(self, facility):
        facility.join("alice")
        with pytest.raises(ZeroCeiling):
            facility.agree(OPERATOR, "alice", 0)
        facility.agree(OPERATOR, "alice", 1_000)
        with pytest.raises(UpdateCeilingLimitDirectly):
            facility.agree(OPERATOR, "alice", 2_000)

    def test_update_borrower_limit(self, agreed):
        agreed.update_borrower_limit(OPERATOR, "alice", 2_000_000)
        assert agreed.borrower(0).ceiling == 2_000_000
        payload = agreed.events_of(EVENT_BORROWER_LIMIT_UPDATED)[0].payload
        assert (payload["old_ceiling"], payload["new_ceiling"]) == (1_000_000, 2_000_000)

    def test_update_borrower_limit_requires_operator(self, agreed):
        with pytest.raises(MissingRole):
            agreed.update_borrower_limit("alice", "alice", 2_000_000)


class TestRequestAndApprove:
    """Tests for loan origination."""

    def test_request_reserves_capacity(self, agreed):
        loan = agreed.request("alice", 500_000)
        assert loan.status == LoanStatus.PENDING
        assert agreed.borrower(0).committed == 500_000
        assert agreed.borrower(0).remaining == 500_000

    def test_request_over_remaining(self, agreed):
        with pytest.raises(
            LoanCeilingLimitExceedsBorrowerRemainingLimit,
            match="requested 1000001, available 1000000",
        ):
            agreed.request("alice", 1_000_001)
        assert len(agreed.loans) == 0

    def test_request_zero(self, agreed):
        with pytest.raises(ZeroAmount):
            agreed.request("alice", 0)

    def test_request_not_trusted(self, agreed):
        with pytest.raises(NotTrustedBorrower):
            agreed.request("bob", 10)

    def test_request_excluded(self, agreed, members):
        members.deny("alice")
        with pytest.raises(NotValidBorrower):
            agreed.request("alice", 10)

    def test_approve_below_requested_releases(self, agreed):
        loan = agreed.request("alice", 500_000)
        approved = agreed.approve(OPERATOR, loan.index, 400_000, 1)
        assert approved.ceiling == 400_000
        assert agreed.borrower(0).committed == 400_000
        assert agreed.events_of(EVENT_LOAN_APPROVED)[0].payload["released"] == 100_000

    def test_approve_clamps_to_requested(self, agreed):
        loan = agreed.request("alice", 500_000)
        assert agreed.approve(OPERATOR, loan.index, 900_000, 1).ceiling == 500_000
        assert agreed.borrower(0).committed == 500_000

    def test_approve_zero_rejects(self, agreed):
        loan = agreed.request("alice", 500_000)
        rejected = agreed.approve(OPERATOR, loan.index, 0, 0)
        assert rejected.status == LoanStatus.REJECTED
        assert agreed.borrower(0).committed == 0
        assert len(agreed.events_of(EVENT_LOAN_REJECTED)) == 1

    @pytest.mark.parametrize("tier", [0, 20, -1])
    def test_approve_invalid_tier(self, agreed, tier):
        loan = agreed.request("alice", 500_000)
        with pytest.raises(NotValidInterestRate):
            agreed.approve(OPERATOR, loan.index, 500_000, tier)
        assert agreed.loan(loan.index).status == LoanStatus.PENDING

    def test_approve_twice(self, approved):
        fac, loan_index = approved
        with pytest.raises(NotPendingLoan):
            fac.approve(OPERATOR, loan_index, 500_000, 1)

    def test_approve_unknown(self, agreed):
        with pytest.raises(NotValidLoan):
            agreed.approve(OPERATOR, 3, 1, 1)

    def test_approve_negative(self, agreed):
        loan = agreed.request("alice", 500_000)
        with pytest.raises(ZeroCeiling):
            agreed.approve(OPERATOR, loan.index, -1, 1)

    def test_approve_requires_operator(self, agreed):
        loan = agreed.request("alice", 500_000)
        with pytest.raises(MissingRole):
            agreed.approve("alice", loan.index, 500_000, 1)


class TestLoanUpdates:
    """Tests for loan ceiling and rate changes after origination."""

    def test_limit_below_drawn(self, drawn):
        fac, _ = drawn
        with pytest.raises(CeilingLimitBelowUsedLimit):
            fac.update_loan_limit(OPERATOR, 0, 299_999)

    def test_limit_increase_beyond_borrower_remaining(self, drawn):
        fac, _ = drawn
        assert fac.borrower(0).remaining == 500_000
        with pytest.raises(LoanCeilingLimitExceedsBorrowerRemainingLimit):
            fac.update_loan_limit(OPERATOR, 0, 1_000_001)
        fac.update_loan_limit(OPERATOR, 0, 1_000_000)
        assert fac.borrower(0).committed == 700_000
        assert fac.borrower(0).remaining == 0
        assert fac.loan(0).remaining == 700_000

    def test_limit_decrease_releases(self, drawn):
        fac, _ = drawn
        fac.update_loan_limit(OPERATOR, 0, 400_000)
        assert fac.borrower(0).committed == 100_000
        assert fac.loan(0).remaining == 100_000

    def test_rate_update_affects_future_draws_only(self, drawn):
        fac, debt_index = drawn
        fac.update_loan_interest_rate(OPERATOR, 0, 5)
        result = fac.borrow("alice", 0, 100_000, MATURITY)
        assert fac.debt(debt_index).rate_tier == 1
        assert fac.debt(result.debt_index).rate_tier == 5
        assert fac.events_of(EVENT_LOAN_RATE_UPDATED)[0].payload["new_rate_tier"] == 5

    def test_loan_debt_spans_tiers(self, drawn):
        fac, debt_index = drawn
        fac.update_loan_interest_rate(OPERATOR, 0, 5)
        result = fac.borrow("alice", 0, 100_000, MATURITY)
        fac.advance_time(T0 + timedelta(days=20))
        assert set(fac.loans.normalized(0)) == {1, 5}
        owed = fac.debt_owed(debt_index) + fac.debt_owed(result.debt_index)
        assert fac.total_debt_of_loan(0) == owed

    def test_rate_update_on_pending(self, agreed):
        loan = agreed.request("alice", 10)
        with pytest.raises(NotValidLoan):
            agreed.update_loan_interest_rate(OPERATOR, loan.index, 2)

    def test_rate_update_invalid_tier(self, approved):
        fac, loan_index = approved
        with pytest.raises(NotValidInterestRate):
            fac.update_loan_interest_rate(OPERATOR, loan_index, 0)


class TestBorrow:
    """Tests for draws."""

    def test_borrow(self, approved):
        fac, loan_index = approved
        result = fac.borrow("alice", loan_index, 300_000, MATURITY)
        assert (result.amount, result.is_all_satisfied) == (300_000, True)
        assert result.allocations == ((0, 300_000),)

        debt = fac.debt(result.debt_index)
        assert debt.status == DebtStatus.ACTIVE
        assert (debt.principal, debt.normalized_principal) == (300_000, 300_000)
        assert fac.tranches_of_debt(result.debt_index) == [0]

        assert fac.funding.balance_of("alice", ASSET) == 400_000
        assert fac.funding.balance_of("vault_a", ASSET) == 700_000
        borrower = fac.borrower(0)
        assert (borrower.used, borrower.committed) == (300_000, 200_000)
        assert fac.loan(loan_index).remaining == 200_000
        assert fac.events_of(EVENT_DRAW_EXECUTED)[0].payload["is_all_satisfied"] is True

    def test_not_owner(self, approved):
        fac, loan_index = approved
        fac.join("bob")
        with pytest.raises(NotLoanOwner):
            fac.borrow("bob", loan_index, 1, MATURITY)

    def test_maturity_not_in_future(self, approved):
        fac, loan_index = approved
        with pytest.raises(MaturityTimeShouldAfterBlockTimestamp):
            fac.borrow("alice", loan_index, 1, T0)

    def test_over_loan_remaining(self, approved):
        fac, loan_index = approved
        with pytest.raises(BorrowAmountOverLoanRemainingLimit):
            fac.borrow("alice", loan_index, 500_001, MATURITY)

    def test_pending_loan(self, approved):
        fac, _ = approved
        pending = fac.request("alice", 100_000)
        with pytest.raises(NotValidLoan):
            fac.borrow("alice", pending.index, 1, MATURITY)

    def test_zero_amount(self, approved):
        fac, loan_index = approved
        with pytest.raises(ZeroAmount):
            fac.borrow("alice", loan_index, 0, MATURITY)

    def test_excluded_borrower(self, approved, members):
        fac, loan_index = approved
        members.deny("alice")
        with pytest.raises(NotValidBorrower):
            fac.borrow("alice", loan_index, 1, MATURITY)

    def test_no_vault_capacity_changes_nothing(self, approved):
        fac, loan_index = approved
        fac.funding.transfer(ASSET, "vault_a", "elsewhere", 1_000_000)
        with pytest.raises(NoVaultCapacity):
            fac.borrow("alice", loan_index, 1_000, MATURITY)
        assert len(fac.debts) == 0
        assert fac.borrower(0).used == 0
        assert fac.loan(loan_index).remaining == 500_000


class TestRepay:
    """Tests for borrower repayments."""

    def test_partial_repay_principal(self, drawn):
        fac, debt_index = drawn
        result = fac.repay("alice", debt_index, 100_000)
        assert (result.paid, result.interest_paid, result.principal_paid) == (100_000, 0, 100_000)
        assert result.residual == 200_000
        assert result.status == DebtStatus.ACTIVE
        assert fac.debt(debt_index).principal == 200_000
        assert fac.borrower(0).used == 200_000
        assert fac.funding.balance_of("vault_a", ASSET) == 800_000
        assert fac.tranches.debt_sum(debt_index) == fac.debt(debt_index).normalized_principal

    def test_overpayment_capped_at_owed(self, drawn):
        fac, debt_index = drawn
        result = fac.repay("alice", debt_index, 600_000)
        assert result.paid == 300_000
        assert result.status == DebtStatus.REPAID
        debt = fac.debt(debt_index)
        assert (debt.principal, debt.normalized_principal) == (0, 0)
        assert fac.funding.balance_of("alice", ASSET) == 100_000
        assert fac.borrower(0).used == 0
        assert fac.total_debt_of_loan(0) == 0
        # non-revolving: the loan's undrawn ceiling is not restored
        assert fac.loan(0).remaining == 200_000
        assert fac.events_of(EVENT_REPAID)[0].payload["status"] == "repaid"

    def test_repaid_debt_is_not_live(self, drawn):
        fac, debt_index = drawn
        fac.repay("alice", debt_index, 600_000)
        with pytest.raises(NotValidDebt):
            fac.repay("alice", debt_index, 1)

    def test_too_little(self, drawn):
        fac, debt_index = drawn
        fac.advance_time(T0 + timedelta(days=365))
        before = fac.debt(debt_index)
        with pytest.raises(RepayTooLittle, match="accrued interest"):
            fac.repay("alice", debt_index, 1)
        assert fac.debt(debt_index) == before

    def test_interest_within_dust(self, drawn):
        fac, debt_index = drawn
        fac.advance_time(T0 + timedelta(days=365))
        interest = fac.debt_interest(debt_index)
        assert interest > 1_000
        result = fac.repay("alice", debt_index, interest - 100)
        assert result.principal_paid == 0
        assert result.residual == 300_100
        assert fac.debt(debt_index).principal == 300_000

    def test_not_owner(self, drawn):
        fac, debt_index = drawn
        fac.join("bob")
        with pytest.raises(NotLoanOwner):
            fac.repay("bob", debt_index, 1)

    def test_insufficient_funds_changes_nothing(self, drawn):
        fac, debt_index = drawn
        fac.funding.transfer(ASSET, "alice", "elsewhere", 400_000)
        before = fac.debt(debt_index)
        with pytest.raises(InsufficientFunds):
            fac.repay("alice", debt_index, 1_000)
        assert fac.debt(debt_index) == before
        assert fac.funding.balance_of("vault_a", ASSET) == 700_000

    def test_unknown_and_zero(self, drawn):
        fac, debt_index = drawn
        with pytest.raises(NotValidDebt):
            fac.repay("alice", 5, 1)
        with pytest.raises(ZeroAmount):
            fac.repay("alice", debt_index, 0)


class TestDefault:
    """Tests for marking matured debts as defaulted."""

    def test_not_matured(self, drawn):
        fac, debt_index = drawn
        fac.advance_time(MATURITY)
        with pytest.raises(NotMaturedDebt):
            fac.defaulted(OPERATOR, "alice", debt_index, 17)

    def test_default_rebases(self, drawn):
        fac, debt_index = drawn
        fac.advance_time(MATURITY + timedelta(seconds=1))
        owed_before = fac.debt_owed(debt_index)
        debt = fac.defaulted(OPERATOR, "alice", debt_index, 17)
        assert debt.status == DebtStatus.DEFAULTED
        assert debt.rate_tier == 17
        assert abs(fac.debt_owed(debt_index) - owed_before) < 8
        assert fac.tranches.debt_sum(debt_index) == debt.normalized_principal
        assert fac.loans.normalized(0) == {}
        assert fac.verify_reconciliation()['valid']
        payload = fac.events_of(EVENT_DEFAULTED)[0].payload
        assert payload["owed_before"] == owed_before

    def test_penalty_tier_compounds_faster(self, drawn):
        fac, debt_index = drawn
        fac.advance_time(MATURITY + timedelta(seconds=1))
        fac.defaulted(OPERATOR, "alice", debt_index, 17)
        owed = fac.debt_owed(debt_index)
        fac.advance_time(MATURITY + timedelta(days=30))
        # 30 days at 30%: about 2.5% more
        assert fac.debt_owed(debt_index) > owed * 1_024 // 1_000

    def test_guards(self, drawn):
        fac, debt_index = drawn
        fac.join("bob")
        fac.advance_time(MATURITY + timedelta(seconds=1))
        with pytest.raises(MissingRole):
            fac.defaulted("alice", "alice", debt_index, 17)
        with pytest.raises(NotLoanOwner):
            fac.defaulted(OPERATOR, "bob", debt_index, 17)
        with pytest.raises(NotTrustedBorrower):
            fac.defaulted(OPERATOR, "carol", debt_index, 17)
        with pytest.raises(NotValidInterestRate):
            fac.defaulted(OPERATOR, "alice", debt_index, 0)

    def test_default_twice(self, defaulted):
        fac, debt_index = defaulted
        with pytest.raises(NotValidDebt):
            fac.defaulted(OPERATOR, "alice", debt_index, 18)
        with pytest.raises(NotValidDebt):
            fac.repay("alice", debt_index, 1)


class TestRecoveryAndClose:
    """Tests for recovering and closing defaulted debts."""

    def test_recovery_requires_defaulted(self, drawn):
        fac, debt_index = drawn
        with pytest.raises(NotDefaultedDebt):
            fac.recovery(OPERATOR, "alice", debt_index, 1)

    def test_partial_recovery(self, defaulted):
        fac, debt_index = defaulted
        owed = fac.debt_owed(debt_index)
        result = fac.recovery(OPERATOR, "alice", debt_index, 100_000)
        assert result.paid == 100_000
        assert result.residual == owed - 100_000
        assert result.status == DebtStatus.DEFAULTED
        assert result.interest_paid == owed - 300_000
        assert fac.borrower(0).used == 300_000 - result.principal_paid

    def test_full_recovery_then_close(self, defaulted):
        fac, debt_index = defaulted
        owed = fac.debt_owed(debt_index)
        result = fac.recovery(OPERATOR, "alice", debt_index, 10 ** 9)
        assert result.paid == owed
        assert result.residual == 0
        assert fac.debt(debt_index).status == DebtStatus.DEFAULTED
        assert fac.borrower(0).used == 0

        assert fac.close(OPERATOR, "alice", debt_index) == 0
        assert fac.debt(debt_index).status == DebtStatus.CLOSED
        assert fac.events_of(EVENT_CLOSED)[0].payload["written_off"] is False

    def test_close_with_residual(self, defaulted):
        fac, debt_index = defaulted
        with pytest.raises(DebtResidualTooLarge):
            fac.close(OPERATOR, "alice", debt_index)
        residual = fac.close(OPERATOR, "alice", debt_index, write_off=True)
        assert residual > 300_000
        assert fac.debt(debt_index).status == DebtStatus.CLOSED
        assert fac.borrower(0).used == 0
        assert fac.total_debt_of_borrower("alice") == 0
        assert fac.total_debt_of_vault("vault_a") == 0

    def test_close_requires_defaulted(self, drawn):
        fac, debt_index = drawn
        with pytest.raises(NotDefaultedDebt):
            fac.close(OPERATOR, "alice", debt_index)

    def test_recovery_needs_funds(self, drawn):
        fac, debt_index = drawn
        fac.advance_time(MATURITY + timedelta(seconds=1))
        fac.defaulted(OPERATOR, "alice", debt_index, 17)
        with pytest.raises(InsufficientFunds):
            fac.recovery(OPERATOR, "alice", debt_index, 1_000)

    def test_recovery_after_zero_residual(self, defaulted):
        fac, debt_index = defaulted
        fac.recovery(OPERATOR, "alice", debt_index, 10 ** 9)
        with pytest.raises(ZeroAmount):
            fac.recovery(OPERATOR, "alice", debt_index, 1)


class TestVaultRegistration:
    """Tests for update_trusted_vaults."""

    def test_add_and_update(self, facility, tokens):
        tokens.register_vault("vault_b", ASSET)
        assert facility.update_trusted_vaults(OPERATOR, TrustedVault("vault_b", 0, 500_000), 1) is False
        assert facility.vault(1).maximum_percentage == 500_000
        assert facility.update_trusted_vaults(OPERATOR, TrustedVault("vault_b", 0, 600_000), 1) is True
        assert facility.vault(1).maximum_percentage == 600_000
        assert len(facility.events_of(EVENT_VAULT_ADDED)) == 2
        assert len(facility.events_of(EVENT_VAULT_UPDATED)) == 1

    def test_asset_mismatch(self, facility, tokens):
        tokens.register_asset("DAI")
        tokens.register_vault("vault_dai", "DAI")
        with pytest.raises(VaultAssetMismatch):
            facility.update_trusted_vaults(OPERATOR, TrustedVault("vault_dai"), 1)
        with pytest.raises(VaultAssetMismatch):
            facility.update_trusted_vaults(OPERATOR, TrustedVault("ghost"), 1)

    def test_borrower_identity_cannot_be_vault(self, agreed, tokens):
        tokens.register_vault("alice", ASSET)
        with pytest.raises(IdentityCollision, match="trusted borrower"):
            agreed.update_trusted_vaults(OPERATOR, TrustedVault("alice"), 1)
        assert len(agreed.vaults) == 1

    def test_invalid_bounds_and_identity(self, facility):
        with pytest.raises(InvalidVaultPercentage):
            facility.update_trusted_vaults(OPERATOR, TrustedVault("vault_a", 700_000, 600_000), 0)
        with pytest.raises(ZeroIdentity):
            facility.update_trusted_vaults(OPERATOR, TrustedVault(""), 0)
        with pytest.raises(MissingRole):
            facility.update_trusted_vaults("alice", TrustedVault("vault_a"), 0)


class TestAccumulatorAndAccessors:
    """Tests for pile, projected reads and index accessors."""

    def test_pile_emits_once(self, facility):
        facility.advance_time(T0 + timedelta(hours=1))
        assert facility.pile() == 3_600
        assert facility.pile() == 0
        events = facility.events_of(EVENT_ACCUMULATOR_REFRESHED)
        assert len(events) == 1
        assert events[0].payload["elapsed_seconds"] == 3_600

    def test_accumulated_rate_is_projected(self, facility):
        facility.advance_time(T0 + timedelta(days=10))
        projected = facility.accumulated_rate(1)
        assert projected > ONE
        assert facility.accumulator.index(1) == ONE
        facility.pile()
        assert facility.accumulator.index(1) == projected

    def test_rate_tier_accessor(self, facility):
        assert facility.rate_tier(0) == ONE
        assert facility.rate_tier(10) == 1000000003170979198
        with pytest.raises(NotValidInterestRate):
            facility.rate_tier(20)

    def test_interest_accrues(self, drawn):
        fac, debt_index = drawn
        fac.advance_time(T0 + timedelta(days=10))
        owed = fac.debt_owed(debt_index)
        assert owed > 300_000
        assert fac.debt_interest(debt_index) == owed - 300_000
        assert fac.total_debt_of_borrower("alice") == owed

    def test_reverse_indices(self, drawn):
        fac, debt_index = drawn
        assert fac.debts_of_borrower("alice") == [debt_index]
        assert fac.debts_of_loan(0) == [debt_index]
        assert fac.loans_of_borrower("alice") == [0]
        assert fac.tranches_of_loan(0) == [0]
        assert fac.tranches_of_borrower("alice") == [0]
        assert fac.tranches_of_vault("vault_a") == [0]
        with pytest.raises(NotValidLoan):
            fac.debts_of_loan(9)


class TestAggregates:
    """Tests for multi-vault draws and reconciliation."""

    def setup_method(self):
        self.fac = build_facility(
            vaults=(TrustedVault("vault_a", 0, 500_000), TrustedVault("vault_b", 0, 500_000)),
            borrower_balances={"alice": 100_000},
            ceilings={"alice": 2_000_000},
        )
        loan = self.fac.request("alice", 600_000)
        self.fac.approve(OPERATOR, loan.index, 600_000, 4)
        self.result = self.fac.borrow("alice", loan.index, 600_000, MATURITY)

    def test_draw_split_across_vaults(self):
        assert self.result.allocations == ((0, 300_000), (1, 300_000))
        assert self.fac.tranches_of_debt(self.result.debt_index) == [0, 1]
        assert self.fac.total_debt_of_vault("vault_a") == 300_000
        assert self.fac.total_debt_of_vault("vault_b") == 300_000
        assert self.fac.total_debt_of_borrower("alice") == 600_000

    def test_reconciles_over_time(self):
        self.fac.advance_time(T0 + timedelta(days=90))
        report = self.fac.verify_reconciliation()
        assert report['valid'], report
        assert report['difference'] <= 2
        assert report['borrower_total'] == self.fac.total_outstanding()

    def test_repay_receipts_follow_tranches(self):
        self.fac.repay("alice", self.result.debt_index, 100_000)
        assert self.fac.funding.balance_of("vault_a", ASSET) == 750_000
        assert self.fac.funding.balance_of("vault_b", ASSET) == 750_000


class TestSmallVaultShare:
    """A vault funding a sliver of a draw at a high index keeps a claim."""

    def setup_method(self):
        self.fac = build_facility(
            vaults=(TrustedVault("vault_a"), TrustedVault("vault_b")),
            vault_balances={"vault_a": 1},
            borrower_balances={"alice": 100_000},
            ceilings={"alice": 1_000_000},
        )
        loan = self.fac.request("alice", 1_000)
        self.fac.approve(OPERATOR, loan.index, 1_000, 19)
        now = T0 + timedelta(days=365)
        self.fac.advance_time(now)
        self.result = self.fac.borrow("alice", loan.index, 1_000, now + timedelta(days=30))

    def test_each_part_normalized_up(self):
        assert self.result.allocations == ((0, 1), (1, 999))
        first, second = (self.fac.tranche(i) for i in self.fac.tranches_of_debt(self.result.debt_index))
        assert first.normalized_principal >= 1
        assert first.normalized_principal + second.normalized_principal == (
            self.fac.debt(self.result.debt_index).normalized_principal
        )
        assert self.fac.total_debt_of_vault("vault_a") >= 1

    def test_small_vault_repaid(self):
        assert self.fac.funding.balance_of("vault_a", ASSET) == 0
        self.fac.repay("alice", self.result.debt_index, 10 ** 6)
        assert self.fac.funding.balance_of("vault_a", ASSET) >= 1
        assert self.fac.verify_reconciliation()['valid']


class TestFundingFailureRollback:
    """A funding source that raises part-way leaves every record as it was."""

    def setup_method(self):
        self.funding = FailingFunding()
        self.fac = build_facility(
            vaults=(TrustedVault("vault_a", 0, 500_000), TrustedVault("vault_b", 0, 500_000)),
            borrower_balances={"alice": 100_000},
            ceilings={"alice": 2_000_000},
            tokens=self.funding,
        )
        self.loan = self.fac.request("alice", 600_000)
        self.fac.approve(OPERATOR, self.loan.index, 600_000, 4)

    def balances(self):
        return [self.funding.balance_of(w, ASSET) for w in ("vault_a", "vault_b", "alice")]

    def test_draw_fails_on_second_vault(self):
        events = len(self.fac.events)
        self.funding.fail_on = 2
        with pytest.raises(RuntimeError, match="funding source unavailable"):
            self.fac.borrow("alice", self.loan.index, 600_000, MATURITY)
        assert self.balances() == [1_000_000, 1_000_000, 100_000]
        assert (len(self.fac.debts), len(self.fac.tranches)) == (0, 0)
        assert self.fac.borrower(0).used == 0
        assert self.fac.loan(self.loan.index).remaining == 600_000
        assert self.fac.loans.normalized(self.loan.index) == {}
        assert len(self.fac.events) == events
        assert self.funding.verify_conservation()['valid']

        result = self.fac.borrow("alice", self.loan.index, 600_000, MATURITY)
        assert result.allocations == ((0, 300_000), (1, 300_000))

    def test_repay_fails_on_second_tranche(self):
        result = self.fac.borrow("alice", self.loan.index, 600_000, MATURITY)
        debt = self.fac.debt(result.debt_index)
        tranches = [self.fac.tranche(i) for i in self.fac.tranches_of_debt(result.debt_index)]
        before = self.balances()
        events = len(self.fac.events)

        self.funding.fail_on = 2
        with pytest.raises(RuntimeError):
            self.fac.repay("alice", result.debt_index, 100_000)
        assert self.fac.debt(result.debt_index) == debt
        assert [self.fac.tranche(t.index) for t in tranches] == tranches
        assert self.balances() == before
        assert self.fac.borrower(0).used == 600_000
        assert self.fac.total_debt_of_loan(self.loan.index) == 600_000
        assert len(self.fac.events) == events

        self.fac.repay("alice", result.debt_index, 100_000)
        assert self.fac.debt(result.debt_index).principal == 500_000


class TestAuditCloneReentry:
    """Tests for the audit log, cloning and the re-entry guard."""

    def test_event_sequence(self, drawn):
        fac, _ = drawn
        assert [e.sequence for e in fac.events] == list(range(len(fac.events)))

    def test_verbose_prints_transitions(self, capsys):
        build_facility(verbose=True)
        out = capsys.readouterr().out
        assert "VAULT_ADDED" in out
        assert "BORROWER_JOINED" in out

    def test_clone_is_independent(self, drawn):
        fac, debt_index = drawn
        what_if = fac.clone()
        what_if.repay("alice", debt_index, 600_000)
        assert what_if.debt(debt_index).status == DebtStatus.REPAID
        assert fac.debt(debt_index).status == DebtStatus.ACTIVE
        assert fac.funding.balance_of("alice", ASSET) == 400_000
        assert len(what_if.events) == len(fac.events) + 1

    def test_reentry_rejected(self):
        funding = ReentrantFunding()
        fac = build_facility(tokens=funding, ceilings={"alice": 1_000_000})
        funding.facility = fac
        loan = fac.request("alice", 500_000)
        fac.approve(OPERATOR, loan.index, 500_000, 1)
        result = fac.borrow("alice", loan.index, 300_000, MATURITY)
        assert result.is_all_satisfied
        assert len(funding.reentry_errors) == 1
        assert "in flight" in str(funding.reentry_errors[0])
        # the guard is released once the outer call returns
        fac.advance_time(T0 + timedelta(seconds=5))
        assert fac.pile() == 5
