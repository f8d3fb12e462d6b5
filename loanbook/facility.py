"""
facility.py - Pooled credit facility: the lifecycle controller

CreditFacility is the only class that mutates the registries and ledgers.
Every public entry point:

    1. rejects re-entry while another entry point is in flight
    2. refreshes the rate accumulator to the current logical time (pile)
    3. runs every check (authorization, eligibility, state, policy, funds)
    4. mutates the ledgers
    5. moves funds through the funding source
    6. appends an audit event

A rejected call raises a LoanBookError subclass before step 4, so no
partial state is ever visible. Steps 4 and 5 run as one unit: if the
funding source raises, completed transfers are reversed and every record
is restored before the error propagates. The accumulator refresh in step 2 leaves every
owed amount unchanged, since reads project the accumulator to the current
time anyway.

Example:
    tokens = TokenLedger()
    tokens.register_asset("USDC")
    tokens.register_vault("vault_a", "USDC")
    tokens.issue("USDC", "vault_a", 1_000_000)

    members = MembershipLists(allowed=["alice"])
    roles = RoleRegistry()
    roles.grant(OPERATOR_ROLE, "operator")

    facility = CreditFacility(FacilityConfig("USDC"), tokens, members, roles)
    facility.update_trusted_vaults("operator", TrustedVault("vault_a"), 0)
    facility.join("alice")
    facility.agree("operator", "alice", 1_000_000)
    loan = facility.request("alice", 500_000)
    facility.approve("operator", loan.index, 500_000, 1)
    result = facility.borrow("alice", loan.index, 300_000, maturity)
"""

from __future__ import annotations
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .core import (
    # Types
    TrustedBorrower, TrustedVault, Loan, Debt, Tranche, FacilityEvent,
    BorrowResult, RepayResult, FacilityConfig, DebtStatus, LoanStatus,
    EligibilityService, Authorizer, FundingSource,
    # Events
    EVENT_BORROWER_JOINED, EVENT_CEILING_AGREED, EVENT_BORROWER_LIMIT_UPDATED,
    EVENT_LOAN_REQUESTED, EVENT_LOAN_APPROVED, EVENT_LOAN_REJECTED,
    EVENT_LOAN_LIMIT_UPDATED, EVENT_LOAN_RATE_UPDATED, EVENT_DRAW_EXECUTED,
    EVENT_REPAID, EVENT_DEFAULTED, EVENT_RECOVERED, EVENT_CLOSED,
    EVENT_VAULT_ADDED, EVENT_VAULT_UPDATED, EVENT_ACCUMULATOR_REFRESHED,
    # Exceptions
    ZeroIdentity, IdentityCollision, NotTrustedBorrower, NotValidBorrower, NotEligible, MissingRole,
    NotLoanOwner, NotMaturedDebt, NotDefaultedDebt, NotValidDebt,
    ZeroAmount, ZeroCeiling, MaturityTimeShouldAfterBlockTimestamp, NoVaultCapacity,
    RepayTooLittle, InsufficientFunds, DebtResidualTooLarge, NotValidInterestRate,
    ReentrantCall,
)
from .rates import RateTierTable, RateAccumulator, normalize, denormalize
from .borrowers import BorrowerRegistry
from .vaults import VaultRegistry, VaultCandidate, plan_allocation
from .loans import LoanLedger, DebtLedger
from .tranches import TrancheLedger, split_proportionally


class CreditFacility:
    """
    Borrowers draw from a basket of trusted vaults; interest compounds per
    rate tier through one shared accumulator.

    Collaborators are injected: an EligibilityService for allow/deny checks,
    an Authorizer for operator-only entry points and a FundingSource that
    moves the loan asset.
    """

    def __init__(
        self,
        config: FacilityConfig,
        funding: FundingSource,
        eligibility: EligibilityService,
        authorizer: Authorizer,
        rate_table: Optional[RateTierTable] = None,
        initial_time: Optional[datetime] = None,
        verbose: bool = False,
    ):
        """
        Create a facility.

        Args:
            config: Loan asset and tolerances
            funding: Moves the loan asset between borrowers and vaults
            eligibility: Allow/deny membership checks
            authorizer: Capability checks for operator-only operations
            rate_table: Per-second growth factors (default: DEFAULT_RATE_TIERS_BPS)
            initial_time: Starting logical time (default: 1970-01-01)
            verbose: Print one line per applied state transition

        Raises:
            ZeroIdentity: If a collaborator is missing
        """
        for name, collaborator in (("funding", funding), ("eligibility", eligibility), ("authorizer", authorizer)):
            if collaborator is None:
                raise ZeroIdentity(f"{name} collaborator is not set")
        self.config = config
        self.funding = funding
        self.eligibility = eligibility
        self.authorizer = authorizer
        self.rate_table = rate_table or RateTierTable.from_annual_bps()
        self._current_time: datetime = initial_time or datetime(1970, 1, 1)
        self.verbose = verbose

        self.accumulator = RateAccumulator(self.rate_table, self._current_time)
        self.borrowers = BorrowerRegistry()
        self.vaults = VaultRegistry()
        self.loans = LoanLedger()
        self.debts = DebtLedger()
        self.tranches = TrancheLedger()
        self.events: List[FacilityEvent] = []
        self._in_flight: Optional[str] = None

    # ========================================================================
    # TIME AND ACCUMULATOR
    # ========================================================================

    @property
    def current_time(self) -> datetime:
        """Current logical time of the facility."""
        return self._current_time

    def advance_time(self, new_time: datetime) -> None:
        """
        Advance the logical clock. Time can only move forward.

        Raises:
            ValueError: If new_time is before the current time
        """
        if new_time < self._current_time:
            raise ValueError(
                f"Cannot move time backwards: {new_time} < {self._current_time}"
            )
        self._current_time = new_time

    def pile(self) -> int:
        """
        Refresh every tier's accumulated rate to the current time.

        Permissionless. Returns the whole seconds applied (0 when already current).
        """
        with self._entry("pile"):
            return self._pile()

    def _pile(self) -> int:
        elapsed = self.accumulator.pile(self._current_time)
        if elapsed:
            self._emit(
                EVENT_ACCUMULATOR_REFRESHED,
                elapsed_seconds=elapsed,
                last_updated=self.accumulator.last_updated,
            )
        return elapsed

    def _index(self, tier: int) -> int:
        return self.accumulator.projected(tier, self._current_time)

    # ========================================================================
    # GUARDS
    # ========================================================================

    @contextmanager
    def _entry(self, operation: str):
        if self._in_flight is not None:
            raise ReentrantCall(f"{operation} called while {self._in_flight} is in flight")
        self._in_flight = operation
        try:
            yield
        finally:
            self._in_flight = None

    @contextmanager
    def _atomic(self):
        """Restore every record if the body raises part-way through."""
        saved = (self.borrowers.clone(), self.loans.clone(), self.debts.clone(), self.tranches.clone())
        events = len(self.events)
        try:
            yield
        except Exception:
            self.borrowers, self.loans, self.debts, self.tranches = saved
            del self.events[events:]
            raise

    def _transfer_all(self, legs: Sequence[Tuple[str, str, int, str]]) -> None:
        """Run (source, dest, amount, memo) transfers; reverse the completed ones if any fails."""
        asset = self.config.loan_asset
        done = []
        try:
            for source, dest, amount, memo in legs:
                self.funding.transfer(asset, source, dest, amount, memo)
                done.append((source, dest, amount, memo))
        except Exception:
            for source, dest, amount, memo in reversed(done):
                self.funding.transfer(asset, dest, source, amount, f"reverse {memo}")
            raise

    def _require_operator(self, caller: str) -> None:
        role = self.config.operator_role
        if not self.authorizer.has_role(role, caller):
            raise MissingRole(f"{caller!r} lacks required role {role!r}")

    def _passes_membership(self, identity: str) -> bool:
        return self.eligibility.is_eligible(identity) and not self.eligibility.is_excluded(identity)

    def _trusted(self, identity: str) -> TrustedBorrower:
        """Registered and currently eligible borrower."""
        if not identity or not identity.strip():
            raise ZeroIdentity("borrower identity cannot be empty")
        borrower = self.borrowers.find(identity)
        if borrower is None:
            raise NotTrustedBorrower(f"{identity!r} is not a trusted borrower")
        if not self._passes_membership(identity):
            raise NotValidBorrower(f"{identity!r} is not eligible or is excluded")
        return borrower

    def _owned_debt(self, borrower: str, debt_index: int) -> Debt:
        debt = self.debts.get(debt_index)
        owner = self.borrowers.get(debt.borrower_index)
        if owner.borrower != borrower:
            raise NotLoanOwner(f"debt {debt_index} belongs to {owner.borrower!r}, not {borrower!r}")
        return debt

    def _emit(self, event_type: str, **payload: Any) -> FacilityEvent:
        event = FacilityEvent(
            sequence=len(self.events),
            timestamp=self._current_time,
            event_type=event_type,
            payload=payload,
        )
        self.events.append(event)
        if self.verbose:
            print(f"✓ {event!r}")
        return event

    # ========================================================================
    # BORROWERS
    # ========================================================================

    def join(self, caller: str) -> TrustedBorrower:
        """Register the caller as a trusted borrower."""
        with self._entry("join"):
            self._pile()
            if not caller or not caller.strip():
                raise ZeroIdentity("borrower identity cannot be empty")
            if not self._passes_membership(caller):
                raise NotEligible(f"{caller!r} is not eligible or is excluded")
            if self.vaults.find(caller) is not None:
                raise IdentityCollision(f"{caller!r} is already a trusted vault")
            borrower = self.borrowers.join(caller)
            self._emit(EVENT_BORROWER_JOINED, borrower=caller, borrower_index=borrower.index)
            return borrower

    def agree(self, caller: str, borrower: str, ceiling: int) -> TrustedBorrower:
        """Set a borrower's ceiling. Operator-only; allowed once per borrower."""
        with self._entry("agree"):
            self._pile()
            self._require_operator(caller)
            self._trusted(borrower)
            record = self.borrowers.agree(borrower, ceiling)
            self._emit(EVENT_CEILING_AGREED, borrower=borrower, ceiling=ceiling)
            return record

    def update_borrower_limit(self, caller: str, borrower: str, new_ceiling: int) -> TrustedBorrower:
        """
        Change an agreed ceiling. Operator-only.

        Raises:
            CeilingLimitBelowUsedLimit: if new_ceiling < drawn principal
            CeilingLimitBelowRemainingLimit: if new_ceiling < drawn + reserved
        """
        with self._entry("update_borrower_limit"):
            self._pile()
            self._require_operator(caller)
            old = self._trusted(borrower)
            record = self.borrowers.update_limit(borrower, new_ceiling)
            self._emit(
                EVENT_BORROWER_LIMIT_UPDATED,
                borrower=borrower, old_ceiling=old.ceiling, new_ceiling=new_ceiling,
            )
            return record

    # ========================================================================
    # LOANS
    # ========================================================================

    def request(self, caller: str, amount: int) -> Loan:
        """Open a PENDING loan and reserve amount against the caller's ceiling."""
        with self._entry("request"):
            self._pile()
            borrower = self._trusted(caller)
            if amount <= 0:
                raise ZeroAmount(f"loan amount must be positive, got {amount}")
            self.borrowers.check_reserve(borrower.index, amount)

            loan = self.loans.request(borrower.index, amount)
            self.borrowers.reserve(borrower.index, amount)
            self._emit(EVENT_LOAN_REQUESTED, borrower=caller, loan_index=loan.index, amount=amount)
            return loan

    def approve(self, caller: str, loan_index: int, approved_ceiling: int, rate_tier: int) -> Loan:
        """
        Approve a PENDING loan. Operator-only.

        The ceiling is clamped to the requested amount and the excess
        reservation is released. Approving at zero rejects the loan and
        releases the whole reservation.
        """
        with self._entry("approve"):
            self._pile()
            self._require_operator(caller)
            self.loans.check_pending(loan_index)
            if approved_ceiling < 0:
                raise ZeroCeiling(f"approved ceiling cannot be negative, got {approved_ceiling}")
            if approved_ceiling > 0:
                self.rate_table.validate_assignable(rate_tier)

            loan = self.loans.approve(loan_index, approved_ceiling, rate_tier)
            released = loan.requested - loan.ceiling
            if released:
                self.borrowers.release(loan.borrower_index, released)
            if loan.status == LoanStatus.REJECTED:
                self._emit(EVENT_LOAN_REJECTED, loan_index=loan_index, released=released)
            else:
                self._emit(
                    EVENT_LOAN_APPROVED,
                    loan_index=loan_index, ceiling=loan.ceiling, rate_tier=rate_tier, released=released,
                )
            return loan

    def update_loan_limit(self, caller: str, loan_index: int, new_ceiling: int) -> Loan:
        """
        Change an approved loan's ceiling. Operator-only.

        Raises:
            CeilingLimitBelowUsedLimit: if new_ceiling < amount already drawn
            LoanCeilingLimitExceedsBorrowerRemainingLimit: if the increase
                exceeds the borrower's remaining capacity
        """
        with self._entry("update_loan_limit"):
            self._pile()
            self._require_operator(caller)
            loan = self.loans.check_limit(loan_index, new_ceiling)
            owner = self.borrowers.get(loan.borrower_index)
            self._trusted(owner.borrower)
            delta = new_ceiling - loan.ceiling
            if delta > 0:
                self.borrowers.check_reserve(owner.index, delta)

            updated = self.loans.update_limit(loan_index, new_ceiling)
            if delta > 0:
                self.borrowers.reserve(owner.index, delta)
            elif delta < 0:
                self.borrowers.release(owner.index, -delta)
            self._emit(
                EVENT_LOAN_LIMIT_UPDATED,
                loan_index=loan_index, old_ceiling=loan.ceiling, new_ceiling=new_ceiling,
            )
            return updated

    def update_loan_interest_rate(self, caller: str, loan_index: int, rate_tier: int) -> Loan:
        """Change the tier applied to future draws. Existing debts keep their tier."""
        with self._entry("update_loan_interest_rate"):
            self._pile()
            self._require_operator(caller)
            loan = self.loans.check_approved(loan_index)
            self._trusted(self.borrowers.get(loan.borrower_index).borrower)
            self.rate_table.validate_assignable(rate_tier)

            updated = self.loans.update_rate(loan_index, rate_tier)
            self._emit(
                EVENT_LOAN_RATE_UPDATED,
                loan_index=loan_index, old_rate_tier=loan.rate_tier, new_rate_tier=rate_tier,
            )
            return updated

    # ========================================================================
    # DRAWS
    # ========================================================================

    def _vault_candidates(self) -> List[VaultCandidate]:
        asset = self.config.loan_asset
        return [
            VaultCandidate(
                index=i,
                vault=vault.vault,
                minimum_percentage=vault.minimum_percentage,
                maximum_percentage=vault.maximum_percentage,
                outstanding=self._vault_debt(i),
                capacity=self.funding.balance_of(vault.vault, asset),
            )
            for i, vault in enumerate(self.vaults)
        ]

    def borrow(self, caller: str, loan_index: int, amount: int, maturity_time: datetime) -> BorrowResult:
        """
        Draw against an approved loan.

        The draw is split across vaults by plan_allocation(). When vaults
        cannot fund all of it, the sourced part is borrowed and the result
        reports is_all_satisfied=False; the rest stays drawable.

        Raises:
            NotValidLoan: if the loan is not APPROVED
            NotLoanOwner: if the caller does not own the loan
            MaturityTimeShouldAfterBlockTimestamp: if maturity is not in the future
            BorrowAmountOverLoanRemainingLimit: if amount exceeds the undrawn ceiling
            NoVaultCapacity: if no vault can fund any part of the draw
        """
        with self._entry("borrow"):
            self._pile()
            loan = self.loans.check_approved(loan_index)
            owner = self.borrowers.get(loan.borrower_index)
            if owner.borrower != caller:
                raise NotLoanOwner(f"loan {loan_index} belongs to {owner.borrower!r}, not {caller!r}")
            self._trusted(caller)
            if amount <= 0:
                raise ZeroAmount(f"borrow amount must be positive, got {amount}")
            if maturity_time <= self._current_time:
                raise MaturityTimeShouldAfterBlockTimestamp(
                    f"maturity {maturity_time} is not after current time {self._current_time}"
                )
            self.loans.check_draw(loan_index, amount)

            candidates = self._vault_candidates()
            total = sum(c.outstanding for c in candidates)
            plan = plan_allocation(amount, candidates, total)
            if plan.sourced == 0:
                raise NoVaultCapacity(f"no vault can fund any part of {amount}")

            sourced = plan.sourced
            # each vault's part is normalized on its own so no funded vault rounds to zero
            index = self._index(loan.rate_tier)
            parts = [(vault_index, normalize(part, index)) for vault_index, part in plan.allocations]
            normalized = sum(n for _, n in parts)

            with self._atomic():
                debt = self.debts.open(loan, self._current_time, maturity_time, sourced, normalized)
                self.tranches.open(debt, parts)
                self.loans.draw(loan_index, sourced, normalized)
                self.borrowers.draw(owner.index, sourced)
                self._transfer_all([
                    (self.vaults.get(vault_index).vault, caller, part, f"draw debt {debt.index}")
                    for vault_index, part in plan.allocations
                ])

            self._emit(
                EVENT_DRAW_EXECUTED,
                borrower=caller, loan_index=loan_index, debt_index=debt.index,
                requested=amount, amount=sourced, is_all_satisfied=plan.is_all_satisfied,
                allocations=plan.allocations,
            )
            return BorrowResult(
                debt_index=debt.index,
                requested=amount,
                amount=sourced,
                is_all_satisfied=plan.is_all_satisfied,
                allocations=plan.allocations,
            )

    # ========================================================================
    # REPAYMENT, DEFAULT, RECOVERY
    # ========================================================================

    def _check_funds(self, payer: str, amount: int) -> None:
        available = self.funding.balance_of(payer, self.config.loan_asset)
        if available < amount:
            raise InsufficientFunds(
                f"{payer!r} holds {available} {self.config.loan_asset}, payment needs {amount}"
            )

    def _apply_payment(self, debt: Debt, owed: int, paid: int, payer: str, memo: str) -> RepayResult:
        """
        Apply a checked payment: interest first, then principal.

        Tranches shrink to the new normalized total in their current
        proportions; vault receipts follow the same proportions.
        """
        index = self._index(debt.rate_tier)
        interest = max(owed - debt.principal, 0)
        interest_paid = min(paid, interest)
        principal_paid = paid - interest_paid
        residual = owed - paid
        if residual == 0:
            principal_paid = debt.principal
        new_principal = debt.principal - principal_paid
        new_normalized = normalize(residual, index)

        tranche_indices = self.tranches.of_debt(debt.index)
        weights = [self.tranches.get(i).normalized_principal for i in tranche_indices]
        receipts = split_proportionally(paid, weights) if sum(weights) else []

        legs = [
            (payer, self.vaults.get(self.tranches.get(t).vault_index).vault, receipt, memo)
            for t, receipt in zip(tranche_indices, receipts) if receipt > 0
        ]

        status = debt.status
        if residual == 0 and debt.status == DebtStatus.ACTIVE:
            status = DebtStatus.REPAID
        with self._atomic():
            self.debts.rewrite(
                debt.index,
                principal=new_principal,
                normalized_principal=new_normalized,
                status=status,
            )
            self.tranches.rescale(debt.index, debt.rate_tier, debt.rate_tier, new_normalized)
            # loans only carry the normalized principal of ACTIVE debts
            if debt.status == DebtStatus.ACTIVE:
                self.loans.adjust_normalized(
                    debt.loan_index, debt.rate_tier, new_normalized - debt.normalized_principal
                )
            self.borrowers.settle(debt.borrower_index, principal_paid)
            self._transfer_all(legs)

        return RepayResult(
            debt_index=debt.index,
            paid=paid,
            interest_paid=interest_paid,
            principal_paid=principal_paid,
            residual=residual,
            status=status,
        )

    def repay(self, caller: str, debt_index: int, amount: int) -> RepayResult:
        """
        Repay an ACTIVE debt. Payment is capped at the amount owed.

        Raises:
            NotValidDebt: if the debt is not ACTIVE
            NotLoanOwner: if the caller does not own the debt
            RepayTooLittle: if a partial payment leaves more than the dust
                threshold of accrued interest unpaid
            InsufficientFunds: if the caller cannot cover the payment
        """
        with self._entry("repay"):
            self._pile()
            debt = self._owned_debt(caller, debt_index)
            if debt.status != DebtStatus.ACTIVE:
                raise NotValidDebt(f"debt {debt_index} is {debt.status.value}, not active")
            self._trusted(caller)
            if amount <= 0:
                raise ZeroAmount(f"repay amount must be positive, got {amount}")

            owed = denormalize(debt.normalized_principal, self._index(debt.rate_tier))
            interest = max(owed - debt.principal, 0)
            if amount < owed and amount + self.config.repay_dust_threshold < interest:
                raise RepayTooLittle(
                    f"payment {amount} does not cover accrued interest {interest} "
                    f"(dust threshold {self.config.repay_dust_threshold})"
                )
            paid = min(amount, owed)
            self._check_funds(caller, paid)

            result = self._apply_payment(debt, owed, paid, caller, f"repay debt {debt_index}")
            self._emit(
                EVENT_REPAID,
                borrower=caller, debt_index=debt_index, paid=paid,
                interest_paid=result.interest_paid, principal_paid=result.principal_paid,
                residual=result.residual, status=result.status.value,
            )
            return result

    def defaulted(self, caller: str, borrower: str, debt_index: int, new_rate_tier: int) -> Debt:
        """
        Mark a matured ACTIVE debt as DEFAULTED and re-base it onto a new tier.

        The owed amount is carried over: new normalized = ceil(owed / index[new_tier]).
        Operator-only.
        """
        with self._entry("defaulted"):
            self._pile()
            self._require_operator(caller)
            self.borrowers.index_of(borrower)
            self.rate_table.validate_assignable(new_rate_tier)
            debt = self._owned_debt(borrower, debt_index)
            if debt.status != DebtStatus.ACTIVE:
                raise NotValidDebt(f"debt {debt_index} is {debt.status.value}, not active")
            if self._current_time <= debt.maturity_time:
                raise NotMaturedDebt(
                    f"debt {debt_index} matures at {debt.maturity_time}, now {self._current_time}"
                )

            owed = denormalize(debt.normalized_principal, self._index(debt.rate_tier))
            new_index = self._index(new_rate_tier)
            new_normalized = normalize(owed, new_index)

            updated = self.debts.rewrite(
                debt_index,
                rate_tier=new_rate_tier,
                normalized_principal=new_normalized,
                status=DebtStatus.DEFAULTED,
            )
            self.tranches.rescale(debt_index, debt.rate_tier, new_rate_tier, new_normalized)
            self.loans.adjust_normalized(debt.loan_index, debt.rate_tier, -debt.normalized_principal)

            self._emit(
                EVENT_DEFAULTED,
                borrower=borrower, debt_index=debt_index,
                old_rate_tier=debt.rate_tier, new_rate_tier=new_rate_tier,
                owed_before=owed, owed_after=denormalize(new_normalized, new_index),
            )
            return updated

    def recovery(self, caller: str, borrower: str, debt_index: int, amount: int) -> RepayResult:
        """
        Collect funds against a DEFAULTED debt. Operator-only; may be partial.

        The caller pays. A recovery that clears the residual leaves the
        debt DEFAULTED at zero until close().
        """
        with self._entry("recovery"):
            self._pile()
            self._require_operator(caller)
            self.borrowers.index_of(borrower)
            debt = self._owned_debt(borrower, debt_index)
            if debt.status != DebtStatus.DEFAULTED:
                raise NotDefaultedDebt(f"debt {debt_index} is {debt.status.value}, not defaulted")
            if amount <= 0:
                raise ZeroAmount(f"recovery amount must be positive, got {amount}")
            owed = denormalize(debt.normalized_principal, self._index(debt.rate_tier))
            if owed == 0:
                raise ZeroAmount(f"debt {debt_index} has no residual to recover")
            paid = min(amount, owed)
            self._check_funds(caller, paid)

            result = self._apply_payment(debt, owed, paid, caller, f"recovery debt {debt_index}")
            self._emit(
                EVENT_RECOVERED,
                borrower=borrower, debt_index=debt_index, paid=paid, residual=result.residual,
            )
            return result

    def close(self, caller: str, borrower: str, debt_index: int, write_off: bool = False) -> int:
        """
        Finalize a DEFAULTED debt. Operator-only.

        Returns:
            The residual owed at close (written off when non-zero).

        Raises:
            NotDefaultedDebt: if the debt is not DEFAULTED
            DebtResidualTooLarge: if residual > close_tolerance and not write_off
        """
        with self._entry("close"):
            self._pile()
            self._require_operator(caller)
            self.borrowers.index_of(borrower)
            debt = self._owned_debt(borrower, debt_index)
            if debt.status != DebtStatus.DEFAULTED:
                raise NotDefaultedDebt(f"debt {debt_index} is {debt.status.value}, not defaulted")
            residual = denormalize(debt.normalized_principal, self._index(debt.rate_tier))
            if residual > self.config.close_tolerance and not write_off:
                raise DebtResidualTooLarge(
                    f"debt {debt_index} residual {residual} exceeds close tolerance "
                    f"{self.config.close_tolerance}"
                )

            self.debts.rewrite(debt_index, principal=0, normalized_principal=0, status=DebtStatus.CLOSED)
            self.tranches.rescale(debt_index, debt.rate_tier, debt.rate_tier, 0)
            self.borrowers.settle(debt.borrower_index, debt.principal)

            self._emit(
                EVENT_CLOSED,
                borrower=borrower, debt_index=debt_index, residual=residual,
                principal_released=debt.principal, written_off=write_off,
            )
            return residual

    # ========================================================================
    # VAULTS
    # ========================================================================

    def update_trusted_vaults(self, caller: str, vault: TrustedVault, index_hint: int) -> bool:
        """
        Insert or overwrite a trusted vault. Operator-only.

        Returns:
            True if an existing slot was overwritten, False if appended.
        """
        with self._entry("update_trusted_vaults"):
            self._pile()
            self._require_operator(caller)
            vault_asset = self.funding.asset_of(vault.vault) if vault.vault else None
            self.vaults.validate(vault, vault_asset, self.config.loan_asset)
            if self.borrowers.find(vault.vault) is not None:
                raise IdentityCollision(f"{vault.vault!r} is already a trusted borrower")
            self.vaults.resolve_slot(vault, index_hint)

            index, overwritten = self.vaults.upsert(vault, index_hint)
            self._emit(
                EVENT_VAULT_UPDATED if overwritten else EVENT_VAULT_ADDED,
                vault=vault.vault, vault_index=index,
                minimum_percentage=vault.minimum_percentage,
                maximum_percentage=vault.maximum_percentage,
            )
            return overwritten

    # ========================================================================
    # READ ACCESSORS
    # ========================================================================

    def borrower(self, index: int) -> TrustedBorrower:
        return self.borrowers.get(index)

    def loan(self, index: int) -> Loan:
        return self.loans.get(index)

    def debt(self, index: int) -> Debt:
        return self.debts.get(index)

    def tranche(self, index: int) -> Tranche:
        return self.tranches.get(index)

    def vault(self, index: int) -> TrustedVault:
        return self.vaults.get(index)

    def rate_tier(self, index: int) -> int:
        """Per-second growth factor of a tier."""
        if index < 0 or index >= len(self.rate_table):
            raise NotValidInterestRate(f"no rate tier at index {index}")
        return self.rate_table[index]

    def accumulated_rate(self, index: int) -> int:
        """Accumulated index of a tier as of the current time."""
        self.rate_tier(index)
        return self._index(index)

    def tranches_of_debt(self, debt_index: int) -> List[int]:
        self.debts.get(debt_index)
        return self.tranches.of_debt(debt_index)

    def tranches_of_loan(self, loan_index: int) -> List[int]:
        self.loans.get(loan_index)
        return self.tranches.of_loan(loan_index)

    def tranches_of_borrower(self, borrower: str) -> List[int]:
        return self.tranches.of_borrower(self.borrowers.index_of(borrower))

    def tranches_of_vault(self, vault: str) -> List[int]:
        return self.tranches.of_vault(self.vaults.index_of(vault))

    def debts_of_loan(self, loan_index: int) -> List[int]:
        self.loans.get(loan_index)
        return self.debts.of_loan(loan_index)

    def debts_of_borrower(self, borrower: str) -> List[int]:
        return self.debts.of_borrower(self.borrowers.index_of(borrower))

    def loans_of_borrower(self, borrower: str) -> List[int]:
        return self.loans.of_borrower(self.borrowers.index_of(borrower))

    def events_of(self, event_type: str) -> List[FacilityEvent]:
        return [e for e in self.events if e.event_type == event_type]

    # ========================================================================
    # AGGREGATES
    # ========================================================================

    def _denormalize_tiers(self, by_tier: Dict[int, int]) -> int:
        return sum(denormalize(normalized, self._index(tier)) for tier, normalized in by_tier.items())

    def _vault_debt(self, vault_index: int) -> int:
        return self._denormalize_tiers(self.tranches.vault_normalized(vault_index))

    def total_debt_of_borrower(self, borrower: str) -> int:
        """Current debt owed by a borrower, computed per tier."""
        return self._denormalize_tiers(self.debts.borrower_normalized(self.borrowers.index_of(borrower)))

    def total_debt_of_vault(self, vault: str) -> int:
        """Current debt funded by a vault, computed per tier."""
        return self._vault_debt(self.vaults.index_of(vault))

    def total_debt_of_loan(self, loan_index: int) -> int:
        """Current debt owed on a loan's ACTIVE debts, across every tier it has drawn at."""
        return self._denormalize_tiers(self.loans.normalized(loan_index))

    def total_outstanding(self) -> int:
        return self._denormalize_tiers(self.debts.all_normalized())

    def debt_owed(self, debt_index: int) -> int:
        debt = self.debts.get(debt_index)
        return denormalize(debt.normalized_principal, self._index(debt.rate_tier))

    def debt_interest(self, debt_index: int) -> int:
        """Accrued interest: amount owed above outstanding principal."""
        debt = self.debts.get(debt_index)
        return max(self.debt_owed(debt_index) - debt.principal, 0)

    def verify_reconciliation(self, tolerance: Optional[int] = None) -> Dict[str, Any]:
        """
        Check that borrower-side and vault-side debt agree.

        Args:
            tolerance: Largest accepted |borrower_total - vault_total|
                (default: config.reconciliation_tolerance)

        Returns:
            Dict with keys:
            - 'valid': bool - True if totals agree and every debt's tranches sum exactly
            - 'borrower_total': int - sum of total_debt_of_borrower over all borrowers
            - 'vault_total': int - sum of total_debt_of_vault over all vaults
            - 'difference': int - absolute difference of the two totals
            - 'tranche_mismatches': List[Dict] - debts whose tranches do not sum to the debt

        Example:
            result = facility.verify_reconciliation()
            assert result['valid'], result
        """
        if tolerance is None:
            tolerance = self.config.reconciliation_tolerance
        borrower_total = sum(
            self._denormalize_tiers(self.debts.borrower_normalized(b.index)) for b in self.borrowers
        )
        vault_total = sum(self._vault_debt(i) for i in range(len(self.vaults)))
        difference = abs(borrower_total - vault_total)

        mismatches = []
        for debt in self.debts:
            tranche_sum = self.tranches.debt_sum(debt.index)
            if tranche_sum != debt.normalized_principal:
                mismatches.append({
                    'debt_index': debt.index,
                    'debt_normalized': debt.normalized_principal,
                    'tranche_normalized': tranche_sum,
                })

        return {
            'valid': difference <= tolerance and not mismatches,
            'borrower_total': borrower_total,
            'vault_total': vault_total,
            'difference': difference,
            'tranche_mismatches': mismatches,
        }

    # ========================================================================
    # CLONING
    # ========================================================================

    def clone(self) -> CreditFacility:
        """
        Create an independent copy for what-if analysis.

        Collaborators that provide clone() (TokenLedger does) are cloned
        too; others are shared with the original.
        """
        def copy_of(collaborator):
            return collaborator.clone() if hasattr(collaborator, "clone") else collaborator

        cloned = CreditFacility.__new__(CreditFacility)
        cloned.config = self.config
        cloned.funding = copy_of(self.funding)
        cloned.eligibility = copy_of(self.eligibility)
        cloned.authorizer = copy_of(self.authorizer)
        cloned.rate_table = self.rate_table
        cloned._current_time = self._current_time
        cloned.verbose = self.verbose
        cloned.accumulator = self.accumulator.clone()
        cloned.borrowers = self.borrowers.clone()
        cloned.vaults = self.vaults.clone()
        cloned.loans = self.loans.clone()
        cloned.debts = self.debts.clone()
        cloned.tranches = self.tranches.clone()
        cloned.events = list(self.events)
        cloned._in_flight = None
        return cloned
