"""
Core types for the pooled credit-facility ledger.

This module provides the foundational data structures and protocols:
1. Protocols: collaborators the facility consumes (eligibility, authorization, funding)
2. Immutable records: TrustedBorrower, TrustedVault, Loan, Debt, Tranche, FacilityEvent
3. Results: BorrowResult, RepayResult
4. Configuration: FacilityConfig
5. Exceptions: LoanBookError and the categorized rejection taxonomy

Records are frozen. Ledgers replace a record with dataclasses.replace() when
its state changes, so a record handed to a caller never changes underneath it.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Protocol, Tuple, runtime_checkable


# ============================================================================
# CONSTANTS
# ============================================================================

# Percentage scale for vault share bounds: parts-per-million, 1_000_000 = 100%.
PERCENT_ONE = 1_000_000

# Default capability required for operator-only entry points.
OPERATOR_ROLE = "OPERATOR"

# Annualized rate tiers in basis points. Index 0 is the neutral tier (no
# interest) and is never assignable; index 1 is 1%, index 17 is the 30%
# penalty tier.
DEFAULT_RATE_TIERS_BPS = (
    0, 100, 200, 300, 400, 500, 600, 700, 800, 900,
    1000, 1200, 1400, 1600, 1800, 2000, 2500, 3000, 4000, 5000,
)

# Event types (strings, one per state transition)
EVENT_BORROWER_JOINED = "BORROWER_JOINED"
EVENT_CEILING_AGREED = "CEILING_AGREED"
EVENT_BORROWER_LIMIT_UPDATED = "BORROWER_LIMIT_UPDATED"
EVENT_LOAN_REQUESTED = "LOAN_REQUESTED"
EVENT_LOAN_APPROVED = "LOAN_APPROVED"
EVENT_LOAN_REJECTED = "LOAN_REJECTED"
EVENT_LOAN_LIMIT_UPDATED = "LOAN_LIMIT_UPDATED"
EVENT_LOAN_RATE_UPDATED = "LOAN_RATE_UPDATED"
EVENT_DRAW_EXECUTED = "DRAW_EXECUTED"
EVENT_REPAID = "REPAID"
EVENT_DEFAULTED = "DEFAULTED"
EVENT_RECOVERED = "RECOVERED"
EVENT_CLOSED = "CLOSED"
EVENT_VAULT_ADDED = "VAULT_ADDED"
EVENT_VAULT_UPDATED = "VAULT_UPDATED"
EVENT_ACCUMULATOR_REFRESHED = "ACCUMULATOR_REFRESHED"


# ============================================================================
# ENUMS
# ============================================================================

class LoanStatus(str, Enum):
    """Lifecycle of a credit line."""
    PENDING = "pending"       # Requested, capacity reserved, awaiting approval
    APPROVED = "approved"     # Ceiling and rate tier assigned, drawable
    REJECTED = "rejected"     # Approved at zero, reservation released


class DebtStatus(str, Enum):
    """Lifecycle of a single draw."""
    ACTIVE = "active"
    REPAID = "repaid"
    DEFAULTED = "defaulted"
    CLOSED = "closed"


# ============================================================================
# EXCEPTIONS
# ============================================================================

class LoanBookError(Exception):
    """Base exception for every facility rejection."""
    pass


class IdentityError(LoanBookError):
    """Zero or unset identity for a borrower, vault, or collaborator."""
    pass


class NotFoundError(LoanBookError):
    """Index does not address an existing record."""
    pass


class StateError(LoanBookError):
    """Record is in the wrong lifecycle state for the requested transition."""
    pass


class PolicyError(LoanBookError):
    """Request violates a limit, bound, or rate policy."""
    pass


class AuthorizationError(LoanBookError):
    """Caller lacks a required role or fails eligibility checks."""
    pass


class FixedPointOverflow(LoanBookError, ArithmeticError):
    """Raised when a fixed-point intermediate leaves the unsigned 256-bit range."""
    pass


class ReentrantCall(LoanBookError):
    """Raised when an entry point is invoked while another is in flight."""
    pass


class ZeroIdentity(IdentityError):
    """Raised when an identity is empty."""
    pass


class IdentityCollision(IdentityError):
    """Raised when a borrower and a trusted vault would share one identity."""
    pass


class NotTrustedBorrower(AuthorizationError):
    """Raised when the caller has not joined the facility."""
    pass


class NotValidBorrower(AuthorizationError):
    """Raised when a registered borrower is not eligible or is excluded."""
    pass


class NotEligible(AuthorizationError):
    """Raised when an identity fails the eligibility or exclusion check."""
    pass


class MissingRole(AuthorizationError):
    """Raised when the caller lacks the capability an operation requires."""
    pass


class BorrowerAlreadyExists(StateError):
    """Raised when joining twice."""
    pass


class UpdateCeilingLimitDirectly(StateError):
    """Raised when agree() is called on a borrower whose ceiling is already set."""
    pass


class NotPendingLoan(StateError):
    """Raised when approving a loan that is not PENDING."""
    pass


class NotLoanOwner(StateError):
    """Raised when the caller does not own the loan or debt."""
    pass


class NotMaturedDebt(StateError):
    """Raised when defaulting a debt before its maturity has passed."""
    pass


class NotDefaultedDebt(StateError):
    """Raised when recovering or closing a debt that is not DEFAULTED."""
    pass


class NotValidLoan(NotFoundError):
    """Raised when a loan index is unknown or the loan cannot be drawn."""
    pass


class NotValidDebt(NotFoundError):
    """Raised when a debt index is unknown or the debt is not live."""
    pass


class NotValidTranche(NotFoundError):
    """Raised when a tranche index is unknown."""
    pass


class NotValidVault(NotFoundError):
    """Raised when a vault index or identity is unknown."""
    pass


class ZeroCeiling(PolicyError):
    """Raised when agreeing a zero ceiling."""
    pass


class ZeroAmount(PolicyError):
    """Raised when an amount must be positive."""
    pass


class CeilingLimitBelowUsedLimit(PolicyError):
    """Raised when a new ceiling is below the capacity already drawn."""
    pass


class CeilingLimitBelowRemainingLimit(PolicyError):
    """Raised when a new ceiling is below drawn plus reserved-but-undrawn capacity."""
    pass


class LoanCeilingLimitExceedsBorrowerRemainingLimit(PolicyError):
    """Raised when a loan request or increase exceeds the borrower's remaining capacity."""
    pass


class NotValidInterestRate(PolicyError):
    """Raised when a rate tier index is out of range or the neutral tier."""
    pass


class MaturityTimeShouldAfterBlockTimestamp(PolicyError):
    """Raised when a maturity time is not strictly in the future."""
    pass


class BorrowAmountOverLoanRemainingLimit(PolicyError):
    """Raised when a draw exceeds the loan's undrawn ceiling."""
    pass


class NoVaultCapacity(PolicyError):
    """Raised when no trusted vault can fund any part of a draw."""
    pass


class RepayTooLittle(PolicyError):
    """Raised when a partial payment does not clear accrued interest."""
    pass


class InsufficientFunds(PolicyError):
    """Raised when a payer's balance cannot cover a transfer."""
    pass


class DebtResidualTooLarge(PolicyError):
    """Raised when closing a defaulted debt whose residual exceeds the tolerance."""
    pass


class InvalidVaultPercentage(PolicyError):
    """Raised when vault share bounds are not 0 <= min <= max <= 100%."""
    pass


class VaultAssetMismatch(PolicyError):
    """Raised when a vault's underlying asset differs from the loan asset."""
    pass


class VaultAlreadyRegistered(PolicyError):
    """Raised when appending a vault whose identity is already registered."""
    pass


class InvalidRateTierTable(PolicyError):
    """Raised when a rate tier table is empty, has zero entries, or is not strictly increasing."""
    pass


# ============================================================================
# PROTOCOLS
# ============================================================================

@runtime_checkable
class EligibilityService(Protocol):
    """
    Membership collaborator consulted before join, agree, request, borrow,
    repay and limit updates. An identity passes when it is eligible and not
    excluded.
    """

    def is_eligible(self, identity: str) -> bool:
        ...

    def is_excluded(self, identity: str) -> bool:
        ...


@runtime_checkable
class Authorizer(Protocol):
    """Capability check for operator-only entry points."""

    def has_role(self, role: str, identity: str) -> bool:
        ...


@runtime_checkable
class FundingSource(Protocol):
    """
    Moves the loan asset between borrowers and vaults.

    The facility reads balances before mutating its own state and transfers
    only after its state is updated, so transfer() is expected to succeed.
    """

    def asset_of(self, vault: str) -> Optional[str]:
        """Underlying asset a vault holds, or None if unknown."""
        ...

    def balance_of(self, holder: str, asset: str) -> int:
        ...

    def transfer(self, asset: str, source: str, dest: str, amount: int, memo: str) -> Any:
        ...


# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass(frozen=True, slots=True)
class FacilityConfig:
    """
    Immutable facility settings - fixed at construction.

    Attributes:
        loan_asset: Asset symbol every trusted vault must hold
        repay_dust_threshold: Interest a partial payment may leave uncovered
        close_tolerance: Largest residual close() accepts without write_off
        reconciliation_tolerance: Bound on |borrower total - vault total|
        operator_role: Capability required by operator-only operations
    """
    loan_asset: str
    repay_dust_threshold: int = 100
    close_tolerance: int = 8
    reconciliation_tolerance: int = 256
    operator_role: str = OPERATOR_ROLE

    def __post_init__(self):
        if not self.loan_asset or not self.loan_asset.strip():
            raise ValueError("loan_asset cannot be empty")
        if self.repay_dust_threshold < 0:
            raise ValueError(f"repay_dust_threshold cannot be negative, got {self.repay_dust_threshold}")
        if self.close_tolerance < 0:
            raise ValueError(f"close_tolerance cannot be negative, got {self.close_tolerance}")
        if self.reconciliation_tolerance < 0:
            raise ValueError(
                f"reconciliation_tolerance cannot be negative, got {self.reconciliation_tolerance}"
            )
        if not self.operator_role:
            raise ValueError("operator_role cannot be empty")


# ============================================================================
# RECORDS
# ============================================================================

@dataclass(frozen=True, slots=True)
class TrustedBorrower:
    """
    A borrower admitted by join().

    Attributes:
        index: Dense sequence number assigned at join
        borrower: Identity
        ceiling: Maximum aggregate exposure (0 until agree())
        committed: Capacity reserved by loans but not yet drawn
        used: Outstanding principal of live debts
    """
    index: int
    borrower: str
    ceiling: int = 0
    committed: int = 0
    used: int = 0

    @property
    def remaining(self) -> int:
        """Unreserved capacity: ceiling - committed - used."""
        return self.ceiling - self.committed - self.used


@dataclass(frozen=True, slots=True)
class TrustedVault:
    """
    A capital provider and its advisory share bounds of total system debt.

    Percentages are parts-per-million (PERCENT_ONE = 100%).
    """
    vault: str
    minimum_percentage: int = 0
    maximum_percentage: int = PERCENT_ONE


@dataclass(frozen=True, slots=True)
class Loan:
    """
    A credit line owned by one borrower.

    Attributes:
        index: Dense sequence number assigned at request
        borrower_index: Owning borrower
        requested: Amount reserved at request
        ceiling: Approved amount (equals requested while PENDING)
        remaining: Undrawn part of the ceiling
        rate_tier: Tier applied to future draws (0 while PENDING)
        status: PENDING, APPROVED or REJECTED
    """
    index: int
    borrower_index: int
    requested: int
    ceiling: int
    remaining: int
    rate_tier: int = 0
    status: LoanStatus = LoanStatus.PENDING

    @property
    def drawn(self) -> int:
        return self.ceiling - self.remaining


@dataclass(frozen=True, slots=True)
class Debt:
    """
    One draw against a loan.

    Owed amount at any time is normalized_principal x AccumulatedRate[rate_tier]
    rounded up; principal is the raw outstanding principal.
    """
    index: int
    loan_index: int
    borrower_index: int
    rate_tier: int
    start_time: datetime
    maturity_time: datetime
    principal: int
    normalized_principal: int
    status: DebtStatus = DebtStatus.ACTIVE


@dataclass(frozen=True, slots=True)
class Tranche:
    """The normalized portion of one debt funded by one vault."""
    index: int
    vault_index: int
    debt_index: int
    loan_index: int
    borrower_index: int
    normalized_principal: int


@dataclass(frozen=True, slots=True)
class FacilityEvent:
    """
    Immutable audit record of one state transition.

    Attributes:
        sequence: Monotonic sequence within the facility
        timestamp: Logical time the transition was applied
        event_type: One of the EVENT_* constants
        payload: Transition details (indices, amounts, flags)
    """
    sequence: int
    timestamp: datetime
    event_type: str
    payload: Dict[str, Any] = field(default_factory=dict)

    def __repr__(self) -> str:
        details = ", ".join(f"{k}={v}" for k, v in self.payload.items())
        return f"Event(#{self.sequence} {self.event_type} @ {self.timestamp.isoformat()}: {details})"


@dataclass(frozen=True, slots=True)
class BorrowResult:
    """
    Outcome of borrow().

    amount may be below requested when vault capacity ran short; that is
    reported through is_all_satisfied, not raised.
    """
    debt_index: int
    requested: int
    amount: int
    is_all_satisfied: bool
    allocations: Tuple[Tuple[int, int], ...] = ()


@dataclass(frozen=True, slots=True)
class RepayResult:
    """Outcome of repay() and recovery()."""
    debt_index: int
    paid: int
    interest_paid: int
    principal_paid: int
    residual: int
    status: DebtStatus
