"""
loanbook - Pooled Credit-Facility Ledger

Trusted borrowers draw funds sourced from a basket of trusted vaults. Interest
compounds per rate tier through one shared accumulator, and every debt is
split into per-vault tranches that stay reconciled with the borrower side.

Usage:
    from datetime import datetime, timedelta
    from loanbook import (
        CreditFacility, FacilityConfig, TokenLedger, MembershipLists,
        RoleRegistry, TrustedVault, OPERATOR_ROLE,
    )

    tokens = TokenLedger()
    tokens.register_asset("USDC")
    tokens.register_vault("vault_a", "USDC")
    tokens.issue("USDC", "vault_a", 1_000_000)

    roles = RoleRegistry()
    roles.grant(OPERATOR_ROLE, "operator")
    facility = CreditFacility(
        FacilityConfig("USDC"), tokens, MembershipLists(allowed=["alice"]), roles,
        initial_time=datetime(2024, 1, 1),
    )
    facility.update_trusted_vaults("operator", TrustedVault("vault_a"), 0)

    facility.join("alice")
    facility.agree("operator", "alice", 1_000_000)
    loan = facility.request("alice", 500_000)
    facility.approve("operator", loan.index, 500_000, 1)
    result = facility.borrow("alice", loan.index, 300_000, datetime(2024, 1, 31))

    facility.advance_time(datetime(2024, 1, 26))
    facility.repay("alice", result.debt_index, 600_000)
"""

# Core types
from .core import (
    EligibilityService,
    Authorizer,
    FundingSource,
    FacilityConfig,
    TrustedBorrower,
    TrustedVault,
    Loan,
    LoanStatus,
    Debt,
    DebtStatus,
    Tranche,
    FacilityEvent,
    BorrowResult,
    RepayResult,
    PERCENT_ONE,
    OPERATOR_ROLE,
    DEFAULT_RATE_TIERS_BPS,
    EVENT_BORROWER_JOINED,
    EVENT_CEILING_AGREED,
    EVENT_BORROWER_LIMIT_UPDATED,
    EVENT_LOAN_REQUESTED,
    EVENT_LOAN_APPROVED,
    EVENT_LOAN_REJECTED,
    EVENT_LOAN_LIMIT_UPDATED,
    EVENT_LOAN_RATE_UPDATED,
    EVENT_DRAW_EXECUTED,
    EVENT_REPAID,
    EVENT_DEFAULTED,
    EVENT_RECOVERED,
    EVENT_CLOSED,
    EVENT_VAULT_ADDED,
    EVENT_VAULT_UPDATED,
    EVENT_ACCUMULATOR_REFRESHED,
)

# Exceptions
from .core import (
    LoanBookError,
    IdentityError,
    NotFoundError,
    StateError,
    PolicyError,
    AuthorizationError,
    FixedPointOverflow,
    ReentrantCall,
    ZeroIdentity,
    IdentityCollision,
    NotTrustedBorrower,
    NotValidBorrower,
    NotEligible,
    MissingRole,
    BorrowerAlreadyExists,
    UpdateCeilingLimitDirectly,
    NotPendingLoan,
    NotLoanOwner,
    NotMaturedDebt,
    NotDefaultedDebt,
    NotValidLoan,
    NotValidDebt,
    NotValidTranche,
    NotValidVault,
    ZeroCeiling,
    ZeroAmount,
    CeilingLimitBelowUsedLimit,
    CeilingLimitBelowRemainingLimit,
    LoanCeilingLimitExceedsBorrowerRemainingLimit,
    NotValidInterestRate,
    MaturityTimeShouldAfterBlockTimestamp,
    BorrowAmountOverLoanRemainingLimit,
    NoVaultCapacity,
    RepayTooLittle,
    InsufficientFunds,
    DebtResidualTooLarge,
    InvalidVaultPercentage,
    VaultAssetMismatch,
    VaultAlreadyRegistered,
    InvalidRateTierTable,
)

# Fixed-point math
from .fixed_point import (
    ONE,
    MAX_UINT256,
    SECONDS_PER_YEAR,
    BASIS_POINTS,
    checked,
    mul_div_down,
    mul_div_up,
    rpow,
    annual_rate_to_per_second,
)

# Rates
from .rates import RateTierTable, RateAccumulator, normalize, denormalize

# Registries and ledgers
from .borrowers import BorrowerRegistry
from .vaults import VaultRegistry, VaultCandidate, AllocationPlan, plan_allocation, current_share
from .loans import LoanLedger, DebtLedger
from .tranches import TrancheLedger, split_proportionally

# Controller
from .facility import CreditFacility

# Default collaborators
from .token_ledger import TokenLedger, Transfer, SYSTEM_WALLET
from .access import MembershipLists, RoleRegistry


__all__ = [
    # Protocols
    'EligibilityService', 'Authorizer', 'FundingSource',
    # Records
    'FacilityConfig', 'TrustedBorrower', 'TrustedVault', 'Loan', 'LoanStatus',
    'Debt', 'DebtStatus', 'Tranche', 'FacilityEvent', 'BorrowResult', 'RepayResult',
    # Constants
    'PERCENT_ONE', 'OPERATOR_ROLE', 'DEFAULT_RATE_TIERS_BPS',
    'ONE', 'MAX_UINT256', 'SECONDS_PER_YEAR', 'BASIS_POINTS', 'SYSTEM_WALLET',
    'EVENT_BORROWER_JOINED', 'EVENT_CEILING_AGREED', 'EVENT_BORROWER_LIMIT_UPDATED',
    'EVENT_LOAN_REQUESTED', 'EVENT_LOAN_APPROVED', 'EVENT_LOAN_REJECTED',
    'EVENT_LOAN_LIMIT_UPDATED', 'EVENT_LOAN_RATE_UPDATED', 'EVENT_DRAW_EXECUTED',
    'EVENT_REPAID', 'EVENT_DEFAULTED', 'EVENT_RECOVERED', 'EVENT_CLOSED',
    'EVENT_VAULT_ADDED', 'EVENT_VAULT_UPDATED', 'EVENT_ACCUMULATOR_REFRESHED',
    # Exceptions
    'LoanBookError', 'IdentityError', 'NotFoundError', 'StateError', 'PolicyError',
    'AuthorizationError', 'FixedPointOverflow', 'ReentrantCall',
    'ZeroIdentity', 'IdentityCollision', 'NotTrustedBorrower', 'NotValidBorrower',
    'NotEligible', 'MissingRole',
    'BorrowerAlreadyExists', 'UpdateCeilingLimitDirectly', 'NotPendingLoan', 'NotLoanOwner',
    'NotMaturedDebt', 'NotDefaultedDebt', 'NotValidLoan', 'NotValidDebt', 'NotValidTranche',
    'NotValidVault', 'ZeroCeiling', 'ZeroAmount', 'CeilingLimitBelowUsedLimit',
    'CeilingLimitBelowRemainingLimit', 'LoanCeilingLimitExceedsBorrowerRemainingLimit',
    'NotValidInterestRate', 'MaturityTimeShouldAfterBlockTimestamp',
    'BorrowAmountOverLoanRemainingLimit', 'NoVaultCapacity', 'RepayTooLittle',
    'InsufficientFunds', 'DebtResidualTooLarge', 'InvalidVaultPercentage',
    'VaultAssetMismatch', 'VaultAlreadyRegistered', 'InvalidRateTierTable',
    # Math
    'checked', 'mul_div_down', 'mul_div_up', 'rpow', 'annual_rate_to_per_second',
    'normalize', 'denormalize', 'split_proportionally',
    # Components
    'RateTierTable', 'RateAccumulator', 'BorrowerRegistry', 'VaultRegistry',
    'VaultCandidate', 'AllocationPlan', 'plan_allocation', 'current_share',
    'LoanLedger', 'DebtLedger', 'TrancheLedger', 'CreditFacility',
    # Collaborators
    'TokenLedger', 'Transfer', 'MembershipLists', 'RoleRegistry',
]
