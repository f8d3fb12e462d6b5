"""
conftest.py - Shared pytest fixtures for loanbook tests

Provides common fixtures used across unit and functional tests:
- Default collaborators (token ledger, membership lists, roles)
- Facilities at successive lifecycle stages (empty, agreed, approved, drawn)
"""

import pytest
from datetime import timedelta

from loanbook import (
    CreditFacility, FacilityConfig, TokenLedger, MembershipLists, RoleRegistry,
    TrustedVault, OPERATOR_ROLE,
)

from tests.fake_collaborators import T0, ASSET, OPERATOR


# =============================================================================
# COLLABORATORS
# =============================================================================

@pytest.fixture
def tokens():
    """Token ledger with the loan asset and one funded vault."""
    ledger = TokenLedger()
    ledger.register_asset(ASSET)
    ledger.register_vault("vault_a", ASSET)
    ledger.issue(ASSET, "vault_a", 1_000_000)
    return ledger


@pytest.fixture
def members():
    return MembershipLists(allowed=["alice", "bob"])


@pytest.fixture
def roles():
    registry = RoleRegistry()
    registry.grant(OPERATOR_ROLE, OPERATOR)
    return registry


# =============================================================================
# FACILITIES
# =============================================================================

@pytest.fixture
def facility(tokens, members, roles):
    """Facility with vault_a trusted and no borrowers."""
    fac = CreditFacility(FacilityConfig(ASSET), tokens, members, roles, initial_time=T0)
    fac.update_trusted_vaults(OPERATOR, TrustedVault("vault_a"), 0)
    return fac


@pytest.fixture
def agreed(facility):
    """alice joined with a 1_000_000 ceiling and 100_000 in own funds for interest."""
    facility.join("alice")
    facility.agree(OPERATOR, "alice", 1_000_000)
    facility.funding.issue(ASSET, "alice", 100_000)
    return facility


@pytest.fixture
def approved(agreed):
    """alice holds an approved 500_000 loan at tier 1 (1% annualized). Returns (facility, loan_index)."""
    loan = agreed.request("alice", 500_000)
    agreed.approve(OPERATOR, loan.index, 500_000, 1)
    return agreed, loan.index


@pytest.fixture
def drawn(approved):
    """alice drew 300_000 maturing in 30 days. Returns (facility, debt_index)."""
    fac, loan_index = approved
    result = fac.borrow("alice", loan_index, 300_000, T0 + timedelta(days=30))
    return fac, result.debt_index

