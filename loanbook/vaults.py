"""
vaults.py - Trusted vault registry and tranche allocator

=== VAULTS ===

A trusted vault is a capital provider holding the facility's loan asset.
Each vault declares a minimum and maximum share of total system debt it is
willing to hold (parts-per-million). The bounds are advisory allocation
targets: they order and weight the allocator, they do not cap a vault on
every draw.

=== ALLOCATION ===

plan_allocation() splits one draw across vaults:

    1. Order vaults by under-allocation: (current share - minimum share)
       ascending, ties broken by registration index.
    2. Pass 1: each vault funds up to its maximum-share headroom, measured
       against total debt after the draw, bounded by its spare balance.
    3. Pass 2: any shortfall is taken from leftover spare balance in the
       same order, ignoring the maximum share.

A draw larger than aggregate spare balance is partially satisfied; the
plan reports this through is_all_satisfied instead of failing.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Sequence, Tuple

from .core import (
    PERCENT_ONE,
    TrustedVault,
    ZeroIdentity, NotValidVault, InvalidVaultPercentage, VaultAssetMismatch, VaultAlreadyRegistered,
)


# =============================================================================
# ALLOCATOR
# =============================================================================

@dataclass(frozen=True, slots=True)
class VaultCandidate:
    """Snapshot of one vault as the allocator sees it."""
    index: int
    vault: str
    minimum_percentage: int
    maximum_percentage: int
    outstanding: int    # current debt funded by this vault
    capacity: int       # spare balance the vault can lend now


@dataclass(frozen=True, slots=True)
class AllocationPlan:
    """Per-vault amounts for one draw, ordered by vault index."""
    requested: int
    allocations: Tuple[Tuple[int, int], ...]

    @property
    def sourced(self) -> int:
        return sum(amount for _, amount in self.allocations)

    @property
    def is_all_satisfied(self) -> bool:
        return self.sourced == self.requested


def current_share(outstanding: int, total_outstanding: int) -> int:
    """Share of total debt held, in parts-per-million (0 when nothing is outstanding)."""
    if total_outstanding <= 0:
        return 0
    return outstanding * PERCENT_ONE // total_outstanding


def plan_allocation(
    amount: int,
    candidates: Sequence[VaultCandidate],
    total_outstanding: int,
) -> AllocationPlan:
    """
    Split a draw across vaults.

    PURE FUNCTION - all inputs explicit.

    Args:
        amount: Requested draw
        candidates: Vault snapshots (outstanding debt, spare capacity, bounds)
        total_outstanding: Total system debt before the draw

    Returns:
        AllocationPlan whose sourced amount is at most `amount`.

    Example:
        plan = plan_allocation(300_000, [
            VaultCandidate(0, "vault_a", 0, PERCENT_ONE, 0, 50_000),
        ], 0)
        plan.sourced             # 50_000
        plan.is_all_satisfied    # False
    """
    if amount <= 0:
        return AllocationPlan(requested=amount, allocations=())

    total_after = total_outstanding + amount
    ordered = sorted(
        candidates,
        key=lambda c: (current_share(c.outstanding, total_outstanding) - c.minimum_percentage, c.index),
    )

    taken: Dict[int, int] = {}
    left = amount

    # Pass 1: respect maximum share
    for c in ordered:
        if left == 0:
            break
        headroom = max(c.maximum_percentage * total_after // PERCENT_ONE - c.outstanding, 0)
        take = min(max(c.capacity, 0), headroom, left)
        if take > 0:
            taken[c.index] = take
            left -= take

    # Pass 2: bounds are advisory
    for c in ordered:
        if left == 0:
            break
        spare = max(c.capacity, 0) - taken.get(c.index, 0)
        take = min(spare, left)
        if take > 0:
            taken[c.index] = taken.get(c.index, 0) + take
            left -= take

    return AllocationPlan(
        requested=amount,
        allocations=tuple(sorted(taken.items())),
    )


# =============================================================================
# REGISTRY
# =============================================================================

class VaultRegistry:
    """Ordered list of trusted vaults, addressable by index or identity."""

    def __init__(self):
        self._vaults: List[TrustedVault] = []

    def __len__(self) -> int:
        return len(self._vaults)

    def __iter__(self):
        return iter(self._vaults)

    def get(self, index: int) -> TrustedVault:
        if index < 0 or index >= len(self._vaults):
            raise NotValidVault(f"no vault at index {index}")
        return self._vaults[index]

    def find(self, identity: str) -> Optional[int]:
        for i, vault in enumerate(self._vaults):
            if vault.vault == identity:
                return i
        return None

    def index_of(self, identity: str) -> int:
        index = self.find(identity)
        if index is None:
            raise NotValidVault(f"{identity!r} is not a trusted vault")
        return index

    def validate(self, vault: TrustedVault, vault_asset: Optional[str], loan_asset: str) -> None:
        """
        Raises:
            ZeroIdentity: if the vault identity is empty.
            VaultAssetMismatch: if the vault does not hold the loan asset.
            InvalidVaultPercentage: unless 0 <= minimum <= maximum <= 100%.
        """
        if not vault.vault or not vault.vault.strip():
            raise ZeroIdentity("vault identity cannot be empty")
        if vault_asset != loan_asset:
            raise VaultAssetMismatch(
                f"vault {vault.vault!r} holds {vault_asset!r}, facility lends {loan_asset!r}"
            )
        if not 0 <= vault.minimum_percentage <= vault.maximum_percentage <= PERCENT_ONE:
            raise InvalidVaultPercentage(
                f"vault {vault.vault!r} bounds invalid: min {vault.minimum_percentage}, "
                f"max {vault.maximum_percentage}, limit {PERCENT_ONE}"
            )

    def resolve_slot(self, vault: TrustedVault, index_hint: int) -> Optional[int]:
        """
        Index to overwrite, or None to append.

        The hint matches when it addresses an existing slot holding the same
        identity. Appending an identity registered elsewhere is rejected.
        """
        if 0 <= index_hint < len(self._vaults) and self._vaults[index_hint].vault == vault.vault:
            return index_hint
        existing = self.find(vault.vault)
        if existing is not None:
            raise VaultAlreadyRegistered(
                f"vault {vault.vault!r} already registered at index {existing} (hint {index_hint})"
            )
        return None

    def upsert(self, vault: TrustedVault, index_hint: int) -> Tuple[int, bool]:
        """
        Insert or overwrite a vault.

        Returns:
            (index, overwritten) - overwritten is False when appended.
        """
        slot = self.resolve_slot(vault, index_hint)
        if slot is None:
            self._vaults.append(replace(vault))
            return len(self._vaults) - 1, False
        self._vaults[slot] = replace(vault)
        return slot, True

    def clone(self) -> VaultRegistry:
        cloned = VaultRegistry()
        cloned._vaults = list(self._vaults)
        return cloned
