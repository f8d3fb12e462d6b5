"""
borrowers.py - Trusted borrower registry

Tracks every admitted borrower's ceiling and how that ceiling is consumed:

    committed - reserved by loan requests/approvals but not yet drawn
    used      - outstanding principal of live debts
    remaining = ceiling - committed - used      (derived, never stored)

The registry validates data-level rules only. Eligibility and authorization
are checked by the facility before any registry method is called.
"""

from __future__ import annotations
from dataclasses import replace
from typing import Dict, List, Optional

from .core import (
    TrustedBorrower,
    ZeroIdentity, ZeroCeiling, BorrowerAlreadyExists, NotTrustedBorrower,
    UpdateCeilingLimitDirectly, CeilingLimitBelowUsedLimit, CeilingLimitBelowRemainingLimit,
    LoanCeilingLimitExceedsBorrowerRemainingLimit,
)


class BorrowerRegistry:
    """Ordered list of trusted borrowers, addressable by index or identity."""

    def __init__(self):
        self._borrowers: List[TrustedBorrower] = []
        self._index_by_identity: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._borrowers)

    def __contains__(self, identity: str) -> bool:
        return identity in self._index_by_identity

    def __iter__(self):
        return iter(self._borrowers)

    def get(self, index: int) -> TrustedBorrower:
        if index < 0 or index >= len(self._borrowers):
            raise NotTrustedBorrower(f"no borrower at index {index}")
        return self._borrowers[index]

    def index_of(self, identity: str) -> int:
        """
        Raises:
            NotTrustedBorrower: if the identity has not joined.
        """
        index = self._index_by_identity.get(identity)
        if index is None:
            raise NotTrustedBorrower(f"{identity!r} is not a trusted borrower")
        return index

    def find(self, identity: str) -> Optional[TrustedBorrower]:
        index = self._index_by_identity.get(identity)
        return None if index is None else self._borrowers[index]

    def by_identity(self, identity: str) -> TrustedBorrower:
        return self._borrowers[self.index_of(identity)]

    def _store(self, borrower: TrustedBorrower) -> TrustedBorrower:
        self._borrowers[borrower.index] = borrower
        return borrower

    # ------------------------------------------------------------------
    # Admission and ceilings
    # ------------------------------------------------------------------

    def join(self, identity: str) -> TrustedBorrower:
        """Register an identity and assign the next sequential index."""
        if not identity or not identity.strip():
            raise ZeroIdentity("borrower identity cannot be empty")
        if identity in self._index_by_identity:
            raise BorrowerAlreadyExists(f"borrower {identity!r} already joined")
        borrower = TrustedBorrower(index=len(self._borrowers), borrower=identity)
        self._borrowers.append(borrower)
        self._index_by_identity[identity] = borrower.index
        return borrower

    def agree(self, identity: str, ceiling: int) -> TrustedBorrower:
        """
        Set a borrower's ceiling exactly once.

        Raises:
            NotTrustedBorrower: if the identity has not joined.
            ZeroCeiling: if ceiling is not positive.
            UpdateCeilingLimitDirectly: if a ceiling was already agreed.
        """
        borrower = self.by_identity(identity)
        if ceiling <= 0:
            raise ZeroCeiling(f"ceiling must be positive, got {ceiling}")
        if borrower.ceiling != 0:
            raise UpdateCeilingLimitDirectly(
                f"borrower {identity!r} already has ceiling {borrower.ceiling}; use update_borrower_limit"
            )
        return self._store(replace(borrower, ceiling=ceiling))

    def check_limit(self, identity: str, new_ceiling: int) -> TrustedBorrower:
        """Validate a ceiling change without applying it."""
        borrower = self.by_identity(identity)
        if new_ceiling < borrower.used:
            raise CeilingLimitBelowUsedLimit(
                f"new ceiling {new_ceiling} is below used {borrower.used}"
            )
        if new_ceiling < borrower.used + borrower.committed:
            raise CeilingLimitBelowRemainingLimit(
                f"new ceiling {new_ceiling} is below used {borrower.used} "
                f"plus reserved {borrower.committed}"
            )
        return borrower

    def update_limit(self, identity: str, new_ceiling: int) -> TrustedBorrower:
        borrower = self.check_limit(identity, new_ceiling)
        return self._store(replace(borrower, ceiling=new_ceiling))

    # ------------------------------------------------------------------
    # Capacity movements
    # ------------------------------------------------------------------

    def check_reserve(self, index: int, amount: int) -> TrustedBorrower:
        borrower = self.get(index)
        if amount > borrower.remaining:
            raise LoanCeilingLimitExceedsBorrowerRemainingLimit(
                f"not enough remaining limit: requested {amount}, available {borrower.remaining}"
            )
        return borrower

    def reserve(self, index: int, amount: int) -> TrustedBorrower:
        """Move unreserved capacity into committed."""
        borrower = self.check_reserve(index, amount)
        return self._store(replace(borrower, committed=borrower.committed + amount))

    def release(self, index: int, amount: int) -> TrustedBorrower:
        """Return committed capacity to remaining."""
        borrower = self.get(index)
        return self._store(replace(borrower, committed=borrower.committed - amount))

    def draw(self, index: int, amount: int) -> TrustedBorrower:
        """Convert committed capacity into used when a loan is drawn."""
        borrower = self.get(index)
        return self._store(replace(
            borrower,
            committed=borrower.committed - amount,
            used=borrower.used + amount,
        ))

    def settle(self, index: int, principal: int) -> TrustedBorrower:
        """Release used capacity when principal is repaid, recovered or written off."""
        borrower = self.get(index)
        return self._store(replace(borrower, used=borrower.used - principal))

    def clone(self) -> BorrowerRegistry:
        cloned = BorrowerRegistry()
        cloned._borrowers = list(self._borrowers)
        cloned._index_by_identity = dict(self._index_by_identity)
        return cloned
