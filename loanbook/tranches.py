"""
tranches.py - Per (vault, debt) funding records

A tranche holds the normalized portion of one debt funded by one vault.
The ledger guarantees, for every debt:

    sum(tranche.normalized_principal for tranches of the debt) == debt.normalized_principal

exactly. Every rescale goes through split_proportionally(), which assigns
the rounding remainder to the last part so the parts always sum to the
target.

Per-vault totals are kept as normalized sums per rate tier, so the debt of
a vault is computed in O(tiers) rather than by walking its tranches.
"""

from __future__ import annotations
from collections import defaultdict
from dataclasses import replace
from typing import Dict, List, Sequence, Tuple

from .core import Debt, Tranche, NotValidTranche


def split_proportionally(total: int, weights: Sequence[int]) -> List[int]:
    """
    Split an integer total into parts proportional to weights.

    PURE FUNCTION. Every part but the last is rounded down; the last part
    takes the remainder, so sum(result) == total.

    Raises:
        ValueError: if weights is empty, or all weights are zero while total is not.

    Example:
        >>> split_proportionally(100, [1, 1, 1])
        [33, 33, 34]
    """
    if not weights:
        raise ValueError("cannot split across zero weights")
    weight_sum = sum(weights)
    if weight_sum == 0:
        if total != 0:
            raise ValueError(f"cannot split {total} across all-zero weights")
        return [0] * len(weights)
    parts = [total * w // weight_sum for w in weights[:-1]]
    parts.append(total - sum(parts))
    return parts


class TrancheLedger:
    """Ordered list of tranches with reverse indices by debt, loan, borrower and vault."""

    def __init__(self):
        self._tranches: List[Tranche] = []
        self._by_debt: Dict[int, List[int]] = defaultdict(list)
        self._by_loan: Dict[int, List[int]] = defaultdict(list)
        self._by_borrower: Dict[int, List[int]] = defaultdict(list)
        self._by_vault: Dict[int, List[int]] = defaultdict(list)
        # vault index -> rate tier -> normalized principal
        self._normalized_by_vault: Dict[int, Dict[int, int]] = defaultdict(lambda: defaultdict(int))

    def __len__(self) -> int:
        return len(self._tranches)

    def __iter__(self):
        return iter(self._tranches)

    def get(self, index: int) -> Tranche:
        if index < 0 or index >= len(self._tranches):
            raise NotValidTranche(f"no tranche at index {index}")
        return self._tranches[index]

    def of_debt(self, debt_index: int) -> List[int]:
        return list(self._by_debt.get(debt_index, ()))

    def of_loan(self, loan_index: int) -> List[int]:
        return list(self._by_loan.get(loan_index, ()))

    def of_borrower(self, borrower_index: int) -> List[int]:
        return list(self._by_borrower.get(borrower_index, ()))

    def of_vault(self, vault_index: int) -> List[int]:
        return list(self._by_vault.get(vault_index, ()))

    def vault_normalized(self, vault_index: int) -> Dict[int, int]:
        """Normalized principal funded by a vault, per rate tier."""
        return {t: n for t, n in self._normalized_by_vault.get(vault_index, {}).items() if n}

    def debt_sum(self, debt_index: int) -> int:
        return sum(self._tranches[i].normalized_principal for i in self._by_debt.get(debt_index, ()))

    def open(self, debt: Debt, parts: Sequence[Tuple[int, int]]) -> List[Tranche]:
        """
        Create one tranche per (vault_index, normalized) part of a new debt.
        """
        created = []
        for vault_index, normalized in parts:
            tranche = Tranche(
                index=len(self._tranches),
                vault_index=vault_index,
                debt_index=debt.index,
                loan_index=debt.loan_index,
                borrower_index=debt.borrower_index,
                normalized_principal=normalized,
            )
            self._tranches.append(tranche)
            self._by_debt[debt.index].append(tranche.index)
            self._by_loan[debt.loan_index].append(tranche.index)
            self._by_borrower[debt.borrower_index].append(tranche.index)
            self._by_vault[vault_index].append(tranche.index)
            self._normalized_by_vault[vault_index][debt.rate_tier] += normalized
            created.append(tranche)
        return created

    def rescale(self, debt_index: int, old_tier: int, new_tier: int, new_total: int) -> List[Tranche]:
        """
        Shrink (or re-base) every tranche of a debt to a new normalized total.

        Parts keep their current proportions; the tier aggregate moves from
        old_tier to new_tier.
        """
        indices = self._by_debt.get(debt_index, [])
        if not indices:
            return []
        current = [self._tranches[i].normalized_principal for i in indices]
        if sum(current) == 0:
            # no proportions left to keep; spread evenly
            current = [1] * len(current) if new_total else current
        new_parts = split_proportionally(new_total, current)
        updated = []
        for i, new_normalized in zip(indices, new_parts):
            tranche = self._tranches[i]
            by_tier = self._normalized_by_vault[tranche.vault_index]
            by_tier[old_tier] -= tranche.normalized_principal
            by_tier[new_tier] += new_normalized
            tranche = replace(tranche, normalized_principal=new_normalized)
            self._tranches[i] = tranche
            updated.append(tranche)
        return updated

    def clone(self) -> TrancheLedger:
        cloned = TrancheLedger()
        cloned._tranches = list(self._tranches)
        for attr in ("_by_debt", "_by_loan", "_by_borrower", "_by_vault"):
            source = getattr(self, attr)
            target = getattr(cloned, attr)
            for key, values in source.items():
                target[key] = list(values)
        for vault_index, by_tier in self._normalized_by_vault.items():
            cloned._normalized_by_vault[vault_index].update(by_tier)
        return cloned
