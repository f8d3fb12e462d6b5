"""
rates.py - Rate tiers and the shared compound-growth accumulator

A RateTierTable is an immutable, strictly increasing list of per-second
growth factors. The RateAccumulator keeps one running index per tier.

Debts never accrue individually. A debt stores its principal divided by the
index of its tier at creation (its normalized principal); the amount owed at
any later time is the normalized principal times the current index. Advancing
time therefore costs one rpow per tier, regardless of how many debts exist.

Key Formulas:
    index[t] <- index[t] * growth[t] ** elapsed_seconds
    normalized = ceil(amount * ONE / index[t])
    owed       = ceil(normalized * index[t] / ONE)
"""

from __future__ import annotations
from datetime import datetime, timedelta
from typing import Iterable, List, Sequence, Tuple

from .core import (
    DEFAULT_RATE_TIERS_BPS,
    InvalidRateTierTable, NotValidInterestRate,
)
from .fixed_point import ONE, annual_rate_to_per_second, checked, mul_div_down, mul_div_up, rpow


class RateTierTable:
    """
    Ordered per-second growth factors, scaled by ONE (1.0 = no interest).

    Validated at construction: non-empty, no zero entries, strictly
    increasing. The table cannot be changed afterwards.
    """

    __slots__ = ("_rates",)

    def __init__(self, rates: Iterable[int]):
        rates = tuple(int(r) for r in rates)
        if not rates:
            raise InvalidRateTierTable("rate tier table cannot be empty")
        for i, rate in enumerate(rates):
            if rate <= 0:
                raise InvalidRateTierTable(f"rate tier {i} is zero")
            if rate < ONE:
                raise InvalidRateTierTable(f"rate tier {i} shrinks debt: {rate} < {ONE}")
            checked(rate)
            if i > 0 and rate <= rates[i - 1]:
                raise InvalidRateTierTable(
                    f"rate tiers must be strictly increasing: tier {i} ({rate}) <= tier {i - 1} ({rates[i - 1]})"
                )
        self._rates: Tuple[int, ...] = rates

    @classmethod
    def from_annual_bps(cls, rates_bps: Sequence[int] = DEFAULT_RATE_TIERS_BPS) -> RateTierTable:
        """Build a table from annualized rates in basis points."""
        return cls(annual_rate_to_per_second(bps) for bps in rates_bps)

    def __len__(self) -> int:
        return len(self._rates)

    def __getitem__(self, tier: int) -> int:
        return self._rates[tier]

    def __iter__(self):
        return iter(self._rates)

    def __repr__(self) -> str:
        return f"RateTierTable({len(self._rates)} tiers)"

    def validate_assignable(self, tier: int) -> None:
        """
        Check a tier can be assigned to a loan or debt.

        Raises:
            NotValidInterestRate: if the tier is out of range or the neutral tier 0.
        """
        if tier <= 0 or tier >= len(self._rates):
            raise NotValidInterestRate(
                f"rate tier {tier} is not assignable (valid: 1..{len(self._rates) - 1})"
            )


class RateAccumulator:
    """
    One accumulated-rate index per tier, refreshed lazily by pile().

    Each index starts at ONE and never decreases. Elapsed time is measured
    from the accumulator's own last update, never from a debt.
    """

    def __init__(self, table: RateTierTable, start_time: datetime):
        self.table = table
        self._indices: List[int] = [ONE] * len(table)
        self.last_updated: datetime = start_time

    def __len__(self) -> int:
        return len(self._indices)

    def elapsed_seconds(self, now: datetime) -> int:
        """Whole seconds since the last refresh (0 if now is not later)."""
        if now <= self.last_updated:
            return 0
        return (now - self.last_updated) // timedelta(seconds=1)

    def index(self, tier: int) -> int:
        """Stored index for a tier as of last_updated."""
        return self._indices[tier]

    def indices(self) -> Tuple[int, ...]:
        return tuple(self._indices)

    def _grown(self, elapsed: int) -> List[int]:
        # compute every tier before committing any of them
        return [
            mul_div_down(rpow(rate, elapsed), index, ONE)
            for rate, index in zip(self.table, self._indices)
        ]

    def pile(self, now: datetime) -> int:
        """
        Advance every index to `now`.

        Idempotent: a second call at the same time is a no-op. Fractional
        seconds are carried to the next call.

        Returns:
            Number of whole seconds applied (0 if nothing changed).

        Raises:
            FixedPointOverflow: if any tier overflows; no index is changed.
        """
        elapsed = self.elapsed_seconds(now)
        if elapsed == 0:
            return 0
        self._indices = self._grown(elapsed)
        self.last_updated = self.last_updated + timedelta(seconds=elapsed)
        return elapsed

    def projected(self, tier: int, now: datetime) -> int:
        """
        Index a pile() at `now` would store, without mutating anything.
        """
        elapsed = self.elapsed_seconds(now)
        if elapsed == 0:
            return self._indices[tier]
        return mul_div_down(rpow(self.table[tier], elapsed), self._indices[tier], ONE)

    def clone(self) -> RateAccumulator:
        cloned = RateAccumulator(self.table, self.last_updated)
        cloned._indices = list(self._indices)
        return cloned


def normalize(amount: int, index: int) -> int:
    """Normalized principal for a raw amount at a given index (rounded up)."""
    return mul_div_up(amount, ONE, index)


def denormalize(normalized: int, index: int) -> int:
    """Raw amount owed for a normalized principal at a given index (rounded up)."""
    return mul_div_up(normalized, index, ONE)
