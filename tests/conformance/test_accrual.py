"""
Accrual Conformance Tests

INVARIANTS:
    index(tier, t2) >= index(tier, t1)                      for t2 >= t1
    pile(t); pile(t)  ==  pile(t)                           (idempotent)
    projected(tier, t) == index(tier) after pile(t)
    a <= denormalize(normalize(a, i), i) <= a + ceil(i / ONE)

Accrual is lazy: one index per tier, never a loop over debts.
"""

from hypothesis import given, settings, assume
from hypothesis import strategies as st
from datetime import datetime, timedelta

from loanbook import (
    ONE, RateTierTable, RateAccumulator, normalize, denormalize, rpow,
    annual_rate_to_per_second,
)


T0 = datetime(2024, 1, 1)
TABLE = RateTierTable.from_annual_bps()

indices = st.integers(min_value=ONE, max_value=50 * ONE)
raw_amounts = st.integers(min_value=0, max_value=10 ** 30)
steps = st.lists(st.integers(min_value=0, max_value=90 * 86_400), min_size=1, max_size=12)


class TestRoundingBounds:
    """Round-trips through normalized principal never lose value."""

    @given(amount=raw_amounts, index=indices)
    def test_round_trip_bounded(self, amount, index):
        owed = denormalize(normalize(amount, index), index)
        assert amount <= owed <= amount + -(-index // ONE)

    @given(amount=raw_amounts, index=indices)
    def test_normalize_monotone_in_amount(self, amount, index):
        assert normalize(amount, index) <= normalize(amount + 1, index)

    @given(normalized=raw_amounts, low=indices, high=indices)
    def test_denormalize_monotone_in_index(self, normalized, low, high):
        assume(low <= high)
        assert denormalize(normalized, low) <= denormalize(normalized, high)


class TestCompounding:
    """rpow and per-second rates."""

    @given(bps=st.integers(min_value=0, max_value=10_000), n=st.integers(min_value=0, max_value=10 ** 8))
    @settings(max_examples=50)
    def test_rpow_never_below_one(self, bps, n):
        assert rpow(annual_rate_to_per_second(bps), n) >= ONE

    @given(bps=st.integers(min_value=1, max_value=10_000), n=st.integers(min_value=0, max_value=10 ** 8))
    @settings(max_examples=50)
    def test_rpow_monotone_in_exponent(self, bps, n):
        rate = annual_rate_to_per_second(bps)
        assert rpow(rate, n) <= rpow(rate, n + 1)


class TestAccumulator:
    """Lazy index updates."""

    @given(gaps=steps)
    @settings(max_examples=50)
    def test_indices_never_decrease(self, gaps):
        acc = RateAccumulator(TABLE, T0)
        now = T0
        last = acc.indices()
        for gap in gaps:
            now += timedelta(seconds=gap)
            acc.pile(now)
            current = acc.indices()
            assert all(b >= a for a, b in zip(last, current))
            last = current

    @given(gaps=steps)
    @settings(max_examples=50)
    def test_pile_is_idempotent(self, gaps):
        acc = RateAccumulator(TABLE, T0)
        now = T0 + timedelta(seconds=sum(gaps))
        acc.pile(now)
        once = acc.indices()
        assert acc.pile(now) == 0
        assert acc.indices() == once

    @given(gaps=steps, tier=st.integers(min_value=0, max_value=19))
    @settings(max_examples=50)
    def test_projection_matches_pile(self, gaps, tier):
        acc = RateAccumulator(TABLE, T0)
        now = T0
        for gap in gaps:
            now += timedelta(seconds=gap)
            projected = acc.projected(tier, now)
            acc.pile(now)
            assert acc.index(tier) == projected

    @given(seconds=st.integers(min_value=0, max_value=10 ** 7))
    def test_zero_tier_stays_at_one(self, seconds):
        acc = RateAccumulator(TABLE, T0)
        acc.pile(T0 + timedelta(seconds=seconds))
        assert acc.index(0) == ONE
