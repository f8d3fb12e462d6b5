"""
loans.py - Credit lines and the debts drawn against them

=== LOANS ===

request -> PENDING (capacity reserved at the borrower)
approve -> APPROVED (ceiling clamped to the requested amount, rate tier set)
        -> REJECTED (approved at zero, reservation released)

A loan is non-revolving: draws reduce `remaining`, repayments do not
restore it. The normalized principal of a loan's ACTIVE debts is kept per
rate tier, since a rate update sends later draws to a different index.

=== DEBTS ===

Each draw opens one ACTIVE debt. The debt stores its raw principal and its
normalized principal (principal divided by the accumulated rate of its tier
at creation). Transitions:

    ACTIVE -> REPAID      residual reaches zero through repay()
    ACTIVE -> DEFAULTED   matured, marked by an operator, re-based onto a penalty tier
    DEFAULTED -> CLOSED   residual recovered or written off

Per-borrower normalized sums are kept per rate tier so a borrower's total
debt is computed in O(tiers).
"""

from __future__ import annotations
from collections import defaultdict
from dataclasses import replace
from datetime import datetime
from typing import Dict, List

from .core import (
    Loan, LoanStatus, Debt, DebtStatus,
    NotValidLoan, NotPendingLoan, NotValidDebt,
    CeilingLimitBelowUsedLimit, BorrowAmountOverLoanRemainingLimit,
)


class LoanLedger:
    """Ordered list of loans with a reverse index by borrower."""

    def __init__(self):
        self._loans: List[Loan] = []
        self._by_borrower: Dict[int, List[int]] = defaultdict(list)
        # loan index -> rate tier -> normalized principal of ACTIVE debts
        self._normalized_by_loan: Dict[int, Dict[int, int]] = defaultdict(lambda: defaultdict(int))

    def __len__(self) -> int:
        return len(self._loans)

    def __iter__(self):
        return iter(self._loans)

    def get(self, index: int) -> Loan:
        if index < 0 or index >= len(self._loans):
            raise NotValidLoan(f"no loan at index {index}")
        return self._loans[index]

    def of_borrower(self, borrower_index: int) -> List[int]:
        return list(self._by_borrower.get(borrower_index, ()))

    def normalized(self, index: int) -> Dict[int, int]:
        """Normalized principal of a loan's ACTIVE debts, per rate tier."""
        self.get(index)
        return {t: n for t, n in self._normalized_by_loan.get(index, {}).items() if n}

    def _store(self, loan: Loan) -> Loan:
        self._loans[loan.index] = loan
        return loan

    def request(self, borrower_index: int, amount: int) -> Loan:
        loan = Loan(
            index=len(self._loans),
            borrower_index=borrower_index,
            requested=amount,
            ceiling=amount,
            remaining=amount,
        )
        self._loans.append(loan)
        self._by_borrower[borrower_index].append(loan.index)
        return loan

    def check_pending(self, index: int) -> Loan:
        loan = self.get(index)
        if loan.status != LoanStatus.PENDING:
            raise NotPendingLoan(f"loan {index} is {loan.status.value}, not pending")
        return loan

    def check_approved(self, index: int) -> Loan:
        loan = self.get(index)
        if loan.status != LoanStatus.APPROVED:
            raise NotValidLoan(f"loan {index} is {loan.status.value}, not approved")
        return loan

    def approve(self, index: int, approved_ceiling: int, rate_tier: int) -> Loan:
        """
        Approve a pending loan at no more than the requested amount.

        An approval at zero rejects the loan.
        """
        loan = self.check_pending(index)
        ceiling = max(min(approved_ceiling, loan.requested), 0)
        status = LoanStatus.APPROVED if ceiling > 0 else LoanStatus.REJECTED
        return self._store(replace(
            loan,
            ceiling=ceiling,
            remaining=ceiling,
            rate_tier=rate_tier if ceiling > 0 else 0,
            status=status,
        ))

    def check_draw(self, index: int, amount: int) -> Loan:
        loan = self.check_approved(index)
        if amount > loan.remaining:
            raise BorrowAmountOverLoanRemainingLimit(
                f"borrow amount {amount} exceeds loan {index} remaining {loan.remaining}"
            )
        return loan

    def draw(self, index: int, amount: int, normalized: int) -> Loan:
        loan = self.get(index)
        self._normalized_by_loan[index][loan.rate_tier] += normalized
        return self._store(replace(loan, remaining=loan.remaining - amount))

    def adjust_normalized(self, index: int, rate_tier: int, delta: int) -> None:
        self.get(index)
        self._normalized_by_loan[index][rate_tier] += delta

    def check_limit(self, index: int, new_ceiling: int) -> Loan:
        loan = self.check_approved(index)
        if new_ceiling < loan.drawn:
            raise CeilingLimitBelowUsedLimit(
                f"new loan ceiling {new_ceiling} is below drawn {loan.drawn}"
            )
        return loan

    def update_limit(self, index: int, new_ceiling: int) -> Loan:
        loan = self.check_limit(index, new_ceiling)
        return self._store(replace(
            loan,
            ceiling=new_ceiling,
            remaining=new_ceiling - loan.drawn,
        ))

    def update_rate(self, index: int, rate_tier: int) -> Loan:
        loan = self.check_approved(index)
        return self._store(replace(loan, rate_tier=rate_tier))

    def clone(self) -> LoanLedger:
        cloned = LoanLedger()
        cloned._loans = list(self._loans)
        for key, values in self._by_borrower.items():
            cloned._by_borrower[key] = list(values)
        for loan_index, by_tier in self._normalized_by_loan.items():
            cloned._normalized_by_loan[loan_index].update(by_tier)
        return cloned


class DebtLedger:
    """Ordered list of debts with reverse indices and per-tier normalized aggregates."""

    LIVE = (DebtStatus.ACTIVE, DebtStatus.DEFAULTED)

    def __init__(self):
        self._debts: List[Debt] = []
        self._by_loan: Dict[int, List[int]] = defaultdict(list)
        self._by_borrower: Dict[int, List[int]] = defaultdict(list)
        # borrower index -> rate tier -> normalized principal
        self._normalized_by_borrower: Dict[int, Dict[int, int]] = defaultdict(lambda: defaultdict(int))

    def __len__(self) -> int:
        return len(self._debts)

    def __iter__(self):
        return iter(self._debts)

    def get(self, index: int) -> Debt:
        if index < 0 or index >= len(self._debts):
            raise NotValidDebt(f"no debt at index {index}")
        return self._debts[index]

    def of_loan(self, loan_index: int) -> List[int]:
        return list(self._by_loan.get(loan_index, ()))

    def of_borrower(self, borrower_index: int) -> List[int]:
        return list(self._by_borrower.get(borrower_index, ()))

    def borrower_normalized(self, borrower_index: int) -> Dict[int, int]:
        """Normalized principal owed by a borrower, per rate tier."""
        return {t: n for t, n in self._normalized_by_borrower.get(borrower_index, {}).items() if n}

    def all_normalized(self) -> Dict[int, int]:
        """Normalized principal across all borrowers, per rate tier."""
        totals: Dict[int, int] = defaultdict(int)
        for by_tier in self._normalized_by_borrower.values():
            for tier, normalized in by_tier.items():
                totals[tier] += normalized
        return {t: n for t, n in totals.items() if n}

    def check_status(self, index: int, *statuses: DebtStatus) -> Debt:
        debt = self.get(index)
        if debt.status not in statuses:
            raise NotValidDebt(f"debt {index} is {debt.status.value}")
        return debt

    def open(
        self,
        loan: Loan,
        start_time: datetime,
        maturity_time: datetime,
        principal: int,
        normalized: int,
    ) -> Debt:
        debt = Debt(
            index=len(self._debts),
            loan_index=loan.index,
            borrower_index=loan.borrower_index,
            rate_tier=loan.rate_tier,
            start_time=start_time,
            maturity_time=maturity_time,
            principal=principal,
            normalized_principal=normalized,
        )
        self._debts.append(debt)
        self._by_loan[loan.index].append(debt.index)
        self._by_borrower[loan.borrower_index].append(debt.index)
        self._normalized_by_borrower[loan.borrower_index][debt.rate_tier] += normalized
        return debt

    def rewrite(self, index: int, **changes) -> Debt:
        """
        Replace fields of a debt, keeping the per-tier aggregates in step
        with normalized_principal and rate_tier.
        """
        old = self.get(index)
        new = replace(old, **changes)
        by_tier = self._normalized_by_borrower[old.borrower_index]
        by_tier[old.rate_tier] -= old.normalized_principal
        by_tier[new.rate_tier] += new.normalized_principal
        self._debts[index] = new
        return new

    def clone(self) -> DebtLedger:
        cloned = DebtLedger()
        cloned._debts = list(self._debts)
        for key, values in self._by_loan.items():
            cloned._by_loan[key] = list(values)
        for key, values in self._by_borrower.items():
            cloned._by_borrower[key] = list(values)
        for borrower_index, by_tier in self._normalized_by_borrower.items():
            cloned._normalized_by_borrower[borrower_index].update(by_tier)
        return cloned
