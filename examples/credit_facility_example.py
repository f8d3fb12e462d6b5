"""
Example: A pooled credit facility from origination to close.

Two vaults fund a single borrower. The walkthrough draws a loan, lets
interest accrue, repays one debt in full and defaults another, then
recovers and closes it. After each stage the borrower and vault sides
of the book are reconciled.
"""

from datetime import datetime, timedelta
from loanbook import (
    CreditFacility, FacilityConfig, TokenLedger, MembershipLists, RoleRegistry,
    TrustedVault, OPERATOR_ROLE, PERCENT_ONE,
)


def show_book(facility, label):
    report = facility.verify_reconciliation()
    print()
    print(f"{label} @ {facility.current_time:%Y-%m-%d}")
    print("-" * 80)
    print(f"  borrower side: {report['borrower_total']:>12,}")
    print(f"  vault side:    {report['vault_total']:>12,}")
    print(f"  reconciled:    {report['valid']}")
    for vault in facility.vaults:
        cash = facility.funding.balance_of(vault.vault, "USDC")
        debt = facility.total_debt_of_vault(vault.vault)
        print(f"  {vault.vault:<10} cash {cash:>12,}  debt {debt:>12,}")


def main():
    print("=" * 80)
    print("CREDIT FACILITY - Pooled Lending Example")
    print("=" * 80)

    t0 = datetime(2024, 1, 1)
    tokens = TokenLedger()
    tokens.register_asset("USDC")
    for vault in ("senior", "junior"):
        tokens.register_vault(vault, "USDC")
        tokens.issue("USDC", vault, 1_000_000)
    tokens.issue("USDC", "acme", 50_000)

    roles = RoleRegistry()
    roles.grant(OPERATOR_ROLE, "desk")
    facility = CreditFacility(
        FacilityConfig("USDC"),
        tokens,
        MembershipLists(allowed=["acme"]),
        roles,
        initial_time=t0,
        verbose=True,
    )

    # Senior vault takes at most 60% of the book; junior at least 40%
    facility.update_trusted_vaults("desk", TrustedVault("senior", 0, 60 * PERCENT_ONE // 100), 0)
    facility.update_trusted_vaults("desk", TrustedVault("junior", 40 * PERCENT_ONE // 100, PERCENT_ONE), 1)

    facility.join("acme")
    facility.agree("desk", "acme", 1_500_000)

    loan = facility.request("acme", 1_000_000)
    facility.approve("desk", loan.index, 800_000, 5)

    first = facility.borrow("acme", loan.index, 500_000, t0 + timedelta(days=90))
    second = facility.borrow("acme", loan.index, 300_000, t0 + timedelta(days=30))
    print(f"\nFirst draw split: {first.allocations}")
    print(f"Second draw split: {second.allocations}")
    show_book(facility, "After drawing")

    facility.advance_time(t0 + timedelta(days=60))
    print(f"\nOwed on debt {first.debt_index}: {facility.debt_owed(first.debt_index):,}")
    print(f"Owed on debt {second.debt_index}: {facility.debt_owed(second.debt_index):,}")

    facility.repay("acme", first.debt_index, 10 ** 9)
    facility.defaulted("desk", "acme", second.debt_index, 17)
    show_book(facility, "After repayment and default")

    facility.advance_time(t0 + timedelta(days=120))
    tokens.issue("USDC", "desk", 250_000)
    facility.recovery("desk", "acme", second.debt_index, 250_000)
    written_off = facility.close("desk", "acme", second.debt_index, write_off=True)
    print(f"\nWritten off at close: {written_off:,}")
    show_book(facility, "After close")

    conservation = tokens.verify_conservation()
    print(f"\nToken conservation holds: {conservation['valid']}")
    print(f"Events recorded: {len(facility.events)}")


if __name__ == "__main__":
    main()
