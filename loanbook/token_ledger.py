"""
token_ledger.py - Double-entry token ledger used as the default funding source

Every transfer debits one wallet and credits another by the same amount, so
for each asset the balances across all wallets (the system wallet included)
sum to zero. Assets enter circulation by issue(), which debits SYSTEM_WALLET;
the system wallet is the only wallet allowed to go negative.

The ledger implements the FundingSource protocol consumed by CreditFacility:
asset_of(), balance_of() and transfer().

Example:
    tokens = TokenLedger()
    tokens.register_asset("USDC")
    tokens.register_vault("vault_a", "USDC")
    tokens.issue("USDC", "vault_a", 1_000_000)
    tokens.transfer("USDC", "vault_a", "alice", 250_000, "draw")
    tokens.balance_of("alice", "USDC")   # 250_000
"""

from __future__ import annotations
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set

from .core import InsufficientFunds


SYSTEM_WALLET = "system"


@dataclass(frozen=True, slots=True)
class Transfer:
    """Immutable record of one applied transfer."""
    sequence: int
    asset: str
    source: str
    dest: str
    amount: int
    memo: str = ""

    def __repr__(self) -> str:
        memo = f" [{self.memo}]" if self.memo else ""
        return f"Transfer(#{self.sequence} {self.amount} {self.asset}: {self.source} -> {self.dest}{memo})"


class TokenLedger:
    """
    Balances per (wallet, asset) with an append-only transfer log.

    Wallets are created on first credit; register_wallet() exists for
    callers that want to declare them up front.
    """

    def __init__(self, name: str = "tokens", verbose: bool = False):
        self.name = name
        self.verbose = verbose
        self.assets: Set[str] = set()
        self.registered_wallets: Set[str] = {SYSTEM_WALLET}
        self.balances: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self.vault_assets: Dict[str, str] = {}
        self.transfer_log: List[Transfer] = []

    # ========================================================================
    # REGISTRATION
    # ========================================================================

    def register_asset(self, symbol: str) -> str:
        if not symbol or not symbol.strip():
            raise ValueError("asset symbol cannot be empty")
        if symbol in self.assets:
            raise ValueError(f"Asset {symbol} already registered")
        self.assets.add(symbol)
        return symbol

    def register_wallet(self, wallet_id: str) -> str:
        """
        Raises:
            ValueError: If the wallet id is empty or already registered
        """
        if not wallet_id or not wallet_id.strip():
            raise ValueError("wallet id cannot be empty")
        if wallet_id in self.registered_wallets:
            raise ValueError(f"Wallet {wallet_id} already registered")
        self.registered_wallets.add(wallet_id)
        return wallet_id

    def register_vault(self, vault: str, asset: str) -> str:
        """Register a vault wallet and record the asset it holds."""
        self._require_asset(asset)
        if vault not in self.registered_wallets:
            self.register_wallet(vault)
        self.vault_assets[vault] = asset
        return vault

    def is_registered(self, wallet_id: str) -> bool:
        return wallet_id in self.registered_wallets

    def _require_asset(self, asset: str) -> None:
        if asset not in self.assets:
            raise ValueError(f"Asset {asset} not registered")

    # ========================================================================
    # FundingSource PROTOCOL
    # ========================================================================

    def asset_of(self, vault: str) -> Optional[str]:
        return self.vault_assets.get(vault)

    def balance_of(self, holder: str, asset: str) -> int:
        """Balance of a wallet (0 for wallets never credited)."""
        self._require_asset(asset)
        if holder not in self.balances:
            return 0
        return self.balances[holder].get(asset, 0)

    def transfer(self, asset: str, source: str, dest: str, amount: int, memo: str = "") -> Transfer:
        """
        Move amount of asset from source to dest.

        Raises:
            ValueError: If the asset is unknown, the amount is not positive,
                or source equals dest
            InsufficientFunds: If source (other than SYSTEM_WALLET) cannot cover amount
        """
        self._require_asset(asset)
        if amount <= 0:
            raise ValueError(f"transfer amount must be positive, got {amount}")
        if source == dest:
            raise ValueError(f"cannot transfer from {source} to itself")
        if not dest or not dest.strip():
            raise ValueError("destination wallet cannot be empty")
        available = self.balance_of(source, asset)
        if source != SYSTEM_WALLET and available < amount:
            raise InsufficientFunds(
                f"{source} holds {available} {asset}, cannot transfer {amount}"
            )

        self.registered_wallets.add(dest)
        self.balances[source][asset] -= amount
        self.balances[dest][asset] += amount

        record = Transfer(
            sequence=len(self.transfer_log),
            asset=asset,
            source=source,
            dest=dest,
            amount=amount,
            memo=memo,
        )
        self.transfer_log.append(record)
        if self.verbose:
            print(f"✓ {record!r}")
        return record

    def issue(self, asset: str, dest: str, amount: int, memo: str = "issue") -> Transfer:
        """Bring new units into circulation from SYSTEM_WALLET."""
        return self.transfer(asset, SYSTEM_WALLET, dest, amount, memo)

    # ========================================================================
    # AGGREGATES
    # ========================================================================

    def total_supply(self, asset: str) -> int:
        """Units in circulation: the sum over every wallet except SYSTEM_WALLET."""
        self._require_asset(asset)
        return sum(
            self.balances[w].get(asset, 0)
            for w in sorted(self.balances)
            if w != SYSTEM_WALLET
        )

    def verify_conservation(self, expected_supplies: Optional[Dict[str, int]] = None) -> Dict[str, Any]:
        """
        Check that every asset nets to zero across all wallets.

        Returns:
            Dict with keys:
            - 'valid': bool - True if every asset balances (and matches expected)
            - 'supplies': Dict[str, int] - circulating supply per asset
            - 'discrepancies': List[Dict] - one entry per violation

        Example:
            result = tokens.verify_conservation({"USDC": 1_000_000})
            assert result['valid'], result['discrepancies']
        """
        supplies = {}
        discrepancies = []
        for asset in sorted(self.assets):
            supply = self.total_supply(asset)
            supplies[asset] = supply
            issued = -self.balances[SYSTEM_WALLET].get(asset, 0) if SYSTEM_WALLET in self.balances else 0
            if supply != issued:
                discrepancies.append({
                    'asset': asset,
                    'expected': issued,
                    'actual': supply,
                    'difference': abs(supply - issued),
                })
            if expected_supplies and asset in expected_supplies and expected_supplies[asset] != supply:
                discrepancies.append({
                    'asset': asset,
                    'expected': expected_supplies[asset],
                    'actual': supply,
                    'difference': abs(supply - expected_supplies[asset]),
                })
        return {
            'valid': len(discrepancies) == 0,
            'supplies': supplies,
            'discrepancies': discrepancies,
        }

    def clone(self) -> TokenLedger:
        cloned = TokenLedger(self.name, verbose=self.verbose)
        cloned.assets = set(self.assets)
        cloned.registered_wallets = set(self.registered_wallets)
        for wallet, balances in self.balances.items():
            cloned.balances[wallet].update(balances)
        cloned.vault_assets = dict(self.vault_assets)
        cloned.transfer_log = list(self.transfer_log)
        return cloned
