"""
access.py - Default eligibility and authorization collaborators

MembershipLists implements EligibilityService with an allow-list and a
deny-list. RoleRegistry implements Authorizer with a role -> identities map.
Both can be replaced by any object satisfying the same protocol.
"""

from __future__ import annotations
from collections import defaultdict
from typing import Dict, Iterable, Set

from .core import MissingRole, ZeroIdentity


def _check_identity(identity: str) -> None:
    if not identity or not identity.strip():
        raise ZeroIdentity("identity cannot be empty")


class MembershipLists:
    """Allow-list plus deny-list. An identity passes if allowed and not denied."""

    def __init__(self, allowed: Iterable[str] = (), denied: Iterable[str] = ()):
        self.allowed: Set[str] = set()
        self.denied: Set[str] = set()
        self.allow(*allowed)
        self.deny(*denied)

    def allow(self, *identities: str) -> None:
        for identity in identities:
            _check_identity(identity)
            self.allowed.add(identity)

    def deny(self, *identities: str) -> None:
        for identity in identities:
            _check_identity(identity)
            self.denied.add(identity)

    def remove(self, identity: str) -> None:
        """Drop an identity from both lists."""
        self.allowed.discard(identity)
        self.denied.discard(identity)

    def is_eligible(self, identity: str) -> bool:
        return identity in self.allowed

    def is_excluded(self, identity: str) -> bool:
        return identity in self.denied


class RoleRegistry:
    """Capability grants keyed by role name."""

    def __init__(self):
        self._members: Dict[str, Set[str]] = defaultdict(set)

    def grant(self, role: str, identity: str) -> None:
        _check_identity(identity)
        if not role:
            raise ValueError("role cannot be empty")
        self._members[role].add(identity)

    def revoke(self, role: str, identity: str) -> None:
        self._members.get(role, set()).discard(identity)

    def has_role(self, role: str, identity: str) -> bool:
        return identity in self._members.get(role, ())

    def require(self, role: str, identity: str) -> None:
        """
        Raises:
            MissingRole: naming the role the identity lacks.
        """
        if not self.has_role(role, identity):
            raise MissingRole(f"{identity!r} lacks required role {role!r}")

    def members(self, role: str) -> Set[str]:
        return set(self._members.get(role, ()))
