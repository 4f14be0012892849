"""Visibility tiers for persisted state.

A field is saved in one of three scopes.  SESSION state lives for a single
interaction, USER state is shared by all interactions of one identity and
APPLICATION state is shared by every identity of the skill.

Each scope carries a rank.  A scope includes every scope with a higher rank
plus itself, so SESSION (rank 0) includes everything while USER and
APPLICATION (both rank 1) only include themselves.  That tie is what keeps
user-scoped and application-scoped fields apart.
"""

from __future__ import annotations

from enum import StrEnum


class Scope(StrEnum):
    SESSION = "session"
    USER = "user"
    APPLICATION = "application"

    @property
    def rank(self) -> int:
        return _RANKS[self]

    def includes(self, other: Scope) -> bool:
        """Return ``True`` when fields tagged with *other* are part of this scope."""
        return other.rank > self.rank or self is other

    def excludes(self, other: Scope) -> bool:
        """Return ``True`` when fields tagged with *other* are not part of this scope."""
        return other.rank <= self.rank and self is not other

    def is_any_of(self, *candidates: Scope) -> bool:
        return self in candidates


_RANKS: dict[Scope, int] = {
    Scope.SESSION: 0,
    Scope.USER: 1,
    Scope.APPLICATION: 1,
}

#: Scopes that outlive a single interaction, in the order they are reconciled.
DURABLE_SCOPES: tuple[Scope, ...] = (Scope.USER, Scope.APPLICATION)
