"""Scope checks performed before every privileged action.

A connection's granted scopes can be narrower than what a newly added
action needs, so checking at connect time alone is not enough.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from typing import TYPE_CHECKING

from agent_connect.errors import InsufficientScopes

if TYPE_CHECKING:
    from agent_connect.services.credential_store import StoredConnection

_SCOPE_SPLIT = re.compile(r"[\s,]+")


def parse_scopes(value: str | Iterable[str] | None) -> frozenset[str]:
    """Normalise a scope string (space- or comma-separated) or iterable into a set."""
    if not value:
        return frozenset()
    if isinstance(value, str):
        items: Iterable[str] = _SCOPE_SPLIT.split(value)
    else:
        items = value
    return frozenset(s.strip() for s in items if s and s.strip())


def join_scopes(scopes: Iterable[str], separator: str = " ") -> str:
    """Serialise scopes deterministically."""
    return separator.join(sorted(set(scopes)))


class ScopeValidator:
    """Compares required scopes against what a connection was granted."""

    @staticmethod
    def missing_scopes(
        connection: StoredConnection,
        required_scopes: str | Iterable[str] | None,
    ) -> frozenset[str]:
        return parse_scopes(required_scopes) - connection.scopes

    def ensure_scopes(
        self,
        connection: StoredConnection,
        required_scopes: str | Iterable[str] | None,
    ) -> None:
        """Raise if *connection* lacks any of *required_scopes*.

        Raises:
            InsufficientScopes: With the exact set of missing scopes.
        """
        missing = self.missing_scopes(connection, required_scopes)
        if missing:
            raise InsufficientScopes(missing, connection.service)

    @staticmethod
    def upgrade_scopes(
        connection: StoredConnection | None,
        missing: Iterable[str],
    ) -> frozenset[str]:
        """Scopes to request in an incremental authorization."""
        granted = connection.scopes if connection is not None else frozenset()
        return granted | parse_scopes(missing)
