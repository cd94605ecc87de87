"""Permission scope resolution.

Derives the smallest set of scopes that covers every operation in the
catalog, collapsing read scopes into their read-write counterparts.
"""

from __future__ import annotations

import logging

from ms365_mcp.auth.models.catalog import OperationCatalog

logger = logging.getLogger(__name__)

# Broader scope -> the scopes it implies.
SCOPE_HIERARCHY: dict[str, list[str]] = {
    "Mail.ReadWrite": ["Mail.Read"],
    "Calendars.ReadWrite": ["Calendars.Read"],
    "Files.ReadWrite": ["Files.Read"],
    "Tasks.ReadWrite": ["Tasks.Read"],
    "Contacts.ReadWrite": ["Contacts.Read"],
}


class ScopeResolver:
    """Computes scope sets from a validated operation catalog.

    Pure and synchronous: no network or disk access.
    """

    def __init__(
        self,
        catalog: OperationCatalog,
        hierarchy: dict[str, list[str]] | None = None,
    ):
        self.catalog = catalog
        self.hierarchy = SCOPE_HIERARCHY if hierarchy is None else hierarchy

    def build_scopes(self, include_work_account_scopes: bool = False) -> set[str]:
        """Union the scopes of all operations and collapse implied scopes.

        Args:
            include_work_account_scopes: Also include operations restricted
                to work or school accounts

        Returns:
            Scope names. Content is deterministic, iteration order is not.
        """
        scopes: set[str] = set()
        for operation in self.catalog:
            if operation.requires_work_account and not include_work_account_scopes:
                continue
            scopes.update(operation.scopes)

        for broader, implied in self.hierarchy.items():
            if implied and all(scope in scopes for scope in implied):
                scopes.difference_update(implied)
                scopes.add(broader)

        return scopes

    def build_all_scopes(self) -> set[str]:
        return self.build_scopes(include_work_account_scopes=True)

    def work_account_scopes(self) -> list[str]:
        """Scopes declared by work-account-only operations, in catalog order."""
        seen: dict[str, None] = {}
        for operation in self.catalog:
            if operation.requires_work_account:
                for scope in operation.scopes:
                    seen.setdefault(scope, None)
        return list(seen)

    def requires_work_account(self, tool_name: str) -> bool:
        operation = self.catalog.get(tool_name)
        return operation is not None and operation.requires_work_account

    def scopes_for(self, tool_name: str) -> frozenset[str]:
        """Scopes a single tool needs; empty for unknown tools."""
        operation = self.catalog.get(tool_name)
        if operation is None:
            logger.debug(f"No catalog entry for tool {tool_name}")
            return frozenset()
        return frozenset(operation.scopes)
