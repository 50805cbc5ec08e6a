from __future__ import annotations

from typing import Dict, FrozenSet, Iterable, Tuple

WILDCARD = "*"

ROLE_PERMISSIONS: Dict[str, FrozenSet[str]] = {
    "admin": frozenset({WILDCARD}),
    "manager": frozenset(
        {
            "dashboard.view",
            "transactions.view", "transactions.create", "transactions.edit",
            "reports.view", "reports.export",
            "budget.view", "budget.edit",
            "goals.view", "goals.create",
            "invoices.view",
            "backup.create",
            "users.view",
            "clients.view", "clients.create", "clients.edit",
            "suppliers.view", "suppliers.create", "suppliers.edit",
            "inventory.view",
            "financial.view", "financial.create", "financial.edit",
            "service-orders.view", "service-orders.create", "service-orders.edit",
            "agenda.view", "agenda.create",
            "fiscal.view", "fiscal.create", "fiscal.edit", "fiscal.send",
        }
    ),
    "operator": frozenset(
        {
            "dashboard.view",
            "transactions.view", "transactions.create",
            "invoices.view", "invoices.create", "invoices.edit",
            "clients.view", "clients.create",
            "suppliers.view", "suppliers.create",
            "inventory.view", "inventory.create",
            "financial.view", "financial.create",
            "service-orders.view", "service-orders.create",
            "agenda.view",
            "fiscal.view", "fiscal.create",
        }
    ),
    "viewer": frozenset(
        {
            "dashboard.view",
            "transactions.view",
            "reports.view",
            "charts.view",
            "clients.view",
            "suppliers.view",
            "inventory.view",
            "financial.view",
            "service-orders.view",
            "agenda.view",
            "fiscal.view",
        }
    ),
}


def permissions_for_role(role: str) -> Tuple[str, ...]:
    """Resolve a role to its sorted permission list; unknown roles get none."""
    return tuple(sorted(ROLE_PERMISSIONS.get((role or "").lower(), frozenset())))


def grants(permissions: Iterable[str], permission: str) -> bool:
    granted = set(permissions)
    return WILDCARD in granted or permission in granted
