"""
RBAC Permission Registry -- Cooperative Ledger

Defines the canonical role-to-permission mapping.  Authorization happens at
the HTTP boundary; the ledger services receive an already-trusted
``created_by`` / ``closed_by`` identity.

Permission string format: {module}.{resource}.{action}
"""
from __future__ import annotations

# ---------------------------------------------------------------------------
# All permission strings used across the system
# ---------------------------------------------------------------------------

ALL_PERMISSIONS: list[str] = sorted([
    # Chart of accounts
    "ledger.accounts.view",
    "ledger.accounts.create",
    "ledger.accounts.update",
    "ledger.accounts.delete",
    # Journal
    "ledger.journal_entries.view",
    "ledger.journal_entries.create",
    "ledger.journal_entries.reverse",
    # Fiscal periods
    "ledger.fiscal_periods.view",
    "ledger.fiscal_periods.create",
    "ledger.fiscal_periods.close",
    # Reports
    "ledger.reports.view",
    # Tenancy
    "coop.cooperatives.view",
    "coop.cooperatives.create",
])


# ---------------------------------------------------------------------------
# Role → Permissions mapping (source of truth)
# ---------------------------------------------------------------------------

ROLE_PERMISSIONS: dict[str, set[str]] = {
    # ── System Admin ─────────────────────────────────────────────────────
    # Full access to every cooperative.
    "system_admin": set(ALL_PERMISSIONS),

    # ── Cooperative Manager ──────────────────────────────────────────────
    # Runs the books of one cooperative, including period close.
    "manager": {
        "ledger.accounts.view", "ledger.accounts.create",
        "ledger.accounts.update", "ledger.accounts.delete",
        "ledger.journal_entries.view", "ledger.journal_entries.create",
        "ledger.journal_entries.reverse",
        "ledger.fiscal_periods.view", "ledger.fiscal_periods.create",
        "ledger.fiscal_periods.close",
        "ledger.reports.view",
        "coop.cooperatives.view",
    },

    # ── Accountant ───────────────────────────────────────────────────────
    # Posts and reverses entries.  Cannot close periods.
    "accountant": {
        "ledger.accounts.view", "ledger.accounts.create", "ledger.accounts.update",
        "ledger.journal_entries.view", "ledger.journal_entries.create",
        "ledger.journal_entries.reverse",
        "ledger.fiscal_periods.view",
        "ledger.reports.view",
        "coop.cooperatives.view",
    },

    # ── Auditor ──────────────────────────────────────────────────────────
    # Read-only across all cooperatives.
    "auditor": {
        "ledger.accounts.view",
        "ledger.journal_entries.view",
        "ledger.fiscal_periods.view",
        "ledger.reports.view",
        "coop.cooperatives.view",
    },

    # ── Viewer ───────────────────────────────────────────────────────────
    "viewer": {
        "ledger.accounts.view",
        "ledger.reports.view",
        "coop.cooperatives.view",
    },
}


# ---------------------------------------------------------------------------
# Valid role names
# ---------------------------------------------------------------------------

VALID_ROLES: list[str] = sorted(ROLE_PERMISSIONS.keys())


# ---------------------------------------------------------------------------
# Data scoping: which roles see all cooperatives vs their own
# ---------------------------------------------------------------------------

GLOBAL_SCOPE_ROLES: set[str] = {"system_admin", "auditor"}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def get_role_permissions(role: str) -> set[str]:
    """Return the base permission set for a role, or empty set if unknown."""
    return ROLE_PERMISSIONS.get(role, set())
