"""Caller context: who is asking, resolved once per request."""
from __future__ import annotations

import logging
from dataclasses import dataclass

from backend.services.errors import CallerNotFound
from backend.services.roles import Role, ScopingRule, scoping_rule_for
from backend.services.runtime import log_event

logger = logging.getLogger(__name__)

CALLER_LOOKUP_SQL = (
    "SELECT user_id, organization_id, role, first_name, last_name "
    "FROM Users WHERE user_id = :user_id AND organization_id = :organization_id"
)


@dataclass(frozen=True)
class CallerContext:
    user_id: str
    organization_id: str
    role: Role
    first_name: str = ""
    last_name: str = ""

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p).strip()

    @property
    def rule(self) -> ScopingRule:
        return scoping_rule_for(self.role)


def resolve_caller(store, user_id: str, organization_id: str) -> CallerContext:
    """Look up (user_id, organization_id). Raises CallerNotFound when absent or role unknown."""
    rows = store.fetch_all(
        CALLER_LOOKUP_SQL,
        {"user_id": user_id, "organization_id": organization_id},
    )
    if not rows:
        log_event(logger, logging.WARNING, "caller_not_found")
        raise CallerNotFound(f"user {user_id!r} not found in organization {organization_id!r}")
    row = rows[0]
    role = Role.parse(row.get("role"))
    if role is None:
        log_event(logger, logging.WARNING, "caller_role_unknown", role=row.get("role"))
        raise CallerNotFound(f"user {user_id!r} has unknown role {row.get('role')!r}")
    caller = CallerContext(
        user_id=str(row["user_id"]),
        organization_id=str(row["organization_id"]),
        role=role,
        first_name=str(row.get("first_name") or ""),
        last_name=str(row.get("last_name") or ""),
    )
    log_event(logger, logging.INFO, "caller_resolved", role=caller.role.value)
    return caller
