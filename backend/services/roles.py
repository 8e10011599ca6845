"""
Role model and per-role scoping rules.

Every module that needs role-dependent behavior (prompt builder, classifier,
access validator) asks ``scoping_rule_for(role)`` instead of comparing role
strings. Adding a role means adding one enum member and one rule.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Optional


class Role(str, Enum):
    EMPLOYEE = "Employee"
    MANAGER = "Manager"
    ADMIN = "Admin"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["Role"]:
        raw = (value or "").strip().lower()
        for role in cls:
            if role.value.lower() == raw:
                return role
        return None


@dataclass(frozen=True)
class ScopingRule:
    role: Role
    # Instruction text placed in the model prompt.
    prompt_clause: str
    # Appended only when the deployment accepts writes.
    write_clause: str = ""
    # True when any row inside the caller's organization may be read.
    organization_wide: bool = False
    # True when rows owned by direct reports are in scope.
    includes_direct_reports: bool = False
    # True when identity may be resolved through first_name/last_name predicates.
    allows_name_lookup: bool = False
    # Table -> columns the role may UPDATE. None means unrestricted.
    writable_columns: Optional[Dict[str, FrozenSet[str]]] = None
    may_insert: bool = False
    # Managers cannot approve (move to leaves_taken) their own leave.
    forbid_self_approval: bool = False

    def instructions(self, writes_allowed: bool) -> str:
        if writes_allowed and self.write_clause:
            return f"{self.prompt_clause} {self.write_clause}"
        return self.prompt_clause


_LEAVE_TABLE = "leavebalances"

SCOPING_RULES: Dict[Role, ScopingRule] = {
    Role.EMPLOYEE: ScopingRule(
        role=Role.EMPLOYEE,
        prompt_clause=(
            "The caller is an Employee. Every query MUST filter by the caller's own user_id "
            "(WHERE user_id = '<caller user_id>') together with organization_id. NEVER identify "
            "the caller or anyone else by first_name or last_name. If the question is about any "
            "other person, set \"sql\" to \"ACCESS_DENIED\"."
        ),
        write_clause=(
            "Employees may only request leave (increase leaves_pending_approval on their own "
            "LeaveBalances rows); they cannot change salaries, approve leave, or insert records."
        ),
        writable_columns={_LEAVE_TABLE: frozenset({"leaves_pending_approval", "last_updated"})},
    ),
    Role.MANAGER: ScopingRule(
        role=Role.MANAGER,
        prompt_clause=(
            "The caller is a Manager. Queries may cover the caller's own data (user_id = '<caller "
            "user_id>') and the data of their direct reports, i.e. users whose manager_id equals "
            "the caller's user_id. Always include organization_id. For anyone who is not the caller "
            "or a direct report, set \"sql\" to \"ACCESS_DENIED\"."
        ),
        write_clause=(
            "Managers may approve or reject leave for their direct reports (UPDATE LeaveBalances "
            "only) and cannot approve their own leave, change salaries, or insert records."
        ),
        includes_direct_reports=True,
        allows_name_lookup=True,
        writable_columns={
            _LEAVE_TABLE: frozenset({"leaves_taken", "leaves_pending_approval", "last_updated"}),
        },
        forbid_self_approval=True,
    ),
    Role.ADMIN: ScopingRule(
        role=Role.ADMIN,
        prompt_clause=(
            "The caller is an Admin. Queries may cover any row inside the caller's organization, "
            "and every query MUST filter by organization_id = '<caller organization_id>'. "
            "Admins can view all pending leave requests."
        ),
        write_clause="Admins can approve or reject leave requests and create records.",
        organization_wide=True,
        allows_name_lookup=True,
        writable_columns=None,
        may_insert=True,
    ),
}


def scoping_rule_for(role: Role) -> ScopingRule:
    return SCOPING_RULES[role]
