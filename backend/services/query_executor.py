"""
Query Executor: runs an already-validated statement and, for leave
approvals/rejections, schedules the employee notification.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from app.db_utils import QueryOutcome
from backend.services.caller import CallerContext
from backend.services.errors import StoreError
from backend.services.runtime import log_event, submit_background_task
from backend.services.sql_text import SqlText, strip_trailing_semicolon

logger = logging.getLogger(__name__)

_LEAVE_UPDATE_RE = re.compile(r"^\s*UPDATE\s+`?LeaveBalances`?\b", re.IGNORECASE)
_PENDING_RESET_RE = re.compile(r"\b(?:\w+\.)?leaves_pending_approval\s*=\s*0\b", re.IGNORECASE)
_APPROVAL_RE = re.compile(
    r"\b(?:\w+\.)?leaves_taken\s*=\s*(?:\w+\.)?leaves_taken\s*\+\s*(?:\w+\.)?leaves_pending_approval\b",
    re.IGNORECASE,
)

NAME_LOOKUP_SQL = "SELECT user_id FROM Users WHERE organization_id = :organization_id"


@dataclass
class LeaveDecision:
    action: str  # approve | reject
    leave_type: str
    user_ids: List[str]
    names: Dict[str, str]


def detect_leave_decision(sql: str) -> Optional[LeaveDecision]:
    """Recognise ``UPDATE LeaveBalances ... leaves_pending_approval = 0`` statements."""
    if not _LEAVE_UPDATE_RE.search(sql or ""):
        return None
    stmt = SqlText(sql)
    set_span = stmt.set_span()
    if set_span is None:
        return None
    assignments = sql[set_span[0]:set_span[1]]
    if not _PENDING_RESET_RE.search(assignments):
        return None
    action = "approve" if _APPROVAL_RE.search(assignments) else "reject"

    user_ids: List[str] = []
    names: Dict[str, str] = {}
    leave_type = "leave"
    for pred in stmt.column_predicates(("user_id", "first_name", "last_name", "leave_type")):
        if pred.op != "=" or not pred.operands or pred.operands[0].kind != "literal":
            continue
        value = pred.operands[0].value or ""
        if pred.column == "user_id" and value not in user_ids:
            user_ids.append(value)
        elif pred.column == "leave_type":
            leave_type = value or leave_type
        elif pred.column in ("first_name", "last_name"):
            names.setdefault(pred.column, value)
    return LeaveDecision(action=action, leave_type=leave_type, user_ids=user_ids, names=names)


def _bind_params(sql: str, caller: CallerContext) -> Optional[Dict[str, Any]]:
    names = set(SqlText(sql).placeholders())
    if not names:
        return None
    bound = {"user_id": caller.user_id, "organization_id": caller.organization_id}
    return {k: v for k, v in bound.items() if k in names}


class QueryExecutor:
    def __init__(
        self,
        store,
        notifier=None,
        dispatch: Callable[..., Any] = submit_background_task,
    ):
        self._store = store
        self._notifier = notifier
        self._dispatch = dispatch

    def run(self, sql: str, caller: CallerContext) -> QueryOutcome:
        statement = strip_trailing_semicolon(sql)
        params = _bind_params(statement, caller)
        try:
            outcome = self._store.execute(statement, params)
        except StoreError as e:
            log_event(logger, logging.ERROR, "store_error", code=e.code, error=str(e)[:300], sql=statement[:1000])
            raise
        if outcome.is_read:
            log_event(logger, logging.INFO, "sql_executed", kind="read", rows=len(outcome.rows), sql=statement[:1000])
            return outcome

        mutation = outcome.mutation
        log_event(
            logger,
            logging.INFO,
            "sql_executed",
            kind="write",
            affected_rows=mutation.affected_rows,
            changed_rows=mutation.changed_rows,
            sql=statement[:1000],
        )
        if mutation.affected_rows > 0 and self._notifier is not None:
            decision = detect_leave_decision(statement)
            if decision is not None:
                log_event(logger, logging.INFO, "leave_notification_scheduled", action=decision.action)
                self._dispatch(self._notify_decision, decision, caller)
        return outcome

    def _notify_decision(self, decision: LeaveDecision, caller: CallerContext) -> None:
        try:
            user_ids = decision.user_ids or self._resolve_names(decision.names, caller)
        except StoreError as e:
            log_event(logger, logging.ERROR, "leave_notification_lookup_failed", error=str(e)[:200])
            return
        if not user_ids:
            log_event(logger, logging.WARNING, "leave_notification_no_target")
            return
        for user_id in user_ids:
            self._notifier.notify(user_id, decision.action, decision.leave_type, caller.organization_id)

    def _resolve_names(self, names: Dict[str, str], caller: CallerContext) -> List[str]:
        if not names:
            return []
        sql = NAME_LOOKUP_SQL
        params = {"organization_id": caller.organization_id}
        for column in ("first_name", "last_name"):
            if column in names:
                sql += f" AND {column} = :{column}"
                params[column] = names[column]
        return [str(r["user_id"]) for r in self._store.fetch_all(sql, params)]
