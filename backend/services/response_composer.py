"""
Response Composer: maps pipeline outcomes to ``{success, message, data?, details?}``
plus an HTTP status code.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from app.db_utils import QueryOutcome
from backend.services.errors import StoreError
from backend.services.verdict import SENTINEL_MESSAGES, Sentinel, Verdict

GREETING_MESSAGE = "Hello! I'm your HR assistant. How can I help you with HR-related questions today?"
THANKS_MESSAGE = "You're welcome! Is there anything else I can help you with today?"
MISSING_INPUT_MESSAGE = "Missing prompt, x-user-id, or x-organization-id in request"
INVALID_BODY_MESSAGE = "Invalid request body"
CALLER_NOT_FOUND_MESSAGE = "I couldn't find your user account in this organization. Please contact your HR administrator."
PARSE_FAILURE_MESSAGE = "I'm having trouble understanding your request. Could you please rephrase it?"
TRANSIENT_MESSAGE = "The service is taking longer than expected right now. Please try again in a moment."
GENERIC_ERROR_MESSAGE = (
    "I encountered an issue while processing your request. Please try again or rephrase your question."
)
NO_UPDATE_MESSAGE = (
    "I couldn't perform the requested update. It seems no matching records were found. For example, if "
    "you're trying to approve a leave, you could first ask to \"show all pending leave requests\" to see "
    "available options."
)
STORE_GENERIC_MESSAGE = "I encountered an issue with the database. Please try again or rephrase your request."

SENTINEL_STATUS = {
    Sentinel.MULTI_ACTION_ERROR: 400,
    Sentinel.IRRELEVANT: 400,
    Sentinel.AMBIGUOUS_QUERY: 400,
    Sentinel.ACCESS_DENIED: 403,
    Sentinel.CROSS_ORG_ACCESS: 403,
}

_EMPTY_READ_HINTS = {
    "leavebalances": "There may be no leave balance on record for that leave type. You could ask to see all of your leave balances.",
    "payrolldata": "There may be no payroll record for this yet.",
    "companypolicies": "That policy may not exist. You could ask to list all company policies.",
    "users": "The employee may not exist, or you might need to check the spelling.",
}
_DEFAULT_EMPTY_HINT = (
    "The data may not exist, or you might need to check the spelling. You could try asking to see all "
    "employees or all pending leaves to get more context."
)


@dataclass
class PipelineResponse:
    status_code: int
    body: Dict[str, Any]


def ok(message: str, data: Optional[List[Dict[str, Any]]] = None, details: Optional[Dict[str, Any]] = None) -> PipelineResponse:
    body: Dict[str, Any] = {"success": True, "message": message}
    if data is not None:
        body["data"] = data
    if details is not None:
        body["details"] = details
    return PipelineResponse(200, body)


def failure(status_code: int, message: str) -> PipelineResponse:
    return PipelineResponse(status_code, {"success": False, "message": message})


def sentinel_response(sentinel: Sentinel, company_name: str = "Vipraco") -> PipelineResponse:
    message = SENTINEL_MESSAGES[sentinel].format(company=company_name)
    return failure(SENTINEL_STATUS[sentinel], message)


def rejection_response(verdict: Verdict) -> PipelineResponse:
    """403 for an unsafe or out-of-scope statement; the reason stays server-side."""
    return failure(403, verdict.message)


def store_failure_response(error: StoreError) -> PipelineResponse:
    return failure(500, classify_store_error(error))


def classify_store_error(error: StoreError) -> str:
    text = str(error)
    if error.code == 1062:
        return "This record already exists. Please update the existing record instead."
    if error.code == 1364:
        m = re.search(r"Field '(\w+)' doesn't have a default value", text, re.IGNORECASE)
        if m:
            return f"Missing required field: {m.group(1)}. Please provide this value."
    if error.code == 1452:
        return "The referenced record does not exist. Please check your input values."
    if error.code == 1048:
        m = re.search(r"Column '(\w+)' cannot be null", text, re.IGNORECASE)
        if m:
            return f"Required field {m.group(1)} cannot be empty."
    return STORE_GENERIC_MESSAGE


def _main_table(sql: str) -> str:
    m = re.search(r"\b(?:FROM|UPDATE|INTO)\s+`?(\w+)`?", sql or "", re.IGNORECASE)
    return m.group(1).lower() if m else ""


def compose_outcome(sql: str, confirmation_message: str, outcome: QueryOutcome, prompt: str = "") -> PipelineResponse:
    if outcome.is_read:
        if not outcome.rows:
            subject = re.sub(r"^(Found|Retrieved|Got|Fetched)\s+", "", confirmation_message or "").strip()
            subject = subject or (prompt or "").strip()
            hint = _EMPTY_READ_HINTS.get(_main_table(sql), _DEFAULT_EMPTY_HINT)
            return ok(f'I couldn\'t find any information for the request: "{subject}". {hint}', data=[])
        return ok(confirmation_message or "Here is what I found.", data=outcome.rows)

    details = outcome.mutation.to_dict()
    if outcome.nothing_matched:
        return PipelineResponse(200, {"success": False, "message": NO_UPDATE_MESSAGE, "details": details})
    return ok(confirmation_message or "Done. Is there anything else I can help you with?", details=details)
