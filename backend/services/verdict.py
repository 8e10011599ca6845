"""Sentinels and gate verdicts shared by the safety filter, the validator and the composer."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class Sentinel(str, Enum):
    ACCESS_DENIED = "ACCESS_DENIED"
    IRRELEVANT = "IRRELEVANT"
    MULTI_ACTION_ERROR = "MULTI_ACTION_ERROR"
    AMBIGUOUS_QUERY = "AMBIGUOUS_QUERY"
    CROSS_ORG_ACCESS = "CROSS_ORG_ACCESS"

    @classmethod
    def match(cls, value: Optional[str]) -> Optional["Sentinel"]:
        raw = (value or "").strip().rstrip(";").strip().upper()
        for sentinel in cls:
            if sentinel.value == raw:
                return sentinel
        return None


SENTINEL_MESSAGES = {
    Sentinel.ACCESS_DENIED: (
        "You don't have permission to access this information. "
        "I can only help with data you are authorized to see."
    ),
    Sentinel.CROSS_ORG_ACCESS: (
        "You don't have permission to access information about employees from other organizations."
    ),
    Sentinel.IRRELEVANT: (
        "I am an HR assistant for {company} and can only answer questions about employee data, "
        "leave, payroll, and company policies. How can I help you with an HR-related query?"
    ),
    Sentinel.MULTI_ACTION_ERROR: (
        "I can only handle one request at a time. Please try asking to 'update salary' "
        "or 'update leaves' separately."
    ),
    Sentinel.AMBIGUOUS_QUERY: (
        "Your request matches more than one record. Please add more detail, such as the "
        "employee's full name or user ID, so I can be sure who you mean."
    ),
}

UNSAFE_MESSAGE = (
    "For security reasons, I cannot perform this operation. "
    "Please contact your system administrator if you need assistance."
)


@dataclass(frozen=True)
class Verdict:
    allowed: bool
    # Logged only; never returned to the caller.
    reason: str = ""
    sentinel: Optional[Sentinel] = None
    message: str = ""

    @classmethod
    def allow(cls) -> "Verdict":
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: str, sentinel: Sentinel = Sentinel.ACCESS_DENIED) -> "Verdict":
        return cls(allowed=False, reason=reason, sentinel=sentinel, message=SENTINEL_MESSAGES[sentinel])

    @classmethod
    def unsafe(cls, reason: str) -> "Verdict":
        return cls(allowed=False, reason=reason, message=UNSAFE_MESSAGE)
