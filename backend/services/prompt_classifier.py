"""
Prompt Classifier: deterministic pre-filters that run before the language model.

Order matters. Greetings and self-identity answers come first, then the
third-party-name check (so "What is Ananya's salary?" never reaches a
first-person fast path), then the multi-turn leave application, then the
leave-balance / salary fast paths.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from functools import partial
from typing import Callable, Iterable, List, Optional, Set

from backend.services.caller import CallerContext
from backend.services.config import SqlMode
from backend.services.errors import StoreError, TransientFailure
from backend.services.llm_client import GeneratedStatement
from backend.services.response_composer import (
    GREETING_MESSAGE,
    THANKS_MESSAGE,
    PipelineResponse,
    ok,
    sentinel_response,
)
from backend.services.runtime import log_event
from backend.services.sql_text import quote_literal
from backend.services.verdict import Sentinel

logger = logging.getLogger(__name__)

GREETINGS = {"hi", "hello", "hey", "greetings", "howdy", "hola", "namaste", "good morning", "good afternoon", "good evening"}
THANKS = {"thanks", "thank you", "thx", "ty", "thanks a lot", "thank you so much", "much appreciated", "cheers"}

HR_KEYWORDS = {
    "leave", "leaves", "salary", "pay", "payroll", "payslip", "policy", "policies", "balance", "employee",
    "employees", "manager", "team", "approve", "reject", "apply", "department", "ctc", "hra", "bonus",
    "holiday", "sick", "casual", "earned", "report", "reports", "allowance", "id", "email", "phone",
    "details", "record", "information", "info", "joining", "designation",
}
WRITE_KEYWORDS = {
    "apply", "update", "request", "set", "change", "approve", "reject", "increase", "decrease", "add",
    "modify", "cancel", "create", "insert", "raise",
}
SCOPE_WORDS = {
    "team", "all", "everyone", "employees", "reports", "department", "staff", "whose", "other", "others",
    "each", "every", "organization", "company",
}

LEAVE_TYPES = {"sick": "Sick Leave", "casual": "Casual Leave", "earned": "Earned Leave"}
_LEAVE_TYPE_RE = re.compile(r"\b(sick|casual|earned)\b(?:\s+leaves?)?", re.IGNORECASE)
_BARE_LEAVE_TYPE_RE = re.compile(r"^(?:an?\s+)?(sick|casual|earned)(?:\s+leaves?)?(?:\s+please)?$", re.IGNORECASE)
_APPLY_LEAVE_RE = re.compile(r"\b(?:apply|request|take|book)\b.*\bleaves?\b|\bleave\s+application\b", re.IGNORECASE)
_DAYS_RE = re.compile(r"\b(\d{1,2}|one|two|three|four|five|six|seven)\s*(?:-\s*)?days?\b", re.IGNORECASE)
_NUMBER_WORDS = {"one": 1, "two": 2, "three": 3, "four": 4, "five": 5, "six": 6, "seven": 7}
_READ_INTENT_RE = re.compile(r"\b(balance|how many|remaining|left|show|what|available)\b", re.IGNORECASE)

_FIRST_PERSON_RE = re.compile(r"\b(my|i|me|mine)\b", re.IGNORECASE)
_LEAVE_BALANCE_RE = re.compile(r"\bleaves?\b.*\b(balance|left|remaining|available|how many)\b|\b(balance|how many)\b.*\bleaves?\b", re.IGNORECASE)
_SALARY_RE = re.compile(r"\b(salary|pay|payslip|ctc|compensation|payroll|earnings)\b", re.IGNORECASE)

_POSSESSIVE_RE = re.compile(r"\b([A-Za-z][A-Za-z\-]+)(?:'s|’s|s')\b")
_WORD_RE = re.compile(r"[A-Za-z][\w'’\-]*")

# Words that look like names (capitalized, possessive) but are not people.
_NOT_NAMES = {
    "i", "a", "an", "the", "my", "me", "mine", "what", "whats", "what's", "who", "whom", "whose", "when",
    "where", "why", "how", "is", "are", "was", "were", "do", "does", "did", "can", "could", "would", "should",
    "will", "please", "show", "tell", "give", "list", "get", "find", "display", "approve", "reject", "apply",
    "update", "set", "change", "create", "request", "cancel", "add", "for", "of", "to", "in", "on", "at", "and",
    "or", "with", "from", "about", "by", "this", "that", "these", "those", "today", "tomorrow", "yesterday",
    "week", "month", "year", "company", "organization", "team", "manager", "employee", "employees", "everyone",
    "someone", "anyone", "people", "staff", "department", "hr", "leave", "leaves", "sick", "casual", "earned",
    "salary", "payroll", "policy", "policies", "balance", "ctc", "hra", "pf", "esi", "it", "its", "it's",
    "monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday", "january", "february",
    "march", "april", "may", "june", "july", "august", "september", "october", "november", "december",
    "hi", "hello", "hey", "thanks", "thank", "yes", "no", "ok", "okay", "work", "home", "engineering",
    "finance", "sales", "marketing", "human", "resources", "pending", "all", "last", "next", "current",
    "boss", "user", "users", "id", "name", "role", "base", "gross", "net", "total", "annual", "monthly",
    "day", "days", "reports", "report", "direct", "other", "others", "each", "every", "new", "record",
    "let", "there", "here", "he", "she", "they", "his", "her", "their", "one", "who's", "that's",
    "details", "email", "phone", "info", "information",
}

ORG_NAMES_SQL = (
    "SELECT first_name, last_name FROM Users WHERE organization_id = :organization_id "
    "AND (LOWER(first_name) IN ({names}) OR LOWER(last_name) IN ({names}))"
)


@dataclass
class Classification:
    intent: str = "general"
    # Final answer; the rest of the pipeline is skipped.
    response: Optional[PipelineResponse] = None
    # Statement produced without the model; still validated like model output.
    statement: Optional[GeneratedStatement] = None
    # When the fast-path statement fails, retry through the model.
    fallback_to_model: bool = False

    @property
    def passthrough(self) -> bool:
        return self.response is None and self.statement is None


def _normalize(prompt: str) -> str:
    text = re.sub(r"\s+", " ", (prompt or "").strip().lower())
    return text.strip(" !.?,;:")


def _words(text: str) -> List[str]:
    return [re.sub(r"'s$", "", w) for w in re.findall(r"[a-z']+", text.lower())]


def is_greeting_or_thanks(prompt: str) -> Optional[str]:
    """Return "greeting" / "thanks" for small-talk prompts, else None."""
    norm = _normalize(prompt)
    if norm in GREETINGS:
        return "greeting"
    if norm in THANKS:
        return "thanks"
    words = _words(norm)
    if not words or len(words) > 5 or any(w in HR_KEYWORDS for w in words):
        return None
    for vocab, label in ((GREETINGS, "greeting"), (THANKS, "thanks")):
        for phrase in vocab:
            if norm == phrase or norm.startswith(phrase + " ") or norm.startswith(phrase + ","):
                return label
    return None


def detect_third_party_names(
    prompt: str,
    caller: CallerContext,
    ignore: Iterable[str] = (),
    lookup: Optional[Callable[[List[str]], Set[str]]] = None,
) -> List[str]:
    """
    Possessive or capitalized tokens that are not the caller and not HR vocabulary.

    Possessives always count. When ``lookup`` is given, a capitalized word only
    counts if ``lookup`` reports it as a first or last name, so policy titles
    such as "Leave Carry Over" are not mistaken for people.
    """
    own: Set[str] = {n.lower() for n in (caller.first_name, caller.last_name) if n}
    own.update(w.lower() for w in ignore)
    possessives: List[str] = []
    capitalized: List[str] = []

    def _consider(token: str, into: List[str]) -> None:
        base = re.sub(r"(?:'s|’s|')$", "", token).lower()
        if len(base) < 2 or base in _NOT_NAMES or base in own:
            return
        if base not in possessives and base not in into:
            into.append(base)

    for m in _POSSESSIVE_RE.finditer(prompt or ""):
        _consider(m.group(1), possessives)
    words = _WORD_RE.findall(prompt or "")
    for i, word in enumerate(words):
        if i == 0 or not word[0].isupper():
            continue
        if word.isupper() or "_" in word or any(ch.isdigit() for ch in word):
            continue
        _consider(word, capitalized)
    if lookup is not None and capitalized:
        known = lookup(capitalized)
        capitalized = [w for w in capitalized if w in known]
    return possessives + capitalized


def _self_identity(prompt: str, caller: CallerContext) -> Optional[PipelineResponse]:
    norm = _normalize(prompt)
    if len(_words(norm)) > 8:
        return None
    identity = {
        "user_id": caller.user_id,
        "organization_id": caller.organization_id,
        "role": caller.role.value,
        "name": caller.full_name,
    }
    if re.fullmatch(r"(?:tell me )?who am i", norm):
        who = caller.full_name or caller.user_id
        return ok(
            f"You are {who} (user ID {caller.user_id}), a {caller.role.value} in organization "
            f"{caller.organization_id}. How can I help you today?",
            data=[identity],
        )
    if re.fullmatch(r"(?:what(?:'s| is) )?my (?:user ?id|employee ?id|id)", norm):
        return ok(f"Your user ID is {caller.user_id}. Is there anything else you need?", data=[identity])
    if re.fullmatch(r"(?:what(?:'s| is) )?my (?:full )?name", norm):
        return ok(f"Your name is {caller.full_name or caller.user_id}. Is there anything else you need?", data=[identity])
    if re.fullmatch(r"(?:what(?:'s| is) )?my role", norm):
        return ok(f"Your role is {caller.role.value}. Is there anything else you need?", data=[identity])
    if re.fullmatch(r"(?:what(?:'s| is) )?my (?:organization|organisation|org|company)(?: id)?", norm):
        return ok(
            f"Your organization ID is {caller.organization_id}. Is there anything else you need?",
            data=[identity],
        )
    return None


def requested_days(prompt: str, default: int = 1) -> int:
    m = _DAYS_RE.search(prompt or "")
    if not m:
        return default
    raw = m.group(1).lower()
    days = _NUMBER_WORDS.get(raw) or int(raw)
    return max(1, days)


def leave_type_in(prompt: str) -> Optional[str]:
    m = _LEAVE_TYPE_RE.search(prompt or "")
    return LEAVE_TYPES[m.group(1).lower()] if m else None


def leave_application_sql(caller: CallerContext, leave_type: str, days: int) -> str:
    return (
        f"UPDATE LeaveBalances SET leaves_pending_approval = leaves_pending_approval + {int(days)}, "
        f"last_updated = CURRENT_TIMESTAMP WHERE user_id = {quote_literal(caller.user_id)} "
        f"AND organization_id = {quote_literal(caller.organization_id)} "
        f"AND leave_type = {quote_literal(leave_type)}"
    )


class PromptClassifier:
    def __init__(
        self,
        pending_leaves=None,
        mode: SqlMode = SqlMode.READ_WRITE,
        company_name: str = "Vipraco",
        store=None,
    ):
        self._pending = pending_leaves
        self._store = store
        self.mode = mode
        self.company_name = company_name

    def classify(self, prompt: str, caller: CallerContext) -> Classification:
        result = self._classify(prompt, caller)
        log_event(
            logger,
            logging.INFO,
            "prompt_classified",
            intent=result.intent,
            short_circuit=result.response is not None,
            fast_path=result.statement is not None,
        )
        return result

    def _classify(self, prompt: str, caller: CallerContext) -> Classification:
        small_talk = is_greeting_or_thanks(prompt)
        if small_talk == "greeting":
            return Classification(intent="greeting", response=ok(GREETING_MESSAGE, data=[]))
        if small_talk == "thanks":
            return Classification(intent="thanks", response=ok(THANKS_MESSAGE, data=[]))

        identity = _self_identity(prompt, caller)
        if identity is not None:
            return Classification(intent="self_identity", response=identity)

        names: List[str] = []
        if set(_words(_normalize(prompt))) & HR_KEYWORDS:
            # Only names in an HR question count; "the capital of France" is left to the model.
            lookup = None
            if self._store is not None:
                lookup = partial(self._names_in_organization, caller)
            names = detect_third_party_names(prompt, caller, ignore=self.company_name.split(), lookup=lookup)
        if names and not caller.rule.allows_name_lookup:
            log_event(logger, logging.WARNING, "third_party_name_blocked", names=names)
            return Classification(intent="third_party_name", response=sentinel_response(Sentinel.ACCESS_DENIED))

        if self.mode is SqlMode.READ_WRITE and self._pending is not None and not names:
            leave = self._leave_application(prompt, caller)
            if leave is not None:
                return leave

        if names:
            return Classification(intent="named_person")
        return self._fast_path(prompt, caller) or Classification()

    def _names_in_organization(self, caller: CallerContext, candidates: List[str]) -> Set[str]:
        binds = ", ".join(f":n{i}" for i in range(len(candidates)))
        params = {f"n{i}": name for i, name in enumerate(candidates)}
        params["organization_id"] = caller.organization_id
        try:
            rows = self._store.fetch_all(ORG_NAMES_SQL.format(names=binds), params)
        except (StoreError, TransientFailure) as e:
            # Unverified words are treated as names.
            log_event(logger, logging.WARNING, "name_lookup_failed", error=str(e)[:200])
            return set(candidates)
        return {str(v).lower() for r in rows for v in (r["first_name"], r["last_name"]) if v}

    # -- multi-turn leave application -------------------------------------

    def _leave_application(self, prompt: str, caller: CallerContext) -> Optional[Classification]:
        leave_type = leave_type_in(prompt)
        norm = _normalize(prompt)
        if _APPLY_LEAVE_RE.search(norm):
            days = requested_days(prompt)
            if leave_type is None:
                self._pending.record(caller.user_id, caller.organization_id, requested_days=days)
                options = ", ".join(LEAVE_TYPES.values())
                return Classification(
                    intent="leave_application_follow_up",
                    response=ok(
                        f"Sure! Which type of leave would you like to apply for? You can choose {options}.",
                        data=[],
                    ),
                )
            self._clear_marker(caller)
            return self._leave_statement(caller, leave_type, days)

        if leave_type is None:
            return None
        bare = _BARE_LEAVE_TYPE_RE.fullmatch(norm) is not None
        if not bare and _READ_INTENT_RE.search(norm):
            return None
        try:
            marker = self._pending.get(caller.user_id, caller.organization_id)
        except (StoreError, TransientFailure) as e:
            log_event(logger, logging.WARNING, "pending_leave_lookup_failed", error=str(e)[:200])
            return None
        if marker is None:
            return None
        days = requested_days(prompt, default=marker.requested_days)
        self._clear_marker(caller)
        return self._leave_statement(caller, leave_type, days)

    def _clear_marker(self, caller: CallerContext) -> None:
        try:
            self._pending.clear(caller.user_id, caller.organization_id)
        except (StoreError, TransientFailure) as e:
            log_event(logger, logging.WARNING, "pending_leave_clear_failed", error=str(e)[:200])

    def _leave_statement(self, caller: CallerContext, leave_type: str, days: int) -> Classification:
        plural = "day" if days == 1 else "days"
        return Classification(
            intent="leave_application",
            statement=GeneratedStatement(
                sql=leave_application_sql(caller, leave_type, days),
                confirmation_message=(
                    f"Your request for {days} {plural} of {leave_type} has been submitted for approval. "
                    "Is there anything else I can help you with?"
                ),
                source="leave_application",
            ),
        )

    # -- fast paths -------------------------------------------------------

    def _fast_path(self, prompt: str, caller: CallerContext) -> Optional[Classification]:
        norm = _normalize(prompt)
        words = set(_words(norm))
        if not _FIRST_PERSON_RE.search(norm) or words & WRITE_KEYWORDS or words & SCOPE_WORDS:
            return None
        where = f"WHERE user_id={quote_literal(caller.user_id)} AND organization_id={quote_literal(caller.organization_id)}"
        if _LEAVE_BALANCE_RE.search(norm):
            return Classification(
                intent="leave_balance",
                statement=GeneratedStatement(
                    sql=f"SELECT * FROM LeaveBalances {where}",
                    confirmation_message="Here are your leave balances. Is there anything else I can help you with?",
                    source="fast_path:leave_balance",
                ),
                fallback_to_model=True,
            )
        if _SALARY_RE.search(norm):
            return Classification(
                intent="salary",
                statement=GeneratedStatement(
                    sql=f"SELECT * FROM PayrollData {where}",
                    confirmation_message="Here are your salary details. Is there anything else I can help you with?",
                    source="fast_path:salary",
                ),
                fallback_to_model=True,
            )
        return None
