"""
SQL Safety Filter.

A keyword/shape check applied to every statement before access control. It
does not know who is asking; it only decides whether the statement is of a
kind this deployment may run at all.
"""
from __future__ import annotations

import re

from backend.services.config import SqlMode
from backend.services.sql_text import has_unterminated_literal, mask_literals, strip_trailing_semicolon
from backend.services.verdict import Verdict

__all__ = ["FORBIDDEN_KEYWORDS", "READ_ONLY_EXTRA_KEYWORDS", "inspect_sql", "is_safe", "strip_trailing_semicolon"]

FORBIDDEN_KEYWORDS = (
    "DROP", "TRUNCATE", "ALTER", "DELETE", "CREATE", "RENAME", "SHUTDOWN",
    "GRANT", "REVOKE", "COMMIT", "ROLLBACK",
)
READ_ONLY_EXTRA_KEYWORDS = ("UPDATE", "INSERT", "EXEC", "EXECUTE")

_ALLOWED_LEADING = {
    SqlMode.READ_ONLY: ("SELECT",),
    SqlMode.READ_WRITE: ("SELECT", "INSERT", "UPDATE"),
}

_TAUTOLOGY_PATTERNS = (
    # OR 1=1, OR 'a'='a', OR x = x
    re.compile(r"\bOR\s+(\S+)\s*=\s*\1(?=\s|\)|$)"),
    re.compile(r"\bOR\s+TRUE\b"),
    re.compile(r"\bOR\s+NOT\s+FALSE\b"),
    re.compile(r"\bOR\s+1\b(?!\s*[=<>!])"),
)
_INJECTION_PATTERNS = (
    (re.compile(r"--"), "line_comment"),
    (re.compile(r"/\*"), "block_comment_open"),
    (re.compile(r"\*/"), "block_comment_close"),
    (re.compile(r"\bUNION\s+(?:ALL\s+|DISTINCT\s+)?SELECT\b"), "union_select"),
    (re.compile(r"\bINTO\s+(?:OUTFILE|DUMPFILE)\b"), "file_write"),
    (re.compile(r"\bLOAD_FILE\s*\("), "file_read"),
    (re.compile(r"\b(?:SLEEP|BENCHMARK)\s*\("), "time_based"),
)


def _keyword_hit(normalized: str, keywords) -> str:
    for kw in keywords:
        if re.search(rf"\b{kw}\b", normalized):
            return kw
    return ""


def inspect_sql(sql: str, mode: SqlMode) -> Verdict:
    """Return the filter's verdict with a server-side reason."""
    normalized = (sql or "").strip().upper()
    if not normalized:
        return Verdict.unsafe("empty_statement")

    allowed = _ALLOWED_LEADING[mode]
    if not any(re.match(rf"{kw}\b", normalized) for kw in allowed):
        return Verdict.unsafe(f"leading_keyword_not_allowed:{normalized.split()[0][:20]}")

    kw = _keyword_hit(normalized, FORBIDDEN_KEYWORDS)
    if kw:
        return Verdict.unsafe(f"forbidden_keyword:{kw}")
    if mode is SqlMode.READ_ONLY:
        kw = _keyword_hit(normalized, READ_ONLY_EXTRA_KEYWORDS)
        if kw:
            return Verdict.unsafe(f"forbidden_keyword:{kw}")

    body = normalized[:-1] if normalized.endswith(";") else normalized
    if ";" in body:
        return Verdict.unsafe("multiple_statements")

    if has_unterminated_literal(sql):
        return Verdict.unsafe("unterminated_literal")

    # Comment markers count even inside literals.
    for pattern, name in _INJECTION_PATTERNS:
        if pattern.search(normalized):
            return Verdict.unsafe(f"injection_pattern:{name}")
    if re.search(r"(?<![\w$])#", mask_literals(normalized)):
        return Verdict.unsafe("injection_pattern:hash_comment")
    for pattern in _TAUTOLOGY_PATTERNS:
        if pattern.search(normalized):
            return Verdict.unsafe("tautology")

    return Verdict.allow()


def is_safe(sql: str, mode: SqlMode) -> bool:
    return inspect_sql(sql, mode).allowed
