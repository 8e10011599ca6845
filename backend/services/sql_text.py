"""
Lexical helpers for inspecting generated SQL.

Nothing here rewrites SQL. The helpers mask string literals (so keywords and
parentheses inside quotes are ignored), track parenthesis depth, and locate
top-level clauses, table references and simple predicates. Positions in the
masked text line up with positions in the original statement, so literal
values are read back from the original.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

Span = Tuple[int, int]

_IDENT = r"`?([A-Za-z_][\w$]*)`?"
_QUALIFIED = rf"(?:{_IDENT}\.)?{_IDENT}"
_LITERAL_MASKED = r"'_*'|\"_*\"|-?\d+(?:\.\d+)?|:[A-Za-z_]\w*"

_CLAUSE_RE = re.compile(
    r"\b(SELECT|FROM|WHERE|GROUP\s+BY|HAVING|ORDER\s+BY|LIMIT|SET|VALUES|ON|USING|"
    r"JOIN|INNER|LEFT|RIGHT|CROSS|STRAIGHT_JOIN|NATURAL|FULL|UPDATE|INTO|FOR|LOCK|DUPLICATE)\b",
    re.IGNORECASE,
)
_JOIN_WORDS = {"JOIN", "INNER", "LEFT", "RIGHT", "CROSS", "STRAIGHT_JOIN", "NATURAL", "FULL"}
_NOT_AN_ALIAS = {
    "ON", "WHERE", "JOIN", "INNER", "LEFT", "RIGHT", "CROSS", "OUTER", "STRAIGHT_JOIN", "NATURAL",
    "FULL", "SET", "GROUP", "ORDER", "LIMIT", "USING", "VALUES", "SELECT", "HAVING", "FOR", "LOCK",
    "UNION", "USE", "FORCE", "IGNORE", "PARTITION", "WINDOW",
}

_COMPARISON_OPS = (
    r"<=>|!=|<>|<=|>=|=|<|>|NOT\s+IN\b|IN\b|NOT\s+LIKE\b|LIKE\b|NOT\s+REGEXP\b|REGEXP\b|RLIKE\b|"
    r"IS\b|NOT\s+BETWEEN\b|BETWEEN\b|SOUNDS\s+LIKE\b"
)


def strip_trailing_semicolon(sql: str) -> str:
    text = (sql or "").strip()
    if text.endswith(";"):
        text = text[:-1].rstrip()
    return text


def mask_literals(sql: str) -> str:
    """Replace the contents of quoted strings with underscores, keeping the quotes."""
    out = list(sql)
    n = len(sql)
    i = 0
    while i < n:
        ch = sql[i]
        if ch not in ("'", '"'):
            i += 1
            continue
        quote = ch
        j = i + 1
        while j < n:
            c = sql[j]
            if c == "\\":
                out[j] = "_"
                if j + 1 < n:
                    out[j + 1] = "_"
                j += 2
                continue
            if c == quote:
                if j + 1 < n and sql[j + 1] == quote:
                    out[j] = out[j + 1] = "_"
                    j += 2
                    continue
                break
            out[j] = "_"
            j += 1
        i = j + 1
    return "".join(out)


def has_unterminated_literal(sql: str) -> bool:
    masked = mask_literals(sql)
    # Masking keeps only the delimiting quotes, so an odd count means one was never closed.
    return masked.count("'") % 2 == 1 or masked.count('"') % 2 == 1


def read_literal(sql: str, start: int) -> Tuple[str, int]:
    """Decode the quoted literal starting at ``start``. Returns (value, end_index)."""
    quote = sql[start]
    buf: List[str] = []
    j = start + 1
    n = len(sql)
    while j < n:
        c = sql[j]
        if c == "\\" and j + 1 < n:
            buf.append(sql[j + 1])
            j += 2
            continue
        if c == quote:
            if j + 1 < n and sql[j + 1] == quote:
                buf.append(quote)
                j += 2
                continue
            return "".join(buf), j + 1
        buf.append(c)
        j += 1
    return "".join(buf), n


def quote_literal(value: str) -> str:
    """Render a trusted value as a single-quoted SQL literal."""
    return "'" + str(value).replace("\\", "\\\\").replace("'", "''") + "'"


def paren_depths(masked: str) -> List[int]:
    depths = [0] * len(masked)
    depth = 0
    for i, ch in enumerate(masked):
        if ch == "(":
            depths[i] = depth
            depth += 1
        elif ch == ")":
            depth = max(0, depth - 1)
            depths[i] = depth
        else:
            depths[i] = depth
    return depths


def _norm_keyword(word: str) -> str:
    return re.sub(r"\s+", " ", word.upper())


def statement_kind(sql: str) -> str:
    m = re.match(r"\s*\(?\s*([A-Za-z]+)", sql or "")
    return m.group(1).upper() if m else ""


@dataclass
class TableRef:
    table: str
    alias: str
    start: int


@dataclass
class Operand:
    kind: str  # literal | param | column | other
    value: Optional[str] = None
    qualifier: Optional[str] = None


@dataclass
class Conjunct:
    span: Span
    text: str
    left: Operand = field(default_factory=lambda: Operand("other"))
    op: Optional[str] = None
    right: Operand = field(default_factory=lambda: Operand("other"))
    values: List[Operand] = field(default_factory=list)


@dataclass
class Predicate:
    """A comparison on a named column found anywhere in the statement."""
    column: str
    qualifier: Optional[str]
    op: str
    operands: List[Operand]
    start: int
    depth: int


class SqlText:
    """Masked view of one statement with top-level clause positions."""

    def __init__(self, sql: str):
        self.sql = sql
        self.masked = mask_literals(sql)
        self.depths = paren_depths(self.masked)
        self.kind = statement_kind(sql)
        self.clauses: List[Tuple[str, int, int]] = [
            (_norm_keyword(m.group(1)), m.start(), m.end())
            for m in _CLAUSE_RE.finditer(self.masked)
            if self.depths[m.start()] == 0
        ]

    # -- clause spans -----------------------------------------------------

    def _first(self, keyword: str, after: int = -1) -> Optional[Tuple[str, int, int]]:
        for clause in self.clauses:
            if clause[0] == keyword and clause[1] > after:
                return clause
        return None

    def _next_boundary(self, after: int, stops: set) -> int:
        for name, start, _ in self.clauses:
            if start >= after and name in stops:
                return start
        return len(self.masked)

    def where_span(self) -> Optional[Span]:
        clause = self._first("WHERE")
        if clause is None:
            return None
        end = self._next_boundary(clause[2], {"GROUP BY", "HAVING", "ORDER BY", "LIMIT", "FOR", "LOCK"})
        return clause[2], end

    def having_span(self) -> Optional[Span]:
        clause = self._first("HAVING")
        if clause is None:
            return None
        return clause[2], self._next_boundary(clause[2], {"ORDER BY", "LIMIT", "FOR", "LOCK"})

    def set_span(self) -> Optional[Span]:
        clause = self._first("SET")
        if clause is None:
            return None
        return clause[2], self._next_boundary(clause[2], {"WHERE", "ORDER BY", "LIMIT"})

    def select_list_span(self) -> Optional[Span]:
        clause = self._first("SELECT")
        if clause is None:
            return None
        return clause[2], self._next_boundary(clause[2], {"FROM", "WHERE", "GROUP BY", "ORDER BY", "LIMIT"})

    def from_span(self) -> Optional[Span]:
        """Table-reference region: FROM..WHERE for reads, UPDATE..SET for updates."""
        if self.kind == "UPDATE":
            clause = self._first("UPDATE")
            end_stops = {"SET"}
        else:
            clause = self._first("FROM")
            end_stops = {"WHERE", "GROUP BY", "HAVING", "ORDER BY", "LIMIT", "FOR", "LOCK"}
        if clause is None:
            return None
        return clause[2], self._next_boundary(clause[2], end_stops)

    def on_spans(self) -> List[Span]:
        span = self.from_span()
        if span is None:
            return []
        spans = []
        for name, start, end in self.clauses:
            if name != "ON" or not (span[0] <= start < span[1]):
                continue
            stop = span[1]
            for n2, s2, _ in self.clauses:
                if s2 > end and s2 < span[1] and n2 in _JOIN_WORDS:
                    stop = s2
                    break
            spans.append((end, stop))
        return spans

    def uses_join_shortcuts(self) -> bool:
        return any(name in {"USING", "NATURAL"} for name, _, _ in self.clauses)

    # -- table references -------------------------------------------------

    def table_refs(self) -> List[TableRef]:
        refs: List[TableRef] = []
        span = self.from_span()
        if self.kind == "INSERT":
            into = self._first("INTO")
            if into is not None:
                ref = self._read_table_ref(into[2], allow_alias=False)
                if ref is not None:
                    refs.append(ref)
        if span is None:
            return refs
        on_spans = self.on_spans()
        starts = [span[0]]
        for name, start, end in self.clauses:
            if span[0] <= start < span[1] and name == "JOIN":
                starts.append(end)
            if span[0] <= start < span[1] and name == "STRAIGHT_JOIN":
                starts.append(end)
        for i in range(span[0], span[1]):
            if self.masked[i] == "," and self.depths[i] == 0 and not any(s <= i < e for s, e in on_spans):
                starts.append(i + 1)
        for pos in sorted(set(starts)):
            ref = self._read_table_ref(pos)
            if ref is not None:
                refs.append(ref)
        return refs

    def _read_table_ref(self, pos: int, allow_alias: bool = True) -> Optional[TableRef]:
        m = re.compile(rf"\s*{_QUALIFIED}").match(self.masked, pos)
        if not m:
            return None
        table = (m.group(2) or "").lower()
        alias = table
        if allow_alias:
            a = re.compile(rf"\s+(?:AS\s+)?{_IDENT}", re.IGNORECASE).match(self.masked, m.end())
            if a and a.group(1).upper() not in _NOT_AN_ALIAS:
                alias = a.group(1).lower()
        return TableRef(table=table, alias=alias, start=m.start(2))

    # -- predicates -------------------------------------------------------

    def split_top_level(self, span: Span, separator: str) -> List[Span]:
        """Split ``span`` on a keyword/operator regex that appears at depth 0."""
        parts: List[Span] = []
        cursor = span[0]
        base = self.depths[span[0]] if span[0] < len(self.depths) else 0
        for m in re.finditer(separator, self.masked[span[0]:span[1]], re.IGNORECASE):
            start = span[0] + m.start()
            if self.depths[start] == base:
                parts.append((cursor, start))
                cursor = span[0] + m.end()
        parts.append((cursor, span[1]))
        return [(s, e) for s, e in parts if self.masked[s:e].strip()]

    def has_top_level(self, span: Span, pattern: str) -> bool:
        base = self.depths[span[0]] if span[0] < len(self.depths) else 0
        for m in re.finditer(pattern, self.masked[span[0]:span[1]], re.IGNORECASE):
            if self.depths[span[0] + m.start()] == base:
                return True
        return False

    def conjuncts(self, span: Optional[Span]) -> List[Conjunct]:
        if span is None:
            return []
        return [self._parse_conjunct(s) for s in self.split_top_level(span, r"\bAND\b|&&")]

    def _operand(self, text_start: int, token: str, qualifier: Optional[str] = None,
                 column: Optional[str] = None) -> Operand:
        if column is not None:
            return Operand("column", column.lower(), (qualifier or "").lower() or None)
        if token.startswith(("'", '"')):
            value, _ = read_literal(self.sql, text_start)
            return Operand("literal", value)
        if token.startswith(":"):
            return Operand("param", token[1:].lower())
        return Operand("literal", self.sql[text_start:text_start + len(token)])

    def _parse_conjunct(self, span: Span) -> Conjunct:
        s, e = span
        # Strip balanced outer parentheses.
        while True:
            seg = self.masked[s:e]
            lead = len(seg) - len(seg.lstrip())
            trail = len(seg) - len(seg.rstrip())
            s2, e2 = s + lead, e - trail
            if s2 < e2 and self.masked[s2] == "(" and self.masked[e2 - 1] == ")" \
                    and all(self.depths[k] > self.depths[s2] for k in range(s2 + 1, e2 - 1)):
                s, e = s2 + 1, e2 - 1
                continue
            s, e = s2, e2
            break
        text = self.masked[s:e]
        conj = Conjunct(span=(s, e), text=self.sql[s:e])

        col_col = re.fullmatch(rf"{_QUALIFIED}\s*(=|<=>)\s*{_QUALIFIED}", text)
        if col_col:
            conj.left = Operand("column", col_col.group(2).lower(), (col_col.group(1) or "").lower() or None)
            conj.op = "="
            conj.right = Operand("column", col_col.group(5).lower(), (col_col.group(4) or "").lower() or None)
            return conj

        col_first = re.fullmatch(
            rf"{_QUALIFIED}\s*(=|<=>|LIKE)\s*({_LITERAL_MASKED})", text, re.IGNORECASE
        )
        if col_first:
            conj.left = Operand("column", col_first.group(2).lower(), (col_first.group(1) or "").lower() or None)
            conj.op = col_first.group(3).upper().replace("<=>", "=")
            conj.right = self._operand(s + col_first.start(4), col_first.group(4))
            conj.values = [conj.right]
            return conj

        lit_first = re.fullmatch(rf"({_LITERAL_MASKED})\s*(=|<=>)\s*{_QUALIFIED}", text, re.IGNORECASE)
        if lit_first:
            conj.left = Operand("column", lit_first.group(4).lower(), (lit_first.group(3) or "").lower() or None)
            conj.op = "="
            conj.right = self._operand(s + lit_first.start(1), lit_first.group(1))
            conj.values = [conj.right]
            return conj

        in_list = re.fullmatch(rf"{_QUALIFIED}\s+IN\s*\(([^()]*)\)", text, re.IGNORECASE)
        if in_list:
            conj.left = Operand("column", in_list.group(2).lower(), (in_list.group(1) or "").lower() or None)
            conj.op = "IN"
            conj.values = self._list_operands(s + in_list.start(3), in_list.group(3)) or []
            conj.right = Operand("other")
        return conj

    def _list_operands(self, start: int, inner: str) -> Optional[List[Operand]]:
        """Items of an IN list beginning at ``start``; None unless every item is a literal or parameter."""
        operands: List[Operand] = []
        for s, e in split_csv(inner):
            operand = self.operand_at((start + s, start + e))
            if operand.kind not in ("literal", "param"):
                return None
            operands.append(operand)
        return operands

    def column_predicates(self, columns: Tuple[str, ...]) -> List[Predicate]:
        """Every comparison on one of ``columns``, in either operand order, at any depth."""
        names = "|".join(re.escape(c) for c in columns)
        found: List[Predicate] = []
        col_first = re.compile(
            rf"(?<![\w.`])(?:`?(\w+)`?\.)?`?({names})`?\s*({_COMPARISON_OPS})", re.IGNORECASE
        )
        for m in col_first.finditer(self.masked):
            op = _norm_keyword(m.group(3))
            operands = self._read_operands(m.end(), op)
            found.append(Predicate(
                column=m.group(2).lower(),
                qualifier=(m.group(1) or "").lower() or None,
                op=op,
                operands=operands,
                start=m.start(),
                depth=self.depths[m.start()],
            ))
        lit_first = re.compile(
            rf"({_LITERAL_MASKED})\s*(<=>|!=|<>|<=|>=|=|<|>)\s*(?:`?(\w+)`?\.)?`?({names})\b", re.IGNORECASE
        )
        for m in lit_first.finditer(self.masked):
            found.append(Predicate(
                column=m.group(4).lower(),
                qualifier=(m.group(3) or "").lower() or None,
                op=m.group(2),
                operands=[self._operand(m.start(1), m.group(1))],
                start=m.start(),
                depth=self.depths[m.start()],
            ))
        return found

    def _read_operands(self, pos: int, op: str) -> List[Operand]:
        rest = self.masked[pos:]
        lead = len(rest) - len(rest.lstrip())
        start = pos + lead
        rest = rest.lstrip()
        if op.endswith("IN") and rest.startswith("("):
            close = rest.find(")")
            inner = rest[1:close] if close != -1 else rest[1:]
            if "(" in inner or re.search(r"\bSELECT\b", inner, re.IGNORECASE):
                return [Operand("other")]
            return self._list_operands(start + 1, inner) or [Operand("other")]
        lit = re.match(_LITERAL_MASKED, rest)
        if lit:
            return [self._operand(start, lit.group(0))]
        col = re.match(_QUALIFIED, rest)
        if col:
            return [Operand("column", col.group(2).lower(), (col.group(1) or "").lower() or None)]
        return [Operand("other")]

    def insert_shape(self) -> Optional[Tuple[List[str], str, int]]:
        """(column list, 'VALUES' | 'SELECT', body offset) for INSERT INTO t (cols) VALUES|SELECT ..."""
        m = re.match(
            rf"\s*INSERT\s+(?:IGNORE\s+)?INTO\s+{_QUALIFIED}\s*\(([^()]*)\)\s*(VALUES|VALUE|SELECT)\b",
            self.masked,
            re.IGNORECASE,
        )
        if not m:
            return None
        columns = [c.strip().strip("`").lower() for c in m.group(3).split(",")]
        body = "SELECT" if m.group(4).upper() == "SELECT" else "VALUES"
        return columns, body, m.end(4) if body == "VALUES" else m.start(4)

    def value_tuples(self, start: int) -> Optional[List[List[Span]]]:
        """Item spans of each ``(...)`` tuple after VALUES; None when anything else follows."""
        tuples: List[List[Span]] = []
        n = len(self.masked)
        i = start
        while True:
            while i < n and self.masked[i].isspace():
                i += 1
            if i >= n or self.masked[i] != "(":
                return None
            j = i + 1
            while j < n and not (self.masked[j] == ")" and self.depths[j] == self.depths[i]):
                j += 1
            if j >= n:
                return None
            tuples.append([(i + 1 + s, i + 1 + e) for s, e in split_csv(self.masked[i + 1:j])])
            i = j + 1
            while i < n and self.masked[i].isspace():
                i += 1
            if i < n and self.masked[i] == ",":
                i += 1
                continue
            break
        if self.masked[i:].strip():
            return None
        return tuples

    def operand_at(self, span: Span) -> Operand:
        """Classify the single expression covering ``span`` (a VALUES item or select-list item)."""
        s, e = span
        text = self.masked[s:e]
        lead = len(text) - len(text.lstrip())
        token = text.strip()
        if re.fullmatch(_LITERAL_MASKED, token):
            return self._operand(s + lead, token)
        col = re.fullmatch(_QUALIFIED, token)
        if col:
            return Operand("column", col.group(2).lower(), (col.group(1) or "").lower() or None)
        return Operand("other")

    def occurrences(self, column: str, span: Span) -> List[int]:
        pattern = re.compile(rf"(?<![\w])`?{re.escape(column)}`?(?![\w])", re.IGNORECASE)
        return [span[0] + m.start() for m in pattern.finditer(self.masked[span[0]:span[1]])]

    def placeholders(self) -> List[str]:
        names = [m.group(1).lower() for m in re.finditer(r"(?<![\w:]):([A-Za-z_]\w*)", self.masked)]
        if "?" in self.masked or re.search(r"%\(?\w*\)?s\b", self.masked):
            names.append("?")
        return names


def split_csv(text: str) -> List[Tuple[int, int]]:
    """Split on commas at paren depth 0 of ``text`` (which must already be masked)."""
    parts: List[Tuple[int, int]] = []
    depth = 0
    cursor = 0
    for i, ch in enumerate(text):
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        elif ch == "," and depth == 0:
            parts.append((cursor, i))
            cursor = i + 1
    parts.append((cursor, len(text)))
    return parts
