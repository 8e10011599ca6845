"""
Access Control Validator.

Decides whether a generated statement stays inside the caller's allowed
scope. It only accepts or rejects; it never edits the SQL. Anything it cannot
confidently attribute to the caller's scope is rejected.

Scope is tracked per table alias. An alias is "organization-scoped" when a
top-level WHERE conjunct pins its organization_id to the caller's
organization, and "user-scoped" when a top-level conjunct pins its user_id
(or, for managers, manager_id or a resolved name) to people the caller may
see. Scope flows across equality joins on user_id / organization_id.
"""
from __future__ import annotations

import logging
import re
from typing import Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

from backend.services.caller import CallerContext
from backend.services.errors import StoreError, TransientFailure
from backend.services.runtime import log_event
from backend.services.sql_text import Conjunct, Operand, SqlText, TableRef, split_csv, strip_trailing_semicolon
from backend.services.verdict import Sentinel, Verdict

logger = logging.getLogger(__name__)

TENANT_TABLES: FrozenSet[str] = frozenset({"users", "leavebalances", "payrolldata", "companypolicies"})
USER_OWNED_TABLES: FrozenSet[str] = frozenset({"users", "leavebalances", "payrolldata"})
KNOWN_TABLES: FrozenSet[str] = TENANT_TABLES | {"dual"}

NAME_COLUMNS = ("first_name", "last_name")
_COLUMN_TABLES: Dict[str, FrozenSet[str]] = {
    "user_id": USER_OWNED_TABLES,
    "organization_id": TENANT_TABLES,
    "manager_id": frozenset({"users"}),
    "first_name": frozenset({"users"}),
    "last_name": frozenset({"users"}),
}
_EQUALITY_OPS = {"=", "<=>", "IN"}
_IDENTITY_COLUMNS_NO_WRITE = {"organization_id", "user_id"}

DIRECT_REPORTS_SQL = (
    "SELECT user_id FROM Users WHERE manager_id = :manager_id AND organization_id = :organization_id"
)
USER_ORGANIZATIONS_SQL = "SELECT organization_id FROM Users WHERE user_id = :user_id"


class _Rejected(Exception):
    def __init__(self, reason: str, sentinel: Sentinel = Sentinel.ACCESS_DENIED):
        super().__init__(reason)
        self.verdict = Verdict.deny(reason, sentinel)


class _Scope:
    """Aliases known to be organization-scoped / user-scoped for one statement."""

    def __init__(self) -> None:
        self.org: Set[str] = set()
        self.user: Set[str] = set()
        self.user_edges: List[Tuple[str, str]] = []
        self.org_edges: List[Tuple[str, str]] = []

    def propagate(self) -> None:
        changed = True
        while changed:
            changed = False
            for a, b in self.user_edges:
                for x, y in ((a, b), (b, a)):
                    if x in self.user and y not in self.user:
                        self.user.add(y)
                        changed = True
                    if x in self.org and y not in self.org:
                        self.org.add(y)
                        changed = True
            for a, b in self.org_edges:
                for x, y in ((a, b), (b, a)):
                    if x in self.org and y not in self.org:
                        self.org.add(y)
                        changed = True


class AccessControlValidator:
    def __init__(self, store):
        self._store = store

    def validate(self, sql: str, caller: CallerContext) -> Verdict:
        try:
            _Check(self._store, caller, sql).run()
        except _Rejected as r:
            verdict = r.verdict
        except (StoreError, TransientFailure) as e:
            verdict = Verdict.deny(f"scope_lookup_failed:{type(e).__name__}")
        else:
            return Verdict.allow()
        log_event(
            logger,
            logging.WARNING,
            "access_denied",
            role=caller.role.value,
            reason=verdict.reason,
            sentinel=verdict.sentinel.value if verdict.sentinel else None,
            sql=(sql or "")[:1000],
        )
        return verdict


class _Check:
    """One validation run; holds lookups cached for the duration of the call."""

    def __init__(self, store, caller: CallerContext, sql: str):
        self.store = store
        self.caller = caller
        self.rule = caller.rule
        self.stmt = SqlText(strip_trailing_semicolon(sql))
        self.refs: List[TableRef] = []
        self.aliases: Dict[str, str] = {}
        self.scope = _Scope()
        self._authorized: Optional[FrozenSet[str]] = None
        self.resolved_ids: Set[str] = set()

    # -- lookups ----------------------------------------------------------

    def authorized_ids(self) -> FrozenSet[str]:
        if self._authorized is None:
            ids = {self.caller.user_id}
            if self.rule.includes_direct_reports:
                rows = self.store.fetch_all(
                    DIRECT_REPORTS_SQL,
                    {"manager_id": self.caller.user_id, "organization_id": self.caller.organization_id},
                )
                ids.update(str(r["user_id"]) for r in rows)
            self._authorized = frozenset(ids)
        return self._authorized

    def _organizations_of(self, user_id: str) -> Set[str]:
        rows = self.store.fetch_all(USER_ORGANIZATIONS_SQL, {"user_id": user_id})
        return {str(r["organization_id"]) for r in rows}

    def _users_matching(self, conditions: List[Tuple[str, str, str]], same_org: bool) -> Set[str]:
        clauses = ["organization_id = :organization_id" if same_org else "organization_id <> :organization_id"]
        params = {"organization_id": self.caller.organization_id}
        for i, (column, op, value) in enumerate(conditions):
            clauses.append(f"{column} {'LIKE' if op == 'LIKE' else '='} :v{i}")
            params[f"v{i}"] = value
        rows = self.store.fetch_all("SELECT user_id FROM Users WHERE " + " AND ".join(clauses), params)
        return {str(r["user_id"]) for r in rows}

    # -- driver -----------------------------------------------------------

    def run(self) -> None:
        stmt = self.stmt
        if stmt.kind not in {"SELECT", "UPDATE", "INSERT"}:
            raise _Rejected(f"statement_kind:{stmt.kind or 'empty'}")
        self._check_shape()
        self._check_tables()
        conjuncts = self._collect_conjuncts()
        self._check_organization_literals()
        self._apply_organization_scope(conjuncts)

        if self.rule.organization_wide:
            self._check_admin_identities(conjuncts)
        else:
            self._check_identity_literals()
            self._apply_user_scope(conjuncts)

        self.scope.propagate()
        self._require_scope()

        if stmt.kind == "UPDATE":
            self._check_update()
        elif stmt.kind == "INSERT":
            self._check_insert()

    # -- structure --------------------------------------------------------

    def _check_shape(self) -> None:
        stmt = self.stmt
        selects = len(re.findall(r"\bSELECT\b", stmt.masked, re.IGNORECASE))
        allowed = {"SELECT": 1, "INSERT": 1, "UPDATE": 0}[stmt.kind]
        if selects > allowed:
            raise _Rejected("nested_select")
        if stmt.uses_join_shortcuts():
            raise _Rejected("using_or_natural_join")
        if stmt.kind == "SELECT" and any(name == "INTO" for name, _, _ in stmt.clauses):
            raise _Rejected("select_into")
        if any(name == "DUPLICATE" for name, _, _ in stmt.clauses):
            raise _Rejected("on_duplicate_key")
        unbound = [p for p in stmt.placeholders() if p not in ("user_id", "organization_id")]
        if unbound:
            raise _Rejected(f"unbound_parameter:{unbound[0]}")

    def _check_tables(self) -> None:
        refs = self.stmt.table_refs()
        for ref in refs:
            if ref.table not in KNOWN_TABLES:
                raise _Rejected(f"unknown_table:{ref.table}")
        if not refs and self.stmt.kind != "SELECT":
            raise _Rejected("write_without_table")
        self.aliases = {ref.alias: ref.table for ref in refs}
        self.refs = refs

    def _source_aliases(self) -> List[str]:
        refs = self.refs[1:] if self.stmt.kind == "INSERT" else self.refs
        return [r.alias for r in refs if r.table in TENANT_TABLES]

    def _collect_conjuncts(self) -> List[Conjunct]:
        stmt = self.stmt
        where = stmt.where_span()
        if where is not None and stmt.has_top_level(where, r"\bOR\b|\|\||\bXOR\b"):
            raise _Rejected("top_level_or")
        for span in stmt.on_spans():
            if stmt.has_top_level(span, r"\bOR\b|\|\||\bXOR\b"):
                raise _Rejected("or_in_join_condition")
            for conj in stmt.conjuncts(span):
                self._record_edge(conj)
        where_conjuncts = stmt.conjuncts(where)
        for conj in where_conjuncts:
            self._record_edge(conj)
        return where_conjuncts

    def _record_edge(self, conj: Conjunct) -> None:
        left, right = conj.left, conj.right
        if conj.op != "=" or left.kind != "column" or right.kind != "column":
            return
        if left.value != right.value or left.value not in ("user_id", "organization_id"):
            return
        for a in self._aliases_for(left):
            for b in self._aliases_for(right):
                if a == b:
                    continue
                if left.value == "user_id":
                    self.scope.user_edges.append((a, b))
                else:
                    self.scope.org_edges.append((a, b))

    def _aliases_for(self, operand: Operand) -> List[str]:
        if operand.qualifier:
            if operand.qualifier not in self.aliases:
                raise _Rejected(f"unknown_qualifier:{operand.qualifier}")
            return [operand.qualifier]
        tables = _COLUMN_TABLES.get(operand.value or "", TENANT_TABLES)
        return [alias for alias, table in self.aliases.items() if table in tables]

    # -- organization -----------------------------------------------------

    def _is_caller_org(self, operand: Operand) -> bool:
        if operand.kind == "param":
            return operand.value == "organization_id"
        return operand.kind == "literal" and operand.value == self.caller.organization_id

    def _check_organization_literals(self) -> None:
        for pred in self.stmt.column_predicates(("organization_id",)):
            for operand in pred.operands:
                if operand.kind == "literal" and operand.value != self.caller.organization_id:
                    raise _Rejected("foreign_organization_literal", Sentinel.CROSS_ORG_ACCESS)
                if operand.kind == "param" and operand.value != "organization_id":
                    raise _Rejected("organization_bound_to_wrong_parameter")
            if pred.op not in _EQUALITY_OPS:
                raise _Rejected(f"organization_operator:{pred.op}")

    def _apply_organization_scope(self, conjuncts: List[Conjunct]) -> None:
        for conj in conjuncts:
            if conj.left.kind != "column" or conj.left.value != "organization_id":
                continue
            if conj.op not in ("=", "IN") or not conj.values:
                continue
            if all(self._is_caller_org(v) for v in conj.values):
                self.scope.org.update(self._aliases_for(conj.left))

    # -- identity (employee / manager) -------------------------------------

    def _is_authorized_user(self, operand: Operand) -> bool:
        if operand.kind == "param":
            return operand.value == "user_id"
        return operand.kind == "literal" and operand.value in self.authorized_ids()

    def _check_identity_literals(self) -> None:
        stmt = self.stmt
        for pred in stmt.column_predicates(("user_id",)):
            for operand in pred.operands:
                if operand.kind in ("literal", "param") and not self._is_authorized_user(operand):
                    raise _Rejected("user_outside_scope")
                if operand.kind == "other":
                    raise _Rejected("unverifiable_user_predicate")
            if pred.op not in _EQUALITY_OPS and any(o.kind != "column" for o in pred.operands):
                raise _Rejected(f"user_operator:{pred.op}")
        for pred in stmt.column_predicates(("manager_id",)):
            for operand in pred.operands:
                if operand.kind == "literal" and operand.value != self.caller.user_id:
                    raise _Rejected("manager_outside_scope")
                if operand.kind == "param" and operand.value != "user_id":
                    raise _Rejected("manager_bound_to_wrong_parameter")

        name_spans = [s for s in (stmt.where_span(), stmt.having_span()) if s] + stmt.on_spans()
        name_hits = [pos for col in NAME_COLUMNS for span in name_spans for pos in stmt.occurrences(col, span)]
        if not name_hits:
            return
        if not self.rule.allows_name_lookup:
            raise _Rejected("name_lookup_not_permitted", self._sentinel_for_names())

    def _sentinel_for_names(self) -> Sentinel:
        """CROSS_ORG_ACCESS when a named person exists only in another organization."""
        for pred in self.stmt.column_predicates(NAME_COLUMNS):
            for operand in pred.operands:
                if operand.kind != "literal" or not operand.value:
                    continue
                cond = [(pred.column, "LIKE" if "LIKE" in pred.op else "=", operand.value)]
                if not self._users_matching(cond, same_org=True) and self._users_matching(cond, same_org=False):
                    return Sentinel.CROSS_ORG_ACCESS
        return Sentinel.ACCESS_DENIED

    def _name_groups(self, conjuncts: List[Conjunct]) -> Dict[str, List[Tuple[str, str, str]]]:
        groups: Dict[str, List[Tuple[str, str, str]]] = {}
        for conj in conjuncts:
            if conj.left.kind != "column" or conj.left.value not in NAME_COLUMNS:
                continue
            if conj.op not in ("=", "LIKE") or len(conj.values) != 1 or conj.values[0].kind != "literal":
                continue
            aliases = self._aliases_for(conj.left)
            if len(aliases) != 1:
                raise _Rejected("ambiguous_name_predicate")
            groups.setdefault(aliases[0], []).append((conj.left.value, conj.op, conj.values[0].value or ""))
        return groups

    def _apply_user_scope(self, conjuncts: List[Conjunct]) -> None:
        stmt = self.stmt
        name_conjunct_spans: List[Tuple[int, int]] = []
        for conj in conjuncts:
            col = conj.left.value if conj.left.kind == "column" else None
            if col == "user_id" and conj.op in ("=", "IN") and conj.values:
                if all(self._is_authorized_user(v) for v in conj.values):
                    self.scope.user.update(self._aliases_for(conj.left))
            elif col == "manager_id" and self.rule.includes_direct_reports and conj.op == "=":
                value = conj.values[0] if conj.values else None
                if value is not None and (
                    (value.kind == "literal" and value.value == self.caller.user_id)
                    or (value.kind == "param" and value.value == "user_id")
                ):
                    self.scope.user.update(self._aliases_for(conj.left))
            elif col in NAME_COLUMNS and conj.op in ("=", "LIKE"):
                name_conjunct_spans.append(conj.span)

        if not self.rule.allows_name_lookup:
            return
        # Every name reference must sit in a top-level "name = 'literal'" conjunct.
        spans = [s for s in (stmt.where_span(), stmt.having_span()) if s] + stmt.on_spans()
        for col in NAME_COLUMNS:
            for span in spans:
                for pos in stmt.occurrences(col, span):
                    if not any(s <= pos < e for s, e in name_conjunct_spans):
                        raise _Rejected("unverifiable_name_predicate")

        for alias, conditions in self._name_groups(conjuncts).items():
            ids = self._users_matching(conditions, same_org=True)
            if not ids:
                if self._users_matching(conditions, same_org=False):
                    raise _Rejected("named_user_in_other_organization", Sentinel.CROSS_ORG_ACCESS)
                raise _Rejected("named_user_not_found")
            if not ids <= self.authorized_ids():
                raise _Rejected("named_user_outside_scope")
            self.resolved_ids.update(ids)
            self.scope.user.add(alias)

    # -- identity (admin) -------------------------------------------------

    def _check_admin_identities(self, conjuncts: List[Conjunct]) -> None:
        literals: Set[str] = set()
        for pred in self.stmt.column_predicates(("user_id", "manager_id")):
            literals.update(o.value for o in pred.operands if o.kind == "literal" and o.value)
        literals.update(self._insert_identity_values())
        for user_id in sorted(literals):
            orgs = self._organizations_of(user_id)
            if orgs and self.caller.organization_id not in orgs:
                raise _Rejected("user_in_other_organization", Sentinel.CROSS_ORG_ACCESS)
        for conditions in self._name_groups(conjuncts).values():
            if not self._users_matching(conditions, same_org=True) and self._users_matching(
                conditions, same_org=False
            ):
                raise _Rejected("named_user_in_other_organization", Sentinel.CROSS_ORG_ACCESS)

    # -- coverage ---------------------------------------------------------

    def _require_scope(self) -> None:
        for alias in self._source_aliases():
            if alias not in self.scope.org:
                raise _Rejected(f"missing_organization_scope:{alias}")
            if self.rule.organization_wide:
                continue
            if self.aliases[alias] in USER_OWNED_TABLES and alias not in self.scope.user:
                raise _Rejected(f"missing_user_scope:{alias}")

    # -- writes -----------------------------------------------------------

    def _assignments(self) -> List[Tuple[str, str]]:
        span = self.stmt.set_span()
        if span is None:
            raise _Rejected("update_without_set")
        out: List[Tuple[str, str]] = []
        text = self.stmt.masked[span[0]:span[1]]
        for s, e in split_csv(text):
            m = re.match(r"\s*(?:`?(\w+)`?\.)?`?(\w+)`?\s*=", text[s:e])
            if not m:
                raise _Rejected("unparsable_assignment")
            column = m.group(2).lower()
            qualifier = (m.group(1) or "").lower()
            if qualifier:
                if qualifier not in self.aliases:
                    raise _Rejected(f"unknown_qualifier:{qualifier}")
                table = self.aliases[qualifier]
            elif len(self.refs) == 1:
                table = self.refs[0].table
            elif self.rule.writable_columns is None:
                table = ""
            else:
                raise _Rejected("ambiguous_assignment_target")
            out.append((table, column))
        return out

    def _check_update(self) -> None:
        assignments = self._assignments()
        writable = self.rule.writable_columns
        for table, column in assignments:
            if column in _IDENTITY_COLUMNS_NO_WRITE:
                raise _Rejected(f"identity_column_write:{column}")
            if writable is not None and column not in writable.get(table, frozenset()):
                raise _Rejected(f"column_not_writable:{table}.{column}")
        if self.rule.forbid_self_approval and any(c == "leaves_taken" for _, c in assignments):
            if self._targets_self():
                raise _Rejected("self_approval")

    def _targets_self(self) -> bool:
        if self.caller.user_id in self.resolved_ids:
            return True
        for pred in self.stmt.column_predicates(("user_id",)):
            for operand in pred.operands:
                if operand.kind == "param" and operand.value == "user_id":
                    return True
                if operand.kind == "literal" and operand.value == self.caller.user_id:
                    return True
        return False

    def _check_insert(self) -> None:
        if not self.rule.may_insert:
            raise _Rejected("insert_not_permitted")
        shape = self.stmt.insert_shape()
        if shape is None:
            raise _Rejected("unsupported_insert_shape")
        columns, body, offset = shape
        target = self.refs[0].table
        if target not in TENANT_TABLES:
            return
        if "organization_id" not in columns:
            raise _Rejected("insert_without_organization")
        org_index = columns.index("organization_id")
        for items in self._insert_rows(columns, body, offset):
            operand = self.stmt.operand_at(items[org_index])
            if operand.kind == "literal" and operand.value != self.caller.organization_id:
                raise _Rejected("insert_into_other_organization", Sentinel.CROSS_ORG_ACCESS)
            if self._is_caller_org(operand):
                continue
            if operand.kind == "column" and operand.value == "organization_id" and body == "SELECT":
                if all(a in self.scope.org for a in self._aliases_for(operand)):
                    continue
            raise _Rejected("insert_organization_unverifiable")

    def _insert_rows(self, columns: List[str], body: str, offset: int) -> Iterable[List[Tuple[int, int]]]:
        if body == "VALUES":
            rows = self.stmt.value_tuples(offset)
            if rows is None:
                raise _Rejected("unsupported_insert_shape")
        else:
            span = self.stmt.select_list_span()
            if span is None:
                raise _Rejected("unsupported_insert_shape")
            rows = [[(span[0] + s, span[0] + e) for s, e in split_csv(self.stmt.masked[span[0]:span[1]])]]
        for items in rows:
            if len(items) != len(columns):
                raise _Rejected("insert_column_count_mismatch")
        return rows

    def _insert_identity_values(self) -> Set[str]:
        if self.stmt.kind != "INSERT":
            return set()
        shape = self.stmt.insert_shape()
        if shape is None or shape[1] != "VALUES":
            return set()
        columns, _, offset = shape
        rows = self.stmt.value_tuples(offset) or []
        values: Set[str] = set()
        for column in ("user_id", "manager_id"):
            if column not in columns:
                continue
            idx = columns.index(column)
            for items in rows:
                if idx < len(items):
                    operand = self.stmt.operand_at(items[idx])
                    if operand.kind == "literal" and operand.value:
                        values.add(operand.value)
        return values
