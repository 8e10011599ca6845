import sys
from pathlib import Path

ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT))

from backend.services.access_control import AccessControlValidator
from backend.services.errors import StoreError
from backend.services.verdict import Sentinel


def _check(store, caller, sql):
    return AccessControlValidator(store).validate(sql, caller)


# -- employee --------------------------------------------------------------

def test_employee_own_rows_allowed(store, callers):
    verdict = _check(
        store,
        callers["TCI_EMP002"],
        "SELECT * FROM LeaveBalances WHERE user_id='TCI_EMP002' AND organization_id='TECHCORP_IN'",
    )
    assert verdict.allowed


def test_employee_bound_placeholders_allowed(store, callers):
    verdict = _check(
        store,
        callers["TCI_EMP002"],
        "SELECT * FROM PayrollData WHERE user_id = :user_id AND organization_id = :organization_id",
    )
    assert verdict.allowed


def test_employee_other_user_denied(store, callers):
    verdict = _check(
        store,
        callers["TCI_EMP002"],
        "SELECT * FROM PayrollData WHERE user_id = 'TCI_EMP001' AND organization_id = 'TECHCORP_IN'",
    )
    assert not verdict.allowed
    assert verdict.sentinel is Sentinel.ACCESS_DENIED
    assert verdict.reason == "user_outside_scope"


def test_employee_without_user_filter_denied(store, callers):
    verdict = _check(
        store,
        callers["TCI_EMP002"],
        "SELECT * FROM PayrollData WHERE organization_id = 'TECHCORP_IN'",
    )
    assert not verdict.allowed
    assert verdict.reason == "missing_user_scope:payrolldata"


def test_missing_organization_filter_denied(store, callers):
    verdict = _check(store, callers["TCI_EMP002"], "SELECT * FROM LeaveBalances WHERE user_id = 'TCI_EMP002'")
    assert not verdict.allowed
    assert verdict.reason == "missing_organization_scope:leavebalances"


def test_employee_name_lookup_denied(store, callers):
    verdict = _check(
        store,
        callers["TCI_EMP002"],
        "SELECT * FROM Users WHERE first_name = 'Ananya' AND organization_id = 'TECHCORP_IN'",
    )
    assert not verdict.allowed
    assert verdict.sentinel is Sentinel.ACCESS_DENIED


def test_employee_name_in_other_organization_is_cross_org(store, callers):
    verdict = _check(
        store,
        callers["TCI_EMP002"],
        "SELECT user_id FROM Users WHERE first_name = 'Geeta' AND organization_id = 'TECHCORP_IN'",
    )
    assert not verdict.allowed
    assert verdict.sentinel is Sentinel.CROSS_ORG_ACCESS


def test_top_level_or_denied(store, callers):
    verdict = _check(
        store,
        callers["TCI_EMP002"],
        "SELECT * FROM PayrollData WHERE user_id = 'TCI_EMP002' AND organization_id = 'TECHCORP_IN' "
        "OR user_id = 'TCI_EMP001'",
    )
    assert not verdict.allowed


def test_negated_user_filter_does_not_scope(store, callers):
    verdict = _check(
        store,
        callers["TCI_EMP002"],
        "SELECT * FROM PayrollData WHERE NOT (user_id = 'TCI_EMP002') AND organization_id = 'TECHCORP_IN'",
    )
    assert not verdict.allowed


def test_comma_join_to_unscoped_table_denied(store, callers):
    verdict = _check(
        store,
        callers["TCI_EMP002"],
        "SELECT p.* FROM LeaveBalances l, PayrollData p "
        "WHERE l.user_id = 'TCI_EMP002' AND l.organization_id = 'TECHCORP_IN'",
    )
    assert not verdict.allowed
    assert verdict.reason == "missing_organization_scope:p"


def test_join_on_user_id_carries_scope(store, callers):
    verdict = _check(
        store,
        callers["TCI_EMP002"],
        "SELECT u.first_name, lb.leave_type FROM LeaveBalances lb INNER JOIN Users u ON lb.user_id = u.user_id "
        "WHERE lb.user_id = 'TCI_EMP002' AND lb.organization_id = 'TECHCORP_IN'",
    )
    assert verdict.allowed


def test_subquery_denied(store, callers):
    verdict = _check(
        store,
        callers["TCI_EMP002"],
        "SELECT * FROM PayrollData WHERE user_id IN (SELECT user_id FROM Users) AND organization_id = 'TECHCORP_IN'",
    )
    assert verdict.reason == "nested_select"


def test_unknown_table_denied(store, callers):
    verdict = _check(
        store,
        callers["TCI_ADM001"],
        "SELECT * FROM information_schema.tables WHERE organization_id = 'TECHCORP_IN'",
    )
    assert verdict.reason == "unknown_table:tables"


def test_employee_may_request_leave(store, callers):
    sql = (
        "UPDATE LeaveBalances SET leaves_pending_approval = leaves_pending_approval + 2, "
        "last_updated = CURRENT_TIMESTAMP WHERE user_id = 'TCI_EMP002' AND organization_id = 'TECHCORP_IN' "
        "AND leave_type = 'Casual Leave'"
    )
    assert _check(store, callers["TCI_EMP002"], sql).allowed


def test_employee_cannot_change_salary(store, callers):
    verdict = _check(
        store,
        callers["TCI_EMP002"],
        "UPDATE PayrollData SET base_salary = 99999 WHERE user_id = 'TCI_EMP002' AND organization_id = 'TECHCORP_IN'",
    )
    assert verdict.reason == "column_not_writable:payrolldata.base_salary"


def test_employee_cannot_insert(store, callers):
    verdict = _check(
        store,
        callers["TCI_EMP002"],
        "INSERT INTO CompanyPolicies (organization_id, policy_name, policy_text) "
        "VALUES ('TECHCORP_IN', 'Gym', 'Free gym')",
    )
    assert not verdict.allowed


# -- manager ---------------------------------------------------------------

def test_manager_team_query_allowed(store, callers):
    verdict = _check(
        store,
        callers["TCI_MGR001"],
        "SELECT u.first_name, lb.leave_type, lb.leaves_pending_approval FROM LeaveBalances lb "
        "INNER JOIN Users u ON lb.user_id = u.user_id "
        "WHERE u.manager_id = 'TCI_MGR001' AND u.organization_id = 'TECHCORP_IN'",
    )
    assert verdict.allowed


def test_manager_direct_report_by_id_allowed(store, callers):
    verdict = _check(
        store,
        callers["TCI_MGR001"],
        "SELECT * FROM LeaveBalances WHERE user_id = 'TCI_EMP003' AND organization_id = 'TECHCORP_IN'",
    )
    assert verdict.allowed


def test_manager_non_report_by_name_denied(store, callers):
    verdict = _check(
        store,
        callers["TCI_MGR001"],
        "SELECT pd.base_salary FROM PayrollData pd INNER JOIN Users u ON pd.user_id = u.user_id "
        "WHERE u.first_name = 'Ananya' AND u.organization_id = 'TECHCORP_IN'",
    )
    assert not verdict.allowed
    assert verdict.reason == "named_user_outside_scope"


def test_manager_approves_report_leave(store, callers):
    sql = (
        "UPDATE LeaveBalances lb INNER JOIN Users u ON lb.user_id = u.user_id "
        "SET lb.leaves_taken = lb.leaves_taken + lb.leaves_pending_approval, lb.leaves_pending_approval = 0, "
        "lb.last_updated = NOW() WHERE u.first_name = 'Rahul' AND lb.leave_type = 'Earned Leave' "
        "AND u.organization_id = 'TECHCORP_IN'"
    )
    assert _check(store, callers["TCI_MGR001"], sql).allowed


def test_manager_cannot_approve_own_leave(store, callers):
    sql = (
        "UPDATE LeaveBalances SET leaves_taken = leaves_taken + leaves_pending_approval, "
        "leaves_pending_approval = 0 WHERE user_id = 'TCI_MGR001' AND organization_id = 'TECHCORP_IN'"
    )
    verdict = _check(store, callers["TCI_MGR001"], sql)
    assert verdict.reason == "self_approval"


def test_manager_cannot_change_salary(store, callers):
    sql = "UPDATE PayrollData SET base_salary = 1 WHERE user_id = 'TCI_EMP002' AND organization_id = 'TECHCORP_IN'"
    assert not _check(store, callers["TCI_MGR001"], sql).allowed


# -- IN lists ---------------------------------------------------------------

def test_in_list_with_column_item_does_not_scope_user(store, callers):
    verdict = _check(
        store,
        callers["TCI_EMP002"],
        "SELECT * FROM PayrollData WHERE organization_id = 'TECHCORP_IN' AND user_id IN ('TCI_EMP002', user_id)",
    )
    assert not verdict.allowed
    assert verdict.reason == "unverifiable_user_predicate"


def test_in_list_with_column_item_does_not_scope_organization(store, callers):
    verdict = _check(
        store,
        callers["GS_ADM001"],
        "SELECT * FROM PayrollData WHERE organization_id IN ('GLOBALSOFT', organization_id)",
    )
    assert not verdict.allowed
    assert verdict.reason == "missing_organization_scope:payrolldata"


def test_in_list_with_expression_item_does_not_scope(store, callers):
    verdict = _check(
        store,
        callers["GS_ADM001"],
        "SELECT * FROM Users WHERE organization_id IN ('GLOBALSOFT', LOWER(organization_id))",
    )
    assert not verdict.allowed


def test_in_list_of_authorized_literals_allowed(store, callers):
    verdict = _check(
        store,
        callers["TCI_MGR001"],
        "SELECT * FROM LeaveBalances WHERE user_id IN ('TCI_MGR001', 'TCI_EMP002', :user_id) "
        "AND organization_id IN ('TECHCORP_IN')",
    )
    assert verdict.allowed


# -- admin -----------------------------------------------------------------

def test_admin_organization_wide_read_allowed(store, callers):
    verdict = _check(
        store,
        callers["TCI_ADM001"],
        "SELECT u.user_id, lb.leave_type, lb.leaves_pending_approval FROM LeaveBalances lb "
        "INNER JOIN Users u ON lb.user_id = u.user_id "
        "WHERE lb.leaves_pending_approval > 0 AND lb.organization_id = 'TECHCORP_IN' ORDER BY u.first_name",
    )
    assert verdict.allowed


def test_admin_other_organization_literal_is_cross_org(store, callers):
    verdict = _check(store, callers["TCI_ADM001"], "SELECT * FROM Users WHERE organization_id = 'GLOBALSOFT'")
    assert verdict.sentinel is Sentinel.CROSS_ORG_ACCESS


def test_admin_other_organization_user_is_cross_org(store, callers):
    verdict = _check(
        store,
        callers["TCI_ADM001"],
        "SELECT * FROM Users WHERE user_id = 'GS_EMP001' AND organization_id = 'TECHCORP_IN'",
    )
    assert verdict.sentinel is Sentinel.CROSS_ORG_ACCESS


def test_admin_insert_select_allowed(store, callers):
    sql = (
        "INSERT INTO PayrollData (organization_id, user_id, base_salary, ctc) "
        "SELECT 'TECHCORP_IN', user_id, 30000, 55000 FROM Users "
        "WHERE first_name = 'Amit' AND organization_id = 'TECHCORP_IN'"
    )
    assert _check(store, callers["TCI_ADM001"], sql).allowed


def test_admin_insert_into_other_organization_denied(store, callers):
    sql = (
        "INSERT INTO CompanyPolicies (organization_id, policy_name, policy_text) "
        "VALUES ('GLOBALSOFT', 'Gym', 'Free gym')"
    )
    verdict = _check(store, callers["TCI_ADM001"], sql)
    assert verdict.sentinel is Sentinel.CROSS_ORG_ACCESS


def test_admin_insert_without_organization_denied(store, callers):
    sql = "INSERT INTO CompanyPolicies (policy_name, policy_text) VALUES ('Gym', 'Free gym')"
    assert _check(store, callers["TCI_ADM001"], sql).reason == "insert_without_organization"


def test_admin_cannot_move_rows_between_organizations(store, callers):
    sql = "UPDATE Users SET organization_id = 'GLOBALSOFT' WHERE user_id = 'TCI_EMP002' AND organization_id = 'TECHCORP_IN'"
    assert not _check(store, callers["TCI_ADM001"], sql).allowed


def test_lookup_failure_fails_closed(callers):
    class _BrokenStore:
        def fetch_all(self, sql, params=None):
            raise StoreError("gone away", code=2006, disconnect=True)

    verdict = _check(
        _BrokenStore(),
        callers["TCI_MGR001"],
        "SELECT * FROM LeaveBalances WHERE user_id = 'TCI_EMP003' AND organization_id = 'TECHCORP_IN'",
    )
    assert not verdict.allowed
    assert verdict.reason == "scope_lookup_failed:StoreError"
