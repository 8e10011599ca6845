import os
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT))
# The app module builds settings from the environment at import; tests opt into SQLite.
os.environ.setdefault("DB_URL", "sqlite://")

from app.db_utils import DatabaseConfig, RelationalStore
from backend.services.caller import CallerContext
from backend.services.config import SqlMode
from backend.services.leave_sessions import PendingLeaveStore
from backend.services.llm_client import ChatModelClient
from backend.services.pipeline import HRQueryPipeline
from backend.services.policy_prompt import PolicyContext
from backend.services.prompt_classifier import PromptClassifier
from backend.services.query_executor import QueryExecutor
from backend.services.roles import Role


SCHEMA_SQL = [
    """CREATE TABLE Users (
        user_id VARCHAR(64) PRIMARY KEY,
        organization_id VARCHAR(64) NOT NULL,
        first_name VARCHAR(100) NOT NULL,
        last_name VARCHAR(100),
        email VARCHAR(255),
        role VARCHAR(20) NOT NULL,
        manager_id VARCHAR(64),
        department VARCHAR(100)
    )""",
    """CREATE TABLE LeaveBalances (
        organization_id VARCHAR(64) NOT NULL,
        user_id VARCHAR(64) NOT NULL,
        leave_type VARCHAR(50) NOT NULL,
        total_allotted INT NOT NULL,
        leaves_taken INT NOT NULL DEFAULT 0,
        leaves_pending_approval INT NOT NULL DEFAULT 0,
        last_updated TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        PRIMARY KEY (user_id, leave_type)
    )""",
    """CREATE TABLE PayrollData (
        organization_id VARCHAR(64) NOT NULL,
        user_id VARCHAR(64) PRIMARY KEY,
        base_salary DECIMAL(12,2) NOT NULL,
        HRA DECIMAL(12,2),
        conveyance_allowance DECIMAL(12,2),
        medical_allowance DECIMAL(12,2),
        pf_deduction DECIMAL(12,2),
        esi_deduction DECIMAL(12,2),
        professional_tax DECIMAL(12,2),
        ctc DECIMAL(12,2) NOT NULL
    )""",
    """CREATE TABLE CompanyPolicies (
        organization_id VARCHAR(64) NOT NULL,
        policy_name VARCHAR(150) NOT NULL,
        policy_text TEXT NOT NULL,
        PRIMARY KEY (organization_id, policy_name)
    )""",
]

SEED_SQL = [
    "INSERT INTO Users VALUES ('TCI_ADM001', 'TECHCORP_IN', 'Priya', 'Sharma', 'priya.sharma@techcorp.in', 'Admin', NULL, 'Human Resources')",
    "INSERT INTO Users VALUES ('TCI_MGR001', 'TECHCORP_IN', 'Vikram', 'Singh', 'vikram.singh@techcorp.in', 'Manager', 'TCI_ADM001', 'Engineering')",
    "INSERT INTO Users VALUES ('TCI_EMP001', 'TECHCORP_IN', 'Ananya', 'Iyer', 'ananya.iyer@techcorp.in', 'Employee', 'TCI_MGR002', 'Finance')",
    "INSERT INTO Users VALUES ('TCI_EMP002', 'TECHCORP_IN', 'Rahul', 'Verma', 'rahul.verma@techcorp.in', 'Employee', 'TCI_MGR001', 'Engineering')",
    "INSERT INTO Users VALUES ('TCI_EMP003', 'TECHCORP_IN', 'Amit', 'Patel', 'amit.patel@techcorp.in', 'Employee', 'TCI_MGR001', 'Engineering')",
    "INSERT INTO Users VALUES ('GS_ADM001', 'GLOBALSOFT', 'Karan', 'Mehta', 'karan.mehta@globalsoft.com', 'Admin', NULL, 'Human Resources')",
    "INSERT INTO Users VALUES ('GS_EMP001', 'GLOBALSOFT', 'Geeta', 'Rao', 'geeta.rao@globalsoft.com', 'Employee', 'GS_ADM001', 'Sales')",
    "INSERT INTO LeaveBalances (organization_id, user_id, leave_type, total_allotted, leaves_taken, leaves_pending_approval) VALUES ('TECHCORP_IN', 'TCI_EMP002', 'Sick Leave', 8, 2, 0)",
    "INSERT INTO LeaveBalances (organization_id, user_id, leave_type, total_allotted, leaves_taken, leaves_pending_approval) VALUES ('TECHCORP_IN', 'TCI_EMP002', 'Casual Leave', 10, 3, 0)",
    "INSERT INTO LeaveBalances (organization_id, user_id, leave_type, total_allotted, leaves_taken, leaves_pending_approval) VALUES ('TECHCORP_IN', 'TCI_EMP002', 'Earned Leave', 15, 5, 2)",
    "INSERT INTO LeaveBalances (organization_id, user_id, leave_type, total_allotted, leaves_taken, leaves_pending_approval) VALUES ('TECHCORP_IN', 'TCI_EMP003', 'Sick Leave', 8, 1, 1)",
    "INSERT INTO PayrollData VALUES ('TECHCORP_IN', 'TCI_EMP001', 52000, 26000, 3000, 1250, 6240, 0, 200, 95000)",
    "INSERT INTO PayrollData VALUES ('TECHCORP_IN', 'TCI_EMP002', 48000, 24000, 3000, 1250, 5760, 0, 200, 88000)",
    "INSERT INTO CompanyPolicies VALUES ('TECHCORP_IN', 'Work From Home', 'Employees may work from home up to two days per week with manager approval.')",
    "INSERT INTO CompanyPolicies VALUES ('TECHCORP_IN', 'Leave Carry Over', 'Up to 5 unused Earned Leave days carry over to the next calendar year.')",
]

CALLERS = {
    "TCI_ADM001": CallerContext("TCI_ADM001", "TECHCORP_IN", Role.ADMIN, "Priya", "Sharma"),
    "TCI_MGR001": CallerContext("TCI_MGR001", "TECHCORP_IN", Role.MANAGER, "Vikram", "Singh"),
    "TCI_EMP001": CallerContext("TCI_EMP001", "TECHCORP_IN", Role.EMPLOYEE, "Ananya", "Iyer"),
    "TCI_EMP002": CallerContext("TCI_EMP002", "TECHCORP_IN", Role.EMPLOYEE, "Rahul", "Verma"),
    "TCI_EMP003": CallerContext("TCI_EMP003", "TECHCORP_IN", Role.EMPLOYEE, "Amit", "Patel"),
    "GS_ADM001": CallerContext("GS_ADM001", "GLOBALSOFT", Role.ADMIN, "Karan", "Mehta"),
}


class DummyLLM:
    """Stands in for ChatOpenAI: records the messages and answers with canned text."""

    def __init__(self, response_text: str = ""):
        self.response_text = response_text
        self.calls = []

    def invoke(self, messages):
        self.calls.append(messages)

        class _Resp:
            def __init__(self, content: str):
                self.content = content

        return _Resp(self.response_text)


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def notify(self, user_id, action, leave_type, organization_id=None):
        self.sent.append((user_id, action, leave_type, organization_id))


def run_inline(fn, *args, **kwargs):
    return fn(*args, **kwargs)


def seed(store: RelationalStore) -> None:
    with store.engine.begin() as conn:
        for statement in SCHEMA_SQL + SEED_SQL:
            conn.exec_driver_sql(statement)


@pytest.fixture
def store():
    s = RelationalStore(DatabaseConfig(url="sqlite://", query_timeout=5.0))
    seed(s)
    yield s
    s.dispose()


@pytest.fixture
def callers():
    return CALLERS


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def pending(store):
    p = PendingLeaveStore(store, ttl_seconds=600)
    p.ensure_schema()
    return p


@pytest.fixture
def make_pipeline(store, notifier, pending):
    """Build a pipeline over the seeded store with a canned model answer."""

    def _make(response_text: str = "", mode: SqlMode = SqlMode.READ_WRITE, llm=None):
        llm = llm or DummyLLM(response_text)
        pipeline = HRQueryPipeline(
            store=store,
            llm=ChatModelClient(llm=llm, timeout_s=5.0),
            policy_context=PolicyContext(schema="CREATE TABLE Users (...)"),
            executor=QueryExecutor(store, notifier=notifier, dispatch=run_inline),
            classifier=PromptClassifier(pending, mode=mode, store=store),
            mode=mode,
        )
        pipeline.dummy_llm = llm
        return pipeline

    return _make
