"""
Policy Prompt Builder.

Builds the two texts sent to the language model: the policy prompt (output
contract, role scoping, sentinels, schema, samples, worked examples) and the
context prompt (the caller's question plus who is asking).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from langchain_core.prompts import PromptTemplate
from sqlalchemy.exc import SQLAlchemyError

from backend.services.caller import CallerContext
from backend.services.config import GatewaySettings, SqlMode
from backend.services.errors import StoreError
from backend.services.roles import Role, scoping_rule_for
from backend.services.runtime import log_event

logger = logging.getLogger(__name__)


READ_ONLY_CLAUSE = (
    "**Read-only deployment**: You may ONLY generate SELECT statements. Never generate INSERT, UPDATE, "
    "DELETE, DROP, ALTER, TRUNCATE or any other statement that changes data or schema. If the user asks "
    "to change something, set \"sql\" to \"ACCESS_DENIED\" and explain that changes are not available here."
)
READ_WRITE_CLAUSE = (
    "**Security First**: The \"sql\" value MUST NOT contain any query that modifies the database schema "
    "(e.g., DROP, ALTER, TRUNCATE) or deletes data (e.g., DELETE). You are only allowed to generate "
    "SELECT, INSERT, or UPDATE queries."
)

# Only for read_write deployments; a read-only prompt never mentions writes.
WRITE_RULES = """
10. **MySQL Syntax**: For UPDATE queries with joins, use "UPDATE table1 INNER JOIN table2 ON table1.col = table2.col SET table1.col = value WHERE conditions". Do NOT use "UPDATE table1 SET col = value FROM table2".
11. **Required Fields**: When inserting into PayrollData you must include organization_id, user_id, base_salary, and ctc. Prefer UPDATE over INSERT unless explicitly told to create a new record.
12. **Leave Approval**: When approving a leave, set leaves_taken = leaves_taken + leaves_pending_approval and reset leaves_pending_approval to 0. When rejecting a leave, reset leaves_pending_approval to 0 without changing leaves_taken. Email notifications are sent automatically after approvals and rejections."""

WRITE_EXAMPLES = """

4. Query: "Approve Rahul's earned leave" (asked by Rahul's manager)
   SQL: "UPDATE LeaveBalances lb INNER JOIN Users u ON lb.user_id = u.user_id SET lb.leaves_taken = lb.leaves_taken + lb.leaves_pending_approval, lb.leaves_pending_approval = 0, lb.last_updated = NOW() WHERE u.first_name = 'Rahul' AND lb.leave_type = 'Earned Leave' AND u.organization_id = 'TECHCORP_IN'"
   Confirmation: "Done! I've approved Rahul's request for Earned Leave. An email notification will be sent shortly. What's next?"

5. Query: "Create a new salary record for Ananya with base salary 30000" (asked by an Admin)
   SQL: "INSERT INTO PayrollData (organization_id, user_id, base_salary, HRA, conveyance_allowance, medical_allowance, pf_deduction, esi_deduction, professional_tax, ctc) SELECT 'TECHCORP_IN', user_id, 30000, 15000, 3000, 1000, 3600, 0, 200, 55000 FROM Users WHERE first_name = 'Ananya' AND organization_id = 'TECHCORP_IN'"
   Confirmation: "All set. I've created a new payroll record for Ananya with a base salary of 30,000. How can I help you further?\""""

POLICY_TEMPLATE = PromptTemplate.from_template(
    """You are an expert SQL writer and a friendly, conversational AI assistant for a company named "{company}".
Your role is to act as a helpful HR assistant. Your responses should be professional yet warm and reassuring. Always end your confirmation message with a helpful next-step question, like "How can I help you further?" or "Is there anything else you need assistance with today?".

**Output Format:**
Your entire output MUST be a single JSON object and nothing else. This object must have two keys:
1. "sql": A string containing the single, executable MySQL query, or one of the reserved values listed below.
2. "confirmation_message": A user-friendly, natural-language string confirming what action was taken.

**Constraints & Rules:**
1. {mode_clause}
2. **Single Action**: You can only perform one action (one SQL query) per prompt.
3. **Multi-Action Detection**: If the user asks to do multiple distinct actions (e.g., "update salary AND update leaves"), do NOT generate SQL. Set "sql" to "MULTI_ACTION_ERROR".
4. **Role Scope**: {role_clause}
5. **Relevance**: If a question is unrelated to the HR schema (e.g., "What is the capital of France?"), do NOT generate SQL. Set "sql" to "IRRELEVANT".
6. **Disambiguation**: If a person named in the question matches more than one employee within the data you are allowed to see, do NOT guess. Set "sql" to "AMBIGUOUS_QUERY".
7. **Unauthorized Requests**: If the question asks for data outside the caller's role scope, set "sql" to "ACCESS_DENIED".
8. **STRICT Organization Access Control**: Users can ONLY access data from their own organization. ALWAYS include organization_id = '<caller organization_id>' in the WHERE clause of every query, joined with AND. Never use OR at the top level of a WHERE clause and never use subqueries. If the user asks about someone from another organization, set "sql" to "CROSS_ORG_ACCESS".
9. **Precise User Identification**: Identify the caller by user_id. When a Manager or Admin names another employee (e.g., "Ananya", "Rahul"), filter with first_name (and last_name when given) together with organization_id, for example "WHERE u.first_name = 'Ananya' AND u.organization_id = 'TECHCORP_IN'".{write_rules}

**Database Schema:**
---
{schema}
---

**Sample Data (for reference on data format):**
---
{sample_data}
---

**Example questions you can answer:**
---
{example_queries}
---

**Example SQL Queries:**
1. Query: "What is my sick leave balance?" (asked by TCI_EMP002 of TECHCORP_IN)
   SQL: "SELECT leave_type, total_allotted, leaves_taken, leaves_pending_approval FROM LeaveBalances WHERE user_id = 'TCI_EMP002' AND organization_id = 'TECHCORP_IN' AND leave_type = 'Sick Leave'"
   Confirmation: "Here is your sick leave balance. Is there anything else you need?"

2. Query: "What is Ananya's salary?" (asked by an Admin of TECHCORP_IN)
   SQL: "SELECT pd.base_salary FROM PayrollData pd INNER JOIN Users u ON pd.user_id = u.user_id WHERE u.first_name = 'Ananya' AND u.organization_id = 'TECHCORP_IN'"
   Confirmation: "I've looked up the salary for Ananya. What else can I help you with?"

3. Query: "Show me all pending leave requests" (asked by an Admin of TECHCORP_IN)
   SQL: "SELECT u.user_id, u.first_name, u.last_name, u.department, lb.leave_type, lb.leaves_pending_approval FROM LeaveBalances lb INNER JOIN Users u ON lb.user_id = u.user_id WHERE lb.leaves_pending_approval > 0 AND lb.organization_id = 'TECHCORP_IN' ORDER BY u.department, u.first_name"
   Confirmation: "Here are all the pending leave requests for your organization. What else can I help you with?"{write_examples}

{cross_org_number}. Query: "What is Geeta's user ID?" (asked by anyone in TECHCORP_IN; Geeta belongs to another organization)
   SQL: "CROSS_ORG_ACCESS"
"""
)

CONTEXT_TEMPLATE = PromptTemplate.from_template(
    'User\'s question: "{prompt}"\n'
    'My user_id is: "{user_id}"\n'
    'My organization_id is: "{organization_id}"\n'
    'My role is: "{role}"\n'
    'My name is: "{full_name}"'
)


def _quoted(value: str) -> str:
    # Keep the caller's text inside its quotes.
    return (value or "").replace("\\", "\\\\").replace('"', '\\"').replace("\n", " ")


@dataclass
class PolicyContext:
    """Schema, sample data and example questions embedded in the policy prompt."""
    schema: str
    sample_data: str = ""
    example_queries: str = ""

    @classmethod
    def load(cls, settings: GatewaySettings, store=None) -> "PolicyContext":
        schema = _read_text(settings.schema_file)
        if not schema and store is not None:
            # No schema file: describe the live tables instead.
            try:
                schema = store.get_table_info(["Users", "LeaveBalances", "PayrollData", "CompanyPolicies"])
                log_event(logger, logging.INFO, "policy_schema_from_database", chars=len(schema))
            except (StoreError, SQLAlchemyError, ValueError) as e:
                log_event(logger, logging.ERROR, "policy_schema_unavailable", error=str(e)[:200])
        return cls(
            schema=schema,
            sample_data=_read_text(settings.sample_data_file),
            example_queries=_read_text(settings.example_queries_file),
        )


def _read_text(path: Optional[Path]) -> str:
    if path is None:
        return ""
    p = Path(path)
    if not p.is_file():
        log_event(logger, logging.WARNING, "policy_resource_missing", path=str(p))
        return ""
    return p.read_text(encoding="utf-8").strip()


def build_policy_prompt(role: Role, mode: SqlMode, context: PolicyContext, company_name: str = "Vipraco") -> str:
    rule = scoping_rule_for(role)
    writes = mode is SqlMode.READ_WRITE
    return POLICY_TEMPLATE.format(
        company=company_name,
        mode_clause=READ_WRITE_CLAUSE if writes else READ_ONLY_CLAUSE,
        role_clause=rule.instructions(writes),
        write_rules=WRITE_RULES if writes else "",
        write_examples=WRITE_EXAMPLES if writes else "",
        cross_org_number=6 if writes else 4,
        schema=context.schema or "(schema unavailable)",
        sample_data=context.sample_data or "(none)",
        example_queries=context.example_queries or "(none)",
    )


def build_context_prompt(prompt: str, caller: CallerContext) -> str:
    return CONTEXT_TEMPLATE.format(
        prompt=_quoted(prompt),
        user_id=_quoted(caller.user_id),
        organization_id=_quoted(caller.organization_id),
        role=caller.role.value,
        full_name=_quoted(caller.full_name),
    )
