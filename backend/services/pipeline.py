"""
HR query pipeline.

    caller lookup -> classifier -> policy prompt -> model -> sentinel check
    -> safety filter -> access validator -> executor -> response composer

Fast-path statements from the classifier enter at the sentinel check, so they
pass the same safety filter and access validator as model output.
"""
from __future__ import annotations

import logging
import time
from typing import Optional

from app.db_utils import DatabaseConfig, RelationalStore
from backend.services.access_control import AccessControlValidator
from backend.services.caller import CallerContext, resolve_caller
from backend.services.config import GatewaySettings, SqlMode
from backend.services.errors import CallerNotFound, ModelOutputError, StoreError, TransientFailure
from backend.services.leave_sessions import PendingLeaveStore
from backend.services.llm_client import ChatModelClient, GeneratedStatement
from backend.services.notifier import EmailNotifier
from backend.services.policy_prompt import PolicyContext, build_context_prompt, build_policy_prompt
from backend.services.prompt_classifier import PromptClassifier
from backend.services.query_executor import QueryExecutor
from backend.services.response_composer import (
    CALLER_NOT_FOUND_MESSAGE,
    GENERIC_ERROR_MESSAGE,
    PARSE_FAILURE_MESSAGE,
    TRANSIENT_MESSAGE,
    PipelineResponse,
    compose_outcome,
    failure,
    rejection_response,
    sentinel_response,
    store_failure_response,
)
from backend.services.runtime import log_event, set_caller
from backend.services.sql_safety import inspect_sql

logger = logging.getLogger(__name__)


def _elapsed_ms(start_ts: float) -> int:
    return int((time.perf_counter() - start_ts) * 1000)


class HRQueryPipeline:
    def __init__(
        self,
        *,
        store,
        llm: ChatModelClient,
        policy_context: PolicyContext,
        executor: QueryExecutor,
        classifier: PromptClassifier,
        validator: Optional[AccessControlValidator] = None,
        mode: SqlMode = SqlMode.READ_WRITE,
        company_name: str = "Vipraco",
    ):
        self.store = store
        self.llm = llm
        self.policy_context = policy_context
        self.executor = executor
        self.classifier = classifier
        self.validator = validator or AccessControlValidator(store)
        self.mode = mode
        self.company_name = company_name

    def handle(self, prompt: str, user_id: str, organization_id: str) -> PipelineResponse:
        """Answer one request. Never raises; every failure maps to a response."""
        set_caller(user_id, organization_id)
        started = time.perf_counter()
        try:
            response = self._handle(prompt, user_id, organization_id)
        except CallerNotFound:
            response = failure(403, CALLER_NOT_FOUND_MESSAGE)
        except ModelOutputError:
            response = failure(500, PARSE_FAILURE_MESSAGE)
        except TransientFailure as e:
            log_event(logger, logging.WARNING, "pipeline_transient_failure", error=str(e)[:200])
            response = failure(503, TRANSIENT_MESSAGE)
        except StoreError as e:
            response = store_failure_response(e)
        except Exception:
            logger.exception("pipeline_unhandled_error")
            response = failure(500, GENERIC_ERROR_MESSAGE)
        log_event(
            logger,
            logging.INFO,
            "pipeline_complete",
            status=response.status_code,
            success=response.body.get("success"),
            elapsed_ms=_elapsed_ms(started),
        )
        return response

    def _handle(self, prompt: str, user_id: str, organization_id: str) -> PipelineResponse:
        caller = resolve_caller(self.store, user_id, organization_id)

        classification = self.classifier.classify(prompt, caller)
        if classification.response is not None:
            return classification.response
        if classification.statement is not None:
            try:
                return self._run_statement(classification.statement, caller, prompt)
            except (StoreError, TransientFailure) as e:
                if not classification.fallback_to_model:
                    raise
                log_event(
                    logger,
                    logging.WARNING,
                    "fast_path_failed_falling_back",
                    source=classification.statement.source,
                    error=str(e)[:200],
                )

        statement = self.llm.generate(
            build_policy_prompt(caller.role, self.mode, self.policy_context, self.company_name),
            build_context_prompt(prompt, caller),
        )
        return self._run_statement(statement, caller, prompt)

    def _run_statement(self, statement: GeneratedStatement, caller: CallerContext, prompt: str) -> PipelineResponse:
        sentinel = statement.sentinel
        if sentinel is not None:
            log_event(logger, logging.INFO, "model_sentinel", sentinel=sentinel.value, source=statement.source)
            return sentinel_response(sentinel, self.company_name)

        safety = inspect_sql(statement.sql, self.mode)
        if not safety.allowed:
            log_event(
                logger,
                logging.WARNING,
                "sql_rejected_unsafe",
                reason=safety.reason,
                source=statement.source,
                sql=statement.sql[:1000],
            )
            return rejection_response(safety)

        verdict = self.validator.validate(statement.sql, caller)
        if not verdict.allowed:
            return rejection_response(verdict)

        outcome = self.executor.run(statement.sql, caller)
        return compose_outcome(statement.sql, statement.confirmation_message, outcome, prompt)


def build_pipeline(settings: GatewaySettings) -> HRQueryPipeline:
    """Construct the shared resources once; the app keeps the result on ``app.state``."""
    store = RelationalStore(DatabaseConfig.from_settings(settings))

    pending = None
    if settings.sql_mode is SqlMode.READ_WRITE:
        pending = PendingLeaveStore(store, ttl_seconds=settings.pending_leave_ttl_s)
        try:
            pending.ensure_schema()
        except (StoreError, TransientFailure) as e:
            # Without the marker table the leave flow is left to the model.
            log_event(logger, logging.WARNING, "pending_leave_schema_unavailable", error=str(e)[:200])
            pending = None

    notifier = EmailNotifier(store, settings.mail, settings.company_name)
    return HRQueryPipeline(
        store=store,
        llm=ChatModelClient.from_settings(settings),
        policy_context=PolicyContext.load(settings, store),
        executor=QueryExecutor(store, notifier=notifier),
        classifier=PromptClassifier(
            pending, mode=settings.sql_mode, company_name=settings.company_name, store=store
        ),
        mode=settings.sql_mode,
        company_name=settings.company_name,
    )
