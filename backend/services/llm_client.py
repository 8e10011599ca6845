"""
Language-model client and output parsing.

The model receives ``[policy prompt, context prompt]`` and must answer with one
JSON object ``{"sql": ..., "confirmation_message": ...}``, optionally inside a
code fence. ``sql`` may be a sentinel instead of a statement.
"""
from __future__ import annotations

import json
import logging
import re
import time
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from langchain_core.messages import HumanMessage, SystemMessage

from backend.services.config import GatewaySettings
from backend.services.errors import ModelOutputError, TransientFailure
from backend.services.runtime import log_event, run_with_timeout
from backend.services.verdict import Sentinel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GeneratedStatement:
    sql: str
    confirmation_message: str = ""
    # "model" or the name of the fast path that produced the statement.
    source: str = "model"

    @property
    def sentinel(self) -> Optional[Sentinel]:
        return Sentinel.match(self.sql)


def _elapsed_ms(start_ts: float) -> int:
    return int((time.perf_counter() - start_ts) * 1000)


def _strip_fence(text: str) -> str:
    raw = (text or "").strip()
    m = re.search(r"```(?:json|sql)?\s*(.*?)```", raw, flags=re.IGNORECASE | re.DOTALL)
    return m.group(1).strip() if m else raw


def _extract_json(text: str) -> Optional[Dict[str, Any]]:
    raw = _strip_fence(text)
    try:
        obj = json.loads(raw)
        return obj if isinstance(obj, dict) else None
    except ValueError:
        pass
    i = raw.find("{")
    j = raw.rfind("}")
    if i != -1 and j != -1 and j > i:
        try:
            obj = json.loads(raw[i:j + 1])
            return obj if isinstance(obj, dict) else None
        except ValueError:
            return None
    return None


def _content_text(response: Any) -> str:
    content = getattr(response, "content", response)
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, dict):
                parts.append(str(part.get("text", "")))
            else:
                parts.append(str(part))
        return "".join(parts)
    return str(content or "")


def parse_model_output(text: str) -> GeneratedStatement:
    """Parse the model's answer. Raises ModelOutputError when it is not usable."""
    obj = _extract_json(text)
    if obj is None:
        bare = _strip_fence(text)
        if Sentinel.match(bare) is not None:
            return GeneratedStatement(sql=Sentinel.match(bare).value)
        raise ModelOutputError("model output is not a JSON object", raw_output=text or "")
    sql = obj.get("sql")
    if not isinstance(sql, str) or not sql.strip():
        raise ModelOutputError("model output has no 'sql' string", raw_output=text or "")
    message = obj.get("confirmation_message")
    return GeneratedStatement(
        sql=sql.strip(),
        confirmation_message=str(message).strip() if message is not None else "",
    )


class ChatModelClient:
    """Calls a LangChain chat model with a bounded wait."""

    def __init__(self, llm: Any = None, timeout_s: float = 20.0, factory: Optional[Callable[[], Any]] = None):
        if llm is None and factory is None:
            raise ValueError("either llm or factory is required")
        self._llm = llm
        self._factory = factory
        self.timeout_s = timeout_s

    @classmethod
    def from_settings(cls, settings: GatewaySettings) -> "ChatModelClient":
        def _build():
            from langchain_openai import ChatOpenAI

            kwargs: Dict[str, Any] = {
                "model": settings.llm_model,
                "temperature": settings.llm_temperature,
                "timeout": settings.llm_timeout_s,
                "max_retries": 0,
            }
            if settings.llm_api_key:
                kwargs["openai_api_key"] = settings.llm_api_key
            if settings.llm_api_base:
                kwargs["openai_api_base"] = settings.llm_api_base
            return ChatOpenAI(**kwargs)

        # The client is built on first use so the app can start without credentials.
        return cls(factory=_build, timeout_s=settings.llm_timeout_s)

    @property
    def llm(self) -> Any:
        if self._llm is None:
            self._llm = self._factory()
        return self._llm

    def generate(self, policy_prompt: str, context_prompt: str) -> GeneratedStatement:
        messages = [SystemMessage(content=policy_prompt), HumanMessage(content=context_prompt)]
        llm = self.llm
        started = time.perf_counter()
        try:
            response = run_with_timeout(lambda: llm.invoke(messages), self.timeout_s)
        except FuturesTimeoutError as exc:
            log_event(logger, logging.WARNING, "llm_call_timeout", timeout_s=self.timeout_s)
            raise TransientFailure(f"llm_timeout_{self.timeout_s}s") from exc
        text = _content_text(response)
        log_event(logger, logging.INFO, "llm_call_ok", elapsed_ms=_elapsed_ms(started), chars=len(text))
        try:
            return parse_model_output(text)
        except ModelOutputError:
            log_event(logger, logging.WARNING, "llm_output_unparsable", raw_output=text[:2000])
            raise
