"""
Runtime utilities:
- shared thread pools with safe shutdown
- request/caller context for structured logs
"""
from __future__ import annotations

import json
import logging
import os
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from contextvars import ContextVar, copy_context
from typing import Any, Callable, Dict, Optional

_LOGGER = logging.getLogger("runtime")

_REQUEST_ID: ContextVar[str] = ContextVar("request_id", default="-")
_USER_ID: ContextVar[str] = ContextVar("user_id", default="-")
_ORGANIZATION_ID: ContextVar[str] = ContextVar("organization_id", default="-")

_BG_EXECUTOR: Optional[ThreadPoolExecutor] = None
_FG_EXECUTOR: Optional[ThreadPoolExecutor] = None
_EXECUTOR_LOCK = threading.Lock()
_PENDING_LOCK = threading.Lock()
_PENDING_FUTURES: set[Future] = set()
_MAX_WORKERS = max(2, int(os.getenv("APP_THREADPOOL_MAX_WORKERS", "4")))
_FOREGROUND_WORKERS = max(2, int(os.getenv("APP_FOREGROUND_MAX_WORKERS", "16")))


def get_request_id() -> str:
    return _REQUEST_ID.get() or "-"


def set_request_id(request_id: Optional[str]) -> str:
    rid = (request_id or "").strip() or str(uuid.uuid4())
    _REQUEST_ID.set(rid)
    return rid


def set_caller(user_id: Optional[str], organization_id: Optional[str]) -> None:
    _USER_ID.set((user_id or "").strip() or "-")
    _ORGANIZATION_ID.set((organization_id or "").strip() or "-")


def clear_context() -> None:
    _REQUEST_ID.set("-")
    _USER_ID.set("-")
    _ORGANIZATION_ID.set("-")


def structured_fields(**extra: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "request_id": get_request_id(),
        "user_id": _USER_ID.get() or "-",
        "organization_id": _ORGANIZATION_ID.get() or "-",
    }
    payload.update(extra)
    return payload


def log_event(logger: logging.Logger, level: int, event: str, **fields: Any) -> None:
    payload = structured_fields(event=event, **fields)
    logger.log(level, json.dumps(payload, default=str, ensure_ascii=True))


def _get_bg_executor() -> ThreadPoolExecutor:
    global _BG_EXECUTOR
    if _BG_EXECUTOR is not None:
        return _BG_EXECUTOR
    with _EXECUTOR_LOCK:
        if _BG_EXECUTOR is None:
            _BG_EXECUTOR = ThreadPoolExecutor(max_workers=_MAX_WORKERS, thread_name_prefix="hrq-bg")
        return _BG_EXECUTOR


def _get_fg_executor() -> ThreadPoolExecutor:
    global _FG_EXECUTOR
    if _FG_EXECUTOR is not None:
        return _FG_EXECUTOR
    with _EXECUTOR_LOCK:
        if _FG_EXECUTOR is None:
            _FG_EXECUTOR = ThreadPoolExecutor(max_workers=_FOREGROUND_WORKERS, thread_name_prefix="hrq-fg")
        return _FG_EXECUTOR


def _track(future: Future) -> Future:
    with _PENDING_LOCK:
        _PENDING_FUTURES.add(future)

    def _done(fut: Future) -> None:
        with _PENDING_LOCK:
            _PENDING_FUTURES.discard(fut)

    future.add_done_callback(_done)
    return future


def submit_background_task(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
    # Context is copied so background log lines keep the request id.
    ctx = copy_context()
    return _track(_get_bg_executor().submit(ctx.run, fn, *args, **kwargs))


def run_with_timeout(fn: Callable[[], Any], timeout_s: float) -> Any:
    """Run ``fn`` on the foreground pool and wait at most ``timeout_s`` seconds.

    On timeout the work is not interrupted: a statement already sent to the
    store finishes on its own and its result is dropped.
    """
    ctx = copy_context()
    future = _track(_get_fg_executor().submit(ctx.run, fn))
    try:
        return future.result(timeout=max(0.05, float(timeout_s)))
    except FuturesTimeoutError:
        future.cancel()
        raise


def shutdown_shared_executor(wait: bool = False) -> None:
    global _BG_EXECUTOR, _FG_EXECUTOR
    with _EXECUTOR_LOCK:
        if _BG_EXECUTOR is None and _FG_EXECUTOR is None:
            return
        with _PENDING_LOCK:
            pending = list(_PENDING_FUTURES)
            _PENDING_FUTURES.clear()
        for fut in pending:
            fut.cancel()
        if _BG_EXECUTOR is not None:
            _BG_EXECUTOR.shutdown(wait=wait, cancel_futures=True)
            _BG_EXECUTOR = None
        if _FG_EXECUTOR is not None:
            _FG_EXECUTOR.shutdown(wait=wait, cancel_futures=True)
            _FG_EXECUTOR = None
        _LOGGER.info("shared_executor_shutdown")
