"""
Database Utilities - pooled engine, timeouts, and result normalization

One ``RelationalStore`` is built per process and shared by every request.
The engine is created on first use, checked with ``SELECT 1``, and rebuilt
after a disconnect-class error.
"""
import logging
import re
import threading
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import create_engine, text
from sqlalchemy import exc as sa_exc
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from backend.services.errors import StoreError, TransientFailure
from backend.services.runtime import log_event, run_with_timeout

logger = logging.getLogger("db_utils")

# MySQL client error numbers that mean the connection itself is gone.
_DISCONNECT_CODES = {2002, 2003, 2006, 2013, 2055}
_CHANGED_ROWS_RE = re.compile(r"Changed:\s*(\d+)", re.IGNORECASE)


@dataclass
class DatabaseConfig:
    """Database connection configuration"""
    url: str

    # Pool bounds; callers wait up to pool_timeout for a free connection
    pool_size: int = 10
    max_overflow: int = 0
    pool_timeout: float = 30.0

    # Timeout settings (in seconds)
    connect_timeout: int = 10
    query_timeout: float = 15.0

    @classmethod
    def from_settings(cls, settings) -> "DatabaseConfig":
        return cls(
            url=settings.db_url,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_timeout=settings.db_pool_timeout_s,
            connect_timeout=settings.db_connect_timeout_s,
            query_timeout=settings.db_query_timeout_s,
        )

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")


@dataclass
class MutationSummary:
    affected_rows: int
    changed_rows: int
    insert_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "affectedRows": self.affected_rows,
            "changedRows": self.changed_rows,
            "insertId": self.insert_id,
        }


@dataclass
class QueryOutcome:
    """Either a row sequence (read) or a mutation summary (write)."""
    rows: List[Dict[str, Any]] = field(default_factory=list)
    mutation: Optional[MutationSummary] = None

    @property
    def is_read(self) -> bool:
        return self.mutation is None

    @property
    def nothing_matched(self) -> bool:
        return self.mutation is not None and self.mutation.affected_rows == 0


def create_engine_with_timeout(config: DatabaseConfig) -> Engine:
    """
    Create SQLAlchemy engine with bounded pool and driver-level timeouts.

    SQLite (tests/local tooling) gets a single shared connection instead.
    """
    if config.is_sqlite:
        return create_engine(
            config.url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )

    read_timeout = max(1, int(config.query_timeout))
    return create_engine(
        config.url,
        pool_pre_ping=True,  # Verify connections before use
        pool_recycle=300,    # Remote DBs drop idle connections
        pool_size=config.pool_size,
        max_overflow=config.max_overflow,
        pool_timeout=config.pool_timeout,
        connect_args={
            "connect_timeout": config.connect_timeout,
            "read_timeout": read_timeout,
            "write_timeout": read_timeout,
        },
        echo=False,
    )


def _error_code(error: Exception) -> Optional[int]:
    orig = getattr(error, "orig", None)
    args = getattr(orig, "args", None) or ()
    if args and isinstance(args[0], int):
        return args[0]
    return None


def to_store_error(error: sa_exc.SQLAlchemyError) -> StoreError:
    code = _error_code(error)
    disconnect = bool(getattr(error, "connection_invalidated", False)) or code in _DISCONNECT_CODES
    message = str(getattr(error, "orig", None) or error).split("\n")[0]
    return StoreError(message, code=code, disconnect=disconnect)


def _changed_rows(result, fallback: int) -> int:
    """MySQL reports 'Rows matched: N  Changed: M' in the statement info."""
    cursor = getattr(getattr(result, "context", None), "cursor", None)
    info = getattr(getattr(cursor, "_result", None), "message", None)
    if isinstance(info, bytes):
        info = info.decode("utf-8", "replace")
    if info:
        m = _CHANGED_ROWS_RE.search(info)
        if m:
            return int(m.group(1))
    return fallback


class RelationalStore:
    """Shared, lazily-initialized connection pool plus statement execution."""

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self._engine: Optional[Engine] = None
        self._lock = threading.Lock()

    @property
    def engine(self) -> Engine:
        if self._engine is not None:
            return self._engine
        with self._lock:
            if self._engine is None:
                engine = create_engine_with_timeout(self.config)
                try:
                    with engine.connect() as conn:
                        conn.execute(text("SELECT 1"))
                except sa_exc.SQLAlchemyError as e:
                    engine.dispose()
                    log_event(logger, logging.ERROR, "engine_health_check_failed", error=str(e)[:200])
                    raise to_store_error(e) from e
                self._engine = engine
                log_event(logger, logging.INFO, "engine_created", pool_size=self.config.pool_size)
            return self._engine

    def dispose(self) -> None:
        with self._lock:
            engine, self._engine = self._engine, None
        if engine is not None:
            engine.dispose()

    def fetch_all(self, sql: str, params: Optional[Mapping[str, Any]] = None) -> List[Dict[str, Any]]:
        """Run a parameterized read and return its rows as dicts."""
        outcome = self.execute(sql, params or {})
        return outcome.rows

    def execute(self, sql: str, params: Optional[Mapping[str, Any]] = None) -> QueryOutcome:
        """
        Execute one statement inside its own transaction.

        Raises:
            TransientFailure: the statement did not finish within query_timeout
            StoreError: any database error, with the driver error code when known
        """
        engine = self.engine

        def _run() -> QueryOutcome:
            with engine.begin() as conn:
                if params is None:
                    # Literal statements go to the driver untouched: no ':name' bind parsing and no
                    # pyformat pass, so '%' in LIKE patterns reaches MySQL as written.
                    result = conn.execution_options(no_parameters=True).exec_driver_sql(sql)
                else:
                    result = conn.execute(text(sql), dict(params))
                if result.returns_rows:
                    return QueryOutcome(rows=[dict(row._mapping) for row in result])
                affected = max(0, int(result.rowcount or 0))
                insert_id = getattr(result, "lastrowid", None) or None
                return QueryOutcome(
                    mutation=MutationSummary(
                        affected_rows=affected,
                        changed_rows=_changed_rows(result, affected),
                        insert_id=insert_id,
                    )
                )

        try:
            return run_with_timeout(_run, self.config.query_timeout)
        except FuturesTimeoutError as exc:
            log_event(logger, logging.WARNING, "store_timeout", timeout_s=self.config.query_timeout)
            raise TransientFailure(f"store_timeout_{self.config.query_timeout}s") from exc
        except sa_exc.TimeoutError as exc:
            log_event(logger, logging.WARNING, "pool_checkout_timeout", timeout_s=self.config.pool_timeout)
            raise TransientFailure("pool_checkout_timeout") from exc
        except sa_exc.SQLAlchemyError as e:
            err = to_store_error(e)
            if err.disconnect:
                log_event(logger, logging.WARNING, "engine_reset_after_disconnect", code=err.code)
                self.dispose()
            raise err from e

    def get_table_info(self, tables: Optional[List[str]] = None) -> str:
        """CREATE TABLE text for the prompt, read through LangChain's SQLDatabase."""
        from langchain_community.utilities import SQLDatabase

        db = SQLDatabase(
            engine=self.engine,
            include_tables=tables,
            sample_rows_in_table_info=0,
            lazy_table_reflection=True,
        )
        return db.get_table_info()
