"""
Gateway configuration, read from the environment.

``backend.main`` loads ``.env`` with python-dotenv before calling
``GatewaySettings.from_env()``.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional

RESOURCES_DIR = Path(__file__).resolve().parent.parent / "resources"


class SqlMode(str, Enum):
    """Which statements the deployment allows the model to produce."""

    READ_ONLY = "read_only"
    READ_WRITE = "read_write"

    @classmethod
    def parse(cls, value: Optional[str]) -> "SqlMode":
        raw = (value or "").strip().lower().replace("-", "_")
        if raw in {"read_only", "readonly", "select_only"}:
            return cls.READ_ONLY
        return cls.READ_WRITE


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    try:
        return max(minimum, int(os.getenv(name, str(default))))
    except ValueError:
        return default


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    try:
        return max(minimum, float(os.getenv(name, str(default))))
    except ValueError:
        return default


@dataclass
class MailSettings:
    server: Optional[str] = None
    port: int = 587
    use_tls: bool = True
    username: Optional[str] = None
    password: Optional[str] = None
    default_sender: Optional[str] = None

    @property
    def enabled(self) -> bool:
        return bool(self.server)


@dataclass
class GatewaySettings:
    # Store
    db_url: str = "sqlite://"
    db_pool_size: int = 10
    db_max_overflow: int = 0
    db_pool_timeout_s: float = 30.0
    db_connect_timeout_s: int = 10
    db_query_timeout_s: float = 15.0

    # Policy
    sql_mode: SqlMode = SqlMode.READ_WRITE
    company_name: str = "Vipraco"
    schema_file: Path = RESOURCES_DIR / "schema.txt"
    sample_data_file: Path = RESOURCES_DIR / "sampledata.txt"
    example_queries_file: Path = RESOURCES_DIR / "example_queries.txt"
    pending_leave_ttl_s: int = 600

    # Language model
    llm_model: str = "gpt-4o-mini"
    llm_api_key: Optional[str] = None
    llm_api_base: Optional[str] = None
    llm_temperature: float = 0.0
    llm_timeout_s: float = 20.0

    mail: MailSettings = field(default_factory=MailSettings)
    allowed_origins: List[str] = field(default_factory=lambda: ["*"])

    @classmethod
    def from_env(cls) -> "GatewaySettings":
        db_url = (os.getenv("DB_URL") or "").strip() or _mysql_url_from_parts()
        origins = [o.strip() for o in os.getenv("ALLOWED_ORIGINS", "*").split(",") if o.strip()]
        return cls(
            db_url=db_url,
            db_pool_size=_env_int("DB_POOL_SIZE", 10, minimum=1),
            db_max_overflow=_env_int("DB_MAX_OVERFLOW", 0),
            db_pool_timeout_s=_env_float("DB_POOL_TIMEOUT_S", 30.0, minimum=1.0),
            db_connect_timeout_s=_env_int("DB_CONNECT_TIMEOUT_S", 10, minimum=1),
            db_query_timeout_s=_env_float("DB_QUERY_TIMEOUT_S", 15.0, minimum=1.0),
            sql_mode=SqlMode.parse(os.getenv("SQL_MODE")),
            company_name=os.getenv("COMPANY_NAME", "Vipraco"),
            schema_file=Path(os.getenv("SCHEMA_FILE", str(RESOURCES_DIR / "schema.txt"))),
            sample_data_file=Path(os.getenv("SAMPLE_DATA_FILE", str(RESOURCES_DIR / "sampledata.txt"))),
            example_queries_file=Path(
                os.getenv("EXAMPLE_QUERIES_FILE", str(RESOURCES_DIR / "example_queries.txt"))
            ),
            pending_leave_ttl_s=_env_int("PENDING_LEAVE_TTL_S", 600, minimum=30),
            llm_model=os.getenv("LLM_MODEL", "gpt-4o-mini"),
            llm_api_key=os.getenv("OPENAI_API_KEY"),
            llm_api_base=os.getenv("OPENAI_API_BASE") or None,
            llm_temperature=_env_float("LLM_TEMPERATURE", 0.0),
            llm_timeout_s=_env_float("LLM_TIMEOUT_S", 20.0, minimum=1.0),
            mail=MailSettings(
                server=os.getenv("MAIL_SERVER") or None,
                port=_env_int("MAIL_PORT", 587, minimum=1),
                use_tls=_env_bool("MAIL_USE_TLS", True),
                username=os.getenv("MAIL_USERNAME") or None,
                password=os.getenv("MAIL_PASSWORD") or None,
                default_sender=os.getenv("MAIL_DEFAULT_SENDER") or os.getenv("MAIL_USERNAME") or None,
            ),
            allowed_origins=origins or ["*"],
        )


def _mysql_url_from_parts() -> str:
    host = (os.getenv("DB_HOST") or "").strip()
    if not host:
        # DB_URL=sqlite:// is the explicit way to run on an in-memory store.
        raise ValueError("Missing required DB settings: set DB_URL, or DB_HOST with DB_USER and DB_NAME.")
    from urllib.parse import quote_plus

    user = quote_plus(os.getenv("DB_USER", ""))
    password = quote_plus(os.getenv("DB_PASSWORD", ""))
    port = (os.getenv("DB_PORT") or "3306").strip()
    name = (os.getenv("DB_NAME") or "").strip()
    if not name:
        raise ValueError("Missing required DB settings: DB_NAME is required when DB_HOST is set.")
    return f"mysql+pymysql://{user}:{password}@{host}:{port}/{name}?charset=utf8mb4"
