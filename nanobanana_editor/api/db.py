import functools
import logging
import os
import uuid
from datetime import datetime, timezone
from typing import Generator, Optional
from urllib.parse import urlparse

from sqlalchemy import Engine, create_engine, text
from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger(__name__)

DATABASE_URL_ENV = "EDITOR_DATABASE_URL"
DEFAULT_DATABASE_URL = "sqlite:///editor.db"

_POSTGRES_ENVS = ["POSTGRES_URL", "POSTGRES_USER", "POSTGRES_PASSWORD", "POSTGRES_DB", "POSTGRES_PORT"]


def _normalize_host(raw_host: str) -> str:
    """
    Reduce POSTGRES_URL to a host string.

    Accepts either a bare host ("localhost", "db:5432") or a URL
    ("postgresql://localhost:5000/myapp").
    """
    raw = (raw_host or "").strip()
    if raw.startswith(("postgres://", "postgresql://")):
        return urlparse(raw).hostname or ""
    return raw


def _split_host_port(host_value: str, fallback_port: str) -> tuple[str, str]:
    hv = (host_value or "").strip()
    if ":" in hv:
        host, port = hv.rsplit(":", 1)
        return host.strip(), (port.strip() or fallback_port)
    return hv, fallback_port


# PUBLIC_INTERFACE
def build_postgres_dsn() -> Optional[str]:
    """
    Build a psycopg3 DSN from POSTGRES_URL/USER/PASSWORD/DB/PORT.

    Returns None when none of them is set. Raises RuntimeError when only some are.
    """
    values = {k: (os.getenv(k) or "").strip() for k in _POSTGRES_ENVS}
    if not any(values.values()):
        return None
    missing = [k for k, v in values.items() if not v]
    if missing:
        raise RuntimeError(f"Missing required database environment variables: {', '.join(missing)}.")

    host, port = _split_host_port(_normalize_host(values["POSTGRES_URL"]), values["POSTGRES_PORT"])
    if not host:
        raise RuntimeError(
            "Invalid POSTGRES_URL. Expected hostname (e.g. 'localhost') or URL (e.g. 'postgresql://localhost:5000/myapp')."
        )
    return (
        f"postgresql+psycopg://{values['POSTGRES_USER']}:{values['POSTGRES_PASSWORD']}"
        f"@{host}:{port}/{values['POSTGRES_DB']}"
    )


# PUBLIC_INTERFACE
def build_database_url() -> str:
    """EDITOR_DATABASE_URL, else a PostgreSQL DSN from POSTGRES_*, else a local SQLite file."""
    explicit = os.getenv(DATABASE_URL_ENV, "").strip()
    if explicit:
        return explicit
    return build_postgres_dsn() or DEFAULT_DATABASE_URL


@functools.lru_cache(maxsize=1)
def get_engine() -> Engine:
    url = build_database_url()
    connect_args = {}
    if url.startswith("sqlite"):
        # Handlers run in the threadpool
        connect_args["check_same_thread"] = False
    logger.info("Using database %s", url.split("@")[-1])
    return create_engine(url, pool_pre_ping=True, connect_args=connect_args)


@functools.lru_cache(maxsize=1)
def _session_factory() -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=get_engine())


# PUBLIC_INTERFACE
def reset_engine() -> None:
    """Dispose the cached engine so the next call re-reads the environment."""
    if get_engine.cache_info().currsize:
        get_engine().dispose()
    get_engine.cache_clear()
    _session_factory.cache_clear()


# PUBLIC_INTERFACE
def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency that yields a SQLAlchemy session and guarantees close()."""
    db = _session_factory()()
    try:
        yield db
    finally:
        db.close()


# PUBLIC_INTERFACE
def ensure_schema(engine: Optional[Engine] = None) -> None:
    """
    Ensure required tables exist.

    Creates:
      - editor_sessions
      - uploaded_images
      - edit_history

    The DDL sticks to types both SQLite and PostgreSQL accept.
    """
    eng = engine or get_engine()
    ddl_statements = [
        """
        CREATE TABLE IF NOT EXISTS editor_sessions (
          id varchar(36) PRIMARY KEY,
          instruction text NOT NULL,
          status varchar(16) NOT NULL,
          error_message text NOT NULL DEFAULT '',
          result_storage_key text,
          result_mime_type text,
          result_width int,
          result_height int,
          created_at timestamp with time zone NOT NULL,
          updated_at timestamp with time zone NOT NULL
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS uploaded_images (
          id varchar(36) PRIMARY KEY,
          session_id varchar(36) NOT NULL REFERENCES editor_sessions(id) ON DELETE CASCADE,
          position int NOT NULL,
          filename text NOT NULL,
          mime_type text NOT NULL,
          storage_key text NOT NULL,
          preview_storage_key text,
          preview_mime_type text,
          width int,
          height int,
          size_bytes bigint NOT NULL,
          created_at timestamp with time zone NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_uploaded_images_session_position ON uploaded_images (session_id, position)",
        """
        CREATE TABLE IF NOT EXISTS edit_history (
          id varchar(36) PRIMARY KEY,
          session_id varchar(36) NOT NULL REFERENCES editor_sessions(id) ON DELETE CASCADE,
          operation text NOT NULL,
          params text NOT NULL DEFAULT '{}',
          created_at timestamp with time zone NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_edit_history_session_created_at ON edit_history (session_id, created_at)",
    ]
    with eng.begin() as conn:
        for stmt in ddl_statements:
            conn.execute(text(stmt))


# PUBLIC_INTERFACE
def new_id() -> str:
    """Generate a new UUIDv4 as a string (portable across SQLite and PostgreSQL)."""
    return str(uuid.uuid4())


# PUBLIC_INTERFACE
def utcnow() -> datetime:
    """Return current UTC timestamp with tzinfo."""
    return datetime.now(tz=timezone.utc)
