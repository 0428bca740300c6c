# src/supabase_io.py
"""
Supabase I/O layer for the keep-alive probe.
- Default probe goes through the Supabase client (PostgREST, SUPABASE_URL + SUPABASE_KEY)
- Optional probe goes straight to Postgres through a SQLAlchemy engine (SUPABASE_DB_URL)
- Both issue exactly one bounded read: the `id` column of at most one row
- Nothing is ever written. Failures are raised as KeepAliveError subclasses so the
  caller can turn them into a single log line and a non-zero exit code.
- NOTE: with the anon key, a table without a SELECT policy under RLS reads as
  empty rather than failing. That still counts as activity for Supabase; set
  KEEPALIVE_REQUIRE_ROWS=1 to treat an empty read as access denied instead.
"""

import os
import re
from datetime import datetime
from typing import Any, Optional, Dict
from urllib.parse import urlparse

import httpx
from dotenv import load_dotenv
from postgrest.exceptions import APIError
from sqlalchemy import create_engine, text
from sqlalchemy.exc import ArgumentError, DBAPIError
from supabase import create_client
from supabase._sync.client import SupabaseException

load_dotenv()

# ---------- Configuration ----------
DEFAULT_TABLE = "health_check"
PROBE_COLUMN = "id"
VIA_REST = "rest"
VIA_SQL = "sql"

# seconds, passed to psycopg2 on direct connections
SQL_CONNECT_TIMEOUT = 10

# SupabaseException messages create_client uses for the url; anything else is about the key
CLIENT_URL_ERRORS = {"supabase_url is required", "Invalid URL"}

TRUTHY = {"1", "true", "yes", "on"}


def get_settings() -> Dict[str, Any]:
    """
    Read the probe configuration from the environment (.env is loaded on import).
    Missing values are returned as None; ping()/ping_sql() report them.
    """
    return {
        "url": os.getenv("SUPABASE_URL"),
        "key": os.getenv("SUPABASE_KEY"),
        "db_url": os.getenv("SUPABASE_DB_URL"),
        "table": os.getenv("KEEPALIVE_TABLE") or DEFAULT_TABLE,
        "via": (os.getenv("KEEPALIVE_VIA") or VIA_REST).strip().lower(),
        "require_rows": (os.getenv("KEEPALIVE_REQUIRE_ROWS") or "").strip().lower() in TRUTHY,
    }


# ---------- Errors ----------
class KeepAliveError(RuntimeError):
    """Base class for every failure of a keep-alive probe."""


class ResourceNotFound(KeepAliveError):
    def __init__(self, table_name: str, detail: Optional[str] = None):
        self.table_name = table_name
        msg = f"Relation '{table_name}' does not exist"
        if detail:
            msg = f"{msg} ({detail})"
        super().__init__(msg)


class AccessDenied(KeepAliveError):
    pass


class InvalidCredential(KeepAliveError):
    pass


class InvalidEndpoint(KeepAliveError):
    pass


class TransportFailure(KeepAliveError):
    pass


# PostgREST / Postgres error codes, see https://postgrest.org/en/stable/references/errors.html
NOT_FOUND_CODES = {"42P01", "PGRST205", "3F000"}
ACCESS_DENIED_CODES = {"42501", "PGRST302"}
INVALID_CREDENTIAL_CODES = {"PGRST300", "PGRST301", "PGRST303", "28P01", "28000"}
INVALID_ENDPOINT_CODES = {"3D000"}

# matched against the lowercased message
ROLE_MISSING = re.compile(r'role "[^"]*" does not exist')
DATABASE_MISSING = re.compile(r'database "[^"]*" does not exist')
RELATION_MISSING = re.compile(r'relation "[^"]*" does not exist')


def classify_error(code: str, message: str, table_name: str) -> Optional[KeepAliveError]:
    """
    Shared mapping for PostgREST and driver errors. Error codes win; free-text
    matching is only used for the role/database patterns or when there is no code.
    Returns None when nothing matches, the caller decides the fallback.
    """
    lowered = message.lower()

    if code in NOT_FOUND_CODES:
        return ResourceNotFound(table_name, message)
    if code in ACCESS_DENIED_CODES:
        return AccessDenied(f"Access denied reading '{table_name}': {message}")
    if code in INVALID_CREDENTIAL_CODES:
        return InvalidCredential(f"Invalid credential: {message}")
    if code in INVALID_ENDPOINT_CODES:
        return InvalidEndpoint(f"Database does not exist: {message}")

    if ROLE_MISSING.search(lowered):
        return InvalidCredential(f"Invalid credential: {message}")
    if DATABASE_MISSING.search(lowered):
        return InvalidEndpoint(f"Database does not exist: {message}")
    if code:
        return None

    if RELATION_MISSING.search(lowered) or "could not find the table" in lowered:
        return ResourceNotFound(table_name, message)
    if "permission denied" in lowered:
        return AccessDenied(f"Access denied reading '{table_name}': {message}")
    if "api key" in lowered or "jwt" in lowered or "authentication failed" in lowered:
        return InvalidCredential(f"Invalid credential: {message}")
    if "could not translate host name" in lowered or "connection refused" in lowered:
        return InvalidEndpoint(f"Database host unreachable: {message}")
    return None


def classify_api_error(err: APIError, table_name: str) -> KeepAliveError:
    """Map a PostgREST APIError onto the keep-alive error taxonomy."""
    code = str(err.code or "")
    message = err.message or str(err)
    classified = classify_error(code, message, table_name)
    if classified is None:
        return TransportFailure(f"Request failed ({code or 'no code'}): {message}")
    return classified


def classify_db_error(err: DBAPIError, table_name: str) -> KeepAliveError:
    """Map a SQLAlchemy-wrapped driver error onto the keep-alive error taxonomy."""
    orig = getattr(err, "orig", None)
    # libpq connection failures carry no pgcode
    code = str(getattr(orig, "pgcode", None) or "")
    message = str(orig if orig is not None else err).strip()
    classified = classify_error(code, message, table_name)
    if classified is None:
        return TransportFailure(f"Database error: {message}")
    return classified


# ---------- Validation ----------
def validate_endpoint(endpoint: Optional[str]) -> str:
    if not endpoint or not endpoint.strip():
        raise InvalidEndpoint("Endpoint URL is empty (set SUPABASE_URL)")
    endpoint = endpoint.strip()
    parsed = urlparse(endpoint)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise InvalidEndpoint(f"Endpoint URL is malformed: {endpoint!r}")
    return endpoint


def validate_credential(credential: Optional[str]) -> str:
    if not credential or not credential.strip():
        raise InvalidCredential("Access key is empty (set SUPABASE_KEY)")
    return credential.strip()


def validate_table(table_name: Optional[str]) -> str:
    if not table_name or not table_name.strip():
        raise ResourceNotFound("", "no table name configured")
    return table_name.strip()


# ---------- Probes ----------
def ping(endpoint: Optional[str], credential: Optional[str], table_name: str = DEFAULT_TABLE) -> int:
    """
    Read at most one row's `id` from table_name through the Supabase client.
    Returns the number of rows returned (0 or 1).
    Raises a KeepAliveError subclass on any failure; nothing is retried.
    """
    endpoint = validate_endpoint(endpoint)
    credential = validate_credential(credential)
    table_name = validate_table(table_name)

    try:
        client = create_client(endpoint, credential)
    except SupabaseException as e:
        if str(e) in CLIENT_URL_ERRORS:
            raise InvalidEndpoint(f"Endpoint rejected by client: {e}") from e
        raise InvalidCredential(f"Key rejected by client: {e}") from e

    try:
        response = client.table(table_name).select(PROBE_COLUMN).limit(1).execute()
    except APIError as e:
        raise classify_api_error(e, table_name) from e
    except (httpx.ConnectError, httpx.UnsupportedProtocol, httpx.InvalidURL) as e:
        raise InvalidEndpoint(f"Endpoint unreachable: {e}") from e
    except httpx.HTTPError as e:
        raise TransportFailure(f"Network error: {e}") from e
    except Exception as e:
        raise TransportFailure(f"Unexpected error: {e}") from e

    return len(response.data or [])


def ping_sql(db_url: Optional[str], table_name: str = DEFAULT_TABLE) -> int:
    """
    Same probe as ping(), but over a direct Postgres connection.
    Runs `SELECT id FROM <table> LIMIT 1` inside a read-only transaction.
    """
    if not db_url or not db_url.strip():
        raise InvalidEndpoint("Database URL is empty (set SUPABASE_DB_URL)")
    table_name = validate_table(table_name)

    try:
        engine = create_engine(
            db_url.strip(),
            future=True,
            connect_args={"connect_timeout": SQL_CONNECT_TIMEOUT},
        )
    except ArgumentError as e:
        raise InvalidEndpoint(f"Database URL is malformed: {e}") from e

    try:
        quoted = engine.dialect.identifier_preparer.quote(table_name)
        with engine.connect() as conn:
            conn.execute(text("SET TRANSACTION READ ONLY"))
            rows = conn.execute(text(f"SELECT {PROBE_COLUMN} FROM {quoted} LIMIT 1")).fetchall()
    except DBAPIError as e:
        raise classify_db_error(e, table_name) from e
    except Exception as e:
        raise TransportFailure(f"Unexpected error: {e}") from e
    finally:
        engine.dispose()

    return len(rows)


def check_rows(count: int, table_name: str, require_rows: bool = False) -> int:
    """
    Under RLS an anon key with no SELECT policy reads zero rows instead of failing.
    With require_rows, an empty read is reported as AccessDenied.
    """
    if require_rows and count == 0:
        raise AccessDenied(
            f"No rows visible in '{table_name}'; a row-level security policy may be hiding them"
        )
    return count


# ---------- Logging ----------
def log_event(script: str, status: str, details: Optional[str] = None) -> None:
    """
    Print one tagged log line. status should be one of: 'success', 'error'.
    The keep-alive never writes to the database, so this only goes to stdout
    (which the scheduler keeps in its run history).
    """
    ts = datetime.now()
    print(f"[LOG] {ts.isoformat()} | {script} | {status} | {details}")
