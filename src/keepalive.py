# src/keepalive.py

"""
Ping Supabase so the project doesn't get paused for inactivity.
Reads the `id` of at most one row from KEEPALIVE_TABLE (default: health_check)
and exits 0 on success, 1 on any failure. Run on a schedule by
.github/workflows/keepalive.yml; can also be run by hand.
"""

import sys

from supabase_io import (
    KeepAliveError,
    VIA_REST,
    VIA_SQL,
    check_rows,
    get_settings,
    log_event,
    ping,
    ping_sql,
)

SCRIPT_NAME = "keepalive.py"


def run_probe(settings: dict) -> int:
    """Dispatch to the configured probe and return the row count."""
    via = settings["via"]
    table = settings["table"]
    if via == VIA_REST:
        print(f"[PING] Reading one row from '{table}' via REST")
        count = ping(settings["url"], settings["key"], table)
    elif via == VIA_SQL:
        print(f"[PING] Reading one row from '{table}' via SQL")
        count = ping_sql(settings["db_url"], table)
    else:
        raise KeepAliveError(f"Unknown KEEPALIVE_VIA value {via!r} (expected '{VIA_REST}' or '{VIA_SQL}')")
    return check_rows(count, table, settings.get("require_rows", False))


def main() -> int:
    settings = get_settings()
    try:
        count = run_probe(settings)
    except KeepAliveError as e:
        log_event(SCRIPT_NAME, "error", f"Keep-alive failed: {e}")
        return 1
    except Exception as e:
        log_event(SCRIPT_NAME, "error", f"Keep-alive failed: {e}")
        raise

    log_event(SCRIPT_NAME, "success", f"Found {count} records in {settings['table']}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
