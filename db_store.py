# db_store.py
"""
Postgres adapter used by every RCM service.

One connection per call; `with conn:` commits on success and rolls back on error.
Rows come back as plain dicts (RealDictCursor).
"""

import os
import json
import math
import time
import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence
import psycopg2
import psycopg2.extras

log = logging.getLogger("db_store")
DATABASE_URL = os.getenv("DATABASE_URL", "").strip()
SLOW_QUERY_MS = int(os.getenv("SLOW_QUERY_MS", "1000"))

def _get_conn():
    if not DATABASE_URL:
        raise RuntimeError("DATABASE_URL is not set")
    return psycopg2.connect(DATABASE_URL)

def _log_timing(sql: str, params: Optional[Sequence[Any]], started: float, failed: Optional[Exception] = None):
    elapsed_ms = int((time.monotonic() - started) * 1000)
    snippet = " ".join(sql.split())[:100]
    if failed is not None:
        log.error("query failed after %dms: %s... params=%s error=%s", elapsed_ms, snippet, params, failed)
    elif elapsed_ms > SLOW_QUERY_MS:
        log.warning("slow query (%dms): %s...", elapsed_ms, snippet)

def _run(sql: str, params: Optional[Sequence[Any]], fetch: str):
    started = time.monotonic()
    conn = _get_conn()
    try:
        with conn:
            with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                cur.execute(sql, params)
                if fetch == "one":
                    row = cur.fetchone() if cur.description else None
                    result = dict(row) if row else None
                else:
                    result = [dict(r) for r in cur.fetchall()] if cur.description else []
    except Exception as e:
        _log_timing(sql, params, started, failed=e)
        raise
    finally:
        conn.close()
    _log_timing(sql, params, started)
    return result

def query_one(sql: str, params: Optional[Sequence[Any]] = None) -> Optional[Dict[str, Any]]:
    """Run a query, expect at most one row."""
    return _run(sql, params, "one")

def query_all(sql: str, params: Optional[Sequence[Any]] = None) -> List[Dict[str, Any]]:
    """Run a query, expect many rows."""
    return _run(sql, params, "all")

def execute(sql: str, params: Optional[Sequence[Any]] = None) -> Optional[Dict[str, Any]]:
    """Write statement; returns the RETURNING row when there is one."""
    return _run(sql, params, "one")

def query_page(sql: str, count_sql: str, params: Optional[Sequence[Any]] = None, page: int = 1, limit: int = 10) -> Dict[str, Any]:
    page = max(int(page), 1)
    limit = max(int(limit), 1)
    params = list(params or [])
    total_row = query_one(count_sql, params) or {}
    total = int(total_row.get("total") or 0)
    rows = query_all(f"{sql} LIMIT %s OFFSET %s", params + [limit, (page - 1) * limit])
    total_pages = math.ceil(total / limit) if total else 0
    return {
        "data": rows,
        "pagination": {
            "total": total,
            "page": page,
            "limit": limit,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
    }

@contextmanager
def transaction() -> Iterator[Any]:
    conn = _get_conn()
    try:
        with conn:
            with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                yield cur
    finally:
        conn.close()

def audit_log(table_name: str, record_id: Any, action: str, old_values: Optional[Dict[str, Any]], new_values: Optional[Dict[str, Any]], user_id: Optional[str] = None):
    # audit failures must not break the operation being audited
    try:
        execute("""
            INSERT INTO public.audit_logs (table_name, record_id, action, old_values, new_values, user_id, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, now());
        """, (
            table_name,
            str(record_id),
            action,
            json.dumps(old_values, default=str) if old_values is not None else None,
            json.dumps(new_values, default=str) if new_values is not None else None,
            user_id,
        ))
    except Exception:
        log.exception("audit log insert failed for %s/%s (%s)", table_name, record_id, action)
