"""SQLite persistence for studio-shot request logs and their cost line items."""

from __future__ import annotations

import os
import sqlite3
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

DB_PATH = Path(os.environ.get("STUDIO_DB_PATH") or Path(__file__).parent / "runs.db")


@contextmanager
def _conn() -> Iterator[sqlite3.Connection]:
    con = sqlite3.connect(str(DB_PATH))
    con.row_factory = sqlite3.Row
    con.execute("PRAGMA foreign_keys = ON")
    try:
        with con:
            yield con
    finally:
        con.close()


def init_db(path: Optional[str] = None) -> None:
    """Create tables. Called once at process start; ``path`` overrides DB_PATH."""
    global DB_PATH
    if path:
        DB_PATH = Path(path)
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)

    with _conn() as con:
        con.execute("PRAGMA journal_mode=WAL")
        con.execute(
            """
            CREATE TABLE IF NOT EXISTS request_logs (
                id              TEXT PRIMARY KEY,
                created_at      DATETIME DEFAULT (datetime('now')),
                title           TEXT NOT NULL,
                user_concept    TEXT,
                concept_used    TEXT,
                text_provider   TEXT NOT NULL,
                text_model      TEXT NOT NULL,
                image_provider  TEXT NOT NULL,
                image_model     TEXT NOT NULL,
                success         INTEGER NOT NULL DEFAULT 0,
                error_message   TEXT,
                total_cost_usd  REAL NOT NULL DEFAULT 0,
                latency_ms      INTEGER NOT NULL DEFAULT 0
            )
            """
        )
        con.execute(
            """
            CREATE TABLE IF NOT EXISTS request_cost_line_items (
                id              TEXT PRIMARY KEY,
                request_id      TEXT NOT NULL
                                REFERENCES request_logs(id) ON DELETE CASCADE,
                stage           TEXT NOT NULL,   -- VISION | CONCEPT | IMAGE_EDIT
                provider        TEXT NOT NULL,
                model           TEXT NOT NULL,
                input_tokens    INTEGER,
                output_tokens   INTEGER,
                total_tokens    INTEGER,
                image_size      INTEGER,
                image_count     INTEGER,
                cost_usd        REAL NOT NULL DEFAULT 0,
                created_at      DATETIME DEFAULT (datetime('now'))
            )
            """
        )
        con.execute(
            "CREATE INDEX IF NOT EXISTS idx_line_items_request "
            "ON request_cost_line_items(request_id)"
        )
        con.execute(
            "CREATE INDEX IF NOT EXISTS idx_line_items_created "
            "ON request_cost_line_items(created_at)"
        )


# ---------------------------------------------------------------------------
# Request logs
# ---------------------------------------------------------------------------

def create_request_log(title: str, user_concept: Optional[str], config: Any) -> str:
    """Insert a placeholder row (success=false, no cost yet) and return its id."""
    request_id = uuid.uuid4().hex
    with _conn() as con:
        con.execute(
            "INSERT INTO request_logs (id, title, user_concept, text_provider, text_model, "
            "image_provider, image_model, success, total_cost_usd, latency_ms) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, 0, 0, 0)",
            (
                request_id, title, user_concept,
                config.text_provider, config.text_model,
                config.image_provider, config.image_model,
            ),
        )
    return request_id


def complete_request_log(
    request_id: str,
    concept_used: str,
    total_cost_usd: float,
    latency_ms: int,
) -> None:
    with _conn() as con:
        con.execute(
            """
            UPDATE request_logs SET
                concept_used   = ?,
                success        = 1,
                error_message  = NULL,
                total_cost_usd = ?,
                latency_ms     = ?
            WHERE id = ?
            """,
            (concept_used, total_cost_usd, latency_ms, request_id),
        )


def fail_request_log(request_id: str, error_message: str, latency_ms: int) -> None:
    with _conn() as con:
        con.execute(
            "UPDATE request_logs SET success=0, error_message=?, latency_ms=? WHERE id=?",
            (error_message, latency_ms, request_id),
        )


def delete_request_log(request_id: str) -> None:
    """Remove a log row; its line items go with it."""
    with _conn() as con:
        con.execute("DELETE FROM request_logs WHERE id=?", (request_id,))


# ---------------------------------------------------------------------------
# Cost line items
# ---------------------------------------------------------------------------

_LINE_ITEM_COLUMNS = (
    "stage", "provider", "model",
    "input_tokens", "output_tokens", "total_tokens",
    "image_size", "image_count", "cost_usd",
)


def add_cost_line_item(request_id: str, item: Dict[str, Any]) -> str:
    item_id = uuid.uuid4().hex
    values = [item.get(col) for col in _LINE_ITEM_COLUMNS]
    with _conn() as con:
        con.execute(
            f"INSERT INTO request_cost_line_items (id, request_id, {', '.join(_LINE_ITEM_COLUMNS)}) "
            f"VALUES (?, ?, {', '.join('?' for _ in _LINE_ITEM_COLUMNS)})",
            (item_id, request_id, *values),
        )
    return item_id


def list_line_items(request_id: str) -> List[Dict]:
    with _conn() as con:
        rows = con.execute(
            "SELECT * FROM request_cost_line_items WHERE request_id=? "
            "ORDER BY created_at, rowid",
            (request_id,),
        ).fetchall()
    return [dict(r) for r in rows]


# ---------------------------------------------------------------------------
# Reads for the admin view
# ---------------------------------------------------------------------------

def get_request_log(request_id: str) -> Optional[Dict]:
    with _conn() as con:
        row = con.execute("SELECT * FROM request_logs WHERE id=?", (request_id,)).fetchone()
    if not row:
        return None
    log_row = _deserialise(dict(row))
    log_row["line_items"] = list_line_items(request_id)
    return log_row


def list_request_logs(limit: int = 50) -> List[Dict]:
    with _conn() as con:
        rows = con.execute(
            "SELECT * FROM request_logs ORDER BY created_at DESC, rowid DESC LIMIT ?", (limit,)
        ).fetchall()
    result = []
    for r in rows:
        log_row = _deserialise(dict(r))
        log_row["line_items"] = list_line_items(log_row["id"])
        result.append(log_row)
    return result


def _deserialise(row: Dict) -> Dict:
    row["success"] = bool(row.get("success"))
    return row
