import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from uuid import uuid4

from text_humanizer.config import settings

DOCUMENT_FIELDS = {"title", "original_text", "humanized_text", "ud_document_id", "humanization_settings"}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _conn() -> sqlite3.Connection:
    Path(settings.database_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(settings.database_path, timeout=10)
    conn.row_factory = sqlite3.Row
    return conn


def _has_col(conn: sqlite3.Connection, table: str, col: str) -> bool:
    rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return any(r["name"] == col for r in rows)


def init_db() -> None:
    with _conn() as conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS users (
              user_id TEXT PRIMARY KEY,
              credits_remaining INTEGER NOT NULL DEFAULT 0 CHECK (credits_remaining >= 0),
              plan_type TEXT NOT NULL DEFAULT 'free',
              created_at TEXT NOT NULL,
              last_seen_at TEXT NOT NULL
            )
            """
        )

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS credit_transactions (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              user_id TEXT NOT NULL,
              amount INTEGER NOT NULL,
              description TEXT NOT NULL,
              transaction_type TEXT NOT NULL,
              reference TEXT,
              created_at TEXT NOT NULL,
              UNIQUE (reference, transaction_type)
            )
            """
        )

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS documents (
              id TEXT PRIMARY KEY,
              user_id TEXT NOT NULL,
              title TEXT NOT NULL,
              original_text TEXT NOT NULL,
              humanized_text TEXT,
              character_count INTEGER NOT NULL DEFAULT 0,
              ud_document_id TEXT,
              humanization_settings TEXT NOT NULL DEFAULT '{}',
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            )
            """
        )

        if not _has_col(conn, "users", "plan_type"):
            conn.execute("ALTER TABLE users ADD COLUMN plan_type TEXT NOT NULL DEFAULT 'free'")
        if not _has_col(conn, "documents", "character_count"):
            conn.execute("ALTER TABLE documents ADD COLUMN character_count INTEGER NOT NULL DEFAULT 0")
        if not _has_col(conn, "documents", "ud_document_id"):
            conn.execute("ALTER TABLE documents ADD COLUMN ud_document_id TEXT")

        conn.execute("CREATE INDEX IF NOT EXISTS idx_credit_transactions_user ON credit_transactions(user_id)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_documents_user ON documents(user_id)")
        conn.commit()


def _document(row: sqlite3.Row | None) -> dict | None:
    if not row:
        return None
    doc = dict(row)
    doc["humanization_settings"] = json.loads(doc["humanization_settings"] or "{}")
    return doc


def save_document(
    user_id: str,
    title: str,
    original_text: str,
    humanized_text: str | None,
    humanization_settings: dict,
    ud_document_id: str | None,
) -> dict:
    doc_id = str(uuid4())
    ts = _now()
    with _conn() as conn:
        conn.execute(
            """
            INSERT INTO documents (
              id, user_id, title, original_text, humanized_text, character_count,
              ud_document_id, humanization_settings, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                doc_id,
                user_id,
                title,
                original_text,
                humanized_text,
                len(original_text),
                ud_document_id,
                json.dumps(humanization_settings),
                ts,
                ts,
            ),
        )
        conn.commit()
    return get_document(doc_id)


def update_document(doc_id: str, updates: dict[str, Any]) -> dict | None:
    unknown = set(updates) - DOCUMENT_FIELDS
    if unknown:
        raise ValueError(f"unknown document fields: {sorted(unknown)}")

    fields = ["updated_at = ?"]
    values: list[Any] = [_now()]
    for name, value in updates.items():
        if name == "humanization_settings":
            value = json.dumps(value)
        fields.append(f"{name} = ?")
        values.append(value)
        if name == "original_text":
            fields.append("character_count = ?")
            values.append(len(value))

    values.append(doc_id)
    sql = f"UPDATE documents SET {', '.join(fields)} WHERE id = ?"
    with _conn() as conn:
        conn.execute(sql, tuple(values))
        conn.commit()
    return get_document(doc_id)


def get_document(doc_id: str) -> dict | None:
    with _conn() as conn:
        row = conn.execute("SELECT * FROM documents WHERE id = ?", (doc_id,)).fetchone()
    return _document(row)


def get_documents(user_id: str, limit: int = 100) -> list[dict]:
    with _conn() as conn:
        rows = conn.execute(
            "SELECT * FROM documents WHERE user_id = ? ORDER BY created_at DESC, rowid DESC LIMIT ?",
            (user_id, limit),
        ).fetchall()
    return [_document(r) for r in rows]


def delete_document(doc_id: str) -> bool:
    with _conn() as conn:
        cur = conn.execute("DELETE FROM documents WHERE id = ?", (doc_id,))
        conn.commit()
    return cur.rowcount > 0
