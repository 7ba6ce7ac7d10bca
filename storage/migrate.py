"""SQLite schema migrations."""
from __future__ import annotations

import os
import sqlite3
from typing import Iterable

SCHEMA: Iterable[str] = [
    """
CREATE TABLE IF NOT EXISTS bots (
  id TEXT PRIMARY KEY,
  name TEXT NOT NULL,
  language TEXT NOT NULL DEFAULT 'it',
  objective TEXT NOT NULL DEFAULT '',
  topics TEXT NOT NULL DEFAULT '[]',
  max_duration_mins INTEGER NOT NULL DEFAULT 10,
  should_collect_data INTEGER NOT NULL DEFAULT 0,
  candidate_fields TEXT NOT NULL DEFAULT '[]',
  organization_id TEXT,
  organization_name TEXT
);
""",
    """
CREATE TABLE IF NOT EXISTS conversations (
  id TEXT PRIMARY KEY,
  bot_id TEXT NOT NULL REFERENCES bots(id),
  state TEXT NOT NULL,
  started_at TEXT NOT NULL,
  updated_at TEXT NOT NULL
);
""",
    """
CREATE TABLE IF NOT EXISTS messages (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  conversation_id TEXT NOT NULL REFERENCES conversations(id),
  role TEXT NOT NULL,
  content TEXT NOT NULL,
  metadata TEXT,
  created_at TEXT NOT NULL
);
""",
    "CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id, id);",
    "CREATE INDEX IF NOT EXISTS idx_messages_role_created ON messages(role, created_at);",
]


def migrate(db_path: str = "data/interview.db") -> None:
    """Apply schema migrations to the SQLite database."""

    directory = os.path.dirname(db_path) or "."
    os.makedirs(directory, exist_ok=True)
    conn = sqlite3.connect(db_path)
    try:
        cur = conn.cursor()
        for stmt in SCHEMA:
            cur.execute(stmt)
        conn.commit()
    finally:
        conn.close()


if __name__ == "__main__":
    migrate()
