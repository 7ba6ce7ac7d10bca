"""Persistence helpers for conversation messages and assistant-turn telemetry rows."""
from __future__ import annotations

import datetime as dt
import json
import sqlite3
from typing import Any, Dict, List, Optional, Tuple

from agents.types import ChatMessage
from services.quality_dashboard import AssistantTurnRow

from .conversations import iso_utc, utc_now
from .sqlite import use_conn


def insert_message(
    conversation_id: str,
    role: str,
    content: str,
    metadata: Optional[Dict[str, Any]] = None,
    *,
    created_at: Optional[dt.datetime] = None,
    conn: Optional[sqlite3.Connection] = None,
) -> int:
    """Insert a message row and return its primary key."""

    with use_conn(conn) as db:
        cur = db.execute(
            """INSERT INTO messages (conversation_id, role, content, metadata, created_at)
               VALUES (?, ?, ?, ?, ?)""",
            (
                conversation_id,
                role,
                content,
                json.dumps(metadata, ensure_ascii=False) if metadata is not None else None,
                iso_utc(created_at or utc_now()),
            ),
        )
        return int(cur.lastrowid)


def _metadata(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    if not raw:
        return None
    try:
        value = json.loads(raw)
    except ValueError:
        return None
    return value if isinstance(value, dict) else None


def list_messages(
    conversation_id: str,
    *,
    limit: Optional[int] = None,
    conn: Optional[sqlite3.Connection] = None,
) -> List[ChatMessage]:
    """Conversation history, oldest first (the newest ``limit`` when given)."""

    with use_conn(conn) as db:
        if limit is None:
            rows = db.execute(
                "SELECT role, content, metadata FROM messages WHERE conversation_id = ? ORDER BY id",
                (conversation_id,),
            ).fetchall()
        else:
            rows = db.execute(
                """SELECT role, content, metadata FROM (
                     SELECT id, role, content, metadata FROM messages
                     WHERE conversation_id = ? ORDER BY id DESC LIMIT ?
                   ) ORDER BY id""",
                (conversation_id, limit),
            ).fetchall()
    return [ChatMessage(role=row["role"], content=row["content"], metadata=_metadata(row["metadata"])) for row in rows]


def fetch_assistant_turns(
    *,
    start: dt.datetime,
    end: dt.datetime,
    max_turns: int,
    bot_id: Optional[str] = None,
    conn: Optional[sqlite3.Connection] = None,
) -> Tuple[List[AssistantTurnRow], bool]:
    """Assistant messages created in ``[start, end)``, newest first, capped at ``max_turns``.

    The flag is True when the cap was reached and older rows may be missing.
    """

    query = """
        SELECT m.metadata, b.id AS bot_id, b.name AS bot_name,
               b.organization_id, b.organization_name
        FROM messages m
        JOIN conversations c ON c.id = m.conversation_id
        JOIN bots b ON b.id = c.bot_id
        WHERE m.role = 'assistant' AND m.created_at >= ? AND m.created_at < ?
    """
    params: List[Any] = [iso_utc(start), iso_utc(end)]
    if bot_id:
        query += " AND b.id = ?"
        params.append(bot_id)
    query += " ORDER BY m.created_at DESC LIMIT ?"
    params.append(max_turns)

    with use_conn(conn) as db:
        rows = db.execute(query, params).fetchall()
    turns = [
        AssistantTurnRow(
            bot_id=row["bot_id"],
            bot_name=row["bot_name"] or "Untitled bot",
            organization_id=row["organization_id"],
            organization_name=row["organization_name"],
            metadata=row["metadata"],
        )
        for row in rows
    ]
    return turns, len(turns) >= max_turns


__all__ = ["fetch_assistant_turns", "insert_message", "list_messages"]
