"""Persistence helpers for bots and conversation state."""
from __future__ import annotations

import datetime as dt
import json
import sqlite3
import uuid
from typing import List, Optional

from pydantic import BaseModel, Field

from agents.types import InterviewState, TopicBlock

from .sqlite import use_conn


class CandidateField(BaseModel):
    id: str
    label: str


class BotRecord(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    language: str = "it"
    objective: str = ""
    topics: List[TopicBlock] = Field(default_factory=list)
    max_duration_mins: int = 10
    should_collect_data: bool = False
    candidate_fields: List[CandidateField] = Field(default_factory=list)
    organization_id: Optional[str] = None
    organization_name: Optional[str] = None


class ConversationRecord(BaseModel):
    id: str
    bot_id: str
    state: InterviewState
    started_at: str
    updated_at: str


def utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def iso_utc(moment: dt.datetime) -> str:
    """Fixed-width UTC ISO timestamp so stored values sort as text."""

    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=dt.timezone.utc)
    return moment.astimezone(dt.timezone.utc).isoformat(timespec="microseconds")


def insert_bot(bot: BotRecord, *, conn: Optional[sqlite3.Connection] = None) -> str:
    with use_conn(conn) as db:
        db.execute(
            """INSERT INTO bots
               (id, name, language, objective, topics, max_duration_mins,
                should_collect_data, candidate_fields, organization_id, organization_name)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                bot.id,
                bot.name,
                bot.language,
                bot.objective,
                json.dumps([topic.model_dump() for topic in bot.topics]),
                bot.max_duration_mins,
                int(bot.should_collect_data),
                json.dumps([field.model_dump() for field in bot.candidate_fields]),
                bot.organization_id,
                bot.organization_name,
            ),
        )
    return bot.id


def get_bot(bot_id: str, *, conn: Optional[sqlite3.Connection] = None) -> Optional[BotRecord]:
    with use_conn(conn) as db:
        row = db.execute("SELECT * FROM bots WHERE id = ?", (bot_id,)).fetchone()
    if row is None:
        return None
    return BotRecord(
        id=row["id"],
        name=row["name"],
        language=row["language"],
        objective=row["objective"],
        topics=json.loads(row["topics"] or "[]"),
        max_duration_mins=row["max_duration_mins"],
        should_collect_data=bool(row["should_collect_data"]),
        candidate_fields=json.loads(row["candidate_fields"] or "[]"),
        organization_id=row["organization_id"],
        organization_name=row["organization_name"],
    )


def create_conversation(
    bot_id: str,
    state: InterviewState,
    *,
    conversation_id: Optional[str] = None,
    started_at: Optional[dt.datetime] = None,
    conn: Optional[sqlite3.Connection] = None,
) -> str:
    conversation_id = conversation_id or str(uuid.uuid4())
    stamp = iso_utc(started_at or utc_now())
    with use_conn(conn) as db:
        db.execute(
            "INSERT INTO conversations (id, bot_id, state, started_at, updated_at) VALUES (?, ?, ?, ?, ?)",
            (conversation_id, bot_id, state.model_dump_json(), stamp, stamp),
        )
    return conversation_id


def get_conversation(conversation_id: str, *, conn: Optional[sqlite3.Connection] = None) -> Optional[ConversationRecord]:
    with use_conn(conn) as db:
        row = db.execute("SELECT * FROM conversations WHERE id = ?", (conversation_id,)).fetchone()
    if row is None:
        return None
    return ConversationRecord(
        id=row["id"],
        bot_id=row["bot_id"],
        state=InterviewState.model_validate_json(row["state"]),
        started_at=row["started_at"],
        updated_at=row["updated_at"],
    )


def save_state(conversation_id: str, state: InterviewState, *, conn: Optional[sqlite3.Connection] = None) -> None:
    with use_conn(conn) as db:
        db.execute(
            "UPDATE conversations SET state = ?, updated_at = ? WHERE id = ?",
            (state.model_dump_json(), iso_utc(utc_now()), conversation_id),
        )


__all__ = [
    "BotRecord",
    "CandidateField",
    "ConversationRecord",
    "create_conversation",
    "get_bot",
    "get_conversation",
    "insert_bot",
    "iso_utc",
    "save_state",
    "utc_now",
]
