"""Lightweight CLI helpers for inspecting assistant-turn telemetry."""
from __future__ import annotations

import argparse
import json
import sqlite3
from typing import Optional

from agents.quality_gate import parse_interview_assistant_telemetry
from config.settings import settings
from services.quality_dashboard import get_interview_quality_dashboard_data


def tail_turns(limit: int = 20) -> None:
    conn = sqlite3.connect(settings.DB_PATH)
    try:
        cursor = conn.cursor()
        cursor.execute(
            """
            SELECT created_at, conversation_id, content, metadata
            FROM messages
            WHERE role = 'assistant'
            ORDER BY id DESC
            LIMIT ?
            """,
            (limit,),
        )
        for row in cursor.fetchall():
            ts, conversation_id, content, metadata = row
            telemetry = parse_interview_assistant_telemetry(metadata)
            quality, flow = telemetry.quality, telemetry.flow
            phase = (json.loads(metadata) if metadata else {}).get("phase")
            print(
                f"[{ts}] {conversation_id} phase={phase} score={quality.score} passed={quality.passed} "
                f"gate={quality.gate_triggered} fallback={quality.fallback_used} "
                f"guard={flow.completion_guard_intercepted} :: {content[:80]}"
            )
    finally:
        conn.close()


def print_dashboard(window_hours: int, bot_id: Optional[str] = None, include_ai_review: bool = False) -> None:
    data = get_interview_quality_dashboard_data(
        window_hours=window_hours,
        bot_id=bot_id,
        include_ai_review=include_ai_review,
    )
    print(json.dumps(data.model_dump(by_alias=True), indent=2, ensure_ascii=False))


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--tail-turns", type=int, help="Show the latest assistant turns with their telemetry")
    parser.add_argument("--dashboard", type=int, metavar="HOURS", help="Print the quality dashboard for a window")
    parser.add_argument("--bot-id", help="Restrict the dashboard to one bot")
    parser.add_argument("--ai-review", action="store_true", help="Include the AI review in the dashboard")
    args = parser.parse_args()

    if args.tail_turns:
        tail_turns(args.tail_turns)
    if args.dashboard:
        print_dashboard(args.dashboard, args.bot_id, args.ai_review)


if __name__ == "__main__":
    main()
