"""FastAPI routes for interview turns and the admin quality dashboard."""
from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Query

from agents.quality_gate import TurnGenerationError
from api.schemas import StartReq, StartResp, TurnReq, TurnResp
from config.lexicons import pack_for, resolve_language
from config.settings import settings
from llm_gateway import LlmGatewayError
from observability.logger import log_event
from services.interview_turn import ConversationNotFoundError, InterviewTurnEngine
from services.quality_dashboard import get_interview_quality_dashboard_data
from storage.conversations import get_bot, get_conversation


router = APIRouter(prefix="/api")

_engine = InterviewTurnEngine()


def _apology_language(conversation_id: str) -> str:
    conversation = get_conversation(conversation_id)
    bot = get_bot(conversation.bot_id) if conversation else None
    return bot.language if bot else settings.DEFAULT_LANGUAGE


@router.post("/interviews", response_model=StartResp, status_code=201)
def start_interview(req: StartReq) -> StartResp:
    try:
        conversation_id = _engine.start_conversation(req.bot_id)
    except ConversationNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return StartResp(conversation_id=conversation_id)


@router.post("/interviews/{conversation_id}/turn", response_model=TurnResp)
def interview_turn(conversation_id: str, req: TurnReq) -> TurnResp:
    try:
        result = _engine.handle_turn(conversation_id, req.message)
    except ConversationNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Conversation not found") from exc
    except (TurnGenerationError, LlmGatewayError) as exc:
        log_event("turn.failed", conversation_id, error=str(exc))
        apology = pack_for(resolve_language(_apology_language(conversation_id))).apology
        return TurnResp(conversation_id=conversation_id, message=apology, degraded=True)
    return TurnResp(
        conversation_id=result.conversation_id,
        message=result.message,
        phase=result.phase,
        status=result.status,
        topic_id=result.topic_id,
        completed=result.completed,
        quality=result.quality.model_dump(by_alias=True),
        flow_flags=result.flow_flags.model_dump(by_alias=True),
    )


@router.get("/admin/interview-quality")
def interview_quality(
    window_hours: Optional[int] = Query(default=None),
    max_turns: Optional[int] = Query(default=None),
    bot_id: Optional[str] = Query(default=None),
    include_ai_review: bool = Query(default=False),
) -> Dict[str, Any]:
    data = get_interview_quality_dashboard_data(
        window_hours=window_hours,
        max_turns=max_turns,
        bot_id=bot_id,
        include_ai_review=include_ai_review,
    )
    return data.model_dump(by_alias=True)
