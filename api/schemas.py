"""Pydantic schemas for the interview turn and quality dashboard API."""
from __future__ import annotations

from typing import Dict, Optional

from pydantic import BaseModel, Field


class StartReq(BaseModel):
    bot_id: str


class StartResp(BaseModel):
    conversation_id: str


class TurnReq(BaseModel):
    message: str = Field(min_length=1)


class TurnResp(BaseModel):
    conversation_id: str
    message: str
    phase: Optional[str] = None
    status: Optional[str] = None
    topic_id: Optional[str] = None
    completed: bool = False
    degraded: bool = False
    quality: Optional[Dict] = None
    flow_flags: Optional[Dict] = None
