"""Shared type definitions for the interview engine."""
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

Phase = Literal["EXPLORE", "DEEPEN", "DEEP_OFFER", "DATA_COLLECTION", "COMPLETE"]

OPEN_PHASES = frozenset({"EXPLORE", "DEEPEN"})
COMPLETION_TAG = "INTERVIEW_COMPLETED"

SupervisorStatus = Literal[
    "EXPLORING",
    "EXPLORING_DEEP",
    "TRANSITION",
    "DEEPENING",
    "DEEP_OFFER_ASK",
    "DATA_COLLECTION_CONSENT",
    "DATA_COLLECTION",
    "COMPLETE_WITHOUT_DATA",
    "FINAL_GOODBYE",
    "CLARIFY",
    "SCOPE_REDIRECT",
]

TransitionMode = Literal["bridge", "clean_pivot"]
UserTurnSignal = Literal["none", "clarification", "off_topic_question"]
ResponseDepth = Literal["brief", "balanced", "rich"]
DiagnosticLens = Literal["example", "impact", "priority", "action"]
EngagementBand = Literal["low", "medium", "high"]
BudgetAction = Literal["continue", "bonus", "advance"]
OfferReply = Literal["ACCEPT", "REFUSE", "NEUTRAL"]
CompletionGuardAction = Literal["ask_consent", "ask_missing_field", "allow_completion"]
Role = Literal["user", "assistant"]


class AnchorSet(BaseModel):
    anchors: List[str] = Field(default_factory=list)
    anchor_roots: List[str] = Field(default_factory=list)


class TopicBlock(BaseModel):
    id: str
    label: str
    description: Optional[str] = None
    sub_goals: List[str] = Field(default_factory=list)


class TopicBudget(BaseModel):
    """Turn allowance for one topic; ``turns_used`` never passes ``max_turns``."""

    base_turns: int = Field(ge=1)
    min_turns: int = Field(ge=1)
    max_turns: int = Field(ge=1)
    turns_used: int = Field(default=0, ge=0)
    bonus_turns_granted: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _check_range(self) -> "TopicBudget":
        if not (self.min_turns <= self.base_turns <= self.max_turns):
            raise ValueError("TopicBudget requires min_turns <= base_turns <= max_turns")
        if self.turns_used > self.max_turns:
            raise ValueError("turns_used exceeds max_turns")
        return self

    @property
    def remaining(self) -> int:
        return max(0, self.max_turns - self.turns_used)


class InterestingTopic(BaseModel):
    topic_id: str
    topic_label: str
    engagement_score: float = Field(ge=0.0, le=1.0)
    best_snippet: Optional[str] = None


class EngagementSignal(BaseModel):
    score: float = Field(ge=0.0, le=1.0)
    band: EngagementBand
    snippet: str = ""


class SupervisorInsight(BaseModel):
    status: SupervisorStatus = "EXPLORING"
    transition_mode: Optional[TransitionMode] = None
    next_topic_id: Optional[str] = None
    next_sub_goal: Optional[str] = None
    focus_point: Optional[str] = None
    transition_bridge_snippet: Optional[str] = None
    engaging_snippet: Optional[str] = None
    user_signal: UserTurnSignal = "none"
    completion_guard_action: Optional[CompletionGuardAction] = None
    missing_field: Optional[str] = None


class InterviewState(BaseModel):
    """Conversation-scoped state mutated once per turn by the supervisor."""

    phase: Phase = "EXPLORE"
    topic_index: int = 0
    topic_budgets: Dict[str, TopicBudget] = Field(default_factory=dict)
    engagement_scores: Dict[str, float] = Field(default_factory=dict)
    key_insights: Dict[str, str] = Field(default_factory=dict)
    uncovered_topics: List[str] = Field(default_factory=list)
    deep_index: int = 0
    deep_turn_in_topic: int = 0
    deep_accepted: Optional[bool] = None
    extension_offer_attempts: int = 0
    consent_given: Optional[bool] = None
    data_collection_refused: bool = False
    collected_fields: Dict[str, str] = Field(default_factory=dict)
    pending_field: Optional[str] = None
    sub_goal_history: Dict[str, List[str]] = Field(default_factory=dict)
    turns_used_total: int = 0


class ChatMessage(BaseModel):
    role: Role
    content: str
    metadata: Optional[Dict] = None


class Usage(BaseModel):
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    total_tokens: Optional[int] = None


class UsageEvent(BaseModel):
    source: str
    model: Optional[str] = None
    usage: Optional[Usage] = None


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class QualityTelemetry(_CamelModel):
    """Per assistant turn gate outcome; ``score``/``passed`` only when evaluated."""

    eligible: bool = False
    evaluated: bool = False
    score: Optional[float] = None
    passed: Optional[bool] = None
    gate_triggered: bool = False
    regenerated: bool = False
    fallback_used: bool = False

    @model_validator(mode="after")
    def _null_unless_evaluated(self) -> "QualityTelemetry":
        if not self.evaluated:
            self.score = None
            self.passed = None
        return self


class FlowFlags(_CamelModel):
    topic_closure_intercepted: bool = False
    deep_offer_closure_intercepted: bool = False
    completion_guard_intercepted: bool = False
    completion_blocked_for_consent: bool = False
    completion_blocked_for_missing_field: bool = False


class AssistantTurnMetadata(_CamelModel):
    quality: Optional[QualityTelemetry] = None
    flow_flags: Optional[FlowFlags] = None
    phase: Optional[Phase] = None
    topic_id: Optional[str] = None
    signal: UserTurnSignal = "none"
    transition_mode: Optional[TransitionMode] = None

    def to_json_dict(self) -> Dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class ParsedQuality(BaseModel):
    eligible: bool = False
    evaluated: bool = False
    score: Optional[float] = None
    passed: Optional[bool] = None
    gate_triggered: bool = False
    regenerated: bool = False
    fallback_used: bool = False


class ParsedFlow(BaseModel):
    topic_closure_intercepted: bool = False
    deep_offer_closure_intercepted: bool = False
    completion_guard_intercepted: bool = False
    completion_blocked_for_consent: bool = False
    completion_blocked_for_missing_field: bool = False


class ParsedAssistantTurnTelemetry(BaseModel):
    has_quality_telemetry: bool = False
    has_flow_telemetry: bool = False
    quality: ParsedQuality = Field(default_factory=ParsedQuality)
    flow: ParsedFlow = Field(default_factory=ParsedFlow)


class QualitativeChecks(BaseModel):
    avoids_closure: bool
    avoids_premature_contact: bool
    deep_offer_intent: bool
    probing_when_user_is_brief: bool
    references_user_context: bool
    non_repetitive: bool


class QualitativeResult(BaseModel):
    passed: bool
    score: int
    checks: QualitativeChecks
    issues: List[str] = Field(default_factory=list)


class QuestionOnly(BaseModel):
    question: str


class TurnReply(BaseModel):
    message: str
