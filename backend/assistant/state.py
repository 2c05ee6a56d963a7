from datetime import datetime
from enum import Enum
from typing import List, Literal, Optional, TypedDict
from pydantic import BaseModel, ConfigDict, Field

Direction = Literal["buy", "sell"]
ValidationResult = Literal["approved", "rejected", "warning"]


class ConversationStep(str, Enum):
    INITIAL = "initial"
    AWAITING_DIRECTION = "awaiting_direction"
    AWAITING_DETAILS = "awaiting_details"
    ANALYSIS_COMPLETE = "analysis_complete"


class TradeContext(BaseModel):
    """Direction / pair / details collected over one conversation."""
    model_config = ConfigDict(frozen=True)

    direction: Optional[Direction] = None
    pair: Optional[str] = None
    details: Optional[str] = None


class ChatMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Literal["user", "model"]
    text: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class Conversation(BaseModel):
    """Immutable conversation value; the stepper returns a new one per input."""
    model_config = ConfigDict(frozen=True)

    step: ConversationStep = ConversationStep.INITIAL
    context: TradeContext = Field(default_factory=TradeContext)
    messages: tuple[ChatMessage, ...] = ()


class DraftTradeEntry(BaseModel):
    notes: str
    validation_result: ValidationResult
    type: Direction
    screenshot_url: Optional[str] = None
    date: str


class StructuredVerdict(BaseModel):
    verdict: str
    explanation: str


class AnalysisState(TypedDict, total=False):
    """State flowing through the analysis graph."""
    trade_details: str
    rules: List[str]
    image: Optional[str]
    context: TradeContext
    current_input: str
    response_text: str
    validation_result: ValidationResult
    draft: DraftTradeEntry
