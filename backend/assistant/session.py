import base64
import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional
from backend.assistant.graph import build_analysis_graph
from backend.assistant.state import ChatMessage, Conversation, ConversationStep, DraftTradeEntry
from backend.assistant.stepper import GREETING, advance
from backend.assistant.verdict import build_trade_details, parse_structured
from backend.config import MAX_IMAGE_BYTES, MAX_OPEN_SESSIONS, SESSION_IDLE_MINUTES

logger = logging.getLogger("TradeAssistant")

ANALYSIS_ERROR = "Trade analysis failed. Please try again."
RULES_ERROR = "Could not load your rules."

PLACEHOLDERS = {
    ConversationStep.INITIAL: "Is it a Buy or Sell?",
    ConversationStep.AWAITING_DIRECTION: "Which asset? (e.g., EURUSD, XAUUSD)",
    ConversationStep.AWAITING_DETAILS: "Describe your setup...",
    ConversationStep.ANALYSIS_COMPLETE: "Continue the conversation...",
}


class SessionNotFoundError(KeyError):
    pass

class SessionBusyError(RuntimeError):
    pass

class RulesLoadingError(RuntimeError):
    pass

class EmptyMessageError(ValueError):
    pass

class InvalidImageError(ValueError):
    pass


def to_data_url(data: bytes, content_type: str) -> str:
    encoded = base64.b64encode(data).decode("ascii")
    return f"data:{content_type};base64,{encoded}"


def rule_lines(rules: List[dict]) -> List[str]:
    """Rule texts as sent to the validator; optional rules carry a marker."""
    return [r["text"] if r["required"] else f"{r['text']} (optional)" for r in rules]


class ConversationSession:
    """
    Mutable shell around one immutable Conversation: selected chart,
    in-flight flag, cached rules and the last draft trade entry.
    """

    def __init__(self, user_id: str, graph, session_id: Optional[str] = None):
        self.id = session_id or str(uuid.uuid4())
        self.user_id = user_id
        self.graph = graph
        self.conversation = Conversation()
        self.selected_image: Optional[str] = None
        self.is_analyzing = False
        self.rules: List[dict] = []
        self.loading_rules = True
        self.rules_error: Optional[str] = None
        self.error: Optional[str] = None
        self.last_draft: Optional[DraftTradeEntry] = None
        self.last_active = datetime.utcnow()

    def touch(self, now: Optional[datetime] = None):
        self.last_active = now or datetime.utcnow()

    # --- Rules ---

    def refresh_rules(self, fetch: Callable[[str], List[dict]]):
        """Full re-fetch of the rule list; a failure keeps the previous list."""
        self.loading_rules = True
        try:
            self.rules = [
                {"id": r["id"], "text": r["text"], "type": r["type"], "required": r["required"]}
                for r in fetch(self.user_id)
            ]
            self.rules_error = None
        except Exception as e:
            logger.error(f"Error loading rules for {self.user_id}: {e}")
            self.rules_error = RULES_ERROR
        finally:
            self.loading_rules = False

    # --- Chart image ---

    def attach_image(self, data: bytes, content_type: str):
        if not content_type or not content_type.startswith("image/"):
            raise InvalidImageError(f"Unsupported file type: {content_type}")
        if len(data) > MAX_IMAGE_BYTES:
            raise InvalidImageError(f"Image exceeds {MAX_IMAGE_BYTES} bytes")
        self.selected_image = to_data_url(data, content_type)

    def clear_image(self):
        self.selected_image = None

    # --- Messages ---

    async def send(self, text: str):
        if not text.strip() and not self.selected_image:
            raise EmptyMessageError("Message is empty")
        if self.is_analyzing:
            raise SessionBusyError("An analysis is already running for this conversation")
        if self.loading_rules:
            raise RulesLoadingError("Rules are still loading")

        self.error = None
        outcome = advance(self.conversation, text)
        self.conversation = outcome.conversation
        if not outcome.needs_analysis:
            return self

        # New analysis: drop the previous draft before starting
        self.last_draft = None
        self.is_analyzing = True
        image = self.selected_image
        context = self.conversation.context
        try:
            final_state = await self.graph.ainvoke({
                "trade_details": build_trade_details(context, text),
                "rules": rule_lines(self.rules),
                "image": image,
                "context": context,
                "current_input": text,
            })
            reply = ChatMessage(role="model", text=final_state["response_text"])
            self.conversation = self.conversation.model_copy(
                update={"messages": self.conversation.messages + (reply,)}
            )
            self.last_draft = final_state["draft"]
            logger.info(f"✅ Analysis complete for session {self.id}: {self.last_draft.validation_result}")
        except Exception as e:
            logger.error(f"Trade analysis failed for session {self.id}: {e}", exc_info=True)
            self.error = ANALYSIS_ERROR
        finally:
            self.is_analyzing = False
            self.selected_image = None
        return self

    def take_draft(self) -> Optional[DraftTradeEntry]:
        """Hands the draft over once; a second call returns None."""
        draft, self.last_draft = self.last_draft, None
        return draft

    def view(self) -> dict:
        messages = []
        for m in self.conversation.messages:
            structured = parse_structured(m.text) if m.role == "model" else None
            messages.append({
                "role": m.role,
                "text": m.text,
                "timestamp": m.timestamp.isoformat(),
                "verdict": structured.model_dump() if structured else None,
            })
        return {
            "id": self.id,
            "user_id": self.user_id,
            "greeting": GREETING,
            "step": self.conversation.step.value,
            "placeholder": PLACEHOLDERS[self.conversation.step],
            "context": self.conversation.context.model_dump(),
            "messages": messages,
            "is_analyzing": self.is_analyzing,
            "has_image": self.selected_image is not None,
            "loading_rules": self.loading_rules,
            "rules_count": len(self.rules),
            "rules_error": self.rules_error,
            "error": self.error,
            "draft": self.last_draft.model_dump() if self.last_draft else None,
        }


class SessionRegistry:
    """
    Open conversations keyed by id. Creating a session first drops those idle
    for longer than `idle_minutes`, then the least recently used ones while
    `max_sessions` are open. Sessions with a running analysis are never dropped.
    """

    def __init__(self, validator, rule_fetcher: Callable[[str], List[dict]],
                 idle_minutes: int = SESSION_IDLE_MINUTES, max_sessions: int = MAX_OPEN_SESSIONS):
        self.validator = validator
        self.rule_fetcher = rule_fetcher
        self.idle_timeout = timedelta(minutes=idle_minutes)
        self.max_sessions = max_sessions
        self.sessions: Dict[str, ConversationSession] = {}

    def create(self, user_id: str, now: Optional[datetime] = None) -> ConversationSession:
        now = now or datetime.utcnow()
        self.evict(now)
        session = ConversationSession(user_id, build_analysis_graph(self.validator))
        session.touch(now)
        session.refresh_rules(self.rule_fetcher)
        self.sessions[session.id] = session
        logger.info(f"💬 New assistant session {session.id} for {user_id} ({len(session.rules)} rules)")
        return session

    def get(self, session_id: str) -> ConversationSession:
        session = self.sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        session.touch()
        return session

    def close(self, session_id: str):
        if self.sessions.pop(session_id, None) is None:
            raise SessionNotFoundError(session_id)

    def evict(self, now: Optional[datetime] = None) -> List[str]:
        """Drops idle sessions, then the least recently used ones until a new session fits."""
        now = now or datetime.utcnow()
        # A running analysis keeps its session alive
        candidates = sorted(
            (s for s in self.sessions.values() if not s.is_analyzing),
            key=lambda s: s.last_active,
        )
        evicted = [s.id for s in candidates if now - s.last_active > self.idle_timeout]
        overflow = len(self.sessions) - len(evicted) - (self.max_sessions - 1)
        if overflow > 0:
            evicted += [s.id for s in candidates if s.id not in evicted][:overflow]
        for session_id in evicted:
            del self.sessions[session_id]
        if evicted:
            logger.info(f"🧹 Evicted {len(evicted)} assistant session(s)")
        return evicted

    def on_rule_change(self, change):
        # Any rule change can touch global rules, so every open session re-fetches
        for session in list(self.sessions.values()):
            session.refresh_rules(self.rule_fetcher)
