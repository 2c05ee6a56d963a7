from datetime import datetime
from typing import NamedTuple, Optional
from backend.assistant.state import ChatMessage, Conversation, ConversationStep, TradeContext

GREETING = "Hello! I am your AI Risk Manager. Tell me about the trade you want to take. Is it a Buy or Sell?"

REPROMPT = "I didn't catch that. Are you looking to take a Buy or Sell position?"

BUY_TRIGGERS = ("buy", "long")
SELL_TRIGGERS = ("sell", "short")


def direction_prompt(direction: str) -> str:
    side = "Buy" if direction == "buy" else "Sell"
    return (
        f"Great! You want to take a {side} position. "
        "What currency pair or asset are you looking at? (e.g., EURUSD, XAUUSD, BTCUSD)"
    )


def details_prompt(pair: str) -> str:
    return (
        f"Thanks! I see you're looking at {pair}. Now, please describe your trade setup. "
        "Include details like:\n"
        "- Entry point\n"
        "- Stop loss level\n"
        "- Take profit level\n"
        "- Why you're taking this trade\n"
        "- Any chart patterns or indicators you're using\n\n"
        "You can also upload a screenshot of your chart for visual analysis."
    )


class StepOutcome(NamedTuple):
    conversation: Conversation
    needs_analysis: bool


def detect_direction(text: str) -> Optional[str]:
    lowered = text.lower()
    # Buy synonyms win when a message mentions both sides
    if any(t in lowered for t in BUY_TRIGGERS):
        return "buy"
    if any(t in lowered for t in SELL_TRIGGERS):
        return "sell"
    return None


def advance(conversation: Conversation, text: str, now: Optional[datetime] = None) -> StepOutcome:
    """
    Applies one user input to the conversation.

    The user message is always appended. Returns the next conversation and
    whether the trade validator must be called for it.
    """
    now = now or datetime.utcnow()
    messages = conversation.messages + (ChatMessage(role="user", text=text, timestamp=now),)
    step = conversation.step
    context = conversation.context

    def reply(prompt: str, next_step: ConversationStep, next_context: TradeContext) -> StepOutcome:
        bot_msg = ChatMessage(role="model", text=prompt, timestamp=now)
        return StepOutcome(
            Conversation(step=next_step, context=next_context, messages=messages + (bot_msg,)),
            False,
        )

    if step == ConversationStep.INITIAL:
        direction = detect_direction(text)
        if direction is None:
            return reply(REPROMPT, step, context)
        return reply(direction_prompt(direction), ConversationStep.AWAITING_DIRECTION, TradeContext(direction=direction))

    if step == ConversationStep.AWAITING_DIRECTION:
        pair = text.strip()
        return reply(details_prompt(pair), ConversationStep.AWAITING_DETAILS, context.model_copy(update={"pair": pair}))

    # awaiting_details and analysis_complete both hand off to the validator;
    # follow-ups replace the details but keep direction and pair
    next_context = context.model_copy(update={"details": text.strip()})
    return StepOutcome(
        Conversation(step=ConversationStep.ANALYSIS_COMPLETE, context=next_context, messages=messages),
        True,
    )
