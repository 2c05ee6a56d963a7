import json
from datetime import datetime
from typing import Any, Optional
from backend.assistant.state import DraftTradeEntry, StructuredVerdict, TradeContext


def response_to_text(response: Any) -> str:
    """
    Normalises a validator reply into the text stored on the chat log.
    Structured verdicts are kept as JSON so the display layer can re-parse them.
    """
    if isinstance(response, str):
        return response
    if isinstance(response, dict):
        if "verdict" in response and "explanation" in response:
            return json.dumps({"verdict": response["verdict"], "explanation": response["explanation"]})
        return json.dumps(response, indent=2)
    return str(response)


def parse_structured(text: str) -> Optional[StructuredVerdict]:
    """Returns the embedded verdict, or None when the text should render as-is."""
    try:
        parsed = json.loads(text)
    except (TypeError, ValueError):
        return None
    if isinstance(parsed, dict) and parsed.get("verdict") and parsed.get("explanation"):
        return StructuredVerdict(verdict=str(parsed["verdict"]), explanation=str(parsed["explanation"]))
    return None


def classify(text: str) -> str:
    # Keyword heuristic; may disagree with a structured verdict in the same text
    lowered = text.lower()
    if "approved" in lowered:
        return "approved"
    if "rejected" in lowered:
        return "rejected"
    return "warning"


def build_trade_details(context: TradeContext, current_input: str) -> str:
    return (
        f"Trade Direction: {context.direction or 'Not specified'}\n"
        f"Asset/Pair: {context.pair or 'Not specified'}\n"
        f"User Details: {context.details or current_input}"
    )


def build_draft(
    trade_details: str,
    validation_result: str,
    context: TradeContext,
    current_input: str,
    screenshot_url: Optional[str] = None,
    now: Optional[datetime] = None,
) -> DraftTradeEntry:
    trade_type = context.direction or ("sell" if "sell" in current_input.lower() else "buy")
    return DraftTradeEntry(
        notes=f"AI Analysis Request: {trade_details}",
        validation_result=validation_result,
        type=trade_type,
        screenshot_url=screenshot_url,
        date=(now or datetime.utcnow()).isoformat(),
    )
