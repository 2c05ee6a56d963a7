import json
import logging
from typing import List, Optional, Union
from langchain_google_genai import ChatGoogleGenerativeAI
from langchain_core.messages import HumanMessage, SystemMessage
from backend.config import APP_NAME, GOOGLE_API_KEY, GEMINI_MODEL, GEMINI_TEMPERATURE

logger = logging.getLogger("TradeValidator")

SYSTEM_PROMPT = """
You are the {app_name} AI Risk Manager, a strict trading mentor.
A student describes a trade they want to take. Check the setup against every rule below.
Every rule must be satisfied for approval, except rules marked "(optional)", which only produce warnings.
If a chart screenshot is attached, use it to confirm the levels and structure the student describes.

Student rules:
{rules}

Respond ONLY with JSON:
{{"verdict": "APPROVED" | "REJECTED" | "WARNING", "explanation": "<what passed, what failed and what to fix>"}}
"""


def format_rules(rules: List[str]) -> str:
    if not rules:
        return "- (no rules configured, apply general risk management: defined stop loss, risk/reward >= 1:2)"
    return "\n".join(f"{i}. {rule}" for i, rule in enumerate(rules, start=1))


class TradeValidator:
    """Validates a trade description (and optional chart) against the student's rules with Gemini."""

    def __init__(self, model: str = GEMINI_MODEL, temperature: float = GEMINI_TEMPERATURE):
        self.model = model
        self.temperature = temperature
        self._llm = None

    @property
    def llm(self) -> ChatGoogleGenerativeAI:
        # Built lazily so importing the app never needs credentials
        if self._llm is None:
            if not GOOGLE_API_KEY:
                raise RuntimeError("Missing GOOGLE_API_KEY in .env")
            self._llm = ChatGoogleGenerativeAI(
                model=self.model,
                google_api_key=GOOGLE_API_KEY,
                temperature=self.temperature,
            )
        return self._llm

    def build_messages(self, trade_details: str, rules: List[str], image: Optional[str] = None) -> list:
        content = [{"type": "text", "text": f"Trade request:\n{trade_details}"}]
        if image:
            content.append({"type": "image_url", "image_url": image})
        return [
            SystemMessage(content=SYSTEM_PROMPT.format(app_name=APP_NAME, rules=format_rules(rules))),
            HumanMessage(content=content),
        ]

    async def validate(self, trade_details: str, rules: List[str], image: Optional[str] = None) -> Union[dict, str]:
        """
        Returns the decoded {"verdict", "explanation"} object when the model
        answers in JSON, otherwise the raw reply text.
        """
        logger.info(f"🧠 Validating trade against {len(rules)} rules (chart attached: {bool(image)})")
        response = await self.llm.ainvoke(self.build_messages(trade_details, rules, image))
        return parse_reply(response.content)


def parse_reply(content) -> Union[dict, str]:
    if isinstance(content, list):
        # Multi-part replies: keep the text parts
        content = "".join(p.get("text", "") if isinstance(p, dict) else str(p) for p in content)
    cleaned = content.replace("```json", "").replace("```", "").strip()
    try:
        parsed = json.loads(cleaned)
    except ValueError:
        logger.warning("Validator reply was not JSON, returning raw text")
        return content
    if isinstance(parsed, dict):
        return parsed
    return content
