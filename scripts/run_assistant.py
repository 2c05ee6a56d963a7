import sys
import os
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))
import asyncio
from dotenv import load_dotenv

# Load backend env for keys
env_path = os.path.join(os.path.dirname(__file__), "..", "backend", ".env")
load_dotenv(env_path)

from backend.db import Base, engine
from backend.app import fetch_rules
from backend.assistant.session import SessionRegistry
from backend.assistant.stepper import GREETING
from backend.assistant.validator import TradeValidator
from backend.assistant.verdict import parse_structured

async def main():
    user_id = sys.argv[1] if len(sys.argv) > 1 else "local-student"
    Base.metadata.create_all(bind=engine)

    registry = SessionRegistry(validator=TradeValidator(), rule_fetcher=fetch_rules)
    session = registry.create(user_id)

    print(f"--- AI Risk Manager ({len(session.rules)} rules) ---")
    print(f"AI: {GREETING}")
    seen = 0
    while True:
        try:
            text = input("You: ")
        except (EOFError, KeyboardInterrupt):
            break
        if not text.strip():
            continue
        await session.send(text)
        messages = session.conversation.messages
        for msg in messages[seen:]:
            if msg.role != "model":
                continue
            verdict = parse_structured(msg.text)
            if verdict:
                print(f"AI: [{verdict.verdict}] {verdict.explanation}")
            else:
                print(f"AI: {msg.text}")
        seen = len(messages)
        if session.error:
            print(f"[!] {session.error}")
        if session.last_draft:
            print(f"    Draft: {session.last_draft.type} -> {session.last_draft.validation_result}")

if __name__ == "__main__":
    asyncio.run(main())
