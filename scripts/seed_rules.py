import sys
import os
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))
import logging
from backend.db import Base, engine, SessionLocal
from backend.services.rules import RuleRepository

# Init Logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("SeedRules")

# Global rules every student is validated against
DEFAULT_RULES = [
    ("Every trade must have a stop loss defined before entry", "general", True),
    ("Risk/reward must be at least 1:2", "general", True),
    ("Only buy in the direction of the higher timeframe trend", "buy", True),
    ("Only sell below a confirmed break of structure", "sell", True),
    ("Avoid opening positions 30 minutes before high-impact news", "general", False),
]

def main():
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        repo = RuleRepository(db)
        if repo.get_all_rules():
            logger.info("Rules already present, nothing to seed.")
            return
        for text, rule_type, required in DEFAULT_RULES:
            repo.create_rule(text=text, type=rule_type, required=required)
        logger.info(f"✅ Seeded {len(DEFAULT_RULES)} global rules.")
    except Exception as e:
        logger.error(f"Seeding Failed: {e}")
    finally:
        db.close()

if __name__ == "__main__":
    main()
