# backend/config.py
import os
from dotenv import load_dotenv

load_dotenv()

# Display name used in prompts and the API title
APP_NAME = os.getenv("APP_NAME", "Maichez Trades")

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./trade_assistant.db")

# Gemini (trade validator)
GOOGLE_API_KEY = os.getenv("GOOGLE_API_KEY")
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")
GEMINI_TEMPERATURE = float(os.getenv("GEMINI_TEMPERATURE", "0.2"))

# Chart screenshots are embedded as data URLs, keep them bounded
MAX_IMAGE_BYTES = int(os.getenv("MAX_IMAGE_BYTES", str(10 * 1024 * 1024)))

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",") if o.strip()]

# Open assistant conversations live in memory; idle ones are evicted
SESSION_IDLE_MINUTES = int(os.getenv("SESSION_IDLE_MINUTES", "60"))
MAX_OPEN_SESSIONS = int(os.getenv("MAX_OPEN_SESSIONS", "500"))
