import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

# Load environment variables from .env file FIRST
load_dotenv()

DEFAULT_CREDITS = 7
ACCOUNT_PREFIX = "user-"

# Gemini's OpenAI-compatible endpoint
GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai/"
GEMINI_MODEL = "gemini-2.5-flash"


# Strip whitespace (a trailing space in an env value breaks URLs and keys)
def _getenv(key: str, default: str = None) -> str:
    val = os.getenv(key) or default
    return val.strip() if val else val


@dataclass
class Settings:
    api_key: Optional[str] = None
    database_url: Optional[str] = None
    port: int = 3000
    model: str = GEMINI_MODEL
    base_url: str = GEMINI_BASE_URL
    llm_timeout: float = 60.0
    history_turn_limit: int = 0
    default_credits: int = DEFAULT_CREDITS
    account_prefix: str = ACCOUNT_PREFIX


def load_settings() -> Settings:
    return Settings(
        api_key=_getenv("API_KEY") or _getenv("GEMINI_API_KEY"),
        database_url=_getenv("DATABASE_URL"),
        port=int(_getenv("PORT", "3000")),
        model=_getenv("GEMINI_MODEL", GEMINI_MODEL),
        base_url=_getenv("GEMINI_BASE_URL", GEMINI_BASE_URL),
        llm_timeout=float(_getenv("LLM_TIMEOUT", "60")),
        history_turn_limit=int(_getenv("HISTORY_TURN_LIMIT", "0")),
    )
