"""
Tabletalk Backend - Configuration
Environment-driven settings shared by the API and modules
"""

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from openai import OpenAI

load_dotenv()

BACKEND_DIR = Path(__file__).resolve().parent

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
CHAT_MODEL = os.getenv("CHAT_MODEL", "gpt-4o-mini")
SEARCH_MODEL = os.getenv("SEARCH_MODEL", "gpt-4o-mini-search-preview")
IMAGE_MODEL = os.getenv("IMAGE_MODEL", "dall-e-3")
IMAGE_EDIT_MODEL = os.getenv("IMAGE_EDIT_MODEL", "gpt-image-1")
IMAGE_MAX_RETRIES = int(os.getenv("IMAGE_MAX_RETRIES", "3"))

# Raw CSV text beyond this bound is silently dropped before any fallback path sees it.
MAX_SOURCE_CHARS = int(os.getenv("MAX_SOURCE_CHARS", "500000"))
MAX_TOOL_ROUNDS = int(os.getenv("MAX_TOOL_ROUNDS", "5"))

SESSION_TTL_HOURS = int(os.getenv("SESSION_TTL_HOURS", "1"))
MAX_SESSIONS = int(os.getenv("MAX_SESSIONS", "50"))

PROMPT_PATH = Path(os.getenv("PROMPT_PATH", str(BACKEND_DIR / "prompts" / "prompt_chat.txt")))

CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv(
        "CORS_ORIGINS",
        "http://localhost:3000,http://127.0.0.1:3000,http://localhost:3001,http://127.0.0.1:3001",
    ).split(",")
    if origin.strip()
]

# Client initialized lazily to avoid import-time side effects
_client: Optional[OpenAI] = None


def get_openai_client() -> Optional[OpenAI]:
    """Shared chat client, or None when no API key is configured."""
    global _client
    if _client is None:
        api_key = os.getenv("OPENAI_API_KEY")
        if not api_key:
            return None
        _client = OpenAI(api_key=api_key)
    return _client


def get_image_client() -> Optional[OpenAI]:
    """Image client with SDK retries disabled; rate limits are retried by run_with_retry."""
    api_key = os.getenv("OPENAI_API_KEY")
    if not api_key:
        return None
    return OpenAI(api_key=api_key, max_retries=0)
