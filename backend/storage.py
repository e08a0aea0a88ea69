"""
Tabletalk Backend - Session Storage
In-memory session contexts (active dataset, system prompt) with TTL expiration
"""

import threading
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

import pandas as pd
from fastapi import HTTPException

from config import MAX_SESSIONS, PROMPT_PATH, SESSION_TTL_HOURS


class Dataset:
    """One ingested dataset; built once and never mutated afterwards"""

    def __init__(
        self,
        filename: str,
        kind: str,
        df: pd.DataFrame,
        headers: list[str],
        summary: str,
        slim_csv: str,
        source_text: Optional[str] = None,
        truncated: bool = False,
    ):
        self.filename = filename
        self.kind = kind
        self.df = df
        self.headers = headers
        self.summary = summary
        self.slim_csv = slim_csv
        self.source_text = source_text
        self.truncated = truncated
        self.loaded_at = datetime.now()

    @property
    def row_count(self) -> int:
        return len(self.df)


def load_system_prompt(path: Path = PROMPT_PATH) -> str:
    try:
        return path.read_text(encoding="utf-8").strip()
    except OSError as e:
        print(f"System prompt load failed: {e}")
        return ""


class SessionContext:
    """Session-scoped state passed explicitly into each turn"""

    def __init__(self, prompt_path: Path = PROMPT_PATH):
        self.id = str(uuid.uuid4())
        self.created_at = datetime.now()
        self._prompt_path = prompt_path
        self._system_prompt: Optional[str] = None
        self._dataset: Optional[Dataset] = None
        self._lock = threading.Lock()
        self.touch()

    def touch(self):
        """Update last accessed time"""
        self.last_accessed = datetime.now()

    def is_expired(self, ttl_hours: int = SESSION_TTL_HOURS) -> bool:
        """Check if session has expired"""
        return datetime.now() - self.last_accessed > timedelta(hours=ttl_hours)

    @property
    def system_prompt(self) -> str:
        # Loaded once per session lifecycle.
        with self._lock:
            if self._system_prompt is None:
                self._system_prompt = load_system_prompt(self._prompt_path)
            return self._system_prompt

    @property
    def dataset(self) -> Optional[Dataset]:
        return self._dataset

    def replace_dataset(self, dataset: Dataset) -> None:
        """A new upload supersedes the previous dataset wholesale."""
        with self._lock:
            self._dataset = dataset


# Global session storage
SESSIONS: dict[str, SessionContext] = {}
_sessions_lock = threading.Lock()


def cleanup_expired():
    """Remove expired sessions from memory"""
    with _sessions_lock:
        expired = [k for k, v in SESSIONS.items() if v.is_expired()]
        for k in expired:
            del SESSIONS[k]


def create_session() -> SessionContext:
    """Create and register a new session, evicting the least recently used at capacity"""
    cleanup_expired()
    session = SessionContext()
    with _sessions_lock:
        if len(SESSIONS) >= MAX_SESSIONS:
            oldest_id = min(SESSIONS.keys(), key=lambda k: SESSIONS[k].last_accessed)
            del SESSIONS[oldest_id]
        SESSIONS[session.id] = session
    return session


def get_session(session_id: str) -> SessionContext:
    """Retrieve session by ID, with expiration check"""
    cleanup_expired()
    session = SESSIONS.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found or expired. Please start a new chat.")
    session.touch()
    return session
