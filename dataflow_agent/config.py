"""
dataflow_agent/config.py
Runtime configuration read from the environment (and a local .env).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional, Tuple

import dotenv

dotenv.load_dotenv()

DEFAULT_BASE_URL = "https://api.groq.com/openai/v1"
DEFAULT_MODELS: Tuple[str, ...] = (
    "llama-3.3-70b-versatile",
    "llama-3.1-70b-versatile",
    "llama3-8b-8192",
)


def _to_bool(val: str | None, default: bool = False) -> bool:
    if val is None:
        return default
    return str(val).strip().lower() in {"1", "true", "yes", "y", "on"}


def _to_float(val: str | None, default: float) -> float:
    try:
        return float(val) if val not in (None, "") else default
    except ValueError:
        return default


def _to_int(val: str | None, default: int) -> int:
    try:
        return int(val) if val not in (None, "") else default
    except ValueError:
        return default


def _model_chain(val: str | None) -> Tuple[str, ...]:
    if not val:
        return DEFAULT_MODELS
    names = tuple(m.strip() for m in val.split(",") if m.strip())
    return names or DEFAULT_MODELS


@dataclass(frozen=True)
class Settings:
    api_key: Optional[str] = None
    base_url: str = DEFAULT_BASE_URL
    models: Tuple[str, ...] = field(default=DEFAULT_MODELS)
    max_tokens: int = 2000
    structure_temperature: float = 0.0
    prose_temperature: float = 0.7
    request_timeout_s: float = 60.0
    parallel_mode: bool = False
    parallel_timeout_s: float = 30.0
    history_window: int = 5
    conversations_dir: str = "conversations"

    @classmethod
    def from_env(cls) -> "Settings":
        key = (
            os.getenv("LLM_API_KEY")
            or os.getenv("GROQ_API_KEY")
            or os.getenv("OPENAI_API_KEY")
        )
        return cls(
            api_key=(key or "").strip() or None,
            base_url=os.getenv("LLM_BASE_URL", DEFAULT_BASE_URL),
            models=_model_chain(os.getenv("LLM_MODELS")),
            max_tokens=_to_int(os.getenv("LLM_MAX_TOKENS"), 2000),
            structure_temperature=_to_float(os.getenv("LLM_STRUCTURE_TEMPERATURE"), 0.0),
            prose_temperature=_to_float(os.getenv("LLM_PROSE_TEMPERATURE"), 0.7),
            request_timeout_s=_to_float(os.getenv("LLM_TIMEOUT_S"), 60.0),
            parallel_mode=_to_bool(os.getenv("LLM_PARALLEL_MODE"), default=False),
            parallel_timeout_s=_to_float(os.getenv("LLM_PARALLEL_TIMEOUT_S"), 30.0),
            history_window=max(1, _to_int(os.getenv("HISTORY_WINDOW"), 5)),
            conversations_dir=os.getenv("CONVERSATIONS_DIR", "conversations"),
        )

    def credential_problem(self) -> Optional[str]:
        """Return a short reason when the credential is unusable, else None."""
        if not self.api_key:
            return "no API key configured (set LLM_API_KEY or GROQ_API_KEY)"
        if "groq.com" in self.base_url and not self.api_key.startswith("gsk_"):
            return 'invalid Groq API key format (should start with "gsk_")'
        return None
