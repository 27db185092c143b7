# dataflow_agent/error_handler.py
"""
Unified error envelope for the Dataflow Agent.

Every failure the orchestrator absorbs is described by one "error object". The
object is logged for operators; only its `user_message` reaches the end user,
as the content of an `error`-typed conversation turn.

Error object contract (MUST NOT BREAK):
---------------------------------------
{
  "code": <ENUM>,              # stable, app-specific
  "origin": <str>,             # "config" | "model" | "parser" | "merge" | "store" | "unknown"
  "retryable": <bool>,         # can the user simply try again?
  "user_message": <str>,       # short, user-safe message (rendered verbatim)
  "next_actions": <list[str]>, # 1-3 hints the UI may map to quick replies
  "dev_message": <str|None>,   # terse technical reason, safe to log (not shown to users)
  "details": <dict>,           # diagnostics (exception type, models tried, attempts...)
  "context": <dict>,           # e.g., {"phase": "Parsing"}
  "timestamp": <iso-utc>,
  "correlation_id": <str>      # conversation id, or a generated turn id
}

Usage (orchestrator):
---------------------
err = make_error(
    code=ErrorCode.MODEL_UNAVAILABLE,
    origin=ErrorOrigin.MODEL,
    retryable=True,
    dev_message=str(exc),
    details={"models": ["llama-3.3-70b-versatile", "llama3-8b-8192"]},
    correlation_id=conversation_id,
)
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union


# ----------------------------- Enums & constants -----------------------------

class ErrorCode(str, Enum):
    MODEL_UNCONFIGURED = "MODEL_UNCONFIGURED"
    MODEL_UNAVAILABLE = "MODEL_UNAVAILABLE"
    RESPONSE_UNPARSABLE = "RESPONSE_UNPARSABLE"
    STORE_FAILURE = "STORE_FAILURE"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class ErrorOrigin(str, Enum):
    CONFIG = "config"
    MODEL = "model"
    PARSER = "parser"
    MERGE = "merge"
    STORE = "store"
    UNKNOWN = "unknown"


class NextAction(str, Enum):
    TRY_AGAIN = "TRY_AGAIN"
    TRY_REPHRASE = "TRY_REPHRASE"
    RETRY_LATER = "RETRY_LATER"
    CONTACT_OPERATOR = "CONTACT_OPERATOR"


_DEFAULT_USER_MESSAGES: Mapping[ErrorCode, str] = {
    ErrorCode.MODEL_UNCONFIGURED: "AI service is not configured. Please ask the operator to set the API key.",
    ErrorCode.MODEL_UNAVAILABLE: "I'm having trouble processing your request right now. Please try again in a moment.",
    ErrorCode.RESPONSE_UNPARSABLE: (
        "I'm having trouble processing your request due to a technical issue. "
        "Please try again in a moment, or rephrase your request."
    ),
    ErrorCode.STORE_FAILURE: "Your conversation may not have been saved. You can continue; please try again if anything looks off.",
    ErrorCode.UNKNOWN_ERROR: "Something went wrong. Please try again.",
}

_DEFAULT_ACTIONS: Mapping[ErrorCode, Tuple[NextAction, ...]] = {
    ErrorCode.MODEL_UNCONFIGURED: (NextAction.CONTACT_OPERATOR,),
    ErrorCode.MODEL_UNAVAILABLE: (NextAction.RETRY_LATER, NextAction.TRY_AGAIN),
    ErrorCode.RESPONSE_UNPARSABLE: (NextAction.TRY_AGAIN, NextAction.TRY_REPHRASE),
    ErrorCode.STORE_FAILURE: (NextAction.RETRY_LATER,),
    ErrorCode.UNKNOWN_ERROR: (NextAction.TRY_AGAIN,),
}


# ----------------------------- Utility helpers ------------------------------

def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def new_correlation_id(prefix: str = "turn") -> str:
    """Build a greppable id for lines that have no conversation id."""
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def _ensure_actions(values: Optional[Sequence[Union[str, NextAction]]]) -> List[str]:
    if not values:
        return []
    out: List[str] = []
    for v in values:
        s = v.value if isinstance(v, NextAction) else str(v)
        if s and s not in out:
            out.append(s)
    return out[:3]


# ------------------------------- Main factory --------------------------------

def make_error(
    *,
    code: Union[ErrorCode, str],
    origin: Union[ErrorOrigin, str] = ErrorOrigin.UNKNOWN,
    retryable: bool,
    user_message: Optional[str] = None,
    next_actions: Optional[Sequence[Union[str, NextAction]]] = None,
    dev_message: Optional[str] = None,
    details: Optional[Mapping[str, Any]] = None,
    context: Optional[Mapping[str, Any]] = None,
    correlation_id: Optional[str] = None,
    now: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Construct a fully-formed error object (dict) consistent with the app-wide contract.

    `user_message` and `next_actions` default from `code`. Unknown codes/origins
    collapse to UNKNOWN_ERROR / "unknown" rather than raising.
    """
    try:
        code_enum = ErrorCode(code)
    except ValueError:
        code_enum = ErrorCode.UNKNOWN_ERROR

    try:
        origin_enum = ErrorOrigin(origin)
    except ValueError:
        origin_enum = ErrorOrigin.UNKNOWN

    msg = (user_message or _DEFAULT_USER_MESSAGES[code_enum]).strip()
    actions = _ensure_actions(next_actions) or _ensure_actions(_DEFAULT_ACTIONS[code_enum])

    return {
        "code": code_enum.value,
        "origin": origin_enum.value,
        "retryable": bool(retryable),
        "user_message": msg,
        "next_actions": actions,
        "dev_message": (dev_message or None),
        "details": dict(details or {}),
        "context": dict(context or {}),
        "timestamp": now or _now_iso(),
        "correlation_id": correlation_id or new_correlation_id(),
    }

