"""
dataflow_agent.response_parser
==============================

Untrusted-input decoder for the model's free-text replies.

Pipeline
--------
    raw text --extract_candidate--> candidate JSON text
             --(repair_candidate)--> candidate JSON text'
             --parse_payload-------> ModelPayload (schema-checked)

1) **extract_candidate**: take the inner content of a fenced code block when
   there is one, else the raw text; then trim everything before the first `{`
   and after the brace that closes it (falling back to the last `}` when the
   object never closes).
2) **repair_candidate**: conservative textual fixes applied *outside* string
   literals only: drop trailing commas before `}`/`]`, quote bare keys, and
   quote bare scalar values in `key: value` pairs. Numbers, `true`, `false`
   and `null` are left alone.
3) **parse_payload**: `json.loads` followed by pydantic validation against
   `ModelPayload`. Anything that is not a JSON object with a `message` string is
   rejected with `ResponseParseError`. A single node or connection entry that
   does not match its shape is dropped; the rest of the payload is kept.

`decode_response(raw)` runs the whole pipeline: parse first, repair only when
the unrepaired candidate fails, and raise `ResponseParseError` (carrying the
candidate text for the self-correction request) when both fail.

Normalization accepted at the boundary
--------------------------------------
- field lists as `requiredFields` / `required_fields` (same for provided and
  missing), or nested under `data_requirements` / `dataRequirements`;
- completion claim as `workflow_complete` / `workflowComplete` / `isComplete`;
- a node entry without `id` (resolved later from its `type`).
The payload's `status` values are carried for logging but never trusted.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    field_validator,
    model_validator,
)

LOGGER = logging.getLogger("dataflow.parser")

_FENCE_RE = re.compile(r"```[A-Za-z0-9_-]*\s*\n?(.*?)```", re.DOTALL)
_LITERAL_RE = re.compile(r"^(-?\d+(\.\d+)?([eE][+-]?\d+)?|true|false|null)$")
_KEY_CHARS_RE = re.compile(r"[A-Za-z0-9_\-\.]")


class ResponseParseError(ValueError):
    """The candidate could not be decoded into a ModelPayload."""

    def __init__(self, message: str, *, candidate: str, raw: Optional[str] = None):
        super().__init__(message)
        self.candidate = candidate
        self.raw = raw if raw is not None else candidate


# ------------------------------ Payload schema --------------------------------

class NodePayload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str = ""
    type: Optional[str] = None
    name: Optional[str] = None
    status: Optional[str] = None
    required_fields: Optional[List[str]] = Field(
        default=None, validation_alias=AliasChoices("requiredFields", "required_fields")
    )
    provided_fields: Optional[List[str]] = Field(
        default=None, validation_alias=AliasChoices("providedFields", "provided_fields")
    )
    missing_fields: Optional[List[str]] = Field(
        default=None, validation_alias=AliasChoices("missingFields", "missing_fields")
    )
    config: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _flatten_requirements(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        req = data.get("data_requirements") or data.get("dataRequirements")
        if isinstance(req, dict):
            data = dict(data)
            for key in ("required_fields", "provided_fields", "missing_fields"):
                if key in req and key not in data:
                    data[key] = req[key]
        if data.get("id") is None:
            data = {**data, "id": ""}
        if not isinstance(data.get("config"), dict):
            data = {**data, "config": {}}
        return data

    @field_validator("required_fields", "provided_fields", "missing_fields", mode="before")
    @classmethod
    def _names_only(cls, v: Any) -> Any:
        if v is None:
            return v
        if not isinstance(v, list):
            raise ValueError("field lists must be arrays of field names")
        if any(not isinstance(x, str) for x in v):
            raise ValueError("field names must be strings")
        return [x.strip() for x in v if x.strip()]


class ConnectionPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    source: str
    target: str
    status: Optional[str] = None


class ModelPayload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    message: str
    message_type: Optional[str] = None
    nodes: Optional[List[NodePayload]] = None
    connections: Optional[List[ConnectionPayload]] = None
    workflow_complete: Optional[bool] = Field(
        default=None,
        validation_alias=AliasChoices("workflow_complete", "workflowComplete", "isComplete"),
    )

    @field_validator("nodes", "connections", mode="before")
    @classmethod
    def _drop_malformed_entries(cls, v: Any, info: ValidationInfo) -> Any:
        if v is None:
            return None
        if not isinstance(v, list):
            LOGGER.debug("payload_list_dropped", extra={"field": info.field_name})
            return None
        shape = NodePayload if info.field_name == "nodes" else ConnectionPayload
        kept = []
        for item in v:
            try:
                kept.append(shape.model_validate(item))
            except ValidationError as e:
                LOGGER.debug(
                    "payload_entry_dropped",
                    extra={"field": info.field_name, "errors": e.error_count()},
                )
        return kept

    @field_validator("message")
    @classmethod
    def _message_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("message must not be empty")
        return v.strip()


# -------------------------------- Extraction ----------------------------------

def _object_end(text: str, start: int) -> int:
    """Index of the brace closing the object opened at `start`, or -1."""
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i
    return -1


def extract_candidate(raw_text: str) -> str:
    text = raw_text or ""
    m = _FENCE_RE.search(text)
    if m:
        text = m.group(1)
    text = text.strip()

    first = text.find("{")
    if first < 0:
        return text
    end = _object_end(text, first)
    if end < 0:
        end = text.rfind("}")
    if end < first:
        return text[first:]
    return text[first:end + 1]


# --------------------------------- Repair -------------------------------------

def _skip_ws(text: str, i: int) -> int:
    while i < len(text) and text[i].isspace():
        i += 1
    return i


def _read_bare_value(text: str, i: int) -> int:
    """End index (exclusive) of a bare scalar that starts at i."""
    while i < len(text) and text[i] not in ",}]\n":
        i += 1
    return i


def repair_candidate(candidate: str) -> str:
    out: List[str] = []
    stack: List[str] = []
    expect: Optional[str] = None  # "key" | "value" | None
    i, n = 0, len(candidate)

    while i < n:
        ch = candidate[i]

        if ch == '"':
            # copy the whole string literal verbatim
            j = i + 1
            while j < n:
                if candidate[j] == "\\":
                    j += 2
                    continue
                if candidate[j] == '"':
                    break
                j += 1
            out.append(candidate[i:j + 1])
            i = j + 1
            expect = None
            continue

        if ch in "{[":
            stack.append(ch)
            out.append(ch)
            expect = "key" if ch == "{" else "value"
            i += 1
            continue

        if ch in "}]":
            if stack:
                stack.pop()
            out.append(ch)
            expect = None
            i += 1
            continue

        if ch == ",":
            nxt = _skip_ws(candidate, i + 1)
            if nxt < n and candidate[nxt] in "}]":
                i += 1  # trailing comma
                continue
            out.append(ch)
            expect = "key" if (stack and stack[-1] == "{") else "value"
            i += 1
            continue

        if ch == ":":
            out.append(ch)
            expect = "value"
            i += 1
            continue

        if ch.isspace():
            out.append(ch)
            i += 1
            continue

        if expect == "key" and _KEY_CHARS_RE.match(ch):
            j = i
            while j < n and _KEY_CHARS_RE.match(candidate[j]):
                j += 1
            colon = _skip_ws(candidate, j)
            if colon < n and candidate[colon] == ":":
                out.append(json.dumps(candidate[i:j]))
            else:
                out.append(candidate[i:j])
            i = j
            expect = None
            continue

        if expect == "value":
            j = _read_bare_value(candidate, i)
            token = candidate[i:j]
            stripped = token.strip()
            if _LITERAL_RE.match(stripped):
                out.append(token)
            else:
                trailing = token[len(token.rstrip()):]
                out.append(json.dumps(stripped) + trailing)
            i = j
            expect = None
            continue

        out.append(ch)
        i += 1

    return "".join(out)


# ---------------------------------- Parse -------------------------------------

def parse_payload(candidate: str) -> ModelPayload:
    try:
        data = json.loads(candidate)
    except json.JSONDecodeError as e:
        raise ResponseParseError(f"invalid JSON: {e.msg} at {e.pos}", candidate=candidate) from e
    if not isinstance(data, dict):
        raise ResponseParseError("top-level JSON value is not an object", candidate=candidate)
    try:
        return ModelPayload.model_validate(data)
    except ValidationError as e:
        raise ResponseParseError(
            f"payload shape rejected: {e.error_count()} error(s)", candidate=candidate
        ) from e


def decode_response(raw_text: str) -> ModelPayload:
    candidate = extract_candidate(raw_text)
    try:
        return parse_payload(candidate)
    except ResponseParseError:
        pass
    try:
        return parse_payload(repair_candidate(candidate))
    except ResponseParseError as e:
        raise ResponseParseError(str(e), candidate=candidate, raw=raw_text) from e
