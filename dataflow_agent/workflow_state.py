#!/usr/bin/env python3
"""
Project: Dataflow Agent
File: workflow_state.py

Canonical workflow state for the three-stage pipeline (source -> transform ->
destination) and the conversation turn that carries it.

- A WorkflowState always holds exactly three nodes in role order; connections
  and completion are derived, never stored.
- Node status and missing fields are derived from required/provided field names.
- Field *values* live only in a node's internal `config`; wire shapes carry
  field names and presence, nothing else.

Methods & Classes
- NodeStatus, ConnectionStatus, TurnType: string enums used on the wire
- derive_status(required, provided) -> NodeStatus
- class Node: id, type, name, required_fields, provided_fields, config
  (+ computed missing_fields, status; to_wire())
- class Connection: id, source, target, status
- class WorkflowState: nodes (+ computed connections, complete; node(), to_wire())
- default_node(role, ...) / new_workflow_state(...)
- class ConversationTurn: one history entry / outbound message (to_wire())
- current_state(history) -> WorkflowState | None
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Literal, Mapping, Optional, Sequence

from pydantic import BaseModel, Field, computed_field, model_validator

# ------------------------------------------------------------------------------
# Fixed layout
# ------------------------------------------------------------------------------

NodeRole = Literal["source", "transform", "destination"]

ROLE_ORDER: tuple[str, ...] = ("source", "transform", "destination")

NODE_IDS: Dict[str, str] = {
    "source": "source-node",
    "transform": "transform-node",
    "destination": "destination-node",
}
NODE_ORDER: tuple[str, ...] = tuple(NODE_IDS[r] for r in ROLE_ORDER)
ROLE_BY_NODE_ID: Dict[str, str] = {v: k for k, v in NODE_IDS.items()}

CONNECTION_LAYOUT: tuple[tuple[str, str, str], ...] = (
    ("conn-1", "source-node", "transform-node"),
    ("conn-2", "transform-node", "destination-node"),
)

DEFAULT_NODE_NAMES: Dict[str, str] = {
    "source": "Data Source",
    "transform": "Data Transform",
    "destination": "Data Destination",
}

DEFAULT_REQUIRED_FIELDS: Dict[str, tuple[str, ...]] = {
    "source": ("store_url", "api_key", "api_secret"),
    "transform": ("operation", "field_mapping"),
    "destination": ("account_url", "username", "password"),
}


class NodeStatus(str, Enum):
    PENDING = "pending"
    PARTIAL = "partial"
    COMPLETE = "complete"
    ERROR = "error"


class ConnectionStatus(str, Enum):
    PENDING = "pending"
    COMPLETE = "complete"
    ERROR = "error"


class TurnType(str, Enum):
    MESSAGE = "message"
    THOUGHT = "thought"
    ERROR = "error"
    STATUS = "status"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


def new_turn_id() -> str:
    return uuid.uuid4().hex[:16]


def ordered_unique(names: Iterable[Any]) -> List[str]:
    """Keep first occurrence of each non-empty name, preserving order."""
    out: List[str] = []
    for n in names or []:
        s = str(n).strip()
        if s and s not in out:
            out.append(s)
    return out


def derive_status(required: Sequence[str], provided: Sequence[str]) -> NodeStatus:
    have = set(provided) & set(required)
    if len(have) == len(set(required)):
        return NodeStatus.COMPLETE
    if have:
        return NodeStatus.PARTIAL
    return NodeStatus.PENDING


# ------------------------------------------------------------------------------
# Nodes & connections
# ------------------------------------------------------------------------------

class Node(BaseModel):
    id: str
    type: NodeRole
    name: str
    required_fields: List[str] = Field(default_factory=list)
    provided_fields: List[str] = Field(default_factory=list)
    # display data and echoed values; never leaves the process boundary
    config: Dict[str, Any] = Field(default_factory=dict)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def missing_fields(self) -> List[str]:
        have = set(self.provided_fields)
        return [f for f in self.required_fields if f not in have]

    @computed_field  # type: ignore[prop-decorator]
    @property
    def status(self) -> NodeStatus:
        return derive_status(self.required_fields, self.provided_fields)

    @property
    def is_complete(self) -> bool:
        return self.status == NodeStatus.COMPLETE

    def to_wire(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "name": self.name,
            "status": self.status.value,
            "requiredFields": list(self.required_fields),
            "providedFields": list(self.provided_fields),
            "missingFields": self.missing_fields,
        }


class Connection(BaseModel):
    id: str
    source: str
    target: str
    status: ConnectionStatus = ConnectionStatus.PENDING

    def to_wire(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source,
            "target": self.target,
            "status": self.status.value,
        }


class WorkflowState(BaseModel):
    nodes: List[Node]

    @model_validator(mode="after")
    def _check_layout(self) -> "WorkflowState":
        ids = tuple(n.id for n in self.nodes)
        if ids != NODE_ORDER:
            raise ValueError(f"workflow must hold nodes {NODE_ORDER} in order, got {ids}")
        for n in self.nodes:
            if NODE_IDS[n.type] != n.id:
                raise ValueError(f"node {n.id} has role {n.type!r}")
        return self

    @computed_field  # type: ignore[prop-decorator]
    @property
    def connections(self) -> List[Connection]:
        by_id = {n.id: n for n in self.nodes}
        return [
            Connection(
                id=cid,
                source=src,
                target=dst,
                status=(
                    ConnectionStatus.COMPLETE
                    if by_id[src].is_complete
                    else ConnectionStatus.PENDING
                ),
            )
            for cid, src, dst in CONNECTION_LAYOUT
        ]

    @computed_field  # type: ignore[prop-decorator]
    @property
    def complete(self) -> bool:
        return all(n.is_complete for n in self.nodes)

    def node(self, node_id: str) -> Node:
        for n in self.nodes:
            if n.id == node_id:
                return n
        raise KeyError(node_id)

    def to_wire(self) -> Dict[str, Any]:
        return {
            "nodes": [n.to_wire() for n in self.nodes],
            "connections": [c.to_wire() for c in self.connections],
            "workflowComplete": self.complete,
        }


def default_node(
    role: str,
    *,
    required_fields: Optional[Sequence[str]] = None,
    name: Optional[str] = None,
) -> Node:
    fields = ordered_unique(
        required_fields if required_fields is not None else DEFAULT_REQUIRED_FIELDS[role]
    )
    return Node(
        id=NODE_IDS[role],
        type=role,  # type: ignore[arg-type]
        name=name or DEFAULT_NODE_NAMES[role],
        required_fields=fields,
    )


def new_workflow_state(
    required_fields: Optional[Mapping[str, Sequence[str]]] = None,
    names: Optional[Mapping[str, str]] = None,
) -> WorkflowState:
    """Fresh state: every node pending with all of its fields missing."""
    required_fields = required_fields or {}
    names = names or {}
    return WorkflowState(
        nodes=[
            default_node(role, required_fields=required_fields.get(role), name=names.get(role))
            for role in ROLE_ORDER
        ]
    )


# ------------------------------------------------------------------------------
# Conversation turns
# ------------------------------------------------------------------------------

class ConversationTurn(BaseModel):
    id: str = Field(default_factory=new_turn_id)
    response_to: Optional[str] = None
    role: Literal["user", "assistant"]
    type: TurnType = TurnType.MESSAGE
    content: str = ""
    timestamp: str = Field(default_factory=_now_iso)
    state: Optional[WorkflowState] = None
    status: Optional[Literal["processing", "complete", "error"]] = None

    @classmethod
    def user(cls, content: str) -> "ConversationTurn":
        return cls(role="user", content=content)

    @classmethod
    def assistant(
        cls,
        content: str,
        *,
        response_to: Optional[str] = None,
        state: Optional[WorkflowState] = None,
        type: TurnType = TurnType.MESSAGE,
    ) -> "ConversationTurn":
        return cls(role="assistant", type=type, content=content, response_to=response_to, state=state)

    @classmethod
    def thought(cls, content: str, *, response_to: Optional[str] = None) -> "ConversationTurn":
        return cls(role="assistant", type=TurnType.THOUGHT, content=content, response_to=response_to)

    @classmethod
    def status_update(
        cls,
        content: str,
        *,
        status: Literal["processing", "complete", "error"] = "processing",
        response_to: Optional[str] = None,
        state: Optional[WorkflowState] = None,
    ) -> "ConversationTurn":
        return cls(
            role="assistant",
            type=TurnType.STATUS,
            content=content,
            status=status,
            response_to=response_to,
            state=state,
        )

    def to_wire(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "id": self.id,
            "role": self.role,
            "type": self.type.value,
            "content": self.content,
            "timestamp": self.timestamp,
        }
        if self.response_to:
            out["responseTo"] = self.response_to
        if self.status:
            out["status"] = self.status
        if self.state is not None and self.type == TurnType.MESSAGE and self.role == "assistant":
            out.update(self.state.to_wire())
        return out


def current_state(history: Sequence[ConversationTurn]) -> Optional[WorkflowState]:
    """Latest snapshot carried by any turn, newest first; None on a fresh conversation."""
    for turn in reversed(history or []):
        if turn.state is not None:
            return turn.state
    return None
