"""
Project: Dataflow Agent
File: field_progression.py

Decides, from the current WorkflowState alone, which single field the
conversation asks for next and what kind of step that is.

Nodes are scanned strictly in role order (source, transform, destination);
within a node, fields are taken in required_fields order. The transition label
only selects prompt guidance; it never changes the state.

Methods & Classes
- FieldRef: (node_id, field)
- Transition: START_OF_WORKFLOW | START_OF_NODE | COMPLETING_NODE | MID_NODE | WORKFLOW_COMPLETE
- next_field(state) -> FieldRef | None
- following_field(state, current) -> FieldRef | None
- classify_transition(state, nxt) -> Transition
- compute_whats_left(state) -> dict[node_id, list[field]]
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

from dataflow_agent.workflow_state import WorkflowState


@dataclass(frozen=True)
class FieldRef:
    node_id: str
    field: str


class Transition(str, Enum):
    START_OF_WORKFLOW = "start_of_workflow"
    START_OF_NODE = "start_of_node"
    COMPLETING_NODE = "completing_node"
    MID_NODE = "mid_node"
    WORKFLOW_COMPLETE = "workflow_complete"


def next_field(state: WorkflowState) -> Optional[FieldRef]:
    """First missing field of the first incomplete node; None when the workflow is complete."""
    for node in state.nodes:
        missing = node.missing_fields
        if missing:
            return FieldRef(node_id=node.id, field=missing[0])
    return None


def following_field(state: WorkflowState, current: Optional[FieldRef]) -> Optional[FieldRef]:
    """The field that comes after `current`, assuming `current` gets provided this turn."""
    if current is None:
        return None
    seen_current = False
    for node in state.nodes:
        for f in node.missing_fields:
            if seen_current:
                return FieldRef(node_id=node.id, field=f)
            if node.id == current.node_id and f == current.field:
                seen_current = True
    return None


def classify_transition(state: WorkflowState, nxt: Optional[FieldRef]) -> Transition:
    if nxt is None:
        return Transition.WORKFLOW_COMPLETE
    if all(not n.provided_fields for n in state.nodes):
        return Transition.START_OF_WORKFLOW
    target = state.node(nxt.node_id)
    if not target.provided_fields:
        return Transition.START_OF_NODE
    if target.missing_fields == [nxt.field]:
        return Transition.COMPLETING_NODE
    return Transition.MID_NODE


def compute_whats_left(state: WorkflowState) -> Dict[str, List[str]]:
    """Missing fields per incomplete node, in role order."""
    return {n.id: n.missing_fields for n in state.nodes if n.missing_fields}
