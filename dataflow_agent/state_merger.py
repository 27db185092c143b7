#!/usr/bin/env python3
"""
Project: Dataflow Agent
File: state_merger.py

Reconciles the node list a model returned with the previous WorkflowState.
The merger is the single owner of the structural invariants; the model's
output is advisory input only.

Merge semantics
- node ids resolve by fixed id, then by role name ("source" -> "source-node");
  unknown or malformed entries are dropped,
- provided fields are a union with what was already provided (never shrinks),
  restricted to the node's required fields and kept in required order,
- required fields are fixed once a node exists; only a first-turn merge may
  replace the default template of a node nothing has been provided for,
- name and config are last-write per key; config keys absent from the delta
  are preserved,
- nodes the model omitted are carried forward unchanged, nodes that do not
  exist yet are rebuilt from the default template,
- fields claimed for a node behind the first incomplete node are dropped
  (no skip-ahead); its name and config are still taken,
- status, connections and completion are always recomputed (see workflow_state).

Methods
- resolve_node_id(entry) -> str | None
- claimed_fields(entry, required) -> list[str]
- merge_node(base, entry, adopt_template=False) -> Node
- merge_state(existing, incoming, adopt_templates=False) -> WorkflowState
- diff_provided(before, after) -> dict[node_id, list[field]]
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from pydantic import ValidationError

from dataflow_agent.response_parser import NodePayload
from dataflow_agent.workflow_state import (
    NODE_IDS,
    ROLE_BY_NODE_ID,
    ROLE_ORDER,
    Node,
    WorkflowState,
    default_node,
    ordered_unique,
)

LOGGER = logging.getLogger("dataflow.merge")

_FIELD_LIST_KEYS = {"required_fields", "provided_fields", "missing_fields", "data_requirements"}

IncomingNode = Union[NodePayload, Mapping[str, Any]]


def _has_value(v: Any) -> bool:
    if v is None:
        return False
    if isinstance(v, str):
        return bool(v.strip())
    if isinstance(v, (list, dict)):
        return len(v) > 0
    return True


def resolve_node_id(entry: NodePayload) -> Optional[str]:
    if entry.id in ROLE_BY_NODE_ID:
        return entry.id
    key = entry.id.strip().lower()
    if key in NODE_IDS:
        return NODE_IDS[key]
    role = (entry.type or "").strip().lower()
    if role in NODE_IDS:
        return NODE_IDS[role]
    return None


def claimed_fields(entry: NodePayload, required: List[str]) -> List[str]:
    """Field names the model declares as provided for this node."""
    if entry.provided_fields is not None:
        return [f for f in entry.provided_fields if f in required]
    if entry.missing_fields is not None:
        missing = set(entry.missing_fields)
        return [f for f in required if f not in missing]
    return [k for k, v in entry.config.items() if k in required and _has_value(v)]


def merge_node(base: Node, entry: Optional[NodePayload], *, adopt_template: bool = False) -> Node:
    if entry is None:
        return base

    required = list(base.required_fields)
    if adopt_template and not base.provided_fields and entry.required_fields:
        required = ordered_unique(entry.required_fields)

    claim = set(claimed_fields(entry, required))
    already = set(base.provided_fields)
    provided = [f for f in required if f in already or f in claim]

    config = dict(base.config)
    for k, v in entry.config.items():
        if k not in _FIELD_LIST_KEYS:
            config[k] = v

    name = (entry.name or "").strip() or base.name

    return Node(
        id=base.id,
        type=base.type,
        name=name,
        required_fields=required,
        provided_fields=provided,
        config=config,
    )


def _coerce_entries(incoming: Optional[Iterable[IncomingNode]]) -> Dict[str, NodePayload]:
    by_id: Dict[str, NodePayload] = {}
    for raw in incoming or []:
        entry = raw
        if not isinstance(entry, NodePayload):
            try:
                entry = NodePayload.model_validate(raw)
            except ValidationError:
                LOGGER.debug("merge_entry_malformed", extra={"entry_type": type(raw).__name__})
                continue
        node_id = resolve_node_id(entry)
        if node_id is None:
            LOGGER.debug("merge_entry_unknown_node", extra={"node_id": entry.id})
            continue
        # later entries for the same node win
        by_id[node_id] = entry
    return by_id


def merge_state(
    existing: Optional[WorkflowState],
    incoming: Optional[Iterable[IncomingNode]],
    *,
    adopt_templates: bool = False,
) -> WorkflowState:
    """
    Merge the model's node list into `existing` and return a new, normalized state.

    `existing=None` is treated as a brand-new workflow built from default templates.
    The input state is never mutated.
    """
    entries = _coerce_entries(incoming)

    prev: Dict[str, Node] = {}
    if existing is not None:
        prev = {n.id: n for n in existing.nodes}

    nodes: List[Node] = []
    blocked = False
    for role in ROLE_ORDER:
        node_id = NODE_IDS[role]
        base = prev.get(node_id) or default_node(role)
        node = merge_node(base, entries.get(node_id), adopt_template=adopt_templates)
        if blocked and node.provided_fields != base.provided_fields:
            LOGGER.debug("merge_skip_ahead_dropped", extra={"node_id": node_id})
            node = node.model_copy(update={"provided_fields": list(base.provided_fields)})
        if node.missing_fields:
            blocked = True
        nodes.append(node)

    return WorkflowState(nodes=nodes)


def diff_provided(before: Optional[WorkflowState], after: WorkflowState) -> Dict[str, List[str]]:
    """Fields that became provided between two snapshots, per node."""
    old: Dict[str, set] = {}
    if before is not None:
        old = {n.id: set(n.provided_fields) for n in before.nodes}
    out: Dict[str, List[str]] = {}
    for n in after.nodes:
        new = [f for f in n.provided_fields if f not in old.get(n.id, set())]
        if new:
            out[n.id] = new
    return out
