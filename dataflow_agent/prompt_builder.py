"""
Project: Dataflow Agent
File: prompt_builder.py

Assembles the message list sent to the model for one attempt:

  1) system: fixed preamble (three-node contract + JSON response shape)
  2) system: current WorkflowState wire shape + one transition-specific instruction
  3) the last N conversation turns (messages only; thoughts/status/errors skipped)
  4) the current turn (user message or self-correction request)

Field values never enter the prompt; the state block carries field names only.
The one-field-per-turn and no-skip-ahead rules are instructions here and are
enforced again by state_merger.
"""

from __future__ import annotations

import json
from typing import Dict, List, Optional, Sequence

from dataflow_agent.field_progression import (
    FieldRef,
    Transition,
    classify_transition,
    following_field,
    next_field,
)
from dataflow_agent.workflow_state import ConversationTurn, TurnType, WorkflowState

Message = Dict[str, str]

RESPONSE_SHAPE = """{
  "message": "<one short reply to the user that asks for exactly one field>",
  "nodes": [
    {
      "id": "source-node",
      "type": "source",
      "name": "<display name, e.g. Shopify Source>",
      "requiredFields": ["<field>", "..."],
      "providedFields": ["<fields the user has given a value for>"],
      "missingFields": ["<the rest, in order>"],
      "config": {"<field>": "<value the user gave>"}
    },
    {"id": "transform-node", "type": "transform", "...": "..."},
    {"id": "destination-node", "type": "destination", "...": "..."}
  ],
  "workflow_complete": false
}"""

PREAMBLE = f"""You are a data integration expert helping a user configure a data pipeline through conversation.

The pipeline always has exactly three nodes, configured strictly in this order:
  1. source-node (type "source"): where the data comes from
  2. transform-node (type "transform"): how the data is changed
  3. destination-node (type "destination"): where the data goes
Connections are fixed: source-node -> transform-node -> destination-node.

RULES:
1. Respond with ONLY a valid JSON object. No text before or after it, no markdown, no code fences.
2. Ask for exactly ONE field per reply, and include an example of a valid value.
3. Never ask for a field of a later node while an earlier node still has missing fields.
4. Never ask again for a field that is already in providedFields.
5. Accept any non-empty answer as provisionally correct; values are not validated here.
6. When the user answers the field you asked for, add its name to providedFields for that node.
7. If the user asks a question instead of answering, answer it briefly and ask for the same field again without marking it provided.

RESPONSE FORMAT:
{RESPONSE_SHAPE}"""

PROSE_PREAMBLE = """You are a data integration expert helping a user configure a data pipeline through conversation.
Write only the next conversational reply to the user: plain text, at most three sentences, no JSON and no markdown.
Ask for exactly ONE field and include an example of a valid value."""

CORRECTION_TEMPLATE = (
    "The JSON response you provided is invalid and couldn't be parsed. "
    "Please fix the JSON syntax and respond with valid JSON. "
    "Here's what you sent: ```json\n{candidate}\n```\n\n"
    "Please provide a corrected JSON response."
)


def _label(state: WorkflowState, ref: FieldRef) -> str:
    node = state.node(ref.node_id)
    return f"`{ref.field}` of {node.name} ({node.id})"


def transition_guidance(state: WorkflowState) -> str:
    """One instruction string selected by the current transition."""
    nxt = next_field(state)
    kind = classify_transition(state, nxt)

    if nxt is None or kind == Transition.WORKFLOW_COMPLETE:
        return (
            "All fields of all three nodes are provided. Tell the user the workflow is complete and "
            "ready to start. Do not ask for anything else. Set workflow_complete to true."
        )

    if kind == Transition.START_OF_WORKFLOW:
        return (
            "This is the start of the workflow. Work out the source and destination from the user's "
            "request and name the nodes accordingly. You may adjust requiredFields to suit that source "
            f"and destination. Greet the user briefly and ask only for {_label(state, nxt)}. "
            "Nothing has been provided yet, so providedFields must stay empty for every node."
        )

    after = following_field(state, nxt)
    answered = (
        f"The user's latest message most likely answers {_label(state, nxt)}. "
        "If it does, add that field to providedFields and store the value in config."
    )
    if after is None:
        ask = "That is the last field: if it was answered, tell the user the workflow is complete."
    else:
        ask = f"Then ask only for {_label(state, after)}."

    if kind == Transition.START_OF_NODE:
        lead = f"The previous node is complete; this turn starts {state.node(nxt.node_id).name}."
    elif kind == Transition.COMPLETING_NODE:
        lead = f"This is the last missing field of {state.node(nxt.node_id).name}; answering it completes the node."
    else:
        lead = f"{state.node(nxt.node_id).name} is partly configured."
    return f"{lead} {answered} {ask} If it does not answer it, ask for {_label(state, nxt)} again."


def state_block(state: WorkflowState) -> str:
    wire = state.to_wire()
    return (
        "CURRENT WORKFLOW STATE (authoritative; field names only):\n"
        + json.dumps(wire, ensure_ascii=False, indent=2)
        + "\n\nNEXT STEP:\n"
        + transition_guidance(state)
    )


def _as_message(turn: ConversationTurn) -> Message:
    return {"role": turn.role, "content": turn.content}


def build_correction_turn(candidate: str, *, response_to: Optional[str] = None) -> ConversationTurn:
    turn = ConversationTurn.user(CORRECTION_TEMPLATE.format(candidate=candidate))
    if response_to:
        turn = turn.model_copy(update={"response_to": response_to})
    return turn


class PromptBuilder:
    """Stateless apart from the history window size."""

    def __init__(self, history_window: int = 5):
        self.history_window = max(1, int(history_window))

    def window(self, history: Sequence[ConversationTurn]) -> List[ConversationTurn]:
        convo = [t for t in history if t.type == TurnType.MESSAGE and t.content.strip()]
        return convo[-self.history_window:]

    def _compose(
        self,
        preamble: str,
        state: WorkflowState,
        history: Sequence[ConversationTurn],
        current: ConversationTurn,
    ) -> List[Message]:
        msgs: List[Message] = [
            {"role": "system", "content": preamble},
            {"role": "system", "content": state_block(state)},
        ]
        msgs.extend(_as_message(t) for t in self.window(history))
        msgs.append(_as_message(current))
        return msgs

    def build(
        self,
        state: WorkflowState,
        history: Sequence[ConversationTurn],
        current: ConversationTurn,
    ) -> List[Message]:
        """Structure-producing request (JSON reply expected)."""
        return self._compose(PREAMBLE, state, history, current)

    def build_prose(
        self,
        state: WorkflowState,
        history: Sequence[ConversationTurn],
        current: ConversationTurn,
    ) -> List[Message]:
        """Prose-only request for the parallel mode's natural-language leg."""
        return self._compose(PROSE_PREAMBLE, state, history, current)
