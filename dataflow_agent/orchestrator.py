"""
dataflow_agent.orchestrator
===========================

Per-turn driver of the Dataflow Agent.

One turn moves through

    Idle -> BuildingPrompt -> AwaitingModel -> Parsing
         -> (Repairing -> BuildingPrompt -> AwaitingModel -> Parsing)*
         -> Merging -> Done

1) **Load state**: the newest snapshot in the history, or a fresh default
   state when the conversation has none yet (first turn).
2) **Build prompt**: `PromptBuilder` (preamble, state block with progression
   guidance, last N turns, current turn).
3) **Call the model**: `ModelClient.generate` (fallback chain). On the first
   attempt, when parallel mode is on, a prose leg and a structure leg run
   together; any failure there falls back to one structure call.
4) **Parse**: `response_parser.decode_response` (extract, repair, schema check).
   A failure appends a self-correction request to the *working* history and
   loops. At most `MAX_REPAIR_RETRIES` corrections are sent (so at most four
   model calls per turn); after that the turn ends with an error turn.
5) **Merge**: `state_merger.merge_state`. The first turn of a conversation may
   replace node field templates; later turns never do. Fields claimed for a
   node behind the first incomplete one are dropped. Completion is derived.

Return shapes
-------------
`process_turn(history, user_turn)` -> `TurnOutcome` (the assistant or error
turn, the resulting state, retries used, error envelope, model, phases).

`handle_turn(conversation_id, text)` -> wire dict of the final turn:

    {id, responseTo, role, type: "message"|"error", content, timestamp,
     nodes?, connections?, workflowComplete?}

Neither method raises: every failure becomes an `error`-typed turn whose
content is the envelope's `user_message`. The envelope is logged, never shown.

Notifications (`on_thought`) receive wire dicts of `status`/`thought` turns.
They are advisory only; a failing callback is logged and ignored.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from dataflow_agent import app_logger
from dataflow_agent.config import Settings
from dataflow_agent.conversation_store import ConversationStore, FileConversationStore
from dataflow_agent.error_handler import ErrorCode, ErrorOrigin, make_error
from dataflow_agent.field_progression import compute_whats_left, next_field
from dataflow_agent.model_client import (
    AllModelsFailedError,
    FatalModelError,
    ModelClient,
    ModelConfigurationError,
    ParallelCallError,
)
from dataflow_agent.prompt_builder import PromptBuilder, build_correction_turn
from dataflow_agent.response_parser import ModelPayload, NodePayload, ResponseParseError, decode_response
from dataflow_agent.state_merger import diff_provided, merge_state, resolve_node_id
from dataflow_agent.templates import get_template, state_from_template
from dataflow_agent.workflow_state import (
    ConversationTurn,
    TurnType,
    WorkflowState,
    current_state,
    new_workflow_state,
)

MAX_REPAIR_RETRIES = 3

OPENING_REQUEST = "I want to create a data flow: {description}. Please help me set this up."
PROCESSING_STATUS = "Processing your message..."

THOUGHT_START = "Let me think about your request..."
THOUGHT_CALLING = "Figuring out the best way to help you..."
THOUGHT_DONE = "Perfect! I have what you need."
THOUGHT_GIVE_UP = "I apologize, but I'm having trouble with this request. Let me try a different approach..."
RETRY_THOUGHTS = (
    "Let me rephrase that for you...",
    "Let me think about this differently...",
    "Almost there, just one more thought...",
)

Notify = Callable[[Dict[str, Any]], None]


class Phase(str, Enum):
    IDLE = "Idle"
    BUILDING_PROMPT = "BuildingPrompt"
    AWAITING_MODEL = "AwaitingModel"
    PARSING = "Parsing"
    REPAIRING = "Repairing"
    MERGING = "Merging"
    DONE = "Done"


@dataclass
class TurnOutcome:
    turn: ConversationTurn
    state: Optional[WorkflowState]
    retries: int = 0
    error: Optional[Dict[str, Any]] = None
    model: Optional[str] = None
    phases: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None


class _TurnFailed(Exception):
    """Internal: carries the error envelope out of the turn loop."""

    def __init__(self, error: Dict[str, Any]):
        super().__init__(error.get("dev_message") or error.get("code"))
        self.error = error


class ConversationOrchestrator:
    """
    Public API:
      - process_turn(history, user_turn, ...) -> TurnOutcome
      - handle_turn(conversation_id, user_text, ...) -> dict
      - start_conversation(conversation_id, description, template_id=None, ...) -> dict
      - node_data(conversation_id, node_id) -> dict
      - conversation_history(conversation_id) -> list[dict]
      - clear_conversations() -> None
    """

    def __init__(
        self,
        client: Optional[ModelClient] = None,
        store: Optional[ConversationStore] = None,
        builder: Optional[PromptBuilder] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or (client.settings if client is not None else Settings.from_env())
        self._config_problem: Optional[str] = None
        if client is None:
            try:
                client = ModelClient.from_settings(self.settings)
            except ModelConfigurationError as e:
                self._config_problem = str(e)
                app_logger.log_orchestrator_event(
                    "CONFIG_ERROR", {"reason": self._config_problem}, level=logging.ERROR
                )
        self.client = client
        self.store = store if store is not None else FileConversationStore(self.settings.conversations_dir)
        self.builder = builder or PromptBuilder(self.settings.history_window)
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # ------------------------------- helpers ----------------------------------

    def _lock_for(self, conversation_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(conversation_id)
            if lock is None:
                lock = self._locks[conversation_id] = threading.Lock()
            return lock

    @staticmethod
    def _notify(on_thought: Optional[Notify], turn: ConversationTurn, cid: Optional[str]) -> None:
        if on_thought is None:
            return
        try:
            on_thought(turn.to_wire())
        except Exception as e:
            app_logger.log_orchestrator_event(
                "NOTIFY_FAILED", {"error": f"{type(e).__name__}: {e}"}, correlation_id=cid, level=logging.WARNING
            )

    @staticmethod
    def _enter(phases: List[str], phase: Phase, cid: Optional[str], **payload: Any) -> None:
        phases.append(phase.value)
        app_logger.log_orchestrator_event("PHASE", payload, correlation_id=cid, phase=phase.value)

    def _call_model(
        self,
        state: WorkflowState,
        working: Sequence[ConversationTurn],
        current: ConversationTurn,
        *,
        parallel: bool,
        cid: Optional[str],
    ) -> Dict[str, Any]:
        if self.client is None:
            raise ModelConfigurationError(self._config_problem or "no model client configured")
        structure_msgs = self.builder.build(state, working, current)
        if parallel:
            prose_msgs = self.builder.build_prose(state, working, current)
            try:
                legs = self.client.generate_parallel(prose_msgs, structure_msgs)
                return {**legs["structure"], "prose": (legs["prose"].get("text") or "").strip()}
            except ParallelCallError as e:
                app_logger.log_orchestrator_event(
                    "PARALLEL_FALLBACK", {"reason": str(e)}, correlation_id=cid, level=logging.WARNING
                )
        return self.client.generate(structure_msgs, purpose="structure")

    # ------------------------------- Core turn --------------------------------

    def process_turn(
        self,
        history: Sequence[ConversationTurn],
        user_turn: ConversationTurn,
        *,
        on_thought: Optional[Notify] = None,
        conversation_id: Optional[str] = None,
    ) -> TurnOutcome:
        """Run one turn against `history` (which does not yet contain `user_turn`)."""
        cid = conversation_id
        phases: List[str] = []
        existing = current_state(history)
        self._enter(phases, Phase.IDLE, cid, fresh=existing is None)

        try:
            return self._run(history, user_turn, existing, phases, on_thought, cid)
        except _TurnFailed as f:
            err = f.error
        except Exception as e:
            err = make_error(
                code=ErrorCode.UNKNOWN_ERROR,
                origin=ErrorOrigin.UNKNOWN,
                retryable=True,
                dev_message=f"{type(e).__name__}: {e}",
                context={"phase": phases[-1] if phases else None},
                correlation_id=cid,
            )

        app_logger.log_error_event("Orchestrator.ERROR", err, correlation_id=cid)
        turn = ConversationTurn.assistant(
            err["user_message"], response_to=user_turn.id, state=existing, type=TurnType.ERROR
        )
        self._enter(phases, Phase.DONE, cid, ok=False, code=err["code"])
        return TurnOutcome(
            turn=turn,
            state=existing,
            retries=int(err.get("details", {}).get("retries", 0)),
            error=err,
            phases=phases,
        )

    def _run(
        self,
        history: Sequence[ConversationTurn],
        user_turn: ConversationTurn,
        existing: Optional[WorkflowState],
        phases: List[str],
        on_thought: Optional[Notify],
        cid: Optional[str],
    ) -> TurnOutcome:
        if self.client is None:
            raise _TurnFailed(
                make_error(
                    code=ErrorCode.MODEL_UNCONFIGURED,
                    origin=ErrorOrigin.CONFIG,
                    retryable=False,
                    dev_message=self._config_problem,
                    correlation_id=cid,
                )
            )

        state = existing or new_workflow_state()
        working: List[ConversationTurn] = list(history)
        current = user_turn
        retries = 0
        payload: Optional[ModelPayload] = None
        reply: Dict[str, Any] = {}

        self._notify(on_thought, ConversationTurn.thought(THOUGHT_START, response_to=user_turn.id), cid)

        while payload is None:
            self._enter(phases, Phase.BUILDING_PROMPT, cid, attempt=retries + 1, next=_next_label(state))
            self._enter(phases, Phase.AWAITING_MODEL, cid, attempt=retries + 1)
            if retries == 0:
                self._notify(on_thought, ConversationTurn.thought(THOUGHT_CALLING, response_to=user_turn.id), cid)
            try:
                reply = self._call_model(
                    state,
                    working,
                    current,
                    parallel=self.settings.parallel_mode and retries == 0,
                    cid=cid,
                )
            except ModelConfigurationError as e:
                raise _TurnFailed(
                    make_error(
                        code=ErrorCode.MODEL_UNCONFIGURED,
                        origin=ErrorOrigin.CONFIG,
                        retryable=False,
                        dev_message=str(e),
                        correlation_id=cid,
                    )
                ) from e
            except (FatalModelError, AllModelsFailedError) as e:
                models = e.models if isinstance(e, AllModelsFailedError) else [e.model]
                raise _TurnFailed(
                    make_error(
                        code=ErrorCode.MODEL_UNAVAILABLE,
                        origin=ErrorOrigin.MODEL,
                        retryable=isinstance(e, AllModelsFailedError),
                        dev_message=f"{type(e).__name__}: {e}",
                        details={"models": models, "retries": retries},
                        context={"phase": Phase.AWAITING_MODEL.value},
                        correlation_id=cid,
                    )
                ) from e

            self._enter(phases, Phase.PARSING, cid, attempt=retries + 1)
            try:
                payload = decode_response(reply.get("text", ""))
            except ResponseParseError as e:
                if retries >= MAX_REPAIR_RETRIES:
                    self._notify(on_thought, ConversationTurn.thought(THOUGHT_GIVE_UP, response_to=user_turn.id), cid)
                    raise _TurnFailed(
                        make_error(
                            code=ErrorCode.RESPONSE_UNPARSABLE,
                            origin=ErrorOrigin.PARSER,
                            retryable=True,
                            dev_message=str(e),
                            details={"retries": retries, "model": reply.get("model")},
                            context={"phase": Phase.PARSING.value},
                            correlation_id=cid,
                        )
                    ) from e
                self._enter(phases, Phase.REPAIRING, cid, retry=retries + 1, reason=str(e))
                self._notify(
                    on_thought,
                    ConversationTurn.thought(RETRY_THOUGHTS[retries % len(RETRY_THOUGHTS)], response_to=user_turn.id),
                    cid,
                )
                working.append(current)
                current = build_correction_turn(e.candidate)
                retries += 1

        self._enter(phases, Phase.MERGING, cid)
        merged = merge_state(existing, payload.nodes, adopt_templates=existing is None)
        if payload.workflow_complete is not None and payload.workflow_complete != merged.complete:
            app_logger.log_orchestrator_event(
                "COMPLETION_CLAIM_OVERRIDDEN",
                {"claimed": payload.workflow_complete, "derived": merged.complete},
                correlation_id=cid,
            )

        message = reply.get("prose") or payload.message
        turn = ConversationTurn.assistant(message, response_to=user_turn.id, state=merged)

        self._notify(on_thought, ConversationTurn.thought(THOUGHT_DONE, response_to=user_turn.id), cid)
        app_logger.log_orchestrator_event(
            "TURN",
            {
                "retries": retries,
                "newly_provided": diff_provided(existing, merged),
                "whats_left": compute_whats_left(merged),
                "workflow_complete": merged.complete,
                "tokens": reply.get("tokens"),
            },
            correlation_id=cid,
            model=reply.get("model"),
        )
        self._enter(phases, Phase.DONE, cid, ok=True)
        return TurnOutcome(turn=turn, state=merged, retries=retries, model=reply.get("model"), phases=phases)

    # ---------------------------- Conversation API -----------------------------

    def handle_turn(
        self,
        conversation_id: str,
        user_text: str,
        *,
        on_thought: Optional[Notify] = None,
    ) -> Dict[str, Any]:
        cid = conversation_id
        with self._lock_for(conversation_id):
            user_turn = ConversationTurn.user(user_text)
            self._notify(on_thought, ConversationTurn.status_update(PROCESSING_STATUS, response_to=user_turn.id), cid)

            try:
                history = self.store.load(conversation_id) or []
            except (OSError, ValueError) as e:
                self._log_store_failure(e, cid, op="load")
                history = []

            outcome = self.process_turn(history, user_turn, on_thought=on_thought, conversation_id=cid)

            try:
                self.store.save(conversation_id, [*history, user_turn, outcome.turn])
            except (OSError, ValueError) as e:
                self._log_store_failure(e, cid, op="save")

            self._notify(on_thought, ConversationTurn.thought("", response_to=user_turn.id), cid)
            return outcome.turn.to_wire()

    def _log_store_failure(self, exc: BaseException, cid: str, *, op: str) -> None:
        err = make_error(
            code=ErrorCode.STORE_FAILURE,
            origin=ErrorOrigin.STORE,
            retryable=True,
            dev_message=f"{type(exc).__name__}: {exc}",
            context={"op": op},
            correlation_id=cid,
        )
        app_logger.log_error_event("Orchestrator.STORE_FAILURE", err, correlation_id=cid)

    def start_conversation(
        self,
        conversation_id: str,
        description: str,
        template_id: Optional[str] = None,
        *,
        on_thought: Optional[Notify] = None,
    ) -> Dict[str, Any]:
        """
        Reset the conversation and send the opening request.
        With `template_id`, the first snapshot comes from that template.
        Raises KeyError for an unknown template id.
        """
        template = get_template(template_id) if template_id else None
        with self._lock_for(conversation_id):
            try:
                self.store.delete(conversation_id)
            except OSError as e:
                self._log_store_failure(e, conversation_id, op="delete")
            if template is not None:
                seed = ConversationTurn.status_update(
                    f"Using template: {template.name}",
                    status="complete",
                    state=state_from_template(template),
                )
                try:
                    self.store.save(conversation_id, [seed])
                except (OSError, ValueError) as e:
                    self._log_store_failure(e, conversation_id, op="save")
        app_logger.log_orchestrator_event(
            "START", {"template": template.id if template else None}, correlation_id=conversation_id
        )
        text = OPENING_REQUEST.format(description=(description or "").strip().rstrip("."))
        return self.handle_turn(conversation_id, text, on_thought=on_thought)

    def node_data(self, conversation_id: str, node_id: str) -> Dict[str, Any]:
        """Which required fields of one node are filled. Values are never returned."""
        history = self.store.load(conversation_id) or []
        state = current_state(history) or new_workflow_state()
        resolved = resolve_node_id(NodePayload(id=node_id)) or node_id
        node = state.node(resolved)
        provided = set(node.provided_fields)
        return {
            "type": "node_data",
            "nodeId": node.id,
            "nodeTitle": node.name,
            "filledValues": {f: ("Filled" if f in provided else "Not filled") for f in node.required_fields},
        }

    def conversation_history(self, conversation_id: str) -> List[Dict[str, Any]]:
        return [t.to_wire() for t in (self.store.load(conversation_id) or [])]

    def clear_conversations(self) -> None:
        self.store.clear()
        app_logger.log_orchestrator_event("CLEARED", {})


def _next_label(state: WorkflowState) -> Optional[str]:
    nxt = next_field(state)
    return f"{nxt.node_id}.{nxt.field}" if nxt else None
