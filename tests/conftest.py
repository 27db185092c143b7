"""
tests/conftest.py

Purpose
-------
Global pytest configuration for the entire test suite.

What this does
--------------
1) Loads `.env` values at session start (dev convenience only; no test needs a
   real credential).
2) Pins the JSONL log to `test_logs/app.jsonl` and turns the stdout mirror off,
   before anything configures the `dataflow` logger.
3) Provides scripted fake model invokers and an orchestrator factory, so no test
   ever reaches a live model.

File / module dependencies
--------------------------
- dataflow_agent.model_client / orchestrator / conversation_store (systems under test)
- dotenv, pytest
"""

import dataclasses
import inspect
import json
import os
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import dotenv
import pytest

dotenv.load_dotenv()

_LOG_DIR = Path(__file__).resolve().parents[1] / "test_logs"
os.environ["LOG_DIR"] = str(_LOG_DIR)
os.environ["LOG_FILE"] = "app.jsonl"
os.environ["LOG_STDOUT"] = "false"
os.environ["LOG_LEVEL"] = "DEBUG"

from dataflow_agent.config import Settings  # noqa: E402
from dataflow_agent.conversation_store import InMemoryConversationStore  # noqa: E402
from dataflow_agent.model_client import ModelClient  # noqa: E402
from dataflow_agent.orchestrator import ConversationOrchestrator  # noqa: E402


class ScriptedInvoke:
    """
    Fake `invoke(model, messages, *, temperature, max_tokens)`; `acall` is the
    async transport used by parallel mode.

    Each script item is a reply string, an exception instance (raised), or a
    callable taking the call dict. The last item repeats once the script runs out.
    """

    def __init__(self, script: List[Any]):
        self.script = list(script)
        self.calls: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def _next(self, model: str, messages, temperature: float, max_tokens: int):
        call = {"model": model, "messages": list(messages), "temperature": temperature, "max_tokens": max_tokens}
        with self._lock:
            self.calls.append(call)
            item = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(item, BaseException):
            raise item
        return item(call) if callable(item) else item

    def __call__(self, model: str, messages, *, temperature: float, max_tokens: int):
        return self._next(model, messages, temperature, max_tokens)

    async def acall(self, model: str, messages, *, temperature: float, max_tokens: int):
        """Async transport over the same script; callables may return awaitables."""
        res = self._next(model, messages, temperature, max_tokens)
        if inspect.isawaitable(res):
            res = await res
        return res


def model_reply(message: str, nodes: Optional[List[Dict[str, Any]]] = None, **extra: Any) -> str:
    body: Dict[str, Any] = {"message": message}
    if nodes is not None:
        body["nodes"] = nodes
    body.update(extra)
    return json.dumps(body)


@pytest.fixture()
def reply() -> Callable[..., str]:
    return model_reply


@pytest.fixture()
def settings(tmp_path) -> Settings:
    return Settings(
        api_key="gsk_test_key",
        models=("m1", "m2"),
        conversations_dir=str(tmp_path / "conversations"),
    )


@pytest.fixture()
def make_orchestrator(settings):
    """Factory: make_orchestrator(script, **settings_overrides) -> (orchestrator, invoke)."""

    def _make(script: List[Any], **overrides: Any):
        s = dataclasses.replace(settings, **overrides)
        invoke = ScriptedInvoke(script)
        client = ModelClient(s, invoke=invoke, ainvoke=invoke.acall)
        orch = ConversationOrchestrator(client=client, store=InMemoryConversationStore(), settings=s)
        return orch, invoke

    return _make


@pytest.fixture()
def scripted_invoke():
    return ScriptedInvoke
