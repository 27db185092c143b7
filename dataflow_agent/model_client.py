"""
Project: Dataflow Agent
File: model_client.py

Chat-completion client with an ordered fallback chain of model identifiers.

- Each request goes to one model with a bounded token budget. Structure calls
  run at a low temperature, prose calls at a higher one.
- Rate-limit, capacity and timeout failures are retryable: the next model in
  the chain is tried. Anything else aborts immediately.
- Parallel mode runs a prose call and a structure call as two asyncio tasks
  under one shared deadline. When a leg fails or the deadline passes, the other
  leg is cancelled and awaited before the call returns, so no request outlives
  it. The caller falls back to a single call on ParallelCallError.

The transports are injectable: `invoke(model, messages, *, temperature,
max_tokens)` for single calls and an async `ainvoke` with the same signature
for parallel mode. The defaults talk to an OpenAI-compatible endpoint through
langchain_openai.ChatOpenAI; tests pass scripted fakes.

Methods & Classes
- try_in_order(candidates, attempt) -> (result, model)
- atry_in_order(candidates, attempt) -> (result, model)   (async attempt)
- is_retryable(exc) -> bool
- class ModelClient: generate(), agenerate(), generate_parallel(), validate(), from_settings()
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

import httpx
import openai
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from dataflow_agent.config import Settings

LOGGER = logging.getLogger("dataflow.model")

T = TypeVar("T")

Message = Dict[str, str]
Invoker = Callable[..., Any]
AsyncInvoker = Callable[..., Awaitable[Any]]

_RETRYABLE_MARKERS = ("429", "rate_limit", "rate limit", "capacity", "timed out", "timeout", "503", "overloaded")


# ------------------------------- Exceptions -----------------------------------

class ModelConfigurationError(RuntimeError):
    """No usable credential; never retried."""


class RetryableModelError(RuntimeError):
    """Capacity / rate-limit / timeout class failure for one model."""


class FatalModelError(RuntimeError):
    """Non-retryable failure; aborts the fallback chain."""

    def __init__(self, message: str, *, model: Optional[str] = None):
        super().__init__(message)
        self.model = model


class AllModelsFailedError(RuntimeError):
    """Every candidate failed with a retryable error."""

    def __init__(self, failures: Sequence[Tuple[str, BaseException]]):
        self.failures = list(failures)
        tried = ", ".join(f"{name}: {type(exc).__name__}" for name, exc in self.failures)
        super().__init__(f"All models failed ({tried})" if tried else "No models to try")

    @property
    def models(self) -> List[str]:
        return [name for name, _ in self.failures]


class ParallelCallError(RuntimeError):
    """The dual call timed out or one of its legs failed."""


# ------------------------------ Classification --------------------------------

def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, RetryableModelError):
        return True
    if isinstance(exc, (FatalModelError, ModelConfigurationError)):
        return False
    if isinstance(exc, (openai.RateLimitError, openai.APITimeoutError, TimeoutError)):
        return True
    if isinstance(exc, openai.APIStatusError) and exc.status_code in (429, 503):
        return True
    text = str(exc).lower()
    return any(m in text for m in _RETRYABLE_MARKERS)


def try_in_order(candidates: Sequence[str], attempt: Callable[[str], T]) -> Tuple[T, str]:
    """
    Call `attempt(candidate)` for each candidate in order.

    Returns (result, candidate) for the first success. Retryable failures move on
    to the next candidate; a non-retryable failure is raised as FatalModelError.
    When every candidate fails, raises AllModelsFailedError with all failures.
    """
    failures: List[Tuple[str, BaseException]] = []
    for name in candidates:
        try:
            return attempt(name), name
        except Exception as e:
            _record_failure(name, e, failures)
    raise AllModelsFailedError(failures)


async def atry_in_order(candidates: Sequence[str], attempt: Callable[[str], Awaitable[T]]) -> Tuple[T, str]:
    """try_in_order for a coroutine `attempt`; cancellation is never swallowed."""
    failures: List[Tuple[str, BaseException]] = []
    for name in candidates:
        try:
            return await attempt(name), name
        except Exception as e:
            _record_failure(name, e, failures)
    raise AllModelsFailedError(failures)


def _record_failure(name: str, exc: Exception, failures: List[Tuple[str, BaseException]]) -> None:
    if not is_retryable(exc):
        if isinstance(exc, (FatalModelError, ModelConfigurationError)):
            raise exc
        raise FatalModelError(f"{type(exc).__name__}: {exc}", model=name) from exc
    LOGGER.warning(
        "model_fallback",
        extra={"event": "Model.FALLBACK", "model": name, "payload": {"error": type(exc).__name__}},
    )
    failures.append((name, exc))


# ------------------------------ Default transport -----------------------------

def _to_lc_messages(messages: Sequence[Message]) -> List[BaseMessage]:
    out: List[BaseMessage] = []
    for m in messages:
        role, content = m.get("role"), m.get("content", "")
        if role == "system":
            out.append(SystemMessage(content=content))
        elif role == "assistant":
            out.append(AIMessage(content=content))
        else:
            out.append(HumanMessage(content=content))
    return out


def _extract_token_usage(ai_msg: Any) -> Dict[str, int]:
    meta = getattr(ai_msg, "response_metadata", {}) or {}
    usage = meta.get("token_usage", {}) or {}
    return {
        "in": int(usage.get("prompt_tokens", usage.get("input_tokens", 0)) or 0),
        "out": int(usage.get("completion_tokens", usage.get("output_tokens", 0)) or 0),
    }


def chat_invoker(settings: Settings) -> Invoker:
    """Build an invoke() bound to the configured endpoint and credential."""

    def _invoke(model: str, messages: Sequence[Message], *, temperature: float, max_tokens: int) -> Dict[str, Any]:
        llm = _chat_model(settings, model, temperature=temperature, max_tokens=max_tokens)
        return _reply(llm.invoke(_to_lc_messages(messages)))

    return _invoke


def chat_ainvoker(settings: Settings) -> AsyncInvoker:
    """Async variant for parallel mode; each call owns its HTTP client so cancelling it closes the request."""

    async def _ainvoke(
        model: str, messages: Sequence[Message], *, temperature: float, max_tokens: int
    ) -> Dict[str, Any]:
        async with httpx.AsyncClient(timeout=settings.request_timeout_s) as http_client:
            llm = _chat_model(
                settings, model, temperature=temperature, max_tokens=max_tokens, http_async_client=http_client
            )
            return _reply(await llm.ainvoke(_to_lc_messages(messages)))

    return _ainvoke


def _chat_model(settings: Settings, model: str, *, temperature: float, max_tokens: int, **kwargs: Any) -> ChatOpenAI:
    return ChatOpenAI(
        model=model,
        api_key=settings.api_key,
        base_url=settings.base_url,
        temperature=temperature,
        max_tokens=max_tokens,
        timeout=settings.request_timeout_s,
        max_retries=0,  # the fallback chain is the retry policy
        **kwargs,
    )


def _reply(ai_msg: Any) -> Dict[str, Any]:
    content = ai_msg.content if isinstance(ai_msg.content, str) else str(ai_msg.content)
    return {"text": content, "tokens": _extract_token_usage(ai_msg)}


# --------------------------------- Client -------------------------------------

class ModelClient:
    def __init__(
        self,
        settings: Settings,
        invoke: Optional[Invoker] = None,
        ainvoke: Optional[AsyncInvoker] = None,
    ):
        self.settings = settings
        self._invoke = invoke or chat_invoker(settings)
        # an injected sync transport without an async one disables parallel mode
        if ainvoke is None and invoke is None:
            ainvoke = chat_ainvoker(settings)
        self._ainvoke = ainvoke

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        invoke: Optional[Invoker] = None,
        ainvoke: Optional[AsyncInvoker] = None,
    ) -> "ModelClient":
        settings = settings or Settings.from_env()
        problem = settings.credential_problem()
        if problem:
            raise ModelConfigurationError(problem)
        return cls(settings, invoke=invoke, ainvoke=ainvoke)

    @property
    def models(self) -> Tuple[str, ...]:
        return tuple(self.settings.models)

    def _temperature(self, purpose: str) -> float:
        if purpose == "prose":
            return self.settings.prose_temperature
        return self.settings.structure_temperature

    @staticmethod
    def _normalize(res: Any) -> Dict[str, Any]:
        if isinstance(res, str):
            return {"text": res, "tokens": {"in": 0, "out": 0}}
        return {"text": str(res.get("text") or ""), "tokens": res.get("tokens") or {"in": 0, "out": 0}}

    def _call(self, model: str, messages: Sequence[Message], *, temperature: float, max_tokens: int) -> Dict[str, Any]:
        return self._normalize(self._invoke(model, messages, temperature=temperature, max_tokens=max_tokens))

    async def _acall(
        self, model: str, messages: Sequence[Message], *, temperature: float, max_tokens: int
    ) -> Dict[str, Any]:
        if self._ainvoke is None:
            raise ParallelCallError("no async transport configured")
        res = await self._ainvoke(model, messages, temperature=temperature, max_tokens=max_tokens)
        return self._normalize(res)

    def generate(self, messages: Sequence[Message], *, purpose: str = "structure") -> Dict[str, Any]:
        """
        Returns:
            {"text": str, "model": str, "tokens": {"in": int, "out": int}}
        Raises:
            FatalModelError, AllModelsFailedError
        """
        temperature = self._temperature(purpose)
        res, model = try_in_order(
            self.models,
            lambda m: self._call(m, messages, temperature=temperature, max_tokens=self.settings.max_tokens),
        )
        return {**res, "model": model}

    async def agenerate(self, messages: Sequence[Message], *, purpose: str = "structure") -> Dict[str, Any]:
        """generate() over the async transport."""
        temperature = self._temperature(purpose)
        res, model = await atry_in_order(
            self.models,
            lambda m: self._acall(m, messages, temperature=temperature, max_tokens=self.settings.max_tokens),
        )
        return {**res, "model": model}

    def generate_parallel(
        self,
        prose_messages: Sequence[Message],
        structure_messages: Sequence[Message],
        *,
        timeout_s: Optional[float] = None,
    ) -> Dict[str, Dict[str, Any]]:
        """
        Run a prose call and a structure call concurrently under one shared deadline.

        Returns {"prose": <generate result>, "structure": <generate result>}.
        Raises ParallelCallError on timeout, when either leg fails, or when no
        async transport is configured. Both legs have finished (or been
        cancelled) by the time this returns or raises.
        """
        if self._ainvoke is None:
            raise ParallelCallError("no async transport configured")
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            pass
        else:
            raise ParallelCallError("cannot start a parallel call inside a running event loop")
        timeout = self.settings.parallel_timeout_s if timeout_s is None else timeout_s
        return asyncio.run(self._run_legs(prose_messages, structure_messages, timeout))

    async def _run_legs(
        self,
        prose_messages: Sequence[Message],
        structure_messages: Sequence[Message],
        timeout: float,
    ) -> Dict[str, Dict[str, Any]]:
        tasks = {
            "prose": asyncio.ensure_future(self.agenerate(prose_messages, purpose="prose")),
            "structure": asyncio.ensure_future(self.agenerate(structure_messages, purpose="structure")),
        }
        try:
            _, pending = await asyncio.wait(tasks.values(), timeout=timeout, return_when=asyncio.FIRST_EXCEPTION)
        finally:
            for task in tasks.values():
                task.cancel()
            await asyncio.gather(*tasks.values(), return_exceptions=True)

        for leg, task in tasks.items():
            if not task.cancelled() and task.exception() is not None:
                exc = task.exception()
                raise ParallelCallError(f"{leg} leg failed: {exc}") from exc
        if pending:
            raise ParallelCallError(f"parallel call timed out after {timeout}s")
        return {leg: task.result() for leg, task in tasks.items()}

    def validate(self) -> bool:
        """Minimal round trip against the first model; used at startup only."""
        model = self.models[0] if self.models else ""
        try:
            self._call(model, [{"role": "user", "content": "Hello"}], temperature=0.0, max_tokens=10)
            return True
        except Exception as e:
            LOGGER.error(
                "model_validate_failed",
                extra={"event": "Model.VALIDATE_FAILED", "model": model, "payload": {"error": type(e).__name__}},
            )
            return False
