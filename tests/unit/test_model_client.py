# tests/unit/test_model_client.py
"""
Model client: fallback chain, failure classification, parallel mode, validate().
Parallel legs never outlive the call: a slow leg is cancelled and awaited.
All transports are scripted fakes; nothing reaches a live endpoint.
"""

import asyncio
import time

import pytest

from dataflow_agent.config import Settings
from dataflow_agent.model_client import (
    AllModelsFailedError,
    FatalModelError,
    ModelClient,
    ModelConfigurationError,
    ParallelCallError,
    RetryableModelError,
    atry_in_order,
    is_retryable,
    try_in_order,
)


# ------------------------------ try_in_order ----------------------------------

def test_try_in_order_moves_on_after_retryable_failure():
    seen = []

    def attempt(name):
        seen.append(name)
        if name == "a":
            raise RetryableModelError("capacity")
        return f"ok from {name}"

    assert try_in_order(["a", "b", "c"], attempt) == ("ok from b", "b")
    assert seen == ["a", "b"]


def test_try_in_order_aborts_on_fatal_failure():
    seen = []

    def attempt(name):
        seen.append(name)
        raise ValueError("bad request: unknown parameter")

    with pytest.raises(FatalModelError) as ei:
        try_in_order(["a", "b"], attempt)
    assert seen == ["a"]
    assert ei.value.model == "a"


def test_try_in_order_aggregates_when_all_fail():
    def attempt(name):
        raise RetryableModelError(f"{name} overloaded")

    with pytest.raises(AllModelsFailedError) as ei:
        try_in_order(["a", "b", "c"], attempt)
    assert ei.value.models == ["a", "b", "c"]


def test_try_in_order_with_no_candidates():
    with pytest.raises(AllModelsFailedError):
        try_in_order([], lambda name: name)


@pytest.mark.parametrize(
    "exc, expected",
    [
        (RetryableModelError("x"), True),
        (TimeoutError(), True),
        (RuntimeError("Error code: 429 - rate_limit_exceeded"), True),
        (RuntimeError("model is over capacity"), True),
        (RuntimeError("Request timed out."), True),
        (ValueError("invalid api key"), False),
        (FatalModelError("x"), False),
    ],
)
def test_is_retryable(exc, expected):
    assert is_retryable(exc) is expected


# ------------------------------- ModelClient ----------------------------------

@pytest.fixture()
def settings():
    return Settings(api_key="gsk_test", models=("m1", "m2", "m3"), max_tokens=2000)


def test_generate_falls_back_and_reports_model(settings, scripted_invoke):
    invoke = scripted_invoke([RetryableModelError("429"), {"text": "hello", "tokens": {"in": 3, "out": 1}}])
    client = ModelClient(settings, invoke=invoke)
    out = client.generate([{"role": "user", "content": "hi"}])
    assert out == {"text": "hello", "tokens": {"in": 3, "out": 1}, "model": "m2"}
    assert [c["model"] for c in invoke.calls] == ["m1", "m2"]
    assert all(c["max_tokens"] == 2000 for c in invoke.calls)


def test_generate_temperature_by_purpose(settings, scripted_invoke):
    invoke = scripted_invoke(["ok"])
    client = ModelClient(settings, invoke=invoke)
    client.generate([], purpose="structure")
    client.generate([], purpose="prose")
    assert [c["temperature"] for c in invoke.calls] == [0.0, 0.7]


def test_from_settings_rejects_unusable_credentials(scripted_invoke):
    with pytest.raises(ModelConfigurationError):
        ModelClient.from_settings(Settings(api_key=None))
    with pytest.raises(ModelConfigurationError):
        ModelClient.from_settings(Settings(api_key="sk-not-groq"))
    client = ModelClient.from_settings(
        Settings(api_key="sk-openai", base_url="https://api.openai.com/v1"), invoke=scripted_invoke(["x"])
    )
    assert client.models


def test_validate(settings, scripted_invoke):
    invoke = scripted_invoke(["Hi"])
    assert ModelClient(settings, invoke=invoke).validate() is True
    assert invoke.calls[0]["max_tokens"] == 10
    assert invoke.calls[0]["model"] == "m1"

    assert ModelClient(settings, invoke=scripted_invoke([RuntimeError("401 unauthorized")])).validate() is False


# ------------------------------- Parallel mode --------------------------------

def _by_temperature(prose, structure):
    """Async transport: the prose leg runs at temperature > 0."""

    async def _ainvoke(model, messages, *, temperature, max_tokens):
        leg = prose if temperature > 0 else structure
        if isinstance(leg, BaseException):
            raise leg
        if callable(leg):
            return await leg()
        return leg

    return _ainvoke


def _client(settings, ainvoke):
    return ModelClient(settings, invoke=lambda *a, **k: "unused", ainvoke=ainvoke)


def test_parallel_returns_both_legs(settings):
    client = _client(settings, _by_temperature("prose text", '{"message": "json"}'))
    out = client.generate_parallel([], [], timeout_s=5)
    assert out["prose"]["text"] == "prose text"
    assert out["structure"]["text"] == '{"message": "json"}'
    assert out["structure"]["model"] == "m1"


def test_parallel_leg_failure_raises(settings):
    client = _client(settings, _by_temperature(ValueError("bad request"), '{"message": "json"}'))
    with pytest.raises(ParallelCallError):
        client.generate_parallel([], [], timeout_s=5)


def _tracked_slow_leg(events, delay):
    async def slow():
        events.append("started")
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            events.append("cancelled")
            raise
        events.append("finished")
        return "late"

    return slow


def test_parallel_timeout_cancels_the_running_leg(settings):
    events = []
    client = _client(settings, _by_temperature(_tracked_slow_leg(events, 1.0), '{"message": "json"}'))
    started = time.monotonic()
    with pytest.raises(ParallelCallError):
        client.generate_parallel([], [], timeout_s=0.05)
    assert time.monotonic() - started < 0.5
    assert events == ["started", "cancelled"]


def test_failed_leg_stops_the_other_before_returning(settings):
    events = []
    client = _client(settings, _by_temperature(_tracked_slow_leg(events, 1.0), ValueError("structure broke")))
    with pytest.raises(ParallelCallError, match="structure leg failed"):
        client.generate_parallel([], [], timeout_s=5)
    assert events == ["started", "cancelled"]

    time.sleep(0.05)
    assert events == ["started", "cancelled"]


def test_parallel_without_async_transport_raises(settings, scripted_invoke):
    client = ModelClient(settings, invoke=scripted_invoke(["x"]))
    with pytest.raises(ParallelCallError):
        client.generate_parallel([], [], timeout_s=1)


def test_parallel_inside_running_loop_raises(settings):
    client = _client(settings, _by_temperature("prose", '{"message": "json"}'))

    async def main():
        client.generate_parallel([], [], timeout_s=1)

    with pytest.raises(ParallelCallError):
        asyncio.run(main())


def test_atry_in_order_falls_back():
    async def attempt(name):
        if name == "a":
            raise RetryableModelError("rate limit")
        return name.upper()

    assert asyncio.run(atry_in_order(["a", "b"], attempt)) == ("B", "b")
