# tests/unit/test_error_handler.py
from dataflow_agent.error_handler import ErrorCode, ErrorOrigin, NextAction, make_error, new_correlation_id


def test_defaults_come_from_code():
    err = make_error(code=ErrorCode.RESPONSE_UNPARSABLE, origin=ErrorOrigin.PARSER, retryable=True, correlation_id="c1")
    assert err["code"] == "RESPONSE_UNPARSABLE"
    assert err["origin"] == "parser"
    assert err["user_message"].startswith("I'm having trouble processing your request due to a technical issue.")
    assert err["next_actions"] == ["TRY_AGAIN", "TRY_REPHRASE"]
    assert err["correlation_id"] == "c1"
    assert err["details"] == {} and err["context"] == {}


def test_unknown_code_and_origin_collapse():
    err = make_error(code="NOPE", origin="somewhere", retryable=False)
    assert err["code"] == "UNKNOWN_ERROR"
    assert err["origin"] == "unknown"
    assert err["correlation_id"].startswith("turn-")


def test_next_actions_are_deduplicated_and_capped():
    err = make_error(
        code=ErrorCode.MODEL_UNAVAILABLE,
        retryable=True,
        next_actions=[NextAction.TRY_AGAIN, "TRY_AGAIN", NextAction.RETRY_LATER, "TRY_REPHRASE", "CONTACT_OPERATOR"],
    )
    assert err["next_actions"] == ["TRY_AGAIN", "RETRY_LATER", "TRY_REPHRASE"]


def test_explicit_user_message_wins():
    err = make_error(code=ErrorCode.STORE_FAILURE, retryable=True, user_message="  saved locally only  ")
    assert err["user_message"] == "saved locally only"


def test_correlation_ids_are_prefixed_and_unique():
    a, b = new_correlation_id("conv"), new_correlation_id("conv")
    assert a.startswith("conv-") and a != b
