# tests/integrations/test_logging_stability.py
"""
The JSONL log stays machine-readable across success, repair and error turns,
carries the conversation id, and never contains field values.
"""

import json
import uuid

from dataflow_agent import app_logger


def _lines_for(cid):
    path = app_logger.log_file_path()
    assert path, "file handler not configured"
    out = []
    with open(path, encoding="utf-8") as f:
        for raw in f:
            rec = json.loads(raw)
            assert set(rec) >= {"ts", "lvl", "event", "cid", "msg"}
            if rec.get("cid") == cid:
                out.append(rec)
    return out


def test_turn_logs_are_valid_jsonl(make_orchestrator, reply):
    cid = f"log-{uuid.uuid4().hex[:8]}"
    secret = "sk-live-do-not-log"
    orch, _ = make_orchestrator([
        "not json",
        reply("Thanks! API secret?", [
            {"id": "source-node", "providedFields": ["store_url", "api_key"], "config": {"api_key": secret}}
        ]),
    ])
    orch.handle_turn(cid, secret)

    lines = _lines_for(cid)
    events = [r["event"] for r in lines]
    assert "Orchestrator.PHASE" in events
    assert "Orchestrator.TURN" in events
    phases = [r["phase"] for r in lines if r["event"] == "Orchestrator.PHASE"]
    assert phases[0] == "Idle" and phases[-1] == "Done"
    assert "Repairing" in phases

    turn = next(r for r in lines if r["event"] == "Orchestrator.TURN")
    assert turn["payload"]["newly_provided"] == {"source-node": ["store_url", "api_key"]}
    assert turn["payload"]["retries"] == 1
    assert turn["model"] == "m1"
    assert all(secret not in json.dumps(r) for r in lines)


def test_error_turns_log_the_envelope(make_orchestrator):
    cid = f"log-{uuid.uuid4().hex[:8]}"
    orch, _ = make_orchestrator(["still not json"])
    out = orch.handle_turn(cid, "hello")
    assert out["type"] == "error"

    errors = [r for r in _lines_for(cid) if r["event"] == "Orchestrator.ERROR"]
    assert len(errors) == 1
    assert errors[0]["lvl"] == "ERROR"
    assert errors[0]["payload"]["code"] == "RESPONSE_UNPARSABLE"
    assert errors[0]["payload"]["details"]["retries"] == 3
