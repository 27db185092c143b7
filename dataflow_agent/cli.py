#!/usr/bin/env python3
"""
Dataflow Agent CLI

Purpose
-------
Drive workflow-configuration conversations from a terminal, against the same
ConversationOrchestrator a chat transport would use.

Top-level entrypoints
---------------------
- validate                         round-trip the configured model credential
- templates [--json]               list starter workflow templates
- start --conversation ID --description TEXT [--template ID] [--json]
- ask --conversation ID --text TEXT [--json]
- chat [--conversation ID] [--template ID]
- history --conversation ID
- node --conversation ID --node source|transform|destination|<node id>
- clear                            drop all stored conversations

In-session slash commands (chat only)
-------------------------------------
- /help
- /node <id>     filled / not filled per required field of one node
- /history       stored turns of this conversation
- /state         current nodes, connections and completion
- /quit
"""

from __future__ import annotations
import argparse, json, sys, uuid
from typing import Any, Dict, Optional

from dataflow_agent.config import Settings
from dataflow_agent.model_client import ModelClient, ModelConfigurationError
from dataflow_agent.orchestrator import ConversationOrchestrator
from dataflow_agent.templates import list_templates

# ---------------- utils ----------------

def _orchestrator() -> ConversationOrchestrator:
    return ConversationOrchestrator(settings=Settings.from_env())

def _print_thought(evt: Dict[str, Any]) -> None:
    if evt.get("type") == "thought" and evt.get("content"):
        print(f"  … {evt['content']}", file=sys.stderr)

def _print_turn(turn: Dict[str, Any], as_json: bool = False) -> None:
    if as_json:
        print(json.dumps(turn, ensure_ascii=False, indent=2))
        return
    prefix = "[error] " if turn.get("type") == "error" else ""
    print(f"{prefix}{turn.get('content', '')}")
    nodes = turn.get("nodes") or []
    for n in nodes:
        missing = ", ".join(n.get("missingFields") or []) or "-"
        print(f"  {n['id']:<17} {n['status']:<8} missing: {missing}")
    if turn.get("workflowComplete"):
        print("  workflow complete")

def _print_chat_help():
    print(
        "Commands:\n"
        "  /help                 Show this help\n"
        "  /node <id>            Filled / not filled per field of a node\n"
        "  /history              Show stored turns\n"
        "  /state                Show current workflow state\n"
        "  /quit                 Exit\n"
    )

def _print_node(orch: ConversationOrchestrator, conversation: str, node: str) -> int:
    try:
        data = orch.node_data(conversation, node)
    except KeyError:
        print(f"unknown node: {node}", file=sys.stderr)
        return 2
    print(f"{data['nodeTitle']} ({data['nodeId']})")
    for f, v in data["filledValues"].items():
        print(f"  {f:<20} {v}")
    return 0

# ---------------- commands ----------------

def cmd_validate(args):
    try:
        client = ModelClient.from_settings(Settings.from_env())
    except ModelConfigurationError as e:
        print(f"configuration error: {e}", file=sys.stderr)
        return 2
    ok = client.validate()
    print("ok" if ok else "model unreachable")
    return 0 if ok else 1

def cmd_templates(args):
    rows = [t.to_wire() for t in list_templates()]
    if args.json:
        print(json.dumps(rows, ensure_ascii=False, indent=2))
        return 0
    for r in rows:
        print(f"{r['id']:<22} | {r['name']:<24} | {', '.join(r['parameters'])}")
    return 0

def cmd_start(args):
    orch = _orchestrator()
    try:
        out = orch.start_conversation(args.conversation, args.description, args.template, on_thought=_print_thought)
    except KeyError as e:
        print(str(e), file=sys.stderr)
        return 2
    _print_turn(out, args.json)
    return 0 if out.get("type") != "error" else 1

def cmd_ask(args):
    orch = _orchestrator()
    out = orch.handle_turn(args.conversation, args.text, on_thought=_print_thought)
    _print_turn(out, args.json)
    return 0 if out.get("type") != "error" else 1

def cmd_history(args):
    orch = _orchestrator()
    for t in orch.conversation_history(args.conversation):
        if t.get("type") in ("message", "error"):
            print(f"{t['role']:>9}: {t.get('content', '')}")
    return 0

def cmd_node(args):
    return _print_node(_orchestrator(), args.conversation, args.node)

def cmd_clear(args):
    _orchestrator().clear_conversations()
    print("Conversations cleared.")
    return 0

def cmd_chat(args):
    orch = _orchestrator()
    conversation = args.conversation or f"cli-{uuid.uuid4().hex[:8]}"
    print(f"Conversation {conversation}. Describe the data flow you want. Type '/help' for commands.")

    started = bool(orch.conversation_history(conversation))
    last: Optional[Dict[str, Any]] = None
    while True:
        try:
            line = input("> ").strip()
        except (EOFError, KeyboardInterrupt):
            print(); break
        if not line:
            continue

        if line.startswith("/"):
            cmd = line[1:].strip().split(" ", 1)
            name = cmd[0].lower()
            arg = cmd[1].strip() if len(cmd) > 1 else ""

            if name == "quit":
                break
            elif name == "help":
                _print_chat_help()
            elif name == "node":
                if not arg:
                    print("usage: /node <id>"); continue
                _print_node(orch, conversation, arg)
            elif name == "history":
                for t in orch.conversation_history(conversation):
                    if t.get("type") in ("message", "error"):
                        print(f"{t['role']:>9}: {t.get('content', '')}")
            elif name == "state":
                if last is None:
                    print("(no state yet)"); continue
                _print_turn({k: v for k, v in last.items() if k != "content"})
            else:
                print("Unknown command. Type /help for options.")
            continue

        if not started:
            try:
                out = orch.start_conversation(conversation, line, args.template, on_thought=_print_thought)
            except KeyError as e:
                print(str(e), file=sys.stderr); return 2
            started = True
        else:
            out = orch.handle_turn(conversation, line, on_thought=_print_thought)
        if out.get("nodes"):
            last = out
        _print_turn(out)

    return 0

# ---------------- parser ----------------

def build_parser():
    p = argparse.ArgumentParser(prog="dataflow-agent")
    sub = p.add_subparsers(dest="cmd")

    p_val = sub.add_parser("validate", help="check the model credential with a minimal call")
    p_val.set_defaults(func=cmd_validate)

    p_tpl = sub.add_parser("templates", help="list workflow templates")
    p_tpl.add_argument("--json", action="store_true")
    p_tpl.set_defaults(func=cmd_templates)

    p_start = sub.add_parser("start", help="start (or restart) a conversation")
    p_start.add_argument("--conversation", required=True)
    p_start.add_argument("--description", required=True, help='e.g. "Shopify orders into Snowflake"')
    p_start.add_argument("--template", help="template id (see `templates`)")
    p_start.add_argument("--json", action="store_true")
    p_start.set_defaults(func=cmd_start)

    p_ask = sub.add_parser("ask", help="one-shot turn")
    p_ask.add_argument("--conversation", required=True)
    p_ask.add_argument("--text", required=True)
    p_ask.add_argument("--json", action="store_true")
    p_ask.set_defaults(func=cmd_ask)

    p_chat = sub.add_parser("chat", help="interactive conversation")
    p_chat.add_argument("--conversation", help="conversation id (default: new)")
    p_chat.add_argument("--template", help="template id for a new conversation")
    p_chat.set_defaults(func=cmd_chat)

    p_hist = sub.add_parser("history", help="show stored turns")
    p_hist.add_argument("--conversation", required=True)
    p_hist.set_defaults(func=cmd_history)

    p_node = sub.add_parser("node", help="filled / not filled per field of one node")
    p_node.add_argument("--conversation", required=True)
    p_node.add_argument("--node", required=True)
    p_node.set_defaults(func=cmd_node)

    p_clear = sub.add_parser("clear", help="delete all stored conversations")
    p_clear.set_defaults(func=cmd_clear)

    return p

def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "cmd", None):
        parser.print_help()
        return 0
    return args.func(args)

if __name__ == "__main__":
    raise SystemExit(main())
