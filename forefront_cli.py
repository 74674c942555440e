import argparse
import json
import sys
import uuid
from typing import Any, Dict, List, Optional

import httpx


DEFAULT_API_BASE = "http://127.0.0.1:8000"


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def _print_event(event: Dict[str, Any]) -> None:
    kind = event.get("type")
    if kind == "step-start":
        print(f"[{event.get('step')}/{event.get('totalSteps')}] {event.get('purpose')} on {event.get('model')}...")
    elif kind == "coordinator-update":
        print(f"    -> {event.get('notes')} ({event.get('kind')})")
    elif kind == "step-complete":
        seconds = (event.get("executionTime") or 0) / 1000
        print(f"    done in {seconds:.1f}s")
    elif kind == "chain-complete":
        steps = (event.get("data") or {}).get("steps") or []
        if steps:
            print()
            print(steps[-1].get("content") or "")
    elif kind == "complete":
        data = event.get("data") or {}
        print(data.get("content") or "")
        print(f"(model: {data.get('model')})")
    elif kind == "error":
        print(f"Error: {event.get('error')}")


def _read_stream(response: httpx.Response) -> Optional[str]:
    """Print events as they arrive; returns the session id the server reported."""
    session_id = None
    for line in response.iter_lines():
        if not line.startswith("data:"):
            continue
        try:
            event = json.loads(line[len("data:"):].strip())
        except json.JSONDecodeError:
            continue
        _print_event(event)
        data = event.get("data") or {}
        session_id = (data.get("metadata") or {}).get("sessionId") or session_id
    return session_id


def send_message(
    client: httpx.Client,
    base: str,
    message: str,
    session_id: Optional[str] = None,
    model: Optional[str] = None,
    timeout: float = 300.0,
) -> Optional[str]:
    payload: Dict[str, Any] = {"message": message}
    if session_id:
        payload["sessionId"] = session_id
    if model:
        payload["model"] = model
    with client.stream("POST", _join_url(base, "/api/chat/stream"), json=payload, timeout=timeout) as resp:
        if resp.status_code >= 400:
            resp.read()
            print(f"Request failed: HTTP {resp.status_code} {resp.text}")
            return session_id
        return _read_stream(resp) or session_id


def run_ask(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    with httpx.Client() as client:
        send_message(client, base, " ".join(args.message), args.session, args.model, args.timeout)
    return 0


def run_chat(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    # The server keeps history only for sessions the client names.
    session_id = args.session or uuid.uuid4().hex
    with httpx.Client() as client:
        while True:
            try:
                message = input("> ").strip()
            except (EOFError, KeyboardInterrupt):
                print()
                break
            if not message:
                continue
            if message in ("/quit", "/exit"):
                break
            session_id = send_message(client, base, message, session_id, args.model, args.timeout)
        if session_id and args.forget:
            client.delete(_join_url(base, f"/api/sessions/{session_id}"), timeout=10)
    return 0


def run_models(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    with httpx.Client() as client:
        params = {"provider": args.provider} if args.provider else None
        resp = client.get(_join_url(base, "/api/models"), params=params, timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to list models: HTTP {resp.status_code}")
            return 1
        for spec in resp.json().get("models") or []:
            print(f"{spec['id']:<48} {spec['provider']:<11} {spec['specialization']}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Forefront CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    subparsers = parser.add_subparsers(dest="command")

    ask = subparsers.add_parser("ask", help="Send one message and print progress")
    ask.add_argument("message", nargs="+", help="Message text")
    ask.add_argument("--session", help="Continue an existing session")
    ask.add_argument("--model", help="Force a single model")
    ask.add_argument("--timeout", type=float, default=300.0, help="Max wait seconds")

    chat = subparsers.add_parser("chat", help="Interactive session")
    chat.add_argument("--session", help="Continue an existing session")
    chat.add_argument("--model", help="Force a single model")
    chat.add_argument("--timeout", type=float, default=300.0, help="Max wait seconds per message")
    chat.add_argument("--forget", action="store_true", help="Discard the session on exit")

    models = subparsers.add_parser("models", help="List registered models")
    models.add_argument("--provider", help="Only this provider family")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "ask":
        return run_ask(args)
    if args.command == "chat":
        return run_chat(args)
    if args.command == "models":
        return run_models(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
