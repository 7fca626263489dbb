#!/usr/bin/env python3
"""
chatservice CLI.

    COMMAND     ALIAS       WHAT IT DOES
    -------     -----       ----------------------------------
    serve       start       Start the HTTP server
    tap         log         Live view of the wire log
    show                    Print a stored conversation
    list        ls          List recent conversations
"""

import argparse
import asyncio
import sys

from chatservice import __version__


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_serve(args):
    """Start the chatservice HTTP server."""
    import uvicorn
    from chatservice.config import get_config

    cfg = get_config()
    host = args.host or cfg["server"]["host"]
    port = args.port or cfg["server"]["port"]

    print(f"  chatservice v{__version__} on {host}:{port}")
    print(f"  Backend: {cfg['backend']['url']}")
    print(f"  Default model: {cfg.get('chat', {}).get('model', '-')}")
    print()

    uvicorn.run(
        "chatservice.main:app",
        host=host,
        port=port,
        reload=args.reload,
        log_level="info",
    )


def cmd_tap(args):
    """Live view of the wire log."""
    from chatservice.wiretap import live_tap
    live_tap(
        log_path=args.log,
        follow=not args.no_follow,
        last_n=args.last,
        role_filter=args.role,
        raw=args.raw,
    )


def _sqlite_store():
    from chatservice.config import get_config
    from chatservice.storage import SQLiteStore

    cfg = get_config()
    storage_cfg = cfg.get("storage", {})
    if storage_cfg.get("type", "sqlite") != "sqlite":
        print("  Conversations are only inspectable with the sqlite store.")
        sys.exit(1)
    return SQLiteStore(storage_cfg.get("sqlite_path", "./data/chatservice.db"))


def cmd_show(args):
    """Print a stored conversation with its window and erased history."""
    from chatservice.errors import ConversationNotFound

    store = _sqlite_store()
    try:
        conv = asyncio.run(store.find(args.chat_id))
    except ConversationNotFound as e:
        print(f"  {e}")
        sys.exit(1)

    budget = conv.config.model.max_tokens
    print(f"  Conversation {conv.id}  user={conv.user_id}  status={conv.status.value}  v{conv.version}")
    print(f"  Model {conv.config.model.name}  window {conv.token_usage}/{budget} tokens")
    print()
    for label, messages in (("ACTIVE", conv.messages), ("ERASED", conv.erased_messages)):
        print(f"  {label} ({len(messages)})")
        for m in messages:
            text = m.content.replace("\n", " ")
            if len(text) > 100 and not args.full:
                text = text[:97] + "..."
            print(f"    [{m.role.value:9}] {m.token_count:5} tok  {text}")
        print()


def cmd_list(args):
    """List recently updated conversations."""
    store = _sqlite_store()
    rows = store.get_recent_conversations(limit=args.limit)
    if not rows:
        print("  No conversations yet.")
        return
    for r in rows:
        print(
            f"  {r['id']}  {r['status']:6}  user={r['user_id']}  "
            f"msgs={r['message_count']}  tokens={r['token_usage']}  {r['updated_at']}"
        )


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(
        prog="chatservice",
        description="Token-budgeted streaming chat service",
    )
    parser.add_argument("--version", action="version", version=f"chatservice {__version__}")
    sub = parser.add_subparsers(dest="command")

    p = sub.add_parser("serve", aliases=["start"], help="Start the HTTP server")
    p.add_argument("--host", default=None)
    p.add_argument("--port", type=int, default=None)
    p.add_argument("--reload", action="store_true")
    p.set_defaults(func=cmd_serve)

    p = sub.add_parser("tap", aliases=["log"], help="Live view of the wire log")
    p.add_argument("--log", default=None, help="Path to wire.jsonl")
    p.add_argument("--no-follow", action="store_true", help="Print and exit")
    p.add_argument("--last", type=int, default=20, help="Entries to show first")
    p.add_argument("--role", default=None, choices=["user", "assistant", "system"])
    p.add_argument("--raw", action="store_true", help="Raw JSONL output")
    p.set_defaults(func=cmd_tap)

    p = sub.add_parser("show", help="Print a stored conversation")
    p.add_argument("chat_id")
    p.add_argument("--full", action="store_true", help="Do not truncate message text")
    p.set_defaults(func=cmd_show)

    p = sub.add_parser("list", aliases=["ls"], help="List recent conversations")
    p.add_argument("--limit", type=int, default=20)
    p.set_defaults(func=cmd_list)

    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
