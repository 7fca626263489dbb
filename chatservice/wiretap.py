"""
Wiretap — structured record of every turn on the line.

Two parts:
  1. WireLog: appends one JSONL entry per message entering or leaving a
     conversation (user utterances in, assistant replies out)
  2. live_tap(): tails the JSONL and renders a color-coded view

The wire log is separate from the debug log: it records what was said,
in which conversation, to which model, and how many tokens it cost.
"""

import json
import logging
import time
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

C_RESET = "\033[0m"
C_BOLD = "\033[1m"
C_DIM = "\033[2m"
C_USER = "\033[96m"       # cyan
C_ASSISTANT = "\033[93m"  # yellow
C_SYSTEM = "\033[90m"     # gray
C_MODEL = "\033[95m"      # magenta

ROLE_COLORS = {
    "user": C_USER,
    "assistant": C_ASSISTANT,
    "system": C_SYSTEM,
}

MAX_CONTENT = 2000


class WireLog:
    """
    JSONL writer for the wire.

    Format:
        {"ts": "...", "dir": "inbound|outbound", "role": "...", "model": "...",
         "conv": "...", "user": "...", "len": 123, "tokens": 31,
         "usage": 812, "evicted": 0, "content": "..."}
    """

    def __init__(self, log_path: str):
        self.log_path = Path(log_path)
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self._file = None

    def _ensure_open(self):
        if self._file is None:
            self._file = open(self.log_path, "a", buffering=1)  # line-buffered

    def log(
        self,
        direction: str,
        role: str,
        content: str,
        model: str = "",
        conversation_id: str = "",
        user_id: str = "",
        token_count: int = 0,
        token_usage: int = 0,
        evicted: int = 0,
    ):
        self._ensure_open()
        entry = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "dir": direction,
            "role": role,
            "model": model,
            "conv": conversation_id,
            "user": user_id,
            "len": len(content),
            "tokens": token_count,
            "usage": token_usage,
            "evicted": evicted,
        }
        if len(content) <= MAX_CONTENT:
            entry["content"] = content
        else:
            half = MAX_CONTENT // 2
            entry["content"] = (
                content[:half]
                + f"\n\n[... {len(content) - MAX_CONTENT} chars truncated ...]\n\n"
                + content[-half:]
            )
        self._file.write(json.dumps(entry, ensure_ascii=False) + "\n")

    def close(self):
        if self._file:
            self._file.close()
            self._file = None


def format_entry(entry: dict, raw: bool = False) -> str:
    """Render one wire entry for the terminal."""
    if raw:
        return json.dumps(entry, ensure_ascii=False)

    try:
        time_str = datetime.fromisoformat(entry.get("ts", "")).strftime("%H:%M:%S")
    except (ValueError, TypeError):
        time_str = "??:??:??"

    role = entry.get("role", "?")
    color = ROLE_COLORS.get(role, C_RESET)
    arrow = "──▶" if entry.get("dir") == "inbound" else "◀──"

    header = f"  {C_DIM}{time_str} {arrow}{C_RESET} {color}{C_BOLD}{role.upper()}{C_RESET}"
    if entry.get("model"):
        header += f"  {C_MODEL}[{entry['model']}]{C_RESET}"
    header += f"  {C_DIM}({entry.get('tokens', 0)} tok, window {entry.get('usage', 0)})"
    if entry.get("evicted"):
        header += f" evicted {entry['evicted']}"
    if entry.get("conv"):
        header += f"  conv:{entry['conv'][:16]}"
    header += C_RESET

    lines = [header]
    content = entry.get("content", "")
    if len(content) > 500:
        content = content[:500] + f"\n{C_DIM}[... truncated]{C_RESET}"
    for cline in content.split("\n")[:15]:
        lines.append(f"      {cline}")
    lines.append(f"  {C_DIM}{'─' * 60}{C_RESET}")
    return "\n".join(lines)


def _emit(line: str, role_filter: str | None, raw: bool):
    line = line.strip()
    if not line:
        return
    try:
        entry = json.loads(line)
    except json.JSONDecodeError:
        return
    if role_filter and entry.get("role") != role_filter:
        return
    print(format_entry(entry, raw=raw))


def live_tap(
    log_path: str | None = None,
    follow: bool = True,
    last_n: int = 20,
    role_filter: str | None = None,
    raw: bool = False,
):
    """
    Tail the wire log.

    Args:
        log_path: Path to wire.jsonl. If None, reads from config.
        follow: Keep watching for new entries (tail -f behavior).
        last_n: Show this many recent entries first.
        role_filter: Only show entries with this role.
        raw: Print raw JSONL instead of formatted output.
    """
    if log_path is None:
        from chatservice.config import get_config
        log_path = get_config().get("wiretap", {}).get("path", "./data/wire.jsonl")

    wire_path = Path(log_path)
    if not wire_path.exists():
        print(f"  No wire log found at {wire_path}")
        return

    with open(wire_path) as f:
        all_lines = f.readlines()
    for line in all_lines[max(0, len(all_lines) - last_n):]:
        _emit(line, role_filter, raw)

    if not follow:
        return

    try:
        with open(wire_path) as f:
            f.seek(0, 2)
            while True:
                line = f.readline()
                if not line:
                    time.sleep(0.1)
                    continue
                _emit(line, role_filter, raw)
    except KeyboardInterrupt:
        pass
