"""
Tests for the inspection commands of the CLI.
"""

import asyncio

import pytest

from chatservice.cli import main
from chatservice.config import reset_config
from chatservice.models import Conversation, MessageRole
from chatservice.storage import SQLiteStore


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    path = tmp_path / "chat.db"
    cfg = tmp_path / "config.yaml"
    cfg.write_text(f"storage:\n  type: sqlite\n  sqlite_path: {path}\n")
    monkeypatch.setenv("CHATSERVICE_CONFIG", str(cfg))
    reset_config()
    yield path
    reset_config()


@pytest.fixture
def stored(db_path, make_message, config):
    conv = Conversation.new(
        "alice", make_message("be brief", MessageRole.SYSTEM), config, conversation_id="chat-1",
    )
    conv.append(make_message("x " * 80))
    asyncio.run(SQLiteStore(str(db_path)).create(conv))
    return conv


def test_show(stored, capsys):
    main(["show", "chat-1"])
    out = capsys.readouterr().out
    assert "Conversation chat-1  user=alice  status=active  v1" in out
    assert "ACTIVE (2)" in out
    assert "..." in out

    main(["show", "chat-1", "--full"])
    assert "..." not in capsys.readouterr().out


def test_show_unknown(db_path, capsys):
    with pytest.raises(SystemExit):
        main(["show", "nope"])
    assert "Conversation not found: nope" in capsys.readouterr().out


def test_list(stored, capsys):
    main(["ls", "--limit", "5"])
    out = capsys.readouterr().out
    assert "chat-1" in out
    assert "msgs=2" in out


def test_list_empty(db_path, capsys):
    main(["list"])
    assert "No conversations yet." in capsys.readouterr().out


def test_no_command_prints_help(capsys):
    main([])
    assert "usage: chatservice" in capsys.readouterr().out
