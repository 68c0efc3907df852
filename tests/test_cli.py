"""CLI tests using click's CliRunner with a mocked Ollama server."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import MagicMock

import httpx
import pytest
from click.testing import CliRunner

from oi.cli import apply_overrides, main, parse_duration
from oi.config import Config
from oi.errors import SetupError
from oi.llm.ollama import OllamaClient


@pytest.fixture(autouse=True)
def _isolated_dirs(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    monkeypatch.delenv("OI_DEFAULT_MODEL", raising=False)
    monkeypatch.delenv("OI_NO_CACHE", raising=False)


@pytest.fixture
def fake_server(monkeypatch) -> list[dict]:
    """Route every OllamaClient the CLI creates to a scripted server."""
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/tags":
            return httpx.Response(200, json={"models": [{"name": "qwen3:8b"}]})
        bodies.append(json.loads(request.content))
        lines = [
            {"message": {"role": "assistant", "content": "Hi "}, "done": False},
            {"message": {"role": "assistant", "content": "there"}, "done": False},
            {"message": {"role": "assistant", "content": ""}, "done": True},
        ]
        return httpx.Response(200, text="".join(json.dumps(l) + "\n" for l in lines))

    def factory(base_url: str, **kwargs) -> OllamaClient:
        kwargs.pop("proxy", None)
        return OllamaClient(base_url, transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr("oi.cli.OllamaClient", factory)
    return bodies


def _invoke(*args: str, input: str | None = None):
    return CliRunner().invoke(main, list(args), input=input)


class TestHelpers:
    def test_parse_duration(self):
        assert parse_duration("30s") == 30
        assert parse_duration("12h") == 12 * 3600
        assert parse_duration("1w2d") == 9 * 86400

    def test_parse_duration_rejects_garbage(self):
        for text in ("", "10", "3 years", "d5"):
            with pytest.raises(SetupError):
                parse_duration(text)

    def test_apply_overrides_ignores_unset_flags(self):
        config = Config(temp=0.7, max_retries=5)
        updated = apply_overrides(config, temp=None, max_retries=2, raw=False, stop=("END",))
        assert updated.temp == 0.7
        assert updated.max_retries == 2
        assert updated.raw is False
        assert updated.stop == ["END"]


class TestInfoCommands:
    def test_dirs(self, tmp_path: Path):
        result = _invoke("--dirs")
        assert result.exit_code == 0
        assert str(tmp_path / "config" / "oi" / "oi.yml") in result.output
        assert str(tmp_path / "data" / "oi") in result.output

    def test_list_tools(self):
        result = _invoke("--list-tools")
        assert result.exit_code == 0
        assert "read_file(path: string" in result.output
        assert "shell(command: string" in result.output

    def test_list_roles(self):
        result = _invoke("--list-roles")
        assert result.exit_code == 0
        assert "default" in result.output

    def test_list_models(self, fake_server):
        result = _invoke("--list-models")
        assert result.exit_code == 0
        assert "qwen3:8b" in result.output

    def test_no_conversations(self):
        result = _invoke("--list")
        assert result.exit_code == 0
        assert "No conversations found." in result.output


class TestErrors:
    def test_no_input(self):
        result = _invoke("-m", "qwen3:8b")
        assert result.exit_code == 1
        assert "You haven't provided any prompt input." in result.output

    def test_no_model(self, fake_server):
        result = _invoke("hello")
        assert result.exit_code == 1
        assert fake_server == []

    def test_bad_duration(self):
        result = _invoke("--delete-older-than", "soon")
        assert result.exit_code == 1
        assert "Could not parse the duration." in result.output

    def test_unknown_conversation(self):
        result = _invoke("--show", "nothing")
        assert result.exit_code == 1


class TestRun:
    def test_prompt_from_args_and_stdin(self, fake_server):
        result = _invoke("-m", "qwen3:8b", "--temp", "0.2", "summarise", input="some piped text\n")

        assert result.exit_code == 0, result.output
        assert "Hi" in result.output
        assert "there" in result.output
        body = fake_server[0]
        assert body["model"] == "qwen3:8b"
        assert body["options"]["temperature"] == 0.2
        assert body["messages"][-1] == {"role": "user", "content": "summarise\n\nsome piped text"}

    def test_saved_conversation_can_be_listed_shown_and_deleted(self, fake_server):
        result = _invoke("-m", "qwen3:8b", "-t", "greeting", "hello")
        assert result.exit_code == 0, result.output
        assert "Conversation saved" in result.output

        listed = _invoke("--list")
        assert "greeting" in listed.output

        shown = _invoke("--show", "greeting")
        assert shown.exit_code == 0
        assert "**user**: hello" in shown.output
        assert "**assistant**: Hi there" in shown.output

        deleted = _invoke("--delete", "greeting")
        assert deleted.exit_code == 0
        assert "No conversations found." in _invoke("--list").output

    def test_continue_last_sends_history(self, fake_server):
        _invoke("-m", "qwen3:8b", "first question")
        result = _invoke("-C", "follow up")

        assert result.exit_code == 0, result.output
        second = fake_server[1]
        assert second["model"] == "qwen3:8b"
        assert [m["content"] for m in second["messages"]] == [
            "first question", "Hi there", "follow up",
        ]

    def test_no_cache_saves_nothing(self, fake_server):
        result = _invoke("-m", "qwen3:8b", "--no-cache", "hello")
        assert result.exit_code == 0
        assert "Conversation saved" not in result.output
        assert "No conversations found." in _invoke("--list").output

    def test_interrupt_restores_terminal(self, fake_server, monkeypatch):
        async def interrupted(*args, **kwargs):
            raise KeyboardInterrupt

        finish = MagicMock()
        monkeypatch.setattr("oi.cli._run_session", interrupted)
        monkeypatch.setattr("oi.cli.StreamingDisplay.finish", finish)

        result = _invoke("-m", "qwen3:8b", "hello")
        assert result.exit_code == 130
        finish.assert_called()
