"""Tests for the Ollama backend with a mocked HTTP transport."""

from __future__ import annotations

import json

import httpx
import pytest

from oi.errors import ApiError, NoContentError, OiError, StreamError
from oi.llm.ollama import OllamaClient, build_payload, parse_delta, to_wire_message
from oi.stream import Stream
from oi.types import Message, Request, Role, ToolCall


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _ndjson(*objects: dict) -> str:
    return "".join(json.dumps(o) + "\n" for o in objects)


def _line(content: str = "", done: bool = False, **message) -> dict:
    return {
        "model": "qwen3",
        "message": {"role": "assistant", "content": content, **message},
        "done": done,
    }


def _client(handler) -> OllamaClient:
    return OllamaClient("http://ollama.test:11434", transport=httpx.MockTransport(handler))


async def _drain(stream: Stream) -> str:
    out: list[str] = []
    while stream.next():
        try:
            out.append(stream.current().content)
        except NoContentError:
            await stream.wait()
        except OiError:
            break
    return "".join(out)


async def _collect(client: OllamaClient, request: Request) -> tuple[str, Stream]:
    stream = client.request(request)
    return await _drain(stream), stream


def _request(**kwargs) -> Request:
    return Request(
        model="qwen3",
        messages=(Message(role=Role.USER, content="hello"),),
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Wire translation
# ---------------------------------------------------------------------------

class TestPayload:
    def test_unset_options_are_omitted(self):
        payload = build_payload(_request())
        assert payload["model"] == "qwen3"
        assert payload["stream"] is True
        assert payload["options"] == {}
        assert "tools" not in payload
        assert payload["messages"] == [{"role": "user", "content": "hello"}]

    def test_sampling_options(self):
        payload = build_payload(_request(
            temperature=0.2, top_p=0.9, top_k=40, stop=("END", "STOP"), max_tokens=128,
        ))
        assert payload["options"] == {
            "temperature": 0.2,
            "top_p": 0.9,
            "top_k": 40,
            "stop": ["END", "STOP"],
            "num_predict": 128,
        }

    def test_tools_are_forwarded(self):
        schema = {"type": "function", "function": {"name": "shell"}}
        assert build_payload(_request(tools=(schema,)))["tools"] == [schema]

    def test_assistant_tool_calls_on_the_wire(self):
        msg = Message(
            role=Role.ASSISTANT,
            tool_calls=[ToolCall(index=0, name="read_file", arguments=b'{"path": "a.py"}')],
        )
        wire = to_wire_message(msg)
        assert wire["tool_calls"] == [
            {"function": {"index": 0, "name": "read_file", "arguments": {"path": "a.py"}}},
        ]

    def test_tool_message_carries_tool_name(self):
        msg = Message(role=Role.TOOL, content="42", tool_call_id="call_0", tool_name="calc")
        assert to_wire_message(msg) == {"role": "tool", "content": "42", "tool_name": "calc"}


class TestParseDelta:
    def test_text(self):
        delta = parse_delta(_line("Hi"))
        assert delta.content == "Hi"
        assert delta.role is Role.ASSISTANT
        assert not delta.done

    def test_tool_calls(self):
        delta = parse_delta(_line(
            done=True,
            tool_calls=[{"function": {"name": "shell", "arguments": {"command": "ls"}}}],
        ))
        assert delta.done
        assert len(delta.tool_calls) == 1
        call = delta.tool_calls[0]
        assert call.index == 0
        assert call.name == "shell"
        assert json.loads(call.arguments) == {"command": "ls"}


# ---------------------------------------------------------------------------
# Streaming exchange
# ---------------------------------------------------------------------------

class TestExchange:
    async def test_streams_chunks_in_order(self):
        seen: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            assert request.url.path == "/api/chat"
            return httpx.Response(200, text=_ndjson(
                _line("Hel"), _line("lo"), _line(done=True),
            ))

        client = _client(handler)
        text, stream = await _collect(client, _request())
        await client.close()

        assert text == "Hello"
        assert stream.err() is None
        assert await stream.call_tools() == []
        assert seen[0]["messages"][0]["content"] == "hello"

    async def test_tool_round_trip(self):
        bodies: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            if len(bodies) == 1:
                return httpx.Response(200, text=_ndjson(_line(
                    done=True,
                    tool_calls=[{"function": {"name": "add", "arguments": {"a": 1, "b": 2}}}],
                )))
            return httpx.Response(200, text=_ndjson(_line("3"), _line(done=True)))

        async def caller(name: str, arguments: bytes) -> str:
            args = json.loads(arguments)
            return str(args["a"] + args["b"])

        client = _client(handler)
        _, stream = await _collect(client, _request(tool_caller=caller))
        statuses = await stream.call_tools()
        text = await _drain(stream)
        await client.close()

        assert [s.result for s in statuses] == ["3"]
        assert text == "3"
        second = bodies[1]["messages"]
        assert second[-1] == {"role": "tool", "content": "3", "tool_name": "add"}
        assert second[-2]["tool_calls"][0]["function"]["arguments"] == {"a": 1, "b": 2}

    async def test_http_error_status(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404, json={"error": "model 'nope' not found"})

        client = _client(handler)
        _, stream = await _collect(client, _request())
        await client.close()

        err = stream.err()
        assert isinstance(err, ApiError)
        assert err.status_code == 404
        assert "model 'nope' not found" in str(err)

    async def test_error_line_mid_stream(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text=_ndjson(_line("par"), {"error": "out of memory"}))

        client = _client(handler)
        text, stream = await _collect(client, _request())
        await client.close()

        assert text == "par"
        assert isinstance(stream.err(), ApiError)

    async def test_transport_error_becomes_stream_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = _client(handler)
        _, stream = await _collect(client, _request())
        await client.close()

        err = stream.err()
        assert isinstance(err, StreamError)
        assert not isinstance(err, ApiError)


class TestListModels:
    async def test_lists_tags(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/api/tags"
            return httpx.Response(200, json={"models": [{"name": "qwen3:8b"}, {"name": "llama3.2"}]})

        client = _client(handler)
        assert await client.list_models() == ["qwen3:8b", "llama3.2"]
        await client.close()

    async def test_unreachable_server(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        client = _client(handler)
        with pytest.raises(StreamError):
            await client.list_models()
        await client.close()


def test_openai_style_base_url_is_normalized():
    client = OllamaClient("http://localhost:11434/v1/")
    assert client.base_url == "http://localhost:11434"

