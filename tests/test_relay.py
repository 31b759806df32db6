import json
from typing import Any, Dict, List

import httpx
import pytest
from fastapi.testclient import TestClient

from nim_relay.config import ConfigError, Settings
from nim_relay.main import create_app


BACKEND = "https://nim.test/v1"


def _settings(**env):
    base = {"NIM_API_KEY": "secret", "NIM_API_BASE": BACKEND, "PROXY_HTTP2": "0"}
    base.update(env)
    return Settings(base)


def _chunk(delta: Dict[str, Any], model: str = "backend/modelX") -> bytes:
    body = {"id": "c1", "object": "chat.completion.chunk", "created": 1, "model": model,
            "choices": [{"index": 0, "delta": delta, "finish_reason": None}]}
    return f"data: {json.dumps(body)}\n\n".encode()


def _sse_payloads(text: str) -> List[Any]:
    out: List[Any] = []
    for line in text.splitlines():
        if not line.startswith("data: "):
            continue
        payload = line[len("data: "):]
        out.append(payload if payload == "[DONE]" else json.loads(payload))
    return out


class _Backend:
    """Records outbound calls and answers with a canned httpx.Response."""

    def __init__(self, responder):
        self.responder = responder
        self.calls: List[httpx.Request] = []

    def __call__(self, request: httpx.Request):
        self.calls.append(request)
        return self.responder(request)

    @property
    def last_json(self) -> Dict[str, Any]:
        return json.loads(self.calls[-1].content)


def _client(backend, **env) -> TestClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(backend))
    return TestClient(create_app(_settings(**env), client=http))


def _completion(model="backend/modelX", **message):
    return {"id": "chatcmpl-1", "object": "chat.completion", "model": model,
            "choices": [{"index": 0, "message": {"role": "assistant", **message}, "finish_reason": "stop"}]}


def test_missing_api_key_is_startup_error():
    with pytest.raises(ConfigError):
        create_app(Settings({"NIM_API_BASE": BACKEND}))


def test_non_stream_end_to_end_with_masking():
    backend = _Backend(lambda req: httpx.Response(200, json=_completion(content="hi", reasoning_content="think")))
    client = _client(backend, MODEL_MAP=json.dumps({"gpt-4": "backend/modelX"}))

    resp = client.post("/v1/chat/completions", json={"model": "gpt-4", "messages": [{"role": "user", "content": "yo"}], "stream": False})

    assert resp.status_code == 200
    body = resp.json()
    assert body["model"] == "gpt-4"
    assert body["choices"][0]["message"]["content"] == "<think>\nthink\n</think>\n\nhi"
    assert "reasoning_content" not in body["choices"][0]["message"]

    sent = backend.calls[0]
    assert str(sent.url) == f"{BACKEND}/chat/completions"
    assert sent.headers["authorization"] == "Bearer secret"
    payload = backend.last_json
    assert payload["model"] == "backend/modelX"
    assert payload["stream"] is False
    assert payload["temperature"] == 0.7
    assert payload["max_tokens"] == 4096
    assert payload["chat_template_kwargs"] == {"enable_thinking": True}


def test_non_stream_without_masking_or_thinking():
    backend = _Backend(lambda req: httpx.Response(200, json=_completion(content="hi")))
    client = _client(backend, MASK_MODEL="0", ENABLE_THINKING="0")

    resp = client.post("/chat/completions", json={"model": "gpt-4", "messages": [{"role": "user", "content": "yo"}]})

    assert resp.json()["model"] == "backend/modelX"
    assert "chat_template_kwargs" not in backend.last_json


def test_thinking_suffix_enables_thinking_per_request():
    backend = _Backend(lambda req: httpx.Response(200, json=_completion(content="hi")))
    client = _client(backend, ENABLE_THINKING="0")

    client.post("/v1/chat/completions", json={"model": "gpt-4:thinking", "messages": [{"role": "user", "content": "yo"}]})

    assert backend.last_json["model"] == "z-ai/glm5"
    assert backend.last_json["chat_template_kwargs"] == {"enable_thinking": True}


@pytest.mark.parametrize(
    "body",
    [
        {"messages": [{"role": "user", "content": "x"}]},
        {"model": "gpt-4"},
        {"model": "gpt-4", "messages": []},
        [1, 2, 3],
    ],
)
def test_client_errors_do_not_contact_backend(body):
    backend = _Backend(lambda req: httpx.Response(200, json=_completion(content="hi")))
    client = _client(backend)

    resp = client.post("/v1/chat/completions", json=body)

    assert resp.status_code == 400
    assert resp.json()["error"]["type"] == "invalid_request_error"
    assert backend.calls == []


@pytest.mark.parametrize(
    "messages",
    [
        [{"content": "hello"}],
        [{"role": "user", "content": ["plain string part"]}],
        [{"role": "tool", "tool_call_id": "t1", "content": {"ok": True}}],
    ],
)
def test_unusual_message_shapes_are_forwarded_untouched(messages):
    backend = _Backend(lambda req: httpx.Response(200, json=_completion(content="hi")))
    client = _client(backend)

    resp = client.post("/v1/chat/completions", json={"model": "gpt-4", "messages": messages})

    assert resp.status_code == 200
    assert backend.last_json["messages"] == messages


def test_invalid_json_body_is_client_error():
    client = _client(_Backend(lambda req: httpx.Response(200, json={})))
    resp = client.post("/v1/chat/completions", content=b"{not json", headers={"content-type": "application/json"})
    assert resp.status_code == 400
    assert resp.json()["error"]["message"] == "Invalid JSON body"


def _raise_timeout(request: httpx.Request):
    raise httpx.ReadTimeout("timed out", request=request)


def _raise_connect(request: httpx.Request):
    raise httpx.ConnectError("connection refused", request=request)


@pytest.mark.parametrize("stream", [False, True])
@pytest.mark.parametrize(
    "responder,status",
    [
        (_raise_timeout, 500),
        (_raise_connect, 500),
        (lambda req: httpx.Response(401, json={"error": {"message": "bad key", "type": "unauthorized"}}), 401),
        (lambda req: httpx.Response(500, text="Internal Server Error"), 500),
        (lambda req: httpx.Response(503, content=b""), 503),
        (lambda req: httpx.Response(302, headers={"location": "https://elsewhere.test/"}), 302),
    ],
)
def test_backend_failures_surface_as_json(responder, status, stream):
    client = _client(_Backend(responder))

    resp = client.post("/v1/chat/completions", json={"model": "gpt-4", "messages": [{"role": "user", "content": "x"}], "stream": stream})

    assert resp.status_code == status
    assert resp.headers["content-type"].startswith("application/json")
    body = resp.json()
    assert body
    assert "error" in body


def test_backend_error_body_propagated_verbatim():
    err = {"error": {"message": "bad key", "type": "unauthorized"}, "request_id": "r1"}
    client = _client(_Backend(lambda req: httpx.Response(401, json=err)))

    resp = client.post("/v1/chat/completions", json={"model": "gpt-4", "messages": [{"role": "user", "content": "x"}]})

    assert resp.status_code == 401
    assert resp.json() == err


def test_malformed_success_body_is_json_error():
    client = _client(_Backend(lambda req: httpx.Response(200, content=b"<html>oops</html>")))

    resp = client.post("/v1/chat/completions", json={"model": "gpt-4", "messages": [{"role": "user", "content": "x"}]})

    assert resp.status_code == 500
    assert resp.json()["error"]["message"] == "Upstream returned a malformed JSON body"


def test_configured_error_status_for_transport_failures():
    client = _client(_Backend(_raise_timeout), ERROR_STATUS="504")
    resp = client.post("/v1/chat/completions", json={"model": "gpt-4", "messages": [{"role": "user", "content": "x"}]})
    assert resp.status_code == 504
    assert resp.json()["error"]["type"] == "timeout_error"


def test_streaming_merges_reasoning_across_split_chunks():
    raw = b"".join(
        [
            _chunk({"role": "assistant", "content": ""}),
            _chunk({"reasoning_content": "a"}),
            _chunk({"reasoning_content": "b"}),
            _chunk({"content": "c"}),
            b"data: [DONE]\n\n",
        ]
    )

    async def body():
        # Deliver in awkward 7-byte slices so JSON lines straddle reads
        for i in range(0, len(raw), 7):
            yield raw[i:i + 7]

    backend = _Backend(lambda req: httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body()))
    client = _client(backend)

    resp = client.post("/v1/chat/completions", json={"model": "gpt-4", "messages": [{"role": "user", "content": "x"}], "stream": True})

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    assert resp.headers["cache-control"] == "no-cache"
    assert resp.headers["x-accel-buffering"] == "no"
    events = _sse_payloads(resp.text)
    assert events[-1] == "[DONE]"
    chunks = events[:-1]
    assert "".join(c["choices"][0]["delta"]["content"] for c in chunks) == "<think>\nab\n</think>\n\nc"
    assert all("reasoning_content" not in c["choices"][0]["delta"] for c in chunks)
    assert all(c["model"] == "gpt-4" for c in chunks)
    assert backend.last_json["stream"] is True
    assert backend.calls[0].headers["accept"] == "text/event-stream"


def test_streaming_survives_multibyte_characters_split_across_reads():
    line = f"data: {json.dumps({'choices': [{'index': 0, 'delta': {'reasoning_content': 'héllo'}}]}, ensure_ascii=False)}"
    raw = line.encode("utf-8") + b"\r\n\r\ndata: [DONE]\r\n\r\n"
    cut = raw.index("é".encode("utf-8")) + 1

    async def body():
        # The first read ends inside the two-byte "é"
        yield raw[:cut]
        yield raw[cut:]

    client = _client(_Backend(lambda req: httpx.Response(200, content=body())))

    resp = client.post("/v1/chat/completions", json={"model": "gpt-4", "messages": [{"role": "user", "content": "x"}], "stream": True})

    events = _sse_payloads(resp.text)
    assert events[-1] == "[DONE]"
    assert "".join(c["choices"][0]["delta"]["content"] for c in events[:-1]) == "<think>\nhéllo\n</think>\n\n"


def test_streaming_closes_open_reasoning_at_done():
    raw = _chunk({"reasoning_content": "x"}) + b"data: [DONE]\n\n"
    client = _client(_Backend(lambda req: httpx.Response(200, content=raw)))

    resp = client.post("/v1/chat/completions", json={"model": "gpt-4", "messages": [{"role": "user", "content": "x"}], "stream": True})

    events = _sse_payloads(resp.text)
    contents = [e["choices"][0]["delta"]["content"] for e in events[:-1]]
    assert contents == ["<think>\nx", "\n</think>\n\n"]
    assert events[-1] == "[DONE]"


def test_streaming_without_done_is_terminated():
    raw = _chunk({"content": "partial"})
    client = _client(_Backend(lambda req: httpx.Response(200, content=raw)))

    resp = client.post("/v1/chat/completions", json={"model": "gpt-4", "messages": [{"role": "user", "content": "x"}], "stream": True})

    events = _sse_payloads(resp.text)
    assert events[0]["choices"][0]["delta"]["content"] == "partial"
    assert events[-1] == "[DONE]"


def test_streaming_mid_stream_failure_emits_error_event():
    async def body():
        yield _chunk({"reasoning_content": "r"})
        raise httpx.ReadError("connection reset")

    client = _client(_Backend(lambda req: httpx.Response(200, content=body())))

    resp = client.post("/v1/chat/completions", json={"model": "gpt-4", "messages": [{"role": "user", "content": "x"}], "stream": True})

    events = _sse_payloads(resp.text)
    assert events[0]["choices"][0]["delta"]["content"] == "<think>\nr"
    assert events[1]["choices"][0]["delta"]["content"] == "\n</think>\n\n"
    assert "connection reset" in events[2]["error"]["message"]
    assert events[-1] == "[DONE]"


def test_list_models_enumerates_alias_keys():
    client = _client(_Backend(lambda req: httpx.Response(200, json={})), MODEL_MAP=json.dumps({"gpt-4": "a/b", "mine": "mine"}))

    for path in ("/v1/models", "/models"):
        resp = client.get(path)
        assert resp.status_code == 200
        body = resp.json()
        assert body["object"] == "list"
        assert [m["id"] for m in body["data"]] == ["gpt-4", "mine"]
        assert body["data"][0] == {"id": "gpt-4", "object": "model", "created": 1700000000, "owned_by": "proxy"}


def test_health_endpoints():
    client = _client(_Backend(lambda req: httpx.Response(200, json={})))
    for path in ("/", "/health"):
        resp = client.get(path)
        assert resp.status_code == 200
        assert resp.json()["status"] == "online"


def test_unknown_route_returns_json_404():
    client = _client(_Backend(lambda req: httpx.Response(200, json={})))
    resp = client.get("/v2/nothing")
    assert resp.status_code == 404
    assert resp.headers["content-type"].startswith("application/json")
    assert "/v2/nothing" in resp.json()["error"]["message"]


def test_wrong_method_returns_json_405():
    client = _client(_Backend(lambda req: httpx.Response(200, json={})))
    resp = client.get("/v1/chat/completions")
    assert resp.status_code == 405
    assert resp.json()["error"]["type"] == "method_not_allowed"


def test_cors_preflight_allowed():
    client = _client(_Backend(lambda req: httpx.Response(200, json={})))
    resp = client.options(
        "/v1/chat/completions",
        headers={"Origin": "https://chub.example", "Access-Control-Request-Method": "POST"},
    )
    assert resp.status_code == 200
    assert resp.headers["access-control-allow-origin"] in ("*", "https://chub.example")


@pytest.mark.asyncio
async def test_event_stream_releases_upstream_when_consumer_stops():
    from nim_relay.models import ModelResolver
    from nim_relay.reasoning import ReasoningTranscoder
    from nim_relay.relay import ChatRelay

    async def body():
        yield _chunk({"content": "a"})
        yield _chunk({"content": "b"})

    relay = ChatRelay(_settings(), ModelResolver({}, "m"))
    upstream = httpx.Response(200, content=body())
    stream = relay._event_stream(upstream, ReasoningTranscoder(), None)

    first = await stream.__anext__()
    assert '"content": "a"' in first
    await stream.aclose()

    assert upstream.is_closed
