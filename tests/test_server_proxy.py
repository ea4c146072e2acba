"""End-to-end proxy behaviour through the FastAPI app with a mocked upstream."""

import json

import httpx
from fastapi.testclient import TestClient

import llmlogproxy.server as server_mod
from llmlogproxy.config import Config, LogConfig, UpstreamConfig

GEMINI_REQUEST = {"contents": [{"role": "user", "parts": [{"text": "Hello"}]}]}
GEMINI_REPLY = b'{"candidates":[{"content":{"parts":[{"text":"Hi there"}]}}]}'


def _config(tmp_path, raw_body: bool = True, route_prefix: str = "") -> Config:
    return Config(
        upstream=UpstreamConfig(base_url="http://upstream.test", route_prefix=route_prefix),
        log=LogConfig(log_file=str(tmp_path / "requests.ndjson"), raw_body=raw_body),
    )


def _client(config: Config, handler) -> TestClient:
    app = server_mod.create_app(
        preloaded_config=config, upstream_transport=httpx.MockTransport(handler)
    )
    return TestClient(app)


def _entries(config: Config):
    with open(config.log.log_file, "r", encoding="utf-8") as f:
        return [json.loads(line) for line in f if line.strip()]


def _sse_chunks(*events):
    return [f"data: {json.dumps(e) if not isinstance(e, str) else e}\n\n".encode() for e in events]


def _streamed(chunks, fail_after: int | None = None):
    async def body():
        for i, chunk in enumerate(chunks):
            if fail_after is not None and i == fail_after:
                raise httpx.ReadError("upstream went away")
            yield chunk

    return body()


def test_buffered_json_relays_exact_bytes_and_logs_pair(tmp_path):
    seen = {}

    async def handler(request):
        seen["url"] = str(request.url)
        seen["body"] = request.content
        return httpx.Response(
            200, headers={"content-type": "application/json"}, content=GEMINI_REPLY
        )

    config = _config(tmp_path)
    with _client(config, handler) as client:
        response = client.post(
            "/v1beta/models/x:generateContent?key=abc", json=GEMINI_REQUEST
        )

    assert response.status_code == 200
    assert response.content == GEMINI_REPLY
    assert response.headers["content-length"] == str(len(GEMINI_REPLY))
    assert response.headers["content-type"] == "application/json"
    assert seen["url"] == "http://upstream.test/v1beta/models/x:generateContent?key=abc"
    assert json.loads(seen["body"]) == GEMINI_REQUEST

    request_record, response_record = _entries(config)
    assert request_record["kind"] == "request"
    assert request_record["body"] == GEMINI_REQUEST
    assert request_record["route"] == "/v1beta/models/x:generateContent?key=abc"
    assert response_record["kind"] == "response"
    assert response_record["correlation_id"] == request_record["correlation_id"]
    assert response_record["route"] == request_record["route"]
    assert response_record["status"] == 200
    assert response_record["content"] == ""
    assert response_record["body"] == json.loads(GEMINI_REPLY)
    assert "tool_calls" not in response_record


def test_buffered_response_reframes_upstream_headers(tmp_path):
    payload = json.dumps({"choices": [{"message": {"content": "Hi"}}]}).encode()

    async def handler(request):
        return httpx.Response(
            201,
            headers={"x-upstream": "1", "content-encoding": "identity"},
            content=payload,
        )

    config = _config(tmp_path)
    with _client(config, handler) as client:
        response = client.post("/v1/chat/completions", json={"messages": []})

    assert response.status_code == 201
    assert response.headers["x-upstream"] == "1"
    assert "content-encoding" not in response.headers
    assert response.headers["content-type"] == "application/json"
    assert response.headers["content-length"] == str(len(payload))

    response_record = _entries(config)[-1]
    assert response_record["content"] == "Hi"
    assert response_record["status"] == 201


def test_buffered_upstream_error_status_is_relayed(tmp_path):
    async def handler(request):
        return httpx.Response(429, json={"error": {"message": "quota"}})

    config = _config(tmp_path)
    with _client(config, handler) as client:
        response = client.post("/v1beta/models/x:generateContent", json={})

    assert response.status_code == 429
    assert response.json() == {"error": {"message": "quota"}}
    assert _entries(config)[-1]["status"] == 429


def test_raw_body_logging_disabled_omits_body(tmp_path):
    async def handler(request):
        return httpx.Response(200, json={"content": "text"})

    config = _config(tmp_path, raw_body=False)
    with _client(config, handler) as client:
        client.post("/v1/x", json={})

    response_record = _entries(config)[-1]
    assert "body" not in response_record
    assert response_record["content"] == "text"


def test_request_without_content_type_is_sent_as_json(tmp_path):
    seen = {}

    async def handler(request):
        seen["content_type"] = request.headers.get("content-type")
        return httpx.Response(200, json={})

    config = _config(tmp_path)
    with _client(config, handler) as client:
        client.post("/v1/x", content=b'{"a":1}')

    assert seen["content_type"] == "application/json"


def test_sse_stream_is_relayed_unmodified_and_content_extracted(tmp_path):
    chunks = _sse_chunks(
        {"choices": [{"delta": {"content": "Hel"}}]},
        {"choices": [{"delta": {"content": "lo"}}]},
        "[DONE]",
    )

    async def handler(request):
        return httpx.Response(
            200, headers={"content-type": "text/event-stream"}, content=_streamed(chunks)
        )

    config = _config(tmp_path)
    with _client(config, handler) as client:
        response = client.post("/v1/chat/completions", json={"stream": True})

    assert response.status_code == 200
    assert response.content == b"".join(chunks)
    assert response.headers["content-type"] == "text/event-stream"
    assert "content-length" not in response.headers

    response_record = _entries(config)[-1]
    assert response_record["kind"] == "response"
    assert response_record["content"] == "Hello"
    # SSE text is not JSON, so the raw stream text is logged
    assert response_record["body"] == b"".join(chunks).decode()


def test_stream_route_marker_selects_stream_mode_and_defaults_content_type(tmp_path):
    chunks = [b'[{"candidates": [', b"]}]"]

    async def handler(request):
        return httpx.Response(200, headers={}, content=_streamed(chunks))

    config = _config(tmp_path)
    with _client(config, handler) as client:
        response = client.post("/v1beta/models/x:streamGenerateContent", json=GEMINI_REQUEST)

    assert response.content == b"".join(chunks)
    assert response.headers["content-type"] == "application/json; charset=utf-8"
    assert "content-length" not in response.headers
    assert _entries(config)[-1]["body"] == [{"candidates": []}]


def test_stream_with_fragmented_tool_call_split_across_chunks(tmp_path):
    events = b"".join(
        _sse_chunks(
            {"choices": [{"delta": {"tool_calls": [{"index": 0, "function": {"name": "search"}}]}}]},
            {"choices": [{"delta": {"tool_calls": [{"index": 0, "function": {"arguments": '{"q":'}}]}}]},
            {"choices": [{"delta": {"tool_calls": [{"index": 0, "function": {"arguments": '"x"}'}}]}}]},
            "[DONE]",
        )
    )
    # split at arbitrary byte offsets, not on event boundaries
    chunks = [events[:37], events[37:120], events[120:]]

    async def handler(request):
        return httpx.Response(
            200, headers={"content-type": "text/event-stream"}, content=_streamed(chunks)
        )

    config = _config(tmp_path)
    with _client(config, handler) as client:
        response = client.post("/v1/chat/completions", json={"stream": True})

    assert response.content == events
    assert _entries(config)[-1]["tool_calls"] == [{"name": "search", "arguments": '{"q":"x"}'}]


def test_connection_refused_returns_502_with_error_body(tmp_path):
    async def handler(request):
        raise httpx.ConnectError("Connection refused", request=request)

    config = _config(tmp_path)
    with _client(config, handler) as client:
        response = client.post("/v1beta/models/x:generateContent", json=GEMINI_REQUEST)

    assert response.status_code == 502
    body = response.json()
    assert body["error"] == "Upstream unreachable"
    assert "Connection refused" in body["detail"]
    assert [e["kind"] for e in _entries(config)] == ["request"]


def test_stream_failing_before_first_byte_returns_502(tmp_path):
    async def handler(request):
        return httpx.Response(
            200,
            headers={"content-type": "text/event-stream"},
            content=_streamed([b"data: {}\n\n"], fail_after=0),
        )

    config = _config(tmp_path)
    with _client(config, handler) as client:
        response = client.post("/v1/chat/completions", json={"stream": True})

    assert response.status_code == 502
    assert response.json()["error"] == "Upstream protocol error"
    assert [e["kind"] for e in _entries(config)] == ["request"]


def test_stream_failing_mid_flight_ends_partial_stream_without_record(tmp_path):
    chunks = _sse_chunks({"choices": [{"delta": {"content": "par"}}]}, {"choices": []})

    async def handler(request):
        return httpx.Response(
            200,
            headers={"content-type": "text/event-stream"},
            content=_streamed(chunks, fail_after=1),
        )

    config = _config(tmp_path)
    with _client(config, handler) as client:
        response = client.post("/v1/chat/completions", json={"stream": True})

    assert response.status_code == 200
    assert response.content == chunks[0]
    assert [e["kind"] for e in _entries(config)] == ["request"]


def test_buffered_body_read_failure_returns_502(tmp_path):
    async def handler(request):
        return httpx.Response(
            200,
            headers={"content-type": "application/json"},
            content=_streamed([b'{"candidates": [', b"]}"], fail_after=1),
        )

    config = _config(tmp_path)
    with _client(config, handler) as client:
        response = client.post("/v1beta/models/x:generateContent", json=GEMINI_REQUEST)

    assert response.status_code == 502
    assert response.json() == {
        "error": "Upstream protocol error",
        "detail": "failed reading upstream body: upstream went away",
    }
    assert [e["kind"] for e in _entries(config)] == ["request"]


def test_buffered_response_keeps_repeated_headers(tmp_path):
    async def handler(request):
        return httpx.Response(
            200,
            headers=[
                ("content-type", "application/json"),
                ("set-cookie", "a=1"),
                ("set-cookie", "b=2"),
            ],
            content=b"{}",
        )

    config = _config(tmp_path)
    with _client(config, handler) as client:
        response = client.post("/v1/x", json={})

    assert response.headers.get_list("set-cookie") == ["a=1", "b=2"]
    assert response.headers.get_list("content-length") == ["2"]
    assert response.headers.get_list("content-type") == ["application/json"]


def test_unexpected_error_returns_500(tmp_path, monkeypatch):
    async def handler(request):
        return httpx.Response(200, json={})

    async def _boom(handle):
        raise RuntimeError("streamer exploded")

    config = _config(tmp_path)
    with _client(config, handler) as client:
        monkeypatch.setattr(client.app.state.proxy.streamer, "deliver", _boom)
        response = client.post("/v1/x", json={})

    assert response.status_code == 500
    assert response.json() == {"error": "Proxy error", "detail": "streamer exploded"}


def test_route_prefix_limits_proxied_paths_and_is_forwarded(tmp_path):
    seen = {}

    async def handler(request):
        seen["url"] = str(request.url)
        return httpx.Response(200, json={})

    config = _config(tmp_path, route_prefix="proxy")
    with _client(config, handler) as client:
        proxied = client.post("/proxy/v1/x", json={})
        outside = client.post("/v1/x", json={})

    assert proxied.status_code == 200
    assert seen["url"] == "http://upstream.test/proxy/v1/x"
    assert outside.status_code in (404, 405)


def test_logs_data_endpoint_reads_and_clears(tmp_path):
    async def handler(request):
        return httpx.Response(200, json={"choices": [{"message": {"content": "Hi"}}]})

    config = _config(tmp_path)
    with _client(config, handler) as client:
        client.post("/v1/chat/completions", json={"messages": []})
        client.post("/v1/chat/completions", json={"messages": []})

        all_entries = client.get("/logs/data").json()["entries"]
        last_one = client.get("/logs/data", params={"limit": 1}).json()["entries"]
        defaulted = client.get("/logs/data", params={"limit": 0}).json()["entries"]
        garbage = client.get("/logs/data", params={"limit": "abc"}).json()["entries"]

        first_clear = client.delete("/logs/data")
        second_clear = client.delete("/logs/data")
        after = client.get("/logs/data").json()["entries"]

    assert [e["kind"] for e in all_entries] == ["request", "response", "request", "response"]
    assert last_one == all_entries[-1:]
    assert defaulted == all_entries
    assert garbage == all_entries
    assert first_clear.json() == {"ok": True}
    assert second_clear.json() == {"ok": True}
    assert after == []


def test_dashboard_health_and_cors(tmp_path):
    async def handler(request):
        return httpx.Response(200)

    config = _config(tmp_path)
    with _client(config, handler) as client:
        page = client.get("/logs")
        health = client.get("/health")
        preflight = client.options(
            "/logs/data",
            headers={
                "Origin": "http://dashboard.local",
                "Access-Control-Request-Method": "DELETE",
            },
        )

    assert page.status_code == 200
    assert page.headers["content-type"].startswith("text/html")
    assert "/logs/data" in page.text
    assert health.json() == {
        "status": "ok",
        "upstream_base_url": "http://upstream.test",
        "route_prefix": "",
    }
    assert preflight.status_code == 200
    assert preflight.headers["access-control-allow-origin"] == "*"
