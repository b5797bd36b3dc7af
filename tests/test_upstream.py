import asyncio
import json

import google.auth
import google.auth.exceptions
import httpx
import pytest

from vertexkoppler.config import AgentConfig
from vertexkoppler.errors import UpstreamError, classify
from vertexkoppler.upstream import CLOUD_PLATFORM_SCOPE, CredentialsTokenSource, UpstreamClient, default_base_url


def _config(**overrides) -> AgentConfig:
    data = {
        "project": "proj",
        "location": "us-central1",
        "model": "gemini-2.5-pro",
        "upstream_base_url": "http://vertex.test",
        "access_token": "tok",
        "upstream_retry_interval_ms": 0,
    }
    data.update(overrides)
    return AgentConfig.model_validate(data)


class FakeCredentials:
    def __init__(self, error: Exception | None = None) -> None:
        self.valid = False
        self.token: str | None = None
        self.refreshes = 0
        self.error = error

    def refresh(self, request) -> None:
        if self.error is not None:
            raise self.error
        self.refreshes += 1
        self.token = f"t{self.refreshes}"
        self.valid = True


def _sse(*events: str) -> bytes:
    return "".join(f"data: {event}\n\n" for event in events).encode("utf-8")


def test_default_base_url() -> None:
    assert default_base_url("global") == "https://aiplatform.googleapis.com"
    assert default_base_url("europe-west4") == "https://europe-west4-aiplatform.googleapis.com"


def test_generate_posts_to_model_path_with_bearer_token() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": "hi"}]}}]})

    async def scenario() -> dict:
        client = UpstreamClient(_config(), transport=httpx.MockTransport(handler))
        try:
            return await client.generate("gemini-2.5-pro", {"contents": []}, trace_id="req-1")
        finally:
            await client.close()

    result = asyncio.run(scenario())

    assert result["candidates"][0]["content"]["parts"][0]["text"] == "hi"
    assert seen[0].url.path == (
        "/v1/projects/proj/locations/us-central1/publishers/google/models/gemini-2.5-pro:generateContent"
    )
    assert seen[0].headers["Authorization"] == "Bearer tok"
    assert json.loads(seen[0].content) == {"contents": []}


def test_generate_retries_unavailable_then_succeeds() -> None:
    statuses = [503, 200]

    def handler(request: httpx.Request) -> httpx.Response:
        status = statuses.pop(0)
        if status != 200:
            return httpx.Response(status, json={"error": {"code": status, "status": "UNAVAILABLE", "message": "busy"}})
        return httpx.Response(200, json={"ok": True})

    async def scenario() -> dict:
        client = UpstreamClient(_config(upstream_connect_retries=2), transport=httpx.MockTransport(handler))
        try:
            return await client.generate("m", {})
        finally:
            await client.close()

    assert asyncio.run(scenario()) == {"ok": True}
    assert statuses == []


def test_generate_client_error_is_not_retried() -> None:
    calls = []
    body = {"error": {"code": 400, "status": "INVALID_ARGUMENT", "message": "bad field"}}

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(400, json=body)

    async def scenario() -> None:
        client = UpstreamClient(_config(upstream_connect_retries=5), transport=httpx.MockTransport(handler))
        try:
            await client.generate("m", {})
        finally:
            await client.close()

    with pytest.raises(UpstreamError) as exc_info:
        asyncio.run(scenario())

    assert len(calls) == 1
    assert exc_info.value.status_code == 400
    assert classify(exc_info.value) == "invalid_request_error"


def test_generate_timeout_maps_to_deadline_exceeded() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("read timed out", request=request)

    async def scenario() -> None:
        client = UpstreamClient(_config(), transport=httpx.MockTransport(handler))
        try:
            await client.generate("m", {})
        finally:
            await client.close()

    with pytest.raises(UpstreamError) as exc_info:
        asyncio.run(scenario())

    assert json.loads(str(exc_info.value))["error"]["status"] == "DEADLINE_EXCEEDED"
    assert classify(exc_info.value) == "timeout_error"


def test_generate_stream_yields_json_chunks_and_skips_noise() -> None:
    seen: list[httpx.Request] = []
    payload = _sse(
        json.dumps({"candidates": [{"content": {"parts": [{"text": "Hel"}]}}]}),
        "not json at all",
        json.dumps({"candidates": [{"content": {"parts": [{"text": "lo"}]}}]}),
    )

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, content=payload, headers={"Content-Type": "text/event-stream"})

    async def scenario() -> list[dict]:
        client = UpstreamClient(_config(), transport=httpx.MockTransport(handler))
        try:
            return [chunk async for chunk in client.generate_stream("m", {"contents": []})]
        finally:
            await client.close()

    chunks = asyncio.run(scenario())

    assert [c["candidates"][0]["content"]["parts"][0]["text"] for c in chunks] == ["Hel", "lo"]
    assert seen[0].url.path.endswith("/models/m:streamGenerateContent")
    assert seen[0].url.params["alt"] == "sse"


def test_generate_stream_error_chunk_raises() -> None:
    payload = _sse(
        json.dumps({"candidates": [{"content": {"parts": [{"text": "partial"}]}}]}),
        json.dumps({"error": {"code": 429, "status": "RESOURCE_EXHAUSTED", "message": "Quota exceeded"}}),
    )

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=payload)

    received: list[dict] = []

    async def scenario() -> None:
        client = UpstreamClient(_config(), transport=httpx.MockTransport(handler))
        try:
            async for chunk in client.generate_stream("m", {}):
                received.append(chunk)
        finally:
            await client.close()

    with pytest.raises(UpstreamError) as exc_info:
        asyncio.run(scenario())

    assert len(received) == 1
    assert classify(exc_info.value) == "rate_limit_error"


def test_generate_stream_http_error_before_first_chunk() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"error": {"code": 404, "status": "NOT_FOUND", "message": "no model"}})

    async def scenario() -> None:
        client = UpstreamClient(_config(upstream_connect_retries=3), transport=httpx.MockTransport(handler))
        try:
            async for _ in client.generate_stream("m", {}):
                pass
        finally:
            await client.close()

    with pytest.raises(UpstreamError) as exc_info:
        asyncio.run(scenario())

    assert exc_info.value.status_code == 404
    assert classify(exc_info.value) == "not_found_error"


def test_credentials_are_refreshed_only_when_invalid() -> None:
    credentials = FakeCredentials()
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.headers["Authorization"])
        return httpx.Response(200, json={"candidates": []})

    async def scenario() -> None:
        client = UpstreamClient(
            _config(access_token=None),
            transport=httpx.MockTransport(handler),
            token_source=CredentialsTokenSource(credentials, refresh_request=object()),
        )
        try:
            await client.generate("m", {})
            await client.generate("m", {})
            credentials.valid = False
            await client.generate("m", {})
        finally:
            await client.close()

    asyncio.run(scenario())

    assert seen == ["Bearer t1", "Bearer t1", "Bearer t2"]
    assert credentials.refreshes == 2


def test_default_credentials_are_loaded_with_cloud_platform_scope(monkeypatch) -> None:
    credentials = FakeCredentials()
    requested: list = []

    def fake_default(scopes=None):
        requested.append(scopes)
        return credentials, "proj"

    monkeypatch.setattr(google.auth, "default", fake_default)

    async def scenario() -> tuple[str, str]:
        source = CredentialsTokenSource(refresh_request=object())
        return await source.token(), await source.token()

    first, second = asyncio.run(scenario())

    assert (first, second) == ("t1", "t1")
    assert requested == [[CLOUD_PLATFORM_SCOPE]]


def test_credential_refresh_failure_is_authentication_error() -> None:
    credentials = FakeCredentials(error=google.auth.exceptions.RefreshError("invalid_grant"))

    def handler(request: httpx.Request) -> httpx.Response:
        pytest.fail("no request without credentials")

    async def scenario() -> None:
        client = UpstreamClient(
            _config(access_token=None),
            transport=httpx.MockTransport(handler),
            token_source=CredentialsTokenSource(credentials, refresh_request=object()),
        )
        try:
            await client.generate("m", {})
        finally:
            await client.close()

    with pytest.raises(UpstreamError) as exc_info:
        asyncio.run(scenario())

    assert exc_info.value.status_code == 401
    assert "invalid_grant" in str(exc_info.value)
    assert classify(exc_info.value) == "authentication_error"
