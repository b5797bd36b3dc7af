"""Minimal client for the Vertex AI generateContent REST endpoints."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, AsyncGenerator

import google.auth
import google.auth.exceptions
import google.auth.transport.requests
import httpx

from .config import AgentConfig
from .errors import UpstreamError
from .utils import to_bounded_json

LOG = logging.getLogger(__name__)

CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"


def default_base_url(location: str) -> str:
    """Regional endpoint for a Vertex AI location; `global` has no regional prefix."""
    if location == "global":
        return "https://aiplatform.googleapis.com"
    return f"https://{location}-aiplatform.googleapis.com"


def _synthetic_error(status: str, message: str, code: int | None = None) -> str:
    body: dict[str, Any] = {"status": status, "message": message}
    if code is not None:
        body["code"] = code
    return json.dumps({"error": body}, ensure_ascii=False)


def _transport_error(exc: httpx.TransportError) -> UpstreamError:
    """Wrap a transport failure in the provider's JSON error shape."""
    detail = str(exc) or exc.__class__.__name__
    if isinstance(exc, httpx.TimeoutException):
        return UpstreamError(_synthetic_error("DEADLINE_EXCEEDED", f"Upstream request timed out: {detail}", 504))
    return UpstreamError(_synthetic_error("UNAVAILABLE", f"Upstream connection failed: {detail}", 503))


class CredentialsTokenSource:
    """Bearer tokens from Application Default Credentials, refreshed when stale.

    `credentials.valid` turns false shortly before expiry, so a long-lived server
    refreshes ahead of the provider rejecting the token.
    """

    def __init__(self, credentials: Any = None, refresh_request: Any = None) -> None:
        self._credentials = credentials
        self._request = refresh_request
        self._lock = asyncio.Lock()

    async def token(self) -> str:
        async with self._lock:
            try:
                if self._credentials is None:
                    self._credentials, project = await asyncio.to_thread(
                        google.auth.default, scopes=[CLOUD_PLATFORM_SCOPE]
                    )
                    LOG.info("Loaded Application Default Credentials project=%s", project or "-")
                if not self._credentials.valid:
                    request = self._request or google.auth.transport.requests.Request()
                    await asyncio.to_thread(self._credentials.refresh, request)
                    LOG.info("Refreshed Vertex AI credentials expiry=%s", getattr(self._credentials, "expiry", None))
            except google.auth.exceptions.GoogleAuthError as exc:
                raise UpstreamError(
                    _synthetic_error("UNAUTHENTICATED", f"Failed to obtain Google credentials: {exc}", 401), 401
                ) from exc
            return self._credentials.token


class UpstreamClient:
    """Thin async HTTP client for Vertex AI model endpoints."""

    def __init__(
        self,
        cfg: AgentConfig,
        transport: httpx.AsyncBaseTransport | None = None,
        token_source: CredentialsTokenSource | None = None,
    ) -> None:
        """Create an upstream client from proxy configuration.

        A configured `access_token` is sent as is; otherwise tokens come from
        Application Default Credentials.
        """
        self.cfg = cfg
        self._base_url = (cfg.upstream_base_url or default_base_url(cfg.location)).rstrip("/")
        self._timeout = httpx.Timeout(connect=10.0, read=300.0, write=120.0, pool=10.0)
        self._client = httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout, transport=transport)
        self._token_source = None if cfg.access_token else (token_source or CredentialsTokenSource())

    async def close(self) -> None:
        """Close underlying HTTP resources."""
        await self._client.aclose()

    async def _headers(self) -> dict[str, str]:
        """Build authorization headers for upstream calls."""
        token = self.cfg.access_token
        if self._token_source is not None:
            token = await self._token_source.token()
        return {"Content-Type": "application/json", "Authorization": f"Bearer {token}"}


    def _model_path(self, model: str, method: str) -> str:
        return (
            f"/v1/projects/{self.cfg.project}/locations/{self.cfg.location}"
            f"/publishers/google/models/{model}:{method}"
        )

    def _retry_interval_seconds(self) -> float:
        """Return configured wait time between retries in seconds."""
        return max(0.0, int(self.cfg.upstream_retry_interval_ms or 0) / 1000.0)

    def _can_retry(self, attempt: int) -> bool:
        retries = int(self.cfg.upstream_connect_retries)
        return retries < 0 or attempt <= retries

    @staticmethod
    def _is_retryable_status(status: int) -> bool:
        return status == 429 or status >= 500

    async def generate(self, model: str, body: dict[str, Any], *, trace_id: str | None = None) -> dict[str, Any]:
        """Run one non-streaming generateContent call."""
        path = self._model_path(model, "generateContent")
        tag = trace_id or "-"
        retry_delay = self._retry_interval_seconds()
        attempt = 1
        while True:
            LOG.debug(
                "upstream request trace=%s method=POST path=%s attempt=%s payload=%s",
                tag,
                path,
                attempt,
                to_bounded_json(body),
            )
            headers = await self._headers()
            try:
                response = await self._client.post(path, headers=headers, json=body)
            except httpx.TransportError as exc:
                error = _transport_error(exc)
            else:
                if response.status_code < 400:
                    return response.json()
                error = UpstreamError(response.text, response.status_code)
                if not self._is_retryable_status(response.status_code):
                    raise error

            if not self._can_retry(attempt):
                raise error
            LOG.warning(
                "upstream request failed trace=%s attempt=%s retry_in=%.3fs error=%s",
                tag,
                attempt,
                retry_delay,
                error,
            )
            if retry_delay > 0:
                await asyncio.sleep(retry_delay)
            attempt += 1

    async def generate_stream(
        self,
        model: str,
        body: dict[str, Any],
        *,
        trace_id: str | None = None,
    ) -> AsyncGenerator[dict[str, Any], None]:
        """Run streamGenerateContent and yield decoded partial responses.

        Retries only happen before the first chunk has been yielded.
        """
        path = self._model_path(model, "streamGenerateContent")
        tag = trace_id or "-"
        started = time.monotonic()
        retry_delay = self._retry_interval_seconds()
        LOG.debug("upstream stream start trace=%s path=%s payload=%s", tag, path, to_bounded_json(body))

        attempt = 1
        while True:
            response: httpx.Response | None = None
            chunk_count = 0
            error: UpstreamError | None = None
            headers = await self._headers()
            try:
                request = self._client.build_request(
                    "POST",
                    path,
                    params={"alt": "sse"},
                    headers=headers,
                    json=body,
                )
                try:
                    response = await self._client.send(request, stream=True)
                except httpx.TransportError as exc:
                    error = _transport_error(exc)
                else:
                    if response.status_code >= 400:
                        raw = (await response.aread()).decode("utf-8", errors="replace")
                        error = UpstreamError(raw, response.status_code)
                        if not self._is_retryable_status(response.status_code):
                            raise error
                    else:
                        try:
                            async for line in response.aiter_lines():
                                if not line.startswith("data:"):
                                    continue
                                data = line[5:].strip()
                                if not data:
                                    continue
                                try:
                                    chunk = json.loads(data)
                                except json.JSONDecodeError:
                                    # Tolerate occasional non-JSON lines in malformed streams.
                                    continue
                                if isinstance(chunk, dict) and chunk.get("error"):
                                    raise UpstreamError(json.dumps(chunk, ensure_ascii=False))
                                chunk_count += 1
                                yield chunk
                        except httpx.TransportError as exc:
                            if chunk_count:
                                raise _transport_error(exc) from exc
                            error = _transport_error(exc)
                        else:
                            LOG.debug(
                                "upstream stream done trace=%s elapsed=%.3fs chunks=%s",
                                tag,
                                time.monotonic() - started,
                                chunk_count,
                            )
                            return
            finally:
                if response is not None:
                    try:
                        await asyncio.shield(response.aclose())
                    except Exception:
                        LOG.debug("upstream stream close failed trace=%s", tag, exc_info=True)

            assert error is not None
            if not self._can_retry(attempt):
                raise error
            LOG.warning(
                "upstream stream connect failed trace=%s attempt=%s retry_in=%.3fs error=%s",
                tag,
                attempt,
                retry_delay,
                error,
            )
            if retry_delay > 0:
                await asyncio.sleep(retry_delay)
            attempt += 1
