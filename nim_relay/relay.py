from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Dict, Optional

import httpx
from fastapi import Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from .config import Settings
from .errors import (
    BackendApplicationError,
    BackendTransportError,
    ClientRequestError,
    openai_error_for_status,
)
from .models import ModelResolver
from .reasoning import DONE_FRAME, ReasoningTranscoder, merge_completion
from .schemas.openai import ChatCompletionRequest
from .transform import build_backend_request


logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    # nginx / Render style proxies buffer SSE unless told otherwise
    "X-Accel-Buffering": "no",
}


def _redacted(headers: Dict[str, str]) -> Dict[str, str]:
    return {k: ("<redacted>" if k.lower() in ("authorization", "x-api-key") else v) for k, v in headers.items()}


class ChatRelay:
    def __init__(
        self,
        settings: Settings,
        resolver: ModelResolver,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.settings = settings
        self.resolver = resolver
        self._client = client

    # Shared HTTP client (HTTP/1.1 + optional HTTP/2) with connection pooling
    def get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            limits = httpx.Limits(
                max_connections=100,
                max_keepalive_connections=20,
                keepalive_expiry=30.0,
            )
            self._client = httpx.AsyncClient(http2=self.settings.http2, limits=limits)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _upstream_headers(self, stream: bool) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.settings.nim_api_key}",
            "Content-Type": "application/json",
        }
        headers["Accept"] = "text/event-stream" if stream else "application/json"
        return headers

    def _transcoder(self, requested_model: str) -> ReasoningTranscoder:
        return ReasoningTranscoder(
            open_marker=self.settings.think_open_marker,
            close_marker=self.settings.think_close_marker,
            show_reasoning=self.settings.show_reasoning,
            mask_model=requested_model if self.settings.mask_model else None,
        )

    def parse_request(self, body: Any) -> ChatCompletionRequest:
        if not isinstance(body, dict):
            raise ClientRequestError("Request body must be a JSON object")
        missing = [k for k in ("model", "messages") if not body.get(k)]
        if missing:
            raise ClientRequestError(f"Missing required field(s): {', '.join(missing)}")
        try:
            return ChatCompletionRequest.model_validate(body)
        except ValidationError as e:
            raise ClientRequestError(f"Invalid request: {e.errors()[0].get('msg', str(e))}") from e

    async def handle(self, body: Any, request: Optional[Request] = None):
        parsed = self.parse_request(body)
        resolved = self.resolver.resolve_request(parsed.model, thinking_default=self.settings.enable_thinking)
        payload = build_backend_request(parsed, resolved.backend, resolved.thinking, self.settings)
        logger.info(
            "chat model=%s -> %s thinking=%s stream=%s",
            resolved.requested,
            resolved.backend,
            resolved.thinking,
            payload["stream"],
        )
        if payload["stream"]:
            return await self._stream(payload, resolved.requested, request)
        return await self._complete(payload, resolved.requested)

    async def _complete(self, payload: Dict[str, Any], requested_model: str) -> JSONResponse:
        url = self.settings.chat_completions_url
        headers = self._upstream_headers(stream=False)
        logger.debug("upstream request (non-stream): %s", json.dumps({"url": url, "headers": _redacted(headers)}))
        try:
            resp = await self.get_client().post(
                url,
                json=payload,
                headers=headers,
                timeout=httpx.Timeout(self.settings.request_timeout),
            )
        except httpx.HTTPError as e:
            logger.error("Upstream transport error: %s: %s", type(e).__name__, e)
            raise BackendTransportError(
                f"Upstream error: {type(e).__name__}: {e}", status_code=self.settings.error_status
            ) from e

        if not resp.is_success:
            logger.warning("Upstream returned HTTP %d", resp.status_code)
            raise BackendApplicationError.from_response(resp.status_code, resp.content)
        try:
            data = resp.json()
        except ValueError as e:
            raise BackendApplicationError(
                "Upstream returned a malformed JSON body", status_code=self.settings.error_status
            ) from e
        if not isinstance(data, dict):
            raise BackendApplicationError(
                "Upstream returned a non-object JSON body", status_code=self.settings.error_status
            )
        return JSONResponse(
            content=merge_completion(
                data,
                open_marker=self.settings.think_open_marker,
                close_marker=self.settings.think_close_marker,
                show_reasoning=self.settings.show_reasoning,
                mask_model=requested_model if self.settings.mask_model else None,
            )
        )

    async def _stream(
        self, payload: Dict[str, Any], requested_model: str, request: Optional[Request]
    ) -> StreamingResponse:
        client = self.get_client()
        url = self.settings.chat_completions_url
        headers = self._upstream_headers(stream=True)
        logger.debug("upstream request (stream): %s", json.dumps({"url": url, "headers": _redacted(headers)}))
        upstream_req = client.build_request(
            "POST",
            url,
            json=payload,
            headers=headers,
            timeout=httpx.Timeout(self.settings.request_timeout),
        )
        # Open the upstream before answering so its status can still become ours
        try:
            upstream = await client.send(upstream_req, stream=True)
        except httpx.HTTPError as e:
            logger.error("Upstream transport error: %s: %s", type(e).__name__, e)
            raise BackendTransportError(
                f"Upstream error: {type(e).__name__}: {e}", status_code=self.settings.error_status
            ) from e

        if not upstream.is_success:
            try:
                raw = await upstream.aread()
            except httpx.HTTPError:
                raw = b""
            finally:
                await upstream.aclose()
            logger.warning("Upstream returned HTTP %d (stream)", upstream.status_code)
            raise BackendApplicationError.from_response(upstream.status_code, raw)

        transcoder = self._transcoder(requested_model)
        return StreamingResponse(
            self._event_stream(upstream, transcoder, request),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    async def _event_stream(
        self,
        upstream: httpx.Response,
        transcoder: ReasoningTranscoder,
        request: Optional[Request],
    ) -> AsyncIterator[str]:
        try:
            # aiter_lines carries partial lines and split UTF-8 sequences across reads
            async for line in upstream.aiter_lines():
                if request is not None and await request.is_disconnected():
                    logger.info("Client disconnected during streaming; closing upstream")
                    return
                frames = transcoder.transcode_line(line)
                for frame in frames:
                    yield frame
                if frames and frames[-1] == DONE_FRAME:
                    return
            # Upstream ended without [DONE]; still terminate the client stream cleanly
            for frame in transcoder.finish():
                yield frame
            yield DONE_FRAME
        except httpx.HTTPError as e:
            logger.error("Upstream stream error: %s: %s", type(e).__name__, e)
            body = openai_error_for_status(self.settings.error_status, f"Upstream stream error: {type(e).__name__}: {e}")
            for frame in transcoder.error_frames(body):
                yield frame
        finally:
            await upstream.aclose()
