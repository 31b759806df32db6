from __future__ import annotations

import json
import logging
import time
import uuid
from typing import Any, Dict, List, Optional


logger = logging.getLogger(__name__)

DONE_FRAME = "data: [DONE]\n\n"

# Backends disagree on the name of the reasoning channel; both are folded and stripped
_REASONING_KEYS = ("reasoning_content", "reasoning")
_ENVELOPE_KEYS = ("id", "object", "created", "model", "system_fingerprint")


def sse_frame(data: Dict[str, Any]) -> str:
    return f"data: {json.dumps(data, ensure_ascii=False)}\n\n"


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, (list, tuple)):
        return "".join(str(part) for part in value if part is not None)
    return str(value)


def _pop_reasoning(container: Dict[str, Any]) -> str:
    text = ""
    for key in _REASONING_KEYS:
        value = container.pop(key, None)
        if not text:
            text = _as_text(value)
    return text


class ReasoningTranscoder:
    """Fold a backend's reasoning channel into ``content`` between open/close markers.

    One instance per client request. ``reasoning_open`` is the only state: it is set once
    the open marker has been written and cleared when the close marker is written,
    either ahead of the first content token or synthetically at end of stream.
    """

    def __init__(
        self,
        open_marker: str = "<think>\n",
        close_marker: str = "\n</think>\n\n",
        show_reasoning: bool = True,
        mask_model: Optional[str] = None,
    ) -> None:
        self.open_marker = open_marker
        self.close_marker = close_marker
        self.show_reasoning = show_reasoning
        self.mask_model = mask_model
        self.reasoning_open = False
        self._envelope: Optional[Dict[str, Any]] = None

    def _merge(self, reasoning: str, content: str) -> str:
        parts: List[str] = []
        if reasoning and self.show_reasoning:
            if self.reasoning_open:
                parts.append(reasoning)
            else:
                parts.append(self.open_marker + reasoning)
                self.reasoning_open = True
        if content:
            if self.reasoning_open:
                parts.append(self.close_marker + content)
                self.reasoning_open = False
            else:
                parts.append(content)
        return "".join(parts)

    def _remember_envelope(self, chunk: Dict[str, Any]) -> None:
        envelope = {k: chunk[k] for k in _ENVELOPE_KEYS if k in chunk}
        if envelope:
            self._envelope = envelope

    def _close_chunk(self) -> Dict[str, Any]:
        envelope = dict(self._envelope or {})
        envelope.setdefault("id", f"chatcmpl-{uuid.uuid4().hex}")
        envelope.setdefault("object", "chat.completion.chunk")
        envelope.setdefault("created", int(time.time()))
        if self.mask_model:
            envelope["model"] = self.mask_model
        envelope["choices"] = [{"index": 0, "delta": {"content": self.close_marker}, "finish_reason": None}]
        return envelope

    def transcode_chunk(self, chunk: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Return the client-facing chunk for one backend chunk, or None when nothing is visible."""
        choices = chunk.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            return None
        self._remember_envelope(chunk)
        choice = choices[0]
        delta = dict(choice.get("delta") or {})
        reasoning = _pop_reasoning(delta)
        text = self._merge(reasoning, _as_text(delta.get("content")))
        if not text:
            return None

        out_delta: Dict[str, Any] = {"content": text}
        if delta.get("role"):
            out_delta = {"role": delta["role"], "content": text}
        out_choice = {k: v for k, v in choice.items() if k != "delta"}
        out_choice["delta"] = out_delta
        out = {k: v for k, v in chunk.items() if k != "choices"}
        out["choices"] = [out_choice]
        if self.mask_model:
            out["model"] = self.mask_model
        return out

    def transcode_line(self, line: str) -> List[str]:
        """Translate one backend SSE line into zero or more client SSE frames."""
        line = line.strip()
        if not line or line.startswith(":") or not line.startswith("data:"):
            return []
        payload = line[5:].strip()
        if payload == "[DONE]":
            frames = self.finish()
            frames.append(DONE_FRAME)
            return frames
        try:
            chunk = json.loads(payload)
        except ValueError:
            logger.debug("Skipping malformed SSE payload: %s", payload[:200])
            return []
        if not isinstance(chunk, dict):
            return []
        if chunk.get("error") and not chunk.get("choices"):
            # Backend reported a failure mid-stream; close any open block and forward it
            frames = self.finish()
            frames.append(sse_frame(chunk))
            return frames
        out = self.transcode_chunk(chunk)
        return [sse_frame(out)] if out else []

    def finish(self) -> List[str]:
        """Close a reasoning block left open when the stream terminates."""
        if not self.reasoning_open:
            return []
        self.reasoning_open = False
        return [sse_frame(self._close_chunk())]

    def error_frames(self, error_body: Dict[str, Any]) -> List[str]:
        frames = self.finish()
        frames.append(sse_frame(error_body))
        frames.append(DONE_FRAME)
        return frames


def merge_completion(
    data: Dict[str, Any],
    open_marker: str = "<think>\n",
    close_marker: str = "\n</think>\n\n",
    show_reasoning: bool = True,
    mask_model: Optional[str] = None,
) -> Dict[str, Any]:
    """Apply the reasoning merge once to a complete (non-streamed) chat completion."""
    out = dict(data)
    choices: List[Any] = []
    for choice in out.get("choices") or []:
        if not isinstance(choice, dict) or not isinstance(choice.get("message"), dict):
            choices.append(choice)
            continue
        message = dict(choice["message"])
        reasoning = _pop_reasoning(message)
        if reasoning and show_reasoning:
            message["content"] = open_marker + reasoning + close_marker + _as_text(message.get("content"))
        choices.append({**choice, "message": message})
    if "choices" in out:
        out["choices"] = choices
    if mask_model:
        out["model"] = mask_model
    return out
