from __future__ import annotations

from typing import Any, Dict

from .config import Settings
from .schemas.openai import ChatCompletionRequest


# Fields the relay sets itself; never copied from the inbound body in passthrough mode
_MANAGED_FIELDS = frozenset({"model", "messages", "stream", "temperature", "max_tokens", "chat_template_kwargs"})


def build_backend_request(
    req: ChatCompletionRequest,
    backend_model: str,
    thinking_enabled: bool,
    settings: Settings,
) -> Dict[str, Any]:
    """Map an OpenAI chat-completions request onto the backend payload.

    Messages are forwarded as received. ``temperature`` and ``max_tokens`` fall back to the
    configured defaults only when absent, so an explicit ``0`` temperature is honoured.
    """
    payload: Dict[str, Any] = {
        "model": backend_model,
        "messages": list(req.messages),
        "stream": bool(req.stream),
        "temperature": req.temperature if req.temperature is not None else settings.default_temperature,
        "max_tokens": req.max_tokens if req.max_tokens is not None else settings.default_max_tokens,
    }

    extra = req.extra_fields()
    if settings.passthrough_fields:
        for key, value in extra.items():
            if key in _MANAGED_FIELDS or value is None:
                continue
            payload[key] = value

    template_kwargs: Dict[str, Any] = {}
    if settings.passthrough_fields and isinstance(extra.get("chat_template_kwargs"), dict):
        template_kwargs.update(extra["chat_template_kwargs"])
    if thinking_enabled:
        template_kwargs["enable_thinking"] = True
    if template_kwargs:
        payload["chat_template_kwargs"] = template_kwargs

    return payload
