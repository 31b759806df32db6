import json
import os
from typing import Dict, Mapping, Optional


DEFAULT_MODEL_MAP: Dict[str, str] = {
    "gpt-3.5-turbo": "z-ai/glm4.7",
    "gpt-4": "z-ai/glm5",
    "gpt-4o": "deepseek-ai/deepseek-v3.2",
    "claude-3-opus": "meta/llama-3.1-405b-instruct",
    "deepseek-v3.2": "deepseek-ai/deepseek-v3.2",
}

_TRUTHY = ("1", "true", "yes", "on")


class ConfigError(RuntimeError):
    ...


class Settings:
    def __init__(self, env: Optional[Mapping[str, str]] = None) -> None:
        env = os.environ if env is None else env

        def flag(name: str, default: str) -> bool:
            return str(env.get(name, default)).strip().lower() in _TRUTHY

        def number(name: str, default: str, cast):
            raw = env.get(name, default)
            try:
                return cast(raw)
            except (TypeError, ValueError) as e:
                kind = "an integer" if cast is int else "a number"
                raise ConfigError(f"{name} must be {kind}, got {raw!r}") from e

        self.nim_base_url: str = env.get("NIM_API_BASE", "https://integrate.api.nvidia.com/v1")
        self.nim_api_key: Optional[str] = env.get("NIM_API_KEY") or None
        self.host: str = env.get("HOST", "0.0.0.0")
        self.port: int = number("PORT", "3000", int)
        # MODEL_MAP expects a JSON object string mapping client model names → backend model names
        model_map_raw = env.get("MODEL_MAP")
        self.model_map: Dict[str, str] = dict(DEFAULT_MODEL_MAP)
        if model_map_raw:
            try:
                parsed = json.loads(model_map_raw)
            except ValueError as e:
                raise ConfigError(f"MODEL_MAP is not valid JSON: {e}") from e
            if not isinstance(parsed, dict):
                raise ConfigError("MODEL_MAP must be a JSON object")
            self.model_map = {str(k): str(v) for k, v in parsed.items()}
        self.default_model: str = env.get("DEFAULT_MODEL", "z-ai/glm4.7")
        # Ask the backend for its reasoning channel (chat_template_kwargs.enable_thinking)
        self.enable_thinking: bool = flag("ENABLE_THINKING", "1")
        # Fold reasoning into content between markers; when off, reasoning is dropped
        self.show_reasoning: bool = flag("SHOW_REASONING", "1")
        # Echo the client's model id instead of the resolved backend id
        self.mask_model: bool = flag("MASK_MODEL", "1")
        # Forward unrecognized top-level request fields to the backend
        self.passthrough_fields: bool = flag("PASSTHROUGH_FIELDS", "0")
        self.default_temperature: float = number("DEFAULT_TEMPERATURE", "0.7", float)
        self.default_max_tokens: int = max(1, number("DEFAULT_MAX_TOKENS", "4096", int))
        self.request_timeout: float = number("REQUEST_TIMEOUT", "120", float)
        # Status used when the backend failure carries no status of its own
        self.error_status: int = number("ERROR_STATUS", "500", int)
        self.think_open_marker: str = env.get("THINK_OPEN_MARKER", "<think>\n")
        self.think_close_marker: str = env.get("THINK_CLOSE_MARKER", "\n</think>\n\n")
        self.http2: bool = flag("PROXY_HTTP2", "1")
        self.debug: bool = flag("DEBUG_PROXY", "0")
        self.log_level: str = "DEBUG" if self.debug else env.get("LOG_LEVEL", "INFO")

    @property
    def chat_completions_url(self) -> str:
        return f"{self.nim_base_url.rstrip('/')}/chat/completions"

    def validate(self) -> None:
        if not self.nim_api_key:
            raise ConfigError("NIM_API_KEY is not set; refusing to start without a backend credential")
        if not self.model_map:
            raise ConfigError("MODEL_MAP must contain at least one alias")
        if self.request_timeout <= 0:
            raise ConfigError("REQUEST_TIMEOUT must be positive")
        if not 400 <= self.error_status < 600:
            raise ConfigError("ERROR_STATUS must be a 4xx or 5xx status code")
