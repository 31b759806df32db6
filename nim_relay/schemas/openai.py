from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


# Minimal OpenAI chat-completions schema; unknown fields are kept so they can be passed through


class ChatCompletionRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    model: str = Field(..., min_length=1)
    # Forwarded untouched; the backend owns message validation
    messages: List[Any]
    stream: Optional[bool] = False
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None

    def extra_fields(self) -> Dict[str, Any]:
        return dict(self.model_extra or {})


class ModelCard(BaseModel):
    id: str
    object: Literal["model"] = "model"
    created: int = 1700000000
    owned_by: str = "proxy"


class ModelList(BaseModel):
    object: Literal["list"] = "list"
    data: List[ModelCard] = Field(default_factory=list)


class ErrorBody(BaseModel):
    message: str
    type: str = "api_error"
    code: Optional[Union[str, int]] = None
    details: Optional[Any] = None


class ErrorResponse(BaseModel):
    error: ErrorBody
