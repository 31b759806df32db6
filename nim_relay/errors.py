from __future__ import annotations

import json
from typing import Any, Dict, Optional

from .schemas.openai import ErrorBody, ErrorResponse


def _error_type_for_status(status: int) -> str:
    t = "api_error"
    if status == 400:
        t = "invalid_request_error"
    elif status == 401:
        t = "authentication_error"
    elif status == 403:
        t = "permission_error"
    elif status == 404:
        t = "not_found_error"
    elif status == 405:
        t = "method_not_allowed"
    elif status == 408 or status == 504:
        t = "timeout_error"
    elif status == 429:
        t = "rate_limit_error"
    return t


def openai_error_for_status(status: int, message: str, details: Any = None) -> Dict[str, Any]:
    body = ErrorBody(message=message or f"HTTP {status}", type=_error_type_for_status(status), code=status, details=details)
    return ErrorResponse(error=body).model_dump(exclude_none=True)


class RelayError(Exception):
    """Base for failures that must reach the client as a JSON error body."""

    status_code: int = 500

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self._body = body

    @property
    def body(self) -> Dict[str, Any]:
        if self._body:
            return self._body
        return openai_error_for_status(self.status_code, self.message)


class ClientRequestError(RelayError):
    status_code = 400


class BackendTransportError(RelayError):
    """Network failure, timeout or reset before the backend produced a status."""


class BackendApplicationError(RelayError):
    """Backend answered with a non-2xx status (or an unusable 2xx body)."""

    @classmethod
    def from_response(cls, status: int, raw: bytes) -> "BackendApplicationError":
        text = raw.decode("utf-8", errors="replace") if raw else ""
        try:
            data = json.loads(text) if text else None
        except ValueError:
            data = None
        if isinstance(data, dict) and data:
            err = data.get("error")
            message = err.get("message") if isinstance(err, dict) else err if isinstance(err, str) else None
            message = message or data.get("message") or data.get("detail") or json.dumps(data, ensure_ascii=False)
            return cls(str(message), status_code=status, body=data)
        message = f"Upstream returned HTTP {status}"
        return cls(message, status_code=status, body=openai_error_for_status(status, message, details=text or None))
