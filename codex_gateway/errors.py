from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from fastapi import status
from fastapi.responses import JSONResponse

MISSING_CREDENTIAL_MESSAGE = (
    "Missing ChatGPT access token. Set CHATGPT_ACCESS_TOKEN or run 'codex login'"
)


class ErrorKind(str, Enum):
    MISSING_CREDENTIAL = "missing_credential"
    AUTH_EXPIRED = "auth_expired"
    UPSTREAM_HTTP_ERROR = "upstream_http_error"
    TRANSPORT_FAILURE = "transport_failure"


@dataclass(frozen=True, slots=True)
class GatewayError:
    kind: ErrorKind
    status_code: int
    message: str

    @classmethod
    def missing_credential(cls) -> GatewayError:
        return cls(
            kind=ErrorKind.MISSING_CREDENTIAL,
            status_code=status.HTTP_401_UNAUTHORIZED,
            message=MISSING_CREDENTIAL_MESSAGE,
        )

    @classmethod
    def from_upstream(cls, status_code: int, error_body: dict[str, Any]) -> GatewayError:
        kind = (
            ErrorKind.AUTH_EXPIRED
            if status_code == status.HTTP_401_UNAUTHORIZED
            else ErrorKind.UPSTREAM_HTTP_ERROR
        )
        return cls(
            kind=kind,
            status_code=status_code,
            message=_vendor_error_message(error_body) or "Upstream error",
        )

    @classmethod
    def transport_failure(cls, fault: str) -> GatewayError:
        return cls(
            kind=ErrorKind.TRANSPORT_FAILURE,
            status_code=status.HTTP_502_BAD_GATEWAY,
            message=f"Upstream ChatGPT request failed: {fault}",
        )

    def to_envelope(self) -> dict[str, Any]:
        return {"error": {"message": self.message}}

    def to_response(self) -> JSONResponse:
        return JSONResponse(status_code=self.status_code, content=self.to_envelope())


def _vendor_error_message(error_body: dict[str, Any]) -> str | None:
    error = error_body.get("error")
    if isinstance(error, dict):
        message = error.get("message")
        if isinstance(message, str) and message.strip():
            return message
    return None
